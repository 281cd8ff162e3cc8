# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Layer records.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .filesystem import FilesystemDiff


class Layer(BaseModel):
    """
    An immutable filesystem diff produced by one instruction.

    Layers reference their parent by id only; the layer store owns the
    records and resolves ancestry.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    parent_id: Optional[str] = None
    diff: FilesystemDiff = Field(default_factory=FilesystemDiff)
    created_by: str = ""
    cacheable: bool = True

    @property
    def size(self) -> int:
        return self.diff.size
