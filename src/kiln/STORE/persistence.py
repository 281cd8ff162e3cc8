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
JSON records and index files shared by the stores.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Type, TypeVar

from pydantic import BaseModel

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def load_json(path: Path, default: Any) -> Any:
    """Load a JSON file, returning ``default`` if it does not exist."""
    if not path.exists():
        return default
    with open(path, 'r') as f:
        return json.load(f)


def load_model(path: Path, model: Type[ModelT]) -> ModelT:
    """Validate a record written by :func:`save_model`."""
    with open(path, 'r') as f:
        return model.model_validate_json(f.read())


def _write_atomic(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, 'w') as f:
            f.write(text)
        os.replace(tmp_path, path)
    except BaseException:
        os.unlink(tmp_path)
        raise


def save_json(path: Path, data: Any) -> None:
    """Write a JSON file atomically so readers never see a partial index."""
    _write_atomic(path, json.dumps(data, indent=2, sort_keys=True))


def save_model(path: Path, record: BaseModel) -> None:
    """Write a pydantic record atomically in its JSON form."""
    _write_atomic(path, record.model_dump_json(indent=2))


def record_filename(digest: str) -> str:
    """File name for a content-addressed record."""
    return digest.replace(":", "_") + ".json"
