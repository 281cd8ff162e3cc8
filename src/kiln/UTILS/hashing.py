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
Content digests used for layer, cache and image identifiers.
"""

import hashlib
import json
from typing import Any

DIGEST_ALGORITHM = "sha256"


def canonical_json(value: Any) -> str:
    """Serialize a value so that equal values always produce equal text."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=True)


def digest_bytes(data: bytes) -> str:
    """Return a ``sha256:<hex>`` digest of raw bytes."""
    return f"{DIGEST_ALGORITHM}:{hashlib.sha256(data).hexdigest()}"


def digest_value(value: Any) -> str:
    """Return a ``sha256:<hex>`` digest of a JSON-serializable value."""
    return digest_bytes(canonical_json(value).encode("utf-8"))


def short_id(digest: str, length: int = 12) -> str:
    """Strip the algorithm prefix and truncate, as shown to users."""
    if ":" in digest:
        digest = digest.split(":", 1)[1]
    return digest[:length]
