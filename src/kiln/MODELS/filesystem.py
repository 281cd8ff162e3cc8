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
In-memory filesystem snapshots and the diffs that layers carry.
"""

import hashlib
import posixpath
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterator, List, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from ..UTILS.hashing import digest_value

FILE = "file"
DIRECTORY = "dir"
SYMLINK = "symlink"


def normalize_path(path: str, cwd: str = "/") -> str:
    """
    Resolve ``path`` against ``cwd`` into a normalized absolute POSIX path.

    Args:
        path: Absolute or relative path.
        cwd: Directory relative paths are resolved against.

    Returns:
        Absolute path without trailing slash (except for the root).
    """
    joined = posixpath.normpath(posixpath.join(cwd or "/", path))
    if not joined.startswith("/"):
        joined = "/" + joined
    # normpath keeps a leading double slash
    return "/" + joined.lstrip("/")


def is_within(path: str, directory: str) -> bool:
    """True if ``path`` is ``directory`` itself or lies below it."""
    if directory == "/":
        return True
    return path == directory or path.startswith(directory + "/")


class FileEntry(BaseModel):
    """A single filesystem entry."""
    model_config = ConfigDict(frozen=True, ser_json_bytes="base64", val_json_bytes="base64")

    kind: Literal["file", "dir", "symlink"] = FILE
    content: bytes = b""
    mode: int = 0o644
    uid: int = 0
    gid: int = 0

    @classmethod
    def directory(cls, mode: int = 0o755, uid: int = 0, gid: int = 0) -> "FileEntry":
        return cls(kind=DIRECTORY, mode=mode, uid=uid, gid=gid)

    @property
    def is_dir(self) -> bool:
        return self.kind == DIRECTORY

    @property
    def is_file(self) -> bool:
        return self.kind == FILE

    def content_digest(self) -> str:
        return hashlib.sha256(self.content).hexdigest()

    def digest_payload(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "sha256": self.content_digest(),
            "mode": self.mode,
            "uid": self.uid,
            "gid": self.gid,
        }


class FilesystemDiff(BaseModel):
    """
    Changes of one snapshot relative to its parent.

    Deletions are applied before upserts. Deleting a directory removes
    everything below it.
    """
    model_config = ConfigDict(frozen=True)

    upserts: Dict[str, FileEntry] = Field(default_factory=dict)
    deletions: FrozenSet[str] = frozenset()

    @field_serializer("deletions")
    def _sorted_deletions(self, deletions: FrozenSet[str]) -> List[str]:
        return sorted(deletions)

    @property
    def is_empty(self) -> bool:
        return not self.upserts and not self.deletions

    @property
    def size(self) -> int:
        """Bytes of file content carried by this diff."""
        return sum(len(entry.content) for entry in self.upserts.values())

    def digest(self) -> str:
        return digest_value({
            "upserts": {path: entry.digest_payload() for path, entry in self.upserts.items()},
            "deletions": sorted(self.deletions),
        })


class Snapshot:
    """
    Immutable view of a complete filesystem, keyed by absolute path.
    """

    def __init__(self, entries: Optional[Mapping[str, FileEntry]] = None):
        self._entries: Dict[str, FileEntry] = dict(entries or {})

    @classmethod
    def empty(cls) -> "Snapshot":
        return cls()

    @property
    def entries(self) -> Mapping[str, FileEntry]:
        return MappingProxyType(self._entries)

    def get(self, path: str) -> Optional[FileEntry]:
        return self._entries.get(normalize_path(path))

    def read(self, path: str) -> bytes:
        entry = self.get(path)
        if entry is None or not entry.is_file:
            raise FileNotFoundError(path)
        return entry.content

    def __contains__(self, path: str) -> bool:
        return normalize_path(path) in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Snapshot):
            return NotImplemented
        return self._entries == other._entries

    def apply(self, diff: FilesystemDiff) -> "Snapshot":
        """Return a new snapshot with ``diff`` applied."""
        entries = dict(self._entries)
        for deleted in diff.deletions:
            for path in [p for p in entries if is_within(p, deleted)]:
                del entries[path]
        entries.update(diff.upserts)
        return Snapshot(entries)

    def diff_against(self, base: "Snapshot") -> FilesystemDiff:
        """Compute the diff that turns ``base`` into this snapshot."""
        upserts = {path: entry for path, entry in self._entries.items()
                   if base._entries.get(path) != entry}
        removed = [path for path in base._entries if path not in self._entries]
        removed_set = set(removed)
        # a deleted directory already covers its descendants
        deletions = frozenset(
            path for path in removed
            if posixpath.dirname(path) not in removed_set or path == "/"
        )
        return FilesystemDiff(upserts=upserts, deletions=deletions)
