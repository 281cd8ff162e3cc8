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
Image reference parsing and handling.
Parses image references like 'search:7.10' or 'registry.local:5000/team/search:1'.
"""

import re
from typing import Optional
from dataclasses import dataclass

_NAME_COMPONENT = re.compile(r'^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$')
_TAG = re.compile(r'^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$')


@dataclass(frozen=True)
class ImageReference:
    """
    Parsed image reference.

    Examples:
        - search -> search:latest
        - search:7.10 -> search:7.10
        - team/search:v1 -> team/search:v1
        - localhost:5000/search@sha256:abc123 -> localhost:5000/search@sha256:abc123
    """

    repository: str
    registry: Optional[str] = None
    tag: Optional[str] = None
    digest: Optional[str] = None

    DEFAULT_TAG = "latest"

    @classmethod
    def parse(cls, reference: str) -> "ImageReference":
        """
        Parse an image reference string.

        Args:
            reference: Image reference string (e.g., 'search:latest', 'team/search:v1')

        Returns:
            Parsed ImageReference object.

        Raises:
            ValueError: If the reference is empty or malformed.
        """
        if not reference:
            raise ValueError("Empty image reference")
        original = reference

        # Handle digest format (image@sha256:...)
        digest = None
        if "@" in reference:
            reference, digest = reference.rsplit("@", 1)
            if not digest:
                raise ValueError(f"Empty digest in image reference '{original}'")

        # Handle tag format (image:tag)
        tag = None
        if ":" in reference:
            # A colon followed by a slash belongs to a registry port
            last_colon = reference.rfind(":")
            after_colon = reference[last_colon + 1:]
            if "/" not in after_colon:
                tag = after_colon
                reference = reference[:last_colon]
                if not _TAG.match(tag):
                    raise ValueError(f"Invalid tag '{tag}' in image reference '{original}'")

        # Split off the registry host, if any
        registry = None
        parts = reference.split("/")
        if len(parts) > 1 and ("." in parts[0] or ":" in parts[0] or parts[0] == "localhost"):
            registry = parts[0]
            parts = parts[1:]

        for component in parts:
            if not _NAME_COMPONENT.match(component):
                raise ValueError(f"Invalid repository name in image reference '{original}'")

        # Use default tag if none specified and no digest
        if not tag and not digest:
            tag = cls.DEFAULT_TAG

        return cls(repository="/".join(parts), registry=registry, tag=tag, digest=digest)

    @property
    def name(self) -> str:
        """Repository name including the registry host, without tag or digest."""
        if self.registry:
            return f"{self.registry}/{self.repository}"
        return self.repository

    @property
    def version(self) -> str:
        """The digest if pinned, otherwise the tag."""
        return self.digest or self.tag or self.DEFAULT_TAG

    @property
    def full_name(self) -> str:
        """Get the normalized reference used as a tag key."""
        if self.digest:
            return f"{self.name}@{self.digest}"
        return f"{self.name}:{self.tag}"

    def __str__(self) -> str:
        return self.full_name

    def __repr__(self) -> str:
        return f"ImageReference({self.full_name})"
