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
Base image resolution.

The build engine only needs ``resolve(name, tag)``. The local registry
answers from the image store, serves the built-in ``scratch`` image, and
can import base images from files or a host directory.
"""

import logging
import os
import posixpath
from abc import ABC, abstractmethod
from typing import Dict, Mapping, Optional, Union

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..exceptions import RegistryUnavailableError
from ..MODELS.container_image import Image, ImageMetadata
from ..MODELS.filesystem import FILE, FileEntry, FilesystemDiff, normalize_path
from ..MODELS.layer import Layer
from ..STORE.image_store import ImageStore
from ..STORE.layer_store import LayerStore
from ..UTILS.hashing import digest_value
from .image_reference import ImageReference

logger = logging.getLogger(__name__)

SCRATCH = "scratch"


class ImageRegistry(ABC):
    """
    Resolves base images by name and tag.
    """

    @abstractmethod
    def resolve(self, name: str, tag: str = ImageReference.DEFAULT_TAG) -> Optional[Image]:
        """
        Look up an image.

        Returns:
            The image, or None if the registry does not know it.

        Raises:
            RegistryUnavailableError: On transient failures.
        """
        pass


class LocalImageRegistry(ImageRegistry):
    """
    Registry backed by the local image store.
    """

    def __init__(self, image_store: ImageStore, layer_store: LayerStore):
        self.image_store = image_store
        self.layer_store = layer_store

    def resolve(self, name: str, tag: str = ImageReference.DEFAULT_TAG) -> Optional[Image]:
        if name == SCRATCH:
            return self.scratch()
        if tag.startswith("sha256:"):
            # name@<image id> pins an exact image
            image = self.image_store.find(tag)
            if image is not None:
                return image
            reference = f"{name}@{tag}"
        else:
            reference = f"{name}:{tag}"
        return self.image_store.find(reference)

    def scratch(self) -> Image:
        """The empty base image: a single layer holding only ``/``."""
        diff = FilesystemDiff(upserts={"/": FileEntry.directory()})
        layer = self.layer_store.add(Layer(
            id=digest_value({"scratch": diff.digest()}),
            parent_id=None,
            diff=diff,
            created_by="FROM scratch",
        ))
        return Image.create((layer.id,), ImageMetadata())

    def import_files(self,
                     reference: str,
                     files: Mapping[str, Union[bytes, str, FileEntry]]) -> Image:
        """
        Create a single-layer base image from a path to content mapping and tag it.

        Parent directories are created as needed.
        """
        upserts: Dict[str, FileEntry] = {"/": FileEntry.directory()}
        for raw_path, content in files.items():
            path = normalize_path(raw_path)
            if isinstance(content, FileEntry):
                entry = content
            else:
                data = content.encode("utf-8") if isinstance(content, str) else content
                entry = FileEntry(kind=FILE, content=data)
            parent = posixpath.dirname(path)
            while parent not in upserts:
                upserts[parent] = FileEntry.directory()
                parent = posixpath.dirname(parent)
            upserts[path] = entry

        diff = FilesystemDiff(upserts=upserts)
        layer = self.layer_store.add(Layer(
            id=digest_value({"import": diff.digest()}),
            parent_id=None,
            diff=diff,
            created_by=f"import {reference}",
        ))
        image = self.image_store.add(Image.create((layer.id,), ImageMetadata()), tags=[reference])
        logger.info("Imported %s as %s (%d entries)", reference, image.id, len(upserts))
        return image

    def import_directory(self, reference: str, directory: str) -> Image:
        """Create a base image from a host directory tree."""
        if not os.path.isdir(directory):
            raise FileNotFoundError(f"Directory not found: {directory}")
        files: Dict[str, FileEntry] = {}
        for current, dirnames, filenames in os.walk(directory):
            dirnames.sort()
            relative = os.path.relpath(current, directory)
            base = "/" if relative == "." else "/" + relative.replace(os.sep, "/")
            for name in dirnames:
                info = os.stat(os.path.join(current, name))
                files[posixpath.join(base, name)] = FileEntry.directory(mode=info.st_mode & 0o7777)
            for name in sorted(filenames):
                host_path = os.path.join(current, name)
                with open(host_path, 'rb') as f:
                    content = f.read()
                mode = os.stat(host_path).st_mode & 0o7777
                files[posixpath.join(base, name)] = FileEntry(kind=FILE, content=content, mode=mode)
        return self.import_files(reference, files)


class RetryingRegistry(ImageRegistry):
    """
    Wraps a registry and retries transient failures with exponential backoff.
    """

    def __init__(self, registry: ImageRegistry, attempts: int = 3,
                 wait_min: float = 0.1, wait_max: float = 2.0):
        self.registry = registry
        self.attempts = attempts
        self.wait_min = wait_min
        self.wait_max = wait_max

    def resolve(self, name: str, tag: str = ImageReference.DEFAULT_TAG) -> Optional[Image]:
        retrying = Retrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=self.wait_min, min=self.wait_min, max=self.wait_max),
            retry=retry_if_exception_type(RegistryUnavailableError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return retrying(self.registry.resolve, name, tag)

