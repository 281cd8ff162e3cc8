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
Local store of finalized images and their tags.
"""

import logging
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple

from ..exceptions import ImageNotFoundError
from ..MODELS.container_image import Image
from ..REGISTRY.image_reference import ImageReference
from .layer_store import LayerStore
from .persistence import load_json, load_model, record_filename, save_json, save_model

logger = logging.getLogger(__name__)


class ImageStore:
    """
    Stores images by id and maps tags to image ids.
    Every stored image retains its layers in the layer store.
    """

    def __init__(self, layer_store: LayerStore, root: Optional[str] = None):
        """
        Initialize the image store.

        Args:
            layer_store: Store holding the layers images refer to.
            root: Directory for image records. None keeps images in memory only.
        """
        self.layer_store = layer_store
        self._lock = threading.RLock()
        self._images: Dict[str, Image] = {}
        self._tags: Dict[str, str] = {}

        self.images_dir = Path(root) / "images" if root else None
        self.tags_file = Path(root) / "tags.json" if root else None
        if self.images_dir:
            self.images_dir.mkdir(parents=True, exist_ok=True)
            self._load()

    def _load(self) -> None:
        for record_path in sorted(self.images_dir.glob("*.json")):
            image = load_model(record_path, Image)
            self._images[image.id] = image
            self.layer_store.retain(image.layers)
        self._tags = {tag: image_id for tag, image_id in load_json(self.tags_file, {}).items()
                      if image_id in self._images}
        logger.debug("Loaded %d images and %d tags", len(self._images), len(self._tags))

    def _save_tags(self) -> None:
        if self.tags_file:
            save_json(self.tags_file, self._tags)

    @staticmethod
    def normalize_tag(reference: str) -> str:
        return ImageReference.parse(reference).full_name

    def add(self, image: Image, tags: Iterable[str] = ()) -> Image:
        """
        Store an image and point ``tags`` at it.

        Re-adding an image with the same id only updates tags.
        """
        with self._lock:
            if image.id not in self._images:
                self.layer_store.retain(image.layers)
                self._images[image.id] = image
                if self.images_dir:
                    save_model(self.images_dir / record_filename(image.id), image)
            for tag in tags:
                self.tag(image.id, tag)
            return self._images[image.id]

    def tag(self, image_id: str, reference: str) -> str:
        with self._lock:
            image = self.get(image_id)
            key = self.normalize_tag(reference)
            previous = self._tags.get(key)
            self._tags[key] = image.id
            self._save_tags()
            if previous and previous != image.id:
                logger.info("Tag %s moved from %s to %s", key, previous, image.id)
            return key

    def untag(self, reference: str) -> bool:
        with self._lock:
            removed = self._tags.pop(self.normalize_tag(reference), None)
            self._save_tags()
            return removed is not None

    def find(self, reference: str) -> Optional[Image]:
        """
        Look up an image by tag, full id or unique id prefix.
        """
        with self._lock:
            if reference in self._images:
                return self._images[reference]
            try:
                image_id = self._tags.get(self.normalize_tag(reference))
            except ValueError:
                image_id = None
            if image_id:
                return self._images[image_id]

            prefix = reference if reference.startswith("sha256:") else f"sha256:{reference}"
            matches = [image for image_id, image in self._images.items() if image_id.startswith(prefix)]
            if len(matches) == 1:
                return matches[0]
            return None

    def get(self, reference: str) -> Image:
        image = self.find(reference)
        if image is None:
            raise ImageNotFoundError(f"image '{reference}' not found")
        return image

    def tags_for(self, image_id: str) -> List[str]:
        with self._lock:
            return sorted(tag for tag, target in self._tags.items() if target == image_id)

    def list_images(self) -> List[Tuple[Image, List[str]]]:
        with self._lock:
            return [(image, self.tags_for(image.id)) for image in self._images.values()]

    def remove(self, reference: str) -> Image:
        """
        Remove an image and all tags pointing at it, releasing its layers.
        """
        with self._lock:
            image = self.get(reference)
            del self._images[image.id]
            self._tags = {tag: target for tag, target in self._tags.items() if target != image.id}
            self._save_tags()
            self.layer_store.release(image.layers)
            if self.images_dir:
                record_path = self.images_dir / record_filename(image.id)
                if record_path.exists():
                    record_path.unlink()
            return image

    def live_layer_ids(self) -> Set[str]:
        """Every layer of a stored image together with its ancestors."""
        with self._lock:
            images = list(self._images.values())
        live: Set[str] = set()
        for image in images:
            for layer_id in image.layers:
                if layer_id not in live:
                    live.update(self.layer_store.ancestry(layer_id))
        return live
