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
Content-addressed arena of layer records.

Layers refer to their parent by id. The store keeps reference counts for
images and in-flight builds and refuses to drop a layer that is retained
or that still has children.
"""

import logging
import threading
from collections import OrderedDict
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

from ..exceptions import LayerNotFoundError
from ..MODELS.filesystem import Snapshot
from ..MODELS.layer import Layer
from .persistence import load_model, record_filename, save_model

logger = logging.getLogger(__name__)


class LayerStore:
    """
    Stores layers by id and reconstructs snapshots from their ancestry.
    """

    def __init__(self, root: Optional[str] = None, snapshot_cache_size: int = 32):
        """
        Initialize the layer store.

        Args:
            root: Directory for layer records. None keeps layers in memory only.
            snapshot_cache_size: Number of reconstructed snapshots to memoize.
        """
        self._lock = threading.RLock()
        self._layers: Dict[str, Layer] = {}
        self._children: Dict[str, Set[str]] = {}
        self._refcounts: Dict[str, int] = {}
        self._snapshots: "OrderedDict[str, Snapshot]" = OrderedDict()
        self._snapshot_cache_size = snapshot_cache_size

        self.layers_dir = Path(root) / "layers" if root else None
        if self.layers_dir:
            self.layers_dir.mkdir(parents=True, exist_ok=True)
            self._load()

    def _load(self) -> None:
        for record_path in sorted(self.layers_dir.glob("*.json")):
            layer = load_model(record_path, Layer)
            self._index(layer)
        logger.debug("Loaded %d layers from %s", len(self._layers), self.layers_dir)

    def _index(self, layer: Layer) -> None:
        self._layers[layer.id] = layer
        if layer.parent_id:
            self._children.setdefault(layer.parent_id, set()).add(layer.id)

    def add(self, layer: Layer) -> Layer:
        """
        Add a layer. Adding an id that already exists returns the stored record.

        Raises:
            LayerNotFoundError: If the parent layer is unknown.
        """
        with self._lock:
            existing = self._layers.get(layer.id)
            if existing is not None:
                return existing
            if layer.parent_id and layer.parent_id not in self._layers:
                raise LayerNotFoundError(f"parent layer {layer.parent_id} of {layer.id} not found")
            self._index(layer)
            if self.layers_dir:
                save_model(self.layers_dir / record_filename(layer.id), layer)
            return layer

    def get(self, layer_id: str) -> Layer:
        with self._lock:
            layer = self._layers.get(layer_id)
        if layer is None:
            raise LayerNotFoundError(f"layer {layer_id} not found")
        return layer

    def has(self, layer_id: str) -> bool:
        with self._lock:
            return layer_id in self._layers

    def ids(self) -> List[str]:
        with self._lock:
            return list(self._layers)

    def __len__(self) -> int:
        with self._lock:
            return len(self._layers)

    def ancestry(self, layer_id: str) -> List[str]:
        """Layer ids from the root layer down to ``layer_id`` inclusive."""
        chain = []
        current: Optional[str] = layer_id
        with self._lock:
            while current is not None:
                layer = self._layers.get(current)
                if layer is None:
                    raise LayerNotFoundError(f"layer {current} not found")
                chain.append(current)
                current = layer.parent_id
        chain.reverse()
        return chain

    def snapshot(self, layer_id: Optional[str]) -> Snapshot:
        """Reconstruct the full filesystem as of ``layer_id``."""
        if layer_id is None:
            return Snapshot.empty()
        with self._lock:
            cached = self._snapshots.get(layer_id)
            if cached is not None:
                self._snapshots.move_to_end(layer_id)
                return cached

            chain = self.ancestry(layer_id)
            # start from the deepest memoized ancestor
            start = 0
            snapshot = Snapshot.empty()
            for index in range(len(chain) - 1, -1, -1):
                memo = self._snapshots.get(chain[index])
                if memo is not None:
                    snapshot, start = memo, index + 1
                    break
            for ancestor in chain[start:]:
                snapshot = snapshot.apply(self._layers[ancestor].diff)

            self._snapshots[layer_id] = snapshot
            while len(self._snapshots) > self._snapshot_cache_size:
                self._snapshots.popitem(last=False)
            return snapshot

    # Reference counting

    def retain(self, layer_ids: Iterable[str]) -> None:
        with self._lock:
            for layer_id in layer_ids:
                if layer_id not in self._layers:
                    raise LayerNotFoundError(f"layer {layer_id} not found")
                self._refcounts[layer_id] = self._refcounts.get(layer_id, 0) + 1

    def release(self, layer_ids: Iterable[str]) -> None:
        with self._lock:
            for layer_id in layer_ids:
                count = self._refcounts.get(layer_id, 0) - 1
                if count > 0:
                    self._refcounts[layer_id] = count
                else:
                    self._refcounts.pop(layer_id, None)

    def refcount(self, layer_id: str) -> int:
        with self._lock:
            return self._refcounts.get(layer_id, 0)

    def remove(self, layer_id: str) -> bool:
        """
        Remove a layer that is neither retained nor a parent.

        Returns:
            True if removed, False if the layer is unknown or still in use.
        """
        with self._lock:
            layer = self._layers.get(layer_id)
            if layer is None or self._refcounts.get(layer_id) or self._children.get(layer_id):
                return False
            del self._layers[layer_id]
            self._snapshots.pop(layer_id, None)
            if layer.parent_id:
                siblings = self._children.get(layer.parent_id)
                if siblings is not None:
                    siblings.discard(layer_id)
                    if not siblings:
                        del self._children[layer.parent_id]
            if self.layers_dir:
                record_path = self.layers_dir / record_filename(layer_id)
                if record_path.exists():
                    record_path.unlink()
            logger.debug("Removed layer %s", layer_id)
            return True
