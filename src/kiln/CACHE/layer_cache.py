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
Content-addressed build cache.
Maps (parent layer id, instruction, referenced inputs) to the layer it produced.
"""

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from ..MODELS.instructions import Instruction
from ..MODELS.layer import Layer
from ..STORE.layer_store import LayerStore
from ..STORE.persistence import load_json, save_json
from ..UTILS.hashing import digest_value
from ..UTILS.keyed_locks import KeyedLocks

logger = logging.getLogger(__name__)


@dataclass
class CacheStats:
    """Counters for cache activity."""
    hits: int = 0
    misses: int = 0
    evictions: int = 0


class LayerCache:
    """
    Least-recently-used cache of build layers.

    ``get_or_create`` serializes work per cache key: concurrent callers
    asking for the same uncached layer block until the first caller has
    produced it and then reuse its result. Different keys never contend.
    Entries whose layer belongs to a live image are never evicted.
    """

    def __init__(self,
                 layer_store: LayerStore,
                 capacity: int = 512,
                 live_layers: Optional[Callable[[], Set[str]]] = None,
                 root: Optional[str] = None):
        """
        Initialize the layer cache.

        Args:
            layer_store: Arena the cached layers live in.
            capacity: Maximum number of entries before LRU eviction.
            live_layers: Returns ids of layers referenced by live images.
            root: Directory for the cache index. None keeps the index in memory.
        """
        if capacity < 1:
            raise ValueError("Cache capacity must be positive")
        self.layer_store = layer_store
        self.capacity = capacity
        self._live_layers = live_layers or set
        self._lock = threading.RLock()
        self._key_locks = KeyedLocks()
        self._entries: "OrderedDict[str, str]" = OrderedDict()
        self.stats = CacheStats()

        self.index_file = Path(root) / "cache" / "index.json" if root else None
        if self.index_file:
            self._load_index()

    def _load_index(self) -> None:
        for key, layer_id in load_json(self.index_file, []):
            if self.layer_store.has(layer_id):
                self._entries[key] = layer_id
        logger.debug("Loaded %d cache entries", len(self._entries))

    def _save_index(self) -> None:
        if self.index_file:
            save_json(self.index_file, [[key, layer_id] for key, layer_id in self._entries.items()])

    @staticmethod
    def key_for(parent_id: Optional[str],
                instruction: Instruction,
                inputs: Optional[Dict[str, str]] = None) -> str:
        """
        Deterministic cache key.

        ``inputs`` carries digests of everything outside the instruction text
        that influences the result, such as copied file contents.
        """
        return digest_value({
            "parent": parent_id or "",
            "instruction": instruction.cache_payload(),
            "inputs": inputs or {},
        })

    def _lookup_key(self, key: str) -> Optional[str]:
        layer_id = self._entries.get(key)
        if layer_id is None:
            return None
        if not self.layer_store.has(layer_id):
            # layer was collected behind the cache's back
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return layer_id

    def lookup(self,
               parent_id: Optional[str],
               instruction: Instruction,
               inputs: Optional[Dict[str, str]] = None) -> Optional[str]:
        """
        Returns the cached layer id, or None on a miss.
        """
        with self._lock:
            return self._lookup_key(self.key_for(parent_id, instruction, inputs))

    def store(self,
              parent_id: Optional[str],
              instruction: Instruction,
              layer: Layer,
              inputs: Optional[Dict[str, str]] = None) -> str:
        """
        Records ``layer`` as the result of ``instruction`` on ``parent_id``.

        Returns:
            The id of the stored layer.
        """
        key = self.key_for(parent_id, instruction, inputs)
        with self._lock:
            return self._store_key(key, layer).id

    def _store_key(self, key: str, layer: Layer) -> Layer:
        layer = self.layer_store.add(layer)
        self._entries[key] = layer.id
        self._entries.move_to_end(key)
        self._evict_overflow(protect=key)
        self._save_index()
        return layer

    def get_or_create(self,
                      parent_id: Optional[str],
                      instruction: Instruction,
                      factory: Callable[[str], Layer],
                      inputs: Optional[Dict[str, str]] = None,
                      retain: bool = False,
                      force: bool = False) -> Tuple[Layer, bool]:
        """
        Returns the cached layer or builds it with ``factory(key)``.

        A factory that raises leaves no entry behind. With ``retain`` the
        returned layer is retained in the layer store before any other
        caller can evict it; the caller must release it. With ``force`` the
        lookup is skipped and the entry is rebuilt.

        Returns:
            The layer and whether it came from the cache.
        """
        key = self.key_for(parent_id, instruction, inputs)
        with self._key_locks.hold(key):
            with self._lock:
                layer_id = None if force else self._lookup_key(key)
                if layer_id is not None:
                    self.stats.hits += 1
                    if retain:
                        self.layer_store.retain([layer_id])
                    return self.layer_store.get(layer_id), True
                self.stats.misses += 1

            layer = factory(key)

            with self._lock:
                layer = self._store_key(key, layer)
                if retain:
                    self.layer_store.retain([layer.id])
                return layer, False

    def _evict_overflow(self, protect: Optional[str] = None) -> None:
        if len(self._entries) <= self.capacity:
            return
        live = self._live_layers()
        for key in list(self._entries):
            if len(self._entries) <= self.capacity:
                break
            layer_id = self._entries[key]
            if key == protect or layer_id in live:
                continue
            del self._entries[key]
            self.stats.evictions += 1
            logger.debug("Evicted cache entry %s (layer %s)", key, layer_id)
            self._collect(layer_id, live)
        if len(self._entries) > self.capacity:
            logger.debug("Cache holds %d entries over capacity %d; the rest are live",
                         len(self._entries), self.capacity)

    def _collect(self, layer_id: str, live: Set[str]) -> None:
        """Drop an evicted layer and any ancestors nothing else needs."""
        cached = set(self._entries.values())
        current: Optional[str] = layer_id
        while current and current not in cached and current not in live:
            if not self.layer_store.has(current):
                break
            parent_id = self.layer_store.get(current).parent_id
            if not self.layer_store.remove(current):
                break
            current = parent_id

    def discard(self, layer_ids: Iterable[str]) -> int:
        """
        Removes every entry pointing at one of ``layer_ids``.

        Returns:
            Number of entries removed.
        """
        targets = set(layer_ids)
        with self._lock:
            stale = [key for key, layer_id in self._entries.items() if layer_id in targets]
            for key in stale:
                del self._entries[key]
            if stale:
                self._save_index()
            return len(stale)

    def layer_ids(self) -> Set[str]:
        with self._lock:
            return set(self._entries.values())

    def keys(self) -> List[str]:
        """Keys from least to most recently used."""
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries
