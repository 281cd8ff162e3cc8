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
The engine wires stores, cache, registry, sandbox, builder, volumes and
runner together behind one object.
"""
import logging
import os
from dataclasses import dataclass
from typing import List, Mapping, Optional, Sequence, Tuple, Union

from ..BUILDERS.build_context import DEFAULT_RECIPE, BuildContext
from ..BUILDERS.image_assembler import ImageAssembler
from ..BUILDERS.image_builder import BuildRequest, BuildResult, ImageBuilder
from ..BUILDERS.layer_executor import LayerExecutor
from ..CACHE.layer_cache import LayerCache
from ..MODELS.container_image import Image
from ..MODELS.engine_config import EngineConfig
from ..MODELS.filesystem import FileEntry
from ..MODELS.instructions import Instruction
from ..MODELS.run_config import ContainerRunConfig
from ..PARSERS.recipe_parser import RecipeParser
from ..REGISTRY.image_registry import LocalImageRegistry, RetryingRegistry
from ..RUNNERS.container_runner import ContainerRunner, RunResult
from ..RUNNERS.sandbox import create_sandbox
from ..STORE.image_store import ImageStore
from ..STORE.layer_store import LayerStore
from .volume_manager import VolumeManager

logger = logging.getLogger(__name__)


@dataclass
class PruneReport:
    cache_entries: int = 0
    layers: int = 0


class Engine:
    """
    Build engine facade.
    """
    def __init__(self, config: Optional[EngineConfig] = None):
        """
        Initializes the engine and loads persisted state, if any.

        :param config: Engine settings, defaults if omitted.
        """
        self.config = config or EngineConfig()
        root = self.config.state_dir
        if root:
            os.makedirs(root, exist_ok=True)

        self.layer_store = LayerStore(root)
        self.image_store = ImageStore(self.layer_store, root)
        self.cache = LayerCache(
            self.layer_store,
            capacity=self.config.cache_capacity,
            live_layers=self.image_store.live_layer_ids,
            root=root,
        )
        self.local_registry = LocalImageRegistry(self.image_store, self.layer_store)
        self.registry = RetryingRegistry(self.local_registry, attempts=self.config.registry_retries)
        self.sandbox = create_sandbox(self.config.sandbox)
        self.parser = RecipeParser()
        self.executor = LayerExecutor(self.registry, self.sandbox, self.config.run_timeout)
        self.assembler = ImageAssembler(self.layer_store)
        self.builder = ImageBuilder(
            self.layer_store,
            self.image_store,
            self.cache,
            self.executor,
            self.assembler,
            parser=self.parser,
            workers=self.config.workers,
        )
        self.volumes = VolumeManager(
            root,
            reown_policy=self.config.volume_reown_policy,
            apply_ownership=self.config.apply_volume_ownership,
        )
        self.runner = ContainerRunner(
            self.image_store, self.layer_store, self.volumes, self.sandbox, self.config.run_timeout
        )

    def close(self) -> None:
        """Releases temporary storage. Persisted state stays on disk."""
        self.volumes.close()

    # Builds

    def build(self,
              recipe: Union[str, Sequence[Instruction]],
              context: Optional[BuildContext] = None,
              tags: Sequence[str] = (),
              no_cache: bool = False) -> BuildResult:
        return self.builder.build(recipe, context, tags, no_cache)

    def build_directory(self,
                        directory: str,
                        tags: Sequence[str] = (),
                        recipe_file: Optional[str] = None,
                        no_cache: bool = False) -> BuildResult:
        """
        Builds the recipe found in a directory, using the directory as context.

        :param directory: Build context directory.
        :param tags: References for the finished image.
        :param recipe_file: Recipe path, ``<directory>/Kilnfile`` by default
            (``Dockerfile`` if there is no Kilnfile).
        :param no_cache: Ignore cached layers.
        """
        recipe_path = recipe_file or os.path.join(directory, DEFAULT_RECIPE)
        if recipe_file is None and not os.path.exists(recipe_path):
            fallback = os.path.join(directory, "Dockerfile")
            if os.path.exists(fallback):
                recipe_path = fallback
        instructions = self.parser.parse(recipe_path)

        exclude = []
        relative = os.path.relpath(recipe_path, directory)
        if not relative.startswith(".."):
            exclude.append(relative.replace(os.sep, "/"))
        context = BuildContext.from_directory(directory, exclude=exclude)
        logger.info("Sending build context with %d files", len(context))
        return self.builder.build(instructions, context, tags, no_cache)

    def build_many(self, requests: Sequence[BuildRequest]) -> List[BuildResult]:
        return self.builder.build_many(requests)

    # Images

    def images(self) -> List[Tuple[Image, List[str]]]:
        return self.image_store.list_images()

    def get_image(self, reference: str) -> Image:
        return self.image_store.get(reference)

    def remove_image(self, reference: str) -> Image:
        return self.image_store.remove(reference)

    def import_directory(self, directory: str, reference: str) -> Image:
        return self.local_registry.import_directory(reference, directory)

    def import_files(self, reference: str, files: Mapping[str, Union[bytes, str, FileEntry]]) -> Image:
        return self.local_registry.import_files(reference, files)

    # Runs

    def run(self, config: ContainerRunConfig) -> RunResult:
        return self.runner.run(config)

    # Garbage collection

    def prune(self) -> PruneReport:
        """
        Drops cache entries and layers that no stored image reaches.

        Layers retained by builds in progress are kept.
        """
        live = self.image_store.live_layer_ids()
        report = PruneReport()
        report.cache_entries = self.cache.discard(set(self.cache.layer_ids()) - live)

        progress = True
        while progress:
            progress = False
            for layer_id in self.layer_store.ids():
                if layer_id not in live and self.layer_store.remove(layer_id):
                    report.layers += 1
                    progress = True
        logger.info("Pruned %d cache entries and %d layers", report.cache_entries, report.layers)
        return report
