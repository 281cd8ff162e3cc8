"""
Builds images from recipes: parse, then for each instruction consult the
layer cache and apply the instruction on a miss, then assemble.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple, Union

from ..CACHE.layer_cache import LayerCache
from ..exceptions import ExecutionError
from ..MODELS.container_image import Image, ImageMetadata
from ..MODELS.filesystem import Snapshot
from ..MODELS.instructions import FromInstruction, Instruction, RunInstruction
from ..MODELS.layer import Layer
from ..PARSERS.recipe_parser import RecipeParser
from ..STORE.image_store import ImageStore
from ..STORE.layer_store import LayerStore
from ..UTILS.hashing import short_id
from .build_context import BuildContext
from .image_assembler import ImageAssembler
from .layer_executor import LayerExecutor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StepResult:
    """What happened to one instruction of a build."""
    index: int
    kind: str
    layer_id: Optional[str]
    cached: bool


@dataclass
class BuildResult:
    image: Image
    steps: List[StepResult] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)

    @property
    def cache_hits(self) -> int:
        return sum(1 for step in self.steps if step.cached)

    @property
    def cache_misses(self) -> int:
        return sum(1 for step in self.steps if not step.cached and step.kind != "FROM")


@dataclass
class BuildRequest:
    """One entry of a parallel build."""
    recipe: Union[str, Sequence[Instruction]]
    context: Optional[BuildContext] = None
    tags: Tuple[str, ...] = ()
    no_cache: bool = False


class ImageBuilder:
    """
    Runs builds. One build applies its instructions strictly in order;
    independent builds may run concurrently and share the layer cache.
    """
    def __init__(self,
                 layer_store: LayerStore,
                 image_store: ImageStore,
                 cache: LayerCache,
                 executor: LayerExecutor,
                 assembler: ImageAssembler,
                 parser: Optional[RecipeParser] = None,
                 workers: int = 4):
        """
        Initializes the ImageBuilder.

        :param layer_store: Arena holding every layer.
        :param image_store: Receives finished images and their tags.
        :param cache: Shared build cache.
        :param executor: Applies instructions on cache misses.
        :param assembler: Validates and assembles the final image.
        :param parser: Recipe parser, a default one if omitted.
        :param workers: Threads used by build_many.
        """
        self.layer_store = layer_store
        self.image_store = image_store
        self.cache = cache
        self.executor = executor
        self.assembler = assembler
        self.parser = parser or RecipeParser()
        self.workers = workers

    def build(self,
              recipe: Union[str, Sequence[Instruction]],
              context: Optional[BuildContext] = None,
              tags: Sequence[str] = (),
              no_cache: bool = False) -> BuildResult:
        """
        Builds an image.

        The build aborts at the first failing instruction. Layers of the steps
        that succeeded stay cached, so fixing the recipe and building again
        resumes from the failed step.

        :param recipe: Recipe text or already parsed instructions.
        :param context: Files available to COPY.
        :param tags: References to point at the finished image.
        :param no_cache: Apply every instruction even if a cached layer exists.
        :return: The image and a per-step report.
        :raises RecipeError: If the recipe text does not parse.
        :raises ExecutionError: Annotated with the failing step and line.
        :raises IncompleteImageError: If the result is not a valid image.
        """
        instructions = self.parser.parse_from_string(recipe) if isinstance(recipe, str) else list(recipe)
        context = context or BuildContext()
        total = len(instructions)

        retained: List[str] = []
        steps: List[StepResult] = []
        layers: List[str] = []
        parent_id: Optional[str] = None
        snapshot = Snapshot.empty()
        metadata = ImageMetadata()

        try:
            for index, instruction in enumerate(instructions):
                logger.info("Step %d/%d : %s", index + 1, total, instruction.describe())
                try:
                    if isinstance(instruction, FromInstruction):
                        base = self.executor.resolve_base(instruction)
                        self.layer_store.retain(base.layers)
                        retained.extend(base.layers)
                        layers = list(base.layers)
                        parent_id = base.top_layer
                        snapshot = self.layer_store.snapshot(parent_id)
                        metadata = base.metadata.model_copy(update={"base_image": instruction.reference})
                        steps.append(StepResult(index, instruction.kind, parent_id, cached=False))
                        logger.info(" ---> %s", short_id(base.id))
                        continue

                    layer, hit = self._layer_for(parent_id, snapshot, instruction, metadata,
                                                 context, no_cache)
                    retained.append(layer.id)
                except ExecutionError as e:
                    raise e.at(index, instruction.line)

                if hit:
                    logger.info(" ---> Using cache")
                logger.info(" ---> %s", short_id(layer.id))
                steps.append(StepResult(index, instruction.kind, layer.id, cached=hit))
                layers.append(layer.id)
                parent_id = layer.id
                snapshot = snapshot.apply(layer.diff)
                metadata = self.executor.apply_metadata(metadata, instruction)

            image = self.assembler.finalize(layers, metadata)
            image = self.image_store.add(image)
            applied = [self.image_store.tag(image.id, tag) for tag in tags]
        finally:
            self.layer_store.release(retained)

        logger.info("Successfully built %s", short_id(image.id))
        for tag in applied:
            logger.info("Successfully tagged %s", tag)
        return BuildResult(image=image, steps=steps, tags=applied)

    def _layer_for(self,
                   parent_id: Optional[str],
                   snapshot: Snapshot,
                   instruction: Instruction,
                   metadata: ImageMetadata,
                   context: BuildContext,
                   no_cache: bool) -> Tuple[Layer, bool]:
        inputs = self.executor.cache_inputs(instruction, metadata, context)

        def produce(key: str) -> Layer:
            return self.executor.apply(parent_id, snapshot, instruction, metadata, context, key)

        if isinstance(instruction, RunInstruction) and (no_cache or not instruction.cacheable):
            if instruction.cacheable:
                instruction = instruction.model_copy(update={"cacheable": False})
            key = self.cache.key_for(parent_id, instruction, inputs)
            layer = self.layer_store.add(self.executor.apply(
                parent_id, snapshot, instruction, metadata, context, key))
            self.layer_store.retain([layer.id])
            return layer, False

        return self.cache.get_or_create(parent_id, instruction, produce, inputs,
                                        retain=True, force=no_cache)

    def build_many(self, requests: Sequence[BuildRequest]) -> List[BuildResult]:
        """
        Runs independent builds on a thread pool.

        Every build runs to completion or failure; the first failure, in
        request order, is raised after all builds have finished.

        :param requests: Builds to run.
        :return: Results in request order.
        """
        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="kiln-build") as pool:
            futures = [
                pool.submit(self.build, request.recipe, request.context, request.tags, request.no_cache)
                for request in requests
            ]
        return [future.result() for future in futures]
