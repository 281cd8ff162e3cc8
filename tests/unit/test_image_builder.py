"""
Unit tests for the image builder: layering, caching and failure handling.
"""
import pytest

from kiln.BUILDERS.build_context import BuildContext
from kiln.BUILDERS.image_builder import BuildRequest
from kiln.exceptions import (
    BaseImageNotFoundError,
    BuildTimeoutError,
    IncompleteImageError,
    RecipeSyntaxError,
    RunCommandFailedError,
)
from kiln.MANAGERS.engine import Engine
from kiln.MODELS.container_image import ExposedPort
from kiln.MODELS.engine_config import EngineConfig

RECIPE = """\
FROM base:1
ENV X=1
RUN echo hi > /f
EXPOSE 9200
"""


def runs(engine):
    return engine.executor.executions("RUN")


class TestBuild:
    """Tests for single builds."""

    def test_build_layers_and_metadata(self, engine):
        result = engine.build(RECIPE, tags=["search:1"])
        image = result.image
        assert image.metadata.env == {"X": "1"}
        assert image.metadata.exposed_ports == (ExposedPort(port=9200, protocol="tcp"),)
        assert image.metadata.base_image == "base:1"

        base = engine.get_image("base:1")
        assert image.layers[:len(base.layers)] == base.layers
        # one layer per non-FROM instruction
        assert len(image.layers) == len(base.layers) + 3
        assert engine.layer_store.snapshot(image.top_layer).read("/f") == b"hi\n"
        assert result.tags == ["search:1"]
        assert engine.get_image("search:1").id == image.id

    def test_metadata_instructions_produce_empty_layers(self, engine):
        image = engine.build(RECIPE).image
        env_layer = engine.layer_store.get(image.layers[-3])
        assert env_layer.diff.is_empty

    def test_rebuild_is_idempotent_and_fully_cached(self, engine):
        first = engine.build(RECIPE)
        before = runs(engine)
        second = engine.build(RECIPE)
        assert second.image.id == first.image.id
        assert runs(engine) == before
        assert second.cache_hits == 3
        assert second.cache_misses == 0

    def test_from_step_is_never_reported_as_cache_hit(self, engine):
        result = engine.build("FROM base:1")
        assert result.steps[0].kind == "FROM"
        assert not result.steps[0].cached
        assert result.cache_misses == 0

    def test_copy_change_invalidates_only_descendants(self, engine):
        recipe = "FROM base:1\nRUN echo a > /a\nCOPY app.txt /app.txt\nRUN cat /app.txt > /b\n"
        first = engine.build(recipe, BuildContext({"app.txt": "v1"}))
        second = engine.build(recipe, BuildContext({"app.txt": "v2"}))

        assert [step.cached for step in second.steps[1:]] == [True, False, False]
        assert second.image.layers[:-2] == first.image.layers[:-2]
        assert second.image.layers[-2:] != first.image.layers[-2:]
        snapshot = engine.layer_store.snapshot(second.image.top_layer)
        assert snapshot.read("/b") == b"v2"

    def test_unchanged_context_reuses_copy_layer(self, engine):
        recipe = "FROM base:1\nCOPY app.txt /app.txt\n"
        engine.build(recipe, BuildContext({"app.txt": "same", "other.txt": "1"}))
        second = engine.build(recipe, BuildContext({"app.txt": "same", "other.txt": "2"}))
        assert second.cache_hits == 1

    def test_env_change_invalidates_later_run(self, engine):
        engine.build("FROM base:1\nENV A=1\nRUN echo $A > /a\n")
        before = runs(engine)
        engine.build("FROM base:1\nENV A=2\nRUN echo $A > /a\n")
        assert runs(engine) == before + 1

    def test_failed_step_is_annotated(self, engine):
        with pytest.raises(RunCommandFailedError) as excinfo:
            engine.build("FROM base:1\nRUN echo ok > /ok\n\nRUN exit 2\n")
        error = excinfo.value
        assert error.instruction_index == 2
        assert error.line == 4
        assert error.exit_code == 2
        assert str(error).startswith("step 3 (line 4)")

    def test_retry_after_failure_resumes_from_failed_step(self, engine):
        with pytest.raises(RunCommandFailedError):
            engine.build("FROM base:1\nRUN echo ok > /ok\nRUN false\n")
        before = runs(engine)
        result = engine.build("FROM base:1\nRUN echo ok > /ok\nRUN true\n")
        assert [step.cached for step in result.steps[1:]] == [True, False]
        assert runs(engine) == before + 1

    def test_failed_build_stores_no_image(self, engine):
        images = len(engine.images())
        with pytest.raises(RunCommandFailedError):
            engine.build("FROM base:1\nRUN false\n", tags=["broken:1"])
        assert len(engine.images()) == images
        assert engine.image_store.find("broken:1") is None

    def test_failed_build_releases_its_layers(self, engine):
        with pytest.raises(RunCommandFailedError):
            engine.build("FROM base:1\nRUN echo ok > /ok\nRUN false\n")
        base = engine.get_image("base:1")
        assert all(engine.layer_store.refcount(layer_id) == 1 for layer_id in base.layers)

    def test_missing_base_image(self, engine):
        with pytest.raises(BaseImageNotFoundError) as excinfo:
            engine.build("FROM nowhere:9\n")
        assert excinfo.value.instruction_index == 0

    def test_recipe_must_start_from_an_image(self, engine):
        with pytest.raises(IncompleteImageError):
            engine.build("ENV A=1\n")

    def test_user_must_be_declared_in_final_filesystem(self, engine):
        with pytest.raises(IncompleteImageError):
            engine.build("FROM base:1\nUSER ghost\n")

    def test_user_declared_during_build(self, engine):
        result = engine.build("FROM base:1\nRUN useradd -u 2000 ghost\nUSER ghost\n")
        assert (result.image.metadata.uid, result.image.metadata.gid) == (2000, 2000)

    def test_syntax_errors_propagate(self, engine):
        with pytest.raises(RecipeSyntaxError):
            engine.build("FROM base:1\nEXPOSE http\n")

    def test_scratch_base(self, engine):
        result = engine.build("FROM scratch\nCOPY a.txt /a.txt\n", BuildContext({"a.txt": "a"}))
        assert engine.layer_store.snapshot(result.image.top_layer).read("/a.txt") == b"a"


class TestTimeout:
    """Tests for RUN steps outliving the configured run timeout."""

    @pytest.fixture
    def slow_engine(self, base_files):
        engine = Engine(EngineConfig(run_timeout=0.2))
        engine.import_files("base:1", base_files)
        yield engine
        engine.close()

    def test_timeout_is_annotated_and_not_cached(self, slow_engine):
        with pytest.raises(BuildTimeoutError) as excinfo:
            slow_engine.build("FROM base:1\nRUN echo ok > /ok\nRUN sleep 5\n")
        error = excinfo.value
        assert isinstance(error, TimeoutError)
        assert error.instruction_index == 2
        assert error.line == 3
        assert error.timeout == 0.2
        # only the step before the timeout made it into the cache
        assert len(slow_engine.cache) == 1

    def test_retry_after_timeout_reuses_earlier_layers(self, slow_engine):
        with pytest.raises(BuildTimeoutError):
            slow_engine.build("FROM base:1\nRUN echo ok > /ok\nRUN sleep 5\n")
        before = runs(slow_engine)
        result = slow_engine.build("FROM base:1\nRUN echo ok > /ok\nRUN true\n")
        assert [step.cached for step in result.steps[1:]] == [True, False]
        assert runs(slow_engine) == before + 1


class TestNoCache:
    """Tests for builds that bypass the cache."""

    def test_no_cache_build_executes_everything(self, engine):
        engine.build(RECIPE)
        before = runs(engine)
        result = engine.build(RECIPE, no_cache=True)
        assert runs(engine) == before + 1
        assert result.cache_hits == 0

    def test_no_cache_run_reexecutes_but_children_reuse_identical_output(self, engine):
        recipe = "FROM base:1\nRUN --no-cache echo same > /s\nENV A=1\n"
        first = engine.build(recipe)
        before = runs(engine)
        second = engine.build(recipe)
        assert runs(engine) == before + 1
        assert not second.steps[1].cached
        assert second.steps[2].cached
        assert second.image.id == first.image.id


class TestBuildMany:
    """Tests for concurrent builds."""

    def test_identical_builds_execute_once(self, engine):
        requests = [BuildRequest(RECIPE, tags=(f"copy:{i}",)) for i in range(4)]
        results = engine.build_many(requests)
        assert len({result.image.id for result in results}) == 1
        assert runs(engine) == 1
        assert [result.tags for result in results] == [[f"copy:{i}"] for i in range(4)]

    def test_failure_is_raised_after_all_builds_finish(self, engine):
        requests = [
            BuildRequest("FROM base:1\nRUN false\n"),
            BuildRequest(RECIPE, tags=("ok:1",)),
        ]
        with pytest.raises(RunCommandFailedError):
            engine.build_many(requests)
        assert engine.image_store.find("ok:1") is not None
