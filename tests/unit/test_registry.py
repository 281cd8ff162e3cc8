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
Unit tests for the registry module.
"""
import pytest

from kiln.exceptions import RegistryUnavailableError
from kiln.REGISTRY.image_reference import ImageReference
from kiln.REGISTRY.image_registry import ImageRegistry, LocalImageRegistry, RetryingRegistry
from kiln.STORE.image_store import ImageStore
from kiln.STORE.layer_store import LayerStore


class TestImageReference:
    """Tests for ImageReference parsing."""

    def test_parse_simple_name(self):
        """Test parsing a simple image name."""
        ref = ImageReference.parse("search")
        assert ref.registry is None
        assert ref.repository == "search"
        assert ref.tag == "latest"

    def test_parse_with_tag(self):
        """Test parsing image with tag."""
        ref = ImageReference.parse("search:7.10")
        assert ref.repository == "search"
        assert ref.tag == "7.10"

    def test_parse_namespaced_image(self):
        ref = ImageReference.parse("team/search:v1")
        assert ref.registry is None
        assert ref.repository == "team/search"
        assert ref.tag == "v1"

    def test_parse_full_reference(self):
        """Test parsing full registry reference."""
        ref = ImageReference.parse("registry.local/team/search:latest")
        assert ref.registry == "registry.local"
        assert ref.repository == "team/search"
        assert ref.name == "registry.local/team/search"

    def test_parse_with_digest(self):
        """Test parsing image with digest."""
        ref = ImageReference.parse("search@sha256:abc123")
        assert ref.repository == "search"
        assert ref.digest == "sha256:abc123"
        assert ref.tag is None
        assert ref.version == "sha256:abc123"
        assert ref.full_name == "search@sha256:abc123"

    def test_parse_localhost_registry(self):
        """Test parsing localhost registry."""
        ref = ImageReference.parse("localhost:5000/search:v1")
        assert ref.registry == "localhost:5000"
        assert ref.repository == "search"
        assert ref.tag == "v1"

    def test_full_name(self):
        """Test full_name property."""
        assert ImageReference.parse("search").full_name == "search:latest"
        assert str(ImageReference.parse("search:1")) == "search:1"

    @pytest.mark.parametrize("reference", ["", "Search", "search:bad tag", "search@", "a//b"])
    def test_invalid_references(self, reference):
        with pytest.raises(ValueError):
            ImageReference.parse(reference)


@pytest.fixture
def local():
    layer_store = LayerStore()
    return LocalImageRegistry(ImageStore(layer_store), layer_store)


class TestLocalImageRegistry:
    """Tests for the store-backed registry."""

    def test_import_and_resolve(self, local):
        image = local.import_files("base:1", {"/etc/hostname": "box\n", "/bin/tool": b"\x7fELF"})
        assert local.resolve("base", "1").id == image.id
        snapshot = local.layer_store.snapshot(image.top_layer)
        assert snapshot.read("/etc/hostname") == b"box\n"
        assert snapshot.get("/bin").is_dir

    def test_unknown_image(self, local):
        assert local.resolve("missing", "1") is None

    def test_resolve_by_image_id(self, local):
        image = local.import_files("base:1", {"/a": "a"})
        assert local.resolve("base", image.id).id == image.id

    def test_scratch_is_an_empty_root(self, local):
        image = local.resolve("scratch")
        snapshot = local.layer_store.snapshot(image.top_layer)
        assert list(snapshot) == ["/"]
        assert local.resolve("scratch").id == image.id

    def test_identical_imports_share_layers(self, local):
        first = local.import_files("base:1", {"/a": "a"})
        second = local.import_files("base:2", {"/a": "a"})
        assert first.layers == second.layers

    def test_import_directory(self, local, tmp_path):
        (tmp_path / "etc").mkdir()
        (tmp_path / "etc" / "passwd").write_text("root:x:0:0:root:/root:/bin/sh\n")
        image = local.import_directory("host:1", str(tmp_path))
        snapshot = local.layer_store.snapshot(image.top_layer)
        assert snapshot.read("/etc/passwd").startswith(b"root:")

    def test_import_missing_directory(self, local, tmp_path):
        with pytest.raises(FileNotFoundError):
            local.import_directory("host:1", str(tmp_path / "missing"))


class FlakyRegistry(ImageRegistry):
    """Fails a fixed number of times before answering."""

    def __init__(self, failures):
        self.failures = failures
        self.calls = 0

    def resolve(self, name, tag="latest"):
        self.calls += 1
        if self.calls <= self.failures:
            raise RegistryUnavailableError("temporarily unavailable")
        return None


class TestRetryingRegistry:
    """Tests for retries of transient failures."""

    def test_transient_failures_are_retried(self):
        flaky = FlakyRegistry(failures=2)
        registry = RetryingRegistry(flaky, attempts=3, wait_min=0, wait_max=0)
        assert registry.resolve("base", "1") is None
        assert flaky.calls == 3

    def test_gives_up_after_attempts(self):
        flaky = FlakyRegistry(failures=5)
        registry = RetryingRegistry(flaky, attempts=2, wait_min=0, wait_max=0)
        with pytest.raises(RegistryUnavailableError):
            registry.resolve("base", "1")
        assert flaky.calls == 2

    def test_unknown_image_is_not_retried(self):
        flaky = FlakyRegistry(failures=0)
        assert RetryingRegistry(flaky, wait_min=0, wait_max=0).resolve("base") is None
        assert flaky.calls == 1
