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

import gc
import os

import psutil
import pytest

from kiln.exceptions import RunCommandFailedError
from kiln.MANAGERS.engine import Engine
from kiln.MODELS.engine_config import EngineConfig
from kiln.MODELS.run_config import ContainerRunConfig, VolumeMount

RECIPE = "FROM base:1\nRUN echo hi > /f\nENV A=1\n"


def test_repeated_builds_do_not_grow_layer_store(engine):
    """
    Rebuilding an unchanged recipe must reuse every layer.
    """
    engine.build(RECIPE)
    layers = len(engine.layer_store)
    for _ in range(100):
        engine.build(RECIPE)
    assert len(engine.layer_store) == layers


def test_failed_builds_leave_no_references(engine):
    for i in range(50):
        with pytest.raises(RunCommandFailedError):
            engine.build(f"FROM base:1\nRUN echo {i} > /f\nRUN false\n")

    engine.prune()
    base = engine.get_image("base:1")
    assert sorted(engine.layer_store.ids()) == sorted(base.layers)
    assert len(engine.cache) == 0


def test_no_cache_layers_are_reclaimed_by_prune(engine):
    for i in range(30):
        result = engine.build(f"FROM base:1\nRUN --no-cache echo {i} > /f\n")
        engine.remove_image(result.image.id)
    engine.prune()
    assert sorted(engine.layer_store.ids()) == sorted(engine.get_image("base:1").layers)


def test_engine_file_handles(tmp_path, base_files):
    """
    Checks that persisting state does not leave file handles open.
    """
    process = psutil.Process(os.getpid())
    if not hasattr(process, "num_fds"):
        pytest.skip("num_fds not available on this platform")

    state_dir = str(tmp_path / "state")
    engine = Engine(EngineConfig(state_dir=state_dir))
    engine.import_files("base:1", base_files)
    engine.build(RECIPE, tags=["app:1"])
    engine.volumes.create("data")
    gc.collect()
    initial_fds = process.num_fds()

    for i in range(20):
        engine = Engine(EngineConfig(state_dir=state_dir))
        engine.build(RECIPE + f"ENV B={i}\n")
        engine.run(ContainerRunConfig(
            image="app:1",
            command=["sh", "-c", f"echo {i} > /data/f"],
            volumes=[VolumeMount(name="data", target="/data")],
        ))
        del engine

    gc.collect()
    assert process.num_fds() <= initial_fds + 5
