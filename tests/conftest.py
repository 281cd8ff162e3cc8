"""
Shared fixtures: engines with in-memory or on-disk state and a small base image.
"""
import pytest

from kiln.MANAGERS.engine import Engine
from kiln.MODELS.engine_config import EngineConfig

BASE_FILES = {
    "/etc/passwd": "root:x:0:0:root:/root:/bin/sh\nsearch:x:1000:1000::/home/search:/bin/sh\n",
    "/etc/group": "root:x:0:\nsearch:x:1000:\n",
    "/bin/sh": b"",
    "/tmp/.keep": b"",
}


@pytest.fixture
def engine():
    """Engine keeping all state in memory, with base:1 imported."""
    engine = Engine(EngineConfig())
    engine.import_files("base:1", BASE_FILES)
    yield engine
    engine.close()


@pytest.fixture
def disk_engine(tmp_path):
    """Engine persisting state below tmp_path, with base:1 imported."""
    engine = Engine(EngineConfig(state_dir=str(tmp_path / "state")))
    engine.import_files("base:1", BASE_FILES)
    return engine


@pytest.fixture
def base_files():
    return dict(BASE_FILES)
