"""
Unit tests for the utility helpers.
"""
import threading
import time

import pytest

from kiln.MODELS.filesystem import FILE, FileEntry
from kiln.UTILS.hashing import digest_value, short_id
from kiln.UTILS.identities import resolve_identity
from kiln.UTILS.keyed_locks import KeyedLocks
from kiln.UTILS.memory import parse_memory_string, warn_if_exceeds_host
from kiln.UTILS.string_interpolation import EnvironmentInterpolator


class TestMemory:
    """Tests for memory size parsing."""

    @pytest.mark.parametrize("value, expected", [
        ("512m", 512 * 1024 ** 2),
        ("2g", 2 * 1024 ** 3),
        ("1.5GB", int(1.5 * 1024 ** 3)),
        ("100", 100),
        (4096, 4096),
        (None, None),
        ("", None),
    ])
    def test_parse(self, value, expected):
        assert parse_memory_string(value) == expected

    def test_unparseable_size(self):
        with pytest.raises(ValueError):
            parse_memory_string("lots")

    @pytest.mark.parametrize("value", ["inf", "-inf", "1e400", "2e400g"])
    def test_non_finite_size(self, value):
        with pytest.raises(ValueError):
            parse_memory_string(value)

    def test_warns_when_limit_exceeds_host(self, monkeypatch, caplog):
        monkeypatch.setattr("kiln.UTILS.memory.host_memory_bytes", lambda: 1024)
        assert warn_if_exceeds_host(2048)
        assert "exceeds host memory" in caplog.text
        assert not warn_if_exceeds_host(512)


class TestInterpolation:
    """Tests for EnvironmentInterpolator."""

    def test_forms(self):
        context = {"A": "1", "EMPTY": ""}
        assert EnvironmentInterpolator.interpolate("$A ${A}", context) == "1 1"
        assert EnvironmentInterpolator.interpolate("${EMPTY:-x} ${A:+y}", context) == "x y"
        assert EnvironmentInterpolator.interpolate("${MISSING}", context) == ""

    def test_strict(self):
        with pytest.raises(KeyError):
            EnvironmentInterpolator.interpolate("$MISSING", {}, strict=True)

    def test_shell_keeps_single_quotes(self):
        script = "echo '$A' \"$A\" $A"
        assert EnvironmentInterpolator.interpolate_shell(script, {"A": "1"}) == "echo '$A' \"1\" 1"


class TestIdentities:
    """Tests for user and group resolution."""

    entries = {
        "/etc/passwd": FileEntry(kind=FILE, content=b"root:x:0:0::/root:/bin/sh\nsearch:x:1000:1001::/:/bin/sh\n"),
        "/etc/group": FileEntry(kind=FILE, content=b"root:x:0:\nsearch:x:1001:\nops:x:50:\n"),
    }

    def test_named_user_and_group(self):
        assert resolve_identity(self.entries, "search") == (1000, 1001)
        assert resolve_identity(self.entries, "search", "ops") == (1000, 50)

    def test_numeric_and_unset(self):
        assert resolve_identity(self.entries, None) == (0, 0)
        assert resolve_identity(self.entries, "1000") == (1000, 1001)
        assert resolve_identity(self.entries, "4242") == (4242, 4242)

    def test_undeclared_names(self):
        with pytest.raises(KeyError):
            resolve_identity(self.entries, "ghost")
        with pytest.raises(KeyError):
            resolve_identity(self.entries, "search", "ghosts")


class TestKeyedLocks:
    """Tests for per-key locking."""

    def test_same_key_is_exclusive(self):
        locks = KeyedLocks()
        inside = []
        overlap = []

        def worker():
            with locks.hold("key"):
                inside.append(1)
                if len(inside) > 1:
                    overlap.append(1)
                time.sleep(0.01)
                inside.pop()

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert not overlap

    def test_locks_are_dropped_when_unused(self):
        locks = KeyedLocks()
        with locks.hold("a"):
            assert locks.is_held("a")
            with locks.hold("b"):
                assert len(locks) == 2
        assert len(locks) == 0


def test_digests_are_canonical():
    assert digest_value({"a": 1, "b": 2}) == digest_value({"b": 2, "a": 1})
    assert short_id("sha256:" + "ab" * 32) == "ab" * 6
