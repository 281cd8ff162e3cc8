"""
Unit tests for the in-process script sandbox and its shell.
"""
import pytest

from kiln.exceptions import BuildTimeoutError
from kiln.MODELS.filesystem import FILE, FileEntry, Snapshot
from kiln.RUNNERS.sandbox import ChrootSandbox, RunEnvironment, ScriptSandbox, create_sandbox
from kiln.RUNNERS.script_shell import split_commands


@pytest.fixture
def snapshot():
    return Snapshot({
        "/": FileEntry.directory(),
        "/etc": FileEntry.directory(),
        "/etc/passwd": FileEntry(kind=FILE, content=b"root:x:0:0:root:/root:/bin/sh\n"),
        "/etc/group": FileEntry(kind=FILE, content=b"root:x:0:\n"),
        "/tmp": FileEntry.directory(),
        "/tmp/old": FileEntry(kind=FILE, content=b"old"),
    })


def execute(command, snapshot, **kwargs):
    return ScriptSandbox().execute(command, snapshot, RunEnvironment(**kwargs))


class TestScriptSandbox:
    """Tests for ScriptSandbox."""

    def test_echo_redirect_creates_file(self, snapshot):
        result = execute("echo hi > /f", snapshot)
        assert result.exit_code == 0
        assert result.diff.upserts["/f"].content == b"hi\n"
        assert not result.diff.deletions

    def test_snapshot_is_not_mutated(self, snapshot):
        before = dict(snapshot.entries)
        execute("rm -rf /tmp && echo x > /f", snapshot)
        assert dict(snapshot.entries) == before

    def test_append_and_cat(self, snapshot):
        result = execute("echo a > /f; echo b >> /f; cat /f", snapshot)
        assert result.diff.upserts["/f"].content == b"a\nb\n"
        assert result.output == "a\nb\n"

    def test_rm_directory_is_one_deletion(self, snapshot):
        result = execute("rm -r /tmp", snapshot)
        assert result.diff.deletions == frozenset({"/tmp"})

    def test_non_zero_exit(self, snapshot):
        assert execute("false", snapshot).exit_code == 1
        assert execute("exit 3", snapshot).exit_code == 3
        assert execute("no-such-program", snapshot).exit_code == 127

    def test_and_or_sequencing(self, snapshot):
        result = execute("false && echo no > /a || echo yes > /b", snapshot)
        assert "/a" not in result.diff.upserts
        assert result.diff.upserts["/b"].content == b"yes\n"

    def test_environment_and_workdir(self, snapshot):
        result = execute('echo "$GREETING" > out', snapshot, env={"GREETING": "hello"}, workdir="/tmp")
        assert result.diff.upserts["/tmp/out"].content == b"hello\n"

    def test_single_quotes_are_not_expanded(self, snapshot):
        result = execute("echo '$HOME' > /f", snapshot, env={"HOME": "/root"})
        assert result.diff.upserts["/f"].content == b"$HOME\n"

    def test_files_are_owned_by_run_user(self, snapshot):
        result = execute("mkdir -p /data/a && touch /data/a/f", snapshot, uid=1000, gid=1000)
        entry = result.diff.upserts["/data/a/f"]
        assert (entry.uid, entry.gid) == (1000, 1000)
        assert result.diff.upserts["/data"].is_dir

    def test_useradd_and_chown(self, snapshot):
        result = execute("useradd -m -u 1000 search && mkdir /data && chown -R search:search /data", snapshot)
        assert result.exit_code == 0
        passwd = result.diff.upserts["/etc/passwd"].content.decode()
        assert "search:x:1000:1000::/home/search:/bin/sh" in passwd
        data = result.diff.upserts["/data"]
        assert (data.uid, data.gid) == (1000, 1000)
        assert result.diff.upserts["/home/search"].uid == 1000

    def test_chmod(self, snapshot):
        result = execute("touch /run.sh && chmod 755 /run.sh && chmod o-x /run.sh", snapshot)
        assert result.diff.upserts["/run.sh"].mode == 0o754

    def test_cp_and_mv(self, snapshot):
        result = execute("cp /tmp/old /copy && mv /tmp/old /moved", snapshot)
        assert result.diff.upserts["/copy"].content == b"old"
        assert result.diff.upserts["/moved"].content == b"old"
        assert "/tmp/old" in result.diff.deletions

    def test_sh_c(self, snapshot):
        result = execute("sh -c 'echo nested > /n'", snapshot)
        assert result.diff.upserts["/n"].content == b"nested\n"

    def test_sh_c_output_can_be_redirected(self, snapshot):
        result = execute('sh -c "echo hi; exit 3" > /f', snapshot)
        assert result.exit_code == 3
        assert result.diff.upserts["/f"].content == b"hi\n"
        assert result.output == ""

    def test_sh_c_output_reaches_caller(self, snapshot):
        result = execute("sh -c 'echo a; no-such-program'; echo b", snapshot)
        assert "sh: no-such-program: not found\n" in result.output
        assert "a\nb\n" in result.output

    def test_missing_parent_fails(self, snapshot):
        result = execute("echo x > /missing/f", snapshot)
        assert result.exit_code == 1
        assert result.diff.is_empty

    def test_timeout(self, snapshot):
        with pytest.raises(BuildTimeoutError) as excinfo:
            execute("echo start > /f; sleep 5", snapshot, timeout=0.1)
        assert isinstance(excinfo.value, TimeoutError)
        assert excinfo.value.timeout == 0.1


class TestSplitCommands:
    """Tests for the command splitter."""

    def test_respects_quotes(self):
        assert split_commands("echo 'a; b' && echo c") == [(None, "echo 'a; b'"), ("&&", "echo c")]

    def test_newlines_and_semicolons(self):
        assert [text for _, text in split_commands("a\nb; c")] == ["a", "b", "c"]


class TestSandboxSelection:
    """Tests for create_sandbox."""

    def test_default_is_script(self):
        assert isinstance(create_sandbox(), ScriptSandbox)

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            create_sandbox("vm")

    def test_chroot_falls_back_when_unavailable(self, monkeypatch):
        monkeypatch.setattr(ChrootSandbox, "is_available", property(lambda self: False))
        assert isinstance(create_sandbox("chroot"), ScriptSandbox)

    def test_scan_round_trips_materialized_tree(self, tmp_path, snapshot):
        sandbox = ChrootSandbox()
        rootfs = tmp_path / "rootfs"
        sandbox.materialize(snapshot, rootfs)
        scanned = ChrootSandbox.scan(rootfs)
        assert scanned.read("/tmp/old") == b"old"
        assert scanned.get("/etc").is_dir
