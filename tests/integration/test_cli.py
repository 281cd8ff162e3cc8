import pytest
from click.testing import CliRunner

from kiln.CLI.main import cli


@pytest.fixture
def state(tmp_path):
    return str(tmp_path / "state")


@pytest.fixture
def rootfs(tmp_path):
    root = tmp_path / "rootfs"
    (root / "etc").mkdir(parents=True)
    (root / "etc" / "passwd").write_text("root:x:0:0:root:/root:/bin/sh\n")
    (root / "etc" / "group").write_text("root:x:0:\n")
    (root / "tmp").mkdir()
    return str(root)


@pytest.fixture
def project(tmp_path):
    context = tmp_path / "project"
    context.mkdir()
    (context / "Kilnfile").write_text(
        'FROM base:1\nCOPY app.txt /app.txt\nRUN mkdir /data\nCMD ["cat", "/app.txt"]\n'
    )
    (context / "app.txt").write_text("hello from kiln\n")
    return context


def invoke(state, *args):
    return CliRunner().invoke(cli, ['--state-dir', state, '--log-level', 'WARNING', *args], obj={})


def test_cli_help():
    runner = CliRunner()
    result = runner.invoke(cli, ['--help'], obj={})
    assert result.exit_code == 0
    assert 'declarative container image builds' in result.output


def test_build_without_base_fails(state, project):
    result = invoke(state, 'build', str(project))
    assert result.exit_code == 1
    assert "base image 'base:1' not found" in result.output


def test_build_run_and_rebuild(state, rootfs, project):
    assert invoke(state, 'import', rootfs, '-t', 'base:1').exit_code == 0

    result = invoke(state, 'build', str(project), '-t', 'app:1')
    assert result.exit_code == 0, result.output
    assert "(0 cached, 3 executed)" in result.output
    assert "Tagged app:1" in result.output

    # state is reloaded from disk by the next invocation
    result = invoke(state, 'build', str(project), '-t', 'app:1')
    assert "(3 cached, 0 executed)" in result.output

    result = invoke(state, 'images')
    assert "app:1" in result.output
    assert "base:1" in result.output

    result = invoke(state, 'run', 'app:1')
    assert result.exit_code == 0
    assert result.output == "hello from kiln\n"


def test_context_change_rebuilds_from_copy(state, rootfs, project):
    invoke(state, 'import', rootfs, '-t', 'base:1')
    invoke(state, 'build', str(project), '-t', 'app:1')
    (project / "app.txt").write_text("changed\n")
    result = invoke(state, 'build', str(project), '-t', 'app:1')
    assert "(0 cached, 3 executed)" in result.output
    assert invoke(state, 'run', 'app:1').output == "changed\n"


def test_run_exit_code_and_env(state, rootfs, project):
    invoke(state, 'import', rootfs, '-t', 'base:1')
    invoke(state, 'build', str(project), '-t', 'app:1')

    result = invoke(state, 'run', '-e', 'NAME=kiln', 'app:1', '--', 'sh', '-c', 'echo $NAME; exit 4')
    assert result.exit_code == 4
    assert result.output == "kiln\n"


def test_invalid_memory_is_rejected(state, rootfs, project):
    invoke(state, 'import', rootfs, '-t', 'base:1')
    invoke(state, 'build', str(project), '-t', 'app:1')
    result = invoke(state, 'run', '-m', 'lots', 'app:1')
    assert result.exit_code == 1
    assert "Invalid memory size" in result.output

    result = invoke(state, "run", "-m", "inf", "app:1")
    assert result.exit_code == 1
    assert "Invalid memory size" in result.output


def test_volumes(state, rootfs, project):
    invoke(state, 'import', rootfs, '-t', 'base:1')
    invoke(state, 'build', str(project), '-t', 'app:1')

    assert invoke(state, 'volume', 'create', '--name', 'data').output == "data\n"
    assert invoke(state, 'volume', 'create', '--name', 'data').exit_code == 1

    result = invoke(state, 'run', '-v', 'data:/data', 'app:1', '--', 'sh', '-c', 'echo saved > /data/f')
    assert result.exit_code == 0
    result = invoke(state, 'run', '-v', 'data:/data', 'app:1', '--', 'cat', '/data/f')
    assert result.output == "saved\n"

    result = invoke(state, 'volume', 'ls')
    assert "data" in result.output
    assert "0:0" in result.output

    assert invoke(state, 'volume', 'rm', 'data').exit_code == 0
    assert invoke(state, 'volume', 'rm', 'data').exit_code == 1


def test_prune_keeps_tagged_images(state, rootfs, project):
    invoke(state, 'import', rootfs, '-t', 'base:1')
    invoke(state, 'build', str(project), '-t', 'app:1')
    (project / "app.txt").write_text("changed\n")
    invoke(state, 'build', str(project), '-t', 'app:1')

    result = invoke(state, 'prune')
    assert result.exit_code == 0
    assert "Removed" in result.output
    assert invoke(state, 'run', 'app:1').output == "changed\n"


def test_bad_config_file(tmp_path, state):
    config = tmp_path / "kiln.yml"
    config.write_text("cache_capacity: 0\n")
    result = CliRunner().invoke(cli, ['--config', str(config), '--state-dir', state, 'images'], obj={})
    assert result.exit_code == 1


def test_rmi_untags_then_deletes(state, rootfs, project):
    invoke(state, 'import', rootfs, '-t', 'base:1')
    invoke(state, 'build', str(project), '-t', 'app:1', '-t', 'app:latest')
    assert "SIZE" in invoke(state, 'images').output

    result = invoke(state, 'rmi', 'app:latest')
    assert result.output == "Untagged: app:latest\n"
    assert invoke(state, 'run', 'app:1').exit_code == 0

    result = invoke(state, 'rmi', 'app:1')
    assert result.output.startswith("Deleted: ")
    assert invoke(state, 'rmi', 'app:1').exit_code == 1
