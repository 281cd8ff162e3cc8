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
Sandboxed command execution against filesystem snapshots.

A sandbox runs one command on a private copy of a snapshot and reports the
resulting diff. It never mutates the snapshot it was given and never
touches the host outside its own scratch space.

Known limitation: the build cache assumes a command produces the same diff
for the same snapshot, command and inputs. Real programs can read clocks,
networks or random sources; such RUN steps must be marked ``--no-cache``.
"""

import os
import shlex
import shutil
import subprocess
import sys
import tempfile
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from ..exceptions import BuildTimeoutError
from ..MODELS.filesystem import DIRECTORY, FILE, SYMLINK, FileEntry, FilesystemDiff, Snapshot
from .script_shell import ScriptShell

logger = logging.getLogger(__name__)

DEFAULT_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"


@dataclass(frozen=True)
class RunEnvironment:
    """Process settings for a sandboxed command."""

    env: Dict[str, str] = field(default_factory=dict)
    workdir: str = "/"
    uid: int = 0
    gid: int = 0
    timeout: Optional[float] = None


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of a sandboxed command."""

    diff: FilesystemDiff
    exit_code: int
    output: str = ""


class SandboxExecutor(ABC):
    """
    Contract for command execution collaborators.
    """

    name = "abstract"

    @property
    def is_available(self) -> bool:
        return True

    @abstractmethod
    def execute(self, command: str, snapshot: Snapshot, environment: RunEnvironment) -> ExecutionResult:
        """
        Run ``command`` against a copy of ``snapshot``.

        Raises:
            BuildTimeoutError: If ``environment.timeout`` elapses; no partial
                state is reported.
        """
        pass


class ScriptSandbox(SandboxExecutor):
    """
    Deterministic in-process sandbox backed by :class:`ScriptShell`.
    """

    name = "script"

    def execute(self, command: str, snapshot: Snapshot, environment: RunEnvironment) -> ExecutionResult:
        entries = dict(snapshot.entries)
        shell = ScriptShell(
            entries,
            env=environment.env,
            cwd=environment.workdir,
            uid=environment.uid,
            gid=environment.gid,
            timeout=environment.timeout,
        )
        exit_code = shell.run(command)
        diff = Snapshot(entries).diff_against(snapshot)
        return ExecutionResult(diff=diff, exit_code=exit_code, output=shell.text_output)


class ChrootSandbox(SandboxExecutor):
    """
    Runs real programs with ``/bin/sh -c`` inside a chroot of the materialized snapshot.
    Requires root on Linux; the snapshot must provide its own shell and binaries.
    """

    name = "chroot"

    def __init__(self, scratch_dir: Optional[str] = None):
        """
        Args:
            scratch_dir: Parent directory for temporary root filesystems.
        """
        self.scratch_dir = scratch_dir
        self._is_linux = sys.platform.startswith("linux")
        self._is_root = hasattr(os, "geteuid") and os.geteuid() == 0

    @property
    def is_available(self) -> bool:
        # chroot requires root on Linux
        return self._is_linux and self._is_root and shutil.which("chroot") is not None

    def execute(self, command: str, snapshot: Snapshot, environment: RunEnvironment) -> ExecutionResult:
        env = dict(environment.env)
        env.setdefault("PATH", DEFAULT_PATH)
        script = f"cd {shlex.quote(environment.workdir)} && {command}"

        with tempfile.TemporaryDirectory(prefix="kiln-sandbox-", dir=self.scratch_dir) as tmp:
            rootfs = Path(tmp) / "rootfs"
            self.materialize(snapshot, rootfs)
            argv = [
                "chroot", f"--userspec={environment.uid}:{environment.gid}",
                str(rootfs), "/bin/sh", "-c", script,
            ]
            logger.debug("Running in chroot %s: %s", rootfs, command)
            try:
                completed = subprocess.run(
                    argv,
                    env=env,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                    errors="replace",
                    timeout=environment.timeout,
                    # Avoid shell=True for security reasons (CWE-78)
                    shell=False,
                )
            except subprocess.TimeoutExpired:
                raise BuildTimeoutError(command, environment.timeout)
            after = self.scan(rootfs)

        return ExecutionResult(
            diff=after.diff_against(snapshot),
            exit_code=completed.returncode,
            output=completed.stdout or "",
        )

    def materialize(self, snapshot: Snapshot, rootfs: Path) -> None:
        """Write a snapshot out as a directory tree."""
        rootfs.mkdir(parents=True, exist_ok=True)
        for path in snapshot:
            entry = snapshot.entries[path]
            target = rootfs / path.lstrip("/") if path != "/" else rootfs
            if entry.kind == DIRECTORY:
                target.mkdir(parents=True, exist_ok=True)
            elif entry.kind == SYMLINK:
                os.symlink(entry.content.decode("utf-8"), target)
                if self._is_root:
                    os.lchown(target, entry.uid, entry.gid)
                continue
            else:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(entry.content)
            os.chmod(target, entry.mode)
            if self._is_root:
                os.chown(target, entry.uid, entry.gid)

    @staticmethod
    def scan(rootfs: Path) -> Snapshot:
        """Read a directory tree back into a snapshot."""
        entries: Dict[str, FileEntry] = {}

        def record(path: str, host_path: str) -> None:
            info = os.lstat(host_path)
            mode = info.st_mode & 0o7777
            if os.path.islink(host_path):
                entries[path] = FileEntry(kind=SYMLINK, content=os.readlink(host_path).encode("utf-8"),
                                          mode=mode, uid=info.st_uid, gid=info.st_gid)
            elif os.path.isdir(host_path):
                entries[path] = FileEntry.directory(mode=mode, uid=info.st_uid, gid=info.st_gid)
            else:
                with open(host_path, 'rb') as f:
                    content = f.read()
                entries[path] = FileEntry(kind=FILE, content=content, mode=mode,
                                          uid=info.st_uid, gid=info.st_gid)

        record("/", str(rootfs))
        for current, dirnames, filenames in os.walk(rootfs):
            relative = os.path.relpath(current, rootfs)
            base = "/" if relative == "." else "/" + relative.replace(os.sep, "/")
            for name in dirnames + filenames:
                record(base.rstrip("/") + "/" + name, os.path.join(current, name))
        return Snapshot(entries)


def create_sandbox(kind: str = "script", scratch_dir: Optional[str] = None) -> SandboxExecutor:
    """
    Create the configured sandbox, falling back to the script sandbox when
    the requested one is not available on this host.
    """
    if kind == "chroot":
        sandbox = ChrootSandbox(scratch_dir)
        if sandbox.is_available:
            return sandbox
        logger.warning("chroot sandbox not available (requires root on Linux); "
                       "falling back to the script sandbox")
    elif kind != "script":
        raise ValueError(f"Unknown sandbox kind: {kind}")
    return ScriptSandbox()
