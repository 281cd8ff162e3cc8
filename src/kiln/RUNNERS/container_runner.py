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
Container runs: an image's command executed through the sandbox with named
volumes mounted.

Changes the command makes below a volume mount path are written back to the
volume's storage root; every other change is discarded with the run.
"""

import logging
import os
import posixpath
import shlex
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from dotenv import dotenv_values

from ..exceptions import InvalidRunConfigError
from ..MANAGERS.volume_manager import VolumeManager
from ..MODELS.container_image import Image
from ..MODELS.filesystem import FILE, SYMLINK, FileEntry, FilesystemDiff, Snapshot, is_within, normalize_path
from ..MODELS.run_config import ContainerRunConfig, Volume
from ..STORE.image_store import ImageStore
from ..STORE.layer_store import LayerStore
from ..UTILS.identities import resolve_identity
from ..UTILS.memory import parse_memory_string, warn_if_exceeds_host
from .sandbox import RunEnvironment, SandboxExecutor

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    """Outcome of a container run."""

    container_id: str
    image_id: str
    exit_code: int
    output: str = ""
    memory_limit: Optional[int] = None


def load_env_files(paths: Iterable[str]) -> Dict[str, str]:
    """
    Read environment overrides from dotenv files; later files win.

    Args:
        paths: Paths of ``KEY=value`` files.

    Returns:
        Merged variables. Keys without a value are skipped.
    """
    environment: Dict[str, str] = {}
    for path in paths:
        if not os.path.exists(path):
            raise FileNotFoundError(f"Env file not found: {path}")
        for key, value in dotenv_values(path).items():
            if value is not None:
                environment[key] = value
    return environment


class ContainerRunner:
    """
    Runs containers from stored images.
    """

    def __init__(self,
                 image_store: ImageStore,
                 layer_store: LayerStore,
                 volume_manager: VolumeManager,
                 sandbox: SandboxExecutor,
                 default_timeout: Optional[float] = None):
        self.image_store = image_store
        self.layer_store = layer_store
        self.volume_manager = volume_manager
        self.sandbox = sandbox
        self.default_timeout = default_timeout

    @staticmethod
    def validate(config: ContainerRunConfig) -> Optional[int]:
        """
        Check a run configuration before anything is attached.

        Returns:
            The memory limit in bytes, or None.

        Raises:
            InvalidRunConfigError: For a malformed or non-positive memory
                limit, or duplicate mount paths.
        """
        try:
            limit = parse_memory_string(config.memory_limit)
        except ValueError as e:
            raise InvalidRunConfigError(str(e))
        if limit is not None:
            if limit <= 0:
                raise InvalidRunConfigError(f"memory limit must be positive, got {config.memory_limit!r}")
            # enforced by the execution environment, not by the engine
            warn_if_exceeds_host(limit)

        targets = [mount.target for mount in config.volumes]
        if len(set(targets)) != len(targets):
            raise InvalidRunConfigError("a path can only be mounted once")
        return limit

    def run(self, config: ContainerRunConfig) -> RunResult:
        """
        Run a container to completion.

        Volumes are always detached when the run ends, whether it succeeds,
        fails or times out.
        """
        limit = self.validate(config)
        image = self.image_store.get(config.image)
        command = self._command(config, image)

        self.layer_store.retain(image.layers)
        attached: List[Tuple[Volume, str]] = []
        try:
            snapshot = self.layer_store.snapshot(image.top_layer)
            uid, gid = self._identity(config, image, snapshot)
            workdir = image.metadata.working_directory
            environment = dict(image.metadata.env)
            environment.update(config.environment)

            for mount in config.volumes:
                mount_path = normalize_path(mount.target, workdir)
                self.volume_manager.attach(mount.name, config, mount_path, uid, gid)
                attached.append((self.volume_manager.get(mount.name), mount_path))

            rootfs = self._mount(snapshot, attached)
            logger.info("Running %s in container %s", command, config.container_id)
            result = self.sandbox.execute(
                command,
                rootfs,
                RunEnvironment(env=environment, workdir=workdir, uid=uid, gid=gid,
                               timeout=self.default_timeout),
            )
            for volume, mount_path in attached:
                self._write_back(volume, mount_path, result.diff)
        finally:
            for volume, _ in attached:
                self.volume_manager.detach(volume.id, config.container_id)
            self.layer_store.release(image.layers)

        logger.info("Container %s exited with %d", config.container_id, result.exit_code)
        return RunResult(
            container_id=config.container_id,
            image_id=image.id,
            exit_code=result.exit_code,
            output=result.output,
            memory_limit=limit,
        )

    @staticmethod
    def _command(config: ContainerRunConfig, image: Image) -> str:
        args = list(config.command) or image.metadata.command
        if not args:
            raise InvalidRunConfigError(f"image {image.id} has no command and none was given")
        if len(args) == 3 and args[1] == "-c" and posixpath.basename(args[0]) == "sh":
            return args[2]
        return shlex.join(args)

    @staticmethod
    def _identity(config: ContainerRunConfig, image: Image, snapshot: Snapshot) -> Tuple[int, int]:
        if not config.user:
            return image.metadata.uid, image.metadata.gid
        user, _, group = config.user.partition(':')
        try:
            return resolve_identity(snapshot.entries, user, group or None)
        except KeyError as e:
            raise InvalidRunConfigError(e.args[0])

    @staticmethod
    def _mount(snapshot: Snapshot, attached: List[Tuple[Volume, str]]) -> Snapshot:
        """Overlay volume contents on the image filesystem; mounts shadow what is below them."""
        entries = dict(snapshot.entries)
        for volume, mount_path in attached:
            for path in [p for p in entries if is_within(p, mount_path)]:
                del entries[path]
            parent = posixpath.dirname(mount_path)
            while parent not in entries:
                entries[parent] = FileEntry.directory()
                if parent == "/":
                    break
                parent = posixpath.dirname(parent)

            uid, gid = volume.owner_uid or 0, volume.owner_gid or 0
            root = Path(volume.storage_root)
            entries[mount_path] = FileEntry.directory(uid=uid, gid=gid)
            for current, dirnames, filenames in os.walk(root):
                relative = os.path.relpath(current, root)
                base = mount_path if relative == "." else posixpath.join(mount_path, relative.replace(os.sep, "/"))
                for name in dirnames + filenames:
                    host_path = os.path.join(current, name)
                    # links are carried as links, never read through
                    if os.path.islink(host_path):
                        entry = FileEntry(kind=SYMLINK, content=os.readlink(host_path).encode("utf-8"),
                                          mode=0o777, uid=uid, gid=gid)
                    elif os.path.isdir(host_path):
                        mode = os.stat(host_path).st_mode & 0o7777
                        entry = FileEntry.directory(mode=mode, uid=uid, gid=gid)
                    else:
                        with open(host_path, 'rb') as f:
                            content = f.read()
                        mode = os.stat(host_path).st_mode & 0o7777
                        entry = FileEntry(kind=FILE, content=content, mode=mode, uid=uid, gid=gid)
                    entries[posixpath.join(base, name)] = entry
        return Snapshot(entries)

    @staticmethod
    def _write_back(volume: Volume, mount_path: str, diff: FilesystemDiff) -> None:
        root = Path(volume.storage_root)
        real_root = os.path.realpath(root)

        def host(path: str) -> Path:
            relative = path[len(mount_path):].lstrip("/")
            return root / relative if relative else root

        def contained(target: Path) -> bool:
            # the entry itself may be a link, the directories above it may not leave the volume
            parent = os.path.realpath(target.parent)
            if parent == real_root or parent.startswith(real_root + os.sep):
                return True
            logger.warning("Skipping %s: it resolves outside volume %s", target, volume.name)
            return False

        def clear(target: Path) -> None:
            if target.is_symlink() or target.is_file():
                target.unlink()
            elif target.is_dir():
                shutil.rmtree(target)

        for deleted in sorted(diff.deletions):
            if is_within(mount_path, deleted):
                # the mount point itself went away: clear the volume, keep its root
                targets = list(root.iterdir())
            elif is_within(deleted, mount_path):
                targets = [host(deleted)]
            else:
                continue
            for target in targets:
                if contained(target):
                    clear(target)

        for path in sorted(diff.upserts):
            if not is_within(path, mount_path):
                continue
            entry = diff.upserts[path]
            target = host(path)
            if target == root:
                if entry.is_dir:
                    os.chmod(root, entry.mode)
                continue
            if not contained(target):
                continue
            if entry.kind == SYMLINK:
                link = entry.content.decode("utf-8")
                if posixpath.isabs(link) or not is_within(normalize_path(link, posixpath.dirname(path)), mount_path):
                    logger.warning("Not writing link %s -> %s back to volume %s: it leaves the volume",
                                   path, link, volume.name)
                    continue
                clear(target)
                target.parent.mkdir(parents=True, exist_ok=True)
                os.symlink(link, target)
                continue
            if target.is_symlink() or (entry.is_dir and target.is_file()):
                target.unlink()
            if entry.is_dir:
                target.mkdir(parents=True, exist_ok=True)
            else:
                if target.is_dir():
                    shutil.rmtree(target)
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(entry.content)
            os.chmod(target, entry.mode)
        logger.debug("Wrote changes under %s back to volume %s", mount_path, volume.name)
