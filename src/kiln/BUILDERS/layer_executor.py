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
Applies single build instructions to filesystem snapshots.

FROM resolves a base image through the registry. RUN goes through the
sandbox. COPY merges build context files. Every other instruction only
changes image metadata and yields an empty diff.
"""

import hashlib
import logging
import posixpath
import threading
from collections import Counter
from typing import Dict, List, Optional, Tuple

from ..exceptions import BaseImageNotFoundError, ExecutionError, RunCommandFailedError
from ..MODELS.container_image import ExposedPort, Image, ImageMetadata
from ..MODELS.filesystem import FILE, FileEntry, FilesystemDiff, Snapshot, normalize_path
from ..MODELS.instructions import (
    CmdInstruction,
    CopyInstruction,
    EntrypointInstruction,
    EnvInstruction,
    ExposeInstruction,
    FromInstruction,
    Instruction,
    LabelInstruction,
    RunInstruction,
    UserInstruction,
    WorkdirInstruction,
)
from ..MODELS.layer import Layer
from ..REGISTRY.image_registry import ImageRegistry
from ..RUNNERS.sandbox import RunEnvironment, SandboxExecutor
from ..UTILS.hashing import digest_value
from ..UTILS.identities import resolve_identity
from ..UTILS.string_interpolation import EnvironmentInterpolator
from .build_context import BuildContext

logger = logging.getLogger(__name__)


class LayerExecutor:
    """
    Turns (parent snapshot, instruction) into a layer.

    The executor never looks at the cache; the builder decides whether
    ``apply`` needs to run at all.
    """

    def __init__(self,
                 registry: ImageRegistry,
                 sandbox: SandboxExecutor,
                 default_timeout: Optional[float] = None):
        """
        Initialize the executor.

        Args:
            registry: Resolves FROM references.
            sandbox: Runs RUN commands.
            default_timeout: Seconds a RUN command may take. None means no limit.
        """
        self.registry = registry
        self.sandbox = sandbox
        self.default_timeout = default_timeout
        self._lock = threading.Lock()
        self._executions: Counter = Counter()

    # Counters

    def _count(self, kind: str) -> None:
        with self._lock:
            self._executions[kind] += 1

    def executions(self, kind: Optional[str] = None) -> int:
        """Number of instructions applied so far, optionally of one kind."""
        with self._lock:
            if kind is None:
                return sum(self._executions.values())
            return self._executions[kind]

    # FROM

    def resolve_base(self, instruction: FromInstruction) -> Image:
        """
        Raises:
            BaseImageNotFoundError: If the registry does not know the image.
        """
        image = self.registry.resolve(instruction.image, instruction.tag)
        if image is None:
            raise BaseImageNotFoundError(instruction.reference)
        logger.debug("Resolved %s to %s", instruction.reference, image.id)
        return image

    # Cache inputs

    def cache_inputs(self,
                     instruction: Instruction,
                     metadata: ImageMetadata,
                     context: BuildContext) -> Dict[str, str]:
        """
        Digests of everything besides the instruction text and the parent layer
        that influences the layer ``instruction`` produces.

        Raises:
            SourceNotFoundError: If a COPY source is missing from the context.
        """
        if isinstance(instruction, RunInstruction):
            return {
                "env": digest_value(metadata.env),
                "workdir": metadata.working_directory,
                "user": f"{metadata.user or ''}:{metadata.group or ''}",
            }
        if isinstance(instruction, CopyInstruction):
            files = {}
            for source in instruction.sources:
                for path in context.resolve(source):
                    files[path] = f"{hashlib.sha256(context.read(path)).hexdigest()}:{context.mode(path):o}"
            return {
                "files": digest_value(files),
                "destination": self._destination(instruction, metadata),
                "chown": self._interpolate(instruction.chown or "", metadata),
            }
        return {}

    # Apply

    def apply(self,
              parent_id: Optional[str],
              snapshot: Snapshot,
              instruction: Instruction,
              metadata: ImageMetadata,
              context: BuildContext,
              layer_id: str) -> Layer:
        """
        Produce the layer for ``instruction`` on top of ``snapshot``.

        Args:
            parent_id: Id of the layer ``snapshot`` was reconstructed from.
            snapshot: Filesystem before the instruction.
            instruction: Any instruction except FROM.
            metadata: Image metadata accumulated before the instruction.
            context: Build context for COPY.
            layer_id: The cache key; becomes the layer id unless the
                instruction is not cacheable.

        Raises:
            ExecutionError: Or a subclass, if the instruction fails. Nothing
                is recorded anywhere in that case.
        """
        if isinstance(instruction, FromInstruction):
            raise ValueError("FROM is resolved with resolve_base, not applied")

        cacheable = True
        if isinstance(instruction, RunInstruction):
            diff = self._run(instruction, snapshot, metadata)
            cacheable = instruction.cacheable
        elif isinstance(instruction, CopyInstruction):
            diff = self._copy(instruction, snapshot, metadata, context)
        else:
            diff = FilesystemDiff()
        self._count(instruction.kind)

        if not cacheable:
            # identical commands may produce different results
            layer_id = digest_value({"key": layer_id, "diff": diff.digest()})
        return Layer(
            id=layer_id,
            parent_id=parent_id,
            diff=diff,
            created_by=instruction.describe(),
            cacheable=cacheable,
        )

    def _run(self, instruction: RunInstruction, snapshot: Snapshot,
             metadata: ImageMetadata) -> FilesystemDiff:
        try:
            uid, gid = resolve_identity(snapshot.entries, metadata.user, metadata.group)
        except KeyError as e:
            raise ExecutionError(f"unable to run as {metadata.user}: {e.args[0]}")

        environment = RunEnvironment(
            env=dict(metadata.env),
            workdir=metadata.working_directory,
            uid=uid,
            gid=gid,
            timeout=self.default_timeout,
        )
        logger.debug("Executing in %s sandbox: %s", self.sandbox.name, instruction.command)
        result = self.sandbox.execute(instruction.command, snapshot, environment)
        for line in result.output.splitlines():
            logger.info(" %s", line)
        if result.exit_code != 0:
            raise RunCommandFailedError(instruction.command, result.exit_code, result.output)
        return result.diff

    def _copy(self, instruction: CopyInstruction, snapshot: Snapshot,
              metadata: ImageMetadata, context: BuildContext) -> FilesystemDiff:
        uid, gid = 0, 0
        if instruction.chown:
            owner, _, group = self._interpolate(instruction.chown, metadata).partition(':')
            try:
                uid, gid = resolve_identity(snapshot.entries, owner, group or None)
            except KeyError as e:
                raise ExecutionError(f"COPY --chown: {e.args[0]}")

        destination = self._destination(instruction, metadata)
        targets: List[Tuple[str, str]] = []
        into_directory = destination.endswith("/") or len(instruction.sources) > 1
        for source in instruction.sources:
            matches = context.resolve(source)
            single_file = len(matches) == 1 and source.strip("/") in context
            if not single_file:
                into_directory = True
            targets.extend(matches.items())

        base = normalize_path(destination)
        existing = snapshot.get(base)
        if existing is not None and existing.is_dir:
            into_directory = True

        upserts: Dict[str, FileEntry] = {}
        for path, relative in targets:
            target = normalize_path(relative, base) if into_directory else base
            current = snapshot.get(target)
            if current is not None and current.is_dir:
                raise ExecutionError(f"COPY: cannot overwrite directory {target} with a file")
            self._ensure_parents(posixpath.dirname(target), snapshot, upserts, uid, gid)
            upserts[target] = FileEntry(
                kind=FILE, content=context.read(path), mode=context.mode(path), uid=uid, gid=gid
            )
        if into_directory:
            self._ensure_parents(base, snapshot, upserts, uid, gid)
        return FilesystemDiff(upserts=upserts)

    @staticmethod
    def _ensure_parents(directory: str, snapshot: Snapshot,
                        upserts: Dict[str, FileEntry], uid: int, gid: int) -> None:
        missing = []
        current = directory
        while current not in upserts:
            entry = snapshot.get(current)
            if entry is not None:
                if not entry.is_dir:
                    raise ExecutionError(f"COPY: {current} exists and is not a directory")
                break
            missing.append(current)
            if current == "/":
                break
            current = posixpath.dirname(current)
        for path in missing:
            upserts[path] = FileEntry.directory(uid=uid, gid=gid)

    @staticmethod
    def _interpolate(value: str, metadata: ImageMetadata) -> str:
        return EnvironmentInterpolator.interpolate(value, metadata.env)

    def _destination(self, instruction: CopyInstruction, metadata: ImageMetadata) -> str:
        raw = self._interpolate(instruction.destination, metadata)
        path = normalize_path(raw, metadata.working_directory)
        # trailing slash marks a directory destination
        return path + "/" if raw.endswith("/") and path != "/" else path

    # Metadata

    @staticmethod
    def apply_metadata(metadata: ImageMetadata, instruction: Instruction) -> ImageMetadata:
        """
        Fold a metadata instruction into ``metadata``; last write wins per key.

        FROM, RUN and COPY leave metadata unchanged.
        """
        env = metadata.env
        if isinstance(instruction, EnvInstruction):
            env = dict(metadata.env)
            for key, value in instruction.variables:
                env[key] = EnvironmentInterpolator.interpolate(value, env)
            return metadata.model_copy(update={"env": env})
        if isinstance(instruction, WorkdirInstruction):
            path = EnvironmentInterpolator.interpolate(instruction.path, env)
            return metadata.model_copy(
                update={"working_directory": normalize_path(path, metadata.working_directory)}
            )
        if isinstance(instruction, UserInstruction):
            group = instruction.group
            return metadata.model_copy(update={
                "user": EnvironmentInterpolator.interpolate(instruction.user, env),
                "group": EnvironmentInterpolator.interpolate(group, env) if group else None,
            })
        if isinstance(instruction, CmdInstruction):
            return metadata.model_copy(update={"cmd": instruction.args})
        if isinstance(instruction, EntrypointInstruction):
            return metadata.model_copy(update={"entrypoint": instruction.args})
        if isinstance(instruction, ExposeInstruction):
            ports = {(p.port, p.protocol) for p in metadata.exposed_ports}
            ports.update(instruction.ports)
            return metadata.model_copy(update={
                "exposed_ports": tuple(ExposedPort(port=port, protocol=protocol)
                                       for port, protocol in sorted(ports)),
            })
        if isinstance(instruction, LabelInstruction):
            labels = dict(metadata.labels)
            labels.update(instruction.labels)
            return metadata.model_copy(update={"labels": labels})
        return metadata
