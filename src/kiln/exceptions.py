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

"""Exceptions raised by the build engine, its stores and the volume manager."""

from typing import Iterable, Optional


class KilnError(Exception):
    """Base exception for all engine errors."""

    pass


# Parse time


class RecipeError(KilnError):
    """Raised when a recipe cannot be turned into instructions."""

    def __init__(self, message: str, line: Optional[int] = None):
        self.line = line
        if line is not None:
            message = f"line {line}: {message}"
        super().__init__(message)


class RecipeSyntaxError(RecipeError):
    """Raised when an instruction line does not match its grammar."""

    def __init__(self, message: str, line: Optional[int] = None, expected: Optional[str] = None):
        self.expected = expected
        if expected:
            message = f"{message} (expected: {expected})"
        super().__init__(message, line)


class UnknownInstructionError(RecipeError):
    """Raised for a keyword that is not part of the instruction set."""

    def __init__(self, keyword: str, line: Optional[int] = None):
        self.keyword = keyword
        super().__init__(f"unknown instruction '{keyword}'", line)


# Build time


class ExecutionError(KilnError):
    """
    Base exception for failures while applying an instruction.

    The builder fills in ``instruction_index`` and ``line`` before re-raising
    so the failing step can be pinpointed.
    """

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
        self.instruction_index: Optional[int] = None
        self.line: Optional[int] = None

    def at(self, instruction_index: int, line: Optional[int]) -> "ExecutionError":
        self.instruction_index = instruction_index
        self.line = line
        return self

    def __str__(self) -> str:
        if self.instruction_index is None:
            return self.message
        location = f"step {self.instruction_index + 1}"
        if self.line is not None:
            location += f" (line {self.line})"
        return f"{location}: {self.message}"


class BaseImageNotFoundError(ExecutionError):
    """Raised when FROM names an image the registry cannot resolve."""

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"base image '{reference}' not found")


class SourceNotFoundError(ExecutionError):
    """Raised when COPY references a path missing from the build context."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"COPY source '{path}' not found in build context")


class RunCommandFailedError(ExecutionError):
    """Raised when a RUN command exits with a non-zero status."""

    def __init__(self, command: str, exit_code: int, output: str = ""):
        self.command = command
        self.exit_code = exit_code
        self.output = output
        super().__init__(f"command '{command}' returned a non-zero code: {exit_code}")


class BuildTimeoutError(ExecutionError, TimeoutError):
    """Raised when a command exceeds its time limit; partial state is discarded."""

    def __init__(self, command: str, timeout: float):
        self.command = command
        self.timeout = timeout
        super().__init__(f"command '{command}' timed out after {timeout:g}s")


# Assembly time


class IncompleteImageError(KilnError):
    """Raised when an image cannot be finalized."""

    def __init__(self, requirement: str):
        self.requirement = requirement
        super().__init__(f"incomplete image: {requirement}")


# Stores and registry


class ImageNotFoundError(KilnError):
    """Raised when an image reference or id is unknown to the image store."""

    pass


class LayerNotFoundError(KilnError):
    """Raised when a layer id is unknown to the layer store."""

    pass


class RegistryUnavailableError(KilnError):
    """Raised by registries on transient failures; resolution may be retried."""

    pass


# Volumes and runs


class VolumeError(KilnError):
    """Base exception for volume management errors."""

    pass


class DuplicateVolumeError(VolumeError):
    """Raised when creating a volume whose name is already taken."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"volume '{name}' already exists")


class VolumeInUseError(VolumeError):
    """Raised when removing a volume that is still attached to a container."""

    def __init__(self, name: str, containers: Iterable[str]):
        self.name = name
        self.containers = sorted(containers)
        super().__init__(
            f"volume '{name}' is in use by container(s): {', '.join(self.containers)}"
        )


class VolumeNotFoundError(VolumeError):
    """Raised when a volume name or id is unknown."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"volume '{name}' not found")


class InvalidRunConfigError(KilnError):
    """Raised when a container run configuration is rejected."""

    pass
