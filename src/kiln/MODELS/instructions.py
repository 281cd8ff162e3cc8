"""
Models for parsed build recipe instructions.

Every instruction is an immutable value tagged by ``kind``. ``line`` and
``raw`` locate the instruction in its recipe but never take part in cache
keys, so reformatting a recipe does not invalidate its layers.
"""
from typing import Any, Dict, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict


class Instruction(BaseModel):
    """
    Represents a single instruction in a build recipe.
    """
    model_config = ConfigDict(frozen=True)

    kind: str
    line: int = 0
    raw: str = ""

    def cache_payload(self) -> Dict[str, Any]:
        """Normalized form of the instruction used in cache keys."""
        return self.model_dump(mode="json", exclude={"line", "raw"})

    def describe(self) -> str:
        return self.raw or self.kind


class FromInstruction(Instruction):
    kind: Literal["FROM"] = "FROM"
    image: str
    tag: str = "latest"

    @property
    def reference(self) -> str:
        if self.tag.startswith("sha256:"):
            return f"{self.image}@{self.tag}"
        return f"{self.image}:{self.tag}"


class EnvInstruction(Instruction):
    kind: Literal["ENV"] = "ENV"
    variables: Tuple[Tuple[str, str], ...]


class RunInstruction(Instruction):
    kind: Literal["RUN"] = "RUN"
    command: str
    cacheable: bool = True


class CopyInstruction(Instruction):
    kind: Literal["COPY"] = "COPY"
    sources: Tuple[str, ...]
    destination: str
    chown: Optional[str] = None


class WorkdirInstruction(Instruction):
    kind: Literal["WORKDIR"] = "WORKDIR"
    path: str


class UserInstruction(Instruction):
    kind: Literal["USER"] = "USER"
    user: str
    group: Optional[str] = None


class CmdInstruction(Instruction):
    kind: Literal["CMD"] = "CMD"
    args: Tuple[str, ...]


class EntrypointInstruction(Instruction):
    kind: Literal["ENTRYPOINT"] = "ENTRYPOINT"
    args: Tuple[str, ...]


class ExposeInstruction(Instruction):
    kind: Literal["EXPOSE"] = "EXPOSE"
    ports: Tuple[Tuple[int, str], ...]


class LabelInstruction(Instruction):
    kind: Literal["LABEL"] = "LABEL"
    labels: Tuple[Tuple[str, str], ...]
