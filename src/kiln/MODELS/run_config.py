"""
Models for named volumes and per-run container configuration.
"""
import uuid
from typing import Dict, List, Optional, Union
from pydantic import BaseModel, Field


class VolumeMount(BaseModel):
    """
    Defines a mapping between a named volume and a path inside the container.
    """
    name: str
    target: str

    @classmethod
    def parse(cls, spec: str) -> "VolumeMount":
        """
        Parses a ``name:/path`` mount specification.

        :param spec: Mount specification.
        :return: The parsed mount.
        """
        name, sep, target = spec.partition(':')
        if not sep or not name or not target:
            raise ValueError(f"Invalid volume mount '{spec}', expected name:/path")
        return cls(name=name, target=target)


class VolumeAttachment(BaseModel):
    """
    A live attachment of a volume to a running container.
    """
    container_id: str
    mount_path: str
    uid: int = 0
    gid: int = 0


class Volume(BaseModel):
    """
    A named persistent storage unit, independent of any single container.
    """
    id: str
    name: str
    storage_root: str
    owner_uid: Optional[int] = None
    owner_gid: Optional[int] = None
    created_at: str = ""
    attachments: List[VolumeAttachment] = []

    @property
    def in_use(self) -> bool:
        return bool(self.attachments)

    @property
    def ownership_applied(self) -> bool:
        return self.owner_uid is not None


class ContainerRunConfig(BaseModel):
    """
    Ephemeral configuration for a single container run.
    """
    image: str
    container_id: str = Field(default_factory=lambda: uuid.uuid4().hex)

    volumes: List[VolumeMount] = []
    memory_limit: Optional[Union[int, str]] = None
    environment: Dict[str, str] = {}

    command: List[str] = []
    user: Optional[str] = None
