"""
Models representing built container images and their run metadata.
"""
from typing import Dict, List, Optional, Tuple
from pydantic import BaseModel, ConfigDict

from ..UTILS.hashing import digest_value


class ExposedPort(BaseModel):
    """
    A port/protocol pair declared by EXPOSE.
    """
    model_config = ConfigDict(frozen=True)

    port: int
    protocol: str = "tcp"

    def __str__(self) -> str:
        return f"{self.port}/{self.protocol}"


class ImageMetadata(BaseModel):
    """
    Run metadata accumulated from metadata instructions.
    Later instructions override earlier ones with the same key.
    """
    model_config = ConfigDict(frozen=True)

    base_image: Optional[str] = None
    env: Dict[str, str] = {}
    working_directory: str = "/"
    user: Optional[str] = None
    group: Optional[str] = None
    uid: int = 0
    gid: int = 0

    entrypoint: Tuple[str, ...] = ()
    cmd: Tuple[str, ...] = ()
    exposed_ports: Tuple[ExposedPort, ...] = ()

    labels: Dict[str, str] = {}

    @property
    def command(self) -> List[str]:
        """Entrypoint followed by default arguments."""
        return list(self.entrypoint) + list(self.cmd)


class Image(BaseModel):
    """
    Ordered layer ids plus metadata, identified by a hash over both.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    layers: Tuple[str, ...]
    metadata: ImageMetadata

    @staticmethod
    def compute_id(layers: Tuple[str, ...], metadata: ImageMetadata) -> str:
        return digest_value({
            "layers": list(layers),
            "metadata": metadata.model_dump(mode="json"),
        })

    @classmethod
    def create(cls, layers: Tuple[str, ...], metadata: ImageMetadata) -> "Image":
        layers = tuple(layers)
        return cls(id=cls.compute_id(layers, metadata), layers=layers, metadata=metadata)

    @property
    def top_layer(self) -> Optional[str]:
        return self.layers[-1] if self.layers else None
