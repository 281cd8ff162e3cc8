"""
Engine configuration.
"""
from typing import Literal, Optional
from pydantic import BaseModel, ConfigDict, Field


class EngineConfig(BaseModel):
    """
    Settings shared by the build engine, its stores and the volume manager.
    """
    model_config = ConfigDict(extra="forbid")

    # None keeps all state in memory
    state_dir: Optional[str] = None

    cache_capacity: int = Field(default=512, ge=1)
    workers: int = Field(default=4, ge=1)
    run_timeout: Optional[float] = Field(default=None, gt=0)
    sandbox: Literal["script", "chroot"] = "script"

    volume_reown_policy: Literal["first-attach", "always"] = "first-attach"
    apply_volume_ownership: bool = True

    registry_retries: int = Field(default=3, ge=1)
    log_level: str = "INFO"
