# flexfuse/containerd/models.py
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TaskStatus(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"
    PAUSED = "paused"
    PAUSING = "pausing"
    UNKNOWN = "unknown"


@dataclass
class ImageRecord:
    name: str
    digest: str = ""
    media_type: str = ""
    # OCI image config "config" object: Entrypoint, Cmd, Env, WorkingDir, User, StopSignal
    config: Dict = field(default_factory=dict)
    diff_ids: List[str] = field(default_factory=list)

    @property
    def stop_signal(self) -> Optional[str]:
        return self.config.get("StopSignal") or None


@dataclass
class ExitStatus:
    code: int
    exited_at: Optional[datetime] = None


class ContainerRequest(BaseModel):
    image: str
    name: str
    target_path: str
    args: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra='forbid')

    @field_validator("name", "image")
    @classmethod
    def _not_empty(cls, value: str) -> str:
        if not value:
            raise ValueError("must not be empty")
        return value

    @field_validator("target_path")
    @classmethod
    def _absolute(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError(f"target path must be absolute: {value}")
        return value


class MountSpec(BaseModel):
    destination: str
    source: str
    type: str = "bind"
    options: Tuple[str, ...] = ()

    model_config = ConfigDict(frozen=True)

    @field_validator("destination")
    @classmethod
    def _absolute(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError(f"mount destination must be absolute: {value}")
        return value

    def to_oci(self) -> dict:
        mount = {"destination": self.destination, "type": self.type, "source": self.source}
        if self.options:
            mount["options"] = list(self.options)
        return mount


class DeviceSpec(BaseModel):
    """A device node created inside the container (OCI linux.devices entry)."""
    path: str
    type: str
    major: int
    minor: int
    file_mode: Optional[int] = None
    uid: Optional[int] = None
    gid: Optional[int] = None

    model_config = ConfigDict(frozen=True)

    def to_oci(self) -> dict:
        device = {"path": self.path, "type": self.type, "major": self.major, "minor": self.minor}
        if self.file_mode is not None:
            device["fileMode"] = self.file_mode
        if self.uid is not None:
            device["uid"] = self.uid
        if self.gid is not None:
            device["gid"] = self.gid
        return device


class DeviceRule(BaseModel):
    """A device cgroup rule (OCI linux.resources.devices entry)."""
    allow: bool
    access: str = "rwm"
    type: Optional[str] = None
    major: Optional[int] = None
    minor: Optional[int] = None

    model_config = ConfigDict(frozen=True)

    def to_oci(self) -> dict:
        rule = {"allow": self.allow, "access": self.access}
        if self.type is not None:
            rule["type"] = self.type
        if self.major is not None:
            rule["major"] = self.major
        if self.minor is not None:
            rule["minor"] = self.minor
        return rule


class RuntimeSpecConfig(BaseModel):
    args: Tuple[str, ...] = ()
    env: Tuple[str, ...] = ()
    cwd: str = "/"
    uid: int = 0
    gid: int = 0
    capabilities: Tuple[str, ...] = ()
    no_new_privileges: bool = True
    rlimits: Tuple[Tuple[str, int, int], ...] = ()
    mounts: Tuple[MountSpec, ...] = ()
    devices: Tuple[DeviceSpec, ...] = ()
    device_rules: Tuple[DeviceRule, ...] = ()
    namespaces: Tuple[str, ...] = ()
    masked_paths: Tuple[str, ...] = ()
    readonly_paths: Tuple[str, ...] = ()
    cgroups_path: str = ""
    rootfs_propagation: str = ""
    stop_signal: str = "SIGTERM"

    model_config = ConfigDict(frozen=True)


class RetryPolicy(BaseModel):
    attempts: int = Field(default=10, ge=1)
    delay: float = Field(default=3.0, ge=0)

    model_config = ConfigDict(frozen=True)
