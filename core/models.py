"""
Data models shared by the agent components.

Wire format is the coordinator's JSON (camelCase keys). Each model knows
how to read itself from a decoded message and how to write itself back.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class ProcessStatus(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    ERROR = "error"


class LogStream(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"
    SYSTEM = "system"


def _opt_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


def _opt_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


# ---------------------------------------------------------------------------
# Coordinator-supplied app descriptions
# ---------------------------------------------------------------------------


@dataclass
class AppConfig:
    """App metadata sent by the coordinator for lifecycle commands."""

    id: int
    name: str
    local_path: str
    dev_command: Optional[str] = None
    port: Optional[int] = None
    package_manager: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "AppConfig":
        return cls(
            id=int(data["id"]),
            name=str(data.get("name") or ""),
            local_path=str(data.get("localPath") or ""),
            dev_command=_opt_str(data.get("devCommand")),
            port=_opt_int(data.get("port")),
            package_manager=_opt_str(data.get("packageManager")),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "localPath": self.local_path,
            "devCommand": self.dev_command,
            "port": self.port,
            "packageManager": self.package_manager,
        }


@dataclass
class ProbeableApp:
    """The coordinator's belief about an app that should be running."""

    id: int
    name: str = ""
    port: Optional[int] = None
    pid: Optional[int] = None
    local_path: Optional[str] = None
    dev_command: Optional[str] = None
    package_manager: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "ProbeableApp":
        return cls(
            id=int(data["id"]),
            name=str(data.get("name") or ""),
            port=_opt_int(data.get("port")),
            pid=_opt_int(data.get("pid")),
            local_path=_opt_str(data.get("localPath")),
            dev_command=_opt_str(data.get("devCommand")),
            package_manager=_opt_str(data.get("packageManager")),
        )


@dataclass
class ProbeResult:
    app_id: int
    status: ProcessStatus
    pid: Optional[int] = None

    def to_dict(self) -> dict:
        return {"appId": self.app_id, "status": self.status.value, "pid": self.pid}


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


@dataclass
class ScannedApp:
    name: str
    local_path: str
    port: Optional[int] = None
    github_name: Optional[str] = None
    github_url: Optional[str] = None
    package_manager: Optional[str] = None
    framework: Optional[str] = None
    runtime: Optional[str] = None
    dev_command: Optional[str] = None
    project_type: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "localPath": self.local_path,
            "port": self.port,
            "githubName": self.github_name,
            "githubUrl": self.github_url,
            "packageManager": self.package_manager,
            "framework": self.framework,
            "runtime": self.runtime,
            "devCommand": self.dev_command,
            "projectType": self.project_type,
        }


# ---------------------------------------------------------------------------
# Containers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PortBinding:
    host_port: int
    container_port: int
    protocol: str

    def to_dict(self) -> dict:
        return {
            "hostPort": self.host_port,
            "containerPort": self.container_port,
            "protocol": self.protocol,
        }


@dataclass
class DockerContainer:
    id: str
    name: str
    image: str
    state: str
    status: str
    running_for: str
    ports: list[PortBinding] = field(default_factory=list)

    @property
    def short_id(self) -> str:
        return self.id[:12]

    @property
    def image_name(self) -> str:
        return self.image.split(":")[0].split("/")[-1] or self.image

    @property
    def is_kubernetes(self) -> bool:
        return self.name.startswith("k8s_")

    @property
    def is_mcp(self) -> bool:
        return "mcp" in self.image or "mcp" in self.name

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "shortId": self.short_id,
            "name": self.name,
            "image": self.image,
            "imageName": self.image_name,
            "state": self.state,
            "status": self.status,
            "runningFor": self.running_for,
            "ports": [p.to_dict() for p in self.ports],
            "isKubernetes": self.is_kubernetes,
            "isMcp": self.is_mcp,
        }
