from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from docker.types import Mount as SdkMount


class Action(str, Enum):
    UPDATE = "UPDATE"
    SKIP_PINNED = "SKIP_PINNED"
    SKIP_MISMATCH = "SKIP_MISMATCH"
    PULL_FAIL = "PULL_FAIL"
    RECREATE_FAIL = "RECREATE_FAIL"
    ROLLBACK_SUCCESS = "ROLLBACK_SUCCESS"
    ROLLBACK_FAIL = "ROLLBACK_FAIL"
    NOT_FOUND = "NOT_FOUND"

    @property
    def is_failure(self) -> bool:
        return self in _FAILURES

    @property
    def is_skip(self) -> bool:
        return self in (Action.SKIP_PINNED, Action.SKIP_MISMATCH)


_FAILURES = frozenset({Action.PULL_FAIL, Action.RECREATE_FAIL, Action.ROLLBACK_FAIL, Action.NOT_FOUND})


class State(str, Enum):
    INSPECTED = "inspected"
    PULLED = "pulled"
    COMPARED = "compared"
    SKIPPED = "skipped"
    STOPPED = "stopped"
    REMOVED = "removed"
    STARTED = "started"
    VERIFIED = "verified"
    FAILED = "failed"


@dataclass(frozen=True)
class PortBinding:
    container_port: str  # "80/tcp"
    host_ip: str | None = None
    host_port: str | None = None

    def sdk_value(self) -> Any:
        if self.host_ip and self.host_port:
            return (self.host_ip, int(self.host_port))
        if self.host_ip:
            return (self.host_ip,)
        if self.host_port:
            return int(self.host_port)
        return None


@dataclass(frozen=True)
class MountSpec:
    kind: str  # bind|volume|tmpfs
    source: str | None
    destination: str
    read_only: bool = False

    def sdk_mount(self) -> SdkMount:
        return SdkMount(target=self.destination, source=self.source, type=self.kind, read_only=self.read_only)


@dataclass(frozen=True)
class RestartPolicy:
    name: str
    max_retries: int = 0

    def sdk_value(self) -> dict[str, Any]:
        return {"Name": self.name, "MaximumRetryCount": self.max_retries}


@dataclass
class ContainerRuntimeSpec:
    """Everything needed to relaunch a container the way it was launched."""

    name: str
    image: str
    env: list[str] = field(default_factory=list)
    ports: frozenset[PortBinding] = frozenset()
    mounts: list[MountSpec] = field(default_factory=list)
    restart_policy: RestartPolicy | None = None
    network_mode: str | None = None
    hostname: str | None = None
    entrypoint: list[str] | None = None

    def run_kwargs(self) -> dict[str, Any]:
        """Arguments for ``client.containers.run`` (image excluded)."""
        kwargs: dict[str, Any] = {"name": self.name}
        if self.env:
            kwargs["environment"] = list(self.env)
        if self.ports:
            ports: dict[str, Any] = {}
            for b in sorted(self.ports, key=lambda p: (p.container_port, p.host_ip or "", p.host_port or "")):
                value = b.sdk_value()
                if b.container_port in ports:
                    prev = ports[b.container_port]
                    ports[b.container_port] = (prev if isinstance(prev, list) else [prev]) + [value]
                else:
                    ports[b.container_port] = value
            kwargs["ports"] = ports
        if self.mounts:
            kwargs["mounts"] = [m.sdk_mount() for m in self.mounts]
        if self.restart_policy:
            kwargs["restart_policy"] = self.restart_policy.sdk_value()
        if self.network_mode:
            kwargs["network_mode"] = self.network_mode
        if self.hostname:
            kwargs["hostname"] = self.hostname
        if self.entrypoint is not None:
            kwargs["entrypoint"] = list(self.entrypoint)
        return kwargs


@dataclass(frozen=True)
class ManagedContext:
    config_files: tuple[str, ...]
    working_dir: str
    service: str
    project: str | None = None

    @property
    def config_path(self) -> str:
        return self.config_files[0]


@dataclass(frozen=True)
class Standalone:
    container: Any
    spec: ContainerRuntimeSpec


@dataclass(frozen=True)
class Managed:
    container: Any
    context: ManagedContext


Target = Union[Standalone, Managed]


@dataclass
class TargetResult:
    """Outcome of one target's recreate protocol run."""

    name: str
    action: Action
    state: State
    image_reference: str = ""
    identity: str = ""
    message: str = ""

    @property
    def failed(self) -> bool:
        return self.action.is_failure

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "action": self.action.value,
            "state": self.state.value,
            "image": self.image_reference,
            "identity": self.identity,
            "message": self.message,
        }
