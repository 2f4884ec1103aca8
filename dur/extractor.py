from __future__ import annotations

import re
from typing import Any

import docker
from docker.errors import DockerException

from . import db
from .docker_ops import get_container
from .models import ContainerRuntimeSpec, MountSpec, PortBinding, RestartPolicy


PORT_KEY_RE = re.compile(r"^\d+(-\d+)?(/(tcp|udp|sctp))?$")
MOUNT_KINDS = {"bind", "volume", "tmpfs"}

# Values the daemon reports when the user never asked for anything.
_WILDCARD_HOSTS = {"", "0.0.0.0"}
_NO_RESTART = {"", "no", "none"}
_DEFAULT_NETWORKS = {"", "default", "bridge"}


def extract(client: docker.DockerClient, name: str) -> ContainerRuntimeSpec:
    """Reconstruct the launch configuration of container ``name``.

    Raises ContainerNotFound if it does not exist.
    """
    return extract_from_container(get_container(client, name))


def extract_from_container(container: Any) -> ContainerRuntimeSpec:
    attrs = container.attrs
    config = attrs.get("Config") or {}
    host_config = attrs.get("HostConfig") or {}
    name = (attrs.get("Name") or container.name or "").lstrip("/")

    network_mode = _network_mode(host_config)
    image_config = _image_config(container)
    return ContainerRuntimeSpec(
        name=name,
        image=config.get("Image") or attrs.get("Image") or "",
        env=_env(config, image_config),
        ports=_ports(name, host_config.get("PortBindings") or {}),
        mounts=_mounts(name, attrs.get("Mounts") or []),
        restart_policy=_restart_policy(name, host_config.get("RestartPolicy") or {}),
        network_mode=network_mode,
        hostname=_hostname(container, config, network_mode),
        entrypoint=_entrypoint(config, image_config),
    )


def _warn(name: str, message: str) -> None:
    db.log_event("WARN", f"Dropping {message}", target=name)


def _image_config(container: Any) -> dict[str, Any] | None:
    """Config of the image the container was created from, None if that image is gone."""
    try:
        return container.image.attrs.get("Config") or {}
    except DockerException:
        return None


def _env(config: dict[str, Any], image_config: dict[str, Any] | None) -> list[str]:
    env = list(config.get("Env") or [])
    if image_config is None:
        return env
    # Entries baked into the old image would pin its values onto the new one.
    baked = set(image_config.get("Env") or [])
    return [e for e in env if e not in baked]


def _ports(name: str, raw: dict[str, Any]) -> frozenset[PortBinding]:
    out: set[PortBinding] = set()
    for key, bindings in raw.items():
        if not PORT_KEY_RE.match(str(key)):
            _warn(name, f"port binding with malformed container port {key!r}")
            continue
        container_port = key if "/" in key else f"{key}/tcp"
        # Exposed but unpublished ports show up with a null binding list.
        for b in bindings or []:
            if not isinstance(b, dict):
                _warn(name, f"malformed binding {b!r} for {container_port}")
                continue
            host_ip = (b.get("HostIp") or "").strip()
            host_port = str(b.get("HostPort") or "").strip()
            if host_port and not host_port.isdigit():
                _warn(name, f"binding with non-numeric host port {host_port!r} for {container_port}")
                continue
            out.add(
                PortBinding(
                    container_port=container_port,
                    host_ip=None if host_ip in _WILDCARD_HOSTS else host_ip,
                    host_port=host_port or None,
                )
            )
    return frozenset(out)


def _mounts(name: str, raw: list[dict[str, Any]]) -> list[MountSpec]:
    out: list[MountSpec] = []
    for m in raw:
        kind = m.get("Type")
        destination = m.get("Destination")
        if not destination:
            _warn(name, f"{kind or 'unknown'} mount without destination")
            continue
        if kind not in MOUNT_KINDS:
            _warn(name, f"unsupported {kind!r} mount at {destination}")
            continue
        if kind == "volume":
            source = m.get("Name") or m.get("Source")
        elif kind == "bind":
            source = m.get("Source")
        else:
            source = None
        if kind != "tmpfs" and not source:
            _warn(name, f"{kind} mount at {destination} without source")
            continue
        out.append(MountSpec(kind=kind, source=source, destination=destination, read_only=not m.get("RW", True)))
    return out


def _restart_policy(name: str, raw: dict[str, Any]) -> RestartPolicy | None:
    policy = (raw.get("Name") or "").strip()
    if policy in _NO_RESTART:
        return None
    try:
        retries = int(raw.get("MaximumRetryCount") or 0)
    except (TypeError, ValueError):
        _warn(name, f"restart retry count {raw.get('MaximumRetryCount')!r}")
        retries = 0
    return RestartPolicy(name=policy, max_retries=retries)


def _network_mode(host_config: dict[str, Any]) -> str | None:
    mode = host_config.get("NetworkMode") or ""
    return None if mode in _DEFAULT_NETWORKS else mode


def _hostname(container: Any, config: dict[str, Any], network_mode: str | None) -> str | None:
    hostname = config.get("Hostname") or ""
    if not hostname:
        return None
    # The daemon rejects a hostname with a shared network namespace.
    if network_mode and (network_mode == "host" or network_mode.startswith("container:")):
        return None
    if (container.id or "").startswith(hostname) and len(hostname) == 12:
        return None
    return hostname


def _entrypoint(config: dict[str, Any], image_config: dict[str, Any] | None) -> list[str] | None:
    entrypoint = config.get("Entrypoint")
    if not entrypoint:
        return None
    if isinstance(entrypoint, str):
        entrypoint = [entrypoint]
    if image_config is None:
        # Image gone: keep what the container ran with.
        return list(entrypoint)
    image_entrypoint = image_config.get("Entrypoint")
    if isinstance(image_entrypoint, str):
        image_entrypoint = [image_entrypoint]
    if list(image_entrypoint or []) == list(entrypoint):
        return None
    return list(entrypoint)
