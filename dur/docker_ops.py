from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

import docker
from docker.errors import DockerException, NotFound

from . import db
from .errors import ContainerNotFound, PullFailure


CONTAINER_NAME_RE = re.compile(r"^/?[a-zA-Z0-9][a-zA-Z0-9_.\-]{0,127}$")
TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.\-]{0,127}$")

COMPOSE_SERVICE_LABEL = "com.docker.compose.service"


def validate_container_name(name: str) -> None:
    if not CONTAINER_NAME_RE.match(name):
        raise ValueError(
            f"Invalid container or service name '{name}'. Use letters, digits and _.- (max 128 chars)."
        )


def validate_tag(tag: str) -> None:
    if not TAG_RE.match(tag):
        raise ValueError(f"Invalid image tag '{tag}'. Use letters, digits and _.- (max 128 chars).")


@dataclass(frozen=True)
class ContainerRef:
    id: str
    name: str


def get_client() -> docker.DockerClient:
    """Connect to the local daemon, failing loudly if it is unreachable."""
    try:
        c = docker.from_env()
        c.ping()
        return c
    except DockerException as e:
        raise RuntimeError(f"Docker is not available ({e}). Start the docker daemon and try again.") from e


def docker_available() -> bool:
    try:
        get_client()
        return True
    except RuntimeError:
        return False


def get_container(client: docker.DockerClient, name: str) -> Any:
    try:
        return client.containers.get(name)
    except NotFound as e:
        raise ContainerNotFound(f"Container '{name}' not found.") from e


def container_exists(client: docker.DockerClient, name: str) -> bool:
    try:
        client.containers.get(name)
        return True
    except NotFound:
        return False


def find_service_containers(client: docker.DockerClient, service: str) -> list[ContainerRef]:
    """Containers carrying the compose service label ``service``."""
    containers = client.containers.list(all=True, filters={"label": [f"{COMPOSE_SERVICE_LABEL}={service}"]})
    return [ContainerRef(id=x.id, name=x.name) for x in containers]


def pull_image(client: docker.DockerClient, reference: str) -> Any:
    try:
        image = client.images.pull(reference)
    except DockerException as e:
        raise PullFailure(f"Failed to pull '{reference}': {e}") from e
    db.log_event("INFO", f"Pulled image {reference}", image=reference)
    return image


def stop_container(container: Any, timeout_s: int) -> None:
    container.stop(timeout=timeout_s)


def remove_container(container: Any) -> None:
    try:
        container.remove()
    except NotFound:
        return


def run_container(client: docker.DockerClient, image: str, run_kwargs: dict[str, Any]) -> ContainerRef:
    """Create and start a detached container from ``image`` with the given SDK arguments."""
    container = client.containers.run(image, detach=True, **run_kwargs)
    name = run_kwargs.get("name") or container.name
    db.log_event("INFO", f"Started container {name} from image {image}", target=name, image=image)
    return ContainerRef(id=container.id, name=name)


def prune_images(client: docker.DockerClient) -> int:
    """Remove every image not used by a container. Returns bytes reclaimed."""
    result = client.images.prune(filters={"dangling": False})
    reclaimed = int((result or {}).get("SpaceReclaimed") or 0)
    removed = len((result or {}).get("ImagesDeleted") or [])
    db.log_event("INFO", f"Pruned {removed} image layer(s), reclaimed {reclaimed} bytes")
    return reclaimed
