from __future__ import annotations

from typing import Any

import docker
from docker.errors import ImageNotFound as SdkImageNotFound
from docker.errors import NotFound

from .errors import ImageNotFound
from .references import normalize_repository, repository_of, split_reference


def _local_image(client: docker.DockerClient, reference: str) -> Any:
    try:
        return client.images.get(reference)
    except (SdkImageNotFound, NotFound) as e:
        raise ImageNotFound(f"No local image for '{reference}'.") from e


def identity_of(image: Any, repository: str | None = None) -> str:
    """Content identity of an image object.

    Prefers the repository digest of ``repository`` (so that an image pushed to
    several repositories compares consistently), then any repository digest,
    then the runtime's own image id.
    """
    digests = [d for d in (image.attrs.get("RepoDigests") or []) if "@" in d]
    if repository:
        wanted = normalize_repository(repository)
        for d in digests:
            repo, _, digest = d.partition("@")
            if normalize_repository(repo) == wanted:
                return digest
    if digests:
        return digests[0].partition("@")[2]
    return image.id


def resolve(client: docker.DockerClient, reference: str, repository: str | None = None) -> str:
    """Resolve an already-local reference to its identity. Never pulls."""
    image = _local_image(client, reference)
    if reference.startswith("sha256:"):
        return identity_of(image, repository)
    repo, _, digest = split_reference(reference)
    # A digest reference already names its identity.
    if digest:
        return digest
    return identity_of(image, repository or repo)


def resolve_container(client: docker.DockerClient, container: Any, repository: str | None = None) -> str:
    """Identity of the image a container is currently running."""
    image_id = container.attrs.get("Image") or ""
    if repository is None:
        configured = (container.attrs.get("Config") or {}).get("Image") or ""
        if configured and not configured.startswith("sha256:"):
            repository = repository_of(configured)
    try:
        return identity_of(_local_image(client, image_id), repository)
    except ImageNotFound:
        # The image was removed underneath the container; its id is all we know.
        return image_id
