"""Image reference helpers.

A reference is ``repository[:tag][@digest]`` where the repository may carry a
registry host with a port (``registry.local:5000/team/app``).
"""

from __future__ import annotations

import re

DIGEST_RE = re.compile(r"^sha256:[0-9a-f]{64}$")

_DEFAULT_REGISTRY_PREFIXES = ("docker.io/", "index.docker.io/", "registry-1.docker.io/")


def split_reference(reference: str) -> tuple[str, str | None, str | None]:
    """Split a reference into (repository, tag, digest).

    >>> split_reference("localhost:5000/app:1.2@sha256:abc")
    ('localhost:5000/app', '1.2', 'sha256:abc')
    """
    if not reference:
        raise ValueError("Empty image reference")

    digest = None
    if "@" in reference:
        reference, digest = reference.rsplit("@", 1)

    tag = None
    last_colon = reference.rfind(":")
    # A colon followed by a slash belongs to a registry port, not a tag.
    if last_colon != -1 and "/" not in reference[last_colon + 1 :]:
        tag = reference[last_colon + 1 :]
        reference = reference[:last_colon]

    return reference, tag, digest


def repository_of(reference: str) -> str:
    return split_reference(reference)[0]


def with_tag(reference: str, tag: str) -> str:
    return f"{repository_of(reference)}:{tag}"


def with_digest(reference: str, digest: str) -> str:
    return f"{repository_of(reference)}@{digest}"


def normalize_repository(repository: str) -> str:
    """Strip the implicit Docker Hub registry and ``library/`` namespace."""
    for prefix in _DEFAULT_REGISTRY_PREFIXES:
        if repository.startswith(prefix):
            repository = repository[len(prefix) :]
            break
    if repository.startswith("library/") and repository.count("/") == 1:
        repository = repository[len("library/") :]
    return repository


def is_identity(value: str | None) -> bool:
    """True for a real content identity, false for placeholders like '' or '-'."""
    return bool(value) and DIGEST_RE.match(value) is not None
