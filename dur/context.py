from __future__ import annotations

import os
from typing import Any

import docker

from .docker_ops import COMPOSE_SERVICE_LABEL, get_container
from .extractor import extract_from_container
from .models import Managed, ManagedContext, Standalone, Target


CONFIG_FILES_LABEL = "com.docker.compose.project.config_files"
WORKING_DIR_LABEL = "com.docker.compose.project.working_dir"
PROJECT_LABEL = "com.docker.compose.project"


def context_from_labels(labels: dict[str, str] | None) -> ManagedContext | None:
    """Build a ManagedContext from compose labels, or None if any required label is missing."""
    labels = labels or {}
    raw_files = (labels.get(CONFIG_FILES_LABEL) or "").strip()
    working_dir = (labels.get(WORKING_DIR_LABEL) or "").strip()
    service = (labels.get(COMPOSE_SERVICE_LABEL) or "").strip()

    # Older compose releases wrote a JSON-ish list, newer ones a comma list.
    files = [f.strip().strip('"') for f in raw_files.strip("[]").split(",")]
    files = [f for f in files if f]
    if not (files and working_dir and service):
        return None

    resolved = tuple(f if os.path.isabs(f) else os.path.join(working_dir, f) for f in files)
    return ManagedContext(
        config_files=resolved,
        working_dir=working_dir,
        service=service,
        project=(labels.get(PROJECT_LABEL) or "").strip() or None,
    )


def _labels(container: Any) -> dict[str, str]:
    return (container.attrs.get("Config") or {}).get("Labels") or {}


def detect(client: docker.DockerClient, name: str) -> ManagedContext | None:
    return context_from_labels(_labels(get_container(client, name)))


def classify(client: docker.DockerClient, name: str) -> Target:
    """Inspect ``name`` once and decide which update path owns it.

    Raises ContainerNotFound if it does not exist.
    """
    container = get_container(client, name)
    ctx = context_from_labels(_labels(container))
    if ctx is not None:
        return Managed(container=container, context=ctx)
    return Standalone(container=container, spec=extract_from_container(container))
