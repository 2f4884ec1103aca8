from __future__ import annotations


class ContainerNotFound(Exception):
    pass


class ImageNotFound(Exception):
    """No local image matches a reference (nothing was pulled and no prior copy exists)."""


class PullFailure(Exception):
    pass


class ComposeError(Exception):
    """A `docker compose` invocation failed or could not be started."""


class SelectionError(Exception):
    """Invalid rollback menu input, or nothing to choose from."""
