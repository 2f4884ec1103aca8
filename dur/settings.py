from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Persistence
    ledger_path: str = os.path.expanduser(os.getenv("DUR_LEDGER_PATH", "~/.docker-update.log"))
    db_path: str = os.path.expanduser(os.getenv("DUR_DB_PATH", "~/.docker-update.db"))

    # Collaborators
    compose_cmd: str = os.getenv("DUR_COMPOSE_CMD", "docker compose")
    stop_timeout_s: int = _env_int("DUR_STOP_TIMEOUT", 10)

    # Update behaviour
    default_tag: str = os.getenv("DUR_DEFAULT_TAG", "latest")
    rollback_limit: int = _env_int("DUR_ROLLBACK_LIMIT", 5)
    prune_after_update: bool = _env_bool("DUR_PRUNE", True)

    # Refuse to replace a compose service whose running image differs from
    # what its compose file declares, unless an explicit tag/rollback is given.
    drift_protection: bool = _env_bool("DUR_DRIFT_PROTECTION", True)


settings = Settings()
