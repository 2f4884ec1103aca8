from __future__ import annotations

from typing import Callable

import docker

from . import db
from .context import context_from_labels
from .docker_ops import find_service_containers, get_container
from .errors import ContainerNotFound, SelectionError
from .ledger import Ledger, LogRecord
from .models import Action, State, TargetResult
from .reconciler import Reconciler
from .references import is_identity, with_digest
from .settings import settings


# Protocol outcomes that mean the target now runs the chosen image.
ROLLBACK_OK = {Action.UPDATE, Action.SKIP_PINNED}


class RollbackSelector:
    """Picks a previous image from the ledger and recreates the target on it."""

    def __init__(self, client: docker.DockerClient, ledger: Ledger, reconciler: Reconciler, limit: int | None = None):
        self.client = client
        self.ledger = ledger
        self.reconciler = reconciler
        self.limit = settings.rollback_limit if limit is None else max(1, int(limit))

    def locate(self, name: str) -> tuple[list[str], str | None]:
        """Return (ledger search keys, container to recreate or None).

        Standalone updates are filed under the container name and compose
        updates under the service name, so both are searched.
        """
        try:
            container = get_container(self.client, name)
        except ContainerNotFound:
            refs = find_service_containers(self.client, name)
            keys = [name] + [r.name for r in refs if r.name != name]
            return keys, (refs[0].name if refs else None)

        keys = [name]
        ctx = context_from_labels((container.attrs.get("Config") or {}).get("Labels"))
        if ctx is not None and ctx.service != name:
            keys.append(ctx.service)
        return keys, name

    def candidates(self, keys: list[str]) -> list[LogRecord]:
        records = [r for r in self.ledger.query(keys) if is_identity(r.identity)]
        return records[: self.limit]

    @staticmethod
    def menu(candidates: list[LogRecord]) -> list[str]:
        return [
            f"[{i}] {r.timestamp} => {r.image_reference}@{r.identity} ({r.action.value})"
            for i, r in enumerate(candidates, start=1)
        ]

    @staticmethod
    def choose(candidates: list[LogRecord], raw: str | int | None) -> LogRecord:
        text = str(raw if raw is not None else "").strip()
        # int() rejects non-ASCII digits such as "²".
        if not (text.isascii() and text.isdigit()):
            raise SelectionError(f"Invalid choice {text!r}: enter a number between 1 and {len(candidates)}.")
        idx = int(text)
        if not 1 <= idx <= len(candidates):
            raise SelectionError(f"Invalid choice {idx}: enter a number between 1 and {len(candidates)}.")
        return candidates[idx - 1]

    @staticmethod
    def pinned_reference(record: LogRecord) -> str:
        ref = record.image_reference
        if not ref or ref.startswith("sha256:"):
            return record.identity
        return with_digest(ref, record.identity)

    def rollback(self, name: str, prompt: Callable[[list[str]], str | int | None]) -> TargetResult:
        """Offer the recent history of ``name`` through ``prompt`` and restore the chosen entry.

        Raises SelectionError when there is no history or the answer is not a menu entry.
        """
        keys, target = self.locate(name)
        candidates = self.candidates(keys)
        if not candidates:
            raise SelectionError(f"No history for '{name}'.")
        chosen = self.choose(candidates, prompt(self.menu(candidates)))
        return self.restore(name, target, chosen, keys)

    def restore(
        self, name: str, target: str | None, record: LogRecord, keys: list[str] | None = None
    ) -> TargetResult:
        reference = self.pinned_reference(record)
        if target is None:
            result = TargetResult(
                name=name,
                action=Action.ROLLBACK_FAIL,
                state=State.FAILED,
                image_reference=reference,
                identity=record.identity,
                message=(
                    f"Nothing named '{name}' is present to roll back "
                    f"(history searched under {', '.join(keys or [name])}); relaunch {reference} manually."
                ),
            )
        else:
            db.log_event("INFO", f"Rolling back '{target}' to {reference}", target=target, image=reference)
            outcome = self.reconciler.update_container(target, override=reference, alternates=[record.identity])
            ok = outcome.action in ROLLBACK_OK
            result = TargetResult(
                name=outcome.name,
                action=Action.ROLLBACK_SUCCESS if ok else Action.ROLLBACK_FAIL,
                state=outcome.state,
                image_reference=reference,
                identity=record.identity,
                message=outcome.message,
            )

        self.ledger.append(LogRecord.now(result.name, result.image_reference, result.identity, result.action))
        db.log_event(
            "INFO" if result.action == Action.ROLLBACK_SUCCESS else "ERROR",
            f"{result.action.value}: {result.message}",
            target=result.name,
            image=reference,
        )
        return result
