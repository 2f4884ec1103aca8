from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Iterable, Iterator

from .db import utc_now
from .models import Action


# Cannot occur in container/service names, image references, digests or timestamps.
SEPARATOR = "|"

# Kinds written by older releases of the tool.
LEGACY_ACTIONS = {
    "SKIP": Action.SKIP_PINNED,
    "ROLLBACK": Action.ROLLBACK_SUCCESS,
}


@dataclass(frozen=True)
class LogRecord:
    timestamp: str
    name: str
    image_reference: str
    identity: str
    action: Action

    @classmethod
    def now(cls, name: str, image_reference: str, identity: str, action: Action) -> "LogRecord":
        return cls(timestamp=utc_now(), name=name, image_reference=image_reference, identity=identity, action=action)

    def to_line(self) -> str:
        fields = [self.timestamp, self.name, self.image_reference, self.identity, self.action.value]
        for f in fields:
            if SEPARATOR in f or "\n" in f or "\r" in f:
                raise ValueError(f"Ledger field {f!r} contains a separator or line break.")
        return SEPARATOR.join(fields)

    @classmethod
    def from_line(cls, line: str) -> "LogRecord | None":
        parts = line.rstrip("\r\n").split(SEPARATOR)
        if len(parts) != 5:
            return None
        ts, name, ref, identity, kind = parts
        try:
            action = Action(kind)
        except ValueError:
            action = LEGACY_ACTIONS.get(kind)
            if action is None:
                return None
        return cls(timestamp=ts, name=name, image_reference=ref, identity=identity, action=action)


class Ledger:
    """Append-only text history of every decision, one record per line.

    There is no locking; only one process should write at a time.
    """

    def __init__(self, path: str):
        self.path = path

    def append(self, record: LogRecord) -> None:
        line = record.to_line() + "\n"
        parent = os.path.dirname(os.path.abspath(self.path))
        if parent and not os.path.exists(parent):
            os.makedirs(parent, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as fh:
            fh.write(line)

    def records(self) -> Iterator[LogRecord]:
        """All parseable records in append order."""
        if not os.path.exists(self.path):
            return
        with open(self.path, encoding="utf-8") as fh:
            for line in fh:
                rec = LogRecord.from_line(line)
                if rec is not None:
                    yield rec

    def query(
        self,
        names: str | Iterable[str] | None = None,
        kinds: Iterable[Action] | None = None,
        limit: int | None = None,
    ) -> list[LogRecord]:
        """Newest-first matches for ``names`` and ``kinds`` (None matches everything)."""
        if isinstance(names, str):
            names = [names]
        wanted_names = set(names) if names is not None else None
        wanted_kinds = set(kinds) if kinds is not None else None

        matches = [
            r
            for r in self.records()
            if (wanted_names is None or r.name in wanted_names)
            and (wanted_kinds is None or r.action in wanted_kinds)
        ]
        matches.reverse()
        if limit is not None:
            matches = matches[: max(0, limit)]
        return matches
