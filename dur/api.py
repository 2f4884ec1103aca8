"""Read-only HTTP view of the update ledger and the event log.

Run with ``uvicorn dur.api:app``.
"""

from __future__ import annotations

from fastapi import Depends, FastAPI, HTTPException, Query

from . import db
from .api_models import EventOut, HealthOut, LedgerRecordOut
from .docker_ops import docker_available
from .ledger import Ledger, LogRecord
from .models import Action
from .settings import settings

app = FastAPI(title="Docker Update Reconciler")


def get_ledger() -> Ledger:
    return Ledger(settings.ledger_path)


def _out(r: LogRecord) -> LedgerRecordOut:
    return LedgerRecordOut(
        timestamp=r.timestamp, name=r.name, image=r.image_reference, identity=r.identity, action=r.action.value
    )


def _kinds(kind: list[str] | None) -> list[Action] | None:
    if not kind:
        return None
    try:
        return [Action(k.upper()) for k in kind]
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Unknown action kind: {e}") from e


@app.on_event("startup")
def _startup() -> None:
    db.init_db()


@app.get("/health", response_model=HealthOut)
def health(ledger: Ledger = Depends(get_ledger)) -> HealthOut:
    return HealthOut(status="ok", docker=docker_available(), ledger=ledger.path)


@app.get("/history", response_model=list[LedgerRecordOut])
def history(
    name: str | None = None,
    kind: list[str] | None = Query(None),
    limit: int = Query(50, ge=1, le=1000),
    ledger: Ledger = Depends(get_ledger),
) -> list[LedgerRecordOut]:
    return [_out(r) for r in ledger.query(name, _kinds(kind), limit)]


@app.get("/history/{name}", response_model=list[LedgerRecordOut])
def history_for(
    name: str,
    kind: list[str] | None = Query(None),
    limit: int = Query(50, ge=1, le=1000),
    ledger: Ledger = Depends(get_ledger),
) -> list[LedgerRecordOut]:
    records = ledger.query(name, _kinds(kind), limit)
    if not records:
        raise HTTPException(status_code=404, detail=f"No history for '{name}'.")
    return [_out(r) for r in records]


@app.get("/events", response_model=list[EventOut])
def events(limit: int = Query(100, ge=1, le=1000), target: str | None = None) -> list[EventOut]:
    return [EventOut(**e) for e in db.latest_events(limit, target)]
