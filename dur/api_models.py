from __future__ import annotations

from pydantic import BaseModel, Field


class LedgerRecordOut(BaseModel):
    timestamp: str
    name: str = Field(..., description="Container name, or compose service name for managed targets")
    image: str = Field(..., description="Image reference as requested or declared")
    identity: str = Field(..., description="Content identity (sha256 digest or image id), empty if unresolved")
    action: str


class EventOut(BaseModel):
    id: int
    ts: str
    level: str
    target: str | None = None
    image: str | None = None
    message: str


class HealthOut(BaseModel):
    status: str
    docker: bool
    ledger: str
