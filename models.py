# models.py
from __future__ import annotations
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


# =========================================================
# Ledger / VRF snapshots
# =========================================================
class RoundState(BaseModel):
    """Snapshot of the on-chain game account. end_time_ms is 0 without an active round."""
    model_config = ConfigDict(frozen=True)

    round_number: int
    end_time_ms: int = 0
    has_active_round: bool = False
    bet_count: int = 0


class VRFResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    proof: bytes
    output: bytes


class TriggerAttempt(BaseModel):
    alpha: bytes
    result: Optional[VRFResult] = None
    tx_digest: Optional[str] = None


# =========================================================
# Retry bookkeeping
# =========================================================
class RetryState(BaseModel):
    attempt_count: int = 0
    max_attempts: int
    backoff_ms: int


class TriggerOutcome(BaseModel):
    status: Literal["triggered", "already_advanced", "exhausted"]
    digest: Optional[str] = None
    attempts: int
    error: Optional[str] = None


# =========================================================
# API responses
# =========================================================
class TriggerResp(BaseModel):
    ok: bool = True
    digest: str


class ErrorResp(BaseModel):
    ok: bool = False
    error: str


class VrfKeyReq(BaseModel):
    public_key: str = Field(min_length=2, description="Hex-encoded VRF public key (0x prefix allowed)")


class HealthResp(BaseModel):
    ok: bool
    ts: float
    service: str
    version: str
    scheduler: str
    trigger_in_progress: bool
    retry: Optional[RetryState] = None
    last_outcome: Optional[TriggerOutcome] = None
    last_digest: Optional[str] = None
