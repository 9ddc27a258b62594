# main.py
# =========================================================
# Spot Keeper (FastAPI)
# =========================================================
from __future__ import annotations

import asyncio
import time
import traceback

from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from chain import ChainGateway
from config import settings
from errors import KeeperError, ReadError, TriggerInProgress
from models import ErrorResp, HealthResp, RoundState, TriggerResp, VrfKeyReq
from scheduler import RetryingTrigger, RoundScheduler
from trigger import TriggerExecutor, TriggerGuard
from vrf import CliVRFProver, hex_to_bytes

SERVICE = "spot-keeper"
VERSION = "0.1.0"

_auth_scheme = HTTPBearer(auto_error=False)


def admin_guard(creds: HTTPAuthorizationCredentials = Depends(_auth_scheme)):
    # open when no ADMIN_TOKEN is configured (keeper bound to a private network)
    token = settings.ADMIN_TOKEN
    if not token:
        return True
    if not creds or creds.credentials != token:
        raise HTTPException(401, "Unauthorized")
    return True


# =========================================================
# App Init
# =========================================================
app = FastAPI(title="Spot Keeper", version=VERSION)


def build_keeper(chain, prover, s=settings) -> None:
    """Wire executor, guard, retry policy and scheduler onto app.state."""
    executor = TriggerExecutor(chain, prover)
    guard = TriggerGuard(executor)
    retrying = RetryingTrigger(
        guard, chain,
        max_attempts=s.TRIGGER_MAX_ATTEMPTS,
        retry_delay_ms=s.TRIGGER_RETRY_DELAY_MS,
    )
    app.state.chain = chain
    app.state.guard = guard
    app.state.retrying = retrying
    app.state.scheduler = RoundScheduler(
        chain, retrying, guard,
        idle_poll_ms=s.IDLE_POLL_MS,
        recovery_delay_ms=s.RECOVERY_DELAY_MS,
    )
    app.state.scheduler_task = None


# =========================================================
# Lifecycle
# =========================================================
@app.on_event("startup")
async def on_startup():
    missing = settings.missing_required()
    if missing:
        raise RuntimeError(f"Missing one of {', '.join(missing)}")

    try:
        chain = ChainGateway.from_settings(settings)
    except ValueError as e:
        raise RuntimeError(f"Could not initialize keeper signer/ids: {e}") from e

    prover = CliVRFProver(
        settings.vrf_command_argv,
        settings.VRF_SECRET_KEY,
        cwd=settings.VRF_WORKDIR,
        timeout_s=settings.VRF_TIMEOUT_S,
    )
    build_keeper(chain, prover)
    print(f"[keeper] signer {chain.signer.pubkey()} game {chain.game_id} rpc {settings.RPC_URL}", flush=True)

    if settings.SCHEDULER_ENABLED:
        app.state.scheduler_task = asyncio.create_task(app.state.scheduler.run_forever())
    else:
        print("[keeper] scheduler disabled, manual triggers only", flush=True)


@app.on_event("shutdown")
async def on_shutdown():
    task = getattr(app.state, "scheduler_task", None)
    if task is not None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    chain = getattr(app.state, "chain", None)
    if chain is not None:
        await chain.close()


# =========================================================
# Health / state
# =========================================================
@app.get("/health", response_model=HealthResp)
async def health():
    guard = getattr(app.state, "guard", None)
    retrying = getattr(app.state, "retrying", None)
    scheduler = getattr(app.state, "scheduler", None)
    return HealthResp(
        ok=guard is not None,
        ts=time.time(),
        service=SERVICE,
        version=VERSION,
        scheduler=scheduler.state if scheduler else "stopped",
        trigger_in_progress=guard.in_progress if guard else False,
        retry=retrying.state if retrying else None,
        last_outcome=retrying.last_outcome if retrying else None,
        last_digest=guard.last_digest if guard else None,
    )


@app.get("/round", response_model=RoundState)
async def current_round():
    try:
        return await app.state.chain.read_round_state()
    except ReadError as e:
        raise HTTPException(503, f"round_unavailable: {e}")


# =========================================================
# Manual trigger
# =========================================================
def _report_detached_trigger(task: asyncio.Future) -> None:
    """Result of a manual trigger whose HTTP caller went away."""
    if task.cancelled():
        return
    e = task.exception()
    if e is not None:
        print(f"[trigger] detached manual trigger failed: {e}", flush=True)
    else:
        print(f"[trigger] detached manual trigger sent: {task.result()}", flush=True)


@app.post("/trigger", response_model=TriggerResp, responses={409: {"model": ErrorResp}, 500: {"model": ErrorResp}})
async def trigger():
    guard: TriggerGuard = app.state.guard
    # shielded: a dropped client must not abandon a sent transaction or the guard
    task = asyncio.ensure_future(guard.run_nowait(source="manual"))
    try:
        digest = await asyncio.shield(task)
    except asyncio.CancelledError:
        task.add_done_callback(_report_detached_trigger)
        raise
    except TriggerInProgress as e:
        return JSONResponse(status_code=409, content={"ok": False, "error": str(e)})
    except KeeperError as e:
        print(f"[trigger] manual trigger failed: {e}", flush=True)
        return JSONResponse(status_code=500, content={"ok": False, "error": str(e)})
    except Exception as e:
        traceback.print_exc()
        return JSONResponse(status_code=500, content={"ok": False, "error": str(e) or e.__class__.__name__})
    return TriggerResp(digest=digest)


# =========================================================
# Admin
# =========================================================
@app.post("/admin/vrf-key", response_model=TriggerResp)
async def admin_set_vrf_key(body: VrfKeyReq, auth: bool = Depends(admin_guard)):
    """Register the keeper's VRF public key on the game account."""
    try:
        key = hex_to_bytes(body.public_key)
    except ValueError:
        raise HTTPException(400, "public_key must be hex")
    try:
        digest = await app.state.chain.submit_set_vrf_key(key)
    except KeeperError as e:
        raise HTTPException(500, str(e))
    return TriggerResp(digest=digest)


def run() -> None:
    import uvicorn

    print(f"[keeper] HTTP server listening on http://{settings.HOST}:{settings.PORT}", flush=True)
    uvicorn.run(app, host=settings.HOST, port=settings.PORT)


if __name__ == "__main__":
    run()
