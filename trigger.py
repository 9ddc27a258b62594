# trigger.py
from __future__ import annotations
import asyncio
import time
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Optional

from errors import TriggerInProgress
from models import TriggerAttempt
from vrf import VRFProver


def now_ms() -> int:
    return int(time.time() * 1000)


def derive_alpha(ms: int) -> bytes:
    """VRF input: the decimal epoch-millis string as UTF-8 bytes."""
    return str(int(ms)).encode("utf-8")


class TriggerExecutor:
    """
    One round-advance attempt: alpha -> VRF proof -> trigger_new_round.
    No retries here; ProverError / SubmitError / RejectedError propagate.
    """

    def __init__(self, chain, prover: VRFProver, clock: Callable[[], int] = now_ms):
        self.chain = chain
        self.prover = prover
        self.clock = clock

    async def trigger_round(self) -> str:
        attempt = TriggerAttempt(alpha=derive_alpha(self.clock()))
        print(f"[trigger] trigger_new_round alpha={attempt.alpha.decode()}", flush=True)

        attempt.result = await self.prover.prove(attempt.alpha)
        attempt.tx_digest = await self.chain.submit_trigger(
            attempt.result.output, attempt.alpha, attempt.result.proof
        )

        print(f"[trigger] tx sent: {attempt.tx_digest}", flush=True)
        return attempt.tx_digest


class TriggerGuard:
    """
    Single submission slot shared by the scheduler and the manual endpoint.

    run() waits for the slot; run_nowait() raises TriggerInProgress when it is
    taken or queued for. `advanced` is set after every successful trigger so a
    sleeping scheduler can re-read round state.
    """

    def __init__(self, executor: TriggerExecutor):
        self.executor = executor
        self._lock = asyncio.Lock()
        # holders + waiters; non-zero from the moment run() is entered
        self._pending = 0
        self.advanced = asyncio.Event()
        self.holder: Optional[str] = None
        self.last_digest: Optional[str] = None

    @property
    def in_progress(self) -> bool:
        return self._pending > 0

    @asynccontextmanager
    async def _hold(self, source: str):
        self._pending += 1
        try:
            async with self._lock:
                self.holder = source
                try:
                    yield
                finally:
                    self.holder = None
        finally:
            self._pending -= 1

    async def _trigger(self) -> str:
        digest = await self.executor.trigger_round()
        self.last_digest = digest
        self.advanced.set()
        return digest

    async def run(self, source: str = "scheduler",
                  skip_if: Optional[Callable[[], Awaitable[bool]]] = None) -> Optional[str]:
        """
        Wait for the slot and trigger. When skip_if is given it is checked
        while holding the slot; a true result skips the submission and
        returns None.
        """
        async with self._hold(source):
            if skip_if is not None and await skip_if():
                return None
            return await self._trigger()

    async def run_nowait(self, source: str = "manual") -> str:
        if self._pending:
            raise TriggerInProgress(f"trigger already in progress ({self.holder or 'queued'})")
        async with self._hold(source):
            return await self._trigger()
