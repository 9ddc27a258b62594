# scheduler.py
import asyncio
import traceback
from typing import Awaitable, Callable, Optional

from errors import KeeperError, ReadError, RejectedError
from models import RetryState, RoundState, TriggerOutcome
from trigger import TriggerGuard, now_ms

Sleeper = Callable[[float], Awaitable[None]]

IDLE = "idle"
WAITING = "waiting"
TRIGGERING = "triggering"


def compute_wait_ms(end_time_ms: int, now: int) -> int:
    return max(int(end_time_ms) - int(now), 0)


class RetryingTrigger:
    """
    Bounded retry around the guarded executor. Never raises on exhaustion:
    the cycle ends with an "exhausted" outcome and the caller moves on.
    """

    def __init__(self, guard: TriggerGuard, chain, max_attempts: int = 5, retry_delay_ms: int = 1000,
                 sleep: Sleeper = asyncio.sleep):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.guard = guard
        self.chain = chain
        self.sleep = sleep
        self.state = RetryState(max_attempts=max_attempts, backoff_ms=retry_delay_ms)
        self.last_outcome: Optional[TriggerOutcome] = None

    async def _advanced_past(self, expected_round: Optional[int]) -> bool:
        """True when the ledger already moved beyond the round we were asked to trigger."""
        if expected_round is None:
            return False
        try:
            current = await self.chain.read_round_state()
        except ReadError as e:
            print(f"[retry] could not re-read round after rejection: {e}", flush=True)
            return False
        return current.round_number > expected_round

    async def run_with_retry(self, expected_round: Optional[int] = None) -> TriggerOutcome:
        st = self.state
        st.attempt_count = 0
        last_err: Optional[Exception] = None

        async def round_moved() -> bool:
            # ReadError here fails the attempt like any other error
            current = await self.chain.read_round_state()
            return current.round_number > expected_round

        skip_if = round_moved if expected_round is not None else None

        while st.attempt_count < st.max_attempts:
            try:
                digest = await self.guard.run(source="scheduler", skip_if=skip_if)
                st.attempt_count += 1
                if digest is None:
                    print(f"[retry] round {expected_round} already advanced elsewhere, not submitting", flush=True)
                    outcome = TriggerOutcome(
                        status="already_advanced", digest=self.guard.last_digest, attempts=st.attempt_count
                    )
                    self.last_outcome = outcome
                    return outcome
                outcome = TriggerOutcome(status="triggered", digest=digest, attempts=st.attempt_count)
                self.last_outcome = outcome
                return outcome
            except KeeperError as e:
                st.attempt_count += 1
                last_err = e
                print(f"[retry] trigger attempt #{st.attempt_count} failed: {e}", flush=True)

                if isinstance(e, RejectedError) and await self._advanced_past(expected_round):
                    print(f"[retry] round {expected_round} already advanced elsewhere, stopping", flush=True)
                    outcome = TriggerOutcome(
                        status="already_advanced", digest=e.digest, attempts=st.attempt_count, error=str(e)
                    )
                    self.last_outcome = outcome
                    return outcome

            if st.attempt_count < st.max_attempts:
                await self.sleep(st.backoff_ms / 1000)

        print(f"[retry] all {st.max_attempts} trigger attempts failed, giving up until next round", flush=True)
        outcome = TriggerOutcome(status="exhausted", attempts=st.attempt_count, error=str(last_err))
        self.last_outcome = outcome
        return outcome


class RoundScheduler:
    """
    Autonomous loop: idle (read round) -> waiting (sleep to end time) ->
    triggering (RetryingTrigger) -> idle. Errors at the loop boundary are
    logged and followed by a fixed recovery delay; the loop never exits on its own.
    """

    def __init__(self, chain, retrying: RetryingTrigger, guard: TriggerGuard,
                 idle_poll_ms: int = 1000, recovery_delay_ms: int = 5000,
                 clock: Callable[[], int] = now_ms, sleep: Sleeper = asyncio.sleep):
        self.chain = chain
        self.retrying = retrying
        self.guard = guard
        self.idle_poll_ms = idle_poll_ms
        self.recovery_delay_ms = recovery_delay_ms
        self.clock = clock
        self.sleep = sleep
        self.state = IDLE

    async def _wait_for_expiry(self, wait_ms: int) -> bool:
        """
        Sleep wait_ms, returning early (True) if a trigger succeeds meanwhile.
        """
        self.guard.advanced.clear()
        sleeper = asyncio.ensure_future(self.sleep(wait_ms / 1000))
        waker = asyncio.ensure_future(self.guard.advanced.wait())
        try:
            done, _ = await asyncio.wait({sleeper, waker}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            waker.cancel()
        return waker in done

    def _still_due(self, observed: RoundState, current: RoundState) -> bool:
        return (
            current.has_active_round
            and current.round_number == observed.round_number
            and compute_wait_ms(current.end_time_ms, self.clock()) == 0
        )

    async def step(self) -> str:
        """One idle -> ... -> idle pass. Returns what happened (for logs/tests)."""
        self.state = IDLE
        observed = await self.chain.read_round_state()
        if not observed.has_active_round:
            print(f"[scheduler] no active round yet, retrying in {self.idle_poll_ms / 1000:g}s", flush=True)
            await self.sleep(self.idle_poll_ms / 1000)
            return "no_round"

        wait = compute_wait_ms(observed.end_time_ms, self.clock())
        print(
            f"[scheduler] round {observed.round_number}: next trigger in {wait / 1000:.1f}s "
            f"(ends @ {observed.end_time_ms}, {observed.bet_count} bets)",
            flush=True,
        )
        self.state = WAITING
        if await self._wait_for_expiry(wait):
            print("[scheduler] woken by a trigger, re-reading round", flush=True)

        current = await self.chain.read_round_state()
        if not self._still_due(observed, current):
            print(f"[scheduler] round {observed.round_number} changed underneath, re-observing", flush=True)
            return "changed"

        self.state = TRIGGERING
        outcome = await self.retrying.run_with_retry(expected_round=observed.round_number)
        self.state = IDLE
        return outcome.status

    async def run_forever(self) -> None:
        print("[scheduler] starting", flush=True)
        while True:
            try:
                await self.step()
            except Exception as e:
                print(f"[scheduler] loop error, retrying in {self.recovery_delay_ms / 1000:g}s: {e}", flush=True)
                traceback.print_exc()
                self.state = IDLE
                await self.sleep(self.recovery_delay_ms / 1000)
