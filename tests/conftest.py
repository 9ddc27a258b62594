"""Shared fakes for the keeper tests: ledger, prover, clock and sleep."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from errors import ProverError
from models import RoundState, VRFResult

START_MS = 1_700_000_000_000
ROUND_MS = 60_000


class FakeClock:
    def __init__(self, t: int = START_MS) -> None:
        self.t = t

    def __call__(self) -> int:
        return self.t


class RecordingSleep:
    """Records requested delays and advances the fake clock by them.

    Delays >= block_from seconds never finish on their own (cancellable), so a
    test can keep the scheduler parked in its waiting state.
    """

    def __init__(self, clock: FakeClock, block_from: float | None = None) -> None:
        self.clock = clock
        self.block_from = block_from
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self.block_from is not None and seconds >= self.block_from:
            await asyncio.Event().wait()
        self.clock.t += int(seconds * 1000)
        await asyncio.sleep(0)


class FakeChain:
    """In-memory ledger: a successful submit starts the next round."""

    def __init__(self, clock: FakeClock, state: RoundState | None = None) -> None:
        self.clock = clock
        self.state = state or RoundState(
            round_number=1, end_time_ms=clock() + ROUND_MS, has_active_round=True
        )
        self.read_errors: list[Exception] = []
        self.submit_errors: list[Exception] = []
        self.submits: list[tuple[bytes, bytes, bytes]] = []
        self.vrf_keys: list[bytes] = []
        self.reads = 0
        self.gate: asyncio.Event | None = None
        self.in_flight = 0
        self.max_in_flight = 0

    async def read_round_state(self) -> RoundState:
        self.reads += 1
        if self.read_errors:
            raise self.read_errors.pop(0)
        return self.state

    async def submit_trigger(self, output: bytes, alpha: bytes, proof: bytes) -> str:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            self.submits.append((output, alpha, proof))
            if self.submit_errors:
                raise self.submit_errors.pop(0)
            self.state = RoundState(
                round_number=self.state.round_number + 1,
                end_time_ms=self.clock() + ROUND_MS,
                has_active_round=True,
            )
            return f"sig-{len(self.submits)}"
        finally:
            self.in_flight -= 1

    async def submit_set_vrf_key(self, public_key: bytes) -> str:
        self.vrf_keys.append(public_key)
        return "sig-vrf-key"

    async def close(self) -> None:
        pass


class FakeProver:
    def __init__(self, output: bytes = b"\x00\xff", proof: bytes = b"\x18\xcc", fail: int = 0) -> None:
        self.output = output
        self.proof = proof
        self.fail = fail
        self.calls: list[bytes] = []

    async def prove(self, alpha: bytes) -> VRFResult:
        self.calls.append(alpha)
        if self.fail < 0 or len(self.calls) <= self.fail:
            raise ProverError("ecvrf-cli exited with status 101")
        return VRFResult(proof=self.proof, output=self.output)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep(clock: FakeClock) -> RecordingSleep:
    return RecordingSleep(clock)


@pytest.fixture
def chain(clock: FakeClock) -> FakeChain:
    return FakeChain(clock)


@pytest.fixture
def prover() -> FakeProver:
    return FakeProver()


@pytest.fixture
def fakes() -> Any:
    """Expose the fake classes to tests that need custom instances."""

    class _Fakes:
        Clock = FakeClock
        Sleep = RecordingSleep
        Chain = FakeChain
        Prover = FakeProver

    return _Fakes
