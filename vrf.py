# vrf.py
"""
VRF proving capability.

VRFProver is the interface the trigger path depends on. CliVRFProver runs the
ecvrf CLI once per call:

    <command> prove --input <hex alpha> --secret-key <secret>

and expects stdout with exactly one "Proof: <hex>" line and one
"Output: <hex>" line.
"""
from __future__ import annotations
import asyncio
from typing import Optional, Sequence

from errors import ProverError
from models import VRFResult


def hex_to_bytes(h: str) -> bytes:
    """Decode a hex string, tolerating a leading 0x."""
    h = (h or "").strip()
    if h[:2].lower() == "0x":
        h = h[2:]
    return bytes.fromhex(h)


def _single_value(lines: Sequence[str], prefix: str) -> str:
    found = [l for l in lines if l.startswith(prefix)]
    if len(found) != 1:
        raise ProverError(f"expected exactly one '{prefix}' line, got {len(found)}")
    value = found[0][len(prefix):].strip()
    if not value:
        raise ProverError(f"'{prefix}' line has no value")
    return value


def parse_prover_output(stdout: str) -> VRFResult:
    lines = [l.strip() for l in stdout.strip().splitlines()]
    proof_hex = _single_value(lines, "Proof:")
    output_hex = _single_value(lines, "Output:")
    try:
        return VRFResult(proof=hex_to_bytes(proof_hex), output=hex_to_bytes(output_hex))
    except ValueError as e:
        raise ProverError(f"VRF prover printed invalid hex: {e}") from e


class VRFProver:
    async def prove(self, alpha: bytes) -> VRFResult:
        raise NotImplementedError


class CliVRFProver(VRFProver):
    def __init__(
        self,
        command: Sequence[str],
        secret_key: str,
        cwd: Optional[str] = None,
        timeout_s: float = 120.0,
    ):
        if not command:
            raise ValueError("VRF command is empty")
        self.command = list(command)
        self.secret_key = secret_key
        self.cwd = cwd
        self.timeout_s = timeout_s

    @staticmethod
    async def _reap(proc) -> None:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
        await proc.wait()

    async def prove(self, alpha: bytes) -> VRFResult:
        argv = [*self.command, "prove", "--input", alpha.hex(), "--secret-key", self.secret_key]
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=self.cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ProverError(f"could not start VRF prover {self.command[0]!r}: {e}") from e

        try:
            out, err = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_s)
        except asyncio.TimeoutError:
            await self._reap(proc)
            raise ProverError(f"VRF prover timed out after {self.timeout_s}s")
        except BaseException:
            # cancelled (shutdown) or failed while waiting: don't leave the child behind
            await self._reap(proc)
            raise

        if proc.returncode != 0:
            detail = err.decode("utf-8", errors="replace").strip()
            raise ProverError(f"VRF prover exited with status {proc.returncode}: {detail}")

        text = out.decode("utf-8", errors="replace")
        try:
            result = parse_prover_output(text)
        except ProverError:
            print("[vrf] unexpected prover output:", repr(text), flush=True)
            raise
        print(f"[vrf] proof={result.proof.hex()} output={result.output.hex()}", flush=True)
        return result
