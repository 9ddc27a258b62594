# chain.py
"""
Ledger adapter: reads the spot game account and sends the keeper's
instructions (trigger_new_round, set_vrf_key) to the game program.
"""
from __future__ import annotations
import hashlib
import json
import struct
from typing import List, Optional, Sequence, Union

import base58 as _b58
import httpx

from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException, UnconfirmedTxError
from solana.rpc.types import TxOpts
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.sysvar import CLOCK
from solders.transaction import Transaction

from errors import ReadError, RejectedError, SubmitError
from models import RoundState

# =========================================================
# Account / instruction layout
# =========================================================
DISCRIMINATOR_LEN = 8
_U64 = struct.Struct("<Q")
_U32 = struct.Struct("<I")


def ix_discriminator(name: str) -> bytes:
    """Anchor-style 8-byte selector for a program instruction."""
    return hashlib.sha256(f"global:{name}".encode()).digest()[:DISCRIMINATOR_LEN]


def _vec_u8(b: bytes) -> bytes:
    return _U32.pack(len(b)) + bytes(b)


def encode_trigger_data(output: bytes, alpha: bytes, proof: bytes) -> bytes:
    # argument order is fixed by the program: output, alpha, proof
    return ix_discriminator("trigger_new_round") + _vec_u8(output) + _vec_u8(alpha) + _vec_u8(proof)


def encode_set_vrf_key_data(public_key: bytes) -> bytes:
    return ix_discriminator("set_vrf_key") + _vec_u8(public_key)


def decode_round_state(data: bytes) -> RoundState:
    """
    Decode the game account:
      [8 discriminator][u64 round_number][u8 has_round]
      then, when has_round == 1: [u64 end_time_ms][u32 bet count]...
    Raises ValueError when the buffer is too short or the tag is invalid.
    """
    off = DISCRIMINATOR_LEN
    if len(data) < off + _U64.size + 1:
        raise ValueError(f"game account too short ({len(data)} bytes)")
    (round_number,) = _U64.unpack_from(data, off)
    off += _U64.size
    tag = data[off]
    off += 1
    if tag == 0:
        return RoundState(round_number=round_number)
    if tag != 1:
        raise ValueError(f"invalid current_round tag {tag}")
    if len(data) < off + _U64.size + _U32.size:
        raise ValueError("current_round truncated")
    (end_time_ms,) = _U64.unpack_from(data, off)
    off += _U64.size
    (bet_count,) = _U32.unpack_from(data, off)
    return RoundState(
        round_number=round_number,
        end_time_ms=end_time_ms,
        has_active_round=True,
        bet_count=bet_count,
    )


# =========================================================
# Keys
# =========================================================
def to_public_key(addr: Union[str, Pubkey, bytes, bytearray]) -> Pubkey:
    if isinstance(addr, Pubkey):
        return addr
    if isinstance(addr, (bytes, bytearray)):
        return Pubkey.from_bytes(bytes(addr))
    if not addr:
        raise ValueError("Empty public key provided")
    return Pubkey.from_string(addr.strip())


def load_keypair(secret: str) -> Keypair:
    """
    Build the keeper keypair from base58 (64-byte keypair or 32-byte seed)
    or from a Solana CLI style JSON byte array.
    """
    if not secret:
        raise ValueError("Empty secret key provided")
    secret = secret.strip()
    if secret.startswith("["):
        try:
            raw = bytes(json.loads(secret))
        except (ValueError, TypeError) as e:
            raise ValueError(f"Invalid JSON secret key: {e}") from e
    else:
        try:
            raw = _b58.b58decode(secret)
        except ValueError as e:
            raise ValueError(f"Invalid base58 secret key: {e}") from e
    if len(raw) == 64:
        return Keypair.from_bytes(raw)
    if len(raw) == 32:
        return Keypair.from_seed(raw)
    raise ValueError(f"Invalid secret key length: {len(raw)} (expected 32 or 64 bytes)")


def _rpc_error_logs(err: RPCException) -> List[str]:
    """Best-effort program logs out of a preflight failure."""
    payload = err.args[0] if err.args else None
    data = getattr(payload, "data", None)
    logs = getattr(data, "logs", None)
    if logs is None and isinstance(payload, dict):
        logs = ((payload.get("data") or {}).get("logs"))
    return [str(l) for l in (logs or [])]


# =========================================================
# Gateway
# =========================================================
class ChainGateway:
    def __init__(self, client: AsyncClient, program_id: Pubkey, game_id: Pubkey, signer: Keypair):
        self.client = client
        self.program_id = program_id
        self.game_id = game_id
        self.signer = signer

    @classmethod
    def from_settings(cls, s) -> "ChainGateway":
        program_id = to_public_key(s.SPOT_PROGRAM_ID)
        game_id = to_public_key(s.SPOT_GAME_ID)
        signer = load_keypair(s.KEEPER_SECRET_KEY)
        return cls(AsyncClient(s.RPC_URL, commitment=Confirmed), program_id, game_id, signer)

    async def close(self) -> None:
        await self.client.close()

    # ---------------- Read ----------------
    async def read_round_state(self) -> RoundState:
        try:
            resp = await self.client.get_account_info(self.game_id, commitment=Confirmed, encoding="base64")
        except (SolanaRpcException, RPCException, httpx.HTTPError, OSError) as e:
            raise ReadError(f"getAccountInfo failed: {e}") from e

        acct = getattr(resp, "value", None)
        if acct is None:
            raise ReadError(f"game account {self.game_id} not found")
        if acct.owner != self.program_id:
            raise ReadError(f"game account owned by {acct.owner}, expected {self.program_id}")
        try:
            return decode_round_state(bytes(acct.data))
        except ValueError as e:
            raise ReadError(f"could not decode game account: {e}") from e

    # ---------------- Submit ----------------
    def trigger_instruction(self, output: bytes, alpha: bytes, proof: bytes) -> Instruction:
        return Instruction(
            self.program_id,
            encode_trigger_data(output, alpha, proof),
            [
                AccountMeta(self.game_id, is_signer=False, is_writable=True),
                AccountMeta(CLOCK, is_signer=False, is_writable=False),
                AccountMeta(self.signer.pubkey(), is_signer=True, is_writable=True),
            ],
        )

    def set_vrf_key_instruction(self, public_key: bytes) -> Instruction:
        return Instruction(
            self.program_id,
            encode_set_vrf_key_data(public_key),
            [
                AccountMeta(self.game_id, is_signer=False, is_writable=True),
                AccountMeta(self.signer.pubkey(), is_signer=True, is_writable=True),
            ],
        )

    async def submit_trigger(self, output: bytes, alpha: bytes, proof: bytes) -> str:
        return await self._send([self.trigger_instruction(output, alpha, proof)])

    async def submit_set_vrf_key(self, public_key: bytes) -> str:
        return await self._send([self.set_vrf_key_instruction(public_key)])

    async def _send(self, ixs: Sequence[Instruction]) -> str:
        payer = self.signer.pubkey()
        try:
            lbh = await self.client.get_latest_blockhash()
            blockhash = lbh.value.blockhash
            tx = Transaction([self.signer], Message(list(ixs), payer), blockhash)
        except (SolanaRpcException, RPCException, httpx.HTTPError, OSError) as e:
            raise SubmitError(f"could not fetch latest blockhash: {e}") from e
        except (ValueError, TypeError) as e:
            raise SubmitError(f"could not sign transaction: {e}") from e

        try:
            resp = await self.client.send_transaction(
                tx, opts=TxOpts(skip_preflight=False, preflight_commitment=Confirmed)
            )
        except RPCException as e:
            # preflight simulation ran the instruction and it failed
            logs = _rpc_error_logs(e)
            raise RejectedError(f"transaction rejected: {e}", logs=logs) from e
        except (SolanaRpcException, httpx.HTTPError, OSError) as e:
            raise SubmitError(f"sendTransaction failed: {e}") from e

        sig = resp.value
        digest = str(sig)
        print(f"[chain] tx sent: {digest}", flush=True)

        # once sent, the digest is always reported; confirmation is best-effort
        try:
            status = await self.client.confirm_transaction(sig, commitment=Confirmed)
        except (UnconfirmedTxError, SolanaRpcException, RPCException, httpx.HTTPError, OSError) as e:
            print(f"[chain] confirmation pending for {digest}: {e}", flush=True)
            return digest

        err = _status_error(status)
        if err is not None:
            raise RejectedError(f"transaction {digest} failed on-chain: {err}", digest=digest)
        return digest


def _status_error(status) -> Optional[str]:
    values = getattr(status, "value", None) or []
    first = values[0] if values else None
    err = getattr(first, "err", None) if first is not None else None
    return str(err) if err is not None else None
