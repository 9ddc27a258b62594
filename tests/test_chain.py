from __future__ import annotations

import json
import struct
from types import SimpleNamespace
from unittest.mock import AsyncMock

import base58
import httpx
import pytest
from solana.rpc.core import RPCException
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.sysvar import CLOCK

from chain import (
    ChainGateway,
    decode_round_state,
    encode_trigger_data,
    ix_discriminator,
    load_keypair,
)
from errors import ReadError, RejectedError, SubmitError

DISC = b"\x11" * 8


def _game_account(round_number: int, end_time_ms: int | None = None, bets: int = 0) -> bytes:
    data = DISC + struct.pack("<Q", round_number)
    if end_time_ms is None:
        return data + b"\x00"
    return data + b"\x01" + struct.pack("<QI", end_time_ms, bets) + b"\x00" * (40 * bets)


def _gateway(client) -> ChainGateway:
    return ChainGateway(client, Pubkey.new_unique(), Pubkey.new_unique(), Keypair())


def _account_resp(gw: ChainGateway, data: bytes, owner: Pubkey | None = None):
    return SimpleNamespace(value=SimpleNamespace(data=data, owner=owner or gw.program_id))


def _send_client(**overrides) -> AsyncMock:
    client = AsyncMock()
    client.get_latest_blockhash.return_value = SimpleNamespace(value=SimpleNamespace(blockhash=Hash.default()))
    client.send_transaction.return_value = SimpleNamespace(value=Signature.default())
    client.confirm_transaction.return_value = SimpleNamespace(value=[SimpleNamespace(err=None)])
    for name, value in overrides.items():
        setattr(client, name, value)
    return client


# ---------------------------------------------------------------- layout


def test_decode_active_round() -> None:
    state = decode_round_state(_game_account(7, end_time_ms=1_700_000_060_000, bets=3))
    assert state.round_number == 7
    assert state.has_active_round is True
    assert state.end_time_ms == 1_700_000_060_000
    assert state.bet_count == 3


def test_decode_without_round() -> None:
    state = decode_round_state(_game_account(4))
    assert state.round_number == 4
    assert state.has_active_round is False
    assert state.end_time_ms == 0


@pytest.mark.parametrize("data", [b"", DISC + b"\x01\x00", DISC + struct.pack("<Q", 1) + b"\x01\x00"])
def test_decode_truncated_account_raises(data: bytes) -> None:
    with pytest.raises(ValueError):
        decode_round_state(data)


def test_decode_bad_tag_raises() -> None:
    with pytest.raises(ValueError, match="tag"):
        decode_round_state(DISC + struct.pack("<Q", 1) + b"\x05")


def test_trigger_data_layout() -> None:
    data = encode_trigger_data(bytes([0, 255]), b"1700000000000", b"\xaa")
    assert data[:8] == ix_discriminator("trigger_new_round")
    body = data[8:]
    assert body[:4] == struct.pack("<I", 2)
    assert body[4:6] == bytes([0, 255])
    assert body[6:10] == struct.pack("<I", 13)
    assert body[10:23] == "1700000000000".encode("utf-8")
    assert body[23:] == struct.pack("<I", 1) + b"\xaa"


def test_trigger_instruction_accounts_in_order() -> None:
    gw = _gateway(AsyncMock())
    ix = gw.trigger_instruction(b"\x00", b"1", b"\x01")
    assert ix.program_id == gw.program_id
    keys = [a.pubkey for a in ix.accounts]
    assert keys == [gw.game_id, CLOCK, gw.signer.pubkey()]
    assert ix.accounts[0].is_writable and not ix.accounts[0].is_signer
    assert ix.accounts[2].is_signer


# ---------------------------------------------------------------- keys


def test_load_keypair_from_base58_keypair_and_seed() -> None:
    kp = Keypair()
    assert load_keypair(base58.b58encode(bytes(kp)).decode()).pubkey() == kp.pubkey()
    seed = bytes(range(32))
    assert load_keypair(base58.b58encode(seed).decode()).pubkey() == Keypair.from_seed(seed).pubkey()


def test_load_keypair_from_json_array() -> None:
    kp = Keypair()
    assert load_keypair(json.dumps(list(bytes(kp)))).pubkey() == kp.pubkey()


@pytest.mark.parametrize("secret", ["", "0OIl", base58.b58encode(b"short").decode()])
def test_load_keypair_rejects_bad_input(secret: str) -> None:
    with pytest.raises(ValueError):
        load_keypair(secret)


# ---------------------------------------------------------------- read


@pytest.mark.asyncio
async def test_read_round_state_decodes_account() -> None:
    client = AsyncMock()
    gw = _gateway(client)
    client.get_account_info.return_value = _account_resp(gw, _game_account(2, end_time_ms=5000, bets=1))
    state = await gw.read_round_state()
    assert (state.round_number, state.end_time_ms, state.bet_count) == (2, 5000, 1)
    client.get_account_info.assert_awaited_once()


@pytest.mark.asyncio
async def test_read_round_state_missing_account() -> None:
    client = AsyncMock()
    client.get_account_info.return_value = SimpleNamespace(value=None)
    with pytest.raises(ReadError, match="not found"):
        await _gateway(client).read_round_state()


@pytest.mark.asyncio
async def test_read_round_state_wrong_owner() -> None:
    client = AsyncMock()
    gw = _gateway(client)
    client.get_account_info.return_value = _account_resp(gw, _game_account(1), owner=Pubkey.new_unique())
    with pytest.raises(ReadError, match="owned by"):
        await gw.read_round_state()


@pytest.mark.asyncio
async def test_read_round_state_transport_error() -> None:
    client = AsyncMock()
    client.get_account_info.side_effect = httpx.ConnectError("connection refused")
    with pytest.raises(ReadError, match="connection refused"):
        await _gateway(client).read_round_state()


@pytest.mark.asyncio
async def test_read_round_state_garbage_data() -> None:
    client = AsyncMock()
    gw = _gateway(client)
    client.get_account_info.return_value = _account_resp(gw, b"\x00\x01")
    with pytest.raises(ReadError, match="decode"):
        await gw.read_round_state()


# ---------------------------------------------------------------- submit


@pytest.mark.asyncio
async def test_submit_trigger_returns_signature() -> None:
    client = _send_client()
    digest = await _gateway(client).submit_trigger(b"\x00\xff", b"1700000000000", b"\x01")
    assert digest == str(Signature.default())
    client.send_transaction.assert_awaited_once()


@pytest.mark.asyncio
async def test_submit_trigger_preflight_failure_is_rejected() -> None:
    client = _send_client()
    client.send_transaction.side_effect = RPCException("custom program error: 0x1771")
    with pytest.raises(RejectedError, match="0x1771"):
        await _gateway(client).submit_trigger(b"\x00", b"1", b"\x01")


@pytest.mark.asyncio
async def test_submit_trigger_transport_failure_is_submit_error() -> None:
    client = _send_client()
    client.send_transaction.side_effect = httpx.ConnectError("connection reset")
    with pytest.raises(SubmitError):
        await _gateway(client).submit_trigger(b"\x00", b"1", b"\x01")


@pytest.mark.asyncio
async def test_submit_trigger_blockhash_failure_is_submit_error() -> None:
    client = _send_client()
    client.get_latest_blockhash.side_effect = httpx.ReadTimeout("timeout")
    with pytest.raises(SubmitError, match="blockhash"):
        await _gateway(client).submit_trigger(b"\x00", b"1", b"\x01")
    client.send_transaction.assert_not_awaited()


@pytest.mark.asyncio
async def test_submit_trigger_failed_execution_carries_digest() -> None:
    client = _send_client()
    client.confirm_transaction.return_value = SimpleNamespace(value=[SimpleNamespace(err="InstructionError")])
    with pytest.raises(RejectedError) as exc_info:
        await _gateway(client).submit_trigger(b"\x00", b"1", b"\x01")
    assert exc_info.value.digest == str(Signature.default())


@pytest.mark.asyncio
async def test_submit_trigger_unconfirmed_still_reports_digest() -> None:
    client = _send_client()
    client.confirm_transaction.side_effect = httpx.ReadTimeout("slow node")
    digest = await _gateway(client).submit_trigger(b"\x00", b"1", b"\x01")
    assert digest == str(Signature.default())


@pytest.mark.asyncio
async def test_submit_set_vrf_key() -> None:
    client = _send_client()
    gw = _gateway(client)
    assert await gw.submit_set_vrf_key(bytes(32)) == str(Signature.default())
    ix = gw.set_vrf_key_instruction(bytes(32))
    assert ix.data[:8] == ix_discriminator("set_vrf_key")
    assert ix.data[8:12] == struct.pack("<I", 32)
