"""
TrustFi — Ledger Adapter Unit Tests

Coverage:
  - Tier table + unknown tier fallback
  - Template supply / time-window helpers
  - Web3Ledger against ABI-encoded eth_call results (templates 7-tuple,
    wallet → profile → hasProfileClaimed, calculateScoreForProfile)
  - Web3Ledger: timeout and call failure → OracleUnavailable, zero issuer → NotFound
  - claimWithSignature() calldata
"""

import asyncio
import os
import sys
from unittest.mock import AsyncMock, MagicMock

import pytest
from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from web3 import AsyncWeb3, Web3
from web3.providers.async_base import AsyncBaseProvider

# ── Path setup ────────────────────────────────────────────────────────────────
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from engine.config import ClaimEngineConfig
from engine.errors import InvalidRequest, NotFound, OracleUnavailable
from engine.ledger import (
    CLAIM_WITH_SIGNATURE,
    Tier,
    Web3Ledger,
    encode_claim_with_authorization,
    normalize_address,
)
from fake_ledger import ISSUER, TEST_CHAIN_ID, TEST_CONTRACT, TEST_PRIVATE_KEY, WALLET_A, WALLET_B, make_template

PROFILE_NFT   = "0x" + "22" * 20
TEMPLATE_TYPES = ["address", "uint256", "uint256", "uint8", "uint256", "uint256", "bool"]


def _selector(signature: str) -> str:
    return bytes(Web3.keccak(text=signature))[:4].hex()


class StubRPC(AsyncBaseProvider):
    """JSON-RPC endpoint answering eth_call from canned ABI-encoded results, keyed by (to, selector)."""

    def __init__(self, results):
        super().__init__()
        self.results = results
        self.calls   = []

    async def is_connected(self, show_traceback: bool = False) -> bool:
        return True

    async def make_request(self, method, params):
        if method == "eth_chainId":
            return {"jsonrpc": "2.0", "id": 1, "result": hex(TEST_CHAIN_ID)}
        if method == "eth_blockNumber":
            return {"jsonrpc": "2.0", "id": 1, "result": "0x1"}
        if method != "eth_call":
            return {"jsonrpc": "2.0", "id": 1, "error": {"code": -32601, "message": f"{method} not supported"}}

        tx   = params[0]
        data = tx.get("data") or tx.get("input")
        data = data.hex() if isinstance(data, (bytes, bytearray)) else data
        data = data.lower().removeprefix("0x")
        to   = Web3.to_checksum_address(tx["to"])
        self.calls.append((to, data[:8], data[8:]))

        raw = self.results[(to, data[:8])]
        return {"jsonrpc": "2.0", "id": 1, "result": "0x" + raw.hex()}


def _config(**overrides):
    fields = dict(
        issuer_private_key = TEST_PRIVATE_KEY,
        ledger_rpc_url     = "http://127.0.0.1:8545",
        verifying_contract = TEST_CONTRACT,
        chain_id           = TEST_CHAIN_ID,
    )
    fields.update(overrides)
    return ClaimEngineConfig(**fields)


def _rpc_ledger(results, **config_overrides):
    rpc = StubRPC(results)
    return Web3Ledger(_config(**config_overrides), w3=AsyncWeb3(rpc)), rpc


CARD    = Web3.to_checksum_address(TEST_CONTRACT)
PROFILE = Web3.to_checksum_address(PROFILE_NFT)


@pytest.fixture
def mocked_ledger():
    reader = Web3Ledger(_config(rpc_timeout=0.05))
    reader._contract = MagicMock()
    return reader


# ── Domain types ──────────────────────────────────────────────────────────────

class TestTier:

    def test_points(self):
        assert [t.points for t in Tier] == [10, 50, 200]

    @pytest.mark.parametrize("raw,expected", [(1, Tier.BRONZE), (2, Tier.SILVER), (3, Tier.GOLD), (0, Tier.BRONZE), (9, Tier.BRONZE)])
    def test_from_raw(self, raw, expected):
        assert Tier.from_raw(raw) is expected


class TestTemplate:

    def test_unlimited_supply(self):
        assert make_template(max_supply=0, current_supply=500).supply_remaining is None

    def test_supply_remaining_never_negative(self):
        assert make_template(max_supply=5, current_supply=8).supply_remaining == 0

    def test_time_window(self):
        t = make_template(start_time=100, end_time=200)
        assert not t.in_time_window(99)
        assert t.in_time_window(100)
        assert t.in_time_window(200)
        assert not t.in_time_window(201)

    def test_open_window(self):
        assert make_template(start_time=0, end_time=0).in_time_window(0)

    def test_normalize_address(self):
        assert normalize_address(WALLET_A, "wallet") == Web3.to_checksum_address(WALLET_A)
        with pytest.raises(InvalidRequest):
            normalize_address(12345, "wallet")


# ── Web3Ledger over JSON-RPC ──────────────────────────────────────────────────

class TestContractDecoding:

    @pytest.mark.asyncio
    async def test_templates_getter(self):
        encoded = abi_encode(TEMPLATE_TYPES, [ISSUER, 10, 3, 3, 100, 200, False])
        ledger, rpc = _rpc_ledger({(CARD, _selector("templates(uint256)")): encoded})

        template = await ledger.get_template(7)

        assert template.template_id == 7
        assert template.issuer == Web3.to_checksum_address(ISSUER)
        assert template.max_supply == 10
        assert template.supply_remaining == 7
        assert template.tier is Tier.GOLD
        assert (template.start_time, template.end_time, template.paused) == (100, 200, False)
        assert abi_decode(["uint256"], bytes.fromhex(rpc.calls[0][2])) == (7,)

    @pytest.mark.asyncio
    async def test_zero_issuer_is_not_found(self):
        encoded = abi_encode(TEMPLATE_TYPES, ["0x" + "0" * 40, 0, 0, 0, 0, 0, False])
        ledger, _ = _rpc_ledger({(CARD, _selector("templates(uint256)")): encoded})
        with pytest.raises(NotFound):
            await ledger.get_template(404)

    @pytest.mark.asyncio
    async def test_has_claimed_resolves_profile(self):
        ledger, rpc = _rpc_ledger({
            (CARD,    _selector("profileNFTContract()")):                   abi_encode(["address"], [PROFILE_NFT]),
            (PROFILE, _selector("addressToProfileId(address)")):            abi_encode(["uint256"], [42]),
            (CARD,    _selector("hasProfileClaimed(uint256,uint256)")):     abi_encode(["bool"], [True]),
        })

        assert await ledger.has_claimed(WALLET_A, 5) is True

        selectors = [c[1] for c in rpc.calls]
        assert selectors == [
            _selector("profileNFTContract()"),
            _selector("addressToProfileId(address)"),
            _selector("hasProfileClaimed(uint256,uint256)"),
        ]
        assert abi_decode(["uint256", "uint256"], bytes.fromhex(rpc.calls[-1][2])) == (5, 42)

    @pytest.mark.asyncio
    async def test_profile_contract_resolved_once(self):
        ledger, rpc = _rpc_ledger({
            (CARD,    _selector("profileNFTContract()")):               abi_encode(["address"], [PROFILE_NFT]),
            (PROFILE, _selector("addressToProfileId(address)")):        abi_encode(["uint256"], [42]),
            (CARD,    _selector("hasProfileClaimed(uint256,uint256)")): abi_encode(["bool"], [False]),
        })
        await ledger.has_claimed(WALLET_A, 1)
        await ledger.has_claimed(WALLET_B, 2)
        lookups = [c for c in rpc.calls if c[1] == _selector("profileNFTContract()")]
        assert len(lookups) == 1

    @pytest.mark.asyncio
    async def test_wallet_without_profile_has_not_claimed(self):
        ledger, rpc = _rpc_ledger(
            {(PROFILE, _selector("addressToProfileId(address)")): abi_encode(["uint256"], [0])},
            profile_nft_address=PROFILE_NFT,
        )
        assert await ledger.has_claimed(WALLET_A, 5) is False
        assert [c[1] for c in rpc.calls] == [_selector("addressToProfileId(address)")]

    @pytest.mark.asyncio
    async def test_score(self):
        ledger, _ = _rpc_ledger({
            (CARD, _selector("calculateScoreForProfile(uint256)")): abi_encode(["uint256"], [260]),
        })
        assert await ledger.get_score(4) == 260

    @pytest.mark.asyncio
    async def test_undecodable_result_is_oracle_unavailable(self):
        ledger, _ = _rpc_ledger({(CARD, _selector("templates(uint256)")): b"\x01\x02"})
        with pytest.raises(OracleUnavailable):
            await ledger.get_template(1)


# ── Web3Ledger failure handling ───────────────────────────────────────────────

class TestCallFailures:

    @pytest.mark.asyncio
    async def test_call_failure_is_oracle_unavailable(self, mocked_ledger):
        mocked_ledger._contract.functions.templates.return_value.call = AsyncMock(side_effect=ConnectionError("refused"))
        with pytest.raises(OracleUnavailable) as exc:
            await mocked_ledger.get_template(7)
        assert isinstance(exc.value.cause, ConnectionError)

    @pytest.mark.asyncio
    async def test_sync_argument_error_is_oracle_unavailable(self, mocked_ledger):
        mocked_ledger._contract.functions.calculateScoreForProfile.side_effect = TypeError("bad args")
        with pytest.raises(OracleUnavailable):
            await mocked_ledger.get_score(1)

    @pytest.mark.asyncio
    async def test_timeout_is_oracle_unavailable(self, mocked_ledger):
        async def _hang():
            await asyncio.sleep(5)

        mocked_ledger._contract.functions.calculateScoreForProfile.return_value.call = _hang
        with pytest.raises(OracleUnavailable, match="timed out"):
            await mocked_ledger.get_score(1)

    @pytest.mark.asyncio
    async def test_has_claimed_rejects_bad_wallet(self, mocked_ledger):
        with pytest.raises(InvalidRequest):
            await mocked_ledger.has_claimed("0xnope", 3)


# ── Calldata ──────────────────────────────────────────────────────────────────

class TestClaimCalldata:

    def test_selector_and_args(self):
        signature = bytes(range(65))
        calldata  = encode_claim_with_authorization(WALLET_A, WALLET_B, 999, 2**100 + 1, "ipfs://x", signature)
        raw = bytes.fromhex(calldata[2:])

        assert calldata.startswith("0x")
        assert raw[:4].hex() == _selector("claimWithSignature(address,address,uint256,uint256,string,bytes)")
        assert raw[:4].hex() == _selector(CLAIM_WITH_SIGNATURE)
        decoded = abi_decode(["address", "address", "uint256", "uint256", "string", "bytes"], raw[4:])
        assert decoded[2:] == (999, 2**100 + 1, "ipfs://x", signature)
