"""
TrustFi Claim Oracle — Ledger Adapter
=====================================
Read side of the ReputationCard and ProfileNFT contracts (templates, per-profile
claim flags, scores) and the calldata builder for the claimWithSignature()
write entrypoint that consumes a claim authorization.

Every read is bounded by the configured RPC timeout. Any transport or
contract-call failure surfaces as OracleUnavailable; a template whose issuer is
the zero address surfaces as NotFound.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from eth_abi import encode as abi_encode
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3

from engine.config import ClaimEngineConfig
from engine.errors import InvalidRequest, NotFound, OracleUnavailable

logger = logging.getLogger("trustfi.ledger")

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Domain types
# ---------------------------------------------------------------------------
class Tier(IntEnum):
    BRONZE = 1
    SILVER = 2
    GOLD   = 3

    @property
    def points(self) -> int:
        return TIER_POINTS[self]

    @classmethod
    def from_raw(cls, value: int) -> "Tier":
        """Unknown tier values fall back to Bronze, as the contract's tier table does."""
        try:
            return cls(int(value))
        except ValueError:
            return cls.BRONZE


TIER_POINTS = {
    Tier.BRONZE: 10,
    Tier.SILVER: 50,
    Tier.GOLD:   200,
}


@dataclass(frozen=True)
class Template:
    template_id:    int
    issuer:         str
    max_supply:     int     # 0 = unlimited
    current_supply: int
    tier:           Tier
    start_time:     int     # 0 = immediate
    end_time:       int     # 0 = never expires
    paused:         bool

    @property
    def unlimited(self) -> bool:
        return self.max_supply == 0

    @property
    def supply_remaining(self) -> Optional[int]:
        """None means unlimited."""
        if self.unlimited:
            return None
        return max(0, self.max_supply - self.current_supply)

    def in_time_window(self, now: int) -> bool:
        if self.start_time and now < self.start_time:
            return False
        if self.end_time and now > self.end_time:
            return False
        return True


def normalize_address(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not Web3.is_address(value):
        raise InvalidRequest(f"{field_name} is not a valid address: {value!r}")
    return Web3.to_checksum_address(value)


# ---------------------------------------------------------------------------
# Read interface
# ---------------------------------------------------------------------------
class LedgerReader(ABC):
    """Consumed ledger interface. Implementations raise NotFound / OracleUnavailable."""

    @abstractmethod
    async def get_template(self, template_id: int) -> Template: ...

    @abstractmethod
    async def has_claimed(self, wallet: str, template_id: int) -> bool: ...

    @abstractmethod
    async def get_score(self, profile_id: int) -> int: ...


REPUTATION_CARD_ABI = [
    {
        "inputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "name": "templates",
        "outputs": [
            {"internalType": "address", "name": "issuer",        "type": "address"},
            {"internalType": "uint256", "name": "maxSupply",     "type": "uint256"},
            {"internalType": "uint256", "name": "currentSupply", "type": "uint256"},
            {"internalType": "uint8",   "name": "tier",          "type": "uint8"},
            {"internalType": "uint256", "name": "startTime",     "type": "uint256"},
            {"internalType": "uint256", "name": "endTime",       "type": "uint256"},
            {"internalType": "bool",    "name": "isPaused",      "type": "bool"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"internalType": "uint256", "name": "templateId", "type": "uint256"},
            {"internalType": "uint256", "name": "profileId",  "type": "uint256"},
        ],
        "name": "hasProfileClaimed",
        "outputs": [{"internalType": "bool", "name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "uint256", "name": "profileId", "type": "uint256"}],
        "name": "calculateScoreForProfile",
        "outputs": [{"internalType": "uint256", "name": "total", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "profileNFTContract",
        "outputs": [{"internalType": "address", "name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
]

PROFILE_NFT_ABI = [
    {
        "inputs": [{"internalType": "address", "name": "", "type": "address"}],
        "name": "addressToProfileId",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]


class Web3Ledger(LedgerReader):
    """
    LedgerReader over JSON-RPC using web3.py's async client.

    Claims are recorded per profile, so has_claimed() resolves the wallet's
    profile id on the ProfileNFT contract first. That contract's address comes
    from PROFILE_NFT_ADDRESS or, when unset, from ReputationCard.profileNFTContract().
    """

    def __init__(self, config: ClaimEngineConfig, w3: Optional[AsyncWeb3] = None):
        self._timeout = config.rpc_timeout
        self._w3 = w3 or AsyncWeb3(
            AsyncHTTPProvider(config.ledger_rpc_url, request_kwargs={"timeout": config.rpc_timeout})
        )
        self._contract = self._w3.eth.contract(
            address=config.verifying_contract,
            abi=REPUTATION_CARD_ABI,
        )
        self._profiles = None
        if config.profile_nft_address:
            self._profiles = self._w3.eth.contract(
                address=config.profile_nft_address,
                abi=PROFILE_NFT_ABI,
            )
        logger.info(f"Ledger reader bound to {config.verifying_contract} via {config.ledger_rpc_url}")

    async def _call(self, label: str, call: Callable[[], Awaitable[T]]) -> T:
        try:
            return await asyncio.wait_for(call(), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            logger.warning(f"[LEDGER] {label} timed out after {self._timeout}s")
            raise OracleUnavailable(f"{label} timed out after {self._timeout}s", e)
        except Exception as e:
            logger.warning(f"[LEDGER] {label} failed: {e}")
            raise OracleUnavailable(f"{label} failed", e)

    async def _profile_contract(self):
        if self._profiles is None:
            address = await self._call(
                "profileNFTContract()",
                lambda: self._contract.functions.profileNFTContract().call(),
            )
            self._profiles = self._w3.eth.contract(
                address=Web3.to_checksum_address(address),
                abi=PROFILE_NFT_ABI,
            )
            logger.info(f"[LEDGER] ProfileNFT resolved to {self._profiles.address}")
        return self._profiles

    async def get_template(self, template_id: int) -> Template:
        raw = await self._call(
            f"templates({template_id})",
            lambda: self._contract.functions.templates(template_id).call(),
        )
        (issuer, max_supply, current_supply, tier,
         start_time, end_time, is_paused) = raw
        if int(issuer, 16) == 0:
            raise NotFound(f"template {template_id} does not exist")
        return Template(
            template_id    = template_id,
            issuer         = Web3.to_checksum_address(issuer),
            max_supply     = int(max_supply),
            current_supply = int(current_supply),
            tier           = Tier.from_raw(tier),
            start_time     = int(start_time),
            end_time       = int(end_time),
            paused         = bool(is_paused),
        )

    async def get_profile_id(self, wallet: str) -> int:
        """0 means the wallet owns no profile."""
        wallet   = normalize_address(wallet, "wallet")
        profiles = await self._profile_contract()
        result = await self._call(
            f"addressToProfileId({wallet})",
            lambda: profiles.functions.addressToProfileId(wallet).call(),
        )
        return int(result)

    async def has_claimed(self, wallet: str, template_id: int) -> bool:
        profile_id = await self.get_profile_id(wallet)
        if profile_id == 0:
            return False
        result = await self._call(
            f"hasProfileClaimed({template_id}, {profile_id})",
            lambda: self._contract.functions.hasProfileClaimed(template_id, profile_id).call(),
        )
        return bool(result)

    async def get_score(self, profile_id: int) -> int:
        result = await self._call(
            f"calculateScoreForProfile({profile_id})",
            lambda: self._contract.functions.calculateScoreForProfile(profile_id).call(),
        )
        return int(result)


# ---------------------------------------------------------------------------
# Write interface (encoded here, submitted by the caller's wallet)
# ---------------------------------------------------------------------------
CLAIM_WITH_SIGNATURE = "claimWithSignature(address,address,uint256,uint256,string,bytes)"


def encode_claim_with_authorization(
    user:          str,
    profile_owner: str,
    template_id:   int,
    nonce:         int,
    token_uri:     str,
    signature:     bytes,
) -> str:
    """0x-prefixed calldata for ReputationCard.claimWithSignature()."""
    selector = bytes(Web3.keccak(text=CLAIM_WITH_SIGNATURE))[:4]
    encoded  = abi_encode(
        ["address", "address", "uint256", "uint256", "string", "bytes"],
        [
            Web3.to_checksum_address(user),
            Web3.to_checksum_address(profile_owner),
            template_id,
            nonce,
            token_uri,
            signature,
        ],
    )
    return "0x" + (selector + encoded).hex()
