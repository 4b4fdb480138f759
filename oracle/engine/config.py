"""
TrustFi Claim Oracle — Configuration
====================================
One explicitly constructed, immutable config object. Components receive it in
their constructors; nothing in the engine reads os.environ on its own.

Required variables (startup-fatal when absent):
    ISSUER_PRIVATE_KEY       hex secp256k1 key of the claim issuer
    LEDGER_RPC_URL           JSON-RPC endpoint of the target chain
    REPUTATION_CARD_ADDRESS  ReputationCard contract (EIP-712 verifyingContract)
    CHAIN_ID                 EIP-155 chain id (e.g. 1287 for Moonbase Alpha)

Optional: PROFILE_NFT_ADDRESS (otherwise read from ReputationCard.profileNFTContract()),
LEDGER_RPC_TIMEOUT, RATE_LIMIT_AUTHORIZE, EIP712_DOMAIN_NAME, EIP712_DOMAIN_VERSION.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from dotenv import load_dotenv
from web3 import Web3

from engine.errors import ConfigurationError

logger = logging.getLogger("trustfi.config")

DEFAULT_DOMAIN_NAME    = "TrustFi ReputationCard"
DEFAULT_DOMAIN_VERSION = "1"
DEFAULT_RPC_TIMEOUT    = 5.0
DEFAULT_RATE_LIMIT     = "30/minute"


@dataclass(frozen=True)
class ClaimEngineConfig:
    issuer_private_key:      str = field(repr=False)
    ledger_rpc_url:          str
    verifying_contract:      str
    chain_id:                int
    rpc_timeout:             float = DEFAULT_RPC_TIMEOUT
    domain_name:             str   = DEFAULT_DOMAIN_NAME
    domain_version:          str   = DEFAULT_DOMAIN_VERSION
    rate_limit_authorize:    str   = DEFAULT_RATE_LIMIT
    profile_nft_address:     Optional[str] = None

    def __post_init__(self):
        key = (self.issuer_private_key or "").strip().removeprefix("0x")
        if len(key) != 64:
            raise ConfigurationError("ISSUER_PRIVATE_KEY must be a 32-byte hex string")
        try:
            bytes.fromhex(key)
        except ValueError as e:
            raise ConfigurationError("ISSUER_PRIVATE_KEY is not valid hex", e)
        object.__setattr__(self, "issuer_private_key", "0x" + key)

        if not self.ledger_rpc_url:
            raise ConfigurationError("LEDGER_RPC_URL is required")

        if not self.verifying_contract or not Web3.is_address(self.verifying_contract):
            raise ConfigurationError(
                f"REPUTATION_CARD_ADDRESS is not a valid address: {self.verifying_contract!r}"
            )
        if int(self.verifying_contract, 16) == 0:
            raise ConfigurationError("REPUTATION_CARD_ADDRESS must not be the zero address")
        object.__setattr__(
            self, "verifying_contract", Web3.to_checksum_address(self.verifying_contract)
        )

        if self.profile_nft_address:
            if not Web3.is_address(self.profile_nft_address) or int(self.profile_nft_address, 16) == 0:
                raise ConfigurationError(
                    f"PROFILE_NFT_ADDRESS is not a valid address: {self.profile_nft_address!r}"
                )
            object.__setattr__(
                self, "profile_nft_address", Web3.to_checksum_address(self.profile_nft_address)
            )

        if not isinstance(self.chain_id, int) or self.chain_id <= 0:
            raise ConfigurationError(f"CHAIN_ID must be a positive integer, got {self.chain_id!r}")
        if self.rpc_timeout <= 0:
            raise ConfigurationError("LEDGER_RPC_TIMEOUT must be positive")

    # ------------------------------------------------------------------
    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        dotenv: bool = True,
    ) -> "ClaimEngineConfig":
        """Build from environment variables. Raises ConfigurationError listing every missing one."""
        if environ is None:
            if dotenv:
                load_dotenv()
            environ = os.environ

        required = ("ISSUER_PRIVATE_KEY", "LEDGER_RPC_URL", "REPUTATION_CARD_ADDRESS", "CHAIN_ID")
        missing  = [name for name in required if not environ.get(name, "").strip()]
        if missing:
            raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")

        try:
            chain_id = int(environ["CHAIN_ID"].strip(), 0)
        except ValueError as e:
            raise ConfigurationError(f"CHAIN_ID is not an integer: {environ['CHAIN_ID']!r}", e)

        try:
            rpc_timeout = float(environ.get("LEDGER_RPC_TIMEOUT", DEFAULT_RPC_TIMEOUT))
        except ValueError as e:
            raise ConfigurationError("LEDGER_RPC_TIMEOUT is not a number", e)

        config = cls(
            issuer_private_key   = environ["ISSUER_PRIVATE_KEY"],
            ledger_rpc_url       = environ["LEDGER_RPC_URL"].strip(),
            verifying_contract   = environ["REPUTATION_CARD_ADDRESS"].strip(),
            chain_id             = chain_id,
            rpc_timeout          = rpc_timeout,
            domain_name          = environ.get("EIP712_DOMAIN_NAME", DEFAULT_DOMAIN_NAME),
            domain_version       = environ.get("EIP712_DOMAIN_VERSION", DEFAULT_DOMAIN_VERSION),
            rate_limit_authorize = environ.get("RATE_LIMIT_AUTHORIZE", DEFAULT_RATE_LIMIT),
            profile_nft_address  = environ.get("PROFILE_NFT_ADDRESS", "").strip() or None,
        )
        logger.info(
            f"Configuration loaded: chain={config.chain_id} "
            f"contract={config.verifying_contract} rpc={config.ledger_rpc_url}"
        )
        return config
