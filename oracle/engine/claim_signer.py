"""
TrustFi Claim Oracle — Authorization Signer
===========================================
Issues EIP-712 "Claim" signatures that ReputationCard.claimWithSignature()
verifies on-chain.

Signing pipeline (must match the contract's CLAIM_TYPEHASH and domain exactly):
    1. Fresh uint128 nonce  : (unix nanoseconds << 64) | 64 CSPRNG bits
    2. Typed data           : domain {name, version, chainId, verifyingContract}
                              Claim(address user,address profileOwner,uint256 templateId,uint256 nonce)
    3. Sign                 : eth_account, secp256k1, 65-byte r||s||v

The signer does not re-check eligibility and keeps no record of issued nonces;
nonce consumption is tracked by the contract. Signing is stateless, so no lock
is held around it.
"""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Dict

from eth_account import Account
from eth_account.messages import SignableMessage, encode_typed_data

from engine.config import ClaimEngineConfig
from engine.errors import ClaimEngineError, ConfigurationError, InvalidRequest, SigningFailure
from engine.ledger import encode_claim_with_authorization, normalize_address

logger = logging.getLogger("trustfi.signer")

NONCE_RANDOM_BITS = 64
NONCE_TIME_MASK   = (1 << 64) - 1
UINT256_MAX       = (1 << 256) - 1

EIP712_DOMAIN_TYPE = [
    {"name": "name",              "type": "string"},
    {"name": "version",           "type": "string"},
    {"name": "chainId",           "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

CLAIM_TYPE = [
    {"name": "user",         "type": "address"},
    {"name": "profileOwner", "type": "address"},
    {"name": "templateId",   "type": "uint256"},
    {"name": "nonce",        "type": "uint256"},
]


def generate_nonce() -> int:
    """uint128: high 64 bits wall-clock nanoseconds, low 64 bits from the OS CSPRNG."""
    return ((time.time_ns() & NONCE_TIME_MASK) << NONCE_RANDOM_BITS) | secrets.randbits(NONCE_RANDOM_BITS)


@dataclass(frozen=True)
class ClaimAuthorization:
    user:          str
    profile_owner: str
    template_id:   int
    nonce:         int
    signature:     bytes
    signer:        str

    @property
    def signature_hex(self) -> str:
        return "0x" + self.signature.hex()

    def to_response(self) -> Dict[str, str]:
        # nonce as a decimal string: uint128 does not survive JS number parsing
        return {
            "nonce":     str(self.nonce),
            "signature": self.signature_hex,
            "signer":    self.signer,
        }

    def to_contract_args(self, token_uri: str) -> Dict[str, Any]:
        """Arguments for ReputationCard.claimWithSignature() in viem-ready types."""
        return {
            "user":         self.user,
            "profileOwner": self.profile_owner,
            "templateId":   str(self.template_id),
            "nonce":        str(self.nonce),
            "tokenURI":     token_uri,
            "signature":    self.signature_hex,
        }

    def encode_claim_call(self, token_uri: str) -> str:
        return encode_claim_with_authorization(
            self.user, self.profile_owner, self.template_id, self.nonce, token_uri, self.signature,
        )


class ClaimSigner:
    def __init__(self, config: ClaimEngineConfig):
        try:
            self._account = Account.from_key(config.issuer_private_key)
        except Exception as e:
            raise ConfigurationError("ISSUER_PRIVATE_KEY is not a usable secp256k1 key", e)

        self._domain = {
            "name":              config.domain_name,
            "version":           config.domain_version,
            "chainId":           config.chain_id,
            "verifyingContract": config.verifying_contract,
        }
        logger.info(
            f"Claim signer ready: address={self.address} chain={config.chain_id} "
            f"contract={config.verifying_contract}"
        )

    @property
    def address(self) -> str:
        return self._account.address

    @property
    def domain(self) -> Dict[str, Any]:
        return dict(self._domain)

    def typed_data(self, user: str, profile_owner: str, template_id: int, nonce: int) -> Dict[str, Any]:
        return {
            "types": {
                "EIP712Domain": EIP712_DOMAIN_TYPE,
                "Claim":        CLAIM_TYPE,
            },
            "primaryType": "Claim",
            "domain":      dict(self._domain),
            "message": {
                "user":         user,
                "profileOwner": profile_owner,
                "templateId":   template_id,
                "nonce":        nonce,
            },
        }

    def _signable(self, user: str, profile_owner: str, template_id: int, nonce: int) -> SignableMessage:
        return encode_typed_data(full_message=self.typed_data(user, profile_owner, template_id, nonce))

    # ------------------------------------------------------------------
    def issue_authorization(self, user: str, profile_owner: str, template_id: int) -> ClaimAuthorization:
        user          = normalize_address(user, "user")
        profile_owner = normalize_address(profile_owner, "profileOwner")
        if isinstance(template_id, bool) or not isinstance(template_id, int) or not 0 <= template_id <= UINT256_MAX:
            raise InvalidRequest(f"templateId must be a uint256, got {template_id!r}")

        nonce = generate_nonce()
        try:
            signed = self._account.sign_message(self._signable(user, profile_owner, template_id, nonce))
        except ClaimEngineError:
            raise
        except Exception as e:
            logger.error(f"[AUTHORIZE] signing failed for template {template_id}: {e}")
            raise SigningFailure("failed to sign claim authorization", e)

        logger.info(f"[AUTHORIZE] template={template_id} user={user} owner={profile_owner} nonce={nonce}")
        return ClaimAuthorization(
            user          = user,
            profile_owner = profile_owner,
            template_id   = template_id,
            nonce         = nonce,
            signature     = bytes(signed.signature),
            signer        = self.address,
        )

    def recover_signer(self, authorization: ClaimAuthorization) -> str:
        """Address that produced ``authorization.signature`` under this signer's domain."""
        signable = self._signable(
            authorization.user,
            authorization.profile_owner,
            authorization.template_id,
            authorization.nonce,
        )
        return Account.recover_message(signable, signature=authorization.signature)
