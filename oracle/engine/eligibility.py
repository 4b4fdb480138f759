"""
TrustFi Claim Oracle — Eligibility Oracle
=========================================
Read-only answer to "may this wallet claim this template right now?".

Disqualifying conditions are evaluated in a fixed order and the first one that
holds is reported, so that a template which is e.g. both paused and sold out
always yields the same reason:

    template not found → paused → outside time window → supply exhausted → already claimed

The claim flag is only read once the template itself is claimable, so
`already_claimed` is False whenever an earlier reason is reported.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from typing import Callable, Optional

from engine.errors import Ineligible, IneligibleReason, InvalidRequest, NotFound
from engine.ledger import LedgerReader, Template, normalize_address

logger = logging.getLogger("trustfi.eligibility")

ELIGIBLE_REASON = "eligible"


@dataclass(frozen=True)
class ClaimStatus:
    template_id:      int
    eligible:         bool
    reason:           str
    already_claimed:  bool
    supply_remaining: Optional[int]       # None = unlimited
    paused:           bool = False
    start_time:       Optional[int] = None
    end_time:         Optional[int] = None

    def raise_for_status(self) -> None:
        if not self.eligible:
            raise Ineligible(IneligibleReason(self.reason))

    def to_dict(self) -> dict:
        return asdict(self)


class EligibilityOracle:
    def __init__(self, ledger: LedgerReader, clock: Callable[[], float] = time.time):
        self._ledger = ledger
        self._clock  = clock

    async def check_eligibility(self, template_id: int, wallet_address: str) -> ClaimStatus:
        """
        Raises InvalidRequest for malformed inputs and OracleUnavailable when the
        ledger cannot be read. Never raises for an ineligible wallet.
        """
        if isinstance(template_id, bool) or not isinstance(template_id, int) or template_id < 0:
            raise InvalidRequest(f"templateId must be a non-negative integer, got {template_id!r}")
        wallet = normalize_address(wallet_address, "walletAddress")

        try:
            template = await self._ledger.get_template(template_id)
        except NotFound:
            logger.info(f"[ELIGIBILITY] template {template_id} not found")
            return ClaimStatus(
                template_id      = template_id,
                eligible         = False,
                reason           = IneligibleReason.TEMPLATE_NOT_FOUND.value,
                already_claimed  = False,
                supply_remaining = 0,
            )

        reason = self._template_disqualifier(template, int(self._clock()))
        already_claimed = False
        if reason is None:
            already_claimed = await self._ledger.has_claimed(wallet, template_id)
            if already_claimed:
                reason = IneligibleReason.ALREADY_CLAIMED

        status = ClaimStatus(
            template_id      = template_id,
            eligible         = reason is None,
            reason           = reason.value if reason else ELIGIBLE_REASON,
            already_claimed  = already_claimed,
            supply_remaining = template.supply_remaining,
            paused           = template.paused,
            start_time       = template.start_time or None,
            end_time         = template.end_time or None,
        )
        logger.info(
            f"[ELIGIBILITY] template={template_id} wallet={wallet} "
            f"eligible={status.eligible} reason={status.reason!r}"
        )
        return status

    @staticmethod
    def _template_disqualifier(template: Template, now: int) -> Optional[IneligibleReason]:
        if template.paused:
            return IneligibleReason.PAUSED
        if not template.in_time_window(now):
            return IneligibleReason.OUTSIDE_TIME_WINDOW
        if template.supply_remaining == 0:
            return IneligibleReason.SUPPLY_EXHAUSTED
        return None
