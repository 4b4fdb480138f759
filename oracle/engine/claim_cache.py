"""
Per-session claim status cache.

refresh() fans out one eligibility read per template, waits for all of them,
then swaps in a brand-new map in a single assignment. Readers therefore see
either the previous map or the new one, never a mix. A refresh that is
cancelled before completion writes nothing, and a refresh whose results land
after those of a newer refresh is discarded. A cancelled newer refresh never
blocks an older one from committing.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Dict, Iterable, Optional, Union

from engine.eligibility import ClaimStatus, EligibilityOracle
from engine.errors import ClaimEngineError, OracleUnavailable

logger = logging.getLogger("trustfi.cache")

CacheEntry = Union[ClaimStatus, ClaimEngineError]


class ClaimStatusCache:
    def __init__(self, oracle: EligibilityOracle, wallet_address: str):
        self._oracle     = oracle
        self._wallet     = wallet_address
        self._entries: Dict[int, CacheEntry] = {}
        self._generation = itertools.count(1)
        self._committed  = 0

    @property
    def wallet_address(self) -> str:
        return self._wallet

    async def _check_one(self, template_id: int) -> CacheEntry:
        try:
            return await self._oracle.check_eligibility(template_id, self._wallet)
        except ClaimEngineError as e:
            logger.warning(f"[CACHE] template {template_id}: {e.kind.value} {e.message}")
            return e
        except Exception as e:
            logger.error(f"[CACHE] template {template_id}: unexpected {e!r}", exc_info=True)
            return OracleUnavailable(f"eligibility check for template {template_id} failed", e)

    async def refresh(self, template_ids: Iterable[int]) -> Dict[int, CacheEntry]:
        ids = sorted(set(template_ids))
        generation = next(self._generation)

        results = await asyncio.gather(*(self._check_one(t) for t in ids))
        fresh = dict(zip(ids, results))

        if generation < self._committed:
            logger.info(f"[CACHE] refresh #{generation} superseded by #{self._committed}, discarding")
            return fresh

        self._entries   = fresh
        self._committed = generation
        failed = sum(1 for r in results if isinstance(r, ClaimEngineError))
        logger.info(f"[CACHE] refresh #{generation}: {len(ids)} templates, {failed} failed")
        return dict(fresh)

    def get(self, template_id: int) -> Optional[ClaimStatus]:
        entry = self._entries.get(template_id)
        return entry if isinstance(entry, ClaimStatus) else None

    def error(self, template_id: int) -> Optional[ClaimEngineError]:
        entry = self._entries.get(template_id)
        return entry if isinstance(entry, ClaimEngineError) else None

    def snapshot(self) -> Dict[int, CacheEntry]:
        return dict(self._entries)
