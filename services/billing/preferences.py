"""
Owner preferences.

A small key-value document per owner:
- hard_blocks: tags prompt synthesis must steer away from
- assist: {"period": "YYYY-MM-DD", "count": n} for free prompt previews
- courtesy_refund_date: UTC date of the last safety courtesy refund

Read-modify-write with last-writer-wins; writes are rare and scoped to one owner.
"""

import logging
from datetime import date
from typing import Optional

from core.errors import ValidationError
from services.orchestrator.db import JobStore
from services.orchestrator.state import utcnow

logger = logging.getLogger(__name__)


def today_utc() -> str:
    return utcnow().date().isoformat()


class OwnerPreferences:
    """Typed access to the owner preference document."""

    def __init__(self, store: JobStore):
        self.store = store

    async def get(self, owner_id: str) -> dict:
        return await self.store.get_owner_preferences(owner_id)

    async def hard_blocks(self, owner_id: str) -> list[str]:
        prefs = await self.get(owner_id)
        return list(prefs.get("hard_blocks") or [])

    async def add_hard_block(self, owner_id: str, tag: str) -> list[str]:
        tag = (tag or "").strip().lower()
        if not tag:
            raise ValidationError("Hard-block tag must not be empty", error_code="INVALID_TAG")

        prefs = await self.get(owner_id)
        blocks = list(prefs.get("hard_blocks") or [])
        if tag not in blocks:
            blocks.append(tag)
            prefs["hard_blocks"] = blocks
            await self.store.set_owner_preferences(owner_id, prefs)
            logger.info(f"Owner {owner_id} hard-blocked '{tag}'")
        return blocks

    async def consume_assist(self, owner_id: str, quota: int, today: Optional[date] = None) -> int:
        """
        Count one prompt preview against the daily quota.

        Returns the number used in the current period. Raises ValidationError
        when the quota is already exhausted.
        """
        period = today.isoformat() if today else today_utc()
        prefs = await self.get(owner_id)
        assist = dict(prefs.get("assist") or {})

        count = assist.get("count", 0) if assist.get("period") == period else 0
        if count >= quota:
            raise ValidationError(
                f"Daily preview limit reached ({quota})",
                error_code="ASSIST_QUOTA_EXCEEDED",
                details={"quota": quota, "period": period},
            )

        prefs["assist"] = {"period": period, "count": count + 1}
        await self.store.set_owner_preferences(owner_id, prefs)
        return count + 1

    async def claim_courtesy_refund(self, owner_id: str, today: Optional[date] = None) -> bool:
        """Set today's courtesy flag. False when it was already used today."""
        day = today.isoformat() if today else today_utc()
        prefs = await self.get(owner_id)
        if prefs.get("courtesy_refund_date") == day:
            return False

        prefs["courtesy_refund_date"] = day
        await self.store.set_owner_preferences(owner_id, prefs)
        return True
