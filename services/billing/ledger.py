"""
Credit Ledger - idempotent charge and refund.

The only idempotency mechanism is the unique (reference_type, reference_id)
pair on ledger entries. Charging or refunding the same job twice, whether
from a retried pipeline run, a crash-and-restart or a double click, leaves
exactly one entry behind.

Usage:
    ledger = CreditLedger(store, OwnerPreferences(store))

    await ledger.ensure_enough_credits(owner_id, 2)
    await ledger.charge(owner_id, job_id, 2, reason="still:niche")
    await ledger.refund(owner_id, job_id, 2, error)
"""

import logging
from datetime import date
from enum import Enum
from typing import Optional

from core.errors import (
    DuplicateReferenceError,
    InsufficientCredits,
    SafetyBlocked,
    ValidationError,
    is_safety_block,
)
from services.orchestrator.db import JobStore
from services.orchestrator.state import LedgerEntry

from .preferences import OwnerPreferences

logger = logging.getLogger(__name__)


class ReferenceType(str, Enum):
    CHARGE = "charge"
    REFUND = "refund"
    GRANT = "grant"


class ChargeOutcome(str, Enum):
    CHARGED = "charged"
    ALREADY_CHARGED = "already_charged"


class RefundOutcome(str, Enum):
    REFUNDED = "refunded"
    ALREADY_REFUNDED = "already_refunded"
    WITHHELD = "withheld"
    NOT_CHARGED = "not_charged"


def is_safety_failure(error: Optional[BaseException]) -> bool:
    """Judged on the provider's error field only, never its logs."""
    if error is None:
        return False
    if isinstance(error, SafetyBlocked):
        return True
    diagnostic = getattr(error, "diagnostic", None)
    if not isinstance(diagnostic, dict):
        return False
    return is_safety_block(diagnostic.get("error"))


class CreditLedger:
    """Append-only credit ledger over a JobStore."""

    def __init__(
        self,
        store: JobStore,
        preferences: Optional[OwnerPreferences] = None,
        source: str = "generation",
    ):
        self.store = store
        self.preferences = preferences or OwnerPreferences(store)
        self.source = source

    async def balance(self, owner_id: str) -> int:
        return await self.store.get_balance(owner_id)

    async def ensure_enough_credits(
        self,
        owner_id: str,
        amount: int,
        suggestion: Optional[dict] = None,
    ) -> int:
        """
        Fail fast when the balance is below amount.

        Read-then-decide: a concurrent charge may slip past this check, the
        unique charge reference is what prevents double billing.
        """
        balance = await self.balance(owner_id)
        if balance < amount:
            if suggestion and balance < suggestion.get("cost", amount):
                suggestion = None
            raise InsufficientCredits(balance=balance, needed=amount, suggestion=suggestion)
        return balance

    async def charge(self, owner_id: str, job_id: str, amount: int, reason: str) -> ChargeOutcome:
        if amount <= 0:
            raise ValidationError(f"Charge amount must be positive, got {amount}")

        existing = await self.store.find_ledger_entry(ReferenceType.CHARGE.value, job_id)
        if existing is not None:
            logger.info(f"Job {job_id} already charged ({existing.delta}); skipping")
            return ChargeOutcome.ALREADY_CHARGED

        entry = LedgerEntry(
            owner_id=owner_id,
            delta=-amount,
            reason=reason,
            source=self.source,
            reference_type=ReferenceType.CHARGE.value,
            reference_id=job_id,
        )
        try:
            await self.store.append_ledger_entry(entry)
        except DuplicateReferenceError:
            logger.info(f"Concurrent charge for job {job_id} won the insert; skipping")
            return ChargeOutcome.ALREADY_CHARGED

        logger.info(f"Charged {amount} credits to {owner_id} for job {job_id} ({reason})")
        return ChargeOutcome.CHARGED

    async def refund(
        self,
        owner_id: str,
        job_id: str,
        amount: int,
        error: Optional[BaseException] = None,
        today: Optional[date] = None,
    ) -> RefundOutcome:
        existing = await self.store.find_ledger_entry(ReferenceType.REFUND.value, job_id)
        if existing is not None:
            return RefundOutcome.ALREADY_REFUNDED

        charge = await self.store.find_ledger_entry(ReferenceType.CHARGE.value, job_id)
        if charge is None:
            logger.info(f"No charge recorded for job {job_id}; nothing to refund")
            return RefundOutcome.NOT_CHARGED

        charged = -charge.delta
        if amount != charged:
            logger.warning(f"Refund for job {job_id} requested {amount} but {charged} was charged; using {charged}")

        if is_safety_failure(error):
            granted = await self.preferences.claim_courtesy_refund(owner_id, today=today)
            if not granted:
                logger.warning(
                    f"Courtesy refund already used today by {owner_id}; withholding refund for job {job_id}"
                )
                return RefundOutcome.WITHHELD

        code = getattr(error, "error_code", None) or (type(error).__name__ if error else "unknown")
        entry = LedgerEntry(
            owner_id=owner_id,
            delta=charged,
            reason=f"refund:{code}",
            source=self.source,
            reference_type=ReferenceType.REFUND.value,
            reference_id=job_id,
        )
        try:
            await self.store.append_ledger_entry(entry)
        except DuplicateReferenceError:
            return RefundOutcome.ALREADY_REFUNDED

        logger.info(f"Refunded {charged} credits to {owner_id} for job {job_id} ({code})")
        return RefundOutcome.REFUNDED

    async def grant(self, owner_id: str, amount: int, reference_id: str, reason: str = "topup") -> bool:
        """Add credits, e.g. after a purchase. False when the reference was already applied."""
        if amount <= 0:
            raise ValidationError(f"Grant amount must be positive, got {amount}")

        entry = LedgerEntry(
            owner_id=owner_id,
            delta=amount,
            reason=reason,
            source="grant",
            reference_type=ReferenceType.GRANT.value,
            reference_id=reference_id,
        )
        try:
            await self.store.append_ledger_entry(entry)
        except DuplicateReferenceError:
            logger.info(f"Grant {reference_id} already applied")
            return False
        return True
