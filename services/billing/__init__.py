"""
Billing Service

- CreditLedger: idempotent charge, refund and grant
- OwnerPreferences: hard blocks, assist quota, courtesy refund flag
"""

from .ledger import ChargeOutcome, CreditLedger, ReferenceType, RefundOutcome
from .preferences import OwnerPreferences

__all__ = [
    "CreditLedger",
    "ChargeOutcome",
    "RefundOutcome",
    "ReferenceType",
    "OwnerPreferences",
]
