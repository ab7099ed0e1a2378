# models/provenance.py
"""
Typed provenance records stored in LedgerEntry.provenance (JSON).

Each record serializes to a plain dict with a "type" discriminator;
Decimal values are stored as strings.
"""
from dataclasses import dataclass, field, asdict
from decimal import Decimal
from typing import Any, Dict, List, Optional


@dataclass
class CommissionProvenance:
    payerID: int
    ruleVersion: str
    percent: Decimal
    baseAmount: Decimal
    origin: str = "distribution"  # distribution, backfill, recalculation
    type: str = field(default="commission", init=False)


@dataclass
class ReversalProvenance:
    reason: str
    adminID: Optional[int]
    sourceEntryIDs: List[int]
    trigger: str = "manual"  # manual, fix_unlock, fix_marketing, fix_early_unlock, recalculation, payment_rejected
    type: str = field(default="reversal", init=False)


@dataclass
class ManualAdjustmentProvenance:
    reason: str
    adminID: int
    type: str = field(default="manual_adjustment", init=False)


@dataclass
class BonusProvenance:
    reason: str
    adminID: Optional[int]
    type: str = field(default="bonus", init=False)


@dataclass
class WithdrawalProvenance:
    requestedBy: int
    method: Optional[str] = None
    destination: Optional[str] = None
    type: str = field(default="withdrawal", init=False)


@dataclass
class PurchaseProvenance:
    paymentID: int
    type: str = field(default="purchase", init=False)


_RECORD_TYPES = {
    "commission": CommissionProvenance,
    "reversal": ReversalProvenance,
    "manual_adjustment": ManualAdjustmentProvenance,
    "bonus": BonusProvenance,
    "withdrawal": WithdrawalProvenance,
    "purchase": PurchaseProvenance,
}

_DECIMAL_FIELDS = {"percent", "baseAmount"}


def to_payload(record) -> Dict[str, Any]:
    payload = asdict(record)
    for key, value in payload.items():
        if isinstance(value, Decimal):
            payload[key] = str(value)
    return payload


def parse_provenance(payload: Optional[Dict[str, Any]]):
    """Rebuild the typed record from a stored payload (None if absent or unknown)."""
    if not payload:
        return None

    recordType = _RECORD_TYPES.get(payload.get("type"))
    if recordType is None:
        return None

    kwargs = {k: v for k, v in payload.items() if k != "type"}
    for key in _DECIMAL_FIELDS & kwargs.keys():
        kwargs[key] = Decimal(kwargs[key])
    return recordType(**kwargs)
