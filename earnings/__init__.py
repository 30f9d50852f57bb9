"""
Creator Earnings and Payout Engine

This package provides:
- Append-only payment ledger keyed by provider transaction id
- Platform fee policies (per-block and basis points)
- Per-period and all-time earnings views
- Idempotent monthly payout scheduling
- Stripe webhook ingestion and ticket payment holds
"""

from .container import EarningsServices, build_services
from .fees import BasisPointsFeePolicy, BlockFeePolicy, FeePolicy, compute_fee, get_fee_policy
from .ledger import PaymentLedger
from .models import (
    Payment,
    PaymentStatus,
    Payout,
    PayoutStatus,
    Ticket,
    TicketStatus,
)
from .scheduler import PayoutScheduler

__all__ = [
    "EarningsServices",
    "build_services",
    "FeePolicy",
    "BlockFeePolicy",
    "BasisPointsFeePolicy",
    "compute_fee",
    "get_fee_policy",
    "PaymentLedger",
    "PayoutScheduler",
    "Payment",
    "PaymentStatus",
    "Payout",
    "PayoutStatus",
    "Ticket",
    "TicketStatus",
]
