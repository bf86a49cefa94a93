"""Append-only audit of money applied to fines."""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from circulation.models import Payment, PaymentAllocation, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Allocation:
    fine_id: int
    applied_amount: Decimal
    remaining_before: Decimal
    remaining_after: Decimal

    def to_dict(self) -> dict:
        return {
            "fineId": self.fine_id,
            "appliedAmount": str(self.applied_amount),
            "remainingBefore": str(self.remaining_before),
            "remainingAfter": str(self.remaining_after),
        }


def record_payment(
    db: Session,
    *,
    member_id: int,
    payer_id: Optional[int],
    allocations: Sequence[Allocation],
    total_amount: Decimal,
) -> Payment:
    """Stage one Payment row with its allocations in the caller's transaction.

    Nothing is validated: the ledger already decided what was applied.
    """
    payment = Payment(
        member_id=member_id,
        amount=total_amount,
        applied_at=utcnow(),
        payer_id=payer_id if payer_id is not None else member_id,
        allocations=[
            PaymentAllocation(
                position=i,
                fine_id=a.fine_id,
                applied_amount=a.applied_amount,
                remaining_before=a.remaining_before,
                remaining_after=a.remaining_after,
            )
            for i, a in enumerate(allocations)
        ],
    )
    db.add(payment)
    db.flush()
    logger.info(
        "[PAY] recorded payment=%s member=%s payer=%s amount=%s fines=%s",
        payment.payment_id,
        member_id,
        payment.payer_id,
        total_amount,
        [a.fine_id for a in allocations],
    )
    return payment


def list_payments(db: Session, member_id: int) -> List[Payment]:
    stmt = (
        select(Payment)
        .where(Payment.member_id == member_id)
        .options(selectinload(Payment.allocations))
        .order_by(Payment.applied_at.desc(), Payment.payment_id.desc())
    )
    return list(db.scalars(stmt))
