"""Credit ledger: atomic charges and idempotent refunds per work item."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from sqlalchemy import func, select, update
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.orm import Session

from reels_factory.core.constants import LedgerDirection
from reels_factory.models.ledger import CreditAccount, LedgerEntry

logger = logging.getLogger(__name__)


class InsufficientCredits(RuntimeError):
    def __init__(self, required: int, available: int) -> None:
        super().__init__(f"insufficient credits: {required} required, {available} available")
        self.required = required
        self.available = available


@dataclass(frozen=True)
class ChargeResult:
    run_id: str
    charged: int
    balance: int
    items: dict[str, int]


def balance(db: Session, user_id: str) -> int:
    value = db.scalar(select(CreditAccount.balance).where(CreditAccount.user_id == user_id))
    return int(value or 0)


def ensure_account(db: Session, user_id: str, *, signup_grant: int = 0) -> int:
    """Create the user's account on first sight, crediting ``signup_grant``."""
    if db.get(CreditAccount, user_id) is not None:
        return balance(db, user_id)

    created = db.execute(
        insert(CreditAccount).values(user_id=user_id, balance=0).on_conflict_do_nothing(index_elements=["user_id"])
    )
    if created.rowcount == 0:
        # Created concurrently by another request.
        return balance(db, user_id)

    if signup_grant > 0:
        return grant(db, user_id, signup_grant, reason="signup grant")
    return 0


def grant(db: Session, user_id: str, amount: int, *, reason: str = "grant") -> int:
    if amount <= 0:
        raise ValueError("grant amount must be positive")
    if db.get(CreditAccount, user_id) is None:
        db.add(CreditAccount(user_id=user_id, balance=0))
        db.flush()

    db.execute(
        update(CreditAccount)
        .where(CreditAccount.user_id == user_id)
        .values(balance=CreditAccount.balance + amount),
        execution_options={"synchronize_session": False},
    )
    db.add(
        LedgerEntry(
            user_id=user_id,
            item_key="grant",
            amount=amount,
            direction=LedgerDirection.GRANT.value,
            reason=reason,
        )
    )
    db.flush()
    logger.info("granted %s credits to %s (%s)", amount, user_id, reason)
    return balance(db, user_id)


def charge(
    db: Session,
    *,
    user_id: str,
    project_id: str,
    step_id: int,
    run_id: str,
    items: Mapping[str, int],
) -> ChargeResult:
    """Debit the sum of ``items`` and record one charge entry per item.

    The balance check and the debit are a single conditional UPDATE, so two
    concurrent charges can never overdraw the account. Nothing is written
    when the balance is short.
    """
    if not items:
        raise ValueError("charge requires at least one item")
    if any(amount < 0 for amount in items.values()):
        raise ValueError("item amounts must be >= 0")
    total = sum(items.values())

    result = db.execute(
        update(CreditAccount)
        .where(CreditAccount.user_id == user_id, CreditAccount.balance >= total)
        .values(balance=CreditAccount.balance - total),
        execution_options={"synchronize_session": False},
    )
    if result.rowcount == 0:
        raise InsufficientCredits(required=total, available=balance(db, user_id))

    for item_key, amount in items.items():
        db.add(
            LedgerEntry(
                user_id=user_id,
                project_id=project_id,
                step_id=int(step_id),
                run_id=run_id,
                item_key=str(item_key),
                amount=int(amount),
                direction=LedgerDirection.CHARGE.value,
            )
        )
    db.flush()

    new_balance = balance(db, user_id)
    logger.info(
        "charged %s credits to %s for project %s step %s run %s (%s items)",
        total,
        user_id,
        project_id,
        step_id,
        run_id,
        len(items),
    )
    return ChargeResult(run_id=run_id, charged=total, balance=new_balance, items=dict(items))


def _find_entry(db: Session, run_id: str, item_key: str, direction: LedgerDirection) -> Optional[LedgerEntry]:
    stmt = select(LedgerEntry).where(
        LedgerEntry.run_id == run_id,
        LedgerEntry.item_key == str(item_key),
        LedgerEntry.direction == direction.value,
    )
    return db.scalars(stmt).one_or_none()


def refund(
    db: Session,
    *,
    user_id: str,
    project_id: str,
    step_id: int,
    run_id: str,
    item_key: str,
    reason: Optional[str] = None,
) -> int:
    """Give back what one item of one run was charged.

    At most one refund per (run, item) can ever land; repeated calls, and
    items that were never charged, leave the balance alone. Returns the new
    balance.
    """
    charged = _find_entry(db, run_id, item_key, LedgerDirection.CHARGE)
    if charged is None or charged.amount == 0:
        return balance(db, user_id)
    if _find_entry(db, run_id, item_key, LedgerDirection.REFUND) is not None:
        return balance(db, user_id)

    inserted = db.execute(
        insert(LedgerEntry)
        .values(
            user_id=user_id,
            project_id=project_id,
            step_id=int(step_id),
            run_id=run_id,
            item_key=str(item_key),
            amount=charged.amount,
            direction=LedgerDirection.REFUND.value,
            reason=reason,
        )
        .on_conflict_do_nothing(index_elements=["run_id", "item_key", "direction"])
    )
    if inserted.rowcount == 0:
        # A concurrent refund for the same item won the unique key.
        logger.info("refund already recorded for run %s item %s", run_id, item_key)
        return balance(db, user_id)

    db.execute(
        update(CreditAccount)
        .where(CreditAccount.user_id == user_id)
        .values(balance=CreditAccount.balance + charged.amount),
        execution_options={"synchronize_session": False},
    )
    logger.info(
        "refunded %s credits to %s for project %s step %s run %s item %s",
        charged.amount,
        user_id,
        project_id,
        step_id,
        run_id,
        item_key,
    )
    return balance(db, user_id)


def _signed_total(db: Session, *filters) -> int:
    charged = db.scalar(
        select(func.coalesce(func.sum(LedgerEntry.amount), 0)).where(
            LedgerEntry.direction == LedgerDirection.CHARGE.value, *filters
        )
    )
    refunded = db.scalar(
        select(func.coalesce(func.sum(LedgerEntry.amount), 0)).where(
            LedgerEntry.direction == LedgerDirection.REFUND.value, *filters
        )
    )
    return int(charged or 0) - int(refunded or 0)


def net_spent(db: Session, project_id: str) -> int:
    """Charges minus refunds for a project."""
    return _signed_total(db, LedgerEntry.project_id == project_id)


def list_entries(db: Session, project_id: str) -> list[LedgerEntry]:
    stmt = select(LedgerEntry).where(LedgerEntry.project_id == project_id).order_by(LedgerEntry.id.asc())
    return list(db.scalars(stmt))
