from __future__ import annotations

import pytest
from sqlalchemy import select

from reels_factory.core.constants import LedgerDirection
from reels_factory.models import LedgerEntry
from reels_factory.services import ledger


def test_signup_grant_is_credited_once(session_factory) -> None:
    with session_factory() as db:
        assert ledger.ensure_account(db, "u1", signup_grant=100) == 100
        assert ledger.ensure_account(db, "u1", signup_grant=100) == 100
        db.commit()

        grants = db.scalars(select(LedgerEntry).where(LedgerEntry.direction == LedgerDirection.GRANT.value)).all()
        assert len(grants) == 1


def test_charge_debits_and_records_items(session_factory) -> None:
    with session_factory() as db:
        ledger.ensure_account(db, "u1", signup_grant=200)
        result = ledger.charge(
            db, user_id="u1", project_id="p1", step_id=4, run_id="run-1", items={"0": 50, "1": 50, "2": 50}
        )
        db.commit()

        assert result.charged == 150
        assert result.balance == 50
        assert ledger.net_spent(db, "p1") == 150
        assert [entry.item_key for entry in ledger.list_entries(db, "p1")] == ["0", "1", "2"]


def test_charge_is_all_or_nothing(session_factory) -> None:
    with session_factory() as db:
        ledger.ensure_account(db, "u1", signup_grant=60)
        db.commit()

        with pytest.raises(ledger.InsufficientCredits) as excinfo:
            ledger.charge(db, user_id="u1", project_id="p1", step_id=4, run_id="run-1", items={"0": 50, "1": 50})
        db.rollback()

        assert excinfo.value.required == 100
        assert excinfo.value.available == 60
        assert ledger.balance(db, "u1") == 60
        assert ledger.list_entries(db, "p1") == []


def test_charge_rejects_empty_or_negative_items(session_factory) -> None:
    with session_factory() as db:
        ledger.ensure_account(db, "u1", signup_grant=10)
        with pytest.raises(ValueError):
            ledger.charge(db, user_id="u1", project_id="p1", step_id=0, run_id="r", items={})
        with pytest.raises(ValueError):
            ledger.charge(db, user_id="u1", project_id="p1", step_id=0, run_id="r", items={"step": -1})


def test_refund_is_idempotent_per_item(session_factory) -> None:
    with session_factory() as db:
        ledger.ensure_account(db, "u1", signup_grant=100)
        ledger.charge(db, user_id="u1", project_id="p1", step_id=4, run_id="run-1", items={"0": 50, "1": 50})
        db.commit()

        first = ledger.refund(db, user_id="u1", project_id="p1", step_id=4, run_id="run-1", item_key="1")
        again = ledger.refund(db, user_id="u1", project_id="p1", step_id=4, run_id="run-1", item_key="1")
        db.commit()

        assert (first, again) == (50, 50)
        assert ledger.balance(db, "u1") == 50
        assert ledger.net_spent(db, "p1") == 50


def test_refund_without_charge_is_a_noop(session_factory) -> None:
    with session_factory() as db:
        ledger.ensure_account(db, "u1", signup_grant=10)
        new_balance = ledger.refund(db, user_id="u1", project_id="p1", step_id=0, run_id="missing", item_key="step")
        assert new_balance == 10
        assert ledger.balance(db, "u1") == 10


def test_grant_rejects_non_positive_amounts(session_factory) -> None:
    with session_factory() as db:
        with pytest.raises(ValueError):
            ledger.grant(db, "u1", 0)
        assert ledger.grant(db, "u2", 25, reason="promo") == 25


def test_losing_refund_race_keeps_the_callers_pending_writes(session_factory, monkeypatch) -> None:
    with session_factory() as db:
        ledger.ensure_account(db, "u1", signup_grant=100)
        ledger.charge(db, user_id="u1", project_id="p1", step_id=4, run_id="run-1", items={"0": 50})
        ledger.refund(db, user_id="u1", project_id="p1", step_id=4, run_id="run-1", item_key="0")
        db.commit()

        find_entry = ledger._find_entry

        def without_refund_lookup(db, run_id, item_key, direction):
            if direction == LedgerDirection.REFUND:
                return None
            return find_entry(db, run_id, item_key, direction)

        monkeypatch.setattr(ledger, "_find_entry", without_refund_lookup)
        ledger.grant(db, "u2", 30, reason="promo")
        assert ledger.refund(db, user_id="u1", project_id="p1", step_id=4, run_id="run-1", item_key="0") == 100
        db.commit()

        assert ledger.balance(db, "u2") == 30
        assert ledger.balance(db, "u1") == 100
        refunds = [entry for entry in ledger.list_entries(db, "p1") if entry.direction == LedgerDirection.REFUND.value]
        assert len(refunds) == 1
