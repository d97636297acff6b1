import sqlite3
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from errors import AlreadyClosedError, NotFoundError, StockReleaseError
from loan import LoanStatus
from stock_ledger import StockLedger


def test_create_then_return_restores_stock(lib, resource, person, now):
    loan = lib.create_loan(person.id, resource.id, 2, now=now - timedelta(days=3))
    assert lib.get_resource(resource.id).available_quantity == 3

    result = lib.return_loan(loan.id, now=now)

    assert result.loan.status == LoanStatus.RETURNED
    assert result.loan.returned_date == now
    assert result.loan.stock_released
    assert not result.was_overdue
    assert result.days_overdue == 0
    assert not result.condition_flagged
    assert result.message == "Loan returned on time."
    resource = lib.get_resource(resource.id)
    assert resource.available_quantity == 5
    assert resource.state == "good"
    assert not resource.needs_review


def test_late_return(lib, resource, person, now):
    loan = lib.create_loan(person.id, resource.id, 1, now=now - timedelta(days=20))

    result = lib.return_loan(loan.id, now=now)

    assert result.was_overdue
    assert result.days_overdue == 5
    assert result.message == "Loan returned 5 day(s) late."
    # a closed loan is never overdue afterwards
    assert lib.describe(result.loan, now)["display_status"] == "returned"


def test_lateness_is_measured_at_the_return_date(lib, resource, person, now):
    loan = lib.create_loan(person.id, resource.id, 1, now=now - timedelta(days=20))

    result = lib.return_loan(loan.id, return_date=now - timedelta(days=6), now=now)

    assert not result.was_overdue
    assert result.message == "Loan returned on time."


def test_damaged_return_restores_stock_and_flags_resource(lib, resource, person, now):
    loan = lib.create_loan(person.id, resource.id, 2, now=now - timedelta(days=2))

    result = lib.return_loan(loan.id, resource_condition="damaged", observations="Tapa rota", now=now)

    assert result.condition_flagged
    assert result.loan.resource_condition.value == "damaged"
    assert result.loan.observations == "Tapa rota"
    resource = lib.get_resource(resource.id)
    assert resource.available_quantity == 5
    assert resource.total_quantity == 5
    assert resource.last_reported_condition == "damaged"
    assert resource.needs_review
    # the remaining copies keep their catalogued state
    assert resource.state == "good"


def test_resource_stays_loanable_after_a_damaged_copy(lib, resource, person, now):
    loan = lib.create_loan(person.id, resource.id, 1, now=now - timedelta(days=2))
    lib.return_loan(loan.id, resource_condition="damaged", now=now)

    other = lib.add_person("Irene Castro")
    again = lib.create_loan(other.id, resource.id, 1, now=now)

    assert again.status == LoanStatus.ACTIVE
    assert lib.get_resource(resource.id).available_quantity == 4


def test_resource_stays_loanable_after_losing_one_copy(lib, resource, person, now):
    loan = lib.create_loan(person.id, resource.id, 1, now=now - timedelta(days=2))
    lib.mark_as_lost(loan.id, now=now)

    stored = lib.get_resource(resource.id)
    assert (stored.total_quantity, stored.available_quantity) == (4, 4)
    assert stored.state == "good"
    assert stored.last_reported_condition == "lost"
    assert stored.needs_review

    other = lib.add_person("Tomás Vega")
    lib.create_loan(other.id, resource.id, 1, now=now)

    stored = lib.get_resource(resource.id)
    assert (stored.total_quantity, stored.available_quantity) == (4, 3)


def test_return_with_lost_condition_closes_as_lost(lib, resource, person, now):
    loan = lib.create_loan(person.id, resource.id, 1, now=now - timedelta(days=2))

    result = lib.return_loan(loan.id, resource_condition="lost", now=now)

    assert result.loan.status == LoanStatus.LOST
    stock = lib.ledger.get_stock(resource.id)
    assert (stock.total_quantity, stock.available_quantity) == (4, 4)


def test_mark_as_lost_withdraws_units(lib, resource, person, now):
    other = lib.add_person("Sergio Mora")
    lib.create_loan(other.id, resource.id, 1, now=now - timedelta(days=5))
    loan = lib.create_loan(person.id, resource.id, 2, now=now - timedelta(days=5))

    result = lib.mark_as_lost(loan.id, observations="Perdido en excursión", now=now)

    assert result.loan.status == LoanStatus.LOST
    assert result.loan.returned_date == now
    assert result.loan.resource_condition.value == "lost"
    assert result.message == "Loan marked as lost; 2 unit(s) withdrawn from stock."
    stock = lib.ledger.get_stock(resource.id)
    # one unit is still out with the other borrower
    assert (stock.total_quantity, stock.available_quantity) == (3, 2)


def test_mark_as_lost_signals_negative_delta(lib, resource, person, now):
    listener = MagicMock()
    lib.returns.on_total_adjustment(listener)
    loan = lib.create_loan(person.id, resource.id, 3, now=now - timedelta(days=1))

    lib.mark_as_lost(loan.id, now=now)

    listener.assert_called_once()
    args, kwargs = listener.call_args
    assert args == (resource.id, -3)
    assert "conn" in kwargs


def test_good_return_does_not_signal(lib, resource, person, now):
    adjustments, conditions = MagicMock(), MagicMock()
    lib.returns.on_total_adjustment(adjustments)
    lib.returns.on_condition_reported(conditions)
    loan = lib.create_loan(person.id, resource.id, 1, now=now - timedelta(days=1))

    lib.return_loan(loan.id, now=now)

    adjustments.assert_not_called()
    conditions.assert_not_called()


def test_second_return_is_rejected(lib, resource, person, now):
    loan = lib.create_loan(person.id, resource.id, 1, now=now - timedelta(days=1))
    first = lib.return_loan(loan.id, now=now)

    with pytest.raises(AlreadyClosedError):
        lib.return_loan(loan.id, resource_condition="damaged", now=now)
    with pytest.raises(AlreadyClosedError):
        lib.mark_as_lost(loan.id, now=now)

    assert lib.get_loan(loan.id) == first.loan
    resource = lib.get_resource(resource.id)
    assert resource.available_quantity == 5
    assert resource.state == "good"


def test_return_unknown_loan(lib):
    with pytest.raises(NotFoundError):
        lib.return_loan("missing")


def test_release_is_retried_on_operational_error(lib, resource, person, now, monkeypatch):
    loan = lib.create_loan(person.id, resource.id, 1, now=now - timedelta(days=1))
    original = StockLedger.release_for_loan
    calls = []

    def flaky(self, loan_id, conn=None):
        calls.append(loan_id)
        if len(calls) < 3:
            raise sqlite3.OperationalError("database is locked")
        return original(self, loan_id, conn=conn)

    monkeypatch.setattr(StockLedger, "release_for_loan", flaky)

    result = lib.return_loan(loan.id, now=now)

    assert len(calls) == 3
    assert result.loan.stock_released
    assert lib.get_resource(resource.id).available_quantity == 5


def test_failed_release_is_reported_and_reconciled_later(lib, resource, person, now, monkeypatch):
    loan = lib.create_loan(person.id, resource.id, 2, now=now - timedelta(days=1))
    original = StockLedger.release_for_loan

    def broken(self, loan_id, conn=None):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(StockLedger, "release_for_loan", broken)
    with pytest.raises(StockReleaseError) as excinfo:
        lib.return_loan(loan.id, now=now)
    assert excinfo.value.attempts == 3

    # the loan is closed but its units are still out
    stored = lib.get_loan(loan.id)
    assert stored.status == LoanStatus.RETURNED
    assert not stored.stock_released
    assert lib.get_resource(resource.id).available_quantity == 3
    assert [p.id for p in lib.loans.pending_releases()] == [loan.id]

    monkeypatch.setattr(StockLedger, "release_for_loan", original)
    assert lib.reconcile_stock() == [loan.id]
    assert lib.get_resource(resource.id).available_quantity == 5
    assert lib.reconcile_stock() == []
    assert lib.get_resource(resource.id).available_quantity == 5


def test_repeated_close_finishes_a_pending_release(lib, resource, person, now, monkeypatch):
    loan = lib.create_loan(person.id, resource.id, 1, now=now - timedelta(days=1))
    original = StockLedger.release_for_loan
    monkeypatch.setattr(
        StockLedger, "release_for_loan", MagicMock(side_effect=sqlite3.OperationalError("database is locked"))
    )
    with pytest.raises(StockReleaseError):
        lib.return_loan(loan.id, now=now)

    monkeypatch.setattr(StockLedger, "release_for_loan", original)
    with pytest.raises(AlreadyClosedError):
        lib.return_loan(loan.id, now=now)

    assert lib.get_loan(loan.id).stock_released
    assert lib.get_resource(resource.id).available_quantity == 5


def test_retry_release_on_settled_loan(lib, resource, person, now):
    loan = lib.create_loan(person.id, resource.id, 1, now=now - timedelta(days=1))
    lib.return_loan(loan.id, now=now)

    assert lib.returns.retry_release(loan.id) is False
    assert lib.get_resource(resource.id).available_quantity == 5


def test_return_result_to_dict(lib, resource, person, now):
    loan = lib.create_loan(person.id, resource.id, 1, now=now - timedelta(days=18))
    data = lib.return_loan(loan.id, now=now).to_dict(now)

    assert data["was_overdue"] is True
    assert data["days_overdue"] == 3
    assert data["loan"]["status"] == "returned"
    assert data["loan"]["display_status"] == "returned"
    assert data["loan"]["is_overdue"] is False
