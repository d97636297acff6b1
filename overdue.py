"""Overdue evaluation.

Everything here is a pure function of a loan and an injected ``now``; nothing reads
the clock or touches storage, so callers can tag loans on read and build
aggregate statistics from the same rules.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional, Tuple

from loan import Loan, LoanStatus, ensure_utc

BUCKETS = ("1-7", "8-14", "15-30", "30+")


def is_overdue(loan: Loan, now: datetime) -> bool:
    """Active loan whose due date lies on an earlier calendar day than ``now``."""
    if loan.status != LoanStatus.ACTIVE:
        return False
    return ensure_utc(now).date() > ensure_utc(loan.due_date).date()


def days_overdue(loan: Loan, now: datetime) -> int:
    """Whole days elapsed since the due date, never negative."""
    elapsed = ensure_utc(now) - ensure_utc(loan.due_date)
    return max(0, math.floor(elapsed / timedelta(days=1)))


def overdue_bucket(days: int) -> str:
    # a loan past its due day by less than 24h still lands in the first bucket
    if days <= 7:
        return "1-7"
    if days <= 14:
        return "8-14"
    if days <= 30:
        return "15-30"
    return "30+"


def display_status(loan: Loan, now: datetime) -> str:
    return "overdue" if is_overdue(loan, now) else loan.status.value


def annotate(loan: Loan, now: datetime) -> Dict[str, Any]:
    """Serialize ``loan`` with its derived overdue fields."""
    overdue = is_overdue(loan, now)
    data = loan.to_dict()
    data["is_overdue"] = overdue
    data["days_overdue"] = days_overdue(loan, now) if overdue else 0
    data["display_status"] = "overdue" if overdue else loan.status.value
    return data


def overdue_stats(loans: Iterable[Tuple[Loan, Optional[str]]], now: datetime) -> Dict[str, Any]:
    """Aggregate overdue figures.

    ``loans`` yields ``(loan, person_type)`` pairs; loans that are not overdue at
    ``now`` are ignored so callers may pass any superset.
    """
    by_days = {bucket: 0 for bucket in BUCKETS}
    by_person_type: Dict[str, int] = {}
    total = 0
    total_days = 0

    for loan, person_type in loans:
        if not is_overdue(loan, now):
            continue
        days = days_overdue(loan, now)
        total += 1
        total_days += days
        by_days[overdue_bucket(days)] += 1
        key = person_type or "unknown"
        by_person_type[key] = by_person_type.get(key, 0) + 1

    return {
        "total_overdue": total,
        "average_days_overdue": round(total_days / total, 2) if total else 0.0,
        "by_days_overdue": by_days,
        "by_person_type": by_person_type,
    }
