import datetime as dt
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional, Tuple

from skooladmin.core.schema import (
    ATTENDANCE_PRESENT,
    DEFAULT_MAX_SCORE,
    Attendance,
    Fee,
    FeeStatus,
    Grade,
)


GPA_SCALE_DIVISOR = 25.0


def round_half_up(value: float, places: int = 1) -> float:
    """Round like a fixed-point display does: 3.25 -> 3.3, not 3.2."""
    return float(Decimal(value).quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP))


def grade_percentage(grade: Grade) -> float:
    max_score = DEFAULT_MAX_SCORE if grade.max_score is None else grade.max_score
    if max_score == 0:
        return 0.0
    return (grade.score or 0.0) / max_score * 100


def gpa(grades: Iterable[Grade], *, round_to: int = 1) -> float:
    """
    Average percentage across all grades mapped onto a 0-4.0 scale.
    GPA = mean(score / max_score * 100) / 25
    """
    percentages = [grade_percentage(grade) for grade in grades]
    if not percentages:
        return 0.0
    return round_half_up(sum(percentages) / len(percentages) / GPA_SCALE_DIVISOR, round_to)


def _as_instant(value: dt.date) -> dt.datetime:
    if isinstance(value, dt.datetime):
        return value if value.tzinfo else value.replace(tzinfo=dt.timezone.utc)
    return dt.datetime(value.year, value.month, value.day, tzinfo=dt.timezone.utc)


def fee_status(fees: Iterable[Fee], now: Optional[dt.datetime] = None) -> FeeStatus:
    unpaid = [fee for fee in fees if fee.status is not FeeStatus.PAID]
    if not unpaid:
        return FeeStatus.PAID

    instant = _as_instant(now or dt.datetime.now(dt.timezone.utc))
    for fee in unpaid:
        if fee.due_date is not None and _as_instant(fee.due_date) < instant:
            return FeeStatus.OVERDUE
    return FeeStatus.PENDING


def attendance_percentage(records: Iterable[Attendance], *, round_to: int = 1) -> float:
    total = 0
    present = 0
    for record in records:
        total += 1
        if (record.status or "").lower() == ATTENDANCE_PRESENT:
            present += 1
    if total == 0:
        return 0.0
    return round_half_up(present / total * 100, round_to)


def fee_totals(fees: Iterable[Fee]) -> Tuple[float, float]:
    """Return (collected, outstanding) amounts."""
    collected = 0.0
    outstanding = 0.0
    for fee in fees:
        if fee.status is FeeStatus.PAID:
            collected += fee.amount or 0.0
        else:
            outstanding += fee.amount or 0.0
    return collected, outstanding
