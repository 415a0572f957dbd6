import datetime as dt
import unittest

from skooladmin.core.metrics import (
    attendance_percentage,
    fee_status,
    fee_totals,
    gpa,
    grade_percentage,
    round_half_up,
)
from skooladmin.core.schema import Attendance, Fee, FeeStatus, Grade


NOW = dt.datetime(2026, 10, 18, 12, 0, tzinfo=dt.timezone.utc)
YESTERDAY = (NOW - dt.timedelta(days=1)).date()
TOMORROW = (NOW + dt.timedelta(days=1)).date()


class GPATests(unittest.TestCase):
    def test_empty_is_zero(self):
        self.assertEqual(gpa([]), 0)

    def test_average_mapped_to_four_point_scale(self):
        grades = [Grade(score=80, max_score=100), Grade(score=90, max_score=100)]
        self.assertAlmostEqual(gpa(grades), 3.4, places=1)

    def test_missing_max_score_defaults_to_100(self):
        self.assertAlmostEqual(gpa([Grade(score=75)]), 3.0, places=1)

    def test_zero_max_score_contributes_nothing(self):
        self.assertEqual(grade_percentage(Grade(score=10, max_score=0)), 0.0)
        self.assertAlmostEqual(gpa([Grade(score=10, max_score=0), Grade(score=100, max_score=100)]), 2.0, places=1)

    def test_scores_out_of_other_maxima(self):
        self.assertAlmostEqual(gpa([Grade(score=45, max_score=50)]), 3.6, places=1)

    def test_half_tenths_round_up(self):
        grades = [Grade(score=score, max_score=100) for score in (80, 80, 80, 85)]
        self.assertEqual(gpa(grades), 3.3)

    def test_round_half_up(self):
        self.assertEqual(round_half_up(3.25), 3.3)
        self.assertEqual(round_half_up(0.05), 0.1)
        self.assertEqual(round_half_up(81.25, 0), 81.0)


class FeeStatusTests(unittest.TestCase):
    def test_no_fees_is_paid(self):
        self.assertEqual(fee_status([], now=NOW), FeeStatus.PAID)

    def test_all_paid(self):
        fees = [Fee(status="paid", due_date=YESTERDAY), Fee(status="paid", due_date=TOMORROW)]
        self.assertEqual(fee_status(fees, now=NOW), FeeStatus.PAID)

    def test_pending_past_due_is_overdue(self):
        self.assertEqual(fee_status([Fee(status="pending", due_date=YESTERDAY)], now=NOW), FeeStatus.OVERDUE)

    def test_pending_future_due_is_pending(self):
        self.assertEqual(fee_status([Fee(status="pending", due_date=TOMORROW)], now=NOW), FeeStatus.PENDING)

    def test_paid_fee_past_due_does_not_count(self):
        fees = [Fee(status="paid", due_date=YESTERDAY), Fee(status="pending", due_date=TOMORROW)]
        self.assertEqual(fee_status(fees, now=NOW), FeeStatus.PENDING)

    def test_unpaid_without_due_date_is_pending(self):
        self.assertEqual(fee_status([Fee(status="pending")], now=NOW), FeeStatus.PENDING)

    def test_fee_totals(self):
        fees = [Fee(status="paid", amount=300), Fee(status="pending", amount=500), Fee(status="overdue", amount=20)]
        self.assertEqual(fee_totals(fees), (300.0, 520.0))


class AttendanceTests(unittest.TestCase):
    def test_empty_is_zero(self):
        self.assertEqual(attendance_percentage([]), 0)

    def test_eight_of_ten_present(self):
        records = [Attendance(status="present")] * 8 + [Attendance(status="absent")] * 2
        self.assertEqual(attendance_percentage(records), 80)

    def test_late_is_not_present(self):
        records = [Attendance(status="present"), Attendance(status="late")]
        self.assertEqual(attendance_percentage(records), 50)

    def test_half_tenths_round_up(self):
        records = [Attendance(status="present")] + [Attendance(status="absent")] * 15
        self.assertEqual(attendance_percentage(records), 6.3)


if __name__ == "__main__":
    unittest.main()
