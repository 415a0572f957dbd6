import asyncio
import datetime as dt
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from skooladmin.core.errors import NotFound, ValidationError
from skooladmin.core.metrics import attendance_percentage, fee_status, fee_totals, gpa
from skooladmin.core.schema import Announcement, FeeStatus, Student
from skooladmin.state.query_client import QueryClient


RECENT_ANNOUNCEMENTS = 3


@dataclass
class StudentSummary:
    student_id: str
    gpa: float
    attendance_percentage: float
    fee_status: FeeStatus
    fees_collected: float
    fees_outstanding: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "student_id": self.student_id,
            "gpa": self.gpa,
            "attendance_percentage": self.attendance_percentage,
            "fee_status": self.fee_status.value,
            "fees_collected": self.fees_collected,
            "fees_outstanding": self.fees_outstanding,
        }


@dataclass
class StudentDashboard:
    student: Student
    summary: StudentSummary
    announcements: List[Announcement] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "student": self.student.to_row(),
            "summary": self.summary.to_dict(),
            "announcements": [announcement.to_row() for announcement in self.announcements],
        }


async def student_summary(
    client: QueryClient,
    student: Student,
    now: Optional[dt.datetime] = None,
) -> StudentSummary:
    if not student.id:
        raise ValidationError("student id is required")

    grades, attendance, fees = await asyncio.gather(
        client.fetch("grades", "student", student.id),
        client.fetch("attendance", "student", student.id),
        client.fetch("fees", "student", student.id),
    )
    collected, outstanding = fee_totals(fees)
    return StudentSummary(
        student_id=student.id,
        gpa=gpa(grades),
        attendance_percentage=attendance_percentage(attendance),
        fee_status=fee_status(fees, now=now),
        fees_collected=collected,
        fees_outstanding=outstanding,
    )


async def find_student_for_user(client: QueryClient, user_id: str) -> Student:
    if not user_id or not user_id.strip():
        raise ValidationError("user id is required")
    students = await client.fetch("students")
    for student in students:
        if student.user_id == user_id:
            return student
    raise NotFound("students", user_id)


async def student_dashboard(
    client: QueryClient,
    user_id: str,
    now: Optional[dt.datetime] = None,
) -> StudentDashboard:
    student = await find_student_for_user(client, user_id)
    summary, announcements = await asyncio.gather(
        student_summary(client, student, now=now),
        client.fetch("announcements"),
    )
    return StudentDashboard(
        student=student,
        summary=summary,
        announcements=list(announcements[:RECENT_ANNOUNCEMENTS]),
    )
