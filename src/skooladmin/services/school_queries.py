"""Named read operations, one per cached query shape.

Each operation is registered under ``(table, name)``. Its bound arguments form
the parameter list of the cache key, so ``fees.student("s-1")`` is cached as
``("fees", "student", "s-1")``.
"""

import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Tuple

from skooladmin.core.errors import ValidationError
from skooladmin.core.keys import QueryKey
from skooladmin.core.schema import UNPAID_FEE_STATUSES, FeeStatus
from skooladmin.services.query_executor import Join, QueryExecutor
from skooladmin.services.storage_backend import Predicate


Runner = Callable[..., Awaitable[Any]]


@dataclass(frozen=True)
class Operation:
    table: str
    name: str
    run: Runner

    @property
    def signature(self) -> inspect.Signature:
        return inspect.signature(self.run)

    def _params(self) -> List[inspect.Parameter]:
        return list(self.signature.parameters.values())[1:]

    def bind(self, *args: Any) -> Tuple[Any, ...]:
        try:
            bound = self.signature.bind_partial(None, *args)
        except TypeError as exc:
            raise ValidationError(f"{self.table}.{self.name}: {exc}") from exc
        bound.apply_defaults()
        return tuple(self._coerce(param, bound.arguments.get(param.name)) for param in self._params())

    def _coerce(self, param: inspect.Parameter, value: Any) -> Any:
        """Bring text parameters (e.g. from a query string) to the declared type so keys match."""
        kind = param.annotation
        if value is None or kind not in (str, int, float) or isinstance(value, kind):
            return value
        try:
            return kind(value)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"{self.table}.{self.name}: {param.name} must be {kind.__name__}") from exc

    def required(self) -> List[str]:
        return [param.name for param in self._params() if param.default is inspect.Parameter.empty]

    def is_enabled(self, *args: Any) -> bool:
        values = dict(zip((param.name for param in self._params()), self.bind(*args)))
        return all(values[name] is not None and str(values[name]).strip() for name in self.required())

    def key(self, *args: Any) -> QueryKey:
        return QueryKey.of(self.table, self.name, *self.bind(*args))

    async def __call__(self, executor: QueryExecutor, *args: Any) -> Any:
        if not self.is_enabled(*args):
            raise ValidationError(f"{self.table}.{self.name} requires {', '.join(self.required())}")
        return await self.run(executor, *self.bind(*args))


OPERATIONS: Dict[Tuple[str, str], Operation] = {}


def operation(table: str, name: str = "all") -> Callable[[Runner], Runner]:
    def register(func: Runner) -> Runner:
        OPERATIONS[(table, name)] = Operation(table, name, func)
        return func

    return register


def get_operation(table: str, name: str = "all") -> Operation:
    try:
        return OPERATIONS[(table, name)]
    except KeyError as exc:
        raise ValidationError(f"Unknown query {table}.{name}") from exc


STUDENT_SUMMARY = ("full_name", "student_id", "class")
TEACHER_NAME = ("full_name",)
FEE_SUMMARY = ("id", "amount", "status", "due_date", "paid_date")


@operation("students")
async def list_students(executor: QueryExecutor):
    return await executor.fetch_list("students", joins=[Join("fees", FEE_SUMMARY)], order_by="full_name")


@operation("students", "detail")
async def get_student(executor: QueryExecutor, student_id: str):
    return await executor.fetch_one("students", student_id, joins=[Join("fees"), Join("grades"), Join("attendance")])


@operation("students", "unpaid-fees")
async def list_students_with_unpaid_fees(executor: QueryExecutor):
    return await executor.fetch_list(
        "students",
        filters=[Predicate.is_in("fees.status", UNPAID_FEE_STATUSES)],
        joins=[Join("fees", ("id", "amount", "status", "due_date"), inner=True)],
        order_by="full_name",
    )


@operation("teachers")
async def list_teachers(executor: QueryExecutor):
    return await executor.fetch_list("teachers", order_by="full_name")


@operation("teachers", "detail")
async def get_teacher(executor: QueryExecutor, teacher_id: str):
    return await executor.fetch_one("teachers", teacher_id, joins=[Join("classes")])


@operation("classes")
async def list_classes(executor: QueryExecutor):
    return await executor.fetch_list("classes", joins=[Join("teachers", ("full_name", "subject"))], order_by="name")


@operation("classes", "detail")
async def get_class(executor: QueryExecutor, class_id: str):
    return await executor.fetch_one(
        "classes", class_id, joins=[Join("teachers", ("full_name", "subject", "email", "phone"))]
    )


@operation("classes", "teacher")
async def list_teacher_classes(executor: QueryExecutor, teacher_id: str):
    return await executor.fetch_list("classes", filters=[Predicate.eq("teacher_id", teacher_id)], order_by="name")


@operation("assignments")
async def list_assignments(executor: QueryExecutor):
    return await executor.fetch_list(
        "assignments", joins=[Join("teachers", TEACHER_NAME)], order_by="due_date", ascending=True
    )


@operation("assignments", "detail")
async def get_assignment(executor: QueryExecutor, assignment_id: str):
    return await executor.fetch_one("assignments", assignment_id, joins=[Join("teachers", ("full_name", "email"))])


@operation("assignments", "class")
async def list_class_assignments(executor: QueryExecutor, class_name: str):
    return await executor.fetch_list(
        "assignments",
        filters=[Predicate.eq("class", class_name)],
        joins=[Join("teachers", TEACHER_NAME)],
        order_by="due_date",
        ascending=True,
    )


@operation("attendance")
async def list_attendance(executor: QueryExecutor):
    return await executor.fetch_list(
        "attendance",
        joins=[
            Join("students", STUDENT_SUMMARY),
            Join("classes", ("name", "subject")),
            Join("teachers", TEACHER_NAME),
        ],
        order_by="date",
        ascending=False,
    )


@operation("attendance", "student")
async def list_student_attendance(executor: QueryExecutor, student_id: str):
    return await executor.fetch_list(
        "attendance",
        filters=[Predicate.eq("student_id", student_id)],
        joins=[Join("classes", ("name", "subject"))],
        order_by="date",
        ascending=False,
    )


@operation("attendance", "date")
async def list_attendance_on(executor: QueryExecutor, date: str):
    return await executor.fetch_list(
        "attendance",
        filters=[Predicate.eq("date", date)],
        joins=[Join("students", STUDENT_SUMMARY)],
        order_by="students.full_name",
    )


@operation("fees")
async def list_fees(executor: QueryExecutor):
    return await executor.fetch_list(
        "fees", joins=[Join("students", STUDENT_SUMMARY)], order_by="due_date", ascending=False
    )


@operation("fees", "student")
async def list_student_fees(executor: QueryExecutor, student_id: str):
    return await executor.fetch_list(
        "fees", filters=[Predicate.eq("student_id", student_id)], order_by="due_date", ascending=False
    )


@operation("fees", "recent-payments")
async def list_recent_payments(executor: QueryExecutor, limit: int = 10):
    return await executor.fetch_list(
        "fees",
        filters=[Predicate.eq("status", FeeStatus.PAID.value), Predicate.not_null("paid_date")],
        joins=[Join("students", ("full_name", "student_id"))],
        order_by="paid_date",
        ascending=False,
        limit=limit,
    )


@operation("grades")
async def list_grades(executor: QueryExecutor):
    return await executor.fetch_list(
        "grades",
        joins=[Join("students", STUDENT_SUMMARY), Join("teachers", TEACHER_NAME)],
        order_by="exam_date",
        ascending=False,
    )


@operation("grades", "student")
async def list_student_grades(executor: QueryExecutor, student_id: str):
    return await executor.fetch_list(
        "grades",
        filters=[Predicate.eq("student_id", student_id)],
        joins=[Join("teachers", TEACHER_NAME)],
        order_by="exam_date",
        ascending=False,
    )


@operation("announcements")
async def list_announcements(executor: QueryExecutor):
    return await executor.fetch_list(
        "announcements", joins=[Join("profiles", ("full_name",))], order_by="created_at", ascending=False
    )


@operation("announcements", "detail")
async def get_announcement(executor: QueryExecutor, announcement_id: str):
    return await executor.fetch_one("announcements", announcement_id, joins=[Join("profiles", ("full_name",))])
