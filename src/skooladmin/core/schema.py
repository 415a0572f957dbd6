"""Typed entity models and the static relation registry.

Rows coming back from the backend are validated into these models. Relation
fields hold nested models: ``None`` means the relation was not requested, an
empty list means it was requested and nothing matched.
"""

import datetime as dt
from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from skooladmin.core.errors import ValidationError


DEFAULT_MAX_SCORE = 100.0
ATTENDANCE_PRESENT = "present"


class FeeStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"


UNPAID_FEE_STATUSES: Tuple[str, ...] = (FeeStatus.PENDING.value, FeeStatus.OVERDUE.value)


class Cardinality(str, Enum):
    ONE = "one"
    MANY = "many"


class EntityModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)

    table: ClassVar[str] = ""

    id: Optional[str] = None
    created_at: Optional[dt.datetime] = None

    def to_row(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Profile(EntityModel):
    table: ClassVar[str] = "profiles"

    full_name: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None


class Teacher(EntityModel):
    table: ClassVar[str] = "teachers"

    full_name: Optional[str] = None
    subject: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    user_id: Optional[str] = None

    classes: Optional[List["SchoolClass"]] = None


class SchoolClass(EntityModel):
    table: ClassVar[str] = "classes"

    name: Optional[str] = None
    subject: Optional[str] = None
    room: Optional[str] = None
    teacher_id: Optional[str] = None

    teachers: Optional[Teacher] = None


class Assignment(EntityModel):
    table: ClassVar[str] = "assignments"

    title: Optional[str] = None
    description: Optional[str] = None
    subject: Optional[str] = None
    class_name: Optional[str] = Field(default=None, alias="class")
    due_date: Optional[dt.date] = None
    teacher_id: Optional[str] = None

    teachers: Optional[Teacher] = None


class Fee(EntityModel):
    table: ClassVar[str] = "fees"

    amount: Optional[float] = None
    status: Optional[FeeStatus] = None
    fee_type: Optional[str] = None
    due_date: Optional[dt.date] = None
    paid_date: Optional[dt.date] = None
    student_id: Optional[str] = None

    students: Optional["Student"] = None


class Grade(EntityModel):
    table: ClassVar[str] = "grades"

    subject: Optional[str] = None
    score: Optional[float] = None
    max_score: Optional[float] = None
    exam_type: Optional[str] = None
    exam_date: Optional[dt.date] = None
    remarks: Optional[str] = None
    student_id: Optional[str] = None
    teacher_id: Optional[str] = None

    students: Optional["Student"] = None
    teachers: Optional[Teacher] = None


class Attendance(EntityModel):
    table: ClassVar[str] = "attendance"

    date: Optional[dt.date] = None
    status: Optional[str] = None
    notes: Optional[str] = None
    student_id: Optional[str] = None
    class_id: Optional[str] = None
    marked_by: Optional[str] = None

    students: Optional["Student"] = None
    classes: Optional[SchoolClass] = None
    teachers: Optional[Teacher] = None


class Student(EntityModel):
    table: ClassVar[str] = "students"

    full_name: Optional[str] = None
    student_id: Optional[str] = None
    class_name: Optional[str] = Field(default=None, alias="class")
    email: Optional[str] = None
    phone: Optional[str] = None
    user_id: Optional[str] = None

    fees: Optional[List[Fee]] = None
    grades: Optional[List[Grade]] = None
    attendance: Optional[List[Attendance]] = None


class Announcement(EntityModel):
    table: ClassVar[str] = "announcements"

    title: Optional[str] = None
    content: Optional[str] = None
    priority: Optional[str] = None
    target_audience: Optional[str] = None
    author_id: Optional[str] = None

    profiles: Optional[Profile] = None


for _model in (Teacher, SchoolClass, Fee, Grade, Attendance, Student):
    _model.model_rebuild()


@dataclass(frozen=True)
class Relation:
    name: str
    target: str
    cardinality: Cardinality
    local_column: str
    remote_column: str

    @property
    def is_many(self) -> bool:
        return self.cardinality is Cardinality.MANY


def has_many(target: str, foreign_key: str, name: Optional[str] = None) -> Relation:
    return Relation(name or target, target, Cardinality.MANY, "id", foreign_key)


def belongs_to(target: str, foreign_key: str, name: Optional[str] = None) -> Relation:
    return Relation(name or target, target, Cardinality.ONE, foreign_key, "id")


@dataclass(frozen=True)
class EntitySchema:
    table: str
    model: Type[EntityModel]
    order_by: str
    ascending: bool = True
    relations: Tuple[Relation, ...] = ()
    required: Tuple[str, ...] = ()
    id_field: str = "id"

    def relation(self, name: str) -> Relation:
        for relation in self.relations:
            if relation.name == name:
                return relation
        raise ValidationError(f"{self.table} has no relation named {name!r}")

    @property
    def columns(self) -> Tuple[str, ...]:
        relation_names = {relation.name for relation in self.relations}
        columns = []
        for name, info in self.model.model_fields.items():
            if name in relation_names or name in ("id", "created_at"):
                continue
            columns.append(info.alias or name)
        return tuple(columns)

    def to_entity(self, row: Mapping[str, Any]) -> EntityModel:
        return self.model.model_validate(row)

    def validate_payload(self, payload: Mapping[str, Any], *, partial: bool = False) -> Dict[str, Any]:
        """Check a mutation payload and return it in row (alias) form."""
        if not isinstance(payload, Mapping):
            raise ValidationError(f"{self.table} payload must be a mapping")

        allowed = set(self.columns)
        unknown = sorted(key for key in payload if key not in allowed)
        if unknown:
            raise ValidationError(f"Unknown {self.table} columns: {', '.join(unknown)}")
        if not partial:
            missing = [name for name in self.required if payload.get(name) in (None, "")]
            if missing:
                raise ValidationError(f"Missing required {self.table} columns: {', '.join(missing)}")
        if partial and not payload:
            raise ValidationError(f"Empty {self.table} update")

        try:
            entity = self.model.model_validate(dict(payload))
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid {self.table} payload: {exc}") from exc

        row = entity.model_dump(mode="json", by_alias=True)
        return {key: row[key] for key in payload}


SCHEMAS: Dict[str, EntitySchema] = {
    schema.table: schema
    for schema in (
        EntitySchema(
            table="students",
            model=Student,
            order_by="full_name",
            relations=(
                has_many("fees", "student_id"),
                has_many("grades", "student_id"),
                has_many("attendance", "student_id"),
            ),
            required=("full_name", "student_id"),
        ),
        EntitySchema(
            table="teachers",
            model=Teacher,
            order_by="full_name",
            relations=(has_many("classes", "teacher_id"),),
            required=("full_name",),
        ),
        EntitySchema(
            table="classes",
            model=SchoolClass,
            order_by="name",
            relations=(belongs_to("teachers", "teacher_id"),),
            required=("name",),
        ),
        EntitySchema(
            table="assignments",
            model=Assignment,
            order_by="due_date",
            relations=(belongs_to("teachers", "teacher_id"),),
            required=("title", "due_date"),
        ),
        EntitySchema(
            table="attendance",
            model=Attendance,
            order_by="date",
            ascending=False,
            relations=(
                belongs_to("students", "student_id"),
                belongs_to("classes", "class_id"),
                belongs_to("teachers", "marked_by"),
            ),
            required=("student_id", "date", "status"),
        ),
        EntitySchema(
            table="fees",
            model=Fee,
            order_by="due_date",
            ascending=False,
            relations=(belongs_to("students", "student_id"),),
            required=("student_id", "amount", "status", "due_date"),
        ),
        EntitySchema(
            table="grades",
            model=Grade,
            order_by="exam_date",
            ascending=False,
            relations=(
                belongs_to("students", "student_id"),
                belongs_to("teachers", "teacher_id"),
            ),
            required=("student_id", "subject", "score"),
        ),
        EntitySchema(
            table="announcements",
            model=Announcement,
            order_by="created_at",
            ascending=False,
            relations=(belongs_to("profiles", "author_id"),),
            required=("title", "content"),
        ),
        EntitySchema(
            table="profiles",
            model=Profile,
            order_by="full_name",
            required=("full_name",),
        ),
    )
}


def get_schema(table: str) -> EntitySchema:
    try:
        return SCHEMAS[table]
    except KeyError as exc:
        raise ValidationError(f"Unknown table: {table}") from exc
