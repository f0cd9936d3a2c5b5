"""Per-collection record repositories over a ``RowStore``.

Repositories translate between snake_case domain fields and the human-readable
row-store columns, fill defaults for missing columns, and attach the derived
stage fields. They never decide who may see or change a record; that is the
service layer's job.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from collections.abc import Callable, Collection, Mapping
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Generic, TypeVar, get_args

from pydantic import BaseModel

from sales_os.errors import DataIntegrityError, StageHistoryWriteError
from sales_os.metrics import observe_stage_fallback, observe_stage_transition
from sales_os.pipeline.schemas import (
    ActivityRead,
    ActivityType,
    LeadRead,
    LeadSource,
    LeadStatus,
    OpportunityRead,
    StageHistoryRead,
    TaskPriority,
    TaskRead,
    TaskStatus,
    UserRead,
    WeeklyReviewRead,
)
from sales_os.pipeline.stages import (
    DEFAULT_STAGE,
    SalesStage,
    forecast_category_of,
    parse_stage,
    probability_of,
    stage_color,
    weighted_value,
)
from sales_os.security.policy import Role
from sales_os.storage.base import FieldEquals, Row, RowFilter, RowStore, SortSpec, all_of


logger = logging.getLogger("sales_os.pipeline")

ReadModelT = TypeVar("ReadModelT", bound=BaseModel)

PASSWORD_HASH_ITERATIONS = 260_000

# least privileged role for user rows without a recognised Role
DEFAULT_ROLE = Role.FIELD_SALES
ROLE_VALUES = frozenset(role.value for role in Role)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def hash_password(password: str, *, salt: str | None = None, iterations: int = PASSWORD_HASH_ITERATIONS) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), iterations)
    return f"pbkdf2_sha256${iterations}${salt}${digest.hex()}"


def _parse_timestamp(value: str) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _to_text(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return value


def derive_task_status(stored_status: str, due_date: str, today: date) -> str:
    """A task reads as Overdue once its due date has passed without completion."""

    if stored_status == "Completed" or not due_date:
        return stored_status
    try:
        due = date.fromisoformat(due_date[:10])
    except ValueError:
        return stored_status
    if due < today:
        return "Overdue"
    return stored_status


class RecordRepository(Generic[ReadModelT]):
    table: ClassVar[str]
    sort: ClassVar[SortSpec | None] = None
    owner_column: ClassVar[str | None] = None
    columns: ClassVar[Mapping[str, str]] = {}
    created_column: ClassVar[str | None] = "Created At"
    updated_column: ClassVar[str | None] = "Updated At"

    def __init__(
        self,
        store: RowStore,
        *,
        clock: Callable[[], datetime] = utcnow,
        strict_stage_reads: bool = False,
    ) -> None:
        self.store = store
        self.clock = clock
        self.strict_stage_reads = strict_stage_reads

    def list(self, row_filter: RowFilter | None = None) -> list[ReadModelT]:
        rows = self.store.select(self.table, row_filter=row_filter, sort=self.sort)
        return [self.to_read(row) for row in rows]

    def get_by_id(self, record_id: str) -> ReadModelT | None:
        row = self.store.find(self.table, record_id)
        if row is None:
            return None
        return self.to_read(row)

    def create(self, fields: Mapping[str, Any]) -> ReadModelT:
        values = self.to_columns(fields)
        if self.created_column is not None:
            values[self.created_column] = self.clock().isoformat()
        row = self.store.create(self.table, values)
        return self.to_read(row)

    def update(self, record_id: str, fields: Mapping[str, Any]) -> ReadModelT:
        values = self.to_columns(fields)
        if self.updated_column is not None:
            values[self.updated_column] = self.clock().isoformat()
        row = self.store.update(self.table, record_id, values)
        return self.to_read(row)

    def to_columns(self, fields: Mapping[str, Any]) -> dict[str, Any]:
        unknown = set(fields) - set(self.columns)
        if unknown:
            raise ValueError(f"unknown {self.table} fields: {sorted(unknown)}")
        return {self.columns[name]: _to_text(value) for name, value in fields.items()}

    def to_read(self, row: Row) -> ReadModelT:
        raise NotImplementedError

    def _text(self, row: Row, field_name: str, default: str = "") -> str:
        value = row.get(self.columns[field_name], default)
        return str(value)

    def _number(self, row: Row, field_name: str) -> float:
        value = row.get(self.columns[field_name], 0)
        try:
            return float(value)
        except (TypeError, ValueError):
            return 0.0

    def _count(self, row: Row, field_name: str) -> int:
        return int(self._number(row, field_name))

    def _choice(self, row: Row, field_name: str, allowed: Collection[str], default: str) -> str:
        """A categorical column, read back as ``default`` when the stored value is not one of ``allowed``."""
        raw = row.get(self.columns[field_name])
        if raw is None:
            return default
        value = str(raw)
        if value in allowed:
            return value
        logger.warning(
            "field.fallback",
            extra={
                "table": self.table,
                "record_id": row.id,
                "error": f"unrecognized {self.columns[field_name]} {raw!r}, read as {default!r}",
            },
        )
        return default

    def _created_at(self, row: Row) -> str:
        value = row.get("Created At") or row.created_time
        return str(value) if value else self.clock().isoformat()

    def _stage(self, row: Row, field_name: str) -> SalesStage:
        column = self.columns[field_name]
        raw = row.fields.get(column)
        stage = parse_stage(raw)
        if stage is not None:
            return stage
        if self.strict_stage_reads:
            raise DataIntegrityError(
                "stored stage value is not recognized",
                details={"table": self.table, "record_id": row.id, "column": column},
            )
        observe_stage_fallback(self.table)
        logger.warning(
            "stage.fallback",
            extra={"table": self.table, "record_id": row.id, "error": f"unrecognized stage {raw!r}"},
        )
        return DEFAULT_STAGE


class LeadRepository(RecordRepository[LeadRead]):
    table = "Leads"
    sort = SortSpec("Created At", descending=True)
    owner_column = "Assigned To ID"
    columns = {
        "company_name": "Company Name",
        "contact_person": "Contact Person",
        "email": "Email",
        "phone": "Phone",
        "source": "Source",
        "status": "Status",
        "assigned_to": "Assigned To ID",
        "assigned_to_name": "Assigned To Name",
        "notes": "Notes",
        "opportunity_id": "Opportunity ID",
    }

    def to_read(self, row: Row) -> LeadRead:
        return LeadRead(
            id=row.id,
            company_name=self._text(row, "company_name"),
            contact_person=self._text(row, "contact_person"),
            email=self._text(row, "email"),
            phone=self._text(row, "phone"),
            source=self._choice(row, "source", get_args(LeadSource), "Other"),
            status=self._choice(row, "status", get_args(LeadStatus), "New"),
            assigned_to=self._text(row, "assigned_to"),
            assigned_to_name=self._text(row, "assigned_to_name"),
            notes=self._text(row, "notes"),
            created_at=self._created_at(row),
            updated_at=str(row.get("Updated At", "")),
            opportunity_id=self._text(row, "opportunity_id"),
        )


class OpportunityRepository(RecordRepository[OpportunityRead]):
    table = "Opportunities"
    sort = SortSpec("Created At", descending=True)
    owner_column = "Assigned To ID"
    columns = {
        "name": "Name",
        "lead_id": "Lead ID",
        "deal_value": "Deal Value",
        "stage": "Stage",
        "expected_close_date": "Expected Close Date",
        "assigned_to": "Assigned To ID",
        "assigned_to_name": "Assigned To Name",
        "notes": "Notes",
    }

    def __init__(self, store: RowStore, *, history: StageHistoryRepository | None = None, **kwargs: Any) -> None:
        super().__init__(store, **kwargs)
        self.history = history or StageHistoryRepository(store, **kwargs)

    def to_read(self, row: Row) -> OpportunityRead:
        stage = self._stage(row, "stage")
        deal_value = self._number(row, "deal_value")
        return OpportunityRead(
            id=row.id,
            name=self._text(row, "name"),
            lead_id=self._text(row, "lead_id"),
            deal_value=deal_value,
            stage=stage,
            probability=probability_of(stage),
            weighted_value=weighted_value(deal_value, stage),
            forecast_category=forecast_category_of(stage),
            stage_color=stage_color(stage),
            expected_close_date=self._text(row, "expected_close_date"),
            assigned_to=self._text(row, "assigned_to"),
            assigned_to_name=self._text(row, "assigned_to_name"),
            notes=self._text(row, "notes"),
            created_at=self._created_at(row),
            updated_at=str(row.get("Updated At", "")),
        )

    def update_with_stage_history(
        self,
        record_id: str,
        fields: Mapping[str, Any],
        *,
        changed_by: str,
        changed_by_name: str = "",
    ) -> tuple[OpportunityRead, StageHistoryRead | None]:
        """Apply a partial update and audit the stage change it causes, if any.

        The stored stage is read before the write, and a history row is
        appended only after the write succeeded with a stage that differs from
        the stored value, including a stored value that reads back as the
        default stage. When the append fails the update stays applied and
        ``StageHistoryWriteError`` is raised.
        """

        previous: OpportunityRead | None = None
        stored_stage = ""
        if fields.get("stage") is not None:
            row = self.store.find(self.table, record_id)
            if row is not None:
                stored_stage = str(row.get(self.columns["stage"], ""))
                previous = self.to_read(row)

        updated = self.update(record_id, fields)
        if previous is None or stored_stage == updated.stage:
            return updated, None

        # the audit row keeps the stored value even when it is not a known stage
        from_stage = stored_stage or str(previous.stage)
        entry_fields = {
            "opportunity_id": updated.id,
            "opportunity_name": updated.name,
            "from_stage": from_stage,
            "to_stage": updated.stage,
            "changed_by": changed_by,
            "changed_by_name": changed_by_name,
            "days_in_previous_stage": self._days_in_stage(previous),
        }
        try:
            entry = self.history.create(entry_fields)
        except Exception as exc:
            logger.exception(
                "stage_history.write_failed",
                extra={
                    "opportunity_id": updated.id,
                    "from_stage": from_stage,
                    "to_stage": str(updated.stage),
                },
            )
            raise StageHistoryWriteError(updated.id, from_stage, str(updated.stage)) from exc

        observe_stage_transition(str(previous.stage), str(updated.stage))
        return updated, entry

    def _days_in_stage(self, previous: OpportunityRead) -> int:
        entered_at = self.history.entered_stage_at(previous.id, previous.stage)
        if entered_at is None:
            entered_at = _parse_timestamp(previous.created_at)
        if entered_at is None:
            return 0
        return max((self.clock() - entered_at).days, 0)


class ActivityRepository(RecordRepository[ActivityRead]):
    table = "Activities"
    sort = SortSpec("Date", descending=True)
    owner_column = "Performed By ID"
    updated_column = None
    columns = {
        "opportunity_id": "Opportunity ID",
        "opportunity_name": "Opportunity Name",
        "type": "Type",
        "description": "Description",
        "outcome": "Outcome",
        "date": "Date",
        "next_follow_up": "Next Follow Up",
        "performed_by": "Performed By ID",
        "performed_by_name": "Performed By Name",
    }

    def create(self, fields: Mapping[str, Any]) -> ActivityRead:
        values = dict(fields)
        if not values.get("date"):
            values["date"] = self.clock().date()
        return super().create(values)

    def update(self, record_id: str, fields: Mapping[str, Any]) -> ActivityRead:
        raise TypeError("activities are immutable once logged")

    def to_read(self, row: Row) -> ActivityRead:
        return ActivityRead(
            id=row.id,
            opportunity_id=self._text(row, "opportunity_id"),
            opportunity_name=self._text(row, "opportunity_name"),
            type=self._choice(row, "type", get_args(ActivityType), "Call"),
            description=self._text(row, "description"),
            outcome=self._text(row, "outcome"),
            date=self._text(row, "date"),
            next_follow_up=self._text(row, "next_follow_up"),
            performed_by=self._text(row, "performed_by"),
            performed_by_name=self._text(row, "performed_by_name"),
            created_at=self._created_at(row),
        )


class TaskRepository(RecordRepository[TaskRead]):
    table = "Tasks"
    sort = SortSpec("Due Date")
    owner_column = "Assigned To ID"
    columns = {
        "title": "Title",
        "description": "Description",
        "opportunity_id": "Opportunity ID",
        "opportunity_name": "Opportunity Name",
        "assigned_to": "Assigned To ID",
        "assigned_to_name": "Assigned To Name",
        "due_date": "Due Date",
        "status": "Status",
        "priority": "Priority",
    }

    def to_read(self, row: Row) -> TaskRead:
        due_date = self._text(row, "due_date")
        stored_status = self._choice(row, "status", get_args(TaskStatus), "Not Started")
        return TaskRead(
            id=row.id,
            title=self._text(row, "title"),
            description=self._text(row, "description"),
            opportunity_id=self._text(row, "opportunity_id"),
            opportunity_name=self._text(row, "opportunity_name"),
            assigned_to=self._text(row, "assigned_to"),
            assigned_to_name=self._text(row, "assigned_to_name"),
            due_date=due_date,
            status=derive_task_status(stored_status, due_date, self.clock().date()),
            priority=self._choice(row, "priority", get_args(TaskPriority), "Medium"),
            created_at=self._created_at(row),
            updated_at=str(row.get("Updated At", "")),
        )


class WeeklyReviewRepository(RecordRepository[WeeklyReviewRead]):
    table = "Weekly Reviews"
    sort = SortSpec("Week Start Date", descending=True)
    owner_column = "Rep ID"
    columns = {
        "week_start_date": "Week Start Date",
        "week_end_date": "Week End Date",
        "rep_id": "Rep ID",
        "rep_name": "Rep Name",
        "total_pipeline_value": "Total Pipeline Value",
        "deals_added": "Deals Added",
        "deals_closed": "Deals Closed",
        "activities_logged": "Activities Logged",
        "notes": "Notes",
    }

    def to_read(self, row: Row) -> WeeklyReviewRead:
        return WeeklyReviewRead(
            id=row.id,
            week_start_date=self._text(row, "week_start_date"),
            week_end_date=self._text(row, "week_end_date"),
            rep_id=self._text(row, "rep_id"),
            rep_name=self._text(row, "rep_name"),
            total_pipeline_value=self._number(row, "total_pipeline_value"),
            deals_added=self._count(row, "deals_added"),
            deals_closed=self._count(row, "deals_closed"),
            activities_logged=self._count(row, "activities_logged"),
            notes=self._text(row, "notes"),
            created_at=self._created_at(row),
        )


class StageHistoryRepository(RecordRepository[StageHistoryRead]):
    table = "Stage History"
    sort = SortSpec("Changed At", descending=True)
    owner_column = "Changed By ID"
    created_column = "Changed At"
    updated_column = None
    columns = {
        "opportunity_id": "Opportunity ID",
        "opportunity_name": "Opportunity Name",
        "from_stage": "From Stage",
        "to_stage": "To Stage",
        "changed_by": "Changed By ID",
        "changed_by_name": "Changed By Name",
        "days_in_previous_stage": "Days In Previous Stage",
    }

    def update(self, record_id: str, fields: Mapping[str, Any]) -> StageHistoryRead:
        raise TypeError("stage history is append-only")

    def list_for_opportunity(self, opportunity_id: str, row_filter: RowFilter | None = None) -> list[StageHistoryRead]:
        return self.list(all_of(row_filter, FieldEquals("Opportunity ID", opportunity_id)))

    def entered_stage_at(self, opportunity_id: str, stage: SalesStage) -> datetime | None:
        """When the opportunity last moved into ``stage``, if that was recorded."""

        for entry in self.list_for_opportunity(opportunity_id):
            if entry.to_stage == stage:
                return _parse_timestamp(entry.changed_at)
        return None

    def to_read(self, row: Row) -> StageHistoryRead:
        changed_at = row.get("Changed At") or row.created_time or self.clock().isoformat()
        return StageHistoryRead(
            id=row.id,
            opportunity_id=self._text(row, "opportunity_id"),
            opportunity_name=self._text(row, "opportunity_name"),
            from_stage=self._stage(row, "from_stage"),
            to_stage=self._stage(row, "to_stage"),
            changed_by=self._text(row, "changed_by"),
            changed_by_name=self._text(row, "changed_by_name"),
            changed_at=str(changed_at),
            days_in_previous_stage=self._count(row, "days_in_previous_stage"),
        )


class UserRepository(RecordRepository[UserRead]):
    table = "Users"
    sort = SortSpec("Name")
    created_column = None
    updated_column = None
    columns = {
        "name": "Name",
        "email": "Email",
        "role": "Role",
        "password": "Password",
    }

    def create(self, fields: Mapping[str, Any]) -> UserRead:
        values = dict(fields)
        values["password"] = hash_password(str(values.pop("password")))
        return super().create(values)

    def update(self, record_id: str, fields: Mapping[str, Any]) -> UserRead:
        raise TypeError("users are not modified after creation")

    def get_by_email(self, email: str) -> UserRead | None:
        rows = self.store.select(self.table, row_filter=FieldEquals("Email", email.strip().lower()))
        if not rows:
            return None
        return self.to_read(rows[0])

    def display_name(self, user_id: str | None) -> str:
        if not user_id:
            return ""
        user = self.get_by_id(user_id)
        return user.name if user is not None else ""

    def to_read(self, row: Row) -> UserRead:
        # the Password column is never copied into the read model
        return UserRead(
            id=row.id,
            name=self._text(row, "name"),
            email=self._text(row, "email"),
            role=self._choice(row, "role", ROLE_VALUES, DEFAULT_ROLE),
        )
