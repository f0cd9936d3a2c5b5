from __future__ import annotations

import datetime as dt
from typing import Annotated, ClassVar, Literal

from pydantic import AfterValidator, BaseModel, EmailStr, Field

from sales_os.pipeline.stages import ForecastCategory, SalesStage
from sales_os.security.policy import Role


LeadSource = Literal["Website", "Referral", "Trade Show", "LinkedIn", "Cold Call", "Other"]
LeadStatus = Literal["New", "Contacted", "Qualified", "Disqualified"]
ActivityType = Literal["Call", "Email", "Meeting", "Demo", "Site Visit"]
StoredTaskStatus = Literal["Not Started", "In Progress", "Completed"]
TaskStatus = Literal["Not Started", "In Progress", "Completed", "Overdue"]
TaskPriority = Literal["Low", "Medium", "High", "Urgent"]


def _strip_required(value: str) -> str:
    stripped = value.strip()
    if not stripped:
        raise ValueError("must not be blank")
    return stripped


NonBlankStr = Annotated[str, AfterValidator(_strip_required)]


class LeadCreate(BaseModel):
    company_name: NonBlankStr
    contact_person: str = ""
    email: EmailStr | None = None
    phone: str = ""
    source: LeadSource = "Other"
    status: LeadStatus = "New"
    assigned_to: str | None = None
    notes: str = ""


class LeadUpdate(BaseModel):
    clearable_fields: ClassVar[frozenset[str]] = frozenset({"contact_person", "email", "phone", "notes", "opportunity_id"})

    company_name: NonBlankStr | None = None
    contact_person: str | None = None
    email: EmailStr | None = None
    phone: str | None = None
    source: LeadSource | None = None
    status: LeadStatus | None = None
    assigned_to: NonBlankStr | None = None
    notes: str | None = None
    opportunity_id: str | None = None


class LeadRead(BaseModel):
    id: str
    company_name: str
    contact_person: str
    email: str
    phone: str
    source: LeadSource
    status: LeadStatus
    assigned_to: str
    assigned_to_name: str
    notes: str
    created_at: str
    updated_at: str
    opportunity_id: str


class OpportunityCreate(BaseModel):
    name: NonBlankStr
    lead_id: str = ""
    deal_value: float = Field(default=0, ge=0)
    stage: SalesStage = SalesStage.PROSPECTING
    expected_close_date: dt.date | None = None
    assigned_to: str | None = None
    notes: str = ""


class OpportunityUpdate(BaseModel):
    clearable_fields: ClassVar[frozenset[str]] = frozenset({"expected_close_date", "notes"})

    name: NonBlankStr | None = None
    deal_value: float | None = Field(default=None, ge=0)
    stage: SalesStage | None = None
    expected_close_date: dt.date | None = None
    assigned_to: NonBlankStr | None = None
    notes: str | None = None


class OpportunityRead(BaseModel):
    id: str
    name: str
    lead_id: str
    deal_value: float
    stage: SalesStage
    probability: int
    weighted_value: int
    forecast_category: ForecastCategory
    stage_color: str
    expected_close_date: str
    assigned_to: str
    assigned_to_name: str
    notes: str
    created_at: str
    updated_at: str


class ActivityCreate(BaseModel):
    opportunity_id: str = Field(min_length=1)
    type: ActivityType
    description: str = ""
    outcome: str = ""
    date: dt.date | None = None
    next_follow_up: dt.date | None = None


class ActivityRead(BaseModel):
    id: str
    opportunity_id: str
    opportunity_name: str
    type: ActivityType
    description: str
    outcome: str
    date: str
    next_follow_up: str
    performed_by: str
    performed_by_name: str
    created_at: str


class TaskCreate(BaseModel):
    title: NonBlankStr
    description: str = ""
    opportunity_id: str = ""
    assigned_to: str = Field(min_length=1)
    due_date: dt.date
    status: StoredTaskStatus = "Not Started"
    priority: TaskPriority = "Medium"


class TaskUpdate(BaseModel):
    clearable_fields: ClassVar[frozenset[str]] = frozenset({"description", "opportunity_id"})

    title: NonBlankStr | None = None
    description: str | None = None
    opportunity_id: str | None = None
    assigned_to: NonBlankStr | None = None
    due_date: dt.date | None = None
    status: StoredTaskStatus | None = None
    priority: TaskPriority | None = None


class TaskRead(BaseModel):
    id: str
    title: str
    description: str
    opportunity_id: str
    opportunity_name: str
    assigned_to: str
    assigned_to_name: str
    due_date: str
    status: TaskStatus
    priority: TaskPriority
    created_at: str
    updated_at: str


class WeeklyReviewRead(BaseModel):
    id: str
    week_start_date: str
    week_end_date: str
    rep_id: str
    rep_name: str
    total_pipeline_value: float
    deals_added: int
    deals_closed: int
    activities_logged: int
    notes: str
    created_at: str


class StageHistoryRead(BaseModel):
    id: str
    opportunity_id: str
    opportunity_name: str
    from_stage: SalesStage
    to_stage: SalesStage
    changed_by: str
    changed_by_name: str
    changed_at: str
    days_in_previous_stage: int


class UserCreate(BaseModel):
    name: NonBlankStr
    email: EmailStr
    password: str = Field(min_length=8)
    role: Role


class FounderSetupRequest(BaseModel):
    name: NonBlankStr
    email: EmailStr
    password: str = Field(min_length=8)


class UserRead(BaseModel):
    id: str
    name: str
    email: str
    role: Role
