from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, NoReturn

from sales_os import events
from sales_os.core.config import Settings, get_settings
from sales_os.errors import ConflictError, ForbiddenError, NotFoundError, ValidationFailedError
from sales_os.metrics import observe_access_denied
from sales_os.pipeline.repositories import (
    ActivityRepository,
    LeadRepository,
    OpportunityRepository,
    StageHistoryRepository,
    TaskRepository,
    UserRepository,
    WeeklyReviewRepository,
)
from sales_os.pipeline.schemas import (
    ActivityCreate,
    ActivityRead,
    FounderSetupRequest,
    LeadCreate,
    LeadRead,
    LeadUpdate,
    OpportunityCreate,
    OpportunityRead,
    OpportunityUpdate,
    StageHistoryRead,
    TaskCreate,
    TaskRead,
    TaskUpdate,
    UserCreate,
    UserRead,
    WeeklyReviewRead,
)
from sales_os.security.policy import (
    Role,
    can_create_task,
    can_create_user,
    can_mutate,
    fields_mutable,
    is_admin,
    on_create,
    scope_filter,
)
from sales_os.storage.base import FieldEquals, RowStore, all_of


logger = logging.getLogger("sales_os.pipeline")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def submitted_changes(dto: LeadUpdate | OpportunityUpdate | TaskUpdate) -> dict[str, Any]:
    """Fields present in a partial update. An explicit null only clears the model's clearable fields."""
    changes = dto.model_dump(mode="json", exclude_unset=True)
    nulled = sorted(name for name, value in changes.items() if value is None and name not in dto.clearable_fields)
    if nulled:
        raise ValidationFailedError("fields cannot be cleared", details={"fields": nulled})
    return {name: "" if value is None else value for name, value in changes.items()}


@dataclass
class ActorUser:
    user_id: str
    role: Role
    name: str = ""
    correlation_id: str | None = None

    @property
    def is_admin(self) -> bool:
        return is_admin(self.role)


@dataclass
class _Repositories:
    leads: LeadRepository
    opportunities: OpportunityRepository
    activities: ActivityRepository
    tasks: TaskRepository
    weekly_reviews: WeeklyReviewRepository
    stage_history: StageHistoryRepository
    users: UserRepository


class PipelineService:
    """Scoped reads and guarded writes for every sales collection.

    Each operation builds its repositories over the ``RowStore`` it is given,
    so a service instance holds no per-request state.
    """

    def __init__(self, *, clock: Callable[[], datetime] = utcnow, settings: Settings | None = None) -> None:
        self.clock = clock
        self._settings = settings

    @property
    def settings(self) -> Settings:
        return self._settings or get_settings()

    def repositories(self, store: RowStore) -> _Repositories:
        options: dict[str, Any] = {"clock": self.clock, "strict_stage_reads": self.settings.strict_stage_reads}
        stage_history = StageHistoryRepository(store, **options)
        return _Repositories(
            leads=LeadRepository(store, **options),
            opportunities=OpportunityRepository(store, history=stage_history, **options),
            activities=ActivityRepository(store, **options),
            tasks=TaskRepository(store, **options),
            weekly_reviews=WeeklyReviewRepository(store, **options),
            stage_history=stage_history,
            users=UserRepository(store, **options),
        )

    # leads

    def list_leads(self, store: RowStore, actor_user: ActorUser) -> list[LeadRead]:
        repos = self.repositories(store)
        return repos.leads.list(scope_filter(actor_user.role, actor_user.user_id, LeadRepository.owner_column))

    def create_lead(self, store: RowStore, actor_user: ActorUser, dto: LeadCreate) -> LeadRead:
        repos = self.repositories(store)
        fields = dto.model_dump(mode="json")
        owner_id = on_create(actor_user.role, actor_user.user_id, dto.assigned_to)
        fields["assigned_to"] = owner_id or ""
        fields["assigned_to_name"] = self._assignee_name(repos, actor_user, owner_id)
        fields["email"] = fields["email"] or ""

        lead = repos.leads.create(fields)
        self._publish(actor_user, "sales.lead.created", {"lead_id": lead.id, "assigned_to": lead.assigned_to})
        logger.info("lead.created", extra={"record_id": lead.id, "actor_id": actor_user.user_id})
        return lead

    def update_lead(self, store: RowStore, actor_user: ActorUser, lead_id: str, dto: LeadUpdate) -> LeadRead:
        repos = self.repositories(store)
        changes = submitted_changes(dto)

        if self.settings.lead_update_requires_owner:
            current = repos.leads.get_by_id(lead_id)
            if current is None:
                raise NotFoundError("lead", lead_id)
            self._require_mutation(actor_user, "lead", "update", current.assigned_to)
            if not actor_user.is_admin:
                changes.pop("assigned_to", None)

        if "assigned_to" in changes:
            changes["assigned_to_name"] = self._assignee_name(repos, actor_user, changes["assigned_to"])

        lead = repos.leads.update(lead_id, changes)
        self._publish(actor_user, "sales.lead.updated", {"lead_id": lead.id, "fields": sorted(changes)})
        return lead

    # opportunities

    def list_opportunities(self, store: RowStore, actor_user: ActorUser) -> list[OpportunityRead]:
        repos = self.repositories(store)
        return repos.opportunities.list(
            scope_filter(actor_user.role, actor_user.user_id, OpportunityRepository.owner_column)
        )

    def create_opportunity(self, store: RowStore, actor_user: ActorUser, dto: OpportunityCreate) -> OpportunityRead:
        repos = self.repositories(store)
        fields = dto.model_dump(mode="json")
        owner_id = on_create(actor_user.role, actor_user.user_id, dto.assigned_to)
        fields["assigned_to"] = owner_id or ""
        fields["assigned_to_name"] = self._assignee_name(repos, actor_user, owner_id)
        fields["expected_close_date"] = fields["expected_close_date"] or ""

        opportunity = repos.opportunities.create(fields)
        self._publish(
            actor_user,
            "sales.opportunity.created",
            {"opportunity_id": opportunity.id, "stage": str(opportunity.stage), "deal_value": opportunity.deal_value},
        )
        logger.info("opportunity.created", extra={"record_id": opportunity.id, "actor_id": actor_user.user_id})
        return opportunity

    def update_opportunity(
        self,
        store: RowStore,
        actor_user: ActorUser,
        opportunity_id: str,
        dto: OpportunityUpdate,
    ) -> OpportunityRead:
        repos = self.repositories(store)
        current = repos.opportunities.get_by_id(opportunity_id)
        if current is None:
            raise NotFoundError("opportunity", opportunity_id)
        self._require_mutation(actor_user, "opportunity", "update", current.assigned_to)

        changes = submitted_changes(dto)
        if not actor_user.is_admin:
            changes.pop("assigned_to", None)
        if "assigned_to" in changes:
            changes["assigned_to_name"] = self._assignee_name(repos, actor_user, changes["assigned_to"])

        updated, history_entry = repos.opportunities.update_with_stage_history(
            opportunity_id,
            changes,
            changed_by=actor_user.user_id,
            changed_by_name=self._actor_name(repos, actor_user),
        )
        self._publish(actor_user, "sales.opportunity.updated", {"opportunity_id": updated.id, "fields": sorted(changes)})
        if history_entry is not None:
            logger.info(
                "opportunity.stage_changed",
                extra={
                    "opportunity_id": updated.id,
                    "from_stage": str(history_entry.from_stage),
                    "to_stage": str(history_entry.to_stage),
                    "actor_id": actor_user.user_id,
                },
            )
            self._publish(
                actor_user,
                "sales.opportunity.stage_changed",
                {
                    "opportunity_id": updated.id,
                    "stage_history_id": history_entry.id,
                    "from_stage": str(history_entry.from_stage),
                    "to_stage": str(history_entry.to_stage),
                    "days_in_previous_stage": history_entry.days_in_previous_stage,
                },
            )
        return updated

    # activities

    def list_activities(
        self,
        store: RowStore,
        actor_user: ActorUser,
        opportunity_id: str | None = None,
    ) -> list[ActivityRead]:
        repos = self.repositories(store)
        opportunity_filter = FieldEquals("Opportunity ID", opportunity_id) if opportunity_id else None
        return repos.activities.list(
            all_of(
                opportunity_filter,
                scope_filter(actor_user.role, actor_user.user_id, ActivityRepository.owner_column),
            )
        )

    def create_activity(self, store: RowStore, actor_user: ActorUser, dto: ActivityCreate) -> ActivityRead:
        repos = self.repositories(store)
        opportunity = repos.opportunities.get_by_id(dto.opportunity_id)
        if opportunity is None:
            raise NotFoundError("opportunity", dto.opportunity_id)
        self._require_mutation(actor_user, "activity", "create", opportunity.assigned_to)

        fields = dto.model_dump(mode="json")
        fields["next_follow_up"] = fields["next_follow_up"] or ""
        fields["opportunity_name"] = opportunity.name
        fields["performed_by"] = actor_user.user_id
        fields["performed_by_name"] = self._actor_name(repos, actor_user)

        activity = repos.activities.create(fields)
        self._publish(
            actor_user,
            "sales.activity.created",
            {"activity_id": activity.id, "opportunity_id": activity.opportunity_id, "type": activity.type},
        )
        return activity

    # tasks

    def list_tasks(self, store: RowStore, actor_user: ActorUser) -> list[TaskRead]:
        repos = self.repositories(store)
        return repos.tasks.list(scope_filter(actor_user.role, actor_user.user_id, TaskRepository.owner_column))

    def create_task(self, store: RowStore, actor_user: ActorUser, dto: TaskCreate) -> TaskRead:
        if not can_create_task(actor_user.role):
            self._deny(actor_user, "task", "create")
        repos = self.repositories(store)

        fields = dto.model_dump(mode="json")
        fields["assigned_to_name"] = self._assignee_name(repos, actor_user, dto.assigned_to)
        fields["opportunity_name"] = self._opportunity_name(repos, dto.opportunity_id)

        task = repos.tasks.create(fields)
        self._publish(actor_user, "sales.task.created", {"task_id": task.id, "assigned_to": task.assigned_to})
        logger.info("task.created", extra={"record_id": task.id, "actor_id": actor_user.user_id})
        return task

    def update_task(self, store: RowStore, actor_user: ActorUser, task_id: str, dto: TaskUpdate) -> TaskRead:
        repos = self.repositories(store)
        current = repos.tasks.get_by_id(task_id)
        if current is None:
            raise NotFoundError("task", task_id)
        self._require_mutation(actor_user, "task", "update", current.assigned_to)

        changes = fields_mutable(actor_user.role, submitted_changes(dto))
        if "assigned_to" in changes:
            changes["assigned_to_name"] = self._assignee_name(repos, actor_user, changes["assigned_to"])
        if "opportunity_id" in changes:
            changes["opportunity_name"] = self._opportunity_name(repos, changes["opportunity_id"])

        task = repos.tasks.update(task_id, changes)
        self._publish(actor_user, "sales.task.updated", {"task_id": task.id, "fields": sorted(changes)})
        return task

    # read-only collections

    def list_weekly_reviews(self, store: RowStore, actor_user: ActorUser) -> list[WeeklyReviewRead]:
        repos = self.repositories(store)
        return repos.weekly_reviews.list(
            scope_filter(actor_user.role, actor_user.user_id, WeeklyReviewRepository.owner_column)
        )

    def list_stage_history(
        self,
        store: RowStore,
        actor_user: ActorUser,
        opportunity_id: str | None = None,
    ) -> list[StageHistoryRead]:
        repos = self.repositories(store)
        scope = scope_filter(actor_user.role, actor_user.user_id, StageHistoryRepository.owner_column)
        if opportunity_id:
            return repos.stage_history.list_for_opportunity(opportunity_id, scope)
        return repos.stage_history.list(scope)

    # users

    def list_users(self, store: RowStore, actor_user: ActorUser) -> list[UserRead]:
        repos = self.repositories(store)
        if actor_user.is_admin:
            return repos.users.list()
        own = repos.users.get_by_id(actor_user.user_id)
        return [own] if own is not None else []

    def create_user(self, store: RowStore, actor_user: ActorUser, dto: UserCreate) -> UserRead:
        if not can_create_user(actor_user.role):
            self._deny(actor_user, "user", "create")
        user = self._register(store, name=dto.name, email=str(dto.email), password=dto.password, role=dto.role)
        self._publish(actor_user, "sales.user.created", {"user_id": user.id, "role": str(user.role)})
        return user

    def setup_founder(self, store: RowStore, dto: FounderSetupRequest, correlation_id: str | None = None) -> UserRead:
        """Bootstrap a founder account; open to unauthenticated callers."""
        user = self._register(store, name=dto.name, email=str(dto.email), password=dto.password, role=Role.FOUNDER)
        logger.info("setup.founder_created", extra={"record_id": user.id})
        events.publish(
            "sales.user.created",
            {"user_id": user.id, "role": str(user.role)},
            occurred_at=self.clock(),
            actor_user_id=None,
            correlation_id=correlation_id,
        )
        return user

    def _register(self, store: RowStore, *, name: str, email: str, password: str, role: Role) -> UserRead:
        repos = self.repositories(store)
        normalized_email = email.strip().lower()
        if repos.users.get_by_email(normalized_email) is not None:
            raise ConflictError("user already exists", details={"email": normalized_email})
        return repos.users.create({"name": name.strip(), "email": normalized_email, "password": password, "role": role})

    # helpers

    def _require_mutation(self, actor_user: ActorUser, resource: str, action: str, owner_id: str | None) -> None:
        if not can_mutate(actor_user.role, actor_user.user_id, owner_id):
            self._deny(actor_user, resource, action)

    def _deny(self, actor_user: ActorUser, resource: str, action: str) -> NoReturn:
        observe_access_denied(resource, action)
        logger.warning(
            "access.denied",
            extra={"actor_id": actor_user.user_id, "role": str(actor_user.role), "table": resource, "operation": action},
        )
        raise ForbiddenError(resource, action)

    def _assignee_name(self, repos: _Repositories, actor_user: ActorUser, owner_id: str | None) -> str:
        """Display name of a record owner. Anyone but the actor must be a registered user."""
        if not owner_id:
            return ""
        if owner_id == actor_user.user_id:
            return self._actor_name(repos, actor_user)
        user = repos.users.get_by_id(owner_id)
        if user is None:
            raise ValidationFailedError("assigned user does not exist", details={"assigned_to": owner_id})
        return user.name

    def _actor_name(self, repos: _Repositories, actor_user: ActorUser) -> str:
        return actor_user.name or repos.users.display_name(actor_user.user_id)

    def _opportunity_name(self, repos: _Repositories, opportunity_id: str | None) -> str:
        if not opportunity_id:
            return ""
        opportunity = repos.opportunities.get_by_id(opportunity_id)
        return opportunity.name if opportunity is not None else ""

    def _publish(self, actor_user: ActorUser, event_type: str, payload: dict[str, Any]) -> None:
        events.publish(
            event_type,
            payload,
            occurred_at=self.clock(),
            actor_user_id=actor_user.user_id,
            correlation_id=actor_user.correlation_id,
        )
