from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse

from sales_os.core.context import get_correlation_id
from sales_os.core.auth import AuthUser, get_current_user as get_auth_user
from sales_os.errors import SalesOSError, StorageUnavailableError
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
from sales_os.pipeline.service import ActorUser, PipelineService
from sales_os.storage import RowStore, get_row_store


logger = logging.getLogger("sales_os.pipeline")

leads_router = APIRouter(prefix="/api/leads", tags=["sales.leads"])
opportunities_router = APIRouter(prefix="/api/opportunities", tags=["sales.opportunities"])
activities_router = APIRouter(prefix="/api/activities", tags=["sales.activities"])
tasks_router = APIRouter(prefix="/api/tasks", tags=["sales.tasks"])
weekly_reviews_router = APIRouter(prefix="/api/weekly-reviews", tags=["sales.weekly_reviews"])
stage_history_router = APIRouter(prefix="/api/stage-history", tags=["sales.stage_history"])
users_router = APIRouter(prefix="/api/users", tags=["sales.users"])
setup_router = APIRouter(prefix="/api/setup", tags=["sales.setup"])

service = PipelineService()


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def sales_error_response(request: Request, exc: SalesOSError) -> JSONResponse:
    # storage and integrity failures keep their internals out of the response
    if isinstance(exc, StorageUnavailableError):
        return error_response(request, status_code=exc.status_code, code=exc.code, message="Storage unavailable")
    if exc.status_code >= 500:
        logger.error("request.failed", extra={"path": request.url.path, "error": exc.message})
        return error_response(request, status_code=exc.status_code, code=exc.code, message="Internal server error")
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    return ActorUser(
        user_id=auth_user.sub,
        role=auth_user.role,
        name=auth_user.name,
        correlation_id=correlation_id,
    )


@leads_router.get("", response_model=list[LeadRead])
def list_leads(
    request: Request,
    store: RowStore = Depends(get_row_store),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadRead] | JSONResponse:
    try:
        return service.list_leads(store, user)
    except SalesOSError as exc:
        return sales_error_response(request, exc)


@leads_router.post("", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    store: RowStore = Depends(get_row_store),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return service.create_lead(store, user, dto)
    except SalesOSError as exc:
        return sales_error_response(request, exc)


@leads_router.patch("/{lead_id}", response_model=LeadRead)
def update_lead(
    request: Request,
    lead_id: str,
    dto: LeadUpdate,
    store: RowStore = Depends(get_row_store),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return service.update_lead(store, user, lead_id, dto)
    except SalesOSError as exc:
        return sales_error_response(request, exc)


@opportunities_router.get("", response_model=list[OpportunityRead])
def list_opportunities(
    request: Request,
    store: RowStore = Depends(get_row_store),
    user: ActorUser = Depends(get_current_user),
) -> list[OpportunityRead] | JSONResponse:
    try:
        return service.list_opportunities(store, user)
    except SalesOSError as exc:
        return sales_error_response(request, exc)


@opportunities_router.post("", response_model=OpportunityRead, status_code=status.HTTP_201_CREATED)
def create_opportunity(
    request: Request,
    dto: OpportunityCreate,
    store: RowStore = Depends(get_row_store),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        return service.create_opportunity(store, user, dto)
    except SalesOSError as exc:
        return sales_error_response(request, exc)


@opportunities_router.patch("/{opportunity_id}", response_model=OpportunityRead)
def update_opportunity(
    request: Request,
    opportunity_id: str,
    dto: OpportunityUpdate,
    store: RowStore = Depends(get_row_store),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        return service.update_opportunity(store, user, opportunity_id, dto)
    except SalesOSError as exc:
        return sales_error_response(request, exc)


@activities_router.get("", response_model=list[ActivityRead])
def list_activities(
    request: Request,
    opportunity_id: str | None = Query(default=None),
    store: RowStore = Depends(get_row_store),
    user: ActorUser = Depends(get_current_user),
) -> list[ActivityRead] | JSONResponse:
    try:
        return service.list_activities(store, user, opportunity_id)
    except SalesOSError as exc:
        return sales_error_response(request, exc)


@activities_router.post("", response_model=ActivityRead, status_code=status.HTTP_201_CREATED)
def create_activity(
    request: Request,
    dto: ActivityCreate,
    store: RowStore = Depends(get_row_store),
    user: ActorUser = Depends(get_current_user),
) -> ActivityRead | JSONResponse:
    try:
        return service.create_activity(store, user, dto)
    except SalesOSError as exc:
        return sales_error_response(request, exc)


@tasks_router.get("", response_model=list[TaskRead])
def list_tasks(
    request: Request,
    store: RowStore = Depends(get_row_store),
    user: ActorUser = Depends(get_current_user),
) -> list[TaskRead] | JSONResponse:
    try:
        return service.list_tasks(store, user)
    except SalesOSError as exc:
        return sales_error_response(request, exc)


@tasks_router.post("", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
def create_task(
    request: Request,
    dto: TaskCreate,
    store: RowStore = Depends(get_row_store),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        return service.create_task(store, user, dto)
    except SalesOSError as exc:
        return sales_error_response(request, exc)


@tasks_router.patch("/{task_id}", response_model=TaskRead)
def update_task(
    request: Request,
    task_id: str,
    dto: TaskUpdate,
    store: RowStore = Depends(get_row_store),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        return service.update_task(store, user, task_id, dto)
    except SalesOSError as exc:
        return sales_error_response(request, exc)


@weekly_reviews_router.get("", response_model=list[WeeklyReviewRead])
def list_weekly_reviews(
    request: Request,
    store: RowStore = Depends(get_row_store),
    user: ActorUser = Depends(get_current_user),
) -> list[WeeklyReviewRead] | JSONResponse:
    try:
        return service.list_weekly_reviews(store, user)
    except SalesOSError as exc:
        return sales_error_response(request, exc)


@stage_history_router.get("", response_model=list[StageHistoryRead])
def list_stage_history(
    request: Request,
    opportunity_id: str | None = Query(default=None),
    store: RowStore = Depends(get_row_store),
    user: ActorUser = Depends(get_current_user),
) -> list[StageHistoryRead] | JSONResponse:
    try:
        return service.list_stage_history(store, user, opportunity_id)
    except SalesOSError as exc:
        return sales_error_response(request, exc)


@users_router.get("", response_model=list[UserRead])
def list_users(
    request: Request,
    store: RowStore = Depends(get_row_store),
    user: ActorUser = Depends(get_current_user),
) -> list[UserRead] | JSONResponse:
    try:
        return service.list_users(store, user)
    except SalesOSError as exc:
        return sales_error_response(request, exc)


@users_router.post("", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def create_user(
    request: Request,
    dto: UserCreate,
    store: RowStore = Depends(get_row_store),
    user: ActorUser = Depends(get_current_user),
) -> UserRead | JSONResponse:
    try:
        return service.create_user(store, user, dto)
    except SalesOSError as exc:
        return sales_error_response(request, exc)


@setup_router.post("", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def setup_founder(
    request: Request,
    dto: FounderSetupRequest,
    store: RowStore = Depends(get_row_store),
) -> UserRead | JSONResponse:
    try:
        return service.setup_founder(store, dto, correlation_id=get_correlation_id())
    except SalesOSError as exc:
        return sales_error_response(request, exc)
