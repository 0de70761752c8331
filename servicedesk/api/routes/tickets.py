from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, status
from pydantic import BaseModel, ConfigDict, Field

from servicedesk.api.errors import to_http_error
from servicedesk.dependencies.auth import CurrentActor
from servicedesk.dependencies.services import CommentsDep, LifecycleDep, VerificationDep
from servicedesk.tickets.errors import TicketError
from servicedesk.tickets.models import (
    Comment,
    PartReplaced,
    ServiceReport,
    ServiceReportDraft,
    Ticket,
    TicketAction,
    TicketAggregate,
    TicketPriority,
    TicketStatus,
    TransitionPayload,
    VerificationDecision,
    VerificationStatus,
)

router = APIRouter(prefix="/tickets", tags=["tickets"])


class PartReplacedModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str = Field(..., min_length=1, max_length=200)
    quantity: int = Field(default=1)
    cost: float | None = None


class ServiceReportRequest(BaseModel):
    work_description: str
    time_spent: int
    parts_replaced: list[PartReplacedModel] = Field(default_factory=list)
    notes: str | None = Field(default=None, max_length=500)

    def to_draft(self) -> ServiceReportDraft:
        return ServiceReportDraft(
            work_description=self.work_description,
            time_spent=self.time_spent,
            parts_replaced=tuple(
                PartReplaced(name=part.name, quantity=part.quantity, cost=part.cost) for part in self.parts_replaced
            ),
        )


class TicketCreateRequest(BaseModel):
    equipment_id: str = Field(..., min_length=1)
    issue_type: str
    description: str
    priority: TicketPriority = TicketPriority.MEDIUM


class TicketTransitionRequest(BaseModel):
    action: TicketAction
    assigned_to: str | None = None
    notes: str | None = Field(default=None, max_length=500)
    reason: str | None = None
    report: ServiceReportRequest | None = None

    def to_payload(self) -> TransitionPayload:
        return TransitionPayload(
            assigned_to=self.assigned_to,
            notes=self.notes,
            reason=self.reason,
            report=self.report.to_draft() if self.report is not None else None,
        )


class VerificationRequest(BaseModel):
    decision: VerificationDecision
    reason: str | None = None


class CommentCreateRequest(BaseModel):
    message: str


class TimelineEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    status: TicketStatus
    timestamp: datetime
    actor_id: str
    notes: str | None


class TicketResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    ticket_number: str
    equipment_id: str
    raised_by: str
    assigned_to: str | None
    priority: TicketPriority
    status: TicketStatus
    issue_type: str
    description: str
    reopen_count: int
    version: int
    timeline: list[TimelineEntryResponse]
    created_at: datetime
    updated_at: datetime
    closed_at: datetime | None


class ServiceReportResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    ticket_id: str
    engineer_id: str
    work_description: str
    time_spent: int
    parts_replaced: list[PartReplacedModel]
    verification_status: VerificationStatus
    verified_by: str | None
    rejection_reason: str | None
    submitted_at: datetime
    verified_at: datetime | None


class CommentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    ticket_id: str
    author_id: str
    message: str
    created_at: datetime


class TicketDetailResponse(TicketResponse):
    comments: list[CommentResponse]
    service_reports: list[ServiceReportResponse]

    @classmethod
    def from_aggregate(cls, aggregate: TicketAggregate) -> "TicketDetailResponse":
        base = TicketResponse.model_validate(aggregate.ticket)
        return cls(
            **base.model_dump(),
            comments=[_to_comment_response(comment) for comment in aggregate.comments],
            service_reports=[_to_report_response(report) for report in aggregate.reports],
        )


def _to_response(ticket: Ticket) -> TicketResponse:
    return TicketResponse.model_validate(ticket)


def _to_report_response(report: ServiceReport) -> ServiceReportResponse:
    return ServiceReportResponse.model_validate(report)


def _to_comment_response(comment: Comment) -> CommentResponse:
    return CommentResponse.model_validate(comment)


@router.post("", response_model=TicketResponse, status_code=status.HTTP_201_CREATED)
async def create_ticket(
    payload: TicketCreateRequest,
    lifecycle: LifecycleDep,
    actor: CurrentActor,
) -> TicketResponse:
    try:
        ticket = await lifecycle.create_ticket(
            equipment_id=payload.equipment_id,
            raised_by=actor,
            issue_type=payload.issue_type,
            description=payload.description,
            priority=payload.priority,
        )
    except TicketError as exc:
        raise to_http_error(exc) from exc
    return _to_response(ticket)


@router.get("/{ticket_id}", response_model=TicketDetailResponse)
async def get_ticket(ticket_id: str, lifecycle: LifecycleDep, _: CurrentActor) -> TicketDetailResponse:
    try:
        aggregate = await lifecycle.get_ticket(ticket_id)
    except TicketError as exc:
        raise to_http_error(exc) from exc
    return TicketDetailResponse.from_aggregate(aggregate)


@router.get("/{ticket_id}/timeline", response_model=list[TimelineEntryResponse])
async def get_timeline(ticket_id: str, lifecycle: LifecycleDep, _: CurrentActor) -> list[TimelineEntryResponse]:
    try:
        entries = await lifecycle.timeline(ticket_id)
    except TicketError as exc:
        raise to_http_error(exc) from exc
    return [TimelineEntryResponse.model_validate(entry) for entry in entries]


@router.post("/{ticket_id}/transitions", response_model=TicketResponse)
async def transition_ticket(
    ticket_id: str,
    payload: TicketTransitionRequest,
    lifecycle: LifecycleDep,
    actor: CurrentActor,
) -> TicketResponse:
    try:
        ticket = await lifecycle.transition(ticket_id, actor, payload.action, payload.to_payload())
    except TicketError as exc:
        raise to_http_error(exc) from exc
    return _to_response(ticket)


@router.post(
    "/{ticket_id}/service-reports",
    response_model=ServiceReportResponse,
    status_code=status.HTTP_201_CREATED,
)
async def submit_service_report(
    ticket_id: str,
    payload: ServiceReportRequest,
    verification: VerificationDep,
    actor: CurrentActor,
) -> ServiceReportResponse:
    try:
        report = await verification.submit_report(ticket_id, actor, payload.to_draft(), notes=payload.notes)
    except TicketError as exc:
        raise to_http_error(exc) from exc
    return _to_report_response(report)


@router.get("/{ticket_id}/service-reports", response_model=list[ServiceReportResponse])
async def list_service_reports(
    ticket_id: str, verification: VerificationDep, _: CurrentActor
) -> list[ServiceReportResponse]:
    try:
        reports = await verification.list_reports(ticket_id)
    except TicketError as exc:
        raise to_http_error(exc) from exc
    return [_to_report_response(report) for report in reports]


@router.post("/{ticket_id}/verification", response_model=TicketResponse)
async def verify_service(
    ticket_id: str,
    payload: VerificationRequest,
    verification: VerificationDep,
    actor: CurrentActor,
) -> TicketResponse:
    try:
        ticket = await verification.verify(ticket_id, actor, payload.decision, payload.reason)
    except TicketError as exc:
        raise to_http_error(exc) from exc
    return _to_response(ticket)


@router.post(
    "/{ticket_id}/comments",
    response_model=CommentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_comment(
    ticket_id: str,
    payload: CommentCreateRequest,
    comments: CommentsDep,
    actor: CurrentActor,
) -> CommentResponse:
    try:
        comment = await comments.add(ticket_id, actor, payload.message)
    except TicketError as exc:
        raise to_http_error(exc) from exc
    return _to_comment_response(comment)


@router.get("/{ticket_id}/comments", response_model=list[CommentResponse])
async def list_comments(ticket_id: str, comments: CommentsDep, _: CurrentActor) -> list[CommentResponse]:
    try:
        items = await comments.list(ticket_id)
    except TicketError as exc:
        raise to_http_error(exc) from exc
    return [_to_comment_response(comment) for comment in items]


@router.delete("/{ticket_id}/comments/{comment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_comment(
    ticket_id: str,
    comment_id: str,
    comments: CommentsDep,
    actor: CurrentActor,
) -> None:
    try:
        await comments.delete(ticket_id, comment_id, actor)
    except TicketError as exc:
        raise to_http_error(exc) from exc
