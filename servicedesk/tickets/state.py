from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Mapping

from servicedesk.core.config import RejectPolicy

from .errors import Forbidden, InvalidTransition
from .models import Actor, Role, Ticket, TicketAction, TicketStatus


class ActorCheck(str, Enum):
    """Identity requirement attached to a transition."""

    ROLE = "role"
    ASSIGNEE = "assignee"
    RAISER_OR_ADMIN = "raiser_or_admin"


@dataclass(frozen=True, slots=True)
class TransitionRule:
    """One row of the permission table."""

    action: TicketAction
    sources: frozenset[TicketStatus]
    target: TicketStatus
    check: ActorCheck
    roles: frozenset[Role] = frozenset()


_SUPERVISORS = frozenset({Role.SUPERVISOR, Role.ADMIN})

_DEFAULT_RULES: tuple[TransitionRule, ...] = (
    TransitionRule(
        TicketAction.ASSIGN,
        frozenset({TicketStatus.OPEN, TicketStatus.REOPENED}),
        TicketStatus.ASSIGNED,
        ActorCheck.ROLE,
        _SUPERVISORS,
    ),
    TransitionRule(
        TicketAction.START_SERVICE,
        frozenset({TicketStatus.ASSIGNED, TicketStatus.REOPENED}),
        TicketStatus.IN_PROGRESS,
        ActorCheck.ASSIGNEE,
    ),
    TransitionRule(
        TicketAction.COMPLETE_SERVICE,
        frozenset({TicketStatus.IN_PROGRESS}),
        TicketStatus.PENDING_VERIFICATION,
        ActorCheck.ASSIGNEE,
    ),
    TransitionRule(
        TicketAction.APPROVE,
        frozenset({TicketStatus.PENDING_VERIFICATION}),
        TicketStatus.CLOSED,
        ActorCheck.ROLE,
        _SUPERVISORS,
    ),
    TransitionRule(
        TicketAction.REJECT,
        frozenset({TicketStatus.PENDING_VERIFICATION}),
        TicketStatus.IN_PROGRESS,
        ActorCheck.ROLE,
        _SUPERVISORS,
    ),
    TransitionRule(
        TicketAction.REOPEN,
        frozenset({TicketStatus.CLOSED}),
        TicketStatus.REOPENED,
        ActorCheck.RAISER_OR_ADMIN,
    ),
)


class TicketStateMachine:
    """Validate ticket lifecycle transitions and the actors requesting them."""

    def __init__(
        self,
        rules: Mapping[TicketAction, TransitionRule] | None = None,
        *,
        reject_policy: RejectPolicy = RejectPolicy.REWORK,
    ) -> None:
        if rules is None:
            rules = {rule.action: rule for rule in _DEFAULT_RULES}
            if reject_policy is RejectPolicy.TERMINAL:
                rework = rules[TicketAction.REJECT]
                rules[TicketAction.REJECT] = TransitionRule(
                    rework.action, rework.sources, TicketStatus.REJECTED, rework.check, rework.roles
                )
        self._rules = dict(rules)

    @classmethod
    def initial_state(cls) -> TicketStatus:
        return TicketStatus.OPEN

    def rule(self, action: TicketAction) -> TransitionRule:
        try:
            return self._rules[action]
        except KeyError:
            raise InvalidTransition(f"Unsupported action: {action!s}") from None

    def can_transition(self, current: TicketStatus, action: TicketAction) -> bool:
        rule = self._rules.get(action)
        return rule is not None and current in rule.sources

    def target(self, action: TicketAction) -> TicketStatus:
        return self.rule(action).target

    def assert_transition(self, current: TicketStatus, action: TicketAction) -> TransitionRule:
        rule = self.rule(action)
        if current not in rule.sources:
            raise InvalidTransition(
                f"Cannot {action.value} a ticket in status {current.value}"
            )
        return rule

    def is_permitted(self, rule: TransitionRule, actor: Actor, ticket: Ticket) -> bool:
        if rule.check is ActorCheck.ROLE:
            return actor.role in rule.roles
        if rule.check is ActorCheck.ASSIGNEE:
            return ticket.assigned_to is not None and actor.id == ticket.assigned_to
        if rule.check is ActorCheck.RAISER_OR_ADMIN:
            return actor.id == ticket.raised_by or actor.role is Role.ADMIN
        return False

    def authorize(self, rule: TransitionRule, actor: Actor, ticket: Ticket) -> None:
        if not self.is_permitted(rule, actor, ticket):
            raise Forbidden(
                f"Actor {actor.id} ({actor.role.value}) may not {rule.action.value} "
                f"ticket {ticket.ticket_number}"
            )
