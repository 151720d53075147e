"""Transition rules for leads, deals and tasks.

Every field that must move together with a status (conversion target, close date,
completion stamp) is set here and nowhere else, so services cannot leave a row in a
half-transitioned state.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from crm_api.crm.enums import CLOSED_DEAL_STAGES, DealStage, LeadStatus, TaskStatus

if TYPE_CHECKING:
    from crm_api.crm.models import Deal, Lead


class InvalidTransitionError(Exception):
    def __init__(self, entity_type: str, current: str | None, requested: str, reason: str) -> None:
        self.entity_type = entity_type
        self.current = current
        self.requested = requested
        self.reason = reason
        super().__init__(f"{entity_type} cannot move from {current} to {requested}: {reason}")


class LeadAlreadyConvertedError(InvalidTransitionError):
    def __init__(self, lead_id: uuid.UUID, contact_id: uuid.UUID | None) -> None:
        self.lead_id = lead_id
        self.contact_id = contact_id
        super().__init__("lead", LeadStatus.CONVERTED, LeadStatus.CONVERTED, "lead is already converted")


def lead_status_transition(current: LeadStatus, requested: LeadStatus) -> LeadStatus:
    if requested == LeadStatus.CONVERTED:
        raise InvalidTransitionError("lead", current, requested, "use the convert operation")
    if current == LeadStatus.CONVERTED:
        raise InvalidTransitionError("lead", current, requested, "converted leads are final")
    if current == requested:
        raise InvalidTransitionError("lead", current, requested, "lead already has this status")
    return requested


def mark_lead_converted(lead: Lead, contact_id: uuid.UUID) -> LeadStatus:
    """Set status and conversion target together; returns the previous status."""
    if lead.status == LeadStatus.CONVERTED or lead.converted_to_contact_id is not None:
        raise LeadAlreadyConvertedError(lead.id, lead.converted_to_contact_id)
    previous = LeadStatus(lead.status)
    lead.status = LeadStatus.CONVERTED
    lead.converted_to_contact_id = contact_id
    return previous


@dataclass(frozen=True)
class DealStageChange:
    old_stage: DealStage
    new_stage: DealStage
    actual_close_date: date | None

    @property
    def changed(self) -> bool:
        return self.old_stage != self.new_stage


def deal_stage_transition(deal: Deal, new_stage: DealStage, today: date) -> DealStageChange:
    # Entering a closed stage stamps the close date; leaving one keeps it.
    old_stage = DealStage(deal.stage)
    close_date = deal.actual_close_date
    if new_stage != old_stage and new_stage in CLOSED_DEAL_STAGES:
        close_date = today
    return DealStageChange(old_stage=old_stage, new_stage=new_stage, actual_close_date=close_date)


def apply_deal_stage_change(deal: Deal, change: DealStageChange) -> None:
    deal.stage = change.new_stage
    deal.actual_close_date = change.actual_close_date


@dataclass(frozen=True)
class TaskStatusChange:
    status: TaskStatus
    completed_at: datetime | None
    completed_by: uuid.UUID | None


def task_status_transition(new_status: TaskStatus, actor_user_id: uuid.UUID, now: datetime) -> TaskStatusChange:
    if new_status == TaskStatus.COMPLETED:
        return TaskStatusChange(status=new_status, completed_at=now, completed_by=actor_user_id)
    return TaskStatusChange(status=new_status, completed_at=None, completed_by=None)


def deal_display_value(confirmed_value: Decimal | None, estimated_value: Decimal | None) -> Decimal | None:
    if confirmed_value is not None:
        return confirmed_value
    return estimated_value
