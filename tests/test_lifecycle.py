from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from crm_api.crm.enums import DealStage, LeadStatus, TaskStatus
from crm_api.crm.lifecycle import (
    InvalidTransitionError,
    LeadAlreadyConvertedError,
    apply_deal_stage_change,
    deal_display_value,
    deal_stage_transition,
    lead_status_transition,
    mark_lead_converted,
    task_status_transition,
)
from crm_api.crm.models import Deal, Lead


@pytest.mark.parametrize(
    ("current", "requested"),
    [
        (LeadStatus.NEW, LeadStatus.CONTACTED),
        (LeadStatus.CONTACTED, LeadStatus.INTERESTED),
        (LeadStatus.INTERESTED, LeadStatus.LOST),
        (LeadStatus.LOST, LeadStatus.NEW),
        (LeadStatus.NEW, LeadStatus.INTERESTED),
    ],
)
def test_lead_status_transition_allows_moves_between_open_statuses(current: LeadStatus, requested: LeadStatus) -> None:
    assert lead_status_transition(current, requested) == requested


def test_lead_status_transition_rejects_direct_conversion() -> None:
    with pytest.raises(InvalidTransitionError) as exc_info:
        lead_status_transition(LeadStatus.INTERESTED, LeadStatus.CONVERTED)
    assert exc_info.value.reason == "use the convert operation"


def test_lead_status_transition_rejects_leaving_converted() -> None:
    with pytest.raises(InvalidTransitionError) as exc_info:
        lead_status_transition(LeadStatus.CONVERTED, LeadStatus.NEW)
    assert exc_info.value.current == LeadStatus.CONVERTED


def test_lead_status_transition_rejects_same_status() -> None:
    with pytest.raises(InvalidTransitionError):
        lead_status_transition(LeadStatus.CONTACTED, LeadStatus.CONTACTED)


def test_mark_lead_converted_sets_status_and_target_together() -> None:
    lead = Lead(id=uuid.uuid4(), name="Asha", status=LeadStatus.INTERESTED)
    contact_id = uuid.uuid4()

    previous = mark_lead_converted(lead, contact_id)

    assert previous == LeadStatus.INTERESTED
    assert lead.status == LeadStatus.CONVERTED
    assert lead.converted_to_contact_id == contact_id


def test_mark_lead_converted_twice_raises_already_converted() -> None:
    first_contact = uuid.uuid4()
    lead = Lead(id=uuid.uuid4(), name="Asha", status=LeadStatus.NEW)
    mark_lead_converted(lead, first_contact)

    with pytest.raises(LeadAlreadyConvertedError) as exc_info:
        mark_lead_converted(lead, uuid.uuid4())
    assert exc_info.value.contact_id == first_contact
    assert lead.converted_to_contact_id == first_contact


def test_deal_entering_closed_stage_stamps_close_date() -> None:
    deal = Deal(name="Wedding", stage=DealStage.NEGOTIATION, actual_close_date=None)

    change = deal_stage_transition(deal, DealStage.CLOSED_WON, date(2026, 10, 19))
    apply_deal_stage_change(deal, change)

    assert change.changed
    assert deal.stage == DealStage.CLOSED_WON
    assert deal.actual_close_date == date(2026, 10, 19)


def test_deal_reopened_keeps_close_date() -> None:
    deal = Deal(name="Wedding", stage=DealStage.CLOSED_LOST, actual_close_date=date(2026, 9, 1))

    change = deal_stage_transition(deal, DealStage.PROPOSAL, date(2026, 10, 19))

    assert change.new_stage == DealStage.PROPOSAL
    assert change.actual_close_date == date(2026, 9, 1)


def test_deal_moving_between_closed_stages_restamps_close_date() -> None:
    deal = Deal(name="Wedding", stage=DealStage.CLOSED_LOST, actual_close_date=date(2026, 9, 1))

    change = deal_stage_transition(deal, DealStage.CLOSED_WON, date(2026, 10, 19))

    assert change.actual_close_date == date(2026, 10, 19)


def test_deal_same_stage_is_not_a_change() -> None:
    deal = Deal(name="Wedding", stage=DealStage.PROPOSAL, actual_close_date=None)

    change = deal_stage_transition(deal, DealStage.PROPOSAL, date(2026, 10, 19))

    assert not change.changed
    assert change.actual_close_date is None


def test_task_completion_stamps_and_reopen_clears() -> None:
    actor_id = uuid.uuid4()
    now = datetime(2026, 10, 19, 9, 30, tzinfo=timezone.utc)

    completed = task_status_transition(TaskStatus.COMPLETED, actor_id, now)
    reopened = task_status_transition(TaskStatus.IN_PROGRESS, actor_id, now)

    assert completed.completed_at == now
    assert completed.completed_by == actor_id
    assert reopened.completed_at is None
    assert reopened.completed_by is None


def test_deal_display_value_prefers_confirmed() -> None:
    assert deal_display_value(Decimal("900"), Decimal("1000")) == Decimal("900")
    assert deal_display_value(None, Decimal("1000")) == Decimal("1000")
    assert deal_display_value(None, None) is None
