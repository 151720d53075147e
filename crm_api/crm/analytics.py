"""Derived read views: the kanban pipeline and the dashboard summary.

Both are recomputed from the current rows on every call.
"""

from __future__ import annotations

import uuid
from collections import Counter
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from crm_api.authz.context import ActorUser
from crm_api.crm.enums import CLOSED_DEAL_STAGES, OPEN_TASK_STATUSES, DealStage, LeadSource, LeadStatus
from crm_api.crm.lifecycle import deal_display_value
from crm_api.crm.models import Contact, Deal, Lead, Task
from crm_api.crm.schemas import DailyCount, DashboardRead, PipelineBoard, PipelineColumn, StageSummary
from crm_api.crm.service import deal_to_read, with_owners

_ZERO = Decimal("0")


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def build_pipeline(session: Session, actor_user: ActorUser, owner_id: uuid.UUID | None = None) -> PipelineBoard:
    stmt = select(Deal).order_by(Deal.updated_at.desc())
    if owner_id is not None:
        stmt = stmt.where(Deal.owner_id == owner_id)
    deals = with_owners(session, [deal_to_read(deal) for deal in session.scalars(stmt)])

    columns: list[PipelineColumn] = []
    for stage in DealStage:
        members = [deal for deal in deals if deal.stage == stage]
        # Deals without any value still count, contributing zero.
        total = sum((item.display_value or _ZERO for item in members), _ZERO)
        columns.append(PipelineColumn(stage=stage, deals=members, count=len(members), total_value=total))
    return PipelineBoard(columns=columns)


def build_dashboard(
    session: Session,
    actor_user: ActorUser,
    created_from: datetime | None = None,
    created_to: datetime | None = None,
    today: date | None = None,
) -> DashboardRead:
    lead_stmt = select(Lead.status, Lead.source, Lead.created_at)
    deal_stmt = select(Deal.stage, Deal.confirmed_value, Deal.estimated_value)
    if created_from is not None:
        lead_stmt = lead_stmt.where(Lead.created_at >= created_from)
        deal_stmt = deal_stmt.where(Deal.created_at >= created_from)
    if created_to is not None:
        lead_stmt = lead_stmt.where(Lead.created_at <= created_to)
        deal_stmt = deal_stmt.where(Deal.created_at <= created_to)

    leads = session.execute(lead_stmt).all()
    deals = session.execute(deal_stmt).all()
    total_contacts = int(session.scalar(select(func.count()).select_from(Contact)) or 0)
    total_tasks = int(session.scalar(select(func.count()).select_from(Task)) or 0)

    now = datetime.now(timezone.utc)
    pending_tasks = int(
        session.scalar(select(func.count()).select_from(Task).where(Task.status.in_(list(OPEN_TASK_STATUSES)))) or 0
    )
    overdue_tasks = int(
        session.scalar(
            select(func.count())
            .select_from(Task)
            .where(Task.status.in_(list(OPEN_TASK_STATUSES)), Task.due_date.is_not(None), Task.due_date < now)
        )
        or 0
    )

    status_counts = Counter(str(row.status) for row in leads)
    source_counts = Counter(str(row.source) for row in leads)
    leads_by_status = {str(value): status_counts.get(str(value), 0) for value in LeadStatus}
    leads_by_source = {str(value): source_counts.get(str(value), 0) for value in LeadSource}

    stage_counts: Counter[str] = Counter()
    stage_values: dict[str, Decimal] = {str(stage): _ZERO for stage in DealStage}
    pipeline_value = _ZERO
    for row in deals:
        value = deal_display_value(row.confirmed_value, row.estimated_value) or _ZERO
        stage_counts[str(row.stage)] += 1
        stage_values[str(row.stage)] += value
        if row.stage not in CLOSED_DEAL_STAGES:
            pipeline_value += value

    total_leads = len(leads)
    converted = status_counts.get(str(LeadStatus.CONVERTED), 0)
    conversion_rate = round(converted / total_leads * 100, 2) if total_leads else 0.0

    current_day = today or now.date()
    window = [current_day - timedelta(days=offset) for offset in range(6, -1, -1)]
    per_day = Counter(_as_utc(row.created_at).date() for row in leads)

    return DashboardRead(
        total_leads=total_leads,
        total_contacts=total_contacts,
        total_deals=len(deals),
        total_tasks=total_tasks,
        leads_by_status=leads_by_status,
        leads_by_source=leads_by_source,
        deals_by_stage=[
            StageSummary(stage=stage, count=stage_counts.get(str(stage), 0), value=stage_values[str(stage)])
            for stage in DealStage
        ],
        conversion_rate=conversion_rate,
        total_pipeline_value=pipeline_value,
        closed_won_value=stage_values[str(DealStage.CLOSED_WON)],
        pending_tasks=pending_tasks,
        overdue_tasks=overdue_tasks,
        new_leads_last_7_days=[DailyCount(day=day, count=per_day.get(day, 0)) for day in window],
    )
