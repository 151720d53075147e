from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, TypeVar

from fastapi import HTTPException, status
from opentelemetry import trace
from sqlalchemy import Select, delete, func, or_, select, update
from sqlalchemy.orm import Session, selectinload

from crm_api import audit, events, files
from crm_api.authz.context import ActorUser
from crm_api.authz.models import Profile
from crm_api.authz.policy import ensure_can_modify, ensure_role
from crm_api.core.config import get_settings
from crm_api.crm.enums import AuditAction, AuditEntityType, DealStage, LeadStatus, ProfileStatus, Role
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
from crm_api.crm.models import (
    Communication,
    Contact,
    ContactActivity,
    ContactEmail,
    ContactPhone,
    Deal,
    DealActivity,
    DealStageHistory,
    Document,
    Lead,
    LeadActivity,
    LeadStatusHistory,
    Note,
    Task,
)
from crm_api.crm.schemas import (
    ActivityCreate,
    ActivityRead,
    AuditRead,
    CommunicationCreate,
    CommunicationRead,
    CommunicationUpdate,
    ContactCreate,
    ContactEmailInput,
    ContactPhoneInput,
    ContactRead,
    ContactUpdate,
    DealCreate,
    DealRead,
    DealStageChangeRequest,
    DealStageHistoryRead,
    DealUpdate,
    DocumentRead,
    DocumentUrlRead,
    LeadConvertRequest,
    LeadConvertResponse,
    LeadCreate,
    LeadRead,
    LeadStatusChangeRequest,
    LeadStatusHistoryRead,
    LeadUpdate,
    NoteCreate,
    NoteRead,
    ProfileSummary,
    ReassignRequest,
    TaskCreate,
    TaskRead,
    TaskStatusChangeRequest,
    TaskUpdate,
)
from crm_api.models.audit import AuditLog

tracer = trace.get_tracer("crm_api.crm")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@contextmanager
def unit_of_work(session: Session) -> Iterator[None]:
    """Commit everything written inside the block once, or roll all of it back."""
    try:
        yield
        session.commit()
    except Exception:
        session.rollback()
        raise


def _not_found(resource: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{resource} not found")


def _transition_error(exc: InvalidTransitionError) -> HTTPException:
    if isinstance(exc, LeadAlreadyConvertedError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "message": "lead is already converted",
                "lead_id": str(exc.lead_id),
                "contact_id": str(exc.contact_id) if exc.contact_id else None,
            },
        )
    return HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail={
            "message": exc.reason,
            "entity_type": exc.entity_type,
            "current": str(exc.current) if exc.current is not None else None,
            "requested": str(exc.requested),
        },
    )


def _next_sequence(session: Session, column: Any, parent_id: uuid.UUID) -> int:
    return int(session.scalar(select(func.count()).where(column == parent_id)) or 0)


def _ensure_links_exist(
    session: Session,
    lead_id: uuid.UUID | None = None,
    contact_id: uuid.UUID | None = None,
    deal_id: uuid.UUID | None = None,
) -> None:
    for model, value, resource in ((Lead, lead_id, "lead"), (Contact, contact_id, "contact"), (Deal, deal_id, "deal")):
        if value is not None and session.get(model, value) is None:
            raise _not_found(resource)


def _ensure_active_profile(session: Session, user_id: uuid.UUID, field_name: str) -> None:
    profile = session.get(Profile, user_id)
    if profile is None or profile.status != ProfileStatus.ACTIVE:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": f"{field_name} must reference an active user", field_name: str(user_id)},
        )


OwnedRead = TypeVar("OwnedRead", LeadRead, ContactRead, DealRead)
ActorRead = TypeVar("ActorRead", LeadStatusHistoryRead, DealStageHistoryRead, ActivityRead)


def _profiles_by_id(session: Session, user_ids: Iterable[uuid.UUID | None]) -> dict[uuid.UUID, Profile]:
    wanted = {user_id for user_id in user_ids if user_id is not None}
    if not wanted:
        return {}
    return {profile.id: profile for profile in session.scalars(select(Profile).where(Profile.id.in_(wanted)))}


def with_owners(session: Session, reads: list[OwnedRead]) -> list[OwnedRead]:
    """Attach the owner's name and email, one profile query per batch."""
    profiles = _profiles_by_id(session, (read.owner_id for read in reads))
    return [
        read.model_copy(update={"owner": ProfileSummary.model_validate(profiles[read.owner_id])})
        if read.owner_id in profiles
        else read
        for read in reads
    ]


def with_owner(session: Session, read: OwnedRead) -> OwnedRead:
    return with_owners(session, [read])[0]


def with_actor_names(session: Session, reads: list[ActorRead], id_field: str, name_field: str) -> list[ActorRead]:
    profiles = _profiles_by_id(session, (getattr(read, id_field) for read in reads))
    return [
        read.model_copy(update={name_field: profiles[getattr(read, id_field)].full_name})
        if getattr(read, id_field) in profiles
        else read
        for read in reads
    ]


def _apply_link_filters(stmt: Select[Any], model: Any, filters: dict[str, Any]) -> Select[Any]:
    for key in ("lead_id", "contact_id", "deal_id"):
        if filters.get(key):
            stmt = stmt.where(getattr(model, key) == filters[key])
    return stmt


class LeadService:
    logger = logging.getLogger("crm_api.crm.leads")

    def create_lead(self, session: Session, actor_user: ActorUser, dto: LeadCreate) -> LeadRead:
        owner_id = dto.owner_id or actor_user.user_id
        ensure_can_modify(actor_user, "lead", owner_id)
        if dto.owner_id is not None:
            _ensure_active_profile(session, dto.owner_id, "owner_id")

        with unit_of_work(session):
            lead = Lead(
                name=dto.name.strip(),
                source=dto.source,
                status=LeadStatus.NEW,
                owner_id=owner_id,
                phone=dto.phone,
                email=str(dto.email) if dto.email is not None else None,
                notes=dto.notes,
                inquiry_date=dto.inquiry_date or utcnow(),
                created_by=actor_user.user_id,
            )
            session.add(lead)
            session.flush()
            session.add(
                LeadStatusHistory(
                    lead_id=lead.id,
                    old_status=None,
                    new_status=LeadStatus.NEW,
                    changed_by=actor_user.user_id,
                    notes="Lead created",
                    sequence=0,
                )
            )

        result = LeadRead.model_validate(lead)
        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            action=AuditAction.LEAD_CREATE,
            entity_type=AuditEntityType.LEAD,
            entity_id=result.id,
            new_values=result.model_dump(mode="json", exclude={"owner"}),
        )
        events.publish(
            events.build_envelope(
                "crm.lead.created",
                actor_user.user_id,
                {"lead_id": str(result.id), "status": str(result.status), "source": str(result.source)},
            )
        )
        self.logger.info(
            "lead_created",
            extra={"entity_type": "lead", "entity_id": str(result.id), "actor_user_id": str(actor_user.user_id)},
        )
        return with_owner(session, result)

    def list_leads(
        self,
        session: Session,
        actor_user: ActorUser,
        filters: dict[str, Any],
        limit: int = 100,
        offset: int = 0,
    ) -> list[LeadRead]:
        stmt: Select[tuple[Lead]] = select(Lead)
        if filters.get("status"):
            stmt = stmt.where(Lead.status == filters["status"])
        if filters.get("source"):
            stmt = stmt.where(Lead.source == filters["source"])
        if filters.get("owner_id"):
            stmt = stmt.where(Lead.owner_id == filters["owner_id"])
        if filters.get("q"):
            pattern = f"%{filters['q']}%"
            stmt = stmt.where(or_(Lead.name.ilike(pattern), Lead.email.ilike(pattern), Lead.phone.ilike(pattern)))

        leads = session.scalars(stmt.order_by(Lead.created_at.desc()).offset(offset).limit(limit)).all()
        return with_owners(session, [LeadRead.model_validate(item) for item in leads])

    def get_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> LeadRead:
        return with_owner(session, LeadRead.model_validate(self._get_lead(session, lead_id)))

    def update_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID, dto: LeadUpdate) -> LeadRead:
        lead = self._get_lead(session, lead_id)
        ensure_can_modify(actor_user, "lead", lead.owner_id)

        before = LeadRead.model_validate(lead).model_dump(mode="json", exclude={"owner"})
        payload = dto.model_dump(exclude_unset=True)
        if "name" in payload and payload["name"] is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="name cannot be empty")
        if "source" in payload and payload["source"] is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="source cannot be empty")
        if payload.get("email") is not None:
            payload["email"] = str(payload["email"])
        if "inquiry_date" in payload and payload["inquiry_date"] is None:
            payload.pop("inquiry_date")

        with unit_of_work(session):
            for field_name, value in payload.items():
                setattr(lead, field_name, value)

        result = LeadRead.model_validate(lead)
        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            action=AuditAction.LEAD_UPDATE,
            entity_type=AuditEntityType.LEAD,
            entity_id=lead_id,
            old_values=before,
            new_values=result.model_dump(mode="json", exclude={"owner"}),
        )
        return with_owner(session, result)

    def change_status(
        self,
        session: Session,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        dto: LeadStatusChangeRequest,
    ) -> LeadRead:
        lead = self._get_lead(session, lead_id)
        ensure_can_modify(actor_user, "lead", lead.owner_id)

        old_status = LeadStatus(lead.status)
        try:
            new_status = lead_status_transition(old_status, dto.status)
        except InvalidTransitionError as exc:
            raise _transition_error(exc) from exc

        with tracer.start_as_current_span("crm.lead.status_change") as span:
            span.set_attribute("crm.lead_id", str(lead_id))
            span.set_attribute("crm.new_status", str(new_status))
            with unit_of_work(session):
                lead.status = new_status
                session.add(
                    LeadStatusHistory(
                        lead_id=lead.id,
                        old_status=old_status,
                        new_status=new_status,
                        changed_by=actor_user.user_id,
                        notes=dto.notes,
                        sequence=_next_sequence(session, LeadStatusHistory.lead_id, lead.id),
                    )
                )

        result = LeadRead.model_validate(lead)
        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            action=AuditAction.LEAD_STATUS_CHANGE,
            entity_type=AuditEntityType.LEAD,
            entity_id=lead_id,
            old_values={"status": str(old_status)},
            new_values={"status": str(new_status), "notes": dto.notes},
        )
        events.publish(
            events.build_envelope(
                "crm.lead.status_changed",
                actor_user.user_id,
                {"lead_id": str(lead_id), "old_status": str(old_status), "new_status": str(new_status)},
            )
        )
        self.logger.info(
            "lead_status_changed",
            extra={
                "entity_type": "lead",
                "entity_id": str(lead_id),
                "old_status": str(old_status),
                "new_status": str(new_status),
                "actor_user_id": str(actor_user.user_id),
            },
        )
        return with_owner(session, result)

    def reassign_lead(
        self,
        session: Session,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        dto: ReassignRequest,
    ) -> LeadRead:
        ensure_role(actor_user, Role.MANAGER)
        lead = self._get_lead(session, lead_id)
        _ensure_active_profile(session, dto.owner_id, "owner_id")

        old_owner_id = lead.owner_id
        with unit_of_work(session):
            lead.owner_id = dto.owner_id

        result = LeadRead.model_validate(lead)
        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            action=AuditAction.LEAD_REASSIGN,
            entity_type=AuditEntityType.LEAD,
            entity_id=lead_id,
            old_values={"owner_id": str(old_owner_id) if old_owner_id else None},
            new_values={"owner_id": str(dto.owner_id)},
        )
        return with_owner(session, result)

    def convert_lead(
        self,
        session: Session,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        dto: LeadConvertRequest,
    ) -> LeadConvertResponse:
        lead = self._get_lead(session, lead_id)
        ensure_can_modify(actor_user, "lead", lead.owner_id)
        if lead.status == LeadStatus.CONVERTED or lead.converted_to_contact_id is not None:
            raise _transition_error(LeadAlreadyConvertedError(lead.id, lead.converted_to_contact_id))

        with tracer.start_as_current_span("crm.lead.convert") as span:
            span.set_attribute("crm.lead_id", str(lead_id))
            with unit_of_work(session):
                contact = Contact(
                    first_name=dto.first_name.strip(),
                    last_name=dto.last_name,
                    company=dto.company,
                    job_title=dto.job_title,
                    address=dto.address,
                    city=dto.city,
                    state=dto.state,
                    postal_code=dto.postal_code,
                    country=dto.country,
                    notes=dto.notes,
                    lead_id=lead.id,
                    owner_id=actor_user.user_id,
                    created_by=actor_user.user_id,
                )
                contact.phones = build_contact_phones(dto.phones)
                contact.emails = build_contact_emails(dto.emails)
                session.add(contact)
                session.flush()

                try:
                    previous_status = mark_lead_converted(lead, contact.id)
                except InvalidTransitionError as exc:
                    raise _transition_error(exc) from exc
                session.add(
                    LeadStatusHistory(
                        lead_id=lead.id,
                        old_status=previous_status,
                        new_status=LeadStatus.CONVERTED,
                        changed_by=actor_user.user_id,
                        notes="Converted to contact",
                        sequence=_next_sequence(session, LeadStatusHistory.lead_id, lead.id),
                    )
                )
            span.set_attribute("crm.contact_id", str(contact.id))

        contact_read = contact_to_read(session, contact.id)
        lead_read = LeadRead.model_validate(lead)
        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            action=AuditAction.LEAD_CONVERT,
            entity_type=AuditEntityType.LEAD,
            entity_id=lead_id,
            old_values={"status": str(previous_status), "converted_to_contact_id": None},
            new_values={"status": str(LeadStatus.CONVERTED), "converted_to_contact_id": str(contact_read.id)},
        )
        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            action=AuditAction.CONTACT_CREATE,
            entity_type=AuditEntityType.CONTACT,
            entity_id=contact_read.id,
            new_values=contact_read.model_dump(mode="json", exclude={"owner"}),
        )
        events.publish(
            events.build_envelope(
                "crm.lead.converted",
                actor_user.user_id,
                {"lead_id": str(lead_id), "contact_id": str(contact_read.id), "old_status": str(previous_status)},
            )
        )
        self.logger.info(
            "lead_converted",
            extra={
                "entity_type": "lead",
                "entity_id": str(lead_id),
                "old_status": str(previous_status),
                "new_status": str(LeadStatus.CONVERTED),
                "actor_user_id": str(actor_user.user_id),
            },
        )
        return LeadConvertResponse(lead=with_owner(session, lead_read), contact=with_owner(session, contact_read))

    def list_status_history(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> list[LeadStatusHistoryRead]:
        self._get_lead(session, lead_id)
        rows = session.scalars(
            select(LeadStatusHistory)
            .where(LeadStatusHistory.lead_id == lead_id)
            .order_by(LeadStatusHistory.sequence.asc(), LeadStatusHistory.changed_at.asc())
        ).all()
        reads = [LeadStatusHistoryRead.model_validate(row) for row in rows]
        return with_actor_names(session, reads, "changed_by", "changed_by_name")

    def _get_lead(self, session: Session, lead_id: uuid.UUID) -> Lead:
        lead = session.get(Lead, lead_id)
        if lead is None:
            raise _not_found("lead")
        return lead


def build_contact_phones(phones: list[ContactPhoneInput]) -> list[ContactPhone]:
    return [
        ContactPhone(phone=item.phone, phone_type=item.phone_type, is_primary=item.is_primary, position=index)
        for index, item in enumerate(phones)
    ]


def build_contact_emails(emails: list[ContactEmailInput]) -> list[ContactEmail]:
    return [
        ContactEmail(email=str(item.email), email_type=item.email_type, is_primary=item.is_primary, position=index)
        for index, item in enumerate(emails)
    ]


def _primary_value(rows: list[Any], attribute: str) -> str | None:
    # First row flagged primary, else the first row.
    if not rows:
        return None
    primary = next((row for row in rows if row.is_primary), rows[0])
    return getattr(primary, attribute)


def contact_to_read(session: Session, contact_id: uuid.UUID) -> ContactRead:
    contact = session.scalar(
        select(Contact)
        .where(Contact.id == contact_id)
        .options(selectinload(Contact.phones), selectinload(Contact.emails))
    )
    if contact is None:
        raise _not_found("contact")
    return _contact_read(contact)


def _contact_read(contact: Contact) -> ContactRead:
    return ContactRead.model_validate(contact).model_copy(
        update={
            "primary_phone": _primary_value(contact.phones, "phone"),
            "primary_email": _primary_value(contact.emails, "email"),
        }
    )


class ContactService:
    logger = logging.getLogger("crm_api.crm.contacts")

    def create_contact(self, session: Session, actor_user: ActorUser, dto: ContactCreate) -> ContactRead:
        owner_id = dto.owner_id or actor_user.user_id
        ensure_can_modify(actor_user, "contact", owner_id)
        if dto.owner_id is not None:
            _ensure_active_profile(session, dto.owner_id, "owner_id")

        with unit_of_work(session):
            contact = Contact(
                **dto.model_dump(exclude={"phones", "emails", "owner_id"}),
                owner_id=owner_id,
                created_by=actor_user.user_id,
            )
            contact.first_name = contact.first_name.strip()
            contact.phones = build_contact_phones(dto.phones)
            contact.emails = build_contact_emails(dto.emails)
            session.add(contact)

        result = contact_to_read(session, contact.id)
        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            action=AuditAction.CONTACT_CREATE,
            entity_type=AuditEntityType.CONTACT,
            entity_id=result.id,
            new_values=result.model_dump(mode="json", exclude={"owner"}),
        )
        self.logger.info(
            "contact_created",
            extra={"entity_type": "contact", "entity_id": str(result.id), "actor_user_id": str(actor_user.user_id)},
        )
        return with_owner(session, result)

    def list_contacts(
        self,
        session: Session,
        actor_user: ActorUser,
        filters: dict[str, Any],
        limit: int = 100,
        offset: int = 0,
    ) -> list[ContactRead]:
        stmt: Select[tuple[Contact]] = select(Contact).options(selectinload(Contact.phones), selectinload(Contact.emails))
        if filters.get("owner_id"):
            stmt = stmt.where(Contact.owner_id == filters["owner_id"])
        if filters.get("lead_id"):
            stmt = stmt.where(Contact.lead_id == filters["lead_id"])
        if filters.get("q"):
            pattern = f"%{filters['q']}%"
            stmt = stmt.where(
                or_(Contact.first_name.ilike(pattern), Contact.last_name.ilike(pattern), Contact.company.ilike(pattern))
            )
        contacts = session.scalars(stmt.order_by(Contact.created_at.desc()).offset(offset).limit(limit)).all()
        return with_owners(session, [_contact_read(item) for item in contacts])

    def get_contact(self, session: Session, actor_user: ActorUser, contact_id: uuid.UUID) -> ContactRead:
        return with_owner(session, contact_to_read(session, contact_id))

    def update_contact(
        self,
        session: Session,
        actor_user: ActorUser,
        contact_id: uuid.UUID,
        dto: ContactUpdate,
    ) -> ContactRead:
        contact = self._get_contact(session, contact_id)
        ensure_can_modify(actor_user, "contact", contact.owner_id)

        before = _contact_read(contact).model_dump(mode="json", exclude={"owner"})
        payload = dto.model_dump(exclude_unset=True, exclude={"phones", "emails"})
        if "first_name" in payload and not payload["first_name"]:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="first_name cannot be empty")

        with unit_of_work(session):
            for field_name, value in payload.items():
                setattr(contact, field_name, value)
            # Supplied lists replace the existing child rows.
            if dto.phones is not None:
                contact.phones = build_contact_phones(dto.phones)
            if dto.emails is not None:
                contact.emails = build_contact_emails(dto.emails)

        result = contact_to_read(session, contact_id)
        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            action=AuditAction.CONTACT_UPDATE,
            entity_type=AuditEntityType.CONTACT,
            entity_id=contact_id,
            old_values=before,
            new_values=result.model_dump(mode="json", exclude={"owner"}),
        )
        return with_owner(session, result)

    def delete_contact(self, session: Session, actor_user: ActorUser, contact_id: uuid.UUID) -> None:
        contact = self._get_contact(session, contact_id)
        ensure_can_modify(actor_user, "contact", contact.owner_id)

        before = _contact_read(contact).model_dump(mode="json", exclude={"owner"})
        with unit_of_work(session):
            for model in (Deal, Task, Note, Communication, Document):
                session.execute(update(model).where(model.contact_id == contact_id).values(contact_id=None))
            session.execute(delete(ContactActivity).where(ContactActivity.contact_id == contact_id))
            session.delete(contact)

        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            action=AuditAction.CONTACT_DELETE,
            entity_type=AuditEntityType.CONTACT,
            entity_id=contact_id,
            old_values=before,
        )
        self.logger.info(
            "contact_deleted",
            extra={"entity_type": "contact", "entity_id": str(contact_id), "actor_user_id": str(actor_user.user_id)},
        )

    def _get_contact(self, session: Session, contact_id: uuid.UUID) -> Contact:
        contact = session.scalar(
            select(Contact)
            .where(Contact.id == contact_id)
            .options(selectinload(Contact.phones), selectinload(Contact.emails))
        )
        if contact is None:
            raise _not_found("contact")
        return contact


def deal_to_read(deal: Deal) -> DealRead:
    return DealRead.model_validate(deal).model_copy(
        update={"display_value": deal_display_value(deal.confirmed_value, deal.estimated_value)}
    )


class DealService:
    logger = logging.getLogger("crm_api.crm.deals")

    def create_deal(self, session: Session, actor_user: ActorUser, dto: DealCreate) -> DealRead:
        owner_id = dto.owner_id or actor_user.user_id
        ensure_can_modify(actor_user, "deal", owner_id)
        if dto.owner_id is not None:
            _ensure_active_profile(session, dto.owner_id, "owner_id")
        _ensure_links_exist(session, lead_id=dto.lead_id, contact_id=dto.contact_id)

        with unit_of_work(session):
            deal = Deal(
                name=dto.name.strip(),
                owner_id=owner_id,
                lead_id=dto.lead_id,
                contact_id=dto.contact_id,
                stage=DealStage.INQUIRY,
                estimated_value=dto.estimated_value,
                confirmed_value=dto.confirmed_value,
                expected_close_date=dto.expected_close_date,
                notes=dto.notes,
                created_by=actor_user.user_id,
            )
            session.add(deal)
            session.flush()
            # Seed row: the trail always starts with old_stage=None.
            session.add(
                DealStageHistory(
                    deal_id=deal.id,
                    old_stage=None,
                    new_stage=DealStage.INQUIRY,
                    changed_by=actor_user.user_id,
                    notes="Deal created",
                    sequence=0,
                )
            )

        result = deal_to_read(deal)
        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            action=AuditAction.DEAL_CREATE,
            entity_type=AuditEntityType.DEAL,
            entity_id=result.id,
            new_values=result.model_dump(mode="json", exclude={"owner"}),
        )
        events.publish(
            events.build_envelope(
                "crm.deal.created",
                actor_user.user_id,
                {"deal_id": str(result.id), "stage": str(result.stage)},
            )
        )
        self.logger.info(
            "deal_created",
            extra={"entity_type": "deal", "entity_id": str(result.id), "actor_user_id": str(actor_user.user_id)},
        )
        return with_owner(session, result)

    def list_deals(
        self,
        session: Session,
        actor_user: ActorUser,
        filters: dict[str, Any],
        limit: int = 100,
        offset: int = 0,
    ) -> list[DealRead]:
        stmt: Select[tuple[Deal]] = select(Deal)
        if filters.get("stage"):
            stmt = stmt.where(Deal.stage == filters["stage"])
        if filters.get("owner_id"):
            stmt = stmt.where(Deal.owner_id == filters["owner_id"])
        stmt = _apply_link_filters(stmt, Deal, {key: filters.get(key) for key in ("lead_id", "contact_id")})
        deals = session.scalars(stmt.order_by(Deal.created_at.desc()).offset(offset).limit(limit)).all()
        return with_owners(session, [deal_to_read(item) for item in deals])

    def get_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> DealRead:
        return with_owner(session, deal_to_read(self._get_deal(session, deal_id)))

    def update_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID, dto: DealUpdate) -> DealRead:
        deal = self._get_deal(session, deal_id)
        ensure_can_modify(actor_user, "deal", deal.owner_id)

        payload = dto.model_dump(exclude_unset=True)
        if "name" in payload and not payload["name"]:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="name cannot be empty")
        _ensure_links_exist(session, lead_id=payload.get("lead_id"), contact_id=payload.get("contact_id"))

        before = deal_to_read(deal).model_dump(mode="json", exclude={"owner"})
        with unit_of_work(session):
            for field_name, value in payload.items():
                setattr(deal, field_name, value)

        result = deal_to_read(deal)
        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            action=AuditAction.DEAL_UPDATE,
            entity_type=AuditEntityType.DEAL,
            entity_id=deal_id,
            old_values=before,
            new_values=result.model_dump(mode="json", exclude={"owner"}),
        )
        return with_owner(session, result)

    def change_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        dto: DealStageChangeRequest,
    ) -> DealRead:
        deal = self._get_deal(session, deal_id)
        ensure_can_modify(actor_user, "deal", deal.owner_id)

        change = deal_stage_transition(deal, dto.stage, utcnow().date())
        if not change.changed:
            return with_owner(session, deal_to_read(deal))

        old_close_date = deal.actual_close_date
        with tracer.start_as_current_span("crm.deal.stage_change") as span:
            span.set_attribute("crm.deal_id", str(deal_id))
            span.set_attribute("crm.old_stage", str(change.old_stage))
            span.set_attribute("crm.new_stage", str(change.new_stage))
            with unit_of_work(session):
                apply_deal_stage_change(deal, change)
                session.add(
                    DealStageHistory(
                        deal_id=deal.id,
                        old_stage=change.old_stage,
                        new_stage=change.new_stage,
                        changed_by=actor_user.user_id,
                        notes=dto.notes,
                        sequence=_next_sequence(session, DealStageHistory.deal_id, deal.id),
                    )
                )

        result = deal_to_read(deal)
        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            action=AuditAction.DEAL_STAGE_CHANGE,
            entity_type=AuditEntityType.DEAL,
            entity_id=deal_id,
            old_values={
                "stage": str(change.old_stage),
                "actual_close_date": old_close_date.isoformat() if old_close_date else None,
            },
            new_values={
                "stage": str(change.new_stage),
                "actual_close_date": result.actual_close_date.isoformat() if result.actual_close_date else None,
                "notes": dto.notes,
            },
        )
        events.publish(
            events.build_envelope(
                "crm.deal.stage_changed",
                actor_user.user_id,
                {"deal_id": str(deal_id), "old_stage": str(change.old_stage), "new_stage": str(change.new_stage)},
            )
        )
        self.logger.info(
            "deal_stage_changed",
            extra={
                "entity_type": "deal",
                "entity_id": str(deal_id),
                "old_stage": str(change.old_stage),
                "new_stage": str(change.new_stage),
                "actor_user_id": str(actor_user.user_id),
            },
        )
        return with_owner(session, result)

    def reassign_deal(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        dto: ReassignRequest,
    ) -> DealRead:
        ensure_role(actor_user, Role.MANAGER)
        deal = self._get_deal(session, deal_id)
        _ensure_active_profile(session, dto.owner_id, "owner_id")

        old_owner_id = deal.owner_id
        with unit_of_work(session):
            deal.owner_id = dto.owner_id

        result = deal_to_read(deal)
        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            action=AuditAction.DEAL_UPDATE,
            entity_type=AuditEntityType.DEAL,
            entity_id=deal_id,
            old_values={"owner_id": str(old_owner_id) if old_owner_id else None},
            new_values={"owner_id": str(dto.owner_id)},
        )
        return with_owner(session, result)

    def list_stage_history(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> list[DealStageHistoryRead]:
        self._get_deal(session, deal_id)
        rows = session.scalars(
            select(DealStageHistory)
            .where(DealStageHistory.deal_id == deal_id)
            .order_by(DealStageHistory.sequence.asc(), DealStageHistory.changed_at.asc())
        ).all()
        reads = [DealStageHistoryRead.model_validate(row) for row in rows]
        return with_actor_names(session, reads, "changed_by", "changed_by_name")

    def _get_deal(self, session: Session, deal_id: uuid.UUID) -> Deal:
        deal = session.get(Deal, deal_id)
        if deal is None:
            raise _not_found("deal")
        return deal


class ActivityService:
    """Append-only activity logs; one table per parent entity."""

    _targets: dict[str, tuple[Any, Any, str]] = {
        "lead": (Lead, LeadActivity, "lead_id"),
        "contact": (Contact, ContactActivity, "contact_id"),
        "deal": (Deal, DealActivity, "deal_id"),
    }

    def add_activity(
        self,
        session: Session,
        actor_user: ActorUser,
        entity_type: str,
        entity_id: uuid.UUID,
        dto: ActivityCreate,
    ) -> ActivityRead:
        parent_model, activity_model, foreign_key = self._resolve(entity_type)
        if session.get(parent_model, entity_id) is None:
            raise _not_found(entity_type)

        with unit_of_work(session):
            activity = activity_model(
                user_id=actor_user.user_id,
                activity_type=dto.activity_type,
                description=dto.description,
                **{foreign_key: entity_id},
            )
            session.add(activity)
        return with_actor_names(session, [ActivityRead.model_validate(activity)], "user_id", "user_name")[0]

    def list_activities(
        self,
        session: Session,
        actor_user: ActorUser,
        entity_type: str,
        entity_id: uuid.UUID,
    ) -> list[ActivityRead]:
        parent_model, activity_model, foreign_key = self._resolve(entity_type)
        if session.get(parent_model, entity_id) is None:
            raise _not_found(entity_type)
        rows = session.scalars(
            select(activity_model)
            .where(getattr(activity_model, foreign_key) == entity_id)
            .order_by(activity_model.created_at.desc())
        ).all()
        reads = [ActivityRead.model_validate(row) for row in rows]
        return with_actor_names(session, reads, "user_id", "user_name")

    def _resolve(self, entity_type: str) -> tuple[Any, Any, str]:
        target = self._targets.get(entity_type)
        if target is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="unsupported entity type")
        return target


class TaskService:
    logger = logging.getLogger("crm_api.crm.tasks")

    def create_task(self, session: Session, actor_user: ActorUser, dto: TaskCreate) -> TaskRead:
        _ensure_links_exist(session, lead_id=dto.lead_id, contact_id=dto.contact_id, deal_id=dto.deal_id)
        if dto.assigned_to is not None:
            _ensure_active_profile(session, dto.assigned_to, "assigned_to")
        with unit_of_work(session):
            task = Task(
                **dto.model_dump(exclude={"assigned_to"}),
                assigned_to=dto.assigned_to or actor_user.user_id,
                created_by=actor_user.user_id,
            )
            task.title = task.title.strip()
            session.add(task)

        result = TaskRead.model_validate(task)
        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            action=AuditAction.TASK_CREATE,
            entity_type=AuditEntityType.TASK,
            entity_id=result.id,
            new_values=result.model_dump(mode="json"),
        )
        return result

    def list_tasks(
        self,
        session: Session,
        actor_user: ActorUser,
        filters: dict[str, Any],
        limit: int = 100,
        offset: int = 0,
    ) -> list[TaskRead]:
        stmt: Select[tuple[Task]] = _apply_link_filters(select(Task), Task, filters)
        if filters.get("status"):
            stmt = stmt.where(Task.status == filters["status"])
        if filters.get("assigned_to"):
            stmt = stmt.where(Task.assigned_to == filters["assigned_to"])
        tasks = session.scalars(
            stmt.order_by(Task.due_date.is_(None), Task.due_date.asc(), Task.created_at.desc())
            .offset(offset)
            .limit(limit)
        ).all()
        return [TaskRead.model_validate(item) for item in tasks]

    def update_task(self, session: Session, actor_user: ActorUser, task_id: uuid.UUID, dto: TaskUpdate) -> TaskRead:
        task = self._get_task(session, task_id)
        ensure_can_modify(actor_user, "task", task.created_by, task.assigned_to)

        payload = dto.model_dump(exclude_unset=True)
        if "title" in payload and not payload["title"]:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="title cannot be empty")
        if "priority" in payload and payload["priority"] is None:
            payload.pop("priority")
        _ensure_links_exist(
            session,
            lead_id=payload.get("lead_id"),
            contact_id=payload.get("contact_id"),
            deal_id=payload.get("deal_id"),
        )
        if payload.get("assigned_to") is not None:
            _ensure_active_profile(session, payload["assigned_to"], "assigned_to")

        before = TaskRead.model_validate(task).model_dump(mode="json")
        with unit_of_work(session):
            for field_name, value in payload.items():
                setattr(task, field_name, value)

        result = TaskRead.model_validate(task)
        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            action=AuditAction.TASK_UPDATE,
            entity_type=AuditEntityType.TASK,
            entity_id=task_id,
            old_values=before,
            new_values=result.model_dump(mode="json"),
        )
        return result

    def change_status(
        self,
        session: Session,
        actor_user: ActorUser,
        task_id: uuid.UUID,
        dto: TaskStatusChangeRequest,
    ) -> TaskRead:
        task = self._get_task(session, task_id)
        ensure_can_modify(actor_user, "task", task.created_by, task.assigned_to)

        old_status = task.status
        change = task_status_transition(dto.status, actor_user.user_id, utcnow())
        with unit_of_work(session):
            task.status = change.status
            task.completed_at = change.completed_at
            task.completed_by = change.completed_by

        result = TaskRead.model_validate(task)
        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            action=AuditAction.TASK_STATUS_CHANGE,
            entity_type=AuditEntityType.TASK,
            entity_id=task_id,
            old_values={"status": str(old_status)},
            new_values={"status": str(change.status)},
        )
        self.logger.info(
            "task_status_changed",
            extra={
                "entity_type": "task",
                "entity_id": str(task_id),
                "old_status": str(old_status),
                "new_status": str(change.status),
                "actor_user_id": str(actor_user.user_id),
            },
        )
        return result

    def delete_task(self, session: Session, actor_user: ActorUser, task_id: uuid.UUID) -> None:
        task = self._get_task(session, task_id)
        ensure_can_modify(actor_user, "task", task.created_by, task.assigned_to)

        before = TaskRead.model_validate(task).model_dump(mode="json")
        with unit_of_work(session):
            session.delete(task)

        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            action=AuditAction.TASK_DELETE,
            entity_type=AuditEntityType.TASK,
            entity_id=task_id,
            old_values=before,
        )

    def _get_task(self, session: Session, task_id: uuid.UUID) -> Task:
        task = session.get(Task, task_id)
        if task is None:
            raise _not_found("task")
        return task


class NoteService:
    """Notes are immutable once written: there is no update or delete."""

    def create_note(self, session: Session, actor_user: ActorUser, dto: NoteCreate) -> NoteRead:
        _ensure_links_exist(session, lead_id=dto.lead_id, contact_id=dto.contact_id, deal_id=dto.deal_id)
        with unit_of_work(session):
            note = Note(**dto.model_dump(), created_by=actor_user.user_id)
            session.add(note)

        result = NoteRead.model_validate(note)
        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            action=AuditAction.NOTE_CREATE,
            entity_type=AuditEntityType.NOTE,
            entity_id=result.id,
            new_values=result.model_dump(mode="json"),
        )
        return result

    def list_notes(
        self,
        session: Session,
        actor_user: ActorUser,
        filters: dict[str, Any],
        limit: int = 100,
        offset: int = 0,
    ) -> list[NoteRead]:
        stmt: Select[tuple[Note]] = _apply_link_filters(select(Note), Note, filters)
        notes = session.scalars(stmt.order_by(Note.created_at.desc()).offset(offset).limit(limit)).all()
        return [NoteRead.model_validate(item) for item in notes]


class CommunicationService:
    def create_communication(self, session: Session, actor_user: ActorUser, dto: CommunicationCreate) -> CommunicationRead:
        _ensure_links_exist(session, lead_id=dto.lead_id, contact_id=dto.contact_id, deal_id=dto.deal_id)
        with unit_of_work(session):
            communication = Communication(**dto.model_dump(), created_by=actor_user.user_id)
            session.add(communication)

        result = CommunicationRead.model_validate(communication)
        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            action=AuditAction.COMMUNICATION_CREATE,
            entity_type=AuditEntityType.COMMUNICATION,
            entity_id=result.id,
            new_values=result.model_dump(mode="json"),
        )
        return result

    def list_communications(
        self,
        session: Session,
        actor_user: ActorUser,
        filters: dict[str, Any],
        limit: int = 100,
        offset: int = 0,
    ) -> list[CommunicationRead]:
        stmt: Select[tuple[Communication]] = _apply_link_filters(select(Communication), Communication, filters)
        if filters.get("communication_type"):
            stmt = stmt.where(Communication.communication_type == filters["communication_type"])
        rows = session.scalars(stmt.order_by(Communication.created_at.desc()).offset(offset).limit(limit)).all()
        return [CommunicationRead.model_validate(item) for item in rows]

    def update_communication(
        self,
        session: Session,
        actor_user: ActorUser,
        communication_id: uuid.UUID,
        dto: CommunicationUpdate,
    ) -> CommunicationRead:
        communication = self._get_communication(session, communication_id)
        ensure_can_modify(actor_user, "communication", communication.created_by)

        payload = dto.model_dump(exclude_unset=True)
        for required in ("communication_type", "direction"):
            if required in payload and payload[required] is None:
                payload.pop(required)

        before = CommunicationRead.model_validate(communication).model_dump(mode="json")
        with unit_of_work(session):
            for field_name, value in payload.items():
                setattr(communication, field_name, value)

        result = CommunicationRead.model_validate(communication)
        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            action=AuditAction.COMMUNICATION_UPDATE,
            entity_type=AuditEntityType.COMMUNICATION,
            entity_id=communication_id,
            old_values=before,
            new_values=result.model_dump(mode="json"),
        )
        return result

    def delete_communication(self, session: Session, actor_user: ActorUser, communication_id: uuid.UUID) -> None:
        communication = self._get_communication(session, communication_id)
        ensure_can_modify(actor_user, "communication", communication.created_by)

        before = CommunicationRead.model_validate(communication).model_dump(mode="json")
        with unit_of_work(session):
            session.delete(communication)

        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            action=AuditAction.COMMUNICATION_DELETE,
            entity_type=AuditEntityType.COMMUNICATION,
            entity_id=communication_id,
            old_values=before,
        )

    def _get_communication(self, session: Session, communication_id: uuid.UUID) -> Communication:
        communication = session.get(Communication, communication_id)
        if communication is None:
            raise _not_found("communication")
        return communication


class DocumentService:
    logger = logging.getLogger("crm_api.crm.documents")

    def upload_document(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        filename: str,
        content: bytes,
        mime_type: str | None,
        lead_id: uuid.UUID | None = None,
        contact_id: uuid.UUID | None = None,
        deal_id: uuid.UUID | None = None,
    ) -> DocumentRead:
        links = {"lead": lead_id, "contact": contact_id, "deal": deal_id}
        linked = [(entity_type, entity_id) for entity_type, entity_id in links.items() if entity_id is not None]
        if len(linked) != 1:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="document must be linked to exactly one of lead, contact or deal",
            )
        max_bytes = get_settings().max_document_bytes
        if len(content) > max_bytes:
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail={"message": "document too large", "max_bytes": max_bytes},
            )
        _ensure_links_exist(session, lead_id=lead_id, contact_id=contact_id, deal_id=deal_id)

        entity_type, entity_id = linked[0]
        storage_path = files.store_bytes(content, files.build_storage_path(entity_type, entity_id, filename))
        try:
            with unit_of_work(session):
                document = Document(
                    name=filename or "file.bin",
                    storage_path=storage_path,
                    file_size=len(content),
                    mime_type=mime_type,
                    lead_id=lead_id,
                    contact_id=contact_id,
                    deal_id=deal_id,
                    uploaded_by=actor_user.user_id,
                )
                session.add(document)
        except Exception:
            files.delete(storage_path)
            raise

        result = DocumentRead.model_validate(document)
        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            action=AuditAction.DOCUMENT_UPLOAD,
            entity_type=AuditEntityType.DOCUMENT,
            entity_id=result.id,
            new_values=result.model_dump(mode="json"),
        )
        self.logger.info(
            "document_uploaded",
            extra={"entity_type": "document", "entity_id": str(result.id), "actor_user_id": str(actor_user.user_id)},
        )
        return result

    def list_documents(
        self,
        session: Session,
        actor_user: ActorUser,
        filters: dict[str, Any],
        limit: int = 100,
        offset: int = 0,
    ) -> list[DocumentRead]:
        stmt: Select[tuple[Document]] = _apply_link_filters(select(Document), Document, filters)
        rows = session.scalars(stmt.order_by(Document.created_at.desc()).offset(offset).limit(limit)).all()
        return [DocumentRead.model_validate(item) for item in rows]

    def get_signed_url(self, session: Session, actor_user: ActorUser, document_id: uuid.UUID) -> DocumentUrlRead:
        document = self._get_document(session, document_id)
        url, expires_at = files.create_signed_url(document.storage_path)
        return DocumentUrlRead(url=url, expires_at=expires_at)

    def download(self, session: Session, token: str) -> tuple[Document, bytes]:
        try:
            storage_path = files.verify_download_token(token)
        except files.InvalidDownloadTokenError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="invalid or expired download link") from exc
        document = session.scalar(select(Document).where(Document.storage_path == storage_path))
        if document is None:
            raise _not_found("document")
        try:
            content = files.get_bytes(storage_path)
        except FileNotFoundError as exc:
            raise _not_found("document") from exc
        return document, content

    def delete_document(self, session: Session, actor_user: ActorUser, document_id: uuid.UUID) -> None:
        document = self._get_document(session, document_id)
        ensure_can_modify(actor_user, "document", document.uploaded_by)

        before = DocumentRead.model_validate(document).model_dump(mode="json")
        storage_path = document.storage_path
        with unit_of_work(session):
            session.delete(document)

        try:
            files.delete(storage_path)
        except OSError as exc:
            self.logger.warning(
                "document_storage_delete_failed",
                extra={"entity_type": "document", "entity_id": str(document_id), "error": str(exc)[:500]},
            )
        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            action=AuditAction.DOCUMENT_DELETE,
            entity_type=AuditEntityType.DOCUMENT,
            entity_id=document_id,
            old_values=before,
        )

    def _get_document(self, session: Session, document_id: uuid.UUID) -> Document:
        document = session.get(Document, document_id)
        if document is None:
            raise _not_found("document")
        return document


class AuditService:
    def list_audit_logs(
        self,
        session: Session,
        actor_user: ActorUser,
        filters: dict[str, Any],
        limit: int = 100,
        offset: int = 0,
    ) -> list[AuditRead]:
        ensure_role(actor_user, Role.MANAGER)
        stmt: Select[tuple[AuditLog]] = select(AuditLog)
        for key in ("entity_type", "entity_id", "actor_id", "action"):
            if filters.get(key):
                stmt = stmt.where(getattr(AuditLog, key) == filters[key])
        rows = session.scalars(stmt.order_by(AuditLog.created_at.desc()).offset(offset).limit(limit)).all()
        return [AuditRead.model_validate(row) for row in rows]

    def list_for_entity(
        self,
        session: Session,
        actor_user: ActorUser,
        entity_type: str,
        entity_id: uuid.UUID,
        limit: int = 100,
    ) -> list[AuditRead]:
        ensure_role(actor_user, Role.MANAGER)
        rows = session.scalars(
            select(AuditLog)
            .where(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
            .order_by(AuditLog.created_at.desc())
            .limit(limit)
        ).all()
        return [AuditRead.model_validate(row) for row in rows]


lead_service = LeadService()
contact_service = ContactService()
deal_service = DealService()
activity_service = ActivityService()
task_service = TaskService()
note_service = NoteService()
communication_service = CommunicationService()
document_service = DocumentService()
audit_service = AuditService()
