from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from crm_api.crm.enums import (
    ActivityType,
    CommunicationDirection,
    CommunicationType,
    ContactPointType,
    DealStage,
    LeadSource,
    LeadStatus,
    TaskPriority,
    TaskStatus,
)


class ProfileSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    full_name: str | None
    email: str | None


class LeadCreate(BaseModel):
    name: str = Field(min_length=1)
    source: LeadSource
    owner_id: UUID | None = None
    phone: str | None = None
    email: EmailStr | None = None
    notes: str | None = None
    inquiry_date: datetime | None = None


class LeadUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1)
    source: LeadSource | None = None
    phone: str | None = None
    email: EmailStr | None = None
    notes: str | None = None
    inquiry_date: datetime | None = None


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    phone: str | None
    email: str | None
    source: LeadSource
    status: LeadStatus
    owner_id: UUID | None
    inquiry_date: datetime
    notes: str | None
    converted_to_contact_id: UUID | None
    owner: ProfileSummary | None = None
    created_by: UUID | None
    created_at: datetime
    updated_at: datetime


class LeadStatusChangeRequest(BaseModel):
    status: LeadStatus
    notes: str | None = None


class LeadStatusHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID
    old_status: LeadStatus | None
    new_status: LeadStatus
    changed_by: UUID | None
    changed_by_name: str | None = None
    notes: str | None
    changed_at: datetime


class ReassignRequest(BaseModel):
    owner_id: UUID


class ContactPhoneInput(BaseModel):
    phone: str = Field(min_length=1)
    phone_type: ContactPointType = ContactPointType.MOBILE
    is_primary: bool = False


class ContactEmailInput(BaseModel):
    email: EmailStr
    email_type: ContactPointType = ContactPointType.WORK
    is_primary: bool = False


class ContactPhoneRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    phone: str
    phone_type: ContactPointType
    is_primary: bool


class ContactEmailRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    email_type: ContactPointType
    is_primary: bool


class LeadConvertRequest(BaseModel):
    """Contact fields for conversion.

    Nothing is copied from the lead implicitly; callers pre-fill phones and emails
    from the lead's single phone and email when they want them carried over.
    """

    first_name: str = Field(min_length=1)
    last_name: str | None = None
    company: str | None = None
    job_title: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    country: str | None = None
    notes: str | None = None
    phones: list[ContactPhoneInput] = Field(default_factory=list)
    emails: list[ContactEmailInput] = Field(default_factory=list)


class ContactCreate(BaseModel):
    first_name: str = Field(min_length=1)
    last_name: str | None = None
    company: str | None = None
    job_title: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    country: str | None = None
    owner_id: UUID | None = None
    notes: str | None = None
    phones: list[ContactPhoneInput] = Field(default_factory=list)
    emails: list[ContactEmailInput] = Field(default_factory=list)


class ContactUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    first_name: str | None = Field(default=None, min_length=1)
    last_name: str | None = None
    company: str | None = None
    job_title: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    country: str | None = None
    notes: str | None = None
    phones: list[ContactPhoneInput] | None = None
    emails: list[ContactEmailInput] | None = None


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    first_name: str
    last_name: str | None
    company: str | None
    job_title: str | None
    address: str | None
    city: str | None
    state: str | None
    postal_code: str | None
    country: str | None
    lead_id: UUID | None
    owner_id: UUID | None
    notes: str | None
    phones: list[ContactPhoneRead] = Field(default_factory=list)
    emails: list[ContactEmailRead] = Field(default_factory=list)
    primary_phone: str | None = None
    primary_email: str | None = None
    owner: ProfileSummary | None = None
    created_by: UUID | None
    created_at: datetime
    updated_at: datetime


class LeadConvertResponse(BaseModel):
    lead: LeadRead
    contact: ContactRead


class DealCreate(BaseModel):
    name: str = Field(min_length=1)
    owner_id: UUID | None = None
    lead_id: UUID | None = None
    contact_id: UUID | None = None
    estimated_value: Decimal | None = Field(default=None, ge=0)
    confirmed_value: Decimal | None = Field(default=None, ge=0)
    expected_close_date: date | None = None
    notes: str | None = None


class DealUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1)
    lead_id: UUID | None = None
    contact_id: UUID | None = None
    estimated_value: Decimal | None = Field(default=None, ge=0)
    confirmed_value: Decimal | None = Field(default=None, ge=0)
    expected_close_date: date | None = None
    notes: str | None = None


class DealRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    lead_id: UUID | None
    contact_id: UUID | None
    owner_id: UUID | None
    stage: DealStage
    estimated_value: Decimal | None
    confirmed_value: Decimal | None
    display_value: Decimal | None = None
    expected_close_date: date | None
    actual_close_date: date | None
    notes: str | None
    owner: ProfileSummary | None = None
    created_by: UUID | None
    created_at: datetime
    updated_at: datetime


class DealStageChangeRequest(BaseModel):
    stage: DealStage
    notes: str | None = None


class DealStageHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    deal_id: UUID
    old_stage: DealStage | None
    new_stage: DealStage
    changed_by: UUID | None
    changed_by_name: str | None = None
    notes: str | None
    changed_at: datetime


class PipelineColumn(BaseModel):
    stage: DealStage
    deals: list[DealRead]
    count: int
    total_value: Decimal


class PipelineBoard(BaseModel):
    columns: list[PipelineColumn]


class ActivityCreate(BaseModel):
    activity_type: ActivityType
    description: str = Field(min_length=1)


class ActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID | None = None
    contact_id: UUID | None = None
    deal_id: UUID | None = None
    user_id: UUID | None
    user_name: str | None = None
    activity_type: ActivityType
    description: str
    created_at: datetime


class TaskCreate(BaseModel):
    title: str = Field(min_length=1)
    description: str | None = None
    priority: TaskPriority = TaskPriority.MEDIUM
    due_date: datetime | None = None
    reminder_at: datetime | None = None
    lead_id: UUID | None = None
    contact_id: UUID | None = None
    deal_id: UUID | None = None
    assigned_to: UUID | None = None


class TaskUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str | None = Field(default=None, min_length=1)
    description: str | None = None
    priority: TaskPriority | None = None
    due_date: datetime | None = None
    reminder_at: datetime | None = None
    lead_id: UUID | None = None
    contact_id: UUID | None = None
    deal_id: UUID | None = None
    assigned_to: UUID | None = None


class TaskStatusChangeRequest(BaseModel):
    status: TaskStatus


class TaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    description: str | None
    priority: TaskPriority
    status: TaskStatus
    due_date: datetime | None
    reminder_at: datetime | None
    lead_id: UUID | None
    contact_id: UUID | None
    deal_id: UUID | None
    assigned_to: UUID | None
    created_by: UUID | None
    completed_at: datetime | None
    completed_by: UUID | None
    created_at: datetime
    updated_at: datetime


class NoteCreate(BaseModel):
    content: str = Field(min_length=1)
    lead_id: UUID | None = None
    contact_id: UUID | None = None
    deal_id: UUID | None = None


class NoteRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    content: str
    lead_id: UUID | None
    contact_id: UUID | None
    deal_id: UUID | None
    created_by: UUID | None
    created_at: datetime


class CommunicationCreate(BaseModel):
    communication_type: CommunicationType
    direction: CommunicationDirection
    subject: str | None = None
    content: str | None = None
    duration_minutes: int | None = Field(default=None, ge=0)
    scheduled_at: datetime | None = None
    lead_id: UUID | None = None
    contact_id: UUID | None = None
    deal_id: UUID | None = None


class CommunicationUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    communication_type: CommunicationType | None = None
    direction: CommunicationDirection | None = None
    subject: str | None = None
    content: str | None = None
    duration_minutes: int | None = Field(default=None, ge=0)
    scheduled_at: datetime | None = None


class CommunicationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    communication_type: CommunicationType
    direction: CommunicationDirection
    subject: str | None
    content: str | None
    duration_minutes: int | None
    scheduled_at: datetime | None
    lead_id: UUID | None
    contact_id: UUID | None
    deal_id: UUID | None
    created_by: UUID | None
    created_at: datetime
    updated_at: datetime


class DocumentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    storage_path: str
    file_size: int
    mime_type: str | None
    lead_id: UUID | None
    contact_id: UUID | None
    deal_id: UUID | None
    uploaded_by: UUID | None
    created_at: datetime
    updated_at: datetime


class DocumentUrlRead(BaseModel):
    url: str
    expires_at: datetime


class AuditRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    actor_id: UUID | None
    action: str
    entity_type: str
    entity_id: UUID | None
    old_values: dict[str, Any] | None
    new_values: dict[str, Any] | None
    correlation_id: str | None
    created_at: datetime


class DailyCount(BaseModel):
    day: date
    count: int


class StageSummary(BaseModel):
    stage: DealStage
    count: int
    value: Decimal


class DashboardRead(BaseModel):
    total_leads: int
    total_contacts: int
    total_deals: int
    total_tasks: int
    leads_by_status: dict[str, int]
    leads_by_source: dict[str, int]
    deals_by_stage: list[StageSummary]
    conversion_rate: float
    total_pipeline_value: Decimal
    closed_won_value: Decimal
    pending_tasks: int
    overdue_tasks: int
    new_leads_last_7_days: list[DailyCount]
