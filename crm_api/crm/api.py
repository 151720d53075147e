from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from crm_api import files
from crm_api.authz.context import ActorUser
from crm_api.authz.dependencies import get_current_user
from crm_api.context import get_correlation_id
from crm_api.core.config import get_settings
from crm_api.core.database import get_db
from crm_api.crm.analytics import build_dashboard, build_pipeline
from crm_api.crm.enums import CommunicationType, DealStage, LeadSource, LeadStatus, TaskStatus
from crm_api.crm.schemas import (
    ActivityCreate,
    ActivityRead,
    AuditRead,
    CommunicationCreate,
    CommunicationRead,
    CommunicationUpdate,
    ContactCreate,
    ContactRead,
    ContactUpdate,
    DashboardRead,
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
    PipelineBoard,
    ReassignRequest,
    TaskCreate,
    TaskRead,
    TaskStatusChangeRequest,
    TaskUpdate,
)
from crm_api.crm.service import (
    activity_service,
    audit_service,
    communication_service,
    contact_service,
    deal_service,
    document_service,
    lead_service,
    note_service,
    task_service,
)

leads_router = APIRouter(prefix="/api/crm", tags=["crm.leads"])
contacts_router = APIRouter(prefix="/api/crm", tags=["crm.contacts"])
deals_router = APIRouter(prefix="/api/crm", tags=["crm.deals"])
tasks_router = APIRouter(prefix="/api/crm", tags=["crm.tasks"])
notes_router = APIRouter(prefix="/api/crm", tags=["crm.notes"])
communications_router = APIRouter(prefix="/api/crm", tags=["crm.communications"])
documents_router = APIRouter(prefix="/api/crm", tags=["crm.documents"])
audit_router = APIRouter(prefix="/api/crm", tags=["crm.audit"])
dashboard_router = APIRouter(prefix="/api/crm", tags=["crm.dashboard"])


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
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def http_error_response(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    detail = exc.detail
    message = detail.get("message", code) if isinstance(detail, dict) else str(detail)
    return error_response(request, status_code=exc.status_code, code=code, message=message, details=detail)


@leads_router.post("/leads", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.create_lead(db, user, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_lead_create_failed")


@leads_router.get("/leads", response_model=list[LeadRead])
def list_leads(
    request: Request,
    status_filter: LeadStatus | None = Query(default=None, alias="status"),
    source: LeadSource | None = Query(default=None),
    owner_id: uuid.UUID | None = Query(default=None),
    q: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadRead] | JSONResponse:
    try:
        return lead_service.list_leads(
            db,
            user,
            filters={"status": status_filter, "source": source, "owner_id": owner_id, "q": q},
            limit=limit,
            offset=offset,
        )
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_lead_list_failed")


@leads_router.get("/leads/{lead_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.get_lead(db, user, lead_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_lead_get_failed")


@leads_router.patch("/leads/{lead_id}", response_model=LeadRead)
def patch_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.update_lead(db, user, lead_id, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_lead_update_failed")


@leads_router.post("/leads/{lead_id}/status", response_model=LeadRead)
def change_lead_status(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadStatusChangeRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.change_status(db, user, lead_id, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_lead_status_change_failed")


@leads_router.post("/leads/{lead_id}/reassign", response_model=LeadRead)
def reassign_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: ReassignRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.reassign_lead(db, user, lead_id, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_lead_reassign_failed")


@leads_router.post("/leads/{lead_id}/convert", response_model=LeadConvertResponse)
def convert_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadConvertRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadConvertResponse | JSONResponse:
    try:
        return lead_service.convert_lead(db, user, lead_id, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_lead_convert_failed")


@leads_router.get("/leads/{lead_id}/status-history", response_model=list[LeadStatusHistoryRead])
def list_lead_status_history(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadStatusHistoryRead] | JSONResponse:
    try:
        return lead_service.list_status_history(db, user, lead_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_lead_history_failed")


@leads_router.get("/leads/{lead_id}/activities", response_model=list[ActivityRead])
def list_lead_activities(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ActivityRead] | JSONResponse:
    try:
        return activity_service.list_activities(db, user, "lead", lead_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_activity_list_failed")


@leads_router.post("/leads/{lead_id}/activities", response_model=ActivityRead, status_code=status.HTTP_201_CREATED)
def create_lead_activity(
    request: Request,
    lead_id: uuid.UUID,
    dto: ActivityCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ActivityRead | JSONResponse:
    try:
        return activity_service.add_activity(db, user, "lead", lead_id, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_activity_create_failed")


@contacts_router.post("/contacts", response_model=ContactRead, status_code=status.HTTP_201_CREATED)
def create_contact(
    request: Request,
    dto: ContactCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        return contact_service.create_contact(db, user, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_contact_create_failed")


@contacts_router.get("/contacts", response_model=list[ContactRead])
def list_contacts(
    request: Request,
    owner_id: uuid.UUID | None = Query(default=None),
    lead_id: uuid.UUID | None = Query(default=None),
    q: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ContactRead] | JSONResponse:
    try:
        return contact_service.list_contacts(
            db,
            user,
            filters={"owner_id": owner_id, "lead_id": lead_id, "q": q},
            limit=limit,
            offset=offset,
        )
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_contact_list_failed")


@contacts_router.get("/contacts/{contact_id}", response_model=ContactRead)
def get_contact(
    request: Request,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        return contact_service.get_contact(db, user, contact_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_contact_get_failed")


@contacts_router.patch("/contacts/{contact_id}", response_model=ContactRead)
def patch_contact(
    request: Request,
    contact_id: uuid.UUID,
    dto: ContactUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        return contact_service.update_contact(db, user, contact_id, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_contact_update_failed")


@contacts_router.delete("/contacts/{contact_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_contact(
    request: Request,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        contact_service.delete_contact(db, user, contact_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_contact_delete_failed")


@contacts_router.get("/contacts/{contact_id}/activities", response_model=list[ActivityRead])
def list_contact_activities(
    request: Request,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ActivityRead] | JSONResponse:
    try:
        return activity_service.list_activities(db, user, "contact", contact_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_activity_list_failed")


@contacts_router.post(
    "/contacts/{contact_id}/activities",
    response_model=ActivityRead,
    status_code=status.HTTP_201_CREATED,
)
def create_contact_activity(
    request: Request,
    contact_id: uuid.UUID,
    dto: ActivityCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ActivityRead | JSONResponse:
    try:
        return activity_service.add_activity(db, user, "contact", contact_id, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_activity_create_failed")


@deals_router.get("/deals/pipeline", response_model=PipelineBoard)
def get_pipeline(
    request: Request,
    owner_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineBoard | JSONResponse:
    try:
        return build_pipeline(db, user, owner_id=owner_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_pipeline_failed")


@deals_router.post("/deals", response_model=DealRead, status_code=status.HTTP_201_CREATED)
def create_deal(
    request: Request,
    dto: DealCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        return deal_service.create_deal(db, user, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_deal_create_failed")


@deals_router.get("/deals", response_model=list[DealRead])
def list_deals(
    request: Request,
    stage: DealStage | None = Query(default=None),
    owner_id: uuid.UUID | None = Query(default=None),
    contact_id: uuid.UUID | None = Query(default=None),
    lead_id: uuid.UUID | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[DealRead] | JSONResponse:
    try:
        return deal_service.list_deals(
            db,
            user,
            filters={"stage": stage, "owner_id": owner_id, "contact_id": contact_id, "lead_id": lead_id},
            limit=limit,
            offset=offset,
        )
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_deal_list_failed")


@deals_router.get("/deals/{deal_id}", response_model=DealRead)
def get_deal(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        return deal_service.get_deal(db, user, deal_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_deal_get_failed")


@deals_router.patch("/deals/{deal_id}", response_model=DealRead)
def patch_deal(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        return deal_service.update_deal(db, user, deal_id, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_deal_update_failed")


@deals_router.post("/deals/{deal_id}/stage", response_model=DealRead)
def change_deal_stage(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealStageChangeRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        return deal_service.change_stage(db, user, deal_id, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_deal_stage_change_failed")


@deals_router.post("/deals/{deal_id}/reassign", response_model=DealRead)
def reassign_deal(
    request: Request,
    deal_id: uuid.UUID,
    dto: ReassignRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        return deal_service.reassign_deal(db, user, deal_id, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_deal_reassign_failed")


@deals_router.get("/deals/{deal_id}/stage-history", response_model=list[DealStageHistoryRead])
def list_deal_stage_history(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[DealStageHistoryRead] | JSONResponse:
    try:
        return deal_service.list_stage_history(db, user, deal_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_deal_history_failed")


@deals_router.get("/deals/{deal_id}/activities", response_model=list[ActivityRead])
def list_deal_activities(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ActivityRead] | JSONResponse:
    try:
        return activity_service.list_activities(db, user, "deal", deal_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_activity_list_failed")


@deals_router.post("/deals/{deal_id}/activities", response_model=ActivityRead, status_code=status.HTTP_201_CREATED)
def create_deal_activity(
    request: Request,
    deal_id: uuid.UUID,
    dto: ActivityCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ActivityRead | JSONResponse:
    try:
        return activity_service.add_activity(db, user, "deal", deal_id, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_activity_create_failed")


@tasks_router.post("/tasks", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
def create_task(
    request: Request,
    dto: TaskCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        return task_service.create_task(db, user, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_task_create_failed")


@tasks_router.get("/tasks", response_model=list[TaskRead])
def list_tasks(
    request: Request,
    lead_id: uuid.UUID | None = Query(default=None),
    contact_id: uuid.UUID | None = Query(default=None),
    deal_id: uuid.UUID | None = Query(default=None),
    status_filter: TaskStatus | None = Query(default=None, alias="status"),
    assigned_to: uuid.UUID | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[TaskRead] | JSONResponse:
    try:
        return task_service.list_tasks(
            db,
            user,
            filters={
                "lead_id": lead_id,
                "contact_id": contact_id,
                "deal_id": deal_id,
                "status": status_filter,
                "assigned_to": assigned_to,
            },
            limit=limit,
            offset=offset,
        )
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_task_list_failed")


@tasks_router.patch("/tasks/{task_id}", response_model=TaskRead)
def patch_task(
    request: Request,
    task_id: uuid.UUID,
    dto: TaskUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        return task_service.update_task(db, user, task_id, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_task_update_failed")


@tasks_router.post("/tasks/{task_id}/status", response_model=TaskRead)
def change_task_status(
    request: Request,
    task_id: uuid.UUID,
    dto: TaskStatusChangeRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        return task_service.change_status(db, user, task_id, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_task_status_change_failed")


@tasks_router.delete("/tasks/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_task(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        task_service.delete_task(db, user, task_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_task_delete_failed")


@notes_router.post("/notes", response_model=NoteRead, status_code=status.HTTP_201_CREATED)
def create_note(
    request: Request,
    dto: NoteCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> NoteRead | JSONResponse:
    try:
        return note_service.create_note(db, user, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_note_create_failed")


@notes_router.get("/notes", response_model=list[NoteRead])
def list_notes(
    request: Request,
    lead_id: uuid.UUID | None = Query(default=None),
    contact_id: uuid.UUID | None = Query(default=None),
    deal_id: uuid.UUID | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[NoteRead] | JSONResponse:
    try:
        return note_service.list_notes(
            db,
            user,
            filters={"lead_id": lead_id, "contact_id": contact_id, "deal_id": deal_id},
            limit=limit,
            offset=offset,
        )
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_note_list_failed")


@communications_router.post("/communications", response_model=CommunicationRead, status_code=status.HTTP_201_CREATED)
def create_communication(
    request: Request,
    dto: CommunicationCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CommunicationRead | JSONResponse:
    try:
        return communication_service.create_communication(db, user, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_communication_create_failed")


@communications_router.get("/communications", response_model=list[CommunicationRead])
def list_communications(
    request: Request,
    lead_id: uuid.UUID | None = Query(default=None),
    contact_id: uuid.UUID | None = Query(default=None),
    deal_id: uuid.UUID | None = Query(default=None),
    communication_type: CommunicationType | None = Query(default=None, alias="type"),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[CommunicationRead] | JSONResponse:
    try:
        return communication_service.list_communications(
            db,
            user,
            filters={
                "lead_id": lead_id,
                "contact_id": contact_id,
                "deal_id": deal_id,
                "communication_type": communication_type,
            },
            limit=limit,
            offset=offset,
        )
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_communication_list_failed")


@communications_router.patch("/communications/{communication_id}", response_model=CommunicationRead)
def patch_communication(
    request: Request,
    communication_id: uuid.UUID,
    dto: CommunicationUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CommunicationRead | JSONResponse:
    try:
        return communication_service.update_communication(db, user, communication_id, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_communication_update_failed")


@communications_router.delete("/communications/{communication_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_communication(
    request: Request,
    communication_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        communication_service.delete_communication(db, user, communication_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_communication_delete_failed")


@documents_router.get("/documents/download")
def download_document(
    request: Request,
    token: str = Query(...),
    db: Session = Depends(get_db),
) -> Response:
    try:
        document, content = document_service.download(db, token)
        return Response(
            content=content,
            media_type=document.mime_type or "application/octet-stream",
            headers={"Content-Disposition": files.content_disposition(document.name)},
        )
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_document_download_failed")


@documents_router.post("/documents", response_model=DocumentRead, status_code=status.HTTP_201_CREATED)
def upload_document(
    request: Request,
    file: UploadFile = File(...),
    lead_id: uuid.UUID | None = Form(default=None),
    contact_id: uuid.UUID | None = Form(default=None),
    deal_id: uuid.UUID | None = Form(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DocumentRead | JSONResponse:
    try:
        content = file.file.read(get_settings().max_document_bytes + 1)
        return document_service.upload_document(
            db,
            user,
            filename=file.filename or "file.bin",
            content=content,
            mime_type=file.content_type,
            lead_id=lead_id,
            contact_id=contact_id,
            deal_id=deal_id,
        )
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_document_upload_failed")


@documents_router.get("/documents", response_model=list[DocumentRead])
def list_documents(
    request: Request,
    lead_id: uuid.UUID | None = Query(default=None),
    contact_id: uuid.UUID | None = Query(default=None),
    deal_id: uuid.UUID | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[DocumentRead] | JSONResponse:
    try:
        return document_service.list_documents(
            db,
            user,
            filters={"lead_id": lead_id, "contact_id": contact_id, "deal_id": deal_id},
            limit=limit,
            offset=offset,
        )
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_document_list_failed")


@documents_router.get("/documents/{document_id}/url", response_model=DocumentUrlRead)
def get_document_url(
    request: Request,
    document_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DocumentUrlRead | JSONResponse:
    try:
        return document_service.get_signed_url(db, user, document_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_document_url_failed")


@documents_router.delete("/documents/{document_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_document(
    request: Request,
    document_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        document_service.delete_document(db, user, document_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_document_delete_failed")


@audit_router.get("/audit-logs", response_model=list[AuditRead])
def list_audit_logs(
    request: Request,
    entity_type: str | None = Query(default=None),
    entity_id: uuid.UUID | None = Query(default=None),
    actor_id: uuid.UUID | None = Query(default=None),
    action: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AuditRead] | JSONResponse:
    try:
        return audit_service.list_audit_logs(
            db,
            user,
            filters={"entity_type": entity_type, "entity_id": entity_id, "actor_id": actor_id, "action": action},
            limit=limit,
            offset=offset,
        )
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_audit_list_failed")


@audit_router.get("/audit-logs/{entity_type}/{entity_id}", response_model=list[AuditRead])
def list_entity_audit_logs(
    request: Request,
    entity_type: str,
    entity_id: uuid.UUID,
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AuditRead] | JSONResponse:
    try:
        return audit_service.list_for_entity(db, user, entity_type, entity_id, limit=limit)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_audit_list_failed")


@dashboard_router.get("/dashboard", response_model=DashboardRead)
def get_dashboard(
    request: Request,
    created_from: datetime | None = Query(default=None),
    created_to: datetime | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DashboardRead | JSONResponse:
    try:
        return build_dashboard(db, user, created_from=created_from, created_to=created_to)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_dashboard_failed")


routers = [
    leads_router,
    contacts_router,
    deals_router,
    tasks_router,
    notes_router,
    communications_router,
    documents_router,
    audit_router,
    dashboard_router,
]
