from __future__ import annotations

from enum import StrEnum


class Role(StrEnum):
    ADMIN = "admin"
    MANAGER = "manager"
    USER = "user"


class ProfileStatus(StrEnum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class TeamRole(StrEnum):
    OWNER = "owner"
    MANAGER = "manager"
    MEMBER = "member"


class LeadSource(StrEnum):
    WEBSITE = "website"
    WHATSAPP = "whatsapp"
    INSTAGRAM = "instagram"
    REFERRAL = "referral"
    CALL = "call"
    EMAIL = "email"
    OTHER = "other"


class LeadStatus(StrEnum):
    NEW = "new"
    CONTACTED = "contacted"
    INTERESTED = "interested"
    CONVERTED = "converted"
    LOST = "lost"


class DealStage(StrEnum):
    INQUIRY = "inquiry"
    PROPOSAL = "proposal"
    NEGOTIATION = "negotiation"
    CLOSED_WON = "closed_won"
    CLOSED_LOST = "closed_lost"


CLOSED_DEAL_STAGES = frozenset({DealStage.CLOSED_WON, DealStage.CLOSED_LOST})


class TaskPriority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class TaskStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


OPEN_TASK_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.IN_PROGRESS})


class CommunicationType(StrEnum):
    CALL = "call"
    EMAIL = "email"
    MEETING = "meeting"
    WHATSAPP = "whatsapp"
    CHAT = "chat"
    OTHER = "other"


class CommunicationDirection(StrEnum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class ContactPointType(StrEnum):
    MOBILE = "mobile"
    WORK = "work"
    HOME = "home"
    OTHER = "other"


class ActivityType(StrEnum):
    CALL = "call"
    EMAIL = "email"
    MEETING = "meeting"
    FOLLOW_UP = "follow_up"
    NOTE = "note"
    OTHER = "other"


class AuditEntityType(StrEnum):
    USER = "user"
    PROFILE = "profile"
    TEAM = "team"
    TEAM_MEMBER = "team_member"
    LEAD = "lead"
    CONTACT = "contact"
    DEAL = "deal"
    TASK = "task"
    NOTE = "note"
    COMMUNICATION = "communication"
    DOCUMENT = "document"


class AuditAction(StrEnum):
    USER_SIGNUP = "user.signup"
    USER_UPDATE_PROFILE = "user.update_profile"
    USER_UPDATE_ROLE = "user.update_role"
    USER_UPDATE_STATUS = "user.update_status"
    TEAM_CREATE = "team.create"
    TEAM_UPDATE = "team.update"
    TEAM_DELETE = "team.delete"
    TEAM_ADD_MEMBER = "team.add_member"
    TEAM_REMOVE_MEMBER = "team.remove_member"
    TEAM_UPDATE_MEMBER_ROLE = "team.update_member_role"
    LEAD_CREATE = "lead.create"
    LEAD_UPDATE = "lead.update"
    LEAD_STATUS_CHANGE = "lead.status_change"
    LEAD_REASSIGN = "lead.reassign"
    LEAD_CONVERT = "lead.convert"
    CONTACT_CREATE = "contact.create"
    CONTACT_UPDATE = "contact.update"
    CONTACT_DELETE = "contact.delete"
    DEAL_CREATE = "deal.create"
    DEAL_UPDATE = "deal.update"
    DEAL_STAGE_CHANGE = "deal.stage_change"
    TASK_CREATE = "task.create"
    TASK_UPDATE = "task.update"
    TASK_STATUS_CHANGE = "task.status_change"
    TASK_DELETE = "task.delete"
    NOTE_CREATE = "note.create"
    COMMUNICATION_CREATE = "communication.create"
    COMMUNICATION_UPDATE = "communication.update"
    COMMUNICATION_DELETE = "communication.delete"
    DOCUMENT_UPLOAD = "document.upload"
    DOCUMENT_DELETE = "document.delete"
