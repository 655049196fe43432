"""
Database Schemas for the Event Proposal Intake service

Each Pydantic model corresponds to a MongoDB collection and is used to
validate documents before they are written. Python attributes are
snake_case; stored documents use the camelCase aliases.
Use these for validation and to power the database viewer via GET /schema.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

DraftStatus = Literal["draft", "submitted"]
ProposalStatus = Literal["draft", "pending", "approved", "rejected"]
Category = Literal[
    "education", "health", "environment", "community", "technology", "other",
    "school-event", "community-event",
]
EventType = Literal["academic", "workshop", "seminar", "assembly", "leadership", "other"]
EventMode = Literal["offline", "online", "hybrid"]
ProposalOrganizationType = Literal["internal", "external", "school-based", "community-based"]
OrganizationType = Literal["school-based", "community-based"]
Priority = Literal["low", "medium", "high"]
Decision = Literal["approve", "reject", "revise"]
DocumentType = Literal["gpoa", "proposal", "accomplishment", "other"]
FileType = Literal["gpoa", "proposal", "accomplishment", "attendance", "other"]
ComplianceStatus = Literal["not_applicable", "pending", "compliant", "overdue"]
ReportStatus = Literal["draft", "pending", "approved", "denied"]
AuditAction = Literal["upload", "delete", "replace", "view", "download"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------- Drafts ----------

class Draft(CamelModel):
    draft_id: str = Field(..., description="Generated unique key, immutable")
    status: DraftStatus = "draft"
    form_data: Dict[str, Any] = Field(default_factory=dict, alias="form_data",
                                      description="Section name -> section payload")
    created_at: datetime
    updated_at: datetime
    submitted_at: Optional[datetime] = None


# ---------- Proposals ----------

class EventDetails(CamelModel):
    time_start: Optional[str] = Field(None, description="e.g. 09:00")
    time_end: Optional[str] = None
    event_type: Optional[EventType] = None
    event_mode: Optional[EventMode] = None
    return_service_credit: Optional[float] = None
    target_audience: List[str] = Field(default_factory=list)
    organization_id: Optional[str] = None


class ReviewComment(CamelModel):
    reviewer: str
    comment: str = Field("", max_length=500)
    decision: Decision
    created_at: datetime


class ProposalDocument(CamelModel):
    name: str = Field(..., max_length=255)
    path: str = Field(..., max_length=500)
    mimetype: Optional[str] = None
    size: Optional[int] = Field(None, ge=0)
    type: DocumentType = "other"
    uploaded_at: datetime


class ComplianceDocument(CamelModel):
    name: str = Field(..., max_length=255)
    path: Optional[str] = Field(None, max_length=500)
    required: bool = False
    submitted: bool = False
    submitted_at: Optional[datetime] = None


class ProposalCreate(CamelModel):
    title: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1, max_length=2000)
    category: Category
    start_date: datetime
    end_date: datetime
    location: str = Field(..., min_length=1, max_length=255)
    event_details: Optional[EventDetails] = None
    budget: float = Field(0, ge=0)
    objectives: Optional[str] = Field(None, max_length=1000)
    volunteers_needed: int = Field(0, ge=0)
    submitter: str = Field(..., min_length=1)
    organization_type: Optional[ProposalOrganizationType] = None
    contact_person: Optional[str] = Field(None, max_length=255)
    contact_email: Optional[EmailStr] = None
    contact_phone: Optional[str] = Field(None, max_length=20)
    status: Literal["draft", "pending"] = "pending"
    priority: Priority = "medium"
    assigned_to: Optional[str] = None

    @field_validator("start_date", "end_date")
    @classmethod
    def naive_dates_are_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @model_validator(mode="after")
    def check_dates(self):
        if self.end_date < self.start_date:
            raise ValueError("End date cannot be before start date")
        return self


class Proposal(ProposalCreate):
    status: ProposalStatus = "pending"
    draft_id: Optional[str] = None
    admin_comments: Optional[str] = Field(None, max_length=1000)
    review_comments: List[ReviewComment] = Field(default_factory=list)
    documents: List[ProposalDocument] = Field(default_factory=list)
    compliance_status: ComplianceStatus = "not_applicable"
    compliance_due_date: Optional[datetime] = None
    compliance_documents: List[ComplianceDocument] = Field(default_factory=list)
    submitted_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None


# ---------- Organizations ----------

class Organization(CamelModel):
    name: str = Field(..., min_length=1, max_length=255, description="Natural unique key")
    description: Optional[str] = Field(None, max_length=1000)
    organization_type: OrganizationType
    contact_person: str = Field(..., max_length=255)
    contact_email: EmailStr
    contact_phone: Optional[str] = Field(None, max_length=20)
    is_active: bool = True


# ---------- Accomplishment reports ----------

class FinancialSummary(CamelModel):
    budget_allocated: Optional[float] = Field(None, ge=0)
    actual_expenses: Optional[float] = Field(None, ge=0)
    variance: Optional[float] = Field(None, description="Caller supplied, never recomputed")


class ReportData(CamelModel):
    event_summary: Optional[str] = Field(None, max_length=2000)
    actual_attendance: Optional[int] = Field(None, ge=0)
    objectives: List[str] = Field(default_factory=list)
    outcomes: List[str] = Field(default_factory=list)
    challenges: Optional[str] = Field(None, max_length=1000)
    recommendations: Optional[str] = Field(None, max_length=1000)
    financial_summary: Optional[FinancialSummary] = None


class AccomplishmentReport(CamelModel):
    proposal_id: str = Field(..., description="One report per proposal")
    status: ReportStatus = "draft"
    report_data: ReportData = Field(default_factory=ReportData)
    submitted_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    admin_comments: Optional[str] = Field(None, max_length=1000)


# ---------- Files ----------

class FileMetadata(CamelModel):
    proposal_id: str
    uploaded_by: str
    file_type: FileType = "other"
    original_name: str = Field(..., max_length=255)
    path: Optional[str] = Field(None, max_length=500)
    mimetype: Optional[str] = None
    size: Optional[int] = Field(None, ge=0)
    blob_id: Optional[str] = Field(None, description="Key in the external blob store")
    organization_id: Optional[str] = None
    section: Optional[str] = None
    purpose: Optional[str] = Field(None, max_length=255)
    is_deleted: bool = False
    uploaded_at: datetime


class FileUploadAudit(CamelModel):
    proposal_id: str
    uploaded_by: str
    action: AuditAction
    file_info: Dict[str, Any] = Field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: datetime

# Note: The database viewer will fetch these via GET /schema
