from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class AtsProvider(str, Enum):
    workday = "workday"
    greenhouse = "greenhouse"
    lever = "lever"
    bamboohr = "bamboohr"
    successfactors = "successfactors"
    taleo = "taleo"
    icims = "icims"
    jazz = "jazz"
    bullhorn = "bullhorn"
    jobvite = "jobvite"


PROVIDER_DISPLAY_NAMES = {
    AtsProvider.workday: "Workday",
    AtsProvider.greenhouse: "Greenhouse",
    AtsProvider.lever: "Lever",
    AtsProvider.bamboohr: "BambooHR",
    AtsProvider.successfactors: "SAP SuccessFactors",
    AtsProvider.taleo: "Oracle Taleo",
    AtsProvider.icims: "iCIMS",
    AtsProvider.jazz: "JazzHR",
    AtsProvider.bullhorn: "Bullhorn",
    AtsProvider.jobvite: "Jobvite",
}


class WebhookEventType(str, Enum):
    job_created = "job_created"
    job_updated = "job_updated"
    application_submitted = "application_submitted"
    application_updated = "application_updated"
    candidate_created = "candidate_created"
    candidate_updated = "candidate_updated"
    interview_scheduled = "interview_scheduled"
    offer_extended = "offer_extended"
    hire_completed = "hire_completed"
    unknown = "unknown"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "WebhookEventType":
        value = (raw or "").strip().lower()
        try:
            return cls(value)
        except ValueError:
            return cls.unknown

    @property
    def display_name(self) -> str:
        return self.value.replace("_", " ").title()


class WebhookStatus(str, Enum):
    pending = "pending"
    processed = "processed"
    failed = "failed"


class DispatchOutcome(str, Enum):
    applied = "applied"
    entity_not_found = "entity_not_found"
    ignored = "ignored"


class ApplicationStatus(str, Enum):
    new = "new"
    screening = "screening"
    interview = "interview"
    assessment = "assessment"
    offer = "offer"
    hired = "hired"
    rejected = "rejected"
    withdrawn = "withdrawn"


class SyncLogStatus(str, Enum):
    completed = "completed"
    failed = "failed"


class ConnectionCreateRequest(BaseModel):
    name: str = Field(min_length=2, max_length=120)
    provider: AtsProvider
    api_endpoint: str = Field(min_length=8, max_length=500)
    credentials: dict[str, Any] = Field(default_factory=dict)
    configuration: dict[str, Any] = Field(default_factory=dict)
    field_mapping: dict[str, str] = Field(default_factory=dict)
    is_active: bool = True


class ConnectionRecord(BaseModel):
    id: int
    name: str
    provider: AtsProvider
    api_endpoint: str
    credentials: dict[str, Any] = Field(default_factory=dict)
    configuration: dict[str, Any] = Field(default_factory=dict)
    field_mapping: dict[str, str] = Field(default_factory=dict)
    is_active: bool = True
    last_synced_at_utc: Optional[datetime] = None
    next_eligible_at_utc: Optional[datetime] = None
    sync_stats: dict[str, Any] = Field(default_factory=dict)
    created_at_utc: datetime
    updated_at_utc: datetime

    @property
    def provider_display_name(self) -> str:
        return PROVIDER_DISPLAY_NAMES.get(self.provider, self.provider.value.title())


class ConnectionItem(BaseModel):
    connection_id: int
    name: str
    provider: AtsProvider
    provider_display_name: str
    is_active: bool
    can_sync: bool
    last_synced_at_utc: Optional[datetime]
    next_eligible_at_utc: Optional[datetime]
    sync_stats: dict[str, Any]


class WebhookRecord(BaseModel):
    id: int
    connection_id: int
    external_webhook_id: str
    event_type: WebhookEventType
    raw_event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    status: WebhookStatus = WebhookStatus.pending
    retry_count: int = Field(default=0, ge=0)
    last_error: Optional[str] = None
    outcome: Optional[DispatchOutcome] = None
    received_at_utc: datetime
    processed_at_utc: Optional[datetime] = None
    next_attempt_utc: Optional[datetime] = None
    claimed_by: Optional[str] = None
    lease_expires_utc: Optional[datetime] = None
    updated_at_utc: datetime


class WebhookIngestResponse(BaseModel):
    status: str
    webhook_id: int
    external_webhook_id: str
    event_type: WebhookEventType


class WebhookBatchReportResponse(BaseModel):
    mode: str
    processed: int
    failed: int
    skipped: int
    outcomes: dict[str, int]
    errors: dict[str, str]


class EntitySyncCounts(BaseModel):
    processed: int = 0
    created: int = 0
    updated: int = 0
    failed: int = 0


class SyncResult(BaseModel):
    success: bool
    jobs: EntitySyncCounts = Field(default_factory=EntitySyncCounts)
    candidates: EntitySyncCounts = Field(default_factory=EntitySyncCounts)
    applications: EntitySyncCounts = Field(default_factory=EntitySyncCounts)
    error: Optional[str] = None

    @classmethod
    def failure(cls, error: str) -> "SyncResult":
        return cls(success=False, error=error)

    @property
    def total_processed(self) -> int:
        return self.jobs.processed + self.candidates.processed + self.applications.processed

    @property
    def total_created(self) -> int:
        return self.jobs.created + self.candidates.created + self.applications.created

    @property
    def total_updated(self) -> int:
        return self.jobs.updated + self.candidates.updated + self.applications.updated

    @property
    def total_failed(self) -> int:
        return self.jobs.failed + self.candidates.failed + self.applications.failed


class SyncRunResponse(BaseModel):
    connection_id: int
    connection_name: str
    result: SyncResult
    total_failed: int


class SyncLogRecord(BaseModel):
    id: str
    connection_id: int
    status: SyncLogStatus
    filters: dict[str, str] = Field(default_factory=dict)
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_failed: int = 0
    errors: list[str] = Field(default_factory=list)
    started_at_utc: datetime
    completed_at_utc: datetime
    duration_seconds: float


class ApplicationNote(BaseModel):
    note: str
    author: Optional[str] = None
    source_key: Optional[str] = None
    created_at_utc: datetime


class JobPostingRecord(BaseModel):
    id: str
    connection_id: int
    external_job_id: str
    title: str = ""
    description: str = ""
    department: str = ""
    location: str = ""
    employment_type: str = "full-time"
    experience_level: str = "entry-level"
    salary_min: Optional[float] = None
    salary_max: Optional[float] = None
    salary_currency: str = "USD"
    requirements: list[Any] = Field(default_factory=list)
    benefits: list[Any] = Field(default_factory=list)
    hiring_manager: str = ""
    recruiter: str = ""
    status: str = "active"
    posted_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    created_at_utc: datetime
    updated_at_utc: datetime


class CandidateRecord(BaseModel):
    id: str
    connection_id: int
    external_candidate_id: str
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: str = ""
    address: str = ""
    linkedin_url: str = ""
    portfolio_url: str = ""
    skills: list[Any] = Field(default_factory=list)
    education: list[Any] = Field(default_factory=list)
    experience: list[Any] = Field(default_factory=list)
    current_title: str = ""
    current_company: str = ""
    desired_salary: Optional[float] = None
    availability: str = "immediate"
    open_to_remote: bool = False
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    created_at_utc: datetime
    updated_at_utc: datetime


class ApplicationRecord(BaseModel):
    id: str
    connection_id: int
    job_posting_id: str
    candidate_id: str
    external_application_id: str
    status: ApplicationStatus = ApplicationStatus.new
    cover_letter: str = ""
    attachments: list[Any] = Field(default_factory=list)
    questionnaire_responses: Any = Field(default_factory=list)
    offered_salary: Optional[float] = None
    applied_at: Optional[datetime] = None
    status_updated_at_utc: Optional[datetime] = None
    rejection_reason: str = ""
    notes: list[ApplicationNote] = Field(default_factory=list)
    assessment_scores: Any = Field(default_factory=list)
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    created_at_utc: datetime
    updated_at_utc: datetime


class ApplicationItem(BaseModel):
    application_id: str
    external_application_id: str
    job_posting_id: str
    candidate_id: str
    status: ApplicationStatus
    offered_salary: Optional[float]
    notes: list[str]


def _scalar_to_text(value: object) -> object:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


class ApplicationEventPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    application_id: Optional[str] = None

    @field_validator("application_id", mode="before")
    @classmethod
    def coerce_application_id(cls, value: object) -> object:
        value = _scalar_to_text(value)
        if isinstance(value, str):
            return value.strip() or None
        return value


class InterviewScheduledPayload(ApplicationEventPayload):
    interview_date: Optional[str] = None
    interview_type: str = "phone"
    notes: str = ""

    @field_validator("interview_date", mode="before")
    @classmethod
    def coerce_interview_date(cls, value: object) -> object:
        return _scalar_to_text(value)

    @field_validator("interview_type", mode="before")
    @classmethod
    def default_interview_type(cls, value: object) -> object:
        return "phone" if value is None else value

    @field_validator("notes", mode="before")
    @classmethod
    def blank_notes(cls, value: object) -> object:
        return "" if value is None else value


class OfferExtendedPayload(ApplicationEventPayload):
    offered_salary: Optional[float] = None
    offer_details: str = ""

    @field_validator("offered_salary", mode="before")
    @classmethod
    def empty_salary(cls, value: object) -> object:
        return None if value in ("", 0) else value

    @field_validator("offer_details", mode="before")
    @classmethod
    def blank_details(cls, value: object) -> object:
        return "" if value is None else value


class HireCompletedPayload(ApplicationEventPayload):
    start_date: Optional[str] = None
    final_salary: Optional[float] = None

    @field_validator("final_salary", mode="before")
    @classmethod
    def empty_salary(cls, value: object) -> object:
        return None if value in ("", 0) else value

    @field_validator("start_date", mode="before")
    @classmethod
    def coerce_start_date(cls, value: object) -> object:
        value = _scalar_to_text(value)
        if isinstance(value, str):
            return value.strip() or None
        return value


def format_amount(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.2f}"
