"""Pydantic models for ServeTracker."""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class CaseStatus(str, Enum):
    """Case workflow status."""

    ACTIVE = "Active"
    PENDING = "Pending"
    CLOSED = "Closed"


class ServeStatus(str, Enum):
    """Outcome of a serve attempt."""

    COMPLETED = "completed"
    FAILED = "failed"


class SyncState(str, Enum):
    """Synchronization controller state."""

    DISCONNECTED = "disconnected"
    SYNCING = "syncing"
    SYNCED = "synced"


class Coordinates(BaseModel):
    """GPS position captured with a serve attempt."""

    latitude: float
    longitude: float


class Client(BaseModel):
    """Client record."""

    id: str
    name: str = ""
    email: str = ""
    additional_emails: list[str] = Field(default_factory=list)
    phone: str = ""
    address: str = ""
    notes: str = ""
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def all_emails(self) -> list[str]:
        """Primary email followed by the additional ones."""
        return [e for e in [self.email, *self.additional_emails] if e]


class Case(BaseModel):
    """Case record owned by a client."""

    id: str
    case_number: str
    case_name: str | None = None
    client_id: str
    description: str | None = None
    status: CaseStatus = CaseStatus.PENDING
    home_address: str | None = None
    work_address: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ServeAttempt(BaseModel):
    """A logged attempt to deliver papers."""

    id: str
    client_id: str = "unknown"
    client_name: str = "Unknown Client"
    case_number: str = "Unknown"
    case_name: str = "Unknown Case"
    attempt_number: int = 1
    status: str = "unknown"  # completed, failed, or unknown
    notes: str = ""
    coordinates: Coordinates | None = None
    image_data: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)


class ClientDocument(BaseModel):
    """Metadata for a stored client document."""

    id: str
    client_id: str
    case_number: str | None = None
    file_path: str
    file_name: str = ""
    file_type: str = "application/octet-stream"
    file_size: int = 0
    description: str | None = None


class EmailMessage(BaseModel):
    """Payload accepted by the email relay function."""

    to: str | list[str]
    subject: str
    body: str | None = None
    html: str | None = None
    text: str | None = None
    image_data: str | None = Field(default=None, alias="imageData")
    image_format: str | None = Field(default=None, alias="imageFormat")
    coordinates: Coordinates | str | None = None
    notes: str | None = None

    model_config = {"populate_by_name": True}


class EmailResult(BaseModel):
    """Response envelope from the email relay function."""

    success: bool
    message: str
    id: str | None = None


class ClientInput(BaseModel):
    """Fields a user supplies when creating or editing a client."""

    id: str | None = None
    name: str
    email: str
    additional_emails: list[str] = Field(default_factory=list)
    phone: str = ""
    address: str = ""
    notes: str = ""


class CaseInput(BaseModel):
    """Fields a user supplies when creating or editing a case."""

    case_number: str
    client_id: str
    case_name: str | None = None
    description: str | None = None
    status: CaseStatus = CaseStatus.ACTIVE
    home_address: str | None = None
    work_address: str | None = None


class ServeInput(BaseModel):
    """Fields a user supplies when logging a serve attempt."""

    id: str | None = None
    client_id: str
    case_number: str
    status: ServeStatus
    notes: str = ""
    address: str = ""
    coordinates: Coordinates | None = None
    image_data: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)


class BackendConfig(BaseModel):
    """Remote backend configuration."""

    kind: str = "appwrite"  # appwrite or legacy
    endpoint: str
    project_id: str = ""
    api_key: str = ""
    database_id: str = "serve-tracker-db"
    clients_collection: str = "clients"
    cases_collection: str = "client_cases"
    serves_collection: str = "serve_attempts"
    documents_collection: str = "client_documents"
    bucket_id: str = "client-documents"
    email_function_id: str = ""
    timeout_seconds: int = 30


class MirrorConfig(BaseModel):
    """Local mirror configuration."""

    db_path: str


class SyncConfig(BaseModel):
    """Synchronization controller configuration."""

    poll_interval: float = 5.0
    realtime: bool = True


class EmailConfig(BaseModel):
    """Notification email configuration."""

    enabled: bool = True
    business_email: str = "info@justlegalsolutions.org"


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "json"


class Config(BaseModel):
    """Full configuration for the ServeTracker client."""

    backend: BackendConfig
    mirror: MirrorConfig
    sync: SyncConfig = Field(default_factory=SyncConfig)
    email: EmailConfig = Field(default_factory=EmailConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
