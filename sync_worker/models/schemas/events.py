"""
Event Schemas
Canonical event, connection and run-ledger models shared by the sync pipeline
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field


class EventType(str, Enum):
    EMAIL = "email"
    MEETING = "meeting"


class ResourceType(str, Enum):
    """Cursor partitions. Each one has its own delta link."""
    MESSAGES = "messages"
    SENT_MESSAGES = "sent_messages"
    CALENDAR = "calendar"

    @property
    def event_type(self) -> EventType:
        if self is ResourceType.CALENDAR:
            return EventType.MEETING
        return EventType.EMAIL


class IdentifierSource(str, Enum):
    STABLE = "stable"            # internetMessageId / iCalUId
    PROVIDER_ID = "provider_id"  # Graph item id, may change across folder moves
    NONE = "none"


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class WriteStatus(str, Enum):
    INSERTED = "inserted"
    DUPLICATE = "duplicate"


class Connection(BaseModel):
    """
    Row of integration_connections.
    Created by the OAuth exchange (outside this service), read every cycle.
    """
    model_config = ConfigDict(extra="ignore")

    id: str
    provider_key: str = "microsoft"
    display_name: Optional[str] = None
    status: str = "connected"
    account_email: Optional[str] = None
    user_id: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    last_synced_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @property
    def account(self) -> Optional[str]:
        """Mailbox address used for Graph calls; config.email wins over account_email."""
        email = (self.config or {}).get("email") or self.account_email
        if email and str(email).strip():
            return str(email).strip()
        return None


class CanonicalEvent(BaseModel):
    """Provider-independent representation of an email or meeting."""
    event_type: EventType
    source: str = "microsoft_graph"
    external_id: Optional[str] = None
    identifier_source: IdentifierSource = IdentifierSource.STABLE
    needs_review: bool = False
    created_at_ts: datetime
    subject: str = "(No Subject)"
    body_text: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)
    raw: Dict[str, Any] = Field(default_factory=dict)
    connection_id: Optional[str] = None
    user_id: Optional[str] = None

    @property
    def provider_id(self) -> Optional[str]:
        return self.metadata.get("provider_id")

    @property
    def has_attachments(self) -> bool:
        return self.event_type == EventType.EMAIL and bool(self.metadata.get("has_attachments"))

    def to_row(self) -> Dict[str, Any]:
        """Column mapping for the events table."""
        return {
            "user_id": self.user_id,
            "connection_id": self.connection_id,
            "event_type": self.event_type.value,
            "source": self.source,
            "external_id": self.external_id,
            "created_at_ts": self.created_at_ts.isoformat(),
            "subject": self.subject,
            "body_text": self.body_text,
            "metadata": self.metadata,
            "raw": self.raw,
            "needs_review": self.needs_review,
        }


class WriteResult(BaseModel):
    status: WriteStatus
    event_id: Optional[str] = None
    flagged: bool = False  # stored without a stable identifier


class RunStats(BaseModel):
    """Aggregate counts for one ingestion run."""
    processed: int = 0
    created: int = 0
    updated: int = 0
    duplicates: int = 0
    skipped: int = 0
    failed: int = 0
    flagged: int = 0

    def merge(self, other: "RunStats") -> "RunStats":
        return RunStats(**{
            name: getattr(self, name) + getattr(other, name)
            for name in RunStats.model_fields
        })

    def to_ledger_fields(self) -> Dict[str, int]:
        return {
            "items_processed": self.processed,
            "items_created": self.created,
            "items_updated": self.updated,
            "items_duplicate": self.duplicates,
            "items_skipped": self.skipped,
            "items_failed": self.failed,
            "items_flagged": self.flagged,
        }


class EnrichmentEntities(BaseModel):
    people: List[str] = Field(default_factory=list)
    companies: List[str] = Field(default_factory=list)
    amounts: List[str] = Field(default_factory=list)
    dates: List[str] = Field(default_factory=list)


class EnrichmentResult(BaseModel):
    tags: List[str] = Field(default_factory=list)
    entities: EnrichmentEntities = Field(default_factory=EnrichmentEntities)
    category: Optional[str] = None
    topics: List[str] = Field(default_factory=list)
    actions: List[str] = Field(default_factory=list)
    sender_type: str = "external"
    is_vip: bool = False
