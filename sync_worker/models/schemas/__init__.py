"""
Pydantic Schemas
All request/response and domain models
"""

# Domain models (sync pipeline)
from .events import (
    CanonicalEvent,
    Connection,
    EnrichmentEntities,
    EnrichmentResult,
    EventType,
    IdentifierSource,
    ResourceType,
    RunStats,
    RunStatus,
    WriteResult,
    WriteStatus,
)

# Health check schemas
from .health import HealthResponse, BriefSendResponse

# Sync schemas
from .sync import SyncTriggerResponse, IngestionRunResponse, IngestionRunListResponse

__all__ = [
    # Domain
    "CanonicalEvent",
    "Connection",
    "EnrichmentEntities",
    "EnrichmentResult",
    "EventType",
    "IdentifierSource",
    "ResourceType",
    "RunStats",
    "RunStatus",
    "WriteResult",
    "WriteStatus",
    # Health
    "HealthResponse",
    "BriefSendResponse",
    # Sync
    "SyncTriggerResponse",
    "IngestionRunResponse",
    "IngestionRunListResponse",
]
