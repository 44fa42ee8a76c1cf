"""
Data Source Providers
Microsoft Graph is the only provider
"""
from sync_worker.services.sync.providers.microsoft_graph import (
    FetchResult,
    GraphAPIError,
    InvalidCursorError,
    download_attachment,
    fetch_page,
    list_attachments,
)

__all__ = [
    "FetchResult",
    "GraphAPIError",
    "InvalidCursorError",
    "download_attachment",
    "fetch_page",
    "list_attachments",
]
