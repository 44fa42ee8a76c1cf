"""
Microsoft token service
Reads stored credentials for a connection and refreshes them when needed

Credentials live on integration_connections either as a JSON secret_ref
({"access_token", "refresh_token", "expires_at"}) or in the encrypted_*
columns as AES-256-CBC "iv_hex:ciphertext_hex", keyed by SHA-256 of the
first 32 characters of the Supabase service key (shared with the OAuth app).
"""
import hashlib
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import httpx
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from supabase import Client

from sync_worker.core.config import settings
from sync_worker.services.sync.canonical import parse_graph_datetime
from sync_worker.services.sync.database import CONNECTIONS_TABLE, update_connection

logger = logging.getLogger(__name__)

REFRESH_MARGIN = timedelta(minutes=5)
# Refresh failures that no retry will fix
IRRECOVERABLE_OAUTH_ERRORS = {"invalid_grant", "interaction_required", "consent_required", "unauthorized_client"}


class TokenServiceError(Exception):
    """
    No usable access token.

    kind:
        unauthorized - credentials are gone/revoked; needs user re-consent
        transient    - token endpoint unreachable or 5xx; retry next tick
        not_found    - connection row missing
    """

    def __init__(self, message: str, kind: str = "unauthorized"):
        super().__init__(message)
        self.kind = kind


@dataclass
class StoredTokens:
    access_token: Optional[str]
    refresh_token: Optional[str]
    expires_at: Optional[datetime]

    def is_fresh(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return bool(self.access_token and self.expires_at and self.expires_at > now + REFRESH_MARGIN)


# ============================================================================
# ENCRYPTION (AES-256-CBC, compatible with the OAuth app)
# ============================================================================

def _encryption_key() -> bytes:
    return hashlib.sha256(settings.supabase_service_key[:32].encode("utf-8")).digest()


def encrypt_token(plaintext: str) -> str:
    iv = os.urandom(16)
    padder = padding.PKCS7(128).padder()
    padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(_encryption_key()), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    return f"{iv.hex()}:{ciphertext.hex()}"


def decrypt_token(value: str) -> Optional[str]:
    """Decrypt 'iv_hex:ciphertext_hex'; returns None on any malformed input."""
    try:
        iv_hex, data_hex = value.split(":", 1)
        decryptor = Cipher(algorithms.AES(_encryption_key()), modes.CBC(bytes.fromhex(iv_hex))).decryptor()
        padded = decryptor.update(bytes.fromhex(data_hex)) + decryptor.finalize()
        unpadder = padding.PKCS7(128).unpadder()
        return (unpadder.update(padded) + unpadder.finalize()).decode("utf-8")
    except (ValueError, UnicodeDecodeError) as e:
        logger.error(f"Token decryption failed: {e}")
        return None


# ============================================================================
# STORAGE
# ============================================================================

def read_stored_tokens(row: Dict[str, Any]) -> StoredTokens:
    """Tokens from secret_ref JSON, falling back to the encrypted columns."""
    secret_ref = row.get("secret_ref")
    if secret_ref:
        try:
            data = json.loads(secret_ref) if isinstance(secret_ref, str) else secret_ref
            if data.get("access_token"):
                return StoredTokens(
                    access_token=data.get("access_token"),
                    refresh_token=data.get("refresh_token"),
                    expires_at=parse_graph_datetime(data.get("expires_at"))
                )
        except (ValueError, AttributeError) as e:
            logger.warning(f"⚠️  Unreadable secret_ref on connection {row.get('id')}: {e}")

    encrypted_access = row.get("encrypted_access_token")
    encrypted_refresh = row.get("encrypted_refresh_token")
    return StoredTokens(
        access_token=decrypt_token(encrypted_access) if encrypted_access else None,
        refresh_token=decrypt_token(encrypted_refresh) if encrypted_refresh else None,
        expires_at=parse_graph_datetime(row.get("token_expires_at"))
    )


async def save_tokens(supabase: Client, connection_id: str, tokens: StoredTokens):
    """Persist refreshed tokens encrypted; secret_ref is cleared so it cannot shadow them."""
    await update_connection(supabase, connection_id, {
        "encrypted_access_token": encrypt_token(tokens.access_token),
        "encrypted_refresh_token": encrypt_token(tokens.refresh_token) if tokens.refresh_token else None,
        "token_expires_at": tokens.expires_at.isoformat() if tokens.expires_at else None,
        "secret_ref": None,
        "last_error": None
    })


async def _mark_connection_error(supabase: Client, connection_id: str, message: str):
    try:
        await update_connection(supabase, connection_id, {"status": "error", "last_error": message[:1000]})
    except Exception as e:
        logger.error(f"Failed to flag connection {connection_id} as errored: {e}")


# ============================================================================
# REFRESH
# ============================================================================

async def refresh_access_token(
    http_client: httpx.AsyncClient,
    supabase: Client,
    connection_id: str,
    tokens: StoredTokens
) -> StoredTokens:
    """
    Exchange the refresh token at the Microsoft identity platform.

    Raises:
        TokenServiceError: unauthorized (connection flagged 'error') or transient
    """
    if not tokens.refresh_token:
        message = "No refresh token available; user must reconnect"
        await _mark_connection_error(supabase, connection_id, message)
        raise TokenServiceError(message, kind="unauthorized")

    if not settings.microsoft_client_id or not settings.microsoft_client_secret:
        raise TokenServiceError("Microsoft OAuth credentials not configured", kind="unauthorized")

    url = f"https://login.microsoftonline.com/{settings.microsoft_tenant_id}/oauth2/v2.0/token"
    try:
        response = await http_client.post(url, data={
            "client_id": settings.microsoft_client_id,
            "client_secret": settings.microsoft_client_secret,
            "refresh_token": tokens.refresh_token,
            "grant_type": "refresh_token"
        })
    except httpx.HTTPError as e:
        raise TokenServiceError(f"Token endpoint unreachable: {e}", kind="transient") from e

    if response.status_code >= 500:
        raise TokenServiceError(f"Token refresh failed: {response.status_code}", kind="transient")

    if response.status_code >= 400:
        try:
            error_code = (response.json() or {}).get("error", "")
        except ValueError:
            error_code = ""
        message = f"Token refresh failed: {response.status_code} {error_code}".strip()
        logger.error(f"❌ {message} for connection {connection_id}: {response.text[:300]}")
        if error_code in IRRECOVERABLE_OAUTH_ERRORS:
            await _mark_connection_error(supabase, connection_id, message)
        raise TokenServiceError(message, kind="unauthorized")

    data = response.json()
    refreshed = StoredTokens(
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token") or tokens.refresh_token,
        expires_at=datetime.now(timezone.utc) + timedelta(seconds=int(data.get("expires_in", 3600)))
    )
    await save_tokens(supabase, connection_id, refreshed)
    logger.info(f"✅ Token refreshed for connection {connection_id}")
    return refreshed


async def ensure_valid_token(http_client: httpx.AsyncClient, supabase: Client, connection_id: str) -> str:
    """
    Return an access token valid for at least five more minutes.

    Raises:
        TokenServiceError
    """
    result = supabase.table(CONNECTIONS_TABLE).select("*").eq("id", connection_id).limit(1).execute()
    if not result.data:
        raise TokenServiceError(f"Connection {connection_id} not found", kind="not_found")

    tokens = read_stored_tokens(result.data[0])

    if tokens.is_fresh():
        logger.debug(f"✅ Token is valid for connection {connection_id}")
        return tokens.access_token

    logger.info(f"🔄 Token expired or expiring soon for connection {connection_id}, refreshing...")
    refreshed = await refresh_access_token(http_client, supabase, connection_id, tokens)
    return refreshed.access_token
