"""
Unified Configuration
All environment variables and settings in one place

ARCHITECTURE:
- ONE Supabase project for connections, events, ledger and attachments
- Microsoft Graph is the only mail/calendar provider
- Settings are loaded once at process start and never reloaded
"""
from typing import List, Optional
import logging
from pydantic_settings import BaseSettings
from pydantic import Field, model_validator

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Unified application settings.
    Validates all environment variables at startup.
    """

    # ============================================================================
    # SERVER
    # ============================================================================

    environment: str = Field(default="production", description="Environment: development/staging/production")
    port: int = Field(default=8080, description="Server port")
    debug: bool = Field(default=False, description="Debug mode")
    http_timeout_seconds: float = Field(default=30.0, description="Timeout for outbound HTTP calls")

    # ============================================================================
    # DATABASE (Supabase)
    # ============================================================================

    supabase_url: str = Field(description="Supabase project URL")
    supabase_service_key: str = Field(description="Supabase service role key (also seeds token decryption)")

    # ============================================================================
    # MICROSOFT GRAPH
    # ============================================================================

    microsoft_client_id: Optional[str] = Field(default=None, description="Azure AD application (client) ID")
    microsoft_client_secret: Optional[str] = Field(default=None, description="Azure AD client secret")
    microsoft_tenant_id: str = Field(default="common", description="Azure AD tenant used for token refresh")
    graph_base_url: str = Field(default="https://graph.microsoft.com/v1.0", description="Microsoft Graph API root")
    graph_max_pages: int = Field(default=20, description="Hard cap on pages followed per fetch")
    graph_page_size: int = Field(default=50, description="Preferred page size (odata.maxpagesize)")

    # ============================================================================
    # SYNC
    # ============================================================================

    provider_key: str = Field(default="microsoft", description="Provider key of connections handled by this worker")
    sync_interval_minutes: int = Field(default=5, description="Minutes between scheduled fleet syncs")
    message_lookback_days: int = Field(default=30, description="Initial message window (days back)")
    calendar_lookback_days: int = Field(default=30, description="Initial calendar window (days back)")
    calendar_lookahead_days: int = Field(default=90, description="Initial calendar window (days ahead)")
    sync_sent_items: bool = Field(default=True, description="Also sync the Sent Items folder")
    concurrent_resource_sync: bool = Field(default=False, description="Run resource pipelines of one connection concurrently")
    max_cursor_holds: int = Field(default=3, description="Runs a batch with failed writes is replayed before those records are dead-lettered")
    log_prevented_duplicates: bool = Field(default=True, description="Append prevented duplicates to duplicate_prevention_log")
    default_user_id: Optional[str] = Field(default=None, description="Owner of events when a connection has no user_id")

    # Side pipelines: queue (Dramatiq), inline (best-effort in process) or disabled
    side_pipeline_mode: str = Field(default="queue", description="queue | inline | disabled")

    # Mutual exclusion: memory (single replica) or redis (lease with TTL)
    sync_lock_backend: str = Field(default="memory", description="memory | redis")
    sync_lease_ttl_seconds: int = Field(default=900, description="TTL of the per-connection Redis lease")

    # Redis (job queue + lease)
    redis_url: Optional[str] = Field(default=None, description="Redis connection URL")

    enable_scheduler: bool = Field(default=True, description="Run the periodic sync loop inside the web process")

    # ============================================================================
    # ATTACHMENTS & ENRICHMENT
    # ============================================================================

    attachments_bucket: str = Field(default="brain-attachments", description="Supabase Storage bucket for attachments")
    attachment_max_bytes: int = Field(default=10 * 1024 * 1024, description="Attachments above this size are skipped")
    vip_domains: str = Field(default="", description="Comma-separated sender domains tagged sender:vip")

    # ============================================================================
    # DAILY BRIEF
    # ============================================================================

    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API key (brief summary)")
    brief_model: str = Field(default="gpt-4o-mini", description="Model used for the brief summary")
    resend_api_key: Optional[str] = Field(default=None, description="Resend API key (brief delivery)")
    brief_from_email: str = Field(default="onboarding@resend.dev", description="Sender address for briefs")
    brief_manage_url: Optional[str] = Field(default=None, description="Link to brief preferences shown in the footer")
    enable_brief_scheduler: bool = Field(default=True, description="Run the hourly brief check inside the web process")

    # ============================================================================
    # PRODUCTION INFRASTRUCTURE
    # ============================================================================

    sentry_dsn: Optional[str] = Field(default=None, description="Sentry DSN for error tracking")

    @property
    def vip_domain_list(self) -> List[str]:
        return [d.strip().lower() for d in self.vip_domains.split(",") if d.strip()]

    @model_validator(mode='after')
    def validate_settings(self):
        """
        Validate critical settings at startup.

        CHECKS:
        - Warn if running in production without Sentry
        - Warn if debug mode enabled in production
        - Warn on combinations that silently disable features
        """
        if self.environment == "production":
            if self.debug:
                logger.warning("⚠️  DEBUG MODE ENABLED IN PRODUCTION! This is insecure.")

            if not self.sentry_dsn:
                logger.warning("⚠️  Sentry not configured in production. Error tracking disabled.")

        if self.side_pipeline_mode not in ("queue", "inline", "disabled"):
            raise ValueError(f"SIDE_PIPELINE_MODE must be queue, inline or disabled (got {self.side_pipeline_mode})")

        if self.sync_lock_backend not in ("memory", "redis"):
            raise ValueError(f"SYNC_LOCK_BACKEND must be memory or redis (got {self.sync_lock_backend})")

        if self.sync_lock_backend == "redis" and not self.redis_url:
            logger.warning("⚠️  SYNC_LOCK_BACKEND=redis but REDIS_URL not set. Falling back to in-process guard.")

        if self.side_pipeline_mode == "queue" and not self.redis_url:
            logger.warning("⚠️  SIDE_PIPELINE_MODE=queue but REDIS_URL not set. Rules/enrichment jobs will not run.")

        if not self.microsoft_client_id or not self.microsoft_client_secret:
            logger.warning("⚠️  MICROSOFT_CLIENT_ID/SECRET not set. Token refresh will fail.")

        logger.info("=" * 80)
        logger.info("Sync Worker Configuration Loaded")
        logger.info("=" * 80)
        logger.info(f"Environment: {self.environment}")
        logger.info(f"Debug: {self.debug}")
        logger.info(f"Supabase URL: {self.supabase_url}")
        logger.info(f"Sync interval: {self.sync_interval_minutes} min")
        logger.info(f"Sent items: {'✅ Enabled' if self.sync_sent_items else '❌ Disabled'}")
        logger.info(f"Side pipelines: {self.side_pipeline_mode}")
        logger.info(f"Lock backend: {self.sync_lock_backend}")
        logger.info(f"Redis: {'✅ Configured' if self.redis_url else '❌ Not configured'}")
        logger.info(f"Sentry: {'✅ Configured' if self.sentry_dsn else '❌ Not configured'}")
        logger.info(f"OpenAI: {'✅ Configured' if self.openai_api_key else '❌ Not configured'}")
        logger.info(f"Resend: {'✅ Configured' if self.resend_api_key else '❌ Not configured'}")
        logger.info("=" * 80)

        return self

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


# Global settings instance
settings = Settings()
