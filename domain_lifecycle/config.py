"""
Configuration management for the domain lifecycle service.
"""

import logging
from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings

from .domains.manager import DEFAULT_RESERVED_DOMAINS


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Network
    host: str = "0.0.0.0"
    port: int = 8000

    # Redis (empty disables Redis and keeps records in memory)
    redis_url: str = "redis://localhost:6379"
    key_prefix: str = "domain_lifecycle:"
    max_events_per_tenant: int = 50

    # Verification
    product: str = "autodox"  # TXT record lives at _<product>-verify.<hostname>
    token_prefix: str = "adx_"
    dns_timeout: float = 5.0  # seconds
    verification_expiry_hours: int = 72
    reserved_domains: List[str] = list(DEFAULT_RESERVED_DOMAINS)

    # Hosting edge the tenant points DNS at
    edge_ipv4: str = "75.2.60.5"
    edge_target: str = "identitybrandhub.netlify.app"

    # Hosting provider (Netlify); without credentials a simulated provider is used
    netlify_access_token: str = ""
    netlify_site_id: str = ""
    netlify_api_url: str = "https://api.netlify.com/api/v1"
    provider_timeout: float = 10.0  # seconds per attempt
    provider_max_retries: int = 3

    # Reconciliation loop
    reconcile_interval: float = 30.0  # seconds
    reconcile_concurrency: int = 5
    claim_timeout: float = 60.0  # seconds a verify/provision call may hold its claim
    auto_provision: bool = True

    # API access (empty disables the bearer check)
    api_token: str = ""

    # Logging
    log_level: str = "INFO"

    # Debug mode
    debug: bool = False

    model_config = {
        "env_prefix": "DOMAINS_",
        "env_file": ".env",
        "extra": "ignore"
    }

    @property
    def provider_configured(self) -> bool:
        return bool(self.netlify_access_token and self.netlify_site_id)

    def validate_required(self) -> bool:
        """Validate settings that must be consistent in production."""
        if bool(self.netlify_access_token) != bool(self.netlify_site_id):
            raise ValueError(
                "DOMAINS_NETLIFY_ACCESS_TOKEN and DOMAINS_NETLIFY_SITE_ID "
                "must be set together"
            )
        if not self.api_token:
            raise ValueError(
                "DOMAINS_API_TOKEN is not set; the domain API is unauthenticated"
            )
        return True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    settings = Settings()
    # In production, validate required fields
    if not settings.debug:
        try:
            settings.validate_required()
        except ValueError as e:
            logging.warning(f"Configuration warning: {e}")
    return settings
