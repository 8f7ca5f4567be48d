# Copyright (c) 2026 Epiplane Contributors. All Rights Reserved.

"""
Epiplane Configuration — Environment-driven settings.

All configuration is loaded from environment variables (or .env file).
Legacy front-end variable names (NEXT_PUBLIC_*) are accepted as aliases so the
same environment can drive both the site build and the control plane.
"""

from __future__ import annotations

from pathlib import Path
from typing import List

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings


def _split_csv(raw: str) -> List[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


class EpiSettings(BaseSettings):
    """Control-plane configuration loaded from environment."""

    # --- Project layout ---
    PROJECT_ROOT: str = Field(
        default=".",
        description="Working directory of the site project (build cwd)",
    )
    EXTERNAL_ASSETS_DIR: str = Field(
        default="external-assets",
        description="Directory holding journals.txt and .env.local.<code> files",
    )
    SITE_DIST_DIR: str = Field(
        default="dist",
        description="Root of the pre-generated site artifacts",
    )
    PAGE_CACHE_TTL: int = Field(
        default=86400,
        description="Seconds a served page stays in the Redis page cache (0 keeps it until revalidated)",
    )

    # --- Tenancy & routing ---
    DEFAULT_JOURNAL: str = Field(
        default="epijinfo",
        description="Fallback tenant code",
        validation_alias=AliasChoices("DEFAULT_JOURNAL", "NEXT_PUBLIC_JOURNAL_RVCODE"),
    )
    PRODUCTION_DOMAIN: str = Field(
        default="episciences.org",
        description="Hostnames containing this domain resolve the tenant from the subdomain",
    )
    DEFAULT_LANGUAGE: str = Field(
        default="en",
        validation_alias=AliasChoices("DEFAULT_LANGUAGE", "NEXT_PUBLIC_JOURNAL_DEFAULT_LANGUAGE"),
    )
    ACCEPTED_LANGUAGES: str = Field(
        default="en,fr",
        description="Comma-separated languages recognised as a path prefix",
        validation_alias=AliasChoices("ACCEPTED_LANGUAGES", "NEXT_PUBLIC_JOURNAL_ACCEPTED_LANGUAGES"),
    )
    STRICT_TENANT_ROUTING: bool = Field(
        default=False,
        description="Answer 404 for unknown tenants instead of falling back",
    )

    # --- Rebuild ---
    BUILD_COMMAND: str = Field(
        default="npx next build",
        description="Shell command producing the static site",
    )
    BUILD_OUTPUT_LIMIT: int = Field(
        default=10 * 1024 * 1024,
        description="Max bytes buffered per build output line",
    )
    DEPLOY_COMMAND: str = Field(
        default="",
        description="Optional deploy command, invoked with the build output path",
        validation_alias=AliasChoices("DEPLOY_COMMAND", "DEPLOY_SCRIPT"),
    )
    WEBHOOK_HOST: str = Field(default="0.0.0.0")
    WEBHOOK_PORT: int = Field(default=3001)
    MAX_QUEUE_PER_JOURNAL: int = Field(default=10)
    MAX_CONCURRENT_BUILDS: int = Field(
        default=2,
        description="Global cap on simultaneously running builds",
    )
    JOB_LOG_FILE: str = Field(
        default="logs/webhook-server.log",
        description="Append-only job server log (relative to PROJECT_ROOT)",
    )

    # --- Revalidation ---
    REVALIDATION_SECRET: str = Field(default="", description="Global revalidation secret")
    REVALIDATION_ALLOWED_IPS: str = Field(
        default="",
        description="Comma-separated client IPs allowed to revalidate (empty = any)",
    )
    REVALIDATION_TOKEN_HEADER: str = Field(default="x-episciences-token")
    TRUSTED_PROXIES: str = Field(
        default="",
        description="Comma-separated proxy IPs or CIDRs whose X-Forwarded-For / X-Real-IP are honoured",
    )

    # --- Proxies ---
    PDF_PROXY_ALLOWED_DOMAINS: str = Field(
        default="zenodo.org,arxiv.org,hal.archives-ouvertes.fr,hal.science,archive.softwareheritage.org",
    )
    PDF_PROXY_RATE_LIMIT: int = Field(default=30, description="Requests per IP per window")
    PDF_PROXY_WINDOW_SECONDS: int = Field(default=60)
    PDF_PROXY_TIMEOUT: float = Field(default=15.0, description="Upstream timeout in seconds")
    RATE_LIMIT_BACKEND: str = Field(
        default="memory",
        description="memory | redis",
    )
    API_ROOT_ENDPOINT: str = Field(
        default="https://api-preprod.episciences.org/api",
        validation_alias=AliasChoices("API_ROOT_ENDPOINT", "NEXT_PUBLIC_API_ROOT_ENDPOINT"),
    )
    API_URL_FORCE: str = Field(
        default="",
        description="Overrides every tenant's API root (local dev / CI)",
        validation_alias=AliasChoices("API_URL_FORCE", "NEXT_PUBLIC_API_URL_FORCE"),
    )

    # --- Redis ---
    REDIS_URL: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL",
    )
    REDIS_MAX_CONNECTIONS: int = Field(default=20, description="Upper bound of the shared pool")
    REDIS_HEALTH_CHECK_INTERVAL: int = Field(default=15, description="Seconds between idle connection pings")
    REDIS_SOCKET_CONNECT_TIMEOUT: float = Field(default=5.0)
    REDIS_SOCKET_TIMEOUT: float = Field(default=10.0)

    # --- Platform ---
    LOG_LEVEL: str = Field(default="INFO")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": True,
        "populate_by_name": True,
        "extra": "ignore",
    }

    @property
    def accepted_languages(self) -> List[str]:
        return _split_csv(self.ACCEPTED_LANGUAGES)

    @property
    def allowed_ips(self) -> List[str]:
        return _split_csv(self.REVALIDATION_ALLOWED_IPS)

    @property
    def trusted_proxies(self) -> List[str]:
        return _split_csv(self.TRUSTED_PROXIES)

    @property
    def allowed_pdf_domains(self) -> List[str]:
        return _split_csv(self.PDF_PROXY_ALLOWED_DOMAINS)

    @property
    def assets_path(self) -> Path:
        return Path(self.PROJECT_ROOT) / self.EXTERNAL_ASSETS_DIR

    @property
    def job_log_path(self) -> Path:
        return Path(self.PROJECT_ROOT) / self.JOB_LOG_FILE


# Global singleton
settings = EpiSettings()
