# Copyright (c) 2026 Epiplane Contributors. All Rights Reserved.

"""
Tenant Resolver — hostname + path → (journal, language, canonical path).

Pure functions, no I/O: the tenant registry is passed in. Resolution never
fails; an unknown journal is replaced by the fallback (and flagged, so a
strict router can refuse it).

Examples (production domain episciences.org, languages en/fr, default en):
    epijinfo.episciences.org  /fr/articles/12  -> /sites/epijinfo/fr/articles/12
    localhost                 /about           -> /sites/<fallback>/en/about
    localhost                 /en/about        -> /sites/<fallback>/en/about
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from epiplane.core.registry import TenantRegistry
from epiplane.core.tenant import TenantContext

STATIC_EXTENSIONS = (
    ".js", ".css", ".woff", ".woff2", ".ttf", ".otf", ".eot",
    ".svg", ".png", ".jpg", ".jpeg", ".gif", ".ico", ".webp",
)

SITES_PREFIX = "/sites"


@dataclass(frozen=True)
class ResolverConfig:
    production_domain: str
    fallback_tenant: str
    default_language: str
    accepted_languages: Sequence[str]


@dataclass(frozen=True)
class Resolution:
    tenant: TenantContext
    # path with the language prefix (if any) removed; "/" for the root
    remaining_path: str
    has_language_prefix: bool

    @property
    def internal_path(self) -> str:
        return build_internal_path(self.tenant, self.remaining_path)


def is_static_asset(path: str) -> bool:
    return path.lower().endswith(STATIC_EXTENSIONS)


def _strip_port(hostname: str) -> str:
    host = hostname.strip().lower()
    if host.startswith("["):
        # IPv6 literal, e.g. [::1]:3000
        return host.split("]")[0] + "]"
    return host.split(":")[0]


def tenant_from_hostname(hostname: str, config: ResolverConfig) -> str:
    """First DNS label, except bare loopback / numeric hosts in dev."""
    host = _strip_port(hostname)
    first_label = host.split(".")[0]

    if config.production_domain and config.production_domain in host:
        return first_label or config.fallback_tenant

    if not first_label or first_label == "localhost" or first_label.isdigit() or host.startswith("["):
        return config.fallback_tenant
    return first_label


def split_language(path: str, config: ResolverConfig) -> Tuple[Optional[str], str]:
    """
    Return (language prefix or None, remaining path).

    `/fr/articles/12` -> ("fr", "/articles/12"); `/fr` -> ("fr", "/").
    """
    segments = path.split("/", 2)
    # "/fr/x" -> ["", "fr", "x"]
    if len(segments) >= 2 and segments[1] in config.accepted_languages:
        rest = "/" + segments[2] if len(segments) == 3 else "/"
        return segments[1], rest
    return None, path or "/"


def build_internal_path(tenant: TenantContext, remaining_path: str) -> str:
    suffix = "" if remaining_path in ("", "/") else remaining_path
    return f"{SITES_PREFIX}/{tenant.tenant_id}/{tenant.language}{suffix}"


def resolve(
    hostname: str,
    path: str,
    config: ResolverConfig,
    registry: TenantRegistry,
) -> Optional[Resolution]:
    """
    Resolve a request. Returns None for static-asset paths (never rewritten).
    """
    if is_static_asset(path):
        return None

    requested = tenant_from_hostname(hostname, config)
    fallback = not registry.is_known(requested)
    tenant_id = config.fallback_tenant if fallback else requested

    prefix, remaining = split_language(path, config)
    language = prefix or config.default_language

    tenant = TenantContext(
        tenant_id=tenant_id,
        language=language,
        hostname=_strip_port(hostname),
        fallback=fallback,
    )
    return Resolution(
        tenant=tenant,
        remaining_path=remaining,
        has_language_prefix=prefix is not None,
    )
