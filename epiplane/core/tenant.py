# Copyright (c) 2026 Epiplane Contributors. All Rights Reserved.

"""
Tenant Context — Multi-tenancy support.

Every inbound request is mapped to a journal (tenant) and a language.
TenantContext carries that identity through the request; it is derived per
request and never persisted.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class TenantContext:
    """Immutable tenant identity for request-scoped operations."""

    tenant_id: str
    language: str
    hostname: str = ""
    # True when the requested tenant was unknown and replaced by the default
    fallback: bool = False

    def __post_init__(self):
        if not self.tenant_id:
            raise ValueError("tenant_id must not be empty")
        if not self.language:
            raise ValueError("language must not be empty")

    def __repr__(self) -> str:
        return f"TenantContext(tenant={self.tenant_id!r}, lang={self.language!r})"
