# Copyright (c) 2026 Epiplane Contributors. All Rights Reserved.

"""
Resource Descriptor — What a rebuild targets.

    article / volume / section  -> needs an id
    static-page                 -> needs a page name
    full                        -> the whole journal
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Dict, Optional

from epiplane.core.registry import is_valid_journal_code
from epiplane.rebuild.errors import ArgumentError


class ResourceKind(str, enum.Enum):
    ARTICLE = "article"
    VOLUME = "volume"
    SECTION = "section"
    STATIC_PAGE = "static-page"
    FULL = "full"

    @classmethod
    def values(cls) -> list:
        return [k.value for k in cls]


ID_KINDS = frozenset({ResourceKind.ARTICLE, ResourceKind.VOLUME, ResourceKind.SECTION})

# Environment variable the site build reads to narrow its static generation
SCOPED_ENV_VARS: Dict[ResourceKind, str] = {
    ResourceKind.ARTICLE: "ONLY_BUILD_ARTICLE_ID",
    ResourceKind.VOLUME: "ONLY_BUILD_VOLUME_ID",
    ResourceKind.SECTION: "ONLY_BUILD_SECTION_ID",
    ResourceKind.STATIC_PAGE: "ONLY_BUILD_STATIC_PAGE",
}

# Directory of each id-addressed kind under dist/<journal>/
DIST_DIRS: Dict[ResourceKind, str] = {
    ResourceKind.ARTICLE: "articles",
    ResourceKind.VOLUME: "volumes",
    ResourceKind.SECTION: "sections",
}


@dataclass(frozen=True)
class ResourceDescriptor:
    kind: ResourceKind
    tenant_id: str
    id: Optional[str] = None
    page_name: Optional[str] = None

    @classmethod
    def parse(
        cls,
        journal: Optional[str],
        kind: Optional[str],
        resource_id: Optional[str] = None,
        page_name: Optional[str] = None,
    ) -> "ResourceDescriptor":
        """Validate raw CLI / payload values. Raises ArgumentError."""
        if not journal:
            raise ArgumentError("Missing required argument: --journal")
        if not is_valid_journal_code(journal):
            raise ArgumentError(f"Invalid journal code: {journal}", journal_code=journal)
        if not kind:
            raise ArgumentError("Missing required argument: --type", journal_code=journal)
        try:
            rkind = ResourceKind(kind)
        except ValueError:
            raise ArgumentError(
                f"Invalid resource type: {kind}. Must be one of: {', '.join(ResourceKind.values())}",
                journal_code=journal,
            ) from None

        resource_id = (resource_id or "").strip() or None
        page_name = (page_name or "").strip() or None

        if rkind is ResourceKind.STATIC_PAGE and not page_name:
            raise ArgumentError("Page name is required for type 'static-page'", journal_code=journal)
        if rkind in ID_KINDS and not resource_id:
            raise ArgumentError(f"Resource ID is required for type '{rkind.value}'", journal_code=journal)

        return cls(
            kind=rkind,
            tenant_id=journal,
            id=resource_id if rkind in ID_KINDS else None,
            page_name=page_name if rkind is ResourceKind.STATIC_PAGE else None,
        )

    @property
    def identifier(self) -> str:
        return self.id or self.page_name or "full"

    @property
    def key(self) -> str:
        """Stable identity used to coalesce duplicate requests."""
        return f"{self.tenant_id}:{self.kind.value}:{self.identifier}"

    def scoped_env(self) -> Dict[str, str]:
        """The single targeting variable for this kind ({} for full)."""
        var = SCOPED_ENV_VARS.get(self.kind)
        if var is None:
            return {}
        value = self.page_name if self.kind is ResourceKind.STATIC_PAGE else self.id
        return {var: value}

    def output_path(self) -> str:
        if self.kind is ResourceKind.FULL:
            return f"dist/{self.tenant_id}"
        if self.kind is ResourceKind.STATIC_PAGE:
            return f"dist/{self.tenant_id}/{self.page_name}"
        return f"dist/{self.tenant_id}/{DIST_DIRS[self.kind]}/{self.id}"

    def describe(self) -> str:
        if self.kind is ResourceKind.FULL:
            return f"Building complete journal: {self.tenant_id}"
        if self.kind is ResourceKind.STATIC_PAGE:
            return f"Building static page {self.page_name} for journal: {self.tenant_id}"
        return f"Building {self.kind.value} {self.id} for journal: {self.tenant_id}"
