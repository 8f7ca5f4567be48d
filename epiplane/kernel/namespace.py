# Copyright (c) 2026 Epiplane Contributors. All Rights Reserved.

"""
Namespace Helper — Multi-tenancy key isolation.

All Redis keys are namespaced: epi:{journal}:{resource_type}:{resource_id}
so cache entries of one journal can never be invalidated by another.
"""

from __future__ import annotations


def get_key(journal: str, resource_type: str, resource_id: str) -> str:
    """
    Build a journal-scoped Redis key.

    Examples:
        get_key("epijinfo", "page", "/en/articles/12") -> "epi:epijinfo:page:/en/articles/12"
        get_key("dmtcs", "tag", "volumes") -> "epi:dmtcs:tag:volumes"
    """
    return f"epi:{journal}:{resource_type}:{resource_id}"


def get_page_key(journal: str, path: str) -> str:
    """Cached rendered page for one path."""
    return get_key(journal, "page", path)


def get_tag_key(journal: str, tag: str) -> str:
    """Set of page paths registered under a cache tag."""
    return get_key(journal, "tag", tag)


def get_revalidated_key(journal: str, kind: str, target: str) -> str:
    """
    Timestamp of the last revalidation of a tag or path.

    Example:
        get_revalidated_key("epijinfo", "tag", "news") -> "epi:epijinfo:revalidated:tag:news"
    """
    return f"epi:{journal}:revalidated:{kind}:{target}"


def get_channel(journal: str) -> str:
    """
    Pub/Sub channel the renderers listen on for invalidations.

    Example:
        get_channel("epijinfo") -> "epi:epijinfo:revalidate"
    """
    return f"epi:{journal}:revalidate"


def get_ratelimit_key(scope: str, ip: str) -> str:
    """
    Shared rate-limit counter (not journal-scoped: limits are per client IP).

    Example:
        get_ratelimit_key("pdf-proxy", "1.2.3.4") -> "epi:ratelimit:pdf-proxy:1.2.3.4"
    """
    return f"epi:ratelimit:{scope}:{ip}"
