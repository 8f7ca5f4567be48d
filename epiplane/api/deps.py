# Copyright (c) 2026 Epiplane Contributors. All Rights Reserved.

"""
API Dependencies — FastAPI dependency injection.
"""

from __future__ import annotations

import ipaddress
import logging
from typing import Iterable, List, Optional, Union

from fastapi import Request

from epiplane.cache.invalidator import CacheInvalidator
from epiplane.core.config import settings
from epiplane.core.registry import TenantConfigStore, get_config_store, get_tenant_registry
from epiplane.kernel.redis_client import get_redis_pool

logger = logging.getLogger("epi.api")

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


def _networks(entries: Iterable[str]) -> List[IPNetwork]:
    networks = []
    for entry in entries:
        try:
            networks.append(ipaddress.ip_network(entry, strict=False))
        except ValueError:
            logger.warning("Ignoring invalid trusted proxy entry: %r", entry)
    return networks


def _is_trusted(ip: str, networks: List[IPNetwork]) -> bool:
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return any(addr in net for net in networks)


def get_client_ip(request: Request, trusted_proxies: Optional[Iterable[str]] = None) -> str:
    """
    Resolve the caller's IP.

    The socket peer, unless the peer is a trusted proxy: then the rightmost
    X-Forwarded-For hop that is not itself trusted, else X-Real-IP.
    """
    peer = request.client.host if request.client and request.client.host else None
    if peer is None:
        return "unknown"

    trusted = _networks(settings.trusted_proxies if trusted_proxies is None else trusted_proxies)
    if not _is_trusted(peer, trusted):
        return peer

    hops = [h.strip() for h in request.headers.get("x-forwarded-for", "").split(",") if h.strip()]
    for hop in reversed(hops):
        if not _is_trusted(hop, trusted):
            return hop
    if hops:
        return hops[0]

    real_ip = request.headers.get("x-real-ip", "").strip()
    return real_ip or peer


def get_tenant_configs() -> TenantConfigStore:
    return get_config_store()


async def get_cache_invalidator() -> CacheInvalidator:
    return CacheInvalidator(await get_redis_pool(), journals=get_tenant_registry().codes)
