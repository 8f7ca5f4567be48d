# Copyright (c) 2026 Epiplane Contributors. All Rights Reserved.

"""
Revalidation Authorization — Ordered chain of authorizers.

Each authorizer looks at the request and answers ALLOW (stop, authorized),
DENY (stop, rejected with a status) or PASS (ask the next one). The first
ALLOW or DENY wins; if every authorizer passes, the request is rejected 401.

Default order:
  1. IpAllowlistAuthorizer   — 403 if an allow-list is set and the IP is not on it
  2. TokenPresentAuthorizer  — 401 if no token header was sent
  3. TenantSecretAuthorizer  — ALLOW if the journal's own secret matches
  4. GlobalSecretAuthorizer  — ALLOW if the global secret matches, else 401
"""

from __future__ import annotations

import enum
import hmac
import logging
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Protocol, Sequence

logger = logging.getLogger("epi.auth")


class Verdict(str, enum.Enum):
    ALLOW = "allow"
    DENY = "deny"
    PASS = "pass"


@dataclass(frozen=True)
class RevalidationRequest:
    token: Optional[str]
    client_ip: str
    tag: Optional[str] = None
    path: Optional[str] = None
    tenant_id: Optional[str] = None


@dataclass(frozen=True)
class Decision:
    verdict: Verdict
    status_code: int = 200
    # journal whose secret authorized the request, or "global"
    scope: Optional[str] = None
    authorizer: str = ""

    @property
    def allowed(self) -> bool:
        return self.verdict is Verdict.ALLOW


PASS = Decision(Verdict.PASS)


class Authorizer(Protocol):
    name: str

    def __call__(self, request: RevalidationRequest) -> Decision: ...


def _secrets_match(expected: Optional[str], provided: Optional[str]) -> bool:
    if not expected or not provided:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


class IpAllowlistAuthorizer:
    name = "ip_allowlist"

    def __init__(self, allowed_ips: Iterable[str]) -> None:
        self._allowed = frozenset(ip.strip() for ip in allowed_ips if ip.strip())

    def __call__(self, request: RevalidationRequest) -> Decision:
        if self._allowed and request.client_ip not in self._allowed:
            return Decision(Verdict.DENY, 403, authorizer=self.name)
        return PASS


class TokenPresentAuthorizer:
    name = "token_present"

    def __call__(self, request: RevalidationRequest) -> Decision:
        if not request.token:
            return Decision(Verdict.DENY, 401, authorizer=self.name)
        return PASS


class TenantSecretAuthorizer:
    name = "tenant_secret"

    def __init__(self, secret_lookup: Callable[[str], Optional[str]]) -> None:
        self._lookup = secret_lookup

    def __call__(self, request: RevalidationRequest) -> Decision:
        if not request.tenant_id:
            return PASS
        if _secrets_match(self._lookup(request.tenant_id), request.token):
            return Decision(Verdict.ALLOW, scope=request.tenant_id, authorizer=self.name)
        return PASS


class GlobalSecretAuthorizer:
    name = "global_secret"

    def __init__(self, secret: Optional[str]) -> None:
        self._secret = secret

    def __call__(self, request: RevalidationRequest) -> Decision:
        if _secrets_match(self._secret, request.token):
            return Decision(Verdict.ALLOW, scope="global", authorizer=self.name)
        return Decision(Verdict.DENY, 401, authorizer=self.name)


class AuthorizerChain:
    """Runs authorizers in order; the first non-PASS decision wins."""

    def __init__(self, authorizers: Sequence[Authorizer]) -> None:
        self._authorizers: List[Authorizer] = list(authorizers)

    @property
    def names(self) -> List[str]:
        return [a.name for a in self._authorizers]

    def authorize(self, request: RevalidationRequest) -> Decision:
        for authorizer in self._authorizers:
            decision = authorizer(request)
            if decision.verdict is not Verdict.PASS:
                if not decision.allowed:
                    logger.warning(
                        "Revalidation rejected by %s (ip=%s, status=%d)",
                        decision.authorizer, request.client_ip, decision.status_code,
                        extra={"tenant_id": request.tenant_id},
                    )
                return decision
        return Decision(Verdict.DENY, 401, authorizer="exhausted")


def build_revalidation_chain(
    allowed_ips: Iterable[str],
    tenant_secret_lookup: Callable[[str], Optional[str]],
    global_secret: Optional[str],
) -> AuthorizerChain:
    return AuthorizerChain([
        IpAllowlistAuthorizer(allowed_ips),
        TokenPresentAuthorizer(),
        TenantSecretAuthorizer(tenant_secret_lookup),
        GlobalSecretAuthorizer(global_secret),
    ])
