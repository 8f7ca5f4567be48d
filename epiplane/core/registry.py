# Copyright (c) 2026 Epiplane Contributors. All Rights Reserved.

"""
Registries — Static lookup tables shared by routing, rebuild and gateways.

  - TenantRegistry:    known journal codes (external-assets/journals.txt)
  - TenantConfigStore: per-journal key/value config (.env.local.<code>),
                       loaded lazily and cached for the process lifetime
  - DomainAllowlist:   external document hosts the PDF relay may fetch from

The config cache is process-local: every instance of a horizontally scaled
deployment loads tenant files on its own.
"""

from __future__ import annotations

import io
import logging
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Union
from urllib.parse import urlsplit

from dotenv import dotenv_values
from dotenv.parser import parse_stream

from epiplane.core.config import settings

logger = logging.getLogger("epi.registry")

JOURNALS_FILE = "journals.txt"
ENV_FILE_PREFIX = ".env.local."

_JOURNAL_CODE_RE = re.compile(r"^[a-z0-9-]{2,50}$")


def is_valid_journal_code(code: Optional[str]) -> bool:
    """Lowercase letters, digits and hyphens, 2-50 chars (no path traversal)."""
    return bool(code) and bool(_JOURNAL_CODE_RE.match(code))


def env_file_path(journal_code: str, assets_dir: Union[str, Path, None] = None) -> Path:
    base = Path(assets_dir) if assets_dir is not None else settings.assets_path
    return base / f"{ENV_FILE_PREFIX}{journal_code}"


def read_env_file(path: Union[str, Path]) -> Dict[str, str]:
    """
    Parse a dotenv file strictly.

    Raises OSError / UnicodeDecodeError when the file cannot be read and
    ValueError on a malformed line; callers decide whether that is fatal.
    """
    path = Path(path)
    # dotenv_values only warns on bad lines, so validate with the parser first
    content = path.read_text(encoding="utf-8")
    for binding in parse_stream(io.StringIO(content)):
        if binding.error:
            raise ValueError(
                f"{path.name}: cannot parse line {binding.original.line}: "
                f"{binding.original.string.strip()!r}"
            )
    values = dotenv_values(stream=io.StringIO(content))
    return {k: v for k, v in values.items() if k and v}


# ── Tenants ──────────────────────────────────────────────────


class TenantRegistry:
    """Known journal codes. An empty registry accepts any code."""

    def __init__(self, codes: Iterable[str] = ()) -> None:
        self._codes: FrozenSet[str] = frozenset(c for c in codes if c)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "TenantRegistry":
        """Load one code per line; blank lines and `#` comments are skipped."""
        path = Path(path)
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.warning("Journals file not found: %s", path)
            return cls()
        except OSError as e:
            logger.error("Error loading journal codes from %s: %s", path, e)
            return cls()

        codes = [
            line.strip()
            for line in content.splitlines()
            if line.strip() and not line.strip().startswith("#")
        ]
        logger.info("Loaded %d journal codes from %s", len(codes), path)
        return cls(codes)

    @property
    def codes(self) -> FrozenSet[str]:
        return self._codes

    def __len__(self) -> int:
        return len(self._codes)

    def __contains__(self, code: object) -> bool:
        return code in self._codes

    def is_known(self, code: str) -> bool:
        if not self._codes:
            return True
        return code in self._codes


# ── Tenant configuration ─────────────────────────────────────


@dataclass(frozen=True)
class TenantConfig:
    """Key/value overrides for one journal. Immutable once loaded."""

    tenant_id: str
    env: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "env", MappingProxyType(dict(self.env)))

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.env.get(key, default)


class TenantConfigStore:
    """
    Lazily loads and caches TenantConfig per journal.

    A missing, unreadable or invalid-code file yields an empty config, never
    an exception. Only codes backed by a file on disk are cached, so lookups
    of arbitrary client-supplied codes cannot grow the cache.
    """

    def __init__(self, assets_dir: Union[str, Path, None] = None) -> None:
        self._assets_dir = Path(assets_dir) if assets_dir is not None else None
        self._cache: Dict[str, TenantConfig] = {}
        self._lock = threading.Lock()

    @property
    def assets_dir(self) -> Path:
        return self._assets_dir if self._assets_dir is not None else settings.assets_path

    def path_for(self, journal_code: str) -> Path:
        return env_file_path(journal_code, self.assets_dir)

    def load(self, journal_code: str) -> TenantConfig:
        cached = self._cache.get(journal_code)
        if cached is not None:
            return cached

        if not is_valid_journal_code(journal_code):
            logger.warning("Invalid journal code format: %r", journal_code)
            return TenantConfig(tenant_id=journal_code)

        path = self.path_for(journal_code)
        if not path.is_file():
            return TenantConfig(tenant_id=journal_code)

        with self._lock:
            cached = self._cache.get(journal_code)
            if cached is None:
                cached = self._read(journal_code, path)
                self._cache[journal_code] = cached
        return cached

    def _read(self, journal_code: str, path: Path) -> TenantConfig:
        try:
            env = read_env_file(path)
        except (OSError, UnicodeDecodeError, ValueError) as e:
            logger.error("Error loading config for %s: %s", journal_code, e,
                         extra={"tenant_id": journal_code})
            return TenantConfig(tenant_id=journal_code)
        return TenantConfig(tenant_id=journal_code, env=env)

    def public_env(self, journal_code: str) -> Dict[str, str]:
        """Only the NEXT_PUBLIC_* keys (safe to expose to browsers)."""
        config = self.load(journal_code)
        return {k: v for k, v in config.env.items() if k.startswith("NEXT_PUBLIC_")}

    def api_root(self, journal_code: str) -> str:
        """Backend API root for a journal, without trailing slash."""
        if settings.API_URL_FORCE:
            url = settings.API_URL_FORCE
        else:
            url = self.load(journal_code).get("NEXT_PUBLIC_API_ROOT_ENDPOINT") or settings.API_ROOT_ENDPOINT
        return url.rstrip("/")

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()


# ── External document hosts ──────────────────────────────────


class DomainAllowlist:
    """Hosts allowed for the PDF relay; subdomains of a listed host match too."""

    def __init__(self, domains: Iterable[str]) -> None:
        self._domains = tuple(d.lower().strip(".") for d in domains if d)

    @property
    def domains(self) -> tuple:
        return self._domains

    def allows_host(self, host: Optional[str]) -> bool:
        if not host:
            return False
        host = host.lower().rstrip(".")
        return any(host == d or host.endswith("." + d) for d in self._domains)

    def allows_url(self, url: str) -> bool:
        try:
            parts = urlsplit(url)
        except ValueError:
            return False
        if parts.scheme not in ("http", "https"):
            return False
        return self.allows_host(parts.hostname)


# ── Process-wide instances ───────────────────────────────────

_registry: Optional[TenantRegistry] = None
_config_store: Optional[TenantConfigStore] = None


def get_tenant_registry() -> TenantRegistry:
    global _registry
    if _registry is None:
        _registry = TenantRegistry.from_file(settings.assets_path / JOURNALS_FILE)
    return _registry


def get_config_store() -> TenantConfigStore:
    global _config_store
    if _config_store is None:
        _config_store = TenantConfigStore()
    return _config_store


def inject_registries_for_test(
    registry: Optional[TenantRegistry] = None,
    config_store: Optional[TenantConfigStore] = None,
) -> None:
    """Replace the process-wide registry/config store (testing only)."""
    global _registry, _config_store
    _registry = registry
    _config_store = config_store
