# Copyright (c) 2026 Epiplane Contributors. All Rights Reserved.

"""
Shared test fixtures for all Epiplane tests.
"""

import pytest
import fakeredis.aioredis

from epiplane.core.metrics import platform_metrics
from epiplane.core.registry import (
    TenantConfigStore,
    TenantRegistry,
    inject_registries_for_test,
)
from epiplane.kernel.redis_client import inject_redis_for_test

EPIJINFO_ENV = """\
# epijinfo site configuration
NEXT_PUBLIC_JOURNAL_NAME="Episciences Journal"
NEXT_PUBLIC_API_ROOT_ENDPOINT=https://api.example.org/api/
REVALIDATION_SECRET=tenant-secret
JOURNAL_NAME=epijinfo-site
EMPTY=
"""

DMTCS_ENV = "REVALIDATION_SECRET=dmtcs-secret\n"


@pytest.fixture(autouse=True)
def reset_metrics():
    platform_metrics.reset()
    yield
    platform_metrics.reset()


@pytest.fixture
def mock_redis():
    """Provide a FakeRedis async instance as the shared pool."""
    r = fakeredis.aioredis.FakeRedis(decode_responses=True)
    inject_redis_for_test(r)
    yield r
    inject_redis_for_test(None)


@pytest.fixture
def assets_dir(tmp_path):
    """An external-assets directory with two journals."""
    assets = tmp_path / "external-assets"
    assets.mkdir()
    (assets / "journals.txt").write_text("# journal codes\nepijinfo\ndmtcs\n\n", encoding="utf-8")
    (assets / ".env.local.epijinfo").write_text(EPIJINFO_ENV, encoding="utf-8")
    (assets / ".env.local.dmtcs").write_text(DMTCS_ENV, encoding="utf-8")
    return assets


@pytest.fixture
def registries(assets_dir):
    """Install registry and config store backed by `assets_dir`."""
    registry = TenantRegistry.from_file(assets_dir / "journals.txt")
    store = TenantConfigStore(assets_dir)
    inject_registries_for_test(registry, store)
    yield registry, store
    inject_registries_for_test(None, None)
