# Copyright (c) 2026 Epiplane Contributors. All Rights Reserved.
"""Unit tests for TenantContext."""

import dataclasses

import pytest

from epiplane.core.tenant import TenantContext


class TestTenantContext:
    def test_create(self):
        ctx = TenantContext(tenant_id="epijinfo", language="en")
        assert ctx.tenant_id == "epijinfo"
        assert ctx.fallback is False
        assert ctx.hostname == ""

    def test_empty_tenant_id_raises(self):
        with pytest.raises(ValueError, match="must not be empty"):
            TenantContext(tenant_id="", language="en")

    def test_empty_language_raises(self):
        with pytest.raises(ValueError, match="language"):
            TenantContext(tenant_id="epijinfo", language="")

    def test_immutable(self):
        ctx = TenantContext(tenant_id="epijinfo", language="fr")
        with pytest.raises(dataclasses.FrozenInstanceError):
            ctx.language = "en"

    def test_repr(self):
        assert "epijinfo" in repr(TenantContext(tenant_id="epijinfo", language="fr"))
