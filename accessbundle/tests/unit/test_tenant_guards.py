from __future__ import annotations

import pytest

from accessbundle.core.config import get_settings
from accessbundle.domain.models import UserBundleCache
from accessbundle.persistence.guards import TenantPredicateError, require_tenant_id, tenant_predicate


def test_missing_tenant_id_is_rejected() -> None:
    with pytest.raises(TenantPredicateError):
        require_tenant_id(None)
    with pytest.raises(TenantPredicateError):
        tenant_predicate(UserBundleCache, "")


def test_guard_can_be_disabled(monkeypatch) -> None:
    monkeypatch.setenv("AUTHZ_REQUIRE_TENANT_PREDICATE", "false")
    get_settings.cache_clear()
    require_tenant_id(None)


def test_tenant_predicate_compiles_to_equality() -> None:
    clause = tenant_predicate(UserBundleCache, "t-1")
    assert "user_bundle_cache.tenant_id" in str(clause)
