from __future__ import annotations

import pytest

from accessbundle.domain.permissions import (
    DomainPermissionKey,
    FunctionPermission,
    PermissionShape,
    Scope,
    classify_permission,
    decode_domain_permission,
    encode_domain_permission,
    is_valid_scope,
)


def test_domain_permission_encodes_with_colon_before_action() -> None:
    key = DomainPermissionKey("hvac", "chiller", "plant_room", "read")
    assert encode_domain_permission(key) == "hvac.chiller.plant_room:read"


@pytest.mark.parametrize(
    "key",
    [
        DomainPermissionKey("hvac", "chiller", "plant_room", "read"),
        DomainPermissionKey("alarms", "rules", "site_1", "update"),
        DomainPermissionKey("A1", "b_2", "C3", "x"),
    ],
)
def test_domain_permission_decode_inverts_encode(key: DomainPermissionKey) -> None:
    assert decode_domain_permission(key.encode()) == key


@pytest.mark.parametrize(
    "value",
    [
        "",
        "hvac.chiller:read",
        "hvac.chiller.plant_room.read",
        "hvac.chiller.plant_room.extra:read",
        "hvac.chiller.plant_room:read:write",
        "hvac..plant_room:read",
        "hvac.chiller.plant room:read",
        "alarms.*.*:read",
    ],
)
def test_domain_permission_decode_rejects_malformed(value: str) -> None:
    # Decode failure is a routing signal, never an exception.
    assert decode_domain_permission(value) is None


def test_domain_permission_decode_tolerates_non_strings() -> None:
    assert DomainPermissionKey.decode(None) is None  # type: ignore[arg-type]


def test_legacy_all_dots_form_decodes_only_through_legacy_path() -> None:
    value = "hvac.chiller.plant_room.read"
    assert DomainPermissionKey.decode(value) is None
    assert DomainPermissionKey.decode_legacy(value) == DomainPermissionKey("hvac", "chiller", "plant_room", "read")


def test_classify_permission_routes_each_shape() -> None:
    assert classify_permission("alarms.rules.read") == PermissionShape.FUNCTION
    assert classify_permission("*.*.*") == PermissionShape.FUNCTION
    assert classify_permission("hvac.chiller.plant_room:read") == PermissionShape.DOMAIN
    assert classify_permission("hvac.chiller.plant_room.read") == PermissionShape.LEGACY_DOMAIN
    assert classify_permission("alarms.read") == PermissionShape.UNKNOWN
    assert classify_permission("") == PermissionShape.UNKNOWN


def test_function_permission_requires_three_segments() -> None:
    assert FunctionPermission.parse("alarms.rules.read") == FunctionPermission("alarms", "rules", "read")
    assert FunctionPermission.parse("alarms.rules") is None
    assert FunctionPermission.parse("alarms.rules.read.extra") is None


def test_function_permission_wildcards_cover_whole_segments() -> None:
    pattern = FunctionPermission.parse("alarms.*.read")
    assert pattern.covers(FunctionPermission("alarms", "rules", "read"))
    assert not pattern.covers(FunctionPermission("alarms", "rules", "update"))
    assert not FunctionPermission.parse("alarms.rul*.read").covers(FunctionPermission("alarms", "rules", "read"))


def test_scope_parse_is_lenient_and_validation_is_strict() -> None:
    assert Scope.parse("customer:cust-1") == Scope("customer", "cust-1")
    assert Scope.parse("tenant:*").is_wildcard
    assert Scope.parse("customer") is None
    assert Scope.parse(":x") is None

    assert is_valid_scope("customer:cust-1")
    assert is_valid_scope("tenant:*")
    assert not is_valid_scope("Customer:cust-1")
    assert not is_valid_scope("customer:")
    assert not is_valid_scope("customer cust-1")
