"""
tests/test_policy.py — Caller identity parsing and authorization rules.
"""

from __future__ import annotations

from typing import Any

import pytest
from claims_data import TenantAccessViolation
from claims_data.exceptions import UserNotFoundError
from claims_data.models import UserGroup
from claims_data.policy import (
    COMPANY,
    INCIDENT_REPORT,
    PROPERTY,
    USER,
    CallerContext,
    allowed_operations,
    assignable_groups,
    authorize,
    caller_from_claims,
    claim,
    effective_company_id,
    parse_groups,
    resolve_company,
)


def _caller(
    *groups: str,
    company_id: str | None = "co-1",
    username: str | None = "alice",
) -> CallerContext:
    return CallerContext(
        sub="sub-1",
        username=username,
        email="alice@example.com",
        groups=frozenset(groups),
        company_id=company_id,
        company_name="Acme Roofing" if company_id else None,
    )


class FakeDirectory:
    def __init__(self, attributes: dict[str, str] | None = None, error: Exception | None = None):
        self.attributes = attributes or {}
        self.error = error
        self.calls: list[str] = []

    def get_user_attributes(self, username: str) -> dict[str, str]:
        self.calls.append(username)
        if self.error is not None:
            raise self.error
        return self.attributes


# ---------------------------------------------------------------------------
# Claims parsing
# ---------------------------------------------------------------------------


def test_claim_prefers_custom_attribute() -> None:
    claims = {"custom:companyId": "co-custom", "companyId": "co-plain"}
    assert claim(claims, "companyId") == "co-custom"
    assert claim({"companyId": " co-plain "}, "companyId") == "co-plain"
    assert claim({"custom:companyId": "  "}, "companyId") is None


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        (None, frozenset()),
        (["Admin", "HomeOwner"], frozenset({"Admin", "HomeOwner"})),
        ('["SuperAdmin"]', frozenset({"SuperAdmin"})),
        ("Admin,IncidentReporter", frozenset({"Admin", "IncidentReporter"})),
        ("[Admin IncidentReporter]", frozenset({"Admin", "IncidentReporter"})),
        (42, frozenset()),
    ],
)
def test_parse_groups_accepts_every_claim_shape(raw: Any, expected: frozenset[str]) -> None:
    assert parse_groups(raw) == expected


def test_caller_from_claims_reads_cognito_claims() -> None:
    caller = caller_from_claims(
        {
            "sub": "sub-9",
            "cognito:username": "bob",
            "email": "bob@example.com",
            "cognito:groups": ["Customer"],
            "custom:companyId": "co-9",
            "custom:companyName": "Bob's Roofs",
        }
    )
    assert caller.sub == "sub-9"
    assert caller.username == "bob"
    assert caller.company_id == "co-9"
    assert caller.company_name == "Bob's Roofs"
    # Legacy group name is normalized
    assert caller.groups == frozenset({"HomeOwner"})


def test_caller_from_claims_reads_authoriser_context_keys() -> None:
    caller = caller_from_claims(
        {"sub": "sub-1", "companyid": "co-1", "companyname": "Acme"},
        groups='["Admin"]',
        username="alice",
    )
    assert caller.company_id == "co-1"
    assert caller.company_name == "Acme"
    assert caller.is_admin


def test_role_uses_highest_priority_group() -> None:
    assert _caller("HomeOwner", "Admin").role == UserGroup.ADMIN
    assert _caller("SuperAdmin", "IncidentReporter").role == UserGroup.SUPER_ADMIN
    assert _caller().role == UserGroup.HOME_OWNER
    assert _caller("Unknown").role == UserGroup.HOME_OWNER


def test_can_manage_users() -> None:
    assert _caller("Admin").can_manage_users
    assert _caller("SuperAdmin").can_manage_users
    assert not _caller("IncidentReporter").can_manage_users


# ---------------------------------------------------------------------------
# Directory fallback
# ---------------------------------------------------------------------------


def test_resolve_company_fills_missing_company_from_directory() -> None:
    directory = FakeDirectory(
        {"custom:companyId": "co-dir", "custom:companyName": "Directory Co"}
    )
    resolved = resolve_company(_caller("Admin", company_id=None), directory)
    assert resolved.company_id == "co-dir"
    assert resolved.company_name == "Directory Co"
    assert directory.calls == ["alice"]


def test_resolve_company_skips_lookup_when_not_needed() -> None:
    directory = FakeDirectory({"custom:companyId": "co-dir"})
    has_company = _caller("Admin")
    super_admin = _caller("SuperAdmin", company_id=None)
    anonymous = _caller("Admin", company_id=None, username=None)

    assert resolve_company(has_company, directory) is has_company
    assert resolve_company(super_admin, directory) is super_admin
    assert resolve_company(anonymous, directory) is anonymous
    assert directory.calls == []


def test_resolve_company_returns_caller_when_lookup_fails() -> None:
    caller = _caller("Admin", company_id=None)
    directory = FakeDirectory(error=UserNotFoundError("alice"))
    assert resolve_company(caller, directory) is caller


def test_resolve_company_returns_caller_when_directory_has_no_company() -> None:
    caller = _caller("Admin", company_id=None)
    assert resolve_company(caller, FakeDirectory({"email": "a@b.co"})) is caller


# ---------------------------------------------------------------------------
# Rule evaluation
# ---------------------------------------------------------------------------


def test_allowed_operations_per_group() -> None:
    assert allowed_operations(_caller("IncidentReporter"), INCIDENT_REPORT) == frozenset(
        {"create", "read", "list", "update"}
    )
    assert allowed_operations(_caller("HomeOwner"), INCIDENT_REPORT) == frozenset(
        {"read", "list"}
    )
    assert allowed_operations(_caller("IncidentReporter"), USER) == frozenset()
    # No groups at all behaves like HomeOwner
    assert allowed_operations(_caller(), COMPANY) == frozenset({"read"})


def test_unknown_group_only_gets_home_owner_permissions() -> None:
    caller = _caller("Auditors")
    assert caller.role == "HomeOwner"
    assert allowed_operations(caller, INCIDENT_REPORT) == allowed_operations(
        _caller("HomeOwner"), INCIDENT_REPORT
    )
    assert allowed_operations(_caller("Auditors", "IncidentReporter"), INCIDENT_REPORT) == (
        allowed_operations(_caller("IncidentReporter"), INCIDENT_REPORT)
    )


def test_allowed_operations_union_of_groups() -> None:
    ops = allowed_operations(_caller("HomeOwner", "Admin"), INCIDENT_REPORT)
    assert "delete" in ops


def test_authorize_denies_missing_operation() -> None:
    with pytest.raises(PermissionError):
        authorize(_caller("IncidentReporter"), INCIDENT_REPORT, "delete")
    with pytest.raises(PermissionError):
        authorize(_caller("Admin"), COMPANY, "create")


def test_authorize_rejects_other_company() -> None:
    with pytest.raises(TenantAccessViolation) as exc_info:
        authorize(_caller("Admin"), INCIDENT_REPORT, "read", company_id="co-2")
    assert exc_info.value.tenant_id == "co-2"
    assert exc_info.value.caller_tenant_id == "co-1"


def test_authorize_allows_own_company_and_super_admin() -> None:
    authorize(_caller("Admin"), INCIDENT_REPORT, "read", company_id="co-1")
    authorize(_caller("SuperAdmin"), INCIDENT_REPORT, "delete", company_id="co-2")
    authorize(_caller("SuperAdmin"), COMPANY, "create")


def test_authorize_property_ignores_company() -> None:
    authorize(_caller("HomeOwner", company_id=None), PROPERTY, "create", company_id="co-2")


def test_effective_company_id() -> None:
    assert effective_company_id(_caller("Admin"), "co-other") == "co-1"
    assert effective_company_id(_caller("SuperAdmin"), "co-other") == "co-other"
    assert effective_company_id(_caller("SuperAdmin"), None) == "co-1"
    with pytest.raises(ValueError):
        effective_company_id(_caller("SuperAdmin", company_id=None), None)
    with pytest.raises(PermissionError):
        effective_company_id(_caller("Admin", company_id=None), "co-2")


def test_assignable_groups() -> None:
    assert assignable_groups(_caller("Admin")) == frozenset(
        {"Admin", "IncidentReporter", "HomeOwner"}
    )
    assert "SuperAdmin" in assignable_groups(_caller("SuperAdmin"))
