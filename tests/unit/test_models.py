"""
tests/unit/test_models.py — Schema constraint tests for claims_data.models.

Validates:
- PK/SK key patterns for companies, reports and properties
- Enum values enforce constrained vocabulary
- The per-report photo limit
- Frozen dataclass immutability
"""

import dataclasses

import pytest
from claims_data.models import (
    ANALYSIS_STALE_SECONDS,
    LEGACY_CUSTOMER_GROUP,
    MAX_PHOTOS_PER_REPORT,
    PHOTO_PREFIX,
    ROLE_PRIORITY,
    AnalysisStatus,
    CompanyRecord,
    IncidentReportRecord,
    PropertyRecord,
    ReportStatus,
    TenantContext,
    UserGroup,
    company_key,
    property_key,
    report_key,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------


class TestConstants:
    def test_photo_limit_is_20(self):
        assert MAX_PHOTOS_PER_REPORT == 20

    def test_analysis_goes_stale_after_5_minutes(self):
        assert ANALYSIS_STALE_SECONDS == 5 * 60

    def test_photo_prefix(self):
        assert PHOTO_PREFIX == "incident-photos/"

    def test_role_priority_orders_super_admin_first(self):
        assert ROLE_PRIORITY[0] == UserGroup.SUPER_ADMIN
        assert ROLE_PRIORITY[-1] == UserGroup.HOME_OWNER

    def test_legacy_group_name(self):
        assert LEGACY_CUSTOMER_GROUP == "Customer"


# ---------------------------------------------------------------------------
# CompanyRecord
# ---------------------------------------------------------------------------


def _make_company(**overrides) -> CompanyRecord:
    defaults = dict(
        company_id="co-abc123",
        name="Acme Roofing",
        is_active=True,
        created_at="2026-02-24T00:00:00Z",
        updated_at="2026-02-24T00:00:00Z",
    )
    defaults.update(overrides)
    return CompanyRecord(**defaults)


class TestCompanyRecord:
    def test_keys(self):
        company = _make_company(company_id="co-xyz")
        assert company.pk == "TENANT#co-xyz"
        assert company.sk == "METADATA"
        assert company_key("co-xyz") == {"PK": company.pk, "SK": company.sk}

    def test_optional_fields_default_none(self):
        company = _make_company()
        assert company.domain is None
        assert company.logo_url is None
        assert company.settings is None
        assert company.max_users is None

    def test_frozen(self):
        company = _make_company()
        with pytest.raises((dataclasses.FrozenInstanceError, TypeError)):
            company.is_active = False  # type: ignore[misc]


# ---------------------------------------------------------------------------
# IncidentReportRecord
# ---------------------------------------------------------------------------


def _make_report(**overrides) -> IncidentReportRecord:
    defaults = dict(
        report_id="r-001",
        company_id="co-abc123",
        claim_number="CLM-1",
        first_name="Dana",
        last_name="Reyes",
        phone="(512) 555-0100",
        email="dana@example.com",
        address="12 Oak St",
        city="Austin",
        state="TX",
        zip="78701",
        incident_date="2026-04-02",
        description="Hail damage on the north slope",
        status=ReportStatus.SUBMITTED,
        submitted_at="2026-04-03T10:00:00Z",
    )
    defaults.update(overrides)
    return IncidentReportRecord(**defaults)


class TestIncidentReportRecord:
    def test_keys(self):
        report = _make_report()
        assert report.pk == "TENANT#co-abc123"
        assert report.sk == "REPORT#r-001"
        assert report_key("co-abc123", "r-001") == {"PK": report.pk, "SK": report.sk}

    def test_photo_limit_enforced(self):
        photos = tuple(f"incident-photos/co-abc123/{i}.jpg" for i in range(21))
        with pytest.raises(ValueError, match="at most 20"):
            _make_report(photo_urls=photos)

    def test_twenty_photos_allowed(self):
        photos = tuple(f"incident-photos/co-abc123/{i}.jpg" for i in range(20))
        assert len(_make_report(photo_urls=photos).photo_urls) == 20

    def test_optional_fields_default_none(self):
        report = _make_report()
        assert report.ai_analysis is None
        assert report.weather_report is None
        assert report.photo_urls == ()


# ---------------------------------------------------------------------------
# PropertyRecord / TenantContext
# ---------------------------------------------------------------------------


class TestPropertyRecord:
    def test_keys_are_owner_scoped(self):
        prop = PropertyRecord(
            property_id="p-1",
            owner_sub="sub-1",
            property_name="Lake house",
            address="400 Shore Rd",
            city="Austin",
            state="TX",
            zip="78702",
        )
        assert prop.pk == "OWNER#sub-1"
        assert prop.sk == "PROPERTY#p-1"
        assert property_key("sub-1", "p-1") == {"PK": prop.pk, "SK": prop.sk}


class TestTenantContext:
    def test_defaults(self):
        ctx = TenantContext(company_id="co-1", sub="sub-1")
        assert ctx.company_name is None
        assert ctx.groups == frozenset()


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class TestEnums:
    def test_user_groups(self):
        assert {g.value for g in UserGroup} == {
            "SuperAdmin",
            "Admin",
            "IncidentReporter",
            "HomeOwner",
        }

    def test_report_status_rejects_invalid(self):
        assert ReportStatus("in_review") is ReportStatus.IN_REVIEW
        with pytest.raises(ValueError):
            ReportStatus("closed")

    def test_analysis_status_values(self):
        assert {s.value for s in AnalysisStatus} == {
            "pending",
            "analyzing",
            "complete",
            "skipped",
            "failed",
        }
