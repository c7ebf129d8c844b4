"""
claims_data.models — DynamoDB table schemas as Python dataclasses.

Defines the canonical data model for all platform DynamoDB tables.

Tables defined here:
    claims-companies         — tenant directory (one record per company)
    claims-incident-reports  — incident reports, partitioned by company
    claims-properties        — homeowner properties, partitioned by owner

Key conventions:
    TENANT#{companyId}  partition owned by a company
    OWNER#{sub}         partition owned by a single user
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
TENANT_PK_PREFIX: str = "TENANT#"
OWNER_PK_PREFIX: str = "OWNER#"
PHOTO_PREFIX: str = "incident-photos/"

MAX_PHOTOS_PER_REPORT: int = 20
# Worker timeout; an "analyzing" blob older than this is considered abandoned.
ANALYSIS_STALE_SECONDS: int = 300


# ---------------------------------------------------------------------------
# Enums: constrained vocabulary for status/type fields
# ---------------------------------------------------------------------------


class UserGroup(StrEnum):
    SUPER_ADMIN = "SuperAdmin"
    ADMIN = "Admin"
    INCIDENT_REPORTER = "IncidentReporter"
    HOME_OWNER = "HomeOwner"


# Pre-rename name of HomeOwner; see scripts/migrate_group.py
LEGACY_CUSTOMER_GROUP: str = "Customer"

ROLE_PRIORITY: tuple[UserGroup, ...] = (
    UserGroup.SUPER_ADMIN,
    UserGroup.ADMIN,
    UserGroup.INCIDENT_REPORTER,
    UserGroup.HOME_OWNER,
)


class ReportStatus(StrEnum):
    SUBMITTED = "submitted"
    IN_REVIEW = "in_review"
    RESOLVED = "resolved"


class AnalysisStatus(StrEnum):
    PENDING = "pending"
    ANALYZING = "analyzing"
    COMPLETE = "complete"
    SKIPPED = "skipped"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Table: claims-companies
# PK: TENANT#{companyId}  SK: METADATA
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CompanyRecord:
    """Tenant directory record.

    settings is an opaque JSON string owned by the front end.
    max_users is the seat limit enforced when users are created; None means
    unlimited.
    """

    company_id: str
    name: str
    is_active: bool
    created_at: str  # ISO 8601 UTC
    updated_at: str  # ISO 8601 UTC
    domain: str | None = None
    logo_url: str | None = None
    settings: str | None = None
    max_users: int | None = None

    @property
    def pk(self) -> str:
        return f"{TENANT_PK_PREFIX}{self.company_id}"

    @property
    def sk(self) -> str:
        return "METADATA"


# ---------------------------------------------------------------------------
# Table: claims-incident-reports
# PK: TENANT#{companyId}  SK: REPORT#{reportId}
# GSI ReportIdIndex: reportId (HASH), used by super-admins and the worker
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class IncidentReportRecord:
    """Incident report record.

    ai_analysis and weather_report are JSON strings. photo_urls are storage
    keys under incident-photos/{companyId}/.
    """

    report_id: str
    company_id: str
    claim_number: str
    first_name: str
    last_name: str
    phone: str
    email: str
    address: str
    city: str
    state: str
    zip: str
    incident_date: str  # YYYY-MM-DD
    description: str
    status: ReportStatus
    submitted_at: str  # ISO 8601 UTC
    company_name: str | None = None
    apartment: str | None = None
    shingle_exposure: float | None = None
    photo_urls: tuple[str, ...] = field(default_factory=tuple)
    submitted_by: str | None = None
    ai_analysis: str | None = None
    weather_report: str | None = None

    def __post_init__(self) -> None:
        if len(self.photo_urls) > MAX_PHOTOS_PER_REPORT:
            raise ValueError(
                f"a report holds at most {MAX_PHOTOS_PER_REPORT} photos, "
                f"got {len(self.photo_urls)}"
            )

    @property
    def pk(self) -> str:
        return f"{TENANT_PK_PREFIX}{self.company_id}"

    @property
    def sk(self) -> str:
        return f"REPORT#{self.report_id}"


# ---------------------------------------------------------------------------
# Table: claims-properties
# PK: OWNER#{sub}  SK: PROPERTY#{propertyId}
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PropertyRecord:
    """Homeowner property record. Visible to its owner only."""

    property_id: str
    owner_sub: str
    property_name: str
    address: str
    city: str
    state: str
    zip: str
    apartment: str | None = None

    @property
    def pk(self) -> str:
        return f"{OWNER_PK_PREFIX}{self.owner_sub}"

    @property
    def sk(self) -> str:
        return f"PROPERTY#{self.property_id}"


def company_key(company_id: str) -> dict[str, str]:
    return {"PK": f"{TENANT_PK_PREFIX}{company_id}", "SK": "METADATA"}


def report_key(company_id: str, report_id: str) -> dict[str, str]:
    return {"PK": f"{TENANT_PK_PREFIX}{company_id}", "SK": f"REPORT#{report_id}"}


def property_key(owner_sub: str, property_id: str) -> dict[str, str]:
    return {"PK": f"{OWNER_PK_PREFIX}{owner_sub}", "SK": f"PROPERTY#{property_id}"}


# ---------------------------------------------------------------------------
# TenantContext: runtime identity passed to the scoped clients
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TenantContext:
    """
    Tenant identity context used by TenantScopedDynamoDB and TenantScopedS3.

    company_id scopes TENANT# partitions and photo keys; sub scopes OWNER#
    partitions.
    """

    company_id: str
    sub: str
    company_name: str | None = None
    groups: frozenset[str] = frozenset()
