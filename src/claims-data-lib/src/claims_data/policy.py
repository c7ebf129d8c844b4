"""
claims_data.policy — Caller identity and authorization rules.

One rule set shared by the scoped data clients, the admin-actions Lambda
and the REST handlers, so the three isolation layers cannot drift apart.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, replace
from typing import Any

from aws_lambda_powertools import Logger

from claims_data.exceptions import TenantAccessViolation
from claims_data.models import LEGACY_CUSTOMER_GROUP, ROLE_PRIORITY, UserGroup

logger = Logger(service="claims-data-lib")

# ---------------------------------------------------------------------------
# Authorization rules
# ---------------------------------------------------------------------------

ALL_OPERATIONS: frozenset[str] = frozenset({"create", "read", "list", "update", "delete"})

COMPANY = "Company"
INCIDENT_REPORT = "IncidentReport"
USER = "User"
PROPERTY = "Property"

# Model -> group -> operations. Property is owner-scoped; ownership is
# enforced by the OWNER# partition, not by the caller's company.
MODEL_RULES: dict[str, dict[str, frozenset[str]]] = {
    COMPANY: {
        UserGroup.SUPER_ADMIN: ALL_OPERATIONS,
        UserGroup.ADMIN: frozenset({"read", "list"}),
        UserGroup.INCIDENT_REPORTER: frozenset({"read"}),
        UserGroup.HOME_OWNER: frozenset({"read"}),
    },
    INCIDENT_REPORT: {
        UserGroup.SUPER_ADMIN: ALL_OPERATIONS,
        UserGroup.ADMIN: ALL_OPERATIONS,
        UserGroup.INCIDENT_REPORTER: frozenset({"create", "read", "list", "update"}),
        UserGroup.HOME_OWNER: frozenset({"read", "list"}),
    },
    USER: {
        UserGroup.SUPER_ADMIN: ALL_OPERATIONS,
        UserGroup.ADMIN: ALL_OPERATIONS,
    },
    PROPERTY: {
        UserGroup.SUPER_ADMIN: ALL_OPERATIONS,
        UserGroup.ADMIN: ALL_OPERATIONS,
        UserGroup.INCIDENT_REPORTER: ALL_OPERATIONS,
        UserGroup.HOME_OWNER: ALL_OPERATIONS,
    },
}

# Roles an admin may hand out through updateUserRole.
ASSIGNABLE_ROLES: tuple[str, ...] = (
    UserGroup.ADMIN,
    UserGroup.INCIDENT_REPORTER,
    UserGroup.HOME_OWNER,
)


# ---------------------------------------------------------------------------
# Claims parsing
# ---------------------------------------------------------------------------


def claim(claims: dict[str, Any], name: str) -> str | None:
    """Read custom:{name}, falling back to the plain {name} claim."""
    for key in (f"custom:{name}", name):
        value = claims.get(key)
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def parse_groups(value: Any) -> frozenset[str]:
    """Accept a list, a JSON-encoded list or a comma/space separated string."""
    if value is None:
        return frozenset()
    if isinstance(value, (list, tuple, set, frozenset)):
        return frozenset(str(v).strip() for v in value if str(v).strip())
    if isinstance(value, str):
        text = value.strip()
        if text.startswith("["):
            try:
                decoded = json.loads(text)
            except json.JSONDecodeError:
                decoded = None
            if isinstance(decoded, list):
                return parse_groups(decoded)
            text = text.strip("[]")
        normalized = text.replace(",", " ").replace('"', " ").split()
        return frozenset(part.strip() for part in normalized if part.strip())
    return frozenset()


def _normalize_group(group: str) -> str:
    if group == LEGACY_CUSTOMER_GROUP:
        return UserGroup.HOME_OWNER.value
    return group


# ---------------------------------------------------------------------------
# CallerContext
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CallerContext:
    sub: str | None
    username: str | None
    email: str | None
    groups: frozenset[str]
    company_id: str | None
    company_name: str | None

    @property
    def is_super_admin(self) -> bool:
        return UserGroup.SUPER_ADMIN in self.groups

    @property
    def is_admin(self) -> bool:
        return UserGroup.ADMIN in self.groups

    @property
    def can_manage_users(self) -> bool:
        return self.is_super_admin or self.is_admin

    @property
    def role(self) -> UserGroup:
        """Highest-priority group; callers without a known group are HomeOwner."""
        normalized = {_normalize_group(g) for g in self.groups}
        for group in ROLE_PRIORITY:
            if group in normalized:
                return group
        return UserGroup.HOME_OWNER


def caller_from_claims(
    claims: dict[str, Any],
    *,
    groups: Any = None,
    username: str | None = None,
) -> CallerContext:
    if groups is None:
        groups = claims.get("cognito:groups") or claims.get("groups")
    return CallerContext(
        sub=claim(claims, "sub"),
        username=username or claim(claims, "cognito:username") or claim(claims, "username"),
        email=claim(claims, "email"),
        groups=frozenset(_normalize_group(g) for g in parse_groups(groups)),
        company_id=claim(claims, "companyId") or claim(claims, "companyid"),
        company_name=claim(claims, "companyName") or claim(claims, "companyname"),
    )


def resolve_company(caller: CallerContext, directory: Any) -> CallerContext:
    """Fill a missing company from the user directory.

    Only applies to non-super-admins without a company claim whose username
    is known. A failed lookup is logged and the caller returned unchanged.
    """
    if caller.is_super_admin or caller.company_id or not caller.username:
        return caller
    logger.info(
        "Company claim missing, falling back to directory lookup",
        extra={"username": caller.username},
    )
    try:
        attributes = directory.get_user_attributes(caller.username)
    except Exception:
        logger.exception(
            "Directory fallback lookup failed",
            extra={"username": caller.username},
        )
        return caller
    company_id = attributes.get("custom:companyId") or None
    if company_id is None:
        return caller
    return replace(
        caller,
        company_id=company_id,
        company_name=attributes.get("custom:companyName") or caller.company_name,
    )


# ---------------------------------------------------------------------------
# Rule evaluation
# ---------------------------------------------------------------------------


def allowed_operations(caller: CallerContext, model: str) -> frozenset[str]:
    rules = MODEL_RULES.get(model, {})
    allowed: set[str] = set()
    for group in caller.groups:
        allowed |= rules.get(_normalize_group(group), frozenset())
    if not any(_normalize_group(g) in ROLE_PRIORITY for g in caller.groups):
        allowed |= rules.get(UserGroup.HOME_OWNER, frozenset())
    return frozenset(allowed)


def authorize(
    caller: CallerContext,
    model: str,
    operation: str,
    *,
    company_id: str | None = None,
) -> None:
    """Raise unless the caller may perform operation on model.

    company_id is the owning company of the record being touched; for a
    non-super-admin it must be the caller's company.
    """
    if operation not in allowed_operations(caller, model):
        raise PermissionError(f"{caller.role} may not {operation} {model}")
    if company_id is None or caller.is_super_admin or model == PROPERTY:
        return
    if caller.company_id != company_id:
        raise TenantAccessViolation(
            tenant_id=company_id,
            caller_tenant_id=caller.company_id or "none",
            attempted_key=f"{model}:{company_id}",
        )


def effective_company_id(caller: CallerContext, requested: str | None) -> str:
    """Company an operation should target.

    Super-admins may name any company; everyone else is pinned to their own.
    """
    if caller.is_super_admin:
        target = requested or caller.company_id
        if not target:
            raise ValueError("companyId is required")
        return target
    if not caller.company_id:
        raise PermissionError("Caller has no associated company")
    return caller.company_id


def assignable_groups(caller: CallerContext) -> frozenset[str]:
    if caller.is_super_admin:
        return frozenset({*ASSIGNABLE_ROLES, UserGroup.SUPER_ADMIN})
    return frozenset(ASSIGNABLE_ROLES)
