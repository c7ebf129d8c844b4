"""
admin_actions.handler — Privileged user-pool actions Lambda.

Second isolation layer: every action re-derives the caller's company from
identity claims (with a directory fallback) before touching another user.

Invoked either directly ({"action", "payload", "identity"}) by the user
REST API or through the GraphQL layer ({"fieldName", "arguments",
"identity"}). GraphQL callers receive the bare result; direct callers a
wrapped one. Failures propagate as exceptions so the Lambda errorType
reaches the caller.
"""

from __future__ import annotations

import os
import secrets
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

import boto3
from aws_lambda_powertools import Logger

from claims_data.directory import CognitoDirectory
from claims_data.exceptions import SeatLimitExceeded, TenantAccessViolation
from claims_data.formatting import (
    COMPANY_ATTRIBUTES,
    validate_email,
    validate_profile_attributes,
)
from claims_data.models import UserGroup, company_key
from claims_data.policy import (
    CallerContext,
    assignable_groups,
    caller_from_claims,
    resolve_company,
)

logger = Logger(service="admin-actions")

_COMPANIES_TABLE_ENV = "COMPANIES_TABLE_NAME"


@dataclass(frozen=True)
class AdminActionsDependencies:
    directory: Any
    dynamodb: Any


def _companies_table_name() -> str:
    return os.environ.get(_COMPANIES_TABLE_ENV, "claims-companies")


def _dependencies() -> AdminActionsDependencies:
    region = os.environ["AWS_REGION"]
    session = boto3.session.Session(region_name=region)
    return AdminActionsDependencies(
        directory=CognitoDirectory(os.environ["USER_POOL_ID"], session.client("cognito-idp")),
        dynamodb=session.resource("dynamodb"),
    )


def _iso_or_none(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _temporary_password() -> str:
    # Satisfies the pool policy: upper, lower, digit and symbol.
    return f"Temp{secrets.token_hex(4)}{secrets.randbelow(10)}!"


def _caller_context(event: dict[str, Any], deps: AdminActionsDependencies) -> CallerContext:
    identity = event.get("identity") or {}
    claims = identity.get("claims") or {}
    caller = caller_from_claims(
        claims,
        groups=identity.get("groups") or claims.get("cognito:groups"),
        username=identity.get("username"),
    )
    if caller.is_admin:
        caller = resolve_company(caller, deps.directory)
    return caller


def _require_company(caller: CallerContext) -> str:
    if not caller.company_id:
        raise PermissionError("Unauthorized: Admin has no associated company")
    return caller.company_id


def _require_user_manager(caller: CallerContext) -> None:
    if not caller.can_manage_users:
        raise PermissionError("Unauthorized: Insufficient permissions to manage users")


def _check_target_company(
    caller: CallerContext,
    deps: AdminActionsDependencies,
    username: str,
) -> dict[str, str]:
    """Fetch the target user's attributes and enforce the company boundary."""
    attributes = deps.directory.get_user_attributes(username)
    if caller.is_super_admin:
        return attributes
    company_id = _require_company(caller)
    target_company = attributes.get("custom:companyId")
    if target_company != company_id:
        logger.error(
            "Cross-company user action refused",
            extra={"username": username, "target_company_id": target_company},
        )
        raise TenantAccessViolation(
            tenant_id=target_company or "none",
            caller_tenant_id=company_id,
            attempted_key=f"user:{username}",
        )
    if UserGroup.SUPER_ADMIN.value in deps.directory.list_groups_for_user(username):
        logger.error("Admin action on a SuperAdmin refused", extra={"username": username})
        raise PermissionError("Unauthorized: Only SuperAdmin may manage a SuperAdmin")
    return attributes


def _validate_group(caller: CallerContext, group: Any) -> str:
    text = str(group or "").strip()
    allowed = assignable_groups(caller)
    if text not in allowed:
        raise ValueError(f"role must be one of: {', '.join(sorted(allowed))}")
    return text


def _company_seat_limit(deps: AdminActionsDependencies, company_id: str) -> int | None:
    table = deps.dynamodb.Table(_companies_table_name())
    item = table.get_item(Key=company_key(company_id)).get("Item")
    if not item or item.get("maxUsers") is None:
        return None
    value = item["maxUsers"]
    return int(value) if isinstance(value, (int, Decimal)) else int(str(value))


def _count_company_users(deps: AdminActionsDependencies, company_id: str) -> int:
    count = 0
    for user in deps.directory.iter_users():
        attrs = {a["Name"]: a.get("Value") for a in user.get("Attributes", [])}
        if attrs.get("custom:companyId") == company_id:
            count += 1
    return count


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


def _list_users(caller: CallerContext, deps: AdminActionsDependencies) -> list[dict[str, Any]]:
    _require_user_manager(caller)
    if not caller.is_super_admin and not caller.company_id:
        logger.warning(
            "Admin has no companyId, returning empty list",
            extra={"username": caller.username},
        )
        return []

    users: list[dict[str, Any]] = []
    for user in deps.directory.iter_users():
        try:
            groups = deps.directory.list_groups_for_user(user["Username"])
        except Exception:
            logger.exception("Failed to list groups for user", extra={"username": user["Username"]})
            groups = []
        users.append(deps.directory.serialize_user(user, groups=groups))

    if caller.is_super_admin:
        return users
    return [u for u in users if u.get("companyId") == caller.company_id]


def _create_user(
    caller: CallerContext,
    deps: AdminActionsDependencies,
    payload: dict[str, Any],
) -> dict[str, Any]:
    _require_user_manager(caller)
    email = validate_email(payload.get("email"))
    group = payload.get("group")
    if group:
        group = _validate_group(caller, group)

    company_id = payload.get("companyId")
    company_name = payload.get("companyName")
    if not caller.is_super_admin:
        company_id = _require_company(caller)
        company_name = caller.company_name or company_name

    if company_id:
        limit = _company_seat_limit(deps, company_id)
        if limit is not None and _count_company_users(deps, company_id) >= limit:
            raise SeatLimitExceeded(f"Company {company_id} has reached its limit of {limit} users")

    attributes = {"email": email, "email_verified": "true"}
    if company_id:
        attributes["custom:companyId"] = str(company_id)
    if company_name:
        attributes["custom:companyName"] = str(company_name)

    temp_password = payload.get("tempPassword") or _temporary_password()
    created = deps.directory.create_user(
        email,
        attributes,
        temporary_password=temp_password,
        send_invite=bool(payload.get("sendInvite")),
    )
    deps.directory.set_password(email, temp_password, permanent=False)
    if group:
        deps.directory.add_to_group(email, group)

    logger.info("User created", extra={"username": email, "company_id": company_id})
    return {
        "username": created.get("Username", email),
        "email": email,
        "emailVerified": True,
        "status": created.get("UserStatus"),
        "enabled": created.get("Enabled"),
        "createdAt": _iso_or_none(created.get("UserCreateDate")),
        "groups": [group] if group else [],
        "companyId": company_id,
        "companyName": company_name,
    }


def _delete_user(
    caller: CallerContext,
    deps: AdminActionsDependencies,
    payload: dict[str, Any],
) -> dict[str, Any]:
    username = str(payload.get("username") or "").strip()
    if not username:
        raise ValueError("Username is required for deleteUser")
    if not caller.can_manage_users:
        raise PermissionError("Unauthorized: Insufficient permissions to delete users")
    _check_target_company(caller, deps, username)
    deps.directory.delete_user(username)
    return {"username": username}


def _update_user_role(
    caller: CallerContext,
    deps: AdminActionsDependencies,
    payload: dict[str, Any],
) -> dict[str, Any]:
    _require_user_manager(caller)
    username = str(payload.get("username") or "").strip()
    if not username:
        raise ValueError("Username is required for updateUserRole")
    role = _validate_group(caller, payload.get("role"))
    _check_target_company(caller, deps, username)

    for group in deps.directory.list_groups_for_user(username):
        deps.directory.remove_from_group(username, group)
    deps.directory.add_to_group(username, role)

    logger.info("User role updated", extra={"username": username, "role": role})
    return {"username": username, "role": role}


def _profile_attributes(caller: CallerContext, payload: dict[str, Any]) -> dict[str, str]:
    attributes = validate_profile_attributes(payload.get("attributes"))
    if COMPANY_ATTRIBUTES & set(attributes) and not caller.is_super_admin:
        raise PermissionError("Only SuperAdmin may change a user's company")
    return attributes


def _update_user_profile(
    caller: CallerContext,
    deps: AdminActionsDependencies,
    payload: dict[str, Any],
) -> dict[str, Any]:
    _require_user_manager(caller)
    username = str(payload.get("username") or "").strip()
    if not username:
        raise ValueError("Username is required for updateUserProfile")
    attributes = _profile_attributes(caller, payload)
    _check_target_company(caller, deps, username)
    deps.directory.update_attributes(username, attributes)
    return {"username": username, "attributes": attributes}


def _dispatch(
    action: str,
    caller: CallerContext,
    deps: AdminActionsDependencies,
    payload: dict[str, Any],
) -> Any:
    if action == "listUsers":
        return _list_users(caller, deps)
    if action == "createUser":
        return _create_user(caller, deps, payload)
    if action == "deleteUser":
        return _delete_user(caller, deps, payload)
    if action == "updateUserRole":
        return _update_user_role(caller, deps, payload)
    if action == "updateUserProfile":
        return _update_user_profile(caller, deps, payload)
    raise ValueError(f"Unknown action: {action}")


def _wrap(action: str, result: Any) -> Any:
    if action == "listUsers":
        return {"users": result}
    if action == "createUser":
        return {"success": True, "user": result}
    return result


@logger.inject_lambda_context(clear_state=True, log_event=False)
def lambda_handler(event: dict[str, Any], _context: Any) -> Any:
    graphql = "fieldName" in event
    action = str(event.get("action") or event.get("fieldName") or "")
    payload = event.get("payload") or event.get("arguments") or {}
    if not isinstance(payload, dict):
        raise ValueError("payload must be an object")

    deps = _dependencies()
    caller = _caller_context(event, deps)
    logger.append_keys(companyid=caller.company_id or "none", sub=caller.sub or "unknown")
    logger.info(
        "Executing admin action",
        extra={
            "action": action,
            "username": caller.username,
            "groups": sorted(caller.groups),
            "is_super_admin": caller.is_super_admin,
        },
    )

    result = _dispatch(action, caller, deps, payload)
    return result if graphql else _wrap(action, result)
