"""
user_api.handler — User management REST API Lambda.

Validates requests and forwards them to the admin-actions Lambda, which
holds the user-pool privileges. The caller's company is re-derived here
from session claims (or the directory fallback) before anything is
forwarded.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

import boto3
from aws_lambda_powertools import Logger
from botocore.exceptions import ClientError

from claims_data import TenantAccessViolation
from claims_data.api import (
    caller_from_event,
    error,
    http_method,
    path_param,
    request_path,
    require_json_body,
    response,
    str_or_none,
)
from claims_data.directory import CognitoDirectory
from claims_data.formatting import (
    COMPANY_ATTRIBUTES,
    validate_email,
    validate_profile_attributes,
)
from claims_data.policy import USER, CallerContext, assignable_groups, authorize, resolve_company

logger = Logger(service="user-api")

_ADMIN_ACTIONS_FUNCTION_ENV = "ADMIN_ACTIONS_FUNCTION_NAME"

# Lambda errorType -> (status, code)
_FUNCTION_ERRORS: dict[str, tuple[int, str]] = {
    "PermissionError": (403, "FORBIDDEN"),
    "TenantAccessViolation": (403, "FORBIDDEN"),
    "ValueError": (400, "BAD_REQUEST"),
    "UserNotFoundError": (404, "NOT_FOUND"),
    "UserExistsError": (409, "CONFLICT"),
    "SeatLimitExceeded": (409, "SEAT_LIMIT_EXCEEDED"),
}


@dataclass(frozen=True)
class UserApiDependencies:
    lambda_client: Any
    directory: Any


class AdminActionError(Exception):
    """The admin-actions Lambda raised; carries its errorType."""

    def __init__(self, error_type: str, message: str) -> None:
        self.error_type = error_type
        super().__init__(message)


def _admin_actions_function_name() -> str:
    return os.environ.get(_ADMIN_ACTIONS_FUNCTION_ENV, "claims-admin-actions")


def _dependencies() -> UserApiDependencies:
    region = os.environ["AWS_REGION"]
    session = boto3.session.Session(region_name=region)
    return UserApiDependencies(
        lambda_client=session.client("lambda"),
        directory=CognitoDirectory(client=session.client("cognito-idp")),
    )


def _identity(caller: CallerContext) -> dict[str, Any]:
    claims: dict[str, Any] = {"sub": caller.sub, "email": caller.email}
    if caller.company_id:
        claims["custom:companyId"] = caller.company_id
    if caller.company_name:
        claims["custom:companyName"] = caller.company_name
    return {
        "username": caller.username,
        "groups": sorted(caller.groups),
        "claims": claims,
    }


def _invoke_admin_action(
    deps: UserApiDependencies,
    caller: CallerContext,
    action: str,
    payload: dict[str, Any],
) -> Any:
    result = deps.lambda_client.invoke(
        FunctionName=_admin_actions_function_name(),
        InvocationType="RequestResponse",
        Payload=json.dumps({"action": action, "payload": payload, "identity": _identity(caller)}),
    )
    raw = result["Payload"].read()
    body = json.loads(raw) if raw else None
    if result.get("FunctionError"):
        body = body if isinstance(body, dict) else {}
        error_type = str(body.get("errorType") or "Exception")
        message = str(body.get("errorMessage") or "Admin action failed")
        logger.warning(
            "Admin action failed",
            extra={"action": action, "error_type": error_type},
        )
        raise AdminActionError(error_type, message)
    return body


def _require_user_manager(caller: CallerContext) -> None:
    authorize(caller, USER, "list")
    if not caller.is_super_admin and not caller.company_id:
        raise PermissionError("Caller has no associated company")


def _validated_group(caller: CallerContext, value: Any, *, field: str) -> str:
    group = str_or_none(value)
    allowed = assignable_groups(caller)
    if group is None or group not in allowed:
        raise ValueError(f"{field} must be one of: {', '.join(sorted(allowed))}")
    return group


def _handle_list(caller: CallerContext, deps: UserApiDependencies) -> dict[str, Any]:
    result = _invoke_admin_action(deps, caller, "listUsers", {})
    users = result.get("users", []) if isinstance(result, dict) else []
    return response(200, {"users": users})


def _handle_create(
    event: dict[str, Any],
    caller: CallerContext,
    deps: UserApiDependencies,
) -> dict[str, Any]:
    authorize(caller, USER, "create")
    body = require_json_body(event)
    payload: dict[str, Any] = {"email": validate_email(body.get("email"))}
    if body.get("group") is not None:
        payload["group"] = _validated_group(caller, body["group"], field="group")
    if caller.is_super_admin:
        for field in ("companyId", "companyName"):
            text = str_or_none(body.get(field))
            if text is not None:
                payload[field] = text
    if str_or_none(body.get("tempPassword")) is not None:
        payload["tempPassword"] = str(body["tempPassword"])
    if body.get("sendInvite") is not None:
        payload["sendInvite"] = bool(body["sendInvite"])

    result = _invoke_admin_action(deps, caller, "createUser", payload)
    return response(201, result if isinstance(result, dict) else {"success": True})


def _handle_delete(
    caller: CallerContext,
    deps: UserApiDependencies,
    *,
    username: str,
) -> dict[str, Any]:
    authorize(caller, USER, "delete")
    result = _invoke_admin_action(deps, caller, "deleteUser", {"username": username})
    return response(200, {"success": True, **(result if isinstance(result, dict) else {})})


def _handle_role(
    event: dict[str, Any],
    caller: CallerContext,
    deps: UserApiDependencies,
    *,
    username: str,
) -> dict[str, Any]:
    authorize(caller, USER, "update")
    body = require_json_body(event)
    role = _validated_group(caller, body.get("role"), field="role")
    result = _invoke_admin_action(
        deps, caller, "updateUserRole", {"username": username, "role": role}
    )
    return response(200, {"success": True, **(result if isinstance(result, dict) else {})})


def _handle_profile(
    event: dict[str, Any],
    caller: CallerContext,
    deps: UserApiDependencies,
    *,
    username: str,
) -> dict[str, Any]:
    authorize(caller, USER, "update")
    body = require_json_body(event)
    attributes = validate_profile_attributes(body.get("attributes"))
    if COMPANY_ATTRIBUTES & set(attributes) and not caller.is_super_admin:
        raise PermissionError("Only SuperAdmin may change a user's company")
    result = _invoke_admin_action(
        deps,
        caller,
        "updateUserProfile",
        {"username": username, "attributes": attributes},
    )
    return response(200, {"success": True, **(result if isinstance(result, dict) else {})})


@logger.inject_lambda_context(clear_state=True, log_event=False)
def lambda_handler(event: dict[str, Any], _context: Any) -> dict[str, Any]:
    deps = _dependencies()
    method = http_method(event)
    path = request_path(event)
    username = path_param(event, "username")

    try:
        caller = resolve_company(caller_from_event(event), deps.directory)
        logger.append_keys(companyid=caller.company_id or "none", sub=caller.sub or "unknown")
        _require_user_manager(caller)

        if path == "/v1/admin/users":
            if method == "GET":
                return _handle_list(caller, deps)
            if method == "POST":
                return _handle_create(event, caller, deps)

        if username is not None:
            if method == "DELETE" and not path.endswith(("/role", "/profile")):
                return _handle_delete(caller, deps, username=username)
            if method == "POST" and path.endswith("/role"):
                return _handle_role(event, caller, deps, username=username)
            if method == "POST" and path.endswith("/profile"):
                return _handle_profile(event, caller, deps, username=username)

        return error(405, "METHOD_NOT_ALLOWED", "Unsupported user API route")
    except AdminActionError as exc:
        status, code = _FUNCTION_ERRORS.get(exc.error_type, (502, "ADMIN_ACTION_FAILED"))
        return error(status, code, str(exc))
    except (PermissionError, TenantAccessViolation) as exc:
        return error(403, "FORBIDDEN", str(exc))
    except ValueError as exc:
        return error(400, "BAD_REQUEST", str(exc))
    except ClientError as exc:
        logger.exception("AWS client error in user API handler")
        return error(502, "AWS_CLIENT_ERROR", exc.response.get("Error", {}).get("Code", "Unknown"))
    except Exception:
        logger.exception("Unhandled user API handler error")
        return error(500, "INTERNAL_ERROR", "Internal server error")
