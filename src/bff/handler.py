"""
bff.handler — Session profile Lambda for the web client.

GET /v1/me returns everything the client needs to render the session:
the caller's role flags, their company (after the directory fallback),
the companies they may switch between and the current company. Company
lookups are best-effort; a failure yields empty lists, never an error.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

import boto3
from aws_lambda_powertools import Logger
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

from claims_data import TenantAccessViolation, TenantContext, TenantScopedDynamoDB
from claims_data.api import caller_from_event, error, http_method, request_path, response
from claims_data.directory import CognitoDirectory
from claims_data.models import UserGroup, company_key
from claims_data.policy import CallerContext, resolve_company

logger = Logger(service="bff")

_COMPANIES_TABLE_ENV = "COMPANIES_TABLE_NAME"


@dataclass(frozen=True)
class BffDependencies:
    directory: Any


def _companies_table_name() -> str:
    return os.environ.get(_COMPANIES_TABLE_ENV, "claims-companies")


def _dependencies() -> BffDependencies:
    region = os.environ["AWS_REGION"]
    session = boto3.session.Session(region_name=region)
    return BffDependencies(
        directory=CognitoDirectory(client=session.client("cognito-idp")),
    )


def _company_summary(item: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": str(item.get("companyId", "")),
        "name": str(item.get("name", "")),
        "isActive": bool(item.get("isActive", False)),
    }


def _visible_companies(caller: CallerContext) -> list[dict[str, Any]]:
    """Companies the caller may see: all for super-admins, else their own."""
    if not caller.is_super_admin and not caller.company_id:
        return []
    db = TenantScopedDynamoDB(
        TenantContext(
            company_id=caller.company_id or "system",
            sub=caller.sub or "system",
            groups=caller.groups,
        )
    )
    try:
        if caller.is_super_admin:
            items = db.scan(_companies_table_name(), filter_expression=Attr("SK").eq("METADATA"))
        else:
            item = db.get_item(_companies_table_name(), company_key(caller.company_id))
            items = [item] if item is not None else []
    except (ClientError, TenantAccessViolation):
        logger.exception("Failed to load companies for session profile")
        return []
    return sorted((_company_summary(i) for i in items), key=lambda c: c["name"].lower())


def build_profile(caller: CallerContext) -> dict[str, Any]:
    role = caller.role
    companies = _visible_companies(caller)

    current = next((c for c in companies if c["id"] == caller.company_id), None)
    if current is None and caller.is_super_admin and companies:
        current = companies[0]

    return {
        "role": role.value,
        "isSuperAdmin": caller.is_super_admin,
        "isAdmin": caller.is_super_admin or caller.is_admin,
        "isIncidentReporter": role == UserGroup.INCIDENT_REPORTER,
        "isHomeOwner": role == UserGroup.HOME_OWNER,
        "username": caller.username,
        "email": caller.email,
        "companyId": caller.company_id,
        "companyName": caller.company_name,
        "companies": companies,
        "currentCompany": current,
    }


@logger.inject_lambda_context(clear_state=True, log_event=False)
def lambda_handler(event: dict[str, Any], _context: Any) -> dict[str, Any]:
    deps = _dependencies()
    method = http_method(event)
    path = request_path(event)

    try:
        caller = resolve_company(caller_from_event(event), deps.directory)
        logger.append_keys(companyid=caller.company_id or "none", sub=caller.sub or "unknown")

        if path == "/v1/me" and method == "GET":
            if not caller.sub:
                raise PermissionError("Caller has no subject claim")
            return response(200, build_profile(caller))

        return error(405, "METHOD_NOT_ALLOWED", "Unsupported session route")
    except PermissionError as exc:
        return error(403, "FORBIDDEN", str(exc))
    except Exception:
        logger.exception("Unhandled session profile error")
        return error(500, "INTERNAL_ERROR", "Internal server error")
