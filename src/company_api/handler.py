"""
company_api.handler — Tenant directory REST API Lambda.

Handles CRUD for companies. Reads are open to members of the company;
mutations are reserved for super-admins. Publishes EventBridge events on
mutations.
"""

from __future__ import annotations

import json
import os
import uuid
from dataclasses import dataclass
from typing import Any

import boto3
from aws_lambda_powertools import Logger
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from claims_data import TenantAccessViolation, TenantContext, TenantScopedDynamoDB
from claims_data.api import (
    build_update_expression,
    caller_from_event,
    error,
    http_method,
    iso,
    json_default,
    now_utc,
    path_param,
    query_params,
    request_path,
    require_json_body,
    response,
    str_or_none,
)
from claims_data.directory import CognitoDirectory
from claims_data.models import company_key
from claims_data.policy import COMPANY, CallerContext, authorize, resolve_company

logger = Logger(service="company-api")

_COMPANIES_TABLE_ENV = "COMPANIES_TABLE_NAME"
_REPORTS_TABLE_ENV = "REPORTS_TABLE_NAME"
_EVENT_BUS_ENV = "EVENT_BUS_NAME"
_UPDATABLE_FIELDS = {"name", "domain", "logoUrl", "settings", "maxUsers", "isActive"}


@dataclass(frozen=True)
class CompanyApiDependencies:
    events: Any
    directory: Any


def _companies_table_name() -> str:
    return os.environ.get(_COMPANIES_TABLE_ENV, "claims-companies")


def _reports_table_name() -> str:
    return os.environ.get(_REPORTS_TABLE_ENV, "claims-incident-reports")


def _event_bus_name() -> str:
    return os.environ.get(_EVENT_BUS_ENV, "default")


def _dependencies() -> CompanyApiDependencies:
    region = os.environ["AWS_REGION"]
    session = boto3.session.Session(region_name=region)
    return CompanyApiDependencies(
        events=session.client("events"),
        directory=CognitoDirectory(client=session.client("cognito-idp")),
    )


def _db_for_company(*, company_id: str, caller: CallerContext) -> TenantScopedDynamoDB:
    return TenantScopedDynamoDB(
        TenantContext(
            company_id=company_id,
            sub=caller.sub or "system",
            groups=caller.groups,
        )
    )


def _read_company_record(*, company_id: str, caller: CallerContext) -> dict[str, Any] | None:
    db = _db_for_company(company_id=company_id, caller=caller)
    return db.get_item(_companies_table_name(), company_key(company_id))


def _as_bool(value: Any, *, field: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in {"true", "false"}:
        return value.lower() == "true"
    raise ValueError(f"{field} must be a boolean")


def _as_max_users(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError("maxUsers must be a positive integer")
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError("maxUsers must be a positive integer") from exc
    if number < 1 or number != float(value):
        raise ValueError("maxUsers must be a positive integer")
    return number


def _as_settings(value: Any) -> str | None:
    """Settings are stored as a JSON string; accept objects or JSON text."""
    if value is None:
        return None
    if isinstance(value, str):
        try:
            decoded = json.loads(value)
        except json.JSONDecodeError as exc:
            raise ValueError("settings must be valid JSON") from exc
        if not isinstance(decoded, dict):
            raise ValueError("settings must be a JSON object")
        return value
    if isinstance(value, dict):
        return json.dumps(value)
    raise ValueError("settings must be a JSON object")


def _put_event(
    deps: CompanyApiDependencies,
    *,
    detail_type: str,
    detail: dict[str, Any],
) -> None:
    deps.events.put_events(
        Entries=[
            {
                "Source": "claims.company_api",
                "DetailType": detail_type,
                "Detail": json.dumps(detail, default=json_default),
                "EventBusName": _event_bus_name(),
            }
        ]
    )


def _serialize_company(item: dict[str, Any]) -> dict[str, Any]:
    record = {
        "id": str(item.get("companyId", "")),
        "name": str(item.get("name", "")),
        "isActive": bool(item.get("isActive", False)),
        "createdAt": item.get("createdAt"),
        "updatedAt": item.get("updatedAt"),
    }
    for field in ("domain", "logoUrl", "settings", "maxUsers"):
        if item.get(field) is not None:
            record[field] = item[field]
    return record


def _attributes_from_body(body: dict[str, Any]) -> dict[str, Any]:
    attrs: dict[str, Any] = {}
    if "name" in body:
        name = str_or_none(body["name"])
        if name is None:
            raise ValueError("name must not be empty")
        attrs["name"] = name
    for field in ("domain", "logoUrl"):
        if field in body:
            attrs[field] = str_or_none(body[field])
    if "settings" in body:
        attrs["settings"] = _as_settings(body["settings"])
    if "maxUsers" in body:
        attrs["maxUsers"] = _as_max_users(body["maxUsers"])
    if "isActive" in body:
        attrs["isActive"] = _as_bool(body["isActive"], field="isActive")
    return attrs


def _handle_create(
    event: dict[str, Any],
    caller: CallerContext,
    deps: CompanyApiDependencies,
) -> dict[str, Any]:
    authorize(caller, COMPANY, "create")
    body = require_json_body(event)
    if str_or_none(body.get("name")) is None:
        raise ValueError("Missing required field(s): name")
    unknown = sorted(set(body) - _UPDATABLE_FIELDS)
    if unknown:
        raise ValueError(f"Unsupported field(s): {', '.join(unknown)}")

    company_id = str(uuid.uuid4())
    now = iso(now_utc())
    attributes: dict[str, Any] = {
        "companyId": company_id,
        "isActive": True,
        **_attributes_from_body(body),
        "createdAt": now,
        "updatedAt": now,
    }
    attributes = {k: v for k, v in attributes.items() if v is not None}

    update_expression, expr_names, expr_values = build_update_expression(attributes)
    db = _db_for_company(company_id=company_id, caller=caller)
    try:
        result = db.update_item(
            _companies_table_name(),
            key=company_key(company_id),
            update_expression=update_expression,
            expression_attribute_values=expr_values,
            expression_attribute_names=expr_names,
            condition_expression="attribute_not_exists(PK) AND attribute_not_exists(SK)",
        )
    except ClientError as exc:
        if exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
            return error(409, "CONFLICT", "Company already exists")
        raise

    item = result.get("Attributes", {})
    _put_event(
        deps,
        detail_type="company.created",
        detail={"companyId": company_id, "name": item.get("name"), "actorSub": caller.sub},
    )
    return response(201, {"company": _serialize_company(item)})


def _handle_list(
    event: dict[str, Any],
    caller: CallerContext,
    deps: CompanyApiDependencies,
) -> dict[str, Any]:
    if not caller.is_super_admin:
        # Non-super-admins only see their own company, but in list format
        if caller.company_id:
            authorize(caller, COMPANY, "read", company_id=caller.company_id)
            item = _read_company_record(company_id=caller.company_id, caller=caller)
            if item is not None:
                return response(200, {"items": [_serialize_company(item)]})
        return response(200, {"items": []})

    authorize(caller, COMPANY, "list")
    active_filter = str_or_none(query_params(event).get("active"))
    filter_expression = Attr("SK").eq("METADATA")
    if active_filter is not None:
        filter_expression = filter_expression & Attr("isActive").eq(
            _as_bool(active_filter, field="active")
        )

    # Scanning is acceptable for this low-volume directory table.
    db = _db_for_company(company_id=caller.company_id or "system", caller=caller)
    items = db.scan(_companies_table_name(), filter_expression=filter_expression)
    companies = sorted(
        (_serialize_company(item) for item in items),
        key=lambda c: c["name"].lower(),
    )
    return response(200, {"items": companies})


def _handle_read(
    caller: CallerContext,
    *,
    company_id: str,
) -> dict[str, Any]:
    authorize(caller, COMPANY, "read", company_id=company_id)
    item = _read_company_record(company_id=company_id, caller=caller)
    if item is None:
        return error(404, "NOT_FOUND", "Company not found")
    return response(200, {"company": _serialize_company(item)})


def _handle_update(
    event: dict[str, Any],
    caller: CallerContext,
    deps: CompanyApiDependencies,
    *,
    company_id: str,
) -> dict[str, Any]:
    authorize(caller, COMPANY, "update", company_id=company_id)
    existing = _read_company_record(company_id=company_id, caller=caller)
    if existing is None:
        return error(404, "NOT_FOUND", "Company not found")

    body = require_json_body(event)
    unknown = sorted(set(body) - _UPDATABLE_FIELDS)
    if unknown:
        raise ValueError(f"Unsupported update field(s): {', '.join(unknown)}")
    if not body:
        raise ValueError("At least one update field is required")

    attrs = {**_attributes_from_body(body), "updatedAt": iso(now_utc())}
    removed = sorted(k for k, v in attrs.items() if v is None)
    attrs = {k: v for k, v in attrs.items() if v is not None}

    update_expression, expr_names, expr_values = build_update_expression(attrs)
    if removed:
        remove_names = {f"#r{idx}": name for idx, name in enumerate(removed, start=1)}
        expr_names.update(remove_names)
        update_expression += " REMOVE " + ", ".join(remove_names)

    db = _db_for_company(company_id=company_id, caller=caller)
    result = db.update_item(
        _companies_table_name(),
        key=company_key(company_id),
        update_expression=update_expression,
        expression_attribute_values=expr_values,
        expression_attribute_names=expr_names,
        condition_expression="attribute_exists(PK) AND attribute_exists(SK)",
    )
    item = result.get("Attributes", {})

    detail: dict[str, Any] = {
        "companyId": company_id,
        "actorSub": caller.sub,
        "changedFields": sorted(body),
    }
    if bool(existing.get("isActive", False)) != bool(item.get("isActive", False)):
        detail["isActive"] = bool(item.get("isActive", False))
    _put_event(deps, detail_type="company.updated", detail=detail)
    return response(200, {"company": _serialize_company(item)})


def _company_has_reports(*, company_id: str, caller: CallerContext) -> bool:
    db = _db_for_company(company_id=company_id, caller=caller)
    items = db.query(
        _reports_table_name(),
        sk_condition=Key("SK").begins_with("REPORT#"),
        limit=1,
    )
    return bool(items)


def _handle_delete(
    caller: CallerContext,
    deps: CompanyApiDependencies,
    *,
    company_id: str,
) -> dict[str, Any]:
    authorize(caller, COMPANY, "delete", company_id=company_id)
    existing = _read_company_record(company_id=company_id, caller=caller)
    if existing is None:
        return error(404, "NOT_FOUND", "Company not found")
    if _company_has_reports(company_id=company_id, caller=caller):
        return error(409, "CONFLICT", "Company still owns incident reports")

    db = _db_for_company(company_id=company_id, caller=caller)
    db.delete_item(_companies_table_name(), company_key(company_id))
    _put_event(
        deps,
        detail_type="company.deleted",
        detail={"companyId": company_id, "actorSub": caller.sub},
    )
    return response(200, {"company": _serialize_company(existing), "deleted": True})


@logger.inject_lambda_context(clear_state=True, log_event=False)
def lambda_handler(event: dict[str, Any], _context: Any) -> dict[str, Any]:
    deps = _dependencies()
    caller = resolve_company(caller_from_event(event), deps.directory)
    logger.append_keys(companyid=caller.company_id or "none", sub=caller.sub or "unknown")

    method = http_method(event)
    company_id = path_param(event, "companyId", "id")
    path = request_path(event)

    try:
        if path == "/v1/admin/companies":
            if method == "POST":
                return _handle_create(event, caller, deps)
            if method == "GET":
                return _handle_list(event, caller, deps)

        if company_id is not None:
            if method == "GET":
                return _handle_read(caller, company_id=company_id)
            if method in {"PATCH", "PUT"}:
                return _handle_update(event, caller, deps, company_id=company_id)
            if method == "DELETE":
                return _handle_delete(caller, deps, company_id=company_id)

        return error(405, "METHOD_NOT_ALLOWED", "Unsupported company API route")
    except (PermissionError, TenantAccessViolation) as exc:
        return error(403, "FORBIDDEN", str(exc))
    except ValueError as exc:
        return error(400, "BAD_REQUEST", str(exc))
    except ClientError as exc:
        logger.exception("AWS client error in company API handler")
        return error(502, "AWS_CLIENT_ERROR", exc.response.get("Error", {}).get("Code", "Unknown"))
    except Exception:
        logger.exception("Unhandled company API handler error")
        return error(500, "INTERNAL_ERROR", "Internal server error")
