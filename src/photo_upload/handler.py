"""
photo_upload.handler — Incident photo upload REST API Lambda.

Accepts a base64-encoded image and stores it under the caller's company
photo prefix. Returns the storage path (kept on the report) and a
short-lived presigned URL for immediate display.
"""

from __future__ import annotations

import base64
import binascii
import os
import time
from dataclasses import dataclass
from typing import Any

import boto3
from aws_lambda_powertools import Logger
from botocore.exceptions import ClientError

from claims_data import TenantAccessViolation, TenantContext, TenantScopedS3
from claims_data.api import (
    caller_from_event,
    error,
    http_method,
    request_path,
    require_json_body,
    response,
    str_or_none,
)
from claims_data.directory import CognitoDirectory
from claims_data.formatting import clean_file_name
from claims_data.models import PHOTO_PREFIX
from claims_data.policy import INCIDENT_REPORT, authorize, effective_company_id, resolve_company

logger = Logger(service="photo-upload")

_STORAGE_BUCKET_ENV = "STORAGE_BUCKET_NAME"
MAX_UPLOAD_BYTES = 10 * 1024 * 1024
PRESIGNED_URL_SECONDS = 3600


@dataclass(frozen=True)
class PhotoUploadDependencies:
    directory: Any


def _storage_bucket() -> str:
    return os.environ.get(_STORAGE_BUCKET_ENV, "claims-storage")


def _dependencies() -> PhotoUploadDependencies:
    region = os.environ["AWS_REGION"]
    session = boto3.session.Session(region_name=region)
    return PhotoUploadDependencies(
        directory=CognitoDirectory(client=session.client("cognito-idp")),
    )


def _decode_image(body: dict[str, Any]) -> bytes:
    data = body.get("data")
    if not isinstance(data, str) or not data:
        raise ValueError("data (base64 image) is required")
    # Tolerate data URLs from browser FileReader
    if data.startswith("data:") and "," in data:
        data = data.split(",", 1)[1]
    try:
        content = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("data must be valid base64") from exc
    if not content:
        raise ValueError("data must not be empty")
    if len(content) > MAX_UPLOAD_BYTES:
        raise ValueError(f"File exceeds the {MAX_UPLOAD_BYTES // (1024 * 1024)} MiB limit")
    return content


def build_photo_key(company_id: str, file_name: str, *, now_ms: int | None = None) -> str:
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{PHOTO_PREFIX}{company_id}/{stamp}-{clean_file_name(file_name)}"


def _handle_upload(event: dict[str, Any], caller: Any) -> dict[str, Any]:
    authorize(caller, INCIDENT_REPORT, "create")
    body = require_json_body(event)

    file_name = str_or_none(body.get("fileName"))
    if file_name is None:
        raise ValueError("fileName is required")
    content_type = str_or_none(body.get("contentType")) or ""
    if not content_type.startswith("image/"):
        raise ValueError("contentType must be an image type")
    content = _decode_image(body)

    company_id = effective_company_id(caller, str_or_none(body.get("companyId")))
    key = build_photo_key(company_id, file_name)

    extra: dict[str, Any] = {"ContentType": content_type}
    report_id = str_or_none(body.get("reportId"))
    if report_id is not None:
        extra["Metadata"] = {"report-id": report_id}

    storage = TenantScopedS3(
        TenantContext(company_id=company_id, sub=caller.sub or "system", groups=caller.groups)
    )
    bucket = _storage_bucket()
    storage.put_object(bucket, key, content, **extra)
    url = storage.generate_presigned_url(bucket, key, expires_in=PRESIGNED_URL_SECONDS)

    logger.info("Photo uploaded", extra={"key": key, "size": len(content)})
    return response(201, {"success": True, "path": key, "url": url})


@logger.inject_lambda_context(clear_state=True, log_event=False)
def lambda_handler(event: dict[str, Any], _context: Any) -> dict[str, Any]:
    deps = _dependencies()
    method = http_method(event)
    path = request_path(event)

    try:
        caller = resolve_company(caller_from_event(event), deps.directory)
        logger.append_keys(companyid=caller.company_id or "none", sub=caller.sub or "unknown")

        if path == "/v1/uploads/photos" and method == "POST":
            return _handle_upload(event, caller)

        return error(405, "METHOD_NOT_ALLOWED", "Unsupported upload route")
    except (PermissionError, TenantAccessViolation) as exc:
        return error(403, "FORBIDDEN", str(exc))
    except ValueError as exc:
        return error(400, "BAD_REQUEST", str(exc))
    except ClientError as exc:
        logger.exception("AWS client error in photo upload handler")
        return error(502, "AWS_CLIENT_ERROR", exc.response.get("Error", {}).get("Code", "Unknown"))
    except Exception:
        logger.exception("Unhandled photo upload handler error")
        return error(500, "INTERNAL_ERROR", "Internal server error")
