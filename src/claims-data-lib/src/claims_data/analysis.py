"""
claims_data.analysis — Inference payloads and analysis blob handling.

The inference endpoint analyses one image per call. Results come back in
slightly different shapes (wrapped in "result" or bare); this module
builds each request, folds the responses into one analysis blob and
reads the image paths back out of a stored blob.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

DEFAULT_SHINGLE_SIZE_INCHES = 5.0
DEFAULT_HAIL_SIZE_INCHES = 1.5
DEFAULT_WEATHER_DESCRIPTION = "Severe thunderstorm with hail reported in area"
INCOMPLETE_ASSESSMENT = "Assessment Incomplete"

_MEDIA_TYPES = {
    "png": "image/png",
    "webp": "image/webp",
    "gif": "image/gif",
}


def media_type(path: str) -> str:
    ext = path.rsplit(".", 1)[-1].lower() if "." in path else ""
    return _MEDIA_TYPES.get(ext, "image/jpeg")


def build_payload(
    report: dict[str, Any],
    *,
    index: int,
    path: str,
    bucket: str,
    weather: dict[str, Any] | None,
) -> dict[str, Any]:
    """Request body for a single photo."""
    incident_date = report.get("incidentDate")
    shingle = report.get("shingleExposure")
    payload: dict[str, Any] = {
        "images": [{"s3_uri": f"s3://{bucket}/{path}", "format": media_type(path)}],
        "analysis_context": {
            "image_id": f"{report['reportId']}_{index}",
            "reported_peril": "",
            "weather_summary": (weather or {}).get("weather_description")
            or f"Analysis for incident on {incident_date}",
            "notes": report.get("description"),
        },
        "shingle_size_inches": float(shingle) if shingle else DEFAULT_SHINGLE_SIZE_INCHES,
    }
    if weather:
        hail = weather.get("reported_hail_size_inches")
        payload["weather_report"] = {
            "reported_hail_size_inches": float(hail) if hail else DEFAULT_HAIL_SIZE_INCHES,
            "weather_date": weather.get("weather_date") or incident_date,
            "weather_description": weather.get("weather_description")
            or DEFAULT_WEATHER_DESCRIPTION,
        }
    return payload


def unwrap_result(body: Any) -> dict[str, Any]:
    if isinstance(body, dict) and isinstance(body.get("result"), dict):
        return body["result"]
    return body if isinstance(body, dict) else {}


def _dedupe(items: list[Any]) -> list[Any]:
    seen: list[Any] = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return seen


@dataclass
class AnalysisAggregate:
    """Accumulates per-photo results into the stored analysis blob."""

    detections: list[dict[str, Any]] = field(default_factory=list)
    evidence_bullets: list[str] = field(default_factory=list)
    fraud_signals: list[str] = field(default_factory=list)
    assessments: list[str] = field(default_factory=list)
    peril_match: dict[str, Any] = field(
        default_factory=lambda: {"match": "unknown", "reason": ""}
    )
    analyzed: int = 0
    failed: int = 0

    def add(self, result: dict[str, Any]) -> None:
        self.analyzed += 1
        self.detections.extend(d for d in result.get("detections") or [] if isinstance(d, dict))
        self.evidence_bullets.extend(result.get("evidence_bullets") or [])
        self.fraud_signals.extend(result.get("fraud_signals") or [])
        assessment = result.get("final_assessment")
        if assessment and assessment not in self.assessments:
            self.assessments.append(assessment)
        # Last non-unknown match wins
        peril = result.get("peril_match")
        if isinstance(peril, dict) and peril.get("match", "unknown") != "unknown":
            self.peril_match = peril

    def record_failure(self) -> None:
        self.failed += 1

    def output_uris(self) -> list[str]:
        return _dedupe([d["output_s3_uri"] for d in self.detections if d.get("output_s3_uri")])

    def to_blob(self, copied: dict[str, str] | None = None) -> dict[str, Any]:
        """Final blob; copied maps output_s3_uri to its key in storage."""
        copied = copied or {}
        detections = self.detections
        if detections:
            detections = [
                {**d, "local_output_path": copied[d["output_s3_uri"]]}
                if d.get("output_s3_uri") in copied
                else d
                for d in detections
            ]
        return {
            "detections": detections,
            "evidence_bullets": _dedupe(self.evidence_bullets),
            "fraud_signals": _dedupe(self.fraud_signals),
            "final_assessment": "; ".join(self.assessments) or INCOMPLETE_ASSESSMENT,
            "peril_match": self.peril_match,
            "all_local_paths": list(copied.values()),
        }


def parse_analysis(raw: Any) -> dict[str, Any]:
    """Decode a stored aiAnalysis value; anything unreadable is empty."""
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str) and raw:
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError:
            return {}
        if isinstance(decoded, dict):
            return decoded
    return {}


def analyzed_image_keys(analysis: dict[str, Any], bucket: str) -> list[str]:
    """Collect every analyzed-image key referenced by an analysis blob.

    Accepts plain keys, s3://bucket/key URIs and https object URLs.
    """
    paths: list[str] = []
    if analysis.get("local_output_path"):
        paths.append(str(analysis["local_output_path"]))
    for path in analysis.get("all_local_paths") or []:
        if path:
            paths.append(str(path))
    for detection in analysis.get("detections") or []:
        if isinstance(detection, dict) and detection.get("local_output_path"):
            paths.append(str(detection["local_output_path"]))

    keys: list[str] = []
    for path in paths:
        key = path
        if key.startswith("s3://"):
            key = key.removeprefix(f"s3://{bucket}/")
            if key.startswith("s3://"):
                key = urlparse(key).path.lstrip("/")
        elif key.startswith(("http://", "https://")):
            key = urlparse(key).path.lstrip("/")
        if key and key not in keys:
            keys.append(key)
    return keys
