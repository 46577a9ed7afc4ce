"""
Client for the external AI inference service.

The service exposes one HTTP endpoint per diagnostic task. Each accepts a
multipart image upload in the ``file`` field and answers with JSON whose
shape varies slightly per task. This module maps a scan to its task, calls
the endpoint and normalizes the answer into an InferenceResult.

No retries are performed here; a failed call surfaces as InferenceError and
the caller decides what to do.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests

from ..utils.error_handler import ErrorType, InferenceError, ValidationError

logger = logging.getLogger(__name__)

AUTO_ANALYSIS = "auto"

TASK_ENDPOINTS = {
    "brain_tumor": "/predict2",
    "breast_cancer": "/breastancerdetect",
    "lung_tumor": "/lunganalysis",
    "ct_to_mri": "/cttomri",
    "mri_to_ct": "/mritoct",
}

CONVERSION_TASKS = {"ct_to_mri", "mri_to_ct"}

REPORT_ENDPOINT = "/response"

# Keys tried in order when pulling each field out of a response
CONFIDENCE_FIELDS = ("overall_confidence", "confidence", "score")
FINDINGS_FIELDS = ("detected_case", "findings", "label", "prediction")
RECOMMENDATION_FIELDS = ("medical_note", "recommendations", "recommendation")

# Base64 images some tasks return alongside their findings
OUTPUT_IMAGE_FIELDS = ("combined_image", "ct_to_mri", "mri_to_ct", "converted_image")


@dataclass
class InferenceResult:
    """Normalized answer of an inference endpoint."""
    analysis_type: str
    confidence: Optional[float] = None
    findings: Optional[str] = None
    recommendations: Optional[str] = None
    confidence_scores: Any = None
    output_images: Dict[str, str] = field(default_factory=dict)
    metrics: Dict[str, Any] = field(default_factory=dict)
    raw: Dict[str, Any] = field(default_factory=dict)

    def raw_without_images(self) -> Dict[str, Any]:
        return {key: value for key, value in self.raw.items() if key not in OUTPUT_IMAGE_FIELDS}


def resolve_analysis_type(scan_type: str, body_part: str, requested: Optional[str] = AUTO_ANALYSIS) -> str:
    """
    Pick the inference task for a scan.

    An explicit task name is validated and returned as is; ``auto`` (or no
    value) is mapped from the body region.

    Raises:
        ValidationError: If no task fits the scan.
    """
    requested = (requested or AUTO_ANALYSIS).lower()
    if requested != AUTO_ANALYSIS:
        if requested not in TASK_ENDPOINTS:
            raise ValidationError(f"Unsupported analysis type: {requested}")
        return requested

    region = (body_part or "").lower()

    if "brain" in region or "head" in region:
        return "brain_tumor"
    if "breast" in region or "mammo" in region:
        return "breast_cancer"
    if "lung" in region or "chest" in region or "thorax" in region:
        return "lung_tumor"

    raise ValidationError(f"No analysis available for {scan_type} scan of '{body_part}'")


def parse_confidence(value: Any) -> Optional[float]:
    """
    Convert a reported confidence to the 0-1 range.

    Values in (1, 100] are read as percentages. Unparseable values give None.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        confidence = float(str(value).strip().rstrip("%"))
    except ValueError:
        return None
    if confidence != confidence:  # NaN
        return None
    if 1.0 < confidence <= 100.0:
        confidence /= 100.0
    return min(max(confidence, 0.0), 1.0)


def parse_confidence_scores(scores: Any) -> Any:
    """Coerce per-class scores (a dict or a list of dicts) to floats."""
    def coerce(mapping):
        parsed = {}
        for key, value in mapping.items():
            try:
                parsed[key] = float(value)
            except (TypeError, ValueError):
                parsed[key] = 0.0
        return parsed

    if isinstance(scores, dict):
        return coerce(scores)
    if isinstance(scores, list):
        return [coerce(item) if isinstance(item, dict) else item for item in scores]
    return scores


def _first_present(data: Dict[str, Any], keys) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, default=str)


def normalize_response(analysis_type: str, data: Dict[str, Any]) -> InferenceResult:
    """Map a raw endpoint answer onto InferenceResult."""
    output_images = {
        key: data[key] for key in OUTPUT_IMAGE_FIELDS
        if isinstance(data.get(key), str) and data[key]
    }

    findings = _as_text(_first_present(data, FINDINGS_FIELDS))
    if findings is None and analysis_type in CONVERSION_TASKS and "ssim" in data:
        findings = f"{analysis_type} conversion completed (SSIM {data['ssim']})"

    return InferenceResult(
        analysis_type=analysis_type,
        confidence=parse_confidence(_first_present(data, CONFIDENCE_FIELDS)),
        findings=findings,
        recommendations=_as_text(_first_present(data, RECOMMENDATION_FIELDS)),
        confidence_scores=parse_confidence_scores(data.get("confidence_scores")),
        output_images=output_images,
        raw=data,
    )


class InferenceClient:
    """HTTP client for the per-task inference endpoints."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 30,
        conversion_timeout_seconds: float = 60,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.conversion_timeout_seconds = conversion_timeout_seconds
        self.session = session or requests.Session()

    def endpoint_for(self, analysis_type: str) -> str:
        try:
            return f"{self.base_url}{TASK_ENDPOINTS[analysis_type]}"
        except KeyError:
            raise ValidationError(f"Unsupported analysis type: {analysis_type}")

    def analyze(
        self,
        image_data: bytes,
        filename: str,
        content_type: str,
        analysis_type: str,
    ) -> InferenceResult:
        """
        Run one inference task against an image.

        Args:
            image_data: Raw image bytes
            filename: Filename sent with the multipart upload
            content_type: MIME type of the image
            analysis_type: Task name (see TASK_ENDPOINTS)

        Returns:
            Normalized InferenceResult

        Raises:
            InferenceError: On HTTP failure, timeout or an unparseable answer
        """
        url = self.endpoint_for(analysis_type)
        timeout = (
            self.conversion_timeout_seconds if analysis_type in CONVERSION_TASKS
            else self.timeout_seconds
        )

        start_time = time.time()
        data = self._post(url, timeout, files={"file": (filename, image_data, content_type)})
        invocation_time = time.time() - start_time
        logger.info(f"Inference endpoint {analysis_type} answered in {invocation_time:.2f} seconds")

        result = normalize_response(analysis_type, data)
        result.metrics = {
            "invocation_time_seconds": invocation_time,
            "endpoint": url,
        }
        return result

    def generate_report(self, summary: Dict[str, Any]) -> Optional[str]:
        """
        Ask the report endpoint to turn analysis findings into report text.

        Returns:
            The report text, or None when the endpoint has nothing to say.

        Raises:
            InferenceError: On HTTP failure, timeout or an unparseable answer
        """
        data = self._post(f"{self.base_url}{REPORT_ENDPOINT}", self.timeout_seconds, json=summary)
        report = _first_present(data, ("report", "response", "text"))
        return _as_text(report)

    def _post(self, url: str, timeout: float, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = self.session.post(url, timeout=timeout, **kwargs)
        except requests.Timeout as e:
            logger.warning(f"Inference call to {url} timed out after {timeout}s")
            raise InferenceError(
                f"Inference call timed out after {timeout} seconds",
                ErrorType.TRANSIENT, endpoint=url
            ) from e
        except requests.RequestException as e:
            logger.error(f"Inference call to {url} failed: {e}")
            raise InferenceError(f"Inference call failed: {e}", ErrorType.TRANSIENT, endpoint=url) from e

        if not 200 <= response.status_code < 300:
            error_type = ErrorType.TRANSIENT if response.status_code >= 500 else ErrorType.PERMANENT
            logger.error(f"Inference endpoint {url} returned {response.status_code}")
            raise InferenceError(
                f"Inference endpoint returned {response.status_code}",
                error_type, endpoint=url, http_status=response.status_code
            )

        try:
            data = response.json()
        except ValueError as e:
            raise InferenceError(
                "Inference endpoint returned a non-JSON payload",
                endpoint=url, http_status=response.status_code
            ) from e

        if not isinstance(data, dict):
            raise InferenceError(
                f"Inference endpoint returned {type(data).__name__}, expected an object",
                endpoint=url, http_status=response.status_code
            )
        return data
