"""
Structured errors for the job board API.

Every failure that crosses the client boundary is a SubmissionError with a
machine-readable ErrorCategory, so the orchestrator can branch on the category
instead of parsing human-readable descriptions.
"""

import asyncio
import json
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

import aiohttp


class ErrorCategory(str, Enum):
    """Categories of submission failures."""
    RATE_LIMITED = "rate_limited"              # platform quota exhausted
    LOCAL_RATE_LIMITED = "local_rate_limited"  # our own bucket is empty
    NOT_FOUND = "not_found"
    RESOURCE_NOT_FOUND = "resource_not_found"  # referenced resume not (yet) visible
    VALIDATION = "validation"
    DUPLICATE = "duplicate"
    CANNOT_PUBLISH = "cannot_publish"
    FORBIDDEN = "forbidden"
    UNAUTHORIZED = "unauthorized"
    TRANSIENT = "transient"
    NETWORK = "network"
    TIMEOUT = "timeout"


RETRYABLE_CATEGORIES = frozenset({
    ErrorCategory.RATE_LIMITED,
    ErrorCategory.LOCAL_RATE_LIMITED,
    ErrorCategory.RESOURCE_NOT_FOUND,
    ErrorCategory.TRANSIENT,
    ErrorCategory.NETWORK,
    ErrorCategory.TIMEOUT,
})

# Values the platform puts in errors[].value
_RESOURCE_NOT_FOUND_VALUES = {"resume_not_found", "resume_not_available"}
_DUPLICATE_VALUES = {"duplicate", "already_exists", "duplicate_title"}
_RATE_LIMIT_VALUES = {"limit_exceeded", "touch_limit_exceeded", "negotiations_limit_exceeded"}
_RESOURCE_ARGUMENT = "resume_id"


class SubmissionError(Exception):
    """Failure from the job board with categorization."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory,
        *,
        status: Optional[int] = None,
        retry_after: Optional[float] = None,
        bad_arguments: Optional[List[str]] = None,
        error_values: Optional[List[str]] = None,
        details: Any = None,
    ):
        self.message = message
        self.category = category
        self.status = status
        self.retry_after = retry_after
        self.bad_arguments = list(bad_arguments or [])
        self.error_values = list(error_values or [])
        self.details = details
        super().__init__(f"[{category.value}] {message}")

    @property
    def retryable(self) -> bool:
        return self.category in RETRYABLE_CATEGORIES

    @property
    def is_resource_not_found(self) -> bool:
        if self.category == ErrorCategory.RESOURCE_NOT_FOUND:
            return True
        return any(v in _RESOURCE_NOT_FOUND_VALUES for v in self.error_values)

    @property
    def rejected_fields(self) -> List[str]:
        """Fields the platform rejected, excluding the resume reference itself."""
        return [name for name in self.bad_arguments if name != _RESOURCE_ARGUMENT]

    def to_cause(self) -> Dict[str, Any]:
        cause: Dict[str, Any] = {"category": self.category.value, "message": self.message}
        if self.status is not None:
            cause["status"] = self.status
        if self.bad_arguments:
            cause["bad_arguments"] = self.bad_arguments
        if self.error_values:
            cause["errors"] = self.error_values
        return cause


def _decode_body(body: Any) -> Dict[str, Any]:
    if isinstance(body, dict):
        return body
    if isinstance(body, (bytes, bytearray)):
        body = body.decode("utf-8", errors="replace")
    if isinstance(body, str) and body.strip():
        try:
            decoded = json.loads(body)
        except json.JSONDecodeError:
            return {"description": body[:500]}
        return decoded if isinstance(decoded, dict) else {}
    return {}


def _parse_retry_after(headers: Optional[Mapping[str, str]]) -> Optional[float]:
    if not headers:
        return None
    raw = headers.get("Retry-After") or headers.get("retry-after")
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except (TypeError, ValueError):
        return None


def _error_values(data: Dict[str, Any]) -> List[str]:
    values = []
    for err in data.get("errors") or []:
        if isinstance(err, dict) and err.get("value"):
            values.append(str(err["value"]))
    return values


def _bad_arguments(data: Dict[str, Any]) -> List[str]:
    names = []
    if data.get("bad_argument"):
        names.append(str(data["bad_argument"]))
    for arg in data.get("bad_arguments") or []:
        name = arg.get("name") if isinstance(arg, dict) else arg
        if name and str(name) not in names:
            names.append(str(name))
    return names


def _description_says_not_found(data: Dict[str, Any]) -> bool:
    # Compatibility shim for responses that only carry prose plus bad_argument.
    text = str(data.get("description") or "").lower()
    return "resume not found" in text or "not available" in text


def classify_http_error(
    status: int,
    body: Any,
    headers: Optional[Mapping[str, str]] = None,
) -> SubmissionError:
    """Map a non-2xx platform response to a SubmissionError."""
    data = _decode_body(body)
    values = _error_values(data)
    bad_args = _bad_arguments(data)
    description = str(data.get("description") or f"HTTP {status}")
    retry_after = _parse_retry_after(headers)

    def err(category: ErrorCategory) -> SubmissionError:
        return SubmissionError(
            description,
            category,
            status=status,
            retry_after=retry_after,
            bad_arguments=bad_args,
            error_values=values,
            details=data,
        )

    if status == 429 or any(v in _RATE_LIMIT_VALUES for v in values):
        return err(ErrorCategory.RATE_LIMITED)

    if any(v in _RESOURCE_NOT_FOUND_VALUES for v in values):
        return err(ErrorCategory.RESOURCE_NOT_FOUND)
    if _RESOURCE_ARGUMENT in bad_args and _description_says_not_found(data):
        return err(ErrorCategory.RESOURCE_NOT_FOUND)

    if status == 409 or any(v in _DUPLICATE_VALUES for v in values):
        return err(ErrorCategory.DUPLICATE)
    if status == 401:
        return err(ErrorCategory.UNAUTHORIZED)
    if status == 403:
        return err(ErrorCategory.FORBIDDEN)
    if status == 404:
        return err(ErrorCategory.NOT_FOUND)
    if status in (400, 422):
        return err(ErrorCategory.VALIDATION)
    if status >= 500 or status == 408:
        return err(ErrorCategory.TRANSIENT)
    return err(ErrorCategory.VALIDATION)


def classify_exception(exc: BaseException) -> SubmissionError:
    """Map a transport-level exception to a SubmissionError."""
    if isinstance(exc, SubmissionError):
        return exc
    if isinstance(exc, asyncio.TimeoutError):
        return SubmissionError("request timed out", ErrorCategory.TIMEOUT)
    if isinstance(exc, aiohttp.ClientError):
        return SubmissionError(str(exc) or exc.__class__.__name__, ErrorCategory.NETWORK)
    return SubmissionError(str(exc) or exc.__class__.__name__, ErrorCategory.TRANSIENT)
