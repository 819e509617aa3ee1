"""
Job Board Adapters
Client contracts and the HH.ru implementation used by the submission pipeline.
"""

from .base import (
    EnvTokenProvider,
    ExternalSubmissionClient,
    REQUIRED_RESOURCE_FIELDS,
    RequestEncoding,
    ResourceRef,
    StaticTokenProvider,
    SubmissionClientFactory,
    TokenProvider,
    TransactionRef,
    is_resource_complete,
)
from .errors import (
    ErrorCategory,
    RETRYABLE_CATEGORIES,
    SubmissionError,
    classify_exception,
    classify_http_error,
)
from .hh_client import HHClient, HHClientFactory, build_resume_json

__all__ = [
    "EnvTokenProvider",
    "ErrorCategory",
    "ExternalSubmissionClient",
    "HHClient",
    "HHClientFactory",
    "REQUIRED_RESOURCE_FIELDS",
    "RETRYABLE_CATEGORIES",
    "RequestEncoding",
    "ResourceRef",
    "StaticTokenProvider",
    "SubmissionClientFactory",
    "SubmissionError",
    "TokenProvider",
    "TransactionRef",
    "build_resume_json",
    "classify_exception",
    "classify_http_error",
    "is_resource_complete",
]
