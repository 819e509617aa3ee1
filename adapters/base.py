"""
Base interface for the job board submission API.
The pipeline only talks to the platform through these contracts.
"""

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import ErrorCategory, SubmissionError


class RequestEncoding(str, Enum):
    """Request encodings accepted by the application endpoint."""
    JSON = "json"
    FORM = "form"


@dataclass
class ResourceRef:
    """Reference to a resume on the platform. `id` may be missing on odd create responses."""
    id: Optional[str]
    title: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TransactionRef:
    """Reference to a negotiation (submitted application) on the platform."""
    id: str
    raw: Dict[str, Any] = field(default_factory=dict)


class ExternalSubmissionClient(ABC):
    """
    Job board operations used by the submission pipeline.

    Every method raises SubmissionError on failure. The platform is eventually
    consistent: a resume returned by create_resource may not be resolvable by
    create_transaction for a short while.
    """

    @abstractmethod
    async def create_resource(self, payload: Dict[str, Any]) -> ResourceRef:
        """Create a resume from a customized CV payload."""
        pass

    @abstractmethod
    async def update_resource(self, resource_id: str, payload: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def get_resource(self, resource_id: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def find_resource_by_title(self, title: str) -> Optional[ResourceRef]:
        """Look up one of the user's resumes by exact title."""
        pass

    @abstractmethod
    async def publish(self, resource_id: str) -> None:
        pass

    @abstractmethod
    async def create_transaction(
        self,
        resource_id: str,
        target_id: str,
        idempotency_key: str,
        encoding: RequestEncoding = RequestEncoding.JSON,
    ) -> TransactionRef:
        """Apply to vacancy `target_id` with resume `resource_id`."""
        pass

    @abstractmethod
    async def attach_message(self, transaction_id: str, text: str) -> None:
        pass


class SubmissionClientFactory(ABC):
    """Builds a client authenticated as a given user."""

    @abstractmethod
    async def for_user(self, user_id: str) -> ExternalSubmissionClient:
        pass


class TokenProvider(ABC):
    """Supplies a valid access token. Refresh mechanics live elsewhere."""

    @abstractmethod
    async def get_token(self, user_id: str) -> Optional[str]:
        pass


class EnvTokenProvider(TokenProvider):
    """Single-account token from the environment (HH_ACCESS_TOKEN)."""

    def __init__(self, token: Optional[str] = None):
        self.token = token if token is not None else os.getenv("HH_ACCESS_TOKEN", "")

    async def get_token(self, user_id: str) -> Optional[str]:
        return self.token or None


class StaticTokenProvider(TokenProvider):
    """Per-user tokens from a mapping."""

    def __init__(self, tokens: Dict[str, str]):
        self.tokens = dict(tokens)

    async def get_token(self, user_id: str) -> Optional[str]:
        return self.tokens.get(user_id)


async def require_token(provider: TokenProvider, user_id: str) -> str:
    token = await provider.get_token(user_id)
    if not token:
        raise SubmissionError(
            f"no valid access token for user {user_id}",
            ErrorCategory.UNAUTHORIZED,
        )
    return token


REQUIRED_RESOURCE_FIELDS: List[str] = ["title", "first_name", "last_name", "contact"]


def is_resource_complete(resource: Dict[str, Any], required: Optional[List[str]] = None) -> bool:
    """A resume is minimally complete when every required sub-field is non-empty."""
    for name in required or REQUIRED_RESOURCE_FIELDS:
        if not resource.get(name):
            return False
    return True
