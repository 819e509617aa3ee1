#!/usr/bin/env python3
"""
HH.ru API client for the submission pipeline.

Covers the resume and negotiation endpoints:
- POST /resumes, PUT /resumes/{id}, GET /resumes/{id}, GET /resumes/mine
- POST /resumes/{id}/publish
- POST /negotiations (JSON or form encoded)
- POST /negotiations/{id}/messages

API docs: https://github.com/hhru/api
"""

import asyncio
import json
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from .base import (
    ExternalSubmissionClient,
    RequestEncoding,
    ResourceRef,
    SubmissionClientFactory,
    TokenProvider,
    TransactionRef,
    require_token,
)
from .errors import ErrorCategory, SubmissionError, classify_exception, classify_http_error

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.hh.ru"
DEFAULT_USER_AGENT = "hh-autoapply/1.0 (support@example.com)"

_ID_FROM_LOCATION = re.compile(r"/(?:resumes|negotiations)/([^/?#]+)")


def _id_from_location(location: Optional[str]) -> Optional[str]:
    if not location:
        return None
    match = _ID_FROM_LOCATION.search(location)
    return match.group(1) if match else None


# === Resume document builder ===

def _split_name(personal_info: Dict[str, Any]) -> Tuple[str, str]:
    parts = str(personal_info.get("name") or "").split()
    first = parts[0] if parts else "User"
    last = parts[1] if len(parts) > 1 else ""
    return first, last


def _year_from_period(period: Any) -> int:
    # "2020 - 2023" / "Jan 2020 - Present"
    match = re.search(r"\d{4}", str(period or ""))
    return int(match.group(0)) if match else datetime.now().year


def _parse_year(value: Any) -> int:
    try:
        year = int(str(value).strip()[:4])
    except (TypeError, ValueError):
        return datetime.now().year
    if 1950 < year <= datetime.now().year + 6:
        return year
    return datetime.now().year


def build_resume_json(cv_data: Dict[str, Any], title: Optional[str] = None) -> Dict[str, Any]:
    """Map a customized CV payload to the platform's resume document."""
    personal_info = cv_data.get("personal_info") or {}
    first_name, last_name = _split_name(personal_info)

    contact = [
        {"type": {"id": "email"}, "value": personal_info.get("email", "")},
        {"type": {"id": "cell"}, "value": personal_info.get("phone", "")},
    ]
    contact = [c for c in contact if c["value"]]

    experience = [
        {
            "company": exp.get("company", ""),
            "position": exp.get("title", ""),
            "description": exp.get("description", ""),
            "start": _year_from_period(exp.get("period")),
            "end": None,
        }
        for exp in cv_data.get("experience") or []
    ]

    skills = cv_data.get("skills") or []
    education = [
        {
            "name": edu.get("institution", ""),
            "organization": edu.get("institution", ""),
            "result": edu.get("degree", ""),
            "year": _parse_year(edu.get("year")),
        }
        for edu in cv_data.get("education") or []
    ]

    return {
        "last_name": last_name,
        "first_name": first_name,
        "middle_name": None,
        "title": title or cv_data.get("title") or personal_info.get("title") or "Resume",
        "contact": contact,
        "experience": experience,
        "skill_set": [", ".join(skills)] if skills else [],
        "education": education,
        "language": [{"id": "eng", "level": {"id": "l1"}}],
    }


class HHClient(ExternalSubmissionClient):
    """Authenticated client for a single user."""

    def __init__(
        self,
        access_token: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 20.0,
        user_agent: str = DEFAULT_USER_AGENT,
    ):
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.user_agent = user_agent

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "HH-User-Agent": self.user_agent,
            "User-Agent": self.user_agent,
            "Accept": "application/json",
        }
        if extra:
            headers.update(extra)
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Optional[Dict[str, Any]] = None,
        form_body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Tuple[int, Dict[str, str], Dict[str, Any]]:
        """Send one request. Returns (status, headers, decoded body) for 2xx, raises otherwise."""
        url = f"{self.base_url}{path}"
        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                kwargs: Dict[str, Any] = {"headers": self._headers(headers), "params": params}
                if json_body is not None:
                    kwargs["json"] = json_body
                elif form_body is not None:
                    form = aiohttp.FormData()
                    for key, value in form_body.items():
                        if value is not None:
                            form.add_field(key, str(value))
                    kwargs["data"] = form
                async with session.request(method, url, **kwargs) as resp:
                    text = await resp.text()
                    resp_headers = dict(resp.headers)
                    if resp.status >= 400:
                        logger.debug(f"HH {method} {path} -> {resp.status}: {text[:300]}")
                        raise classify_http_error(resp.status, text, resp_headers)
                    data: Dict[str, Any] = {}
                    if text.strip():
                        try:
                            decoded = json.loads(text)
                            data = decoded if isinstance(decoded, dict) else {"items": decoded}
                        except json.JSONDecodeError:
                            data = {}
                    return resp.status, resp_headers, data
        except SubmissionError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise classify_exception(e) from e

    # --- resumes ---

    async def list_resources(self) -> List[Dict[str, Any]]:
        _, _, data = await self._request("GET", "/resumes/mine")
        items = data.get("items")
        if not isinstance(items, list):
            raise SubmissionError("unexpected /resumes/mine response", ErrorCategory.TRANSIENT, details=data)
        return items

    async def find_resource_by_title(self, title: str) -> Optional[ResourceRef]:
        for item in await self.list_resources():
            if (item.get("title") or "").strip() == title.strip() and item.get("id"):
                return ResourceRef(id=str(item["id"]), title=item.get("title"), raw=item)
        return None

    async def get_resource(self, resource_id: str) -> Dict[str, Any]:
        _, _, data = await self._request("GET", f"/resumes/{resource_id}")
        return data

    async def create_resource(self, payload: Dict[str, Any]) -> ResourceRef:
        document = build_resume_json(payload, title=payload.get("title"))
        _, headers, data = await self._request("POST", "/resumes", json_body=document)
        resource_id = data.get("id") or _id_from_location(headers.get("Location"))
        if resource_id:
            logger.info(f"Created resume on HH.ru: {resource_id}")
        else:
            logger.warning("Resume created without an identifiable id")
        return ResourceRef(id=str(resource_id) if resource_id else None, title=document["title"], raw=data)

    async def update_resource(self, resource_id: str, payload: Dict[str, Any]) -> None:
        document = build_resume_json(payload, title=payload.get("title"))
        await self._request("PUT", f"/resumes/{resource_id}", json_body=document)

    async def publish(self, resource_id: str) -> None:
        try:
            await self._request("POST", f"/resumes/{resource_id}/publish")
        except SubmissionError as e:
            if e.status in (400, 403, 409) and e.category not in (
                ErrorCategory.RATE_LIMITED,
                ErrorCategory.UNAUTHORIZED,
            ):
                raise SubmissionError(
                    e.message,
                    ErrorCategory.CANNOT_PUBLISH,
                    status=e.status,
                    error_values=e.error_values,
                    details=e.details,
                ) from e
            raise

    # --- negotiations ---

    async def create_transaction(
        self,
        resource_id: str,
        target_id: str,
        idempotency_key: str,
        encoding: RequestEncoding = RequestEncoding.JSON,
    ) -> TransactionRef:
        body = {"vacancy_id": target_id, "resume_id": resource_id}
        headers = {"Idempotency-Key": idempotency_key}
        if encoding == RequestEncoding.FORM:
            _, resp_headers, data = await self._request(
                "POST", "/negotiations", form_body=body, headers=headers
            )
        else:
            _, resp_headers, data = await self._request(
                "POST", "/negotiations", json_body=body, headers=headers
            )

        transaction_id = data.get("id") or _id_from_location(resp_headers.get("Location"))
        if not transaction_id:
            raise SubmissionError(
                "negotiation created without an identifiable id",
                ErrorCategory.TRANSIENT,
                details=data,
            )
        return TransactionRef(id=str(transaction_id), raw=data)

    async def attach_message(self, transaction_id: str, text: str) -> None:
        await self._request(
            "POST",
            f"/negotiations/{transaction_id}/messages",
            form_body={"message": text},
        )


class HHClientFactory(SubmissionClientFactory):
    """Resolves the user's token and builds an HHClient."""

    def __init__(
        self,
        token_provider: TokenProvider,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 20.0,
        user_agent: str = DEFAULT_USER_AGENT,
    ):
        self.token_provider = token_provider
        self.base_url = base_url
        self.timeout = timeout
        self.user_agent = user_agent

    async def for_user(self, user_id: str) -> HHClient:
        token = await require_token(self.token_provider, user_id)
        return HHClient(token, base_url=self.base_url, timeout=self.timeout, user_agent=self.user_agent)
