from __future__ import annotations

import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Protocol
from urllib.parse import quote

import requests

from .models import AgentSnapshot, RegistrationPayload, SubmissionResult


logger = logging.getLogger("fieldsync.forms")

# Package codes -> display names shown on the provider form.
PACKAGE_DISPLAY_NAMES: Dict[str, str] = {
    "standard": "5G _15Mbps_30days at Ksh.2999",
    "premium": "5G _30Mbps_30days at Ksh.3999",
}

QUESTION_IDS: Dict[str, str] = {
    "agentType": "r0feee2e2bc7c44fb9af400709e7e6276",
    "enterpriseCP": "r52e9f6e788444e2a96d9e30de5d635d8",
    "agentName": "rcf88d2d33e8c4ed4b33ccc91fec1d771",
    "agentMobile": "r2855e7f8fcfb44c98a2c5797e8e9b087",
    "totalUnitsRequired": "r5d2a658a265b4f3ea2ad9aee1c8bc9c5",
    "leadType": "rd897bb0eb8344bafaaf8db07a535a049",
    "connectionType": "r4ceb180775c04d5a92a39fd687573090",
    "customerName": "r3af4eebb47ff46b78eb4118311884f53",
    "airtelNumber": "r8b0d2eb8e038433f8ce4888e07bed122",
    "alternateNumber": "r401284e3fee94602a39ed9a0a14890ea",
    "email": "r5dbc62a93dc64f3d84a2442f5ea4a856",
    "preferredPackage": "r819c212e954f4367acaba71082424415",
    "installationTown": "rc89257414e57426dac9a183c60a4b556",
    "deliveryLandmark": "r7a69684d43ec4bf1b6971b21a8b4dd18",
    "visitDate": "r68b858271107400189b8d681d1b19c38",
    "visitTime": "rae98a58cb06949c1a3222443368aa64e",
    "installationLocation": "r55f328ec020a4a629f58639cd56ecd85",
}

INTERNAL_DEFAULTS: Dict[str, str] = {
    "agentType": "Enterprise",
    "enterpriseCP": "WAM APPLICATIONS",
    "leadType": "Confirmed",
    "connectionType": "SmartConnect (5G ODU)",
    "totalUnitsRequired": "1",
}

_BROWSER_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/142.0.0.0 Safari/537.36"
)

_TIME_12H_RE = re.compile(r"(\d{1,2}):(\d{2})\s*(AM|PM)", re.IGNORECASE)
_DATE_MDY_RE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")
_GUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)

_TOKEN_PATTERNS = (
    re.compile(r"<input[^>]*name=[\"']__RequestVerificationToken[\"'][^>]*value=[\"']([^\"']+)[\"']"),
    re.compile(r"<input[^>]*value=[\"']([^\"']+)[\"'][^>]*name=[\"']__RequestVerificationToken[\"']"),
    re.compile(r'"__RequestVerificationToken"\s*:\s*"([^"]+)"'),
    re.compile(r"antiForgeryToken[\"']?\s*[:=]\s*[\"']([A-Za-z0-9_\-+/=]{20,})[\"']"),
)


class FormsSubmissionError(RuntimeError):
    """Raised by `FormsClient` when the provider exchange fails."""


# -----------------------------
# Field formatting
# -----------------------------


def format_phone(raw: str | None) -> str:
    """Normalize to the 254XXXXXXXXX international form."""

    if not raw:
        return ""
    digits = re.sub(r"\D", "", raw)
    if not digits:
        return ""
    if digits.startswith("254") and len(digits) >= 12:
        return digits
    if digits.startswith("0"):
        return f"254{digits[1:]}"
    if len(digits) >= 9:
        return f"254{digits}"
    return digits


def normalize_town(town: str | None) -> str:
    if not town:
        return ""
    return re.sub(r"\s+", "", town).upper()


def convert_to_24_hour(time_12h: str | None) -> str:
    if not time_12h:
        return ""
    m = _TIME_12H_RE.search(time_12h)
    if not m:
        return time_12h
    hours = int(m.group(1))
    minutes = m.group(2)
    period = m.group(3).upper()
    if period == "PM" and hours != 12:
        hours += 12
    elif period == "AM" and hours == 12:
        hours = 0
    return f"{hours:02d}:{minutes}"


def package_display_name(code: str | None) -> str:
    if not code:
        return ""
    return PACKAGE_DISPLAY_NAMES.get(code.lower(), code)


def format_installation_location(town: str | None, location: str | None) -> str:
    if not location:
        return ""
    normalized = normalize_town(town)
    return f"{normalized} - {location}" if normalized else location


def format_visit_date(value: str | None) -> str:
    """M/d/yyyy -> yyyy-MM-dd."""

    if not value:
        return ""
    m = _DATE_MDY_RE.match(value.strip())
    if not m:
        return value
    month, day, year = (int(g) for g in m.groups())
    return f"{year:04d}-{month:02d}-{day:02d}"


# -----------------------------
# Payload
# -----------------------------


@dataclass(frozen=True)
class FormsConfig:
    form_id: str
    tenant_id: str
    user_id: str
    response_page_url: str
    timeout_s: float = 20.0
    question_ids: Mapping[str, str] = field(default_factory=lambda: dict(QUESTION_IDS))
    defaults: Mapping[str, str] = field(default_factory=lambda: dict(INTERNAL_DEFAULTS))


def build_answers(
    customer: RegistrationPayload,
    agent: AgentSnapshot,
    *,
    question_ids: Mapping[str, str] = QUESTION_IDS,
    defaults: Mapping[str, str] = INTERNAL_DEFAULTS,
) -> List[Dict[str, str]]:
    """Ordered answer list; the provider rejects submissions with a different order."""

    ordered: List[tuple[str, str]] = [
        ("agentType", defaults["agentType"]),
        ("enterpriseCP", defaults["enterpriseCP"]),
        ("agentName", agent.name),
        ("agentMobile", format_phone(agent.mobile)),
        ("leadType", defaults["leadType"]),
        ("totalUnitsRequired", defaults["totalUnitsRequired"]),
        ("connectionType", defaults["connectionType"]),
        ("customerName", customer.customer_name),
        ("airtelNumber", format_phone(customer.airtel_number)),
        ("alternateNumber", format_phone(customer.alternate_number)),
        ("email", customer.email),
        ("preferredPackage", package_display_name(customer.preferred_package)),
        ("visitDate", format_visit_date(customer.visit_date)),
        ("visitTime", convert_to_24_hour(customer.visit_time)),
        ("deliveryLandmark", customer.delivery_landmark),
        ("installationTown", normalize_town(customer.installation_town)),
        (
            "installationLocation",
            format_installation_location(customer.installation_town, customer.installation_location),
        ),
    ]
    return [{"questionId": question_ids[key], "answer1": value or ""} for key, value in ordered]


# -----------------------------
# Provider exchange
# -----------------------------


@dataclass(frozen=True)
class FormsSessionTokens:
    request_verification_token: str
    cookie_header: str
    muid: str
    user_session_id: str
    user_id: str
    tenant_id: str


def _extract_verification_token(html: str) -> str | None:
    for pattern in _TOKEN_PATTERNS:
        m = pattern.search(html)
        if m:
            return m.group(1)
    return None


class FormsClient:
    """HTTP exchange with the forms provider (session bootstrap + response POST)."""

    def __init__(self, config: FormsConfig, *, session: requests.Session | None = None) -> None:
        self.config = config
        self.session = session or requests.Session()

    def fetch_session_tokens(self) -> FormsSessionTokens:
        response = self.session.get(
            self.config.response_page_url,
            headers={
                "User-Agent": _BROWSER_UA,
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                "Accept-Language": "en-US,en;q=0.9",
            },
            timeout=self.config.timeout_s,
        )
        if response.status_code >= 300:
            raise FormsSubmissionError(f"Failed to fetch tokens: {response.status_code}")

        cookies = {c.name: c.value or "" for c in response.cookies}
        html = response.text or ""
        token = _extract_verification_token(html) or cookies.get("__RequestVerificationToken", "")
        if not token:
            raise FormsSubmissionError("Failed to extract verification token from HTML")
        if "FormsWebSessionId" not in cookies:
            logger.warning("forms session cookie missing; submission may be rejected")

        user_match = re.search(r'"userId":"([^"]+)"', html)
        tenant_match = re.search(r'"tenantId":"([^"]+)"', html)
        user_id = user_match.group(1) if user_match else self.config.user_id
        tenant_id = tenant_match.group(1) if tenant_match else self.config.tenant_id
        for label, value in (("User ID", user_id), ("Tenant ID", tenant_id)):
            if not _GUID_RE.match(value):
                raise FormsSubmissionError(f"{label} must be a GUID, but got: {value!r}")

        return FormsSessionTokens(
            request_verification_token=token,
            cookie_header="; ".join(f"{k}={v}" for k, v in cookies.items()),
            muid=cookies.get("MUID", ""),
            user_session_id=response.headers.get("x-usersessionid") or str(uuid.uuid4()),
            user_id=user_id,
            tenant_id=tenant_id,
        )

    def responses_url(self, tokens: FormsSessionTokens) -> str:
        form_id = quote(self.config.form_id, safe="")
        return (
            "https://forms.guest.usercontent.microsoft/formapi/api/"
            f"{tokens.tenant_id}/users/{tokens.user_id}/forms(%27{form_id}%27)/responses"
        )

    def post_response(self, answers: List[Dict[str, str]], tokens: FormsSessionTokens) -> Dict[str, Any]:
        now = datetime.now(timezone.utc).isoformat()
        correlation_id = str(uuid.uuid4())
        body = {
            "startDate": now,
            "submitDate": now,
            # The provider expects the answer list as a JSON string, not an array.
            "answers": json.dumps(answers, separators=(",", ":")),
        }
        response = self.session.post(
            self.responses_url(tokens),
            headers={
                "__requestverificationtoken": tokens.request_verification_token,
                "Accept": "application/json",
                "Content-Type": "application/json",
                "odata-version": "4.0",
                "odata-maxverion": "4.0",
                "Origin": "https://forms.cloud.microsoft",
                "Referer": "https://forms.cloud.microsoft/",
                "User-Agent": _BROWSER_UA,
                "x-correlationid": correlation_id,
                "x-ms-form-muid": tokens.muid,
                "x-ms-form-request-ring": "business",
                "x-ms-form-request-source": "ms-formweb",
                "x-usersessionid": tokens.user_session_id,
                "Cookie": tokens.cookie_header,
            },
            json=body,
            timeout=self.config.timeout_s,
        )

        try:
            data = response.json()
        except ValueError as exc:
            raise FormsSubmissionError(
                f"Forms submission failed: {response.status_code} - {response.text[:500]}"
            ) from exc

        if response.status_code >= 300:
            message = ""
            if isinstance(data, dict) and isinstance(data.get("error"), dict):
                message = str(data["error"].get("message") or "")
            if response.status_code == 403 and "closed" in message.lower():
                raise FormsSubmissionError("Forms form is closed. Reopen the form to enable submissions.")
            raise FormsSubmissionError(f"Forms submission failed: {response.status_code} - {json.dumps(data)[:500]}")

        if not isinstance(data, dict):
            raise FormsSubmissionError("Forms submission returned a non-object response")
        return data


class SubmissionAdapter(Protocol):
    def submit(self, customer: RegistrationPayload, agent: AgentSnapshot) -> SubmissionResult: ...


class FormsSubmitter:
    """Remote Submission Adapter: one provider submission per call, never raises.

    There is no deduplication here; callers check for an existing response id
    before calling `submit`.
    """

    def __init__(self, client: FormsClient) -> None:
        self.client = client

    def submit(self, customer: RegistrationPayload, agent: AgentSnapshot) -> SubmissionResult:
        try:
            answers = build_answers(
                customer,
                agent,
                question_ids=self.client.config.question_ids,
                defaults=self.client.config.defaults,
            )
            tokens = self.client.fetch_session_tokens()
            data = self.client.post_response(answers, tokens)
        except Exception as exc:
            logger.warning(
                "forms submission failed",
                extra={"fields": {"customer": customer.customer_name, "error": str(exc)}},
            )
            return SubmissionResult(success=False, error=str(exc) or "Failed to register customer")

        response_id = data.get("id")
        if response_id is None or str(response_id) == "":
            return SubmissionResult(success=False, error="Forms submission returned no response id")

        logger.info("forms submission accepted", extra={"fields": {"response_id": str(response_id)}})
        return SubmissionResult(success=True, response_id=str(response_id))
