from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Mapping


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RegistrationValidationError(ValueError):
    """Raised when a registration payload is missing fields or malformed."""


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    SYNCED = "synced"
    FAILED = "failed"


PACKAGE_CODES = frozenset({"standard", "premium"})

_DATE_RE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")
_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})\s*(AM|PM)$", re.IGNORECASE)

# (attribute, camelCase key, snake_case key, required)
_PAYLOAD_FIELDS: tuple[tuple[str, str, str, bool], ...] = (
    ("customer_name", "customerName", "customer_name", True),
    ("airtel_number", "airtelNumber", "airtel_number", True),
    ("alternate_number", "alternateNumber", "alternate_number", False),
    ("email", "email", "email", True),
    ("preferred_package", "preferredPackage", "preferred_package", True),
    ("installation_town", "installationTown", "installation_town", True),
    ("delivery_landmark", "deliveryLandmark", "delivery_landmark", False),
    ("installation_location", "installationLocation", "installation_location", False),
    ("visit_date", "visitDate", "visit_date", True),
    ("visit_time", "visitTime", "visit_time", True),
)


def _lookup(obj: Mapping[str, Any], camel: str, snake: str) -> str:
    v = obj.get(camel)
    if v is None:
        v = obj.get(snake)
    if v is None:
        return ""
    if not isinstance(v, (str, int)) or isinstance(v, bool):
        raise RegistrationValidationError(f"'{camel}' must be a string")
    return str(v).strip()


def _check_visit_date(value: str) -> None:
    m = _DATE_RE.match(value)
    if not m:
        raise RegistrationValidationError("'visitDate' must use M/d/yyyy (e.g. 12/25/2026)")
    month, day, year = (int(g) for g in m.groups())
    try:
        date(year, month, day)
    except ValueError as exc:
        raise RegistrationValidationError(f"'visitDate' is not a calendar date: {value}") from exc


def _check_visit_time(value: str) -> None:
    m = _TIME_RE.match(value)
    if not m:
        raise RegistrationValidationError("'visitTime' must use h:mm AM/PM (e.g. 2:30 PM)")
    hours, minutes = int(m.group(1)), int(m.group(2))
    if not (1 <= hours <= 12 and 0 <= minutes <= 59):
        raise RegistrationValidationError(f"'visitTime' out of range: {value}")


@dataclass(frozen=True)
class RegistrationPayload:
    """Customer registration captured by the wizard.

    Built once through `from_mapping`, which is the only validation point; code
    downstream of the queue treats instances as well-formed.
    """

    customer_name: str
    airtel_number: str
    email: str
    preferred_package: str
    installation_town: str
    visit_date: str
    visit_time: str
    alternate_number: str = ""
    delivery_landmark: str = ""
    installation_location: str = ""

    @classmethod
    def from_mapping(cls, obj: Mapping[str, Any]) -> RegistrationPayload:
        if not isinstance(obj, Mapping):
            raise RegistrationValidationError("registration payload must be a mapping")

        values: dict[str, str] = {}
        missing: list[str] = []
        for attr, camel, snake, required in _PAYLOAD_FIELDS:
            value = _lookup(obj, camel, snake)
            if required and not value:
                missing.append(camel)
            values[attr] = value

        if missing:
            raise RegistrationValidationError(f"Missing required fields: {', '.join(missing)}")

        package = values["preferred_package"].lower()
        if package not in PACKAGE_CODES:
            raise RegistrationValidationError("'preferredPackage' must be either 'standard' or 'premium'")
        values["preferred_package"] = package

        _check_visit_date(values["visit_date"])
        _check_visit_time(values["visit_time"])

        return cls(**values)

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> RegistrationPayload:
        """Rebuild from a stored registrations row.

        Stored rows were accepted once already, so nothing is rejected here:
        absent columns become empty strings and the forms formatters pass
        unrecognised values through.
        """

        values: dict[str, str] = {}
        for attr, camel, snake, _ in _PAYLOAD_FIELDS:
            v = row.get(snake)
            if v is None:
                v = row.get(camel)
            values[attr] = "" if v is None else str(v).strip()
        values["preferred_package"] = values["preferred_package"].lower()
        return cls(**values)

    def to_dict(self) -> dict[str, str]:
        return {camel: getattr(self, attr) for attr, camel, _, _ in _PAYLOAD_FIELDS}

    def to_record(self, agent_id: str) -> dict[str, Any]:
        """Row for the remote registrations collection."""

        record: dict[str, Any] = {snake: getattr(self, attr) for attr, _, snake, _ in _PAYLOAD_FIELDS}
        record["agent_id"] = agent_id
        record["status"] = "pending"
        return record


@dataclass(frozen=True)
class AgentSnapshot:
    """Agent identity denormalized onto a queue entry at capture time."""

    name: str
    mobile: str

    @classmethod
    def from_mapping(cls, obj: Mapping[str, Any]) -> AgentSnapshot:
        return cls(name=str(obj.get("name") or "Agent"), mobile=str(obj.get("mobile") or ""))

    @classmethod
    def from_agent_row(cls, row: Mapping[str, Any]) -> AgentSnapshot:
        # Primary contact number first, secondary as fallback.
        mobile = row.get("airtel_phone") or row.get("safaricom_phone") or ""
        return cls(name=str(row.get("name") or "Agent"), mobile=str(mobile))

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "mobile": self.mobile}


@dataclass
class PendingRegistration:
    id: str
    agent_id: str
    customer: RegistrationPayload
    agent: AgentSnapshot
    status: SyncStatus
    retry_count: int
    created_at: str
    updated_at: str
    error: str | None = None
    remote_id: str | None = None


@dataclass(frozen=True)
class SubmissionResult:
    success: bool
    response_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class ItemResult:
    """Outcome of syncing one registration."""

    success: bool
    registration_id: str
    error: str | None = None

    def __bool__(self) -> bool:
        return self.success


OFFLINE_ERROR = "Device is offline"
BUSY_ERROR = "Sync already in progress"


@dataclass
class SyncResult:
    success: bool = True
    synced: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    @classmethod
    def offline(cls) -> SyncResult:
        return cls(success=False, errors=[OFFLINE_ERROR])

    @classmethod
    def busy(cls) -> SyncResult:
        return cls(success=False, errors=[BUSY_ERROR])

    def record(self, item: ItemResult) -> None:
        if item.success:
            self.synced += 1
            return
        self.failed += 1
        self.errors.append(f"Registration {item.registration_id}: {item.error or 'Unknown error'}")

    def fail(self, message: str) -> None:
        self.success = False
        self.errors.append(message)

    def merge(self, other: SyncResult) -> SyncResult:
        return SyncResult(
            success=self.success and other.success,
            synced=self.synced + other.synced,
            failed=self.failed + other.failed,
            errors=[*self.errors, *other.errors],
        )

    def summary(self) -> str:
        text = f"{self.synced} synced"
        if self.failed:
            text += f", {self.failed} failed"
        return text
