"""
models.py
Domain dataclasses (members, packages, payments, attendance, devices) and
the result structs handed to the UI.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date, datetime, time

# Common package durations offered in the package form
PACKAGE_MONTHS = [1, 3, 6, 12]

PAYMENT_METHODS = ["Cash", "Card", "Online"]

ATTENDANCE_SOURCES = ("manual", "biometric")

USER_ROLES = ("admin", "staff")


def _as_date(value) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _as_time(value) -> time | None:
    if value is None or value == "":
        return None
    if isinstance(value, time):
        return value
    return time.fromisoformat(str(value))


def _as_datetime(value) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


@dataclass(frozen=True)
class MembershipPackage:
    id: int | None
    name: str
    duration_months: int
    price: float
    description: str | None = None
    is_active: bool = True

    @classmethod
    def from_row(cls, row) -> "MembershipPackage":
        return cls(
            id=row["id"],
            name=row["name"],
            duration_months=int(row["duration_months"]),
            price=float(row["price"]),
            description=row["description"],
            is_active=bool(row["is_active"]),
        )


@dataclass(frozen=True)
class Member:
    id: int | None
    full_name: str
    phone: str
    nic: str | None = None
    email: str | None = None
    registration_date: date | None = None
    is_active: bool = True
    assigned_package_id: int | None = None
    custom_package_amount: float | None = None

    @classmethod
    def from_row(cls, row) -> "Member":
        custom = row["custom_package_amount"]
        return cls(
            id=row["id"],
            full_name=row["full_name"],
            phone=row["phone"],
            nic=row["nic"],
            email=row["email"],
            registration_date=_as_date(row["registration_date"]),
            is_active=bool(row["is_active"]),
            assigned_package_id=row["assigned_package_id"],
            custom_package_amount=(float(custom) if custom is not None else None),
        )


@dataclass(frozen=True)
class Payment:
    id: int | None
    member_id: int
    package_id: int
    amount: float
    payment_date: date
    start_date: date
    end_date: date
    next_due_date: date
    method: str = "Cash"
    remarks: str | None = None

    @classmethod
    def from_row(cls, row) -> "Payment":
        return cls(
            id=row["id"],
            member_id=row["member_id"],
            package_id=row["package_id"],
            amount=float(row["amount"]),
            payment_date=_as_date(row["payment_date"]),
            start_date=_as_date(row["start_date"]),
            end_date=_as_date(row["end_date"]),
            next_due_date=_as_date(row["next_due_date"]),
            method=row["method"],
            remarks=row["remarks"],
        )


@dataclass(frozen=True)
class Attendance:
    id: int | None
    member_id: int
    check_in_date: date
    check_in_time: time
    check_out_date: date | None = None
    check_out_time: time | None = None
    source: str = "manual"  # manual or biometric
    remarks: str | None = None

    @classmethod
    def from_row(cls, row) -> "Attendance":
        return cls(
            id=row["id"],
            member_id=row["member_id"],
            check_in_date=_as_date(row["check_in_date"]),
            check_in_time=_as_time(row["check_in_time"]),
            check_out_date=_as_date(row["check_out_date"]),
            check_out_time=_as_time(row["check_out_time"]),
            source=row["source"],
            remarks=row["remarks"],
        )

    @property
    def checked_in_at(self) -> datetime:
        return datetime.combine(self.check_in_date, self.check_in_time)

    @property
    def is_open(self) -> bool:
        return self.check_out_time is None


@dataclass(frozen=True)
class DeviceConfig:
    """Connection facts for one biometric terminal."""

    address: str
    port: int = 80
    username: str = "admin"
    password: str = ""

    def __repr__(self) -> str:
        return f"DeviceConfig(address={self.address!r}, port={self.port}, username={self.username!r})"


@dataclass(frozen=True)
class BiometricDevice:
    id: int | None
    name: str
    address: str
    port: int
    username: str
    password: str
    device_type: str = "Hikvision"
    is_active: bool = True
    is_connected: bool = False
    last_connected_at: datetime | None = None

    @classmethod
    def from_row(cls, row) -> "BiometricDevice":
        return cls(
            id=row["id"],
            name=row["name"],
            address=row["address"],
            port=int(row["port"]),
            username=row["username"],
            password=row["password"],
            device_type=row["device_type"],
            is_active=bool(row["is_active"]),
            is_connected=bool(row["is_connected"]),
            last_connected_at=_as_datetime(row["last_connected_at"]),
        )

    def to_config(self) -> DeviceConfig:
        return DeviceConfig(address=self.address, port=self.port, username=self.username, password=self.password)


@dataclass(frozen=True)
class DeviceEvent:
    subject_id: str
    major: int
    minor: int = 0
    timestamp: datetime | None = None
    name: str | None = None


@dataclass(frozen=True)
class FingerprintEnrollment:
    id: int | None
    member_id: int
    device_id: int | None
    enrolled_at: datetime
    status: str
    is_success: bool
    message: str | None = None

    @classmethod
    def from_row(cls, row) -> "FingerprintEnrollment":
        return cls(
            id=row["id"],
            member_id=row["member_id"],
            device_id=row["device_id"],
            enrolled_at=_as_datetime(row["enrolled_at"]),
            status=row["status"],
            is_success=bool(row["is_success"]),
            message=row["message"],
        )


class PaymentStatus(enum.Enum):
    NO_PACKAGE = "No Package"
    PAYMENT_REQUIRED = "Payment Required"
    OVERDUE = "Overdue"
    DUE_SOON = "Due Soon"
    PAID = "Paid"


class Tier(enum.Enum):
    """Urgency used for coloring, independent of the status label."""

    NEUTRAL = "neutral"
    URGENT = "urgent"
    CRITICAL = "critical"
    WARNING = "warning"
    OK = "ok"

    @property
    def color(self) -> str:
        return TIER_COLORS[self]


TIER_COLORS = {
    Tier.NEUTRAL: "#9E9E9E",
    Tier.URGENT: "#E53935",
    Tier.CRITICAL: "#C62828",
    Tier.WARNING: "#FF9800",
    Tier.OK: "#43A047",
}


@dataclass(frozen=True)
class MemberStatusView:
    status: PaymentStatus
    tier: Tier
    expired: bool = False
    end_date: date | None = None
    next_due_date: date | None = None
    last_payment_date: date | None = None
    days_until_due: int | None = None
    days_until_end: int | None = None
    projected: bool = False  # dates show what a payment would give, not a real payment

    @property
    def label(self) -> str:
        return self.status.value


class OutcomeKind(enum.Enum):
    MATCH = "match"
    NOT_FOUND = "not_found"
    CONFIG_ERROR = "config_error"
    CONNECTION_ERROR = "connection_error"
    DATABASE_ERROR = "database_error"


@dataclass(frozen=True)
class MemberSnapshot:
    member: Member
    package: MembershipPackage | None
    status: MemberStatusView
    recent_attendance: list[Attendance] = field(default_factory=list)


@dataclass(frozen=True)
class PollOutcome:
    kind: OutcomeKind
    message: str = ""
    subject_id: str | None = None
    snapshot: MemberSnapshot | None = None

    @property
    def is_error(self) -> bool:
        return self.kind in (OutcomeKind.CONFIG_ERROR, OutcomeKind.CONNECTION_ERROR, OutcomeKind.DATABASE_ERROR)
