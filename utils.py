"""
utils.py
Validation, listing frames, sample data.
"""

from __future__ import annotations

from datetime import datetime, timedelta

import pandas as pd

import db
from models import MemberStatusView, Member, MembershipPackage, Payment
from status import add_months, utc_today

MEMBER_COLUMNS = [
    "id", "full_name", "phone", "package", "status", "tier", "last_payment", "next_due", "package_end", "expired",
]


def parse_amount(text: str) -> float | None:
    """'1,500.00' -> 1500.0; None if not a positive number."""
    try:
        value = float(str(text).replace(",", "").strip())
    except ValueError:
        return None
    return value if value > 0 else None


def validate_member_inputs(full_name: str, phone: str, email: str = "") -> list[str]:
    errors: list[str] = []
    if not full_name.strip():
        errors.append("Full name is required.")
    if not phone.strip():
        errors.append("Phone is required.")
    if email.strip() and "@" not in email:
        errors.append("Email address is not valid.")
    return errors


def validate_package_inputs(name: str, duration_months, price) -> list[str]:
    errors: list[str] = []
    if not name.strip():
        errors.append("Package name is required.")
    try:
        if int(duration_months) <= 0:
            errors.append("Duration must be at least one month.")
    except (TypeError, ValueError):
        errors.append("Duration must be a whole number of months.")
    if parse_amount(price) is None:
        errors.append("Price must be a positive number.")
    return errors


def validate_device_inputs(name: str, address: str, port, username: str) -> list[str]:
    errors: list[str] = []
    if not name.strip():
        errors.append("Device name is required.")
    if not address.strip():
        errors.append("IP address is required.")
    try:
        if not 0 < int(port) < 65536:
            errors.append("Port must be between 1 and 65535.")
    except (TypeError, ValueError):
        errors.append("Port must be numeric.")
    if not username.strip():
        errors.append("Username is required.")
    return errors


def member_status_frame(rows: list[tuple[Member, MembershipPackage | None, MemberStatusView]]) -> pd.DataFrame:
    records = []
    for member, package, view in rows:
        records.append(
            {
                "id": member.id,
                "full_name": member.full_name,
                "phone": member.phone,
                "package": package.name if package else "No Package",
                "status": view.label,
                "tier": view.tier.value,
                "last_payment": view.last_payment_date,
                "next_due": view.next_due_date,
                "package_end": view.end_date,
                "expired": view.expired,
            }
        )
    if not records:
        return pd.DataFrame(columns=MEMBER_COLUMNS)
    return pd.DataFrame(records, columns=MEMBER_COLUMNS)


def collection_summary(payments: list[Payment]) -> pd.DataFrame:
    """Total collected per payment date."""
    if not payments:
        return pd.DataFrame(columns=["payment_date", "payments", "amount"])
    df = pd.DataFrame([{"payment_date": p.payment_date, "amount": p.amount} for p in payments])
    out = df.groupby("payment_date").agg(payments=("amount", "size"), amount=("amount", "sum")).reset_index()
    return out.sort_values("payment_date", ascending=False).reset_index(drop=True)


def insert_sample_data() -> None:
    """
    Insert packages, 3 members and a few payments (safe to run multiple times: adds new rows each time).
    """
    today = utc_today()

    monthly = db.add_package("Monthly", 1, 3000.0, "Gym floor access")
    quarterly = db.add_package("Quarterly", 3, 8000.0, "Gym floor + classes")

    # Member 1: paid, due in ~5 days
    m1 = db.add_member("Ahmed Hassan", "0770000001", nic="901234567V", registration_date=today - timedelta(days=60))
    db.assign_package(m1, monthly)
    db.record_payment(m1, monthly, 3000.0, today - timedelta(days=25), add_months(today + timedelta(days=5), -1))

    # Member 2: paid for a longer plan
    m2 = db.add_member("Mona Ali", "0770000002", registration_date=today - timedelta(days=10))
    db.assign_package(m2, quarterly)
    db.record_payment(m2, quarterly, 8000.0, today - timedelta(days=10), today - timedelta(days=10))

    # Member 3: overdue
    m3 = db.add_member("Omar Samy", "0770000003", registration_date=today - timedelta(days=90))
    db.assign_package(m3, monthly)
    db.record_payment(m3, monthly, 3000.0, today - timedelta(days=60), today - timedelta(days=60))

    now = datetime.now().time()
    db.mark_attendance(m1, today, now, source="manual", remarks="Sample check-in")
