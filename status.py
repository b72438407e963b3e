"""
status.py
Membership / payment status rules.

Everything here is a pure function of a reference date and the facts passed
in, so the pages and the identification poller agree on what "Paid",
"Due Soon" or "Overdue" means.
"""

from __future__ import annotations

from collections import Counter
from datetime import date, datetime, timedelta, timezone
from typing import Iterable

from config import DUE_SOON_DAYS
from models import Member, MemberStatusView, MembershipPackage, Payment, PaymentStatus, Tier


def utc_today() -> date:
    """Today's calendar date in UTC. Use one value per computation."""
    return datetime.now(timezone.utc).date()


def add_months(start: date, months: int) -> date:
    """
    Add months while keeping day in valid range (e.g., Jan 31 + 1 month => Feb 28/29).
    """
    y = start.year + (start.month - 1 + months) // 12
    m = (start.month - 1 + months) % 12 + 1
    # last day of target month
    if m == 12:
        next_month = date(y + 1, 1, 1)
    else:
        next_month = date(y, m + 1, 1)
    last_day = next_month - timedelta(days=1)
    day = min(start.day, last_day.day)
    return date(y, m, day)


def payment_period(start: date, duration_months: int) -> tuple[date, date]:
    """Return (end_date, next_due_date) for a payment starting on `start`."""
    end = add_months(start, duration_months) - timedelta(days=1)
    return end, end + timedelta(days=1)


def latest_payment_for_package(payments: Iterable[Payment], package_id: int | None) -> Payment | None:
    """
    Most recent payment made for `package_id`. Payments for other packages
    (e.g. from before a package switch) do not count.
    """
    if package_id is None:
        return None
    matching = [p for p in payments if p.package_id == package_id]
    if not matching:
        return None
    return max(matching, key=lambda p: (p.payment_date, p.id or 0))


def compute_member_status(
    today: date,
    has_assigned_package: bool,
    duration_months: int | None = None,
    last_payment: Payment | None = None,
    due_soon_days: int = DUE_SOON_DAYS,
) -> MemberStatusView:
    if not has_assigned_package:
        return MemberStatusView(status=PaymentStatus.NO_PACKAGE, tier=Tier.NEUTRAL)

    if last_payment is None:
        if duration_months:
            projected = add_months(today, duration_months)
            return MemberStatusView(
                status=PaymentStatus.PAYMENT_REQUIRED,
                tier=Tier.URGENT,
                end_date=projected,
                next_due_date=projected,
                projected=True,
            )
        return MemberStatusView(status=PaymentStatus.PAYMENT_REQUIRED, tier=Tier.URGENT)

    days_until_due = (last_payment.next_due_date - today).days
    days_until_end = (last_payment.end_date - today).days

    if days_until_due < 0:
        status, tier = PaymentStatus.OVERDUE, Tier.CRITICAL
    elif days_until_due <= due_soon_days:
        status, tier = PaymentStatus.DUE_SOON, Tier.WARNING
    else:
        status, tier = PaymentStatus.PAID, Tier.OK

    return MemberStatusView(
        status=status,
        tier=tier,
        expired=days_until_end < 0,
        end_date=last_payment.end_date,
        next_due_date=last_payment.next_due_date,
        last_payment_date=last_payment.payment_date,
        days_until_due=days_until_due,
        days_until_end=days_until_end,
    )


def member_status(
    today: date,
    member: Member,
    package: MembershipPackage | None,
    payments: Iterable[Payment],
) -> MemberStatusView:
    has_package = member.assigned_package_id is not None
    last = latest_payment_for_package(payments, member.assigned_package_id)
    duration = package.duration_months if package is not None else None
    return compute_member_status(today, has_package, duration, last)


def can_record_payment(today: date, last_payment: Payment | None, due_soon_days: int = DUE_SOON_DAYS) -> bool:
    """
    Whether a new payment may be added for the member's current package.
    Only blocked while the current period is running and the next due date
    is still outside the due-soon window.
    """
    if last_payment is None:
        return True
    days_until_due = (last_payment.next_due_date - today).days
    days_until_end = (last_payment.end_date - today).days
    return not (days_until_end >= 0 and days_until_due > due_soon_days)


def status_counts(views: Iterable[MemberStatusView]) -> dict[PaymentStatus, int]:
    counts = Counter(v.status for v in views)
    return {s: counts.get(s, 0) for s in PaymentStatus}
