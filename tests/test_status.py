from datetime import date, timedelta

import pytest

from models import Member, MembershipPackage, Payment, PaymentStatus, Tier
from status import (
    add_months,
    can_record_payment,
    compute_member_status,
    latest_payment_for_package,
    member_status,
    payment_period,
    status_counts,
)

TODAY = date(2025, 6, 15)


def make_payment(package_id=1, end=None, due=None, paid=None, pid=1):
    end = end or TODAY + timedelta(days=30)
    due = due or end + timedelta(days=1)
    return Payment(
        id=pid,
        member_id=7,
        package_id=package_id,
        amount=3000.0,
        payment_date=paid or TODAY - timedelta(days=1),
        start_date=TODAY - timedelta(days=1),
        end_date=end,
        next_due_date=due,
    )


@pytest.mark.parametrize("payment", [None, make_payment(due=TODAY - timedelta(days=3))])
def test_no_package_wins_over_any_payment_history(payment):
    view = compute_member_status(TODAY, False, None, payment)
    assert view.status == PaymentStatus.NO_PACKAGE
    assert view.tier == Tier.NEUTRAL
    assert view.next_due_date is None


def test_due_yesterday_is_overdue():
    view = compute_member_status(TODAY, True, 1, make_payment(due=TODAY - timedelta(days=1)))
    assert view.status == PaymentStatus.OVERDUE
    assert view.tier == Tier.CRITICAL
    assert view.days_until_due == -1


def test_due_in_seven_days_is_due_soon():
    view = compute_member_status(TODAY, True, 1, make_payment(due=TODAY + timedelta(days=7)))
    assert view.status == PaymentStatus.DUE_SOON
    assert view.tier == Tier.WARNING


def test_due_today_is_due_soon():
    view = compute_member_status(TODAY, True, 1, make_payment(due=TODAY))
    assert view.status == PaymentStatus.DUE_SOON


def test_due_in_eight_days_is_paid():
    view = compute_member_status(TODAY, True, 1, make_payment(due=TODAY + timedelta(days=8)))
    assert view.status == PaymentStatus.PAID
    assert view.tier == Tier.OK
    assert not view.expired


def test_expired_flag_is_independent_of_due_status():
    payment = make_payment(end=TODAY - timedelta(days=1), due=TODAY + timedelta(days=3))
    view = compute_member_status(TODAY, True, 1, payment)
    assert view.status == PaymentStatus.DUE_SOON
    assert view.expired


def test_payment_required_projects_dates_from_today():
    view = compute_member_status(TODAY, True, 3, None)
    assert view.status == PaymentStatus.PAYMENT_REQUIRED
    assert view.tier == Tier.URGENT
    assert view.projected
    assert view.end_date == date(2025, 9, 15)
    assert view.next_due_date == date(2025, 9, 15)


def test_payment_required_without_duration_has_no_dates():
    view = compute_member_status(TODAY, True, None, None)
    assert view.status == PaymentStatus.PAYMENT_REQUIRED
    assert view.end_date is None
    assert not view.projected


def test_switching_package_ignores_old_payment():
    member = Member(id=7, full_name="A", phone="1", assigned_package_id=2)
    package_b = MembershipPackage(id=2, name="Quarterly", duration_months=3, price=8000.0)
    old = make_payment(package_id=1, due=TODAY + timedelta(days=20))

    view = member_status(TODAY, member, package_b, [old])

    assert view.status == PaymentStatus.PAYMENT_REQUIRED


def test_latest_payment_for_package_picks_most_recent_matching():
    older = make_payment(package_id=1, paid=TODAY - timedelta(days=60), pid=1)
    newer = make_payment(package_id=1, paid=TODAY - timedelta(days=5), pid=2)
    other = make_payment(package_id=2, paid=TODAY, pid=3)

    assert latest_payment_for_package([older, other, newer], 1) == newer
    assert latest_payment_for_package([older, other, newer], 3) is None
    assert latest_payment_for_package([older], None) is None


def test_payment_guard_blocks_running_period():
    payment = make_payment(end=TODAY + timedelta(days=30), due=TODAY + timedelta(days=30))
    assert not can_record_payment(TODAY, payment)


def test_payment_guard_allows_when_due_soon():
    payment = make_payment(end=TODAY + timedelta(days=30), due=TODAY + timedelta(days=5))
    assert can_record_payment(TODAY, payment)


@pytest.mark.parametrize(
    "end_offset,allowed",
    [
        (0, False),
        (-1, True),
    ],
)
def test_payment_guard_end_date_boundary(end_offset, allowed):
    payment = make_payment(end=TODAY + timedelta(days=end_offset), due=TODAY + timedelta(days=30))
    assert can_record_payment(TODAY, payment) is allowed


def test_payment_guard_allows_overdue_and_missing_payment():
    assert can_record_payment(TODAY, make_payment(end=TODAY - timedelta(days=5), due=TODAY - timedelta(days=4)))
    assert can_record_payment(TODAY, None)


def test_payment_period_derives_end_and_next_due():
    assert payment_period(date(2025, 3, 1), 1) == (date(2025, 3, 31), date(2025, 4, 1))
    assert payment_period(date(2025, 1, 15), 3) == (date(2025, 4, 14), date(2025, 4, 15))


def test_add_months_clamps_to_month_end():
    assert add_months(date(2025, 1, 31), 1) == date(2025, 2, 28)
    assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
    assert add_months(date(2025, 11, 30), 3) == date(2026, 2, 28)
    assert add_months(date(2025, 3, 15), -1) == date(2025, 2, 15)


def test_status_counts_includes_every_status():
    views = [
        compute_member_status(TODAY, False),
        compute_member_status(TODAY, True, 1, None),
        compute_member_status(TODAY, True, 1, make_payment(due=TODAY + timedelta(days=2))),
        compute_member_status(TODAY, True, 1, make_payment(due=TODAY + timedelta(days=3))),
    ]
    counts = status_counts(views)
    assert counts[PaymentStatus.DUE_SOON] == 2
    assert counts[PaymentStatus.NO_PACKAGE] == 1
    assert counts[PaymentStatus.PAYMENT_REQUIRED] == 1
    assert counts[PaymentStatus.PAID] == 0
    assert counts[PaymentStatus.OVERDUE] == 0
