from datetime import date, time

import pytest


def test_init_db_creates_admin_and_forces_password_change(gym_db):
    row = gym_db.fetch_one("SELECT username, role FROM users")
    assert row["username"] == "admin"
    assert row["role"] == "admin"
    assert gym_db.is_force_password_change()

    gym_db.clear_force_password_change()
    gym_db.init_db("ignored")
    assert not gym_db.is_force_password_change()
    assert len(gym_db.fetch_all("SELECT id FROM users")) == 1


def test_record_payment_derives_period_from_package(gym_db):
    package_id = gym_db.add_package("Quarterly", 3, 8000.0)
    member_id = gym_db.add_member("Nimal Silva", "0771234567")

    payment = gym_db.record_payment(member_id, package_id, 8000.0, date(2025, 1, 15), date(2025, 1, 15))

    assert payment.end_date == date(2025, 4, 14)
    assert payment.next_due_date == date(2025, 4, 15)
    stored = gym_db.payments_for_member(member_id)[0]
    assert stored == payment


def test_record_payment_rejects_unknown_package(gym_db):
    member_id = gym_db.add_member("Nimal Silva", "0771234567")
    with pytest.raises(ValueError):
        gym_db.record_payment(member_id, 999, 100.0, date(2025, 1, 1), date(2025, 1, 1))


def test_latest_payment_only_considers_given_package(gym_db):
    monthly = gym_db.add_package("Monthly", 1, 3000.0)
    yearly = gym_db.add_package("Yearly", 12, 30000.0)
    member_id = gym_db.add_member("Nimal Silva", "0771234567")
    gym_db.record_payment(member_id, monthly, 3000.0, date(2025, 1, 1), date(2025, 1, 1))
    second = gym_db.record_payment(member_id, monthly, 3000.0, date(2025, 2, 1), date(2025, 2, 1))
    gym_db.record_payment(member_id, yearly, 30000.0, date(2025, 3, 1), date(2025, 3, 1))

    assert gym_db.latest_payment(member_id, monthly) == second
    assert gym_db.latest_payment(member_id, None) is None


def test_payments_for_members_groups_by_member(gym_db):
    package_id = gym_db.add_package("Monthly", 1, 3000.0)
    a = gym_db.add_member("A", "1")
    b = gym_db.add_member("B", "2")
    gym_db.record_payment(a, package_id, 3000.0, date(2025, 1, 1), date(2025, 1, 1))

    grouped = gym_db.payments_for_members([a, b])

    assert len(grouped[a]) == 1
    assert grouped[b] == []
    assert gym_db.payments_for_members([]) == {}


def test_second_attendance_same_day_records_checkout(gym_db):
    member_id = gym_db.add_member("Nimal Silva", "0771234567")
    day = date(2025, 6, 15)

    first, created = gym_db.mark_attendance(member_id, day, time(6, 30))
    assert created and first.is_open

    second, created = gym_db.mark_attendance(member_id, day, time(8, 0))
    assert not created
    assert second.id == first.id
    assert second.check_out_time == time(8, 0)
    assert len(gym_db.attendance_on(day)) == 1


def test_recent_attendance_is_newest_first_and_limited(gym_db):
    member_id = gym_db.add_member("Nimal Silva", "0771234567")
    for day in (1, 3, 2):
        gym_db.mark_attendance(member_id, date(2025, 6, day), time(7, 0))

    history = gym_db.recent_attendance(member_id, limit=2)

    assert [a.check_in_date for a in history] == [date(2025, 6, 3), date(2025, 6, 2)]


def test_member_with_package_joins_assigned_package(gym_db):
    package_id = gym_db.add_package("Monthly", 1, 3000.0, "Gym floor")
    member_id = gym_db.add_member("Nimal Silva", "0771234567")

    member, package = gym_db.get_member_with_package(member_id)
    assert package is None

    gym_db.assign_package(member_id, package_id)
    member, package = gym_db.get_member_with_package(member_id)
    assert member.assigned_package_id == package_id
    assert package.name == "Monthly"
    assert package.duration_months == 1

    assert gym_db.get_member_with_package(12345) is None


def test_list_members_search(gym_db):
    gym_db.add_member("Nimal Silva", "0771234567")
    gym_db.add_member("Kamal Perera", "0719999999")

    assert [m.full_name for m in gym_db.list_members("perera")] == ["Kamal Perera"]
    assert len(gym_db.list_members()) == 2


def test_configured_device_is_first_active(gym_db):
    assert gym_db.get_configured_device() is None

    first = gym_db.save_device("Front", "10.0.0.5", 80, "admin", "secret")
    gym_db.save_device("Back", "10.0.0.6", 80, "admin", "secret")
    device = gym_db.get_configured_device()
    assert device.id == first
    assert device.to_config().address == "10.0.0.5"
    assert "secret" not in repr(device.to_config())

    gym_db.set_device_connected(first, True)
    assert gym_db.get_configured_device().is_connected


def test_enrollment_log(gym_db):
    member_id = gym_db.add_member("Nimal Silva", "0771234567")
    gym_db.log_enrollment(member_id, None, "Failed", False, "timeout")

    history = gym_db.enrollment_history(member_id)
    assert len(history) == 1
    assert not history[0].is_success
    assert history[0].message == "timeout"


def test_mark_attendance_rejects_unknown_source(gym_db):
    member_id = gym_db.add_member("Nimal Silva", "0771234567")
    with pytest.raises(ValueError):
        gym_db.mark_attendance(member_id, date(2025, 6, 15), time(7, 0), source="door")


def test_attendance_without_day_is_keyed_by_utc_date(gym_db, monkeypatch):
    monkeypatch.setattr(gym_db, "utc_today", lambda: date(2025, 6, 16))
    member_id = gym_db.add_member("Nimal Silva", "0771234567")

    attendance, created = gym_db.mark_attendance(member_id, None, time(1, 15))

    assert created
    assert attendance.check_in_date == date(2025, 6, 16)
    assert [r["member_id"] for r in gym_db.attendance_on(date(2025, 6, 16))] == [member_id]
