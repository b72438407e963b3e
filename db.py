"""
db.py
SQLite helpers + initialization (creates DB/tables, inserts default admin, etc.)
and the queries used by the status pages and the identification poller.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, time

import config
from models import (
    ATTENDANCE_SOURCES,
    Attendance,
    BiometricDevice,
    FingerprintEnrollment,
    Member,
    MembershipPackage,
    Payment,
)
from status import payment_period, utc_today

logger = logging.getLogger(__name__)

DB_FILE = config.DB_FILE


@contextmanager
def get_conn():
    conn = sqlite3.connect(DB_FILE, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


def execute(sql: str, params: tuple = ()) -> int:
    with get_conn() as conn:
        cur = conn.execute(sql, params)
        return cur.lastrowid


def fetch_one(sql: str, params: tuple = ()):
    with get_conn() as conn:
        cur = conn.execute(sql, params)
        return cur.fetchone()


def fetch_all(sql: str, params: tuple = ()) -> list[sqlite3.Row]:
    with get_conn() as conn:
        cur = conn.execute(sql, params)
        return cur.fetchall()


def _now_iso() -> str:
    return datetime.utcnow().isoformat(timespec="seconds")


def _create_tables() -> None:
    execute(
        """
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            username TEXT NOT NULL UNIQUE,
            password_hash TEXT NOT NULL,
            full_name TEXT NOT NULL,
            role TEXT NOT NULL CHECK(role IN ('admin','staff')),
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            last_login_at TEXT
        )
        """
    )

    execute(
        """
        CREATE TABLE IF NOT EXISTS packages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            duration_months INTEGER NOT NULL CHECK(duration_months > 0),
            price REAL NOT NULL,
            description TEXT,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL
        )
        """
    )

    execute(
        """
        CREATE TABLE IF NOT EXISTS members (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            full_name TEXT NOT NULL,
            phone TEXT NOT NULL,
            nic TEXT,
            email TEXT,
            registration_date TEXT NOT NULL,
            is_active INTEGER NOT NULL DEFAULT 1,
            assigned_package_id INTEGER,
            custom_package_amount REAL,
            FOREIGN KEY(assigned_package_id) REFERENCES packages(id)
        )
        """
    )

    execute(
        """
        CREATE TABLE IF NOT EXISTS payments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            member_id INTEGER NOT NULL,
            package_id INTEGER NOT NULL,
            amount REAL NOT NULL,
            payment_date TEXT NOT NULL,
            start_date TEXT NOT NULL,
            end_date TEXT NOT NULL,
            next_due_date TEXT NOT NULL,
            method TEXT NOT NULL,
            remarks TEXT,
            FOREIGN KEY(member_id) REFERENCES members(id) ON DELETE CASCADE,
            FOREIGN KEY(package_id) REFERENCES packages(id)
        )
        """
    )

    execute(
        """
        CREATE TABLE IF NOT EXISTS attendance (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            member_id INTEGER NOT NULL,
            check_in_date TEXT NOT NULL,
            check_in_time TEXT NOT NULL,
            check_out_date TEXT,
            check_out_time TEXT,
            source TEXT NOT NULL CHECK(source IN ('manual','biometric')),
            remarks TEXT,
            FOREIGN KEY(member_id) REFERENCES members(id) ON DELETE CASCADE
        )
        """
    )

    execute(
        """
        CREATE TABLE IF NOT EXISTS biometric_devices (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            address TEXT NOT NULL,
            port INTEGER NOT NULL DEFAULT 80,
            username TEXT NOT NULL,
            password TEXT NOT NULL,
            device_type TEXT NOT NULL DEFAULT 'Hikvision',
            is_active INTEGER NOT NULL DEFAULT 1,
            is_connected INTEGER NOT NULL DEFAULT 0,
            last_connected_at TEXT,
            created_at TEXT NOT NULL
        )
        """
    )

    execute(
        """
        CREATE TABLE IF NOT EXISTS fingerprint_enrollments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            member_id INTEGER NOT NULL,
            device_id INTEGER,
            enrolled_at TEXT NOT NULL,
            status TEXT NOT NULL,
            is_success INTEGER NOT NULL,
            message TEXT
        )
        """
    )

    # Small settings table (used to force password change on first login)
    execute(
        """
        CREATE TABLE IF NOT EXISTS app_settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        )
        """
    )


def _get_setting(key: str, default: str | None = None) -> str | None:
    row = fetch_one("SELECT value FROM app_settings WHERE key = ?", (key,))
    if row:
        return str(row["value"])
    return default


def _set_setting(key: str, value: str) -> None:
    execute(
        """
        INSERT INTO app_settings(key, value) VALUES(?, ?)
        ON CONFLICT(key) DO UPDATE SET value=excluded.value
        """,
        (key, value),
    )


def init_db(default_admin_hash: str) -> None:
    """
    Initialize the database.
    - Create tables
    - Insert default admin (admin/admin123) if no user exists
    - Force password change on first login
    """
    _create_tables()

    admin = fetch_one("SELECT id FROM users LIMIT 1")
    if not admin:
        execute(
            "INSERT INTO users(username, password_hash, full_name, role, created_at) VALUES(?,?,?,?,?)",
            ("admin", default_admin_hash, "Administrator", "admin", _now_iso()),
        )
        _set_setting("force_password_change", "1")
        logger.info("Created default admin user in %s", DB_FILE)
    else:
        # ensure setting exists
        if _get_setting("force_password_change") is None:
            _set_setting("force_password_change", "0")


def is_force_password_change() -> bool:
    return _get_setting("force_password_change") == "1"


def clear_force_password_change() -> None:
    _set_setting("force_password_change", "0")


# ---------- Packages ----------

def add_package(name: str, duration_months: int, price: float, description: str | None = None) -> int:
    return execute(
        "INSERT INTO packages(name, duration_months, price, description, is_active, created_at) VALUES(?,?,?,?,1,?)",
        (name, duration_months, price, description, _now_iso()),
    )


def update_package(package_id: int, name: str, duration_months: int, price: float,
                   description: str | None, is_active: bool) -> None:
    execute(
        "UPDATE packages SET name=?, duration_months=?, price=?, description=?, is_active=? WHERE id=?",
        (name, duration_months, price, description, int(is_active), package_id),
    )


def get_package(package_id: int) -> MembershipPackage | None:
    row = fetch_one("SELECT * FROM packages WHERE id = ?", (package_id,))
    return MembershipPackage.from_row(row) if row else None


def list_packages(active_only: bool = False) -> list[MembershipPackage]:
    sql = "SELECT * FROM packages"
    if active_only:
        sql += " WHERE is_active = 1"
    sql += " ORDER BY duration_months ASC, name ASC"
    return [MembershipPackage.from_row(r) for r in fetch_all(sql)]


# ---------- Members ----------

def add_member(full_name: str, phone: str, nic: str | None = None, email: str | None = None,
               registration_date: date | None = None, is_active: bool = True) -> int:
    reg = (registration_date or date.today()).isoformat()
    return execute(
        """
        INSERT INTO members(full_name, phone, nic, email, registration_date, is_active)
        VALUES(?,?,?,?,?,?)
        """,
        (full_name, phone, nic, email, reg, int(is_active)),
    )


def update_member(member_id: int, full_name: str, phone: str, nic: str | None,
                  email: str | None, is_active: bool) -> None:
    execute(
        "UPDATE members SET full_name=?, phone=?, nic=?, email=?, is_active=? WHERE id=?",
        (full_name, phone, nic, email, int(is_active), member_id),
    )


def assign_package(member_id: int, package_id: int | None, custom_amount: float | None = None) -> None:
    execute(
        "UPDATE members SET assigned_package_id=?, custom_package_amount=? WHERE id=?",
        (package_id, custom_amount, member_id),
    )


def get_member(member_id: int) -> Member | None:
    row = fetch_one("SELECT * FROM members WHERE id = ?", (member_id,))
    return Member.from_row(row) if row else None


def get_member_with_package(member_id: int) -> tuple[Member, MembershipPackage | None] | None:
    row = fetch_one(
        """
        SELECT m.*,
               p.id AS p_id, p.name AS p_name, p.duration_months AS p_duration_months,
               p.price AS p_price, p.description AS p_description, p.is_active AS p_is_active
        FROM members m
        LEFT JOIN packages p ON p.id = m.assigned_package_id
        WHERE m.id = ?
        """,
        (member_id,),
    )
    if row is None:
        return None
    package = None
    if row["p_id"] is not None:
        package = MembershipPackage(
            id=row["p_id"],
            name=row["p_name"],
            duration_months=int(row["p_duration_months"]),
            price=float(row["p_price"]),
            description=row["p_description"],
            is_active=bool(row["p_is_active"]),
        )
    return Member.from_row(row), package


def list_members(search: str = "") -> list[Member]:
    sql = "SELECT * FROM members WHERE 1=1"
    params = []

    if search.strip():
        sql += " AND (full_name LIKE ? OR phone LIKE ? OR nic LIKE ?)"
        like = f"%{search.strip()}%"
        params.extend([like, like, like])

    sql += " ORDER BY registration_date DESC, id DESC"
    return [Member.from_row(r) for r in fetch_all(sql, tuple(params))]


# ---------- Payments ----------

def record_payment(member_id: int, package_id: int, amount: float, payment_date: date,
                   start_date: date, method: str = "Cash", remarks: str | None = None) -> Payment:
    package = get_package(package_id)
    if package is None:
        raise ValueError(f"Unknown package {package_id}")
    end_date, next_due = payment_period(start_date, package.duration_months)
    pid = execute(
        """
        INSERT INTO payments(member_id, package_id, amount, payment_date, start_date, end_date,
                             next_due_date, method, remarks)
        VALUES(?,?,?,?,?,?,?,?,?)
        """,
        (member_id, package_id, amount, payment_date.isoformat(), start_date.isoformat(),
         end_date.isoformat(), next_due.isoformat(), method, remarks),
    )
    logger.info("Recorded payment %s for member %s (package %s, due %s)", pid, member_id, package_id, next_due)
    return Payment(pid, member_id, package_id, amount, payment_date, start_date, end_date, next_due, method, remarks)


def latest_payment(member_id: int, package_id: int | None) -> Payment | None:
    if package_id is None:
        return None
    row = fetch_one(
        """
        SELECT * FROM payments
        WHERE member_id = ? AND package_id = ?
        ORDER BY payment_date DESC, id DESC
        LIMIT 1
        """,
        (member_id, package_id),
    )
    return Payment.from_row(row) if row else None


def payments_for_member(member_id: int) -> list[Payment]:
    rows = fetch_all(
        "SELECT * FROM payments WHERE member_id = ? ORDER BY payment_date DESC, id DESC",
        (member_id,),
    )
    return [Payment.from_row(r) for r in rows]


def payments_for_members(member_ids: list[int]) -> dict[int, list[Payment]]:
    """All payments for the given members in one query, grouped by member."""
    grouped: dict[int, list[Payment]] = {mid: [] for mid in member_ids}
    if not member_ids:
        return grouped
    placeholders = ",".join("?" for _ in member_ids)
    rows = fetch_all(f"SELECT * FROM payments WHERE member_id IN ({placeholders})", tuple(member_ids))
    for r in rows:
        grouped[r["member_id"]].append(Payment.from_row(r))
    return grouped


def payments_between(start: date, end: date) -> list[Payment]:
    rows = fetch_all(
        "SELECT * FROM payments WHERE payment_date >= ? AND payment_date <= ? ORDER BY payment_date DESC",
        (start.isoformat(), end.isoformat()),
    )
    return [Payment.from_row(r) for r in rows]


# ---------- Attendance ----------

def mark_attendance(member_id: int, day: date | None, at: time, source: str = "manual",
                    remarks: str | None = None) -> tuple[Attendance, bool]:
    """
    Check a member in for `day` (UTC today when None). A member has at most
    one attendance row per day: a second call records the check-out on the existing row instead.
    Returns (row, created).
    """
    if source not in ATTENDANCE_SOURCES:
        raise ValueError(f"Unknown attendance source: {source}")
    day = day or utc_today()
    at_str = at.replace(microsecond=0).isoformat()
    existing = fetch_one(
        "SELECT * FROM attendance WHERE member_id = ? AND check_in_date = ? ORDER BY id LIMIT 1",
        (member_id, day.isoformat()),
    )
    if existing:
        execute(
            "UPDATE attendance SET check_out_date = ?, check_out_time = ? WHERE id = ?",
            (day.isoformat(), at_str, existing["id"]),
        )
        row = fetch_one("SELECT * FROM attendance WHERE id = ?", (existing["id"],))
        return Attendance.from_row(row), False

    aid = execute(
        """
        INSERT INTO attendance(member_id, check_in_date, check_in_time, source, remarks)
        VALUES(?,?,?,?,?)
        """,
        (member_id, day.isoformat(), at_str, source, remarks),
    )
    row = fetch_one("SELECT * FROM attendance WHERE id = ?", (aid,))
    return Attendance.from_row(row), True


def recent_attendance(member_id: int, limit: int = config.HISTORY_LIMIT) -> list[Attendance]:
    rows = fetch_all(
        """
        SELECT * FROM attendance
        WHERE member_id = ?
        ORDER BY check_in_date DESC, check_in_time DESC, id DESC
        LIMIT ?
        """,
        (member_id, limit),
    )
    return [Attendance.from_row(r) for r in rows]


def attendance_on(day: date) -> list[sqlite3.Row]:
    return fetch_all(
        """
        SELECT a.id, a.member_id, m.full_name, a.check_in_time, a.check_out_time, a.source
        FROM attendance a
        JOIN members m ON m.id = a.member_id
        WHERE a.check_in_date = ?
        ORDER BY a.check_in_time DESC
        """,
        (day.isoformat(),),
    )


# ---------- Biometric devices ----------

def save_device(name: str, address: str, port: int, username: str, password: str,
                device_type: str = "Hikvision", device_id: int | None = None) -> int:
    if device_id is not None:
        execute(
            """
            UPDATE biometric_devices SET name=?, address=?, port=?, username=?, password=?, device_type=?
            WHERE id=?
            """,
            (name, address, port, username, password, device_type, device_id),
        )
        return device_id
    return execute(
        """
        INSERT INTO biometric_devices(name, address, port, username, password, device_type, created_at)
        VALUES(?,?,?,?,?,?,?)
        """,
        (name, address, port, username, password, device_type, _now_iso()),
    )


def get_configured_device() -> BiometricDevice | None:
    """The single device used for identification (first active one)."""
    row = fetch_one("SELECT * FROM biometric_devices WHERE is_active = 1 ORDER BY id LIMIT 1")
    return BiometricDevice.from_row(row) if row else None


def set_device_connected(device_id: int, connected: bool) -> None:
    if connected:
        execute(
            "UPDATE biometric_devices SET is_connected = 1, last_connected_at = ? WHERE id = ?",
            (_now_iso(), device_id),
        )
    else:
        execute("UPDATE biometric_devices SET is_connected = 0 WHERE id = ?", (device_id,))


def log_enrollment(member_id: int, device_id: int | None, status: str, is_success: bool,
                   message: str | None = None) -> int:
    return execute(
        """
        INSERT INTO fingerprint_enrollments(member_id, device_id, enrolled_at, status, is_success, message)
        VALUES(?,?,?,?,?,?)
        """,
        (member_id, device_id, _now_iso(), status, int(is_success), message),
    )


def enrollment_history(member_id: int) -> list[FingerprintEnrollment]:
    rows = fetch_all(
        "SELECT * FROM fingerprint_enrollments WHERE member_id = ? ORDER BY enrolled_at DESC, id DESC",
        (member_id,),
    )
    return [FingerprintEnrollment.from_row(r) for r in rows]
