from datetime import date

import pytest

import db


@pytest.fixture
def gym_db(tmp_path, monkeypatch):
    monkeypatch.setattr(db, "DB_FILE", tmp_path / "gym.db")
    db.init_db("$2b$12$placeholderhashplaceholderhashplaceholderhashplac")
    return db


@pytest.fixture
def add_member_with_id(gym_db):
    def _add(member_id: int, name: str = "Test Member", package_id: int | None = None):
        gym_db.execute(
            """
            INSERT INTO members(id, full_name, phone, registration_date, is_active, assigned_package_id)
            VALUES(?,?,?,?,1,?)
            """,
            (member_id, name, "0770000000", date(2025, 1, 1).isoformat(), package_id),
        )
        return member_id

    return _add
