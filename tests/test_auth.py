import pytest

import auth


@pytest.fixture
def users_db(tmp_path, monkeypatch):
    import db

    monkeypatch.setattr(db, "DB_FILE", tmp_path / "gym.db")
    db.init_db(auth.hash_password("admin123"))
    return db


def test_hash_and_verify():
    hashed = auth.hash_password("s3cret")
    assert hashed.startswith("$2")
    assert auth.verify_password("s3cret", hashed)
    assert not auth.verify_password("wrong", hashed)


def test_long_passwords_are_truncated_to_72_bytes():
    base = "x" * 72
    hashed = auth.hash_password(base + "tail")
    assert auth.verify_password(base + "different", hashed)


def test_default_admin_login_stamps_last_login(users_db):
    assert auth.login("admin", "admin123")
    assert auth.get_user_by_username("admin")["last_login_at"] is not None
    assert not auth.login("admin", "nope")
    assert not auth.login("ghost", "admin123")


def test_inactive_user_cannot_login(users_db):
    auth.add_user("front", "desk123", "Front Desk")
    users_db.execute("UPDATE users SET is_active = 0 WHERE username = ?", ("front",))
    assert not auth.login("front", "desk123")


def test_add_user_rejects_duplicates_and_unknown_roles(users_db):
    auth.add_user("front", "desk123", "Front Desk")
    assert auth.get_user_by_username("front")["role"] == "staff"
    with pytest.raises(ValueError):
        auth.add_user("front", "other", "Someone")
    with pytest.raises(ValueError):
        auth.add_user("boss", "pw", "Boss", role="owner")


def test_change_password_clears_forced_change(users_db):
    assert users_db.is_force_password_change()
    auth.change_password("admin", "n3w-pass")
    assert auth.login("admin", "n3w-pass")
    assert not users_db.is_force_password_change()
