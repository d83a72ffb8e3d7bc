from sqlalchemy import update

from app.models.user import User


def test_login_and_profile_include_branch_assignment(seeded_context, login):
    client, _ = seeded_context

    headers = login("gangnam_manager")
    me = client.get("/auth/me", headers=headers)
    assert me.status_code == 200
    body = me.json()
    assert body["username"] == "gangnam_manager"
    assert body["role"] == "BRANCH"
    assert body["branch_id"] == "branch-gangnam"
    assert body["branch_name"] == "Gangnam"

    admin = client.get("/auth/me", headers=login("ADMIN"))
    assert admin.status_code == 200
    assert admin.json()["role"] == "ADMIN"
    assert admin.json()["branch_id"] is None


def test_token_endpoint_accepts_form_login(seeded_context):
    client, _ = seeded_context
    response = client.post(
        "/auth/token",
        data={"username": "hongdae_manager", "password": "StrongPass123"},
    )
    assert response.status_code == 200
    assert response.json()["token_type"] == "bearer"


def test_login_rejects_wrong_password_and_unknown_user(seeded_context):
    client, _ = seeded_context
    wrong = client.post("/auth/login", json={"username": "admin", "password": "WrongPass123"})
    assert wrong.status_code == 401
    assert wrong.json()["error"]["code"] == "unauthorized"

    unknown = client.post("/auth/login", json={"username": "nobody", "password": "StrongPass123"})
    assert unknown.status_code == 401


def test_login_rate_limited_after_repeated_failures(seeded_context):
    client, _ = seeded_context
    for _ in range(5):
        response = client.post("/auth/login", json={"username": "admin", "password": "WrongPass123"})
        assert response.status_code == 401

    blocked = client.post("/auth/login", json={"username": "admin", "password": "StrongPass123"})
    assert blocked.status_code == 429
    assert int(blocked.headers["retry-after"]) > 0


def test_inactive_user_token_is_rejected(seeded_context, login):
    client, session_local = seeded_context
    headers = login("gangnam_manager")

    with session_local() as db:
        db.execute(update(User).where(User.username == "gangnam_manager").values(is_active=False))
        db.commit()

    response = client.get("/auth/me", headers=headers)
    assert response.status_code == 401


def test_branch_account_without_branch_is_forbidden(seeded_context, login):
    client, session_local = seeded_context
    headers = login("hongdae_manager")

    with session_local() as db:
        db.execute(update(User).where(User.username == "hongdae_manager").values(branch_id=None))
        db.commit()

    response = client.get("/customers", headers=headers)
    assert response.status_code == 403


def test_requests_without_token_are_unauthorized(seeded_context):
    client, _ = seeded_context
    assert client.get("/auth/me").status_code == 401
    assert client.get("/automation/flows").status_code == 401
