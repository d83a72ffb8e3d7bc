import pytest
import os
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import app.models  # noqa: F401
from app.core.config import settings
from app.core.deps import get_db
from app.core.security import hash_password
from app.db.base import Base
from app.main import app
from app.models.branch import Branch
from app.models.user import User
from app.routers.auth import login_rate_limiter

GANGNAM_BRANCH_ID = "branch-gangnam"
HONGDAE_BRANCH_ID = "branch-hongdae"
TEST_PASSWORD = "StrongPass123"
WORKER_SECRET = "test-worker-secret-0123456789"


@pytest.fixture()
def test_context():
    original_secret = settings.secret_key
    original_worker_secret = settings.automation_callback_secret
    settings.secret_key = "test-secret-key"
    settings.automation_callback_secret = WORKER_SECRET

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    def override_get_db():
        db = session_local()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as client:
        yield client, session_local

    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)
    settings.secret_key = original_secret
    settings.automation_callback_secret = original_worker_secret
    login_rate_limiter.clear()


@pytest.fixture()
def seeded_context(test_context):
    client, session_local = test_context
    with session_local() as db:
        db.add_all(
            [
                Branch(id=GANGNAM_BRANCH_ID, name="Gangnam"),
                Branch(id=HONGDAE_BRANCH_ID, name="Hongdae"),
            ]
        )
        db.flush()
        db.add_all(
            [
                User(
                    username="admin",
                    hashed_password=hash_password(TEST_PASSWORD),
                    full_name="HQ Admin",
                    role="ADMIN",
                    branch_id=None,
                ),
                User(
                    username="gangnam_manager",
                    hashed_password=hash_password(TEST_PASSWORD),
                    full_name="Gangnam Manager",
                    role="BRANCH",
                    branch_id=GANGNAM_BRANCH_ID,
                ),
                User(
                    username="hongdae_manager",
                    hashed_password=hash_password(TEST_PASSWORD),
                    full_name="Hongdae Manager",
                    role="BRANCH",
                    branch_id=HONGDAE_BRANCH_ID,
                ),
            ]
        )
        db.commit()
    return client, session_local


@pytest.fixture()
def login(seeded_context):
    client, _ = seeded_context

    def _login(username: str) -> dict[str, str]:
        response = client.post("/auth/login", json={"username": username, "password": TEST_PASSWORD})
        assert response.status_code == 200, response.text
        return {"Authorization": f"Bearer {response.json()['access_token']}"}

    return _login


@pytest.fixture()
def worker_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {WORKER_SECRET}"}
