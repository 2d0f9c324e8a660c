import os
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from jose import jwt

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")

from eventsignup import auth, models  # noqa: E402
from eventsignup.api import app  # noqa: E402
from eventsignup.config import settings  # noqa: E402
from eventsignup.database import Base, engine, get_db, SessionLocal  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def _ensure_schema():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session():
    db = SessionLocal()
    try:
        for table in reversed(Base.metadata.sorted_tables):
            db.execute(table.delete())
        db.commit()
        yield db
    finally:
        db.close()


@pytest.fixture()
def client(db_session):
    def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def now():
    return datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture()
def helpers(client, db_session):
    def make_user(
        email: str = "student@test.ro",
        password: str = "password123",
        first_name: str = "Ana",
        last_name: str = "Popescu",
        is_blocked: bool = False,
    ) -> models.User:
        user = models.User(
            email=email,
            password_hash=auth.get_password_hash(password),
            first_name=first_name,
            last_name=last_name,
            is_blocked=is_blocked,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    def make_admin(email: str = "admin@test.ro", password: str = "admin123") -> models.User:
        user = make_user(email=email, password=password, first_name="Admin", last_name="User")
        db_session.add(models.Admin(user_id=user.id))
        db_session.commit()
        return user

    def make_event(
        title: str = "Workshop",
        capacity: int | None = None,
        start_time: datetime | None = None,
        registration_deadline: datetime | None = None,
        status: models.EventStatus = models.EventStatus.active,
    ) -> models.Event:
        start_time = start_time or datetime.now(timezone.utc) + timedelta(days=10)
        event = models.Event(
            title=title,
            capacity=capacity,
            start_time=start_time,
            registration_deadline=registration_deadline or start_time - timedelta(days=1),
            status=status,
        )
        db_session.add(event)
        db_session.commit()
        db_session.refresh(event)
        return event

    def token_for(user: models.User) -> str:
        return jwt.encode(
            {"sub": str(user.id), "email": user.email, "type": "access"},
            settings.secret_key,
            algorithm=settings.algorithm,
        )

    def auth_header(token: str) -> dict:
        return {"Authorization": f"Bearer {token}"}

    return {
        "client": client,
        "db": db_session,
        "make_user": make_user,
        "make_admin": make_admin,
        "make_event": make_event,
        "token_for": token_for,
        "auth_header": auth_header,
    }
