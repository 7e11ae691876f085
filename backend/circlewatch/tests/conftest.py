import os
os.environ["TESTING"] = "1"
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.pop("TWILIO_AUTH_TOKEN", None)
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import sys
from pathlib import Path
from datetime import datetime, timezone

sys.path.append(str(Path(__file__).resolve().parents[2]))

from circlewatch.main import app
from circlewatch.database import Base, get_db
from circlewatch import auth, models, notify, pubsub

SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False, "timeout": 30},
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base.metadata.drop_all(bind=engine)
Base.metadata.create_all(bind=engine)


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


app.dependency_overrides[get_db] = override_get_db


@pytest.fixture(autouse=True)
def clean_state():
    notify.clear_outboxes()
    pubsub._redis = None
    yield
    db = TestingSessionLocal()
    try:
        for table in reversed(Base.metadata.sorted_tables):
            db.execute(table.delete())
        db.commit()
    finally:
        db.close()
    notify.clear_outboxes()


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def make_user(name="Checker", email=None, phone=None, is_checker=True, address=None) -> models.User:
    db = TestingSessionLocal()
    user = models.User(
        name=name,
        email=email,
        phone_number=phone,
        is_checker=is_checker,
        last_known_address=address,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    db.expunge(user)
    db.close()
    return user


def auth_headers(user: models.User) -> dict:
    token = auth.create_access_token({"sub": str(user.id)})
    return {"Authorization": f"Bearer {token}"}


def make_schedule(user: models.User, **overrides) -> models.Schedule:
    values = dict(
        window_start_hour=7,
        window_start_minute=0,
        window_end_hour=10,
        window_end_minute=0,
        timezone_identifier="UTC",
        active_days=[0, 1, 2, 3, 4, 5, 6],
        grace_period_minutes=30,
        reminder_enabled=True,
        reminder_minutes_before=30,
    )
    values.update(overrides)
    db = TestingSessionLocal()
    schedule = models.Schedule(user_id=user.id, is_active=True, **values)
    db.add(schedule)
    db.commit()
    db.refresh(schedule)
    db.expunge(schedule)
    db.close()
    return schedule


def link_supporter(checker: models.User, supporter: models.User | None = None, accepted=True, **overrides) -> models.CircleLink:
    values = dict(alert_priority=1, alert_via_push=True, alert_via_sms=False, alert_via_email=False)
    values.update(overrides)
    db = TestingSessionLocal()
    link = models.CircleLink(
        checker_id=checker.id,
        supporter_id=supporter.id if supporter is not None else None,
        accepted_at=utc(2026, 1, 1) if accepted else None,
        **values,
    )
    db.add(link)
    db.commit()
    db.refresh(link)
    db.expunge(link)
    db.close()
    return link


def add_checkin(user: models.User, at: datetime, scores=(4, 3, 5)) -> models.CheckIn:
    db = TestingSessionLocal()
    checkin = models.CheckIn(
        user_id=user.id,
        timestamp=at,
        mental_score=scores[0],
        body_score=scores[1],
        mood_score=scores[2],
    )
    db.add(checkin)
    db.commit()
    db.refresh(checkin)
    db.expunge(checkin)
    db.close()
    return checkin


def load_alerts(checker: models.User) -> list[models.AlertEvent]:
    db = TestingSessionLocal()
    try:
        alerts = (
            db.query(models.AlertEvent)
            .filter(models.AlertEvent.checker_id == checker.id)
            .order_by(models.AlertEvent.triggered_at.asc())
            .all()
        )
        for alert in alerts:
            db.expunge(alert)
        return alerts
    finally:
        db.close()
