import os

# Must be set before the app (and its engine) is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ["BCRYPT_ROUNDS"] = "4"

from datetime import datetime

import pytest
from fastapi.testclient import TestClient

from main import app
from tracker import crud, schemas
from tracker.db import Base, SessionLocal, engine


@pytest.fixture(autouse=True)
def reset_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture(name="db")
def db_fixture():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(name="client")
def client_fixture():
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()


def register(client, username="ana", city="Recife", name=None, password="s3cret!"):
    response = client.post("/auth/register", json={
        "username": username,
        "password": password,
        "name": name or username.title(),
        "city": city,
    })
    assert response.status_code == 201, response.text
    return response.json()


@pytest.fixture(name="auth_client")
def auth_client_fixture(client):
    register(client)
    return client


@pytest.fixture
def make_user(db):
    def _make(username="driver", city="Recife", name=None):
        return crud.create_user(db, schemas.UserCreate(
            username=username, password="pw", name=name or username.title(), city=city,
        ))
    return _make


@pytest.fixture
def make_ride(db):
    def _make(user_id, platform="uber", value=10, bonus=0, multiplier=None, date=None):
        return crud.create_ride(db, user_id, schemas.RideCreate(
            platform=platform, value=value, bonus=bonus, multiplier=multiplier,
            date=date or datetime(2024, 5, 10, 12, 0),
        ))
    return _make
