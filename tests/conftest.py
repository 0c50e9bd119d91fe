from typing import Dict, List, Tuple

import mongomock
import pytest
from fastapi.testclient import TestClient

from database import ADMIN_SEED, MemoryStorage, MongoStorage
from main import create_app
from settings import Settings


class RecordingNotifier:
    def __init__(self):
        self.sent: List[Tuple[str, str]] = []

    def send(self, phone: str, code: str) -> None:
        self.sent.append((phone, code))

    def last_code(self, phone: str) -> str:
        return next(code for p, code in reversed(self.sent) if p == phone)


@pytest.fixture
def settings():
    return Settings(environment="test", jwt_secret="test-secret")


@pytest.fixture(params=["memory", "mongo"])
def make_storage(request):
    """Build a fresh store of each backend; Mongo runs against mongomock."""

    def _make(seed: bool = True):
        if request.param == "mongo":
            client = mongomock.MongoClient()
            client.drop_database("test")
            return MongoStorage(database_name="test", seed=seed, client=client)
        return MemoryStorage(seed=seed)

    return _make


@pytest.fixture
def storage(make_storage):
    return make_storage()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def app(settings, storage, notifier):
    return create_app(settings=settings, storage=storage, notifier=notifier)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def login(client, notifier):
    """Run the OTP flow for a phone and return auth headers."""

    def _login(phone: str = "+919876543210", name: str = "Asha Kulkarni") -> Dict[str, str]:
        res = client.post("/api/auth/request-otp", json={"phone": phone})
        assert res.status_code == 200, res.text
        res = client.post("/api/auth/verify-otp", json={"phone": phone, "otpCode": notifier.last_code(phone)})
        assert res.status_code == 200, res.text
        headers = {"Authorization": f"Bearer {res.json()['token']}"}
        if name and not res.json()["user"]["name"]:
            res = client.patch("/api/auth/profile", json={"name": name}, headers=headers)
            assert res.status_code == 200, res.text
        return headers

    return _login


@pytest.fixture
def user_headers(login):
    return login()


@pytest.fixture
def admin_headers(login):
    return login(ADMIN_SEED["phone"])
