import pathlib
import sys
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
import jwt

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.change_feed import ChangeFeed
from app.complaint_store import InMemoryComplaintStore
from app.lifecycle import LifecycleEngine
from app.main import create_app
from app.models import ROLE_REVIEWER, ROLE_SUBMITTER, Subject

JWT_SECRET = "jwt_test_secret"


def issue_token(*, subject_id: str, role: str, secret: str = JWT_SECRET, ttl_minutes: int = 30) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject_id,
        "role": role,
        "exp": int((now + timedelta(minutes=ttl_minutes)).timestamp()),
        "iat": int(now.timestamp()),
        "iss": "test-issuer",
        "aud": "test-audience",
    }
    return jwt.encode(payload, secret, algorithm="HS256")


class AuthenticatedClient:
    """Signs each /api/v1 request as the subject named by x-subject-id / x-subject-role."""

    def __init__(self, client: TestClient, *, jwt_secret: str):
        self._client = client
        self._jwt_secret = jwt_secret

    def request(self, method: str, url: str, **kwargs):
        headers = dict(kwargs.pop("headers", {}) or {})
        subject_id = headers.pop("x-subject-id", "student_a")
        role = headers.pop("x-subject-role", ROLE_SUBMITTER)
        if url.startswith("/api/v1/") and "Authorization" not in headers:
            token = issue_token(subject_id=str(subject_id), role=str(role), secret=self._jwt_secret)
            headers["Authorization"] = f"Bearer {token}"
        return self._client.request(method, url, headers=headers, **kwargs)

    def __getattr__(self, name: str):
        return getattr(self._client, name)

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)

    def patch(self, url: str, **kwargs):
        return self.request("PATCH", url, **kwargs)


@pytest.fixture(autouse=True)
def jwt_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("JWT_SHARED_SECRET", JWT_SECRET)
    monkeypatch.setenv("JWT_ISSUER", "test-issuer")
    monkeypatch.setenv("JWT_AUDIENCE", "test-audience")
    monkeypatch.setenv("JWT_REQUIRED_CLAIMS", "sub,role,exp")
    monkeypatch.delenv("AUTH_ALLOW_HEADER_SUBJECT", raising=False)
    monkeypatch.delenv("CDESK_STORE_BACKEND", raising=False)
    monkeypatch.delenv("CDESK_REQUIRE_DURABLE_STORE", raising=False)
    yield


@pytest.fixture
def store() -> InMemoryComplaintStore:
    return InMemoryComplaintStore()


@pytest.fixture
def feed() -> ChangeFeed:
    return ChangeFeed(queue_capacity=8)


@pytest.fixture
def engine(store: InMemoryComplaintStore, feed: ChangeFeed) -> LifecycleEngine:
    return LifecycleEngine(store=store, feed=feed)


@pytest.fixture
def submitter() -> Subject:
    return Subject(id="student_a", role=ROLE_SUBMITTER)


@pytest.fixture
def other_submitter() -> Subject:
    return Subject(id="student_b", role=ROLE_SUBMITTER)


@pytest.fixture
def reviewer() -> Subject:
    return Subject(id="reviewer_1", role=ROLE_REVIEWER)


@pytest.fixture
def app(store: InMemoryComplaintStore, feed: ChangeFeed):
    return create_app(store=store, feed=feed)


@pytest.fixture
def client(app) -> AuthenticatedClient:
    base = TestClient(app)
    return AuthenticatedClient(base, jwt_secret=JWT_SECRET)
