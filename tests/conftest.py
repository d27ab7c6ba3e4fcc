from datetime import datetime

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from streamania.core.cache import cache_client
from streamania.core.errors import VideoLookupFailed
from streamania.core.events import EventHub
from streamania.core.security import get_password_hash
from streamania.db import build_engine, init_db
from streamania.main import create_app
from streamania.models import Credential, User
from streamania.services.streams import StreamStatus, YouTubeClient

ADMIN_EMAIL = "admin@example.com"
PASSWORD = "secret123"


class StubYouTube(YouTubeClient):
    """Serves canned statuses; unknown refs behave like a provider failure."""

    def __init__(self):
        super().__init__(api_key="test-key")
        self.statuses = {}
        self.calls = []

    def fetch_status(self, video_ref):
        self.calls.append(video_ref)
        if video_ref not in self.statuses:
            raise VideoLookupFailed("Video not found")
        return self.statuses[video_ref]


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def hub():
    return EventHub()


@pytest.fixture
def youtube():
    return StubYouTube()


@pytest.fixture(autouse=True)
def admin_emails(monkeypatch):
    monkeypatch.setattr("streamania.services.identity.ADMIN_EMAILS", {ADMIN_EMAIL})


@pytest.fixture
def make_client(session_factory, youtube):
    clients = []

    def factory(**kwargs):
        kwargs.setdefault("youtube", youtube)
        kwargs.setdefault("start_poller", False)
        kwargs.setdefault("rate_limit", False)
        cache_client.reset()
        client = TestClient(create_app(session_factory=session_factory, **kwargs))
        client.__enter__()
        clients.append(client)
        return client

    yield factory
    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client):
    return make_client()


def signup(client, email, username, password=PASSWORD):
    response = client.post(
        "/auth/signup",
        json={"email": email, "username": username, "password": password},
    )
    assert response.status_code == 201, response.text
    body = response.json()
    return body["access_token"], body["user"]


def auth(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin(client):
    return signup(client, ADMIN_EMAIL, "admin")


@pytest.fixture
def viewer(client):
    return signup(client, "viewer@example.com", "viewer")


def make_user(db, username, wallet=1000, is_admin=False):
    email = f"{username}@example.com"
    credential = Credential(
        email=email,
        password_hash=get_password_hash(PASSWORD),
        display_name=username,
    )
    db.add(credential)
    db.flush()
    user = User(
        id=credential.id,
        email=email,
        username=username,
        is_admin=is_admin,
        wallet=wallet,
        created_at=datetime.utcnow(),
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def live_status(viewers=42):
    return StreamStatus(
        is_live=True,
        viewer_count=viewers,
        title="Live now",
        thumbnail_url="https://i.ytimg.com/vi/x/maxresdefault.jpg",
    )
