"""
Shared pytest fixtures for the CivicSense test suite.

Provides a mongomock database, a scripted model client, a temporary asset
store, an in-process httpx AsyncClient wired to them, and pre-authenticated
headers for each role.
"""

import os

os.environ.setdefault("JWT_SECRET", "test-secret-for-civicsense-suite-0123456789abcdef")

import httpx
import mongomock
import pytest
import pytest_asyncio

from civicsense import app as app_module
from civicsense.app import app, create_access_token, limiter, pwd_context
from civicsense.assets import LocalAssetStore
from civicsense.config import new_id, now_utc
from civicsense.models import ImageData

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64

USERS = [
    ("citizen1", "citizen123", "Sita Shrestha", "citizen"),
    ("citizen2", "citizen123", "Ramesh Thapa", "citizen"),
    ("admin", "admin123", "Ward Office Administrator", "admin"),
]

_hash_cache: dict[str, str] = {}


def _hashed(password: str) -> str:
    # bcrypt is slow; one hash per password for the whole run
    if password not in _hash_cache:
        _hash_cache[password] = pwd_context.hash(password)
    return _hash_cache[password]


class FakeModelClient:
    """Scripted stand-in for the OpenAI client.

    ``routes`` maps a prompt substring to a reply (a string, or an exception
    instance to raise). The first matching route wins; otherwise ``default``.
    """

    def __init__(self, routes=None, default=""):
        self.routes = list((routes or {}).items())
        self.default = default
        self.calls = []

    async def generate(self, prompt, media=None):
        self.calls.append((prompt, list(media or [])))
        reply = self.default
        for needle, value in self.routes:
            if needle in prompt:
                reply = value
                break
        if isinstance(reply, Exception):
            raise reply
        return reply

    def prompts_containing(self, needle):
        return [p for p, _ in self.calls if needle in p]


def make_image(content: bytes = PNG_BYTES, mime_type: str = "image/png") -> ImageData:
    return ImageData(content=content, mime_type=mime_type, filename="photo.png")


@pytest.fixture
def db():
    database = mongomock.MongoClient(tz_aware=True)["civicsense_test"]
    database.upvotes.create_index([("issue_id", 1), ("voter_key", 1)], unique=True)
    database.upvote_awards.create_index([("issue_id", 1), ("voter_key", 1)], unique=True)
    database.users.create_index([("username", 1)], unique=True)
    return database


@pytest.fixture
def assets(tmp_path):
    return LocalAssetStore(tmp_path / "media", "/media")


@pytest.fixture
def ai_switch():
    """Mutable holder for the model client the app sees. ``None`` means AI is unavailable."""
    return {"client": None}


@pytest.fixture
def users(db):
    ids = {}
    for username, password, full_name, role in USERS:
        uid = new_id()
        db.users.insert_one({
            "_id": uid, "username": username, "hashed_password": _hashed(password),
            "full_name": full_name, "email": f"{username}@example.com", "role": role,
            "points": 0, "created_at": now_utc(),
        })
        ids[username] = uid
    return ids


@pytest_asyncio.fixture
async def client(db, assets, ai_switch, users):
    """In-process httpx AsyncClient against the app with its stores overridden."""
    limiter.enabled = False

    async def _db():
        return db

    async def _ai():
        return ai_switch["client"]

    async def _assets():
        return assets

    app.dependency_overrides[app_module.get_db] = _db
    app.dependency_overrides[app_module.get_ai] = _ai
    app.dependency_overrides[app_module.get_assets] = _assets
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c
    app.dependency_overrides.clear()


def _headers(username: str) -> dict:
    role = next(r for u, _, _, r in USERS if u == username)
    return {"Authorization": f"Bearer {create_access_token({'sub': username, 'role': role})}"}


@pytest.fixture
def citizen_headers(users):
    return _headers("citizen1")


@pytest.fixture
def citizen2_headers(users):
    return _headers("citizen2")


@pytest.fixture
def admin_headers(users):
    return _headers("admin")
