import itertools
import os
from typing import Dict, List, Optional

import pytest

# config is read at import time; these must exist before the app is imported
os.environ.setdefault("BACKEND", "pocketbase")
os.environ.setdefault("POCKETBASE_URL", "http://pocketbase.test")
os.environ.setdefault("COMPANY_DOMAIN", "example.com")
os.environ.setdefault("AUTH_MODE", "email")
os.environ.setdefault("SESSION_SECRET", "test-secret")

from backend import AuthSession, BackendError, ListPage, PromptBackend  # noqa: E402


class FakeBackend(PromptBackend):
    """In-memory stand-in for the hosted service with scriptable failures."""

    name = "FakeBackend"

    def __init__(self):
        super().__init__()
        self.collections: Dict[str, List[dict]] = {"prompts": [], "prompt_votes": [], "prompt_copies": []}
        self.users = {"alice@example.com": ("secret", "u-alice"), "bob@example.com": ("secret", "u-bob")}
        self.calls: List[tuple] = []
        self.max_per_page: Optional[int] = None
        self.reject_sort = False
        self.broken: Dict[str, BackendError] = {}
        self.unique_votes = True
        self.closed = 0
        self._ids = itertools.count(1)

    def seed(self, collection: str, **record) -> dict:
        record.setdefault("id", f"{collection[:1]}{next(self._ids)}")
        self.collections.setdefault(collection, []).append(record)
        return record

    def get_list(self, collection, page, per_page, sort=None):
        self.calls.append(("get_list", collection, page, per_page, sort))
        if collection in self.broken:
            raise self.broken[collection]
        if self.max_per_page and per_page > self.max_per_page:
            raise BackendError("perPage too large", status=400)
        if sort and self.reject_sort:
            raise BackendError("invalid sort field", status=400)
        items = list(self.collections.get(collection, []))
        if sort:
            items.sort(key=lambda r: r[sort.lstrip("-")], reverse=sort.startswith("-"))
        start = (page - 1) * per_page
        total_pages = max(1, -(-len(items) // per_page))
        return ListPage(items[start:start + per_page], total_pages)

    def get_first(self, collection, filters):
        self.calls.append(("get_first", collection, dict(filters)))
        for record in self.collections.get(collection, []):
            if all(str(record.get(k)) == str(v) for k, v in filters.items()):
                return dict(record)
        return None

    def create(self, collection, data):
        self.calls.append(("create", collection, dict(data)))
        if collection in self.broken:
            raise self.broken[collection]
        if collection == "prompt_votes" and self.unique_votes:
            for vote in self.collections[collection]:
                if vote["prompt"] == data["prompt"] and vote["user"] == data["user"]:
                    raise BackendError("Failed to create record.", status=400,
                                       data={"prompt": {"code": "validation_not_unique"}})
        record = dict(data, id=f"{collection[:1]}{next(self._ids)}", created="2024-06-01 12:00:00.000Z")
        self.collections.setdefault(collection, []).append(record)
        return dict(record)

    def update(self, collection, record_id, data):
        self.calls.append(("update", collection, record_id, dict(data)))
        for record in self.collections.get(collection, []):
            if record["id"] == record_id:
                record.update(data)
                return dict(record)
        raise BackendError("The requested resource wasn't found.", status=404)

    def delete(self, collection, record_id):
        self.calls.append(("delete", collection, record_id))
        self.collections[collection] = [r for r in self.collections[collection] if r["id"] != record_id]

    def sign_in_with_password(self, email, password):
        known = self.users.get(email)
        if not known or known[0] != password:
            raise BackendError("Failed to authenticate.", status=400)
        session = AuthSession(user_id=known[1], email=email, token=f"token-{known[1]}")
        self.auth.save(session)
        return session

    def sign_in_with_identity(self, email, name=""):
        user_id = self.users.get(email, (None, f"u-{email.split('@')[0]}"))[1]
        session = AuthSession(user_id=user_id, email=email, name=name, provider="oauth")
        self.auth.save(session)
        return session

    def restore(self, session):
        self.auth.save(session, notify=False)

    def close(self):
        self.closed += 1


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def alice() -> AuthSession:
    return AuthSession(user_id="u-alice", email="alice@example.com", token="token-u-alice")


@pytest.fixture
def client(backend, monkeypatch):
    from fastapi.testclient import TestClient
    import app as app_module

    monkeypatch.setattr(app_module, "create_backend", lambda settings: backend)
    app_module.gallery_cache.clear()
    with TestClient(app_module.app) as test_client:
        yield test_client
    app_module.gallery_cache.clear()


@pytest.fixture
def signed_in(client):
    response = client.post("/login/email", data={"email": "alice@example.com", "password": "secret"},
                           follow_redirects=False)
    assert response.status_code == 303
    return client
