"""
Data access for the hosted backend (PocketBase or Supabase).

Both services are driven through the same `PromptBackend` interface so the
gallery code never touches an SDK directly. Records travel as plain dicts.
"""
import json
import math
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Callable, Dict, List, NamedTuple, Optional

from pocketbase import PocketBase
from pocketbase.utils import ClientResponseError
from postgrest.exceptions import APIError
from supabase import create_client

from logger import get_logger

logger = get_logger(__name__)

PROMPTS = "prompts"
VOTES = "prompt_votes"
COPIES = "prompt_copies"

PAGE_SIZES = (200, 100, 50, 20, 10)


class BackendError(Exception):
    """An error reported by the backend service, already stripped of SDK types."""

    def __init__(self, message: str, status: int = 0, data: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.data = data or {}

    @property
    def is_bad_request(self) -> bool:
        return self.status == 400

    @property
    def is_not_found(self) -> bool:
        return self.status == 404

    @property
    def is_unique_violation(self) -> bool:
        if self.status == 409:
            return True
        # PocketBase reports unique index failures as 400 with per-field codes
        return self.status == 400 and "validation_not_unique" in json.dumps(self.data)


def describe_error(exc: Exception, fallback: str) -> str:
    """Single human readable line for an error, shown as-is in the UI."""
    if isinstance(exc, BackendError):
        message = exc.message or fallback
        if exc.data:
            message = f"{message} ({json.dumps(exc.data)})"
        return message
    return str(exc) or fallback


@dataclass
class AuthSession:
    user_id: str
    email: str
    token: str = ""
    name: str = ""
    provider: str = "email"

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["AuthSession"]:
        if not data or not data.get("user_id"):
            return None
        return cls(
            user_id=str(data["user_id"]),
            email=str(data.get("email", "")),
            token=str(data.get("token", "")),
            name=str(data.get("name", "")),
            provider=str(data.get("provider", "email")),
        )


AuthListener = Callable[[Optional[AuthSession]], None]


class AuthState:
    """Current sign-in of one backend client plus change listeners."""

    def __init__(self):
        self.session: Optional[AuthSession] = None
        self._listeners: List[AuthListener] = []

    @property
    def is_valid(self) -> bool:
        return self.session is not None

    def on_change(self, listener: AuthListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def save(self, session: AuthSession, notify: bool = True):
        self.session = session
        if notify:
            self._notify()

    def clear(self):
        self.session = None
        self._notify()

    def _notify(self):
        for listener in list(self._listeners):
            listener(self.session)


class ListPage(NamedTuple):
    items: List[Dict[str, Any]]
    total_pages: int


class PromptBackend(ABC):
    name = "backend"

    def __init__(self):
        self.auth = AuthState()

    # --- records ---
    @abstractmethod
    def get_list(self, collection: str, page: int, per_page: int, sort: Optional[str] = None) -> ListPage:
        ...

    @abstractmethod
    def get_first(self, collection: str, filters: Dict[str, str]) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def create(self, collection: str, data: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    def update(self, collection: str, record_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    def delete(self, collection: str, record_id: str) -> None:
        ...

    # --- auth ---
    @abstractmethod
    def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        ...

    @abstractmethod
    def sign_in_with_identity(self, email: str, name: str = "") -> AuthSession:
        """Find or create the user row for an identity verified elsewhere (OAuth)."""

    @abstractmethod
    def restore(self, session: AuthSession) -> None:
        ...

    def sign_out(self) -> None:
        self.auth.clear()

    def close(self) -> None:
        """Release the HTTP connections held by the SDK client."""

    def list_all_records(self, collection: str, sort: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Fetch every record of a collection, page by page.

        Some deployments reject large pages or sorting by system fields with
        a 400, so smaller page sizes and an unsorted fetch are tried before
        giving up. Anything other than a 400 is raised immediately.
        """
        last_error: Optional[Exception] = None

        for size in PAGE_SIZES:
            try:
                return self._fetch_all_pages(collection, size, sort)
            except BackendError as e:
                last_error = e
                if not e.is_bad_request:
                    raise
                logger.warning(f"Listing '{collection}' rejected (perPage={size}, sort={sort}): {e.message}")

            if sort:
                try:
                    return self._fetch_all_pages(collection, size)
                except BackendError as e:
                    last_error = e
                    if not e.is_bad_request:
                        raise

        raise last_error or BackendError(f"Failed to list records from {self.name}.")

    def _fetch_all_pages(self, collection: str, per_page: int, sort: Optional[str] = None) -> List[Dict[str, Any]]:
        page = 1
        total_pages = 1
        records: List[Dict[str, Any]] = []
        while True:
            result = self.get_list(collection, page, per_page, sort)
            records.extend(result.items)
            total_pages = result.total_pages
            page += 1
            if page > total_pages:
                return records


def _plain(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _quote(value: str) -> str:
    return '"' + str(value).replace("\\", "\\\\").replace('"', '\\"') + '"'


class PocketBaseBackend(PromptBackend):
    name = "PocketBase"

    def __init__(self, url: str, service_token: Optional[str] = None):
        super().__init__()
        self.client = PocketBase(url)
        self.service_token = service_token

    def _record(self, record) -> Dict[str, Any]:
        data = {k: _plain(v) for k, v in vars(record).items() if not k.startswith("_")}
        data.pop("expand", None)
        return data

    def _call(self, func, *args, **kwargs):
        try:
            return func(*args, **kwargs)
        except ClientResponseError as e:
            payload = e.data if isinstance(e.data, dict) else {}
            message = payload.get("message") or str(e) or "PocketBase request failed."
            details = payload.get("data") if isinstance(payload.get("data"), dict) else {}
            raise BackendError(str(message), status=e.status, data=details) from e

    def get_list(self, collection, page, per_page, sort=None):
        params = {"sort": sort} if sort else {}
        result = self._call(self.client.collection(collection).get_list, page, per_page, params)
        return ListPage([self._record(r) for r in result.items], result.total_pages)

    def get_first(self, collection, filters):
        expression = " && ".join(f"{field}={_quote(value)}" for field, value in filters.items())
        try:
            record = self._call(self.client.collection(collection).get_first_list_item, expression)
        except BackendError as e:
            if e.is_not_found:
                return None
            raise
        return self._record(record)

    def create(self, collection, data):
        return self._record(self._call(self.client.collection(collection).create, data))

    def update(self, collection, record_id, data):
        return self._record(self._call(self.client.collection(collection).update, record_id, data))

    def delete(self, collection, record_id):
        self._call(self.client.collection(collection).delete, record_id)

    def sign_in_with_password(self, email, password):
        result = self._call(self.client.collection("users").auth_with_password, email, password)
        user = self._record(result.record)
        session = AuthSession(
            user_id=str(user["id"]),
            email=str(user.get("email") or email),
            token=result.token,
            name=str(user.get("name") or ""),
            provider="email",
        )
        self.auth.save(session)
        return session

    def sign_in_with_identity(self, email, name=""):
        if not self.service_token:
            raise BackendError("OAuth sign-in needs POCKETBASE_SERVICE_TOKEN to provision users.", status=500)
        self.client.auth_store.save(self.service_token, None)

        user = self.get_first("users", {"email": email})
        if user is None:
            # auth collections require a password; OAuth users never use it
            password = secrets.token_urlsafe(24)
            user = self.create("users", {
                "email": email,
                "name": name,
                "password": password,
                "passwordConfirm": password,
                "emailVisibility": True,
            })
            logger.info(f"Provisioned PocketBase user for {email}")

        # the service token stays server-side; the cookie only carries the user
        session = AuthSession(
            user_id=str(user["id"]),
            email=email,
            name=str(user.get("name") or name),
            provider="oauth",
        )
        self.auth.save(session)
        return session

    def restore(self, session):
        token = session.token
        if session.provider == "oauth":
            token = self.service_token or ""
        self.client.auth_store.save(token, None)
        self.auth.save(session, notify=False)

    def sign_out(self):
        self.client.auth_store.clear()
        super().sign_out()

    def close(self):
        self.client.http_client.close()


def _supabase_status(error: APIError) -> int:
    code = str(getattr(error, "code", "") or "")
    if code == "23505":
        return 409
    # PGRST116: no row, 22P02: malformed id, 23503: referenced row is gone
    if code in ("PGRST116", "22P02", "23503"):
        return 404
    if code == "42501":
        return 403
    if code.startswith("PGRST1") or code.startswith("42") or code.startswith("22"):
        return 400
    return 500


class SupabaseBackend(PromptBackend):
    name = "Supabase"
    users_table = "profiles"

    def __init__(self, url: str, key: str):
        super().__init__()
        self.client = create_client(url, key)

    def _call(self, query):
        try:
            return query.execute()
        except APIError as e:
            details = {k: v for k, v in (("details", e.details), ("hint", e.hint)) if v}
            raise BackendError(e.message or "Supabase request failed.", status=_supabase_status(e), data=details) from e

    def get_list(self, collection, page, per_page, sort=None):
        query = self.client.table(collection).select("*", count="exact")
        if sort:
            column = sort.lstrip("-+")
            query = query.order(column, desc=sort.startswith("-"))
        start = (page - 1) * per_page
        response = self._call(query.range(start, start + per_page - 1))
        total = response.count if response.count is not None else len(response.data)
        return ListPage(list(response.data), max(1, math.ceil(total / per_page)))

    def get_first(self, collection, filters):
        query = self.client.table(collection).select("*")
        for field, value in filters.items():
            query = query.eq(field, value)
        try:
            response = self._call(query.limit(1))
        except BackendError as e:
            if e.is_not_found:
                return None
            raise
        return response.data[0] if response.data else None

    def create(self, collection, data):
        response = self._call(self.client.table(collection).insert(data))
        if not response.data:
            raise BackendError("Record was not returned after insert.", status=502)
        return response.data[0]

    def update(self, collection, record_id, data):
        response = self._call(self.client.table(collection).update(data).eq("id", record_id))
        if not response.data:
            raise BackendError("Record not found or not editable.", status=404)
        return response.data[0]

    def delete(self, collection, record_id):
        self._call(self.client.table(collection).delete().eq("id", record_id))

    def sign_in_with_password(self, email, password):
        try:
            response = self.client.auth.sign_in_with_password({"email": email, "password": password})
        except Exception as e:
            raise BackendError(str(e) or "Email sign-in failed.", status=400) from e

        profile = self.get_first(self.users_table, {"email": email}) or {}
        session = AuthSession(
            user_id=str(profile.get("id") or response.user.id),
            email=str(response.user.email or email),
            token=response.session.access_token if response.session else "",
            name=str(profile.get("name") or ""),
            provider="email",
        )
        self.client.postgrest.auth(session.token)
        self.auth.save(session)
        return session

    def sign_in_with_identity(self, email, name=""):
        response = self._call(
            self.client.table(self.users_table).upsert({"email": email, "name": name}, on_conflict="email")
        )
        profile = response.data[0]
        session = AuthSession(user_id=str(profile["id"]), email=email, name=name, provider="oauth")
        self.auth.save(session)
        return session

    def restore(self, session):
        if session.token:
            self.client.postgrest.auth(session.token)
        self.auth.save(session, notify=False)

    def sign_out(self):
        if self.auth.session and self.auth.session.token:
            try:
                self.client.auth.sign_out()
            except Exception as e:
                logger.warning(f"Supabase sign-out failed: {e}")
        super().sign_out()

    def close(self):
        self.client.postgrest.aclose()
        self.client.auth.close()


def create_backend(settings) -> PromptBackend:
    if settings.BACKEND == "supabase":
        return SupabaseBackend(settings.SUPABASE_URL, settings.SUPABASE_KEY)
    return PocketBaseBackend(settings.POCKETBASE_URL, settings.POCKETBASE_SERVICE_TOKEN)
