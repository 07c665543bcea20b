"""
PromptHub: everything the gallery page does, minus the HTML.

One hub is built per request from a backend client restored to the
signed-in user. Backend SDKs are blocking, so calls go through
`asyncio.to_thread`.
"""
import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from backend import COPIES, PROMPTS, VOTES, AuthSession, BackendError, PromptBackend, describe_error
from logger import get_logger
from prompt_utils import (
    DraftError,
    PromptDraft,
    PromptWithStats,
    SortKey,
    aggregate_prompts,
    draft_payload,
    echo_draft,
    edit_draft,
    to_prompt,
    validate_draft,
    visible_prompts,
)

logger = get_logger(__name__)

STATS_UNAVAILABLE = "Prompt list loaded, but vote/copy stats are temporarily unavailable."

GALLERY_CACHE_TTL = 30.0


class PromptHubError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def error_status(exc: Exception) -> int:
    """Client errors from the backend pass through; anything else is a bad gateway."""
    if isinstance(exc, BackendError) and 400 <= exc.status < 500:
        return exc.status
    return 502


@dataclass
class GalleryState:
    prompts: List[PromptWithStats] = field(default_factory=list)
    warning: Optional[str] = None


class GalleryCache:
    """Aggregated gallery per user, so searching and re-sorting do not refetch.

    Attributes:
        ttl: Seconds an entry stays fresh
        max_size: Maximum number of users kept (0 = unlimited)
    """

    def __init__(self, ttl: float = GALLERY_CACHE_TTL, max_size: int = 256):
        self.ttl = ttl
        self.max_size = max_size
        self._entries: Dict[str, Tuple[float, GalleryState]] = {}

    def get(self, key: str) -> Optional[GalleryState]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, state = entry
        if time.monotonic() - stored_at > self.ttl:
            self._entries.pop(key, None)
            return None
        return state

    def set(self, key: str, state: GalleryState) -> None:
        self._entries.pop(key, None)
        if self.max_size > 0 and len(self._entries) >= self.max_size:
            # drop the oldest entry (FIFO)
            self._entries.pop(next(iter(self._entries)))
        self._entries[key] = (time.monotonic(), state)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class PromptHub:
    def __init__(self, backend: PromptBackend, user: Optional[AuthSession], cache: Optional[GalleryCache] = None):
        self.backend = backend
        self.user = user
        self.cache = cache

    def _require_user(self, message: str = "Please sign in first.") -> AuthSession:
        if not self.user:
            raise PromptHubError(message, status_code=401)
        return self.user

    async def load_prompts(self) -> GalleryState:
        try:
            # some PocketBase instances reject sorting by system created/updated
            prompt_records = await asyncio.to_thread(self.backend.list_all_records, PROMPTS, "-id")
        except Exception as e:
            logger.error(f"Loading prompts failed: {e}")
            raise PromptHubError(describe_error(e, "Failed to load prompts."), status_code=error_status(e)) from e

        votes, copies = await asyncio.gather(
            asyncio.to_thread(self.backend.list_all_records, VOTES),
            asyncio.to_thread(self.backend.list_all_records, COPIES),
            return_exceptions=True,
        )

        warning = None
        if isinstance(votes, Exception) or isinstance(copies, Exception):
            failed = votes if isinstance(votes, Exception) else copies
            logger.warning(f"Vote/copy stats unavailable: {failed}")
            warning = STATS_UNAVAILABLE
        vote_records = [] if isinstance(votes, Exception) else votes
        copy_records = [] if isinstance(copies, Exception) else copies

        return GalleryState(aggregate_prompts(prompt_records, vote_records, copy_records), warning)

    async def gallery(self, refresh: bool = False) -> GalleryState:
        """The aggregated gallery, served from the cache unless stale or `refresh` is set."""
        user = self._require_user()
        if self.cache is not None and not refresh:
            cached = self.cache.get(user.user_id)
            if cached is not None:
                return cached

        state = await self.load_prompts()
        # a degraded load is not kept so stats come back on the next request
        if self.cache is not None and state.warning is None:
            self.cache.set(user.user_id, state)
        return state

    async def visible(self, query: str = "", sort_by: SortKey = SortKey.NEWEST, refresh: bool = False) -> GalleryState:
        state = await self.gallery(refresh)
        return GalleryState(visible_prompts(state.prompts, query, sort_by), state.warning)

    def _changed(self):
        if self.cache is not None:
            self.cache.clear()

    async def get_prompt(self, prompt_id: str) -> PromptWithStats:
        record = await self._backend_call(
            self.backend.get_first, PROMPTS, {"id": prompt_id}, fallback="Failed to load prompt."
        )
        if record is None:
            raise PromptHubError("Prompt not found.", status_code=404)
        return to_prompt(record)

    async def submit_prompt(self, draft: PromptDraft) -> PromptWithStats:
        user = self._require_user()
        try:
            validate_draft(draft)
        except DraftError as e:
            raise PromptHubError(str(e)) from e

        payload = draft_payload(draft)
        if draft.id:
            await self._require_owner(draft.id)
            record = await self._backend_call(
                self.backend.update, PROMPTS, draft.id, payload, fallback="Failed to save prompt."
            )
            logger.info(f"Prompt {draft.id} updated by {user.email}")
        else:
            payload["author"] = user.user_id
            payload["author_name"] = user.email or user.user_id
            record = await self._backend_call(
                self.backend.create, PROMPTS, payload, fallback="Failed to save prompt."
            )
            logger.info(f"Prompt {record.get('id')} created by {user.email}")
        self._changed()
        return to_prompt(record)

    async def upvote(self, prompt_id: str) -> bool:
        """Record a noise vote. Returns False when the user had already voted."""
        user = self._require_user("Please sign in to upvote.")
        vote = {"prompt": prompt_id, "user": user.user_id}
        existing = await self._backend_call(self.backend.get_first, VOTES, vote, fallback="Failed to upvote prompt.")
        if existing:
            return False
        try:
            await asyncio.to_thread(self.backend.create, VOTES, vote)
        except BackendError as e:
            # lost a race against a concurrent vote from the same user
            if e.is_unique_violation:
                return False
            raise PromptHubError(describe_error(e, "Failed to upvote prompt."), status_code=error_status(e)) from e
        logger.info(f"Noise on {prompt_id} by {user.email}")
        self._changed()
        return True

    async def echo(self, prompt_id: str) -> PromptDraft:
        user = self._require_user("Please sign in to echo prompts.")
        prompt = await self.get_prompt(prompt_id)
        await self._backend_call(
            self.backend.create, COPIES, {"prompt": prompt_id, "user": user.user_id},
            fallback="Failed to register echo.",
        )
        logger.info(f"Echo of {prompt_id} by {user.email}")
        self._changed()
        return echo_draft(prompt)

    async def edit(self, prompt_id: str) -> PromptDraft:
        prompt = await self._require_owner(prompt_id)
        return edit_draft(prompt)

    async def delete_prompt(self, prompt_id: str) -> None:
        user = self._require_user()
        await self._require_owner(prompt_id)
        await self._backend_call(self.backend.delete, PROMPTS, prompt_id, fallback="Failed to delete prompt.")
        logger.info(f"Prompt {prompt_id} deleted by {user.email}")
        self._changed()

    async def _require_owner(self, prompt_id: str) -> PromptWithStats:
        user = self._require_user()
        prompt = await self.get_prompt(prompt_id)
        if prompt.author_id != user.user_id:
            raise PromptHubError("Only the author can change this prompt.", status_code=403)
        return prompt

    async def _backend_call(self, func, *args, fallback: str):
        try:
            return await asyncio.to_thread(func, *args)
        except Exception as e:
            logger.warning(f"{fallback} {e}")
            raise PromptHubError(describe_error(e, fallback), status_code=error_status(e)) from e
