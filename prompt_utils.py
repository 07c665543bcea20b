import html as html_mod
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field
from rapidfuzz import fuzz

MAX_PROMPT_LENGTH = 4000
MAX_TITLE_LENGTH = 120
MAX_CATEGORY_LENGTH = 40

# partial_ratio score needed for a search hit (roughly a 0.32 fuzzy distance)
SEARCH_MIN_SCORE = 68

VARIABLE_PATTERN = re.compile(r"{{\s*[a-zA-Z0-9_.-]+\s*}}")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class SortKey(str, Enum):
    NOISE = "noise"
    NEWEST = "newest"
    ECHOED = "echoed"


class PromptWithStats(BaseModel):
    id: str
    title: str = ""
    content: str = ""
    category: str = ""
    tags: List[str] = Field(default_factory=list)
    author_id: str = ""
    author_name: Optional[str] = None
    forked_from: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""
    upvote_count: int = 0
    copy_count: int = 0


class PromptDraft(BaseModel):
    id: Optional[str] = None
    title: str = ""
    category: str = ""
    content: str = ""
    forked_from: Optional[str] = None


class DraftError(ValueError):
    pass


def extract_variables(text: str) -> List[str]:
    names = [re.sub(r"[{}\s]", "", match) for match in VARIABLE_PATTERN.findall(text or "")]
    return list(dict.fromkeys(names))


def render_variable_preview(text: str) -> str:
    """Escaped prompt text with every {{placeholder}} wrapped in <mark>."""
    parts = []
    last_index = 0
    for match in VARIABLE_PATTERN.finditer(text or ""):
        parts.append(html_mod.escape(text[last_index:match.start()]))
        parts.append(f'<mark class="var">{html_mod.escape(match.group(0))}</mark>')
        last_index = match.end()
    parts.append(html_mod.escape((text or "")[last_index:]))
    return "".join(parts)


def parse_timestamp(value: str) -> datetime:
    # PocketBase: "2024-05-01 10:00:00.123Z", Supabase: ISO 8601 with offset
    raw = (value or "").strip().replace(" ", "T", 1)
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return _EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def sort_prompts(prompts: Iterable[PromptWithStats], sort_by: SortKey) -> List[PromptWithStats]:
    sort_by = SortKey(sort_by)
    if sort_by == SortKey.NOISE:
        key = lambda p: p.upvote_count
    elif sort_by == SortKey.ECHOED:
        key = lambda p: p.copy_count
    else:
        key = lambda p: parse_timestamp(p.created_at)
    # reverse=True keeps equal items in input order
    return sorted(prompts, key=key, reverse=True)


def _search_score(prompt: PromptWithStats, query: str) -> float:
    fields = [prompt.title, prompt.content, prompt.category, *prompt.tags]
    return max((fuzz.partial_ratio(query, f.lower()) for f in fields if f), default=0)


def search_prompts(prompts: List[PromptWithStats], query: str) -> List[PromptWithStats]:
    query = (query or "").strip().lower()
    if not query:
        return list(prompts)

    scored = [(_search_score(p, query), p) for p in prompts]
    hits = [item for item in scored if item[0] >= SEARCH_MIN_SCORE]
    hits.sort(key=lambda item: item[0], reverse=True)
    return [p for _, p in hits]


def visible_prompts(prompts: List[PromptWithStats], query: str, sort_by: SortKey) -> List[PromptWithStats]:
    return sort_prompts(search_prompts(prompts, query), sort_by)


def _count_by_prompt(records: Iterable[Dict[str, Any]]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for record in records:
        prompt_id = str(record.get("prompt") or "")
        if prompt_id:
            counts[prompt_id] = counts.get(prompt_id, 0) + 1
    return counts


def to_prompt(record: Dict[str, Any], upvote_count: int = 0, copy_count: int = 0) -> PromptWithStats:
    tags = record.get("tags")
    return PromptWithStats(
        id=str(record["id"]),
        title=str(record.get("title") or ""),
        content=str(record.get("content") or ""),
        category=str(record.get("category") or ""),
        tags=[str(t) for t in tags] if isinstance(tags, list) else [],
        author_id=str(record.get("author") or ""),
        author_name=str(record["author_name"]) if record.get("author_name") else None,
        forked_from=str(record["forked_from"]) if record.get("forked_from") else None,
        created_at=str(record.get("created") or record.get("created_at") or ""),
        updated_at=str(record.get("updated") or record.get("updated_at") or ""),
        upvote_count=upvote_count,
        copy_count=copy_count,
    )


def aggregate_prompts(prompt_records, vote_records, copy_records) -> List[PromptWithStats]:
    votes = _count_by_prompt(vote_records)
    copies = _count_by_prompt(copy_records)
    return [
        to_prompt(record, votes.get(str(record["id"]), 0), copies.get(str(record["id"]), 0))
        for record in prompt_records
    ]


def validate_draft(draft: PromptDraft) -> None:
    if not draft.title.strip() or not draft.category.strip() or not draft.content.strip():
        raise DraftError("Title, category, and prompt text are required.")
    if len(draft.content) > MAX_PROMPT_LENGTH:
        raise DraftError(f"Prompt text cannot exceed {MAX_PROMPT_LENGTH} characters.")
    if len(draft.title.strip()) > MAX_TITLE_LENGTH:
        raise DraftError(f"Title cannot exceed {MAX_TITLE_LENGTH} characters.")
    if len(draft.category.strip()) > MAX_CATEGORY_LENGTH:
        raise DraftError(f"Category cannot exceed {MAX_CATEGORY_LENGTH} characters.")


def draft_payload(draft: PromptDraft) -> Dict[str, Any]:
    category = draft.category.strip()
    return {
        "title": draft.title.strip(),
        "category": category,
        "content": draft.content.strip(),
        "tags": [category.lower()],
        "forked_from": draft.forked_from or None,
    }


def echo_draft(prompt: PromptWithStats) -> PromptDraft:
    return PromptDraft(
        title=f"{prompt.title} (Echo)",
        category=prompt.category,
        content=prompt.content,
        forked_from=prompt.id,
    )


def edit_draft(prompt: PromptWithStats) -> PromptDraft:
    return PromptDraft(
        id=prompt.id,
        title=prompt.title,
        category=prompt.category,
        content=prompt.content,
        forked_from=prompt.forked_from,
    )
