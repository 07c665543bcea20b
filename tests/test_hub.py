import asyncio

import pytest

import hub as hub_module
from backend import BackendError
from hub import STATS_UNAVAILABLE, GalleryCache, GalleryState, PromptHub, PromptHubError
from prompt_utils import MAX_PROMPT_LENGTH, PromptDraft, SortKey


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def hub(backend, alice):
    return PromptHub(backend, alice)


def seed_gallery(backend):
    backend.seed("prompts", id="p1", title="Cold outreach", category="Sales", content="Hi {{client}}",
                 author="u-bob", author_name="bob@example.com", created="2024-01-01 09:00:00.000Z")
    backend.seed("prompts", id="p2", title="Bug triage", category="Engineering", content="Classify {{issue}}",
                 author="u-alice", author_name="alice@example.com", created="2024-02-01 09:00:00.000Z")
    backend.seed("prompt_votes", prompt="p1", user="u-alice")
    backend.seed("prompt_votes", prompt="p1", user="u-carol")
    backend.seed("prompt_copies", prompt="p2", user="u-bob")


def test_load_prompts_aggregates_stats(hub, backend):
    seed_gallery(backend)

    state = run(hub.load_prompts())

    counts = {p.id: (p.upvote_count, p.copy_count) for p in state.prompts}
    assert counts == {"p1": (2, 0), "p2": (0, 1)}
    assert state.warning is None


def test_load_prompts_degrades_when_stats_fail(hub, backend):
    seed_gallery(backend)
    backend.broken["prompt_copies"] = BackendError("Forbidden", status=403)

    state = run(hub.load_prompts())

    assert len(state.prompts) == 2
    assert all(p.copy_count == 0 for p in state.prompts)
    assert state.warning == STATS_UNAVAILABLE


def test_load_prompts_surfaces_backend_message(hub, backend):
    backend.broken["prompts"] = BackendError("Only superusers can perform this action.", status=403)

    with pytest.raises(PromptHubError, match="Only superusers") as exc:
        run(hub.load_prompts())
    assert exc.value.status_code == 403


def test_server_side_backend_failure_is_bad_gateway(hub, backend):
    backend.broken["prompts"] = BackendError("Internal error", status=500)

    with pytest.raises(PromptHubError) as exc:
        run(hub.submit_prompt(PromptDraft(title="T", category="C", content="Body")))
    assert exc.value.status_code == 502


def test_vote_on_missing_prompt_is_not_found(hub, backend):
    backend.broken["prompt_votes"] = BackendError("Referenced prompt does not exist.", status=404)

    with pytest.raises(PromptHubError) as exc:
        run(hub.upvote("gone"))
    assert exc.value.status_code == 404


def test_cached_gallery_skips_reload_until_changed(backend, alice):
    seed_gallery(backend)
    hub = PromptHub(backend, alice, GalleryCache())

    def list_calls():
        return len([call for call in backend.calls if call[0] == "get_list"])

    run(hub.visible("", SortKey.NEWEST))
    loaded = list_calls()
    searched = run(hub.visible("triage", SortKey.NOISE))
    assert [p.id for p in searched.prompts] == ["p2"]
    assert list_calls() == loaded

    # filtering must not shrink the cached list
    assert len(run(hub.visible()).prompts) == 2

    run(hub.upvote("p2"))
    state = run(hub.visible("", SortKey.NOISE))
    assert list_calls() > loaded
    assert [(p.id, p.upvote_count) for p in state.prompts] == [("p1", 2), ("p2", 1)]


def test_degraded_gallery_is_not_cached(backend, alice):
    seed_gallery(backend)
    cache = GalleryCache()
    backend.broken["prompt_votes"] = BackendError("Forbidden", status=403)

    state = run(PromptHub(backend, alice, cache).visible())

    assert state.warning == STATS_UNAVAILABLE
    assert len(cache) == 0


def test_gallery_cache_expires_and_evicts(monkeypatch):
    clock = [100.0]
    monkeypatch.setattr(hub_module.time, "monotonic", lambda: clock[0])
    cache = GalleryCache(ttl=30, max_size=2)

    cache.set("a", GalleryState())
    cache.set("b", GalleryState())
    cache.set("c", GalleryState())
    assert cache.get("a") is None
    assert cache.get("b") is not None

    clock[0] += 31
    assert cache.get("c") is None


def test_visible_sorts_and_searches(hub, backend):
    seed_gallery(backend)

    newest = run(hub.visible("", SortKey.NEWEST))
    noisy = run(hub.visible("", SortKey.NOISE))
    searched = run(hub.visible("triage", SortKey.NOISE))

    assert [p.id for p in newest.prompts] == ["p2", "p1"]
    assert [p.id for p in noisy.prompts] == ["p1", "p2"]
    assert [p.id for p in searched.prompts] == ["p2"]


def test_visible_requires_sign_in(backend):
    with pytest.raises(PromptHubError) as exc:
        run(PromptHub(backend, None).visible())
    assert exc.value.status_code == 401


def test_submit_creates_prompt_with_author(hub, backend):
    created = run(hub.submit_prompt(PromptDraft(title=" Standup ", category="Team", content="Summarize {{notes}}")))

    assert created.title == "Standup"
    assert created.author_id == "u-alice"
    assert created.author_name == "alice@example.com"
    assert created.tags == ["team"]


def test_submit_rejects_long_content_before_any_call(hub, backend):
    draft = PromptDraft(title="T", category="C", content="x" * (MAX_PROMPT_LENGTH + 1))

    with pytest.raises(PromptHubError, match="cannot exceed"):
        run(hub.submit_prompt(draft))

    assert backend.calls == []


def test_submit_updates_own_prompt_only(hub, backend):
    seed_gallery(backend)

    updated = run(hub.submit_prompt(PromptDraft(id="p2", title="Bug triage v2", category="Engineering",
                                                content="Classify {{issue}}")))
    assert updated.title == "Bug triage v2"

    with pytest.raises(PromptHubError) as exc:
        run(hub.submit_prompt(PromptDraft(id="p1", title="Mine now", category="Sales", content="x")))
    assert exc.value.status_code == 403


def test_upvote_twice_is_a_no_op(hub, backend):
    seed_gallery(backend)

    assert run(hub.upvote("p2")) is True
    assert run(hub.upvote("p2")) is False

    votes = [v for v in backend.collections["prompt_votes"] if v["prompt"] == "p2"]
    assert len(votes) == 1


def test_upvote_race_on_unique_constraint_is_success(hub, backend, monkeypatch):
    seed_gallery(backend)
    # the existence check misses a vote written concurrently
    monkeypatch.setattr(backend, "get_first", lambda collection, filters: None)

    assert run(hub.upvote("p1")) is False
    assert len([v for v in backend.collections["prompt_votes"] if v["prompt"] == "p1"]) == 2


def test_echo_registers_copy_and_returns_fork_draft(hub, backend):
    seed_gallery(backend)

    draft = run(hub.echo("p1"))

    assert draft.title == "Cold outreach (Echo)"
    assert draft.forked_from == "p1"
    assert draft.id is None
    assert {"prompt": "p1", "user": "u-alice"}.items() <= backend.collections["prompt_copies"][-1].items()


def test_echo_unknown_prompt(hub, backend):
    with pytest.raises(PromptHubError) as exc:
        run(hub.echo("missing"))
    assert exc.value.status_code == 404


def test_edit_and_delete_own_prompt(hub, backend):
    seed_gallery(backend)

    draft = run(hub.edit("p2"))
    assert draft.id == "p2" and draft.title == "Bug triage"

    run(hub.delete_prompt("p2"))
    assert [p["id"] for p in backend.collections["prompts"]] == ["p1"]

    with pytest.raises(PromptHubError) as exc:
        run(hub.delete_prompt("p1"))
    assert exc.value.status_code == 403
