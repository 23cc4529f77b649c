import asyncio
import logging

import pytest

from lumos.errors import InvalidArgumentError, NotFoundError
from lumos.services.session_manager import SessionManager
from lumos.services.storage import InMemoryStorage


def _assert_invariants(manager: SessionManager, session_id: str) -> None:
    session = manager.get_session(session_id)
    assert session is not None
    assert session.agent_ids
    assert len(session.agent_ids) == len(set(session.agent_ids))
    assert session.default_agent_id in session.agent_ids
    assert session.updated_at >= session.created_at


@pytest.mark.asyncio
async def test_create_session_single_agent(manager: SessionManager, storage: InMemoryStorage) -> None:
    """create_session sets the agent as sole member and default, persists and activates."""
    session = await manager.create_session("agent1", "Test Session")

    assert session.title == "Test Session"
    assert session.default_agent_id == "agent1"
    assert session.agent_ids == ["agent1"]
    assert session.messages == []
    assert session.agent_contexts == {}
    assert await storage.load(session.id) is not None
    assert await storage.get_active() == session.id


@pytest.mark.asyncio
async def test_create_session_default_title(manager: SessionManager) -> None:
    session = await manager.create_session("agent1")
    assert session.title == "新会话"


@pytest.mark.asyncio
async def test_create_multi_agent_session_keeps_order(manager: SessionManager) -> None:
    """The first listed agent becomes the default and order is preserved."""
    session = await manager.create_multi_agent_session(
        ["agent2", "agent1", "agent3"], "Multi-Agent Session"
    )
    assert session.default_agent_id == "agent2"
    assert session.agent_ids == ["agent2", "agent1", "agent3"]
    assert session.title == "Multi-Agent Session"


@pytest.mark.asyncio
async def test_create_multi_agent_session_drops_duplicates(manager: SessionManager) -> None:
    session = await manager.create_multi_agent_session(["a", "b", "a"])
    assert session.agent_ids == ["a", "b"]


@pytest.mark.asyncio
async def test_create_multi_agent_session_empty_raises(manager: SessionManager) -> None:
    with pytest.raises(InvalidArgumentError):
        await manager.create_multi_agent_session([])


@pytest.mark.asyncio
async def test_get_session_missing_returns_none(manager: SessionManager) -> None:
    assert manager.get_session("nope") is None


@pytest.mark.asyncio
async def test_get_session_returns_snapshot(manager: SessionManager) -> None:
    """Mutating a returned session does not touch the stored one."""
    session = await manager.create_session("agent1")
    snapshot = manager.get_session(session.id)
    snapshot.agent_ids.clear()
    snapshot.title = "changed"

    stored = manager.get_session(session.id)
    assert stored.agent_ids == ["agent1"]
    assert stored.title != "changed"


@pytest.mark.asyncio
async def test_add_agent_is_idempotent(manager: SessionManager) -> None:
    session = await manager.create_session("A")
    await manager.add_agent_to_session(session.id, "B")
    await manager.add_agent_to_session(session.id, "B")
    await manager.add_agent_to_session(session.id, "A")

    assert manager.get_session(session.id).agent_ids == ["A", "B"]
    _assert_invariants(manager, session.id)


@pytest.mark.asyncio
async def test_add_agent_bumps_updated_at(manager: SessionManager) -> None:
    session = await manager.create_session("A")
    updated = await manager.add_agent_to_session(session.id, "B")
    assert updated.updated_at >= session.updated_at


@pytest.mark.asyncio
async def test_remove_default_agent_is_noop(manager: SessionManager) -> None:
    session = await manager.create_multi_agent_session(["A", "B"])
    await manager.remove_agent_from_session(session.id, "A")
    assert manager.get_session(session.id).agent_ids == ["A", "B"]


@pytest.mark.asyncio
async def test_remove_agent_keeps_context_and_messages(manager: SessionManager) -> None:
    session = await manager.create_multi_agent_session(["A", "B"])
    await manager.set_agent_system_prompt(session.id, "B", "be brief")
    await manager.add_message(session.id, "assistant", "hello", agent_id="B", agent_name="Bee")

    await manager.remove_agent_from_session(session.id, "B")

    stored = manager.get_session(session.id)
    assert stored.agent_ids == ["A"]
    assert stored.agent_contexts["B"].system_prompt == "be brief"
    assert stored.messages[0].agent_id == "B"


@pytest.mark.asyncio
async def test_remove_absent_agent_is_noop(manager: SessionManager) -> None:
    session = await manager.create_multi_agent_session(["A", "B"])
    result = await manager.remove_agent_from_session(session.id, "Z")
    assert result.agent_ids == ["A", "B"]
    assert result.updated_at == session.updated_at


@pytest.mark.asyncio
async def test_set_default_agent_auto_enrolls(manager: SessionManager) -> None:
    session = await manager.create_session("A")
    await manager.set_session_default_agent(session.id, "C")

    stored = manager.get_session(session.id)
    assert stored.agent_ids == ["A", "C"]
    assert stored.default_agent_id == "C"


@pytest.mark.asyncio
async def test_set_default_then_remove_old_default(manager: SessionManager) -> None:
    session = await manager.create_multi_agent_session(["A", "B"])
    await manager.set_session_default_agent(session.id, "B")
    await manager.remove_agent_from_session(session.id, "A")

    stored = manager.get_session(session.id)
    assert stored.agent_ids == ["B"]
    assert stored.default_agent_id == "B"


@pytest.mark.asyncio
async def test_agent_context_created_lazily(manager: SessionManager) -> None:
    """Contexts can be staged for agents that are not members yet."""
    session = await manager.create_session("A")
    assert manager.get_session(session.id).agent_contexts == {}

    await manager.set_agent_system_prompt(session.id, "X", "You are X")
    await manager.set_agent_model_settings(session.id, "X", {"temperature": 0.2})

    stored = manager.get_session(session.id)
    assert "X" not in stored.agent_ids
    assert stored.agent_contexts["X"].system_prompt == "You are X"
    assert stored.agent_contexts["X"].model_settings == {"temperature": 0.2}
    assert "A" not in stored.agent_contexts


@pytest.mark.asyncio
async def test_agent_mutators_on_missing_session_return_none(manager: SessionManager) -> None:
    assert await manager.add_agent_to_session("missing", "A") is None
    assert await manager.remove_agent_from_session("missing", "A") is None
    assert await manager.set_session_default_agent("missing", "A") is None
    assert await manager.set_agent_system_prompt("missing", "A", "p") is None
    assert await manager.set_agent_model_settings("missing", "A", {}) is None


@pytest.mark.asyncio
async def test_add_message_attribution_round_trip(manager: SessionManager) -> None:
    session = await manager.create_multi_agent_session(["A", "B"])
    first = await manager.add_message(session.id, "user", "question")
    created = await manager.add_message(
        session.id, "assistant", "hi", agent_id="B", agent_name="Bee"
    )

    fetched = manager.get_message(session.id, created.id)
    assert fetched is not None
    assert fetched.agent_id == "B"
    assert fetched.agent_name == "Bee"
    assert fetched.content == "hi"
    assert created.id != first.id


@pytest.mark.asyncio
async def test_add_message_on_missing_session_raises(manager: SessionManager) -> None:
    with pytest.raises(NotFoundError):
        await manager.add_message("nonexistent-id", "user", "hi")


@pytest.mark.asyncio
async def test_add_message_rejects_unknown_role(manager: SessionManager) -> None:
    session = await manager.create_session("A")
    with pytest.raises(InvalidArgumentError):
        await manager.add_message(session.id, "tool", "x")


@pytest.mark.asyncio
async def test_get_message_missing(manager: SessionManager) -> None:
    session = await manager.create_session("A")
    assert manager.get_message(session.id, "nope") is None
    assert manager.get_message("nope", "nope") is None


@pytest.mark.asyncio
async def test_update_message_patches_content(manager: SessionManager) -> None:
    session = await manager.create_session("A")
    msg = await manager.add_message(session.id, "assistant", "draft")

    updated = await manager.update_message(session.id, msg.id, {"content": "final"})

    assert updated.content == "final"
    assert updated.created_at == msg.created_at
    assert manager.get_message(session.id, msg.id).content == "final"


@pytest.mark.asyncio
async def test_update_message_on_missing_session_is_silent(manager: SessionManager) -> None:
    known = await manager.create_session("A")
    await manager.add_message(known.id, "user", "hello")
    before = manager.get_session(known.id)

    result = await manager.update_message("nonexistent-id", "msg", {"content": "x"})

    assert result is None
    after = manager.get_session(known.id)
    assert after.messages[0].content == "hello"
    assert after.updated_at == before.updated_at


@pytest.mark.asyncio
async def test_update_message_rejects_immutable_fields(manager: SessionManager) -> None:
    session = await manager.create_session("A")
    msg = await manager.add_message(session.id, "user", "hello")
    with pytest.raises(InvalidArgumentError):
        await manager.update_message(session.id, msg.id, {"id": "other"})


@pytest.mark.asyncio
async def test_message_ids_follow_append_order_under_concurrency(manager: SessionManager) -> None:
    session = await manager.create_session("A")
    created = await asyncio.gather(
        *(manager.add_message(session.id, "user", str(i)) for i in range(20))
    )
    stored = manager.get_session(session.id)
    assert [m.id for m in stored.messages] == [m.id for m in created]
    assert len({m.id for m in stored.messages}) == 20


@pytest.mark.asyncio
async def test_invariants_hold_over_operation_sequence(manager: SessionManager) -> None:
    session = await manager.create_multi_agent_session(["A", "B"])
    operations = [
        manager.add_agent_to_session(session.id, "C"),
        manager.remove_agent_from_session(session.id, "A"),
        manager.set_session_default_agent(session.id, "D"),
        manager.remove_agent_from_session(session.id, "D"),
        manager.remove_agent_from_session(session.id, "B"),
        manager.add_agent_to_session(session.id, "D"),
        manager.set_session_default_agent(session.id, "C"),
        manager.remove_agent_from_session(session.id, "D"),
        manager.remove_agent_from_session(session.id, "A"),
    ]
    for op in operations:
        await op
        _assert_invariants(manager, session.id)
    assert manager.get_session(session.id).agent_ids == ["C"]


@pytest.mark.asyncio
async def test_update_title_and_clear_messages(manager: SessionManager) -> None:
    session = await manager.create_session("A", "old")
    await manager.add_message(session.id, "user", "hello")

    renamed = await manager.update_session_title(session.id, "new")
    cleared = await manager.clear_session_messages(session.id)

    assert renamed.title == "new"
    assert cleared.messages == []
    assert cleared.title == "new"


@pytest.mark.asyncio
async def test_delete_session_clears_active(manager: SessionManager, storage: InMemoryStorage) -> None:
    session = await manager.create_session("A")
    assert await manager.delete_session(session.id) is True

    assert manager.get_session(session.id) is None
    assert await storage.load(session.id) is None
    assert await storage.get_active() is None
    assert await manager.delete_session(session.id) is False


@pytest.mark.asyncio
async def test_active_session_follows_creation(manager: SessionManager) -> None:
    first = await manager.create_session("A")
    second = await manager.create_session("B")
    assert (await manager.get_active_session()).id == second.id

    await manager.set_active_session(first.id)
    assert (await manager.get_active_session()).id == first.id

    with pytest.raises(NotFoundError):
        await manager.set_active_session("missing")


@pytest.mark.asyncio
async def test_list_sessions_most_recent_first(manager: SessionManager) -> None:
    first = await manager.create_session("A")
    second = await manager.create_session("B")
    await manager.add_message(first.id, "user", "bump")

    ids = [s.id for s in manager.list_sessions()]
    assert ids == [first.id, second.id]


@pytest.mark.asyncio
async def test_load_sessions_hydrates_from_storage(storage: InMemoryStorage) -> None:
    writer = SessionManager(storage)
    session = await writer.create_multi_agent_session(["A", "B"], "persisted")
    await writer.add_message(session.id, "assistant", "hi", agent_id="B", agent_name="Bee")

    reader = SessionManager(storage)
    assert await reader.load_sessions() == 1
    loaded = reader.get_session(session.id)
    assert loaded.title == "persisted"
    assert loaded.messages[0].agent_name == "Bee"


@pytest.mark.asyncio
async def test_summarize_previews_last_message(manager: SessionManager) -> None:
    session = await manager.create_session("A")
    await manager.add_message(session.id, "user", "x" * 100)
    summary = manager.summarize(manager.get_session(session.id))
    assert summary.message_count == 1
    assert summary.last_message_preview == "x" * 80 + "..."


@pytest.mark.asyncio
async def test_missing_session_calls_do_not_accumulate_locks(manager: SessionManager) -> None:
    for i in range(1000):
        assert await manager.update_message(f"missing-{i}", "m", {"content": "x"}) is None
        assert await manager.add_agent_to_session(f"missing-{i}", "a") is None
        with pytest.raises(NotFoundError):
            await manager.add_message(f"missing-{i}", "user", "x")

    assert len(manager._locks) == 0


@pytest.mark.asyncio
async def test_delete_releases_lock(manager: SessionManager) -> None:
    session = await manager.create_session("agent1")
    await manager.update_session_title(session.id, "t")
    assert session.id in manager._locks

    await manager.delete_session(session.id)
    assert session.id not in manager._locks


class _RejectingStorage(InMemoryStorage):
    async def save(self, session) -> bool:
        return False


@pytest.mark.asyncio
async def test_create_logs_failed_save(caplog: pytest.LogCaptureFixture) -> None:
    manager = SessionManager(_RejectingStorage())
    with caplog.at_level(logging.WARNING, logger="lumos.services.session_manager"):
        session = await manager.create_session("agent1")

    assert manager.get_session(session.id) is not None
    assert f"Session {session.id} was not persisted" in caplog.text


@pytest.mark.asyncio
async def test_manager_feeds_metrics(manager: SessionManager) -> None:
    session = await manager.create_session("agent1")
    await manager.add_message(session.id, "user", "hello")
    await manager.add_message(session.id, "assistant", "hi", response_time_ms=120.0)

    usage = manager.metrics.get_session_metrics(session.id)
    assert usage.message_count == 2
    assert usage.user_message_count == 1
    assert usage.assistant_message_count == 1
    assert usage.average_response_time_ms == 120.0

    await manager.delete_session(session.id)
    stats = manager.metrics.get_session_stats()
    assert stats.sessions_created == 1
    assert stats.total_sessions == 0
    assert manager.metrics.get_session_metrics(session.id) is None


@pytest.mark.asyncio
async def test_export_import_round_trip(manager: SessionManager) -> None:
    first = await manager.create_multi_agent_session(["a", "b"], "team")
    await manager.add_message(first.id, "user", "你好")
    await manager.set_agent_system_prompt(first.id, "b", "Be brief.")
    second = await manager.create_session("c", "solo")
    exported = manager.export_sessions()

    other = SessionManager(InMemoryStorage())
    stale = await other.create_session("z")
    assert await other.import_sessions(exported) is True

    assert other.get_session(stale.id) is None
    assert {s.id for s in other.list_sessions()} == {first.id, second.id}
    restored = other.get_session(first.id)
    assert restored == manager.get_session(first.id)
    assert await other.storage.load(first.id) is not None
    assert await other.storage.load(stale.id) is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        "not json",
        '{"id": "x"}',
        "[1, 2]",
        '[{"id": "s", "title": "t", "default_agent_id": "a", "agent_ids": [],'
        ' "created_at": "2024-01-01T00:00:00+00:00", "updated_at": "2024-01-01T00:00:00+00:00"}]',
        '[{"id": "s", "title": "t", "default_agent_id": "z", "agent_ids": ["a"],'
        ' "created_at": "2024-01-01T00:00:00+00:00", "updated_at": "2024-01-01T00:00:00+00:00"}]',
        '[{"id": "s", "title": "t", "default_agent_id": "a", "agent_ids": ["a", "a"],'
        ' "created_at": "2024-01-01T00:00:00+00:00", "updated_at": "2024-01-01T00:00:00+00:00"}]',
    ],
)
async def test_import_rejects_invalid_data_without_changes(manager: SessionManager, payload: str) -> None:
    existing = await manager.create_session("agent1")

    assert await manager.import_sessions(payload) is False
    assert [s.id for s in manager.list_sessions()] == [existing.id]
