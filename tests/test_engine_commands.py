from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import Any

import pytest

from codex_threads.backend import ThreadBackend
from codex_threads.config import EngineConfig
from codex_threads.engine import ThreadEngine
from codex_threads.errors import CodexProtocolError, CodexTransportError
from codex_threads.models import (
    ApprovalRequest,
    BaseBranchTarget,
    CommitTarget,
    DebugEntry,
    MessageItem,
    QueuedMessage,
    ReviewItem,
    ThreadSummary,
    ToolItem,
    WorkspaceInfo,
)
from codex_threads.store import EnqueueMessage

WORKSPACE = WorkspaceInfo(id="ws", path="/repo", name="repo", connected=True)


class RecordingBackend(ThreadBackend):
    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = []
        self.responses: dict[str, Any] = {
            "start_thread": {"thread": {"id": "thread-new"}},
            "send_user_message": {"turn": {"id": "turn-1"}},
        }
        self.errors: dict[str, Exception] = {}
        self.list_pages: list[Any] = []

    def call_names(self) -> list[str]:
        return [name for name, _, _ in self.calls]

    async def _record(self, name: str, *args: Any, **kwargs: Any) -> Any:
        self.calls.append((name, args, kwargs))
        error = self.errors.get(name)
        if error is not None:
            raise error
        return self.responses.get(name)

    async def start_thread(self, workspace_id: str) -> Any:
        return await self._record("start_thread", workspace_id)

    async def resume_thread(self, workspace_id: str, thread_id: str) -> Any:
        return await self._record("resume_thread", workspace_id, thread_id)

    async def list_threads(self, workspace_id: str, cursor: str | None, limit: int) -> Any:
        await self._record("list_threads", workspace_id, cursor, limit)
        return self.list_pages.pop(0)

    async def archive_thread(self, workspace_id: str, thread_id: str) -> Any:
        return await self._record("archive_thread", workspace_id, thread_id)

    async def send_user_message(
        self,
        workspace_id: str,
        thread_id: str,
        text: str,
        *,
        model: str | None = None,
        effort: Any = None,
        access_mode: Any = "current",
    ) -> Any:
        return await self._record(
            "send_user_message",
            workspace_id,
            thread_id,
            text,
            model=model,
            effort=effort,
            access_mode=access_mode,
        )

    async def start_review(
        self,
        workspace_id: str,
        thread_id: str,
        target: Any,
        delivery: str = "inline",
    ) -> Any:
        return await self._record("start_review", workspace_id, thread_id, target, delivery)

    async def interrupt_turn(self, workspace_id: str, thread_id: str, turn_id: str) -> Any:
        return await self._record("interrupt_turn", workspace_id, thread_id, turn_id)

    async def respond_to_server_request(
        self,
        workspace_id: str,
        request_id: Any,
        result: Any,
    ) -> None:
        await self._record("respond_to_server_request", workspace_id, request_id, result)

    async def account_rate_limits(self, workspace_id: str) -> Any:
        return await self._record("account_rate_limits", workspace_id)


def _engine(
    backend: RecordingBackend,
    *,
    entries: list[DebugEntry] | None = None,
    config: EngineConfig | None = None,
    **kwargs: Any,
) -> ThreadEngine:
    return ThreadEngine(
        backend,
        config=config,
        active_workspace=WORKSPACE,
        on_debug=entries.append if entries is not None else None,
        clock=lambda: 1700000000000,
        **kwargs,
    )


def _labels(entries: Sequence[DebugEntry]) -> list[str]:
    return [entry.label for entry in entries]


def test_start_thread_ensures_activates_and_memoizes() -> None:
    async def _run() -> None:
        backend = RecordingBackend()
        entries: list[DebugEntry] = []
        engine = _engine(backend, entries=entries)

        thread_id = await engine.start_thread_for_workspace("ws")

        assert thread_id == "thread-new"
        assert engine.active_thread_id == "thread-new"
        assert engine.threads_by_workspace["ws"] == (ThreadSummary(id="thread-new", name="Agent 1"),)
        assert _labels(entries) == ["thread/start", "thread/start response"]

        # Loaded threads are not resumed again without force.
        assert await engine.resume_thread_for_workspace("ws", "thread-new") == "thread-new"
        assert backend.call_names() == ["start_thread"]

    asyncio.run(_run())


def test_start_thread_without_thread_in_response_returns_none() -> None:
    async def _run() -> None:
        backend = RecordingBackend()
        backend.responses["start_thread"] = {"result": {}}
        engine = _engine(backend)
        assert await engine.start_thread() is None
        assert engine.active_thread_id is None

    asyncio.run(_run())


def test_start_thread_failure_is_reported_and_raised() -> None:
    async def _run() -> None:
        backend = RecordingBackend()
        backend.errors["start_thread"] = CodexTransportError("pipe closed")
        entries: list[DebugEntry] = []
        engine = _engine(backend, entries=entries)

        with pytest.raises(CodexTransportError):
            await engine.start_thread_for_workspace("ws")
        assert entries[-1].source == "error"
        assert entries[-1].label == "thread/start error"
        assert entries[-1].payload == "pipe closed"

    asyncio.run(_run())


def test_resume_merges_remote_history_with_streamed_items() -> None:
    async def _run() -> None:
        backend = RecordingBackend()
        backend.responses["resume_thread"] = {
            "thread": {
                "id": "t-1",
                "preview": "Fix the flaky test",
                "turns": [
                    {
                        "items": [
                            {"type": "userMessage", "id": "u-1", "content": [{"type": "text", "text": "Fix"}]},
                            {"type": "agentMessage", "id": "a-1", "text": "On it"},
                            {"type": "commandExecution", "id": "cmd-1", "command": "pytest", "status": "completed"},
                            {"type": "enteredReviewMode", "id": "rv-1"},
                        ]
                    }
                ],
            }
        }
        engine = _engine(backend)
        engine.on_agent_message_delta("ws", "t-1", "a-1", "On it, looking now")
        engine.on_item_started("ws", "t-1", {"type": "commandExecution", "id": "cmd-1", "command": "pytest"})
        engine.on_command_output_delta("ws", "t-1", "cmd-1", "1 passed")
        engine.on_agent_message_delta("ws", "t-1", "a-2", "Streaming")

        assert await engine.resume_thread_for_workspace("ws", "t-1") == "t-1"

        items = engine.state.items_by_thread["t-1"]
        assert [item.id for item in items] == ["u-1", "a-1", "cmd-1", "rv-1", "a-2"]
        assert items[1] == MessageItem(id="a-1", role="assistant", text="On it, looking now")
        tool = items[2]
        assert isinstance(tool, ToolItem)
        assert tool.output == "1 passed"
        assert tool.status == "completed"
        assert engine.thread_status_by_id["t-1"].is_reviewing is True
        assert engine.threads_by_workspace["ws"][0].name == "Fix the flaky test"

    asyncio.run(_run())


def test_resume_with_empty_history_keeps_local_items() -> None:
    async def _run() -> None:
        backend = RecordingBackend()
        backend.responses["resume_thread"] = {"result": {"thread": {"id": "t-1", "turns": []}}}
        engine = _engine(backend)
        engine.on_agent_message_delta("ws", "t-1", "a-1", "local only")
        before = engine.state.items_by_thread["t-1"]

        await engine.resume_thread_for_workspace("ws", "t-1")

        assert engine.state.items_by_thread["t-1"] == before
        assert engine.threads_by_workspace["ws"][0].name == "Agent 1"

    asyncio.run(_run())


def test_resume_failure_returns_none_and_allows_retry() -> None:
    async def _run() -> None:
        backend = RecordingBackend()
        backend.errors["resume_thread"] = CodexProtocolError("thread/resume failed: gone", code=-32000)
        entries: list[DebugEntry] = []
        engine = _engine(backend, entries=entries)

        assert await engine.resume_thread_for_workspace("ws", "t-1") is None
        assert entries[-1].label == "thread/resume error"

        del backend.errors["resume_thread"]
        backend.responses["resume_thread"] = {"thread": {"id": "t-1"}}
        assert await engine.resume_thread_for_workspace("ws", "t-1") == "t-1"
        assert backend.call_names() == ["resume_thread", "resume_thread"]

    asyncio.run(_run())


def test_list_threads_pages_filters_dedupes_and_sorts() -> None:
    async def _run() -> None:
        backend = RecordingBackend()
        backend.list_pages = [
            {
                "data": [
                    {"id": "a", "cwd": "/repo", "preview": "Older work", "createdAt": 10},
                    {"id": "x", "cwd": "/other", "preview": "Elsewhere", "createdAt": 99},
                ],
                "nextCursor": "c-1",
            },
            {
                "result": {
                    "data": [
                        {"id": "b", "cwd": "/repo", "preview": "", "created_at": 30},
                        {"id": "a", "cwd": "/repo", "preview": "Duplicate", "createdAt": 10},
                        {"id": "c", "cwd": "/repo", "preview": "z" * 60, "createdAt": "20"},
                    ],
                    "next_cursor": None,
                }
            },
        ]
        engine = _engine(backend)

        await engine.list_threads_for_workspace(WORKSPACE)

        assert [call[1] for call in backend.calls] == [("ws", None, 20), ("ws", "c-1", 20)]
        assert engine.threads_by_workspace["ws"] == (
            ThreadSummary(id="b", name="Agent 1"),
            ThreadSummary(id="c", name="z" * 38 + "…"),
            ThreadSummary(id="a", name="Older work"),
        )
        assert engine.thread_list_loading_by_workspace["ws"] is False

    asyncio.run(_run())


def test_list_threads_stops_at_target_count() -> None:
    async def _run() -> None:
        backend = RecordingBackend()
        backend.list_pages = [
            {"data": [{"id": f"t-{i}", "cwd": "/repo", "createdAt": i} for i in range(3)], "nextCursor": "more"},
        ]
        engine = _engine(backend, config=EngineConfig(thread_list_target_count=2, thread_list_page_size=3))

        await engine.list_threads_for_workspace(WORKSPACE)

        assert len(backend.calls) == 1
        assert [thread.id for thread in engine.threads_by_workspace["ws"]] == ["t-2", "t-1"]

    asyncio.run(_run())


def test_list_threads_failure_is_reported_and_clears_loading() -> None:
    async def _run() -> None:
        backend = RecordingBackend()
        backend.errors["list_threads"] = CodexTransportError("offline")
        entries: list[DebugEntry] = []
        engine = _engine(backend, entries=entries)

        await engine.list_threads_for_workspace(WORKSPACE)

        assert engine.thread_list_loading_by_workspace["ws"] is False
        assert "ws" not in engine.threads_by_workspace
        assert entries[-1].label == "thread/list error"

    asyncio.run(_run())


def test_send_user_message_starts_thread_and_records_turn() -> None:
    async def _run() -> None:
        backend = RecordingBackend()
        config = EngineConfig(model="gpt-5", effort="high", access_mode="full-access")
        engine = _engine(backend, config=config)

        await engine.send_user_message("  Refactor the parser  ")

        assert backend.call_names() == ["start_thread", "send_user_message"]
        _, args, kwargs = backend.calls[1]
        assert args == ("ws", "thread-new", "Refactor the parser")
        assert kwargs == {"model": "gpt-5", "effort": "high", "access_mode": "full-access"}

        (message,) = engine.active_items
        assert isinstance(message, MessageItem)
        assert message.role == "user"
        assert message.text == "Refactor the parser"
        assert message.id.startswith("1700000000000-user-")
        assert engine.threads_by_workspace["ws"][0].name == "Refactor the parser"
        assert engine.thread_status_by_id["thread-new"].is_processing is True
        assert engine.active_turn_id_by_thread["thread-new"] == "turn-1"
        assert engine.can_interrupt is True

    asyncio.run(_run())


def test_send_user_message_resumes_unloaded_thread_first() -> None:
    async def _run() -> None:
        backend = RecordingBackend()
        backend.responses["resume_thread"] = {"thread": {"id": "t-1"}}
        engine = _engine(backend)
        engine.on_agent_message_completed("ws", "t-1", "a-1", "earlier")
        assert engine.active_thread_id == "t-1"

        await engine.send_user_message("next")

        assert backend.call_names() == ["resume_thread", "send_user_message"]

    asyncio.run(_run())


def test_send_user_message_ignores_blank_text() -> None:
    async def _run() -> None:
        backend = RecordingBackend()
        engine = _engine(backend)
        await engine.send_user_message("   ")
        assert backend.calls == []

    asyncio.run(_run())


def test_send_failure_keeps_optimistic_message_and_raises() -> None:
    async def _run() -> None:
        backend = RecordingBackend()
        backend.errors["send_user_message"] = CodexTransportError("broken pipe")
        entries: list[DebugEntry] = []
        engine = _engine(backend, entries=entries)

        with pytest.raises(CodexTransportError):
            await engine.send_user_message("hello")

        assert [item.text for item in engine.active_items] == ["hello"]
        assert entries[-1].label == "turn/start error"
        assert "thread-new" not in engine.active_turn_id_by_thread

    asyncio.run(_run())


def test_interrupt_without_turn_is_a_noop() -> None:
    async def _run() -> None:
        backend = RecordingBackend()
        engine = _engine(backend)
        engine.on_agent_message_delta("ws", "t-1", "a-1", "working")
        await engine.interrupt_turn()
        assert backend.calls == []
        assert engine.thread_status_by_id["t-1"].is_processing is True

    asyncio.run(_run())


def test_interrupt_clears_turn_and_appends_stop_message() -> None:
    async def _run() -> None:
        backend = RecordingBackend()
        backend.errors["interrupt_turn"] = CodexTransportError("late")
        entries: list[DebugEntry] = []
        engine = _engine(backend, entries=entries)
        engine.on_turn_started("ws", "t-1", "turn-7")

        await engine.interrupt_turn()

        assert backend.calls[0][1] == ("ws", "t-1", "turn-7")
        assert engine.active_turn_id_by_thread["t-1"] is None
        assert engine.thread_status_by_id["t-1"].is_processing is False
        last = engine.active_items[-1]
        assert isinstance(last, MessageItem)
        assert last.text == "Session stopped."
        assert entries[-1].label == "turn/interrupt error"

    asyncio.run(_run())


def test_start_review_marks_flags_and_adds_review_item() -> None:
    async def _run() -> None:
        backend = RecordingBackend()
        engine = _engine(backend)
        await engine.start_thread()

        await engine.start_review("/review base main")

        name, args, _ = backend.calls[-1]
        assert name == "start_review"
        assert args == ("ws", "thread-new", BaseBranchTarget(branch="main"), "inline")
        status = engine.thread_status_by_id["thread-new"]
        assert status.is_reviewing is True
        assert status.is_processing is True
        assert engine.active_items[-1] == ReviewItem(
            id="review-start-thread-new-1700000000000",
            state="started",
            text="base branch main",
        )

    asyncio.run(_run())


def test_start_review_failure_rolls_back_flags() -> None:
    async def _run() -> None:
        backend = RecordingBackend()
        backend.errors["start_review"] = CodexProtocolError("review/start failed: nope")
        engine = _engine(backend)
        await engine.start_thread()

        with pytest.raises(CodexProtocolError):
            await engine.start_review("/review commit abc123 Fix bug")

        target = backend.calls[-1][1][2]
        assert target == CommitTarget(sha="abc123", title="Fix bug")
        status = engine.thread_status_by_id["thread-new"]
        assert status.is_reviewing is False
        assert status.is_processing is False
        assert engine.active_items[-1].text == "commit abc123: Fix bug"

    asyncio.run(_run())


def test_approval_decision_removes_request_after_response() -> None:
    async def _run() -> None:
        backend = RecordingBackend()
        engine = _engine(backend)
        request = ApprovalRequest(workspace_id="ws", request_id=5, method="x/requestApproval")
        engine.on_approval_request(request)

        await engine.handle_approval_decision(request, "accept")

        assert backend.calls == [("respond_to_server_request", ("ws", 5, {"decision": "accept"}), {})]
        assert engine.approvals == ()

    asyncio.run(_run())


def test_failed_approval_response_keeps_request() -> None:
    async def _run() -> None:
        backend = RecordingBackend()
        backend.errors["respond_to_server_request"] = CodexTransportError("closed")
        engine = _engine(backend)
        request = ApprovalRequest(workspace_id="ws", request_id=5)
        engine.on_approval_request(request)

        with pytest.raises(CodexTransportError):
            await engine.handle_approval_decision(request, "decline")
        assert engine.approvals == (request,)

    asyncio.run(_run())


@pytest.mark.parametrize(
    "response",
    [
        {"result": {"rateLimits": {"planType": "pro"}}},
        {"result": {"rate_limits": {"planType": "pro"}}},
        {"rateLimits": {"planType": "pro"}},
        {"rate_limits": {"plan_type": "pro"}},
    ],
)
def test_refresh_rate_limits_accepts_response_shapes(response: dict[str, Any]) -> None:
    async def _run() -> None:
        backend = RecordingBackend()
        backend.responses["account_rate_limits"] = response
        engine = _engine(backend)
        await engine.refresh_account_rate_limits()
        snapshot = engine.rate_limits_by_workspace["ws"]
        assert snapshot is not None
        assert snapshot.plan_type == "pro"

    asyncio.run(_run())


def test_refresh_rate_limits_failure_is_reported_only() -> None:
    async def _run() -> None:
        backend = RecordingBackend()
        backend.errors["account_rate_limits"] = CodexTransportError("nope")
        entries: list[DebugEntry] = []
        engine = _engine(backend, entries=entries)
        await engine.refresh_account_rate_limits("ws")
        assert "ws" not in engine.rate_limits_by_workspace
        assert entries[-1].source == "error"

    asyncio.run(_run())


def test_set_active_thread_forces_background_resume() -> None:
    async def _run() -> None:
        backend = RecordingBackend()
        backend.responses["resume_thread"] = {"thread": {"id": "t-2", "preview": "Second"}}
        engine = _engine(backend)
        engine.on_agent_message_delta("ws", "t-1", "a", "x")
        engine.on_agent_message_delta("ws", "t-2", "b", "y")
        engine.on_agent_message_completed("ws", "t-2", "b", "y")
        assert engine.thread_status_by_id["t-2"].has_unread is True

        engine.set_active_thread_id("t-2")
        assert engine.active_thread_id == "t-2"
        assert engine.thread_status_by_id["t-2"].has_unread is False
        await engine.wait_idle()

        assert backend.calls == [("resume_thread", ("ws", "t-2"), {})]
        names = {thread.id: thread.name for thread in engine.threads_by_workspace["ws"]}
        assert names["t-2"] == "Second"

    asyncio.run(_run())


def test_remove_thread_archives_in_background_and_notifies() -> None:
    async def _run() -> None:
        removed: list[tuple[str, str]] = []
        backend = RecordingBackend()
        backend.errors["archive_thread"] = CodexTransportError("offline")
        entries: list[DebugEntry] = []
        engine = _engine(
            backend,
            entries=entries,
            on_thread_removed=lambda ws, tid: removed.append((ws, tid)),
        )
        engine.on_agent_message_delta("ws", "t-1", "a", "x")

        engine.remove_thread("ws", "t-1")
        assert engine.threads_by_workspace["ws"] == ()
        assert engine.active_thread_id is None
        assert removed == [("ws", "t-1")]
        await engine.wait_idle()

        assert backend.call_names() == ["archive_thread"]
        assert entries[-1].label == "thread/archive error"

    asyncio.run(_run())


def test_handle_send_queues_while_processing_and_flushes_after_turn() -> None:
    async def _run() -> None:
        backend = RecordingBackend()
        engine = _engine(backend)
        await engine.send_user_message("first")
        assert engine.thread_status_by_id["thread-new"].is_processing is True

        await engine.handle_send("second")
        (queued,) = engine.queued_by_thread["thread-new"]
        assert queued.text == "second"
        assert backend.call_names() == ["start_thread", "send_user_message"]

        engine.on_turn_completed("ws", "thread-new", "turn-1")
        await engine.wait_idle()

        assert engine.queued_by_thread["thread-new"] == ()
        assert backend.call_names() == ["start_thread", "send_user_message", "send_user_message"]
        assert backend.calls[-1][1][2] == "second"

    asyncio.run(_run())


def test_handle_send_ignores_input_while_reviewing() -> None:
    async def _run() -> None:
        backend = RecordingBackend()
        engine = _engine(backend)
        engine.on_item_started("ws", "t-1", {"type": "enteredReviewMode", "id": "rv"})
        await engine.handle_send("hello")
        assert backend.calls == []
        assert "t-1" not in engine.queued_by_thread

    asyncio.run(_run())


def test_handle_send_routes_review_command() -> None:
    async def _run() -> None:
        backend = RecordingBackend()
        engine = _engine(backend)
        await engine.handle_send("/review")
        assert backend.call_names() == ["start_thread", "start_review"]

    asyncio.run(_run())


def test_flush_queue_requeues_on_failure() -> None:
    async def _run() -> None:
        backend = RecordingBackend()
        engine = _engine(backend)
        await engine.start_thread()
        message = QueuedMessage(id="q-1", text="retry me", created_at=1)
        engine.dispatch(EnqueueMessage("thread-new", message))
        backend.errors["send_user_message"] = CodexTransportError("down")

        assert await engine.flush_queue() is False
        assert engine.queued_by_thread["thread-new"] == (message,)

        del backend.errors["send_user_message"]
        engine.on_turn_completed("ws", "thread-new", "")
        await engine.wait_idle()
        assert engine.queued_by_thread["thread-new"] == ()

    asyncio.run(_run())


def test_flush_queue_skips_busy_threads() -> None:
    async def _run() -> None:
        backend = RecordingBackend()
        engine = _engine(backend)
        engine.on_turn_started("ws", "t-1", "turn-1")
        engine.dispatch(EnqueueMessage("t-1", QueuedMessage(id="q", text="later", created_at=1)))
        assert await engine.flush_queue("t-1") is False
        assert backend.calls == []

    asyncio.run(_run())


def test_remove_queued_message() -> None:
    backend = RecordingBackend()
    engine = _engine(backend)
    engine.dispatch(EnqueueMessage("t", QueuedMessage(id="q", text="x", created_at=1)))
    engine.remove_queued_message("t", "q")
    assert engine.queued_by_thread["t"] == ()


def test_latest_agent_runs_are_newest_first_across_workspaces() -> None:
    times = iter([10, 40, 20, 30])
    backend = RecordingBackend()
    engine = ThreadEngine(backend, clock=lambda: next(times))
    engine.on_agent_message_completed("ws", "t-1", "a", "one")
    engine.on_agent_message_completed("ws", "t-2", "b", "two")
    engine.on_agent_message_completed("other", "t-3", "c", "three")
    engine.on_agent_message_completed("other", "t-4", "d", "four")

    runs = engine.latest_agent_runs(
        [WORKSPACE, WorkspaceInfo(id="other", path="/other", name="other")]
    )
    assert [(run.thread_id, run.project_name, run.message) for run in runs] == [
        ("t-2", "repo", "two"),
        ("t-4", "other", "four"),
        ("t-3", "other", "three"),
    ]


def test_aclose_cancels_background_tasks() -> None:
    async def _run() -> None:
        started = asyncio.Event()

        class SlowBackend(RecordingBackend):
            async def resume_thread(self, workspace_id: str, thread_id: str) -> Any:
                started.set()
                await asyncio.sleep(10)

        engine = _engine(SlowBackend())
        engine.set_active_thread_id("t-1")
        await started.wait()
        await engine.aclose()
        await engine.wait_idle()

    asyncio.run(asyncio.wait_for(_run(), timeout=5))


def test_turn_completed_before_send_response_leaves_no_stale_turn() -> None:
    async def _run() -> None:
        release = asyncio.Event()
        sent = asyncio.Event()

        class HeldSendBackend(RecordingBackend):
            async def send_user_message(self, *args: Any, **kwargs: Any) -> Any:
                sent.set()
                await release.wait()
                return {"turn": {"id": "turn-1"}}

        engine = _engine(HeldSendBackend())
        await engine.start_thread()
        send = asyncio.create_task(engine.send_user_message("quick question"))
        await sent.wait()

        engine.on_turn_started("ws", "thread-new", "turn-1")
        engine.on_turn_completed("ws", "thread-new", "turn-1")
        release.set()
        await send

        assert engine.thread_status_by_id["thread-new"].is_processing is False
        assert engine.active_turn_id_by_thread["thread-new"] is None
        assert engine.can_interrupt is False

    asyncio.run(_run())


def test_send_response_records_turn_while_still_processing() -> None:
    async def _run() -> None:
        backend = RecordingBackend()
        engine = _engine(backend)
        await engine.start_thread()
        engine.on_turn_started("ws", "thread-new", "turn-1")

        await engine.send_user_message("follow up")

        assert engine.active_turn_id_by_thread["thread-new"] == "turn-1"
        assert engine.can_interrupt is True

    asyncio.run(_run())
