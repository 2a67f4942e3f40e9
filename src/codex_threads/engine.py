from __future__ import annotations

import asyncio
import inspect
import logging
import re
import time
import uuid
from collections.abc import Mapping, Sequence
from typing import Any, Awaitable, Callable, Coroutine

from .backend import ThreadBackend
from .config import EngineConfig
from .merge import merge_thread_items
from .models import (
    AgentRun,
    ApprovalDecision,
    ApprovalRequest,
    ConversationItem,
    DebugEntry,
    DebugSource,
    LastAgentMessage,
    QueuedMessage,
    RateLimitSnapshot,
    ReviewItem,
    ThreadStatus,
    ThreadSummary,
    ThreadTokenUsage,
    TurnPlan,
    WorkspaceInfo,
)
from .normalize import (
    as_string,
    build_conversation_item,
    build_items_from_thread,
    extract_thread,
    extract_turn_id,
    is_reviewing_from_thread,
    normalize_rate_limits,
    normalize_token_usage,
    normalize_turn_plan,
    pick,
    preview_thread_name,
    unwrap_result,
)
from .protocol import STDERR_METHOD
from .review import format_review_label, is_review_command, parse_review_target
from .store import (
    AddApproval,
    AddAssistantMessage,
    AddUserMessage,
    AppendAgentDelta,
    AppendReasoningContent,
    AppendReasoningSummary,
    AppendToolOutput,
    ClearActiveTurn,
    CompleteAgentMessage,
    DequeueMessage,
    EnqueueMessage,
    EnsureThread,
    MarkProcessing,
    MarkReviewing,
    MarkUnread,
    RemoveApproval,
    RemoveThread,
    RequeueMessage,
    SetActiveThreadId,
    SetActiveTurnId,
    SetRateLimits,
    SetThreadItems,
    SetThreadListLoading,
    SetThreadName,
    SetThreadTokenUsage,
    SetThreads,
    SetTurnPlan,
    ThreadState,
    UpsertItem,
    reduce_thread_state,
)

logger = logging.getLogger(__name__)

SESSION_STOPPED_TEXT = "Session stopped."
REVIEW_DELIVERY = "inline"

_SLUG_PATTERN = re.compile(r"[^a-z0-9]+")

_REVIEW_MODE_ITEM_TYPES = ("enteredReviewMode", "exitedReviewMode")


def _now_ms() -> int:
    return int(time.time() * 1000)


def _error_text(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


class ThreadEngine:
    """Owns the thread store and turns events and commands into store actions.

    Event callbacks (`on_*`) are synchronous and safe for threads the engine
    has never seen. Command operations are coroutines that issue requests
    through a `ThreadBackend`; `dispatch()` is the only writer of state.
    """

    def __init__(
        self,
        backend: ThreadBackend,
        *,
        config: EngineConfig | None = None,
        active_workspace: WorkspaceInfo | None = None,
        on_debug: Callable[[DebugEntry], None] | None = None,
        on_workspace_connected: Callable[[str], None] | None = None,
        on_message_activity: Callable[[], Awaitable[None] | None] | None = None,
        on_thread_removed: Callable[[str, str], None] | None = None,
        on_state_changed: Callable[[ThreadState], None] | None = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        """Create an engine bound to a backend.

        Args:
            backend: Request surface used by command operations.
            config: Turn defaults and list limits. Defaults to `EngineConfig()`.
            active_workspace: Workspace initially shown to the user.
            on_debug: Receives a `DebugEntry` for every request, response,
                error and raw app-server event.
            on_workspace_connected: Called with the workspace id once its
                session is up.
            on_message_activity: Called whenever thread content changes; may
                return an awaitable, which is run in the background.
            on_thread_removed: Called with `(workspace_id, thread_id)` after a
                thread is removed locally, so collaborators can drop caches.
            on_state_changed: Called with the new snapshot after each change.
            clock: Millisecond clock used for timestamps and synthesized ids.
        """
        self._backend = backend
        self._config = config if config is not None else EngineConfig()
        self._active_workspace = active_workspace
        self._on_debug = on_debug
        self._on_workspace_connected = on_workspace_connected
        self._on_message_activity = on_message_activity
        self._on_thread_removed = on_thread_removed
        self._on_state_changed = on_state_changed
        self._clock = clock

        self._state = ThreadState()
        self._loaded_threads: set[str] = set()
        self._flushing_threads: set[str] = set()
        self._background_tasks: set[asyncio.Task[Any]] = set()

    # -- store -------------------------------------------------------------

    @property
    def state(self) -> ThreadState:
        """Current immutable snapshot."""
        return self._state

    @property
    def config(self) -> EngineConfig:
        return self._config

    def dispatch(self, action: object) -> ThreadState:
        """Apply one store action and return the resulting snapshot."""
        next_state = reduce_thread_state(self._state, action)
        if next_state is not self._state:
            self._state = next_state
            if self._on_state_changed is not None:
                self._on_state_changed(next_state)
        return self._state

    # -- projections -------------------------------------------------------

    @property
    def active_workspace(self) -> WorkspaceInfo | None:
        return self._active_workspace

    @property
    def active_workspace_id(self) -> str | None:
        if self._active_workspace is None:
            return None
        return self._active_workspace.id

    @property
    def active_thread_id(self) -> str | None:
        workspace_id = self.active_workspace_id
        if workspace_id is None:
            return None
        return self._state.active_thread_id_by_workspace.get(workspace_id)

    @property
    def active_items(self) -> tuple[ConversationItem, ...]:
        thread_id = self.active_thread_id
        if thread_id is None:
            return ()
        return self._state.items_by_thread.get(thread_id, ())

    @property
    def threads_by_workspace(self) -> Mapping[str, tuple[ThreadSummary, ...]]:
        return self._state.threads_by_workspace

    @property
    def thread_status_by_id(self) -> Mapping[str, ThreadStatus]:
        return self._state.thread_status_by_id

    @property
    def thread_list_loading_by_workspace(self) -> Mapping[str, bool]:
        return self._state.thread_list_loading_by_workspace

    @property
    def active_turn_id_by_thread(self) -> Mapping[str, str | None]:
        return self._state.active_turn_id_by_thread

    @property
    def approvals(self) -> tuple[ApprovalRequest, ...]:
        return self._state.approvals

    @property
    def token_usage_by_thread(self) -> Mapping[str, ThreadTokenUsage]:
        return self._state.token_usage_by_thread

    @property
    def rate_limits_by_workspace(self) -> Mapping[str, RateLimitSnapshot | None]:
        return self._state.rate_limits_by_workspace

    @property
    def plan_by_thread(self) -> Mapping[str, TurnPlan]:
        return self._state.plan_by_thread

    @property
    def last_agent_message_by_thread(self) -> Mapping[str, LastAgentMessage]:
        return self._state.last_agent_message_by_thread

    @property
    def queued_by_thread(self) -> Mapping[str, tuple[QueuedMessage, ...]]:
        return self._state.queued_by_thread

    @property
    def can_interrupt(self) -> bool:
        """True when the active thread is processing a turn with a known id."""
        thread_id = self.active_thread_id
        if thread_id is None:
            return False
        status = self._state.thread_status_by_id.get(thread_id)
        turn_id = self._state.active_turn_id_by_thread.get(thread_id)
        return bool(status is not None and status.is_processing and turn_id)

    def latest_agent_runs(self, workspaces: Sequence[WorkspaceInfo]) -> list[AgentRun]:
        """Most recent completed agent messages across workspaces, newest first."""
        runs: list[AgentRun] = []
        for workspace in workspaces:
            for thread in self._state.threads_by_workspace.get(workspace.id, ()):
                entry = self._state.last_agent_message_by_thread.get(thread.id)
                if entry is None:
                    continue
                status = self._state.thread_status_by_id.get(thread.id)
                runs.append(
                    AgentRun(
                        thread_id=thread.id,
                        workspace_id=workspace.id,
                        project_name=workspace.name,
                        message=entry.text,
                        timestamp=entry.timestamp,
                        is_processing=status.is_processing if status is not None else False,
                    )
                )
        runs.sort(key=lambda run: run.timestamp, reverse=True)
        return runs[: self._config.latest_runs_limit]

    def set_active_workspace(self, workspace: WorkspaceInfo | None) -> None:
        """Switch the workspace commands without explicit ids target.

        A connected workspace gets its rate limits refreshed in the background.
        """
        self._active_workspace = workspace
        if workspace is not None and workspace.connected:
            self._spawn_background_task(self.refresh_account_rate_limits(workspace.id))

    # -- event ingestion ---------------------------------------------------

    def on_workspace_connected(self, workspace_id: str) -> None:
        if self._on_workspace_connected is not None:
            self._on_workspace_connected(workspace_id)
        self._spawn_background_task(self.refresh_account_rate_limits(workspace_id))

    def on_approval_request(self, approval: ApprovalRequest) -> None:
        self.dispatch(AddApproval(approval))

    def on_app_server_event(self, workspace_id: str, message: Mapping[str, Any]) -> None:
        method = as_string(message.get("method"))
        source: DebugSource = "stderr" if method == STDERR_METHOD else "event"
        self._debug(
            source,
            method or "event",
            {"workspaceId": workspace_id, "message": dict(message)},
        )

    def on_agent_message_delta(
        self,
        workspace_id: str,
        thread_id: str,
        item_id: str,
        delta: str,
    ) -> None:
        self.dispatch(EnsureThread(workspace_id, thread_id))
        self.dispatch(MarkProcessing(thread_id, True))
        self.dispatch(AppendAgentDelta(thread_id, item_id, delta))

    def on_agent_message_completed(
        self,
        workspace_id: str,
        thread_id: str,
        item_id: str,
        text: str,
    ) -> None:
        self.dispatch(EnsureThread(workspace_id, thread_id))
        self.dispatch(CompleteAgentMessage(thread_id, item_id, text, self._clock()))
        self.dispatch(MarkProcessing(thread_id, False))
        self._notify_message_activity()
        self._mark_unread_if_inactive(thread_id)
        self._schedule_flush(thread_id)

    def on_item_started(
        self,
        workspace_id: str,
        thread_id: str,
        item: Mapping[str, Any],
    ) -> None:
        self.dispatch(EnsureThread(workspace_id, thread_id))
        self.dispatch(MarkProcessing(thread_id, True))
        self._apply_item(thread_id, item)

    def on_item_completed(
        self,
        workspace_id: str,
        thread_id: str,
        item: Mapping[str, Any],
    ) -> None:
        self.dispatch(EnsureThread(workspace_id, thread_id))
        self._apply_item(thread_id, item)

    def on_reasoning_summary_delta(
        self,
        workspace_id: str,
        thread_id: str,
        item_id: str,
        delta: str,
    ) -> None:
        self.dispatch(EnsureThread(workspace_id, thread_id))
        self.dispatch(MarkProcessing(thread_id, True))
        self.dispatch(AppendReasoningSummary(thread_id, item_id, delta))

    def on_reasoning_text_delta(
        self,
        workspace_id: str,
        thread_id: str,
        item_id: str,
        delta: str,
    ) -> None:
        self.dispatch(EnsureThread(workspace_id, thread_id))
        self.dispatch(MarkProcessing(thread_id, True))
        self.dispatch(AppendReasoningContent(thread_id, item_id, delta))

    def on_command_output_delta(
        self,
        workspace_id: str,
        thread_id: str,
        item_id: str,
        delta: str,
    ) -> None:
        self._append_tool_output(workspace_id, thread_id, item_id, delta)

    def on_file_change_output_delta(
        self,
        workspace_id: str,
        thread_id: str,
        item_id: str,
        delta: str,
    ) -> None:
        self._append_tool_output(workspace_id, thread_id, item_id, delta)

    def on_turn_started(self, workspace_id: str, thread_id: str, turn_id: str) -> None:
        self.dispatch(EnsureThread(workspace_id, thread_id))
        self.dispatch(MarkProcessing(thread_id, True))
        if turn_id:
            self.dispatch(SetActiveTurnId(thread_id, turn_id))

    def on_turn_completed(self, workspace_id: str, thread_id: str, turn_id: str) -> None:
        self.dispatch(ClearActiveTurn(thread_id))
        self._mark_unread_if_inactive(thread_id)
        self._schedule_flush(thread_id)

    def on_turn_plan_updated(
        self,
        workspace_id: str,
        thread_id: str,
        payload: Mapping[str, Any],
    ) -> None:
        self.dispatch(EnsureThread(workspace_id, thread_id))
        self.dispatch(SetTurnPlan(thread_id, normalize_turn_plan(payload)))

    def on_thread_token_usage_updated(
        self,
        workspace_id: str,
        thread_id: str,
        token_usage: Mapping[str, Any],
    ) -> None:
        self.dispatch(EnsureThread(workspace_id, thread_id))
        self.dispatch(SetThreadTokenUsage(thread_id, normalize_token_usage(token_usage)))

    def on_account_rate_limits_updated(
        self,
        workspace_id: str,
        rate_limits: Mapping[str, Any],
    ) -> None:
        self.dispatch(SetRateLimits(workspace_id, normalize_rate_limits(rate_limits)))

    def _apply_item(self, thread_id: str, item: Mapping[str, Any]) -> None:
        item_type = as_string(item.get("type"))
        if item_type == "enteredReviewMode":
            self.dispatch(MarkReviewing(thread_id, True))
        elif item_type == "exitedReviewMode":
            self.dispatch(MarkReviewing(thread_id, False))
            self.dispatch(MarkProcessing(thread_id, False))
        converted = build_conversation_item(item)
        if converted is not None:
            self.dispatch(UpsertItem(thread_id, converted))
        self._notify_message_activity()

    def _append_tool_output(
        self,
        workspace_id: str,
        thread_id: str,
        item_id: str,
        delta: str,
    ) -> None:
        self.dispatch(EnsureThread(workspace_id, thread_id))
        self.dispatch(MarkProcessing(thread_id, True))
        self.dispatch(AppendToolOutput(thread_id, item_id, delta))
        self._notify_message_activity()

    def _mark_unread_if_inactive(self, thread_id: str) -> None:
        if thread_id != self.active_thread_id:
            self.dispatch(MarkUnread(thread_id, True))

    # -- command operations ------------------------------------------------

    async def start_thread_for_workspace(self, workspace_id: str) -> str | None:
        """Create a thread, make it active and mark it loaded.

        Returns:
            The new thread id, or None when the response carried no thread.

        Raises:
            Exception: Whatever the backend raised, after a debug entry.
        """
        self._debug("client", "thread/start", {"workspaceId": workspace_id})
        try:
            response = await self._backend.start_thread(workspace_id)
        except Exception as exc:
            self._report_error("thread/start error", exc)
            raise
        self._debug("server", "thread/start response", response)

        thread = extract_thread(response)
        thread_id = as_string(thread.get("id")) if thread is not None else ""
        if not thread_id:
            return None
        self.dispatch(EnsureThread(workspace_id, thread_id))
        self.dispatch(SetActiveThreadId(workspace_id, thread_id))
        self._loaded_threads.add(thread_id)
        return thread_id

    async def start_thread(self) -> str | None:
        """Create a thread in the active workspace."""
        workspace_id = self.active_workspace_id
        if workspace_id is None:
            return None
        return await self.start_thread_for_workspace(workspace_id)

    async def resume_thread_for_workspace(
        self,
        workspace_id: str,
        thread_id: str,
        force: bool = False,
    ) -> str | None:
        """Load a thread's history and reconcile it with local items.

        Already loaded threads are skipped unless `force` is set. Failures are
        reported and yield None.
        """
        if not thread_id:
            return None
        if not force and thread_id in self._loaded_threads:
            return thread_id

        self._debug(
            "client",
            "thread/resume",
            {"workspaceId": workspace_id, "threadId": thread_id},
        )
        try:
            response = await self._backend.resume_thread(workspace_id, thread_id)
        except Exception as exc:
            self._report_error("thread/resume error", exc)
            return None
        self._debug("server", "thread/resume response", response)

        thread = extract_thread(response)
        if thread is not None:
            remote_items = build_items_from_thread(thread)
            local_items = self._state.items_by_thread.get(thread_id, ())
            if remote_items:
                merged = tuple(merge_thread_items(remote_items, local_items))
            else:
                merged = local_items
            if merged:
                self.dispatch(SetThreadItems(thread_id, merged))
            self.dispatch(MarkReviewing(thread_id, is_reviewing_from_thread(thread)))
            preview = as_string(thread.get("preview"))
            if preview:
                self.dispatch(
                    SetThreadName(
                        workspace_id,
                        thread_id,
                        preview_thread_name(
                            preview,
                            f"Agent {thread_id[:4]}",
                            max_chars=self._config.thread_name_max_chars,
                        ),
                    )
                )
        self._loaded_threads.add(thread_id)
        return thread_id

    async def list_threads_for_workspace(self, workspace: WorkspaceInfo) -> None:
        """Page through stored threads and publish those whose cwd matches.

        Paging stops once enough matches are collected or the cursor runs out.
        Failures are reported and leave the previous list in place.
        """
        config = self._config
        self._debug(
            "client",
            "thread/list",
            {"workspaceId": workspace.id, "path": workspace.path},
        )
        self.dispatch(SetThreadListLoading(workspace.id, True))
        try:
            matching: list[Mapping[str, Any]] = []
            cursor: str | None = None
            while True:
                response = await self._backend.list_threads(
                    workspace.id,
                    cursor,
                    config.thread_list_page_size,
                )
                self._debug("server", "thread/list response", response)
                result = unwrap_result(response)
                data = result.get("data")
                for entry in data if isinstance(data, list) else []:
                    if not isinstance(entry, Mapping):
                        continue
                    if as_string(entry.get("cwd")) == workspace.path:
                        matching.append(entry)
                cursor = as_string(pick(result, "nextCursor", "next_cursor")) or None
                if cursor is None or len(matching) >= config.thread_list_target_count:
                    break
        except Exception as exc:
            self._report_error("thread/list error", exc)
            return
        finally:
            self.dispatch(SetThreadListLoading(workspace.id, False))

        unique: dict[str, Mapping[str, Any]] = {}
        for entry in matching:
            thread_id = as_string(entry.get("id"))
            if thread_id:
                unique.setdefault(thread_id, entry)
        ordered = sorted(unique.values(), key=_created_at, reverse=True)

        summaries = tuple(
            ThreadSummary(
                id=as_string(entry.get("id")),
                name=preview_thread_name(
                    as_string(entry.get("preview")),
                    f"Agent {index + 1}",
                    max_chars=config.thread_name_max_chars,
                ),
            )
            for index, entry in enumerate(ordered[: config.thread_list_target_count])
        )
        self.dispatch(SetThreads(workspace.id, summaries))

    async def send_user_message(self, text: str) -> None:
        """Send text as a new turn on the active thread.

        A thread is started when none is active and resumed when it was never
        loaded. The optimistic user message stays in place if the request
        fails; the error is re-raised.
        """
        message_text = text.strip()
        workspace_id = self.active_workspace_id
        if workspace_id is None or not message_text:
            return
        thread_id = await self._prepare_active_thread(workspace_id)
        if thread_id is None:
            return
        await self._send_to_thread(workspace_id, thread_id, message_text)

    async def start_review(self, text: str) -> None:
        """Start a `/review` on the active thread.

        The reviewing and processing flags are set optimistically and rolled
        back if the request fails; the error is re-raised.
        """
        workspace_id = self.active_workspace_id
        if workspace_id is None or not text.strip():
            return
        thread_id = await self._prepare_active_thread(workspace_id)
        if thread_id is None:
            return
        await self._review_on_thread(workspace_id, thread_id, text)

    async def interrupt_turn(self) -> None:
        """Stop the active thread's turn.

        The turn is cleared locally before the request goes out; request
        failures are reported only.
        """
        workspace_id = self.active_workspace_id
        thread_id = self.active_thread_id
        if workspace_id is None or thread_id is None:
            return
        turn_id = self._state.active_turn_id_by_thread.get(thread_id)
        if not turn_id:
            logger.debug("no active turn to interrupt for thread %s", thread_id)
            return

        self.dispatch(ClearActiveTurn(thread_id))
        self.dispatch(
            AddAssistantMessage(thread_id, self._new_item_id("assistant"), SESSION_STOPPED_TEXT)
        )
        self._debug(
            "client",
            "turn/interrupt",
            {"workspaceId": workspace_id, "threadId": thread_id, "turnId": turn_id},
        )
        try:
            response = await self._backend.interrupt_turn(workspace_id, thread_id, turn_id)
        except Exception as exc:
            self._report_error("turn/interrupt error", exc)
            return
        self._debug("server", "turn/interrupt response", response)

    async def handle_approval_decision(
        self,
        request: ApprovalRequest,
        decision: ApprovalDecision,
    ) -> None:
        """Answer an approval request; it leaves the queue only on success."""
        await self._backend.respond_to_server_request(
            request.workspace_id,
            request.request_id,
            {"decision": decision},
        )
        self.dispatch(RemoveApproval(request.workspace_id, request.request_id))

    async def refresh_account_rate_limits(self, workspace_id: str | None = None) -> None:
        """Read the account rate limits of a workspace (active by default)."""
        target_id = workspace_id if workspace_id is not None else self.active_workspace_id
        if target_id is None:
            return
        self._debug("client", "account/rateLimits/read", {"workspaceId": target_id})
        try:
            response = await self._backend.account_rate_limits(target_id)
        except Exception as exc:
            self._report_error("account/rateLimits/read error", exc)
            return
        self._debug("server", "account/rateLimits/read response", response)

        rate_limits = _extract_rate_limits(response)
        if rate_limits is not None:
            self.dispatch(SetRateLimits(target_id, normalize_rate_limits(rate_limits)))

    def set_active_thread_id(
        self,
        thread_id: str | None,
        workspace_id: str | None = None,
    ) -> None:
        """Activate a thread and refresh its history in the background."""
        target_id = workspace_id if workspace_id is not None else self.active_workspace_id
        if target_id is None:
            return
        self.dispatch(SetActiveThreadId(target_id, thread_id))
        if thread_id:
            self._spawn_background_task(
                self.resume_thread_for_workspace(target_id, thread_id, force=True)
            )

    def remove_thread(self, workspace_id: str, thread_id: str) -> None:
        """Drop a thread locally, then archive it on the backend in the background."""
        self.dispatch(RemoveThread(workspace_id, thread_id))
        self._loaded_threads.discard(thread_id)
        self._flushing_threads.discard(thread_id)
        if self._on_thread_removed is not None:
            self._on_thread_removed(workspace_id, thread_id)
        self._spawn_background_task(self._archive_thread(workspace_id, thread_id))

    async def handle_send(self, text: str) -> None:
        """Route composer input: queue while busy, review on `/review`, else send."""
        trimmed = text.strip()
        if not trimmed:
            return
        thread_id = self.active_thread_id
        status = self._state.thread_status_by_id.get(thread_id) if thread_id else None
        if status is not None and status.is_reviewing:
            logger.debug("ignoring input while thread %s is reviewing", thread_id)
            return
        if thread_id is not None and status is not None and status.is_processing:
            now = self._clock()
            self.dispatch(
                EnqueueMessage(
                    thread_id,
                    QueuedMessage(
                        id=f"{now}-{uuid.uuid4().hex[:6]}",
                        text=trimmed,
                        created_at=now,
                    ),
                )
            )
            return
        if is_review_command(trimmed):
            await self.start_review(trimmed)
            return
        await self.send_user_message(trimmed)

    async def flush_queue(self, thread_id: str | None = None) -> bool:
        """Send the oldest queued message of an idle thread.

        The message is taken off the queue before sending and pushed back to
        the head if sending fails.

        Returns:
            True when a queued message was sent.
        """
        target_id = thread_id if thread_id is not None else self.active_thread_id
        if target_id is None or target_id in self._flushing_threads:
            return False
        status = self._state.thread_status_by_id.get(target_id)
        if status is not None and (status.is_processing or status.is_reviewing):
            return False
        queue = self._state.queued_by_thread.get(target_id, ())
        if not queue:
            return False
        workspace_id = self._workspace_for_thread(target_id)
        if workspace_id is None:
            return False

        message = queue[0]
        self._flushing_threads.add(target_id)
        self.dispatch(DequeueMessage(target_id, message.id))
        try:
            if is_review_command(message.text):
                await self._review_on_thread(workspace_id, target_id, message.text)
            else:
                await self._send_to_thread(workspace_id, target_id, message.text.strip())
        except Exception as exc:
            logger.warning(
                "failed sending queued message %s on thread %s: %s",
                message.id,
                target_id,
                _error_text(exc),
            )
            self.dispatch(RequeueMessage(target_id, message))
            return False
        finally:
            self._flushing_threads.discard(target_id)
        return True

    def remove_queued_message(self, thread_id: str, message_id: str) -> None:
        self.dispatch(DequeueMessage(thread_id, message_id))

    async def wait_idle(self) -> None:
        """Wait until every background task spawned so far has finished."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel background work started by the engine."""
        for task in list(self._background_tasks):
            task.cancel()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._background_tasks.clear()

    # -- helpers -----------------------------------------------------------

    async def _prepare_active_thread(self, workspace_id: str) -> str | None:
        thread_id = self.active_thread_id
        if thread_id is None:
            return await self.start_thread_for_workspace(workspace_id)
        if thread_id not in self._loaded_threads:
            await self.resume_thread_for_workspace(workspace_id, thread_id)
        return thread_id

    async def _send_to_thread(self, workspace_id: str, thread_id: str, text: str) -> None:
        config = self._config
        self.dispatch(AddUserMessage(thread_id, self._new_item_id("user"), text))
        self.dispatch(
            SetThreadName(
                workspace_id,
                thread_id,
                preview_thread_name(
                    text,
                    f"Agent {thread_id[:4]}",
                    max_chars=config.thread_name_max_chars,
                ),
            )
        )
        self.dispatch(MarkProcessing(thread_id, True))
        self._notify_message_activity()
        self._debug(
            "client",
            "turn/start",
            {
                "workspaceId": workspace_id,
                "threadId": thread_id,
                "text": text,
                "model": config.model,
                "effort": config.effort,
            },
        )
        try:
            response = await self._backend.send_user_message(
                workspace_id,
                thread_id,
                text,
                model=config.model,
                effort=config.effort,
                access_mode=config.access_mode,
            )
        except Exception as exc:
            self._report_error("turn/start error", exc)
            raise
        self._debug("server", "turn/start response", response)

        # turn/completed may have landed before this response.
        turn_id = extract_turn_id(response)
        status = self._state.thread_status_by_id.get(thread_id)
        if turn_id and status is not None and status.is_processing:
            self.dispatch(SetActiveTurnId(thread_id, turn_id))

    async def _review_on_thread(self, workspace_id: str, thread_id: str, text: str) -> None:
        target = parse_review_target(text)
        self.dispatch(MarkProcessing(thread_id, True))
        self.dispatch(MarkReviewing(thread_id, True))
        self.dispatch(
            UpsertItem(
                thread_id,
                ReviewItem(
                    id=f"review-start-{thread_id}-{self._clock()}",
                    state="started",
                    text=format_review_label(
                        target,
                        max_chars=self._config.review_label_max_chars,
                    ),
                ),
            )
        )
        self._notify_message_activity()
        self._debug(
            "client",
            "review/start",
            {
                "workspaceId": workspace_id,
                "threadId": thread_id,
                "target": target.model_dump(exclude_none=True),
            },
        )
        try:
            response = await self._backend.start_review(
                workspace_id,
                thread_id,
                target,
                REVIEW_DELIVERY,
            )
        except Exception as exc:
            self.dispatch(MarkProcessing(thread_id, False))
            self.dispatch(MarkReviewing(thread_id, False))
            self._report_error("review/start error", exc)
            raise
        self._debug("server", "review/start response", response)

    async def _archive_thread(self, workspace_id: str, thread_id: str) -> None:
        try:
            await self._backend.archive_thread(workspace_id, thread_id)
        except Exception as exc:
            self._report_error("thread/archive error", exc)

    def _workspace_for_thread(self, thread_id: str) -> str | None:
        for workspace_id, threads in self._state.threads_by_workspace.items():
            if any(thread.id == thread_id for thread in threads):
                return workspace_id
        return None

    def _schedule_flush(self, thread_id: str) -> None:
        if self._state.queued_by_thread.get(thread_id):
            self._spawn_background_task(self.flush_queue(thread_id))

    def _new_item_id(self, role: str) -> str:
        return f"{self._clock()}-{role}-{uuid.uuid4().hex[:6]}"

    def _notify_message_activity(self) -> None:
        hook = self._on_message_activity
        if hook is None:
            return
        try:
            result = hook()
        except Exception:
            logger.warning("message activity hook failed", exc_info=True)
            return
        if inspect.isawaitable(result):
            self._spawn_background_task(_await_hook(result))

    def _debug(self, source: DebugSource, label: str, payload: Any) -> None:
        if self._on_debug is None:
            return
        timestamp = self._clock()
        slug = _SLUG_PATTERN.sub("-", label.lower()).strip("-")
        self._on_debug(
            DebugEntry(
                id=f"{timestamp}-{source}-{slug}",
                timestamp=timestamp,
                source=source,
                label=label,
                payload=payload,
            )
        )

    def _report_error(self, label: str, exc: BaseException) -> None:
        logger.warning("%s: %s", label, _error_text(exc))
        self._debug("error", label, _error_text(exc))

    def _spawn_background_task(self, coro: Coroutine[Any, Any, Any]) -> None:
        task: asyncio.Task[Any] = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)


async def _await_hook(awaitable: Awaitable[Any]) -> None:
    try:
        await awaitable
    except Exception:
        logger.warning("message activity hook failed", exc_info=True)


def _created_at(entry: Mapping[str, Any]) -> float:
    value = pick(entry, "createdAt", "created_at")
    try:
        return float(value) if value is not None else 0.0
    except (TypeError, ValueError):
        return 0.0


def _extract_rate_limits(response: Any) -> Mapping[str, Any] | None:
    if not isinstance(response, Mapping):
        return None
    result = response.get("result")
    sources = (result, response) if isinstance(result, Mapping) else (response,)
    for source in sources:
        rate_limits = pick(source, "rateLimits", "rate_limits")
        if isinstance(rate_limits, Mapping):
            return rate_limits
    return None
