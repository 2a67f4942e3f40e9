"""Thread state store: an immutable snapshot plus a pure transition function.

`reduce_thread_state(state, action)` never raises and never mutates its input.
Actions it does not know, and actions that change nothing, return the very same
state object so callers can detect changes with `is`.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, TypeVar

from .models import (
    ApprovalRequest,
    ConversationItem,
    LastAgentMessage,
    MessageItem,
    QueuedMessage,
    RateLimitSnapshot,
    ReasoningItem,
    RequestId,
    ThreadStatus,
    ThreadSummary,
    ThreadTokenUsage,
    ToolItem,
    TurnPlan,
)

_K = TypeVar("_K")
_V = TypeVar("_V")


def _empty() -> Mapping[Any, Any]:
    return MappingProxyType({})


@dataclass(frozen=True, slots=True)
class ThreadState:
    """Snapshot of every workspace's threads.

    Mappings are read-only proxies and tuples are never mutated after
    construction; each transition builds new containers for the slices it
    touches.
    """

    active_thread_id_by_workspace: Mapping[str, str | None] = field(default_factory=_empty)
    items_by_thread: Mapping[str, tuple[ConversationItem, ...]] = field(default_factory=_empty)
    threads_by_workspace: Mapping[str, tuple[ThreadSummary, ...]] = field(default_factory=_empty)
    thread_status_by_id: Mapping[str, ThreadStatus] = field(default_factory=_empty)
    active_turn_id_by_thread: Mapping[str, str | None] = field(default_factory=_empty)
    approvals: tuple[ApprovalRequest, ...] = ()
    token_usage_by_thread: Mapping[str, ThreadTokenUsage] = field(default_factory=_empty)
    rate_limits_by_workspace: Mapping[str, RateLimitSnapshot | None] = field(
        default_factory=_empty
    )
    thread_list_loading_by_workspace: Mapping[str, bool] = field(default_factory=_empty)
    plan_by_thread: Mapping[str, TurnPlan] = field(default_factory=_empty)
    last_agent_message_by_thread: Mapping[str, LastAgentMessage] = field(default_factory=_empty)
    queued_by_thread: Mapping[str, tuple[QueuedMessage, ...]] = field(default_factory=_empty)


@dataclass(frozen=True, slots=True)
class SetActiveThreadId:
    workspace_id: str
    thread_id: str | None


@dataclass(frozen=True, slots=True)
class EnsureThread:
    workspace_id: str
    thread_id: str


@dataclass(frozen=True, slots=True)
class RemoveThread:
    workspace_id: str
    thread_id: str


@dataclass(frozen=True, slots=True)
class MarkProcessing:
    thread_id: str
    is_processing: bool


@dataclass(frozen=True, slots=True)
class MarkReviewing:
    thread_id: str
    is_reviewing: bool


@dataclass(frozen=True, slots=True)
class MarkUnread:
    thread_id: str
    has_unread: bool


@dataclass(frozen=True, slots=True)
class AddUserMessage:
    thread_id: str
    item_id: str
    text: str


@dataclass(frozen=True, slots=True)
class AddAssistantMessage:
    thread_id: str
    item_id: str
    text: str


@dataclass(frozen=True, slots=True)
class SetThreadName:
    workspace_id: str
    thread_id: str
    name: str


@dataclass(frozen=True, slots=True)
class AppendAgentDelta:
    thread_id: str
    item_id: str
    delta: str


@dataclass(frozen=True, slots=True)
class CompleteAgentMessage:
    thread_id: str
    item_id: str
    text: str
    timestamp: int


@dataclass(frozen=True, slots=True)
class UpsertItem:
    thread_id: str
    item: ConversationItem


@dataclass(frozen=True, slots=True)
class SetThreadItems:
    thread_id: str
    items: tuple[ConversationItem, ...]


@dataclass(frozen=True, slots=True)
class AppendReasoningSummary:
    thread_id: str
    item_id: str
    delta: str


@dataclass(frozen=True, slots=True)
class AppendReasoningContent:
    thread_id: str
    item_id: str
    delta: str


@dataclass(frozen=True, slots=True)
class AppendToolOutput:
    thread_id: str
    item_id: str
    delta: str


@dataclass(frozen=True, slots=True)
class SetThreads:
    workspace_id: str
    threads: tuple[ThreadSummary, ...]


@dataclass(frozen=True, slots=True)
class SetThreadListLoading:
    workspace_id: str
    is_loading: bool


@dataclass(frozen=True, slots=True)
class AddApproval:
    approval: ApprovalRequest


@dataclass(frozen=True, slots=True)
class RemoveApproval:
    workspace_id: str
    request_id: RequestId


@dataclass(frozen=True, slots=True)
class SetThreadTokenUsage:
    thread_id: str
    token_usage: ThreadTokenUsage


@dataclass(frozen=True, slots=True)
class SetRateLimits:
    workspace_id: str
    rate_limits: RateLimitSnapshot | None


@dataclass(frozen=True, slots=True)
class SetActiveTurnId:
    """Record the in-flight turn id. Use `ClearActiveTurn` to end a turn."""

    thread_id: str
    turn_id: str


@dataclass(frozen=True, slots=True)
class ClearActiveTurn:
    """End the thread's turn: clear the turn id and processing in one step."""

    thread_id: str


@dataclass(frozen=True, slots=True)
class SetTurnPlan:
    thread_id: str
    plan: TurnPlan


@dataclass(frozen=True, slots=True)
class EnqueueMessage:
    thread_id: str
    message: QueuedMessage


@dataclass(frozen=True, slots=True)
class DequeueMessage:
    thread_id: str
    message_id: str


@dataclass(frozen=True, slots=True)
class RequeueMessage:
    """Put a message back at the head of the queue after a failed send."""

    thread_id: str
    message: QueuedMessage


ThreadAction = (
    SetActiveThreadId
    | EnsureThread
    | RemoveThread
    | MarkProcessing
    | MarkReviewing
    | MarkUnread
    | AddUserMessage
    | AddAssistantMessage
    | SetThreadName
    | AppendAgentDelta
    | CompleteAgentMessage
    | UpsertItem
    | SetThreadItems
    | AppendReasoningSummary
    | AppendReasoningContent
    | AppendToolOutput
    | SetThreads
    | SetThreadListLoading
    | AddApproval
    | RemoveApproval
    | SetThreadTokenUsage
    | SetRateLimits
    | SetActiveTurnId
    | ClearActiveTurn
    | SetTurnPlan
    | EnqueueMessage
    | DequeueMessage
    | RequeueMessage
)


def _with(mapping: Mapping[_K, _V], key: _K, value: _V) -> Mapping[_K, _V]:
    updated = dict(mapping)
    updated[key] = value
    return MappingProxyType(updated)


def _without(mapping: Mapping[_K, _V], key: _K) -> Mapping[_K, _V]:
    return MappingProxyType({k: v for k, v in mapping.items() if k != key})


def _status(state: ThreadState, thread_id: str) -> ThreadStatus:
    return state.thread_status_by_id.get(thread_id) or ThreadStatus()


def _set_status(state: ThreadState, thread_id: str, **changes: bool) -> ThreadState:
    current = _status(state, thread_id)
    updated = current.model_copy(update=changes)
    if thread_id in state.thread_status_by_id and updated == current:
        return state
    return dataclasses.replace(
        state,
        thread_status_by_id=_with(state.thread_status_by_id, thread_id, updated),
    )


def _items(state: ThreadState, thread_id: str) -> tuple[ConversationItem, ...]:
    return state.items_by_thread.get(thread_id, ())


def _find_index(items: tuple[ConversationItem, ...], item_id: str) -> int:
    for index, item in enumerate(items):
        if item.id == item_id:
            return index
    return -1


def _set_items(
    state: ThreadState,
    thread_id: str,
    items: tuple[ConversationItem, ...],
) -> ThreadState:
    return dataclasses.replace(
        state,
        items_by_thread=_with(state.items_by_thread, thread_id, items),
    )


def _replace_at(
    items: tuple[ConversationItem, ...],
    index: int,
    item: ConversationItem,
) -> tuple[ConversationItem, ...]:
    return items[:index] + (item,) + items[index + 1 :]


def merge_item_fields(existing: ConversationItem, incoming: ConversationItem) -> ConversationItem:
    """Shallow-merge an incoming item over an existing one with the same id.

    Fields the incoming item leaves as None or as an empty string keep the
    existing value. A change of variant replaces the item outright.
    """
    if type(existing) is not type(incoming):
        return incoming
    updates = {
        name: value
        for name, value in incoming
        if value is not None and value != ""
    }
    return existing.model_copy(update=updates)


def _set_active_thread_id(state: ThreadState, action: SetActiveThreadId) -> ThreadState:
    next_state = dataclasses.replace(
        state,
        active_thread_id_by_workspace=_with(
            state.active_thread_id_by_workspace,
            action.workspace_id,
            action.thread_id,
        ),
    )
    if action.thread_id is None:
        return next_state
    return _set_status(next_state, action.thread_id, has_unread=False)


def _ensure_thread(state: ThreadState, action: EnsureThread) -> ThreadState:
    threads = state.threads_by_workspace.get(action.workspace_id, ())
    if any(thread.id == action.thread_id for thread in threads):
        return state
    summary = ThreadSummary(id=action.thread_id, name=f"Agent {len(threads) + 1}")
    active = state.active_thread_id_by_workspace.get(action.workspace_id)
    return dataclasses.replace(
        state,
        threads_by_workspace=_with(
            state.threads_by_workspace,
            action.workspace_id,
            (summary, *threads),
        ),
        thread_status_by_id=_with(
            state.thread_status_by_id,
            action.thread_id,
            ThreadStatus(),
        ),
        active_thread_id_by_workspace=_with(
            state.active_thread_id_by_workspace,
            action.workspace_id,
            active if active is not None else action.thread_id,
        ),
    )


def _remove_thread(state: ThreadState, action: RemoveThread) -> ThreadState:
    threads = state.threads_by_workspace.get(action.workspace_id, ())
    remaining = tuple(thread for thread in threads if thread.id != action.thread_id)
    active = state.active_thread_id_by_workspace.get(action.workspace_id)
    if active == action.thread_id:
        active = remaining[0].id if remaining else None
    thread_id = action.thread_id
    return dataclasses.replace(
        state,
        threads_by_workspace=_with(state.threads_by_workspace, action.workspace_id, remaining),
        items_by_thread=_without(state.items_by_thread, thread_id),
        thread_status_by_id=_without(state.thread_status_by_id, thread_id),
        active_turn_id_by_thread=_without(state.active_turn_id_by_thread, thread_id),
        token_usage_by_thread=_without(state.token_usage_by_thread, thread_id),
        plan_by_thread=_without(state.plan_by_thread, thread_id),
        last_agent_message_by_thread=_without(state.last_agent_message_by_thread, thread_id),
        queued_by_thread=_without(state.queued_by_thread, thread_id),
        active_thread_id_by_workspace=_with(
            state.active_thread_id_by_workspace,
            action.workspace_id,
            active,
        ),
    )


def _mark_processing(state: ThreadState, action: MarkProcessing) -> ThreadState:
    return _set_status(state, action.thread_id, is_processing=action.is_processing)


def _mark_reviewing(state: ThreadState, action: MarkReviewing) -> ThreadState:
    return _set_status(state, action.thread_id, is_reviewing=action.is_reviewing)


def _mark_unread(state: ThreadState, action: MarkUnread) -> ThreadState:
    return _set_status(state, action.thread_id, has_unread=action.has_unread)


def _add_user_message(state: ThreadState, action: AddUserMessage) -> ThreadState:
    message = MessageItem(id=action.item_id, role="user", text=action.text)
    return _set_items(state, action.thread_id, (*_items(state, action.thread_id), message))


def _add_assistant_message(state: ThreadState, action: AddAssistantMessage) -> ThreadState:
    message = MessageItem(id=action.item_id, role="assistant", text=action.text)
    return _set_items(state, action.thread_id, (*_items(state, action.thread_id), message))


def _set_thread_name(state: ThreadState, action: SetThreadName) -> ThreadState:
    threads = state.threads_by_workspace.get(action.workspace_id, ())
    renamed = tuple(
        thread.model_copy(update={"name": action.name})
        if thread.id == action.thread_id
        else thread
        for thread in threads
    )
    return dataclasses.replace(
        state,
        threads_by_workspace=_with(state.threads_by_workspace, action.workspace_id, renamed),
    )


def _append_agent_delta(state: ThreadState, action: AppendAgentDelta) -> ThreadState:
    items = _items(state, action.thread_id)
    index = _find_index(items, action.item_id)
    if index >= 0 and isinstance(items[index], MessageItem):
        existing = items[index]
        updated = existing.model_copy(update={"text": f"{existing.text}{action.delta}"})
        return _set_items(state, action.thread_id, _replace_at(items, index, updated))
    message = MessageItem(id=action.item_id, role="assistant", text=action.delta)
    return _set_items(state, action.thread_id, (*items, message))


def _complete_agent_message(state: ThreadState, action: CompleteAgentMessage) -> ThreadState:
    items = _items(state, action.thread_id)
    index = _find_index(items, action.item_id)
    if index >= 0 and isinstance(items[index], MessageItem):
        existing = items[index]
        updated = existing.model_copy(update={"text": action.text or existing.text})
        next_items = _replace_at(items, index, updated)
    else:
        updated = MessageItem(id=action.item_id, role="assistant", text=action.text)
        next_items = (*items, updated)
    next_state = _set_items(state, action.thread_id, next_items)
    return dataclasses.replace(
        next_state,
        last_agent_message_by_thread=_with(
            next_state.last_agent_message_by_thread,
            action.thread_id,
            LastAgentMessage(text=updated.text, timestamp=action.timestamp),
        ),
    )


def _upsert_item(state: ThreadState, action: UpsertItem) -> ThreadState:
    items = _items(state, action.thread_id)
    index = _find_index(items, action.item.id)
    if index < 0:
        return _set_items(state, action.thread_id, (*items, action.item))
    merged = merge_item_fields(items[index], action.item)
    return _set_items(state, action.thread_id, _replace_at(items, index, merged))


def _set_thread_items(state: ThreadState, action: SetThreadItems) -> ThreadState:
    return _set_items(state, action.thread_id, tuple(action.items))


def _append_reasoning(
    state: ThreadState,
    thread_id: str,
    item_id: str,
    field_name: str,
    delta: str,
) -> ThreadState:
    items = _items(state, thread_id)
    index = _find_index(items, item_id)
    if index >= 0 and isinstance(items[index], ReasoningItem):
        base = items[index]
    else:
        base = ReasoningItem(id=item_id)
    updated = base.model_copy(update={field_name: f"{getattr(base, field_name)}{delta}"})
    if index >= 0:
        return _set_items(state, thread_id, _replace_at(items, index, updated))
    return _set_items(state, thread_id, (*items, updated))


def _append_reasoning_summary(state: ThreadState, action: AppendReasoningSummary) -> ThreadState:
    return _append_reasoning(state, action.thread_id, action.item_id, "summary", action.delta)


def _append_reasoning_content(state: ThreadState, action: AppendReasoningContent) -> ThreadState:
    return _append_reasoning(state, action.thread_id, action.item_id, "content", action.delta)


def _append_tool_output(state: ThreadState, action: AppendToolOutput) -> ThreadState:
    items = _items(state, action.thread_id)
    index = _find_index(items, action.item_id)
    if index < 0 or not isinstance(items[index], ToolItem):
        return state
    existing = items[index]
    updated = existing.model_copy(
        update={"output": f"{existing.output or ''}{action.delta}"}
    )
    return _set_items(state, action.thread_id, _replace_at(items, index, updated))


def _set_threads(state: ThreadState, action: SetThreads) -> ThreadState:
    return dataclasses.replace(
        state,
        threads_by_workspace=_with(
            state.threads_by_workspace,
            action.workspace_id,
            tuple(action.threads),
        ),
    )


def _set_thread_list_loading(state: ThreadState, action: SetThreadListLoading) -> ThreadState:
    return dataclasses.replace(
        state,
        thread_list_loading_by_workspace=_with(
            state.thread_list_loading_by_workspace,
            action.workspace_id,
            action.is_loading,
        ),
    )


def _add_approval(state: ThreadState, action: AddApproval) -> ThreadState:
    return dataclasses.replace(state, approvals=(*state.approvals, action.approval))


def _remove_approval(state: ThreadState, action: RemoveApproval) -> ThreadState:
    remaining = tuple(
        approval
        for approval in state.approvals
        if not (
            approval.workspace_id == action.workspace_id
            and approval.request_id == action.request_id
        )
    )
    if len(remaining) == len(state.approvals):
        return state
    return dataclasses.replace(state, approvals=remaining)


def _set_thread_token_usage(state: ThreadState, action: SetThreadTokenUsage) -> ThreadState:
    return dataclasses.replace(
        state,
        token_usage_by_thread=_with(
            state.token_usage_by_thread,
            action.thread_id,
            action.token_usage,
        ),
    )


def _set_rate_limits(state: ThreadState, action: SetRateLimits) -> ThreadState:
    return dataclasses.replace(
        state,
        rate_limits_by_workspace=_with(
            state.rate_limits_by_workspace,
            action.workspace_id,
            action.rate_limits,
        ),
    )


def _set_active_turn_id(state: ThreadState, action: SetActiveTurnId) -> ThreadState:
    return dataclasses.replace(
        state,
        active_turn_id_by_thread=_with(
            state.active_turn_id_by_thread,
            action.thread_id,
            action.turn_id,
        ),
    )


def _clear_active_turn(state: ThreadState, action: ClearActiveTurn) -> ThreadState:
    next_state = dataclasses.replace(
        state,
        active_turn_id_by_thread=_with(
            state.active_turn_id_by_thread,
            action.thread_id,
            None,
        ),
    )
    return _set_status(next_state, action.thread_id, is_processing=False)


def _set_turn_plan(state: ThreadState, action: SetTurnPlan) -> ThreadState:
    return dataclasses.replace(
        state,
        plan_by_thread=_with(state.plan_by_thread, action.thread_id, action.plan),
    )


def _enqueue_message(state: ThreadState, action: EnqueueMessage) -> ThreadState:
    queue = state.queued_by_thread.get(action.thread_id, ())
    return dataclasses.replace(
        state,
        queued_by_thread=_with(
            state.queued_by_thread,
            action.thread_id,
            (*queue, action.message),
        ),
    )


def _dequeue_message(state: ThreadState, action: DequeueMessage) -> ThreadState:
    queue = state.queued_by_thread.get(action.thread_id, ())
    remaining = tuple(message for message in queue if message.id != action.message_id)
    if len(remaining) == len(queue):
        return state
    return dataclasses.replace(
        state,
        queued_by_thread=_with(state.queued_by_thread, action.thread_id, remaining),
    )


def _requeue_message(state: ThreadState, action: RequeueMessage) -> ThreadState:
    queue = state.queued_by_thread.get(action.thread_id, ())
    return dataclasses.replace(
        state,
        queued_by_thread=_with(
            state.queued_by_thread,
            action.thread_id,
            (action.message, *queue),
        ),
    )


_REDUCERS: dict[type, Callable[[ThreadState, Any], ThreadState]] = {
    SetActiveThreadId: _set_active_thread_id,
    EnsureThread: _ensure_thread,
    RemoveThread: _remove_thread,
    MarkProcessing: _mark_processing,
    MarkReviewing: _mark_reviewing,
    MarkUnread: _mark_unread,
    AddUserMessage: _add_user_message,
    AddAssistantMessage: _add_assistant_message,
    SetThreadName: _set_thread_name,
    AppendAgentDelta: _append_agent_delta,
    CompleteAgentMessage: _complete_agent_message,
    UpsertItem: _upsert_item,
    SetThreadItems: _set_thread_items,
    AppendReasoningSummary: _append_reasoning_summary,
    AppendReasoningContent: _append_reasoning_content,
    AppendToolOutput: _append_tool_output,
    SetThreads: _set_threads,
    SetThreadListLoading: _set_thread_list_loading,
    AddApproval: _add_approval,
    RemoveApproval: _remove_approval,
    SetThreadTokenUsage: _set_thread_token_usage,
    SetRateLimits: _set_rate_limits,
    SetActiveTurnId: _set_active_turn_id,
    ClearActiveTurn: _clear_active_turn,
    SetTurnPlan: _set_turn_plan,
    EnqueueMessage: _enqueue_message,
    DequeueMessage: _dequeue_message,
    RequeueMessage: _requeue_message,
}


def reduce_thread_state(state: ThreadState, action: object) -> ThreadState:
    """Apply one action to a state snapshot and return the next snapshot."""
    reducer = _REDUCERS.get(type(action))
    if reducer is None:
        return state
    return reducer(state, action)
