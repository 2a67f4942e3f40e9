"""Route raw app-server messages to thread event callbacks.

Every message is first handed to `on_app_server_event` for diagnostics. Known
notification methods are then unpacked into the dedicated callback; messages
without the identifiers a callback needs, and unknown methods, stop there.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol

from .models import ApprovalRequest
from .normalize import as_string, pick
from .protocol import (
    ACCOUNT_RATE_LIMITS_UPDATED_METHOD,
    AGENT_MESSAGE_DELTA_METHOD,
    COMMAND_OUTPUT_DELTA_METHOD,
    CONNECTED_METHOD,
    FILE_CHANGE_OUTPUT_DELTA_METHOD,
    ITEM_COMPLETED_METHOD,
    ITEM_STARTED_METHOD,
    REASONING_SUMMARY_DELTA_METHOD,
    REASONING_TEXT_DELTA_METHOD,
    THREAD_TOKEN_USAGE_UPDATED_METHOD,
    TURN_COMPLETED_METHOD,
    TURN_PLAN_UPDATED_METHOD,
    TURN_STARTED_METHOD,
    is_approval_request,
)


class AppServerEventHandler(Protocol):
    """Callbacks invoked by `route_app_server_event`; `ThreadEngine` implements them."""

    def on_workspace_connected(self, workspace_id: str) -> None: ...

    def on_approval_request(self, approval: ApprovalRequest) -> None: ...

    def on_app_server_event(self, workspace_id: str, message: Mapping[str, Any]) -> None: ...

    def on_agent_message_delta(
        self, workspace_id: str, thread_id: str, item_id: str, delta: str
    ) -> None: ...

    def on_agent_message_completed(
        self, workspace_id: str, thread_id: str, item_id: str, text: str
    ) -> None: ...

    def on_item_started(
        self, workspace_id: str, thread_id: str, item: Mapping[str, Any]
    ) -> None: ...

    def on_item_completed(
        self, workspace_id: str, thread_id: str, item: Mapping[str, Any]
    ) -> None: ...

    def on_reasoning_summary_delta(
        self, workspace_id: str, thread_id: str, item_id: str, delta: str
    ) -> None: ...

    def on_reasoning_text_delta(
        self, workspace_id: str, thread_id: str, item_id: str, delta: str
    ) -> None: ...

    def on_command_output_delta(
        self, workspace_id: str, thread_id: str, item_id: str, delta: str
    ) -> None: ...

    def on_file_change_output_delta(
        self, workspace_id: str, thread_id: str, item_id: str, delta: str
    ) -> None: ...

    def on_turn_started(self, workspace_id: str, thread_id: str, turn_id: str) -> None: ...

    def on_turn_completed(self, workspace_id: str, thread_id: str, turn_id: str) -> None: ...

    def on_turn_plan_updated(
        self, workspace_id: str, thread_id: str, payload: Mapping[str, Any]
    ) -> None: ...

    def on_thread_token_usage_updated(
        self, workspace_id: str, thread_id: str, token_usage: Mapping[str, Any]
    ) -> None: ...

    def on_account_rate_limits_updated(
        self, workspace_id: str, rate_limits: Mapping[str, Any]
    ) -> None: ...


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _thread_id(params: Mapping[str, Any]) -> str:
    direct = as_string(pick(params, "threadId", "thread_id"))
    if direct:
        return direct
    for key in ("turn", "item", "thread"):
        nested = _mapping(params.get(key))
        nested_id = as_string(pick(nested, "threadId", "thread_id"))
        if nested_id:
            return nested_id
    return as_string(_mapping(params.get("thread")).get("id"))


def _turn_id(params: Mapping[str, Any]) -> str:
    nested = as_string(_mapping(params.get("turn")).get("id"))
    return nested or as_string(pick(params, "turnId", "turn_id"))


def _item_id(params: Mapping[str, Any]) -> str:
    direct = as_string(pick(params, "itemId", "item_id"))
    return direct or as_string(_mapping(params.get("item")).get("id"))


_DELTA_CALLBACKS = {
    AGENT_MESSAGE_DELTA_METHOD: "on_agent_message_delta",
    REASONING_SUMMARY_DELTA_METHOD: "on_reasoning_summary_delta",
    REASONING_TEXT_DELTA_METHOD: "on_reasoning_text_delta",
    COMMAND_OUTPUT_DELTA_METHOD: "on_command_output_delta",
    FILE_CHANGE_OUTPUT_DELTA_METHOD: "on_file_change_output_delta",
}


def route_app_server_event(
    handlers: AppServerEventHandler,
    workspace_id: str,
    message: Mapping[str, Any],
) -> None:
    """Dispatch one app-server message from a workspace session."""
    handlers.on_app_server_event(workspace_id, message)

    method = as_string(message.get("method"))
    params = _mapping(message.get("params"))

    if method == CONNECTED_METHOD:
        handlers.on_workspace_connected(workspace_id)
        return

    if is_approval_request(dict(message)):
        handlers.on_approval_request(
            ApprovalRequest(
                workspace_id=workspace_id,
                request_id=message["id"],
                method=method,
                params=dict(params),
            )
        )
        return

    if method == ACCOUNT_RATE_LIMITS_UPDATED_METHOD:
        rate_limits = pick(params, "rateLimits", "rate_limits")
        handlers.on_account_rate_limits_updated(
            workspace_id,
            rate_limits if isinstance(rate_limits, Mapping) else params,
        )
        return

    thread_id = _thread_id(params)
    if not thread_id:
        return

    callback_name = _DELTA_CALLBACKS.get(method)
    if callback_name is not None:
        item_id = _item_id(params)
        if not item_id:
            return
        callback = getattr(handlers, callback_name)
        callback(workspace_id, thread_id, item_id, as_string(params.get("delta")))
        return

    if method in (ITEM_STARTED_METHOD, ITEM_COMPLETED_METHOD):
        item = _mapping(params.get("item"))
        if not item:
            return
        if method == ITEM_COMPLETED_METHOD and as_string(item.get("type")) == "agentMessage":
            item_id = as_string(item.get("id"))
            if item_id:
                handlers.on_agent_message_completed(
                    workspace_id,
                    thread_id,
                    item_id,
                    as_string(item.get("text")),
                )
            return
        if method == ITEM_STARTED_METHOD:
            handlers.on_item_started(workspace_id, thread_id, item)
        else:
            handlers.on_item_completed(workspace_id, thread_id, item)
        return

    if method == TURN_STARTED_METHOD:
        handlers.on_turn_started(workspace_id, thread_id, _turn_id(params))
    elif method == TURN_COMPLETED_METHOD:
        handlers.on_turn_completed(workspace_id, thread_id, _turn_id(params))
    elif method == TURN_PLAN_UPDATED_METHOD:
        handlers.on_turn_plan_updated(workspace_id, thread_id, params)
    elif method == THREAD_TOKEN_USAGE_UPDATED_METHOD:
        token_usage = pick(params, "tokenUsage", "token_usage")
        handlers.on_thread_token_usage_updated(
            workspace_id,
            thread_id,
            token_usage if isinstance(token_usage, Mapping) else {},
        )
