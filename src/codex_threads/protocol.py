from __future__ import annotations

from typing import Any

# JSON-RPC protocol version used by Codex app-server envelopes.
JSONRPC_VERSION = "2.0"

# Request methods issued by workspace sessions.
INITIALIZE_METHOD = "initialize"
INITIALIZED_NOTIFICATION = "initialized"
THREAD_START_METHOD = "thread/start"
THREAD_RESUME_METHOD = "thread/resume"
THREAD_LIST_METHOD = "thread/list"
THREAD_ARCHIVE_METHOD = "thread/archive"
TURN_START_METHOD = "turn/start"
TURN_INTERRUPT_METHOD = "turn/interrupt"
REVIEW_START_METHOD = "review/start"
ACCOUNT_RATE_LIMITS_READ_METHOD = "account/rateLimits/read"

# Notification methods consumed by event ingestion.
AGENT_MESSAGE_DELTA_METHOD = "item/agentMessage/delta"
ITEM_STARTED_METHOD = "item/started"
ITEM_COMPLETED_METHOD = "item/completed"
REASONING_SUMMARY_DELTA_METHOD = "item/reasoning/summaryTextDelta"
REASONING_TEXT_DELTA_METHOD = "item/reasoning/textDelta"
COMMAND_OUTPUT_DELTA_METHOD = "item/commandExecution/outputDelta"
FILE_CHANGE_OUTPUT_DELTA_METHOD = "item/fileChange/outputDelta"
TURN_STARTED_METHOD = "turn/started"
TURN_COMPLETED_METHOD = "turn/completed"
TURN_PLAN_UPDATED_METHOD = "turn/plan/updated"
THREAD_TOKEN_USAGE_UPDATED_METHOD = "thread/tokenUsage/updated"
ACCOUNT_RATE_LIMITS_UPDATED_METHOD = "account/rateLimits/updated"

# Synthetic methods emitted locally by workspace sessions.
CONNECTED_METHOD = "codex/connected"
STDERR_METHOD = "codex/stderr"
PARSE_ERROR_METHOD = "codex/parseError"

# Server-initiated requests whose method ends with this suffix are approvals.
REQUEST_APPROVAL_SUFFIX = "requestApproval"


def make_request(
    request_id: int,
    method: str,
    params: Any = None,
) -> dict[str, Any]:
    """Build a JSON-RPC request envelope.

    `params` is always sent, including JSON `null`, because the app-server
    accepts `null` for parameterless reads.
    """
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "method": method,
        "params": params,
    }


def make_notification(method: str, params: Any = None) -> dict[str, Any]:
    """Build a JSON-RPC notification envelope (no id)."""
    payload: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
    if params is not None:
        payload["params"] = params
    return payload


def make_result_response(
    request_id: int | str,
    result: Any,
) -> dict[str, Any]:
    """Build a JSON-RPC success response envelope."""
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "result": result,
    }


def is_response_message(payload: dict[str, Any]) -> bool:
    """Return True when payload answers one of our requests.

    A response carries an id plus `result` or `error`; an id with a method is a
    server-initiated request instead.
    """
    if "id" not in payload:
        return False
    if "result" in payload or "error" in payload:
        return True
    return "method" not in payload


def is_approval_request(payload: dict[str, Any]) -> bool:
    """Return True when payload is a server-initiated approval request."""
    method = payload.get("method")
    if not isinstance(method, str) or not method.endswith(REQUEST_APPROVAL_SUFFIX):
        return False
    return payload.get("id") is not None


def extract_error(payload: dict[str, Any]) -> dict[str, Any] | None:
    """Return JSON-RPC error object if present and valid."""
    error = payload.get("error")
    if isinstance(error, dict):
        return error
    return None
