"""Pure normalizers from raw app-server payloads to package records.

Two historical payload shapes are accepted for conversation items:

- live `item/started` / `item/completed` event items, handled by
  `build_conversation_item()`;
- turn-history snapshots returned by `thread/resume`, handled by
  `build_conversation_item_from_thread_item()` which additionally understands
  user and agent messages.

Every function here is total: malformed input degrades to defaults or `None`
instead of raising.
"""

from __future__ import annotations

import json
import math
from collections.abc import Mapping, Sequence
from typing import Any

from .models import (
    ConversationItem,
    CreditsSnapshot,
    FileChange,
    MessageItem,
    Number,
    RateLimitSnapshot,
    RateLimitWindow,
    ReasoningItem,
    ReviewItem,
    ThreadTokenUsage,
    TokenUsageBreakdown,
    ToolItem,
    TurnPlan,
    TurnPlanStep,
)

ELLIPSIS = "…"


def as_string(value: Any) -> str:
    """Coerce a loosely typed value to text; falsy values become ``""``."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else ""
    if not value:
        return ""
    return str(value)


def _parse_number(value: Any) -> Number | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        try:
            parsed = float(value.strip())
        except ValueError:
            return None
        if not math.isfinite(parsed):
            return None
        return int(parsed) if parsed.is_integer() else parsed
    return None


def as_number(value: Any) -> Number:
    """Coerce numbers and numeric strings; anything else becomes 0."""
    parsed = _parse_number(value)
    return 0 if parsed is None else parsed


def as_optional_number(value: Any) -> Number | None:
    """Coerce numbers and numeric strings; anything else becomes None."""
    return _parse_number(value)


def pick(raw: Mapping[str, Any], *keys: str) -> Any:
    """Return the first non-None value among alternate key spellings."""
    for key in keys:
        value = raw.get(key)
        if value is not None:
            return value
    return None


def _as_mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _join_text(value: Any, separator: str = "\n") -> str:
    if isinstance(value, list):
        return separator.join(as_string(entry) for entry in value)
    return as_string(value)


def _format_json(value: Any) -> str:
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, indent=2)
    except (TypeError, ValueError):
        return str(value)


def _optional_text(value: Any) -> str | None:
    text = as_string(value)
    return text or None


def _normalize_file_changes(raw_changes: Any) -> list[FileChange]:
    if not isinstance(raw_changes, list):
        return []
    changes: list[FileChange] = []
    for change in raw_changes:
        if not isinstance(change, Mapping):
            continue
        path = as_string(change.get("path"))
        if not path:
            continue
        kind = change.get("kind")
        if isinstance(kind, str):
            kind_type = kind
        elif isinstance(kind, Mapping):
            kind_type = as_string(kind.get("type"))
        else:
            kind_type = ""
        changes.append(
            FileChange(
                path=path,
                kind=kind_type.lower() or None,
                diff=as_string(change.get("diff")) or None,
            )
        )
    return changes


def _change_prefix(kind: str | None) -> str:
    if kind == "add":
        return "A"
    if kind == "delete":
        return "D"
    if kind:
        return "M"
    return ""


def build_conversation_item(item: Mapping[str, Any]) -> ConversationItem | None:
    """Normalize a live `item/started` or `item/completed` payload.

    Agent and user messages are handled by dedicated message callbacks and
    return None here, as do unknown item types and items without an id.
    Optional tool fields stay None when the payload omits their key, so a
    sparse `item/completed` does not erase what `item/started` reported.
    """
    item_type = as_string(item.get("type"))
    item_id = as_string(item.get("id"))
    if not item_id or not item_type:
        return None
    if item_type in ("agentMessage", "userMessage"):
        return None

    if item_type == "reasoning":
        return ReasoningItem(
            id=item_id,
            summary=_join_text(item.get("summary")),
            content=_join_text(item.get("content")),
        )

    if item_type == "commandExecution":
        command = _join_text(item.get("command"), " ")
        return ToolItem(
            id=item_id,
            tool_type=item_type,
            title=f"Command: {command}" if command else "Command",
            detail=_optional_text(item.get("cwd")),
            status=_optional_text(item.get("status")),
            output=_optional_text(item.get("aggregatedOutput")),
        )

    if item_type == "fileChange":
        raw_changes = item.get("changes")
        if not isinstance(raw_changes, list):
            return ToolItem(
                id=item_id,
                tool_type=item_type,
                title="File changes",
                status=_optional_text(item.get("status")),
            )
        changes = _normalize_file_changes(raw_changes)
        formatted = [
            " ".join(part for part in (_change_prefix(change.kind), change.path) if part)
            for change in changes
        ]
        diff_output = "\n\n".join(change.diff for change in changes if change.diff)
        return ToolItem(
            id=item_id,
            tool_type=item_type,
            title="File changes",
            detail=", ".join(formatted) or "Pending changes",
            status=_optional_text(item.get("status")),
            output=diff_output or None,
            changes=changes,
        )

    if item_type == "mcpToolCall":
        server = as_string(item.get("server"))
        tool = as_string(item.get("tool"))
        arguments = item.get("arguments")
        result = pick(item, "result", "error")
        return ToolItem(
            id=item_id,
            tool_type=item_type,
            title=f"Tool: {server}{f' / {tool}' if tool else ''}",
            detail=_format_json(arguments) if arguments else None,
            status=_optional_text(item.get("status")),
            output=_format_json(result) if result else None,
        )

    if item_type == "webSearch":
        return ToolItem(
            id=item_id,
            tool_type=item_type,
            title="Web search",
            detail=_optional_text(item.get("query")),
        )

    if item_type == "imageView":
        return ToolItem(
            id=item_id,
            tool_type=item_type,
            title="Image view",
            detail=_optional_text(item.get("path")),
        )

    if item_type in ("enteredReviewMode", "exitedReviewMode"):
        return ReviewItem(
            id=item_id,
            state="started" if item_type == "enteredReviewMode" else "completed",
            text=as_string(item.get("review")),
        )

    return None


def user_inputs_to_text(inputs: Sequence[Any]) -> str:
    """Flatten `userMessage.content` input entries into display text."""
    parts: list[str] = []
    for entry in inputs:
        if not isinstance(entry, Mapping):
            continue
        entry_type = as_string(entry.get("type"))
        if entry_type == "text":
            text = as_string(entry.get("text"))
        elif entry_type == "skill":
            name = as_string(entry.get("name"))
            text = f"${name}" if name else ""
        elif entry_type in ("image", "localImage"):
            text = "[image]"
        else:
            text = ""
        if text:
            parts.append(text)
    return " ".join(parts).strip()


def build_conversation_item_from_thread_item(
    item: Mapping[str, Any],
) -> ConversationItem | None:
    """Normalize one item from a turn-history snapshot."""
    item_type = as_string(item.get("type"))
    item_id = as_string(item.get("id"))
    if not item_id or not item_type:
        return None

    if item_type == "userMessage":
        content = item.get("content")
        text = user_inputs_to_text(content if isinstance(content, list) else [])
        return MessageItem(id=item_id, role="user", text=text or "[message]")

    if item_type == "agentMessage":
        return MessageItem(id=item_id, role="assistant", text=as_string(item.get("text")))

    return build_conversation_item(item)


def _thread_turn_items(thread: Mapping[str, Any]) -> list[Mapping[str, Any]]:
    turns = thread.get("turns")
    if not isinstance(turns, list):
        return []
    items: list[Mapping[str, Any]] = []
    for turn in turns:
        turn_items = _as_mapping(turn).get("items")
        if not isinstance(turn_items, list):
            continue
        items.extend(entry for entry in turn_items if isinstance(entry, Mapping))
    return items


def build_items_from_thread(thread: Mapping[str, Any]) -> list[ConversationItem]:
    """Flatten every turn of a resumed thread into display items."""
    items: list[ConversationItem] = []
    for raw_item in _thread_turn_items(thread):
        converted = build_conversation_item_from_thread_item(raw_item)
        if converted is not None:
            items.append(converted)
    return items


def is_reviewing_from_thread(thread: Mapping[str, Any]) -> bool:
    """Replay review-mode markers in history; the last marker wins."""
    reviewing = False
    for raw_item in _thread_turn_items(thread):
        item_type = as_string(raw_item.get("type"))
        if item_type == "enteredReviewMode":
            reviewing = True
        elif item_type == "exitedReviewMode":
            reviewing = False
    return reviewing


def preview_thread_name(text: str, fallback: str, *, max_chars: int = 38) -> str:
    """Derive a display name from preview text, truncated with an ellipsis."""
    trimmed = text.strip()
    if not trimmed:
        return fallback
    if len(trimmed) > max_chars:
        return f"{trimmed[:max_chars]}{ELLIPSIS}"
    return trimmed


def _normalize_breakdown(raw: Any) -> TokenUsageBreakdown:
    values = _as_mapping(raw)
    return TokenUsageBreakdown(
        total_tokens=as_number(pick(values, "totalTokens", "total_tokens")),
        input_tokens=as_number(pick(values, "inputTokens", "input_tokens")),
        cached_input_tokens=as_number(
            pick(values, "cachedInputTokens", "cached_input_tokens")
        ),
        output_tokens=as_number(pick(values, "outputTokens", "output_tokens")),
        reasoning_output_tokens=as_number(
            pick(values, "reasoningOutputTokens", "reasoning_output_tokens")
        ),
    )


def normalize_token_usage(raw: Mapping[str, Any]) -> ThreadTokenUsage:
    """Normalize a `thread/tokenUsage/updated` payload."""
    return ThreadTokenUsage(
        total=_normalize_breakdown(raw.get("total")),
        last=_normalize_breakdown(raw.get("last")),
        model_context_window=as_optional_number(
            pick(raw, "modelContextWindow", "model_context_window")
        ),
    )


def _normalize_window(raw: Any) -> RateLimitWindow | None:
    if not isinstance(raw, Mapping):
        return None
    return RateLimitWindow(
        used_percent=as_number(pick(raw, "usedPercent", "used_percent")),
        window_duration_mins=as_optional_number(
            pick(raw, "windowDurationMins", "window_duration_mins")
        ),
        resets_at=as_optional_number(pick(raw, "resetsAt", "resets_at")),
    )


def normalize_rate_limits(raw: Mapping[str, Any]) -> RateLimitSnapshot:
    """Normalize an account rate-limit payload."""
    credits_raw = raw.get("credits")
    credits: CreditsSnapshot | None = None
    if isinstance(credits_raw, Mapping):
        balance = credits_raw.get("balance")
        credits = CreditsSnapshot(
            has_credits=bool(pick(credits_raw, "hasCredits", "has_credits")),
            unlimited=bool(credits_raw.get("unlimited")),
            balance=balance if isinstance(balance, str) else None,
        )
    plan_type = raw.get("planType")
    if not isinstance(plan_type, str):
        plan_type = raw.get("plan_type")
    return RateLimitSnapshot(
        primary=_normalize_window(raw.get("primary")),
        secondary=_normalize_window(raw.get("secondary")),
        credits=credits,
        plan_type=plan_type if isinstance(plan_type, str) else None,
    )


def normalize_turn_plan(raw: Mapping[str, Any]) -> TurnPlan:
    """Normalize a `turn/plan/updated` payload."""
    steps: list[TurnPlanStep] = []
    raw_steps = raw.get("plan")
    if not isinstance(raw_steps, list):
        raw_steps = raw.get("steps")
    if isinstance(raw_steps, list):
        for entry in raw_steps:
            if not isinstance(entry, Mapping):
                continue
            step = as_string(entry.get("step")).strip()
            if not step:
                continue
            steps.append(
                TurnPlanStep(step=step, status=as_string(entry.get("status")) or "pending")
            )
    explanation = as_string(raw.get("explanation")).strip()
    turn_id = as_string(pick(raw, "turnId", "turn_id"))
    return TurnPlan(
        turn_id=turn_id or None,
        explanation=explanation or None,
        steps=steps,
    )


def unwrap_result(response: Any) -> Mapping[str, Any]:
    """Return `response.result` when present, else the response itself."""
    payload = _as_mapping(response)
    result = payload.get("result")
    if isinstance(result, Mapping):
        return result
    return payload


def extract_thread(response: Any) -> Mapping[str, Any] | None:
    """Return the `thread` object of a start/resume response, if any."""
    for source in (unwrap_result(response), _as_mapping(response)):
        thread = source.get("thread")
        if isinstance(thread, Mapping):
            return thread
    return None


def extract_turn_id(response: Any) -> str:
    """Return the turn id of a `turn/start` response, or ``""``."""
    for source in (unwrap_result(response), _as_mapping(response)):
        turn = source.get("turn")
        if isinstance(turn, Mapping):
            turn_id = as_string(turn.get("id"))
            if turn_id:
                return turn_id
    return ""
