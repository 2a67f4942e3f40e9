from __future__ import annotations

from typing import Annotated, Any, Literal, TypeAlias, Union

from pydantic import BaseModel, ConfigDict, Field


class _Record(BaseModel):
    """Immutable record base; state snapshots share these instances freely."""

    model_config = ConfigDict(frozen=True)


class FileChange(_Record):
    """One file touched by a `fileChange` tool item.

    Attributes:
        path: File path as reported by the server.
        kind: Lower-cased change kind (`add`, `delete`, `update`, ...), if known.
        diff: Unified diff text, if provided.
    """

    path: str
    kind: str | None = None
    diff: str | None = None


class MessageItem(_Record):
    """A user or assistant chat message."""

    id: str
    kind: Literal["message"] = "message"
    role: Literal["user", "assistant"]
    text: str = ""


class ReasoningItem(_Record):
    """Model reasoning, split into summary and raw content streams."""

    id: str
    kind: Literal["reasoning"] = "reasoning"
    summary: str = ""
    content: str = ""


class ToolItem(_Record):
    """A tool invocation (command, file change, MCP call, web search, image view).

    `None` marks a field the server has not reported yet. Upserts never let a
    `None` overwrite a populated value.

    Attributes:
        tool_type: Raw protocol item type (e.g. `commandExecution`).
        title: Human-readable headline.
        detail: Secondary text (cwd, changed paths, query, arguments).
        status: Server lifecycle status, if reported.
        output: Accumulated output text, if any.
        changes: Structured file changes for `fileChange` items.
    """

    id: str
    kind: Literal["tool"] = "tool"
    tool_type: str
    title: str
    detail: str | None = None
    status: str | None = None
    output: str | None = None
    changes: list[FileChange] | None = None


class ReviewItem(_Record):
    """Review-mode marker (entered or exited)."""

    id: str
    kind: Literal["review"] = "review"
    state: Literal["started", "completed"]
    text: str = ""


ConversationItem: TypeAlias = Annotated[
    Union[MessageItem, ReasoningItem, ToolItem, ReviewItem],
    Field(discriminator="kind"),
]


class ThreadStatus(_Record):
    """Per-thread status flags."""

    is_processing: bool = False
    is_reviewing: bool = False
    has_unread: bool = False


class ThreadSummary(_Record):
    """Sidebar entry for one thread."""

    id: str
    name: str


class WorkspaceInfo(_Record):
    """Workspace identity as provided by the workspace collaborator.

    Attributes:
        id: Opaque workspace id.
        path: Working directory; threads are matched to it by `cwd`.
        name: Display name used in cross-workspace projections.
        connected: Whether an app-server session is live for this workspace.
    """

    id: str
    path: str
    name: str = ""
    connected: bool = False


RequestId: TypeAlias = int | str


class ApprovalRequest(_Record):
    """Server-initiated approval request awaiting a user decision."""

    workspace_id: str
    request_id: RequestId
    method: str = ""
    params: dict[str, Any] = Field(default_factory=dict)


ApprovalDecision: TypeAlias = Literal["accept", "decline"]

Number: TypeAlias = int | float


class TokenUsageBreakdown(_Record):
    total_tokens: Number = 0
    input_tokens: Number = 0
    cached_input_tokens: Number = 0
    output_tokens: Number = 0
    reasoning_output_tokens: Number = 0


class ThreadTokenUsage(_Record):
    """Token usage snapshot for one thread; replaced wholesale on update."""

    total: TokenUsageBreakdown = Field(default_factory=TokenUsageBreakdown)
    last: TokenUsageBreakdown = Field(default_factory=TokenUsageBreakdown)
    model_context_window: Number | None = None


class RateLimitWindow(_Record):
    used_percent: Number = 0
    window_duration_mins: Number | None = None
    resets_at: Number | None = None


class CreditsSnapshot(_Record):
    has_credits: bool = False
    unlimited: bool = False
    balance: str | None = None


class RateLimitSnapshot(_Record):
    """Account rate-limit snapshot for one workspace; replaced wholesale."""

    primary: RateLimitWindow | None = None
    secondary: RateLimitWindow | None = None
    credits: CreditsSnapshot | None = None
    plan_type: str | None = None


class UncommittedChangesTarget(_Record):
    type: Literal["uncommittedChanges"] = "uncommittedChanges"


class BaseBranchTarget(_Record):
    type: Literal["baseBranch"] = "baseBranch"
    branch: str


class CommitTarget(_Record):
    type: Literal["commit"] = "commit"
    sha: str
    title: str | None = None


class CustomTarget(_Record):
    type: Literal["custom"] = "custom"
    instructions: str


ReviewTarget: TypeAlias = Annotated[
    Union[UncommittedChangesTarget, BaseBranchTarget, CommitTarget, CustomTarget],
    Field(discriminator="type"),
]


class LastAgentMessage(_Record):
    """Most recent completed assistant message of a thread."""

    text: str
    timestamp: int


class TurnPlanStep(_Record):
    step: str
    status: str = "pending"


class TurnPlan(_Record):
    """Agent plan for the running turn, replaced on every plan update."""

    turn_id: str | None = None
    explanation: str | None = None
    steps: list[TurnPlanStep] = Field(default_factory=list)


class QueuedMessage(_Record):
    """User input held back while its thread is busy."""

    id: str
    text: str
    created_at: int


class AgentRun(_Record):
    """Cross-workspace "latest agent run" entry."""

    thread_id: str
    workspace_id: str
    project_name: str
    message: str
    timestamp: int
    is_processing: bool = False


DebugSource: TypeAlias = Literal["client", "server", "event", "stderr", "error"]


class DebugEntry(BaseModel):
    """Diagnostic record for one request, response, error or raw event.

    Attributes:
        id: Unique entry id (`{timestamp}-{source}-{label slug}`).
        timestamp: Milliseconds since the epoch.
        source: Origin of the entry.
        label: Protocol method or operation label.
        payload: Raw request/response payload or error message.
    """

    id: str
    timestamp: int
    source: DebugSource
    label: str
    payload: Any = None


#: Sandbox preset selected by the user for new turns.
#:
#: Values:
#: - ``"read-only"``: read-only sandbox.
#: - ``"current"``: workspace-write sandbox limited to the workspace path.
#: - ``"full-access"``: no sandbox and no approvals.
AccessMode: TypeAlias = Literal["read-only", "current", "full-access"]

#: Reasoning effort level for per-turn/model behavior.
ReasoningEffort: TypeAlias = Literal["none", "minimal", "low", "medium", "high", "xhigh"]
