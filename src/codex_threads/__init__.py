from .backend import ThreadBackend
from .config import EngineConfig
from .engine import ThreadEngine
from .errors import (
    CodexError,
    CodexMessageParseError,
    CodexProtocolError,
    CodexTimeoutError,
    CodexTransportError,
    CodexWorkspaceNotConnectedError,
)
from .events import AppServerEventHandler, route_app_server_event
from .merge import choose_richer_item, merge_thread_items
from .models import (
    AccessMode,
    AgentRun,
    ApprovalDecision,
    ApprovalRequest,
    ConversationItem,
    DebugEntry,
    FileChange,
    LastAgentMessage,
    MessageItem,
    QueuedMessage,
    RateLimitSnapshot,
    ReasoningEffort,
    ReasoningItem,
    ReviewItem,
    ReviewTarget,
    ThreadStatus,
    ThreadSummary,
    ThreadTokenUsage,
    ToolItem,
    TurnPlan,
    WorkspaceInfo,
)
from .review import format_review_label, parse_review_target
from .session import AppServerBackend, WorkspaceSession
from .store import ThreadState, reduce_thread_state

__all__ = [
    "AccessMode",
    "AgentRun",
    "AppServerBackend",
    "AppServerEventHandler",
    "ApprovalDecision",
    "ApprovalRequest",
    "CodexError",
    "CodexMessageParseError",
    "CodexProtocolError",
    "CodexTimeoutError",
    "CodexTransportError",
    "CodexWorkspaceNotConnectedError",
    "ConversationItem",
    "DebugEntry",
    "EngineConfig",
    "FileChange",
    "LastAgentMessage",
    "MessageItem",
    "QueuedMessage",
    "RateLimitSnapshot",
    "ReasoningEffort",
    "ReasoningItem",
    "ReviewItem",
    "ReviewTarget",
    "ThreadBackend",
    "ThreadEngine",
    "ThreadState",
    "ThreadStatus",
    "ThreadSummary",
    "ThreadTokenUsage",
    "ToolItem",
    "TurnPlan",
    "WorkspaceInfo",
    "WorkspaceSession",
    "choose_richer_item",
    "format_review_label",
    "merge_thread_items",
    "parse_review_target",
    "reduce_thread_state",
    "route_app_server_event",
]
