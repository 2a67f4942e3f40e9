from __future__ import annotations

from dataclasses import dataclass

from .models import AccessMode, ReasoningEffort


@dataclass(slots=True)
class EngineConfig:
    """Per-engine turn defaults and list/label limits.

    Attributes:
        model: Model id sent with every `turn/start`, or None for server default.
        effort: Reasoning effort sent with every `turn/start`.
        access_mode: Sandbox preset applied to new turns.
        thread_list_target_count: Matching threads to collect before paging stops.
        thread_list_page_size: Page size requested from `thread/list`.
        thread_name_max_chars: Preview length before a thread name is truncated.
        review_label_max_chars: Custom review instructions length before truncation.
        latest_runs_limit: Entries returned by `ThreadEngine.latest_agent_runs()`.
    """

    model: str | None = None
    effort: ReasoningEffort | None = None
    access_mode: AccessMode = "current"
    thread_list_target_count: int = 20
    thread_list_page_size: int = 20
    thread_name_max_chars: int = 38
    review_label_max_chars: int = 80
    latest_runs_limit: int = 3
