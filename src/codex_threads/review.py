from __future__ import annotations

import re

from .models import (
    BaseBranchTarget,
    CommitTarget,
    CustomTarget,
    ReviewTarget,
    UncommittedChangesTarget,
)
from .normalize import ELLIPSIS

REVIEW_COMMAND = "/review"

_REVIEW_PREFIX = re.compile(r"^/review\b", re.IGNORECASE)


def is_review_command(text: str) -> bool:
    """Return True when composer text should start a review instead of a turn."""
    return text.strip().startswith(REVIEW_COMMAND)


def parse_review_target(text: str) -> ReviewTarget:
    """Parse free-form `/review ...` input into a review target.

    Accepted shapes:
    - empty -> uncommitted changes
    - ``base <branch>`` -> base branch
    - ``commit <sha> [title...]`` -> commit, title optional
    - ``custom <instructions>`` or anything else -> custom instructions
    """
    rest = _REVIEW_PREFIX.sub("", text.strip(), count=1).strip()
    if not rest:
        return UncommittedChangesTarget()

    lower = rest.lower()
    if lower.startswith("base "):
        return BaseBranchTarget(branch=rest[5:].strip())

    if lower.startswith("commit "):
        sha, *title_parts = rest[7:].split()
        title = " ".join(title_parts).strip()
        return CommitTarget(sha=sha, title=title or None)

    if lower.startswith("custom "):
        return CustomTarget(instructions=rest[7:].strip())

    return CustomTarget(instructions=rest)


def format_review_label(target: ReviewTarget, *, max_chars: int = 80) -> str:
    """Human-readable label shown in the synthetic "review started" item."""
    if isinstance(target, UncommittedChangesTarget):
        return "current changes"
    if isinstance(target, BaseBranchTarget):
        return f"base branch {target.branch}"
    if isinstance(target, CommitTarget):
        if target.title:
            return f"commit {target.sha}: {target.title}"
        return f"commit {target.sha}"

    instructions = target.instructions.strip()
    if not instructions:
        return "custom review"
    if len(instructions) > max_chars:
        return f"{instructions[:max_chars]}{ELLIPSIS}"
    return instructions


def review_target_to_params(target: ReviewTarget) -> dict[str, str]:
    """Encode a review target for `review/start`, omitting an absent title."""
    return target.model_dump(exclude_none=True)
