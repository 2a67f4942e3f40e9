from __future__ import annotations

from codex_threads.models import (
    BaseBranchTarget,
    CommitTarget,
    CustomTarget,
    UncommittedChangesTarget,
)
from codex_threads.review import (
    format_review_label,
    is_review_command,
    parse_review_target,
    review_target_to_params,
)


def test_bare_review_targets_uncommitted_changes() -> None:
    target = parse_review_target("/review")
    assert target == UncommittedChangesTarget()
    assert format_review_label(target) == "current changes"


def test_review_base_branch() -> None:
    target = parse_review_target("/review base main")
    assert target == BaseBranchTarget(branch="main")
    assert format_review_label(target) == "base branch main"


def test_review_commit_with_title() -> None:
    target = parse_review_target("/review commit abc123 Fix bug")
    assert target == CommitTarget(sha="abc123", title="Fix bug")
    assert format_review_label(target) == "commit abc123: Fix bug"


def test_review_commit_without_title() -> None:
    target = parse_review_target("/review commit abc123")
    assert target == CommitTarget(sha="abc123")
    assert format_review_label(target) == "commit abc123"
    assert review_target_to_params(target) == {"type": "commit", "sha": "abc123"}


def test_review_custom_and_free_text() -> None:
    assert parse_review_target("/review custom check the tests") == CustomTarget(
        instructions="check the tests"
    )
    assert parse_review_target("/REVIEW look for races") == CustomTarget(
        instructions="look for races"
    )


def test_custom_label_truncates_long_instructions() -> None:
    target = CustomTarget(instructions="y" * 100)
    assert format_review_label(target) == "y" * 80 + "…"
    assert format_review_label(CustomTarget(instructions="  ")) == "custom review"


def test_is_review_command() -> None:
    assert is_review_command("  /review base main")
    assert not is_review_command("please /review this")


def test_review_target_params_use_protocol_shape() -> None:
    assert review_target_to_params(UncommittedChangesTarget()) == {"type": "uncommittedChanges"}
    assert review_target_to_params(BaseBranchTarget(branch="dev")) == {
        "type": "baseBranch",
        "branch": "dev",
    }
