from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from .models import AccessMode, ReasoningEffort, RequestId, ReviewTarget


class ThreadBackend(ABC):
    """Abstract request surface the thread engine issues commands through.

    Every method returns the raw JSON-compatible response payload. Failures are
    raised as exceptions; the engine decides per operation whether to report or
    re-raise them.
    """

    @abstractmethod
    async def start_thread(self, workspace_id: str) -> Any:
        """Create a new thread in the workspace."""
        raise NotImplementedError

    @abstractmethod
    async def resume_thread(self, workspace_id: str, thread_id: str) -> Any:
        """Load a thread, including its turn history."""
        raise NotImplementedError

    @abstractmethod
    async def list_threads(
        self,
        workspace_id: str,
        cursor: str | None,
        limit: int,
    ) -> Any:
        """Return one page of stored threads."""
        raise NotImplementedError

    @abstractmethod
    async def archive_thread(self, workspace_id: str, thread_id: str) -> Any:
        """Archive a thread on the backend."""
        raise NotImplementedError

    @abstractmethod
    async def send_user_message(
        self,
        workspace_id: str,
        thread_id: str,
        text: str,
        *,
        model: str | None = None,
        effort: ReasoningEffort | None = None,
        access_mode: AccessMode = "current",
    ) -> Any:
        """Start a turn with one text input."""
        raise NotImplementedError

    @abstractmethod
    async def start_review(
        self,
        workspace_id: str,
        thread_id: str,
        target: ReviewTarget,
        delivery: str = "inline",
    ) -> Any:
        """Start a review turn against the given target."""
        raise NotImplementedError

    @abstractmethod
    async def interrupt_turn(self, workspace_id: str, thread_id: str, turn_id: str) -> Any:
        """Interrupt the in-flight turn."""
        raise NotImplementedError

    @abstractmethod
    async def respond_to_server_request(
        self,
        workspace_id: str,
        request_id: RequestId,
        result: Any,
    ) -> None:
        """Answer a server-initiated request such as an approval."""
        raise NotImplementedError

    @abstractmethod
    async def account_rate_limits(self, workspace_id: str) -> Any:
        """Read the account rate-limit snapshot."""
        raise NotImplementedError
