from __future__ import annotations

from typing import Any


class CodexError(Exception):
    """Base exception for the codex-threads package."""


class CodexTransportError(CodexError):
    """Raised when the underlying transport fails or disconnects unexpectedly."""


class CodexMessageParseError(CodexTransportError):
    """Raised when the transport receives a line that is not valid JSON."""

    def __init__(self, message: str, *, raw: str) -> None:
        super().__init__(message)
        self.raw = raw


class CodexTimeoutError(CodexError):
    """Raised when a request exceeds its timeout policy."""


class CodexProtocolError(CodexError):
    """Raised when JSON-RPC or app-server protocol reports an error."""

    def __init__(
        self,
        message: str,
        *,
        code: int | None = None,
        data: Any = None,
    ) -> None:
        """Create a protocol error.

        Args:
            message: Human-readable description.
            code: Optional JSON-RPC error code.
            data: Optional protocol-provided error payload.
        """
        super().__init__(message)
        self.code = code
        self.data = data


class CodexWorkspaceNotConnectedError(CodexError):
    """Raised when a request targets a workspace without a live session."""

    def __init__(self, workspace_id: str) -> None:
        super().__init__(f"workspace not connected: {workspace_id}")
        self.workspace_id = workspace_id
