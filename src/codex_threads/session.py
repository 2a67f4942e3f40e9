from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shlex
from collections.abc import Mapping, Sequence
from typing import Any, Callable

from .backend import ThreadBackend
from .errors import (
    CodexMessageParseError,
    CodexProtocolError,
    CodexTimeoutError,
    CodexTransportError,
    CodexWorkspaceNotConnectedError,
)
from .events import AppServerEventHandler, route_app_server_event
from .models import AccessMode, ReasoningEffort, RequestId, ReviewTarget, WorkspaceInfo
from .protocol import (
    ACCOUNT_RATE_LIMITS_READ_METHOD,
    CONNECTED_METHOD,
    INITIALIZE_METHOD,
    INITIALIZED_NOTIFICATION,
    PARSE_ERROR_METHOD,
    REVIEW_START_METHOD,
    STDERR_METHOD,
    THREAD_ARCHIVE_METHOD,
    THREAD_LIST_METHOD,
    THREAD_RESUME_METHOD,
    THREAD_START_METHOD,
    TURN_INTERRUPT_METHOD,
    TURN_START_METHOD,
    extract_error,
    is_response_message,
    make_notification,
    make_request,
    make_result_response,
)
from .review import review_target_to_params
from .transport import StdioTransport, Transport, WebSocketTransport

logger = logging.getLogger(__name__)

EventSink = Callable[[str, dict[str, Any]], None]
TransportFactory = Callable[[WorkspaceInfo], Transport]

CLIENT_INFO = {
    "name": "codex_threads",
    "title": "Codex Threads",
    "version": "0.1.0",
}


class WorkspaceSession:
    """One JSON-RPC session with an app-server, bound to a single workspace.

    Responses resolve the matching request future. Every other message,
    including server-initiated requests and synthetic `codex/*` events, is
    passed to the event sink with the workspace id.
    """

    def __init__(
        self,
        workspace: WorkspaceInfo,
        transport: Transport,
        *,
        event_sink: EventSink | None = None,
        request_timeout: float = 30.0,
        initialize_timeout: float = 15.0,
    ) -> None:
        """Create an unstarted session.

        Args:
            workspace: Workspace the session serves; its path is sent as `cwd`.
            transport: Connectable transport instance.
            event_sink: Receives `(workspace_id, message)` for non-response traffic.
            request_timeout: Default timeout for request/response calls.
            initialize_timeout: Timeout for the `initialize` handshake.
        """
        self._workspace = workspace
        self._transport = transport
        self._event_sink = event_sink
        self._request_timeout = request_timeout
        self._initialize_timeout = initialize_timeout

        self._next_request_id = 1
        self._pending: dict[int, asyncio.Future[dict[str, Any]]] = {}

        self._send_lock = asyncio.Lock()
        self._receiver_task: asyncio.Task[None] | None = None
        self._diagnostics_task: asyncio.Task[None] | None = None
        self._started = False
        self._closed = False
        self._receiver_error: CodexTransportError | None = None

    @property
    def workspace(self) -> WorkspaceInfo:
        return self._workspace

    @property
    def is_started(self) -> bool:
        return self._started and not self._closed

    @property
    def has_failed(self) -> bool:
        """True once the receiver loop died; the session cannot recover."""
        return self._receiver_error is not None

    async def start(self) -> WorkspaceSession:
        """Connect, run the initialize handshake and announce the connection.

        Raises:
            CodexTimeoutError: If `initialize` is not answered in time. The
                transport is closed before raising.
            CodexTransportError: If the session is closed or the transport fails.
        """
        if self._closed:
            raise CodexTransportError("session is closed")
        if self._started:
            return self
        await self._transport.connect()
        self._start_receiver()

        try:
            await self.request(
                INITIALIZE_METHOD,
                {"clientInfo": dict(CLIENT_INFO)},
                timeout=self._initialize_timeout,
            )
        except CodexTimeoutError as exc:
            await self.close()
            raise CodexTimeoutError(
                "app-server did not respond to initialize; "
                "check that `codex app-server` runs in a terminal"
            ) from exc
        except Exception:
            await self.close()
            raise
        await self.notify(INITIALIZED_NOTIFICATION)
        self._started = True

        self._emit(CONNECTED_METHOD, {"workspaceId": self._workspace.id})
        return self

    async def close(self) -> None:
        """Stop background loops, fail pending requests, and close transport."""
        if self._closed:
            return
        self._closed = True

        for task in (self._receiver_task, self._diagnostics_task):
            if task is None:
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._receiver_task = None
        self._diagnostics_task = None

        for future in list(self._pending.values()):
            if not future.done():
                future.set_exception(CodexTransportError("session is closing"))
        self._pending.clear()

        await self._transport.close()
        self._started = False

    async def request(
        self,
        method: str,
        params: Any = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Send a JSON-RPC request and await response result."""
        if self._closed:
            raise CodexTransportError("session is closed")
        if self._receiver_error is not None:
            raise CodexTransportError(f"session is not receiving: {self._receiver_error}")

        request_id = self._next_request_id
        self._next_request_id += 1

        message = make_request(request_id, method, params)
        loop = asyncio.get_running_loop()
        future: asyncio.Future[dict[str, Any]] = loop.create_future()
        self._pending[request_id] = future

        try:
            async with self._send_lock:
                await self._transport.send(message)
        except Exception:
            self._pending.pop(request_id, None)
            raise

        timeout_seconds = timeout if timeout is not None else self._request_timeout
        try:
            response = await asyncio.wait_for(future, timeout=timeout_seconds)
        except asyncio.TimeoutError as exc:
            self._pending.pop(request_id, None)
            raise CodexTimeoutError(
                f"request timed out for method={method!r} after {timeout_seconds:.1f}s"
            ) from exc

        error = extract_error(response)
        if error is not None:
            code = error.get("code")
            message_text = str(error.get("message", "JSON-RPC error"))
            raise CodexProtocolError(
                f"{method} failed: {message_text}",
                code=code if isinstance(code, int) else None,
                data=error.get("data"),
            )
        return response.get("result")

    async def notify(self, method: str, params: Any = None) -> None:
        """Send a JSON-RPC notification."""
        async with self._send_lock:
            await self._transport.send(make_notification(method, params))

    async def respond(self, request_id: RequestId, result: Any) -> None:
        """Answer a server-initiated request with a result."""
        async with self._send_lock:
            await self._transport.send(make_result_response(request_id, result))

    def _emit(self, method: str, params: dict[str, Any]) -> None:
        self._dispatch_event({"method": method, "params": params})

    def _dispatch_event(self, message: dict[str, Any]) -> None:
        if self._event_sink is None:
            return
        self._event_sink(self._workspace.id, message)

    def _start_receiver(self) -> None:
        """Start background receive loops exactly once."""
        if self._receiver_task is not None:
            return
        self._receiver_task = asyncio.create_task(self._receiver_loop())
        self._diagnostics_task = asyncio.create_task(self._diagnostics_loop())

    async def _receiver_loop(self) -> None:
        """Route incoming transport messages to request futures or the event sink."""
        try:
            while not self._closed:
                try:
                    payload = await self._transport.recv()
                except CodexMessageParseError as exc:
                    self._emit(PARSE_ERROR_METHOD, {"error": str(exc), "raw": exc.raw})
                    continue

                if is_response_message(payload):
                    response_id = payload.get("id")
                    if isinstance(response_id, int):
                        future = self._pending.pop(response_id, None)
                        if future is not None and not future.done():
                            future.set_result(payload)
                    continue

                if isinstance(payload.get("method"), str):
                    self._dispatch_event(payload)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if self._closed:
                return
            logger.warning(
                "receiver loop for workspace %s failed: %s",
                self._workspace.id,
                exc,
            )
            transport_error = CodexTransportError(f"receiver loop failed: {exc}")
            self._receiver_error = transport_error
            self._started = False
            for future in list(self._pending.values()):
                if not future.done():
                    future.set_exception(transport_error)
            self._pending.clear()

    async def _diagnostics_loop(self) -> None:
        """Forward transport diagnostic lines (stdio stderr) as events."""
        while not self._closed:
            line = await self._transport.read_diagnostic_line()
            if line is None:
                return
            self._emit(STDERR_METHOD, {"message": line})


def sandbox_policy_for(access_mode: AccessMode, workspace_path: str) -> dict[str, Any]:
    """Map an access mode to the `turn/start` sandbox policy."""
    if access_mode == "full-access":
        return {"type": "dangerFullAccess"}
    if access_mode == "read-only":
        return {"type": "readOnly"}
    return {
        "type": "workspaceWrite",
        "writableRoots": [workspace_path],
        "networkAccess": True,
    }


def approval_policy_for(access_mode: AccessMode) -> str:
    return "never" if access_mode == "full-access" else "on-request"


class AppServerBackend(ThreadBackend):
    """`ThreadBackend` speaking app-server JSON-RPC, one session per workspace."""

    def __init__(
        self,
        transport_factory: TransportFactory,
        *,
        request_timeout: float = 30.0,
        initialize_timeout: float = 15.0,
    ) -> None:
        """Create a backend with no connected workspaces.

        Args:
            transport_factory: Builds a fresh transport for a workspace.
            request_timeout: Default timeout for request/response calls.
            initialize_timeout: Timeout for each session's `initialize` handshake.
        """
        self._transport_factory = transport_factory
        self._request_timeout = request_timeout
        self._initialize_timeout = initialize_timeout
        self._sessions: dict[str, WorkspaceSession] = {}
        self._handlers: AppServerEventHandler | None = None

    @classmethod
    def connect_stdio(
        cls,
        *,
        command: Sequence[str] | None = None,
        env: Mapping[str, str] | None = None,
        connect_timeout: float = 30.0,
        request_timeout: float = 30.0,
        initialize_timeout: float = 15.0,
    ) -> AppServerBackend:
        """Create a backend that spawns one app-server process per workspace.

        Args:
            command: Optional command argv. Defaults to `CODEX_APP_SERVER_CMD`
                or `["codex", "app-server"]`.
            env: Optional subprocess environment overrides.
            connect_timeout: Subprocess spawn timeout in seconds.
            request_timeout: Default request/response timeout in seconds.
            initialize_timeout: Handshake timeout in seconds.
        """
        resolved_command = list(command) if command is not None else _default_stdio_command()

        def factory(workspace: WorkspaceInfo) -> Transport:
            return StdioTransport(
                resolved_command,
                cwd=workspace.path,
                env=env,
                connect_timeout=connect_timeout,
            )

        return cls(
            factory,
            request_timeout=request_timeout,
            initialize_timeout=initialize_timeout,
        )

    @classmethod
    def connect_websocket(
        cls,
        *,
        url: str | None = None,
        token: str | None = None,
        headers: Mapping[str, str] | None = None,
        connect_timeout: float = 30.0,
        request_timeout: float = 30.0,
        initialize_timeout: float = 15.0,
    ) -> AppServerBackend:
        """Create a backend that opens one websocket per workspace.

        Args:
            url: Optional websocket URL. Defaults to `CODEX_APP_SERVER_WS_URL`
                or `ws://127.0.0.1:8765`.
            token: Optional bearer token. Defaults to `CODEX_APP_SERVER_TOKEN`.
            headers: Optional extra websocket headers.
            connect_timeout: Websocket handshake timeout in seconds.
            request_timeout: Default request/response timeout in seconds.
            initialize_timeout: Handshake timeout in seconds.
        """
        resolved_url = url or os.getenv("CODEX_APP_SERVER_WS_URL") or "ws://127.0.0.1:8765"
        resolved_token = token or os.getenv("CODEX_APP_SERVER_TOKEN")
        resolved_headers = dict(headers) if headers is not None else {}
        if resolved_token and "Authorization" not in resolved_headers:
            resolved_headers["Authorization"] = f"Bearer {resolved_token}"

        def factory(workspace: WorkspaceInfo) -> Transport:
            return WebSocketTransport(
                resolved_url,
                headers=resolved_headers,
                connect_timeout=connect_timeout,
            )

        return cls(
            factory,
            request_timeout=request_timeout,
            initialize_timeout=initialize_timeout,
        )

    def bind(self, handlers: AppServerEventHandler) -> None:
        """Route events from every session into `handlers` (usually a `ThreadEngine`)."""
        self._handlers = handlers

    def is_connected(self, workspace_id: str) -> bool:
        session = self._sessions.get(workspace_id)
        return session is not None and session.is_started

    async def connect_workspace(self, workspace: WorkspaceInfo) -> WorkspaceSession:
        """Start a session for the workspace, reusing a live one."""
        existing = self._sessions.get(workspace.id)
        if existing is not None:
            if existing.is_started:
                return existing
            if existing.has_failed:
                await existing.close()

        session = WorkspaceSession(
            workspace,
            self._transport_factory(workspace),
            event_sink=self._route_event,
            request_timeout=self._request_timeout,
            initialize_timeout=self._initialize_timeout,
        )
        self._sessions[workspace.id] = session
        try:
            await session.start()
        except Exception:
            self._sessions.pop(workspace.id, None)
            raise
        return session

    async def disconnect_workspace(self, workspace_id: str) -> None:
        session = self._sessions.pop(workspace_id, None)
        if session is not None:
            await session.close()

    async def aclose(self) -> None:
        """Close every workspace session."""
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            await session.close()

    async def start_thread(self, workspace_id: str) -> Any:
        session = self._session(workspace_id)
        return await session.request(
            THREAD_START_METHOD,
            {"cwd": session.workspace.path, "approvalPolicy": "on-request"},
        )

    async def resume_thread(self, workspace_id: str, thread_id: str) -> Any:
        return await self._session(workspace_id).request(
            THREAD_RESUME_METHOD,
            {"threadId": thread_id},
        )

    async def list_threads(
        self,
        workspace_id: str,
        cursor: str | None,
        limit: int,
    ) -> Any:
        return await self._session(workspace_id).request(
            THREAD_LIST_METHOD,
            {"cursor": cursor, "limit": limit},
        )

    async def archive_thread(self, workspace_id: str, thread_id: str) -> Any:
        return await self._session(workspace_id).request(
            THREAD_ARCHIVE_METHOD,
            {"threadId": thread_id},
        )

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
        session = self._session(workspace_id)
        path = session.workspace.path
        return await session.request(
            TURN_START_METHOD,
            {
                "threadId": thread_id,
                "input": [{"type": "text", "text": text}],
                "cwd": path,
                "approvalPolicy": approval_policy_for(access_mode),
                "sandboxPolicy": sandbox_policy_for(access_mode, path),
                "model": model,
                "effort": effort,
            },
        )

    async def start_review(
        self,
        workspace_id: str,
        thread_id: str,
        target: ReviewTarget,
        delivery: str = "inline",
    ) -> Any:
        params: dict[str, Any] = {
            "threadId": thread_id,
            "target": review_target_to_params(target),
        }
        if delivery:
            params["delivery"] = delivery
        return await self._session(workspace_id).request(REVIEW_START_METHOD, params)

    async def interrupt_turn(self, workspace_id: str, thread_id: str, turn_id: str) -> Any:
        return await self._session(workspace_id).request(
            TURN_INTERRUPT_METHOD,
            {"threadId": thread_id, "turnId": turn_id},
        )

    async def respond_to_server_request(
        self,
        workspace_id: str,
        request_id: RequestId,
        result: Any,
    ) -> None:
        await self._session(workspace_id).respond(request_id, result)

    async def account_rate_limits(self, workspace_id: str) -> Any:
        return await self._session(workspace_id).request(ACCOUNT_RATE_LIMITS_READ_METHOD, None)

    def _session(self, workspace_id: str) -> WorkspaceSession:
        session = self._sessions.get(workspace_id)
        if session is None:
            raise CodexWorkspaceNotConnectedError(workspace_id)
        return session

    def _route_event(self, workspace_id: str, message: dict[str, Any]) -> None:
        if self._handlers is None:
            logger.debug("dropping %s event: no handlers bound", message.get("method"))
            return
        route_app_server_event(self._handlers, workspace_id, message)


def _default_stdio_command() -> list[str]:
    """Return default app-server command for stdio mode."""
    from_env = os.getenv("CODEX_APP_SERVER_CMD")
    if from_env:
        return shlex.split(from_env)
    return ["codex", "app-server"]
