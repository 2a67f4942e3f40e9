#!/usr/bin/env python3
"""Connect one workspace to codex app-server and follow its threads.

This example demonstrates:
- stdio or websocket backends, one session per workspace
- listing stored threads whose cwd matches the workspace path
- sending a prompt through the queue-aware `handle_send`
- printing debug entries and streamed agent messages as they arrive
- declining approval requests so unattended runs never hang
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import shlex
import sys
from pathlib import Path

from codex_threads import (
    AppServerBackend,
    CodexProtocolError,
    CodexTimeoutError,
    CodexTransportError,
    DebugEntry,
    EngineConfig,
    MessageItem,
    ThreadEngine,
    WorkspaceInfo,
)


def parse_args() -> argparse.Namespace:
    """Parse CLI options for the monitor example."""
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--transport",
        choices=["stdio", "websocket"],
        default="stdio",
        help="Transport mode.",
    )
    parser.add_argument(
        "--cmd",
        help="Command used to launch app-server, e.g. 'codex app-server'.",
    )
    parser.add_argument(
        "--url",
        default=os.getenv("CODEX_APP_SERVER_WS_URL", "ws://127.0.0.1:8765"),
        help="Websocket URL.",
    )
    parser.add_argument(
        "--token",
        default=os.getenv("CODEX_APP_SERVER_TOKEN"),
        help="Optional websocket bearer token.",
    )
    parser.add_argument(
        "--workspace",
        default=os.getcwd(),
        help="Workspace directory; threads are filtered by this cwd.",
    )
    parser.add_argument(
        "--prompt",
        help="Optional prompt to send on the most recent (or a new) thread.",
    )
    parser.add_argument(
        "--model",
        help="Optional model override for new turns.",
    )
    parser.add_argument(
        "--access-mode",
        choices=["read-only", "current", "full-access"],
        default="read-only",
        help="Sandbox access for turns started by this example.",
    )
    parser.add_argument(
        "--wait",
        type=float,
        default=120.0,
        help="Seconds to wait for the turn to finish after sending a prompt.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Print every debug entry (requests, responses, raw events).",
    )
    return parser.parse_args()


def _make_backend(args: argparse.Namespace) -> AppServerBackend:
    if args.transport == "websocket":
        return AppServerBackend.connect_websocket(url=args.url, token=args.token)
    command = shlex.split(args.cmd) if args.cmd else None
    return AppServerBackend.connect_stdio(command=command)


def _print_debug(entry: DebugEntry) -> None:
    print(f"[{entry.source}] {entry.label}", file=sys.stderr)


async def _wait_until_idle(engine: ThreadEngine, thread_id: str, timeout: float) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        status = engine.thread_status_by_id.get(thread_id)
        if status is not None and not status.is_processing:
            return True
        await asyncio.sleep(0.25)
    return False


async def run_monitor(args: argparse.Namespace) -> int:
    """Connect, list threads, optionally send a prompt, and print the transcript."""
    path = str(Path(args.workspace).resolve())
    workspace = WorkspaceInfo(id="workspace-1", path=path, name=Path(path).name, connected=True)
    backend = _make_backend(args)
    engine = ThreadEngine(
        backend,
        config=EngineConfig(model=args.model, access_mode=args.access_mode),
        active_workspace=workspace,
        on_debug=_print_debug if args.debug else None,
        on_workspace_connected=lambda workspace_id: print(f"[connected] {workspace_id}"),
    )
    backend.bind(engine)

    try:
        await backend.connect_workspace(workspace)
        await engine.list_threads_for_workspace(workspace)
        threads = engine.threads_by_workspace.get(workspace.id, ())
        print(f"[threads] {len(threads)} stored for {path}")
        for thread in threads:
            print(f"  {thread.id}  {thread.name}")

        if args.prompt:
            if threads:
                engine.set_active_thread_id(threads[0].id)
                await engine.wait_idle()
            await engine.handle_send(args.prompt)
            thread_id = engine.active_thread_id
            if thread_id is None:
                print("[error] no thread available", file=sys.stderr)
                return 1

            loop = asyncio.get_running_loop()
            deadline = loop.time() + args.wait
            while loop.time() < deadline:
                for approval in engine.approvals:
                    print(f"[approval] declining {approval.method}")
                    await engine.handle_approval_decision(approval, "decline")
                if await _wait_until_idle(engine, thread_id, 0.5):
                    break
            else:
                print("[warn] turn still running; interrupting", file=sys.stderr)
                await engine.interrupt_turn()

            for item in engine.active_items:
                if isinstance(item, MessageItem):
                    print(f"[{item.role}] {item.text}")
                else:
                    print(f"[{item.kind}] {item.id}")

        await engine.refresh_account_rate_limits()
        snapshot = engine.rate_limits_by_workspace.get(workspace.id)
        if snapshot is not None and snapshot.primary is not None:
            print(f"[rate-limits] primary used={snapshot.primary.used_percent}%")
        return 0
    except CodexTimeoutError as exc:
        print(f"[error] timeout: {exc}", file=sys.stderr)
        return 2
    except CodexProtocolError as exc:
        details = f" code={exc.code}" if exc.code is not None else ""
        print(f"[error] protocol:{details} {exc}", file=sys.stderr)
        return 3
    except CodexTransportError as exc:
        print(f"[error] transport: {exc}", file=sys.stderr)
        return 4
    except KeyboardInterrupt:
        print("\n[interrupt] user cancelled monitor", file=sys.stderr)
        return 130
    finally:
        await engine.aclose()
        await backend.aclose()


def main() -> None:
    """CLI entrypoint."""
    logging.basicConfig(level=logging.WARNING)
    args = parse_args()
    raise SystemExit(asyncio.run(run_monitor(args)))


if __name__ == "__main__":
    main()
