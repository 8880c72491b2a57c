"""Local HTTP surface for stream status and operator commands."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Any, Dict

from aiohttp import web
from aiohttp.web import AppKey

from .lock_manager import read_holder
from .orchestrator import CommandResult, Orchestrator

log = logging.getLogger("micwarden.control_api")

ORCHESTRATOR_KEY: AppKey[Orchestrator] = web.AppKey("orchestrator", Orchestrator)
INLINE_KEY: AppKey[bool] = web.AppKey("inline_commands", bool)
TIMEOUT_KEY: AppKey[float] = web.AppKey("command_timeout", float)


async def _dispatch(request: web.Request, command: str, name: str | None = None) -> CommandResult:
    orchestrator = request.app[ORCHESTRATOR_KEY]
    if request.app[INLINE_KEY]:
        return orchestrator.execute(command, name)
    future = orchestrator.submit(command, name)
    return await asyncio.wait_for(asyncio.wrap_future(future), timeout=request.app[TIMEOUT_KEY])


def _respond(result: CommandResult) -> web.Response:
    if result.ok:
        status = 200
    elif result.reason == "unknown_stream":
        status = 404
    elif result.reason == "shutting_down":
        status = 503
    else:
        status = 409
    return web.json_response(result.as_dict(), status=status)


async def _guarded(request: web.Request, command: str, name: str | None = None) -> web.Response:
    try:
        result = await _dispatch(request, command, name)
    except asyncio.TimeoutError:
        return web.json_response({"ok": False, "reason": "timeout"}, status=504)
    return _respond(result)


async def list_streams(request: web.Request) -> web.Response:
    return await _guarded(request, "status")


async def get_stream(request: web.Request) -> web.Response:
    return await _guarded(request, "status", request.match_info["name"])


async def start_all(request: web.Request) -> web.Response:
    return await _guarded(request, "start_all")


async def stop_stream(request: web.Request) -> web.Response:
    return await _guarded(request, "stop", request.match_info["name"])


async def restart_stream(request: web.Request) -> web.Response:
    return await _guarded(request, "restart", request.match_info["name"])


async def supervisor_info(request: web.Request) -> web.Response:
    orchestrator = request.app[ORCHESTRATOR_KEY]
    snapshot = orchestrator.snapshot
    payload: Dict[str, Any] = {
        "lock_file": str(orchestrator.lock_path) if orchestrator.lock_path else None,
        "lock_holder": read_holder(orchestrator.lock_path) if orchestrator.lock_path else None,
        "pid_dir": str(orchestrator.supervisor.pid_dir),
        "heartbeat_dir": str(orchestrator.heartbeat.heartbeat_dir),
        "snapshot_file": str(orchestrator.generator.snapshot_path),
        "snapshot_hash": snapshot.content_hash if snapshot else None,
        "streams": snapshot.names() if snapshot else [],
    }
    return web.json_response(payload)


async def health(request: web.Request) -> web.Response:
    return web.json_response({"ok": True, "time": time.time()})


def build_app(
    orchestrator: Orchestrator,
    *,
    inline: bool = False,
    command_timeout: float = 30.0,
) -> web.Application:
    """Create the aiohttp application.

    Commands are normally queued for the supervisor loop thread; ``inline``
    executes them on the request's event loop instead, for tests and tools
    that drive the orchestrator directly.
    """
    app = web.Application()
    app[ORCHESTRATOR_KEY] = orchestrator
    app[INLINE_KEY] = inline
    app[TIMEOUT_KEY] = float(command_timeout)
    app.router.add_get("/api/health", health)
    app.router.add_get("/api/supervisor", supervisor_info)
    app.router.add_get("/api/streams", list_streams)
    app.router.add_post("/api/streams/start-all", start_all)
    app.router.add_get("/api/streams/{name}", get_stream)
    app.router.add_post("/api/streams/{name}/stop", stop_stream)
    app.router.add_post("/api/streams/{name}/restart", restart_stream)
    return app


class ControlApiHandle:
    """Handle returned by start_control_api_in_thread(). Call stop() to shut down."""

    def __init__(self, thread: threading.Thread, loop: asyncio.AbstractEventLoop, runner: web.AppRunner):
        self.thread = thread
        self.loop = loop
        self.runner = runner

    def stop(self, timeout: float = 5.0) -> None:
        if self.loop.is_running():
            fut = asyncio.run_coroutine_threadsafe(self.runner.cleanup(), self.loop)
            try:
                fut.result(timeout=timeout)
            except Exception as exc:  # noqa: BLE001 - shutdown continues regardless
                log.warning("Error during control API cleanup: %r", exc)
            self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(timeout=timeout)
        log.info("Control API stopped")


def start_control_api_in_thread(
    orchestrator: Orchestrator,
    host: str = "127.0.0.1",
    port: int = 9780,
) -> ControlApiHandle:
    """Serve the control API from a dedicated thread with its own event loop."""
    loop = asyncio.new_event_loop()
    runner_box: Dict[str, web.AppRunner] = {}
    failure: Dict[str, BaseException] = {}
    ready = threading.Event()

    def _run() -> None:
        asyncio.set_event_loop(loop)
        runner = web.AppRunner(build_app(orchestrator), access_log=None)
        try:
            loop.run_until_complete(runner.setup())
            site = web.TCPSite(runner, host, port)
            loop.run_until_complete(site.start())
        except OSError as exc:
            failure["error"] = exc
            ready.set()
            loop.close()
            return
        runner_box["runner"] = runner
        log.info("Control API listening on %s:%s", host, port)
        ready.set()
        try:
            loop.run_forever()
        finally:
            loop.close()

    thread = threading.Thread(target=_run, name="micwarden-control-api", daemon=True)
    thread.start()
    ready.wait()
    if "error" in failure:
        raise failure["error"]
    return ControlApiHandle(thread, loop, runner_box["runner"])


__all__ = ["ControlApiHandle", "build_app", "start_control_api_in_thread"]
