"""
Process lifecycle: STARTING -> SERVING -> DRAINING -> STOPPED.

The uvicorn server's own signal handling is disabled; LifecycleManager owns
SIGTERM/SIGINT so that a second signal cannot restart the drain timer and
the exit status reflects whether draining finished in time.
"""
from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import signal
from typing import Any, Dict, Optional

import uvicorn

from tileserver.errors import ShutdownTimeout
from tileserver.registry import ArchiveRegistry


log = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1

SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


class State(enum.Enum):
    STARTING = "starting"
    SERVING = "serving"
    DRAINING = "draining"
    STOPPED = "stopped"


class ManagedServer(uvicorn.Server):
    """uvicorn.Server that leaves signal handling to LifecycleManager."""

    def install_signal_handlers(self) -> None:  # uvicorn < 0.29
        return

    @contextlib.contextmanager
    def capture_signals(self):  # uvicorn >= 0.29
        yield


class LifecycleManager:
    def __init__(self, server: Any, registry: ArchiveRegistry, shutdown_timeout: float = 10.0):
        """
        Params:
            server: a uvicorn.Server (or anything with `serve()`, `should_exit`, `force_exit`)
            registry: archives to close once the server has stopped
            shutdown_timeout: seconds allowed for draining before forcing exit
        """
        self.server = server
        self.registry = registry
        self.shutdown_timeout = shutdown_timeout
        self.state = State.STARTING
        self.forced = False
        self._timer: Optional[asyncio.TimerHandle] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    async def run(self, install_signal_handlers: bool = True) -> int:
        """Serve until shut down; return the process exit status."""
        self._loop = asyncio.get_running_loop()
        self._loop.set_exception_handler(_log_loop_exception)
        if install_signal_handlers:
            self._install_signal_handlers()
        self.state = State.SERVING
        log.info("server starting", extra={"extra": {"state": self.state.value}})
        try:
            await self.server.serve()
            requested = self.state is State.DRAINING
        finally:
            if self._timer is not None:
                self._timer.cancel()
            if install_signal_handlers:
                self._remove_signal_handlers()
            self.registry.close_all()
            self.state = State.STOPPED

        if self.forced:
            return EXIT_FAILURE
        if not requested and not getattr(self.server, "started", True):
            # uvicorn returns without raising when lifespan startup fails
            log.error("server failed to start")
            return EXIT_FAILURE
        log.info("HTTP server closed", extra={"extra": {"state": self.state.value}})
        return EXIT_OK

    def request_shutdown(self, sig: Optional[int] = None) -> None:
        """Begin draining. Repeated calls while draining are ignored."""
        sig_name = signal.Signals(sig).name if sig is not None else None
        if self.state in (State.DRAINING, State.STOPPED):
            log.info("shutdown already in progress", extra={"extra": {"signal": sig_name}})
            return
        self.state = State.DRAINING
        log.info("Received shutdown signal. Closing server...", extra={"extra": {"signal": sig_name}})
        self.server.should_exit = True
        loop = self._loop or asyncio.get_running_loop()
        self._timer = loop.call_later(self.shutdown_timeout, self._force_shutdown)

    # -------- internals --------

    def _force_shutdown(self) -> None:
        if self.state is not State.DRAINING:
            return
        self.forced = True
        err = ShutdownTimeout(f"in-flight requests still running after {self.shutdown_timeout}s")
        log.error(
            "Could not close connections in time, forcefully shutting down",
            extra={"extra": {"error": str(err)}},
        )
        self.server.force_exit = True
        # asyncio.Server.wait_closed() would otherwise wait on stuck connections
        state = getattr(self.server, "server_state", None)
        for conn in list(getattr(state, "connections", ())):
            transport = getattr(conn, "transport", None)
            if transport is not None:
                transport.abort()

    def _install_signal_handlers(self) -> None:
        assert self._loop is not None
        for sig in SHUTDOWN_SIGNALS:
            try:
                self._loop.add_signal_handler(sig, self.request_shutdown, sig)
            except NotImplementedError:  # pragma: no cover - Windows
                signal.signal(sig, lambda s, _f: self._loop.call_soon_threadsafe(self.request_shutdown, s))

    def _remove_signal_handlers(self) -> None:
        assert self._loop is not None
        for sig in SHUTDOWN_SIGNALS:
            try:
                self._loop.remove_signal_handler(sig)
            except NotImplementedError:  # pragma: no cover - Windows
                signal.signal(sig, signal.SIG_DFL)


def _log_loop_exception(loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
    """Unhandled task errors are logged; the process stays up."""
    exc = context.get("exception")
    log.error(
        context.get("message", "unhandled exception in event loop"),
        exc_info=(type(exc), exc, exc.__traceback__) if exc is not None else None,
    )
