# Broadcaster.py
# Push-channel fanout to connected dashboard clients.
#
# PushServer owns the set of connected WebSockets (the client registry).
# Broadcaster is the only thing the rest of the app writes through: it
# exposes emit_to_all() and stays a safe no-op until a server is attached.

import asyncio
import json
import logging
import threading
from typing import Any, Dict, List, Optional, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)


def frame(channel: str, payload: Any) -> str:
    return json.dumps({"event": channel, "data": payload}, ensure_ascii=False, default=str)


class PushServer:
    def __init__(self):
        self._ws_lock = threading.Lock()
        self._ws_clients: Set[WebSocket] = set()
        # last frame per channel, replayed to newly connected clients
        self._latest: Dict[str, Any] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._tasks: Set[asyncio.Future] = set()

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def client_count(self) -> int:
        with self._ws_lock:
            return len(self._ws_clients)

    def latest(self) -> Dict[str, Any]:
        with self._ws_lock:
            return dict(self._latest)

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        with self._ws_lock:
            self._ws_clients.add(ws)
            snap = list(self._latest.items())
        logger.info("[WS] client connected (%d total)", self.client_count())

        # Send latest values immediately if we have them
        for channel, payload in snap:
            try:
                await ws.send_text(frame(channel, payload))
            except Exception:
                self.disconnect(ws)
                return

    def disconnect(self, ws: WebSocket) -> None:
        with self._ws_lock:
            if ws not in self._ws_clients:
                return
            self._ws_clients.discard(ws)
        logger.info("[WS] client disconnected (%d left)", self.client_count())

    async def broadcast(self, channel: str, payload: Any) -> int:
        msg = frame(channel, payload)
        with self._ws_lock:
            self._latest[channel] = payload
            clients = list(self._ws_clients)

        dead: List[WebSocket] = []
        for ws in clients:
            try:
                await ws.send_text(msg)
            except Exception:
                dead.append(ws)

        if dead:
            with self._ws_lock:
                for ws in dead:
                    self._ws_clients.discard(ws)
            logger.info("[WS] dropped %d dead client(s)", len(dead))
        return len(clients) - len(dead)

    def emit(self, channel: str, payload: Any) -> None:
        """Schedule a broadcast without waiting for it."""
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is not None:
            task = running.create_task(self.broadcast(channel, payload))
        elif self._loop is not None and self._loop.is_running():
            task = asyncio.run_coroutine_threadsafe(self.broadcast(channel, payload), self._loop)
        else:
            logger.warning("[WS] no event loop to deliver %s", channel)
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def close(self) -> None:
        with self._ws_lock:
            clients = list(self._ws_clients)
            self._ws_clients.clear()
        for ws in clients:
            try:
                await ws.close()
            except Exception:
                pass
        pending = [t for t in self._tasks if isinstance(t, asyncio.Task)]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


class Broadcaster:
    def __init__(self, server: Optional[Any] = None):
        self._server = server

    def attach(self, server: Any) -> None:
        self._server = server

    def detach(self) -> None:
        self._server = None

    @property
    def ready(self) -> bool:
        return self._server is not None

    def emit_to_all(self, channel: str, payload: Any) -> None:
        if not self.ready:
            logger.warning("[WS] push server not initialized yet; cannot emit %s", channel)
            return
        self._server.emit(channel, payload)
