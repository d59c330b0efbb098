from __future__ import annotations

import asyncio
import threading

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect

from icu_handoff.schemas.session import SessionChangeEvent
from icu_handoff.services.session_store import InMemorySessionStore


class SessionFeedHub:
    """Pushes committed session changes to websocket subscribers.

    Store commits happen on request worker threads; each connection gets its
    own asyncio queue fed through ``call_soon_threadsafe`` so the event loop
    only ever touches the socket from its own thread.
    """

    def __init__(self, store: InMemorySessionStore) -> None:
        self.store = store
        self._lock = threading.Lock()
        self._connections = 0
        self._delivered = 0

    async def serve(self, websocket: WebSocket) -> None:
        await websocket.accept()
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[SessionChangeEvent] = asyncio.Queue()

        def _on_change(event: SessionChangeEvent) -> None:
            loop.call_soon_threadsafe(queue.put_nowait, event)

        unsubscribe = self.store.subscribe(_on_change)
        with self._lock:
            self._connections += 1
        print(f"[FEED][connect] connections={self._connections}", flush=True)

        forward = None
        receive = None
        try:
            await websocket.send_json({"type": "HELLO", "seq": self.store.last_seq})
            forward = asyncio.create_task(self._forward(websocket, queue))
            receive = asyncio.create_task(self._wait_for_disconnect(websocket))
            done, _ = await asyncio.wait({forward, receive}, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                exc = task.exception()
                if exc is not None and not isinstance(exc, WebSocketDisconnect):
                    raise exc
        except WebSocketDisconnect:
            pass
        finally:
            unsubscribe()
            for task in (forward, receive):
                if task is not None and not task.done():
                    task.cancel()
            with self._lock:
                self._connections -= 1
            print(f"[FEED][disconnect] connections={self._connections}", flush=True)

    async def _forward(self, websocket: WebSocket, queue: asyncio.Queue) -> None:
        while True:
            event = await queue.get()
            await websocket.send_json(event.model_dump(mode="json"))
            with self._lock:
                self._delivered += 1

    @staticmethod
    async def _wait_for_disconnect(websocket: WebSocket) -> None:
        # client frames carry no commands; only the close matters
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return

    def metrics(self) -> dict:
        with self._lock:
            return {"connections": self._connections, "delivered": self._delivered}
