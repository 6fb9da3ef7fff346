"""
Signaling Client

Peer-side connection to the relay server over WebSocket.

Requests (create/join/leave) carry a ``requestId`` and are answered by a
reply echoing it along with a ``success`` flag; everything else the relay pushes
(forwarded signals, offers, peer-joined/peer-left) goes to handlers
registered with ``on``.
"""

import asyncio
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import websockets

from ..errors import ChannelFailed, error_for

logger = logging.getLogger(__name__)

EventHandler = Callable[[dict], Union[None, Awaitable[None]]]


class SignalingClient:
    """JSON event client for the relay WebSocket."""

    def __init__(self, url: str, request_timeout: float = 10.0):
        self.url = url
        self.request_timeout = request_timeout

        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._pending: Dict[int, asyncio.Future] = {}
        self._next_request_id = 0
        self._handlers: Dict[str, EventHandler] = {}

    @property
    def is_connected(self) -> bool:
        return self._ws is not None

    def on(self, event: str):
        """Decorator to register a handler for pushed events."""
        def decorator(handler: EventHandler):
            self._handlers[event] = handler
            return handler
        return decorator

    def set_handler(self, event: str, handler: EventHandler):
        self._handlers[event] = handler

    async def connect(self):
        """Open the WebSocket and start the reader task."""
        try:
            self._ws = await websockets.connect(self.url)
        except (OSError, websockets.WebSocketException) as e:
            raise ChannelFailed(f"Cannot reach relay at {self.url}: {e}") from e

        self._reader = asyncio.create_task(self._read_loop())
        logger.info(f"Connected to relay {self.url}")

    async def close(self):
        if self._ws is not None:
            await self._ws.close()
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        self._ws = None

    async def send(self, event: str, **fields: Any):
        """Fire-and-forget event."""
        if self._ws is None:
            raise ChannelFailed("Not connected to relay")
        await self._ws.send(json.dumps({'event': event, **fields}))

    async def request(self, event: str, **fields: Any) -> dict:
        """
        Send an event and wait for its reply.

        Raises:
            PeerDropError: the matching error kind when the reply has
                ``success: false``
        """
        self._next_request_id += 1
        request_id = self._next_request_id
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self.send(event, requestId=request_id, **fields)
            reply = await asyncio.wait_for(future, timeout=self.request_timeout)
        finally:
            self._pending.pop(request_id, None)

        if not reply.get('success', False):
            raise error_for(reply.get('error', 'error'), reply.get('message'))
        return reply

    async def _read_loop(self):
        try:
            async for raw in self._ws:
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning(f"Undecodable relay message: {raw!r:.80}")
                    continue
                await self._dispatch(message)
        except websockets.ConnectionClosed:
            logger.info("Relay connection closed")
        finally:
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(ChannelFailed("Relay connection closed"))

    async def _dispatch(self, message: dict):
        event = message.get('event')

        request_id = message.get('requestId')
        future = self._pending.get(request_id) if isinstance(request_id, int) else None
        if future is not None and 'success' in message and not future.done():
            future.set_result(message)
            return

        if message.get('success') is False:
            # Reply to a fire-and-forget event, not a pushed event
            logger.warning(f"Relay rejected {event}: {message.get('error')}")
            return

        handler = self._handlers.get(event)
        if handler is None:
            logger.debug(f"No handler for {event}")
            return

        try:
            result = handler(message)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Handler for {event} failed: {e}", exc_info=True)
