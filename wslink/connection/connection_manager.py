# Connection Manager - Persistent WebSocket Connection
# Single long-lived connection with fixed-interval reconnect and keepalive pings

"""
Connection Manager Module

Responsibilities:
- Keep one WebSocket connection to the endpoint alive for the process lifetime
- Reconnect forever, at most once per reconnect interval
- Send an empty keepalive frame on every heartbeat tick while open
- Hand every received frame to the caller's handler, in arrival order
- Surface caller misuse (double start, send while closed) as exceptions

Connection cycle:
    idle -> connecting -> open -> closed | errored
                       -> closed | errored
Every closed/errored cycle schedules a reconnect, which starts a new
cycle with a fresh connection.
"""

import asyncio
import functools
import inspect
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import websockets
from websockets.protocol import State

from ..utils.helpers import build_uri, format_local_time, mask_uri
from ..utils.logger import register_secret, setup_logger

# Seconds between keepalive ticks
HEARTBEAT_INTERVAL = 50
# Minimum seconds between two connection attempts
RECONNECT_INTERVAL = 5

MessageHandler = Callable[[Union[str, bytes]], Union[None, Awaitable[None]]]


class ConnectionState(Enum):
    """State of the current connection cycle"""
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    ERRORED = "errored"


class ConnectionManagerError(Exception):
    """Base class for connection manager errors"""


class AlreadyRunning(ConnectionManagerError):
    """start() was called on a manager that is already running"""


class NotConnected(ConnectionManagerError):
    """send() was called while no connection is open"""


class AlreadyConnecting(ConnectionManagerError):
    """A connection attempt was made while one is open or in progress"""


class ConnectionManager:
    """
    Persistent WebSocket client

    Features:
    - Fixed-floor reconnect: attempts are spaced at least
      ``reconnect_interval`` seconds apart, with no backoff growth
      and no attempt limit
    - Application-level heartbeat (empty text frame)
    - Raw text frames in both directions, no envelope
    - Status queries and counters for observability

    Must be started from inside a running asyncio event loop. All state
    is confined to that loop, so no locking is needed: the open/connecting
    check and the switch to CONNECTING happen in the same synchronous step.
    """

    def __init__(
        self,
        url: str,
        token: str,
        on_message: MessageHandler,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        reconnect_interval: float = RECONNECT_INTERVAL,
        connector: Optional[Callable[[str], Awaitable[Any]]] = None,
        clock: Optional[Callable[[], float]] = None
    ):
        """
        Initialize connection manager

        Args:
            url: WebSocket endpoint (ws:// or wss://)
            token: Auth token, sent as the ``Token`` query parameter
            on_message: Called with the payload of every received frame;
                coroutine functions are awaited before the next frame is read
            heartbeat_interval: Seconds between keepalive ticks
            reconnect_interval: Minimum seconds between connection attempts
            connector: Coroutine function opening a connection for a URI,
                defaults to ``websockets.connect`` without protocol pings
            clock: Monotonic clock used to space connection attempts
        """
        self.url = url
        self.token = token
        self.on_message = on_message
        self.heartbeat_interval = heartbeat_interval
        self.reconnect_interval = reconnect_interval
        self.uri = build_uri(url, token)

        # Liveness is the heartbeat below, not the library's ping/pong
        self._connector = connector or functools.partial(
            websockets.connect,
            ping_interval=None,
            close_timeout=10
        )
        self._clock = clock or time.monotonic

        # Connection state
        self.connection = None
        self.state = ConnectionState.IDLE
        self._started = False
        self._stopped = False
        self._last_connect_monotonic = 0.0
        self._last_connect_wall: Optional[float] = None

        # Tasks
        self._cycle_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None

        self.stats = {
            'connect_attempts': 0,
            'messages_received': 0,
            'handler_errors': 0,
            'pings_sent': 0,
            'ping_failures': 0,
            'reconnects_scheduled': 0,
        }

        self.logger = setup_logger("ConnectionManager", "INFO")
        register_secret(token)

    def start(self):
        """
        Connect and arm the heartbeat

        Returns immediately; the connection is established in the background.

        Raises:
            AlreadyRunning: If the manager was started or stopped before
            RuntimeError: If called outside a running event loop
        """
        asyncio.get_running_loop()

        if self._started:
            raise AlreadyRunning("ConnectionManager is already running")
        if self._stopped:
            raise AlreadyRunning("ConnectionManager was stopped")

        self._started = True
        self._connect()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def send(self, message: str):
        """
        Send a text frame verbatim

        Args:
            message: Payload, may be empty

        Raises:
            NotConnected: If no connection is open; nothing is transmitted
        """
        if not self.is_open():
            raise NotConnected("WebSocket is not open")

        await self.connection.send(message)

    def is_open(self) -> bool:
        """Check if the current connection is open"""
        return (
            self.state == ConnectionState.OPEN
            and self.connection is not None
            and self.connection.state is State.OPEN
        )

    def is_connecting(self) -> bool:
        """Check if a connection attempt is in progress"""
        return self.state == ConnectionState.CONNECTING

    def get_state(self) -> ConnectionState:
        """
        Get current connection state

        Returns:
            Current ConnectionState
        """
        return self.state

    def get_stats(self) -> Dict[str, Any]:
        """
        Get connection statistics

        Returns:
            Counters plus the current state and the wall-clock time of the
            last connection attempt
        """
        return {
            **self.stats,
            'state': self.state.value,
            'last_connect_time': (
                format_local_time(self._last_connect_wall)
                if self._last_connect_wall is not None else None
            ),
        }

    async def stop(self):
        """
        Cancel heartbeat, reconnect and connection tasks and close the socket

        Final: start() after stop() raises AlreadyRunning, even when the
        manager was never started.
        """
        if self._stopped:
            return
        self._stopped = True
        self.logger.info("Stopping...")

        current = asyncio.current_task()
        tasks = [
            task for task in (self._heartbeat_task, self._reconnect_task, self._cycle_task)
            if task is not None and not task.done() and task is not current
        ]
        self._cycle_task = None

        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        connection = self.connection
        self.connection = None
        if self._started:
            self.state = ConnectionState.CLOSED

        if connection is not None:
            try:
                await asyncio.wait_for(connection.close(), timeout=5.0)
            except asyncio.TimeoutError:
                self.logger.warning("Connection close timeout")
            except Exception as e:
                self.logger.warning(f"Error closing connection: {e}")

        self.logger.info("Stopped")

    def _connect(self):
        """Start a new connection cycle with a fresh connection"""
        if self.is_connecting() or self.is_open():
            raise AlreadyConnecting("WebSocket is already open or connecting")

        self._last_connect_monotonic = self._clock()
        self._last_connect_wall = time.time()
        self.state = ConnectionState.CONNECTING
        self.connection = None
        self.stats['connect_attempts'] += 1
        self._cycle_task = asyncio.create_task(self._run_cycle())

    async def _run_cycle(self):
        """
        Open the connection and read frames until it closes or fails

        Close and error both end the cycle and schedule a reconnect.
        """
        self.logger.info(f"Connecting to {mask_uri(self.uri, self.token)}...")

        try:
            connection = await self._connector(self.uri)
        except Exception as e:
            self._end_cycle(ConnectionState.ERRORED, f"websocket error {e}")
            return

        self.connection = connection
        self.state = ConnectionState.OPEN
        self.logger.info(f"websocket open {format_local_time()}")

        try:
            # Ends normally on a clean close, raises ConnectionClosedError otherwise
            async for message in connection:
                await self._handle_message(message)
        except Exception as e:
            self._end_cycle(ConnectionState.ERRORED, f"websocket error {e}")
            return

        self._end_cycle(ConnectionState.CLOSED, "websocket close")

    def _end_cycle(self, state: ConnectionState, reason: str):
        # A cycle replaced by a newer one or by stop() leaves state alone
        if self._cycle_task is not asyncio.current_task():
            return

        self.state = state
        self.connection = None
        self.logger.warning(reason)
        self._schedule_reconnect()

    async def _handle_message(self, message: Union[str, bytes]):
        """
        Forward one frame to the handler

        Handler errors are logged and counted; the connection stays up.
        """
        self.stats['messages_received'] += 1
        try:
            result = self.on_message(message)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self.stats['handler_errors'] += 1
            self.logger.error(f"Error handling message: {e}")

    def _schedule_reconnect(self):
        """
        Schedule the next connection attempt

        The delay is anchored to the start of the last attempt, so attempts
        are never closer than reconnect_interval, and a connection that lived
        longer than that is retried without extra delay.
        """
        if self._stopped:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self.logger.debug("Reconnect already scheduled")
            return

        elapsed = self._clock() - self._last_connect_monotonic
        delay = max(0.0, self.reconnect_interval - elapsed)

        self.stats['reconnects_scheduled'] += 1
        self.logger.info(f"Reconnecting in {delay:.1f}s...")
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float):
        await asyncio.sleep(delay)

        # Another trigger got there first
        if self.is_open() or self.is_connecting():
            return

        self._connect()

    async def _heartbeat_loop(self):
        """
        Send a keepalive frame every heartbeat_interval while open

        Never reconnects by itself and never stops on a failed ping.
        """
        while True:
            await asyncio.sleep(self.heartbeat_interval)

            try:
                if self.is_open():
                    await self._ping()
            except Exception as e:
                self.stats['ping_failures'] += 1
                self.logger.error(f"ping error {e}")

    async def _ping(self):
        self.logger.info(f"ping {format_local_time()}")
        await self.send('')
        self.stats['pings_sent'] += 1


# Process-wide instance handed out by get_connection_manager
_instance: Optional[ConnectionManager] = None

def get_connection_manager(url: str, token: str, on_message: MessageHandler, **kwargs) -> ConnectionManager:
    """
    Get the process-wide connection manager, creating it on first use

    The first caller's parameters win; later calls return the existing
    instance unchanged.

    Args:
        url: WebSocket endpoint
        token: Auth token
        on_message: Frame handler
        **kwargs: Extra ConnectionManager arguments (first call only)

    Returns:
        The shared ConnectionManager
    """
    global _instance
    if _instance is None:
        _instance = ConnectionManager(url, token, on_message, **kwargs)
    return _instance

def reset_connection_manager():
    """Forget the process-wide instance (does not stop it)"""
    global _instance
    _instance = None
