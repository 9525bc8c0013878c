"""
Listener bus for sync notifications.

Listeners subscribe to four events (sync start, update, sync complete, error).
Each hook invocation is isolated: a failing listener is logged and the
remaining listeners, as well as the engine, carry on. Coroutine hooks are
scheduled as background tasks so a slow listener never delays the engine;
`drain()` awaits them for graceful shutdown.
"""

import asyncio
import inspect
from enum import Enum
from typing import Any, Callable, Dict, List, Set

from .logging_manager import get_logger

logger = get_logger(__name__)


class SyncEvent(str, Enum):
    SYNC_START = "sync_start"
    UPDATE = "update"
    SYNC_COMPLETE = "sync_complete"
    ERROR = "error"


_HOOK_NAMES: Dict[SyncEvent, str] = {
    SyncEvent.SYNC_START: "on_sync_start",
    SyncEvent.UPDATE: "on_update",
    SyncEvent.SYNC_COMPLETE: "on_sync_complete",
    SyncEvent.ERROR: "on_error",
}


class SyncListener:
    """
    Base class for sync listeners. Override any subset of the hooks; each may
    be a plain method or a coroutine function.
    """

    def on_sync_start(self) -> Any:
        pass

    def on_update(self, records) -> Any:
        pass

    def on_sync_complete(self, result) -> Any:
        pass

    def on_error(self, error: BaseException) -> Any:
        pass


class ListenerBus:
    """Registration-ordered fan-out of sync events to listeners."""

    def __init__(self):
        self._listeners: List[Any] = []
        self._pending: Set[asyncio.Task] = set()

    def register(self, listener: Any) -> Callable[[], None]:
        """
        Register a listener and return a function that unregisters it.
        """
        self._listeners.append(listener)

        def unregister() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return unregister

    def unregister_all(self) -> None:
        self._listeners.clear()

    def __len__(self) -> int:
        return len(self._listeners)

    def emit(self, event: SyncEvent, *args: Any) -> None:
        """Invoke the hook for `event` on every listener, in registration order."""
        hook_name = _HOOK_NAMES[SyncEvent(event)]
        for listener in list(self._listeners):
            hook = getattr(listener, hook_name, None)
            if hook is None:
                continue
            try:
                result = hook(*args)
            except Exception as e:
                self._log_failure(listener, hook_name, e)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(self._await_hook(result, listener, hook_name))
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)

    async def _await_hook(self, awaitable, listener: Any, hook_name: str) -> None:
        try:
            await awaitable
        except Exception as e:
            self._log_failure(listener, hook_name, e)

    @staticmethod
    def _log_failure(listener: Any, hook_name: str, error: Exception) -> None:
        logger.warning(f"Listener {type(listener).__name__}.{hook_name} failed: {error}",
                       extra={'details': {'listener': type(listener).__name__, 'hook': hook_name,
                                          'exception': type(error).__name__}})

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for all scheduled listener coroutines to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
