"""Cross-process sync messages.

Engines sharing one store tell each other when a workflow was switched on or
off, so their `enabled_cache` converges without re-reading storage. The bus is
only required to deliver small tagged messages; `LocalSyncBus` does so for
engines living in the same process.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Literal, Protocol

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class SyncMessage(BaseModel):
    type: Literal["statusChange"] = "statusChange"
    workflow_id: int
    enabled: bool


SyncHandler = Callable[[SyncMessage], None]


class SyncBus(Protocol):
    def publish(self, sender: str, message: SyncMessage) -> None: ...

    def subscribe(self, subscriber: str, handler: SyncHandler) -> None: ...

    def unsubscribe(self, subscriber: str) -> None: ...


class LocalSyncBus:
    """Fan out messages to every subscriber except the sender."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: dict[str, SyncHandler] = {}

    def publish(self, sender: str, message: SyncMessage) -> None:
        with self._lock:
            targets = [h for name, h in self._handlers.items() if name != sender]
        for handler in targets:
            try:
                handler(message)
            except Exception:
                logger.exception(
                    "Sync message handler failed", extra={"message": message.model_dump()}
                )

    def subscribe(self, subscriber: str, handler: SyncHandler) -> None:
        with self._lock:
            self._handlers[subscriber] = handler

    def unsubscribe(self, subscriber: str) -> None:
        with self._lock:
            self._handlers.pop(subscriber, None)
