from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from flow_engine.store.base import Transaction


@dataclass(frozen=True, slots=True)
class EventOptions:
    """Options travelling with one fired event.

    - `event_key`: idempotency token of the execution (random when unset)
    - `deferred`: create the execution already STARTED; it runs on `start()`
    - `manually`: run even if the workflow is disabled, synchronously
    - `transaction`: caller's transaction; never kept on queued events
    - `extra`: free-form data for the trigger's `validate_event`
    """

    event_key: str | None = None
    deferred: bool = False
    manually: bool = False
    transaction: Transaction | None = None
    extra: dict[str, Any] = field(default_factory=dict)
