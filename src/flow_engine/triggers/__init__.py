"""Built-in trigger types."""

from flow_engine.triggers.base import Trigger
from flow_engine.triggers.collection import CollectionTrigger
from flow_engine.triggers.schedule import ScheduleTrigger

BUILTIN_TRIGGERS: dict[str, type[Trigger]] = {
    "collection": CollectionTrigger,
    "schedule": ScheduleTrigger,
}

__all__ = ["BUILTIN_TRIGGERS", "CollectionTrigger", "ScheduleTrigger", "Trigger"]
