# Folder: ci-triage/agent/event_sink.py
#
# Where the orchestrator publishes structured progress records.
# Kept out of the business logic: the orchestrator only calls publish().

import json
import logging
from typing import List

logger = logging.getLogger(__name__)


class EventSink:
    """Interface. publish() must not raise into the caller."""

    def publish(self, name: str, record: dict) -> None:
        raise NotImplementedError


class NullEventSink(EventSink):

    def publish(self, name: str, record: dict) -> None:
        pass


class LoggingEventSink(EventSink):
    """One JSON line per record at DEBUG"""

    def publish(self, name: str, record: dict) -> None:
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"{name} {json.dumps(record, default=str, sort_keys=True)}")


class MemoryEventSink(EventSink):
    """Keeps every record - handy when embedding or testing"""

    def __init__(self):
        self.records: List[tuple] = []

    def publish(self, name: str, record: dict) -> None:
        self.records.append((name, record))

    def names(self) -> List[str]:
        return [name for name, _ in self.records]
