from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Callable, Dict, Iterator, List, Optional, Union, Any

from ._types import Checkpoint, CheckpointCategory, Trigger
from .errors import DuplicateNameError, TimelineOverflow, TriggerRegistryFull, UnknownTriggerError

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 1024
MAX_TRIGGERS = 64


def pattern_match(pattern: str, text: str) -> bool:
    """'*' matches everything, 'PREFIX*' matches by prefix, anything else must be equal."""
    if pattern == "*":
        return True
    if pattern.endswith("*"):
        return text.startswith(pattern[:-1])
    return pattern == text


class TriggerRegistry:
    def __init__(self, max_triggers: int = MAX_TRIGGERS):
        self.max_triggers = max_triggers
        self._triggers: List[Trigger] = []

    def __len__(self) -> int:
        return len(self._triggers)

    def __iter__(self) -> Iterator[Trigger]:
        return iter(list(self._triggers))

    def register(self, pattern: str, name: str, callback: Callable[[Checkpoint], Any]) -> int:
        if not pattern or not name or callback is None:
            raise ValueError("trigger needs a pattern, a name and a callback")
        if any(t.name == name for t in self._triggers):
            raise DuplicateNameError(name)
        if len(self._triggers) >= self.max_triggers:
            raise TriggerRegistryFull(f"cannot register more than {self.max_triggers} triggers")

        self._triggers.append(Trigger(pattern=pattern, name=name, callback=callback))
        logger.debug("Registered trigger %s for pattern %r", name, pattern)
        return len(self._triggers) - 1

    def _find(self, name: str) -> Trigger:
        for t in self._triggers:
            if t.name == name:
                return t
        raise UnknownTriggerError(name)

    def enable(self, name: str) -> None:
        self._find(name).enabled = True

    def disable(self, name: str) -> None:
        self._find(name).enabled = False

    def is_enabled(self, name: str) -> bool:
        return self._find(name).enabled

    def dispatch(self, checkpoint: Checkpoint) -> None:
        # enabled is read per trigger at dispatch time; callbacks may toggle others
        for trigger in self._triggers:
            if not trigger.enabled:
                continue
            if pattern_match(trigger.pattern, checkpoint.id):
                checkpoint.mark_fired()
                trigger.callback(checkpoint)


class Timeline:
    """
    Append-only checkpoint log for a single run.

    Offsets are measured on the monotonic clock from the moment the timeline
    was created. Storage is bounded: once `capacity` checkpoints are stored,
    further appends return a checkpoint flagged persisted=False, do not
    dispatch triggers, and are counted in `overflow`.
    """

    def __init__(self, triggers: Optional[TriggerRegistry] = None, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError("timeline capacity must be positive")
        self.capacity = capacity
        self.triggers = triggers if triggers is not None else TriggerRegistry()
        self._checkpoints: List[Checkpoint] = []
        self._baseline = time.monotonic()
        self._last_offset = 0.0
        self.overflow: Optional[TimelineOverflow] = None

    def __len__(self) -> int:
        return len(self._checkpoints)

    def __iter__(self) -> Iterator[Checkpoint]:
        return self.all()

    @property
    def truncated(self) -> bool:
        return self.overflow is not None

    def _offset(self) -> float:
        offset = max(time.monotonic() - self._baseline, self._last_offset)
        self._last_offset = offset
        return offset

    def append(
            self,
            id: str,
            category: Union[CheckpointCategory, str],
            context: Optional[str] = None,
    ) -> Checkpoint:
        cp = Checkpoint(
            id=id or "UNKNOWN",
            category=CheckpointCategory(category.upper() if isinstance(category, str) else category),
            context=context or "",
            time_offset=self._offset(),
            timestamp=datetime.now().strftime("%H:%M:%S.%f")[:-3],
        )

        if len(self._checkpoints) >= self.capacity:
            cp.persisted = False
            if self.overflow is None:
                self.overflow = TimelineOverflow(self.capacity)
                logger.warning("Timeline full (%d checkpoints): dropping further checkpoints", self.capacity)
            self.overflow.dropped += 1
            return cp

        self._checkpoints.append(cp)
        self.triggers.dispatch(cp)
        return cp

    def get(self, index: int) -> Optional[Checkpoint]:
        if index < 0 or index >= len(self._checkpoints):
            return None
        return self._checkpoints[index]

    def all(self) -> Iterator[Checkpoint]:
        # iterate over a snapshot length so appends during iteration are not seen
        n = len(self._checkpoints)
        return (self._checkpoints[i] for i in range(n))

    def export(self) -> List[Dict[str, Any]]:
        return [cp.to_dict() for cp in self._checkpoints]

    def format_timeline(self) -> str:
        bar = "=" * 63
        lines = [f"Execution Timeline ({len(self)} checkpoints):", bar]
        lines.extend(str(cp) for cp in self._checkpoints)
        lines.append(bar)
        if self.overflow is not None:
            lines.append(f"WARNING: {self.overflow}")
        return "\n".join(lines)


def _log_security(checkpoint: Checkpoint) -> None:
    logger.info("Security trigger fired for: %s", checkpoint.id)


def _log_performance(checkpoint: Checkpoint) -> None:
    logger.info("Performance trigger fired for: %s", checkpoint.id)


def register_default_triggers(registry: TriggerRegistry) -> None:
    registry.register("SEC:*", "security_monitor", _log_security)
    registry.register("FUNC:*", "performance_monitor", _log_performance)
    registry.register("SYSCALL:*", "syscall_monitor", _log_security)
