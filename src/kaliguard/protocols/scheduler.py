"""Scheduler capability for recurring tasks.

TaskScheduler owns task state and persistence; the timer mechanics live
behind this interface so tests can drive time by hand.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

TimerCallback = Callable[[], Awaitable[None]]


class SchedulerProtocol(ABC):
    @abstractmethod
    def validate(self, spec: str) -> None:
        """Raise InvalidCronExpression if spec cannot be scheduled."""
        pass

    @abstractmethod
    def schedule_recurring(self, spec: str, callback: TimerCallback) -> Any:
        """Start a recurring timer and return an opaque handle."""
        pass

    @abstractmethod
    def cancel(self, handle: Any) -> None:
        """Stop a timer. Unknown handles are ignored."""
        pass

    @abstractmethod
    def next_fire_time(self, handle: Any) -> Optional[datetime]:
        """Return the next fire time of a live timer, or None."""
        pass

    @abstractmethod
    def start(self) -> None:
        """Start dispatching timers."""
        pass

    @abstractmethod
    def shutdown(self) -> None:
        """Stop dispatching timers and drop all of them."""
        pass
