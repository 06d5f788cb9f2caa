"""Shared state between the request path and the background stages."""
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, Optional


class ActivityFlag:
    """Set while at least one interactive request is in flight.

    Requests enter and exit independently, so the flag counts holders rather
    than toggling a single bool; it reads as set until the last one leaves.
    Background stages block on it with wait_clear() while it is set.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._holders = 0

    def enter(self) -> None:
        with self._cond:
            self._holders += 1

    def exit(self) -> None:
        with self._cond:
            if self._holders == 0:
                raise RuntimeError("ActivityFlag.exit() without matching enter()")
            self._holders -= 1
            if self._holders == 0:
                self._cond.notify_all()

    @contextmanager
    def hold(self) -> Iterator[None]:
        self.enter()
        try:
            yield
        finally:
            self.exit()

    def is_set(self) -> bool:
        with self._cond:
            return self._holders > 0

    def wait_clear(self, timeout: Optional[float] = None) -> bool:
        """Block until no request is active. Returns False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: self._holders == 0, timeout)


@dataclass
class WorkerState:
    """Cross-thread state shared by the request path and the background stages."""
    live_traffic: ActivityFlag = field(default_factory=ActivityFlag)
    thumbnails_exhausted: threading.Event = field(default_factory=threading.Event)
