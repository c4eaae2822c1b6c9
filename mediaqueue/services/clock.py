"""Time sources. Timestamps are integer epoch milliseconds throughout."""
import time


class SystemClock:
    """Wall clock."""

    def now(self) -> int:
        return int(time.time() * 1000)


class ManualClock:
    """Clock that only moves when told to. Used by tests and replay tools."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.current = start

    def now(self) -> int:
        return self.current

    def advance(self, ms: int = 1) -> int:
        self.current += ms
        return self.current

    def set(self, value: int) -> None:
        self.current = value
