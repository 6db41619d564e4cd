"""
Example Counter Plugin for hotgraft (first build)

Demonstrates the pieces a reloadable plugin is made of:
- A single Plugin entry type with annotated state
- Commands bound with @command
- A nested object that is migrated by reference
- A startup hook that only runs on a cold start

Try it:
    hotgraft watch examples/plugins/example-counter --pattern "counter_v*.py"
and copy counter_v2.py into the directory again to see the state survive.
"""

from enum import Enum
from typing import List

from hotgraft import Plugin, command


class Mode(Enum):
    COUNTING = "counting"
    PAUSED = "paused"


class Stats:
    """Running statistics, shared by the counter and its history."""

    total: int = 0
    largest: int = 0

    def record(self, value: int) -> None:
        self.total += value
        self.largest = max(self.largest, value)


class Counter(Plugin):
    """Counts things."""

    hits: int = 0
    mode: Mode = Mode.COUNTING
    samples: List[int]
    stats: Stats

    def startup(self) -> None:
        self.samples = []
        self.stats = Stats()

    @command("counter.add")
    def add(self, args: List[str]) -> bool:
        if self.mode is Mode.PAUSED:
            return False
        amount = int(args[0]) if args else 1
        self.hits += amount
        self.samples.append(amount)
        self.stats.record(amount)
        return True

    @command("counter.show")
    def show(self) -> None:
        print(f"hits={self.hits} samples={len(self.samples)}")

    @command("counter.pause")
    def pause(self) -> None:
        self.mode = Mode.PAUSED
