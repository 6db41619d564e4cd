"""
Example Counter Plugin for hotgraft (second build)

Same plugin after an edit: a new field, two new commands and a
reload hook. Loading this over a running counter_v1 keeps hits, samples
and stats; ``label`` starts at its default.
"""

from enum import Enum
from typing import List

from hotgraft import Hotloadable, Plugin, command


class Mode(Enum):
    COUNTING = "counting"
    PAUSED = "paused"


class Stats(Hotloadable):
    """Running statistics, shared by the counter and its history."""

    total: int = 0
    largest: int = 0
    reloads: int = 0

    def record(self, value: int) -> None:
        self.total += value
        self.largest = max(self.largest, value)

    def on_hotload(self) -> None:
        self.reloads += 1


class Counter(Plugin):
    """Counts things, now with a label."""

    hits: int = 0
    mode: Mode = Mode.COUNTING
    label: str = "counter"
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
        print(
            f"{self.label}: hits={self.hits} samples={len(self.samples)} "
            f"total={self.stats.total} largest={self.stats.largest} reloads={self.stats.reloads}"
        )

    @command("counter.pause")
    def pause(self) -> None:
        self.mode = Mode.PAUSED

    @command("counter.resume")
    def resume(self) -> None:
        self.mode = Mode.COUNTING

    @command("counter.dump", debug_only=True)
    def dump(self) -> None:
        print(self.samples)
