from __future__ import annotations


class FakeClock:
    # Injectable time provider; tests advance it explicitly.
    def __init__(self, start: float = 1_767_225_600.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds
