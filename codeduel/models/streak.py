from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class StreakUpdate:
    """
    Result of folding one daily outcome into a membership's streak.
    previous_current is the value before the update; broken is True when a
    positive streak was reset to zero.
    """

    previous_current: int
    current: int
    longest: int

    @property
    def broken(self) -> bool:
        return self.previous_current > 0 and self.current == 0
