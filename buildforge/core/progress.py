"""
Heuristic build progress from the combined output stream.

Each line is matched against an ordered set of markers; the highest matched
marker becomes the reported progress. Non-matching lines never lower it.
"""
from typing import Iterable, Iterator

from buildforge.core.scripts import SUCCESS_SENTINEL

# (substring, progress) - matched case-insensitively
PROGRESS_MARKERS: tuple[tuple[str, int], ...] = (
    ("cloning", 10),
    ("restoring cache", 20),
    ("installing dependencies", 30),
    ("building", 60),
    ("compiled", 90),
    ("build completed", 90),
    ("copying output", 95),
    (SUCCESS_SENTINEL.lower(), 100),
)


class ProgressTracker:
    """Tracks the highest progress seen for one build."""

    def __init__(self, start: int = 0):
        self._value = max(0, min(100, start))

    @property
    def value(self) -> int:
        return self._value

    def observe(self, line: str) -> int:
        """Feed one output line and return the (never decreasing) progress."""
        lowered = line.lower()
        for marker, progress in PROGRESS_MARKERS:
            if progress > self._value and marker in lowered:
                self._value = progress
        return self._value


def estimate_progress(lines: Iterable[str], start: int = 0) -> Iterator[int]:
    """Yield the progress after each line."""
    tracker = ProgressTracker(start)
    for line in lines:
        yield tracker.observe(line)
