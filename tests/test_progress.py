"""
Tests for heuristic build progress.
"""
from buildforge.core.progress import ProgressTracker, estimate_progress
from buildforge.core.scripts import SUCCESS_SENTINEL

from conftest import SUCCESS_LINES


class TestProgressTracker:
    """Tests for marker matching and monotonic progress."""

    def test_markers_in_order(self):
        """Test the progress value after each well-known marker."""
        values = list(estimate_progress([
            "==> Cloning repository",
            "==> Restoring cache (node_modules)",
            "==> Installing dependencies",
            "==> Building",
            "Compiled successfully.",
            "==> Copying output",
            SUCCESS_SENTINEL,
        ]))
        assert values == [10, 20, 30, 60, 90, 95, 100]

    def test_never_decreases(self):
        """Test that a lower marker after a higher one keeps the higher value."""
        tracker = ProgressTracker()
        tracker.observe("==> Building")
        assert tracker.observe("==> Installing dependencies") == 60
        assert tracker.observe("npm WARN deprecated something") == 60

    def test_unmatched_lines_keep_value(self):
        """Test that noise lines do not move progress."""
        assert list(estimate_progress(["hello", "world"])) == [0, 0]

    def test_case_insensitive(self):
        """Test that markers match regardless of case."""
        assert ProgressTracker().observe("BUILD COMPLETED") == 90

    def test_start_value_is_respected(self):
        """Test that a resumed tracker starts from the stored progress."""
        tracker = ProgressTracker(start=30)
        assert tracker.observe("==> Cloning repository") == 30

    def test_full_successful_run_reaches_100(self):
        """Test that a complete run ends at 100."""
        assert list(estimate_progress(SUCCESS_LINES))[-1] == 100
