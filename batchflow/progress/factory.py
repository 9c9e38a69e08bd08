"""
Factory function for creating progress trackers.
"""

from __future__ import annotations

import sys
from typing import Literal

from batchflow.progress.base import ProgressTracker, SimpleProgressTracker
from batchflow.progress.rich import RichProgressTracker

ProgressStyle = Literal["auto", "rich", "simple", "none"]


def create_progress_tracker(
    total: int = 0,
    title: str = "batchflow",
    style: ProgressStyle = "auto",
    **kwargs,
) -> ProgressTracker | None:
    """
    Create a progress tracker.

    Args:
        total: Units expected.
        title: Title for the progress display.
        style: Progress style to use:
            - "auto": rich on an interactive terminal, otherwise simple
            - "rich": live rich display
            - "simple": plain text lines
            - "none": no tracker
        **kwargs: Additional arguments passed to the tracker.

    Returns:
        A ProgressTracker instance, or None for style "none".

    Example:
        tracker = create_progress_tracker(total=10, title="genomics")
        with tracker:
            Runner(on_event=tracker).monitor(record)
    """
    if style == "none":
        return None
    if style == "simple":
        return SimpleProgressTracker(total=total, title=title, **kwargs)
    if style == "rich":
        return RichProgressTracker(total=total, title=title, **kwargs)
    if style != "auto":
        raise ValueError(f"Unknown progress style: {style!r}")

    # Live displays are noise in batch logs
    if sys.stdout.isatty():
        return RichProgressTracker(total=total, title=title, **kwargs)
    return SimpleProgressTracker(total=total, title=title, **kwargs)
