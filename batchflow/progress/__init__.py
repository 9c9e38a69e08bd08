"""
Progress tracking for batchflow runs.

Trackers are plain event callbacks; pass one as ``on_event`` and use it as
a context manager around monitoring.

Example:
    from batchflow.progress import create_progress_tracker

    with create_progress_tracker(total=len(tasks), style="simple") as tracker:
        result = Runner(on_event=tracker).monitor(record)

    # Or handle events yourself
    def my_logger(event):
        print(f"{event.kind}: {event.unit_id}")

    result = Runner(on_event=my_logger).monitor(record)
"""

from batchflow.progress.base import ProgressTracker, SimpleProgressTracker
from batchflow.progress.display import display_result
from batchflow.progress.factory import create_progress_tracker
from batchflow.progress.rich import RichProgressTracker

__all__ = [
    "ProgressTracker",
    "SimpleProgressTracker",
    "RichProgressTracker",
    "create_progress_tracker",
    "display_result",
]
