"""Demo modules for showcasing tandem behavior."""

from tandem.demo.frame_workload import FrameStatistics
from tandem.demo.frame_workload import PixelFrame
from tandem.demo.frame_workload import summarize_frames

__all__: list[str] = ["FrameStatistics", "PixelFrame", "summarize_frames"]
