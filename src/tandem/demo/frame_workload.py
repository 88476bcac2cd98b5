"""Demo workload: grayscale frame statistics accumulated inside a worker."""

import ctypes

from tandem.registry import define_worker
from tandem.registry import worker_callback
from tandem.registry import worker_method


class PixelFrame:
    """Grayscale frame whose pixel buffer can be moved into shared memory."""

    pixels: bytearray
    width: int
    height: int

    def __init__(self, pixels: bytearray, width: int, height: int) -> None:
        """Initialize a frame.

        :param pixels: Row-major pixel bytes.
        :param width: Frame width in pixels.
        :param height: Frame height in pixels.
        :raises ValueError: If the buffer length does not match the dimensions.
        """
        if len(pixels) != width * height:
            raise ValueError("pixels must hold exactly width * height bytes")
        self.pixels = pixels
        self.width = width
        self.height = height


@define_worker
class FrameStatistics(ctypes.Structure):
    """Running statistics stored in a struct shared by the host and the worker.

    The host reads the fields directly; only ``ingest`` crosses the process
    boundary, and the worker reports progress back through a callback.
    """

    _fields_ = [
        ("frames", ctypes.c_uint32),
        ("pixels", ctypes.c_uint64),
        ("total", ctypes.c_uint64),
        ("minimum", ctypes.c_uint8),
        ("maximum", ctypes.c_uint8),
    ]

    @worker_method
    def ingest(self, frame: PixelFrame) -> int:
        """Fold one frame into the statistics.

        :param frame: Frame to scan.
        :returns: Number of frames ingested so far.
        """
        view: memoryview = memoryview(frame.pixels)
        if view.nbytes > 0:
            frame_minimum: int = min(view)
            frame_maximum: int = max(view)
            if self.frames == 0 and self.pixels == 0:
                self.minimum = frame_minimum
                self.maximum = frame_maximum
            else:
                self.minimum = min(self.minimum, frame_minimum)
                self.maximum = max(self.maximum, frame_maximum)
            self.total += sum(view)
            self.pixels += view.nbytes
        self.frames += 1
        self.report_progress(self.frames)
        return self.frames

    @worker_method
    def mean(self) -> float:
        if self.pixels == 0:
            return 0.0
        return self.total / self.pixels

    @worker_callback
    def report_progress(self, frames: int) -> None:
        """Record progress on the host instance.

        :param frames: Frames ingested so far.
        """
        history: list[int] = self.__dict__.setdefault("progress_history", [])
        history.append(frames)


def summarize_frames(frames: list[PixelFrame]) -> dict[str, float]:
    """Compute the same statistics in-process for validation.

    :param frames: Frames to scan.
    :returns: Mapping with ``frames``, ``pixels``, ``total``, ``minimum``, ``maximum`` and ``mean``.
    """
    pixel_count: int = 0
    total: int = 0
    minimum: int = 0
    maximum: int = 0
    for frame in frames:
        data: bytes = bytes(frame.pixels)
        if len(data) == 0:
            continue
        if pixel_count == 0:
            minimum = min(data)
            maximum = max(data)
        else:
            minimum = min(minimum, min(data))
            maximum = max(maximum, max(data))
        total += sum(data)
        pixel_count += len(data)
    mean: float = 0.0
    if pixel_count > 0:
        mean = total / pixel_count
    return {
        "frames": len(frames),
        "pixels": pixel_count,
        "total": total,
        "minimum": minimum,
        "maximum": maximum,
        "mean": mean,
    }
