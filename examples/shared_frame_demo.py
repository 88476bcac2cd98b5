"""Show a worker reading host frames through shared memory and writing shared statistics."""

import argparse
import pathlib
import random
import sys
import time
import traceback
from concurrent.futures import Future


def _ensure_src_path(src_path: str) -> None:
    """Ensure ``src`` is importable in the current interpreter.

    :param src_path: Absolute path to the repository ``src`` directory.
    """
    exists: bool = src_path in sys.path
    if exists is False:
        sys.path.insert(0, src_path)


def _build_frames(count: int, width: int, height: int, seed: int) -> list[object]:
    """Create deterministic random frames.

    :param count: Number of frames.
    :param width: Frame width.
    :param height: Frame height.
    :param seed: Random seed.
    :returns: Frames with private pixel buffers.
    """
    from tandem.demo import PixelFrame

    generator: random.Random = random.Random(seed)
    frames: list[object] = []
    for _ in range(count):
        pixels: bytearray = bytearray(generator.randrange(256) for _ in range(width * height))
        frames.append(PixelFrame(pixels, width, height))
    return frames


def _parse_args() -> argparse.Namespace:
    """Parse CLI arguments.

    :returns: Parsed CLI arguments.
    """
    parser = argparse.ArgumentParser(
        description=(
            "Stream frames to a worker process without copying their pixels and read the "
            "statistics it accumulates in a shared struct."
        )
    )
    parser.add_argument("--frames", type=int, default=8, help="Number of frames to ingest.")
    parser.add_argument("--width", type=int, default=320, help="Frame width in pixels.")
    parser.add_argument("--height", type=int, default=240, help="Frame height in pixels.")
    parser.add_argument("--seed", type=int, default=7, help="Random seed for frame contents.")
    return parser.parse_args()


def main() -> int:
    """Run the demonstration.

    :returns: Process exit code where ``0`` indicates success.
    """
    args: argparse.Namespace = _parse_args()
    frame_count: int = int(args.frames)
    width: int = int(args.width)
    height: int = int(args.height)
    seed: int = int(args.seed)

    if frame_count < 1:
        print("frames must be >= 1")
        return 1
    if width < 1 or height < 1:
        print("width and height must be >= 1")
        return 1

    repo_root: pathlib.Path = pathlib.Path(__file__).resolve().parent.parent
    _ensure_src_path(str(repo_root / "src"))

    from tandem import init_worker
    from tandem import to_shared
    from tandem.demo import FrameStatistics
    from tandem.demo import summarize_frames

    print("Shared Frame Demo")
    print(f"python={sys.version.split()[0]}")
    print(f"frames={frame_count} width={width} height={height} seed={seed}")
    print("")

    frames: list[object] = _build_frames(frame_count, width, height, seed)
    expected: dict[str, float] = summarize_frames(frames)

    share_start: float = time.perf_counter()
    to_shared(frames)
    share_elapsed: float = time.perf_counter() - share_start
    print(f"Phase 1: moved {expected['pixels']} pixels into shared memory in {share_elapsed:.3f}s")

    stats = None
    try:
        stats = init_worker(FrameStatistics)
        ingest_start: float = time.perf_counter()
        futures: list[Future] = [stats.ingest(frame) for frame in frames]
        for future in futures:
            future.result(timeout=60.0)
        mean: float = stats.mean().result(timeout=60.0)
        ingest_elapsed: float = time.perf_counter() - ingest_start
    except Exception as exc:
        print(f"DEMO RESULT: FAIL ({type(exc).__name__}: {exc})")
        traceback.print_exc()
        return 1
    finally:
        if stats is not None:
            stats.finalize()

    print("Phase 2: worker ingestion")
    print(f"  frames={stats.frames} expected={expected['frames']}")
    print(f"  pixels={stats.pixels} expected={expected['pixels']}")
    print(f"  minimum={stats.minimum} maximum={stats.maximum}")
    print(f"  mean={mean:.4f} expected={expected['mean']:.4f}")
    print(f"  progress_callbacks={len(stats.__dict__.get('progress_history', []))}")
    print(f"  elapsed_seconds={ingest_elapsed:.3f}")
    print("")

    counts_ok: bool = stats.frames == expected["frames"] and stats.pixels == expected["pixels"]
    totals_ok: bool = stats.total == expected["total"]
    bounds_ok: bool = stats.minimum == expected["minimum"] and stats.maximum == expected["maximum"]
    mean_ok: bool = abs(mean - expected["mean"]) < 1e-9
    demo_passes: bool = counts_ok is True and totals_ok is True and bounds_ok is True and mean_ok is True
    if demo_passes is True:
        print("DEMO RESULT: PASS")
        return 0

    print("DEMO RESULT: FAIL")
    print(f"  counts_ok={counts_ok} totals_ok={totals_ok} bounds_ok={bounds_ok} mean_ok={mean_ok}")
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
