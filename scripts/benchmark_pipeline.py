"""
Benchmark Detection + Segmentation

Times the two halves of the image endpoints on a synthetic frame:
``ObjectDetector.detect`` followed by ``BodyPix.segment``. Runs on CPU
and, when one is available, on the accelerator.
Usage: python -m scripts.benchmark_pipeline [--iterations 20] [--width 640] [--height 480]
"""
import argparse
import logging
import time
from typing import Callable, Dict, List

import numpy as np
import torch

from friendlyml.cv.body_pix import BodyPix
from friendlyml.cv.object_detector import ObjectDetector

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

TARGET_FPS_CPU = 2


def create_sample_frame(width: int, height: int) -> np.ndarray:
    """Random noise frame; swap in real footage for meaningful detection counts."""
    return np.random.randint(0, 256, (height, width, 3), dtype=np.uint8)


def time_stages(stages: Dict[str, Callable[[], object]], iterations: int) -> Dict[str, float]:
    """Mean milliseconds per stage plus the end-to-end frame rate."""
    elapsed: Dict[str, List[float]] = {name: [] for name in stages}

    for _ in range(iterations):
        for name, stage in stages.items():
            start = time.perf_counter()
            stage()
            elapsed[name].append((time.perf_counter() - start) * 1000)

    report = {f"{name}_ms": round(float(np.mean(values)), 2) for name, values in elapsed.items()}
    total = sum(report.values())
    report["total_ms"] = round(total, 2)
    report["fps"] = round(1000.0 / total, 2) if total > 0 else 0.0
    return report


def run(device: str, frame: np.ndarray, iterations: int) -> Dict[str, float]:
    detector = ObjectDetector("cocossd", options={"device": device})
    body_pix = BodyPix(options={"device": device})

    people = [d for d in detector.detect(frame) if d["label"] == "person"]
    person_ratio = body_pix.segment(frame)["person_ratio"]
    logger.info(f"First pass: {len(people)} people, person ratio {person_ratio:.2f}")

    report = time_stages(
        {"detect": lambda: detector.detect(frame), "segment": lambda: body_pix.segment(frame)},
        iterations,
    )
    logger.info(f"{device.upper()}: detect {report['detect_ms']} ms, segment {report['segment_ms']} ms, "
                f"{report['fps']} frames/s")
    return report


def main():
    parser = argparse.ArgumentParser(description="Benchmark detection and segmentation")
    parser.add_argument("--iterations", type=int, default=20)
    parser.add_argument("--width", type=int, default=640)
    parser.add_argument("--height", type=int, default=480)
    args = parser.parse_args()

    frame = create_sample_frame(args.width, args.height)
    logger.info(f"Frame {frame.shape}, {args.iterations} iterations")

    cpu = run("cpu", frame, args.iterations)

    if torch.cuda.is_available() or torch.backends.mps.is_available():
        accelerated = run("cuda" if torch.cuda.is_available() else "mps", frame, args.iterations)
        if cpu["fps"] > 0:
            logger.info(f"Speedup over CPU: {accelerated['fps'] / cpu['fps']:.2f}x")
    else:
        logger.info("No CUDA/MPS device, CPU only")

    if cpu["fps"] < TARGET_FPS_CPU:
        logger.warning(f"CPU below {TARGET_FPS_CPU} frames/s")


if __name__ == "__main__":
    main()
