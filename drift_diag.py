#!/usr/bin/env python3
"""Offline diagnostic run of the Drift sketch.

Steps the full sketch headlessly at a fixed frame rate, renders the synth
output between frames, and reports what the composer did. Useful for
tuning the note density and the master chain without a sound card.

Usage:
    python3 drift_diag.py                      # 30 s, writes diag_output/drift.wav
    python3 drift_diag.py --duration 120       # long enough for several key changes
    python3 drift_diag.py --seed 7 --no-wav    # report only
"""
from __future__ import annotations

import argparse
import logging
import math
import random
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import numpy as np
from numpy.typing import NDArray
from scipy.io import wavfile

from drift import DEFAULT_FPS, DriftSketch
from drift_music import SAMPLE_RATE, VOICE_NAMES, SynthBridge


# ═══════════════════════════════════════════════════════════════════════
#  Constants
# ═══════════════════════════════════════════════════════════════════════

DEFAULT_DURATION: float = 30.0
DEFAULT_OUTPUT: str = "diag_output/drift.wav"
DEFAULT_SEED: int = 42
# Headless raster: a 160x45 terminal
RASTER_W: int = 160
RASTER_H: int = 88


# ═══════════════════════════════════════════════════════════════════════
#  Headless run
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RunResult:
    """Everything the report needs from one headless run."""
    audio: NDArray[np.float32]
    frames: int
    activity: NDArray[np.float64]
    notes_played: int
    notes_dropped: int
    key_changes: int
    final_key: str
    voice_counts: dict[str, int]


def run_headless(
    duration_secs: float,
    seed: int = DEFAULT_SEED,
    fps: int = DEFAULT_FPS,
) -> RunResult:
    """Drive DriftSketch without a terminal or audio device."""
    rng = random.Random(seed)
    bridge = SynthBridge()
    sketch = DriftSketch(RASTER_W, RASTER_H, rng=rng, bridge=bridge, noise_seed=seed)
    # No device: rendering is pulled below instead of by a stream callback
    sketch.composer.activate()

    n_frames = max(1, int(duration_secs * fps))
    samples_per_frame = SAMPLE_RATE / fps
    carry = 0.0
    chunks: list[NDArray[np.float32]] = []
    activity = np.zeros(n_frames, dtype=np.float64)

    for i in range(n_frames):
        now_ms = i * 1000.0 / fps
        sketch.step(now_ms, render=False)
        activity[i] = sketch.particles.activity_level()

        carry += samples_per_frame
        n = int(carry)
        carry -= n
        chunks.append(bridge.render(n))

    return RunResult(
        audio=np.concatenate(chunks),
        frames=n_frames,
        activity=activity,
        notes_played=sketch.composer.notes_played,
        notes_dropped=sketch.composer.notes_dropped,
        key_changes=sketch.key_changes,
        final_key=sketch.key_label(),
        voice_counts=dict(bridge.voice_counts),
    )


# ═══════════════════════════════════════════════════════════════════════
#  Report
# ═══════════════════════════════════════════════════════════════════════

def _rms_db(signal: NDArray[np.float32]) -> float:
    if len(signal) == 0:
        return -100.0
    rms = float(np.sqrt(np.mean(signal.astype(np.float64) ** 2)))
    return 20.0 * math.log10(max(rms, 1e-10))


def _peak_db(signal: NDArray[np.float32]) -> float:
    if len(signal) == 0:
        return -100.0
    return 20.0 * math.log10(max(float(np.max(np.abs(signal))), 1e-10))


def format_report(result: RunResult, duration: float, seed: int) -> str:
    lines: list[str] = []
    sep = "=" * 79
    lines.append(sep)
    lines.append("DRIFT DIAGNOSTIC REPORT")
    lines.append(f"Generated: {datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')}")
    lines.append(f"Duration: {duration}s ({result.frames} frames) @ {SAMPLE_RATE} Hz, seed {seed}")
    lines.append(sep)
    lines.append("")

    act = result.activity
    lines.append(f"  Activity   mean {act.mean():.3f}   min {act.min():.3f}   max {act.max():.3f}")
    minutes = max(duration / 60.0, 1e-9)
    lines.append(
        f"  Notes      {result.notes_played} played, {result.notes_dropped} dropped "
        f"({result.notes_played / minutes:.1f}/min)"
    )
    lines.append(f"  Keys       {result.key_changes} changes, ending in {result.final_key}")
    lines.append(f"  Level      RMS {_rms_db(result.audio):.1f} dBFS   "
                 f"peak {_peak_db(result.audio):.1f} dBFS")
    lines.append("")

    lines.append("  Voice      Triggers")
    lines.append("  " + "-" * 22)
    for name in VOICE_NAMES:
        lines.append(f"  {name:<9s}  {result.voice_counts.get(name, 0):8d}")
    lines.append("")
    lines.append(sep)
    return "\n".join(lines)


# ═══════════════════════════════════════════════════════════════════════
#  WAV output
# ═══════════════════════════════════════════════════════════════════════

def write_wav(path: Path, audio: NDArray[np.float32]) -> Path:
    """Peak-normalised float32 WAV."""
    path.parent.mkdir(parents=True, exist_ok=True)
    peak = float(np.max(np.abs(audio))) if len(audio) else 0.0
    if peak > 1e-8:
        audio = (audio / peak * 0.95).astype(np.float32)
    wavfile.write(str(path), SAMPLE_RATE, audio.astype(np.float32))
    return path


# ═══════════════════════════════════════════════════════════════════════
#  Main
# ═══════════════════════════════════════════════════════════════════════

def main() -> None:
    parser = argparse.ArgumentParser(description="Drift headless renderer and report")
    parser.add_argument(
        "--duration", type=float, default=DEFAULT_DURATION,
        help=f"Seconds to simulate (default: {DEFAULT_DURATION})",
    )
    parser.add_argument(
        "--output", type=Path, default=Path(DEFAULT_OUTPUT),
        help=f"WAV path (default: {DEFAULT_OUTPUT})",
    )
    parser.add_argument(
        "--seed", type=int, default=DEFAULT_SEED,
        help=f"Random seed for the sketch and noise field (default: {DEFAULT_SEED})",
    )
    parser.add_argument(
        "--fps", type=int, default=DEFAULT_FPS,
        help=f"Simulated frame rate (default: {DEFAULT_FPS})",
    )
    parser.add_argument(
        "--no-wav", action="store_true",
        help="Skip WAV output, only print report",
    )
    args = parser.parse_args()
    if args.duration <= 0:
        print("Error: --duration must be positive", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s %(message)s")

    print(f"Simulating {args.duration:.1f}s...", end="", flush=True)
    result = run_headless(args.duration, seed=args.seed, fps=args.fps)
    print(f" {result.frames} frames.")

    if not args.no_wav:
        try:
            written = write_wav(args.output, result.audio)
            print(f"Wrote {written}")
        except OSError as e:
            print(f"Failed to write {args.output}: {e}", file=sys.stderr)

    print()
    print(format_report(result, args.duration, args.seed))


if __name__ == "__main__":
    main()
