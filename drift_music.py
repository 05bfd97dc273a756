"""
Probabilistic composer and synthesizer bridge for the Drift sketch.

The particle field publishes a single activity level each frame. The
Composer turns it into sparse melodic events on a nominal 4/4 grid, with
harmony and bass voices that join occasionally, and key changes that walk
the circle of fifths. Everything audible goes through SynthBridge, which
owns three monophonic voices and a small master chain.

Architecture:
  The main thread calls Composer.tick() once per frame. Delayed notes are
  not timers: they sit in a DeferredQueue that the frame loop drains before
  each step. SynthBridge.play_tone() only flips voice state; the PyAudio
  callback thread reads that state and renders the buffers.

Audio: 44100 Hz, mono, float32, 1024 frames/buffer.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import math
from collections import deque
from dataclasses import dataclass
from typing import Callable, Protocol, Sequence, TypeVar

import numpy as np
from numpy.typing import NDArray
from scipy.signal import lfilter

try:
    import pyaudio
except ImportError:
    pyaudio = None  # type: ignore[assignment]

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ═══════════════════════════════════════════════════════════════════════
#  Constants
# ═══════════════════════════════════════════════════════════════════════

SAMPLE_RATE: int = 44100
BUFFER_SIZE: int = 1024
TWO_PI: float = 2.0 * math.pi

# ── Scales (semitone offsets from root, octave duplicate included) ─────
SCALES: dict[str, tuple[int, ...]] = {
    "minor":      (0, 2, 3, 5, 7, 8, 10, 12),
    "pentatonic": (0, 3, 5, 7, 10, 12, 15, 5),
}
DEFAULT_SCALE: str = "minor"

# Used when the scale cannot be computed from the root and offsets
FALLBACK_RATIOS: tuple[float, ...] = (1.0, 1.125, 1.25, 1.333, 1.5, 1.667, 1.875, 2.0)

# ── Roots (Hz) ─────────────────────────────────────────────────────────
POSSIBLE_ROOTS: tuple[float, ...] = (
    261.63,  # C3
    293.66,  # D3
    329.63,  # E3
    349.23,  # F3
    392.0,   # G3
    440.0,   # A3
    493.88,  # B3
)
DEFAULT_ROOT_HZ: float = POSSIBLE_ROOTS[0]

# C G A E B D F
CIRCLE_OF_FIFTHS: tuple[float, ...] = (
    POSSIBLE_ROOTS[0],
    POSSIBLE_ROOTS[4],
    POSSIBLE_ROOTS[5],
    POSSIBLE_ROOTS[2],
    POSSIBLE_ROOTS[6],
    POSSIBLE_ROOTS[1],
    POSSIBLE_ROOTS[3],
)
PENTATONIC_THRESHOLD: float = 0.6

# ── Frame-grid timing ──────────────────────────────────────────────────
TICKS_PER_BEAT: int = 60
BEATS_PER_MEASURE: int = 4
KEY_CHANGE_TICKS: int = 480
FAST_KEY_CHANGE_TICKS: int = 240
FAST_KEY_CHANGE_ACTIVITY: float = 0.7
DENSITY_TICKS: int = 30

# ── Note choice ────────────────────────────────────────────────────────
# (upper cumulative bound, scale degree); the remainder picks from OTHER_DEGREES
DEGREE_TABLE: tuple[tuple[float, int], ...] = (
    (0.25, 0),  # root
    (0.40, 4),  # fifth
    (0.55, 2),  # third
    (0.70, 5),  # sixth
)
OTHER_DEGREES: tuple[int, ...] = (1, 3, 6, 7)

HARMONY_OFFSETS: dict[str, tuple[int, ...]] = {
    "minor":      (2, 5, 7),
    "pentatonic": (2, 4, 7),
}
HARMONY_CHANCE: float = 0.3
HARMONY_DELAY_MS: float = 30.0
HARMONY_GAIN: float = 0.7

BASS_CHANCE: float = 0.15
BASS_DEGREES: tuple[int, ...] = (0, 4)
BASS_DELAY_MS: float = 20.0
BASS_GAIN: float = 0.8

MIN_VELOCITY: float = 0.1
MAX_VELOCITY: float = 0.6
VISUAL_VELOCITY: float = 0.15

# Note spacing in ms at activity 0 and 1
SLOW_SPACING_MS: float = 500.0
FAST_SPACING_MS: float = 250.0

# ── Transition chord: (offset ms, voice, source, degree, multiplier, duration, velocity)
# source: "root" = new root, "previous" = old root, "degree" = scale degree
TRANSITION_STEPS: tuple[tuple[float, str, str, int, float, str, float], ...] = (
    (10.0,   "bass",    "root",     0, 0.5, "2n", 0.6),
    (50.0,   "melody",  "previous", 0, 1.5, "4n", 0.5),
    (100.0,  "harmony", "root",     0, 1.0, "2n", 0.4),
    (800.0,  "melody",  "degree",   0, 1.0, "2n", 0.6),
    (820.0,  "bass",    "degree",   0, 0.5, "2n", 0.5),
    (900.0,  "harmony", "degree",   4, 1.0, "2n", 0.5),
    (1150.0, "melody",  "degree",   7, 1.0, "4n", 0.35),
    (1200.0, "harmony", "degree",   2, 1.0, "2n", 0.4),
)

# ── Voices ─────────────────────────────────────────────────────────────
VOICE_NAMES: tuple[str, ...] = ("melody", "harmony", "bass")

# Note values at 120 BPM
TEMPO_BPM: float = 120.0
DURATION_BEATS: dict[str, float] = {
    "1n": 4.0,
    "2n": 2.0,
    "4n": 1.0,
    "8n": 0.5,
    "16n": 0.25,
}

# ADSR (attack, decay, sustain_level, release) in seconds
VOICE_ADSR: dict[str, tuple[float, float, float, float]] = {
    "melody":  (0.05, 0.2, 0.6, 0.8),
    "harmony": (0.1, 0.3, 0.5, 1.0),
    "bass":    (0.08, 0.3, 0.7, 1.2),
}
# Relative partial amplitudes per voice
VOICE_PARTIALS: dict[str, tuple[float, ...]] = {
    "melody":  (1.0,),
    "harmony": (1.0, 0.5, 0.7),
    "bass":    (1.0, 0.3, 0.1),
}
# Channel levels in dB
VOICE_LEVEL_DB: dict[str, float] = {
    "melody": -2.0,
    "harmony": -10.0,
    "bass": -4.0,
}

# ── Master chain ───────────────────────────────────────────────────────
DEFAULT_VOLUME: float = 0.8
VOLUME_STEP: float = 0.1
VOLUME_RAMP_SECS: float = 0.1
COMPRESSOR_THRESHOLD_DB: float = -14.0
COMPRESSOR_RATIO: float = 3.0
COMPRESSOR_ATTACK_SECS: float = 0.01
COMPRESSOR_RELEASE_SECS: float = 0.1
LIMITER_CEILING_DB: float = -1.0
REVERB_DECAY_SECS: float = 5.0
REVERB_WET: float = 0.4
REVERB_PREDELAY_SECS: float = 0.05
# Schroeder comb and allpass delays in samples (mutually prime-ish)
REVERB_COMBS: tuple[int, ...] = (1557, 1617, 1491, 1422)
REVERB_ALLPASSES: tuple[tuple[int, float], ...] = ((225, 0.7), (556, 0.7))


# ═══════════════════════════════════════════════════════════════════════
#  Utility functions
# ═══════════════════════════════════════════════════════════════════════

class RandomSource(Protocol):
    """The only source of randomness the sketch consumes.

    random.Random satisfies it; tests pass a fixed-sequence source.
    """

    def random(self) -> float: ...

    def uniform(self, a: float, b: float) -> float: ...

    def choice(self, seq: Sequence[T]) -> T: ...


def clamp(x: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, x))


def lerp(a: float, b: float, t: float) -> float:
    """Linear interpolation from a to b by factor t (0.0-1.0)."""
    return a + (b - a) * max(0.0, min(1.0, t))


def map_range(value: float, in_lo: float, in_hi: float,
              out_lo: float, out_hi: float) -> float:
    """Re-map value from one range to another (unclamped)."""
    if in_hi == in_lo:
        return out_lo
    return out_lo + (value - in_lo) * (out_hi - out_lo) / (in_hi - in_lo)


def db_to_gain(db: float) -> float:
    return 10.0 ** (db / 20.0)


def duration_seconds(duration: str | float) -> float:
    """Resolve a note-value token ("8n") or plain seconds to seconds."""
    if isinstance(duration, str):
        try:
            beats = DURATION_BEATS[duration]
        except KeyError:
            raise ValueError(f"unknown duration token {duration!r}") from None
        return beats * 60.0 / TEMPO_BPM
    secs = float(duration)
    if not math.isfinite(secs) or secs <= 0:
        raise ValueError(f"invalid duration {duration!r}")
    return secs


def root_index_for_activity(activity: float) -> int:
    """Index into CIRCLE_OF_FIFTHS for an activity level."""
    return int(math.floor(activity * len(CIRCLE_OF_FIFTHS))) % len(CIRCLE_OF_FIFTHS)


def choose_degree(rng: RandomSource) -> int:
    """Pick a scale degree from the weighted note table."""
    r = rng.random()
    for bound, degree in DEGREE_TABLE:
        if r < bound:
            return degree
    return rng.choice(OTHER_DEGREES)


def articulation(activity: float) -> str:
    """Note length shortens as the field gets busier."""
    if activity < 0.3:
        return "4n"
    if activity > 0.7:
        return "16n"
    return "8n"


# ═══════════════════════════════════════════════════════════════════════
#  Scale engine
# ═══════════════════════════════════════════════════════════════════════

def build_scale(root_hz: float, scale_type: str) -> list[float]:
    """Equal-temperament frequencies for a root and named offset pattern."""
    if not math.isfinite(root_hz) or root_hz <= 0:
        raise ValueError(f"invalid root frequency {root_hz!r}")
    offsets = SCALES[scale_type]
    return [root_hz * 2.0 ** (offset / 12.0) for offset in offsets]


def fallback_scale(root_hz: float) -> list[float]:
    """Simple-ratio scale used when build_scale() fails."""
    base = root_hz if math.isfinite(root_hz) and root_hz > 0 else DEFAULT_ROOT_HZ
    return [base * ratio for ratio in FALLBACK_RATIOS]


class ScaleEngine:
    """Current root, scale type and the 8-note scale derived from them."""

    def __init__(self, root_hz: float = DEFAULT_ROOT_HZ,
                 scale_type: str = DEFAULT_SCALE) -> None:
        self.root_hz: float = root_hz
        self.scale_type: str = scale_type
        self.previous_root: float = root_hz
        self._scale: tuple[float, ...] = ()
        self._rebuild()

    def _rebuild(self) -> None:
        try:
            self._scale = tuple(build_scale(self.root_hz, self.scale_type))
        except (KeyError, ValueError) as exc:
            logger.warning("Scale %s@%r unavailable (%s); using fallback",
                           self.scale_type, self.root_hz, exc)
            self._scale = tuple(fallback_scale(self.root_hz))

    def set_root(self, freq: float) -> None:
        self.root_hz = freq
        self._rebuild()

    def set_scale_type(self, name: str) -> None:
        self.scale_type = name
        self._rebuild()

    def scale(self) -> tuple[float, ...]:
        return self._scale

    def change_root_by_activity(self, activity: float) -> bool:
        """Move along the circle of fifths. Returns True if anything changed."""
        new_root = CIRCLE_OF_FIFTHS[root_index_for_activity(activity)]
        new_type = "pentatonic" if activity > PENTATONIC_THRESHOLD else "minor"
        if new_root == self.root_hz and new_type == self.scale_type:
            return False
        self.previous_root = self.root_hz
        self.root_hz = new_root
        self.scale_type = new_type
        self._rebuild()
        return True


# ═══════════════════════════════════════════════════════════════════════
#  Deferred callbacks
# ═══════════════════════════════════════════════════════════════════════

class DeferredQueue:
    """Fire-and-forget actions keyed by the time they become due.

    Nothing is ever cancelled; the frame loop calls drain() before each step.
    """

    def __init__(self) -> None:
        self._heap: list[tuple[float, int, Callable[[], None]]] = []
        self._seq = itertools.count()

    def __len__(self) -> int:
        return len(self._heap)

    def schedule(self, fire_at_ms: float, action: Callable[[], None]) -> None:
        heapq.heappush(self._heap, (fire_at_ms, next(self._seq), action))

    def due_times(self) -> list[float]:
        return sorted(entry[0] for entry in self._heap)

    def drain(self, now_ms: float) -> int:
        """Run every action due at or before now_ms. Returns how many ran."""
        ran = 0
        while self._heap and self._heap[0][0] <= now_ms:
            _, _, action = heapq.heappop(self._heap)
            ran += 1
            try:
                action()
            except Exception:
                logger.exception("Deferred action failed; dropped")
        return ran


# ═══════════════════════════════════════════════════════════════════════
#  Composer
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class CompositionState:
    """What the composer remembers between frames."""
    root_hz: float = DEFAULT_ROOT_HZ
    scale_type: str = DEFAULT_SCALE
    last_note_ms: float = -math.inf
    note_spacing_ms: float = FAST_SPACING_MS


class ToneSink(Protocol):
    def play_tone(self, frequency: float, duration: str | float,
                  velocity: float, voice: str) -> bool: ...


class Composer:
    """
    Activity-driven scheduler for notes, chords and key changes.

    Idle until activate() is called (audio device running); from then on
    tick() is called once per frame with the frame counter, the current
    activity level and a millisecond clock.
    """

    def __init__(
        self,
        bridge: ToneSink,
        rng: RandomSource,
        scales: ScaleEngine | None = None,
        queue: DeferredQueue | None = None,
    ) -> None:
        self.bridge = bridge
        self.rng = rng
        self.scales: ScaleEngine = scales if scales is not None else ScaleEngine()
        self.queue: DeferredQueue = queue if queue is not None else DeferredQueue()
        self.state: CompositionState = CompositionState(
            root_hz=self.scales.root_hz, scale_type=self.scales.scale_type,
        )
        self.active: bool = False
        self.activity: float = 0.0
        self.now_ms: float = 0.0
        self.notes_played: int = 0
        self.notes_dropped: int = 0

        # Visual listeners: (degree, frequency, velocity) and no-arg key change
        self.on_note: Callable[[int, float, float], None] | None = None
        self.on_key_change: Callable[[], None] | None = None

    def activate(self) -> None:
        self.active = True

    # ── Per-frame decision ─────────────────────────────────────────────

    def tick(self, frame: int, activity: float, now_ms: float) -> None:
        if not self.active:
            return
        self.activity = activity
        self.now_ms = now_ms

        if self.key_change_due(frame, activity):
            self.change_key()

        if frame % TICKS_PER_BEAT == 0:
            self._beat(frame, activity)

        if frame % DENSITY_TICKS == 0:
            prob = map_range(activity, 0, 1, 0.1, 0.4)
            if self.rng.random() < prob:
                velocity = map_range(activity, 0, 1, 0.15, 0.3)
                self._schedule_note(velocity, self.rng.uniform(0, 400))

        self.state.note_spacing_ms = map_range(
            activity, 0, 1, SLOW_SPACING_MS, FAST_SPACING_MS,
        )

    @staticmethod
    def key_change_due(frame: int, activity: float) -> bool:
        return frame % KEY_CHANGE_TICKS == 0 or (
            activity > FAST_KEY_CHANGE_ACTIVITY and frame % FAST_KEY_CHANGE_TICKS == 0
        )

    def _beat(self, frame: int, activity: float) -> None:
        position = frame % (TICKS_PER_BEAT * BEATS_PER_MEASURE)
        if position == 0:
            if self.rng.random() < 0.7:
                velocity = map_range(activity, 0, 1, 0.2, 0.5)
                self._schedule_note(velocity, self.rng.uniform(17, 100))
        elif position == TICKS_PER_BEAT * 2:
            if self.rng.random() < 0.4:
                velocity = map_range(activity, 0, 1, 0.15, 0.45)
                self._schedule_note(velocity, self.rng.uniform(20, 80))
        elif self.rng.random() < 0.15:
            velocity = map_range(activity, 0, 1, 0.1, 0.3)
            self._schedule_note(velocity, self.rng.uniform(10, 50))

    def _schedule_note(self, velocity: float, delay_ms: float) -> None:
        fire_at = self.now_ms + delay_ms

        def fire() -> None:
            self.play_note(velocity, fire_at)

        self.queue.schedule(fire_at, fire)

    def _defer(self, delay_ms: float, action: Callable[[], None]) -> None:
        self.queue.schedule(self.now_ms + delay_ms, action)

    def _sync_state(self) -> None:
        self.state.root_hz = self.scales.root_hz
        self.state.scale_type = self.scales.scale_type

    # ── Notes ──────────────────────────────────────────────────────────

    def play_note(self, velocity: float = 0.5, now_ms: float | None = None) -> bool:
        """Play one melody note (plus optional harmony/bass).

        Returns False if the request was dropped by the spacing gate.
        """
        if not self.active:
            return False
        if now_ms is not None:
            self.now_ms = now_ms
        now = self.now_ms

        if now - self.state.last_note_ms < self.state.note_spacing_ms:
            self.notes_dropped += 1
            logger.debug("Note dropped %.0fms after the last one",
                         now - self.state.last_note_ms)
            return False
        self.state.last_note_ms = now

        scale = self.scales.scale()
        if not scale:
            logger.error("Scale is empty; note dropped")
            return False

        degree = int(clamp(choose_degree(self.rng), 0, len(scale) - 1))
        freq = scale[degree]
        velocity = clamp(velocity, MIN_VELOCITY, MAX_VELOCITY)
        duration = articulation(self.activity)

        self.bridge.play_tone(freq, duration, velocity, "melody")
        self.notes_played += 1

        if self.rng.random() < HARMONY_CHANCE:
            offsets = HARMONY_OFFSETS.get(self.scales.scale_type, HARMONY_OFFSETS["minor"])
            harmony_idx = (degree + self.rng.choice(offsets)) % len(scale)
            self._defer(HARMONY_DELAY_MS, self._degree_trigger(
                "harmony", harmony_idx, duration, velocity * HARMONY_GAIN))

        if self.rng.random() < BASS_CHANCE:
            bass_idx = self.rng.choice(BASS_DEGREES)
            self._defer(BASS_DELAY_MS, self._degree_trigger(
                "bass", bass_idx, duration, velocity * BASS_GAIN, multiplier=0.5))

        if velocity > VISUAL_VELOCITY and self.on_note is not None:
            self.on_note(degree, freq, velocity)
        return True

    def _degree_trigger(self, voice: str, index: int, duration: str,
                        velocity: float, multiplier: float = 1.0) -> Callable[[], None]:
        """Deferred trigger that reads the scale when it fires."""

        def fire() -> None:
            try:
                freq = self.scales.scale()[index] * multiplier
            except IndexError:
                logger.warning("Degree %d missing from scale; %s tone dropped", index, voice)
                return
            self.bridge.play_tone(freq, duration, velocity, voice)

        return fire

    def play_degree(self, index: int, duration: str = "8n", velocity: float = 0.5) -> bool:
        """Direct melody trigger for pointer input (not spacing-gated)."""
        if not self.active:
            return False
        scale = self.scales.scale()
        if not scale:
            return False
        index = int(clamp(index, 0, len(scale) - 1))
        return self.bridge.play_tone(scale[index], duration, velocity, "melody")

    def degree_for_position(self, x: float, width: float) -> int:
        n = len(self.scales.scale())
        idx = math.floor(map_range(x, 0, width, 0, n))
        return int(clamp(idx, 0, n - 1))

    def play_chord(self) -> None:
        """Root, third and fifth rolled in, root doubled an octave down."""
        if not self.active:
            return
        scale = self.scales.scale()
        if len(scale) < 5:
            logger.error("Scale too short for a chord")
            return
        self.bridge.play_tone(scale[0], "2n", 0.7, "melody")
        self._defer(50, self._degree_trigger("harmony", 2, "2n", 0.6))
        self._defer(100, self._degree_trigger("harmony", 4, "2n", 0.5))
        self._defer(20, self._degree_trigger("bass", 0, "2n", 0.8, multiplier=0.5))

    # ── Key changes ────────────────────────────────────────────────────

    def change_key(self) -> bool:
        changed = self.scales.change_root_by_activity(self.activity)
        if not changed:
            return False
        self._sync_state()
        logger.info("Key change -> %.2f Hz %s", self.scales.root_hz, self.scales.scale_type)
        self.play_transition_chord(self.scales.previous_root)
        if self.on_key_change is not None:
            self.on_key_change()
        return True

    def play_transition_chord(self, previous_root: float) -> None:
        """Schedule the harmonic bridge from the previous key to the current one."""
        if not math.isfinite(previous_root) or previous_root <= 0:
            logger.error("Invalid previous root %r; transition skipped", previous_root)
            return
        for offset, voice, source, degree, mult, duration, velocity in TRANSITION_STEPS:
            if source == "degree":
                action = self._degree_trigger(voice, degree, duration, velocity, mult)
            else:
                action = self._root_trigger(voice, source, previous_root, mult,
                                            duration, velocity)
            self._defer(offset, action)

    def _root_trigger(self, voice: str, source: str, previous_root: float,
                      multiplier: float, duration: str,
                      velocity: float) -> Callable[[], None]:
        def fire() -> None:
            base = previous_root if source == "previous" else self.scales.root_hz
            self.bridge.play_tone(base * multiplier, duration, velocity, voice)

        return fire


# ═══════════════════════════════════════════════════════════════════════
#  Filters (cached coefficients, persistent state)
# ═══════════════════════════════════════════════════════════════════════

class CombFilter:
    """Feedback comb: y[n] = x[n-D] + g * y[n-D]."""

    def __init__(self, delay: int, feedback: float) -> None:
        self.feedback = feedback
        self._b = np.zeros(delay + 1, dtype=np.float64)
        self._b[delay] = 1.0
        self._a = np.zeros(delay + 1, dtype=np.float64)
        self._a[0] = 1.0
        self._a[delay] = -feedback
        self._zi = np.zeros(delay, dtype=np.float64)

    def apply(self, signal: NDArray[np.float64]) -> NDArray[np.float64]:
        out, self._zi = lfilter(self._b, self._a, signal, zi=self._zi)
        return out


class AllpassFilter:
    """Schroeder allpass: y[n] = -g x[n] + x[n-D] + g y[n-D]."""

    def __init__(self, delay: int, gain: float) -> None:
        self._b = np.zeros(delay + 1, dtype=np.float64)
        self._b[0] = -gain
        self._b[delay] = 1.0
        self._a = np.zeros(delay + 1, dtype=np.float64)
        self._a[0] = 1.0
        self._a[delay] = -gain
        self._zi = np.zeros(delay, dtype=np.float64)

    def apply(self, signal: NDArray[np.float64]) -> NDArray[np.float64]:
        out, self._zi = lfilter(self._b, self._a, signal, zi=self._zi)
        return out


class Reverb:
    """Pre-delay into four parallel combs and two series allpasses."""

    def __init__(self, decay_secs: float = REVERB_DECAY_SECS, wet: float = REVERB_WET,
                 predelay_secs: float = REVERB_PREDELAY_SECS) -> None:
        self.wet = wet
        predelay = max(1, int(predelay_secs * SAMPLE_RATE))
        self._predelay = CombFilter(predelay, 0.0)
        self._combs = [
            # Feedback for a 60 dB decay over decay_secs
            CombFilter(d, 10.0 ** (-3.0 * d / (SAMPLE_RATE * decay_secs)))
            for d in REVERB_COMBS
        ]
        self._allpasses = [AllpassFilter(d, g) for d, g in REVERB_ALLPASSES]

    def apply(self, signal: NDArray[np.float32]) -> NDArray[np.float32]:
        dry = signal.astype(np.float64)
        delayed = self._predelay.apply(dry)
        tail = np.zeros_like(dry)
        for comb in self._combs:
            # Unity gain at the resonant peaks
            tail += comb.apply(delayed) * (1.0 - comb.feedback)
        tail /= len(self._combs)
        for allpass in self._allpasses:
            tail = allpass.apply(tail)
        return ((1.0 - self.wet) * dry + self.wet * tail).astype(np.float32)


class Compressor:
    """Buffer-rate feed-forward compressor with attack/release smoothing."""

    def __init__(self, threshold_db: float = COMPRESSOR_THRESHOLD_DB,
                 ratio: float = COMPRESSOR_RATIO) -> None:
        self.threshold_db = threshold_db
        self.ratio = ratio
        self.gain_db: float = 0.0

    def apply(self, signal: NDArray[np.float32]) -> NDArray[np.float32]:
        n = len(signal)
        if n == 0:
            return signal
        rms = float(np.sqrt(np.mean(np.square(signal, dtype=np.float64))))
        level_db = 20.0 * math.log10(max(rms, 1e-9))
        over = level_db - self.threshold_db
        target_db = -over * (1.0 - 1.0 / self.ratio) if over > 0 else 0.0

        tc = COMPRESSOR_ATTACK_SECS if target_db < self.gain_db else COMPRESSOR_RELEASE_SECS
        coeff = 1.0 - math.exp(-(n / SAMPLE_RATE) / tc)
        prev_db = self.gain_db
        self.gain_db = prev_db + (target_db - prev_db) * coeff
        ramp = np.linspace(db_to_gain(prev_db), db_to_gain(self.gain_db),
                           n, dtype=np.float32)
        return signal * ramp


def limit(signal: NDArray[np.float32], ceiling_db: float = LIMITER_CEILING_DB) -> NDArray[np.float32]:
    """Soft limiter (tanh) below the ceiling. In-place."""
    ceiling = db_to_gain(ceiling_db)
    signal /= ceiling
    np.tanh(signal, out=signal)
    signal *= ceiling
    return signal


# ═══════════════════════════════════════════════════════════════════════
#  ADSR Envelope
# ═══════════════════════════════════════════════════════════════════════

class ADSREnvelope:
    """Attack/decay/sustain ramp while the gate is open, then a linear fade.

    The fade starts from whatever level the envelope had reached at note-off,
    so a note cut short during its attack never jumps up to the sustain level.
    """

    def __init__(self, attack: float, decay: float,
                 sustain: float, release: float) -> None:
        self.attack = max(0.001, attack)
        self.decay = max(0.001, decay)
        self.sustain = sustain
        self.release = max(0.001, release)

    def _gated(self, t: NDArray[np.float64]) -> NDArray[np.float64]:
        rise = t / self.attack
        fall = 1.0 - (1.0 - self.sustain) * (t - self.attack) / self.decay
        return np.where(
            t < self.attack, rise,
            np.where(t < self.attack + self.decay, fall, self.sustain),
        )

    def level_at(self, elapsed: float) -> float:
        """Gated level at `elapsed` seconds after note-on."""
        return float(self._gated(np.array([elapsed], dtype=np.float64))[0])

    def generate(self, n_samples: int, gate: bool, elapsed: float,
                 release_time: float = -1.0,
                 release_level: float | None = None) -> NDArray[np.float32]:
        t = elapsed + np.arange(n_samples, dtype=np.float64) / SAMPLE_RATE
        if gate:
            return self._gated(t).astype(np.float32)
        if release_time < 0:
            return np.zeros(n_samples, dtype=np.float32)

        start = self.level_at(release_time) if release_level is None else release_level
        since = np.maximum(0.0, t - release_time)
        env = start * np.maximum(0.0, 1.0 - since / self.release)
        return env.astype(np.float32)



# ═══════════════════════════════════════════════════════════════════════
#  Voice: monophonic additive oscillator with envelope
# ═══════════════════════════════════════════════════════════════════════

class Voice:
    """One synthesizer channel. A new note always retriggers the envelope."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.partials: tuple[float, ...] = VOICE_PARTIALS[name]
        self.envelope = ADSREnvelope(*VOICE_ADSR[name])
        self.level: float = db_to_gain(VOICE_LEVEL_DB[name])
        self.freq: float = 0.0
        self.velocity: float = 0.0
        self.hold: float = 0.0
        self.phase: float = 0.0
        self.active: bool = False
        self.gate: bool = False
        self.elapsed: float = 0.0
        self.release_time: float = -1.0
        self.release_level: float = 0.0
        norm = sum(self.partials)
        self._partial_gain = np.array(self.partials, dtype=np.float64) / norm
        self._harmonics = np.arange(1, len(self.partials) + 1, dtype=np.float64)

    def note_on(self, freq: float, velocity: float, hold: float) -> None:
        self.freq = freq
        self.velocity = velocity
        self.hold = hold
        self.gate = True
        self.active = True
        self.elapsed = 0.0
        self.release_time = -1.0

    def note_off(self) -> None:
        self.gate = False
        self.release_time = self.elapsed
        self.release_level = self.envelope.level_at(self.elapsed)

    def render(self, n_samples: int) -> NDArray[np.float32]:
        if not self.active:
            return np.zeros(n_samples, dtype=np.float32)

        if self.gate and self.elapsed >= self.hold:
            self.note_off()

        dt = 1.0 / SAMPLE_RATE
        inc = TWO_PI * self.freq * dt
        phases = self.phase + inc * np.arange(1, n_samples + 1, dtype=np.float64)
        self.phase = float(np.mod(phases[-1], TWO_PI)) if n_samples > 0 else self.phase

        osc = np.sin(np.outer(phases, self._harmonics)) @ self._partial_gain
        env = self.envelope.generate(n_samples, self.gate, self.elapsed,
                                     self.release_time, self.release_level)
        self.elapsed += n_samples * dt

        if not self.gate and self.elapsed - self.release_time > self.envelope.release:
            self.active = False

        return (osc * env * (self.velocity * self.level)).astype(np.float32)


# ═══════════════════════════════════════════════════════════════════════
#  Synth bridge
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ToneTrigger:
    """Record of one accepted play_tone() call."""
    voice: str
    frequency: float
    duration: float
    velocity: float


class SynthBridge:
    """
    Three monophonic voices behind a compressor, limiter, master gain and
    reverb, streamed through PyAudio.

    Call start() on the first user gesture, play_tone() from the main
    thread, and stop() on shutdown. render() can be used without a device.
    """

    def __init__(self) -> None:
        self.voices: dict[str, Voice] = {name: Voice(name) for name in VOICE_NAMES}
        self.target_volume: float = DEFAULT_VOLUME
        self._gain: float = DEFAULT_VOLUME
        self._compressor = Compressor()
        self._reverb = Reverb()

        self.trigger_count: int = 0
        self.voice_counts: dict[str, int] = {name: 0 for name in VOICE_NAMES}
        self.recent: deque[ToneTrigger] = deque(maxlen=64)

        self._pa: pyaudio.PyAudio | None = None  # type: ignore[name-defined]
        self._stream: pyaudio.Stream | None = None  # type: ignore[name-defined]
        self._running: bool = False
        self._underrun_count: int = 0

    # ── Public properties ──────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._running

    @property
    def volume(self) -> float:
        return self.target_volume

    @property
    def volume_percent(self) -> int:
        return round(self.target_volume * 100)

    # ── Controls ───────────────────────────────────────────────────────

    def set_volume(self, value: float) -> float:
        """Clamp to [0, 1] and ramp the master gain there."""
        self.target_volume = clamp(value, 0.0, 1.0)
        logger.info("Volume set to %d%%", self.volume_percent)
        return self.target_volume

    def adjust_volume(self, delta: float) -> float:
        return self.set_volume(self.target_volume + delta)

    def play_tone(self, frequency: float, duration: str | float,
                  velocity: float, voice: str) -> bool:
        """Trigger a note on one voice. Failures drop only this note."""
        try:
            target = self.voices[voice]
            hold = duration_seconds(duration)
            if not math.isfinite(frequency) or frequency <= 0:
                raise ValueError(f"invalid frequency {frequency!r}")
        except KeyError:
            logger.warning("No voice named %r; tone dropped", voice)
            return False
        except ValueError as exc:
            logger.warning("Tone on %s dropped: %s", voice, exc)
            return False

        velocity = clamp(velocity, 0.0, 1.0)
        target.note_on(frequency, velocity, hold)
        self.trigger_count += 1
        self.voice_counts[voice] += 1
        self.recent.append(ToneTrigger(voice, frequency, hold, velocity))
        return True

    # ── Lifecycle ──────────────────────────────────────────────────────

    def start(self) -> bool:
        """Start audio output. Returns True on success, False on failure."""
        if pyaudio is None:
            logger.error("PyAudio is not installed; audio stays off")
            return False

        try:
            self._pa = pyaudio.PyAudio()
            self._stream = self._pa.open(
                format=pyaudio.paFloat32,
                channels=1,
                rate=SAMPLE_RATE,
                output=True,
                frames_per_buffer=BUFFER_SIZE,
                stream_callback=self._audio_callback,
            )
            self._stream.start_stream()
            self._running = True
            logger.info("Audio started (%d Hz, %d frames/buffer)", SAMPLE_RATE, BUFFER_SIZE)
            return True
        except Exception as exc:
            logger.error("Could not start audio device: %s", exc)
            self._cleanup_audio()
            return False

    def stop(self) -> None:
        """Stop audio output and clean up resources."""
        self._running = False
        self._cleanup_audio()

    def _cleanup_audio(self) -> None:
        try:
            if self._stream is not None:
                if self._stream.is_active():
                    self._stream.stop_stream()
                self._stream.close()
        except Exception as exc:
            logger.warning("Error closing audio stream: %s", exc)
        self._stream = None
        try:
            if self._pa is not None:
                self._pa.terminate()
        except Exception as exc:
            logger.warning("Error terminating PyAudio: %s", exc)
        self._pa = None

    # ── Rendering ──────────────────────────────────────────────────────

    def _audio_callback(
        self,
        in_data: bytes | None,
        frame_count: int,
        time_info: dict[str, float],
        status_flags: int,
    ) -> tuple[bytes, int]:
        """PyAudio stream callback."""
        if not self._running:
            return (b"\x00" * (frame_count * 4), pyaudio.paComplete)

        if status_flags & pyaudio.paOutputUnderflow:
            self._underrun_count += 1

        try:
            samples = self.render(frame_count)
        except Exception:
            logger.exception("Render failed; emitting silence")
            samples = np.zeros(frame_count, dtype=np.float32)

        return (samples.tobytes(), pyaudio.paContinue)

    def render(self, n_samples: int) -> NDArray[np.float32]:
        """Mix voices through the master chain."""
        mix = np.zeros(n_samples, dtype=np.float32)
        for voice in self.voices.values():
            if voice.active:
                mix += voice.render(n_samples)

        mix = self._compressor.apply(mix)
        mix = limit(mix)

        # Master gain ramps toward target with a ~100ms time constant
        prev = self._gain
        coeff = 1.0 - math.exp(-(n_samples / SAMPLE_RATE) / VOLUME_RAMP_SECS)
        self._gain = prev + (self.target_volume - prev) * coeff
        mix *= np.linspace(prev, self._gain, n_samples, dtype=np.float32)

        return self._reverb.apply(mix)

    # ── Status string for display ──────────────────────────────────────

    def status_string(self) -> str:
        base = f"vol {self.volume_percent}%"
        if self._underrun_count > 0:
            base += f" XR:{self._underrun_count}"
        return base
