#!/usr/bin/env python3
"""
  ~  D R I F T  ~
  A generative particle field that plays itself.

  Particles ride a slowly turning noise flow field, leaving trails that
  fade into a background tinted by the current colour theme. The busier
  the field, the denser and shorter the notes: a probabilistic composer
  listens to the aggregate particle speed, walks the circle of fifths,
  and answers every note it plays with a ripple and a burst of particles.

  Controls:
    click     start audio / ripple + note   drag      paint particles
    SPACE     chord burst                   c         clear
    f         toggle fade length            r         new colour theme
    + / -     volume up / down              0         reset volume
    s         toggle stats overlay          q         quit

  Logs go to drift.log and telemetry to drift_stats.csv beside this script
  (or in $DRIFT_LOG_DIR).
"""

from __future__ import annotations

import argparse
import colorsys
import curses
import logging
import math
import os
import random
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, ClassVar, Sequence

import numpy as np
from numpy.typing import NDArray

from drift_music import (
    DEFAULT_VOLUME,
    POSSIBLE_ROOTS,
    VOLUME_STEP,
    Composer,
    RandomSource,
    SynthBridge,
    clamp,
    lerp,
    map_range,
)

logger = logging.getLogger(__name__)

RGBA = tuple[float, float, float, float]

# ── Canvas ──────────────────────────────────────────────────────────────
# Logical canvas units per raster pixel (a raster pixel is half a cell)
UNITS_PER_PIXEL: float = 4.0
UPPER_HALF = "▀"

BLEND_NORMAL: str = "normal"
BLEND_ADD: str = "add"

# ── Time ────────────────────────────────────────────────────────────────
DEFAULT_FPS: int = 60
TIME_STEP: float = 0.003  # t advanced per frame

# ── Particles ───────────────────────────────────────────────────────────
INITIAL_PARTICLES: int = 100
PARTICLE_CAP: int = 150
PARTICLE_LIFESPAN: float = 250.0
EDGE_SPAWN_TICKS: int = 20
EDGE_SPAWN_OFFSET: float = 10.0
WRAP_MARGIN: float = 50.0
MAX_PARTICLE_SPEED: float = 3.0
FLOW_ANGLE_RANGE: float = 4.0 * math.pi  # two full turns
FLOW_TIME_SCALE: float = 0.1
DIRECTION_CHANGE_CHANCE: float = 0.01
DIRECTION_CHANGE_MAX: float = math.pi / 4

# ── Activity ────────────────────────────────────────────────────────────
ACTIVITY_BAND: tuple[float, float] = (0.1, 0.9)
ACTIVITY_SMOOTHING: float = 0.05

# ── Fade ────────────────────────────────────────────────────────────────
DEFAULT_FADE_AMOUNT: float = 0.1
FADE_PRESETS: tuple[float, float] = (0.05, 0.02)

# ── Input bursts ────────────────────────────────────────────────────────
POINTER_BURST: int = 55
CHORD_BURST: int = 50
DRAG_EVERY: int = 3
DRAG_NOTE_CHANCE: float = 0.1
DRAG_VELOCITY_SCALE: float = 0.82

ROOT_NAMES: dict[float, str] = dict(zip(POSSIBLE_ROOTS, ("C3", "D3", "E3", "F3", "G3", "A3", "B3")))

LOG_DIR_ENV = "DRIFT_LOG_DIR"
LOG_FILE = "drift.log"
STATS_FILE = "drift_stats.csv"


def default_log_dir() -> Path:
    env_dir = os.environ.get(LOG_DIR_ENV)
    if env_dir:
        return Path(env_dir).expanduser()
    return Path(__file__).resolve().parent


def setup_file_logger(
    filename: str = LOG_FILE,
    *,
    level: int = logging.INFO,
    log_dir: Path | None = None,
) -> Path:
    """Send all log records to a file; the terminal belongs to curses."""
    path = (log_dir or default_log_dir()) / filename
    path.parent.mkdir(parents=True, exist_ok=True)
    root = logging.getLogger()
    if any(isinstance(h, logging.FileHandler) for h in root.handlers):
        return path
    root.setLevel(level)
    handler = logging.FileHandler(path)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    root.addHandler(handler)
    return path


def hsb(hue: float, sat: float, bri: float, alpha: float = 255.0) -> RGBA:
    """HSB (degrees, percent, percent) to an RGBA tuple in 0-255."""
    r, g, b = colorsys.hsv_to_rgb((hue % 360.0) / 360.0,
                                  clamp(sat / 100.0, 0.0, 1.0),
                                  clamp(bri / 100.0, 0.0, 1.0))
    return (r * 255.0, g * 255.0, b * 255.0, alpha)


# ═══════════════════════════════════════════════════════════════════════
#  Noise field
# ═══════════════════════════════════════════════════════════════════════

def _fade(t: float) -> float:
    return t * t * t * (t * (t * 6.0 - 15.0) + 10.0)


def _grad(h: int, x: float, y: float, z: float) -> float:
    h &= 15
    u = x if h < 8 else y
    if h < 4:
        v = y
    elif h in (12, 14):
        v = x
    else:
        v = z
    return (u if h & 1 == 0 else -u) + (v if h & 2 == 0 else -v)


class NoiseField:
    """Smooth 3-D gradient noise in [0, 1), deterministic for a given seed.

    Sampled once per particle per frame, so the inner loop stays in plain
    Python floats; numpy only shuffles the permutation table.
    """

    def __init__(self, seed: int | None = None, octaves: int = 4,
                 falloff: float = 0.5) -> None:
        perm = np.random.default_rng(seed).permutation(256)
        self._p: list[int] = np.concatenate((perm, perm)).tolist()
        self.octaves = octaves
        self.falloff = falloff
        self._norm = sum(falloff ** i for i in range(octaves))

    def _perlin(self, x: float, y: float, z: float) -> float:
        p = self._p
        xf, yf, zf = math.floor(x), math.floor(y), math.floor(z)
        xi, yi, zi = int(xf) & 255, int(yf) & 255, int(zf) & 255
        x -= xf
        y -= yf
        z -= zf
        u, v, w = _fade(x), _fade(y), _fade(z)

        a = p[xi] + yi
        aa = p[a] + zi
        ab = p[a + 1] + zi
        b = p[xi + 1] + yi
        ba = p[b] + zi
        bb = p[b + 1] + zi

        x1 = lerp(_grad(p[aa], x, y, z), _grad(p[ba], x - 1, y, z), u)
        x2 = lerp(_grad(p[ab], x, y - 1, z), _grad(p[bb], x - 1, y - 1, z), u)
        y1 = lerp(x1, x2, v)
        x1 = lerp(_grad(p[aa + 1], x, y, z - 1), _grad(p[ba + 1], x - 1, y, z - 1), u)
        x2 = lerp(_grad(p[ab + 1], x, y - 1, z - 1), _grad(p[bb + 1], x - 1, y - 1, z - 1), u)
        y2 = lerp(x1, x2, v)
        return lerp(y1, y2, w)

    def sample(self, x: float, y: float, z: float) -> float:
        total = 0.0
        amp = 1.0
        freq = 1.0
        for _ in range(self.octaves):
            total += amp * self._perlin(x * freq, y * freq, z * freq)
            amp *= self.falloff
            freq *= 2.0
        value = (total / self._norm + 1.0) * 0.5
        return min(max(value, 0.0), math.nextafter(1.0, 0.0))


# ═══════════════════════════════════════════════════════════════════════
#  Colour theme
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class ColorTheme:
    """Palette derived from one base hue. Replaced wholesale, never patched."""

    base_hue: float
    particle_colors: tuple[RGBA, ...]
    background: RGBA
    audio_color: RGBA
    fade_color: RGBA

    @classmethod
    def generate(cls, rng: RandomSource, fade_amount: float = DEFAULT_FADE_AMOUNT) -> ColorTheme:
        h = rng.uniform(0.0, 360.0)
        theme = cls(
            base_hue=h,
            particle_colors=(
                hsb(h, 70, 80, 180),
                hsb(h - 30, 80, 75, 180),
                hsb(h - 60, 90, 70, 180),
                hsb(h - 180, 80, 85, 180),
            ),
            background=hsb(h, 10, 5, 25),
            audio_color=hsb(h + 120, 90, 85, 200),
            fade_color=hsb(h, 10, 5, fade_amount * 255.0),
        )
        theme.update(0.0, fade_amount)
        return theme

    def update(self, t: float, fade_amount: float) -> None:
        """Slow two-sine drift of the fade colour around the base hue."""
        self.fade_color = hsb(
            self.base_hue + math.sin(t * 0.1) * 10.0,
            10.0,
            5.0 + math.sin(t * 0.05) * 5.0,
            fade_amount * 255.0,
        )


# ═══════════════════════════════════════════════════════════════════════
#  Particles
# ═══════════════════════════════════════════════════════════════════════

@dataclass(eq=False)
class Particle:
    """A self-propelled point steered by the flow field."""

    x: float
    y: float
    vx: float
    vy: float
    color: RGBA | None
    size: float
    lifespan: float
    max_speed: float
    noise_scale: float
    noise_strength: float
    ax: float = 0.0
    ay: float = 0.0

    @classmethod
    def spawn(cls, x: float, y: float, color: RGBA | None, rng: RandomSource) -> Particle:
        return cls(
            x=x,
            y=y,
            vx=rng.uniform(-1.0, 1.0),
            vy=rng.uniform(-1.0, 1.0),
            color=color,
            size=rng.uniform(3.0, 8.0),
            lifespan=PARTICLE_LIFESPAN * rng.uniform(0.8, 1.2),
            max_speed=rng.uniform(0.5, MAX_PARTICLE_SPEED),
            noise_scale=rng.uniform(0.002, 0.01),
            noise_strength=rng.uniform(0.1, 0.5),
        )

    @property
    def speed(self) -> float:
        return math.hypot(self.vx, self.vy)

    def apply_force(self, fx: float, fy: float) -> None:
        self.ax += fx
        self.ay += fy

    def rotate(self, angle: float) -> None:
        c, s = math.cos(angle), math.sin(angle)
        self.vx, self.vy = self.vx * c - self.vy * s, self.vx * s + self.vy * c

    def update(self, noise: NoiseField, t: float, width: float, height: float,
               rng: RandomSource) -> None:
        n = noise.sample(self.x * self.noise_scale, self.y * self.noise_scale,
                         t * FLOW_TIME_SCALE)
        angle = n * FLOW_ANGLE_RANGE
        self.apply_force(math.cos(angle) * self.noise_strength,
                         math.sin(angle) * self.noise_strength)

        if rng.random() < DIRECTION_CHANGE_CHANCE:
            self.rotate(rng.uniform(-DIRECTION_CHANGE_MAX, DIRECTION_CHANGE_MAX))

        self.vx += self.ax
        self.vy += self.ay
        speed = math.hypot(self.vx, self.vy)
        if speed > self.max_speed:
            k = self.max_speed / speed
            self.vx *= k
            self.vy *= k
        self.x += self.vx
        self.y += self.vy
        self.ax = 0.0
        self.ay = 0.0

        self.lifespan -= rng.uniform(0.5, 1.5)

        # Toroidal wrap with a margin outside the canvas
        if self.x < -WRAP_MARGIN:
            self.x = width + WRAP_MARGIN
        if self.x > width + WRAP_MARGIN:
            self.x = -WRAP_MARGIN
        if self.y < -WRAP_MARGIN:
            self.y = height + WRAP_MARGIN
        if self.y > height + WRAP_MARGIN:
            self.y = -WRAP_MARGIN

    def is_dead(self) -> bool:
        return self.lifespan <= 0


class ParticleSystem:
    """Owns every particle and the activity level derived from them."""

    def __init__(self, rng: RandomSource) -> None:
        self.rng = rng
        self._particles: list[Particle] = []
        self._activity: float = 0.0
        self.removed_total: int = 0
        self._hold_spawn: bool = False

    def __len__(self) -> int:
        return len(self._particles)

    def all(self) -> tuple[Particle, ...]:
        return tuple(self._particles)

    def activity_level(self) -> float:
        return self._activity

    def clear(self) -> None:
        """Drop everything; the next step does not refill from an edge."""
        self._particles.clear()
        self._hold_spawn = True

    def spawn_initial(self, n: int, width: float, height: float,
                      palette: Sequence[RGBA]) -> None:
        for _ in range(n):
            self.spawn_at(self.rng.uniform(0, width), self.rng.uniform(0, height),
                          self.rng.choice(palette))

    def spawn_at(
        self,
        x: float,
        y: float,
        color: RGBA | None = None,
        velocity: tuple[float, float] | None = None,
    ) -> Particle:
        """Add one particle. A None colour is filled from the theme on the next step."""
        p = Particle.spawn(x, y, color, self.rng)
        if velocity is not None:
            p.vx, p.vy = velocity
        self._particles.append(p)
        return p

    def burst(
        self,
        x: float,
        y: float,
        count: int,
        color: RGBA | None,
        distance: tuple[float, float],
        speed: tuple[float, float],
    ) -> None:
        """Particles around (x, y) moving radially outward."""
        for _ in range(count):
            angle = self.rng.uniform(0.0, 2.0 * math.pi)
            dist = self.rng.uniform(*distance)
            mag = self.rng.uniform(*speed)
            p = self.spawn_at(x + math.cos(angle) * dist, y + math.sin(angle) * dist, color,
                              (math.cos(angle) * mag, math.sin(angle) * mag))
            p.lifespan = PARTICLE_LIFESPAN * self.rng.uniform(0.8, 1.2)

    def step(self, state: SimulationState) -> int:
        """Advance, retire the dead, maybe spawn at an edge, recompute activity.

        Returns the number of particles removed.
        """
        palette = state.theme.particle_colors
        particles = self._particles
        removed = 0
        # Backward so deletion keeps the remaining indices valid
        for i in range(len(particles) - 1, -1, -1):
            p = particles[i]
            if p.color is None:
                p.color = self.rng.choice(palette)
            p.update(state.noise, state.t, state.width, state.height, self.rng)
            if p.is_dead():
                del particles[i]
                removed += 1
        self.removed_total += removed

        if self._hold_spawn:
            self._hold_spawn = False
        elif state.frame % EDGE_SPAWN_TICKS == 0 and len(particles) < PARTICLE_CAP:
            self._spawn_at_edge(state.width, state.height, palette)

        self._update_activity()
        return removed

    def _spawn_at_edge(self, width: float, height: float, palette: Sequence[RGBA]) -> None:
        edge = int(self.rng.uniform(0, 4)) % 4
        if edge == 0:
            x, y = self.rng.uniform(0, width), -EDGE_SPAWN_OFFSET
        elif edge == 1:
            x, y = width + EDGE_SPAWN_OFFSET, self.rng.uniform(0, height)
        elif edge == 2:
            x, y = self.rng.uniform(0, width), height + EDGE_SPAWN_OFFSET
        else:
            x, y = -EDGE_SPAWN_OFFSET, self.rng.uniform(0, height)
        self.spawn_at(x, y, self.rng.choice(palette))

    def _update_activity(self) -> None:
        if self._particles:
            mean = sum(p.speed for p in self._particles) / len(self._particles)
            level = clamp(mean / MAX_PARTICLE_SPEED, 0.0, 1.0)
        else:
            level = 0.0
        # Nudge toward the band rather than tracking a target
        lo, hi = ACTIVITY_BAND
        self._activity = lerp(level, clamp(level, lo, hi), ACTIVITY_SMOOTHING)


# ═══════════════════════════════════════════════════════════════════════
#  Audio events (visual markers for musical events)
# ═══════════════════════════════════════════════════════════════════════

@dataclass(eq=False)
class AudioEvent:
    """Expanding, fading marker. Subclasses only differ in shape."""

    kind: ClassVar[str] = ""

    x: float
    y: float
    speed: float
    weight: float
    color: RGBA
    radius: float = 10.0
    opacity: float = 200.0
    fade_rate: float = 2.0

    def advance(self) -> bool:
        """Grow and fade one frame. Returns False once fully faded."""
        self.radius += self.speed
        self.opacity -= self.fade_rate
        return self.opacity > 0


class NoteRipple(AudioEvent):
    kind = "note"


class ChordRipple(AudioEvent):
    kind = "chord"


class KeyChangeStar(AudioEvent):
    kind = "keyChange"


EVENT_TYPES: dict[str, type[AudioEvent]] = {
    cls.kind: cls for cls in (NoteRipple, ChordRipple, KeyChangeStar)
}


def step_events(events: list[AudioEvent]) -> int:
    """Advance every event, removing faded ones. Returns how many were removed."""
    removed = 0
    for i in range(len(events) - 1, -1, -1):
        if not events[i].advance():
            del events[i]
            removed += 1
    return removed


# ═══════════════════════════════════════════════════════════════════════
#  Simulation state
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class SimulationState:
    """Everything the frame step mutates, in one place."""

    width: float
    height: float
    rng: RandomSource
    noise: NoiseField
    theme: ColorTheme
    particles: ParticleSystem
    events: list[AudioEvent] = field(default_factory=list)
    t: float = 0.0
    frame: int = 0
    fade_amount: float = DEFAULT_FADE_AMOUNT


def make_audio_event(
    state: SimulationState,
    kind: str,
    x: float,
    y: float,
    intensity: float,
    color: RGBA | None = None,
) -> AudioEvent:
    """Add a marker plus a ring of particles around it."""
    factor = map_range(intensity, 0, 1, 0.5, 2)
    event = EVENT_TYPES[kind](
        x=x,
        y=y,
        speed=2.0 * factor,
        weight=2.0 * factor,
        color=color if color is not None else state.theme.audio_color,
    )
    state.events.append(event)

    count = math.ceil(map_range(intensity, 0, 1, 5, 20))
    for _ in range(count):
        p_color = color if color is not None else state.rng.choice(state.theme.particle_colors)
        state.particles.burst(x, y, 1, p_color, distance=(5.0, 30.0), speed=(1.0, 3.0))
    return event


def create_note_particles(
    state: SimulationState,
    x: float,
    y: float,
    frequency: float,
    velocity: float,
    scale: Sequence[float],
) -> None:
    """Burst coloured by pitch and sized by velocity."""
    hue = map_range(frequency, scale[0], scale[-1], 0, 150)
    color = hsb(hue, 80, 90, 180)
    count = math.ceil(map_range(velocity, 0, 1, 5, 20))
    size = map_range(velocity, 0, 1, 3, 80)
    rng = state.rng
    for _ in range(count):
        angle = rng.uniform(0.0, 2.0 * math.pi)
        speed = rng.uniform(0.5, 20.0)
        p = state.particles.spawn_at(x, y, color, (math.cos(angle) * speed, math.sin(angle) * speed))
        p.lifespan = PARTICLE_LIFESPAN * rng.uniform(0.8, 1.2)
        p.size = size


# ═══════════════════════════════════════════════════════════════════════
#  Raster canvas
# ═══════════════════════════════════════════════════════════════════════

class Canvas:
    """RGB float raster addressed in logical canvas units.

    Shapes are anti-aliased by pixel coverage and blended either normally
    (alpha over) or additively.
    """

    def __init__(self, raster_w: int, raster_h: int,
                 units_per_pixel: float = UNITS_PER_PIXEL) -> None:
        self.raster_w = max(1, raster_w)
        self.raster_h = max(1, raster_h)
        self.units = units_per_pixel
        self.width: float = self.raster_w * units_per_pixel
        self.height: float = self.raster_h * units_per_pixel
        self.pixels: NDArray[np.float32] = np.zeros(
            (self.raster_h, self.raster_w, 3), dtype=np.float32
        )
        self.blend_mode: str = BLEND_NORMAL

    def set_blend_mode(self, mode: str) -> None:
        if mode not in (BLEND_NORMAL, BLEND_ADD):
            raise ValueError(f"unknown blend mode {mode!r}")
        self.blend_mode = mode

    def clear(self) -> None:
        self.pixels[:] = 0.0

    def clear_with_alpha(self, color: RGBA) -> None:
        """Wash the whole raster toward color by its alpha."""
        a = clamp(color[3] / 255.0, 0.0, 1.0)
        rgb = np.array(color[:3], dtype=np.float32)
        self.pixels += (rgb - self.pixels) * a

    def composite_layer(self, layer: Canvas) -> None:
        """Copy another canvas of the same size onto this one."""
        if layer.pixels.shape == self.pixels.shape:
            self.pixels[:] = layer.pixels

    def _blend(self, y0: int, x0: int, coverage: NDArray[np.float32], color: RGBA) -> None:
        h, w = coverage.shape
        region = self.pixels[y0:y0 + h, x0:x0 + w]
        a = (coverage * clamp(color[3] / 255.0, 0.0, 1.0))[..., None]
        rgb = np.array(color[:3], dtype=np.float32)
        if self.blend_mode == BLEND_ADD:
            region += rgb * a
            np.minimum(region, 255.0, out=region)
        else:
            region += (rgb - region) * a

    def _window(self, cx: float, cy: float, reach: float) -> tuple[int, int, int, int] | None:
        x0 = max(0, int(math.floor(cx - reach)))
        x1 = min(self.raster_w, int(math.ceil(cx + reach)) + 1)
        y0 = max(0, int(math.floor(cy - reach)))
        y1 = min(self.raster_h, int(math.ceil(cy + reach)) + 1)
        if x0 >= x1 or y0 >= y1:
            return None
        return x0, x1, y0, y1

    def draw_ellipse(self, x: float, y: float, diameter: float, color: RGBA,
                     stroke_weight: float | None = None) -> None:
        """Filled disc, or a ring when stroke_weight is given."""
        cx, cy = x / self.units, y / self.units
        r = max(diameter, 0.0) * 0.5 / self.units
        half_w = 0.0 if stroke_weight is None else max(stroke_weight, 1.0) * 0.5 / self.units
        win = self._window(cx, cy, r + half_w + 1.0)
        if win is None:
            return
        x0, x1, y0, y1 = win
        ys, xs = np.mgrid[y0:y1, x0:x1].astype(np.float32)
        dist = np.hypot(xs + 0.5 - cx, ys + 0.5 - cy)
        if stroke_weight is None:
            coverage = np.clip(r + 0.5 - dist, 0.0, 1.0)
        else:
            coverage = np.clip(half_w + 0.5 - np.abs(dist - r), 0.0, 1.0)
        self._blend(y0, x0, coverage.astype(np.float32), color)

    def draw_polygon(self, points: Sequence[tuple[float, float]], color: RGBA,
                     stroke_weight: float = 1.0) -> None:
        """Closed outline through points."""
        n = len(points)
        for i in range(n):
            self._draw_segment(points[i], points[(i + 1) % n], color, stroke_weight)

    def _draw_segment(self, p0: tuple[float, float], p1: tuple[float, float],
                      color: RGBA, stroke_weight: float) -> None:
        ax, ay = p0[0] / self.units, p0[1] / self.units
        bx, by = p1[0] / self.units, p1[1] / self.units
        half_w = max(stroke_weight, 1.0) * 0.5 / self.units
        x0 = max(0, int(math.floor(min(ax, bx) - half_w - 1)))
        x1 = min(self.raster_w, int(math.ceil(max(ax, bx) + half_w + 1)) + 1)
        y0 = max(0, int(math.floor(min(ay, by) - half_w - 1)))
        y1 = min(self.raster_h, int(math.ceil(max(ay, by) + half_w + 1)) + 1)
        if x0 >= x1 or y0 >= y1:
            return
        ys, xs = np.mgrid[y0:y1, x0:x1].astype(np.float32)
        px, py = xs + 0.5 - ax, ys + 0.5 - ay
        dx, dy = bx - ax, by - ay
        seg_len2 = dx * dx + dy * dy
        if seg_len2 > 0:
            t = np.clip((px * dx + py * dy) / seg_len2, 0.0, 1.0)
        else:
            t = np.zeros_like(px)
        dist = np.hypot(px - t * dx, py - t * dy)
        coverage = np.clip(half_w + 0.5 - dist, 0.0, 1.0).astype(np.float32)
        self._blend(y0, x0, coverage, color)


def _with_alpha(color: RGBA, alpha: float) -> RGBA:
    return (color[0], color[1], color[2], alpha)


def draw_particle_trails(canvas: Canvas, particles: Sequence[Particle]) -> None:
    """Faint trails onto the fade layer, longer for faster particles."""
    canvas.set_blend_mode(BLEND_NORMAL)
    for p in particles:
        if p.color is None:
            continue
        opacity = map_range(p.lifespan, 0, PARTICLE_LIFESPAN, 0, 10)
        speed = p.speed
        if speed > 0.5:
            trail_len = map_range(speed, 0.5, 3, 3, 5)
            for i in range(int(math.ceil(trail_len))):
                size = map_range(i, 0, trail_len, p.size, p.size * 0.2)
                alpha = map_range(i, 0, trail_len, opacity * 0.5, 0)
                canvas.draw_ellipse(p.x - p.vx * i * 0.5, p.y - p.vy * i * 0.5, size,
                                    _with_alpha(p.color, alpha))
        else:
            canvas.draw_ellipse(p.x, p.y, p.size * 1.2, _with_alpha(p.color, opacity * 0.5))


def draw_particles(canvas: Canvas, particles: Sequence[Particle]) -> None:
    canvas.set_blend_mode(BLEND_ADD)
    for p in particles:
        if p.color is not None:
            canvas.draw_ellipse(p.x, p.y, p.size, _with_alpha(p.color, 150))
    canvas.set_blend_mode(BLEND_NORMAL)


def star_points(x: float, y: float, radius: float) -> list[tuple[float, float]]:
    """Five-point star, rotating as it grows."""
    spin = radius * 0.01
    points: list[tuple[float, float]] = []
    for j in range(10):
        r = radius if j % 2 == 0 else radius * 0.6
        angle = spin + math.pi * j / 5
        points.append((x + math.sin(angle) * r, y - math.cos(angle) * r))
    return points


def draw_event(canvas: Canvas, event: AudioEvent) -> None:
    color = _with_alpha(event.color, max(event.opacity, 0.0))
    if event.kind == "note":
        canvas.draw_ellipse(event.x, event.y, event.radius * 2, color, event.weight)
    elif event.kind == "chord":
        for j in range(3):
            r = event.radius * (0.7 + j * 0.2)
            canvas.draw_ellipse(event.x, event.y, r * 2, color, event.weight)
    elif event.kind == "keyChange":
        canvas.draw_polygon(star_points(event.x, event.y, event.radius), color, event.weight)


# ═══════════════════════════════════════════════════════════════════════
#  The sketch
# ═══════════════════════════════════════════════════════════════════════

class DriftSketch:
    """
    Top-level controller: owns the simulation state, both canvases, the
    composer and the synth bridge, and implements the input handlers.

    Frame order: deferred callbacks → time → fade layer → particles →
    activity → audio events → composer.
    """

    def __init__(
        self,
        raster_w: int,
        raster_h: int,
        rng: RandomSource | None = None,
        bridge: SynthBridge | None = None,
        noise_seed: int | None = None,
        initial_particles: int = INITIAL_PARTICLES,
    ) -> None:
        self.rng: RandomSource = rng if rng is not None else random.Random()
        self.bridge: SynthBridge = bridge if bridge is not None else SynthBridge()
        self.canvas = Canvas(raster_w, raster_h)
        self.fade = Canvas(raster_w, raster_h)

        self.state = SimulationState(
            width=self.canvas.width,
            height=self.canvas.height,
            rng=self.rng,
            noise=NoiseField(noise_seed),
            theme=ColorTheme.generate(self.rng),
            particles=ParticleSystem(self.rng),
        )
        self.composer = Composer(self.bridge, self.rng)
        self.composer.on_note = self._note_visual
        self.composer.on_key_change = self._key_change_visual

        self.key_changes: int = 0
        self.last_event: str = ""
        self._drag_frame: int = -1
        # Set by clear(); music visuals stay off until the next frame has run
        self._quiet_frame: bool = False

        self.state.particles.spawn_initial(
            initial_particles, self.state.width, self.state.height,
            self.state.theme.particle_colors,
        )

    # ── Properties ──────────────────────────────────────────────────

    @property
    def audio_active(self) -> bool:
        return self.composer.active

    @property
    def particles(self) -> ParticleSystem:
        return self.state.particles

    @property
    def events(self) -> list[AudioEvent]:
        return self.state.events

    # ── Frame ───────────────────────────────────────────────────────

    def step(self, now_ms: float, render: bool = True) -> str:
        """Advance one frame. Returns an event tag for telemetry ("" if none)."""
        self.last_event = ""
        self.composer.queue.drain(now_ms)

        st = self.state
        st.frame += 1
        st.t += TIME_STEP
        st.theme.update(st.t, st.fade_amount)

        if render:
            self.fade.set_blend_mode(BLEND_NORMAL)
            self.fade.clear_with_alpha(st.theme.fade_color)
            draw_particle_trails(self.fade, st.particles.all())
            self.canvas.composite_layer(self.fade)

        st.particles.step(st)
        if render:
            draw_particles(self.canvas, st.particles.all())

        step_events(st.events)
        if render:
            for event in st.events:
                draw_event(self.canvas, event)

        self.composer.tick(st.frame, st.particles.activity_level(), now_ms)
        self._quiet_frame = False
        return self.last_event

    # ── Audio ───────────────────────────────────────────────────────

    def init_audio(self) -> bool:
        if self.composer.active:
            return True
        if not self.bridge.start():
            logger.error("Audio unavailable; continuing without sound")
            return False
        self.composer.activate()
        self.last_event = "audio"
        return True

    def set_volume(self, value: float) -> float:
        return self.bridge.set_volume(value)

    def _note_visual(self, degree: int, frequency: float, velocity: float) -> None:
        self.last_event = "note"
        if self._quiet_frame:
            return
        st = self.state
        scale = self.composer.scales.scale()
        x = map_range(degree, 0, len(scale) - 1, st.width * 0.2, st.width * 0.8)
        y = map_range(frequency, scale[0], scale[-1], st.height * 0.8, st.height * 0.2)
        make_audio_event(st, "note", x, y, velocity)
        create_note_particles(st, x, y, frequency, velocity, scale)

    def _key_change_visual(self) -> None:
        self.key_changes += 1
        self.last_event = "key"
        if self._quiet_frame:
            return
        st = self.state
        make_audio_event(st, "keyChange", st.width / 2, st.height / 2, 0.8, st.theme.audio_color)

    # ── Input handlers ──────────────────────────────────────────────

    def pointer_down(self, x: float, y: float) -> None:
        if not self.composer.active:
            self.init_audio()
            return
        st = self.state
        make_audio_event(st, "note", x, y, 0.7)
        for _ in range(POINTER_BURST):
            angle = self.rng.uniform(0.0, 2.0 * math.pi)
            mag = self.rng.uniform(1.0, 3.0)
            st.particles.spawn_at(
                x + self.rng.uniform(-20, 20), y + self.rng.uniform(-20, 20), None,
                (math.cos(angle) * mag, math.sin(angle) * mag),
            )
        degree = self.composer.degree_for_position(x, st.width)
        self.composer.play_degree(degree, "8n", 0.5)

    def pointer_drag(self, x: float, y: float, dx: float, dy: float) -> None:
        st = self.state
        if not self.composer.active or st.frame % DRAG_EVERY != 0:
            return
        # At most one drag particle per frame
        if self._drag_frame == st.frame:
            return
        self._drag_frame = st.frame
        st.particles.spawn_at(x, y, None, (dx * DRAG_VELOCITY_SCALE, dy * DRAG_VELOCITY_SCALE))
        if self.rng.random() < DRAG_NOTE_CHANCE:
            degree = self.composer.degree_for_position(x, st.width)
            velocity = map_range(abs(dx) + abs(dy), 0, 50, 0.1, 0.3)
            self.composer.play_degree(degree, "16n", velocity)

    def key_down(self, key: str) -> bool:
        """Handle a key. Returns True if the key did something."""
        if key in ("c", "C"):
            self.clear()
        elif key in ("f", "F"):
            self.toggle_fade()
        elif key in ("r", "R"):
            self.randomize_theme()
        elif not self.composer.active:
            return False
        elif key == " ":
            self.chord_burst()
        elif key in ("+", "="):
            self.set_volume(self.bridge.volume + VOLUME_STEP)
        elif key in ("-", "_"):
            self.set_volume(self.bridge.volume - VOLUME_STEP)
        elif key == "0":
            self.set_volume(DEFAULT_VOLUME)
        else:
            return False
        return True

    def chord_burst(self) -> None:
        st = self.state
        cx, cy = st.width / 2, st.height / 2
        make_audio_event(st, "chord", cx, cy, 1.0)
        st.particles.burst(cx, cy, CHORD_BURST, None, distance=(50.0, 200.0), speed=(1.0, 4.0))
        self.composer.play_chord()
        self.last_event = "chord"

    def clear(self) -> None:
        """Drop every particle and marker and blank the trails.

        Already scheduled notes still play, but draw nothing until the
        next frame has run.
        """
        self._quiet_frame = True
        self.state.particles.clear()
        self.state.events.clear()
        self.fade.clear()
        self.canvas.clear()

    def toggle_fade(self) -> None:
        st = self.state
        slow, fast = FADE_PRESETS
        st.fade_amount = fast if st.fade_amount == slow else slow
        st.theme.update(st.t, st.fade_amount)

    def randomize_theme(self) -> None:
        self.state.theme = ColorTheme.generate(self.rng, self.state.fade_amount)
        self.fade.clear()

    def resize(self, raster_w: int, raster_h: int) -> None:
        self.canvas = Canvas(raster_w, raster_h)
        self.fade = Canvas(raster_w, raster_h)
        self.state.width = self.canvas.width
        self.state.height = self.canvas.height

    # ── Display helpers ─────────────────────────────────────────────

    def key_label(self) -> str:
        scales = self.composer.scales
        name = ROOT_NAMES.get(scales.root_hz, f"{scales.root_hz:.1f}Hz")
        return f"{name} {scales.scale_type}"


# ═══════════════════════════════════════════════════════════════════════
#  Stats logger
# ═══════════════════════════════════════════════════════════════════════

class StatsLogger:
    """Writes per-frame telemetry to CSV for post-hoc tuning."""

    HEADER: ClassVar[str] = (
        "frame,time_s,particles,events,activity,root_hz,scale,"
        "spacing_ms,pending,event\n"
    )

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh: IO[str] | None = None
        self._t0: float = time.monotonic()

    def open(self) -> None:
        try:
            self._fh = open(self._path, "w")
            self._fh.write(self.HEADER)
            self._fh.flush()
        except OSError as exc:
            logger.warning("Stats log disabled: %s", exc)
            self._fh = None

    def log(self, sketch: DriftSketch, event: str = "") -> None:
        if self._fh is None:
            return
        t = time.monotonic() - self._t0
        st = sketch.state
        comp = sketch.composer
        self._fh.write(
            f"{st.frame},{t:.1f},{len(st.particles)},{len(st.events)},"
            f"{st.particles.activity_level():.3f},{comp.scales.root_hz:.2f},"
            f"{comp.scales.scale_type},{comp.state.note_spacing_ms:.0f},"
            f"{len(comp.queue)},{event}\n"
        )
        if event or st.frame % 300 == 0:
            try:
                self._fh.flush()
            except OSError as exc:
                logger.warning("Stats log flush failed: %s", exc)

    def close(self) -> None:
        if self._fh is not None:
            try:
                self._fh.close()
            except OSError as exc:
                logger.warning("Stats log close failed: %s", exc)
            self._fh = None


# ═══════════════════════════════════════════════════════════════════════
#  Terminal rendering
# ═══════════════════════════════════════════════════════════════════════

def quantize(pixels: NDArray[np.float32], n_colors: int) -> NDArray[np.intp]:
    """Map RGB pixels to curses colour numbers (xterm cube or the basic 8)."""
    if n_colors >= 256:
        q = np.rint(np.clip(pixels, 0, 255) / 255.0 * 5.0).astype(np.intp)
        return 16 + 36 * q[..., 0] + 6 * q[..., 1] + q[..., 2]
    bits = (pixels > 96).astype(np.intp)
    return bits[..., 0] + 2 * bits[..., 1] + 4 * bits[..., 2]


@dataclass
class ColorMap:
    """Allocates curses colour pairs on demand for (top, bottom) colours."""

    n_colors: int = 8
    black: int = 0
    _max_pairs: int = 0
    _next_pair: int = 1
    _dual_pairs: dict[tuple[int, int], int] = field(default_factory=dict)

    def setup(self) -> None:
        curses.start_color()
        curses.use_default_colors()
        self.n_colors = curses.COLORS
        self.black = 16 if self.n_colors >= 256 else curses.COLOR_BLACK
        self._max_pairs = curses.COLOR_PAIRS - 1

    def dual(self, top: int, bot: int) -> int:
        pair = self._dual_pairs.get((top, bot))
        if pair is not None:
            return pair
        if self._next_pair > self._max_pairs:
            return 0
        try:
            curses.init_pair(self._next_pair, top, bot)
        except curses.error:
            return 0
        pair = self._next_pair
        self._dual_pairs[(top, bot)] = pair
        self._next_pair += 1
        return pair


def render(
    stdscr: curses.window,
    sketch: DriftSketch,
    cmap: ColorMap,
    show_stats: bool = False,
) -> None:
    """Half-block rendering: each cell shows two vertically stacked pixels."""
    max_y, max_x = stdscr.getmaxyx()
    colors = quantize(sketch.canvas.pixels, cmap.n_colors)
    draw_rows = min(colors.shape[0] // 2, max_y - 1)
    draw_cols = min(colors.shape[1], max_x)

    top = colors[0:draw_rows * 2:2, :draw_cols]
    bot = colors[1:draw_rows * 2:2, :draw_cols]
    active_ys, active_xs = np.nonzero((top != cmap.black) | (bot != cmap.black))

    ys = active_ys.tolist()
    xs = active_xs.tolist()
    tc = top[active_ys, active_xs].tolist()
    bc = bot[active_ys, active_xs].tolist()

    _addstr = stdscr.addstr
    _color_pair = curses.color_pair
    _dual = cmap.dual
    for i in range(len(ys)):
        try:
            _addstr(ys[i], xs[i], UPPER_HALF, _color_pair(_dual(tc[i], bc[i])))
        except curses.error:
            pass

    if show_stats:
        _draw_stats_overlay(stdscr, sketch, max_y, max_x)

    st = sketch.state
    if sketch.audio_active:
        audio = f"{sketch.key_label()}  {sketch.bridge.status_string()}"
    else:
        audio = "click to start audio"
    left = f"  drift  particles {len(st.particles):,}  activity {st.particles.activity_level():.2f}"
    right = f"{audio}   spc c f r +/- 0 s q  "
    gap = max(1, max_x - len(left) - len(right) - 1)
    status = (left + " " * gap + right)[: max_x - 1]
    try:
        stdscr.addstr(max_y - 1, 0, status, curses.A_DIM)
    except curses.error:
        pass


def _draw_stats_overlay(
    stdscr: curses.window, sketch: DriftSketch, max_y: int, max_x: int
) -> None:
    """Engine telemetry panel in the bottom-right."""
    panel_w = 36
    st = sketch.state
    comp = sketch.composer
    lines = [
        f"{'':─<{panel_w - 2}}",
        " drift engine",
        f" frame       : {st.frame:,}",
        f" particles   : {len(st.particles):,}",
        f" events      : {len(st.events)}",
        f" activity    : {st.particles.activity_level():.3f}",
        f" key         : {sketch.key_label()}",
        f" spacing     : {comp.state.note_spacing_ms:.0f} ms",
        f" notes       : {comp.notes_played} (+{comp.notes_dropped} dropped)",
        f" pending     : {len(comp.queue)}",
        f" fade        : {st.fade_amount:.2f}",
    ]
    x0 = max_x - panel_w - 2
    y0 = max_y - len(lines) - 2
    if x0 < 0 or y0 < 0:
        return
    for i, line in enumerate(lines):
        padded = f" {line:<{panel_w - 1}}"[:panel_w]
        try:
            stdscr.addstr(y0 + i, x0, padded, curses.A_DIM)
        except curses.error:
            pass


# ═══════════════════════════════════════════════════════════════════════
#  Main loop
# ═══════════════════════════════════════════════════════════════════════

def _cell_to_units(col: int, row: int) -> tuple[float, float]:
    return (col + 0.5) * UNITS_PER_PIXEL, (row * 2 + 1) * UNITS_PER_PIXEL


def run(stdscr: curses.window, args: argparse.Namespace) -> None:
    curses.curs_set(0)
    stdscr.nodelay(True)
    stdscr.timeout(0)
    curses.mousemask(curses.ALL_MOUSE_EVENTS | curses.REPORT_MOUSE_POSITION)
    curses.mouseinterval(0)
    # Button-event tracking so drags report motion
    sys.stdout.write("\033[?1002h")
    sys.stdout.flush()

    cmap = ColorMap()
    cmap.setup()

    max_y, max_x = stdscr.getmaxyx()
    sketch = DriftSketch(max_x, (max_y - 1) * 2, initial_particles=args.particles)
    if args.audio:
        sketch.init_audio()

    stats = StatsLogger(args.log_dir / STATS_FILE)
    stats.open()

    show_stats = False
    dragging = False
    last_pointer = (0.0, 0.0)
    frame_secs = 1.0 / max(1, args.fps)
    t0 = time.monotonic()

    try:
        while True:
            frame_start = time.monotonic()

            # ── Input ──────────────────────────────────────────────
            while True:
                try:
                    key = stdscr.getch()
                except curses.error:
                    key = -1
                if key == -1:
                    break

                if key in (ord("q"), ord("Q")):
                    return
                elif key in (ord("s"), ord("S")):
                    show_stats = not show_stats
                elif key == curses.KEY_MOUSE:
                    try:
                        _, mx, my, _, bstate = curses.getmouse()
                    except curses.error:
                        continue
                    x, y = _cell_to_units(mx, my)
                    if bstate & curses.BUTTON1_PRESSED:
                        dragging = True
                        sketch.pointer_down(x, y)
                    elif bstate & curses.BUTTON1_RELEASED:
                        dragging = False
                    elif bstate & curses.BUTTON1_CLICKED:
                        sketch.pointer_down(x, y)
                    elif dragging and bstate & curses.REPORT_MOUSE_POSITION:
                        sketch.pointer_drag(x, y, x - last_pointer[0], y - last_pointer[1])
                    last_pointer = (x, y)
                elif key == curses.KEY_RESIZE:
                    max_y, max_x = stdscr.getmaxyx()
                    sketch.resize(max_x, (max_y - 1) * 2)
                elif 0 <= key < 256:
                    sketch.key_down(chr(key))

            # ── Simulate ───────────────────────────────────────────
            now_ms = (time.monotonic() - t0) * 1000.0
            event = sketch.step(now_ms)

            if event or sketch.state.frame % 10 == 0:
                stats.log(sketch, event)

            # ── Render ─────────────────────────────────────────────
            stdscr.erase()
            render(stdscr, sketch, cmap, show_stats=show_stats)
            stdscr.refresh()

            elapsed = time.monotonic() - frame_start
            if elapsed < frame_secs:
                time.sleep(frame_secs - elapsed)
    finally:
        sys.stdout.write("\033[?1002l")
        sys.stdout.flush()
        sketch.bridge.stop()
        stats.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Generative particle field that plays itself")
    parser.add_argument("--audio", action="store_true",
                        help="Start audio immediately instead of on the first click")
    parser.add_argument("--fps", type=int, default=DEFAULT_FPS,
                        help=f"Target frames per second (default: {DEFAULT_FPS})")
    parser.add_argument("--particles", type=int, default=INITIAL_PARTICLES,
                        help=f"Initial particle count (default: {INITIAL_PARTICLES})")
    parser.add_argument("--log-dir", type=Path, default=None,
                        help=f"Directory for {LOG_FILE} and {STATS_FILE} "
                             f"(default: ${LOG_DIR_ENV} or beside this script)")
    args = parser.parse_args()
    if args.log_dir is None:
        args.log_dir = default_log_dir()

    log_path = setup_file_logger(log_dir=args.log_dir)
    logger.info("Starting drift (fps=%d, log=%s)", args.fps, log_path)
    try:
        curses.wrapper(run, args)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
