from __future__ import annotations

from typing import Sequence, TypeVar

import pytest

from drift import ColorTheme, NoiseField, ParticleSystem, SimulationState

T = TypeVar("T")


class FixedRandom:
    """Deterministic random source.

    random() pops from a queue (then returns `default`), uniform() returns
    the midpoint and choice() the first element.
    """

    def __init__(self, values: Sequence[float] = (), default: float = 0.99) -> None:
        self.values = list(values)
        self.default = default

    def random(self) -> float:
        if self.values:
            return self.values.pop(0)
        return self.default

    def uniform(self, a: float, b: float) -> float:
        return (a + b) / 2.0

    def choice(self, seq: Sequence[T]) -> T:
        return seq[0]


class RecordingSink:
    """Tone sink that records every trigger."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, float, str | float, float]] = []

    def play_tone(self, frequency: float, duration: str | float,
                  velocity: float, voice: str) -> bool:
        self.calls.append((voice, frequency, duration, velocity))
        return True

    def voices(self) -> list[str]:
        return [call[0] for call in self.calls]


@pytest.fixture
def fixed_rng() -> FixedRandom:
    return FixedRandom()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


def make_state(rng, width: float = 400.0, height: float = 300.0) -> SimulationState:
    return SimulationState(
        width=width,
        height=height,
        rng=rng,
        noise=NoiseField(seed=1),
        theme=ColorTheme.generate(rng),
        particles=ParticleSystem(rng),
    )
