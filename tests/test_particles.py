import random

import pytest

from conftest import FixedRandom, make_state
from drift import (
    EDGE_SPAWN_OFFSET,
    PARTICLE_CAP,
    WRAP_MARGIN,
    NoiseField,
    Particle,
)


def test_lifespan_never_increases() -> None:
    rng = random.Random(3)
    state = make_state(rng)
    p = Particle.spawn(100.0, 100.0, (255.0, 0.0, 0.0, 180.0), rng)

    last = p.lifespan
    for _ in range(300):
        p.update(state.noise, state.t, state.width, state.height, rng)
        assert p.lifespan <= last
        last = p.lifespan


def test_speed_is_capped() -> None:
    rng = random.Random(4)
    state = make_state(rng)
    p = Particle.spawn(100.0, 100.0, None, rng)
    p.vx, p.vy = 40.0, -40.0

    p.update(state.noise, 0.0, state.width, state.height, rng)

    assert p.speed <= p.max_speed + 1e-9


def test_wraps_past_right_margin() -> None:
    rng = FixedRandom()
    state = make_state(rng)
    p = Particle.spawn(state.width + WRAP_MARGIN - 0.5, 50.0, None, rng)
    p.vx, p.vy = 3.0, 0.0
    p.max_speed = 3.0
    p.noise_strength = 0.0

    p.update(state.noise, 0.0, state.width, state.height, rng)

    assert p.x == -WRAP_MARGIN


def test_positions_stay_inside_wrap_margin() -> None:
    rng = random.Random(11)
    state = make_state(rng, width=200.0, height=120.0)
    state.particles.spawn_initial(60, state.width, state.height, state.theme.particle_colors)

    for frame in range(1, 400):
        state.frame = frame
        state.t += 0.003
        state.particles.step(state)
        for p in state.particles.all():
            assert -WRAP_MARGIN <= p.x <= state.width + WRAP_MARGIN
            assert -WRAP_MARGIN <= p.y <= state.height + WRAP_MARGIN


def test_dead_particles_removed_exactly_once() -> None:
    rng = FixedRandom()
    state = make_state(rng)
    state.frame = 1
    system = state.particles
    doomed = system.spawn_at(10.0, 10.0)
    doomed.lifespan = 1.0
    system.spawn_at(20.0, 20.0)

    # FixedRandom drains exactly 1.0 of lifespan per step
    assert system.step(state) == 1
    assert doomed not in system.all()
    assert len(system) == 1
    assert system.step(state) == 0
    assert system.removed_total == 1


def test_uncoloured_particles_take_theme_colour() -> None:
    rng = FixedRandom()
    state = make_state(rng)
    state.frame = 1
    p = state.particles.spawn_at(10.0, 10.0)

    state.particles.step(state)

    assert p.color == state.theme.particle_colors[0]


def test_edge_spawn_every_twenty_steps_below_cap() -> None:
    rng = FixedRandom()
    state = make_state(rng)

    state.frame = 19
    state.particles.step(state)
    assert len(state.particles) == 0

    state.frame = 20
    state.particles.step(state)
    (p,) = state.particles.all()
    # FixedRandom picks the bottom edge
    assert p.y == state.height + EDGE_SPAWN_OFFSET


def test_no_edge_spawn_at_cap() -> None:
    rng = FixedRandom()
    state = make_state(rng)
    for _ in range(PARTICLE_CAP):
        state.particles.spawn_at(50.0, 50.0)

    state.frame = 20
    state.particles.step(state)

    assert len(state.particles) == PARTICLE_CAP


def test_bursts_may_exceed_cap() -> None:
    rng = FixedRandom()
    state = make_state(rng)
    state.particles.burst(0.0, 0.0, PARTICLE_CAP + 20, None, (5.0, 30.0), (1.0, 3.0))

    assert len(state.particles) == PARTICLE_CAP + 20


def test_activity_in_unit_range() -> None:
    rng = random.Random(5)
    state = make_state(rng)
    state.particles.spawn_initial(100, state.width, state.height, state.theme.particle_colors)

    for frame in range(1, 200):
        state.frame = frame
        state.particles.step(state)
        assert 0.0 <= state.particles.activity_level() <= 1.0


def test_activity_nudged_into_band() -> None:
    rng = FixedRandom()
    state = make_state(rng)
    state.frame = 1

    state.particles.step(state)

    # empty field: level 0 moved 5% of the way to 0.1
    assert state.particles.activity_level() == pytest.approx(0.005)


def test_clear_holds_off_next_edge_spawn() -> None:
    rng = FixedRandom()
    state = make_state(rng)
    state.particles.spawn_at(1.0, 1.0)
    state.particles.clear()

    state.frame = 20
    state.particles.step(state)

    assert len(state.particles) == 0


def test_noise_is_deterministic_per_seed() -> None:
    a = NoiseField(seed=9)
    b = NoiseField(seed=9)

    samples = [(x * 0.37, x * 0.11, 0.2) for x in range(50)]
    assert [a.sample(*s) for s in samples] == [b.sample(*s) for s in samples]


def test_noise_range_and_smoothness() -> None:
    field = NoiseField(seed=2)

    for i in range(200):
        x, y = i * 0.173, i * 0.091
        v = field.sample(x, y, 0.5)
        assert 0.0 <= v < 1.0
        assert abs(field.sample(x + 1e-4, y, 0.5) - v) < 1e-2
