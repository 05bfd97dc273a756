import random

import numpy as np
import pytest

from conftest import FixedRandom
from drift import (
    CHORD_BURST,
    FADE_PRESETS,
    POINTER_BURST,
    ChordRipple,
    DriftSketch,
    KeyChangeStar,
    NoteRipple,
    StatsLogger,
    make_audio_event,
)
from drift_music import DEFAULT_VOLUME, KEY_CHANGE_TICKS, SynthBridge


def make_sketch(
    monkeypatch: pytest.MonkeyPatch,
    rng=None,
    audio_ok: bool = True,
    particles: int = 20,
) -> DriftSketch:
    bridge = SynthBridge()
    monkeypatch.setattr(bridge, "start", lambda: audio_ok)
    return DriftSketch(60, 40, rng=rng if rng is not None else FixedRandom(),
                       bridge=bridge, noise_seed=1, initial_particles=particles)


def test_first_press_only_starts_audio(monkeypatch: pytest.MonkeyPatch) -> None:
    sketch = make_sketch(monkeypatch)

    sketch.pointer_down(100.0, 50.0)

    assert sketch.audio_active
    assert len(sketch.particles) == 20
    assert sketch.events == []
    assert sketch.bridge.trigger_count == 0


def test_press_with_audio_ripples_and_plays(monkeypatch: pytest.MonkeyPatch) -> None:
    sketch = make_sketch(monkeypatch)
    sketch.init_audio()

    sketch.pointer_down(100.0, 50.0)

    (event,) = sketch.events
    assert isinstance(event, NoteRipple)
    # ripple ring of 16 (15.5 rounded up) plus the pointer burst
    assert len(sketch.particles) == 20 + 16 + POINTER_BURST
    assert sketch.bridge.recent[-1].voice == "melody"


def test_audio_failure_keeps_composer_idle(monkeypatch: pytest.MonkeyPatch,
                                           caplog: pytest.LogCaptureFixture) -> None:
    sketch = make_sketch(monkeypatch, rng=FixedRandom(default=0.0), audio_ok=False)

    sketch.pointer_down(100.0, 50.0)
    for frame in range(KEY_CHANGE_TICKS + 1):
        sketch.step(frame * 16.7, render=False)

    assert not sketch.audio_active
    assert sketch.bridge.trigger_count == 0
    assert "Audio unavailable" in caplog.text


def test_clear_key_empties_everything(monkeypatch: pytest.MonkeyPatch) -> None:
    sketch = make_sketch(monkeypatch)
    make_audio_event(sketch.state, "chord", 50.0, 50.0, 1.0)
    sketch.fade.pixels[:] = 40.0

    assert sketch.key_down("c")
    assert len(sketch.particles) == 0
    assert sketch.events == []
    assert not sketch.fade.pixels.any()

    sketch.state.frame = 19
    sketch.step(100.0)
    assert len(sketch.particles) == 0
    assert sketch.events == []


def test_queued_note_after_clear_still_plays_but_draws_nothing(
        monkeypatch: pytest.MonkeyPatch) -> None:
    sketch = make_sketch(monkeypatch)
    sketch.init_audio()
    composer = sketch.composer
    composer.queue.schedule(50.0, lambda: composer.play_note(0.6, 50.0))

    sketch.key_down("c")
    sketch.state.frame = 1
    sketch.step(60.0)

    assert sketch.bridge.trigger_count == 1
    assert len(sketch.particles) == 0
    assert sketch.events == []

    composer.queue.schedule(1000.0, lambda: composer.play_note(0.6, 1000.0))
    sketch.step(1000.0)

    assert sketch.bridge.trigger_count == 2
    (event,) = sketch.events
    assert isinstance(event, NoteRipple)


def test_fractional_burst_rounds_up(monkeypatch: pytest.MonkeyPatch) -> None:
    sketch = make_sketch(monkeypatch)
    before = len(sketch.particles)

    make_audio_event(sketch.state, "note", 50.0, 50.0, 0.7)

    assert len(sketch.particles) - before == 16


def test_theme_key_replaces_theme_and_blanks_trails(monkeypatch: pytest.MonkeyPatch) -> None:
    sketch = make_sketch(monkeypatch, rng=random.Random(8))
    old = sketch.state.theme
    sketch.fade.pixels[:] = 40.0

    assert sketch.key_down("r")

    assert sketch.state.theme is not old
    assert not sketch.fade.pixels.any()


def test_fade_toggle_cycles_presets(monkeypatch: pytest.MonkeyPatch) -> None:
    sketch = make_sketch(monkeypatch)
    slow, fast = FADE_PRESETS
    seen = []

    for _ in range(3):
        sketch.key_down("f")
        seen.append(sketch.state.fade_amount)

    assert seen == [slow, fast, slow]
    assert sketch.state.theme.fade_color[3] == pytest.approx(slow * 255.0)


def test_volume_keys_need_audio(monkeypatch: pytest.MonkeyPatch) -> None:
    sketch = make_sketch(monkeypatch)

    assert sketch.key_down("+") is False
    assert sketch.bridge.volume == DEFAULT_VOLUME


def test_volume_keys_clamp(monkeypatch: pytest.MonkeyPatch) -> None:
    sketch = make_sketch(monkeypatch)
    sketch.init_audio()

    sketch.key_down("=")
    assert sketch.bridge.volume == pytest.approx(0.9)
    for _ in range(5):
        sketch.key_down("+")
    assert sketch.bridge.volume == 1.0

    sketch.key_down("0")
    assert sketch.bridge.volume == DEFAULT_VOLUME

    for _ in range(12):
        sketch.key_down("-")
    assert sketch.bridge.volume == 0.0


def test_space_plays_chord_burst(monkeypatch: pytest.MonkeyPatch) -> None:
    sketch = make_sketch(monkeypatch)
    sketch.init_audio()

    assert sketch.key_down(" ")

    (event,) = sketch.events
    assert isinstance(event, ChordRipple)
    # intensity 1.0 ring of 20 plus the chord burst
    assert len(sketch.particles) == 20 + 20 + CHORD_BURST
    assert sketch.bridge.recent[-1].voice == "melody"
    assert len(sketch.composer.queue) == 3


def test_unhandled_key(monkeypatch: pytest.MonkeyPatch) -> None:
    sketch = make_sketch(monkeypatch)
    sketch.init_audio()

    assert sketch.key_down("x") is False


def test_events_fade_out(monkeypatch: pytest.MonkeyPatch) -> None:
    sketch = make_sketch(monkeypatch)
    make_audio_event(sketch.state, "note", 50.0, 50.0, 0.5)

    for frame in range(99):
        sketch.step(frame * 16.7, render=False)
    assert len(sketch.events) == 1
    assert sketch.events[0].opacity == pytest.approx(2.0)

    sketch.step(99 * 16.7, render=False)
    assert sketch.events == []


def test_note_visual_placed_by_degree_and_pitch(monkeypatch: pytest.MonkeyPatch) -> None:
    # degree 0, no harmony, no bass
    sketch = make_sketch(monkeypatch, rng=FixedRandom([0.1, 0.99, 0.99]))
    sketch.composer.activate()

    sketch.composer.play_note(0.5, 0.0)

    (event,) = sketch.events
    st = sketch.state
    assert isinstance(event, NoteRipple)
    assert event.x == pytest.approx(st.width * 0.2)
    assert event.y == pytest.approx(st.height * 0.8)


def test_key_change_star_at_centre(monkeypatch: pytest.MonkeyPatch) -> None:
    sketch = make_sketch(monkeypatch)
    sketch.composer.activate()
    sketch.composer.activity = 0.5

    assert sketch.composer.change_key()

    (event,) = sketch.events
    assert isinstance(event, KeyChangeStar)
    assert (event.x, event.y) == (sketch.state.width / 2, sketch.state.height / 2)
    assert event.color == sketch.state.theme.audio_color
    assert sketch.key_changes == 1


def test_drag_paints_every_third_frame(monkeypatch: pytest.MonkeyPatch) -> None:
    sketch = make_sketch(monkeypatch)
    sketch.init_audio()

    sketch.state.frame = 4
    sketch.pointer_drag(30.0, 30.0, 5.0, 0.0)
    assert len(sketch.particles) == 20

    sketch.state.frame = 6
    sketch.pointer_drag(30.0, 30.0, 5.0, 0.0)
    sketch.pointer_drag(32.0, 30.0, 2.0, 0.0)
    assert len(sketch.particles) == 21
    p = sketch.particles.all()[-1]
    assert (p.vx, p.vy) == pytest.approx((5.0 * 0.82, 0.0))


def test_resize_rebuilds_surfaces(monkeypatch: pytest.MonkeyPatch) -> None:
    sketch = make_sketch(monkeypatch)
    sketch.fade.pixels[:] = 40.0

    sketch.resize(30, 10)

    assert sketch.fade.pixels.shape == (10, 30, 3)
    assert not sketch.fade.pixels.any()
    assert sketch.state.width == sketch.canvas.width


def test_rendered_frame_shows_particles(monkeypatch: pytest.MonkeyPatch) -> None:
    sketch = make_sketch(monkeypatch, rng=random.Random(2))

    for frame in range(5):
        sketch.step(frame * 16.7)

    assert np.isfinite(sketch.canvas.pixels).all()
    assert sketch.canvas.pixels.max() > 0.0


def test_stats_logger_writes_rows(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    sketch = make_sketch(monkeypatch)
    path = tmp_path / "stats.csv"
    stats = StatsLogger(path)
    stats.open()

    sketch.step(0.0, render=False)
    stats.log(sketch)
    stats.log(sketch, "note")
    stats.close()

    lines = path.read_text().splitlines()
    assert lines[0].startswith("frame,time_s,particles")
    assert len(lines) == 3
    assert lines[2].endswith(",note")
