import math

import pytest

from conftest import FixedRandom
from drift_music import (
    CIRCLE_OF_FIFTHS,
    DEFAULT_ROOT_HZ,
    FALLBACK_RATIOS,
    SCALES,
    ScaleEngine,
    articulation,
    build_scale,
    choose_degree,
    duration_seconds,
    map_range,
    root_index_for_activity,
)


def test_c_minor_spans_one_octave() -> None:
    scale = ScaleEngine(261.63, "minor").scale()

    assert len(scale) == 8
    assert scale[0] == pytest.approx(261.63)
    assert scale[7] == pytest.approx(523.26)


@pytest.mark.parametrize("scale_type", sorted(SCALES))
def test_scale_is_equal_tempered(scale_type: str) -> None:
    root = 392.0
    scale = build_scale(root, scale_type)

    for freq, offset in zip(scale, SCALES[scale_type]):
        assert freq == pytest.approx(root * 2 ** (offset / 12))


def test_pentatonic_keeps_trailing_fourth() -> None:
    scale = build_scale(261.63, "pentatonic")

    assert scale[7] == pytest.approx(261.63 * 2 ** (5 / 12))


@pytest.mark.parametrize("activity", [i / 40 for i in range(41)])
def test_root_index_follows_floor_of_activity(activity: float) -> None:
    assert root_index_for_activity(activity) == math.floor(activity * 7) % 7


@pytest.mark.parametrize("activity", [0.0, 0.3, 0.6, 0.61, 0.85, 1.0])
def test_change_root_picks_circle_of_fifths_entry(activity: float) -> None:
    engine = ScaleEngine()
    engine.change_root_by_activity(activity)

    assert engine.root_hz == CIRCLE_OF_FIFTHS[math.floor(activity * 7) % 7]
    assert engine.scale_type == ("pentatonic" if activity > 0.6 else "minor")


def test_change_root_reports_change_only_when_key_moves() -> None:
    engine = ScaleEngine(CIRCLE_OF_FIFTHS[0], "minor")

    assert engine.change_root_by_activity(0.0) is False
    assert engine.change_root_by_activity(0.5) is True
    assert engine.previous_root == CIRCLE_OF_FIFTHS[0]
    assert engine.root_hz == CIRCLE_OF_FIFTHS[3]


def test_change_to_pentatonic_at_same_root_counts_as_change() -> None:
    engine = ScaleEngine(CIRCLE_OF_FIFTHS[4], "minor")

    assert engine.change_root_by_activity(0.65) is True
    assert engine.root_hz == CIRCLE_OF_FIFTHS[4]
    assert engine.scale_type == "pentatonic"


def test_unknown_scale_type_uses_fallback(caplog: pytest.LogCaptureFixture) -> None:
    engine = ScaleEngine(440.0, "lydian")

    assert engine.scale() == pytest.approx(tuple(440.0 * r for r in FALLBACK_RATIOS))
    assert "using fallback" in caplog.text


def test_invalid_root_falls_back_to_default_root() -> None:
    engine = ScaleEngine(float("nan"), "minor")

    assert engine.scale()[0] == pytest.approx(DEFAULT_ROOT_HZ)
    assert len(engine.scale()) == 8


@pytest.mark.parametrize(
    ("draw", "degree"),
    [(0.0, 0), (0.24, 0), (0.3, 4), (0.5, 2), (0.65, 5), (0.8, 1)],
)
def test_degree_table(draw: float, degree: int) -> None:
    # FixedRandom.choice() picks the first of the remaining degrees
    assert choose_degree(FixedRandom([draw])) == degree


def test_articulation_shortens_with_activity() -> None:
    assert articulation(0.1) == "4n"
    assert articulation(0.5) == "8n"
    assert articulation(0.9) == "16n"


def test_duration_tokens_at_120_bpm() -> None:
    assert duration_seconds("8n") == pytest.approx(0.25)
    assert duration_seconds("2n") == pytest.approx(1.0)
    assert duration_seconds(0.3) == pytest.approx(0.3)


@pytest.mark.parametrize("bad", ["3n", -1.0, float("inf")])
def test_bad_duration_raises(bad) -> None:
    with pytest.raises(ValueError):
        duration_seconds(bad)


def test_map_range_degenerate_input_range() -> None:
    assert map_range(5.0, 1.0, 1.0, 10.0, 20.0) == 10.0
    assert map_range(0.5, 0.0, 1.0, 500.0, 250.0) == pytest.approx(375.0)
