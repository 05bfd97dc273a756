import numpy as np
from scipy.io import wavfile

from drift_diag import format_report, run_headless, write_wav
from drift_music import SAMPLE_RATE, VOICE_NAMES


def test_headless_run_renders_audio_for_every_frame() -> None:
    result = run_headless(1.0, seed=3, fps=30)

    assert result.frames == 30
    assert len(result.audio) == SAMPLE_RATE
    assert np.all(np.isfinite(result.audio))
    assert result.activity.shape == (30,)
    assert set(result.voice_counts) == set(VOICE_NAMES)


def test_same_seed_same_run() -> None:
    a = run_headless(0.5, seed=5, fps=30)
    b = run_headless(0.5, seed=5, fps=30)

    assert a.notes_played == b.notes_played
    assert np.array_equal(a.activity, b.activity)


def test_report_and_wav(tmp_path) -> None:
    result = run_headless(0.5, seed=1, fps=30)

    report = format_report(result, 0.5, 1)
    path = write_wav(tmp_path / "out" / "drift.wav", result.audio)

    assert "DRIFT DIAGNOSTIC REPORT" in report
    for name in VOICE_NAMES:
        assert name in report
    rate, data = wavfile.read(path)
    assert rate == SAMPLE_RATE
    assert len(data) == len(result.audio)
