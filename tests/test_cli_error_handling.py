from __future__ import annotations

import json
from pathlib import Path

from typer.testing import CliRunner

import killclips.cli as cli
from killclips.config import Settings
from killclips.errors import DurationUnavailableError
from killclips.handoff.store import HandoffStore

BASE = 1_700_000_000.0


def _settings(tmp_path: Path) -> Settings:
    return Settings.model_validate(
        {
            "handoff": {"store_dir": str(tmp_path / "handoff"), "state_dir": str(tmp_path / "state")},
            "clips": {"output_dir": str(tmp_path / "clips")},
            "logging": {"level": "WARNING", "detected_text_interval": 0},
        }
    )


def _write_samples(path: Path) -> None:
    rows = [
        {"frame": 2, "capture_seconds": 1.0, "samples": [{"text": "ELIMINATED Foo", "confidence": 0.9}]},
        {"frame": 4, "capture_seconds": 2.0, "samples": [{"text": "ELIMINATED Foo", "confidence": 0.9}]},
        {"frame": 6, "capture_seconds": 9.0, "samples": [{"text": "ELIMINATED Bar", "confidence": 0.9}]},
    ]
    path.write_text("\n".join(json.dumps(row) for row in rows), encoding="utf-8")


def test_detect_command_publishes_session(tmp_path: Path, monkeypatch) -> None:
    samples = tmp_path / "samples.jsonl"
    _write_samples(samples)
    monkeypatch.setattr(cli, "_bootstrap", lambda _: _settings(tmp_path))

    result = CliRunner().invoke(
        cli.app,
        ["detect", str(samples), "--video", str(tmp_path / "session.mp4"), "--started-at", str(BASE)],
    )

    assert result.exit_code == 0
    assert "[1/3] Load recognized frames..." in result.output
    assert "[3/3] Publish session done" in result.output
    assert '"kill_count": 2' in result.output

    pending = HandoffStore(tmp_path / "handoff", tmp_path / "state").read_pending()
    assert pending is not None
    assert [event.capture_seconds for event in pending.events] == [1.0, 9.0]
    assert pending.session_started_at == BASE


def test_detect_command_prints_clean_error_without_traceback(tmp_path: Path, monkeypatch) -> None:
    samples = tmp_path / "samples.jsonl"
    samples.write_text("not json\n", encoding="utf-8")
    monkeypatch.setattr(cli, "_bootstrap", lambda _: _settings(tmp_path))

    result = CliRunner().invoke(cli.app, ["detect", str(samples), "--video", str(tmp_path / "session.mp4")])

    assert result.exit_code == 1
    assert "[1/3] Load recognized frames failed" in result.output
    assert "Error: Line 1 is not valid JSON" in result.output
    assert "Traceback" not in result.output


def test_process_command_reports_idle_without_pending_session(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(cli, "_bootstrap", lambda _: _settings(tmp_path))

    result = CliRunner().invoke(cli.app, ["process"])

    assert result.exit_code == 0
    assert '"status": "idle"' in result.output


def test_process_command_exports_pending_session(tmp_path: Path, monkeypatch) -> None:
    session_video = tmp_path / "session.mp4"
    session_video.write_bytes(b"video")
    store = HandoffStore(tmp_path / "handoff", tmp_path / "state")
    samples = tmp_path / "samples.jsonl"
    _write_samples(samples)
    monkeypatch.setattr(cli, "_bootstrap", lambda _: _settings(tmp_path))
    CliRunner().invoke(cli.app, ["detect", str(samples), "--video", str(session_video), "--started-at", str(BASE)])

    exported: list[str] = []

    def _export(self, source: str | Path, plan, output_dir: str | Path) -> Path:
        exported.append(plan.output_name)
        return Path(output_dir) / plan.output_name

    monkeypatch.setattr(cli.FfmpegClipExporter, "export", _export)
    monkeypatch.setattr(cli, "probe_duration", lambda _: 60.0)

    result = CliRunner().invoke(cli.app, ["process"])

    assert result.exit_code == 0
    assert "2 of 2 clips created" in result.output
    assert len(exported) == 2
    assert not session_video.exists()
    assert store.read_pending() is None


def test_plan_command_shows_clamped_ranges(tmp_path: Path, monkeypatch) -> None:
    store = HandoffStore(tmp_path / "handoff", tmp_path / "state")
    samples = tmp_path / "samples.jsonl"
    _write_samples(samples)
    monkeypatch.setattr(cli, "_bootstrap", lambda _: _settings(tmp_path))
    CliRunner().invoke(cli.app, ["detect", str(samples), "--video", str(tmp_path / "session.mp4"), "--started-at", str(BASE)])

    result = CliRunner().invoke(cli.app, ["plan", "--duration", "10"])

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["status"] == "pending"
    assert [(row["start_seconds"], row["end_seconds"]) for row in payload["plans"]] == [(0.0, 4.0), (4.0, 10.0)]
    assert store.watermark() is None


def test_plan_command_prints_clean_probe_error(tmp_path: Path, monkeypatch) -> None:
    store = HandoffStore(tmp_path / "handoff", tmp_path / "state")
    store.publish(tmp_path / "session.mp4", [], published_at=BASE)
    monkeypatch.setattr(cli, "_bootstrap", lambda _: _settings(tmp_path))
    monkeypatch.setattr(
        cli,
        "probe_duration",
        lambda _: (_ for _ in ()).throw(DurationUnavailableError("ffprobe executable was not found")),
    )

    result = CliRunner().invoke(cli.app, ["plan"])

    assert result.exit_code == 1
    assert "Error: ffprobe executable was not found" in result.output
    assert "Traceback" not in result.output


def test_config_presets_lists_all_presets() -> None:
    result = CliRunner().invoke(cli.app, ["config", "presets"])

    assert result.exit_code == 0
    assert set(json.loads(result.stdout)) == {"Balanced", "Sensitive", "Conservative"}


def test_config_detection_rejects_unknown_preset(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(cli, "_bootstrap", lambda _: _settings(tmp_path))

    result = CliRunner().invoke(cli.app, ["config", "detection", "--preset", "Turbo"])

    assert result.exit_code == 1
    assert "Unknown detection preset 'Turbo'" in result.output
