from __future__ import annotations

from pathlib import Path

from autosplit import conversion as conversion_module
from autosplit import daemon, ffmpeg_io

from helpers import COPY_SCRIPT, FAIL_SCRIPT, python_cmd, reset_config_state


def _setup(monkeypatch, tmp_path: Path, script: str) -> Path:
    config_path = tmp_path / "config.yaml"
    config_path.write_text(f"paths:\n  record_dir: {tmp_path}\n")
    monkeypatch.setenv("AUTOSPLIT_CONFIG", str(config_path))
    reset_config_state(monkeypatch)
    monkeypatch.setattr(ffmpeg_io, "convert_args", lambda i, o, **_: python_cmd(script, i, o))
    monkeypatch.setattr(ffmpeg_io, "split_args", lambda i, o, s, d, **_: python_cmd(script, i, o))

    async def _duration(path, **_kwargs):
        return None

    monkeypatch.setattr(conversion_module, "read_duration", _duration)
    source = tmp_path / "in.flv"
    source.write_bytes(b"FLV")
    return source


def test_convert_command(monkeypatch, tmp_path: Path, capsys) -> None:
    source = _setup(monkeypatch, tmp_path, COPY_SCRIPT)

    rc = daemon.main(["convert", str(source), str(tmp_path / "out.mp4"), "--delete-source"])

    assert rc == 0
    assert (tmp_path / "out.mp4").exists()
    assert not source.exists()
    assert capsys.readouterr().out.strip() == str(tmp_path / "out.mp4")


def test_split_command_failure(monkeypatch, tmp_path: Path, capsys) -> None:
    source = _setup(monkeypatch, tmp_path, FAIL_SCRIPT)

    rc = daemon.main(["split", str(source), str(tmp_path / "clip.flv"), "--start", "10", "--duration", "5"])

    assert rc == 1
    assert "split failed" in capsys.readouterr().err
    assert source.exists()
