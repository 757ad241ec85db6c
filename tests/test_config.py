"""Config loading, environment overrides and round-trip persistence."""

from __future__ import annotations

from pathlib import Path

from autosplit import config as config_module
from autosplit.config import ConfigStore

from helpers import reset_config_state


def test_env_overrides(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("conversion:\n  auto_convert: false\n")

    monkeypatch.setenv("AUTOSPLIT_CONFIG", str(config_path))
    monkeypatch.setenv("AUTO_CONVERT", "yes")
    monkeypatch.setenv("POLL_INTERVAL_SEC", "12")
    monkeypatch.setenv("REC_DIR", str(tmp_path / "rec"))
    monkeypatch.setenv("AUTOSPLIT_TOKEN", "abc")
    reset_config_state(monkeypatch)

    cfg = config_module.get_cfg()

    assert cfg["conversion"]["auto_convert"] is True
    assert cfg["monitor"]["poll_interval_sec"] == 12.0
    assert cfg["paths"]["record_dir"] == str(tmp_path / "rec")
    assert cfg["credentials"]["token"] == "abc"
    # Untouched defaults survive the merge.
    assert cfg["conversion"]["target_extension"] == "mp4"


def test_invalid_env_value_is_ignored(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("monitor:\n  poll_interval_sec: 45\n")
    monkeypatch.setenv("AUTOSPLIT_CONFIG", str(config_path))
    monkeypatch.setenv("POLL_INTERVAL_SEC", "soon")
    reset_config_state(monkeypatch)

    assert config_module.get_cfg()["monitor"]["poll_interval_sec"] == 45


def test_update_rooms_preserves_comments(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        "# operator notes\n"
        "conversion:\n"
        "  auto_convert: true  # keep me\n"
        "rooms: []\n"
    )
    monkeypatch.setenv("AUTOSPLIT_CONFIG", str(config_path))
    reset_config_state(monkeypatch)

    rooms = config_module.update_rooms([{"room_id": 1001, "short_id": 5, "display_name": "x"}])

    assert rooms == [{"room_id": 1001, "short_id": 5, "display_name": "x"}]
    text = config_path.read_text()
    assert "# operator notes" in text
    assert "# keep me" in text
    assert config_module.get_cfg()["rooms"][0]["room_id"] == 1001


def test_config_store_override_does_not_touch_disk(tmp_path: Path) -> None:
    cfg = {"rooms": [], "credentials": {"token": ""}, "paths": {"record_dir": str(tmp_path)}}
    store = ConfigStore(cfg, persist=False)

    store.save_rooms([{"room_id": 7, "short_id": 0, "display_name": "seven"}])
    store.save_token("t" * 32)

    assert store.rooms() == [{"room_id": 7, "short_id": 0, "display_name": "seven"}]
    assert store.token == "t" * 32
    assert store.record_dir == tmp_path
