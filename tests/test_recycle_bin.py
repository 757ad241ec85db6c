from __future__ import annotations

import json
from pathlib import Path

import pytest

from autosplit import recycle_bin


def test_move_and_restore(tmp_path: Path) -> None:
    root = tmp_path / "rec"
    source = root / "1001" / "a.flv"
    source.parent.mkdir(parents=True)
    source.write_bytes(b"data")

    result = recycle_bin.move_to_recycle_bin(source, root)

    assert not source.exists()
    assert result.entry_dir.parent == (root / recycle_bin.RECYCLE_BIN_DIRNAME).resolve()
    metadata = json.loads((result.entry_dir / "metadata.json").read_text())
    assert metadata["original_path"] == str(source.resolve())
    assert metadata["size_bytes"] == 4
    assert metadata["reason"] == "converted"

    restored = recycle_bin.restore_entry(root / recycle_bin.RECYCLE_BIN_DIRNAME, result.entry_id)
    assert restored == source.resolve()
    assert source.read_bytes() == b"data"
    assert recycle_bin.list_entries(root / recycle_bin.RECYCLE_BIN_DIRNAME) == []


def test_file_outside_root_uses_sibling_bin(tmp_path: Path) -> None:
    elsewhere = tmp_path / "other" / "b.flv"
    elsewhere.parent.mkdir()
    elsewhere.write_bytes(b"x")

    result = recycle_bin.move_to_recycle_bin(elsewhere, tmp_path / "rec")

    assert result.entry_dir.parent == (tmp_path / "other" / recycle_bin.RECYCLE_BIN_DIRNAME).resolve()


def test_missing_source_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        recycle_bin.move_to_recycle_bin(tmp_path / "nope.flv")


def test_restore_refuses_overwrite(tmp_path: Path) -> None:
    source = tmp_path / "c.flv"
    source.write_bytes(b"1")
    result = recycle_bin.move_to_recycle_bin(source, tmp_path)
    source.write_bytes(b"2")

    with pytest.raises(FileExistsError):
        recycle_bin.restore_entry(tmp_path / recycle_bin.RECYCLE_BIN_DIRNAME, result.entry_id)


def test_cli_list(tmp_path: Path, capsys) -> None:
    source = tmp_path / "d.flv"
    source.write_bytes(b"1")
    recycle_bin.main(["move", "--path", str(source), "--recordings-root", str(tmp_path)])
    entry_id = capsys.readouterr().out.strip()

    assert recycle_bin.main(["list", "--recycle-root", str(tmp_path / ".recycle_bin")]) == 0
    assert entry_id in capsys.readouterr().out
