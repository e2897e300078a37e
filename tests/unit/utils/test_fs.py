from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from keycloak_migrator.utils.fs import atomic_write, atomic_write_json, delete_within, is_within
from keycloak_migrator.utils.hashing import sha256_file, sha256_json, sha256_text


def test_atomic_write_creates_parents_and_leaves_no_temp_files(tmp_path: Path) -> None:
    target = tmp_path / "workspace" / "checkpoint.json"

    atomic_write(target, "first")
    atomic_write(target, b"second")

    assert target.read_text(encoding="utf-8") == "second"
    assert sorted(path.name for path in target.parent.iterdir()) == ["checkpoint.json"]


def test_atomic_write_failure_keeps_previous_content(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    target = tmp_path / "checkpoint.json"
    target.write_text("previous", encoding="utf-8")

    def broken_replace(src: object, dst: object) -> None:
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", broken_replace)
    with pytest.raises(OSError, match="disk full"):
        atomic_write(target, "next")

    assert target.read_text(encoding="utf-8") == "previous"
    assert [path.name for path in tmp_path.iterdir()] == ["checkpoint.json"]


def test_atomic_write_json_is_deterministic(tmp_path: Path) -> None:
    target = tmp_path / "summary.json"

    atomic_write_json(target, {"b": 1, "a": "ü"})

    text = target.read_text(encoding="utf-8")
    assert text == '{\n  "a": "ü",\n  "b": 1\n}\n'
    assert json.loads(text) == {"a": "ü", "b": 1}


def test_is_within(tmp_path: Path) -> None:
    root = tmp_path / "backups"
    root.mkdir()
    inside = root / "a.dump"
    inside.write_bytes(b"")
    outside = tmp_path / "b.dump"
    outside.write_bytes(b"")

    assert is_within(inside, root)
    assert not is_within(outside, root)
    assert not is_within(root / "missing.dump", root)
    assert not is_within(inside, inside)


def test_delete_within_removes_files_under_the_root(tmp_path: Path) -> None:
    root = tmp_path / "backups"
    root.mkdir()
    dump = root / "backup_before_25.0.6.dump"
    dump.write_bytes(b"PGDMP")

    delete_within(dump, root)

    assert not dump.exists()


def test_delete_within_refuses_escapes(tmp_path: Path) -> None:
    root = tmp_path / "backups"
    root.mkdir()
    outside = tmp_path / "precious.dump"
    outside.write_bytes(b"PGDMP")
    (root / "sub").mkdir()

    with pytest.raises(ValueError, match="refusing to delete path outside"):
        delete_within(root / ".." / "precious.dump", root)
    with pytest.raises(IsADirectoryError):
        delete_within(root / "sub", root)

    assert outside.exists()


def test_delete_within_unlinks_symlinks_not_targets(tmp_path: Path) -> None:
    root = tmp_path / "backups"
    root.mkdir()
    outside = tmp_path / "precious.dump"
    outside.write_bytes(b"PGDMP")
    link = root / "latest.dump"
    link.symlink_to(outside)

    delete_within(link, root)

    assert not link.is_symlink()
    assert outside.exists()


def test_hashing_helpers(tmp_path: Path) -> None:
    path = tmp_path / "dump"
    path.write_bytes(b"abc")

    assert sha256_text("abc") == (
        "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
    )
    assert sha256_file(path, chunk_size=1) == sha256_text("abc")
    assert sha256_json({"b": 1, "a": 2}) == sha256_json({"a": 2, "b": 1})
    with pytest.raises(ValueError, match="chunk_size"):
        sha256_file(path, chunk_size=0)
