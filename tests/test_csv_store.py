from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest

from services.errors import StorageError
from storage.csv_store import CsvStore


def _write(path: Path, lines: list[str]) -> None:
    path.write_text("".join(line + "\n" for line in lines), encoding="utf-8")


def _lines(path: Path) -> list[str]:
    return path.read_text(encoding="utf-8").splitlines()


def test_destination_path_uses_month_and_sensor(tmp_path: Path) -> None:
    path = CsvStore.destination_path(tmp_path, "2023-11", "A1")

    assert path == tmp_path / "2023-11_A1.csv"
    assert CsvStore.lock_path(path) == tmp_path / "2023-11_A1.csv.lock"


def test_create_and_append_use_semicolons(tmp_path: Path) -> None:
    store = CsvStore()
    path = tmp_path / "file.csv"

    store.create(path, ["ts", "ts_str", "temp_avg"])
    store.append_row(path, ["1", "a;b", ""])

    assert _lines(path) == ["ts;ts_str;temp_avg", '1;"a;b";']
    assert store.read_header(path) == ["ts", "ts_str", "temp_avg"]


def test_read_header_of_missing_or_empty_file(tmp_path: Path) -> None:
    store = CsvStore()
    empty = tmp_path / "empty.csv"
    empty.write_text("")

    assert store.read_header(tmp_path / "missing.csv") == []
    assert store.read_header(empty) == []


def test_read_header_rejects_blank_first_row(tmp_path: Path) -> None:
    store = CsvStore()
    path = tmp_path / "blank.csv"
    path.write_text("\n1;2\n")

    with pytest.raises(StorageError) as excinfo:
        store.read_header(path)

    assert excinfo.value.code == "bad_header"


def test_duplicate_header_detection(tmp_path: Path) -> None:
    store = CsvStore()
    clean = tmp_path / "clean.csv"
    dirty = tmp_path / "dirty.csv"
    _write(clean, ["ts;a", "1;2", "3;4"])
    _write(dirty, ["ts;a", "1;2", "ts;a", "3;4"])

    assert store.has_duplicate_header(clean, ["ts", "a"]) is False
    assert store.has_duplicate_header(dirty, ["ts", "a"]) is True


def test_rewrite_pads_rows_and_preserves_order(tmp_path: Path) -> None:
    store = CsvStore()
    path = tmp_path / "data.csv"
    _write(path, ["ts;a;b", "1;x;y", "2;;z", "3;p;q"])

    new_header = store.rewrite(path, ["ts", "a", "b"], ["c", "d"])

    assert new_header == ["ts", "a", "b", "c", "d"]
    assert _lines(path) == [
        "ts;a;b;c;d",
        "1;x;y;;",
        "2;;z;;",
        "3;p;q;;",
    ]


def test_rewrite_drops_header_copies_and_normalizes_width(tmp_path: Path) -> None:
    store = CsvStore()
    path = tmp_path / "data.csv"
    _write(
        path,
        [
            "ts;a",
            "1;x",
            "ts;a",
            "2;y;extra;more",
            "3",
            "ts;a;c",
            "",
            "4;z",
        ],
    )

    store.rewrite(path, ["ts", "a"], ["c"])

    lines = _lines(path)
    assert lines == ["ts;a;c", "1;x;", "2;y;", "3;;", "4;z;"]
    assert lines.count("ts;a;c") == 1


def test_rewrite_failure_leaves_original_untouched(tmp_path: Path, monkeypatch) -> None:
    store = CsvStore()
    path = tmp_path / "data.csv"
    _write(path, ["ts;a", "1;x"])
    original = path.read_bytes()

    def failing_replace(src, dst):
        raise OSError("rename refused")

    monkeypatch.setattr("storage.csv_store.os.replace", failing_replace)

    with pytest.raises(StorageError) as excinfo:
        store.rewrite(path, ["ts", "a"], ["b"])

    assert excinfo.value.code == "csv_rewrite_failed"
    assert path.read_bytes() == original
    assert sorted(p.name for p in tmp_path.iterdir()) == ["data.csv"]


def test_rewrite_of_missing_source_reports_failure(tmp_path: Path) -> None:
    store = CsvStore()

    with pytest.raises(StorageError) as excinfo:
        store.rewrite(tmp_path / "gone.csv", ["ts"], ["a"])

    assert excinfo.value.code == "csv_rewrite_failed"
    assert list(tmp_path.iterdir()) == []


def test_append_after_torn_line_starts_on_new_line(tmp_path: Path) -> None:
    store = CsvStore()
    path = tmp_path / "data.csv"
    path.write_text("ts;a\n1;x\n2;", encoding="utf-8")

    store.append_row(path, ["3", "y"])

    assert _lines(path) == ["ts;a", "1;x", "2;", "3;y"]


def test_ensure_directory_reports_failure(tmp_path: Path) -> None:
    store = CsvStore()
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x")

    with pytest.raises(StorageError) as excinfo:
        store.ensure_directory(blocker / "nested")

    assert excinfo.value.code == "cannot_create_data_dir"


def test_exclusive_lock_serializes_holders(tmp_path: Path) -> None:
    store = CsvStore()
    path = tmp_path / "data.csv"
    events: list[str] = []
    first_inside = threading.Event()

    def hold_lock() -> None:
        with store.exclusive_lock(path):
            events.append("first-acquired")
            first_inside.set()
            time.sleep(0.2)
            events.append("first-released")

    worker = threading.Thread(target=hold_lock)
    worker.start()
    assert first_inside.wait(timeout=2.0)

    with store.exclusive_lock(path):
        events.append("second-acquired")

    worker.join(timeout=2.0)
    assert events == ["first-acquired", "first-released", "second-acquired"]
    assert CsvStore.lock_path(path).exists()


def test_exclusive_lock_reports_unopenable_lock_file(tmp_path: Path) -> None:
    store = CsvStore()
    path = tmp_path / "missing-dir" / "data.csv"

    with pytest.raises(StorageError) as excinfo:
        with store.exclusive_lock(path):
            pass

    assert excinfo.value.code == "cannot_open_lock"
