from __future__ import annotations

import csv
import fcntl
import io
import logging
import os
import secrets
from contextlib import contextmanager
from functools import lru_cache
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, TextIO

from services.errors import StorageError

logger = logging.getLogger(__name__)

DELIMITER = ";"
LINE_TERMINATOR = "\n"


class CsvStore:
    """Per-sensor, per-month ``;``-delimited CSV files on local disk.

    Every method that mutates a file expects the caller to hold
    :meth:`exclusive_lock` for that file.
    """

    def __init__(self, delimiter: str = DELIMITER, encoding: str = "utf-8") -> None:
        self.delimiter = delimiter
        self.encoding = encoding

    @staticmethod
    def destination_path(storage_dir: str | Path, month: str, sensor_id: str) -> Path:
        return Path(storage_dir) / f"{month}_{sensor_id}.csv"

    @staticmethod
    def lock_path(path: Path) -> Path:
        return path.with_name(path.name + ".lock")

    def ensure_directory(self, directory: Path) -> None:
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError("cannot_create_data_dir", f"{directory}: {exc}") from exc
        if not directory.is_dir():
            raise StorageError("cannot_create_data_dir", f"{directory}: not a directory")

    @staticmethod
    def last_modified(path: Path) -> Optional[float]:
        try:
            return path.stat().st_mtime
        except FileNotFoundError:
            return None

    @contextmanager
    def exclusive_lock(self, path: Path) -> Iterator[None]:
        """Hold an exclusive ``flock`` on the sidecar lock file of ``path``."""

        lock_path = self.lock_path(path)
        try:
            handle = lock_path.open("a")
        except OSError as exc:
            raise StorageError("cannot_open_lock", f"{lock_path}: {exc}") from exc

        try:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            except OSError as exc:
                raise StorageError("cannot_lock", f"{lock_path}: {exc}") from exc
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()

    @contextmanager
    def open_text(self, path: Path, mode: str = "r") -> Iterator[TextIO]:
        with path.open(mode, encoding=self.encoding, newline="") as handle:
            yield handle

    def read_header(self, path: Path) -> List[str]:
        """Return the header row, or ``[]`` when the file is missing or empty."""

        try:
            if path.stat().st_size == 0:
                return []
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise StorageError("cannot_open_csv", f"read {path}: {exc}") from exc

        try:
            with self.open_text(path) as handle:
                header = next(csv.reader(handle, delimiter=self.delimiter), None)
        except OSError as exc:
            raise StorageError("cannot_open_csv", f"read {path}: {exc}") from exc
        except csv.Error as exc:
            raise StorageError("bad_header", f"{path}: {exc}") from exc

        if not header or not any(cell.strip() for cell in header):
            raise StorageError("bad_header", str(path))
        return [str(cell) for cell in header]

    def has_duplicate_header(self, path: Path, header: Sequence[str]) -> bool:
        """True once ``header`` is seen twice; the scan stops there."""

        expected = list(header)
        seen = 0
        try:
            with self.open_text(path) as handle:
                for row in csv.reader(handle, delimiter=self.delimiter):
                    if row == expected:
                        seen += 1
                        if seen >= 2:
                            return True
        except (OSError, csv.Error) as exc:
            raise StorageError("cannot_open_csv", f"scan {path}: {exc}") from exc
        return False

    def create(self, path: Path, header: Sequence[str]) -> None:
        try:
            with self.open_text(path, "w") as handle:
                handle.write(self.format_row(header))
        except OSError as exc:
            raise StorageError("cannot_open_csv", f"create {path}: {exc}") from exc

    def append_row(self, path: Path, row: Sequence[str]) -> None:
        """Append one record with a single ``write`` call."""

        record = self.format_row(row)
        try:
            with path.open("rb") as existing:
                existing.seek(0, os.SEEK_END)
                if existing.tell() > 0:
                    existing.seek(-1, os.SEEK_END)
                    if existing.read(1) != b"\n":
                        # finish a torn trailing line so this record starts clean
                        record = LINE_TERMINATOR + record
            with self.open_text(path, "a") as handle:
                handle.write(record)
                handle.flush()
        except OSError as exc:
            raise StorageError("cannot_open_csv", f"append {path}: {exc}") from exc

    def rewrite(self, path: Path, existing_header: Sequence[str], missing: Sequence[str]) -> List[str]:
        """Widen ``path`` to ``existing_header + missing`` via temp file and rename.

        Historical rows are normalised to the old width, padded with empty
        cells for the new columns, and copies of either header are dropped.
        The original file is untouched if anything fails.
        """

        old_header = list(existing_header)
        new_header = old_header + list(missing)
        width = len(old_header)
        padding = [""] * len(missing)
        tmp_path = path.with_name(f"{path.name}.tmp.{secrets.token_hex(4)}")

        try:
            with self.open_text(path) as source, self.open_text(tmp_path, "x") as target:
                reader = csv.reader(source, delimiter=self.delimiter)
                writer = self._writer(target)
                next(reader, None)
                writer.writerow(new_header)
                for row in reader:
                    if not row or row == old_header or row == new_header:
                        continue
                    row = row[:width] + [""] * (width - len(row))
                    writer.writerow(row + padding)
                target.flush()
                os.fsync(target.fileno())
            os.replace(tmp_path, path)
        except (OSError, csv.Error) as exc:
            tmp_path.unlink(missing_ok=True)
            raise StorageError("csv_rewrite_failed", f"{path}: {exc}") from exc

        logger.info(
            "Rewrote CSV with expanded header",
            extra={"file_name": path.name, "missing_columns": ",".join(missing) or None},
        )
        return new_header

    def format_row(self, row: Sequence[str]) -> str:
        buffer = io.StringIO()
        self._writer(buffer).writerow(row)
        return buffer.getvalue()

    def _writer(self, handle: TextIO):
        return csv.writer(handle, delimiter=self.delimiter, lineterminator=LINE_TERMINATOR)


@lru_cache
def build_default_store() -> CsvStore:
    return CsvStore()
