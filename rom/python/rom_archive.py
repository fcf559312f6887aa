from __future__ import annotations

import io
import logging
import threading
import zipfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Iterable, Mapping

import numpy as np

from rom_errors import InputError, MissingMatrix, ParseError

logger = logging.getLogger(__name__)

PAR_FILE = "par.txt"


def matrix_file(stem: str) -> str:
    return f"{stem}_mat.txt"


def weights_file(i: int) -> str:
    return matrix_file(f"wRBF_{i}")


def c_file(i: int) -> str:
    return matrix_file(f"C{i}")


def ct1_file(i: int) -> str:
    return matrix_file(f"ct1_{i}")


def ct2_file(i: int) -> str:
    return matrix_file(f"ct2_{i}")


def g_file(i: int) -> str:
    return matrix_file(f"G{i}")


@dataclass(frozen=True, eq=False)
class Matrix:
    rows: int
    cols: int
    values: np.ndarray  # (rows*cols,) column-major, read-only

    @classmethod
    def from_array(cls, arr: np.ndarray) -> "Matrix":
        arr = np.asarray(arr, dtype=float)
        if arr.ndim == 1:
            arr = arr.reshape(-1, 1)
        if arr.ndim != 2:
            raise ValueError(f"Matrix must be 2D, got {arr.shape}")
        values = np.array(arr.ravel(order="F"), dtype=float)
        values.setflags(write=False)
        return cls(rows=int(arr.shape[0]), cols=int(arr.shape[1]), values=values)

    @property
    def shape(self) -> tuple[int, int]:
        return (self.rows, self.cols)

    @property
    def array(self) -> np.ndarray:
        return self.values.reshape((self.rows, self.cols), order="F")


def parse_matrix_text(name: str, text: str) -> Matrix:
    rows: list[list[float]] = []
    n_cols: int | None = None
    for line in text.splitlines():
        tokens = line.split()
        if not tokens:
            continue
        r = len(rows)
        if n_cols is None:
            n_cols = len(tokens)
        elif len(tokens) != n_cols:
            # Missing trailing tokens or extra ones: point at the first offending column.
            col = min(len(tokens), n_cols)
            raise ParseError(name, r, col, f"expected {n_cols} values, got {len(tokens)}")
        vals: list[float] = []
        for c, tok in enumerate(tokens):
            try:
                v = float(tok)
            except ValueError:
                raise ParseError(name, r, c, f"non-numeric token {tok!r}") from None
            if not np.isfinite(v):
                raise ParseError(name, r, c, f"non-finite token {tok!r}")
            vals.append(v)
        rows.append(vals)
    if not rows:
        raise ParseError(name, 0, 0, "empty matrix file")
    return Matrix.from_array(np.asarray(rows, dtype=float))


def format_matrix_text(arr: np.ndarray) -> str:
    arr = np.asarray(arr, dtype=float)
    if arr.ndim == 1:
        arr = arr.reshape(-1, 1)
    return "\n".join(" ".join(f"{v:.17g}" for v in row) for row in arr) + "\n"


def write_archive(matrices: Mapping[str, np.ndarray]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, arr in matrices.items():
            zf.writestr(name, format_matrix_text(arr))
    return buf.getvalue()


@dataclass
class ModelArchive:
    """
    Named matrix files of a packaged ROM.

    Entries are decoded lazily and cached; `read_names` records which
    entries have been decoded so far.
    """

    entries: dict[str, bytes]
    read_names: set[str] = field(default_factory=set)
    _cache: dict[str, Matrix] = field(default_factory=dict, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @classmethod
    def from_bytes(cls, data: bytes) -> "ModelArchive":
        try:
            with zipfile.ZipFile(io.BytesIO(data)) as zf:
                entries = {}
                for info in zf.infolist():
                    if info.is_dir():
                        continue
                    # Bundles zipped from a folder carry a directory prefix.
                    name = info.filename.rsplit("/", 1)[-1]
                    if name in entries:
                        raise InputError(f"Model archive holds more than one {name!r}")
                    entries[name] = zf.read(info)
        except zipfile.BadZipFile as exc:
            raise InputError(f"Model archive is not a valid ZIP bundle: {exc}") from exc
        logger.debug(f"Opened model archive with {len(entries)} entries")
        return cls(entries=entries)

    def has(self, name: str) -> bool:
        return name in self.entries

    def matrix(self, name: str) -> Matrix:
        with self._lock:
            cached = self._cache.get(name)
        if cached is not None:
            return cached
        raw = self.entries.get(name)
        if raw is None:
            raise MissingMatrix(name)
        try:
            text = raw.decode("ascii")
        except UnicodeDecodeError as exc:
            raise ParseError(name, 0, 0, "file is not ASCII text") from exc
        mat = parse_matrix_text(name, text)
        with self._lock:
            self._cache[name] = mat
            self.read_names.add(name)
        logger.debug(f"Parsed {name}: {mat.rows}x{mat.cols}")
        return mat

    def load(self, names: Iterable[str], workers: int = 1) -> dict[str, Matrix]:
        names = list(names)
        missing = [n for n in names if n not in self.entries]
        if missing:
            raise MissingMatrix(missing[0])
        if workers <= 1 or len(names) <= 1:
            return {n: self.matrix(n) for n in names}
        with ThreadPoolExecutor(max_workers=workers) as pool:
            mats = list(pool.map(self.matrix, names))
        return dict(zip(names, mats))
