#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / "rom" / "python"))

from demo_case import box_grid, demo_matrices, grid_bytes  # noqa: E402
from rom_archive import write_archive  # noqa: E402
from rom_topology import Stabilization  # noqa: E402


def main() -> None:
    ap = argparse.ArgumentParser(description="Write a synthetic mesh and ROM archive for rom_query")
    ap.add_argument("--out", required=True, help="Output directory")
    ap.add_argument("--scheme", choices=[s.value for s in Stabilization], default=Stabilization.SUPREMIZER.value)
    ap.add_argument("--cells", type=int, default=10, help="Cells per side in x and y")
    ap.add_argument("--seed", type=int, default=0)
    args = ap.parse_args()

    n = int(args.cells)
    grid = box_grid(dims=(n + 1, n + 1, 2), spacing=(1.0 / n, 1.0 / n, 0.1))
    mats = demo_matrices(Stabilization(args.scheme), n_cells=grid.n_cells, seed=args.seed)

    out = Path(args.out)
    out.mkdir(parents=True, exist_ok=True)
    (out / "mesh.vtu").write_bytes(grid_bytes(grid))
    (out / "model.zip").write_bytes(write_archive(mats))
    print(f"[build_demo_case] Wrote: {out / 'mesh.vtu'} {out / 'model.zip'} ({grid.n_cells} cells, {args.scheme})")


if __name__ == "__main__":
    main()
