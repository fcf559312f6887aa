from __future__ import annotations

import argparse
import json
from pathlib import Path

import numpy as np

from config import configure_logging, load_config
from field_models import RomFieldModel


def main() -> None:
    ap = argparse.ArgumentParser(description="Evaluate a packaged ROM on a mesh for one (nu, U) query")
    ap.add_argument("--mesh", required=True, help="Mesh (.vtu) path or URL")
    ap.add_argument("--model", required=True, help="Model archive (.zip) path or URL")
    ap.add_argument("--nu", type=float, required=True, help="Kinematic viscosity")
    ap.add_argument("--u", type=float, nargs=2, required=True, metavar=("UX", "UY"), help="Inlet velocity")
    ap.add_argument("--config", default=None, help="YAML config overriding the defaults")
    ap.add_argument("--operations", nargs="*", default=[], help="Derived fields: gradients, vorticity")
    ap.add_argument("--probe", type=float, nargs=3, default=None, metavar=("X", "Y", "Z"))
    ap.add_argument("--integrate", default=None, help="Field to integrate over the grid")
    ap.add_argument("--out", default=None, help="Write the evaluated grid as .vtu")
    args = ap.parse_args()

    cfg = load_config(args.config)
    configure_logging(cfg)

    model = RomFieldModel(cfg)
    n_cells = model.load_mesh(Path(args.mesh) if "://" not in args.mesh else args.mesh)
    topo = model.load_model(Path(args.model) if "://" not in args.model else args.model)
    model.set_operations(args.operations)
    snapshot = model.update(args.nu, args.u)

    summary: dict = {
        "n_cells": n_cells,
        "stabilization": topo.stabilization.value,
        "nPhiU": topo.n_phi_u,
        "nPhiP": topo.n_phi_p,
        "nPhiNut": topo.n_phi_nut,
        "converged": bool(model.last_solution.converged) if model.last_solution else None,
        "fields": sorted(snapshot.grid.point_data.keys()),
        "U_max": float(np.max(np.linalg.norm(snapshot.values, axis=1))),
    }
    if args.probe is not None:
        summary["probe"] = model.probe("U", args.probe)
    if args.integrate:
        res = model.integrate(args.integrate, "grid")
        summary["integrate"] = {"extent": res.extent, "sum": list(res.sum)}
    if args.out:
        out = Path(args.out)
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(model.grid(), encoding="utf-8")
        print(f"[rom_query] Wrote: {out}")

    print(json.dumps(summary, indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
