from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from config import get
from rom_archive import PAR_FILE, Matrix, ModelArchive, c_file, ct1_file, ct2_file, g_file, matrix_file, weights_file
from rom_engine import RomEngine
from rom_topology import MODES_FILES, ModelTopology, required_files, resolve_topology

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RomMatrices:
    base: dict[str, Matrix]  # K, B, bt, coeffL2, mu
    scheme: dict[str, Matrix]  # D, BC3 (PPE) or P (supremizer)
    modes: dict[str, Matrix] = field(default_factory=dict)
    weights: list[Matrix] = field(default_factory=list)
    C: list[Matrix] = field(default_factory=list)
    Ct1: list[Matrix] = field(default_factory=list)
    Ct2: list[Matrix] = field(default_factory=list)
    G: list[Matrix] = field(default_factory=list)


def collect_matrices(archive: ModelArchive, topology: ModelTopology, workers: int = 1) -> RomMatrices:
    """Decode every file the topology needs, before any engine is touched."""
    optional = [name for name in MODES_FILES.values() if archive.has(name)]
    mats = archive.load(required_files(topology) + optional, workers=workers)

    base = {
        "K": archive.matrix(matrix_file("K")),
        "B": archive.matrix(matrix_file("B")),
        "bt": archive.matrix(matrix_file("bt")),
        "coeffL2": archive.matrix(matrix_file("coeffL2")),
        "mu": archive.matrix(PAR_FILE),
    }
    if topology.is_ppe:
        scheme = {"D": mats[matrix_file("D")], "BC3": mats[matrix_file("BC3")]}
    else:
        scheme = {"P": mats[matrix_file("P")]}
    modes = {key: mats[name] for key, name in MODES_FILES.items() if name in mats}

    return RomMatrices(
        base=base,
        scheme=scheme,
        modes=modes,
        weights=[mats[weights_file(i)] for i in range(topology.n_phi_nut)],
        C=[mats[c_file(i)] for i in range(topology.n_phi_u)],
        Ct1=[mats[ct1_file(i)] for i in range(topology.n_phi_u)],
        Ct2=[mats[ct2_file(i)] for i in range(topology.n_phi_u)],
        G=[mats[g_file(i)] for i in range(topology.n_phi_p)] if topology.is_ppe else [],
    )


def assemble(engine: RomEngine, topology: ModelTopology, matrices: RomMatrices) -> None:
    engine.initialize(topology)

    for name in ("K", "B", "bt", "coeffL2", "mu"):
        engine.set_matrix(name, matrices.base[name])
    for name, mat in matrices.scheme.items():
        engine.set_matrix(name, mat)
    for name, mat in matrices.modes.items():
        engine.set_matrix(name, mat)

    # The engine checks each position against its own append count.
    for i in range(topology.n_phi_nut):
        engine.append_weights(matrices.weights[i], i)
    for i in range(topology.n_phi_u):
        engine.append_c(matrices.C[i], i)
        engine.append_ct1(matrices.Ct1[i], i)
        engine.append_ct2(matrices.Ct2[i], i)
    if topology.is_ppe:
        for i in range(topology.n_phi_p):
            engine.append_g(matrices.G[i], i)

    engine.set_rbf()


def prepare_matrices(archive: ModelArchive, cfg: dict[str, Any]) -> tuple[ModelTopology, RomMatrices]:
    topology = resolve_topology(archive)
    matrices = collect_matrices(archive, topology, workers=int(get(cfg, "archive.workers", 1)))
    return topology, matrices


def assemble_engine(topology: ModelTopology, matrices: RomMatrices, cfg: dict[str, Any]) -> RomEngine:
    engine = RomEngine(
        kernel=str(get(cfg, "rbf.kernel", "gaussian")),
        epsilon=float(get(cfg, "rbf.epsilon", 1.0)),
        xtol=float(get(cfg, "solver.xtol", 1e-10)),
        maxfev=int(get(cfg, "solver.maxfev", 0)),
    )
    try:
        assemble(engine, topology, matrices)
    except Exception:
        engine.close()
        raise
    logger.info(f"Assembled {topology.stabilization.value} ROM with counts {engine.append_counts}")
    return engine


def build_engine(archive: ModelArchive, cfg: dict[str, Any]) -> tuple[ModelTopology, RomEngine]:
    """Resolve, decode and assemble in one call; the engine is closed on any failure."""
    topology, matrices = prepare_matrices(archive, cfg)
    return topology, assemble_engine(topology, matrices, cfg)
