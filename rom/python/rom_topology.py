from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from rom_archive import PAR_FILE, ModelArchive, c_file, ct1_file, ct2_file, g_file, matrix_file, weights_file
from rom_errors import IncompleteArchive

logger = logging.getLogger(__name__)

N_BC = 2  # inlet velocity components

MANDATORY_FILES = (
    matrix_file("K"),
    matrix_file("B"),
    matrix_file("bt"),
    matrix_file("coeffL2"),
    PAR_FILE,
)
PPE_MARKER = matrix_file("G0")

MODES_FILES = {
    "modes_U": matrix_file("EigenModes_U"),
    "modes_p": matrix_file("EigenModes_p"),
    "modes_nut": matrix_file("EigenModes_nut"),
}


class Stabilization(str, Enum):
    PPE = "PPE"
    SUPREMIZER = "supremizer"


@dataclass(frozen=True)
class ModelTopology:
    stabilization: Stabilization
    n_phi_u: int
    n_phi_p: int
    n_phi_nut: int
    n_runs: int
    n_bc: int = N_BC

    @property
    def is_ppe(self) -> bool:
        return self.stabilization is Stabilization.PPE


def resolve_topology(archive: ModelArchive) -> ModelTopology:
    missing = [name for name in MANDATORY_FILES if not archive.has(name)]
    if missing:
        raise IncompleteArchive(missing)

    K = archive.matrix(matrix_file("K"))
    B = archive.matrix(matrix_file("B"))
    coeff = archive.matrix(matrix_file("coeffL2"))
    # bt and par are not needed for the counts but must parse before assembly starts.
    archive.matrix(matrix_file("bt"))
    archive.matrix(PAR_FILE)

    scheme = Stabilization.PPE if archive.has(PPE_MARKER) else Stabilization.SUPREMIZER
    topo = ModelTopology(
        stabilization=scheme,
        n_phi_u=B.rows,
        n_phi_p=K.cols,
        n_phi_nut=coeff.rows,
        n_runs=coeff.cols,
    )
    logger.info(
        f"Resolved {scheme.value} topology: nPhiU={topo.n_phi_u} nPhiP={topo.n_phi_p} "
        f"nPhiNut={topo.n_phi_nut} nRuns={topo.n_runs}"
    )
    return topo


def scheme_files(topology: ModelTopology) -> list[str]:
    if topology.is_ppe:
        return [matrix_file("D"), matrix_file("BC3")]
    return [matrix_file("P")]


def required_files(topology: ModelTopology) -> list[str]:
    """Ordered list of every non-optional file beyond the mandatory five."""
    names = scheme_files(topology)
    names += [weights_file(i) for i in range(topology.n_phi_nut)]
    for i in range(topology.n_phi_u):
        names += [c_file(i), ct1_file(i), ct2_file(i)]
    if topology.is_ppe:
        names += [g_file(i) for i in range(topology.n_phi_p)]
    return names
