from __future__ import annotations

import numpy as np
import pyvista as pv

from mesh_io import export_grid
from rom_archive import PAR_FILE, c_file, ct1_file, ct2_file, g_file, matrix_file, weights_file
from rom_topology import MODES_FILES, Stabilization


def box_grid(
    dims: tuple[int, int, int] = (11, 11, 2),
    spacing: tuple[float, float, float] = (0.1, 0.1, 0.1),
    origin: tuple[float, float, float] = (0.0, 0.0, 0.0),
) -> pv.UnstructuredGrid:
    # dims are point counts, so the grid has prod(dims - 1) hexahedra.
    img = pv.ImageData(dimensions=dims, spacing=spacing, origin=origin)
    return img.cast_to_unstructured_grid()


def grid_bytes(grid: pv.UnstructuredGrid) -> bytes:
    return export_grid(grid).encode("utf-8")


def demo_matrices(
    stabilization: Stabilization = Stabilization.SUPREMIZER,
    *,
    n_cells: int = 100,
    n_phi_u: int = 5,
    n_phi_p: int = 2,
    n_phi_nut: int = 2,
    n_runs: int = 3,
    seed: int = 0,
    with_modes: bool = True,
) -> dict[str, np.ndarray]:
    """
    Archive contents of a small, well-conditioned synthetic ROM.

    The diffusion operator dominates the quadratic terms so the reduced
    solve converges from a zero guess.
    """
    rng = np.random.default_rng(seed)
    nu_, np_, nn_ = n_phi_u, n_phi_p, n_phi_nut

    mats: dict[str, np.ndarray] = {
        matrix_file("B"): -10.0 * np.eye(nu_) + 0.1 * rng.standard_normal((nu_, nu_)),
        matrix_file("bt"): 0.1 * rng.standard_normal((nu_, nu_)),
        matrix_file("K"): rng.standard_normal((nu_, np_)),
        matrix_file("coeffL2"): rng.standard_normal((nn_, n_runs)),
        PAR_FILE: np.column_stack([np.linspace(1.0, 3.0, n_runs), np.zeros(n_runs)]),
    }
    if stabilization is Stabilization.PPE:
        mats[matrix_file("D")] = 2.0 * np.eye(np_) + 0.1 * rng.standard_normal((np_, np_))
        mats[matrix_file("BC3")] = rng.standard_normal((np_, nu_))
        for i in range(np_):
            mats[g_file(i)] = 0.01 * rng.standard_normal((nu_, nu_))
    else:
        mats[matrix_file("P")] = rng.standard_normal((np_, nu_))

    for i in range(nn_):
        mats[weights_file(i)] = 0.1 * rng.standard_normal((n_runs, 1))
    for i in range(nu_):
        mats[c_file(i)] = 0.01 * rng.standard_normal((nu_, nu_))
        mats[ct1_file(i)] = 0.01 * rng.standard_normal((nn_, nu_))
        mats[ct2_file(i)] = 0.01 * rng.standard_normal((nn_, nu_))

    if with_modes:
        mats[MODES_FILES["modes_U"]] = rng.standard_normal((3 * n_cells, nu_))
        mats[MODES_FILES["modes_p"]] = rng.standard_normal((n_cells, np_))
        mats[MODES_FILES["modes_nut"]] = rng.standard_normal((n_cells, nn_))
    return mats
