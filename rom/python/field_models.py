from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Mapping, Sequence

import numpy as np
import pyvista as pv

from config import default_config, get
from derived_fields import Operation, apply_operations, parse_operations
from extraction import (
    Component,
    IntegrationResult,
    IntegrationTarget,
    RenderResult,
    Surface,
    extract,
    integrate,
    parse_component,
    parse_target,
    probe,
    render,
)
from mesh_io import export_grid, export_polydata, read_bytes_as, read_unstructured_grid
from rom_archive import ModelArchive
from rom_assembly import assemble_engine, prepare_matrices
from rom_engine import OnlineSolution, RomEngine
from rom_errors import FieldNotFound, InputError, InvalidFieldData, ModelNotReady
from rom_topology import ModelTopology
from sources import read_source

logger = logging.getLogger(__name__)


class ModelState(Enum):
    UNINITIALIZED = "uninitialized"
    MESH_LOADED = "mesh_loaded"
    MODEL_ASSEMBLED = "model_assembled"
    READY = "ready"


class Backend(str, Enum):
    ROM = "rom"
    DATA = "data"


@dataclass(frozen=True, eq=False)
class FieldState:
    name: str
    n_components: int
    cell_fields: Mapping[str, np.ndarray]  # every cell field carried by the grid
    grid: pv.UnstructuredGrid  # point data, plus any derived arrays
    operations: frozenset[Operation]

    @property
    def values(self) -> np.ndarray:
        return self.cell_fields[self.name]


class FieldModel:
    """
    Mesh-bound field with derived arrays and extraction queries.

    Each update builds a new FieldState from the pristine mesh and swaps it
    in with one assignment; queries read that snapshot only.
    """

    backend: Backend

    def __init__(self, config: dict[str, Any] | None = None) -> None:
        self.config = config if config is not None else default_config()
        self.state = ModelState.UNINITIALIZED
        self._mesh: pv.UnstructuredGrid | None = None
        self._field: FieldState | None = None
        self._operations: frozenset[Operation] = frozenset()
        self._component: Component = Surface()

    @property
    def n_cells(self) -> int:
        return self._require_mesh().n_cells

    @property
    def field(self) -> FieldState | None:
        return self._field

    @property
    def operations(self) -> frozenset[Operation]:
        return self._operations

    @property
    def component(self) -> Component:
        return self._component

    def _read(self, source: Any) -> bytes:
        return read_source(source, timeout=float(get(self.config, "fetch.timeout", 30.0)))

    def _state_after_mesh(self) -> ModelState:
        return ModelState.MESH_LOADED

    def load_mesh(self, source: Any) -> int:
        mesh = read_unstructured_grid(self._read(source), suffix=str(get(self.config, "mesh.suffix", ".vtu")))
        self._mesh = mesh
        self._field = None
        self._component = Surface()
        self.state = self._state_after_mesh()
        return mesh.n_cells

    def _require_mesh(self) -> pv.UnstructuredGrid:
        if self._mesh is None:
            raise ModelNotReady("No mesh loaded; call load_mesh() first")
        return self._mesh

    def _active_grid(self) -> pv.DataSet:
        snapshot = self._field
        if snapshot is not None:
            return snapshot.grid
        return self._require_mesh()

    def set_operations(self, names: Iterable[str]) -> None:
        if isinstance(names, str):
            names = [names]
        self._operations = parse_operations(names)

    def _publish(self, name: str, cell_fields: Mapping[str, np.ndarray]) -> FieldState:
        grid = self._require_mesh().copy()
        for key, arr in cell_fields.items():
            grid.cell_data[key] = arr
        grid = grid.cell_data_to_point_data(pass_cell_data=False)
        ops = self._operations
        grid = apply_operations(grid, name, ops)

        values = cell_fields[name]
        snapshot = FieldState(
            name=name,
            n_components=1 if values.ndim == 1 else int(values.shape[1]),
            cell_fields=dict(cell_fields),
            grid=grid,
            operations=ops,
        )
        self._field = snapshot
        self.state = ModelState.READY
        return snapshot

    def set_component(self, spec: Mapping[str, Any]) -> str:
        component = parse_component(spec)
        poly = extract(self._active_grid(), component, self.config)
        exported = export_polydata(poly)
        self._component = component
        return exported

    def integrate(self, field: str, target: str = "grid") -> IntegrationResult:
        tgt = parse_target(target)
        grid = self._active_grid()
        dataset = grid if tgt is IntegrationTarget.GRID else extract(grid, self._component, self.config)
        return integrate(dataset, field, tgt)

    def probe(self, field: str, point: Sequence[float]) -> list[float]:
        return probe(self._active_grid(), field, point, tolerance=get(self.config, "probe.tolerance"))

    def render(self, field: str, index: int = -1, value_range: Sequence[float] | None = None) -> RenderResult:
        poly = extract(self._active_grid(), self._component, self.config)
        return render(poly, field, index=index, value_range=value_range, cfg=self.config)

    def grid(self) -> str:
        return export_grid(self._active_grid())


class RomFieldModel(FieldModel):
    backend = Backend.ROM

    def __init__(self, config: dict[str, Any] | None = None) -> None:
        super().__init__(config)
        self._engine: RomEngine | None = None
        self.topology: ModelTopology | None = None
        self.last_solution: OnlineSolution | None = None

    def _state_after_mesh(self) -> ModelState:
        return ModelState.MODEL_ASSEMBLED if self._engine is not None else ModelState.MESH_LOADED

    def _discard_engine(self) -> None:
        if self._engine is not None:
            self._engine.close()
        self._engine = None
        self.topology = None
        self.last_solution = None

    def load_model(self, source: Any) -> ModelTopology:
        self._require_mesh()
        archive = ModelArchive.from_bytes(self._read(source))
        # Parse and resolve everything before the current model is touched.
        topology, matrices = prepare_matrices(archive, self.config)

        self._discard_engine()
        self._field = None
        self.state = ModelState.MESH_LOADED
        try:
            engine = assemble_engine(topology, matrices, self.config)
        except Exception:
            logger.error("ROM assembly failed; model discarded")
            raise
        self._engine = engine
        self.topology = topology
        self.state = ModelState.MODEL_ASSEMBLED
        return topology

    def update(self, viscosity: float, boundary_velocity: Sequence[float]) -> FieldState:
        if self._engine is None:
            raise ModelNotReady("No ROM assembled; call load_model() first")
        mesh = self._require_mesh()
        bc = np.asarray(boundary_velocity, dtype=float).reshape(-1)
        if bc.size != 2:
            raise InputError(f"Boundary velocity must have 2 components, got {bc.size}")

        self._engine.set_viscosity(viscosity)
        solution = self._engine.solve_online(float(bc[0]), float(bc[1]))
        fields = self._engine.reconstruct(mesh.n_cells)
        snapshot = self._publish("U", fields)
        self.last_solution = solution
        logger.info(f"Evaluated nu={float(viscosity):g} U=({bc[0]:g}, {bc[1]:g}) converged={solution.converged}")
        return snapshot

    def close(self) -> None:
        self._discard_engine()
        self._field = None
        self.state = ModelState.MESH_LOADED if self._mesh is not None else ModelState.UNINITIALIZED


class DataFieldModel(FieldModel):
    """Field model fed with data predicted by an external inference engine."""

    backend = Backend.DATA

    def update(self, field: str, data: Sequence[float] | np.ndarray) -> FieldState:
        n = self._require_mesh().n_cells
        arr = np.asarray(data, dtype=float).reshape(-1)
        if arr.size == 3 * n:
            values = np.ascontiguousarray(arr.reshape(3, n).T)
        elif arr.size == n:
            values = arr.copy()
        else:
            raise InvalidFieldData(
                f"Field data of length {arr.size} is neither scalar ({n}) nor vector ({3 * n}) for {n} cells"
            )
        previous = dict(self._field.cell_fields) if self._field is not None else {}
        previous[field] = values
        return self._publish(field, previous)

    def sdf_and_region(self, stl_source: Any) -> np.ndarray:
        """
        Signed distance of each cell centre to an STL surface.

        Needs `flowRegion` and `sdf2` cell arrays on the mesh. Returns
        [sdf1, flowRegion, sdf2] concatenated, with flowRegion zeroed inside
        the surface; sdf1 is stored on the mesh.
        """
        mesh = self._require_mesh()
        for name in ("flowRegion", "sdf2"):
            if name not in mesh.cell_data:
                raise FieldNotFound(name, list(mesh.cell_data.keys()))
        surface = read_bytes_as(self._read(stl_source), ".stl")

        centers = mesh.cell_centers()
        dist = np.asarray(centers.compute_implicit_distance(surface)["implicit_distance"], dtype=float)
        region = np.array(mesh.cell_data["flowRegion"], dtype=float)
        region[dist < 0] = 0.0
        sdf2 = np.asarray(mesh.cell_data["sdf2"], dtype=float)

        updated = mesh.copy()
        updated.cell_data["sdf1"] = dist
        self._mesh = updated
        return np.concatenate([dist, region, sdf2])


def create_model(backend: str | Backend, config: dict[str, Any] | None = None) -> FieldModel:
    try:
        kind = Backend(backend)
    except ValueError:
        raise InputError(f"Unknown backend {backend!r}; expected 'rom' or 'data'") from None
    if kind is Backend.ROM:
        return RomFieldModel(config)
    return DataFieldModel(config)
