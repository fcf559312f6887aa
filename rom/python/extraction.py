from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Sequence, Union

import numpy as np
import pyvista as pv
from matplotlib.colors import hsv_to_rgb
from vtkmodules.vtkCommonDataModel import vtkDataObject
from vtkmodules.vtkFiltersFlowPaths import vtkStreamTracer

from config import get
from rom_errors import (
    FieldNotFound,
    InputError,
    InvalidComponent,
    InvalidFieldData,
    MissingParameter,
    OutOfDomain,
)

logger = logging.getLogger(__name__)

Vec3 = tuple[float, float, float]


class ComponentKind(str, Enum):
    SURFACE = "surface"
    PLANE = "plane"
    STREAMLINES = "streamlines"


class IntegrationTarget(str, Enum):
    GRID = "grid"
    COMPONENT = "component"


@dataclass(frozen=True)
class Surface:
    kind = ComponentKind.SURFACE


@dataclass(frozen=True)
class Plane:
    origin: Vec3
    normal: Vec3
    kind = ComponentKind.PLANE


@dataclass(frozen=True)
class Streamlines:
    center: Vec3
    radius: float
    propagation: float
    tube_radius: float
    tube_sides: int
    resolution: int
    field: str
    kind = ComponentKind.STREAMLINES


Component = Union[Surface, Plane, Streamlines]


@dataclass(frozen=True)
class IntegrationResult:
    extent: float  # volume for the grid, area for a component
    sum: tuple[float, ...]  # (value,) for scalars, (x, y, z, magnitude) for vectors

    @property
    def is_vector(self) -> bool:
        return len(self.sum) == 4


@dataclass(frozen=True, eq=False)
class RenderResult:
    colors: np.ndarray  # (n_points * 4,) float32 RGBA in [0, 1]
    range: tuple[float, float]


# -- component specs ---------------------------------------------------------

# Streamline parameters may be given in camelCase or snake_case.
_STREAMLINE_KEYS = {
    "center": "center",
    "radius": "radius",
    "propagation": "propagation",
    "tube_radius": "tubeRadius",
    "tube_sides": "tubeSides",
    "resolution": "resolution",
    "field": "field",
}


def _param(spec: Mapping[str, Any], kind: str, key: str, alias: str | None = None) -> Any:
    for k in (key, alias):
        if k is not None and spec.get(k) is not None:
            return spec[k]
    raise MissingParameter(kind, alias or key)


def _vec3(value: Any, kind: str, key: str) -> Vec3:
    try:
        vals = [float(v) for v in value]
    except (TypeError, ValueError):
        raise InvalidComponent(f"{kind}.{key} must be a 3-vector of numbers, got {value!r}") from None
    if len(vals) != 3 or not all(math.isfinite(v) for v in vals):
        raise InvalidComponent(f"{kind}.{key} must be a finite 3-vector, got {value!r}")
    return (vals[0], vals[1], vals[2])


def _positive(value: Any, kind: str, key: str) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        raise InvalidComponent(f"{kind}.{key} must be a number, got {value!r}") from None
    if not math.isfinite(v) or v <= 0:
        raise InvalidComponent(f"{kind}.{key} must be > 0, got {value!r}")
    return v


def _count(value: Any, kind: str, key: str, minimum: int) -> int:
    v = _positive(value, kind, key)
    if v != int(v) or v < minimum:
        raise InvalidComponent(f"{kind}.{key} must be an integer >= {minimum}, got {value!r}")
    return int(v)


def parse_component(spec: Mapping[str, Any]) -> Component:
    if not isinstance(spec, Mapping):
        raise InvalidComponent(f"Component spec must be a mapping, got {type(spec).__name__}")
    raw_kind = spec.get("kind")
    try:
        kind = ComponentKind(raw_kind)
    except ValueError:
        valid = ", ".join(k.value for k in ComponentKind)
        raise InvalidComponent(f"Invalid component {raw_kind!r}. Valid components: {valid}") from None

    if kind is ComponentKind.SURFACE:
        return Surface()
    if kind is ComponentKind.PLANE:
        origin = _vec3(_param(spec, kind.value, "origin"), kind.value, "origin")
        normal = _vec3(_param(spec, kind.value, "normal"), kind.value, "normal")
        if not any(normal):
            raise InvalidComponent("plane.normal must not be the zero vector")
        return Plane(origin=origin, normal=normal)

    vals = {key: _param(spec, kind.value, key, alias) for key, alias in _STREAMLINE_KEYS.items()}
    field = vals["field"]
    if not isinstance(field, str) or not field:
        raise InvalidComponent(f"streamlines.field must be a field name, got {field!r}")
    return Streamlines(
        center=_vec3(vals["center"], kind.value, "center"),
        radius=_positive(vals["radius"], kind.value, "radius"),
        propagation=_positive(vals["propagation"], kind.value, "propagation"),
        tube_radius=_positive(vals["tube_radius"], kind.value, "tubeRadius"),
        tube_sides=_count(vals["tube_sides"], kind.value, "tubeSides", 3),
        resolution=_count(vals["resolution"], kind.value, "resolution", 3),
        field=field,
    )


# -- geometry ---------------------------------------------------------------


def _point_values(dataset: pv.DataSet, field: str) -> np.ndarray:
    if field not in dataset.point_data:
        raise FieldNotFound(field, list(dataset.point_data.keys()))
    values = np.asarray(dataset.point_data[field], dtype=float)
    return values.reshape(-1, 1) if values.ndim == 1 else values


def _streamlines(grid: pv.DataSet, comp: Streamlines, cfg: dict[str, Any]) -> pv.PolyData:
    if _point_values(grid, comp.field).shape[1] != 3:
        raise InvalidComponent(f"Streamlines need a vector field, {comp.field!r} is not one")

    seeds = pv.Sphere(
        radius=comp.radius,
        center=comp.center,
        theta_resolution=comp.resolution,
        phi_resolution=comp.resolution,
    )
    tracer = vtkStreamTracer()
    tracer.SetInputData(grid)
    tracer.SetSourceData(seeds)
    tracer.SetInputArrayToProcess(0, 0, 0, vtkDataObject.FIELD_ASSOCIATION_POINTS, comp.field)
    tracer.SetMaximumPropagation(comp.propagation)
    tracer.SetInitialIntegrationStep(float(get(cfg, "streamlines.initial_step", 0.5)))
    tracer.SetMinimumIntegrationStep(float(get(cfg, "streamlines.min_step", 0.1)))
    tracer.SetMaximumNumberOfSteps(int(get(cfg, "streamlines.max_steps", 2000)))
    tracer.SetIntegrationDirectionToBoth()
    tracer.SetIntegratorTypeToRungeKutta45()
    tracer.Update()

    lines = pv.wrap(tracer.GetOutput())
    if lines.n_points == 0 or lines.n_cells == 0:
        raise OutOfDomain(f"No streamlines traced from seed sphere at {comp.center} (r={comp.radius:g})")
    return lines.tube(radius=comp.tube_radius, n_sides=comp.tube_sides)


def extract(grid: pv.DataSet, component: Component, cfg: dict[str, Any]) -> pv.PolyData:
    if isinstance(component, Surface):
        poly = grid.extract_surface()
    elif isinstance(component, Plane):
        poly = grid.slice(normal=component.normal, origin=component.origin)
    elif isinstance(component, Streamlines):
        poly = _streamlines(grid, component, cfg)
    else:
        raise InvalidComponent(f"Unsupported component {component!r}")
    logger.debug(f"Extracted {component.kind.value}: {poly.n_points} points, {poly.n_cells} cells")
    return poly


# -- integrate / probe -------------------------------------------------------


def parse_target(target: str) -> IntegrationTarget:
    try:
        return IntegrationTarget(target)
    except ValueError:
        raise InputError(f"Integration target must be 'grid' or 'component', got {target!r}") from None


def _integration_result(raw: Sequence[float]) -> IntegrationResult:
    # Shape follows the raw result length: [extent, value] or [extent, x, y, z, mag].
    if len(raw) == 2:
        return IntegrationResult(extent=float(raw[0]), sum=(float(raw[1]),))
    if len(raw) == 5:
        return IntegrationResult(extent=float(raw[0]), sum=tuple(float(v) for v in raw[1:5]))
    raise InvalidFieldData(f"Cannot integrate a field with {len(raw) - 1} result values")


def integrate(dataset: pv.DataSet, field: str, target: IntegrationTarget) -> IntegrationResult:
    _point_values(dataset, field)
    integrated = dataset.integrate_data()
    # Only the measure of the highest cell dimension present is reported.
    if target is IntegrationTarget.GRID:
        keys = ("Volume", "Area", "Length")
    else:
        keys = ("Area", "Length", "Volume")
    extent_key = next((k for k in keys if k in integrated.cell_data), None)
    if extent_key is None:
        raise InvalidFieldData(f"Integration of {field!r} produced no extent")
    extent = float(np.asarray(integrated.cell_data[extent_key]).reshape(-1)[0])

    vals = np.asarray(integrated.point_data[field], dtype=float).reshape(-1)
    raw = [extent, *vals.tolist()]
    if vals.size > 1:
        raw.append(float(np.linalg.norm(vals)))
    return _integration_result(raw)


def probe(grid: pv.DataSet, field: str, point: Sequence[float], tolerance: float | None = None) -> list[float]:
    pt = np.asarray(point, dtype=float).reshape(-1)
    if pt.size != 3 or not np.all(np.isfinite(pt)):
        raise InputError(f"Probe point must be a finite 3-vector, got {point!r}")
    _point_values(grid, field)

    kwargs = {} if tolerance is None else {"tolerance": float(tolerance)}
    sampled = pv.PolyData(pt.reshape(1, 3)).sample(grid, **kwargs)
    if not int(np.asarray(sampled.point_data["vtkValidPointMask"]).reshape(-1)[0]):
        raise OutOfDomain(f"Point {pt.tolist()} lies outside the mesh")

    vals = np.asarray(sampled.point_data[field], dtype=float).reshape(-1)
    if vals.size == 1:
        v = float(vals[0])
        return [v, 0.0, 0.0, abs(v)]
    if vals.size == 3:
        return [float(vals[0]), float(vals[1]), float(vals[2]), float(np.linalg.norm(vals))]
    raise InvalidFieldData(f"Cannot probe {field!r}: {vals.size} components")


# -- colour mapping ------------------------------------------------------------


def lookup_table(n_colors: int = 256, hue_range: Sequence[float] = (0.667, 0.0)) -> np.ndarray:
    hues = np.linspace(float(hue_range[0]), float(hue_range[1]), int(n_colors))
    hsv = np.stack([hues, np.ones_like(hues), np.ones_like(hues)], axis=1)
    rgb = np.round(hsv_to_rgb(hsv) * 255.0) / 255.0
    return np.hstack([rgb, np.ones((rgb.shape[0], 1))])


def map_scalars(scalars: np.ndarray, lo: float, hi: float, table: np.ndarray) -> np.ndarray:
    n = table.shape[0]
    if hi > lo:
        idx = np.floor((scalars - lo) / (hi - lo) * n).astype(int)
        idx = np.clip(idx, 0, n - 1)
    else:
        idx = np.zeros(scalars.shape[0], dtype=int)
    return table[idx]


def render(
    poly: pv.DataSet,
    field: str,
    index: int = -1,
    value_range: Sequence[float] | None = None,
    cfg: dict[str, Any] | None = None,
) -> RenderResult:
    cfg = cfg or {}
    values = _point_values(poly, field)
    if index not in (-1, 0, 1, 2):
        raise InputError(f"Component index must be -1, 0, 1 or 2, got {index!r}")
    if index == -1:
        scalars = np.linalg.norm(values, axis=1) if values.shape[1] > 1 else values[:, 0]
    elif index < values.shape[1]:
        scalars = values[:, index]
    else:
        raise InputError(f"Field {field!r} has {values.shape[1]} components, index {index} requested")

    if value_range is None:
        lo, hi = (float(scalars.min()), float(scalars.max())) if scalars.size else (0.0, 0.0)
    else:
        if len(value_range) != 2:
            raise InputError(f"Range must be [min, max], got {value_range!r}")
        lo, hi = float(value_range[0]), float(value_range[1])
        if hi < lo:
            raise InputError(f"Range minimum {lo} exceeds maximum {hi}")

    table = lookup_table(int(get(cfg, "render.n_colors", 256)), get(cfg, "render.hue_range", (0.667, 0.0)))
    colors = map_scalars(scalars, lo, hi, table)
    return RenderResult(colors=colors.astype(np.float32).reshape(-1), range=(lo, hi))
