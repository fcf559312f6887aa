from __future__ import annotations

import logging
from enum import Enum
from typing import Iterable

import pyvista as pv

from rom_errors import FieldNotFound, UnsupportedOperation

logger = logging.getLogger(__name__)


class Operation(str, Enum):
    GRADIENTS = "gradients"
    VORTICITY = "vorticity"


def parse_operations(names: Iterable[str]) -> frozenset[Operation]:
    ops = set()
    for name in names:
        try:
            ops.add(Operation(name))
        except ValueError:
            valid = ", ".join(op.value for op in Operation)
            raise UnsupportedOperation(f"Invalid operation {name!r}. Valid operations: {valid}") from None
    return frozenset(ops)


def apply_operations(grid: pv.DataSet, field: str, ops: frozenset[Operation]) -> pv.DataSet:
    """
    Compute the requested derivative arrays of point field `field`.

    Both arrays come from one derivative pass, so the result does not depend
    on which operations were requested together or in which order.
    """
    if not ops:
        return grid
    if field not in grid.point_data:
        raise FieldNotFound(field, list(grid.point_data.keys()))
    values = grid.point_data[field]
    n_comp = 1 if values.ndim == 1 else values.shape[1]
    if Operation.VORTICITY in ops and n_comp != 3:
        logger.warning(f"Skipping vorticity: {field!r} has {n_comp} component(s), needs 3")
        ops = ops - {Operation.VORTICITY}
        if not ops:
            return grid

    out = grid.compute_derivative(
        scalars=field,
        gradient=Operation.GRADIENTS.value if Operation.GRADIENTS in ops else False,
        vorticity=Operation.VORTICITY.value if Operation.VORTICITY in ops else False,
        faster=True,
        preference="point",
    )
    logger.debug(f"Derived {sorted(op.value for op in ops)} from {field}")
    return out
