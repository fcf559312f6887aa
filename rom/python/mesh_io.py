from __future__ import annotations

import logging
import os
import tempfile

import pyvista as pv
from vtkmodules.vtkIOXML import vtkXMLPolyDataWriter, vtkXMLUnstructuredGridWriter

from rom_errors import InputError

logger = logging.getLogger(__name__)


def read_bytes_as(data: bytes, suffix: str) -> pv.DataSet:
    # pyvista picks the reader from the file extension.
    fd, path = tempfile.mkstemp(suffix=suffix)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        return pv.read(path)
    finally:
        os.remove(path)


def read_unstructured_grid(data: bytes, suffix: str = ".vtu") -> pv.UnstructuredGrid:
    if not data:
        raise InputError("Mesh buffer is empty")
    try:
        mesh = read_bytes_as(data, suffix)
    except Exception as exc:
        raise InputError(f"Could not read mesh as {suffix}: {exc}") from exc
    if isinstance(mesh, pv.MultiBlock):
        mesh = mesh.combine()
    if not isinstance(mesh, pv.UnstructuredGrid):
        mesh = mesh.cast_to_unstructured_grid()
    if mesh.n_cells == 0:
        raise InputError("Mesh has no cells")
    logger.info(f"Loaded mesh with {mesh.n_cells} cells and {mesh.n_points} points")
    return mesh


def export_polydata(poly: pv.PolyData) -> str:
    writer = vtkXMLPolyDataWriter()
    writer.SetInputData(poly)
    writer.SetDataModeToAscii()
    writer.WriteToOutputStringOn()
    writer.Write()
    return writer.GetOutputString()


def export_grid(grid: pv.UnstructuredGrid) -> str:
    writer = vtkXMLUnstructuredGridWriter()
    writer.SetInputData(grid)
    writer.SetDataModeToAscii()
    writer.WriteToOutputStringOn()
    writer.Write()
    return writer.GetOutputString()
