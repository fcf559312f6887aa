import unittest

import numpy as np

from rom_fixtures import PPE, SUP, archive_bytes, mesh_bytes
from config import default_config
from demo_case import demo_matrices
from field_models import ModelState, RomFieldModel
from rom_archive import ModelArchive
from rom_assembly import assemble_engine, prepare_matrices
from rom_engine import KERNELS, RomEngine
from rom_errors import InputError, InvalidFieldData, MissingMatrix, ModelNotReady
from rom_topology import MODES_FILES


def _engine(stabilization=SUP, cfg=None, **kwargs) -> RomEngine:
    cfg = cfg or default_config()
    topo, mats = prepare_matrices(ModelArchive.from_bytes(archive_bytes(stabilization, **kwargs)), cfg)
    return assemble_engine(topo, mats, cfg)


class TestOnlineSolve(unittest.TestCase):
    def _check_residual(self, stabilization) -> None:
        engine = _engine(stabilization)
        engine.set_viscosity(0.05)
        sol = engine.solve_online(1.0, 0.5)
        self.assertTrue(sol.converged, sol.message)
        x = np.concatenate([sol.a, sol.b])
        res = engine.residual(x, 0.05, sol.g, np.array([1.0, 0.5]))
        np.testing.assert_allclose(res, 0.0, atol=1e-8)
        np.testing.assert_allclose(sol.a[:2], [1.0, 0.5], atol=1e-10)

    def test_supremizer_solution_satisfies_reduced_equations(self) -> None:
        self._check_residual(SUP)

    def test_ppe_solution_satisfies_reduced_equations(self) -> None:
        self._check_residual(PPE)

    def test_jacobian_matches_finite_differences(self) -> None:
        engine = _engine(PPE)
        engine.set_viscosity(0.05)
        g = engine.rbf_coefficients(0.05, 1.0, 0.5)
        bc = np.array([1.0, 0.5])
        x = np.random.default_rng(3).standard_normal(5)
        J = engine.jacobian(x, 0.05, g, bc)
        h = 1e-6
        fd = np.column_stack(
            [
                (engine.residual(x + h * e, 0.05, g, bc) - engine.residual(x - h * e, 0.05, g, bc)) / (2 * h)
                for e in np.eye(5)
            ]
        )
        np.testing.assert_allclose(J, fd, atol=1e-6)

    def test_rbf_coefficients_use_gaussian_of_parameter_distance(self) -> None:
        mats = demo_matrices(SUP)
        engine = _engine(SUP)
        mu = mats["par.txt"]
        W = np.column_stack([mats["wRBF_0_mat.txt"], mats["wRBF_1_mat.txt"]]).T
        dist = np.linalg.norm(mu - np.array([2.0, 0.3]), axis=1)
        np.testing.assert_allclose(engine.rbf_coefficients(0.01, 2.0, 0.3), W @ np.exp(-(dist**2)))

    def test_kernel_and_epsilon_come_from_config(self) -> None:
        cfg = default_config()
        cfg["rbf"]["kernel"] = "multiquadric"
        cfg["rbf"]["epsilon"] = 2.0
        engine = _engine(SUP, cfg=cfg)
        self.assertEqual((engine.kernel, engine.epsilon), ("multiquadric", 2.0))

    def test_unknown_kernel(self) -> None:
        self.assertNotIn("bogus", KERNELS)
        with self.assertRaises(ValueError):
            RomEngine(kernel="bogus")

    def test_viscosity_must_be_positive(self) -> None:
        engine = _engine(SUP)
        for nu in (0.0, -1.0, float("nan"), float("inf")):
            with self.assertRaises(InputError):
                engine.set_viscosity(nu)

    def test_solve_needs_viscosity(self) -> None:
        engine = _engine(SUP)
        with self.assertRaises(ModelNotReady):
            engine.solve_online(1.0, 0.0)

    def test_reconstruct_before_solve(self) -> None:
        with self.assertRaises(ModelNotReady):
            _engine(SUP).reconstruct(100)


class TestReconstruction(unittest.TestCase):
    def _model(self, **kwargs) -> RomFieldModel:
        model = RomFieldModel()
        model.load_mesh(mesh_bytes())
        model.load_model(archive_bytes(SUP, **kwargs))
        return model

    def test_velocity_uses_block_layout(self) -> None:
        model = self._model()
        snapshot = model.update(0.05, [1.0, 0.0])
        modes = demo_matrices(SUP)[MODES_FILES["modes_U"]]
        expected = (modes @ model.last_solution.a).reshape(3, 100).T
        np.testing.assert_allclose(snapshot.values, expected)
        self.assertEqual(snapshot.n_components, 3)
        self.assertEqual(set(snapshot.cell_fields), {"U", "p", "nut"})
        self.assertEqual(snapshot.grid.point_data["U"].shape, (snapshot.grid.n_points, 3))

    def test_identical_inputs_give_identical_fields(self) -> None:
        first = self._model().update(0.02, [0.7, 0.1])
        second = self._model().update(0.02, [0.7, 0.1])
        for name in ("U", "p", "nut"):
            self.assertTrue(np.array_equal(first.cell_fields[name], second.cell_fields[name]))
        self.assertTrue(np.array_equal(first.grid.point_data["U"], second.grid.point_data["U"]))

    def test_missing_velocity_modes(self) -> None:
        model = self._model(with_modes=False)
        with self.assertRaises(MissingMatrix):
            model.update(0.05, [1.0, 0.0])
        self.assertIs(model.state, ModelState.MODEL_ASSEMBLED)

    def test_basis_size_must_match_mesh(self) -> None:
        model = self._model(n_cells=64)
        with self.assertRaises(InvalidFieldData):
            model.update(0.05, [1.0, 0.0])

    def test_failed_query_keeps_previous_field(self) -> None:
        model = self._model()
        snapshot = model.update(0.05, [1.0, 0.0])
        with self.assertRaises(InputError):
            model.update(-1.0, [1.0, 0.0])
        with self.assertRaises(InputError):
            model.update(0.05, [1.0, 0.0, 0.0])
        self.assertIs(model.field, snapshot)
        self.assertIs(model.state, ModelState.READY)

    def test_update_before_model(self) -> None:
        model = RomFieldModel()
        model.load_mesh(mesh_bytes())
        with self.assertRaises(ModelNotReady):
            model.update(0.05, [1.0, 0.0])


if __name__ == "__main__":
    unittest.main()
