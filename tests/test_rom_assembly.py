import io
import unittest
import zipfile

import numpy as np

from rom_fixtures import PPE, SUP, archive_bytes, mesh_bytes
from config import default_config
from field_models import ModelState, RomFieldModel
from rom_archive import Matrix, ModelArchive
from rom_assembly import RomMatrices, build_engine, prepare_matrices
from rom_engine import EngineStage, RomEngine
from rom_errors import AssemblyError, MissingMatrix, ModelNotReady, ParseError
from rom_topology import ModelTopology, Stabilization


def _corrupt(data: bytes, name: str, payload: bytes) -> bytes:
    src = zipfile.ZipFile(io.BytesIO(data))
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as dst:
        for info in src.infolist():
            dst.writestr(info.filename, payload if info.filename == name else src.read(info))
    return buf.getvalue()


def _topology() -> ModelTopology:
    return ModelTopology(Stabilization.SUPREMIZER, n_phi_u=3, n_phi_p=1, n_phi_nut=2, n_runs=4)


class TestAppendCounts(unittest.TestCase):
    def _engine(self, data: bytes) -> RomEngine:
        _, engine = build_engine(ModelArchive.from_bytes(data), default_config())
        return engine

    def test_supremizer_counts(self) -> None:
        engine = self._engine(archive_bytes(SUP))
        self.assertIs(engine.stage, EngineStage.RBF_READY)
        self.assertEqual(engine.append_counts, {"weights": 2, "C": 5, "Ct1": 5, "Ct2": 5, "G": 0})

    def test_ppe_counts(self) -> None:
        engine = self._engine(archive_bytes(PPE, n_phi_nut=3))
        self.assertEqual(engine.append_counts, {"weights": 3, "C": 3, "Ct1": 3, "Ct2": 3, "G": 2})

    def test_missing_c3_fails_instead_of_registering_fewer_modes(self) -> None:
        with self.assertRaises(MissingMatrix) as ctx:
            self._engine(archive_bytes(SUP, n_phi_u=5, drop=["C3_mat.txt"]))
        self.assertEqual(ctx.exception.name, "C3_mat.txt")

    def test_missing_weight_file(self) -> None:
        with self.assertRaises(MissingMatrix) as ctx:
            self._engine(archive_bytes(SUP, drop=["wRBF_1_mat.txt"]))
        self.assertEqual(ctx.exception.name, "wRBF_1_mat.txt")


def _sup_matrices() -> tuple[ModelTopology, RomMatrices]:
    return prepare_matrices(ModelArchive.from_bytes(archive_bytes(SUP)), default_config())


def _engine_with_matrices() -> tuple[RomEngine, RomMatrices]:
    # Supremizer engine with base and scheme matrices set: nPhiU=5, nNut=2.
    topo, mats = _sup_matrices()
    engine = RomEngine()
    engine.initialize(topo)
    for name, mat in {**mats.base, **mats.scheme}.items():
        engine.set_matrix(name, mat)
    return engine, mats


class TestEngineProtocol(unittest.TestCase):
    def test_set_before_initialize_breaks_engine(self) -> None:
        engine = RomEngine()
        with self.assertRaises(AssemblyError):
            engine.set_matrix("K", Matrix.from_array(np.ones((3, 1))))
        self.assertIs(engine.stage, EngineStage.BROKEN)
        with self.assertRaises(AssemblyError):
            engine.initialize(_topology())

    def test_initialize_only_once(self) -> None:
        engine = RomEngine()
        engine.initialize(_topology())
        with self.assertRaises(AssemblyError):
            engine.initialize(_topology())

    def test_append_position_must_match_sequence(self) -> None:
        engine, mats = _engine_with_matrices()
        engine.append_weights(mats.weights[0], 0)
        with self.assertRaises(AssemblyError):
            engine.append_weights(mats.weights[1], 2)
        self.assertIs(engine.stage, EngineStage.BROKEN)

    def test_append_cannot_exceed_topology_count(self) -> None:
        engine, mats = _engine_with_matrices()
        engine.append_weights(mats.weights[0], 0)
        engine.append_weights(mats.weights[1], 1)
        with self.assertRaises(AssemblyError):
            engine.append_weights(mats.weights[1], 2)

    def test_g_append_rejected_for_supremizer(self) -> None:
        engine, _ = _engine_with_matrices()
        with self.assertRaises(AssemblyError):
            engine.append_g(Matrix.from_array(np.eye(5)), 0)

    def test_matrix_of_other_scheme_rejected(self) -> None:
        engine = RomEngine()
        engine.initialize(_topology())
        with self.assertRaises(AssemblyError):
            engine.set_matrix("D", Matrix.from_array(np.eye(1)))

    def test_shape_mismatch_rejected(self) -> None:
        engine = RomEngine()
        engine.initialize(_topology())
        with self.assertRaises(AssemblyError):
            engine.set_matrix("B", Matrix.from_array(np.eye(2)))

    def test_matrix_cannot_be_set_twice(self) -> None:
        topo, mats = _sup_matrices()
        engine = RomEngine()
        engine.initialize(topo)
        engine.set_matrix("K", mats.base["K"])
        with self.assertRaises(AssemblyError):
            engine.set_matrix("K", mats.base["K"])
        self.assertIs(engine.stage, EngineStage.BROKEN)

    def test_appends_need_base_and_scheme_matrices(self) -> None:
        topo, mats = _sup_matrices()
        engine = RomEngine()
        engine.initialize(topo)
        for name, mat in mats.base.items():
            engine.set_matrix(name, mat)
        with self.assertRaises(AssemblyError):
            engine.append_weights(mats.weights[0], 0)

    def test_scheme_matrix_must_follow_base(self) -> None:
        topo, mats = _sup_matrices()
        engine = RomEngine()
        engine.initialize(topo)
        engine.set_matrix("K", mats.base["K"])
        with self.assertRaises(AssemblyError):
            engine.set_matrix("P", mats.scheme["P"])

    def test_operators_before_weights_rejected(self) -> None:
        engine, mats = _engine_with_matrices()
        with self.assertRaises(AssemblyError):
            engine.append_c(mats.C[0], 0)
        self.assertEqual(engine.append_counts["C"], 0)

    def test_weights_after_operators_rejected(self) -> None:
        engine, mats = _engine_with_matrices()
        engine.append_weights(mats.weights[0], 0)
        engine.append_weights(mats.weights[1], 1)
        engine.append_c(mats.C[0], 0)
        with self.assertRaises(AssemblyError):
            engine.append_weights(mats.weights[0], 2)

    def test_operators_interleave_per_mode(self) -> None:
        engine, mats = _engine_with_matrices()
        engine.append_weights(mats.weights[0], 0)
        engine.append_weights(mats.weights[1], 1)
        engine.append_c(mats.C[0], 0)
        with self.assertRaises(AssemblyError):
            engine.append_ct2(mats.Ct2[0], 0)

    def test_next_mode_waits_for_previous(self) -> None:
        engine, mats = _engine_with_matrices()
        engine.append_weights(mats.weights[0], 0)
        engine.append_weights(mats.weights[1], 1)
        engine.append_c(mats.C[0], 0)
        engine.append_ct1(mats.Ct1[0], 0)
        with self.assertRaises(AssemblyError):
            engine.append_c(mats.C[1], 1)

    def test_modes_after_appends_rejected(self) -> None:
        engine, mats = _engine_with_matrices()
        engine.append_weights(mats.weights[0], 0)
        with self.assertRaises(AssemblyError):
            engine.set_matrix("modes_U", mats.modes["modes_U"])

    def test_scrambled_assembly_never_reaches_ready(self) -> None:
        topo, mats = _sup_matrices()
        engine = RomEngine()
        engine.initialize(topo)
        with self.assertRaises(AssemblyError):
            for i in range(topo.n_phi_u):
                engine.append_c(mats.C[i], i)
            for i in range(topo.n_phi_nut):
                engine.append_weights(mats.weights[i], i)
            engine.set_rbf()
        self.assertIs(engine.stage, EngineStage.BROKEN)

    def test_set_rbf_requires_all_weight_appends(self) -> None:
        engine, mats = _engine_with_matrices()
        engine.append_weights(mats.weights[0], 0)
        with self.assertRaises(AssemblyError):
            engine.set_rbf()

    def test_nothing_after_set_rbf(self) -> None:
        _, engine = build_engine(ModelArchive.from_bytes(archive_bytes(SUP)), default_config())
        with self.assertRaises(AssemblyError):
            engine.set_matrix("modes_p", Matrix.from_array(np.ones((100, 2))))

    def test_queries_before_assembly(self) -> None:
        engine = RomEngine()
        with self.assertRaises(ModelNotReady):
            engine.set_viscosity(1e-3)


class TestModelAssemblyLifecycle(unittest.TestCase):
    def setUp(self) -> None:
        self.model = RomFieldModel()
        self.model.load_mesh(mesh_bytes())

    def test_load_model_requires_mesh(self) -> None:
        with self.assertRaises(ModelNotReady):
            RomFieldModel().load_model(archive_bytes(SUP))

    def test_assembly_failure_returns_to_mesh_loaded(self) -> None:
        self.model.load_model(archive_bytes(SUP))
        self.model.update(0.05, [1.0, 0.0])
        bad = archive_bytes(SUP, replace={"C2_mat.txt": np.eye(4)})
        with self.assertRaises(AssemblyError):
            self.model.load_model(bad)
        self.assertIs(self.model.state, ModelState.MESH_LOADED)
        self.assertIsNone(self.model.field)
        self.assertIsNone(self.model.topology)
        with self.assertRaises(ModelNotReady):
            self.model.update(0.05, [1.0, 0.0])

    def test_parse_failure_keeps_current_model(self) -> None:
        self.model.load_model(archive_bytes(SUP))
        with self.assertRaises(ParseError):
            self.model.load_model(_corrupt(archive_bytes(SUP), "ct1_2_mat.txt", b"0.1 abc\n"))
        self.assertIs(self.model.state, ModelState.MODEL_ASSEMBLED)
        self.model.update(0.05, [1.0, 0.0])
        self.assertIs(self.model.state, ModelState.READY)

    def test_state_sequence(self) -> None:
        model = RomFieldModel()
        self.assertIs(model.state, ModelState.UNINITIALIZED)
        model.load_mesh(mesh_bytes())
        self.assertIs(model.state, ModelState.MESH_LOADED)
        model.load_model(archive_bytes(PPE))
        self.assertIs(model.state, ModelState.MODEL_ASSEMBLED)
        model.update(0.05, [1.0, 0.5])
        self.assertIs(model.state, ModelState.READY)
        model.close()
        self.assertIs(model.state, ModelState.MESH_LOADED)


if __name__ == "__main__":
    unittest.main()
