from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Callable

import numpy as np
from scipy.optimize import fsolve
from scipy.special import xlogy

from rom_archive import Matrix
from rom_errors import AssemblyError, InputError, InvalidFieldData, MissingMatrix, ModelNotReady
from rom_topology import MODES_FILES, ModelTopology

logger = logging.getLogger(__name__)

KERNELS: dict[str, Callable[[np.ndarray], np.ndarray]] = {
    "gaussian": lambda r: np.exp(-(r**2)),
    "multiquadric": lambda r: np.sqrt(1.0 + r**2),
    "inverse_multiquadric": lambda r: 1.0 / np.sqrt(1.0 + r**2),
    "linear": lambda r: r,
    "cubic": lambda r: r**3,
    "thin_plate": lambda r: xlogy(r**2, r),
}

BASE_MATRICES = ("K", "B", "bt", "coeffL2", "mu")
PPE_MATRICES = ("D", "BC3")
SUPREMIZER_MATRICES = ("P",)
MODE_MATRICES = tuple(MODES_FILES)
APPEND_KINDS = ("weights", "C", "Ct1", "Ct2", "G")


class AssemblyPhase(IntEnum):
    BASE = 0
    SCHEME = 1
    MODES = 2
    WEIGHTS = 3
    OPERATORS = 4  # C_i, Ct1_i, Ct2_i interleaved per mode
    G = 5
    RBF = 6


_APPEND_PHASES = {
    "weights": AssemblyPhase.WEIGHTS,
    "C": AssemblyPhase.OPERATORS,
    "Ct1": AssemblyPhase.OPERATORS,
    "Ct2": AssemblyPhase.OPERATORS,
    "G": AssemblyPhase.G,
}

# Within one mode the operators go C_i, then Ct1_i, then Ct2_i.
_OPERATOR_PREDECESSOR = {"Ct1": "C", "Ct2": "Ct1"}


class EngineStage(Enum):
    CREATED = "created"
    INITIALIZED = "initialized"
    RBF_READY = "rbf_ready"
    BROKEN = "broken"
    CLOSED = "closed"


@dataclass(frozen=True)
class OnlineSolution:
    a: np.ndarray  # (nPhiU,) velocity coefficients, lifting first
    b: np.ndarray  # (nPhiP,) pressure coefficients
    g: np.ndarray  # (nPhiNut,) turbulent viscosity coefficients from the RBF
    converged: bool
    message: str


def _protocol(method):
    # Any failure inside an assembly step leaves the engine unusable.
    @functools.wraps(method)
    def wrapper(self: "RomEngine", *args, **kwargs):
        if self.stage is EngineStage.BROKEN:
            raise AssemblyError("Engine is unusable after a failed assembly step; discard it and create a new one")
        if self.stage is EngineStage.CLOSED:
            raise AssemblyError("Engine is closed")
        try:
            return method(self, *args, **kwargs)
        except Exception:
            self.stage = EngineStage.BROKEN
            raise

    return wrapper


class RomEngine:
    """
    Online engine of a steady turbulent reduced-order Navier-Stokes model.

    Assembly is a one-shot protocol: initialize(topology), base and scheme
    matrices, optional mode bases, ordered appends of the per-mode
    operators, then set_rbf(). Steps follow AssemblyPhase order and never
    step back; a phase may only be left once it is complete, and within
    one mode the operators go C_i, Ct1_i, Ct2_i. Each matrix is set once.
    Queries go through set_viscosity(), solve_online() and reconstruct().
    """

    def __init__(
        self,
        *,
        kernel: str = "gaussian",
        epsilon: float = 1.0,
        xtol: float = 1e-10,
        maxfev: int = 0,
    ) -> None:
        if kernel not in KERNELS:
            raise ValueError(f"Unknown RBF kernel {kernel!r}; expected one of {sorted(KERNELS)}")
        if not epsilon > 0:
            raise ValueError("RBF epsilon must be > 0")
        self.kernel = kernel
        self.epsilon = float(epsilon)
        self.xtol = float(xtol)
        self.maxfev = int(maxfev)

        self.stage = EngineStage.CREATED
        self.topology: ModelTopology | None = None
        self._mats: dict[str, np.ndarray] = {}
        self._appends: dict[str, list[np.ndarray]] = {k: [] for k in APPEND_KINDS}
        self._phase = AssemblyPhase.BASE
        self._nu: float | None = None
        self._solution: OnlineSolution | None = None

    # -- assembly -------------------------------------------------------

    @_protocol
    def initialize(self, topology: ModelTopology) -> None:
        if self.stage is not EngineStage.CREATED:
            raise AssemblyError("initialize() may only be called once, on a fresh engine")
        if topology.n_phi_u < topology.n_bc:
            raise AssemblyError(f"nPhiU={topology.n_phi_u} is smaller than nBC={topology.n_bc}")
        if topology.n_phi_p < 1 or topology.n_phi_nut < 1 or topology.n_runs < 1:
            raise AssemblyError(f"Degenerate topology: {topology}")
        self.topology = topology
        self.stage = EngineStage.INITIALIZED
        logger.debug(f"Engine initialized for {topology}")

    def _require_initialized(self) -> ModelTopology:
        if self.stage is not EngineStage.INITIALIZED or self.topology is None:
            raise AssemblyError(f"Assembly step not allowed in stage {self.stage.value}; initialize() must come first")
        return self.topology

    def _scheme_matrices(self, topo: ModelTopology) -> tuple[str, ...]:
        return PPE_MATRICES if topo.is_ppe else SUPREMIZER_MATRICES

    def _append_limits(self, topo: ModelTopology) -> dict[str, int]:
        return {
            "weights": topo.n_phi_nut,
            "C": topo.n_phi_u,
            "Ct1": topo.n_phi_u,
            "Ct2": topo.n_phi_u,
            "G": topo.n_phi_p if topo.is_ppe else 0,
        }

    def _phase_missing(self, phase: AssemblyPhase, topo: ModelTopology) -> list[str]:
        if phase is AssemblyPhase.BASE:
            return [n for n in BASE_MATRICES if n not in self._mats]
        if phase is AssemblyPhase.SCHEME:
            return [n for n in self._scheme_matrices(topo) if n not in self._mats]
        limits = self._append_limits(topo)
        kinds = [k for k, p in _APPEND_PHASES.items() if p is phase]
        return [
            f"{kind}[{len(self._appends[kind])}:{limits[kind]}]"
            for kind in kinds
            if len(self._appends[kind]) != limits[kind]
        ]

    def _enter(self, phase: AssemblyPhase, step: str) -> ModelTopology:
        # Steps may only move forward, and only once every earlier phase is complete.
        topo = self._require_initialized()
        if phase < self._phase:
            raise AssemblyError(f"{step} belongs to the {phase.name} phase, but {self._phase.name} has already started")
        for earlier in range(self._phase, phase):
            missing = self._phase_missing(AssemblyPhase(earlier), topo)
            if missing:
                raise AssemblyError(f"{step} before the {AssemblyPhase(earlier).name} phase was complete: {missing}")
        self._phase = phase
        return topo

    def _check_shape(self, name: str, shape: tuple[int, int]) -> None:
        topo = self._require_initialized()
        nu_, np_, nn_, nr_ = topo.n_phi_u, topo.n_phi_p, topo.n_phi_nut, topo.n_runs
        expected = {
            "K": (nu_, np_),
            "B": (nu_, nu_),
            "bt": (nu_, nu_),
            "coeffL2": (nn_, nr_),
            "D": (np_, np_),
            "BC3": (np_, nu_),
            "P": (np_, nu_),
            "C": (nu_, nu_),
            "G": (nu_, nu_),
            "Ct1": (nn_, nu_),
            "Ct2": (nn_, nu_),
            "weights": (nr_, 1),
        }
        if name in expected:
            if shape != expected[name]:
                raise AssemblyError(f"{name}: expected shape {expected[name]}, got {shape}")
            return
        if name == "mu":
            if shape[0] != nr_ or shape[1] not in (1, 2, 3):
                raise AssemblyError(f"mu: expected ({nr_}, 1..3) parameter samples, got {shape}")
            return
        min_cols = {"modes_U": nu_, "modes_p": np_, "modes_nut": nn_}[name]
        if shape[1] < min_cols:
            raise AssemblyError(f"{name}: basis has {shape[1]} modes, need at least {min_cols}")
        if name == "modes_U" and shape[0] % 3 != 0:
            raise AssemblyError(f"modes_U: row count {shape[0]} is not a multiple of 3")

    @_protocol
    def set_matrix(self, name: str, matrix: Matrix) -> None:
        topo = self._require_initialized()
        if name in BASE_MATRICES:
            phase = AssemblyPhase.BASE
        elif name in self._scheme_matrices(topo):
            phase = AssemblyPhase.SCHEME
        elif name in MODE_MATRICES:
            phase = AssemblyPhase.MODES
        else:
            raise AssemblyError(f"Matrix {name!r} is not part of a {topo.stabilization.value} model")
        if name in self._mats:
            raise AssemblyError(f"Matrix {name!r} has already been set")
        self._enter(phase, f"set_matrix({name!r})")
        self._check_shape(name, matrix.shape)
        self._mats[name] = matrix.array.copy()
        logger.debug(f"Set {name} {matrix.rows}x{matrix.cols}")

    def _append(self, kind: str, matrix: Matrix, position: int) -> None:
        topo = self._require_initialized()
        limit = self._append_limits(topo)[kind]
        if limit == 0:
            raise AssemblyError(f"{kind} appends are not part of a {topo.stabilization.value} model")
        self._enter(_APPEND_PHASES[kind], f"{kind} append")
        seq = self._appends[kind]
        if position != len(seq):
            raise AssemblyError(f"{kind} append at position {position}, expected position {len(seq)}")
        if len(seq) >= limit:
            raise AssemblyError(f"{kind} append would exceed the expected count of {limit}")
        if kind == "C" and len(self._appends["Ct2"]) != position:
            raise AssemblyError(f"C append at position {position} before mode {position - 1} was complete")
        if kind in _OPERATOR_PREDECESSOR:
            before = _OPERATOR_PREDECESSOR[kind]
            if len(self._appends[before]) != position + 1:
                raise AssemblyError(f"{kind}[{position}] must follow {before}[{position}]")
        self._check_shape(kind, matrix.shape)
        seq.append(matrix.array.copy())
        logger.debug(f"Appended {kind}[{position}]")

    @_protocol
    def append_weights(self, matrix: Matrix, position: int) -> None:
        self._append("weights", matrix, position)

    @_protocol
    def append_c(self, matrix: Matrix, position: int) -> None:
        self._append("C", matrix, position)

    @_protocol
    def append_ct1(self, matrix: Matrix, position: int) -> None:
        self._append("Ct1", matrix, position)

    @_protocol
    def append_ct2(self, matrix: Matrix, position: int) -> None:
        self._append("Ct2", matrix, position)

    @_protocol
    def append_g(self, matrix: Matrix, position: int) -> None:
        self._append("G", matrix, position)

    @property
    def append_counts(self) -> dict[str, int]:
        return {k: len(v) for k, v in self._appends.items()}

    @_protocol
    def set_rbf(self) -> None:
        topo = self._enter(AssemblyPhase.RBF, "set_rbf()")

        self._W = np.column_stack(self._appends["weights"]).T  # (nNut, nRuns)
        self._C = np.stack(self._appends["C"])  # (nU, nU, nU)
        self._Ct = np.stack(self._appends["Ct1"]) + np.stack(self._appends["Ct2"])  # (nU, nNut, nU)
        self._G = np.stack(self._appends["G"]) if topo.is_ppe else None  # (nP, nU, nU)
        self._Bt = self._mats["B"] + self._mats["bt"]
        self.stage = EngineStage.RBF_READY
        logger.debug("RBF structures finalized")

    # -- online ---------------------------------------------------------

    def _require_ready(self) -> ModelTopology:
        if self.stage is not EngineStage.RBF_READY or self.topology is None:
            raise ModelNotReady(f"Engine is not assembled (stage {self.stage.value})")
        return self.topology

    def set_viscosity(self, nu: float) -> None:
        self._require_ready()
        nu = float(nu)
        if not np.isfinite(nu) or nu <= 0:
            raise InputError(f"Viscosity must be a positive finite number, got {nu}")
        self._nu = nu

    def rbf_coefficients(self, nu: float, ux: float, uy: float) -> np.ndarray:
        self._require_ready()
        mu = self._mats["mu"]
        query = {1: [nu], 2: [ux, uy], 3: [nu, ux, uy]}[mu.shape[1]]
        dist = np.linalg.norm(mu - np.asarray(query, dtype=float)[None, :], axis=1)
        phi = KERNELS[self.kernel](self.epsilon * dist)
        return self._W @ phi

    def residual(self, x: np.ndarray, nu: float, g: np.ndarray, bc: np.ndarray) -> np.ndarray:
        topo = self._require_ready()
        n_u, n_bc = topo.n_phi_u, topo.n_bc
        a, b = x[:n_u], x[n_u:]
        conv = np.einsum("j,ijk,k->i", a, self._C, a)
        turb = np.einsum("j,ijk,k->i", g, self._Ct, a)
        r_u = nu * (self._Bt @ a) - conv + turb - self._mats["K"] @ b
        if topo.is_ppe:
            r_p = self._mats["D"] @ b - np.einsum("j,ijk,k->i", a, self._G, a) - nu * (self._mats["BC3"] @ a)
        else:
            r_p = self._mats["P"] @ a
        r_u[:n_bc] = a[:n_bc] - bc
        return np.concatenate([r_u, r_p])

    def jacobian(self, x: np.ndarray, nu: float, g: np.ndarray, bc: np.ndarray) -> np.ndarray:
        topo = self._require_ready()
        n_u, n_p, n_bc = topo.n_phi_u, topo.n_phi_p, topo.n_bc
        a = x[:n_u]
        d_conv = np.einsum("imk,k->im", self._C, a) + np.einsum("ijm,j->im", self._C, a)
        d_turb = np.einsum("j,ijk->ik", g, self._Ct)
        J = np.zeros((n_u + n_p, n_u + n_p))
        J[:n_u, :n_u] = nu * self._Bt - d_conv + d_turb
        J[:n_u, n_u:] = -self._mats["K"]
        if topo.is_ppe:
            d_g = np.einsum("imk,k->im", self._G, a) + np.einsum("ijm,j->im", self._G, a)
            J[n_u:, :n_u] = -d_g - nu * self._mats["BC3"]
            J[n_u:, n_u:] = self._mats["D"]
        else:
            J[n_u:, :n_u] = self._mats["P"]
        J[:n_bc, :] = 0.0
        J[:n_bc, :n_bc] = np.eye(n_bc)
        return J

    def solve_online(self, ux: float, uy: float) -> OnlineSolution:
        topo = self._require_ready()
        if self._nu is None:
            raise ModelNotReady("Viscosity has not been set")
        nu = self._nu
        bc = np.array([ux, uy], dtype=float)
        if not np.all(np.isfinite(bc)):
            raise InputError(f"Boundary velocity must be finite, got {bc.tolist()}")
        g = self.rbf_coefficients(nu, float(ux), float(uy))

        x0 = np.zeros(topo.n_phi_u + topo.n_phi_p)
        x0[: topo.n_bc] = bc
        x, _info, ier, msg = fsolve(
            self.residual,
            x0,
            args=(nu, g, bc),
            fprime=self.jacobian,
            full_output=True,
            xtol=self.xtol,
            maxfev=self.maxfev,
        )
        converged = ier == 1
        if not converged:
            logger.warning(f"Reduced solve did not converge for nu={nu:g} U=({ux:g}, {uy:g}): {msg}")
        sol = OnlineSolution(
            a=np.asarray(x[: topo.n_phi_u], dtype=float),
            b=np.asarray(x[topo.n_phi_u :], dtype=float),
            g=np.asarray(g, dtype=float),
            converged=bool(converged),
            message=str(msg),
        )
        self._solution = sol
        return sol

    def reconstruct(self, n_cells: int) -> dict[str, np.ndarray]:
        topo = self._require_ready()
        sol = self._solution
        if sol is None:
            raise ModelNotReady("No online solution; call solve_online() first")
        if "modes_U" not in self._mats:
            raise MissingMatrix(MODES_FILES["modes_U"])

        modes_u = self._mats["modes_U"]
        if modes_u.shape[0] != 3 * n_cells:
            raise InvalidFieldData(f"Velocity basis has {modes_u.shape[0]} rows, mesh needs {3 * n_cells}")
        # Block layout: all x components, then all y, then all z.
        U = (modes_u[:, : topo.n_phi_u] @ sol.a).reshape(3, n_cells).T
        fields = {"U": np.ascontiguousarray(U)}

        for name, key, coeffs, n in (
            ("p", "modes_p", sol.b, topo.n_phi_p),
            ("nut", "modes_nut", sol.g, topo.n_phi_nut),
        ):
            if key not in self._mats:
                continue
            modes = self._mats[key]
            if modes.shape[0] != n_cells:
                raise InvalidFieldData(f"{key} basis has {modes.shape[0]} rows, mesh has {n_cells} cells")
            fields[name] = modes[:, :n] @ coeffs
        return fields

    def close(self) -> None:
        self._mats.clear()
        for seq in self._appends.values():
            seq.clear()
        self._solution = None
        self._nu = None
        self.stage = EngineStage.CLOSED
