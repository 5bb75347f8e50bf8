# Copyright 2025 Google LLC
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#    http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# ==============================================================================
"""Computes the Newton direction of the barrier method.

After eliminating the bound slacks and multipliers, each iteration solves

    [ -H2   A'   ] [dx]   [w ]
    [  A   D2^2  ] [dy] = [r1]

where H2 = H + D1^2 + X1^-1 Z1 + X2^-1 Z2. When H2 is diagonal this reduces
to the normal equations (A H2^-1 A' + D2^2) dy = A H2^-1 w + r1 or to the
equivalent least-squares problem

    min || [ D A' ] dy - [ D w     ] ||,   D = H2^(-1/2).
        || [  D2  ]      [ D2^-1 r1] ||

Otherwise the augmented matrix K is solved directly or with a Krylov method.
"""

import dataclasses
import enum
import logging
import math
import warnings
from typing import Any, Callable

import numpy as np
import scipy.linalg
import scipy.sparse as sp
import scipy.sparse.csgraph as csgraph
import scipy.sparse.linalg as spla

from . import bounds as bounds_lib
from . import direct
from . import errors
from . import krylov
from . import preconditioners as pre_lib
from . import problem

_norm = np.linalg.norm
_NAN = float("nan")


class Method(enum.Enum):
  """Ways of solving for the Newton direction."""

  AUTO = 0
  CHOLESKY = 1
  QR = 2
  LSMR = 3
  MINRES = 4
  PCG = 5
  SQD_LU = 21
  SQD_LDL = 22
  SQD_KRYLOV = 23
  SQD_BACKSLASH = 224
  SQD_BACKSLASH_PERTURBED = 225

  @property
  def diagonal(self) -> bool:
    """True for the methods that need a diagonal Hessian."""
    return self.value <= 5

  @property
  def iterative(self) -> bool:
    return self in (
        Method.LSMR,
        Method.MINRES,
        Method.PCG,
        Method.SQD_KRYLOV,
    )


_OPERATOR_METHODS = (Method.LSMR, Method.MINRES, Method.PCG)


def parse_enum(enum_cls: type[enum.Enum], value: Any) -> enum.Enum:
  """Converts a member, a raw value or a member name to `enum_cls`.

  Raises:
    ConfigurationError: If `value` does not name a member.
  """
  if isinstance(value, enum_cls):
    return value
  try:
    return enum_cls(value)
  except ValueError:
    pass
  if isinstance(value, str) and value.upper() in enum_cls.__members__:
    return enum_cls[value.upper()]
  choices = ", ".join(f"{m.name}={m.value}" for m in enum_cls)
  raise errors.ConfigurationError(
      f"Unsupported {enum_cls.__name__} {value!r}; choose one of {choices}."
  )


def resolve_method(method: Any, explicit_a: bool) -> Method:
  """Parses `method` and picks one that works with the form of A."""
  method = parse_enum(Method, method)
  if method == Method.AUTO:
    return Method.CHOLESKY if explicit_a else Method.LSMR
  if not explicit_a and method not in _OPERATOR_METHODS:
    logging.warning(
        "A is an operator, so method %s is not possible; using LSMR.",
        method.name,
    )
    return Method.LSMR
  return method


@dataclasses.dataclass
class NewtonStats:
  """Diagnostics of one Newton solve.

  Attributes:
    inner_iterations: Krylov (or LSMR) iterations, 0 for direct methods.
    residual: Residual norm of the linear system that was solved.
    rel_residual: residual / ||rhs||.
    constraint_violation: ||A dx - r1||, which equals ||D2^2 dy|| for an exact
      solve (augmented system only).
    lagrangian: 1/2 dx'K11 dx - dx'rhs1 - dy'(K21 dx - rhs2) (augmented only).
    r3ratio: residual / merit function (iterative methods only).
    krylov_status: Status of the iterative method, if one was used.
    preconditioner: Name of the preconditioner, if one was used.
    cg_success: Whether some PCG preconditioner converged (PCG only).
    converged: False if an iterative method stopped early.
    errors: Exact-error diagnostics, when requested.
    resvec: Residual norm history of the Krylov method, if it records one.
    error_history: ||x_k - x_exact|| per Krylov iteration (calculate_error).
  """

  inner_iterations: int = 0
  residual: float = _NAN
  rel_residual: float = _NAN
  constraint_violation: float = _NAN
  lagrangian: float = _NAN
  r3ratio: float = _NAN
  krylov_status: str | None = None
  preconditioner: str | None = None
  cg_success: bool | None = None
  converged: bool = True
  errors: dict[str, float] = dataclasses.field(default_factory=dict)
  resvec: np.ndarray | None = None
  error_history: np.ndarray | None = None

  def as_dict(self) -> dict[str, Any]:
    d = dataclasses.asdict(self)
    d.update(d.pop("errors"))
    return d


def _nan_errors() -> dict[str, float]:
  return {
      "error": _NAN,
      "error_norm": _NAN,
      "primal_error_norm": _NAN,
      "dual_error_norm": _NAN,
  }


class NewtonSolver:
  """Solves for the Newton direction, owning orderings and other caches."""

  def __init__(
      self,
      a: problem.ConstraintOperator,
      partition: bounds_lib.BoundPartition,
      d2: np.ndarray,
      *,
      method: Method,
      cholesky_solver: Callable[[], direct.LinearSolver],
      krylov_method: krylov.KrylovMethod,
      preconditioner: pre_lib.PreconditionerType,
      inner_max_iter_factor: int,
      conlim: float,
      max_iterative_refinement_steps: int,
      seed: int | None,
      calculate_error: bool,
  ):
    """Initializes the NewtonSolver.

    Args:
      a: The constraint operator.
      partition: The bound classification.
      d2: Dual regularization, a vector of length m (scaled).
      method: A resolved Method (not AUTO).
      cholesky_solver: Factory of the direct backend used by CHOLESKY.
      krylov_method: Krylov method used by SQD_KRYLOV.
      preconditioner: Preconditioner used by SQD_KRYLOV.
      inner_max_iter_factor: Iteration limit of iterative methods, as a
        multiple of min(m, n).
      conlim: Condition limit for LSMR and MINRES.
      max_iterative_refinement_steps: Solves per direct SQD solve.
      seed: Seed for SQD_BACKSLASH_PERTURBED.
      calculate_error: Compare every direction with an exact solve.
    """
    if method == Method.AUTO:
      raise errors.ConfigurationError("Method must be resolved before use.")
    self.a = a
    self.partition = partition
    self.m, self.n = a.m, a.n
    self.d2 = np.broadcast_to(np.asarray(d2, dtype=np.float64), (self.m,))
    self.method = method
    self.cholesky_solver = cholesky_solver
    self.krylov_method = parse_enum(krylov.KrylovMethod, krylov_method)
    self.preconditioner = parse_enum(
        pre_lib.PreconditionerType, preconditioner
    )
    self.itnlim = max(1, inner_max_iter_factor * min(self.m, self.n))
    self.conlim = conlim
    self.max_iterative_refinement_steps = max_iterative_refinement_steps
    self.seed = seed
    self.calculate_error = calculate_error

    self.a_sparse = a.sparse() if a.explicit else None
    self._is_fixed = np.zeros(self.n, dtype=bool)
    self._is_fixed[partition.fix] = True

    # Created on first use.
    self._normal_perm = None
    self._afree = None
    self._backend = None
    self._sqd_solver = None

  # ---------------------------------------------------------------------------
  # Diagonal Hessian.
  # ---------------------------------------------------------------------------

  def solve_diagonal(
      self,
      h2: np.ndarray,
      w: np.ndarray,
      r1: np.ndarray,
      atol: float,
      fmerit: float,
  ) -> tuple[np.ndarray, np.ndarray, NewtonStats]:
    """Solves for (dx, dy) when H2 is the diagonal matrix diag(h2).

    Args:
      h2: diag(H + D1^2 + X1^-1 Z1 + X2^-1 Z2).
      w: Right-hand side of the primal block.
      r1: Right-hand side of the dual block (the primal residual).
      atol: Tolerance of the iterative methods.
      fmerit: Current merit function, used for r3ratio.

    Returns:
      dx, dy and the solve statistics.

    Raises:
      IndefiniteSystemError: If H2 is not positive on the free variables or
        the normal-equations matrix is not positive definite.
      NonFiniteSolutionError: If the direction has NaN or Inf entries.
    """
    active = ~self._is_fixed
    if not np.all(np.isfinite(h2[active])) or np.any(h2[active] <= 0):
      raise errors.IndefiniteSystemError(
          "The diagonal curvature H2 is not positive definite. Use bigger"
          " d1, or a method that accepts a general Hessian."
      )
    hinv = np.zeros(self.n)
    hinv[active] = 1.0 / h2[active]
    d = np.sqrt(hinv)

    if self.m == 0:
      dy, stats = np.zeros(0), NewtonStats(residual=0.0, rel_residual=0.0)
    else:
      match self.method:
        case Method.CHOLESKY:
          dy, stats = self._cholesky(hinv, w, r1)
        case Method.QR:
          dy, stats = self._qr(d, w, r1)
        case Method.LSMR:
          dy, stats = self._lsmr(d, w, r1, atol)
        case Method.MINRES:
          dy, stats = self._minres(hinv, d, w, r1, atol)
        case Method.PCG:
          dy, stats = self._pcg(hinv, d, w, r1, atol)
        case _:
          raise errors.ConfigurationError(
              f"Method {self.method.name} needs a general Hessian."
          )
      if self.method.iterative:
        # LSMR reports ||M'r||, the others ||r||.
        measure = stats.residual if np.isnan(stats.r3ratio) else stats.r3ratio
        stats.r3ratio = measure / fmerit if fmerit > 0 else _NAN

    atdy = self.a.rmatvec(dy) if self.m else np.zeros(self.n)
    atdy[self._is_fixed] = 0.0
    dx = hinv * (atdy - w)
    if not (np.all(np.isfinite(dx)) and np.all(np.isfinite(dy))):
      raise errors.NonFiniteSolutionError(
          f"Method {self.method.name} returned a non-finite direction."
      )

    if self.calculate_error:
      stats.errors = self._normal_equations_error(hinv, d, w, r1, dy)
    return dx, dy, stats

  def _normal_matrix(self, hinv: np.ndarray) -> sp.csr_matrix:
    """A diag(hinv) A' + D2^2."""
    a = self.a_sparse
    return sp.csr_matrix(a @ sp.diags(hinv) @ a.T + sp.diags(self.d2**2))

  def _normal_rhs(self, hinv, w, r1):
    return self.a.matvec(hinv * w) + r1

  def _normal_ordering(self, mat: sp.spmatrix) -> np.ndarray:
    if self._normal_perm is None:
      pattern = sp.csr_matrix(mat, copy=True)
      pattern.data[:] = 1.0
      self._normal_perm = csgraph.reverse_cuthill_mckee(
          pattern, symmetric_mode=True
      )
      logging.debug("Computed normal-equations ordering (m=%d).", self.m)
    return self._normal_perm

  def _cholesky(self, hinv, w, r1):
    adda = self._normal_matrix(hinv)
    perm = self._normal_ordering(adda)
    if self._backend is None:
      self._backend = self.cholesky_solver()
    permuted = adda[perm, :][:, perm]
    self._backend.update(permuted.asformat(self._backend.format()))
    rhs = self._normal_rhs(hinv, w, r1)
    dy = np.empty(self.m)
    dy[perm] = self._backend.solve(rhs[perm])
    residual = float(_norm(rhs - adda @ dy))
    return dy, NewtonStats(
        residual=residual, rel_residual=_relative(residual, rhs)
    )

  def _qr(self, d, w, r1):
    """Dense QR of [D A'; D2], columns in the cached ordering."""
    dat = sp.vstack(
        [sp.diags(d) @ self.a_sparse.T, sp.diags(self.d2)], format="csc"
    )
    perm = self._normal_ordering(self._normal_matrix(d**2))
    rhs = np.concatenate([d * w, r1 / self.d2])
    q, r = scipy.linalg.qr(dat[:, perm].toarray(), mode="economic")
    dy = np.empty(self.m)
    dy[perm] = scipy.linalg.solve_triangular(r, q.T @ rhs)
    residual = float(_norm(dat.T @ (rhs - dat @ dy)))
    return dy, NewtonStats(
        residual=residual, rel_residual=_relative(residual, dat.T @ rhs)
    )

  def _row_norms_squared(self, d: np.ndarray) -> np.ndarray:
    """rowsum((A D)^2) + d2^2."""
    ad = self.a_sparse @ sp.diags(d)
    return np.asarray(ad.multiply(ad).sum(axis=1)).ravel() + self.d2**2

  def _lsmr(self, d, w, r1, atol):
    if self.a.explicit:
      precon = 1.0 / np.sqrt(self._row_norms_squared(d))
    else:
      precon = np.ones(self.m)
    n, d2 = self.n, self.d2

    def matvec(u):
      u = precon * u
      return np.concatenate([d * self.a.rmatvec(u), d2 * u])

    def rmatvec(v):
      return precon * (self.a.matvec(d * v[:n]) + d2 * v[n:])

    op = spla.LinearOperator(
        (n + self.m, self.m), matvec=matvec, rmatvec=rmatvec, dtype=np.float64
    )
    rhs = np.concatenate([d * w, r1 / d2])
    u, istop, itn, normr, normar, *_ = spla.lsmr(
        op,
        rhs,
        damp=0.0,
        atol=atol,
        btol=atol,
        conlim=self.conlim,
        maxiter=self.itnlim,
    )
    converged = istop not in (3, 6, 7)
    stats = NewtonStats(
        inner_iterations=int(itn),
        residual=float(normr),
        rel_residual=_relative(normr, rhs),
        r3ratio=float(normar),
        krylov_status=f"istop={istop}",
        converged=converged,
    )
    if not converged:
      _report_early_termination("LSMR", f"istop = {istop}", atol)
    return precon * u, stats

  def _normal_operator(self, hinv):
    def matvec(v):
      return self.a.matvec(hinv * self.a.rmatvec(v)) + self.d2**2 * v

    return spla.LinearOperator(
        (self.m, self.m), matvec=matvec, rmatvec=matvec, dtype=np.float64
    )

  def _minres(self, hinv, d, w, r1, atol):
    psolve = None
    if self.a.explicit:
      psolve = pre_lib.DiagonalPreconditioner(
          1.0 / self._row_norms_squared(d)
      ).apply
    rhs = self._normal_rhs(hinv, w, r1)
    result = krylov.minres(
        self._normal_operator(hinv),
        rhs,
        psolve=psolve,
        rtol=atol,
        maxiter=self.itnlim,
        conlim=self.conlim,
    )
    stats = self._krylov_stats(result, rhs)
    if not result.converged:
      _report_early_termination("MINRES", result.status.value, atol)
    return result.x, stats

  def _pcg(self, hinv, d, w, r1, atol):
    op = self._normal_operator(hinv)
    rhs = self._normal_rhs(hinv, w, r1)
    chain = pre_lib.normal_equations_chain(self.a_sparse, d, self.d2)

    result, used, iterations = None, None, 0
    for name, build in chain:
      try:
        precond = build()
      except errors.PreconditionerBuildFailure as e:
        logging.debug("PCG preconditioner %s not available: %s", name, e)
        continue
      result = krylov.pcg(
          op, rhs, psolve=precond.apply, rtol=atol, maxiter=self.itnlim
      )
      used = name
      iterations += result.iterations
      if result.converged:
        break
      logging.debug(
          "PCG with %s preconditioner stopped: %s", name, result.status.value
      )

    stats = self._krylov_stats(result, rhs)
    stats.inner_iterations = iterations
    stats.preconditioner = used
    stats.cg_success = result.converged
    if not result.converged:
      _report_early_termination("PCG", result.status.value, atol)
    return result.x, stats

  def _krylov_stats(self, result: krylov.KrylovResult, rhs) -> NewtonStats:
    return NewtonStats(
        inner_iterations=result.iterations,
        residual=result.residual_norm,
        rel_residual=_relative(result.residual_norm, rhs),
        krylov_status=result.status.value,
        converged=result.converged,
        resvec=result.resvec,
    )

  def _normal_equations_error(self, hinv, d, w, r1, dy) -> dict[str, float]:
    if not self.a.explicit or self.m == 0:
      logging.debug("Exact error needs an explicit A with m > 0.")
      return _nan_errors()
    mat = self._normal_matrix(hinv)
    rhs = self._normal_rhs(hinv, w, r1)
    return self.exact_error(mat, rhs, dy, ad=self.a_sparse @ sp.diags(d))

  # ---------------------------------------------------------------------------
  # General Hessian.
  # ---------------------------------------------------------------------------

  def solve_augmented(
      self,
      h: sp.spmatrix,
      w: np.ndarray,
      r1: np.ndarray,
      atol: float,
      fmerit: float,
  ) -> tuple[np.ndarray, np.ndarray, NewtonStats]:
    """Solves the augmented system K [dx; dy] = [w; r1] for a sparse H2.

    Args:
      h: H + D1^2 + X1^-1 Z1 + X2^-1 Z2 as an n x n sparse matrix.
      w: Right-hand side of the primal block.
      r1: Right-hand side of the dual block.
      atol: Tolerance of the Krylov method.
      fmerit: Current merit function, used for r3ratio.

    Returns:
      dx, dy and the solve statistics.

    Raises:
      NonFiniteSolutionError: If the direction has NaN or Inf entries.
      PreconditionerBuildFailure: If the Krylov preconditioner cannot be built.
    """
    n, m = self.n, self.m
    k = self._augmented_matrix(h)
    rhs = np.concatenate([w, r1])
    rhs[self.partition.fix] = 0.0

    exact = None
    if self.calculate_error:
      exact = _exact_solve(k, rhs)

    if self.method == Method.SQD_KRYLOV:
      result = krylov.solve_augmented(
          k,
          rhs,
          n,
          m,
          method=self.krylov_method,
          preconditioner=self.preconditioner,
          rtol=atol,
          maxiter=self.itnlim,
          exact=exact,
      )
      sol = result.x
      stats = NewtonStats(
          inner_iterations=result.iterations,
          krylov_status=result.status.value,
          preconditioner=self.preconditioner.name,
          converged=result.converged,
          resvec=result.resvec,
          error_history=result.errors,
      )
      if not result.converged:
        _report_early_termination(
            self.krylov_method.name, result.status.value, atol
        )
    else:
      solver = self._direct_sqd_solver(k)
      solver.update(k)
      sol, info = solver.solve(rhs)
      stats = NewtonStats()
      logging.debug("SQD direct solve: %s", info)

    if not np.all(np.isfinite(sol)):
      raise errors.NonFiniteSolutionError(
          f"Method {self.method.name} returned a non-finite direction."
      )

    dx, dy = sol[:n], sol[n:]
    k11 = k[:n, :n]
    k21 = k[n:, :n]
    rhs1, rhs2 = rhs[:n], rhs[n:]
    stats.residual = float(_norm(rhs - k @ sol))
    stats.rel_residual = _relative(stats.residual, rhs)
    violation = k21 @ dx - rhs2
    stats.constraint_violation = float(_norm(violation)) if m else 0.0
    stats.lagrangian = float(
        0.5 * dx @ (k11 @ dx) - dx @ rhs1 - dy @ violation
    )
    if self.method.iterative:
      stats.r3ratio = stats.residual / fmerit if fmerit > 0 else _NAN
    if self.calculate_error:
      stats.errors = self.exact_error(k, rhs, sol, exact=exact)
    return dx, dy, stats

  def _afree_matrix(self) -> sp.csr_matrix:
    """A with the columns of fixed variables zeroed, computed once."""
    if self._afree is None:
      keep = (~self._is_fixed).astype(np.float64)
      afree = sp.csr_matrix(self.a_sparse @ sp.diags(keep))
      afree.eliminate_zeros()
      self._afree = afree
    return self._afree

  def _augmented_matrix(self, h: sp.spmatrix) -> sp.csr_matrix:
    """K = [-H, Afree'; Afree, D2^2] with fixed rows/columns of H decoupled."""
    h = sp.coo_matrix(h)
    if self.partition.fix.size:
      fixed = self._is_fixed
      keep = (h.row == h.col) | ~(fixed[h.row] | fixed[h.col])
      h = sp.coo_matrix(
          (h.data[keep], (h.row[keep], h.col[keep])), shape=h.shape
      )
    if self.m == 0:
      return sp.csr_matrix(-h)
    afree = self._afree_matrix()
    return sp.bmat(
        [[-h, afree.T], [afree, sp.diags(self.d2**2)]], format="csr"
    )

  def _direct_sqd_solver(self, k: sp.spmatrix) -> direct.SqdSolver:
    if self._sqd_solver is not None:
      return self._sqd_solver
    perm = None
    match self.method:
      case Method.SQD_LU:
        pattern = sp.csr_matrix(k, copy=True)
        pattern.data[:] = 1.0
        perm = csgraph.reverse_cuthill_mckee(pattern, symmetric_mode=True)
        backend = direct.ScipyLuSolver()
      case Method.SQD_LDL:
        backend = direct.QdldlSolver()
      case Method.SQD_BACKSLASH:
        backend = direct.SpsolveSolver()
      case Method.SQD_BACKSLASH_PERTURBED:
        backend = direct.SpsolveSolver(perturbation=1e-12, seed=self.seed)
      case _:
        raise errors.ConfigurationError(
            f"Method {self.method.name} needs a diagonal Hessian."
        )
    self._sqd_solver = direct.SqdSolver(
        solver=backend,
        perm=perm,
        max_iterative_refinement_steps=self.max_iterative_refinement_steps,
    )
    return self._sqd_solver

  # ---------------------------------------------------------------------------
  # Diagnostics.
  # ---------------------------------------------------------------------------

  def exact_error(
      self,
      mat: sp.spmatrix,
      rhs: np.ndarray,
      sol: np.ndarray,
      *,
      ad: sp.spmatrix | None = None,
      exact: np.ndarray | None = None,
  ) -> dict[str, float]:
    """Compares `sol` with an exact sparse solve of mat @ x = rhs.

    For the normal equations pass ad = A D; the error is measured as
    ||(A D)' (dy_exact - dy)||. For the augmented system the primal error is
    measured in the H norm and the dual error in the scaled norm
    ||diag(|K11|)^-1/2 K12 derr||. Failures are logged and reported as NaN.

    Args:
      mat: The system matrix.
      rhs: The right-hand side.
      sol: The computed solution.
      ad: A D, for the normal equations.
      exact: A previously computed exact solution, if available.

    Returns:
      A dict with keys error, error_norm, primal_error_norm, dual_error_norm.
    """
    if exact is None:
      exact = _exact_solve(mat, rhs)
    if exact is None:
      return _nan_errors()
    err = exact - sol
    if ad is not None:
      dual = float(_norm(ad.T @ err))
      return {
          "error": float(_norm(err)),
          "error_norm": dual,
          "primal_error_norm": _NAN,
          "dual_error_norm": dual,
      }
    n = self.n
    mat = sp.csr_matrix(mat)
    perr, derr = err[:n], err[n:]
    k11 = mat[:n, :n]
    primal = math.sqrt(max(-perr @ (k11 @ perr), 0.0))
    kd = np.abs(k11.diagonal())
    scale = np.ones(n)
    scale[kd > 1e-30] = kd[kd > 1e-30] ** -0.5
    dual = float(_norm(scale * (mat[:n, n:] @ derr))) if self.m else 0.0
    return {
        "error": float(_norm(err)),
        "error_norm": math.hypot(primal, dual),
        "primal_error_norm": primal,
        "dual_error_norm": dual,
    }

  def free(self):
    if self._backend is not None:
      self._backend.free()
    if self._sqd_solver is not None:
      self._sqd_solver.free()


def _relative(residual: float, rhs: np.ndarray) -> float:
  rhs_norm = _norm(rhs)
  return float(residual / rhs_norm) if rhs_norm > 0 else float(residual)


def _exact_solve(mat: sp.spmatrix, rhs: np.ndarray) -> np.ndarray | None:
  """Sparse direct solve for diagnostics; returns None instead of raising."""
  try:
    with warnings.catch_warnings():
      warnings.simplefilter("error", spla.MatrixRankWarning)
      exact = np.atleast_1d(spla.spsolve(sp.csc_matrix(mat), rhs))
  except (RuntimeError, ValueError, spla.MatrixRankWarning) as e:
    logging.warning("Exact solve for error diagnostics failed: %s", e)
    return None
  if not np.all(np.isfinite(exact)):
    logging.warning("Exact solve for error diagnostics returned NaNs.")
    return None
  return exact


def _report_early_termination(name: str, reason: str, atol: float):
  message = f"{name} stopped early ({reason}, atol = {atol:.1e})."
  logging.warning(message)
  warnings.warn(message, errors.InnerSolverEarlyTermination, stacklevel=3)
