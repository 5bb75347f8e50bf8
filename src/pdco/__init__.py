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
"""Primal-dual barrier method for convex objectives with linear constraints."""

import dataclasses
import enum
import logging
import math
import timeit
from typing import Any, Dict, List

import numpy as np
import scipy.sparse as sp

from . import bounds as bounds_lib
from . import direct
from . import errors
from . import newton
from . import problem
from . import scaling as scaling_lib
from .errors import ConfigurationError
from .errors import IndefiniteSystemError
from .errors import InnerSolverEarlyTermination
from .errors import NonFiniteSolutionError
from .errors import PDCOError
from .errors import PreconditionerBuildFailure
from .krylov import KrylovMethod
from .newton import Method
from .preconditioners import PreconditionerType

__version__ = "0.1.0"
_HEADER = """| iter |   mu | stepx | stepz |  Pinf |  Dinf |  Cinf |      objective | nf |   center |    atol | inner | r3ratio |     time |"""
_SEPARA = """|------|------|-------|-------|-------|-------|-------|----------------|----|----------|---------|-------|---------|----------|"""
_norm = np.linalg.norm
_EPS = np.finfo(np.float64).eps
_MAX_MERIT_EVALS = 10  # Linesearch trials per iteration.
_ETA = 1e-4  # Sufficient decrease of the merit function.
_MIN_STEP = 1e-10
_MAX_CENTER = 1e3  # mu is not reduced while the iterate is this off-center.


class CholeskySolver(enum.Enum):
  """Backends for the CHOLESKY method."""

  SCIPY = direct.ScipyCholeskySolver
  CHOLMOD = direct.CholModSolver


class SolutionStatus(enum.Enum):
  """Possible outcomes of the barrier method."""

  SOLVED = "solved"
  ITERATION_LIMIT = "iteration_limit"
  LINESEARCH_FAILURE = "linesearch_failure"
  STEP_TOO_SMALL = "step_too_small"
  INDEFINITE_SYSTEM = "indefinite_system"

  @property
  def inform(self) -> int:
    """The numeric exit code, 0 for SOLVED up to 4 for INDEFINITE_SYSTEM."""
    return list(SolutionStatus).index(self)


@dataclasses.dataclass(frozen=True)
class Solution:
  """Contains the solution of the problem.

  Attributes:
    x: The primal solution.
    y: The Lagrange multipliers of Ax + D2 r = b.
    z: The reduced costs, grad(phi) + D1^2 x - A'y.
    status: SolutionStatus enum indicating the status.
    iterations: Number of barrier iterations.
    inner_iterations: Total iterations of the iterative linear solvers.
    time: Wall-clock solve time in seconds.
    inner_iterations_history: Inner iterations of each barrier iteration.
    stats: A list of statistics dictionaries from each iteration.
  """

  x: np.ndarray
  y: np.ndarray
  z: np.ndarray
  status: SolutionStatus
  iterations: int
  inner_iterations: int
  time: float
  inner_iterations_history: List[int]
  stats: List[Dict[str, Any]]


@dataclasses.dataclass(frozen=True)
class _Iterate:
  """A (scaled) iterate together with its objective and residuals."""

  x: np.ndarray
  y: np.ndarray
  x1: np.ndarray
  x2: np.ndarray
  z1: np.ndarray
  z2: np.ndarray
  obj: float
  grad: np.ndarray
  hess: np.ndarray | sp.spmatrix
  res: problem.Residuals
  fmerit: float


@dataclasses.dataclass(frozen=True)
class _Direction:
  dx: np.ndarray
  dy: np.ndarray
  dx1: np.ndarray
  dx2: np.ndarray
  dz1: np.ndarray
  dz2: np.ndarray
  stats: newton.NewtonStats


class PDCO:
  """Primal-dual barrier method for convex objectives.

  Solves
    min. phi(x) + (1/2) ||D1 x||^2 + (1/2) ||r||^2
    s.t. A x + D2 r = b
         bl <= x <= bu

  where phi is convex and separable if one of the normal-equations methods
  is used, D1 and D2 are positive diagonal regularization matrices and r is
  unconstrained. A may be a matrix or a callback `a(mode, m, n, v)` that
  returns A @ v for mode 1 and A.T @ v for mode 2.
  """

  def __init__(
      self,
      *,
      objective: np.ndarray | problem.ObjectiveFn,
      a: np.ndarray | sp.spmatrix | problem.OperatorFn | None,
      b: np.ndarray,
      bl: np.ndarray,
      bu: np.ndarray,
      d1: float | np.ndarray,
      d2: float | np.ndarray,
  ):
    """Initialize the solver.

    Args:
      objective: The vector c of a linear objective c'x, or a callable
        returning (phi(x), gradient, Hessian). The Hessian is a vector holding
        its diagonal or an n x n matrix.
      a: The m x n constraint matrix (dense or sparse), an operator callback,
        or None when there are no constraints.
      b: Right-hand side vector (m,).
      bl: Lower bounds (n,). Entries <= -1e20 (or -inf) mean no bound.
      bu: Upper bounds (n,). Entries >= 1e20 (or inf) mean no bound.
      d1: Primal regularization, a positive scalar or n-vector.
      d2: Dual regularization, a positive scalar or m-vector.
    """
    self.b = np.array(b, dtype=np.float64).ravel()
    self.bl = np.array(bl, dtype=np.float64).ravel()
    self.bu = np.array(bu, dtype=np.float64).ravel()
    self.m, self.n = self.b.size, self.bl.size

    if self.bu.shape != (self.n,):
      raise ValueError(f"bu must have shape ({self.n},), got {self.bu.shape}")
    if np.any(self.bl > self.bu):
      raise ValueError("Some lower bounds exceed the upper bounds.")
    if a is None:
      a = sp.csr_matrix((self.m, self.n))
    self.a = problem.ConstraintOperator(a, self.m, self.n)
    self.objective = objective

    try:
      self.d1 = np.broadcast_to(np.asarray(d1, np.float64), (self.n,)).copy()
      self.d2 = np.broadcast_to(np.asarray(d2, np.float64), (self.m,)).copy()
    except ValueError as e:
      raise ValueError(
          "d1 must be a scalar or an n-vector and d2 a scalar or an m-vector."
      ) from e
    if np.any(self.d1 <= 0) or np.any(self.d2 <= 0):
      raise ValueError("The regularization d1 and d2 must be positive.")

    self.partition = bounds_lib.classify_bounds(self.bl, self.bu)

  def solve(
      self,
      *,
      x0: np.ndarray | None = None,
      y0: np.ndarray | None = None,
      z0: np.ndarray | None = None,
      xsize: float = 1.0,
      zsize: float = 1.0,
      max_iter: int = 30,
      feasibility_tol: float = 1e-6,
      optimality_tol: float = 1e-6,
      step_tol: float = 0.99,
      step_same: bool = False,
      x0min: float = 1.0,
      z0min: float = 1.0,
      mu0: float = 0.1,
      backtrack: bool = False,
      method: Method | int | str = Method.AUTO,
      inner_max_iter_factor: int = 10,
      atol1: float = 1e-8,
      atol2: float = 1e-15,
      conlim: float = 1e12,
      krylov_method: KrylovMethod | int | str = KrylovMethod.MINRES,
      preconditioner: PreconditionerType | int | str = (
          PreconditionerType.AUGMENTED_LAGRANGIAN
      ),
      scale_tol: bool = False,
      calculate_error: bool = False,
      max_linesearch_failures: int = 1,
      max_iterative_refinement_steps: int = 1,
      cholesky_solver: CholeskySolver = CholeskySolver.SCIPY,
      seed: int | None = None,
      verbose: bool = True,
  ) -> Solution:
    """Solves the problem with a primal-dual barrier method.

    Args:
      x0: Initial x (n,), zero if None.
      y0: Initial y (m,), zero if None.
      z0: Initial z (n,), zero if None.
      xsize: Estimate of the biggest x at the solution, used for scaling.
      zsize: Estimate of the biggest z at the solution, used for scaling.
      max_iter (int): Maximum number of barrier iterations.
      feasibility_tol (float): Accuracy for satisfying Ax + D2 r = b and the
        dual constraints.
      optimality_tol (float): Accuracy for complementarity.
      step_tol (float): Fraction of the step to the boundary that is taken.
      step_same (bool): If True, x and z use the same step length.
      x0min (float): Minimum distance of the initial x from its bounds.
      z0min (float): Minimum size of the initial z.
      mu0 (float): Initial barrier parameter. If <= 0, it is computed from
        the initial point.
      backtrack (bool): If True, backtrack until the merit function
        decreases sufficiently.
      method: How the Newton system is solved; see Method.
      inner_max_iter_factor (int): Iteration limit of iterative linear
        solvers, as a multiple of min(m, n).
      atol1 (float): Initial tolerance of the iterative linear solvers.
      atol2 (float): Smallest tolerance of the iterative linear solvers.
      conlim (float): Condition limit for LSMR and MINRES.
      krylov_method: Krylov method for Method.SQD_KRYLOV.
      preconditioner: Preconditioner for Method.SQD_KRYLOV.
      scale_tol (bool): If True, the tolerance of the iterative solvers
        follows sqrt(mu).
      calculate_error (bool): If True, compares every Newton direction with
        an exact solve (expensive).
      max_linesearch_failures (int): Consecutive linesearch failures that
        stop the method.
      max_iterative_refinement_steps (int): Solves per direct SQD solve.
      cholesky_solver (CholeskySolver): Backend of Method.CHOLESKY.
      seed: Seed of Method.SQD_BACKSLASH_PERTURBED.
      verbose (bool): If True, prints a summary of each iteration.

    Returns:
      A Solution object containing the solution and solve stats.

    Raises:
      ConfigurationError: If method, krylov_method or preconditioner is not
        supported.
      NonFiniteSolutionError: If a Newton direction has NaN or Inf entries.
      PreconditionerBuildFailure: If a Krylov preconditioner cannot be built.
    """
    assert max_iter > 0
    assert feasibility_tol > 0
    assert optimality_tol > 0
    assert 0 < step_tol < 1
    assert x0min > 0
    assert z0min > 0
    assert inner_max_iter_factor >= 1
    assert atol1 > 0
    assert atol2 > 0
    assert conlim > 0
    assert max_linesearch_failures >= 1
    assert max_iterative_refinement_steps >= 1

    method = newton.resolve_method(method, self.a.explicit)

    self.start_time = timeit.default_timer()
    self.verbose = verbose
    self.backtrack = backtrack
    self.method = method
    p = self.partition
    self._phi = problem.Objective(self.objective, self.n, method.diagonal)

    x0 = self._initial("x0", x0, self.n)
    y0 = self._initial("y0", y0, self.m)
    z0 = self._initial("z0", z0, self.n)

    if verbose:
      nnz = self.a.nnz()
      print(
          f"| PDCO v{__version__}: m={self.m}, n={self.n},"
          f" nnz(A)={'operator' if nnz is None else nnz},"
          f" objective={self._phi.name()},"
          f" method={method.name}"
      )
      print(p.summary())
      if calculate_error:
        print(
            "| WARNING: calculate_error solves every Newton system exactly;"
            " timings are not representative."
        )

    # --- Scaling ---
    # Fixed variables are moved to the right-hand side.
    x_fix = np.zeros(self.n)
    x_fix[p.fix] = self.bl[p.fix]
    b = self.b - self.a.matvec(x_fix) if self.m else self.b.copy()

    self.scaling = scaling_lib.Scaling.from_sizes(xsize, zsize)
    self._bl, self._bu = self.scaling.scale_bounds(self.bl, self.bu, p)
    self._d1, self._d2 = self.scaling.scale_regularization(self.d1, self.d2)
    self._b = self.scaling.scale_rhs(b)
    x, y, z = self.scaling.scale_point(x0, y0, z0)

    # --- Initialization ---
    bl, bu = self._bl, self._bu
    x[p.fix] = bl[p.fix]
    x[p.low] = np.maximum(x[p.low], bl[p.low])
    x[p.upp] = np.minimum(x[p.upp], bu[p.upp])

    x1 = np.zeros(self.n)
    x2 = np.zeros(self.n)
    z1 = np.zeros(self.n)
    z2 = np.zeros(self.n)
    x1[p.low] = np.maximum(x[p.low] - bl[p.low], x0min)
    x2[p.upp] = np.maximum(bu[p.upp] - x[p.upp], x0min)
    z1[p.low] = np.maximum(z[p.low], z0min)
    z2[p.upp] = np.maximum(-z[p.upp], z0min)
    x[p.zlo] = x1[p.zlo]
    x[p.zup] = -x2[p.zup]

    if mu0 <= 0:
      products = np.concatenate([x1[p.low] * z1[p.low], x2[p.upp] * z2[p.upp]])
      mu0 = 0.1 * np.mean(products) if products.size else 0.0
    mulast = 0.1 * optimality_tol
    mu = max(mu0, mulast)

    it = self._point(x, y, x1, x2, z1, z2, mu)
    logging.debug(
        "Initial point: Pinf=%e, Dinf=%e, Cinf0=%e, center=%e",
        it.res.pinf, it.res.dinf, it.res.cinf0, it.res.center,
    )

    self._newton = newton.NewtonSolver(
        self.a,
        p,
        self._d2,
        method=method,
        cholesky_solver=cholesky_solver.value,
        krylov_method=krylov_method,
        preconditioner=preconditioner,
        inner_max_iter_factor=inner_max_iter_factor,
        conlim=conlim,
        max_iterative_refinement_steps=max_iterative_refinement_steps,
        seed=seed,
        calculate_error=calculate_error,
    )

    stats = []
    history = []
    status = None
    nfail = 0
    atol = atol1
    sigma_max = None
    self._log_header(it, mu)

    # --- Main Iteration Loop ---
    for self.it in range(1, max_iter + 1):
      if scale_tol and method.iterative:
        if sigma_max is None:
          sigma_max = self.a.largest_singular_value()
        atol = self._inner_tolerance(it, mu, atol1, atol2, sigma_max)

      # --- Newton direction ---
      try:
        d = self._direction(it, atol)
      except IndefiniteSystemError as e:
        self._annotate(e, it)
        logging.warning("Stopping: %s", e)
        status = SolutionStatus.INDEFINITE_SYSTEM
        break
      except (NonFiniteSolutionError, PreconditionerBuildFailure) as e:
        self._annotate(e, it)
        self._newton.free()
        raise

      stepx, stepz = self._step_lengths(it, d, step_tol, step_same)

      # --- Linesearch ---
      try:
        it, nf, stepx, stepz = self._linesearch(it, d, stepx, stepz, mu)
        nfail = 0
        step = min(stepx, stepz)
      except errors.LinesearchExhausted as e:
        logging.warning("Linesearch failed at iteration %d: %s", self.it, e)
        nfail += 1
        nf, step = e.nf, e.step
        stepx = stepz = step

      res = it.res
      converged = (
          res.pinf <= feasibility_tol
          and res.dinf <= feasibility_tol
          and res.cinf0 <= optimality_tol
          and self.it >= 4
      )

      history.append(d.stats.inner_iterations)
      stats_i = self._iteration_stats(it, mu, stepx, stepz, nf, atol, d)
      stats.append(stats_i)
      self._log_iteration(stats_i)

      # --- Termination Check ---
      if converged:
        status = SolutionStatus.SOLVED
      elif self.it >= max_iter:
        status = SolutionStatus.ITERATION_LIMIT
      elif nfail >= max_linesearch_failures:
        status = SolutionStatus.LINESEARCH_FAILURE
      elif step <= _MIN_STEP:
        status = SolutionStatus.STEP_TOO_SMALL
      if status is not None:
        break

      # --- Barrier update ---
      stepmu = min(stepx, stepz, step_tol)
      mumin = min(mu, 0.1 * max(res.pinf, res.dinf, res.cinf))
      mu_new = mu - stepmu * mu
      if res.center >= _MAX_CENTER:
        mu_new = mu
      mu = max(mu_new, mumin, mulast)
      it = self._with_mu(it, mu)

    # We have terminated for one reason or another.
    self._newton.free()
    iterations = len(stats)
    match status:
      case SolutionStatus.SOLVED:
        self._log_footer("Converged")
      case SolutionStatus.ITERATION_LIMIT:
        self._log_footer("Too many iterations")
      case SolutionStatus.LINESEARCH_FAILURE:
        self._log_footer("Too many linesearch failures")
      case SolutionStatus.STEP_TOO_SMALL:
        self._log_footer("Step lengths too small")
      case SolutionStatus.INDEFINITE_SYSTEM:
        self._log_footer("Linear system is ill-conditioned or indefinite")
      case _:
        raise ValueError(f"Unknown convergence status: {status}")

    x, y, z = self._unscaled_solution(it)
    solve_time = timeit.default_timer() - self.start_time
    if verbose:
      print(f"| Iterations: {iterations}, inner iterations: {sum(history)},"
            f" time: {solve_time:.2e}s")
    return Solution(
        x=x,
        y=y,
        z=z,
        status=status,
        iterations=iterations,
        inner_iterations=int(sum(history)),
        time=solve_time,
        inner_iterations_history=history,
        stats=stats,
    )

  def _initial(self, name, value, size) -> np.ndarray:
    if value is None:
      return np.zeros(size)
    value = np.array(value, dtype=np.float64).ravel()
    if value.shape != (size,):
      raise ValueError(f"{name} must have shape ({size},), got {value.shape}")
    return value

  def _evaluate(self, x: np.ndarray):
    """Scaled objective, gradient and Hessian, including the D1 term."""
    obj, grad, hess = self._phi(x * self.scaling.beta)
    obj, grad, hess = self.scaling.scale_objective(obj, grad, hess)
    d1sq = self._d1**2
    grad = grad + d1sq * x
    if self.method.diagonal:
      hess = hess + d1sq
    else:
      hess = sp.csr_matrix(hess + sp.diags(d1sq))
    return obj, grad, hess

  def _point(self, x, y, x1, x2, z1, z2, mu) -> _Iterate:
    """Evaluates the objective and all residuals at a new point."""
    p = self.partition
    obj, grad, hess = self._evaluate(x)
    r1, r2, rl, ru, pinf, dinf = problem.primal_dual_residuals(
        self.a, p, b=self._b, bl=self._bl, bu=self._bu, d2=self._d2,
        grad=grad, x=x, x1=x1, x2=x2, y=y, z1=z1, z2=z2,
    )
    cl, cu, center, cinf, cinf0 = problem.complementarity_residuals(
        p, mu=mu, x1=x1, x2=x2, z1=z1, z2=z2
    )
    res = problem.Residuals(
        r1=r1, r2=r2, rl=rl, ru=ru, cl=cl, cu=cu,
        pinf=pinf, dinf=dinf, cinf=cinf, cinf0=cinf0, center=center,
    )
    return _Iterate(
        x=x, y=y, x1=x1, x2=x2, z1=z1, z2=z2, obj=obj, grad=grad,
        hess=hess, res=res, fmerit=problem.merit(p, res),
    )

  def _with_mu(self, it: _Iterate, mu: float) -> _Iterate:
    """Recomputes the complementarity residuals for a new mu."""
    cl, cu, center, cinf, cinf0 = problem.complementarity_residuals(
        self.partition, mu=mu, x1=it.x1, x2=it.x2, z1=it.z1, z2=it.z2
    )
    res = dataclasses.replace(
        it.res, cl=cl, cu=cu, center=center, cinf=cinf, cinf0=cinf0
    )
    return dataclasses.replace(
        it, res=res, fmerit=problem.merit(self.partition, res)
    )

  def _inner_tolerance(self, it, mu, atol1, atol2, sigma_max) -> float:
    """Tolerance of the iterative solvers, proportional to sqrt(mu)."""
    z_estimate = it.grad - it.res.r2
    scale = math.sqrt(2) * max(
        _norm(z_estimate, 1) + sigma_max * _norm(it.x, 1), _EPS
    )
    return max(atol1 * math.sqrt(mu) / scale, atol2, _EPS)

  def _direction(self, it: _Iterate, atol: float) -> _Direction:
    """Solves the Newton system and recovers the bound slack steps."""
    p = self.partition
    low, upp = p.low, p.upp
    res = it.res
    x1, x2, z1, z2 = it.x1, it.x2, it.z1, it.z2

    w = res.r2.copy()
    w[low] -= (res.cl[low] + z1[low] * res.rl[low]) / x1[low]
    w[upp] += (res.cu[upp] + z2[upp] * res.ru[upp]) / x2[upp]

    barrier = np.zeros(self.n)
    barrier[low] += z1[low] / x1[low]
    barrier[upp] += z2[upp] / x2[upp]
    if self.method.diagonal:
      dx, dy, stats = self._newton.solve_diagonal(
          it.hess + barrier, w, res.r1, atol, it.fmerit
      )
    else:
      dx, dy, stats = self._newton.solve_augmented(
          it.hess + sp.diags(barrier), w, res.r1, atol, it.fmerit
      )

    dx1 = np.zeros(self.n)
    dx2 = np.zeros(self.n)
    dz1 = np.zeros(self.n)
    dz2 = np.zeros(self.n)
    dx1[low] = -res.rl[low] + dx[low]
    dx2[upp] = -res.ru[upp] - dx[upp]
    dz1[low] = (res.cl[low] - z1[low] * dx1[low]) / x1[low]
    dz2[upp] = (res.cu[upp] - z2[upp] * dx2[upp]) / x2[upp]
    return _Direction(dx, dy, dx1, dx2, dz1, dz2, stats)

  def _step_lengths(self, it, d, step_tol, step_same) -> tuple[float, float]:
    low, upp = self.partition.low, self.partition.upp
    stepx = min(
        problem.max_step(it.x1[low], d.dx1[low]),
        problem.max_step(it.x2[upp], d.dx2[upp]),
    )
    stepz = min(
        problem.max_step(it.z1[low], d.dz1[low]),
        problem.max_step(it.z2[upp], d.dz2[upp]),
    )
    stepx = min(step_tol * stepx, 1.0)
    stepz = min(step_tol * stepz, 1.0)
    if step_same:
      stepx = stepz = min(stepx, stepz)
    return stepx, stepz

  def _trial(self, it, d, stepx, stepz, mu) -> _Iterate:
    x1 = it.x1 + stepx * d.dx1
    x2 = it.x2 + stepx * d.dx2
    z1 = it.z1 + stepz * d.dz1
    z2 = it.z2 + stepz * d.dz2
    x = it.x + stepx * d.dx
    y = it.y + stepz * d.dy
    x[self.partition.zlo] = x1[self.partition.zlo]
    x[self.partition.zup] = -x2[self.partition.zup]
    return self._point(x, y, x1, x2, z1, z2, mu)

  def _linesearch(self, it, d, stepx, stepz, mu):
    """Backtracks on the merit function.

    Returns:
      The accepted iterate, the number of merit evaluations and the accepted
      step lengths.

    Raises:
      LinesearchExhausted: If no trial decreased the merit function enough.
        The current iterate is kept in that case.
    """
    step = min(stepx, stepz)
    for nf in range(1, _MAX_MERIT_EVALS + 1):
      trial = self._trial(it, d, stepx, stepz, mu)
      step = min(stepx, stepz)
      if not self.backtrack or trial.fmerit <= (1 - _ETA * step) * it.fmerit:
        return trial, nf, stepx, stepz
      if nf == 1 and stepx != stepz:
        stepx = step
      elif nf < _MAX_MERIT_EVALS:
        stepx /= 2
      stepz = stepx
    raise errors.LinesearchExhausted(
        f"no sufficient decrease after {_MAX_MERIT_EVALS} trials",
        nf=_MAX_MERIT_EVALS,
        step=step,
        iteration=self.it,
        pinf=it.res.pinf,
        dinf=it.res.dinf,
        cinf=it.res.cinf0,
    )

  def _annotate(self, e: PDCOError, it: _Iterate):
    e.iteration = self.it
    e.pinf, e.dinf, e.cinf = it.res.pinf, it.res.dinf, it.res.cinf0

  def _true_objective(self, it: _Iterate) -> float:
    regterm = _norm(self._d1 * it.x) ** 2 + _norm(self._d2 * it.y) ** 2
    return (it.obj + 0.5 * regterm) * self.scaling.theta

  def _iteration_stats(self, it, mu, stepx, stepz, nf, atol, d):
    p = self.partition
    slacks = np.concatenate([it.x1[p.low], it.x2[p.upp]])
    multipliers = np.concatenate([it.z1[p.low], it.z2[p.upp]])
    stats_i = {
        "iter": self.it,
        "mu": mu,
        "stepx": stepx,
        "stepz": stepz,
        "nf": nf,
        "pinf": it.res.pinf,
        "dinf": it.res.dinf,
        "cinf": it.res.cinf,
        "cinf0": it.res.cinf0,
        "center": it.res.center,
        "objective": self._true_objective(it),
        "fmerit": it.fmerit,
        "atol": atol,
        "min_slack": float(np.min(slacks)) if slacks.size else np.inf,
        "min_multiplier": (
            float(np.min(multipliers)) if multipliers.size else np.inf
        ),
        "time": timeit.default_timer() - self.start_time,
    }
    stats_i.update(d.stats.as_dict())
    return stats_i

  def _unscaled_solution(self, it: _Iterate):
    """Recovers x, y, z of the original (unscaled) problem."""
    p = self.partition
    x = it.x.copy()
    z = np.zeros(self.n)
    z[p.low] = it.z1[p.low]
    z[p.upp] -= it.z2[p.upp]
    x[p.fix] = 0.0
    self._log_distribution(x, it.y, z)

    x[p.fix] = self._bl[p.fix]
    x, y, _ = self.scaling.unscale_point(x, it.y, z)
    _, grad, _ = self._phi(x)
    aty = self.a.rmatvec(y) if self.m else np.zeros(self.n)
    z = grad + self.d1**2 * x - aty
    return x, y, z

  def _log_header(self, it: _Iterate, mu: float):
    if not self.verbose:
      return
    print(f"{_SEPARA}\n{_HEADER}\n{_SEPARA}")
    print(
        f"| {0:>4} | {math.log10(mu):>4.1f} |       |       |"
        f" {math.log10(it.res.pinf):>5.1f} | {math.log10(it.res.dinf):>5.1f} |"
        f" {_log10(it.res.cinf0):>5.1f} | {self._true_objective(it):>14.7e} |"
        f"    | {it.res.center:>8.1e} |         |       |         |"
        f" {timeit.default_timer() - self.start_time:>8.2e} |"
    )

  def _log_iteration(self, stats_i: Dict[str, Any]):
    """Logs the iteration stats."""
    if not self.verbose:
      return
    if self.method.iterative:
      inner = (
          f" {stats_i['atol']:>7.1e} | {stats_i['inner_iterations']:>5} |"
          f" {stats_i['r3ratio']:>7.1e} |"
      )
    else:
      inner = "         |       |         |"
    print(
        f"| {stats_i['iter']:>4} | {math.log10(stats_i['mu']):>4.1f} |"
        f" {stats_i['stepx']:>5.3f} | {stats_i['stepz']:>5.3f} |"
        f" {math.log10(stats_i['pinf']):>5.1f} |"
        f" {math.log10(stats_i['dinf']):>5.1f} |"
        f" {_log10(stats_i['cinf0']):>5.1f} |"
        f" {stats_i['objective']:>14.7e} | {stats_i['nf']:>2} |"
        f" {stats_i['center']:>8.1e} |{inner}"
        f" {stats_i['time']:>8.2e} |"
    )

  def _log_footer(self, message: str):
    if self.verbose:
      print(f"{_SEPARA}\n| {message}")

  def _log_distribution(self, x: np.ndarray, y: np.ndarray, z: np.ndarray):
    """Prints how many |x| and |z| fall into each power of ten."""
    if not self.verbose:
      return
    print(
        f"| max |x| = {_max_abs(x):9.3e}   max |y| = {_max_abs(y):9.3e}"
        f"   max |z| = {_max_abs(z):9.3e}   (scaled)"
    )
    print(
        f"| max |x| = {_max_abs(x) * self.scaling.beta:9.3e}"
        f"   max |y| = {_max_abs(y) * self.scaling.zeta:9.3e}"
        f"   max |z| = {_max_abs(z) * self.scaling.zeta:9.3e}   (unscaled)"
    )
    print("| Distribution of vector x         z")
    for edge, nx, nz in zip(*distribution(x), distribution(z)[1]):
      print(f"| [{edge:8.1e},      ) {nx:8d} {nz:9d}")


def distribution(v: np.ndarray, bins: int = 10) -> tuple[np.ndarray, np.ndarray]:
  """Counts the entries of |v| per power of ten.

  The bins start at 10^(floor(log10(max|v|)) + 1) and go down by factors of
  ten; the last bin takes everything below, including zeros.

  Args:
    v: The vector.
    bins: Number of bins.

  Returns:
    The lower edges of the bins and the number of entries in each bin.
  """
  v = np.abs(np.asarray(v, dtype=np.float64))
  top = math.floor(math.log10(_max_abs(v) + _EPS)) + 1
  edges = 10.0 ** (top - np.arange(1, bins + 1, dtype=np.float64))
  edges[-1] = 0.0
  counts = np.zeros(bins, dtype=int)
  upper = np.inf
  for i, edge in enumerate(edges):
    counts[i] = np.count_nonzero((v >= edge) & (v < upper))
    upper = edge
  return edges, counts


def _max_abs(v: np.ndarray) -> float:
  return float(np.max(np.abs(v))) if v.size else 0.0


def _log10(v: float) -> float:
  return math.log10(max(v, 1e-99))
