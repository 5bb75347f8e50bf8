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
"""Direct linear solvers for the normal equations and the SQD system."""

import logging
from typing import Any, Literal, Protocol

import numpy as np
import scipy.sparse as sp
import scipy.sparse.linalg as spla

from . import errors


class LinearSolver(Protocol):
  """Protocol defining the interface for linear solvers."""

  def update(self, mat: sp.spmatrix) -> None:
    """Factorizes or refactorizes the matrix."""
    ...

  def solve(self, rhs: np.ndarray) -> np.ndarray:
    """Solves the linear system."""
    ...

  def format(self) -> str:
    """Returns the expected sparse matrix format (eg, 'csc' or 'csr')."""
    ...

  def free(self):
    pass


class ScipyCholeskySolver(LinearSolver):
  """Sparse symmetric factorization with scipy.sparse.linalg.splu.

  The matrix is expected to be already permuted by a fill-reducing ordering,
  so SuperLU keeps the natural column order and pivots on the diagonal. For
  a symmetric matrix the result is then L D L' in disguise, and the matrix
  is positive definite iff every pivot (the diagonal of U) is positive.
  """

  def __init__(self):
    self.factorization = None

  def update(self, mat: sp.spmatrix):
    mat = sp.csc_matrix(mat)
    if not np.all(np.isfinite(mat.data)):
      raise errors.NonFiniteSolutionError(
          "Normal-equations matrix has non-finite entries."
      )
    try:
      factorization = spla.splu(
          mat,
          permc_spec="NATURAL",
          diag_pivot_thresh=0.0,
          options={"SymmetricMode": True},
      )
    except RuntimeError as e:
      raise errors.IndefiniteSystemError(
          f"chol says AD^2A' is singular ({e}). Use bigger d2, or use the QR"
          " or LSMR method."
      ) from e
    pivots = factorization.U.diagonal()
    perm_r = factorization.perm_r
    if np.any(perm_r != np.arange(perm_r.size)) or not np.all(pivots > 0):
      raise errors.IndefiniteSystemError(
          "chol says AD^2A' is not positive definite. Use bigger d2, or"
          " use the QR or LSMR method."
      )
    self.factorization = factorization

  def solve(self, rhs: np.ndarray) -> np.ndarray:
    return self.factorization.solve(rhs)

  def format(self) -> Literal["csc"]:
    return "csc"

  def free(self):
    self.factorization = None


class CholModSolver(LinearSolver):
  """Wrapper around sksparse.cholmod for sparse Cholesky factorization."""

  def __init__(self):
    import sksparse.cholmod  # pylint: disable=g-import-not-at-top

    self.cholmod = sksparse.cholmod
    self.factorization: sksparse.cholmod.Factor | None = None

  def update(self, mat: sp.spmatrix):
    try:
      if self.factorization is None:
        self.factorization = self.cholmod.cholesky(mat, mode="simplicial")
      else:
        self.factorization.cholesky_inplace(mat)
    except self.cholmod.CholmodNotPositiveDefiniteError as e:
      raise errors.IndefiniteSystemError(
          "CHOLMOD says AD^2A' is not positive definite."
      ) from e

  def solve(self, rhs: np.ndarray) -> np.ndarray:
    return self.factorization(rhs)

  def format(self) -> Literal["csc"]:
    return "csc"


class ScipyLuSolver(LinearSolver):
  """Wrapper around scipy.sparse.linalg.splu for SQD matrices.

  An SQD matrix with a reasonable dual regularization is strongly
  factorizable, so row interchanges are suppressed and the caller's
  symmetric ordering is kept (natural column order).
  """

  def __init__(self):
    self.factorization = None

  def update(self, mat: sp.spmatrix):
    self.factorization = spla.splu(
        mat.tocsc(),
        permc_spec="NATURAL",
        diag_pivot_thresh=0.0,
        options={"SymmetricMode": True},
    )
    perm_r = self.factorization.perm_r
    if np.any(perm_r != np.arange(perm_r.size)):
      logging.warning("SQD LU factorization used row interchanges.")

  def solve(self, rhs: np.ndarray) -> np.ndarray:
    return self.factorization.solve(rhs)

  def format(self) -> Literal["csc"]:
    return "csc"


class QdldlSolver(LinearSolver):
  """Wrapper around qdldl.Solver for quasi-definite LDL factorization."""

  def __init__(self):
    import qdldl  # pylint: disable=g-import-not-at-top

    self.qdldl = qdldl
    self.factorization: qdldl.Solver | None = None

  def update(self, mat: sp.spmatrix):
    if self.factorization is None:
      self.factorization = self.qdldl.Solver(mat)
    else:
      self.factorization.update(mat)

  def solve(self, rhs: np.ndarray) -> np.ndarray:
    return self.factorization.solve(rhs)

  def format(self) -> Literal["csc"]:
    return "csc"


class SpsolveSolver(LinearSolver):
  """Wrapper around scipy.sparse.linalg.spsolve ("backslash").

  If `perturbation` is positive, Gaussian noise of that size is added to
  every solution.
  """

  def __init__(self, perturbation: float = 0.0, seed: int | None = None):
    self.mat = None
    self.perturbation = perturbation
    self.rng = np.random.default_rng(seed)

  def update(self, mat: sp.spmatrix):
    self.mat = mat.tocsc()

  def solve(self, rhs: np.ndarray) -> np.ndarray:
    sol = np.atleast_1d(spla.spsolve(self.mat, rhs))
    if self.perturbation > 0:
      sol = sol + self.perturbation * self.rng.standard_normal(sol.shape)
    return sol

  def format(self) -> Literal["csc"]:
    return "csc"


class SqdSolver:
  """Direct solver for the SQD system with iterative refinement.

  Solves
      [ -H     A.T  ] [dx]   [w ]
      [  A   D2^2   ] [dy] = [r1]
  using one of the direct LinearSolver backends on a fixed symmetric
  permutation of K.
  """

  def __init__(
      self,
      *,
      solver: LinearSolver,
      perm: np.ndarray | None,
      max_iterative_refinement_steps: int,
      atol: float = 1e-12,
      rtol: float = 1e-12,
  ):
    """Initializes the SqdSolver.

    Args:
      solver: An instance of a direct solver class (e.g., QdldlSolver).
      perm: Symmetric permutation applied to K before factorizing, or None.
      max_iterative_refinement_steps: Maximum number of solves per call
        (includes the initial solve, so must be >= 1).
      atol: Absolute tolerance for iterative refinement.
      rtol: Relative tolerance for iterative refinement.
    """
    self.solver = solver
    self.perm = perm
    self.max_iterative_refinement_steps = max_iterative_refinement_steps
    self.atol = atol
    self.rtol = rtol
    self.kkt = None

  def update(self, kkt: sp.spmatrix):
    """Factorizes K, keeping the unpermuted K for residual checks."""
    self.kkt = kkt.tocsr()
    if self.perm is None:
      permuted = kkt
    else:
      permuted = kkt.tocsr()[self.perm, :][:, self.perm]
    self.solver.update(permuted.asformat(self.solver.format()))

  def _solve_permuted(self, rhs: np.ndarray) -> np.ndarray:
    if self.perm is None:
      return self.solver.solve(rhs)
    sol = np.empty_like(rhs)
    sol[self.perm] = self.solver.solve(rhs[self.perm])
    return sol

  def solve(self, rhs: np.ndarray) -> tuple[np.ndarray, dict[str, Any]]:
    """Solves K sol = rhs.

    Args:
      rhs: The right-hand side of the linear system.

    Returns:
      A tuple containing:
        - sol: The solution vector.
        - A dictionary with solve statistics including:
          - "solves": The number of linear solves performed.
          - "final_residual_norm": The final infinity norm of the residual.
          - "status": The status of the iterative refinement ("converged",
            "non-converged", or "stalled").

    Raises:
      NonFiniteSolutionError: If the solution contains NaN or Inf values.
    """
    tolerance = self.atol + self.rtol * np.linalg.norm(rhs, np.inf)

    sol = np.zeros_like(rhs)
    residual = rhs.copy()
    residual_norm = np.linalg.norm(residual, np.inf)

    status, solves = "non-converged", 0
    for solves in range(1, self.max_iterative_refinement_steps + 1):
      old_residual_norm = residual_norm
      sol += self._solve_permuted(residual)
      residual = rhs - self.kkt @ sol
      residual_norm = np.linalg.norm(residual, np.inf)

      if residual_norm < tolerance:
        status = "converged"
        break

      if residual_norm >= old_residual_norm:
        logging.debug(
            "Iterative refinement stalled at step %d. Old res: %e, New res: %e",
            solves,
            old_residual_norm,
            residual_norm,
        )
        status = "stalled"
        break

    if not np.all(np.isfinite(sol)):
      raise errors.NonFiniteSolutionError("SQD solver returned NaNs.")

    logging.debug(
        "SQD solve: status=%s, solves=%d, res=%e", status, solves, residual_norm
    )
    return sol, {
        "solves": solves,
        "final_residual_norm": residual_norm,
        "status": status,
    }

  def free(self):
    """Frees the solver resources."""
    self.solver.free()
