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
"""Preconditioners for the augmented system and the normal equations.

The augmented matrix is partitioned as

    K = [ K11  K12 ]   (n rows)
        [ K21  K22 ]   (m rows)

and is usually passed in negated form, -[-H A'; A D2^2], so that K11 is
positive definite and the block preconditioners below are positive definite.
"""

import enum
import logging
from typing import Callable, Protocol

import numpy as np
import scipy.linalg
import scipy.sparse as sp
import scipy.sparse.linalg as spla

from . import errors

_EPS = np.finfo(np.float64).eps


class PreconditionerType(enum.IntEnum):
  """Preconditioners for Krylov methods on the augmented system."""

  AUGMENTED_LAGRANGIAN = 1
  INCOMPLETE_CHOLESKY = 2
  ILU = 3
  CONSTRAINT = 4
  SCHUR_DIAGONAL = 5
  SCHUR_INCOMPLETE_CHOLESKY = 6
  SCHUR_JACOBI = 7


class Preconditioner(Protocol):
  """Approximates the action of a matrix inverse."""

  def apply(self, v: np.ndarray) -> np.ndarray:
    ...


def _factorized(mat: sp.spmatrix) -> Callable[[np.ndarray], np.ndarray]:
  """Sparse LU of `mat`, returning its solve operation."""
  if mat.shape[0] == 0:
    return np.copy
  try:
    lu = spla.splu(sp.csc_matrix(mat))
  except RuntimeError as e:
    raise errors.PreconditionerBuildFailure(f"Sparse LU failed: {e}") from e
  return lu.solve


def split_blocks(k: sp.spmatrix, n: int):
  k = sp.csr_matrix(k)
  return k[:n, :n], k[:n, n:], k[n:, :n], k[n:, n:]


def _pseudo_inverse_diagonal(k11: sp.spmatrix) -> np.ndarray:
  d = k11.diagonal()
  di = np.ones_like(d)
  nonzero = np.abs(d) >= _EPS
  di[nonzero] = 1.0 / d[nonzero]
  return di


class IdentityPreconditioner:

  def apply(self, v: np.ndarray) -> np.ndarray:
    return np.array(v, dtype=np.float64)


class DiagonalPreconditioner:
  """Multiplies by a fixed vector."""

  def __init__(self, inv_diag: np.ndarray):
    self.inv_diag = np.asarray(inv_diag, dtype=np.float64)

  def apply(self, v: np.ndarray) -> np.ndarray:
    return self.inv_diag * v


class SparseSolvePreconditioner:
  """Exact solves with a sparse LU of an approximation of K."""

  def __init__(self, mat: sp.spmatrix):
    self.mat = sp.csc_matrix(mat)
    self._solve = _factorized(self.mat)

  def apply(self, v: np.ndarray) -> np.ndarray:
    return self._solve(v)


def _ic0(lower: sp.csr_matrix, shift: float) -> sp.csr_matrix | None:
  """IC(0) of the matrix whose lower triangle is `lower`.

  The diagonal is multiplied by (1 + shift). Returns None on breakdown.
  """
  n = lower.shape[0]
  if n and 2 * lower.nnz == n * (n + 1):
    # No fill is dropped on a full pattern, so IC(0) is the exact factor.
    dense = lower.toarray()
    dense = dense + np.tril(dense, -1).T
    dense[np.diag_indices(n)] *= 1.0 + shift
    try:
      factor = scipy.linalg.cholesky(dense, lower=True, check_finite=False)
    except np.linalg.LinAlgError:
      return None
    return sp.csr_matrix(factor)

  rows: list[dict[int, float]] = []
  diag = np.zeros(n)
  for i in range(n):
    start, end = lower.indptr[i], lower.indptr[i + 1]
    row: dict[int, float] = {}
    pivot = 0.0
    for j, value in sorted(zip(lower.indices[start:end], lower.data[start:end])):
      if j == i:
        pivot = value * (1.0 + shift)
        continue
      row_j = rows[j]
      s = value - sum(l_ik * row_j.get(k, 0.0) for k, l_ik in row.items())
      row[j] = s / diag[j]
    pivot -= sum(l_ik * l_ik for l_ik in row.values())
    if not pivot > 0.0:
      return None
    diag[i] = np.sqrt(pivot)
    row[i] = diag[i]
    rows.append(row)

  indices = [(i, j, v) for i, row in enumerate(rows) for j, v in row.items()]
  r, c, v = zip(*indices) if indices else ((), (), ())
  return sp.csr_matrix((v, (r, c)), shape=(n, n))


class IncompleteCholesky:
  """Zero fill-in incomplete Cholesky factorization with scaling.

  The matrix is first scaled symmetrically to unit diagonal. If the
  factorization breaks down, it is retried on the shifted matrix S + alpha I
  with alpha doubling from `initial_shift`.
  """

  def __init__(
      self,
      mat: sp.spmatrix,
      *,
      initial_shift: float = 1e-3,
      max_shifts: int = 12,
  ):
    mat = sp.csr_matrix(mat, dtype=np.float64)
    self.size = mat.shape[0]
    diag = mat.diagonal()
    if not np.all(np.isfinite(mat.data)):
      raise errors.PreconditionerBuildFailure("Matrix has non-finite entries.")
    if np.any(diag <= 0):
      raise errors.PreconditionerBuildFailure(
          "Matrix has non-positive diagonal entries."
      )
    self.scale = 1.0 / np.sqrt(diag)
    scaling = sp.diags(self.scale)
    lower = sp.tril(scaling @ mat @ scaling, format="csr")
    lower.sort_indices()

    self.shift = 0.0
    for _ in range(max_shifts + 1):
      self.factor = _ic0(lower, self.shift)
      if self.factor is not None:
        break
      self.shift = initial_shift if self.shift == 0 else 2 * self.shift
    else:
      raise errors.PreconditionerBuildFailure(
          f"Incomplete Cholesky broke down with shift {self.shift:.1e}."
      )
    if self.shift > 0:
      logging.debug("Incomplete Cholesky needed shift %e.", self.shift)
    self.factor_t = self.factor.T.tocsr()

  def apply(self, v: np.ndarray) -> np.ndarray:
    if self.size == 0:
      return np.array(v, dtype=np.float64)
    t = spla.spsolve_triangular(self.factor, self.scale * v, lower=True)
    t = spla.spsolve_triangular(self.factor_t, t, lower=False)
    return self.scale * t


class BlockDiagonalPreconditioner:
  """Independent preconditioners for the primal and dual blocks."""

  def __init__(
      self,
      n: int,
      primal: Callable[[np.ndarray], np.ndarray],
      dual: Callable[[np.ndarray], np.ndarray],
  ):
    self.n = n
    self.primal = primal
    self.dual = dual

  def apply(self, v: np.ndarray) -> np.ndarray:
    return np.concatenate([self.primal(v[: self.n]), self.dual(v[self.n :])])


class AugmentedLagrangianPreconditioner(BlockDiagonalPreconditioner):
  """blkdiag(K11 + K12 K21 / gamma, gamma I + K22) with gamma = ||K11||_F."""

  def __init__(self, k: sp.spmatrix, n: int, m: int):
    k11, k12, k21, k22 = split_blocks(k, n)
    self.gamma = spla.norm(k11, "fro") if k11.nnz else 1.0
    if self.gamma == 0:
      self.gamma = 1.0
    w = self.gamma * sp.eye(m, format="csr") + k22
    aaug = k11 + (k12 @ k21) / self.gamma
    super().__init__(n, primal=_factorized(aaug), dual=_factorized(w))


def schur_jacobi(
    a: sp.spmatrix, d: np.ndarray, d2: np.ndarray | float = 0.0
) -> DiagonalPreconditioner:
  """Diagonal approximation 1 / (rowsum((A D)^2) + d2^2) of (A D^2 A' + D2^2)^-1."""
  ad = sp.csr_matrix(a) @ sp.diags(d)
  w = np.asarray(ad.multiply(ad).sum(axis=1)).ravel() + np.asarray(d2) ** 2
  w[np.abs(w) < _EPS] = 1.0
  return DiagonalPreconditioner(1.0 / w)


def schur_incomplete_cholesky(
    a: sp.spmatrix, d: np.ndarray, d2: np.ndarray | float = 0.0
) -> IncompleteCholesky:
  """Incomplete Cholesky of (A D)(A D)' + D2^2."""
  ad = sp.csr_matrix(a) @ sp.diags(d)
  m = ad.shape[0]
  s = ad @ ad.T + sp.diags(np.broadcast_to(np.asarray(d2) ** 2, (m,)))
  return IncompleteCholesky(s)


def _build_augmented_lagrangian(k, n, m):
  return AugmentedLagrangianPreconditioner(k, n, m)


def _build_incomplete_cholesky(k, n, m):
  k11, _, k21, k22 = split_blocks(k, n)
  di = _pseudo_inverse_diagonal(k11)
  dual = schur_incomplete_cholesky(
      k21, np.sqrt(np.abs(di)), np.sqrt(np.abs(k22.diagonal()))
  )
  return BlockDiagonalPreconditioner(
      n, primal=lambda v: v * np.abs(di), dual=dual.apply
  )


def _build_ilu(k, n, m):
  try:
    ilu = spla.spilu(sp.csc_matrix(k), drop_tol=1e-4, fill_factor=10)
  except RuntimeError as e:
    raise errors.PreconditionerBuildFailure(f"ILU failed: {e}") from e
  return SparseSolvePreconditionerFromFactor(ilu)


class SparseSolvePreconditionerFromFactor:
  """Applies a stored SuperLU (complete or incomplete) factorization."""

  def __init__(self, factor):
    self.factor = factor

  def apply(self, v: np.ndarray) -> np.ndarray:
    return self.factor.solve(v)


def _build_constraint(k, n, m):
  k11, k12, k21, k22 = split_blocks(k, n)
  p = sp.bmat(
      [[sp.diags(k11.diagonal()), k12], [k21, k22]], format="csc"
  )
  return SparseSolvePreconditioner(p)


def _build_schur_diagonal(k, n, m):
  k11, k12, k21, k22 = split_blocks(k, n)
  d = k11.diagonal().copy()
  d[d == 0] = 1e-8
  sd = k21 @ sp.diags(1.0 / np.abs(d)) @ k12 + sp.diags(np.abs(k22.diagonal()))
  return BlockDiagonalPreconditioner(
      n, primal=lambda v: v / np.abs(d), dual=_factorized(sd)
  )


def _build_schur_incomplete_cholesky(k, n, m):
  k11, _, k21, _ = split_blocks(k, n)
  di = _pseudo_inverse_diagonal(k11)
  sqrt_di = np.sqrt(np.abs(di))
  try:
    dual = schur_incomplete_cholesky(k21, sqrt_di)
  except errors.PreconditionerBuildFailure as e:
    logging.warning(
        "Incomplete Cholesky of the Schur complement failed (%s); using its"
        " diagonal instead.",
        e,
    )
    dual = schur_jacobi(k21, sqrt_di)
  return BlockDiagonalPreconditioner(
      n, primal=lambda v: v * np.abs(di), dual=dual.apply
  )


def _build_schur_jacobi(k, n, m):
  k11, _, k21, _ = split_blocks(k, n)
  di = _pseudo_inverse_diagonal(k11)
  dual = schur_jacobi(k21, np.sqrt(np.abs(di)))
  return BlockDiagonalPreconditioner(
      n, primal=lambda v: v * np.abs(di), dual=dual.apply
  )


_BUILDERS = {
    PreconditionerType.AUGMENTED_LAGRANGIAN: _build_augmented_lagrangian,
    PreconditionerType.INCOMPLETE_CHOLESKY: _build_incomplete_cholesky,
    PreconditionerType.ILU: _build_ilu,
    PreconditionerType.CONSTRAINT: _build_constraint,
    PreconditionerType.SCHUR_DIAGONAL: _build_schur_diagonal,
    PreconditionerType.SCHUR_INCOMPLETE_CHOLESKY: _build_schur_incomplete_cholesky,
    PreconditionerType.SCHUR_JACOBI: _build_schur_jacobi,
}


def build_preconditioner(
    k: sp.spmatrix, n: int, m: int, kind: PreconditionerType
) -> Preconditioner:
  """Builds a preconditioner for the (n+m) x (n+m) augmented matrix `k`.

  Args:
    k: The augmented matrix, usually negated so that K11 is positive definite.
    n: Size of the primal block.
    m: Size of the dual block.
    kind: Which preconditioner to build.

  Returns:
    An object with an `apply(v)` method.

  Raises:
    PreconditionerBuildFailure: If the preconditioner cannot be built.
  """
  kind = PreconditionerType(kind)
  logging.debug("Building %s preconditioner (n=%d, m=%d).", kind.name, n, m)
  return _BUILDERS[kind](k, n, m)


def normal_equations_chain(
    a: sp.spmatrix | None, d: np.ndarray, d2: np.ndarray
) -> tuple[tuple[str, Callable[[], Preconditioner]], ...]:
  """Preconditioners for A D^2 A' + D2^2, to be tried in order.

  Args:
    a: The explicit constraint matrix, or None if A is an operator.
    d: The diagonal D.
    d2: The dual regularization.

  Returns:
    A tuple of (name, constructor) pairs. Constructors may raise
    PreconditionerBuildFailure.
  """
  identity = ("identity", IdentityPreconditioner)
  if a is None:
    return (identity,)
  return (
      ("incomplete_cholesky", lambda: schur_incomplete_cholesky(a, d, d2)),
      ("diagonal", lambda: schur_jacobi(a, d, d2)),
      identity,
  )
