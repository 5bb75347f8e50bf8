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
"""Problem data adapters and residual helpers used by the barrier method."""

import dataclasses
import logging
from typing import Callable

import numpy as np
import scipy.sparse as sp
import scipy.sparse.linalg as spla

from . import bounds as bounds_lib

_norm = np.linalg.norm
_TINY = 1e-99

# (mode, m, n, v) -> A @ v for mode 1, A.T @ v for mode 2.
OperatorFn = Callable[[int, int, int, np.ndarray], np.ndarray]
# x -> (phi(x), grad phi(x), hess phi(x) as a vector or a matrix).
ObjectiveFn = Callable[[np.ndarray], tuple]


class ConstraintOperator:
  """The m x n matrix A, given explicitly or as an (A @ v, A.T @ v) callback."""

  def __init__(self, a: np.ndarray | sp.spmatrix | OperatorFn, m: int, n: int):
    self.m, self.n = m, n
    self.explicit = not callable(a)
    if self.explicit:
      if sp.issparse(a):
        self.matrix = sp.csr_matrix(a, dtype=np.float64)
      else:
        self.matrix = np.atleast_2d(np.asarray(a, dtype=np.float64))
        if m == 0:
          self.matrix = self.matrix.reshape(0, n)
      if self.matrix.shape != (m, n):
        raise ValueError(
            f"A must have shape ({m}, {n}), got {self.matrix.shape}"
        )
      self._fn = None
    else:
      self.matrix = None
      self._fn = a

  def matvec(self, x: np.ndarray) -> np.ndarray:
    if self.explicit:
      return np.asarray(self.matrix @ x).ravel()
    return np.asarray(self._fn(1, self.m, self.n, x), dtype=np.float64).ravel()

  def rmatvec(self, y: np.ndarray) -> np.ndarray:
    if self.explicit:
      return np.asarray(self.matrix.T @ y).ravel()
    return np.asarray(self._fn(2, self.m, self.n, y), dtype=np.float64).ravel()

  def sparse(self) -> sp.csr_matrix:
    """Returns A as a CSR matrix. Only valid for explicit operators."""
    if not self.explicit:
      raise TypeError("A is an operator; an explicit matrix is required.")
    return sp.csr_matrix(self.matrix)

  def as_linear_operator(self) -> spla.LinearOperator:
    return spla.LinearOperator(
        (self.m, self.n),
        matvec=self.matvec,
        rmatvec=self.rmatvec,
        dtype=np.float64,
    )

  def nnz(self) -> int | None:
    if not self.explicit:
      return None
    if sp.issparse(self.matrix):
      return self.matrix.nnz
    return int(np.count_nonzero(self.matrix))

  def largest_singular_value(self) -> float:
    """Estimates ||A||_2, the largest singular value of A."""
    if self.m == 0 or self.n == 0:
      return 0.0
    if min(self.m, self.n) <= 2:
      if self.explicit:
        dense = self.sparse().toarray()
      else:
        dense = np.column_stack(
            [self.matvec(e) for e in np.eye(self.n)]
        ).reshape(self.m, self.n)
      return float(_norm(dense, 2))
    sigma = spla.svds(
        self.as_linear_operator(), k=1, return_singular_vectors=False
    )
    return float(sigma[0])


class Objective:
  """Evaluates phi(x), its gradient and its curvature.

  `objective` is either an explicit n-vector c (phi(x) = c'x) or a callable
  returning (obj, grad, hess), where hess is a vector holding diag(Hessian)
  or an n x n (sparse) matrix.
  """

  def __init__(
      self, objective: np.ndarray | ObjectiveFn, n: int, diagonal: bool
  ):
    self.n = n
    self.diagonal = diagonal
    self.explicit = not callable(objective)
    if self.explicit:
      self.c = np.asarray(objective, dtype=np.float64).ravel()
      if self.c.shape != (n,):
        raise ValueError(f"c must have shape ({n},), got {self.c.shape}")
      self._fn = None
    else:
      self.c = None
      self._fn = objective
    self._warned = False

  def name(self) -> str:
    if self.explicit:
      return "linear"
    return getattr(self._fn, "__name__", repr(self._fn))

  def __call__(self, x: np.ndarray):
    """Returns (obj, grad, hess) with hess shaped for the linear-solve family."""
    if self.explicit:
      hess = np.zeros(self.n) if self.diagonal else sp.csr_matrix((self.n,) * 2)
      return float(self.c @ x), self.c.copy(), hess

    obj, grad, hess = self._fn(x)
    grad = np.asarray(grad, dtype=np.float64).ravel()
    if self.diagonal:
      if sp.issparse(hess) or np.ndim(hess) == 2:
        if not self._warned:
          logging.warning("Using only the diagonal part of hess from phi(x).")
          self._warned = True
        hess = hess.diagonal()
      hess = np.broadcast_to(
          np.asarray(hess, dtype=np.float64).ravel(), (self.n,)
      ).copy()
    else:
      if sp.issparse(hess) or np.ndim(hess) == 2:
        if hess.shape != (self.n, self.n):
          raise ValueError(
              f"hess must have shape ({self.n}, {self.n}), got {hess.shape}"
          )
        hess = sp.csr_matrix(hess, dtype=np.float64)
      else:
        diag = np.broadcast_to(
            np.asarray(hess, dtype=np.float64).ravel(), (self.n,)
        )
        hess = sp.diags(diag, format="csr")
    return float(obj), grad, hess


@dataclasses.dataclass
class Residuals:
  """Residuals of the perturbed KKT conditions at one iterate.

  r1 = b - A x - d2^2 y           (primal)
  r2 = grad - A'y + z2 - z1       (dual)
  rL = bl - x + x1,  rU = -bu + x + x2
  cL = mu - x1 z1,   cU = mu - x2 z2
  """

  r1: np.ndarray
  r2: np.ndarray
  rl: np.ndarray
  ru: np.ndarray
  cl: np.ndarray
  cu: np.ndarray
  pinf: float
  dinf: float
  cinf: float
  cinf0: float
  center: float


def primal_dual_residuals(
    a: ConstraintOperator,
    partition: bounds_lib.BoundPartition,
    *,
    b, bl, bu, d2, grad, x, x1, x2, y, z1, z2,
):
  """Returns (r1, r2, rL, rU, Pinf, Dinf)."""
  fix, low, upp = partition.fix, partition.low, partition.upp
  x = x.copy()
  x[fix] = 0.0
  r1 = b - a.matvec(x) - d2**2 * y
  r2 = grad - a.rmatvec(y)
  r2[fix] = 0.0
  r2[upp] += z2[upp]
  r2[low] -= z1[low]
  rl = np.zeros_like(x)
  ru = np.zeros_like(x)
  rl[low] = (bl[low] - x[low]) + x1[low]
  ru[upp] = (-bu[upp] + x[upp]) + x2[upp]

  pinf = max(
      _norm(r1, np.inf) if r1.size else 0.0,
      _norm(rl[low], np.inf) if low.size else 0.0,
      _norm(ru[upp], np.inf) if upp.size else 0.0,
  )
  dinf = _norm(r2, np.inf) if r2.size else 0.0
  return r1, r2, rl, ru, max(pinf, _TINY), max(dinf, _TINY)


def complementarity_residuals(
    partition: bounds_lib.BoundPartition, *, mu, x1, x2, z1, z2
):
  """Returns (cL, cU, center, Cinf, Cinf0).

  Cinf is the residual of X1 z1 = mu e, X2 z2 = mu e and Cinf0 the same for
  mu = 0. When no variable is bounded, Cinf0 = 0 and center = 1.
  """
  low, upp = partition.low, partition.upp
  x1z1 = x1[low] * z1[low]
  x2z2 = x2[upp] * z2[upp]
  cl = np.zeros_like(x1)
  cu = np.zeros_like(x2)
  cl[low] = mu - x1z1
  cu[upp] = mu - x2z2

  products = np.concatenate([x1z1, x2z2])
  if not products.size:
    return cl, cu, 1.0, 0.0, 0.0
  max_xz = max(np.max(products), _TINY)
  min_xz = max(np.min(products), _TINY)
  center = max_xz / min_xz
  cinf = _norm(np.concatenate([cl[low], cu[upp]]), np.inf)
  return cl, cu, center, cinf, max_xz


def merit(partition: bounds_lib.BoundPartition, res: Residuals) -> float:
  """The 2-norm of the six residual blocks."""
  low, upp = partition.low, partition.upp
  return float(
      _norm([
          _norm(res.r1),
          _norm(res.r2),
          _norm(res.rl[low]),
          _norm(res.ru[upp]),
          _norm(res.cl[low]),
          _norm(res.cu[upp]),
      ])
  )


def max_step(x: np.ndarray, dx: np.ndarray) -> float:
  """Largest step with x + step * dx >= 0, assuming x > 0.

  Only components with dx < 0 block the step; 1e20 means unblocked.
  """
  blocking = dx < 0
  if not np.any(blocking):
    return 1e20
  return float(np.min(x[blocking] / -dx[blocking]))
