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

"""Tests for the Krylov methods and the preconditioners."""

import itertools

import numpy as np
import pytest
from pdco import errors
from pdco import krylov
from pdco import preconditioners
from scipy import sparse

_KM = krylov.KrylovMethod
_PT = preconditioners.PreconditionerType


def _gen_sqd(n, m, d2=0.1, tridiagonal=False, random_state=None):
  """Generate K = [-H, A'; A, D2^2] with H positive definite."""
  rng = np.random.default_rng(random_state)
  h = sparse.diags(rng.uniform(1.0, 2.0, size=n))
  if tridiagonal:
    off = 0.3 * np.ones(n - 1)
    h = h + sparse.diags([off, off], [-1, 1])
  a = sparse.random(
      m,
      n,
      density=0.5,
      format='csr',
      rng=rng,
      data_rvs=lambda x: rng.normal(size=x),
  )
  # Every row of A gets at least one entry.
  a = sparse.csr_matrix(a + sparse.eye(m, n))
  k = sparse.bmat(
      [[-h, a.T], [a, d2**2 * sparse.eye(m)]], format='csr'
  )
  rhs = rng.normal(size=n + m)
  return k, rhs


def _assert_solves(k, rhs, x, rtol=1e-6):
  np.testing.assert_array_less(
      np.linalg.norm(rhs - k @ x), rtol * np.linalg.norm(rhs)
  )


_SYMMETRIC = [_KM.MINRES, _KM.MINRES_LANCZOS, _KM.SCIPY_MINRES, _KM.SYMMLQ]
_NONSYMMETRIC = [_KM.GMRES, _KM.SCIPY_GMRES, _KM.TFQMR, _KM.BICGSTAB]
_POSITIVE_DEFINITE = [
    _PT.AUGMENTED_LAGRANGIAN,
    _PT.INCOMPLETE_CHOLESKY,
    _PT.SCHUR_DIAGONAL,
    _PT.SCHUR_INCOMPLETE_CHOLESKY,
    _PT.SCHUR_JACOBI,
]

# Pairs that must reach the tolerance on a well conditioned SQD system.
# MINRES-type methods need a positive definite preconditioner, PCG on the
# indefinite -K needs one that is (nearly) exact, and the structured PCG
# methods choose their own preconditioner.
_CONVERGING_PAIRS = (
    list(itertools.product(_SYMMETRIC, _POSITIVE_DEFINITE))
    + list(itertools.product([_KM.GMRES, _KM.SCIPY_GMRES], _PT))
    + list(
        itertools.product(
            [_KM.TFQMR, _KM.BICGSTAB],
            [_PT.ILU, _PT.CONSTRAINT, _PT.SCHUR_DIAGONAL],
        )
    )
    + [(_KM.PCG, _PT.ILU), (_KM.PCG, _PT.CONSTRAINT)]
    + list(itertools.product([_KM.CONSTRAINT_PCG, _KM.SCHUR_PCG], _PT))
)


@pytest.mark.parametrize('seed', 42 + np.arange(2))
@pytest.mark.parametrize('method,kind', _CONVERGING_PAIRS)
def test_method_preconditioner_pairs(method, kind, seed):
  n, m = 12, 5
  k, rhs = _gen_sqd(n, m, tridiagonal=method.value >= 10, random_state=seed)
  result = krylov.solve_augmented(
      k, rhs, n, m, method=method, preconditioner=kind, rtol=1e-10,
      maxiter=500,
  )
  assert result.converged
  assert result.iterations > 0
  _assert_solves(k, rhs, result.x)
  np.testing.assert_allclose(
      result.residual_norm, np.linalg.norm(rhs - k @ result.x)
  )


@pytest.mark.parametrize('kind', list(_PT))
@pytest.mark.parametrize('method', _NONSYMMETRIC)
def test_converged_status_means_small_residual(method, kind):
  """A method may fail with a poor preconditioner, but never silently."""
  n, m = 12, 5
  k, rhs = _gen_sqd(n, m, random_state=142)
  result = krylov.solve_augmented(
      k, rhs, n, m, method=method, preconditioner=kind, rtol=1e-10,
      maxiter=500,
  )
  if result.converged:
    _assert_solves(k, rhs, result.x)
  else:
    assert result.status in (
        krylov.KrylovStatus.ITERATION_LIMIT,
        krylov.KrylovStatus.TOLERANCE_LIMIT,
        krylov.KrylovStatus.BREAKDOWN,
    )


def test_scipy_convergence_is_checked_against_true_residual(monkeypatch):
  """scipy's own flag is downgraded when x does not solve the system."""

  def stops_immediately(a, b, **kwargs):
    del a, kwargs  # Unused.
    return np.zeros_like(b), 0

  monkeypatch.setattr(krylov.spla, 'tfqmr', stops_immediately)
  n, m = 12, 5
  k, rhs = _gen_sqd(n, m, random_state=242)
  result = krylov.solve_augmented(
      k, rhs, n, m, method=_KM.TFQMR, preconditioner=_PT.ILU, rtol=1e-10,
      maxiter=500,
  )
  assert result.status == krylov.KrylovStatus.TOLERANCE_LIMIT
  np.testing.assert_allclose(result.residual_norm, np.linalg.norm(rhs))


@pytest.mark.parametrize(
    'kind',
    [
        _PT.AUGMENTED_LAGRANGIAN,
        _PT.INCOMPLETE_CHOLESKY,
        _PT.SCHUR_DIAGONAL,
        _PT.SCHUR_INCOMPLETE_CHOLESKY,
        _PT.SCHUR_JACOBI,
    ],
)
def test_preconditioner_is_positive_definite(kind):
  n, m = 10, 4
  k, _ = _gen_sqd(n, m, random_state=442)
  p = preconditioners.build_preconditioner(-k, n, m, kind)
  rng = np.random.default_rng(0)
  for _ in range(5):
    v = rng.normal(size=n + m)
    out = p.apply(v)
    assert out.shape == (n + m,)
    assert v @ out > 0


def test_ilu_preconditioner_is_nearly_exact():
  n, m = 10, 4
  k, rhs = _gen_sqd(n, m, random_state=542)
  p = preconditioners.build_preconditioner(-k, n, m, _PT.ILU)
  err = np.linalg.norm(p.apply(-k @ rhs) - rhs)
  np.testing.assert_array_less(err, 1e-2 * np.linalg.norm(rhs))


def test_constraint_preconditioner_is_exact_for_diagonal_h():
  n, m = 10, 4
  k, rhs = _gen_sqd(n, m, random_state=642)
  p = preconditioners.build_preconditioner(-k, n, m, _PT.CONSTRAINT)
  np.testing.assert_allclose(p.apply(-k @ rhs), rhs, rtol=1e-10, atol=1e-10)


def test_preconditioner_enum_values():
  assert [t.value for t in _PT] == list(range(1, 8))
  assert [t.value for t in _KM] == list(range(1, 12))


def test_incomplete_cholesky_shifts_on_breakdown():
  mat = sparse.csr_matrix(np.array([[1.0, 2.0], [2.0, 1.0]]))
  ic = preconditioners.IncompleteCholesky(mat)
  assert ic.shift > 1.0
  assert np.all(np.isfinite(ic.apply(np.ones(2))))


def test_incomplete_cholesky_exact_for_tridiagonal():
  """IC(0) has no dropped fill on a tridiagonal matrix."""
  n = 6
  mat = sparse.diags(
      [-np.ones(n - 1), 4 * np.ones(n), -np.ones(n - 1)], [-1, 0, 1],
      format='csr',
  )
  ic = preconditioners.IncompleteCholesky(mat)
  assert ic.shift == 0.0
  v = np.arange(1.0, n + 1)
  np.testing.assert_allclose(ic.apply(mat @ v), v, rtol=1e-10)


def test_incomplete_cholesky_of_dense_schur_complement():
  rng = np.random.default_rng(17)
  a = rng.normal(size=(30, 40))
  mat = sparse.csr_matrix(a @ a.T + 0.1 * np.eye(30))
  ic = preconditioners.IncompleteCholesky(mat)
  assert ic.shift == 0.0
  v = rng.normal(size=30)
  np.testing.assert_allclose(ic.apply(mat @ v), v, rtol=1e-8, atol=1e-8)


def test_incomplete_cholesky_rejects_nonpositive_diagonal():
  mat = sparse.csr_matrix(np.array([[1.0, 0.0], [0.0, -1.0]]))
  with pytest.raises(errors.PreconditionerBuildFailure):
    preconditioners.IncompleteCholesky(mat)


def test_normal_equations_chain():
  a = sparse.csr_matrix(np.array([[1.0, 2.0, 0.0], [0.0, 1.0, 3.0]]))
  d = np.array([1.0, 0.5, 2.0])
  d2 = np.full(2, 1e-2)
  chain = preconditioners.normal_equations_chain(a, d, d2)
  assert [name for name, _ in chain] == [
      'incomplete_cholesky',
      'diagonal',
      'identity',
  ]
  s = (a @ sparse.diags(d**2) @ a.T).toarray() + np.diag(d2**2)
  for _, build in chain[:2]:
    p = build()
    assert p.apply(np.ones(2)) @ np.ones(2) > 0
  # IC(0) of a dense 2 x 2 matrix is its exact Cholesky factor.
  np.testing.assert_allclose(chain[0][1]().apply(s @ np.ones(2)), 1.0)
  assert [name for name, _ in
          preconditioners.normal_equations_chain(None, d, d2)] == ['identity']


def test_pcg_on_spd_system():
  rng = np.random.default_rng(742)
  b = rng.normal(size=8)
  mat = np.diag(np.arange(1.0, 9.0))
  exact = b / np.arange(1.0, 9.0)
  result = krylov.pcg(mat, b, rtol=1e-12, maxiter=50, exact=exact)
  assert result.converged
  np.testing.assert_allclose(result.x, exact, rtol=1e-10)
  assert result.errors[-1] < result.errors[0]


def test_minres_reports_iteration_limit():
  rng = np.random.default_rng(842)
  mat = np.diag(np.linspace(-3.0, 5.0, 30))
  b = rng.normal(size=30)
  result = krylov.minres(mat, b, rtol=1e-14, maxiter=2)
  assert result.status == krylov.KrylovStatus.ITERATION_LIMIT
  assert result.iterations == 2
  assert not result.converged
