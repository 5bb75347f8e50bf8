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

"""Tests for the Newton direction and the direct solvers."""

import warnings

import numpy as np
import pytest
from pdco import bounds
from pdco import direct
from pdco import errors
from pdco import newton
from pdco import problem
from scipy import sparse

_M = newton.Method

_DIRECT_NORMAL = [_M.CHOLESKY, _M.QR]
_ITERATIVE_NORMAL = [_M.LSMR, _M.MINRES, _M.PCG]
_DIRECT_SQD = [
    _M.SQD_LU,
    _M.SQD_LDL,
    _M.SQD_BACKSLASH,
    _M.SQD_BACKSLASH_PERTURBED,
]


def _gen_system(m, n, fixed=(), random_state=None):
  """Generate the data of one Newton system and its exact solution."""
  rng = np.random.default_rng(random_state)
  a = sparse.random(
      m,
      n,
      density=0.4,
      format='csr',
      rng=rng,
      data_rvs=lambda x: rng.normal(size=x),
  )
  a = sparse.csr_matrix(a + sparse.eye(m, n))
  bl = np.zeros(n)
  bu = np.full(n, np.inf)
  for j in fixed:
    bu[j] = 0.0
  partition = bounds.classify_bounds(bl, bu)
  h2 = rng.uniform(0.5, 2.0, size=n)
  w = rng.normal(size=n)
  r1 = rng.normal(size=m)
  d2 = np.full(m, 0.1)

  # Reference solution with the fixed columns removed.
  w_ref = w.copy()
  w_ref[partition.fix] = 0.0
  afree = a @ sparse.diags((bl != bu).astype(float))
  k = sparse.bmat(
      [[-sparse.diags(h2), afree.T], [afree, sparse.diags(d2**2)]]
  ).toarray()
  sol = np.linalg.solve(k, np.concatenate([w_ref, r1]))
  data = dict(a=a, partition=partition, h2=h2, w=w, r1=r1, d2=d2)
  return data, sol[:n], sol[n:]


def _solver(data, method, **kwargs):
  m, n = data['a'].shape
  options = dict(
      method=method,
      cholesky_solver=direct.ScipyCholeskySolver,
      krylov_method=1,
      preconditioner=1,
      inner_max_iter_factor=20,
      conlim=1e12,
      max_iterative_refinement_steps=3,
      seed=0,
      calculate_error=False,
  )
  options.update(kwargs)
  return newton.NewtonSolver(
      problem.ConstraintOperator(data['a'], m, n),
      data['partition'],
      data['d2'],
      **options,
  )


@pytest.mark.parametrize('seed', 42 + np.arange(3))
@pytest.mark.parametrize('method', _DIRECT_NORMAL + _ITERATIVE_NORMAL)
def test_diagonal_methods_agree(method, seed):
  data, dx_ref, dy_ref = _gen_system(6, 15, random_state=seed)
  solver = _solver(data, method)
  dx, dy, stats = solver.solve_diagonal(
      data['h2'], data['w'], data['r1'], atol=1e-12, fmerit=1.0
  )
  solver.free()
  tol = 1e-8 if method in _DIRECT_NORMAL else 1e-5
  np.testing.assert_allclose(dy, dy_ref, atol=tol, rtol=tol)
  np.testing.assert_allclose(dx, dx_ref, atol=tol, rtol=tol)
  if method.iterative:
    assert stats.inner_iterations > 0
    assert np.isfinite(stats.r3ratio)
  else:
    assert stats.inner_iterations == 0


@pytest.mark.parametrize('seed', 142 + np.arange(3))
@pytest.mark.parametrize('method', _DIRECT_SQD + [_M.SQD_KRYLOV])
def test_augmented_methods_agree(method, seed):
  data, dx_ref, dy_ref = _gen_system(6, 15, random_state=seed)
  solver = _solver(data, method)
  dx, dy, stats = solver.solve_augmented(
      sparse.diags(data['h2']), data['w'], data['r1'], atol=1e-12, fmerit=1.0
  )
  solver.free()
  tol = 1e-8 if method != _M.SQD_KRYLOV else 1e-5
  np.testing.assert_allclose(dy, dy_ref, atol=tol, rtol=tol)
  np.testing.assert_allclose(dx, dx_ref, atol=tol, rtol=tol)
  # A dx + D2^2 dy = r1, so the violation of A dx = r1 is ||D2^2 dy||.
  np.testing.assert_allclose(
      stats.constraint_violation, np.linalg.norm(data['d2'] ** 2 * dy),
      rtol=1e-3, atol=1e-5,
  )
  assert stats.rel_residual < 1e-4
  assert np.isfinite(stats.lagrangian)


@pytest.mark.parametrize('method', [_M.CHOLESKY, _M.LSMR, _M.SQD_LU])
def test_fixed_variables_do_not_move(method):
  data, dx_ref, dy_ref = _gen_system(5, 12, fixed=(0, 3), random_state=7)
  solver = _solver(data, method)
  if method.diagonal:
    dx, dy, _ = solver.solve_diagonal(
        data['h2'], data['w'], data['r1'], atol=1e-12, fmerit=1.0
    )
  else:
    dx, dy, _ = solver.solve_augmented(
        sparse.diags(data['h2']), data['w'], data['r1'], atol=1e-12,
        fmerit=1.0,
    )
  np.testing.assert_array_equal(dx[[0, 3]], 0.0)
  np.testing.assert_allclose(dy, dy_ref, atol=1e-5)


def test_cholesky_reuses_ordering():
  data, _, _ = _gen_system(6, 15, random_state=11)
  solver = _solver(data, _M.CHOLESKY)
  solver.solve_diagonal(data['h2'], data['w'], data['r1'], 1e-12, 1.0)
  perm = solver._normal_perm  # pylint: disable=protected-access
  solver.solve_diagonal(2 * data['h2'], data['w'], data['r1'], 1e-12, 1.0)
  assert solver._normal_perm is perm  # pylint: disable=protected-access


@pytest.mark.parametrize('h2_value', [0.0, -1.0, np.nan])
def test_singular_curvature_raises(h2_value):
  data, _, _ = _gen_system(4, 8, random_state=13)
  h2 = data['h2'].copy()
  h2[2] = h2_value
  solver = _solver(data, _M.CHOLESKY)
  with pytest.raises(errors.IndefiniteSystemError):
    solver.solve_diagonal(h2, data['w'], data['r1'], 1e-12, 1.0)


def test_cholesky_backend_detects_indefinite_matrix():
  solver = direct.ScipyCholeskySolver()
  with pytest.raises(errors.IndefiniteSystemError):
    solver.update(sparse.csc_matrix(np.array([[1.0, 2.0], [2.0, 1.0]])))


def test_cholesky_backend_factor_is_sparse():
  n = 50
  mat = sparse.diags(
      [-np.ones(n - 1), 4 * np.ones(n), -np.ones(n - 1)], [-1, 0, 1],
      format='csc',
  )
  solver = direct.ScipyCholeskySolver()
  solver.update(mat)
  # No fill on a tridiagonal matrix in its natural order.
  assert solver.factorization.L.nnz <= 2 * n - 1
  assert solver.factorization.U.nnz <= 2 * n - 1
  rhs = np.arange(1.0, n + 1)
  np.testing.assert_allclose(mat @ solver.solve(rhs), rhs, rtol=1e-12)
  solver.free()
  assert solver.factorization is None


def test_cholesky_backend_rejects_nonfinite_matrix():
  solver = direct.ScipyCholeskySolver()
  with pytest.raises(errors.NonFiniteSolutionError):
    solver.update(sparse.csc_matrix(np.array([[1.0, np.inf], [0.0, 1.0]])))


@pytest.mark.parametrize('backend', [
    direct.ScipyLuSolver,
    direct.QdldlSolver,
    direct.SpsolveSolver,
])
def test_sqd_solver(backend):
  rng = np.random.default_rng(17)
  n, m = 8, 3
  a = sparse.csr_matrix(rng.normal(size=(m, n)))
  k = sparse.bmat(
      [[-sparse.diags(rng.uniform(1, 2, size=n)), a.T],
       [a, 0.01 * sparse.eye(m)]],
      format='csc',
  )
  rhs = rng.normal(size=n + m)
  solver = direct.SqdSolver(
      solver=backend(), perm=None, max_iterative_refinement_steps=5
  )
  solver.update(k)
  sol, info = solver.solve(rhs)
  solver.free()
  np.testing.assert_allclose(k @ sol, rhs, atol=1e-10)
  assert info['status'] == 'converged'


def test_perturbed_backslash_is_reproducible():
  data, _, _ = _gen_system(4, 8, random_state=19)
  results = []
  for _ in range(2):
    solver = _solver(data, _M.SQD_BACKSLASH_PERTURBED, seed=3)
    dx, _, _ = solver.solve_augmented(
        sparse.diags(data['h2']), data['w'], data['r1'], 1e-12, 1.0
    )
    results.append(dx)
  np.testing.assert_array_equal(results[0], results[1])


def test_exact_error_diagnostics():
  data, _, _ = _gen_system(6, 15, random_state=23)
  solver = _solver(data, _M.SQD_KRYLOV, calculate_error=True)
  _, _, stats = solver.solve_augmented(
      sparse.diags(data['h2']), data['w'], data['r1'], 1e-12, 1.0
  )
  assert set(stats.errors) == {
      'error',
      'error_norm',
      'primal_error_norm',
      'dual_error_norm',
  }
  assert stats.errors['error'] < 1e-5
  flat = stats.as_dict()
  assert 'error_norm' in flat and 'errors' not in flat


def test_krylov_histories_are_reported():
  data, _, _ = _gen_system(6, 15, random_state=37)
  solver = _solver(
      data, _M.SQD_KRYLOV, calculate_error=True, krylov_method=11
  )
  _, _, stats = solver.solve_augmented(
      sparse.diags(data['h2']), data['w'], data['r1'], 1e-12, 1.0
  )
  assert stats.converged
  assert stats.resvec[-1] < stats.resvec[0]
  assert len(stats.error_history) == len(stats.resvec)
  assert stats.error_history[-1] < 1e-5


def test_exact_error_never_raises():
  data, _, _ = _gen_system(3, 6, random_state=29)
  solver = _solver(data, _M.SQD_LU)
  singular = sparse.csr_matrix((9, 9))
  out = solver.exact_error(singular, np.ones(9), np.zeros(9))
  assert all(np.isnan(v) for v in out.values())


def test_early_termination_warns():
  data, _, _ = _gen_system(6, 15, random_state=31)
  solver = _solver(data, _M.MINRES, inner_max_iter_factor=1)
  solver.itnlim = 1
  with warnings.catch_warnings(record=True) as caught:
    warnings.simplefilter('always')
    _, _, stats = solver.solve_diagonal(
        data['h2'], data['w'], data['r1'], 1e-14, 1.0
    )
  assert not stats.converged
  assert any(
      issubclass(w.category, errors.InnerSolverEarlyTermination)
      for w in caught
  )


@pytest.mark.parametrize('value', ['qr', 2, _M.QR])
def test_parse_method(value):
  assert newton.resolve_method(value, explicit_a=True) == _M.QR


def test_resolve_method():
  assert newton.resolve_method(_M.AUTO, explicit_a=True) == _M.CHOLESKY
  assert newton.resolve_method(_M.AUTO, explicit_a=False) == _M.LSMR
  assert newton.resolve_method(_M.PCG, explicit_a=False) == _M.PCG
  assert newton.resolve_method(_M.SQD_LU, explicit_a=False) == _M.LSMR


@pytest.mark.parametrize('value', ['nope', 6, 99, None])
def test_unknown_method_raises(value):
  with pytest.raises(errors.ConfigurationError):
    newton.resolve_method(value, explicit_a=True)
  with pytest.raises(ValueError):
    newton.resolve_method(value, explicit_a=True)
