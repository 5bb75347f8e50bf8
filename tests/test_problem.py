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

"""Tests for bound classification, scaling and residual helpers."""

import numpy as np
import pdco
import pytest
from pdco import bounds
from pdco import problem
from pdco import scaling
from scipy import sparse


def _all_bound_kinds():
  inf = np.inf
  bl = np.array([0.0, -inf, 1.0, -2.0, 3.0, -inf, -1e21, 0.0, -4.0])
  bu = np.array([inf, 0.0, 5.0, inf, 3.0, 7.0, 1e21, 2.0, 0.0])
  return bl, bu


def test_classify_bounds():
  bl, bu = _all_bound_kinds()
  p = bounds.classify_bounds(bl, bu)
  np.testing.assert_array_equal(p.fix, [4])
  np.testing.assert_array_equal(p.low, [0, 2, 3, 7, 8])
  np.testing.assert_array_equal(p.upp, [1, 2, 5, 7, 8])
  np.testing.assert_array_equal(p.two, [2, 7, 8])
  np.testing.assert_array_equal(p.free, [6])
  np.testing.assert_array_equal(p.zlo, [0, 7])
  np.testing.assert_array_equal(p.zup, [1, 8])
  np.testing.assert_array_equal(p.pos, [0])
  np.testing.assert_array_equal(p.neg, [1])
  np.testing.assert_array_equal(p.lower_only, [0, 3])
  np.testing.assert_array_equal(p.upper_only, [1, 5])
  assert p.num_bounded == 10


def test_fixed_variables_are_in_no_other_class():
  bl, bu = _all_bound_kinds()
  p = bounds.classify_bounds(bl, bu)
  for other in (p.low, p.upp, p.two, p.free, p.zlo, p.zup):
    assert not np.intersect1d(p.fix, other).size


def test_bounds_summary_lists_counts():
  bl, bu = _all_bound_kinds()
  summary = bounds.classify_bounds(bl, bu).summary()
  assert "Fixed" in summary
  assert summary.splitlines()[2].split() == ["1", "1", "5", "5", "3", "1", "1"]


def test_scaling_factors():
  s = scaling.Scaling.from_sizes(10.0, 4.0)
  assert s.theta == 40.0
  d1, d2 = s.scale_regularization(np.array([2.0]), np.array([3.0]))
  np.testing.assert_allclose(d1, 2.0 * 10.0 / np.sqrt(40.0))
  np.testing.assert_allclose(d2, 3.0 * np.sqrt(40.0) / 10.0)
  obj, grad, hess = s.scale_objective(8.0, np.array([4.0]), np.array([2.0]))
  assert obj == 8.0 / 40.0
  np.testing.assert_allclose(grad, 4.0 * 10.0 / 40.0)
  np.testing.assert_allclose(hess, 2.0 * 100.0 / 40.0)


def test_scaling_falls_back_to_one():
  s = scaling.Scaling.from_sizes(0.0, None)
  assert s.beta == 1.0 and s.zeta == 1.0


def test_scale_bounds_leaves_missing_bounds():
  bl, bu = _all_bound_kinds()
  p = bounds.classify_bounds(bl, bu)
  s = scaling.Scaling.from_sizes(2.0, 1.0)
  sbl, sbu = s.scale_bounds(bl, bu, p)
  assert sbl[2] == 0.5 and sbu[2] == 2.5
  assert sbl[4] == 1.5 and sbu[4] == 1.5
  assert sbl[6] == -1e21 and sbu[6] == 1e21
  ubl, ubu = s.unscale_bounds(sbl, sbu, p)
  np.testing.assert_array_equal(ubl, bl)
  np.testing.assert_array_equal(ubu, bu)


def test_max_step():
  assert problem.max_step(np.array([1.0, 2.0]), np.array([-2.0, 1.0])) == 0.5
  assert problem.max_step(np.array([1.0]), np.array([1.0])) == 1e20
  assert problem.max_step(np.zeros(0), np.zeros(0)) == 1e20


def test_complementarity_without_bounds():
  p = bounds.classify_bounds(np.full(3, -np.inf), np.full(3, np.inf))
  zeros = np.zeros(3)
  _, _, center, cinf, cinf0 = problem.complementarity_residuals(
      p, mu=0.1, x1=zeros, x2=zeros, z1=zeros, z2=zeros
  )
  assert (center, cinf, cinf0) == (1.0, 0.0, 0.0)


def test_primal_dual_residuals():
  a = problem.ConstraintOperator(np.array([[1.0, 2.0, 3.0]]), 1, 3)
  bl = np.array([0.0, 1.0, -np.inf])
  bu = np.array([np.inf, 1.0, 2.0])
  p = bounds.classify_bounds(bl, bu)
  x = np.array([1.0, 1.0, 1.0])
  x1 = np.array([0.5, 0.0, 0.0])
  x2 = np.array([0.0, 0.0, 1.0])
  z1 = np.array([2.0, 0.0, 0.0])
  z2 = np.array([0.0, 0.0, 3.0])
  y = np.array([1.0])
  grad = np.array([1.0, 1.0, 1.0])
  r1, r2, rl, ru, pinf, dinf = problem.primal_dual_residuals(
      a, p, b=np.array([10.0]), bl=bl, bu=bu, d2=np.array([0.5]),
      grad=grad, x=x, x1=x1, x2=x2, y=y, z1=z1, z2=z2,
  )
  # The fixed variable is excluded from A x and from r2.
  np.testing.assert_allclose(r1, [10.0 - 4.0 - 0.25])
  np.testing.assert_allclose(r2, [1.0 - 1.0 - 2.0, 0.0, 1.0 - 3.0 + 3.0])
  np.testing.assert_allclose(rl[0], 0.0 - 1.0 + 0.5)
  np.testing.assert_allclose(ru[2], -2.0 + 1.0 + 1.0)
  assert pinf == 5.75
  assert dinf == 2.0


def test_objective_adapter_shapes():
  def phi(x):
    return x @ x, 2 * x, 2 * sparse.eye(x.size)

  x = np.arange(3.0)
  _, _, hess = problem.Objective(phi, 3, diagonal=True)(x)
  np.testing.assert_allclose(hess, [2.0, 2.0, 2.0])
  _, _, hess = problem.Objective(phi, 3, diagonal=False)(x)
  assert sparse.issparse(hess)
  obj, grad, hess = problem.Objective(np.ones(3), 3, diagonal=False)(x)
  assert obj == 3.0
  np.testing.assert_allclose(grad, 1.0)
  assert hess.nnz == 0
  with pytest.raises(ValueError):
    problem.Objective(np.ones(4), 3, diagonal=True)


def test_constraint_operator_from_callback():
  mat = np.array([[1.0, 2.0], [3.0, 4.0], [0.0, 1.0]])

  def apply(mode, m, n, v):
    return mat @ v if mode == 1 else mat.T @ v

  op = problem.ConstraintOperator(apply, 3, 2)
  assert not op.explicit
  assert op.nnz() is None
  np.testing.assert_allclose(op.matvec(np.ones(2)), mat @ np.ones(2))
  np.testing.assert_allclose(op.rmatvec(np.ones(3)), mat.T @ np.ones(3))
  np.testing.assert_allclose(
      op.largest_singular_value(), np.linalg.norm(mat, 2), rtol=1e-8
  )
  with pytest.raises(TypeError):
    op.sparse()


def test_constraint_operator_shape_mismatch():
  with pytest.raises(ValueError):
    problem.ConstraintOperator(np.ones((2, 3)), 2, 4)


def test_distribution_bins():
  edges, counts = pdco.distribution(np.array([0.0, 2e-3, 0.5, -3.0]))
  assert edges[0] == 1.0
  assert edges[-1] == 0.0
  np.testing.assert_array_equal(counts, [1, 1, 0, 1, 0, 0, 0, 0, 0, 1])
