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
"""Scaling of the problem data by estimates of |x| and |z|.

The scaled variables are

  xbar = x / beta,   ybar = y / zeta,   zbar = z / zeta,

with theta = beta * zeta. The scaled objective is phi(beta * xbar) / theta,
so its gradient is grad * beta / theta and its Hessian hess * beta^2 / theta.
With a good zeta the scaled gradient is close to one in size.
"""

import dataclasses
import logging

import numpy as np

from . import bounds as bounds_lib


@dataclasses.dataclass(frozen=True)
class Scaling:
  """Scale factors for x (beta) and for y, z (zeta)."""

  beta: float = 1.0
  zeta: float = 1.0

  @classmethod
  def from_sizes(cls, xsize: float | None, zsize: float | None) -> "Scaling":
    """Builds the scaling, falling back to 1 for zero or missing sizes."""
    beta = float(xsize) if xsize else 1.0
    zeta = float(zsize) if zsize else 1.0
    logging.debug("Scaling: beta=%e, zeta=%e", beta, zeta)
    return cls(beta=abs(beta), zeta=abs(zeta))

  @property
  def theta(self) -> float:
    return self.beta * self.zeta

  def scale_bounds(
      self,
      bl: np.ndarray,
      bu: np.ndarray,
      partition: bounds_lib.BoundPartition,
  ) -> tuple[np.ndarray, np.ndarray]:
    """Scales the finite bounds; sentinel values are left untouched."""
    return self._apply_bounds(bl, bu, partition, 1.0 / self.beta)

  def unscale_bounds(
      self,
      bl: np.ndarray,
      bu: np.ndarray,
      partition: bounds_lib.BoundPartition,
  ) -> tuple[np.ndarray, np.ndarray]:
    return self._apply_bounds(bl, bu, partition, self.beta)

  def _apply_bounds(self, bl, bu, partition, factor):
    bl = np.array(bl, dtype=np.float64)
    bu = np.array(bu, dtype=np.float64)
    lower = np.union1d(partition.fix, partition.low)
    upper = np.union1d(partition.fix, partition.upp)
    bl[lower] *= factor
    bu[upper] *= factor
    return bl, bu

  def scale_regularization(
      self, d1: np.ndarray, d2: np.ndarray
  ) -> tuple[np.ndarray, np.ndarray]:
    root_theta = np.sqrt(self.theta)
    return d1 * (self.beta / root_theta), d2 * (root_theta / self.beta)

  def scale_rhs(self, b: np.ndarray) -> np.ndarray:
    return b / self.beta

  def scale_point(self, x, y, z):
    return x / self.beta, y / self.zeta, z / self.zeta

  def unscale_point(self, x, y, z):
    return x * self.beta, y * self.zeta, z * self.zeta

  def scale_objective(self, obj, grad, hess):
    """Scales (obj, grad, hess) evaluated at the unscaled point beta*x."""
    return (
        obj / self.theta,
        grad * (self.beta / self.theta),
        hess * (self.beta**2 / self.theta),
    )
