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
"""Classification of variable bounds."""

import dataclasses

import numpy as np

BIG_LOWER = -9.9e19
BIG_UPPER = 9.9e19


@dataclasses.dataclass(frozen=True)
class BoundPartition:
  """Index sets describing the bounds bl <= x <= bu.

  `low`, `upp` and `two` overlap, while `fix` and `free` are disjoint from
  every other set. `zlo` and `zup` point to non-fixed variables whose lower
  (resp. upper) bound is exactly zero; these are kept strictly positive
  (resp. negative) throughout the iteration.

  Attributes:
    fix: Fixed variables, bl == bu.
    low: Finite lower bound, bl < bu.
    upp: Finite upper bound, bl < bu.
    two: Both bounds finite, bl < bu.
    free: No finite bound.
    zlo: bl == 0 and bl < bu.
    zup: bu == 0 and bl < bu.
    pos: Bounds [0, inf].
    neg: Bounds [-inf, 0].
  """

  fix: np.ndarray
  low: np.ndarray
  upp: np.ndarray
  two: np.ndarray
  free: np.ndarray
  zlo: np.ndarray
  zup: np.ndarray
  pos: np.ndarray
  neg: np.ndarray

  @property
  def lower_only(self) -> np.ndarray:
    return np.setdiff1d(self.low, self.two)

  @property
  def upper_only(self) -> np.ndarray:
    return np.setdiff1d(self.upp, self.two)

  @property
  def num_bounded(self) -> int:
    return self.low.size + self.upp.size

  def summary(self) -> str:
    return (
        "Bounds:\n  [0,inf]  [-inf,0]  Finite bl  Finite bu  Two bnds"
        "   Fixed    Free\n"
        f" {self.pos.size:8d} {self.neg.size:9d} {self.low.size:10d}"
        f" {self.upp.size:10d} {self.two.size:9d} {self.fix.size:7d}"
        f" {self.free.size:7d}\n"
        "  [0, bu]  [bl,  0]  excluding fixed variables\n"
        f" {self.zlo.size:8d} {self.zup.size:9d}"
    )


def classify_bounds(
    bl: np.ndarray,
    bu: np.ndarray,
    big_lower: float = BIG_LOWER,
    big_upper: float = BIG_UPPER,
) -> BoundPartition:
  """Partitions the variables according to their bounds.

  Args:
    bl: Lower bounds. Values <= big_lower (including -inf) mean "no bound".
    bu: Upper bounds. Values >= big_upper (including inf) mean "no bound".
    big_lower: Sentinel for a missing lower bound.
    big_upper: Sentinel for a missing upper bound.

  Returns:
    The BoundPartition of the variables.
  """
  bl = np.asarray(bl, dtype=np.float64)
  bu = np.asarray(bu, dtype=np.float64)
  has_lower = bl > big_lower
  has_upper = bu < big_upper
  open_interval = bl < bu

  def where(mask):
    return np.flatnonzero(mask)

  return BoundPartition(
      fix=where(bl == bu),
      low=where(has_lower & open_interval),
      upp=where(has_upper & open_interval),
      two=where(has_lower & has_upper & open_interval),
      free=where(~has_lower & ~has_upper),
      zlo=where((bl == 0) & open_interval),
      zup=where((bu == 0) & open_interval),
      pos=where((bl == 0) & ~has_upper),
      neg=where(~has_lower & (bu == 0)),
  )
