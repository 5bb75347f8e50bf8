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
"""Exceptions and warnings raised by the barrier method."""


class PDCOError(Exception):
  """Base class for solver errors.

  Attributes:
    iteration: Outer iteration at which the error was raised, if known.
    pinf: Primal infeasibility at that iteration.
    dinf: Dual infeasibility at that iteration.
    cinf: Complementarity residual at that iteration.
  """

  def __init__(
      self,
      message: str,
      *,
      iteration: int | None = None,
      pinf: float | None = None,
      dinf: float | None = None,
      cinf: float | None = None,
  ):
    super().__init__(message)
    self.iteration = iteration
    self.pinf = pinf
    self.dinf = dinf
    self.cinf = cinf

  def __str__(self):
    message = super().__str__()
    if self.iteration is None:
      return message
    return (
        f"{message} (iteration={self.iteration}, pinf={self.pinf},"
        f" dinf={self.dinf}, cinf={self.cinf})"
    )


class ConfigurationError(PDCOError, ValueError):
  """An option has an unsupported value."""


class IndefiniteSystemError(PDCOError):
  """A factorization that requires positive definiteness failed."""


class NonFiniteSolutionError(PDCOError):
  """A linear solve returned NaN or Inf entries."""


class LinesearchExhausted(PDCOError):
  """The backtracking linesearch reached its trial limit.

  Attributes:
    nf: Number of merit function evaluations.
    step: The last (rejected) step length.
  """

  def __init__(self, message: str, *, nf: int, step: float, **kwargs):
    super().__init__(message, **kwargs)
    self.nf = nf
    self.step = step


class PreconditionerBuildFailure(PDCOError):
  """A preconditioner could not be constructed."""


class InnerSolverEarlyTermination(UserWarning):
  """A Krylov method stopped before reaching the requested tolerance."""
