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
"""Krylov subspace methods for the augmented Newton system.

Every method takes an operator `a` (sparse matrix, dense array or
LinearOperator), a right-hand side `b`, a preconditioner solve `psolve`
(v -> M^-1 v, identity if None), a relative tolerance and an iteration limit,
and returns a KrylovResult. The symmetric methods (minres, minres_lanczos,
symmlq, pcg) need a positive definite preconditioner.
"""

import dataclasses
import enum
import logging
from typing import Callable

import numpy as np
import scipy.linalg
import scipy.sparse as sp
import scipy.sparse.linalg as spla

from . import errors
from . import preconditioners as pre_lib

_EPS = np.finfo(np.float64).eps
# A scipy method counts as converged if its true residual is within this
# factor of the requested one.
_RESIDUAL_SLACK = 10.0
_norm = np.linalg.norm

PSolve = Callable[[np.ndarray], np.ndarray]


class KrylovMethod(enum.IntEnum):
  """Krylov methods for the augmented system."""

  MINRES = 1
  MINRES_LANCZOS = 2
  SCIPY_MINRES = 3
  GMRES = 4
  SCIPY_GMRES = 5
  PCG = 6
  TFQMR = 7
  SYMMLQ = 8
  BICGSTAB = 9
  CONSTRAINT_PCG = 10
  SCHUR_PCG = 11


class KrylovStatus(enum.Enum):
  """Why a Krylov method stopped."""

  CONVERGED = "converged"
  ITERATION_LIMIT = "iteration_limit"
  TOLERANCE_LIMIT = "tolerance_limit"
  BREAKDOWN = "breakdown"


@dataclasses.dataclass(frozen=True)
class KrylovResult:
  """Output of a Krylov method.

  Attributes:
    x: The approximate solution.
    iterations: Number of iterations (matrix-vector products) performed.
    residual_norm: ||b - A x||.
    status: Why the method stopped.
    resvec: Residual norm history, if the method records one.
    errors: History of ||x_k - x_exact||, if an exact solution was given.
  """

  x: np.ndarray
  iterations: int
  residual_norm: float
  status: KrylovStatus
  resvec: np.ndarray | None = None
  errors: np.ndarray | None = None

  @property
  def converged(self) -> bool:
    return self.status == KrylovStatus.CONVERGED


def _identity(v: np.ndarray) -> np.ndarray:
  return v


def _prepare(a, b, psolve, maxiter):
  a = spla.aslinearoperator(a)
  b = np.asarray(b, dtype=np.float64).ravel()
  if maxiter is None:
    maxiter = 5 * b.size
  return a, b, psolve or _identity, max(int(maxiter), 1)


def _finish(a, b, x, iterations, status, resvec=None, errs=None):
  residual_norm = float(_norm(b - a.matvec(x))) if b.size else 0.0
  return KrylovResult(
      x=x,
      iterations=iterations,
      residual_norm=residual_norm,
      status=status,
      resvec=None if resvec is None else np.asarray(resvec),
      errors=None if errs is None else np.asarray(errs),
  )


def minres(
    a,
    b: np.ndarray,
    *,
    psolve: PSolve | None = None,
    rtol: float = 1e-8,
    maxiter: int | None = None,
    shift: float = 0.0,
    conlim: float = 1e12,
) -> KrylovResult:
  """Preconditioned MINRES of Paige and Saunders for (A - shift I) x = b.

  The method stops when the preconditioned residual has been reduced by
  `rtol`, when ||A r|| / (||A|| ||r||) <= rtol (singular compatible systems),
  when the condition estimate exceeds `conlim` or when `maxiter` is reached.
  """
  a, b, psolve, maxiter = _prepare(a, b, psolve, maxiter)
  n = b.size
  x = np.zeros(n)

  r1 = b.copy()
  y = psolve(r1)
  beta1 = r1 @ y
  if beta1 < 0:
    return _finish(a, b, x, 0, KrylovStatus.BREAKDOWN)
  if beta1 == 0:
    return _finish(a, b, x, 0, KrylovStatus.CONVERGED, resvec=[0.0])
  beta1 = np.sqrt(beta1)

  r2 = r1
  oldb, beta, dbar, epsln = 0.0, beta1, 0.0, 0.0
  phibar = beta1
  tnorm2, gmax, gmin = 0.0, 0.0, np.finfo(np.float64).max
  cs, sn = -1.0, 0.0
  w = np.zeros(n)
  w2 = np.zeros(n)
  resvec = [beta1]
  status = KrylovStatus.ITERATION_LIMIT

  itn = 0
  while itn < maxiter:
    itn += 1
    v = y / beta
    y = a.matvec(v) - shift * v
    if itn >= 2:
      y = y - (beta / oldb) * r1
    alfa = v @ y
    y = y - (alfa / beta) * r2
    r1, r2 = r2, y
    y = psolve(r2)
    oldb = beta
    beta = r2 @ y
    if beta < 0 or not np.isfinite(beta):
      status = KrylovStatus.BREAKDOWN
      break
    beta = np.sqrt(beta)
    tnorm2 += alfa**2 + oldb**2 + beta**2

    # Apply the previous rotation, then compute and apply the next one.
    oldeps = epsln
    delta = cs * dbar + sn * alfa
    gbar = sn * dbar - cs * alfa
    epsln = sn * beta
    dbar = -cs * beta
    root = np.hypot(gbar, dbar)
    arnorm = phibar * root

    gamma = max(np.hypot(gbar, beta), _EPS)
    cs, sn = gbar / gamma, beta / gamma
    phi = cs * phibar
    phibar = sn * phibar

    w1, w2 = w2, w
    w = (v - oldeps * w1 - delta * w2) / gamma
    x = x + phi * w

    gmax = max(gmax, gamma)
    gmin = min(gmin, gamma)
    anorm = np.sqrt(tnorm2)
    rnorm = phibar
    resvec.append(rnorm)

    test1 = rnorm / beta1
    test2 = arnorm / (anorm * rnorm) if rnorm > 0 else 0.0
    acond = gmax / gmin

    if test1 <= rtol or test2 <= rtol or beta == 0:
      status = KrylovStatus.CONVERGED
      break
    if 1 + test1 <= 1 or 1 + test2 <= 1 or acond >= conlim:
      status = KrylovStatus.TOLERANCE_LIMIT
      break

  logging.debug("minres: itn=%d, status=%s", itn, status.value)
  return _finish(a, b, x, itn, status, resvec=resvec)


def minres_lanczos(
    a,
    b: np.ndarray,
    *,
    psolve: PSolve | None = None,
    rtol: float = 1e-8,
    maxiter: int | None = None,
) -> KrylovResult:
  """Preconditioned MINRES in the Lanczos form of Elman, Silvester & Wathen.

  `resvec` holds the preconditioned residual norm at every iteration.
  """
  a, b, psolve, maxiter = _prepare(a, b, psolve, maxiter)
  n = b.size
  x = np.zeros(n)

  v_old = np.zeros(n)
  v = b.copy()
  z = psolve(v)
  gamma2 = z @ v
  if gamma2 < 0:
    return _finish(a, b, x, 0, KrylovStatus.BREAKDOWN)
  gamma = np.sqrt(gamma2)
  resvec = [gamma]
  if gamma == 0:
    return _finish(a, b, x, 0, KrylovStatus.CONVERGED, resvec=resvec)

  gamma_old = 1.0
  w_old = np.zeros(n)
  w = np.zeros(n)
  eta = gamma
  s_old = s = 0.0
  c_old = c = 1.0
  status = KrylovStatus.ITERATION_LIMIT

  itn = 0
  while itn < maxiter:
    itn += 1
    z = z / gamma
    az = a.matvec(z)
    delta = az @ z
    v_new = az - (delta / gamma) * v - (gamma / gamma_old) * v_old
    z_new = psolve(v_new)
    gamma_new2 = z_new @ v_new
    if gamma_new2 < 0 or not np.isfinite(gamma_new2):
      status = KrylovStatus.BREAKDOWN
      break
    gamma_new = np.sqrt(gamma_new2)

    alpha0 = c * delta - c_old * s * gamma
    alpha1 = np.hypot(alpha0, gamma_new)
    alpha2 = s * delta + c_old * c * gamma
    alpha3 = s_old * gamma
    if alpha1 == 0:
      status = KrylovStatus.BREAKDOWN
      break
    c_new, s_new = alpha0 / alpha1, gamma_new / alpha1

    w_new = (z - alpha3 * w_old - alpha2 * w) / alpha1
    x = x + c_new * eta * w_new
    eta = -s_new * eta
    resvec.append(abs(eta))

    v_old, v = v, v_new
    z = z_new
    gamma_old, gamma = gamma, gamma_new
    w_old, w = w, w_new
    c_old, c = c, c_new
    s_old, s = s, s_new

    if abs(eta) <= rtol * resvec[0] or gamma == 0:
      status = KrylovStatus.CONVERGED
      break

  logging.debug("minres_lanczos: itn=%d, status=%s", itn, status.value)
  return _finish(a, b, x, itn, status, resvec=resvec)


def symmlq(
    a,
    b: np.ndarray,
    *,
    psolve: PSolve | None = None,
    rtol: float = 1e-8,
    maxiter: int | None = None,
    conlim: float = 1e12,
) -> KrylovResult:
  """Preconditioned SYMMLQ of Paige and Saunders.

  Iterates on the LQ factorization of the Lanczos matrix and returns the CG
  point when its residual is smaller than the LQ residual. Convergence is
  declared when the CG residual satisfies ||r|| <= rtol * beta1.
  """
  a, b, psolve, maxiter = _prepare(a, b, psolve, maxiter)
  n = b.size
  x = np.zeros(n)

  r1 = b.copy()
  y = psolve(r1)
  beta1 = r1 @ y
  if beta1 < 0:
    return _finish(a, b, x, 0, KrylovStatus.BREAKDOWN)
  if beta1 == 0:
    return _finish(a, b, x, 0, KrylovStatus.CONVERGED, resvec=[0.0])
  beta1 = np.sqrt(beta1)

  # First Lanczos step.
  v = y / beta1
  y = a.matvec(v)
  alfa = v @ y
  y = y - (alfa / beta1) * r1
  y = y - ((v @ y) / (v @ v)) * v
  r2 = y
  y = psolve(r2)
  oldb = beta1
  beta = r2 @ y
  if beta < 0:
    return _finish(a, b, x, 1, KrylovStatus.BREAKDOWN)
  beta = np.sqrt(beta)

  gbar, dbar = alfa, beta
  rhs1, rhs2 = beta1, 0.0
  snprod = 1.0
  tnorm2 = alfa**2 + beta**2
  ynorm2 = 0.0
  gmax = abs(alfa) + _EPS
  gmin = gmax
  w = v.copy()
  resvec = [beta1]
  status = KrylovStatus.ITERATION_LIMIT

  itn = 1
  while True:
    anorm = np.sqrt(tnorm2)
    ynorm = np.sqrt(ynorm2)
    epsx = anorm * ynorm * _EPS
    diag = gbar if gbar != 0 else max(anorm * _EPS, _EPS)
    lqnorm = np.hypot(rhs1, rhs2)
    qrnorm = snprod * beta1
    cgnorm = qrnorm * beta / abs(diag)
    if lqnorm <= cgnorm:
      acond = gmax / gmin
    else:
      acond = gmax / min(gmin, abs(diag))
    resvec.append(min(cgnorm, lqnorm))

    if cgnorm <= rtol * beta1 or cgnorm <= epsx:
      status = KrylovStatus.CONVERGED
      break
    if acond >= conlim:
      status = KrylovStatus.TOLERANCE_LIMIT
      break
    if itn >= maxiter:
      break

    # Next Lanczos step.
    itn += 1
    v = y / beta
    y = a.matvec(v)
    y = y - (beta / oldb) * r1
    alfa = v @ y
    y = y - (alfa / beta) * r2
    r1, r2 = r2, y
    y = psolve(r2)
    oldb = beta
    beta = r2 @ y
    if beta < 0 or not np.isfinite(beta):
      status = KrylovStatus.BREAKDOWN
      break
    beta = np.sqrt(beta)
    tnorm2 += alfa**2 + oldb**2 + beta**2

    # Rotation that annihilates oldb in the LQ factorization.
    gamma = np.hypot(gbar, oldb)
    cs, sn = gbar / gamma, oldb / gamma
    delta = cs * dbar + sn * alfa
    gbar = sn * dbar - cs * alfa
    epsln = sn * beta
    dbar = -cs * beta

    z = rhs1 / gamma
    x = x + (z * cs) * w + (z * sn) * v
    w = sn * w - cs * v

    snprod *= sn
    gmax = max(gmax, gamma)
    gmin = min(gmin, gamma)
    ynorm2 += z**2
    rhs1 = rhs2 - delta * z
    rhs2 = -epsln * z

  if status != KrylovStatus.BREAKDOWN and cgnorm <= lqnorm:
    x = x + (rhs1 / diag) * w

  logging.debug("symmlq: itn=%d, status=%s", itn, status.value)
  return _finish(a, b, x, itn, status, resvec=resvec)


def gmres(
    a,
    b: np.ndarray,
    *,
    psolve: PSolve | None = None,
    rtol: float = 1e-8,
    maxiter: int | None = None,
    restart: int = 20,
) -> KrylovResult:
  """Right-preconditioned GMRES restarted every `restart` iterations.

  `maxiter` counts inner iterations over all restart cycles.
  """
  a, b, psolve, maxiter = _prepare(a, b, psolve, maxiter)
  n = b.size
  x = np.zeros(n)
  bnorm = _norm(b)
  r = b.copy()
  resvec = [_norm(r)]
  if bnorm == 0:
    return _finish(a, b, x, 0, KrylovStatus.CONVERGED, resvec=resvec)

  restart = max(1, min(restart, n))
  status = KrylovStatus.ITERATION_LIMIT
  itn = 0
  while itn < maxiter:
    beta = _norm(r)
    if beta <= rtol * bnorm:
      status = KrylovStatus.CONVERGED
      break
    basis = np.zeros((restart + 1, n))
    precond_basis = np.zeros((restart, n))
    hess = np.zeros((restart + 1, restart))
    cs = np.zeros(restart)
    sn = np.zeros(restart)
    g = np.zeros(restart + 1)
    basis[0] = r / beta
    g[0] = beta

    k = 0
    for j in range(restart):
      itn += 1
      k = j + 1
      precond_basis[j] = psolve(basis[j])
      w = a.matvec(precond_basis[j])
      for i in range(j + 1):
        hess[i, j] = w @ basis[i]
        w = w - hess[i, j] * basis[i]
      hess[j + 1, j] = _norm(w)
      if hess[j + 1, j] > 0:
        basis[j + 1] = w / hess[j + 1, j]

      for i in range(j):
        hij = hess[i, j]
        hess[i, j] = cs[i] * hij + sn[i] * hess[i + 1, j]
        hess[i + 1, j] = -sn[i] * hij + cs[i] * hess[i + 1, j]
      denom = np.hypot(hess[j, j], hess[j + 1, j])
      if denom == 0:
        status = KrylovStatus.BREAKDOWN
        k = j
        break
      cs[j], sn[j] = hess[j, j] / denom, hess[j + 1, j] / denom
      hess[j, j] = denom
      hess[j + 1, j] = 0.0
      g[j + 1] = -sn[j] * g[j]
      g[j] = cs[j] * g[j]
      resvec.append(abs(g[j + 1]))

      if abs(g[j + 1]) <= rtol * bnorm or itn >= maxiter:
        break

    if k > 0:
      coef = scipy.linalg.solve_triangular(hess[:k, :k], g[:k])
      x = x + precond_basis[:k].T @ coef
    r = b - a.matvec(x)
    if status == KrylovStatus.BREAKDOWN:
      break
  else:
    if _norm(r) <= rtol * bnorm:
      status = KrylovStatus.CONVERGED

  logging.debug("gmres: itn=%d, status=%s", itn, status.value)
  return _finish(a, b, x, itn, status, resvec=resvec)


def pcg(
    a,
    b: np.ndarray,
    *,
    psolve: PSolve | None = None,
    rtol: float = 1e-8,
    atol: float = 0.0,
    maxiter: int | None = None,
    exact: np.ndarray | None = None,
) -> KrylovResult:
  """Preconditioned conjugate gradients.

  Negative curvature p'Ap < 0 is not treated as breakdown, so the method can
  be applied (without guarantees) to the indefinite augmented system. If
  `exact` is given, ||x_k - exact|| is recorded at every iteration.
  """
  a, b, psolve, maxiter = _prepare(a, b, psolve, maxiter)
  x = np.zeros(b.size)
  r = b.copy()
  tolerance = max(rtol * _norm(b), atol)
  resvec = [_norm(r)]
  errs = None if exact is None else [_norm(x - exact)]
  if resvec[0] <= tolerance:
    return _finish(a, b, x, 0, KrylovStatus.CONVERGED, resvec, errs)

  z = psolve(r)
  p = z.copy()
  rz = r @ z
  status = KrylovStatus.ITERATION_LIMIT
  itn = 0
  while itn < maxiter:
    itn += 1
    q = a.matvec(p)
    pq = p @ q
    if pq == 0 or not np.isfinite(pq) or rz == 0:
      status = KrylovStatus.BREAKDOWN
      break
    alpha = rz / pq
    x = x + alpha * p
    r = r - alpha * q
    resvec.append(_norm(r))
    if errs is not None:
      errs.append(_norm(x - exact))
    if resvec[-1] <= tolerance:
      status = KrylovStatus.CONVERGED
      break
    z = psolve(r)
    rz_new = r @ z
    if not np.isfinite(rz_new):
      status = KrylovStatus.BREAKDOWN
      break
    p = z + (rz_new / rz) * p
    rz = rz_new

  logging.debug("pcg: itn=%d, status=%s", itn, status.value)
  return _finish(a, b, x, itn, status, resvec, errs)


def _scipy_method(fn, a, b, psolve, rtol, maxiter, *, right=False, **kwargs):
  """Runs a scipy.sparse.linalg Krylov method, counting iterations.

  With `right`, the method is applied to A M^-1 u = b without a
  preconditioner and x = M^-1 u, so its stopping test measures the true
  residual. Otherwise M is passed to scipy. In both cases the reported
  status is CONVERGED only if ||b - A x|| <= _RESIDUAL_SLACK * rtol * ||b||.
  """
  a, b, psolve, maxiter = _prepare(a, b, psolve, maxiter)
  iterations = 0

  def callback(_):
    nonlocal iterations
    iterations += 1

  try:
    if right:
      op = spla.LinearOperator(
          a.shape, matvec=lambda u: a.matvec(psolve(u)), dtype=np.float64
      )
      u, info = fn(
          op, b, rtol=rtol, maxiter=maxiter, callback=callback, **kwargs
      )
      x = psolve(u)
    else:
      m = spla.LinearOperator(
          a.shape, matvec=psolve, rmatvec=psolve, dtype=np.float64
      )
      x, info = fn(
          a, b, rtol=rtol, maxiter=maxiter, M=m, callback=callback, **kwargs
      )
  except ValueError as e:
    logging.debug("%s failed: %s", fn.__name__, e)
    return _finish(a, b, np.zeros(b.size), iterations, KrylovStatus.BREAKDOWN)
  if info == 0:
    status = KrylovStatus.CONVERGED
  elif info > 0:
    status = KrylovStatus.ITERATION_LIMIT
  else:
    status = KrylovStatus.BREAKDOWN
  logging.debug("%s: itn=%d, info=%d", fn.__name__, iterations, info)
  result = _finish(a, b, x, iterations, status)

  tolerance = _RESIDUAL_SLACK * rtol * _norm(b)
  if result.converged and result.residual_norm > tolerance:
    logging.debug(
        "%s reported convergence but ||b - Ax|| = %e > %e.",
        fn.__name__,
        result.residual_norm,
        tolerance,
    )
    result = dataclasses.replace(result, status=KrylovStatus.TOLERANCE_LIMIT)
  return result


def scipy_minres(a, b, *, psolve=None, rtol=1e-8, maxiter=None):
  """scipy MINRES; the preconditioner must be positive definite."""
  return _scipy_method(spla.minres, a, b, psolve, rtol, maxiter)


def scipy_gmres(a, b, *, psolve=None, rtol=1e-8, maxiter=None, restart=20):
  """scipy GMRES; `maxiter` counts inner iterations like `gmres`."""
  maxiter = maxiter or 5 * np.size(b)
  return _scipy_method(
      spla.gmres,
      a,
      b,
      psolve,
      rtol,
      int(np.ceil(maxiter / restart)),
      right=True,
      restart=restart,
      callback_type="pr_norm",
  )


def tfqmr(a, b, *, psolve=None, rtol=1e-8, maxiter=None):
  """scipy TFQMR, right preconditioned."""
  return _scipy_method(spla.tfqmr, a, b, psolve, rtol, maxiter, right=True)


def bicgstab(a, b, *, psolve=None, rtol=1e-8, maxiter=None):
  """scipy BiCGSTAB, right preconditioned."""
  return _scipy_method(
      spla.bicgstab, a, b, psolve, rtol, maxiter, right=True
  )


def _constraint_pcg(neg_k, neg_rhs, n, m, rtol, maxiter, exact):
  """PCG on the residual system after one constraint-preconditioner solve.

  With xhat = P^-1 (-rhs), the correction e solves -K e = -rhs + K xhat.
  """
  p = pre_lib.build_preconditioner(
      neg_k, n, m, pre_lib.PreconditionerType.CONSTRAINT
  )
  xhat = p.apply(neg_rhs)
  residual = neg_rhs - neg_k @ xhat
  correction = pcg(
      neg_k,
      residual,
      psolve=p.apply,
      rtol=rtol,
      atol=rtol * _norm(neg_rhs),
      maxiter=maxiter,
      exact=None if exact is None else exact - xhat,
  )
  return dataclasses.replace(correction, x=xhat + correction.x)


def _schur_pcg(k, rhs, n, m, rtol, maxiter, exact):
  """PCG on the Schur complement S = K22 - K21 K11^-1 K12."""
  k11, k12, k21, k22 = pre_lib.split_blocks(k, n)
  try:
    lu = spla.splu(sp.csc_matrix(k11))
  except RuntimeError as e:
    logging.warning("Schur complement: K11 is singular (%s).", e)
    return KrylovResult(
        x=np.zeros(n + m),
        iterations=0,
        residual_norm=float(_norm(rhs)),
        status=KrylovStatus.BREAKDOWN,
    )
  rhs1, rhs2 = rhs[:n], rhs[n:]
  if m:
    k11inv_k12 = lu.solve(k12.toarray())
  else:
    k11inv_k12 = np.zeros((n, 0))
  schur = sp.csr_matrix(k22.toarray() - k21 @ k11inv_k12)
  schur_rhs = rhs2 - k21 @ lu.solve(rhs1)

  try:
    precond = pre_lib.IncompleteCholesky(schur)
  except errors.PreconditionerBuildFailure as e:
    logging.warning(
        "Incomplete Cholesky of the Schur complement failed (%s); using its"
        " diagonal instead.",
        e,
    )
    d = schur.diagonal()
    d[np.abs(d) < _EPS] = 1.0
    precond = pre_lib.DiagonalPreconditioner(1.0 / d)

  result = pcg(
      schur,
      schur_rhs,
      psolve=precond.apply,
      rtol=rtol,
      maxiter=maxiter,
      exact=None if exact is None else exact[n:],
  )
  dy = result.x
  dx = lu.solve(rhs1 - k12 @ dy)
  return dataclasses.replace(result, x=np.concatenate([dx, dy]))


_METHODS = {
    KrylovMethod.MINRES: minres,
    KrylovMethod.MINRES_LANCZOS: minres_lanczos,
    KrylovMethod.SCIPY_MINRES: scipy_minres,
    KrylovMethod.GMRES: gmres,
    KrylovMethod.PCG: pcg,
    KrylovMethod.TFQMR: tfqmr,
    KrylovMethod.SYMMLQ: symmlq,
    KrylovMethod.BICGSTAB: bicgstab,
}


def solve_augmented(
    k: sp.spmatrix,
    rhs: np.ndarray,
    n: int,
    m: int,
    *,
    method: KrylovMethod,
    preconditioner: pre_lib.PreconditionerType,
    rtol: float,
    maxiter: int,
    exact: np.ndarray | None = None,
) -> KrylovResult:
  """Solves K x = rhs for the (n+m) x (n+m) augmented matrix K = [-H A'; A D2^2].

  Most methods run on -K x = -rhs (whose leading block is positive definite)
  with the preconditioner built from -K. SCIPY_GMRES runs on K itself with the
  preconditioner built from K, and SCHUR_PCG eliminates the primal block.

  Args:
    k: The augmented matrix.
    rhs: The right-hand side [rhs1; rhs2].
    n: Size of the primal block.
    m: Size of the dual block.
    method: Which Krylov method to use.
    preconditioner: Which preconditioner to build. Ignored by CONSTRAINT_PCG
      (always the constraint preconditioner) and SCHUR_PCG.
    rtol: Relative tolerance.
    maxiter: Iteration limit.
    exact: Optional exact solution for error tracking.

  Returns:
    A KrylovResult whose residual_norm is ||rhs - K x||.

  Raises:
    PreconditionerBuildFailure: If the preconditioner cannot be built.
  """
  method = KrylovMethod(method)
  k = sp.csr_matrix(k)
  rhs = np.asarray(rhs, dtype=np.float64)

  if method == KrylovMethod.SCHUR_PCG:
    result = _schur_pcg(k, rhs, n, m, rtol, maxiter, exact)
  elif method == KrylovMethod.CONSTRAINT_PCG:
    result = _constraint_pcg(-k, -rhs, n, m, rtol, maxiter, exact)
  elif method == KrylovMethod.SCIPY_GMRES:
    p = pre_lib.build_preconditioner(k, n, m, preconditioner)
    result = scipy_gmres(k, rhs, psolve=p.apply, rtol=rtol, maxiter=maxiter)
  else:
    neg_k = -k
    p = pre_lib.build_preconditioner(neg_k, n, m, preconditioner)
    result = _METHODS[method](
        neg_k, -rhs, psolve=p.apply, rtol=rtol, maxiter=maxiter
    )

  residual_norm = float(_norm(rhs - k @ result.x)) if rhs.size else 0.0
  errs = result.errors
  if exact is not None and errs is None:
    errs = np.array([_norm(result.x - exact)])
  logging.debug(
      "Krylov %s: its=%d, status=%s, res=%e",
      method.name,
      result.iterations,
      result.status.value,
      residual_norm,
  )
  return dataclasses.replace(result, residual_norm=residual_norm, errors=errs)
