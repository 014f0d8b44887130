"""
Squared extrapolation (SQUAREM) for accelerating monotone fixed point maps.

Each iteration takes two plain steps of the map, extrapolates along the
resulting secant and stabilizes the extrapolated point with one more map
evaluation. Extrapolated points that leave the parameter space or do not
improve the objective are replaced by the plain two-step result, so the
accepted sequence inherits the monotonicity of the underlying map.

References:
    Varadhan, R. and Roland, C. (2008). Simple and globally convergent methods
    for accelerating the convergence of any EM algorithm. Scandinavian Journal
    of Statistics, 35(2), 335-353.
"""
from typing import Callable, NamedTuple

import jax.numpy as jnp

from jaxtyping import Array, ArrayLike

from . import log


class Objective(NamedTuple):
    """
    value: the objective to minimize, +inf when the point is invalid
    valid: False when the point lies outside the parameter space
    """

    value: float
    valid: bool


class SquaremResult(NamedTuple):
    """
    par: the final parameter vector
    value_objfn: the objective at ``par``
    iter: number of completed iterations
    fpevals: number of fixed point map evaluations
    objfevals: number of objective evaluations
    convergence: whether the tolerance was reached within ``maxiter`` map evaluations
    """

    par: Array
    value_objfn: float
    iter: int
    fpevals: int
    objfevals: int
    convergence: bool


def _has_nan(x: Array) -> bool:
    return bool(jnp.any(jnp.isnan(x)))


def squarem(
    par: ArrayLike,
    fixptfn: Callable[[Array], Array],
    objfn: Callable[[Array], Objective],
    tol: float = 1e-4,
    maxiter: int = 1500,
    objfn_inc: float = 0.0,
    step_min0: float = 1.0,
    step_max0: float = 1.0,
    mstep: float = 4.0,
) -> SquaremResult:
    """
    Find a fixed point of ``fixptfn`` while decreasing ``objfn``.

    Args:
        par: starting parameter vector
        fixptfn: the fixed point map
        objfn: objective to minimize; must return an :py:obj:`Objective`
        tol: convergence tolerance on the norm of a plain step and on the change
            in objective
        maxiter: maximum number of fixed point map evaluations
        objfn_inc: allowed increase in the objective before an extrapolation is rejected
        step_min0: initial minimum step length
        step_max0: initial maximum step length
        mstep: factor by which the maximum step length grows

    Returns:
        :py:obj:`SquaremResult`
    """
    par = jnp.asarray(par)
    step_min = step_min0
    step_max = step_max0

    obj = objfn(par)
    if not obj.valid:
        raise ValueError("The starting parameter vector lies outside the parameter space")
    lold = obj.value
    leval = 1
    feval = 0
    n_iter = 0
    conv = False

    while feval < maxiter:
        p1 = fixptfn(par)
        feval += 1
        if _has_nan(p1):
            log.logger.warning("Fixed point map returned NaN. Stopping at the last valid state.")
            break

        q1 = p1 - par
        sr2 = float(q1 @ q1)
        if sr2**0.5 < tol:
            conv = True
            break

        p2 = fixptfn(p1)
        feval += 1
        if _has_nan(p2):
            log.logger.warning("Fixed point map returned NaN. Stopping at the last valid state.")
            break

        q2 = p2 - p1
        sq2 = float(jnp.sqrt(q2 @ q2))
        if sq2 < tol:
            par = p2
            lold = objfn(par).value
            leval += 1
            conv = True
            break

        sv2 = float((q2 - q1) @ (q2 - q1))
        alpha = (sr2 / sv2) ** 0.5 if sv2 > 0 else step_max
        alpha = float(max(step_min, min(step_max, alpha)))
        p_new = par + 2 * alpha * q1 + alpha**2 * (q2 - q1)

        extrap = True
        if abs(alpha - 1) > 0.01:
            p_new = fixptfn(p_new)
            feval += 1

        lnew = None
        if not _has_nan(p_new):
            obj = objfn(p_new)
            leval += 1
            if obj.valid and obj.value <= lold + objfn_inc:
                lnew = obj.value

        if lnew is None:
            # fall back to the plain two-step update
            p_new = p2
            lnew = objfn(p2).value
            leval += 1
            if alpha == step_max:
                step_max = max(step_max0, step_max / mstep)
            alpha = 1.0
            extrap = False

        if alpha == step_max:
            step_max = mstep * step_max
        if step_min < 0 and alpha == step_min:
            step_min = mstep * step_min

        n_iter += 1
        delta = abs(lold - lnew)
        log.logger.debug(
            f"squarem iteration: {n_iter}, objective: {lnew}, step: {alpha:.3f}, extrapolated: {extrap}"
        )

        par = p_new
        lold = lnew
        if delta < tol:
            conv = True
            break

    if not conv and feval >= maxiter:
        log.logger.warning(f"SQUAREM did not converge within {maxiter} fixed point evaluations")

    return SquaremResult(
        par=par,
        value_objfn=lold,
        iter=n_iter,
        fpevals=feval,
        objfevals=leval,
        convergence=conv,
    )
