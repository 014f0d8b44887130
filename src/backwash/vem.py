from typing import NamedTuple

import jax
import jax.numpy as jnp
import jax.numpy.linalg as jnpla
import jax.scipy.stats as stats

from jaxtyping import Array, ArrayLike

from .divergences import dirichlet_penalty, factor_terms, mixture_terms
from .params import pack_state, unpack_state, VEMData, VEMState
from .squarem import Objective


# tolerance used to decide whether pivec / gamma_mat are still probabilities
SIMPLEX_TOL = 1e-12


class QBetaUpdate(NamedTuple):
    mubeta: Array
    mubeta_matrix: Array
    sig2beta_matrix: Array
    gamma_mat: Array


class QVUpdate(NamedTuple):
    muv: Array
    Sigma_v: Array


class _QuadTerms(NamedTuple):
    ASA: Array
    t1: Array
    t2: Array
    t3: Array
    t4: Array
    t5: Array
    t6: Array

    @property
    def total(self) -> Array:
        # E_q || (betahat - beta - phi A v) / sqrt(S) ||^2
        return self.t1 + self.t2 + self.t3 - self.t4 - self.t5 + self.t6


def _outside_simplex(x: Array) -> Array:
    return jnp.any(x < -SIMPLEX_TOL) | jnp.any(x > 1 + SIMPLEX_TOL) | jnp.any(jnp.isnan(x))


def _compute_ASA(S_diag: Array, Amat: Array) -> Array:
    return Amat.T @ (Amat / S_diag[:, jnp.newaxis])  # Shape: (k,k)


def _quad_terms(
    betahat_ols: Array,
    S_diag: Array,
    Amat: Array,
    mubeta: Array,
    mubeta_matrix: Array,
    sig2beta_matrix: Array,
    gamma_mat: Array,
    muv: Array,
    Sigma_v: Array,
    phi: Array,
) -> _QuadTerms:
    ASA = _compute_ASA(S_diag, Amat)
    Amuv = Amat @ muv  # Shape: (p,)

    t1 = jnp.sum(betahat_ols**2 / S_diag)
    t2 = jnp.sum(jnp.sum((mubeta_matrix**2 + sig2beta_matrix) * gamma_mat, axis=1) / S_diag)
    t3 = (muv @ ASA @ muv + jnp.sum(ASA * Sigma_v)) * phi**2
    t4 = 2 * jnp.sum(betahat_ols * mubeta / S_diag)
    t5 = 2 * phi * jnp.sum(betahat_ols * Amuv / S_diag)
    t6 = 2 * phi * jnp.sum(mubeta * Amuv / S_diag)

    return _QuadTerms(ASA, t1, t2, t3, t4, t5, t6)


@jax.jit
def update_qbeta(
    betahat_ols: ArrayLike,
    S_diag: ArrayLike,
    Amat: ArrayLike,
    pivec: ArrayLike,
    tau2_seq: ArrayLike,
    muv: ArrayLike,
    xi: ArrayLike,
    phi: ArrayLike,
) -> QBetaUpdate:
    """
    Update the variational mixture posterior of every effect

    Args:
        betahat_ols: OLS estimates
        S_diag: variances of the OLS estimates
        Amat: whitened confounder loadings
        pivec: current prior mixing proportions
        tau2_seq: grid of prior mixing variances
        muv: current mean of the confounder scores
        xi: current variance inflation
        phi: current g-prior scale

    Returns:
        The new mixture means, variances and responsibilities. The responsibilities
        are NaN when ``pivec`` is not a probability vector.
    """
    xiS = xi * S_diag  # Shape: (p,)

    # the null component (tau2 = 0) collapses to variance 0
    sig2beta_matrix = 1.0 / (1.0 / xiS[:, jnp.newaxis] + 1.0 / tau2_seq[jnp.newaxis, :])  # Shape: (p,M)

    r_vec = betahat_ols - phi * (Amat @ muv)  # Shape: (p,)
    mubeta_matrix = (r_vec / xiS)[:, jnp.newaxis] * sig2beta_matrix  # Shape: (p,M)

    dsds = jnp.sqrt(xiS[:, jnp.newaxis] + tau2_seq[jnp.newaxis, :])
    dnorm_vals = stats.norm.logpdf(r_vec[:, jnp.newaxis], loc=0.0, scale=dsds)  # Shape: (p,M)

    ldmat = dnorm_vals + jnp.log(jnp.maximum(pivec, 0.0))
    ldmat = jnp.exp(ldmat - jnp.max(ldmat, axis=1, keepdims=True))
    gamma_mat = ldmat / jnp.sum(ldmat, axis=1, keepdims=True)
    gamma_mat = jnp.where(_outside_simplex(pivec), jnp.nan, gamma_mat)

    mubeta = jnp.sum(gamma_mat * mubeta_matrix, axis=1)

    return QBetaUpdate(mubeta, mubeta_matrix, sig2beta_matrix, gamma_mat)


@jax.jit
def update_pi(gamma_mat: ArrayLike, lambda_seq: ArrayLike) -> Array:
    """Penalized update of the prior mixing proportions."""
    gvec = jnp.sum(gamma_mat, axis=0) + lambda_seq - 1
    gvec = jnp.maximum(gvec, 0.0)

    return gvec / jnp.sum(gvec)


@jax.jit
def update_v(
    betahat_ols: ArrayLike, S_diag: ArrayLike, Amat: ArrayLike, mubeta: ArrayLike, xi: ArrayLike, phi: ArrayLike
) -> QVUpdate:
    n_fac = Amat.shape[1]
    ASA = _compute_ASA(S_diag, Amat)

    Sigma_v = jnpla.inv(ASA * phi**2 / xi + jnp.eye(n_fac))
    Sigma_v = (Sigma_v + Sigma_v.T) / 2
    muv = (phi / xi) * Sigma_v @ (Amat.T @ ((betahat_ols - mubeta) / S_diag))

    return QVUpdate(muv, Sigma_v)


@jax.jit
def update_phi(
    betahat_ols: ArrayLike,
    S_diag: ArrayLike,
    Amat: ArrayLike,
    mubeta: ArrayLike,
    muv: ArrayLike,
    Sigma_v: ArrayLike,
) -> Array:
    ASA = _compute_ASA(S_diag, Amat)

    numerator = muv @ (Amat.T @ ((betahat_ols - mubeta) / S_diag))
    denominator = muv @ ASA @ muv + jnp.sum(ASA * Sigma_v)

    return numerator / denominator


@jax.jit
def update_xi(
    betahat_ols: ArrayLike,
    S_diag: ArrayLike,
    Amat: ArrayLike,
    mubeta: ArrayLike,
    mubeta_matrix: ArrayLike,
    sig2beta_matrix: ArrayLike,
    gamma_mat: ArrayLike,
    muv: ArrayLike,
    Sigma_v: ArrayLike,
    phi: ArrayLike,
    var_inflate_pen: ArrayLike = 0.0,
) -> Array:
    """
    Update the variance inflation parameter

    Args:
        var_inflate_pen: non-negative penalty keeping ``xi`` away from zero

    Returns:
        The new value of ``xi``
    """
    p = betahat_ols.shape[0]
    quad = _quad_terms(
        betahat_ols, S_diag, Amat, mubeta, mubeta_matrix, sig2beta_matrix, gamma_mat, muv, Sigma_v, phi
    )

    return quad.total / p + 2 * var_inflate_pen / p


@jax.jit
def vem_sweep(state: VEMState, data: VEMData) -> VEMState:
    """One full round of coordinate ascent updates."""
    qbeta = update_qbeta(
        data.betahat_ols, data.S_diag, data.Amat, state.pivec, data.tau2_seq, state.muv, state.xi, state.phi
    )
    pivec = update_pi(qbeta.gamma_mat, data.lambda_seq)
    qv = update_v(data.betahat_ols, data.S_diag, data.Amat, qbeta.mubeta, state.xi, state.phi)
    phi = update_phi(data.betahat_ols, data.S_diag, data.Amat, qbeta.mubeta, qv.muv, qv.Sigma_v)

    xi = state.xi
    if data.scale_var:
        xi = update_xi(
            data.betahat_ols,
            data.S_diag,
            data.Amat,
            qbeta.mubeta,
            qbeta.mubeta_matrix,
            qbeta.sig2beta_matrix,
            qbeta.gamma_mat,
            qv.muv,
            qv.Sigma_v,
            phi,
            data.var_inflate_pen,
        )

    return VEMState(
        pivec=pivec,
        mubeta_matrix=qbeta.mubeta_matrix,
        sig2beta_matrix=qbeta.sig2beta_matrix,
        gamma_mat=qbeta.gamma_mat,
        muv=qv.muv,
        Sigma_v=qv.Sigma_v,
        phi=phi,
        xi=xi,
    )


def _dims(data: VEMData) -> tuple[int, int, int]:
    p, k = data.Amat.shape
    return p, data.tau2_seq.shape[0], k


@jax.jit
def back_fix(par_vec: ArrayLike, data: VEMData) -> Array:
    """The fixed point map on the flattened parameter vector."""
    state = unpack_state(par_vec, *_dims(data))
    return pack_state(vem_sweep(state, data))


@jax.jit
def expected_loglikelihood(state: VEMState, data: VEMData) -> Array:
    """
    Expected log-likelihood of the rotated OLS estimates, up to a constant,
    together with the penalty on the variance inflation.
    """
    p = data.betahat_ols.shape[0]
    quad = _quad_terms(
        data.betahat_ols,
        data.S_diag,
        data.Amat,
        state.mubeta,
        state.mubeta_matrix,
        state.sig2beta_matrix,
        state.gamma_mat,
        state.muv,
        state.Sigma_v,
        state.phi,
    )

    return -(p / 2) * jnp.log(state.xi) - quad.total / (2 * state.xi) - data.var_inflate_pen / state.xi


@jax.jit
def compute_elbo(state: VEMState, data: VEMData) -> Array:
    """
    Evidence lower bound of the variational approximation.

    Returns:
        The ELBO, or -inf when ``pivec`` or ``gamma_mat`` are not probabilities.
    """
    ll = expected_loglikelihood(state, data)
    mix = mixture_terms(state.mubeta_matrix, state.sig2beta_matrix, state.gamma_mat, data.tau2_seq, state.pivec)
    fac = factor_terms(state.muv, state.Sigma_v)
    pen = dirichlet_penalty(state.pivec, data.lambda_seq)

    elbo = ll + mix + fac + pen
    invalid = _outside_simplex(state.pivec) | _outside_simplex(state.gamma_mat) | jnp.isnan(elbo)

    return jnp.where(invalid, -jnp.inf, elbo)


@jax.jit
def _elbo_from_vec(par_vec: ArrayLike, data: VEMData) -> Array:
    return compute_elbo(unpack_state(par_vec, *_dims(data)), data)


def back_obj(par_vec: ArrayLike, data: VEMData) -> Objective:
    """Objective minimized by the accelerator: the negative ELBO."""
    elbo = float(_elbo_from_vec(par_vec, data))
    if jnp.isfinite(elbo):
        return Objective(value=-elbo, valid=True)

    return Objective(value=float("inf"), valid=False)
