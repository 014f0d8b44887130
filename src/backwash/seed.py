import math

import jax
import jax.numpy as jnp
import jax.scipy.stats as stats

from jaxtyping import Array, ArrayLike

from . import log


def ash_grid(betahat: ArrayLike, sebetahat: ArrayLike, mult: float = math.sqrt(2)) -> Array:
    """
    Grid of prior standard deviations for univariate adaptive shrinkage.

    Args:
        betahat: effect estimates
        sebetahat: standard errors of ``betahat``
        mult: ratio between consecutive grid points

    Returns:
        :py:obj:`Array`: standard deviations, the first of which is the zero of the point mass
    """
    sd_min = float(jnp.min(sebetahat)) / 10.0
    sd_max = 2.0 * math.sqrt(max(float(jnp.max(betahat**2 - sebetahat**2)), 0.0))
    if sd_max <= sd_min:
        sd_max = 8.0 * sd_min

    npoint = math.ceil(math.log2(sd_max / sd_min) / math.log2(mult))
    sds = sd_max * mult ** jnp.arange(-npoint, 1)

    return jnp.concatenate([jnp.zeros(1), sds])


@jax.jit
def _log_lik_matrix(betahat: Array, sebetahat: Array, sd_grid: Array) -> Array:
    scale = jnp.sqrt(sebetahat[:, jnp.newaxis] ** 2 + sd_grid[jnp.newaxis, :] ** 2)
    return stats.norm.logpdf(betahat[:, jnp.newaxis], loc=0.0, scale=scale)  # Shape: (p,K)


@jax.jit
def _responsibilities(log_lik: Array, pi: Array) -> Array:
    ldmat = log_lik + jnp.log(pi)
    return jax.nn.softmax(ldmat, axis=1)


@jax.jit
def _em_step(log_lik: Array, pi: Array, prior: Array) -> Array:
    gvec = jnp.sum(_responsibilities(log_lik, pi), axis=0) + prior - 1
    gvec = jnp.maximum(gvec, 0.0)
    return gvec / jnp.sum(gvec)


def ash_posterior_mean(
    betahat: ArrayLike,
    sebetahat: ArrayLike,
    nullweight: float = 10.0,
    tol: float = 1e-6,
    max_iter: int = 1000,
) -> Array:
    """
    Posterior means under a zero-centered normal mixture prior with a point mass
    at zero, the mixture weights being estimated by penalized EM.

    Args:
        betahat: effect estimates
        sebetahat: standard errors of ``betahat``
        nullweight: Dirichlet penalty on the point mass
        tol: convergence tolerance on the mixture weights
        max_iter: maximum number of EM iterations

    Returns:
        :py:obj:`Array`: the posterior mean of each effect
    """
    betahat = jnp.ravel(jnp.asarray(betahat, dtype=float))
    sebetahat = jnp.ravel(jnp.asarray(sebetahat, dtype=float))

    sd_grid = ash_grid(betahat, sebetahat)
    K = sd_grid.shape[0]
    prior = jnp.ones(K).at[0].set(nullweight)
    pi = jnp.full(K, 1.0 / K)

    log_lik = _log_lik_matrix(betahat, sebetahat, sd_grid)
    for em_iter in range(max_iter):
        pi_new = _em_step(log_lik, pi, prior)
        delta = float(jnp.max(jnp.abs(pi_new - pi)))
        pi = pi_new
        if delta < tol:
            log.logger.debug(f"Shrinkage seed converged after {em_iter + 1} EM iterations")
            break
    else:
        log.logger.debug(f"Shrinkage seed stopped after {max_iter} EM iterations")

    post = _responsibilities(log_lik, pi)
    shrink = sd_grid**2 / (sebetahat[:, jnp.newaxis] ** 2 + sd_grid**2)  # Shape: (p,K)

    return jnp.sum(post * shrink, axis=1) * betahat
