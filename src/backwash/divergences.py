import jax.numpy as jnp
import jax.numpy.linalg as jnpla

from jaxtyping import Array, ArrayLike

from .grid import ZERO_TOL


# mixing proportions below this are treated as having no support
ZERO_PI_TOL = 1e-10


def _log_prior_terms(
    mubeta_matrix: ArrayLike, sig2beta_matrix: ArrayLike, tau2_seq: ArrayLike, pivec: ArrayLike
) -> Array:
    """
    Expected log prior density of each mixture component under q, including log(pi).
    The point mass contributes only log(pi) and empty components contribute nothing.
    """
    zero_spot = jnp.abs(tau2_seq) < ZERO_TOL  # Shape: (M,)
    zeropi = jnp.abs(pivec) < ZERO_PI_TOL  # Shape: (M,)

    second_moment = mubeta_matrix**2 + sig2beta_matrix  # Shape: (p,M)
    log_dens = (
        -second_moment / (2 * tau2_seq) - jnp.log(tau2_seq) / 2 + jnp.log(pivec) - jnp.log(2 * jnp.pi) / 2
    )
    log_dens = jnp.where(zero_spot, jnp.log(pivec), log_dens)
    log_dens = jnp.where(zeropi, 0.0, log_dens)

    return log_dens


def _entropy_terms(sig2beta_matrix: ArrayLike, gamma_mat: ArrayLike) -> Array:
    # Gaussian entropy per component, point mass entropy at zero variance
    tmat = jnp.log(gamma_mat) - jnp.log(2 * jnp.pi) / 2 - jnp.log(sig2beta_matrix) / 2 - 0.5
    tmat = jnp.where(sig2beta_matrix < ZERO_TOL, jnp.log(gamma_mat), tmat)
    tmat = jnp.where(gamma_mat < ZERO_TOL, 0.0, tmat)

    return -tmat


def mixture_terms(
    mubeta_matrix: ArrayLike, sig2beta_matrix: ArrayLike, gamma_mat: ArrayLike, tau2_seq: ArrayLike, pivec: ArrayLike
) -> Array:
    """
    Cross entropy between q(beta) and the mixture prior plus the entropy of q(beta).

    Returns:
        The sum over features and components
    """
    log_prior = _log_prior_terms(mubeta_matrix, sig2beta_matrix, tau2_seq, pivec)
    entropy = _entropy_terms(sig2beta_matrix, gamma_mat)

    return jnp.sum(log_prior * gamma_mat) + jnp.sum(entropy * gamma_mat)


def factor_terms(muv: ArrayLike, Sigma_v: ArrayLike) -> Array:
    """
    Expected log N(0, I) prior on the confounder scores plus the log-determinant
    part of the entropy of q(v).
    """
    _, logdet = jnpla.slogdet(Sigma_v)
    return -jnp.sum(muv**2) / 2 - jnp.trace(Sigma_v) / 2 + logdet / 2


def dirichlet_penalty(pivec: ArrayLike, lambda_seq: ArrayLike) -> Array:
    zeropi = jnp.abs(pivec) < ZERO_PI_TOL
    return jnp.sum(jnp.where(zeropi, 0.0, (lambda_seq - 1) * jnp.log(pivec)))
