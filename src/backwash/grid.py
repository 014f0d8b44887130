from typing import NamedTuple, Optional

import jax.numpy as jnp
import jax.random as rdm

from jaxtyping import Array, ArrayLike


ZERO_TOL = 1e-14

LAMBDA_TYPES = ("zero_conc", "uniform")
PI_INIT_TYPES = ("zero_conc", "uniform", "random")


class GridSpec(NamedTuple):
    """
    tau2_seq: grid of prior mixing variances, exactly one of which is zero
    lambda_seq: Dirichlet penalties on the mixing proportions
    zero_spot: index of the null (point mass) component
    """

    tau2_seq: Array
    lambda_seq: Array
    zero_spot: int


def get_grid_var(betahat_ols: ArrayLike, S_diag: ArrayLike) -> Array:
    """Default grid of prior variances, doubling from ``min(S_diag) / 100``.

    Args:
        betahat_ols: OLS estimates of the effects
        S_diag: variances of ``betahat_ols``

    Returns:
        :py:obj:`Array`: the grid, starting with the zero entry of the point mass.
    """
    betahat_ols = jnp.ravel(jnp.asarray(betahat_ols))
    S_diag = jnp.ravel(jnp.asarray(S_diag))

    tau2_min = float(jnp.min(S_diag)) / 100.0
    tau2_max = 16.0 * float(jnp.max(betahat_ols**2 - S_diag))
    if tau2_max < 0:
        tau2_max = 64.0 * tau2_min

    tau2_current = tau2_min
    tau2_seq = [0.0, tau2_current]
    while tau2_current <= tau2_max:
        tau2_current *= 2.0
        tau2_seq.append(tau2_current)

    return jnp.array(tau2_seq)


def default_tau2_seq(betahat_ols: ArrayLike, S_diag: ArrayLike) -> Array:
    # the grid is searched on the signed square-root scale
    grid_vals = get_grid_var(betahat_ols, S_diag)
    return jnp.sign(grid_vals) * jnp.sqrt(jnp.abs(grid_vals))


def find_zero_spot(tau2_seq: ArrayLike) -> int:
    """Index of the single grid entry that is numerically zero."""
    tau2_seq = jnp.asarray(tau2_seq)
    zero_spot = jnp.flatnonzero(jnp.abs(tau2_seq) < ZERO_TOL)
    if zero_spot.shape[0] != 1:
        raise ValueError(
            f"The variance grid must contain exactly one zero entry (|tau2| < {ZERO_TOL}), found {zero_spot.shape[0]}"
        )
    return int(zero_spot[0])


def make_lambda_seq(M: int, zero_spot: int, lambda_type: str = "zero_conc", lambda0: float = 10.0) -> Array:
    if lambda0 < 1:
        raise ValueError(f"lambda0 must be at least 1, got {lambda0}")

    if lambda_type == "uniform":
        return jnp.ones(M)
    elif lambda_type == "zero_conc":
        return jnp.ones(M).at[zero_spot].set(lambda0)

    raise ValueError(f"Unknown lambda_type '{lambda_type}', expected one of {LAMBDA_TYPES}")


def initialize_mixing_prop(M: int, zero_spot: int, pi_init_type: str = "zero_conc", seed: int = 12345) -> Array:
    """
    Starting values for the prior mixing proportions.

    Args:
        M: number of grid components
        zero_spot: index of the null component
        pi_init_type: ``"zero_conc"`` puts 0.9 on the null component, ``"uniform"`` spreads
            the mass evenly and ``"random"`` draws normalized uniforms
        seed: random seed, only used by ``"random"``

    Returns:
        :py:obj:`Array`: mixing proportions summing to one
    """
    if pi_init_type == "uniform":
        return jnp.full(M, 1.0 / M)
    elif pi_init_type == "random":
        pi_vals = rdm.uniform(rdm.PRNGKey(seed), shape=(M,))
        return pi_vals / jnp.sum(pi_vals)
    elif pi_init_type == "zero_conc":
        if M == 1:
            return jnp.ones(1)
        return jnp.full(M, 0.1 / (M - 1)).at[zero_spot].set(0.9)

    raise ValueError(f"Unknown pi_init_type '{pi_init_type}', expected one of {PI_INIT_TYPES}")


def build_grid(
    betahat_ols: ArrayLike,
    S_diag: ArrayLike,
    grid_seq: Optional[ArrayLike] = None,
    lambda_seq: Optional[ArrayLike] = None,
    lambda_type: str = "zero_conc",
    lambda0: float = 10.0,
) -> GridSpec:
    """
    Build the prior variance grid and the penalties on the mixing proportions.

    Args:
        betahat_ols: OLS estimates used for the default grid
        S_diag: variances of ``betahat_ols``
        grid_seq: custom grid of prior variances. Must contain exactly one zero
        lambda_seq: custom penalties, only allowed together with ``grid_seq``
        lambda_type: ``"zero_conc"`` or ``"uniform"`` when ``lambda_seq`` is not given
        lambda0: penalty on the null component for ``"zero_conc"``

    Returns:
        :py:obj:`GridSpec`
    """
    if lambda_seq is not None and grid_seq is None:
        raise ValueError("lambda_seq specified but grid_seq is None")

    if grid_seq is None:
        tau2_seq = default_tau2_seq(betahat_ols, S_diag)
    else:
        tau2_seq = jnp.ravel(jnp.asarray(grid_seq, dtype=float))

    M = tau2_seq.shape[0]
    zero_spot = find_zero_spot(tau2_seq)
    if jnp.any(tau2_seq < -ZERO_TOL):
        raise ValueError("The variance grid must be non-negative")

    if lambda_seq is None:
        lambda_seq = make_lambda_seq(M, zero_spot, lambda_type=lambda_type, lambda0=lambda0)
    else:
        lambda_seq = jnp.ravel(jnp.asarray(lambda_seq, dtype=float))
        if lambda_seq.shape[0] != M:
            raise ValueError(f"lambda_seq has length {lambda_seq.shape[0]} but the grid has length {M}")
        if jnp.any(lambda_seq < 1):
            raise ValueError("All entries of lambda_seq must be at least 1")

    return GridSpec(tau2_seq=tau2_seq, lambda_seq=lambda_seq, zero_spot=zero_spot)
