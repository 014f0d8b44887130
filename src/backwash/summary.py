from typing import NamedTuple

import jax
import jax.numpy as jnp
import jax.scipy.stats as stats
import pandas as pd

from jaxtyping import Array, ArrayLike

from .params import VEMState


RESULT_COLUMNS = [
    "betahat",
    "sebetahat",
    "NegativeProb",
    "PositiveProb",
    "lfsr",
    "svalue",
    "lfdr",
    "qvalue",
    "PosteriorMean",
    "PosteriorSD",
]


class PosteriorSummary(NamedTuple):
    """
    PosteriorMean: the posterior mean of each effect
    PosteriorSD: the posterior standard deviation of each effect
    PositiveProb: the posterior probability that an effect is positive
    NegativeProb: the posterior probability that an effect is negative
    lfdr: the local false discovery rate
    lfsr: the local false sign rate
    qvalue: the average false discovery rate among effects with smaller lfdr
    svalue: the average false sign rate among effects with smaller lfsr
    pi0: the estimated proportion of null effects
    """

    PosteriorMean: Array
    PosteriorSD: Array
    PositiveProb: Array
    NegativeProb: Array
    lfdr: Array
    lfsr: Array
    qvalue: Array
    svalue: Array
    pi0: Array


@jax.jit
def qval_from_lfdr(lfdr: ArrayLike) -> Array:
    """The running mean of the sorted local rates, returned in the original order.

    Args:
        lfdr: local false discovery (or sign) rates

    Returns:
        :py:obj:`Array`: the q-values (or s-values)
    """
    lfdr = jnp.asarray(lfdr)
    order = jnp.argsort(lfdr)
    running = jnp.cumsum(lfdr[order]) / jnp.arange(1, lfdr.shape[0] + 1)

    return jnp.empty_like(running).at[order].set(running)


@jax.jit
def _positive_prob(mubeta_matrix: Array, sig2beta_matrix: Array, gamma_mat: Array) -> Array:
    # a point mass at zero is never positive
    sd = jnp.sqrt(sig2beta_matrix)
    safe_sd = jnp.where(sd > 0, sd, 1.0)
    sf = jnp.where(sd > 0, stats.norm.sf(0.0, loc=mubeta_matrix, scale=safe_sd), mubeta_matrix > 0)

    return jnp.sum(gamma_mat * sf, axis=1)


def posterior_summaries(state: VEMState, zero_spot: int) -> PosteriorSummary:
    """
    Per-feature posterior summaries of a converged state.

    Args:
        state: the converged variational parameters
        zero_spot: index of the null component of the grid

    Returns:
        :py:obj:`PosteriorSummary`
    """
    PosteriorMean = state.mubeta
    lfdr = state.gamma_mat[:, zero_spot]
    pi0 = state.pivec[zero_spot]

    PositiveProb = _positive_prob(state.mubeta_matrix, state.sig2beta_matrix, state.gamma_mat)
    NegativeProb = 1 - PositiveProb - lfdr
    lfsr = jnp.minimum(PositiveProb, NegativeProb) + lfdr

    ex2 = jnp.sum(state.gamma_mat * (state.mubeta_matrix**2 + state.sig2beta_matrix), axis=1)
    PosteriorSD = jnp.sqrt(jnp.maximum(ex2 - PosteriorMean**2, 0.0))

    return PosteriorSummary(
        PosteriorMean=PosteriorMean,
        PosteriorSD=PosteriorSD,
        PositiveProb=PositiveProb,
        NegativeProb=NegativeProb,
        lfdr=lfdr,
        lfsr=lfsr,
        qvalue=qval_from_lfdr(lfdr),
        svalue=qval_from_lfdr(lfsr),
        pi0=pi0,
    )


def make_result_table(betahat: ArrayLike, sebetahat: ArrayLike, summary: PosteriorSummary) -> pd.DataFrame:
    """Assemble the per-feature output table."""
    columns = {
        "betahat": betahat,
        "sebetahat": sebetahat,
        "NegativeProb": summary.NegativeProb,
        "PositiveProb": summary.PositiveProb,
        "lfsr": summary.lfsr,
        "svalue": summary.svalue,
        "lfdr": summary.lfdr,
        "qvalue": summary.qvalue,
        "PosteriorMean": summary.PosteriorMean,
        "PosteriorSD": summary.PosteriorSD,
    }

    return pd.DataFrame({name: jax.device_get(jnp.ravel(jnp.asarray(columns[name]))) for name in RESULT_COLUMNS})
