"""
Validation of the posterior summaries of the variational mixture.

The analytical summaries are compared to Monte Carlo estimates obtained by
sampling a mixture component for each feature and then an effect from that
component (the null component being a point mass at zero).
"""
import jax
import jax.numpy as jnp
import jax.random as rdm
import pandas as pd

from backwash.params import VEMState
from backwash.summary import make_result_table, posterior_summaries, qval_from_lfdr, RESULT_COLUMNS


jax.config.update("jax_enable_x64", True)


def random_state(key, p: int = 10, M: int = 4) -> VEMState:
    g_key, m_key, s_key, pi_key = rdm.split(key, 4)

    gamma_mat = jax.nn.softmax(rdm.normal(g_key, shape=(p, M)), axis=1)
    mubeta_matrix = rdm.normal(m_key, shape=(p, M)).at[:, 0].set(0.0)
    sig2beta_matrix = rdm.uniform(s_key, shape=(p, M), minval=0.1, maxval=1.0).at[:, 0].set(0.0)
    pivec = jax.nn.softmax(rdm.normal(pi_key, shape=(M,)))

    return VEMState(
        pivec=pivec,
        mubeta_matrix=mubeta_matrix,
        sig2beta_matrix=sig2beta_matrix,
        gamma_mat=gamma_mat,
        muv=jnp.zeros(1),
        Sigma_v=jnp.eye(1),
        phi=jnp.asarray(1.0),
        xi=jnp.asarray(1.0),
    )


def sample_effects(state: VEMState, n_samples: int, key) -> jax.Array:
    c_key, e_key = rdm.split(key)
    p, M = state.gamma_mat.shape

    comp = rdm.categorical(c_key, jnp.log(state.gamma_mat), shape=(n_samples, p))  # (n_samples, p)
    means = jnp.take_along_axis(state.mubeta_matrix, comp.T, axis=1).T
    sds = jnp.sqrt(jnp.take_along_axis(state.sig2beta_matrix, comp.T, axis=1).T)

    return means + sds * rdm.normal(e_key, shape=(n_samples, p))


def test_qval_from_lfdr():
    lfdr = jnp.array([0.3, 0.1, 0.2])
    assert jnp.allclose(qval_from_lfdr(lfdr), jnp.array([0.2, 0.1, 0.15]))

    # q-values are monotone in the local rates and never exceed them on top
    key = rdm.PRNGKey(0)
    lfdr = rdm.uniform(key, shape=(50,))
    qvals = qval_from_lfdr(lfdr)
    order = jnp.argsort(lfdr)
    assert jnp.all(jnp.diff(qvals[order]) >= 0)
    assert jnp.all(qvals <= lfdr + 1e-12)


def test_summaries_of_two_component_mixture():
    state = VEMState(
        pivec=jnp.array([0.5, 0.5]),
        mubeta_matrix=jnp.array([[0.0, 1.0]]),
        sig2beta_matrix=jnp.array([[0.0, 1.0]]),
        gamma_mat=jnp.array([[0.4, 0.6]]),
        muv=jnp.zeros(1),
        Sigma_v=jnp.eye(1),
        phi=jnp.asarray(1.0),
        xi=jnp.asarray(1.0),
    )

    summary = posterior_summaries(state, zero_spot=0)
    pos = 0.6 * jax.scipy.stats.norm.cdf(1.0)

    assert jnp.allclose(summary.lfdr, 0.4)
    assert jnp.allclose(summary.pi0, 0.5)
    assert jnp.allclose(summary.PositiveProb, pos)
    assert jnp.allclose(summary.NegativeProb, 1 - pos - 0.4)
    assert jnp.allclose(summary.lfsr, 1 - pos)
    assert jnp.allclose(summary.PosteriorMean, 0.6)
    assert jnp.allclose(summary.PosteriorSD, jnp.sqrt(1.2 - 0.36))


def test_summaries_match_empirical():
    print("=" * 60)
    print("Testing: posterior summaries - analytical vs empirical")
    print("=" * 60)

    key = rdm.PRNGKey(42)
    s_key, e_key = rdm.split(key)
    n_samples = 200000

    state = random_state(s_key)
    summary = posterior_summaries(state, zero_spot=0)
    samples = sample_effects(state, n_samples, e_key)

    pr_positive = jnp.mean(samples > 0, axis=0)
    pr_negative = jnp.mean(samples < 0, axis=0)
    pr_zero = jnp.mean(samples == 0, axis=0)
    lfsr = 1.0 - jnp.maximum(pr_positive, pr_negative)

    diffs = {
        "PositiveProb": jnp.max(jnp.abs(summary.PositiveProb - pr_positive)),
        "NegativeProb": jnp.max(jnp.abs(summary.NegativeProb - pr_negative)),
        "lfdr": jnp.max(jnp.abs(summary.lfdr - pr_zero)),
        "lfsr": jnp.max(jnp.abs(summary.lfsr - lfsr)),
        "PosteriorMean": jnp.max(jnp.abs(summary.PosteriorMean - jnp.mean(samples, axis=0))),
        "PosteriorSD": jnp.max(jnp.abs(summary.PosteriorSD - jnp.std(samples, axis=0))),
    }

    tolerance = 0.02
    for name, diff in diffs.items():
        print(f"  {name}: max absolute difference {diff:.6f}")
        assert diff < tolerance, f"{name} differs from sampling by {diff}"


def test_result_table():
    state = random_state(rdm.PRNGKey(1), p=5)
    summary = posterior_summaries(state, zero_spot=0)

    table = make_result_table(jnp.arange(5.0), jnp.ones(5), summary)

    assert isinstance(table, pd.DataFrame)
    assert list(table.columns) == RESULT_COLUMNS
    assert table.shape == (5, len(RESULT_COLUMNS))
    assert jnp.allclose(jnp.asarray(table["lfdr"].to_numpy()), summary.lfdr)
