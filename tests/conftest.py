import jax.numpy as jnp
import jax.random as rdm
import pytest

from backwash.grid import make_lambda_seq
from backwash.infer import whiten_loadings
from backwash.params import VEMData, VEMState
from backwash.vem import vem_sweep


def simulate_problem(seed: int = 0, p: int = 60, k: int = 2, n_null: int = 40):
    key = rdm.PRNGKey(seed)
    s_key, b_key, a_key, v_key, e_key = rdm.split(key, 5)

    S_diag = rdm.uniform(s_key, shape=(p,), minval=0.5, maxval=1.5)
    beta = jnp.where(jnp.arange(p) < n_null, 0.0, 2.0 * rdm.normal(b_key, shape=(p,)))
    alpha = rdm.normal(a_key, shape=(p, k))
    v = rdm.normal(v_key, shape=(k,))
    betahat = beta + 0.5 * alpha @ v + jnp.sqrt(S_diag) * rdm.normal(e_key, shape=(p,))

    return betahat, S_diag, alpha


def make_data(seed: int = 0, scale_var: bool = True, var_inflate_pen: float = 0.0) -> VEMData:
    betahat, S_diag, alpha = simulate_problem(seed)
    Amat, _ = whiten_loadings(alpha)
    tau2_seq = jnp.array([0.0, 0.1, 0.5, 1.0, 2.0, 4.0, 8.0])

    return VEMData(
        betahat_ols=betahat,
        S_diag=S_diag,
        Amat=Amat,
        tau2_seq=tau2_seq,
        lambda_seq=make_lambda_seq(tau2_seq.shape[0], 0),
        var_inflate_pen=jnp.asarray(var_inflate_pen),
        scale_var=scale_var,
    )


def initial_state(data: VEMData) -> VEMState:
    p, k = data.Amat.shape
    M = data.tau2_seq.shape[0]
    pivec = jnp.full(M, 1.0 / M)

    state = VEMState(
        pivec=pivec,
        mubeta_matrix=jnp.zeros((p, M)),
        sig2beta_matrix=jnp.zeros((p, M)),
        gamma_mat=jnp.tile(pivec, (p, 1)),
        muv=jnp.zeros(k),
        Sigma_v=jnp.eye(k),
        phi=jnp.asarray(1.0),
        xi=jnp.asarray(1.0),
    )
    return vem_sweep(state, data)


@pytest.fixture
def data() -> VEMData:
    return make_data()
