import math

import equinox as eqx
import jax.numpy as jnp

from jaxtyping import Array, ArrayLike


# field order of the flat parameter vector consumed by the accelerator
STATE_LAYOUT_VERSION = 1
STATE_FIELDS = ("pivec", "mubeta_matrix", "sig2beta_matrix", "gamma_mat", "muv", "Sigma_v", "phi", "xi")


class VEMState(eqx.Module):
    # prior mixing proportions over the variance grid
    pivec: Array  # (M,)

    # variational mixture means, variances and responsibilities for each feature
    mubeta_matrix: Array  # (p,M)
    sig2beta_matrix: Array  # (p,M)
    gamma_mat: Array  # (p,M)

    # variational mean and covariance of the rotated confounder scores
    muv: Array  # (k,)
    Sigma_v: Array  # (k,k)

    # g-prior scale and variance inflation
    phi: Array  # ()
    xi: Array  # ()

    @property
    def mubeta(self) -> Array:
        return jnp.sum(self.gamma_mat * self.mubeta_matrix, axis=1)


class VEMData(eqx.Module):
    # rotated OLS estimates and their variances
    betahat_ols: Array  # (p,)
    S_diag: Array  # (p,)

    # whitened confounder loadings
    Amat: Array  # (p,k)

    # prior variance grid and Dirichlet penalties
    tau2_seq: Array  # (M,)
    lambda_seq: Array  # (M,)

    var_inflate_pen: Array  # ()
    scale_var: bool = eqx.field(static=True, default=True)


def _field_shapes(p: int, M: int, k: int) -> dict:
    return {
        "pivec": (M,),
        "mubeta_matrix": (p, M),
        "sig2beta_matrix": (p, M),
        "gamma_mat": (p, M),
        "muv": (k,),
        "Sigma_v": (k, k),
        "phi": (),
        "xi": (),
    }


def state_size(p: int, M: int, k: int) -> int:
    return sum(math.prod(shape) for shape in _field_shapes(p, M, k).values())


def pack_state(state: VEMState) -> Array:
    """
    Flatten a state into the vector handed to the accelerator.

    Matrices are stored column-major so the layout is identical to the one used
    by ``unpack_state``.
    """
    return jnp.concatenate([jnp.ravel(jnp.asarray(getattr(state, name)), order="F") for name in STATE_FIELDS])


def unpack_state(par_vec: ArrayLike, p: int, M: int, k: int) -> VEMState:
    """
    Rebuild a state from its flat representation.

    Args:
        par_vec: vector laid out as ``STATE_FIELDS``
        p: number of features
        M: size of the prior variance grid
        k: number of confounders

    Returns:
        :py:obj:`VEMState`
    """
    par_vec = jnp.asarray(par_vec)
    if par_vec.shape != (state_size(p, M, k),):
        raise ValueError(
            f"Parameter vector has shape {par_vec.shape}, expected ({state_size(p, M, k)},) for layout"
            f" version {STATE_LAYOUT_VERSION} ({', '.join(STATE_FIELDS)})"
        )

    fields = {}
    start = 0
    shapes = _field_shapes(p, M, k)
    for name in STATE_FIELDS:
        size = math.prod(shapes[name])
        fields[name] = jnp.reshape(par_vec[start : start + size], shapes[name], order="F")
        start += size

    return VEMState(**fields)
