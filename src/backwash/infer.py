from typing import NamedTuple, Optional

import pandas as pd

import jax
import jax.numpy as jnp
import jax.numpy.linalg as jnpla

from jaxtyping import Array, ArrayLike

from . import log
from .grid import build_grid, find_zero_spot, initialize_mixing_prop, LAMBDA_TYPES, PI_INIT_TYPES, ZERO_TOL
from .params import pack_state, unpack_state, VEMData, VEMState
from .seed import ash_posterior_mean
from .squarem import squarem
from .summary import make_result_table, posterior_summaries
from .vem import back_fix, back_obj, vem_sweep


jax.config.update("jax_enable_x64", True)
jax.config.update("jax_default_matmul_precision", "highest")


class FittedG(NamedTuple):
    """
    pivec: the estimated prior mixing proportions
    tau2_seq: the prior mixing variances
    means: the variational mixing means (features by grid components)
    variances: the variational mixing variances (features by grid components)
    proportions: the variational mixing proportions (features by grid components)
    """

    pivec: Array
    tau2_seq: Array
    means: Array
    variances: Array
    proportions: Array


class BackwashFit(NamedTuple):
    """
    result: per-feature posterior summaries
    elbo: the evidence lower bound at the final parameter values
    xi: the estimated variance inflation
    phi: the estimated g-prior scale
    z2hat: the estimated confounder scores in the rotated coordinates
    pi0: the estimated proportion of null effects
    fitted_g: the fitted prior and variational mixture
    state: the final variational parameters
    convergence: whether the accelerator reached its tolerance
    """

    result: pd.DataFrame
    elbo: float
    xi: float
    phi: float
    z2hat: Array
    pi0: float
    fitted_g: FittedG
    state: VEMState
    convergence: bool


class RotatedModel(NamedTuple):
    """
    Output of the QR rotation of the responses and covariates.

    betahat_ols: OLS estimates of the coefficient of interest (p,)
    sig_diag: estimated column variances (p,)
    alpha: estimated confounder loadings (p,k)
    R22: diagonal entry of R for the covariate of interest
    Q: the orthogonal matrix of the rotation (n,n)
    Z3: confounder scores estimated from the residual rows (n-q,k)
    Y1: rotated responses for the nuisance covariates (q-1,p), if any
    R11: block of R for the nuisance covariates (q-1,q-1), if any
    R12: block of R linking nuisance covariates and the covariate of interest (q-1,), if any
    """

    betahat_ols: Array
    sig_diag: Array
    alpha: Array
    R22: float
    Q: Array
    Z3: Array
    Y1: Optional[Array] = None
    R11: Optional[Array] = None
    R12: Optional[Array] = None


class BackwashResult(NamedTuple):
    """
    result: per-feature posterior summaries
    elbo: the evidence lower bound at the final parameter values
    xi: the estimated variance inflation
    phi: the estimated g-prior scale
    z2hat: the estimated confounder scores in the rotated coordinates
    pi0: the estimated proportion of null effects
    fitted_g: the fitted prior and variational mixture
    Zhat: the estimated confounders in the original coordinates (n,k)
    alphahat: the estimated confounder loadings (k,p)
    sig_diag: the estimated column variances (p,)
    convergence: whether the accelerator reached its tolerance
    """

    result: pd.DataFrame
    elbo: float
    xi: float
    phi: float
    z2hat: Array
    pi0: float
    fitted_g: FittedG
    Zhat: Array
    alphahat: Array
    sig_diag: Array
    convergence: bool


def whiten_loadings(alpha_tilde: ArrayLike) -> tuple[Array, Array]:
    """
    Whiten the confounder loadings so that their cross-product is the identity.

    Args:
        alpha_tilde: :math:`p \\times k` matrix of confounder loadings

    Returns:
        :py:obj:`tuple[Array, Array]`: the whitened loadings ``alpha_tilde @ a2_half_inv`` and
            ``a2_half_inv``, the inverse square root of ``alpha_tilde.T @ alpha_tilde``
    """
    alpha_tilde = jnp.asarray(alpha_tilde, dtype=float)
    evals, evecs = jnpla.eigh(alpha_tilde.T @ alpha_tilde)

    # relative rank tolerance
    tol = jnp.finfo(evals.dtype).eps * max(alpha_tilde.shape) * float(jnp.max(evals))
    if float(jnp.min(evals)) <= tol:
        raise ValueError(
            "The cross-product of the confounder loadings is singular. The number of confounders"
            " must not exceed the number of independent loading directions."
        )

    a2_half_inv = (evecs / jnp.sqrt(evals)) @ evecs.T
    return alpha_tilde @ a2_half_inv, a2_half_inv


def _check_second_step_args(
    betahat_ols: Array,
    S_diag: Array,
    alpha_tilde: Array,
    tau2_seq: Array,
    lambda_seq: Array,
    pi_init_type: str,
    sprop: float,
    var_inflate_pen: float,
) -> None:
    p = betahat_ols.shape[0]
    if S_diag.shape != (p,):
        raise ValueError(f"S_diag has shape {S_diag.shape}, expected ({p},)")
    if jnp.any(S_diag <= 0):
        raise ValueError("All entries of S_diag must be positive")
    if alpha_tilde.ndim != 2 or alpha_tilde.shape[0] != p:
        raise ValueError(f"alpha_tilde has shape {alpha_tilde.shape}, expected ({p}, k)")
    if jnp.any(tau2_seq < -ZERO_TOL):
        raise ValueError("The variance grid must be non-negative")
    if tau2_seq.shape != lambda_seq.shape:
        raise ValueError(f"tau2_seq has length {tau2_seq.shape[0]} but lambda_seq has length {lambda_seq.shape[0]}")
    if jnp.any(lambda_seq < 1):
        raise ValueError("All entries of lambda_seq must be at least 1")
    if pi_init_type not in PI_INIT_TYPES:
        raise ValueError(f"Unknown pi_init_type '{pi_init_type}', expected one of {PI_INIT_TYPES}")
    if not 0 <= sprop < 1:
        raise ValueError(f"sprop must be in [0, 1), got {sprop}")
    if var_inflate_pen < 0:
        raise ValueError(f"var_inflate_pen must be non-negative, got {var_inflate_pen}")


def _fit_second_step(
    betahat_ols: Array,
    S_diag: Array,
    alpha_tilde: Array,
    tau2_seq: Array,
    lambda_seq: Array,
    pi_init_type: str,
    scale_var: bool,
    var_inflate_pen: float,
    mubeta_init: Optional[ArrayLike],
    seed: int,
    tol: float,
    maxiter: int,
    betahat_out: Array,
    S_out: Array,
    sgamma: Array,
) -> BackwashFit:
    p = betahat_ols.shape[0]
    M = tau2_seq.shape[0]

    Amat, a2_half_inv = whiten_loadings(alpha_tilde)
    k = Amat.shape[1]

    zero_spot = find_zero_spot(tau2_seq)
    pivec = initialize_mixing_prop(M, zero_spot, pi_init_type=pi_init_type, seed=seed)

    if mubeta_init is None:
        mubeta = ash_posterior_mean(betahat_ols, jnp.sqrt(S_diag))
    else:
        mubeta = jnp.ravel(jnp.asarray(mubeta_init, dtype=float))
        if mubeta.shape != (p,):
            raise ValueError(f"mubeta_init has shape {mubeta.shape}, expected ({p},)")

    # GLS start for the confounder scores given the seeded effects
    ASA = Amat.T @ (Amat / S_diag[:, jnp.newaxis])
    muv = jnpla.solve(ASA, Amat.T @ ((betahat_ols - mubeta) / S_diag))

    data = VEMData(
        betahat_ols=betahat_ols,
        S_diag=S_diag,
        Amat=Amat,
        tau2_seq=tau2_seq,
        lambda_seq=lambda_seq,
        var_inflate_pen=jnp.asarray(var_inflate_pen, dtype=float),
        scale_var=scale_var,
    )

    # the sweep only reads pivec, muv, phi and xi from its input
    init = VEMState(
        pivec=pivec,
        mubeta_matrix=jnp.zeros((p, M)),
        sig2beta_matrix=jnp.zeros((p, M)),
        gamma_mat=jnp.tile(pivec, (p, 1)),
        muv=muv,
        Sigma_v=jnp.eye(k),
        phi=jnp.asarray(1.0),
        xi=jnp.asarray(1.0),
    )
    init = vem_sweep(init, data)

    sqout = squarem(
        pack_state(init),
        fixptfn=lambda par: back_fix(par, data),
        objfn=lambda par: back_obj(par, data),
        tol=tol,
        maxiter=maxiter,
    )
    state = unpack_state(sqout.par, p, M, k)
    elbo = -sqout.value_objfn
    log.logger.info(
        f"VEM finished after {sqout.iter} iterations ({sqout.fpevals} map evaluations). ELBO = {elbo}"
    )

    summary = posterior_summaries(state, zero_spot)

    # only the mean, the sd and the inputs return to the scale of the data
    summary = summary._replace(
        PosteriorMean=summary.PosteriorMean * sgamma,
        PosteriorSD=summary.PosteriorSD * sgamma,
    )
    result = make_result_table(betahat_out, jnp.sqrt(S_out), summary)

    fitted_g = FittedG(
        pivec=state.pivec,
        tau2_seq=tau2_seq,
        means=state.mubeta_matrix,
        variances=state.sig2beta_matrix,
        proportions=state.gamma_mat,
    )

    return BackwashFit(
        result=result,
        elbo=elbo,
        xi=float(state.xi),
        phi=float(state.phi),
        z2hat=a2_half_inv @ state.muv,
        pi0=float(summary.pi0),
        fitted_g=fitted_g,
        state=state,
        convergence=sqout.convergence,
    )


def backwash_second_step(
    betahat_ols: ArrayLike,
    S_diag: ArrayLike,
    alpha_tilde: ArrayLike,
    tau2_seq: ArrayLike,
    lambda_seq: ArrayLike,
    pi_init_type: str = "zero_conc",
    scale_var: bool = True,
    sprop: float = 0.0,
    var_inflate_pen: float = 0.0,
    mubeta_init: Optional[ArrayLike] = None,
    seed: int = 12345,
    tol: float = 1e-4,
    maxiter: int = 1500,
) -> BackwashFit:
    """
    Jointly estimate the effects and the confounders by variational EM.

    Args:
        betahat_ols: OLS estimates of the coefficient of interest in the rotated coordinates
        S_diag: variances of ``betahat_ols``
        alpha_tilde: :math:`p \\times k` confounder loadings
        tau2_seq: grid of prior mixing variances with exactly one zero
        lambda_seq: penalties on the prior mixing proportions, all at least 1
        pi_init_type: ``"zero_conc"``, ``"uniform"`` or ``"random"``
        scale_var: if True, estimate the variance inflation ``xi``
        sprop: exponent of the exchangeable transform already applied to the inputs.
            The posterior means, standard deviations, ``betahat`` and ``sebetahat`` are
            returned on the untransformed scale
        var_inflate_pen: penalty keeping ``xi`` away from zero
        mubeta_init: starting effects. Defaults to univariate adaptive shrinkage of ``betahat_ols``
        seed: random seed for ``pi_init_type="random"``
        tol: convergence tolerance of the accelerator
        maxiter: maximum number of fixed point map evaluations

    Returns:
        :py:obj:`BackwashFit`
    """
    betahat_ols = jnp.ravel(jnp.asarray(betahat_ols, dtype=float))
    S_diag = jnp.ravel(jnp.asarray(S_diag, dtype=float))
    alpha_tilde = jnp.asarray(alpha_tilde, dtype=float)
    tau2_seq = jnp.ravel(jnp.asarray(tau2_seq, dtype=float))
    lambda_seq = jnp.ravel(jnp.asarray(lambda_seq, dtype=float))

    _check_second_step_args(
        betahat_ols, S_diag, alpha_tilde, tau2_seq, lambda_seq, pi_init_type, sprop, var_inflate_pen
    )

    if sprop > 0:
        sgamma = S_diag ** (sprop / (2 * (1 - sprop)))
        S_out = S_diag ** (1 / (1 - sprop))
        betahat_out = betahat_ols * sgamma
    else:
        sgamma = jnp.ones_like(S_diag)
        S_out = S_diag
        betahat_out = betahat_ols

    return _fit_second_step(
        betahat_ols,
        S_diag,
        alpha_tilde,
        tau2_seq,
        lambda_seq,
        pi_init_type=pi_init_type,
        scale_var=scale_var,
        var_inflate_pen=var_inflate_pen,
        mubeta_init=mubeta_init,
        seed=seed,
        tol=tol,
        maxiter=maxiter,
        betahat_out=betahat_out,
        S_out=S_out,
        sgamma=sgamma,
    )


def _check_rotation(rotation: RotatedModel) -> None:
    p = jnp.ravel(jnp.asarray(rotation.betahat_ols)).shape[0]
    alpha = jnp.asarray(rotation.alpha)
    if alpha.ndim != 2 or alpha.shape[0] != p:
        raise ValueError(f"alpha has shape {alpha.shape}, expected ({p}, k)")

    k = alpha.shape[1]
    n = jnp.asarray(rotation.Q).shape[0]
    Z3 = jnp.asarray(rotation.Z3)
    if Z3.ndim != 2 or Z3.shape[1] != k:
        raise ValueError(f"Z3 has shape {Z3.shape}, expected (n - q, {k})")

    n_nuisance = 0
    if rotation.Y1 is not None:
        if rotation.R11 is None or rotation.R12 is None:
            raise ValueError("R11 and R12 are required when Y1 is given")
        n_nuisance = jnp.asarray(rotation.Y1).shape[0]

    if n_nuisance + 1 + Z3.shape[0] != n:
        raise ValueError(f"The rotated blocks have {n_nuisance + 1 + Z3.shape[0]} rows but Q is {n}x{n}")
    if float(jnp.ravel(jnp.asarray(rotation.R22))[0]) == 0:
        raise ValueError("R22 must be non-zero")


def backwash(
    rotation: RotatedModel,
    lambda_type: str = "zero_conc",
    pi_init_type: str = "zero_conc",
    grid_seq: Optional[ArrayLike] = None,
    lambda_seq: Optional[ArrayLike] = None,
    lambda0: float = 10.0,
    scale_var: bool = True,
    sprop: float = 0.0,
    var_inflate_pen: float = 0.0,
    mubeta_init: Optional[ArrayLike] = None,
    seed: int = 12345,
    tol: float = 1e-4,
    maxiter: int = 1500,
) -> BackwashResult:
    """
    Bayesian adjustment for confounding with adaptive shrinkage.

    Places a g-like prior on the confounders of the covariate of interest and a
    normal mixture prior on the effects, fits both by variational EM and maps
    the estimated confounders back to the original coordinates.

    Args:
        rotation: output of the QR rotation and factor analysis of the data
        lambda_type: ``"zero_conc"`` or ``"uniform"`` penalties when ``lambda_seq`` is not given
        pi_init_type: ``"zero_conc"``, ``"uniform"`` or ``"random"``
        grid_seq: custom grid of prior variances. Must contain exactly one zero
        lambda_seq: custom penalties, only allowed together with ``grid_seq``
        lambda0: penalty on the null component for ``lambda_type="zero_conc"``
        scale_var: if True, estimate the variance inflation ``xi``
        sprop: the effects are modeled as exchangeable after dividing by ``sebetahat ** sprop``
        var_inflate_pen: penalty keeping ``xi`` away from zero. Required when ``sprop = 1``
            and ``scale_var`` is True
        mubeta_init: starting effects. Defaults to univariate adaptive shrinkage
        seed: random seed for ``pi_init_type="random"``
        tol: convergence tolerance of the accelerator
        maxiter: maximum number of fixed point map evaluations

    Returns:
        :py:obj:`BackwashResult`
    """
    if lambda0 < 1:
        raise ValueError(f"lambda0 must be at least 1, got {lambda0}")
    if sprop < 0 or sprop > 1:
        raise ValueError(f"sprop must be in [0, 1], got {sprop}")
    if var_inflate_pen < 0:
        raise ValueError(f"var_inflate_pen must be non-negative, got {var_inflate_pen}")
    if scale_var and sprop == 1 and var_inflate_pen == 0:
        raise ValueError("sprop cannot be 1 when scale_var is True and var_inflate_pen = 0.")
    if lambda_type not in LAMBDA_TYPES:
        raise ValueError(f"Unknown lambda_type '{lambda_type}', expected one of {LAMBDA_TYPES}")
    if pi_init_type not in PI_INIT_TYPES:
        raise ValueError(f"Unknown pi_init_type '{pi_init_type}', expected one of {PI_INIT_TYPES}")
    _check_rotation(rotation)

    R22 = float(jnp.ravel(jnp.asarray(rotation.R22))[0])
    sig_diag = jnp.ravel(jnp.asarray(rotation.sig_diag, dtype=float))
    betahat_ols = jnp.ravel(jnp.asarray(rotation.betahat_ols, dtype=float))
    alpha_tilde = jnp.asarray(rotation.alpha, dtype=float) / R22
    S_diag = sig_diag / R22**2
    if jnp.any(S_diag <= 0):
        raise ValueError("All entries of sig_diag must be positive")

    # exchangeable version of the model
    if sprop > 0:
        sgamma = S_diag ** (-sprop / 2)
        alpha_star = alpha_tilde * sgamma[:, jnp.newaxis]
        betahat_star = betahat_ols * sgamma
        S_star = S_diag ** (1 - sprop)
    else:
        alpha_star = alpha_tilde
        betahat_star = betahat_ols
        S_star = S_diag

    grid = build_grid(
        betahat_star, S_star, grid_seq=grid_seq, lambda_seq=lambda_seq, lambda_type=lambda_type, lambda0=lambda0
    )

    fit = _fit_second_step(
        betahat_star,
        S_star,
        alpha_star,
        grid.tau2_seq,
        grid.lambda_seq,
        pi_init_type=pi_init_type,
        scale_var=scale_var,
        var_inflate_pen=var_inflate_pen,
        mubeta_init=mubeta_init,
        seed=seed,
        tol=tol,
        maxiter=maxiter,
        betahat_out=betahat_ols,
        S_out=S_diag,
        sgamma=S_diag ** (sprop / 2),
    )

    Q = jnp.asarray(rotation.Q, dtype=float)
    Z3 = jnp.asarray(rotation.Z3, dtype=float)
    Z2 = fit.z2hat[jnp.newaxis, :]  # Shape: (1,k)
    if rotation.Y1 is not None:
        Y1 = jnp.asarray(rotation.Y1, dtype=float)
        R11 = jnp.asarray(rotation.R11, dtype=float)
        R12 = jnp.reshape(jnp.asarray(rotation.R12, dtype=float), (-1, 1))
        post_mean = jnp.asarray(fit.result["PosteriorMean"].to_numpy())

        beta1_ols = jnpla.solve(R11, Y1 - R12 @ betahat_ols[jnp.newaxis, :])
        resid_top = Y1 - R12 @ post_mean[jnp.newaxis, :] - R11 @ beta1_ols  # Shape: (q-1,p)

        # GLS regression of the nuisance residuals on the loadings
        alpha_sig = alpha_tilde / sig_diag[:, jnp.newaxis]
        Z1 = jnpla.solve(alpha_tilde.T @ alpha_sig, alpha_sig.T @ resid_top.T)  # Shape: (k,q-1)
        Zhat = Q @ jnp.concatenate([Z1.T, Z2, Z3], axis=0)
    else:
        Zhat = Q @ jnp.concatenate([Z2, Z3], axis=0)

    return BackwashResult(
        result=fit.result,
        elbo=fit.elbo,
        xi=fit.xi,
        phi=fit.phi,
        z2hat=fit.z2hat,
        pi0=fit.pi0,
        fitted_g=fit.fitted_g,
        Zhat=Zhat,
        alphahat=jnp.asarray(rotation.alpha, dtype=float).T,
        sig_diag=sig_diag,
        convergence=fit.convergence,
    )
