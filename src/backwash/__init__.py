"""backwash: Bayesian adjustment for confounding with adaptive shrinkage."""
from .infer import (
    backwash,
    backwash_second_step,
    BackwashFit,
    BackwashResult,
    FittedG,
    RotatedModel,
    whiten_loadings,
)
from .grid import build_grid, default_tau2_seq, find_zero_spot, get_grid_var
from .params import pack_state, unpack_state, VEMData, VEMState
from .squarem import Objective, squarem, SquaremResult
from .summary import posterior_summaries, qval_from_lfdr
from .vem import back_fix, back_obj, compute_elbo, vem_sweep

__all__ = [
    "backwash",
    "backwash_second_step",
    "BackwashFit",
    "BackwashResult",
    "FittedG",
    "RotatedModel",
    "whiten_loadings",
    "build_grid",
    "default_tau2_seq",
    "find_zero_spot",
    "get_grid_var",
    "pack_state",
    "unpack_state",
    "VEMData",
    "VEMState",
    "Objective",
    "squarem",
    "SquaremResult",
    "posterior_summaries",
    "qval_from_lfdr",
    "back_fix",
    "back_obj",
    "compute_elbo",
    "vem_sweep",
]
__version__ = "0.1.0"
