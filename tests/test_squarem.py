import logging

import jax.numpy as jnp
import pytest

from conftest import initial_state, make_data

from backwash import log
from backwash.params import pack_state
from backwash.squarem import Objective, squarem
from backwash.vem import back_fix, back_obj


def test_squarem_finds_fixed_point_of_contraction():
    A = jnp.diag(jnp.array([0.95, 0.5, 0.1]))
    b = jnp.array([1.0, -2.0, 0.5])
    x_star = jnp.linalg.solve(jnp.eye(3) - A, b)

    def fixptfn(x):
        return A @ x + b

    def objfn(x):
        return Objective(value=float(jnp.linalg.norm(x - x_star)), valid=True)

    res = squarem(jnp.zeros(3), fixptfn, objfn, tol=1e-8)

    assert res.convergence
    assert jnp.allclose(res.par, x_star, atol=1e-5)
    assert res.value_objfn <= objfn(jnp.zeros(3)).value


def test_squarem_falls_back_to_plain_steps():
    c = jnp.array([1.0, 2.0])
    x_star = 2 * c
    visited = [jnp.zeros(2)]

    # only points reached by plain steps are valid inputs
    def fixptfn(x):
        if not any(jnp.allclose(x, v, rtol=1e-12, atol=1e-12) for v in visited):
            return jnp.full_like(x, jnp.nan)
        out = 0.5 * x + c
        visited.append(out)
        return out

    def objfn(x):
        return Objective(value=float(jnp.linalg.norm(x - x_star)), valid=True)

    res = squarem(jnp.zeros(2), fixptfn, objfn, tol=1e-6)

    assert res.convergence
    assert jnp.allclose(res.par, x_star, atol=1e-3)


def test_squarem_rejects_extrapolations_that_increase_the_objective(caplog):
    A = jnp.diag(jnp.array([0.9, 0.3]))
    x0 = jnp.ones(2)
    trajectory = jnp.stack([jnp.diag(A) ** t for t in range(300)])
    off_path = []

    def on_path(x):
        rel = jnp.max(jnp.abs(trajectory - x) / trajectory, axis=1)
        return bool(jnp.min(rel) < 1e-9)

    # points not reached by plain steps are valid but strictly worse
    def objfn(x):
        value = float(jnp.linalg.norm(x))
        if on_path(x):
            return Objective(value=value, valid=True)
        off_path.append(x)
        return Objective(value=value + 10.0, valid=True)

    with caplog.at_level("DEBUG", logger="backwash"):
        res = squarem(x0, lambda x: A @ x, objfn, tol=1e-6, step_max0=4.0)

    messages = [rec.getMessage() for rec in caplog.records if "squarem iteration" in rec.getMessage()]
    accepted = [float(msg.split("objective: ")[1].split(",")[0]) for msg in messages]

    assert res.convergence
    assert len(off_path) > 0
    assert on_path(res.par)
    assert not any("extrapolated: True" in msg for msg in messages)
    assert all(b <= a for a, b in zip([float(jnp.linalg.norm(x0))] + accepted, accepted))


def test_squarem_rejects_invalid_start():
    with pytest.raises(ValueError):
        squarem(jnp.zeros(2), lambda x: x, lambda x: Objective(value=float("inf"), valid=False))


def test_squarem_never_accepts_a_worse_objective():
    data = make_data(seed=5)
    par = pack_state(initial_state(data))
    start = back_obj(par, data)

    res = squarem(par, lambda x: back_fix(x, data), lambda x: back_obj(x, data), tol=1e-4)

    assert res.convergence
    assert res.value_objfn <= start.value
    assert back_obj(res.par, data).valid
    assert jnp.isclose(back_obj(res.par, data).value, res.value_objfn)


def test_squarem_respects_iteration_budget():
    data = make_data(seed=5)
    par = pack_state(initial_state(data))

    res = squarem(par, lambda x: back_fix(x, data), lambda x: back_obj(x, data), tol=1e-12, maxiter=6)

    assert not res.convergence
    assert res.fpevals <= 8


def test_verbose_logging_reports_iterations(caplog):
    A = jnp.diag(jnp.array([0.9, 0.3]))

    def objfn(x):
        return Objective(value=float(jnp.linalg.norm(x)), valid=True)

    log.set_verbose(True)
    try:
        with caplog.at_level("DEBUG", logger="backwash"):
            squarem(jnp.ones(2), lambda x: A @ x, objfn, tol=1e-6)
        assert any("squarem iteration" in rec.getMessage() for rec in caplog.records)
        assert log._stream_handler in log.logger.handlers
        n_handlers = len(log.logger.handlers)
        log.set_verbose(True)
        assert len(log.logger.handlers) == n_handlers
    finally:
        log.set_verbose(False)

    assert log._stream_handler is None
    assert not any(isinstance(h, logging.StreamHandler) for h in log.logger.handlers)
