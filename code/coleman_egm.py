"""
Coleman operator for the stochastic optimal growth model: time iteration
and the Endogenous Grid Method (EGM).

A household with income y chooses consumption c and saves k = y - c.
Next period income is y' = f(k) z with f(k) = k^α and z a lognormal shock.
The optimal policy solves the Euler equation

    u'(c(y)) = β E[ u'(c(f(y - c(y)) z)) f'(y - c(y)) z ]

and is the fixed point of the Coleman operator K. This module implements
two ways of applying K to a candidate policy g:

    K_time_iteration: fix the income grid {y_i} and find c_i by bisection
        on the Euler residual. One root-find per grid point.
    K_egm: fix the savings grid {k_i}, evaluate the right hand side once,
        invert u' in closed form and back out y_i = k_i + c_i.

and a driver, iterate_policy, that iterates either one.

Grid structure:
    - model.grid: 1D, strictly increasing, positive. It is the income grid
      for time iteration and the savings grid for EGM.
    - PolicyGrid(x, c): piecewise linear policy with knots x. Time iteration
      returns knots on model.grid; EGM returns knots on the endogenous grid.

Expectations:
    Shocks(z, weights) holds a fixed sample of shocks drawn once per
    experiment. E[h(z)] is computed as h(z) @ weights, which is a sample mean
    for Monte Carlo draws and a quadrature rule for Gauss-Hermite nodes.

Extrapolation strategy:
    Policies are extended linearly beyond their first and last knots using
    the slope of the boundary segment. Next period income f(k) z regularly
    falls outside the knots, so this is exercised on every step.
"""

import logging
from functools import partial
from typing import Callable, NamedTuple

import jax
import jax.numpy as jnp
import numpy as np
import quantecon as qe

from growth_utils import (
    BRACKET_EPS,
    EPS,
    MAX_ITER,
    SOLVER_TOL,
    InvalidGridError,
    LogUtility,
    PowerUtility,
    RootNotBracketedError,
    bisection_solve,
    make_utility,
)

jax.config.update("jax_enable_x64", True)

_log = logging.getLogger("coleman_egm")


# =============================================================================
# Model Definition
# =============================================================================


class GrowthModel(NamedTuple):
    """
    Stochastic optimal growth model primitives.

    Parameters:
        α: Production curvature, f(k) = k^α
        β: Discount factor
        μ: Location of the log shock, ln z ~ N(μ, s^2)
        s: Scale of the log shock
        utility: LogUtility or PowerUtility, chosen from γ
        grid: Income grid (time iteration) and savings grid (EGM)
    """

    α: float
    β: float
    μ: float
    s: float
    utility: LogUtility | PowerUtility
    grid: jnp.ndarray  # 1D, shape (n,)


def create_growth_model(
    α: float = 0.65,
    β: float = 0.95,
    γ: float = 1.0,
    μ: float = 0.0,
    s: float = 0.1,
    grid_min: float = 1e-6,
    grid_max: float = 4.0,
    grid_size: int = 200,
) -> GrowthModel:
    """
    Create a growth model.

    Defaults reproduce the reference workload: Cobb-Douglas production with
    α = 0.65, β = 0.95, log utility and a 200 point grid on [1e-6, 4].

    Args:
        γ: CRRA curvature. γ = 1 selects log utility.
        grid_min: Smallest grid point, must be positive
        grid_max: Largest grid point
        grid_size: Number of grid points

    Raises:
        ValueError: If any parameter is outside its admissible range
    """
    if not 0 < α < 1:
        raise ValueError(f"α must lie in (0, 1), got {α}")
    if not 0 < β < 1:
        raise ValueError(f"β must lie in (0, 1), got {β}")
    if s < 0:
        raise ValueError(f"Shock scale s must be non-negative, got {s}")
    if not 0 < grid_min < grid_max:
        raise ValueError(
            f"Need 0 < grid_min < grid_max, got grid_min={grid_min}, "
            f"grid_max={grid_max}"
        )
    if grid_size < 2:
        raise ValueError(f"grid_size must be at least 2, got {grid_size}")

    utility = make_utility(γ)
    grid = jnp.linspace(grid_min, grid_max, int(grid_size))
    return GrowthModel(float(α), float(β), float(μ), float(s), utility, grid)


class Shocks(NamedTuple):
    """Shock nodes z and the weights used to take expectations over them."""

    z: jnp.ndarray  # shape (M,)
    weights: jnp.ndarray  # shape (M,), sums to one


def draw_shocks(model: GrowthModel, shock_size: int = 250, seed: int = 1234) -> Shocks:
    """
    Monte Carlo draws z = exp(μ + s ξ), ξ ~ N(0, 1), with equal weights.

    Draw once per experiment and pass the same sample to every operator call.
    """
    if shock_size < 1:
        raise ValueError(f"shock_size must be positive, got {shock_size}")
    key = jax.random.PRNGKey(seed)
    ξ = jax.random.normal(key, (shock_size,))
    z = jnp.exp(model.μ + model.s * ξ)
    weights = jnp.full(shock_size, 1 / shock_size)
    return Shocks(z, weights)


def quadrature_shocks(model: GrowthModel, n: int = 7) -> Shocks:
    """
    Gauss-Hermite nodes and weights for the lognormal shock.

    With s = 0 the shock is degenerate at exp(μ) and a single node is returned.
    """
    if n < 1:
        raise ValueError(f"Number of quadrature nodes must be positive, got {n}")
    if model.s == 0:
        return Shocks(jnp.array([np.exp(model.μ)]), jnp.array([1.0]))
    nodes, weights = qe.quad.qnwlogn(n, model.μ, model.s**2)
    return Shocks(jnp.asarray(np.ravel(nodes)), jnp.asarray(np.ravel(weights)))


# =============================================================================
# Policy Representation
# =============================================================================


class PolicyGrid(NamedTuple):
    """
    Piecewise linear consumption policy with knots x and values c.

    Build through create_policy_grid, which checks the knots.
    """

    x: jnp.ndarray
    c: jnp.ndarray

    def evaluate(self, y):
        """Interpolate at y, extrapolating linearly outside [x[0], x[-1]]."""
        y = jnp.asarray(y)
        c = jnp.interp(
            y.ravel(), self.x, self.c, left="extrapolate", right="extrapolate"
        )
        return c.reshape(y.shape)


def create_policy_grid(xs, cs) -> PolicyGrid:
    """
    Validate knots and values and build a PolicyGrid.

    Raises:
        InvalidGridError: If the arrays are not 1D, differ in length, have
            fewer than two points, hold non-finite values, if xs is not
            strictly increasing or if any c is not positive.
    """
    xs = np.asarray(xs, dtype=float)
    cs = np.asarray(cs, dtype=float)

    if xs.ndim != 1 or cs.ndim != 1:
        raise InvalidGridError(
            f"Policy arrays must be 1D, got shapes {xs.shape} and {cs.shape}"
        )
    if xs.size != cs.size:
        raise InvalidGridError(
            f"Policy arrays differ in length: {xs.size} knots, {cs.size} values"
        )
    if xs.size < 2:
        raise InvalidGridError(f"Need at least 2 knots, got {xs.size}")
    if not (np.all(np.isfinite(xs)) and np.all(np.isfinite(cs))):
        raise InvalidGridError("Policy arrays contain non-finite values")

    bad = np.flatnonzero(np.diff(xs) <= 0)
    if bad.size:
        i = int(bad[0])
        raise InvalidGridError(
            f"Knots must be strictly increasing: x[{i}] = {xs[i]!r}, "
            f"x[{i + 1}] = {xs[i + 1]!r}"
        )
    if np.any(cs <= 0):
        i = int(np.flatnonzero(cs <= 0)[0])
        raise InvalidGridError(f"Consumption must be positive: c[{i}] = {cs[i]!r}")

    return PolicyGrid(jnp.asarray(xs), jnp.asarray(cs))


def initial_policy(model: GrowthModel) -> PolicyGrid:
    """The consume-everything policy g(y) = y."""
    return create_policy_grid(model.grid, model.grid)


def closed_form_policy(model: GrowthModel) -> PolicyGrid:
    """
    Exact policy c*(y) = (1 - αβ) y for log utility and f(k) = k^α.

    Raises:
        ValueError: If the model does not have log utility
    """
    if not isinstance(model.utility, LogUtility):
        raise ValueError("The closed form policy requires log utility (γ = 1)")
    return create_policy_grid(model.grid, (1 - model.α * model.β) * model.grid)


def max_policy_distance(g1: PolicyGrid, g2: PolicyGrid, points) -> float:
    """Sup distance between two policies over the given points."""
    return float(jnp.max(jnp.abs(g1.evaluate(points) - g2.evaluate(points))))


# =============================================================================
# Euler Equation Pieces
# =============================================================================


def _expected_marginal_value(g, k, model, shocks):
    """
    β E[u'(g(f(k) z)) f'(k) z] for savings k (scalar or array).

    This is the right hand side of the Euler equation. Each call evaluates
    g once per shock node per entry of k.
    """
    α, β, μ, s, utility, grid = model
    z, weights = shocks

    k = jnp.asarray(k)
    y_next = (k**α)[..., None] * z  # shape (..., M)
    c_next = jnp.maximum(g.evaluate(y_next), EPS)
    integrand = utility.u_prime(c_next) * (α * k ** (α - 1))[..., None] * z
    return β * (integrand @ weights)


def _euler_residual(c, y, g, model, shocks):
    """h(c) = u'(c) - β E[u'(g(f(y - c) z)) f'(y - c) z], decreasing in c."""
    return model.utility.u_prime(c) - _expected_marginal_value(g, y - c, model, shocks)


# =============================================================================
# Time Iteration Operator (exogenous grid)
# =============================================================================


@jax.jit
def _euler_bracket(g, model, shocks):
    """Euler residual at both ends of (δ, y - δ) for every grid point."""
    y = model.grid
    lo = jnp.full_like(y, BRACKET_EPS)
    hi = y - BRACKET_EPS
    h_lo = _euler_residual(lo, y, g, model, shocks)
    h_hi = _euler_residual(hi, y, g, model, shocks)
    return lo, hi, h_lo, h_hi


@jax.jit
def _time_iteration_step(g, model, shocks):
    """Bisect the Euler residual at every grid point. Returns (c, n_steps)."""

    def solve_at_y(y):
        def h(c):
            return _euler_residual(c, y, g, model, shocks)

        lo = jnp.zeros_like(y) + BRACKET_EPS
        return bisection_solve(h, lo, y - BRACKET_EPS)

    return jax.vmap(solve_at_y)(model.grid)


def K_time_iteration(
    g: PolicyGrid, model: GrowthModel, shocks: Shocks
) -> tuple[PolicyGrid, int]:
    """
    One application of the Coleman operator on the exogenous income grid.

    For every y_i on model.grid, Kg(y_i) is the root of the Euler residual
    in (δ, y_i - δ), found by bisection. The residual is checked at both
    ends of each bracket before any bisection runs.

    Args:
        g: current policy
        model: GrowthModel instance
        shocks: shock sample shared by all grid points and iterations

    Returns:
        Kg: new policy with knots on model.grid
        n_evals: number of evaluations of g (M per residual evaluation;
            two bracket checks, one bisection start and one per halving)

    Raises:
        RootNotBracketedError: If some bracket has no sign change
    """
    lo, hi, h_lo, h_hi = _euler_bracket(g, model, shocks)
    bracketed = np.asarray((hi > lo) & (h_lo * h_hi < 0))
    if not bracketed.all():
        i = int(np.flatnonzero(~bracketed)[0])
        y = float(model.grid[i])
        raise RootNotBracketedError(
            f"Euler residual has no sign change on ({float(lo[i]):.3g}, "
            f"{float(hi[i]):.3g}) at y = {y:.6g}: h = {float(h_lo[i]):.6g}, "
            f"{float(h_hi[i]):.6g}"
        )

    c, n_steps = _time_iteration_step(g, model, shocks)
    n_evals = len(shocks.z) * int(np.sum(3 + np.asarray(n_steps)))
    return create_policy_grid(model.grid, c), n_evals


# =============================================================================
# EGM Operator (endogenous grid)
# =============================================================================


@jax.jit
def _egm_step(g, model, shocks):
    """Consumption and endogenous income at every savings grid point."""
    k = model.grid
    rhs = jnp.maximum(_expected_marginal_value(g, k, model, shocks), EPS)
    c = model.utility.u_prime_inv(rhs)
    return k + c, c


def K_egm(g: PolicyGrid, model: GrowthModel, shocks: Shocks) -> tuple[PolicyGrid, int]:
    """
    One application of the Coleman operator by the endogenous grid method.

    For every savings level k_i on model.grid:
        1. m_i = β E[u'(g(f(k_i) z)) f'(k_i) z]
        2. c_i = (u')^{-1}(m_i)
        3. y_i = k_i + c_i

    The pairs (y_i, c_i) are sorted on y before building the new policy.
    Monotone policies keep y increasing in k, but this is checked rather
    than assumed.

    Returns:
        Kg: new policy with knots on the endogenous grid {y_i}
        n_evals: number of evaluations of g, one per (k_i, z_j) pair

    Raises:
        InvalidGridError: If two endogenous grid points coincide
    """
    y, c = _egm_step(g, model, shocks)
    y, c = np.asarray(y), np.asarray(c)
    order = np.argsort(y, kind="stable")
    return create_policy_grid(y[order], c[order]), len(model.grid) * len(shocks.z)


# =============================================================================
# Fixed Point Driver
# =============================================================================


Operator = Callable[[PolicyGrid, GrowthModel, Shocks], tuple[PolicyGrid, int]]


class Solution(NamedTuple):
    """
    Output of iterate_policy.

    Attributes:
        policy: final policy
        n_iter: number of operator applications
        error: sup distance between the last two policies on model.grid
        n_evals: total evaluations of intermediate policies by the operator
        history: every policy from the initial one on, if requested
    """

    policy: PolicyGrid
    n_iter: int
    error: float
    n_evals: int
    history: tuple[PolicyGrid, ...] | None


def iterate_policy(
    operator: Operator,
    g_init: PolicyGrid,
    model: GrowthModel,
    shocks: Shocks,
    tol: float | None = SOLVER_TOL,
    max_iter: int = MAX_ITER,
    keep_history: bool = False,
    print_skip: int = 5,
) -> Solution:
    """
    Iterate operator from g_init.

    With tol=None the operator is applied exactly max_iter times, which
    reproduces fixed-count reference runs. Otherwise iteration stops once
    successive policies are within tol of each other on model.grid, or
    after max_iter steps, whichever comes first. Check n_iter < max_iter
    for convergence.

    Errors raised by the operator propagate unchanged.
    """
    if max_iter < 0:
        raise ValueError(f"max_iter must be non-negative, got {max_iter}")
    if print_skip < 1:
        raise ValueError(f"print_skip must be positive, got {print_skip}")

    g = g_init
    history = [g_init] if keep_history else None
    n_evals = 0
    n_iter = 0
    error = float("inf")

    while n_iter < max_iter and (tol is None or error >= tol):
        g_new, evals = operator(g, model, shocks)
        error = max_policy_distance(g_new, g, model.grid)
        n_evals += evals
        n_iter += 1
        g = g_new
        if keep_history:
            history.append(g)
        if n_iter % print_skip == 0:
            _log.info("iter = %d, error = %.3e", n_iter, error)

    if tol is not None:
        if error < tol:
            _log.info("Converged after %d iterations (error = %.3e)", n_iter, error)
        else:
            _log.warning(
                "Hit maximum iteration number %d (error = %.3e)", max_iter, error
            )

    return Solution(
        g, n_iter, error, n_evals, tuple(history) if keep_history else None
    )


def solve_egm(
    model: GrowthModel,
    shocks: Shocks,
    tol: float | None = SOLVER_TOL,
    max_iter: int = MAX_ITER,
    **kwargs,
) -> Solution:
    """Solve using EGM, starting from the consume-everything policy."""
    return iterate_policy(
        K_egm, initial_policy(model), model, shocks, tol, max_iter, **kwargs
    )


def solve_time_iteration(
    model: GrowthModel,
    shocks: Shocks,
    tol: float | None = SOLVER_TOL,
    max_iter: int = MAX_ITER,
    **kwargs,
) -> Solution:
    """Solve using time iteration, starting from the consume-everything policy."""
    return iterate_policy(
        K_time_iteration, initial_policy(model), model, shocks, tol, max_iter, **kwargs
    )


# =============================================================================
# Euler Equation Error
# =============================================================================


@partial(jax.jit, static_argnames=("n_test",))
def compute_euler_errors(
    policy: PolicyGrid,
    model: GrowthModel,
    shocks: Shocks,
    n_test: int = 500,
) -> jnp.ndarray:
    """
    Compute log10 Euler equation errors of a policy.

    At each test income y, savings are k = y - c(y) and the Euler equation
    gives c_euler(y) = (u')^{-1}(β E[u'(c(f(k) z)) f'(k) z]). The error is
    |1 - c_euler(y) / c(y)|.

    Test points span the 10th to 90th percentile of model.grid to keep
    away from the boundary where extrapolation dominates.

    Returns:
        log10 Euler errors, shape (n_test,)
    """
    grid = model.grid
    y = jnp.linspace(jnp.percentile(grid, 10), jnp.percentile(grid, 90), n_test)

    c = jnp.clip(policy.evaluate(y), EPS, y - EPS)
    k = y - c
    rhs = jnp.maximum(_expected_marginal_value(policy, k, model, shocks), EPS)
    c_euler = model.utility.u_prime_inv(rhs)

    error = jnp.abs(1 - c_euler / c)
    return jnp.log10(jnp.maximum(error, 1e-16))
