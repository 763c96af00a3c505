"""
Shared utilities for the Coleman operator solvers.

This module provides the numerical routines, utility variants, errors and
logging helpers used by both the time iteration and the EGM operators.

Tolerance Conventions
---------------------
The codebase uses a hierarchy of tolerances for different purposes:

    SOLVER_TOL = 1e-6
        Outer loop convergence for policy iteration.
        Sup distance between successive policies on the model grid.

    BISECTION_TOL = 1e-10
        Bracket width at which bisection stops when inverting the
        Euler equation on the exogenous grid.

    BRACKET_EPS = 1e-10
        Consumption bracket (δ, y - δ) used by time iteration.

    EPS = 1e-10
        Numerical floor to prevent division by zero and invalid powers.
        Used in expressions like jnp.maximum(x, EPS) before exponentiation.

Inner tolerances are tighter than the outer one because errors in the
root-find compound through outer iterations.
"""

import logging
from typing import NamedTuple

import jax
import jax.numpy as jnp

jax.config.update("jax_enable_x64", True)

__all__ = [
    "SOLVER_TOL",
    "BISECTION_TOL",
    "BRACKET_EPS",
    "EPS",
    "MAX_ITER",
    "MAX_BISECTION_STEPS",
    "GrowthModelError",
    "InvalidGridError",
    "RootNotBracketedError",
    "LogUtility",
    "PowerUtility",
    "make_utility",
    "bisection_solve",
    "verbose",
    "quiet",
    "warnings",
    "set_verbosity_level",
]

# =============================================================================
# Tolerance Constants
# =============================================================================

SOLVER_TOL = 1e-6  # Outer loop convergence
BISECTION_TOL = 1e-10  # Root-finding precision (bracket width)
BRACKET_EPS = 1e-10  # Consumption bracket offset δ
EPS = 1e-10  # Numerical floor for stability
MAX_ITER = 500  # Outer iteration budget
MAX_BISECTION_STEPS = 100


# =============================================================================
# Logging
# =============================================================================

_log = logging.getLogger("coleman_egm")

_log.setLevel(logging.ERROR)


def verbose():
    _log.setLevel(logging.INFO)


def quiet():
    _log.setLevel(logging.ERROR)


def warnings():
    _log.setLevel(logging.WARNING)


def set_verbosity_level(level):
    _log.setLevel(level)


# =============================================================================
# Errors
# =============================================================================


class GrowthModelError(Exception):
    """Base class for errors raised by the Coleman operator solvers."""


class InvalidGridError(GrowthModelError, ValueError):
    """A policy grid is too short, unsorted, has duplicates or bad values."""


class RootNotBracketedError(GrowthModelError):
    """The Euler residual has no sign change on the consumption bracket."""


# =============================================================================
# CRRA Utility
# =============================================================================


class LogUtility(NamedTuple):
    """
    Log utility, the γ = 1 member of the CRRA family.

        u(c) = log(c),  u'(c) = 1/c,  (u')^{-1}(m) = 1/m
    """

    def u(self, c):
        return jnp.log(c)

    def u_prime(self, c):
        return 1 / c

    def u_prime_inv(self, m):
        return 1 / m


class PowerUtility(NamedTuple):
    """
    CRRA utility with curvature γ ≠ 1.

        u(c) = (c^{1-γ} - 1) / (1-γ)
        u'(c) = c^{-γ}
        (u')^{-1}(m) = m^{-1/γ}

    u' is a bijection of (0, ∞) onto itself, which is what makes the
    endogenous grid method applicable.
    """

    γ: float

    def u(self, c):
        return (c ** (1 - self.γ) - 1) / (1 - self.γ)

    def u_prime(self, c):
        return c ** (-self.γ)

    def u_prime_inv(self, m):
        return m ** (-1 / self.γ)


def make_utility(γ: float) -> LogUtility | PowerUtility:
    """
    Select the CRRA variant for curvature γ.

    The choice is made once, at configuration time, so that jitted
    operators never branch on γ.

    Raises:
        ValueError: If γ is not strictly positive.
    """
    if not γ > 0:
        raise ValueError(f"CRRA curvature γ must be positive, got {γ}")
    if abs(γ - 1.0) < EPS:
        return LogUtility()
    return PowerUtility(float(γ))


# =============================================================================
# Bisection
# =============================================================================


def bisection_solve(f, a, b, tol=BISECTION_TOL, max_iter=MAX_BISECTION_STEPS):
    """
    Find root of f on [a, b] using bisection.

    Assumes f(a) and f(b) have opposite signs; callers check the bracket
    before calling, since the check cannot raise inside traced code.

    Args:
        f: Scalar function
        a: Left endpoint of the bracket
        b: Right endpoint of the bracket
        tol: Stop once the bracket is narrower than tol
        max_iter: Maximum number of halvings

    Returns:
        Tuple (x*, n_steps) where x* is the bracket midpoint and n_steps is
        the number of halvings performed (f is evaluated n_steps + 1 times).
    """
    f_a = f(a)

    def cond(state):
        a, b, f_a, i = state
        return ((b - a) > tol) & (i < max_iter)

    def body(state):
        a, b, f_a, i = state
        mid = (a + b) / 2
        f_mid = f(mid)
        # If f_a and f_mid have same sign, root is in [mid, b]
        use_right = f_a * f_mid > 0
        new_a = jnp.where(use_right, mid, a)
        new_b = jnp.where(use_right, b, mid)
        new_f_a = jnp.where(use_right, f_mid, f_a)
        return new_a, new_b, new_f_a, i + 1

    a_out, b_out, _, n_steps = jax.lax.while_loop(cond, body, (a, b, f_a, 0))
    return (a_out + b_out) / 2, n_steps
