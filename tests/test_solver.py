"""
This file implements unit tests for the fixed point driver and the Euler
equation diagnostics
"""

import unittest

import numpy as np

from coleman_egm import (
    K_egm,
    K_time_iteration,
    Solution,
    closed_form_policy,
    compute_euler_errors,
    create_growth_model,
    draw_shocks,
    initial_policy,
    iterate_policy,
    max_policy_distance,
    solve_egm,
    solve_time_iteration,
)
from growth_utils import RootNotBracketedError


def _identity(g, model, shocks):
    return g, 1


class testsForFixedPointDriver(unittest.TestCase):
    def setUp(self):
        self.model = create_growth_model(grid_size=50)
        self.shocks = draw_shocks(self.model, 50)

    def test_fixed_count_mode(self):
        sol = solve_egm(self.model, self.shocks, tol=None, max_iter=7, keep_history=True)
        self.assertIsInstance(sol, Solution)
        self.assertEqual(sol.n_iter, 7)
        self.assertEqual(len(sol.history), 8)
        self.assertIs(sol.history[-1], sol.policy)
        self.assertEqual(sol.n_evals, 7 * 50 * 50)

    def test_fixed_count_ignores_convergence(self):
        g = initial_policy(self.model)
        sol = iterate_policy(_identity, g, self.model, self.shocks, tol=None, max_iter=4)
        self.assertEqual(sol.n_iter, 4)
        self.assertEqual(sol.error, 0.0)
        self.assertEqual(sol.n_evals, 4)

    def test_tolerance_mode_stops_early(self):
        g = initial_policy(self.model)
        sol = iterate_policy(_identity, g, self.model, self.shocks, tol=1e-6, max_iter=10)
        self.assertEqual(sol.n_iter, 1)
        self.assertIsNone(sol.history)

    def test_zero_iterations(self):
        g = initial_policy(self.model)
        sol = iterate_policy(K_egm, g, self.model, self.shocks, tol=None, max_iter=0)
        self.assertIs(sol.policy, g)
        self.assertEqual(sol.n_iter, 0)
        self.assertEqual(sol.n_evals, 0)
        self.assertEqual(sol.error, float("inf"))

    def test_negative_budget(self):
        with self.assertRaises(ValueError):
            solve_egm(self.model, self.shocks, max_iter=-1)

    def test_print_skip_must_be_positive(self):
        g = initial_policy(self.model)
        for print_skip in (0, -1):
            with self.assertRaises(ValueError):
                iterate_policy(
                    K_egm, g, self.model, self.shocks, tol=None, max_iter=2,
                    print_skip=print_skip,
                )

    def test_budget_exhaustion_is_logged(self):
        with self.assertLogs("coleman_egm", level="WARNING") as logs:
            sol = solve_egm(self.model, self.shocks, tol=1e-14, max_iter=3)
        self.assertEqual(sol.n_iter, 3)
        self.assertGreater(sol.error, 1e-14)
        self.assertIn("Hit maximum iteration number 3", logs.output[0])

    def test_progress_is_logged(self):
        with self.assertLogs("coleman_egm", level="INFO") as logs:
            solve_egm(self.model, self.shocks, tol=None, max_iter=4, print_skip=2)
        self.assertEqual(len(logs.output), 2)
        self.assertIn("iter = 2", logs.output[0])

    def test_operator_errors_propagate(self):
        model = create_growth_model(β=1e-12, grid_size=50)
        with self.assertRaises(RootNotBracketedError):
            solve_time_iteration(model, self.shocks, tol=None, max_iter=5)


class testsForConvergence(unittest.TestCase):
    """Iterates from g(y) = y approach c*(y) = (1 - αβ) y."""

    def setUp(self):
        self.model = create_growth_model()
        self.shocks = draw_shocks(self.model, 250, seed=1234)
        self.c_star = closed_form_policy(self.model)

    def _errors(self, operator):
        sol = iterate_policy(
            operator,
            initial_policy(self.model),
            self.model,
            self.shocks,
            tol=None,
            max_iter=15,
            keep_history=True,
        )
        return np.array(
            [max_policy_distance(g, self.c_star, self.model.grid) for g in sol.history]
        )

    def test_egm_converges_monotonically(self):
        errors = self._errors(K_egm)
        self.assertEqual(len(errors), 16)
        self.assertTrue(np.all(np.diff(errors) < 0))
        self.assertLess(errors[-1], 2e-3)

    def test_time_iteration_converges_monotonically(self):
        errors = self._errors(K_time_iteration)
        self.assertTrue(np.all(np.diff(errors) < 0))
        self.assertLess(errors[-1], 2e-3)

    def test_tolerance_mode_reaches_closed_form(self):
        sol = solve_egm(self.model, self.shocks, tol=1e-8)
        self.assertLess(sol.error, 1e-8)
        self.assertLess(sol.n_iter, 100)
        self.assertLess(max_policy_distance(sol.policy, self.c_star, self.model.grid), 1e-6)

        sol = solve_time_iteration(self.model, self.shocks, tol=1e-7)
        self.assertLess(sol.error, 1e-7)
        self.assertLess(max_policy_distance(sol.policy, self.c_star, self.model.grid), 1e-5)

    def test_both_methods_agree_at_convergence(self):
        egm = solve_egm(self.model, self.shocks, tol=1e-8)
        ti = solve_time_iteration(self.model, self.shocks, tol=1e-8)
        self.assertLess(max_policy_distance(egm.policy, ti.policy, self.model.grid), 1e-6)


class testsForReferenceWorkload(unittest.TestCase):
    """200 grid points, 250 shocks, 20 iterations."""

    def test_evaluation_counts(self):
        model = create_growth_model(grid_size=200)
        shocks = draw_shocks(model, 250)
        egm = solve_egm(model, shocks, tol=None, max_iter=20)
        ti = solve_time_iteration(model, shocks, tol=None, max_iter=20)
        self.assertEqual(egm.n_evals, 20 * 200 * 250)
        self.assertGreater(ti.n_evals, egm.n_evals)
        # At least the bracket checks plus one bisection start per point
        self.assertGreaterEqual(ti.n_evals, 3 * egm.n_evals)


class testsForEulerErrors(unittest.TestCase):
    def setUp(self):
        self.model = create_growth_model()
        self.shocks = draw_shocks(self.model, 250, seed=1234)

    def test_closed_form_has_negligible_errors(self):
        errors = np.asarray(
            compute_euler_errors(closed_form_policy(self.model), self.model, self.shocks)
        )
        self.assertEqual(errors.shape, (500,))
        self.assertLess(errors.max(), -10)

    def test_solution_errors(self):
        sol = solve_egm(self.model, self.shocks, tol=1e-8)
        errors = np.asarray(
            compute_euler_errors(sol.policy, self.model, self.shocks, n_test=100)
        )
        self.assertEqual(errors.shape, (100,))
        self.assertLess(errors.max(), -5)

    def test_initial_policy_has_large_errors(self):
        errors = np.asarray(
            compute_euler_errors(initial_policy(self.model), self.model, self.shocks)
        )
        self.assertTrue(np.all(np.isfinite(errors)))
        self.assertGreater(errors.mean(), -2)

    def test_crra_solution_errors(self):
        model = create_growth_model(γ=2.0, grid_size=100)
        shocks = draw_shocks(model, 100)
        sol = solve_egm(model, shocks, tol=1e-8)
        errors = np.asarray(compute_euler_errors(sol.policy, model, shocks))
        self.assertTrue(np.all(np.isfinite(errors)))
        self.assertLess(errors.mean(), -3)
