"""
Benchmarks: time iteration versus the endogenous grid method.

Solves the stochastic optimal growth model with both Coleman operators from
the same shock sample and reports speed, policy evaluations and accuracy.

Usage:
    python benchmark_coleman.py                      # Reference workload
    python benchmark_coleman.py --gamma 2            # CRRA utility
    python benchmark_coleman.py --tol 1e-8           # Stop on convergence
    python benchmark_coleman.py --quadrature 7       # Gauss-Hermite shocks
    python benchmark_coleman.py --figures            # Also save figures

Reference workload (also the defaults):
    - α = 0.65, β = 0.95, γ = 1 (log utility)
    - ln z ~ N(0, 0.1^2), 250 Monte Carlo draws
    - 200 grid points on [1e-6, 4]
    - 20 iterations of each operator

With log utility the exact policy is c*(y) = (1 - αβ) y, and the table also
reports the distance of each solution from it.
"""

import argparse
import logging
import time
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np

from coleman_egm import (
    K_egm,
    K_time_iteration,
    closed_form_policy,
    compute_euler_errors,
    create_growth_model,
    draw_shocks,
    initial_policy,
    iterate_policy,
    max_policy_distance,
    quadrature_shocks,
)
from growth_utils import LogUtility, verbose


# =============================================================================
# Reference Parameters
# =============================================================================

REFERENCE_PARAMS = {
    "α": 0.65,
    "β": 0.95,
    "γ": 1.0,
    "μ": 0.0,
    "s": 0.1,
    "grid_min": 1e-6,
    "grid_max": 4.0,
    "grid_size": 200,
}

SHOCK_SIZE = 250
MAX_ITER = 20
SEED = 1234

# Number of timing runs for averaging (reduces noise)
N_TIMING_RUNS = 3

FIGURE_DIR = Path("figures")
FIGURE_FORMATS = ["pdf", "png"]

METHODS = {
    "EGM": K_egm,
    "TI": K_time_iteration,
}


# =============================================================================
# Figure Style Configuration
# =============================================================================


def setup_figure_style():
    """Configure matplotlib for compact report figures."""
    plt.rcParams.update(
        {
            "font.family": "serif",
            "font.size": 9,
            "axes.labelsize": 9,
            "legend.fontsize": 8,
            "figure.dpi": 150,
            "savefig.dpi": 300,
            "savefig.bbox": "tight",
            "lines.linewidth": 1.2,
            "axes.linewidth": 0.6,
            "legend.frameon": False,
            "mathtext.fontset": "cm",
        }
    )


# =============================================================================
# Solvers
# =============================================================================


def time_solver(operator, model, shocks, n_runs=N_TIMING_RUNS, **kwargs):
    """
    Time iterate_policy with a JIT warmup and several runs.

    Returns (mean_time, solution) where solution is from the last run.
    """
    # JIT warmup (don't count this)
    iterate_policy(operator, initial_policy(model), model, shocks, None, 2)

    times = []
    for _ in range(n_runs):
        start = time.perf_counter()
        solution = iterate_policy(
            operator, initial_policy(model), model, shocks, **kwargs
        )
        solution.policy.c.block_until_ready()
        times.append(time.perf_counter() - start)

    return sum(times) / len(times), solution


def run_benchmarks(model, shocks, tol, max_iter, n_runs=N_TIMING_RUNS):
    """Solve with every method and collect timings and diagnostics."""
    results = {}
    exact = None
    if isinstance(model.utility, LogUtility):
        exact = closed_form_policy(model)

    for name, operator in METHODS.items():
        print(f"Running {name}...", flush=True)
        t, solution = time_solver(
            operator,
            model,
            shocks,
            n_runs=n_runs,
            tol=tol,
            max_iter=max_iter,
            keep_history=True,
        )
        errors = np.asarray(compute_euler_errors(solution.policy, model, shocks))
        results[name] = {
            "time": t,
            "iterations": solution.n_iter,
            "evals": solution.n_evals,
            "error": solution.error,
            "euler_mean": float(np.mean(errors)),
            "euler_max": float(np.max(errors)),
            "solution": solution,
        }
        if exact is not None:
            results[name]["exact_gap"] = max_policy_distance(
                solution.policy, exact, model.grid
            )
        print(f"  Done: {t:.3f}s, {solution.n_iter} iterations")

    results["gap"] = max_policy_distance(
        results["EGM"]["solution"].policy,
        results["TI"]["solution"].policy,
        model.grid,
    )
    return results


# =============================================================================
# Report
# =============================================================================


def print_tables(results):
    """Print the speed and accuracy comparison."""
    print()
    print("=" * 70)
    print("Speed and accuracy: EGM vs time iteration")
    print("=" * 70)
    print()
    print("| Method | Time (ms) | Iters | Evals        | Mean Err | Max Err |")
    print("|--------|-----------|-------|--------------|----------|---------|")
    for method in METHODS:
        r = results[method]
        print(
            f"| {method:<6} | {r['time'] * 1000:>9.1f} | {r['iterations']:>5} "
            f"| {r['evals']:>12,} | {r['euler_mean']:>8.1f} | {r['euler_max']:>7.1f} |"
        )
    print()

    egm, ti = results["EGM"], results["TI"]
    print(f"Speedup (time):         {ti['time'] / egm['time']:.1f}x")
    print(f"Evaluation ratio:       {ti['evals'] / egm['evals']:.1f}x")
    print(f"Max gap EGM vs TI:      {results['gap']:.2e}")
    if "exact_gap" in egm:
        print(f"Max gap EGM vs exact:   {egm['exact_gap']:.2e}")
        print(f"Max gap TI vs exact:    {ti['exact_gap']:.2e}")
    print()


def save_figure_multiformat(fig, figure_dir, basename):
    """Save figure in every format in FIGURE_FORMATS."""
    figure_dir.mkdir(parents=True, exist_ok=True)
    for fmt in FIGURE_FORMATS:
        fig.savefig(figure_dir / f"{basename}.{fmt}", format=fmt)
    print(f"  Saved: {figure_dir / basename}.* ({', '.join(FIGURE_FORMATS)})")


def generate_figure_policy(results, model, figure_dir, basename="fig_policy"):
    """Consumption policies from both methods, with c*(y) for log utility."""
    y = np.asarray(model.grid)
    fig, ax = plt.subplots(figsize=(4.0, 3.0))

    styles = {"EGM": "-", "TI": "--"}
    for method in METHODS:
        policy = results[method]["solution"].policy
        ax.plot(y, np.asarray(policy.evaluate(y)), styles[method], label=method)

    if isinstance(model.utility, LogUtility):
        exact = closed_form_policy(model)
        ax.plot(y, np.asarray(exact.evaluate(y)), "k:", lw=0.9, label="$c^*(y)$")

    ax.set_xlabel("Income $y$")
    ax.set_ylabel("Consumption $c(y)$")
    ax.legend(loc="upper left")
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)
    fig.tight_layout()

    save_figure_multiformat(fig, figure_dir, basename)
    plt.close(fig)


def generate_figure_convergence(results, model, figure_dir, basename="fig_iterates"):
    """Successive EGM iterates from the consume-everything policy."""
    y = np.asarray(model.grid)
    history = results["EGM"]["solution"].history
    fig, ax = plt.subplots(figsize=(4.0, 3.0))

    colors = plt.cm.viridis(np.linspace(0, 1, len(history)))
    for i, policy in enumerate(history):
        ax.plot(y, np.asarray(policy.evaluate(y)), color=colors[i], lw=0.8, alpha=0.7)

    if isinstance(model.utility, LogUtility):
        exact = closed_form_policy(model)
        ax.plot(y, np.asarray(exact.evaluate(y)), "k--", lw=1.2, label="$c^*(y)$")
        ax.legend(loc="upper left")

    ax.set_xlabel("Income $y$")
    ax.set_ylabel("Consumption $c(y)$")
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)
    fig.tight_layout()

    save_figure_multiformat(fig, figure_dir, basename)
    plt.close(fig)


# =============================================================================
# Command Line
# =============================================================================


def parse_args(argv=None):
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Compare time iteration and EGM for the optimal growth model.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python benchmark_coleman.py                 # Reference workload
    python benchmark_coleman.py --tol 1e-8      # Stop on convergence
    python benchmark_coleman.py --figures       # Save figures to ./figures
        """,
    )

    model_group = parser.add_argument_group("model")
    model_group.add_argument("--alpha", type=float, default=REFERENCE_PARAMS["α"])
    model_group.add_argument("--beta", type=float, default=REFERENCE_PARAMS["β"])
    model_group.add_argument("--gamma", type=float, default=REFERENCE_PARAMS["γ"])
    model_group.add_argument("--mu", type=float, default=REFERENCE_PARAMS["μ"])
    model_group.add_argument("--s", type=float, default=REFERENCE_PARAMS["s"])
    model_group.add_argument(
        "--grid-min", type=float, default=REFERENCE_PARAMS["grid_min"]
    )
    model_group.add_argument(
        "--grid-max", type=float, default=REFERENCE_PARAMS["grid_max"]
    )
    model_group.add_argument(
        "--grid-size", type=int, default=REFERENCE_PARAMS["grid_size"]
    )

    shock_group = parser.add_argument_group("shocks")
    shock_group.add_argument(
        "--shock-size", type=int, default=SHOCK_SIZE, help="Monte Carlo draws"
    )
    shock_group.add_argument("--seed", type=int, default=SEED)
    shock_group.add_argument(
        "--quadrature",
        type=int,
        metavar="N",
        help="Use N Gauss-Hermite nodes instead of Monte Carlo draws",
    )

    solver_group = parser.add_argument_group("solver")
    solver_group.add_argument("--max-iter", type=int, default=MAX_ITER)
    solver_group.add_argument(
        "--tol",
        type=float,
        default=0.0,
        help="Stop once successive policies are within tol (0 runs max-iter steps)",
    )
    solver_group.add_argument("--timing-runs", type=int, default=N_TIMING_RUNS)

    parser.add_argument("--figures", action="store_true", help="Save figures")
    parser.add_argument("--figure-dir", type=Path, default=FIGURE_DIR)
    parser.add_argument("--verbose", action="store_true", help="Log iterations")

    return parser.parse_args(argv)


def main(argv=None):
    """Main entry point."""
    args = parse_args(argv)

    logging.basicConfig(format="%(message)s")
    if args.verbose:
        verbose()

    model = create_growth_model(
        α=args.alpha,
        β=args.beta,
        γ=args.gamma,
        μ=args.mu,
        s=args.s,
        grid_min=args.grid_min,
        grid_max=args.grid_max,
        grid_size=args.grid_size,
    )
    if args.quadrature is not None:
        shocks = quadrature_shocks(model, args.quadrature)
        shock_desc = f"{args.quadrature} Gauss-Hermite nodes"
    else:
        shocks = draw_shocks(model, args.shock_size, args.seed)
        shock_desc = f"{args.shock_size} draws (seed={args.seed})"
    tol = args.tol if args.tol > 0 else None

    print()
    print(
        f"Settings: α={model.α}, β={model.β}, γ={args.gamma}, "
        f"grid={args.grid_size} on [{args.grid_min:g}, {args.grid_max:g}], "
        f"shocks={shock_desc}"
    )
    if tol is None:
        print(f"Mode: fixed count, {args.max_iter} iterations")
    else:
        print(f"Mode: tol={tol:g}, max_iter={args.max_iter}")
    print()

    results = run_benchmarks(model, shocks, tol, args.max_iter, args.timing_runs)
    print_tables(results)

    if args.figures:
        setup_figure_style()
        generate_figure_policy(results, model, args.figure_dir)
        generate_figure_convergence(results, model, args.figure_dir)


if __name__ == "__main__":
    main()
