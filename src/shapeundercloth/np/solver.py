"""Trust region Levenberg-Marquardt minimizer for :class:`~shapeundercloth.np.problem.Problem`.

The evaluation protocol follows the one of Ceres Solver, which the residual blocks of this
package rely on: a candidate point is evaluated with
``prepare(evaluate_jacobians=False, new_evaluation_point=True)``; after a step is accepted,
the Jacobian at the same point is evaluated with
``prepare(evaluate_jacobians=True, new_evaluation_point=False)``.

``scipy.optimize.least_squares`` calls ``fun`` and ``jac`` as unrelated functions and has no
per-iteration callback, so it cannot drive the shared evaluation context (which must know
whether a call is a new point or the Jacobian at the last point) nor the snapshots taken
after accepted steps. The linear algebra of each step still goes through ``scipy.linalg``.
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List

import numpy as np
import scipy.linalg

from ..common import ConfigurationError
from .problem import Problem

logger = logging.getLogger(__name__)


class TerminationType(enum.Enum):
    CONVERGENCE = 'CONVERGENCE'
    NO_CONVERGENCE = 'NO_CONVERGENCE'
    FAILURE = 'FAILURE'


@dataclass
class IterationSummary:
    iteration: int
    cost: float
    cost_change: float
    gradient_max_norm: float
    step_norm: float
    relative_decrease: float
    trust_region_radius: float
    step_is_successful: bool
    iteration_time_in_seconds: float
    cumulative_time_in_seconds: float


@dataclass
class SolverOptions:
    """Options of :func:`solve`. Defaults follow Ceres Solver."""

    linear_solver_type: str = 'dense_qr'
    """'dense_qr' or 'dense_normal_cholesky'."""

    max_num_iterations: int = 50
    function_tolerance: float = 1e-6
    gradient_tolerance: float = 1e-10
    parameter_tolerance: float = 1e-8
    initial_trust_region_radius: float = 1e4
    max_trust_region_radius: float = 1e16
    min_trust_region_radius: float = 1e-32
    min_relative_decrease: float = 1e-3
    min_diagonal: float = 1e-6
    max_diagonal: float = 1e32
    max_num_consecutive_invalid_steps: int = 5

    minimizer_progress_to_stdout: bool = False
    """Log a line per iteration at INFO level."""

    callbacks: List[Callable[[IterationSummary], None]] = field(default_factory=list)
    """Called after each successful iteration, with the accepted point written into the
    parameter blocks."""


@dataclass
class SolverSummary:
    termination_type: TerminationType = TerminationType.FAILURE
    message: str = ''
    initial_cost: float = np.nan
    final_cost: float = np.nan
    num_successful_steps: int = 0
    num_unsuccessful_steps: int = 0
    num_residual_evaluations: int = 0
    num_jacobian_evaluations: int = 0
    num_parameters: int = 0
    num_residuals: int = 0
    linear_solver_type: str = ''
    total_time_in_seconds: float = 0.0
    iterations: List[IterationSummary] = field(default_factory=list)

    def is_solution_usable(self) -> bool:
        return self.termination_type in (
            TerminationType.CONVERGENCE, TerminationType.NO_CONVERGENCE
        )

    def brief_report(self) -> str:
        return (
            f'Levenberg-Marquardt: {self.num_successful_steps + self.num_unsuccessful_steps} '
            f'iterations, initial cost {self.initial_cost:.6e}, final cost '
            f'{self.final_cost:.6e}, termination: {self.termination_type.value}'
        )

    def full_report(self) -> str:
        lines = [
            'Solver Summary',
            '',
            f'{"Parameters":<30}{self.num_parameters:>12}',
            f'{"Residuals":<30}{self.num_residuals:>12}',
            f'{"Linear solver":<30}{self.linear_solver_type:>12}',
            '',
            f'{"Initial cost":<30}{self.initial_cost:>12.6e}',
            f'{"Final cost":<30}{self.final_cost:>12.6e}',
            f'{"Change":<30}{self.initial_cost - self.final_cost:>12.6e}',
            '',
            f'{"Successful steps":<30}{self.num_successful_steps:>12}',
            f'{"Unsuccessful steps":<30}{self.num_unsuccessful_steps:>12}',
            f'{"Residual evaluations":<30}{self.num_residual_evaluations:>12}',
            f'{"Jacobian evaluations":<30}{self.num_jacobian_evaluations:>12}',
            f'{"Total time (s)":<30}{self.total_time_in_seconds:>12.4f}',
            '',
            f'Termination: {self.termination_type.value} ({self.message})',
        ]
        return '\n'.join(lines)


def solve(options: SolverOptions, problem: Problem) -> SolverSummary:
    """Minimizes half the squared norm of the residuals of `problem`.

    The parameter blocks of the problem hold the initial point on entry and the best point
    found on return, also when the iteration limit is reached without convergence.
    """
    if options.linear_solver_type not in _LINEAR_SOLVERS:
        raise ConfigurationError(f'Unknown linear solver type: {options.linear_solver_type}')
    solve_linear = _LINEAR_SOLVERS[options.linear_solver_type]

    start_time = time.perf_counter()
    summary = SolverSummary(
        num_parameters=problem.num_parameters,
        num_residuals=problem.num_residuals,
        linear_solver_type=options.linear_solver_type,
    )
    mask = problem.variable_mask()
    x = problem.get_state()

    residuals, jacobian = problem.evaluate(x, jacobians=True, new_evaluation_point=True)
    summary.num_residual_evaluations += 1
    summary.num_jacobian_evaluations += 1
    cost = 0.5 * residuals @ residuals
    summary.initial_cost = summary.final_cost = cost
    if not np.isfinite(cost):
        summary.message = 'Residual and Jacobian evaluation failed at the initial point'
        summary.total_time_in_seconds = time.perf_counter() - start_time
        return summary

    jacobian = jacobian[:, mask]
    gradient = jacobian.T @ residuals
    radius = options.initial_trust_region_radius
    decrease_factor = 2.0
    num_invalid_steps = 0

    def report(iteration_summary):
        summary.iterations.append(iteration_summary)
        if options.minimizer_progress_to_stdout:
            logger.info(
                '%4d: cost=%.6e cost_change=%.3e |gradient|=%.3e |step|=%.3e tr_ratio=%.3e '
                'tr_radius=%.3e %s',
                iteration_summary.iteration,
                iteration_summary.cost,
                iteration_summary.cost_change,
                iteration_summary.gradient_max_norm,
                iteration_summary.step_norm,
                iteration_summary.relative_decrease,
                iteration_summary.trust_region_radius,
                'accepted' if iteration_summary.step_is_successful else 'rejected',
            )

    report(IterationSummary(
        iteration=0, cost=cost, cost_change=0.0,
        gradient_max_norm=_max_norm(gradient), step_norm=0.0, relative_decrease=0.0,
        trust_region_radius=radius, step_is_successful=True,
        iteration_time_in_seconds=time.perf_counter() - start_time,
        cumulative_time_in_seconds=time.perf_counter() - start_time,
    ))

    def finish(termination_type, message):
        problem.set_state(x)
        summary.termination_type = termination_type
        summary.message = message
        summary.final_cost = cost
        summary.total_time_in_seconds = time.perf_counter() - start_time
        logger.debug('Terminating: %s', message)
        return summary

    if _max_norm(gradient) <= options.gradient_tolerance:
        return finish(
            TerminationType.CONVERGENCE,
            f'Gradient tolerance reached. max|gradient| = {_max_norm(gradient):.3e} <= '
            f'{options.gradient_tolerance:.3e}',
        )

    for iteration in range(1, options.max_num_iterations + 1):
        iteration_start = time.perf_counter()

        # Levenberg-Marquardt step, regularized with the scaled diagonal of J^T J
        diagonal = np.clip(
            np.sum(jacobian * jacobian, axis=0), options.min_diagonal, options.max_diagonal
        )
        mu = 1.0 / radius
        step = solve_linear(jacobian, residuals, mu * diagonal)

        if not np.all(np.isfinite(step)):
            num_invalid_steps += 1
            if num_invalid_steps >= options.max_num_consecutive_invalid_steps:
                return finish(
                    TerminationType.FAILURE,
                    f'Linear solver failed {num_invalid_steps} times in a row',
                )
            radius /= decrease_factor
            decrease_factor *= 2
            continue
        num_invalid_steps = 0

        x_norm = np.linalg.norm(x[mask])
        step_norm = np.linalg.norm(step)
        if step_norm <= options.parameter_tolerance * (x_norm + options.parameter_tolerance):
            return finish(
                TerminationType.CONVERGENCE,
                f'Parameter tolerance reached. |step| = {step_norm:.3e}, |x| = {x_norm:.3e}',
            )

        model_residuals = residuals + jacobian @ step
        model_cost_change = cost - 0.5 * model_residuals @ model_residuals

        x_candidate = x.copy()
        x_candidate[mask] += step
        new_residuals, _ = problem.evaluate(
            x_candidate, jacobians=False, new_evaluation_point=True
        )
        summary.num_residual_evaluations += 1
        new_cost = 0.5 * new_residuals @ new_residuals
        cost_change = cost - new_cost

        if np.isfinite(new_cost) and model_cost_change > 0:
            relative_decrease = cost_change / model_cost_change
        else:
            relative_decrease = -np.inf
        step_is_successful = relative_decrease > options.min_relative_decrease

        if step_is_successful:
            x = x_candidate
            residuals = new_residuals
            _, jacobian = problem.evaluate(x, jacobians=True, new_evaluation_point=False)
            summary.num_jacobian_evaluations += 1
            jacobian = jacobian[:, mask]
            gradient = jacobian.T @ residuals
            previous_cost = cost
            cost = new_cost
            summary.num_successful_steps += 1
            radius = min(
                options.max_trust_region_radius,
                radius / max(1.0 / 3.0, 1.0 - (2.0 * relative_decrease - 1.0) ** 3),
            )
            decrease_factor = 2.0
        else:
            summary.num_unsuccessful_steps += 1
            radius /= decrease_factor
            decrease_factor *= 2.0
            # The rejected candidate was written into the parameter blocks
            problem.set_state(x)

        now = time.perf_counter()
        iteration_summary = IterationSummary(
            iteration=iteration, cost=cost, cost_change=cost_change if step_is_successful else 0.0,
            gradient_max_norm=_max_norm(gradient), step_norm=step_norm,
            relative_decrease=relative_decrease, trust_region_radius=radius,
            step_is_successful=step_is_successful,
            iteration_time_in_seconds=now - iteration_start,
            cumulative_time_in_seconds=now - start_time,
        )
        report(iteration_summary)

        if step_is_successful:
            for callback in options.callbacks:
                callback(iteration_summary)

            if abs(cost_change) <= options.function_tolerance * previous_cost:
                return finish(
                    TerminationType.CONVERGENCE,
                    f'Function tolerance reached. |cost_change|/cost = '
                    f'{abs(cost_change) / max(previous_cost, np.finfo(float).tiny):.3e} <= '
                    f'{options.function_tolerance:.3e}',
                )
            if _max_norm(gradient) <= options.gradient_tolerance:
                return finish(
                    TerminationType.CONVERGENCE,
                    f'Gradient tolerance reached. max|gradient| = {_max_norm(gradient):.3e} <= '
                    f'{options.gradient_tolerance:.3e}',
                )

        if radius < options.min_trust_region_radius:
            return finish(
                TerminationType.CONVERGENCE,
                f'Minimum trust region radius reached. radius = {radius:.3e}',
            )

    return finish(
        TerminationType.NO_CONVERGENCE,
        f'Maximum number of iterations reached. Number of iterations: '
        f'{options.max_num_iterations}',
    )


def _max_norm(vector):
    return float(np.max(np.abs(vector))) if vector.size else 0.0


def _solve_dense_qr(jacobian, residuals, damping):
    # min |J step + r|^2 + |sqrt(D) step|^2 as an augmented linear least squares problem
    augmented = np.concatenate([jacobian, np.diag(np.sqrt(damping))], axis=0)
    rhs = np.concatenate([-residuals, np.zeros(len(damping))])
    try:
        step, *_ = scipy.linalg.lstsq(augmented, rhs, lapack_driver='gelsy')
    except (np.linalg.LinAlgError, ValueError):
        return np.full(len(damping), np.nan)
    return step


def _solve_dense_normal_cholesky(jacobian, residuals, damping):
    lhs = jacobian.T @ jacobian + np.diag(damping)
    try:
        factor = scipy.linalg.cho_factor(lhs)
    except np.linalg.LinAlgError:
        return np.full(len(damping), np.nan)
    return scipy.linalg.cho_solve(factor, -(jacobian.T @ residuals))


_LINEAR_SOLVERS = {
    'dense_qr': _solve_dense_qr,
    'dense_normal_cholesky': _solve_dense_normal_cholesky,
}
