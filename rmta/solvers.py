import numpy as np
import picos as pc
from enum import Enum, auto
from typing import NamedTuple
from time import perf_counter


class Solvers(str, Enum):
    """Solvers that can be used through the PICOS backend.

    Please refer to https://picos-api.gitlab.io/picos/introduction.html to see
    the list of supported solvers. MOMA is a convex QP, and any QP-capable
    solver can be used. MTA is a mixed integer QP, which requires one of
    GUROBI, CPLEX, MOSEK or SCIP.

    Attributes:
        GUROBI (str): Recommended solver for MIQP problems. Commercial software
            which requires a license. Free academic licenses are also available
            at https://gurobi.com/free/.
        CPLEX (str): Commercial solver with a performance similar to GUROBI.
        MOSEK (str): Commercial solver.
        SCIP (str): Free academic solver, supports MIQP problems.
        CVXOPT (str): Free convex solver. Only for the MOMA (QP) problems.
    """
    GUROBI = "gurobi",
    CPLEX = "cplex",
    MOSEK = "mosek",
    SCIP = "scip",
    CVXOPT = "cvxopt"


class SolverStatus(Enum):
    OPTIMAL = auto()
    INFEASIBLE = auto()
    UNBOUNDED = auto()
    TIMED_OUT = auto()
    ERROR = auto()


_STATUS_MAPPING = {
    pc.modeling.solution.SS_OPTIMAL: SolverStatus.OPTIMAL,
    pc.modeling.solution.SS_INFEASIBLE: SolverStatus.INFEASIBLE,
    pc.modeling.solution.SS_PREMATURE: SolverStatus.TIMED_OUT,
    pc.modeling.solution.SS_FEASIBLE: SolverStatus.TIMED_OUT,
}

_PROBLEM_STATUS_MAPPING = {
    pc.modeling.solution.PS_INFEASIBLE: SolverStatus.INFEASIBLE,
    pc.modeling.solution.PS_UNBOUNDED: SolverStatus.UNBOUNDED,
}


class SolverResult(NamedTuple):
    status: SolverStatus
    fluxes: np.ndarray
    objective_value: float
    elapsed_seconds: float

    @property
    def optimal(self):
        return self.status is SolverStatus.OPTIMAL


def solver_name(solver):
    if solver is None:
        return None
    return str(solver.value) if isinstance(solver, Enum) else str(solver).lower()


def configure(problem, solver=None, timelimit=None, num_workers=0, verbosity=0,
              int_tol=None, feas_tol=None, opt_tol=None):
    """Set the PICOS options for a problem.

    Args:
        problem (picos.Problem): problem to configure.
        solver (Solvers or str, optional): Solver to use. If None, PICOS selects
            an available solver that supports the problem. Defaults to None.
        timelimit (float, optional): Max time in seconds. None or inf for
            no limit. Defaults to None.
        num_workers (int, optional): Threads used by the solver. 0 leaves
            the default of the solver, 1 forces sequential. Defaults to 0.
        verbosity (int, optional): Values above 0 make the solver verbose.
        int_tol (float, optional): Integrality tolerance.
        feas_tol (float, optional): Feasibility tolerance.
        opt_tol (float, optional): Relative MIP gap tolerance.
    """
    problem.options["verbosity"] = verbosity
    problem.options["solver"] = solver_name(solver)
    if int_tol is not None:
        problem.options["integrality_tol"] = int_tol
    if feas_tol is not None:
        problem.options["abs_prim_fsb_tol"] = feas_tol
        problem.options["abs_dual_fsb_tol"] = feas_tol
    if opt_tol is not None:
        problem.options["rel_bnb_opt_tol"] = opt_tol
    if timelimit is not None and np.isfinite(timelimit):
        problem.options["timelimit"] = timelimit
    if num_workers is not None and num_workers > 0:
        name = solver_name(solver)
        if name in (None, "gurobi"):
            problem.options["gurobi_params"] = {"Threads": int(num_workers)}
        if name in (None, "cplex"):
            problem.options["cplex_params"] = {"threads": int(num_workers)}
        if name in (None, "mosek"):
            problem.options["mosek_params"] = {"MSK_IPAR_NUM_THREADS": int(num_workers)}
    return problem


def _status(solution):
    status = _STATUS_MAPPING.get(solution.claimedStatus)
    if status is SolverStatus.OPTIMAL:
        return status
    problem_status = _PROBLEM_STATUS_MAPPING.get(solution.problemStatus)
    if problem_status is not None:
        return problem_status
    return status if status is not None else SolverStatus.ERROR


def solve(problem, fluxes, num_reactions):
    """Solve a configured problem and collect the flux values.

    Solver failures never raise: a non optimal solve returns the all-zero
    flux vector together with the status reported by the solver.

    Args:
        problem (picos.Problem): configured problem.
        fluxes (picos.RealVariable): flux variables.
        num_reactions (int): number of reactions.

    Returns:
        SolverResult: status, fluxes, objective value and elapsed seconds.
    """
    start = perf_counter()
    try:
        solution = problem.solve()
        status = _status(solution)
    except (pc.SolutionFailure, ArithmeticError, ValueError):
        # Numerical failures of the solver (e.g. singular KKT systems in CVXOPT)
        status = SolverStatus.ERROR
    elapsed = perf_counter() - start
    if status is not SolverStatus.OPTIMAL:
        return SolverResult(status, np.zeros(num_reactions), float('nan'), elapsed)
    values = np.asarray(fluxes.value, dtype=float).reshape(-1)
    objective = problem.value
    return SolverResult(status, values, float('nan') if objective is None else float(objective), elapsed)
