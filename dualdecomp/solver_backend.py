###############################################################################
# dualdecomp: scenario DUAL DECOMPosition for stochastic programs in Python
#
# Copyright (c) 2024, Lawrence Livermore National Security, LLC, Alliance for
# Sustainable Energy, LLC, The Regents of the University of California, et al.
# All rights reserved. Please see the files COPYRIGHT.md and LICENSE.md for
# full copyright and license information.
###############################################################################
""" The solver backend consumed by the coordinators.

A backend takes a Pyomo model, solves it, and reports a SolveResult. It
never raises for an unsuccessful solve: infeasibility, unboundedness,
solver exceptions and time limits are all folded into ``SolveStatus`` so
that the coordinator can name the offending node.
"""
import abc
import enum
import logging
import math
import threading
import time

import pyomo.environ as pyo
from pyomo.common.collections import ComponentMap
from pyomo.opt import SolutionStatus, TerminationCondition

import dualdecomp.utils.sputils as sputils

logger = logging.getLogger("dualdecomp.solver_backend")


class SolveStatus(enum.Enum):
    OPTIMAL = "Optimal"
    INFEASIBLE = "Infeasible"
    UNBOUNDED = "Unbounded"
    ERROR = "Error"


class SolveResult:
    """ What a backend reports about one solve.

    Args:
        status (SolveStatus): classified outcome
        primal (ComponentMap): VarData -> value (empty unless OPTIMAL)
        duals (ComponentMap): ConstraintData -> dual (continuous models only,
            and only when duals were requested)
        objective (float): value of the active objective
        bound (float): best bound reported by the solver; the objective
            when the solver reports nothing useful
        solve_time (float): wall-clock seconds spent in the solver
        message (str): free text, mostly for failures
    """
    def __init__(self, status, primal=None, duals=None, objective=None,
                 bound=None, solve_time=0.0, message=""):
        self.status = status
        self.primal = ComponentMap() if primal is None else primal
        self.duals = ComponentMap() if duals is None else duals
        self.objective = objective
        self.bound = objective if bound is None else bound
        self.solve_time = solve_time
        self.message = message

    @property
    def ok(self):
        return self.status == SolveStatus.OPTIMAL

    def __repr__(self):
        return (f"SolveResult(status={self.status.name}, objective={self.objective}, "
                f"bound={self.bound}, solve_time={self.solve_time:.3f})")


class SolverBackend(abc.ABC):
    """ Abstract base class for solver backends. """

    @abc.abstractmethod
    def solve(self, model, tee=False):
        """ Solve ``model`` and return a SolveResult.

        On success the solution must be loaded into the model's variables.
        """
        pass

    def release(self, model):
        """ Forget anything cached for ``model`` """
        pass


# option name used by each solver family for a wall-clock limit (seconds)
_TIME_LIMIT_OPTION = {
    "cplex": "timelimit",
    "gurobi": "TimeLimit",
    "xpress": "maxtime",
    "appsi_highs": "time_limit",
    "highs": "time_limit",
    "cbc": "sec",
    "glpk": "tmlim",
    "ipopt": "max_cpu_time",
}

_OPTIMAL_CONDITIONS = (TerminationCondition.optimal,
                       TerminationCondition.locallyOptimal,
                       TerminationCondition.globallyOptimal)

_TIME_CONDITIONS = (TerminationCondition.maxTimeLimit,)


def _time_limit_option(solver_name):
    base = solver_name.split("_persistent")[0].split("_direct")[0]
    if solver_name in _TIME_LIMIT_OPTION:
        return _TIME_LIMIT_OPTION[solver_name]
    return _TIME_LIMIT_OPTION.get(base)


def has_discrete_variables(model):
    return any(v.is_integer() or v.is_binary()
               for v in model.component_data_objects(pyo.Var, active=True, descend_into=True))


class PyomoSolverBackend(SolverBackend):
    """ Solve subproblems with a ``pyo.SolverFactory`` plugin.

    One plugin is kept per model. Persistent plugins get ``set_instance``
    on first use and ``set_objective`` before every later solve, since
    the coordinators change objective coefficients between solves.

    Args:
        solver_name (str): anything ``pyo.SolverFactory`` accepts
        solver_options (dict or str, optional): options passed on every
            solve; a string such as ``"mipgap=0.01 threads=1"`` is parsed
            by ``sputils.option_string_to_dict``
        time_limit (float, optional): per-solve wall-clock limit in seconds
        want_duals (bool, optional): import constraint duals for models
            without discrete variables
    """
    def __init__(self, solver_name, solver_options=None, time_limit=None,
                 want_duals=False):
        self.solver_name = solver_name
        if isinstance(solver_options, str):
            solver_options = sputils.option_string_to_dict(solver_options)
        self.solver_options = dict() if solver_options is None else dict(solver_options)
        self.time_limit = time_limit
        self.want_duals = want_duals
        if time_limit is not None:
            tlo = _time_limit_option(solver_name)
            if tlo is None:
                logger.warning(f"Do not know the time limit option for solver {solver_name}; "
                               "subproblem_time_limit ignored")
            else:
                self.solver_options.setdefault(tlo, time_limit)
        self._plugins = ComponentMap()
        self._lock = threading.Lock()

    def _plugin_for(self, model):
        with self._lock:
            if model in self._plugins:
                return self._plugins[model], False
            plugin = pyo.SolverFactory(self.solver_name)
            if plugin is None or not plugin.available(exception_flag=False):
                raise RuntimeError(f"Solver {self.solver_name} is not available")
            self._plugins[model] = plugin
        if self.want_duals and not hasattr(model, "dual") and not has_discrete_variables(model):
            model.dual = pyo.Suffix(direction=pyo.Suffix.IMPORT)
        if sputils.is_persistent(plugin):
            plugin.set_instance(model)
        return plugin, True

    def release(self, model):
        with self._lock:
            if model in self._plugins:
                del self._plugins[model]

    def solve(self, model, tee=False):
        try:
            plugin, fresh = self._plugin_for(model)
        except Exception as e:
            return SolveResult(SolveStatus.ERROR, message=str(e))

        persistent = sputils.is_persistent(plugin)
        for option_key, option_value in self.solver_options.items():
            plugin.options[option_key] = option_value

        solve_keyword_args = dict()
        if tee:
            solve_keyword_args["tee"] = True
        if persistent:
            solve_keyword_args["save_results"] = False

        solve_start_time = time.time()
        try:
            # the objective changes between solves
            if persistent and not fresh:
                plugin.set_objective(sputils.find_active_objective(model))
            results = plugin.solve(model, **solve_keyword_args, load_solutions=False)
        except Exception as e:
            logger.debug(f"Solver exception for model {model.name}: {e}")
            return SolveResult(SolveStatus.ERROR, solve_time=time.time() - solve_start_time,
                               message=f"{type(e).__name__}: {e}")
        solve_time = time.time() - solve_start_time

        tc = results.solver.termination_condition
        if tc == TerminationCondition.infeasible or \
           tc == TerminationCondition.infeasibleOrUnbounded:
            return SolveResult(SolveStatus.INFEASIBLE, solve_time=solve_time,
                               message=f"TerminationCondition={tc}")
        if tc == TerminationCondition.unbounded:
            return SolveResult(SolveStatus.UNBOUNDED, solve_time=solve_time,
                               message=f"TerminationCondition={tc}")
        if tc in _TIME_CONDITIONS:
            return SolveResult(SolveStatus.ERROR, solve_time=solve_time,
                               message=f"time limit reached (TerminationCondition={tc})")
        if tc not in _OPTIMAL_CONDITIONS:
            return SolveResult(SolveStatus.ERROR, solve_time=solve_time,
                               message=f"status={results.solver.status}, TerminationCondition={tc}")
        if not persistent and (len(results.solution) == 0 or
                               results.solution(0).status == SolutionStatus.infeasible):
            return SolveResult(SolveStatus.ERROR, solve_time=solve_time,
                               message="optimal termination without a solution")

        if persistent:
            plugin.load_vars()
            if hasattr(model, "dual") and self.want_duals:
                plugin.load_duals()
        else:
            model.solutions.load_from(results)

        objective = pyo.value(sputils.find_active_objective(model))
        bound = self._reported_bound(results, model)
        primal = ComponentMap(
            (v, v.value) for v in model.component_data_objects(pyo.Var, descend_into=True)
            if v.value is not None)
        duals = ComponentMap()
        if self.want_duals and hasattr(model, "dual"):
            for c, d in model.dual.items():
                duals[c] = d
        return SolveResult(SolveStatus.OPTIMAL, primal=primal, duals=duals,
                           objective=objective, bound=bound, solve_time=solve_time)

    @staticmethod
    def _reported_bound(results, model):
        try:
            if sputils.find_active_objective(model).is_minimizing():
                bound = results.Problem[0].Lower_bound
            else:
                bound = results.Problem[0].Upper_bound
        except (AttributeError, IndexError, KeyError):
            return None
        if bound is None:
            return None
        bound = float(bound)
        return bound if math.isfinite(bound) else None
