###############################################################################
# dualdecomp: scenario DUAL DECOMPosition for stochastic programs in Python
#
# Copyright (c) 2024, Lawrence Livermore National Security, LLC, Alliance for
# Sustainable Energy, LLC, The Regents of the University of California, et al.
# All rights reserved. Please see the files COPYRIGHT.md and LICENSE.md for
# full copyright and license information.
###############################################################################


import math
import pyomo.environ as pyo
from pyomo.common.collections import ComponentMap
from pyomo.repn import generate_standard_repn
from dualdecomp.solver_backend import SolverBackend, SolveResult, SolveStatus
import dualdecomp.utils.sputils as sputils

def get_solver(persistent_OK=True):
    solvers = ["cplex","gurobi","xpress"]
    if persistent_OK:
        solvers = [n+e for e in ('_persistent', '') for n in solvers]

    for solver_name in solvers:
        try:
            solver_available = pyo.SolverFactory(solver_name).available(exception_flag=False)
        except Exception:
            solver_available = False
        if solver_available:
            break

    if '_persistent' in solver_name:
        persistent_solver_name = solver_name
    else:
        persistent_solver_name = solver_name+"_persistent"
    try:
        persistent_available = pyo.SolverFactory(persistent_solver_name).available(exception_flag=False)
    except Exception:
        persistent_available = False

    return solver_available, solver_name, persistent_available, persistent_solver_name

def get_linear_solver():
    """ A solver for LPs and MIPs (no quadratic terms needed); HiGHS is
    the fallback when no commercial solver is around.
    """
    solver_available, solver_name, _, _ = get_solver(persistent_OK=False)
    if solver_available:
        return solver_available, solver_name
    try:
        highs_available = pyo.SolverFactory("appsi_highs").available(exception_flag=False)
    except Exception:
        highs_available = False
    return bool(highs_available), "appsi_highs"


class SeparableQuadraticBackend(SolverBackend):
    """ A closed-form test double for models whose objective is a separable
    convex quadratic and whose constraints are single-variable bounds.

    Bounds that cross make the model infeasible; an unbounded direction
    makes it unbounded. Anything else is an error.
    """
    def __init__(self):
        self.solve_count = 0

    def _bounds(self, model):
        bounds = dict()
        for v in model.component_data_objects(pyo.Var, active=True, descend_into=True):
            lb = -math.inf if v.lb is None else v.lb
            ub = math.inf if v.ub is None else v.ub
            if v.fixed:
                lb = ub = v.value
            bounds[id(v)] = [v, lb, ub]
        for c in model.component_data_objects(pyo.Constraint, active=True, descend_into=True):
            repn = generate_standard_repn(c.body, quadratic=False)
            if not repn.is_linear() or len(repn.linear_vars) != 1:
                return None, f"constraint {c.name} is not a single-variable bound"
            v, coef = repn.linear_vars[0], repn.linear_coefs[0]
            entry = bounds[id(v)]
            lo = None if c.lower is None else (pyo.value(c.lower) - repn.constant) / coef
            hi = None if c.upper is None else (pyo.value(c.upper) - repn.constant) / coef
            if coef < 0:
                lo, hi = hi, lo
            if lo is not None:
                entry[1] = max(entry[1], lo)
            if hi is not None:
                entry[2] = min(entry[2], hi)
        return bounds, ""

    def solve(self, model, tee=False):
        self.solve_count += 1
        obj = sputils.find_active_objective(model)
        sign = 1.0 if obj.is_minimizing() else -1.0
        bounds, msg = self._bounds(model)
        if bounds is None:
            return SolveResult(SolveStatus.ERROR, message=msg)
        for v, lb, ub in bounds.values():
            if lb > ub + 1e-12:
                return SolveResult(SolveStatus.INFEASIBLE, message=f"{v.name}: {lb} > {ub}")

        repn = generate_standard_repn(obj.expr, quadratic=True)
        if repn.nonlinear_expr is not None:
            return SolveResult(SolveStatus.ERROR, message="nonlinear objective")
        quad = {id(v): [v, 0.0, 0.0] for v, _, _ in bounds.values()}
        for (v1, v2), coef in zip(repn.quadratic_vars, repn.quadratic_coefs):
            if v1 is not v2:
                return SolveResult(SolveStatus.ERROR, message="objective is not separable")
            quad[id(v1)][1] += sign * coef
        for v, coef in zip(repn.linear_vars, repn.linear_coefs):
            quad[id(v)][2] += sign * coef

        for key, (v, q, l) in quad.items():
            _, lb, ub = bounds[key]
            if q < -1e-12:
                return SolveResult(SolveStatus.ERROR, message=f"{v.name}: nonconvex")
            if q > 1e-12:
                x = min(max(-l / (2.0 * q), lb), ub)
            elif l > 0:
                x = lb
            elif l < 0:
                x = ub
            else:
                x = min(max(0.0, lb), ub)
            if not math.isfinite(x):
                return SolveResult(SolveStatus.UNBOUNDED, message=f"{v.name} is unbounded")
            v.set_value(x, skip_validation=True)

        objective = pyo.value(obj)
        primal = ComponentMap((v, v.value) for v, _, _ in bounds.values())
        return SolveResult(SolveStatus.OPTIMAL, primal=primal, objective=objective,
                           bound=objective)
