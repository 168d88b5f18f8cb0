###############################################################################
# dualdecomp: scenario DUAL DECOMPosition for stochastic programs in Python
#
# Copyright (c) 2024, Lawrence Livermore National Security, LLC, Alliance for
# Sustainable Energy, LLC, The Regents of the University of California, et al.
# All rights reserved. Please see the files COPYRIGHT.md and LICENSE.md for
# full copyright and license information.
###############################################################################
# Three scenario integer program for which consensus ADMM is a heuristic:
# with a small rho it can settle on x=3, while the optimum is x=2
# (objective -37/6). Run with, e.g.,
#   python admm_failure.py --solver-name cplex --rho 50
# or compare with the bundle bound
#   python admm_failure.py --solver-name cplex --mode LagrangeBundle

import pyomo.environ as pyo

from dualdecomp import global_toc
from dualdecomp.coordinator import Coordinator
from dualdecomp.log import set_verbosity
from dualdecomp.scenario_tree import ScenarioTree
from dualdecomp.solver_backend import PyomoSolverBackend
from dualdecomp.subproblems import Subproblem, SubproblemRegistry
from dualdecomp.utils import config

# scenario -> (cost of x, cost of y)
costs = {1: (-1.0, -2.0), 2: (-1.0, 3.0), 3: (-1.0, 0.5)}


def scenario_builder(context):
    scennum = context.realization["scenario"]
    cx, cy = costs[scennum]

    model = pyo.ConcreteModel(f"Scenario{scennum}")
    model.x = pyo.Var(bounds=(0, 4), within=pyo.Integers)
    model.y = pyo.Var(bounds=(-3, 2), within=pyo.Integers)
    model.c1 = pyo.Constraint(expr=-model.x + 3 * model.y <= 9 / 2)
    model.c2 = pyo.Constraint(expr=-2 * model.x + model.y >= -8)
    model.c3 = pyo.Constraint(expr=model.x + model.y <= 7 / 2)
    model.obj = pyo.Objective(expr=cx * model.x + cy * model.y, sense=pyo.minimize)

    sub = Subproblem(model)
    sub.set_nonanticipative_variable("x", model.x)
    return sub


def _parse_args():
    cfg = config.Config()
    cfg.popular_args()
    cfg.kmax = 20
    cfg.tmax = 10.0
    cfg.rho = 50.0
    cfg.display_progress = True
    cfg.parse_command_line("admm_failure")
    return cfg


def main():
    cfg = _parse_args()
    set_verbosity(cfg.verbose)
    if cfg.solver_name is None:
        raise RuntimeError("--solver-name is required")

    num_scens = len(costs)
    tree = ScenarioTree.from_scenarios([1.0 / num_scens] * num_scens,
                                       [{"scenario": s} for s in costs])
    backend = PyomoSolverBackend(cfg.solver_name, solver_options=cfg.solver_options,
                                 time_limit=cfg.subproblem_time_limit)
    registry = SubproblemRegistry(tree, backend=backend)
    registry.register_builder(scenario_builder, stage=2)

    result = Coordinator(tree, registry, options=cfg).run()
    global_toc(f"{cfg.mode} ended with status {result.status.value} after "
               f"{result.iterations} iterations")
    print(f"objective={result.objective}, bound={result.bound}")
    for ndn in registry.nodes_with_builders():
        print(f"  node {ndn}: x={result.solution.get((ndn, 'x'))}")
    return result


if __name__ == "__main__":
    main()
