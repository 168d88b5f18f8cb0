###############################################################################
# dualdecomp: scenario DUAL DECOMPosition for stochastic programs in Python
#
# Copyright (c) 2024, Lawrence Livermore National Security, LLC, Alliance for
# Sustainable Energy, LLC, The Regents of the University of California, et al.
# All rights reserved. Please see the files COPYRIGHT.md and LICENSE.md for
# full copyright and license information.
###############################################################################
# Quadratic variant of the dynamic capacity acquisition and allocation
# problem (DCAP): resources i get capacity x[i,t] (quadratic cost, binary
# expansion u[i,t]) and are assigned to tasks j through binary y[i,j,t];
# z[j,t] is outsourcing. The first stage decisions x and u are
# nonanticipative; costs and demands are random.
# Run with, e.g.,
#   python qdcap.py --solver-name gurobi --num-scens 20 --kmax 100

import itertools

import numpy as np
import pyomo.environ as pyo

from dualdecomp import global_toc
from dualdecomp.coordinator import Coordinator
from dualdecomp.log import set_verbosity
from dualdecomp.scenario_tree import ScenarioTree
from dualdecomp.solver_backend import PyomoSolverBackend
from dualdecomp.subproblems import Subproblem, SubproblemRegistry
from dualdecomp.utils import config


def make_data(nR, nN, nT, nS, seed=1):
    """ Shared data (a, b) and one realization per scenario (c, c0, d) """
    rng = np.random.RandomState(seed)
    shared = {
        "a": rng.rand(nR, nT) * 5 + 5,
        "b": rng.rand(nR, nT) * 40 + 10,
    }
    c = rng.rand(nR, nN, nT, nS) * 5 + 5
    c0 = rng.rand(nN, nT, nS) * 500 + 500
    d = rng.rand(nN, nT, nS) + 0.5
    realizations = [{"c": c[:, :, :, s], "c0": c0[:, :, s], "d": d[:, :, s]}
                    for s in range(nS)]
    return shared, realizations


def scenario_builder(context):
    a = context.params["a"]
    b = context.params["b"]
    c = context.realization["c"]
    c0 = context.realization["c0"]
    d = context.realization["d"]
    nR, nN, nT = c.shape

    model = pyo.ConcreteModel(f"Scenario{context.node_id}")
    model.R = pyo.RangeSet(0, nR - 1)
    model.N = pyo.RangeSet(0, nN - 1)
    model.T = pyo.RangeSet(0, nT - 1)
    # x <= u keeps the capacity bounded
    model.x = pyo.Var(model.R, model.T, bounds=(0, 1))
    model.u = pyo.Var(model.R, model.T, within=pyo.Binary)
    model.y = pyo.Var(model.R, model.N, model.T, within=pyo.Binary)
    model.z = pyo.Var(model.N, model.T, within=pyo.Binary)

    model.obj = pyo.Objective(
        expr=sum(a[i, t] * model.x[i, t]**2 + b[i, t] * model.u[i, t]
                 for i, t in itertools.product(model.R, model.T))
        + sum(c[i, j, t] * model.y[i, j, t]
              for i, j, t in itertools.product(model.R, model.N, model.T))
        + sum(c0[j, t] * model.z[j, t] for j, t in itertools.product(model.N, model.T)),
        sense=pyo.minimize)

    model.expansion = pyo.Constraint(
        model.R, model.T, rule=lambda m, i, t: m.x[i, t] - m.u[i, t] <= 0)
    model.capacity = pyo.Constraint(
        model.R, model.T,
        rule=lambda m, i, t: -sum(m.x[i, tau] for tau in range(t + 1))
        + sum(d[j, t] * m.y[i, j, t] for j in m.N) <= 0)
    model.assignment = pyo.Constraint(
        model.N, model.T,
        rule=lambda m, j, t: sum(m.y[i, j, t] for i in m.R) + m.z[j, t] == 1)

    sub = Subproblem(model)
    sub.set_nonanticipative_variable("x", model.x)
    sub.set_nonanticipative_variable("u", model.u)
    return sub


def inparser_adder(cfg):
    cfg.add_to_config("num_resources", description="nR (default 2)", domain=int, default=2)
    cfg.add_to_config("num_tasks", description="nN (default 3)", domain=int, default=3)
    cfg.add_to_config("num_periods", description="nT (default 3)", domain=int, default=3)
    cfg.add_to_config("num_scens", description="nS (default 20)", domain=int, default=20)
    cfg.add_to_config("seed", description="random seed for the data (default 1)", domain=int,
                      default=1)


def main():
    cfg = config.Config()
    cfg.popular_args()
    inparser_adder(cfg)
    cfg.mode = "LagrangeBundle"
    cfg.display_progress = True
    cfg.parse_command_line("qdcap")
    set_verbosity(cfg.verbose)
    if cfg.solver_name is None:
        raise RuntimeError("--solver-name is required (a MIQP solver)")

    shared, realizations = make_data(cfg.num_resources, cfg.num_tasks, cfg.num_periods,
                                     cfg.num_scens, seed=cfg.seed)
    tree = ScenarioTree.from_scenarios([1.0 / cfg.num_scens] * cfg.num_scens, realizations)
    backend = PyomoSolverBackend(cfg.solver_name, solver_options=cfg.solver_options,
                                 time_limit=cfg.subproblem_time_limit)
    registry = SubproblemRegistry(tree, backend=backend, params=shared)
    registry.register_builder(scenario_builder, stage=2)

    result = Coordinator(tree, registry, options=cfg).run()
    global_toc(f"{cfg.mode}: {result.status.value} after {result.iterations} iterations")
    print(f"bound={result.bound}")
    return result


if __name__ == "__main__":
    main()
