###############################################################################
# dualdecomp: scenario DUAL DECOMPosition for stochastic programs in Python
#
# Copyright (c) 2024, Lawrence Livermore National Security, LLC, Alliance for
# Sustainable Energy, LLC, The Regents of the University of California, et al.
# All rights reserved. Please see the files COPYRIGHT.md and LICENSE.md for
# full copyright and license information.
###############################################################################
# Multistage stock/bank investment on a balanced tree.
# ALL INDEXES ARE ZERO-BASED
"""
a: interest rate
pi: unit stock price
rho: unit dividend price, 0.05 * the parent's pi

K stages, L stock types, 2^L children per node, 2^(L*(K-1)) scenarios.
Stock l moves by a factor 1 +/- (l+1)*0.03 from its parent's price.

b_k: initial asset (if k=1) and income (else)
B_k: money in bank
x_{k,l}: number of stocks to buy/sell (integer)
y_{k,l}: total stocks

    max     B_K+sum_l pi_{K,l}y_{K,l}

    s.t.    B_1+sum_l pi_{1,l}x_{1,l} = b_1
            b_k+(1+a)B_{k-1}+sum_l rho_{k,l}y_{k-1,l} = B_k+sum_l pi_{k,l}x_{k,l}, k=2,...,K
            y_{1,l} = x_{1,l}
            y_{k-1,l}+x_{k,l} = y_{k,l}, k=2,...,K
            x_{K,l} = 0
            x integer, y >= 0, B >= 0

Run with, e.g.,
    python investment.py --solver-name appsi_highs --kmax 50
"""
import pyomo.environ as pyo

from dualdecomp import global_toc
from dualdecomp.coordinator import Coordinator
from dualdecomp.log import set_verbosity
from dualdecomp.scenario_tree import ScenarioTree
from dualdecomp.solver_backend import PyomoSolverBackend
from dualdecomp.subproblems import Subproblem, SubproblemRegistry
from dualdecomp.utils import config


def get_realization(parent_pi, branch):
    """ Prices of child ``branch`` (0 based) given the parent's prices """
    digits = [(branch >> l) & 1 for l in range(len(parent_pi))]
    return [p * (1 + (2 * digits[l] - 1) * (l + 1) * 0.03) for l, p in enumerate(parent_pi)]


def make_tree(K, L):
    def realization(parent, branch):
        if parent is None:
            return {"pi": [1.0] * L}
        return {"pi": get_realization(parent["pi"], branch)}
    return ScenarioTree.from_branching_factors([2**L] * (K - 1), realization)


def node_builder(context):
    p = context.params
    pi = context.realization["pi"]
    L = len(pi)
    big_m = p["big_m"]

    model = pyo.ConcreteModel(f"node{context.node_id}")
    model.L = pyo.RangeSet(0, L - 1)
    # boxed so that every relaxed subproblem is bounded
    model.x = pyo.Var(model.L, within=pyo.Integers, bounds=(-big_m, big_m))
    model.y = pyo.Var(model.L, bounds=(0, big_m))
    model.B = pyo.Var(bounds=(0, big_m))

    if context.stage == 1:
        model.budget = pyo.Constraint(
            expr=model.B + sum(pi[l] * model.x[l] for l in model.L) == p["b_init"])
        model.holdings = pyo.Constraint(model.L, rule=lambda m, l: m.y[l] - m.x[l] == 0)
    else:
        rho = [0.05 * pp for pp in context.parent_realization["pi"]]
        model.y_ = pyo.Var(model.L, bounds=(0, big_m))
        model.B_ = pyo.Var(bounds=(0, big_m))
        model.budget = pyo.Constraint(
            expr=model.B + sum(pi[l] * model.x[l] - rho[l] * model.y_[l] for l in model.L)
            - (1 + p["a"]) * model.B_ == p["b_in"])
        model.holdings = pyo.Constraint(
            model.L, rule=lambda m, l: m.y[l] - m.x[l] - m.y_[l] == 0)

    sub = Subproblem(model, sense=pyo.maximize)
    if context.stage < p["K"]:
        sub.set_stage_objective(0)
    else:
        model.no_trade = pyo.Constraint(model.L, rule=lambda m, l: m.x[l] == 0)
        sub.set_stage_objective(model.B + sum(pi[l] * model.y[l] for l in model.L))
    sub.set_output_variable("y", model.y)
    sub.set_output_variable("B", model.B)
    if context.stage > 1:
        sub.set_input_variable("y", model.y_)
        sub.set_input_variable("B", model.B_)
    return sub


def inparser_adder(cfg):
    cfg.add_to_config("K", description="number of stages (default 3)", domain=int, default=3)
    cfg.add_to_config("L", description="number of stock types (default 2)", domain=int, default=2)
    cfg.add_to_config("a", description="bank interest rate (default 0.01)", domain=float,
                      default=0.01)
    cfg.add_to_config("b_init", description="initial capital (default 100)", domain=float,
                      default=100.0)
    cfg.add_to_config("b_in", description="income in later stages (default 30)", domain=float,
                      default=30.0)
    cfg.add_to_config("big_m", description="box on every variable (default 1e4)", domain=float,
                      default=1e4)


def kw_creator(cfg):
    return {name: cfg[name] for name in ("K", "L", "a", "b_init", "b_in", "big_m")}


def main():
    cfg = config.Config()
    cfg.popular_args()
    inparser_adder(cfg)
    cfg.mode = "LagrangeBundle"
    cfg.display_progress = True
    cfg.parse_command_line("investment")
    set_verbosity(cfg.verbose)
    if cfg.solver_name is None:
        raise RuntimeError("--solver-name is required")

    tree = make_tree(cfg.K, cfg.L)
    backend = PyomoSolverBackend(cfg.solver_name, solver_options=cfg.solver_options,
                                 time_limit=cfg.subproblem_time_limit)
    registry = SubproblemRegistry(tree, backend=backend, params=kw_creator(cfg))
    for stage in range(1, cfg.K + 1):
        registry.register_builder(node_builder, stage=stage)

    result = Coordinator(tree, registry, options=cfg).run()
    global_toc(f"{len(tree.leaves())} scenarios, {cfg.mode}: {result.status.value} after "
               f"{result.iterations} iterations")
    print(f"bound={result.bound}")
    return result


if __name__ == "__main__":
    main()
