###############################################################################
# dualdecomp: scenario DUAL DECOMPosition for stochastic programs in Python
#
# Copyright (c) 2024, Lawrence Livermore National Security, LLC, Alliance for
# Sustainable Energy, LLC, The Regents of the University of California, et al.
# All rights reserved. Please see the files COPYRIGHT.md and LICENSE.md for
# full copyright and license information.
###############################################################################
""" Lagrangian relaxation of the coupling constraints, maximized by a
proximal bundle method.

Each coupling constraint ``x_f - x_a = 0`` gets a multiplier vector. Node n
solves

    f_n + s/p_n * ( sum of lambda.x_f over constraints where n is the follower
                  - sum of lambda.x_a over constraints where n is the anchor )

with s = 1 for minimization and -1 for maximization, and p_n the node's
unconditional probability. Then

    theta(lambda) = s * sum_n p_n * obj_n

is concave with supergradient ``g = x_f - x_a`` (the constraint violation
vector) and is maximized. For minimization theta is the usual Lagrangian
lower bound; for maximization it is the negated upper bound.

The proximal master problem

    max_lambda  min_j (theta_j + g_j.(lambda - lambda_j))  -  1/(2 mu) ||lambda - center||^2

is solved through its dual, a QP over the unit simplex:

    min_alpha  alpha.(a + G center) + mu/2 ||G^T alpha||^2,   a_j = theta_j - g_j.lambda_j

and lambda_next = center + mu G^T alpha.
"""
import copy
import logging
import math

import numpy as np
import pyomo.environ as pyo
import scipy.optimize

from dualdecomp.coordinator import StrategyUpdate
from dualdecomp.errors import NumericalInstability

logger = logging.getLogger("dualdecomp.opt.bundle")

# a cut whose weight in the last master solution is below this is inactive
_ACTIVE_WEIGHT = 1e-9


def solve_master(a, G, center, mu, alpha0=None):
    """ Solve the dual of the proximal master problem.

    Args:
        a (np.array): cut intercepts, one per cut
        G (np.array): cut slopes, one row per cut
        center (np.array): the stability center
        mu (float): proximal weight
        alpha0 (np.array, optional): starting weights

    Returns:
        (lambda_next, model_value, alpha)
    """
    J = len(a)
    shift = a + G @ center
    if J == 1:
        alpha = np.ones(1)
    else:
        GGt = G @ G.T
        # constant on the simplex
        shift = shift - shift.min()
        # scaled so that ftol means the same at any mu
        scale = max(1.0, float(np.max(np.abs(shift))), mu * float(np.max(np.abs(GGt), initial=0.0)))

        def fun(alpha):
            return float(alpha @ shift + 0.5 * mu * alpha @ GGt @ alpha) / scale

        def jac(alpha):
            return (shift + mu * (GGt @ alpha)) / scale

        if alpha0 is None or len(alpha0) != J:
            alpha0 = np.full(J, 1.0 / J)
        res = None
        for start in (alpha0, np.full(J, 1.0 / J)):
            res = scipy.optimize.minimize(
                fun, start, jac=jac, method="SLSQP",
                bounds=[(0.0, 1.0)] * J,
                constraints=[{"type": "eq",
                              "fun": lambda x: np.sum(x) - 1.0,
                              "jac": lambda x: np.ones_like(x)}],
                options={"ftol": 1e-12, "maxiter": 500})
            if res.success:
                break
        alpha = np.clip(res.x, 0.0, None)
        # a stalled line search near the optimum still leaves a usable point
        if not np.all(np.isfinite(res.x)) or abs(np.sum(res.x) - 1.0) > 1e-6 \
           or np.min(res.x) < -1e-6 or alpha.sum() <= 0:
            raise NumericalInstability(f"Bundle master problem failed: {res.message}")
        if not res.success:
            logger.debug(f"Bundle master problem: {res.message}")
        alpha /= alpha.sum()
    lam_next = center + mu * (G.T @ alpha)
    model_value = float(np.min(a + G @ lam_next))
    if not (np.all(np.isfinite(lam_next)) and math.isfinite(model_value)):
        raise NumericalInstability("Bundle master problem produced non-finite values")
    return lam_next, model_value, alpha


class LagrangianBundle():
    """ Proximal bundle update rule for the Coordinator.

    Args:
        options (Config): needs the bundle_args() and coordinator_args() options
        seed (array or float, optional): initial multipliers, in constraint order
    """
    mode = "LagrangeBundle"

    def __init__(self, options, seed=None):
        self.options = options
        self.seed = seed
        self.layer = None
        self.state = None
        self.accepted_consensus = dict()
        self._node_terms = dict()

    #===============
    def setup(self, coordinator):
        self.layer = coordinator.layer
        self.is_minimizing = coordinator.is_minimizing
        self.sign = 1.0 if self.is_minimizing else -1.0
        self.probabilities = coordinator.probabilities

    def attach_terms(self, sub, block):
        """ Add the multiplier Params to ``block`` and return the relaxed
        coupling terms.
        """
        touching = self.layer.constraints_of(sub.node_id)
        index = [(j, i) for j, (c, _, _) in enumerate(touching) for i in range(c.size)]
        block.lam = pyo.Param(index, initialize=0.0, mutable=True)
        p = self.probabilities[sub.node_id]
        expr = 0.
        for j, (c, sign, member) in enumerate(touching):
            coef = self.sign * sign / p
            for i, xvar in enumerate(sub.slot(member.role, member.name)):
                expr += coef * block.lam[j, i] * xvar
        block.LagrangeExpr = pyo.Expression(expr=expr)
        self._node_terms[sub.node_id] = (block, touching)
        return block.LagrangeExpr

    #===============
    def initialize(self, coordinator):
        dim = self.layer.dimension
        if self.seed is None:
            lam0 = np.zeros(dim)
        else:
            lam0 = np.asarray(self.seed, dtype=float)
            if lam0.ndim == 0:
                lam0 = np.full(dim, float(lam0))
            if lam0.shape != (dim,):
                raise ValueError(f"Multiplier seed has shape {lam0.shape}, expected ({dim},)")
            lam0 = lam0.copy()
        self.state = {
            "next": lam0,
            "center": lam0.copy(),
            "center_value": None,
            "center_cut": None,
            "predicted": None,
            "mu": self.options.mu_init,
            "cuts": list(),
            "cut_count": 0,
            "bound": None,
        }

    def restore(self, coordinator, state):
        self.state = state

    def snapshot(self):
        return copy.deepcopy(self.state)

    @property
    def multipliers(self):
        return self.state["next"]

    #===============
    def prepare(self, coordinator, k):
        """ Push the multipliers to be evaluated into every node's block """
        lam = self.state["next"]
        for ndn in coordinator.node_ids:
            block, touching = self._node_terms[ndn]
            for j, (c, _, _) in enumerate(touching):
                for i in range(c.size):
                    block.lam[j, i]._value = lam[c.offset + i]

    def model_value(self, lam, cuts=None):
        """ The cutting-plane model min_j theta_j + g_j.(lam - lam_j) """
        cuts = self.state["cuts"] if cuts is None else cuts
        return min(cut["value"] + float(cut["g"] @ (lam - cut["lam"])) for cut in cuts)

    def _better_bound(self, old, new):
        if old is None:
            return new
        return max(old, new) if self.is_minimizing else min(old, new)

    def update(self, coordinator, k, results, values):
        """ Add the new cut, classify the step and solve the master problem """
        options = self.options
        state = copy.deepcopy(self.state)
        lam = state["next"]

        g = self.layer.violation(values)
        theta = self.sign * coordinator.expected({ndn: results[ndn].objective
                                                  for ndn in coordinator.node_ids})
        node_bound = coordinator.expected({ndn: results[ndn].bound
                                           for ndn in coordinator.node_ids})
        if not (math.isfinite(theta) and np.all(np.isfinite(g))):
            raise NumericalInstability(f"Non-finite dual value or subgradient at iteration {k}")
        objective = coordinator.expected_objective()

        cut_id = state["cut_count"]
        state["cut_count"] += 1
        state["cuts"].append({"id": cut_id, "lam": lam.copy(), "value": theta,
                              "g": g.copy(), "weight": 0.0})

        if state["center_value"] is None:
            step = "initial"
        elif theta - state["center_value"] >= options.serious_step_fraction * state["predicted"]:
            step = "serious"
        else:
            step = "null"
        if step == "null":
            state["mu"] = max(state["mu"] / options.mu_decrease, options.mu_min)
        else:
            state["center"] = lam.copy()
            state["center_value"] = theta
            state["center_cut"] = cut_id
            if step == "serious":
                state["mu"] = min(state["mu"] * options.mu_increase, options.mu_max)
        self._trim(state)

        cuts = state["cuts"]
        a = np.array([cut["value"] - float(cut["g"] @ cut["lam"]) for cut in cuts])
        G = np.array([cut["g"] for cut in cuts]).reshape(len(cuts), self.layer.dimension)
        alpha0 = np.array([cut["weight"] for cut in cuts])
        if alpha0.sum() <= 0:
            alpha0 = None
        else:
            alpha0 = alpha0 / alpha0.sum()
        lam_next, model_value, alpha = solve_master(a, G, state["center"], state["mu"], alpha0)
        for cut, w in zip(cuts, alpha):
            cut["weight"] = float(w)
        predicted = max(model_value - state["center_value"], 0.0)
        state["next"] = lam_next
        state["predicted"] = predicted
        state["bound"] = self._better_bound(state["bound"], node_bound)

        converged = predicted <= options.dual_tolerance * (1.0 + abs(state["center_value"]))
        logger.debug(f"Iteration {k}: theta={theta}, {step} step, mu={state['mu']}, "
                     f"predicted increase={predicted}")

        self.state = state
        if step != "null":
            self.accepted_consensus = self.layer.consensus(values)
        return StrategyUpdate(objective=objective, dual_value=self.sign * theta,
                              bound=state["bound"],
                              primal_residual=float(np.linalg.norm(g)),
                              dual_residual=predicted, step=step, penalty=state["mu"],
                              converged=converged, accepted=(step != "null"))

    def _trim(self, state):
        """ Keep at most bundle_max_size cuts; drop the oldest inactive ones first """
        cuts = state["cuts"]
        while len(cuts) > self.options.bundle_max_size:
            droppable = [c for c in cuts if c["id"] != state["center_cut"]
                         and c["id"] != cuts[-1]["id"]]
            inactive = [c for c in droppable if c["weight"] <= _ACTIVE_WEIGHT]
            victim = (inactive or droppable)[0]
            cuts.remove(victim)

    #===============
    def finalize(self, coordinator, result):
        state = self.state
        result.multipliers = state["center"].copy()
        result.bound = state["bound"]
        result.consensus = {k: z.copy() for k, z in self.accepted_consensus.items()}
