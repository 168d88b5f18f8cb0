###############################################################################
# dualdecomp: scenario DUAL DECOMPosition for stochastic programs in Python
#
# Copyright (c) 2024, Lawrence Livermore National Security, LLC, Alliance for
# Sustainable Energy, LLC, The Regents of the University of California, et al.
# All rights reserved. Please see the files COPYRIGHT.md and LICENSE.md for
# full copyright and license information.
###############################################################################
""" Consensus ADMM (the scenario decomposition method).

Every coupled slot x of a node gets the PH style terms

    W_on * W.x  +  prox_on * rho/2 * ||x - xbar||^2

(subtracted for maximization), where W is the node's price vector and
xbar the consensus value of the slot's group. After each solve phase the
consensus is the probability weighted average of the members and the
prices move by rho * (x - xbar).

Without a consensus seed, iteration 0 runs with the terms off: it is the
wait-and-see relaxation, it gives the trivial bound, and its average is the
first consensus estimate. The prices stay at zero until the first penalized
iteration.
"""
import copy
import logging
import math

import numpy as np
import pyomo.environ as pyo

import dualdecomp.convergers.norms_and_residuals as norms
from dualdecomp.coordinator import StrategyUpdate
from dualdecomp.errors import NumericalInstability

logger = logging.getLogger("dualdecomp.opt.admm")


class ConsensusADMM():
    """ ADMM update rule for the Coordinator.

    Args:
        options (Config): needs the admm_args() and coordinator_args() options
        seed (dict, optional): initial consensus values, keyed by GroupKey or
            by variable name (applies to every group of that name); a scalar
            is broadcast over the slot
    """
    mode = "ADMM"

    def __init__(self, options, seed=None):
        self.options = options
        self.seed = seed
        self.layer = None
        self.state = None
        self._node_terms = dict()
        self._member_group = None

    #===============
    def setup(self, coordinator):
        self.layer = coordinator.layer
        self.is_minimizing = coordinator.is_minimizing
        self._member_group = {m: k for k, g in self.layer.groups.items() for m in g.members}

    def attach_terms(self, sub, block):
        """ Add W, xbars, rho and the on/off switches to ``block`` and
        return the terms to add to the node's objective.
        """
        members = self.layer.member_keys_of(sub.node_id)
        index = [(j, i) for j, m in enumerate(members)
                 for i in range(len(sub.slot(m.role, m.name)))]
        block.W = pyo.Param(index, initialize=0.0, mutable=True)
        block.xbars = pyo.Param(index, initialize=0.0, mutable=True)
        block.rho = pyo.Param(initialize=self.options.rho, mutable=True)
        block.W_on = pyo.Param(initialize=0, mutable=True)
        block.prox_on = pyo.Param(initialize=0, mutable=True)

        lin_bin_prox = self.options.linearize_binary_proximal_terms
        w_expr = 0.
        prox_expr = 0.
        for j, m in enumerate(members):
            for i, xvar in enumerate(sub.slot(m.role, m.name)):
                w_expr += block.W[j, i] * xvar
                # expand (x - xbar)**2 to (x**2 - 2*xbar*x + xbar**2)
                xvarsqrd = xvar if (lin_bin_prox and xvar.is_binary()) else xvar**2
                prox_expr += (block.rho / 2.0) * \
                             (xvarsqrd - 2.0 * block.xbars[j, i] * xvar + block.xbars[j, i]**2)
        block.WExpr = pyo.Expression(expr=w_expr)
        block.ProxExpr = pyo.Expression(expr=prox_expr)
        self._node_terms[sub.node_id] = (block, members)

        admm_term = block.W_on * block.WExpr + block.prox_on * block.ProxExpr
        return admm_term if sub.is_minimizing else -admm_term

    #===============
    def _seed_for(self, key, size):
        val = None
        if self.seed is not None:
            if key in self.seed:
                val = self.seed[key]
            elif key.name in self.seed:
                val = self.seed[key.name]
        if val is None:
            return np.zeros(size)
        arr = np.asarray(val, dtype=float)
        if arr.ndim == 0:
            return np.full(size, float(arr))
        if arr.shape != (size,):
            raise ValueError(f"Seed for {key.name!r} has shape {arr.shape}, expected ({size},)")
        return arr.copy()

    def initialize(self, coordinator):
        layer = self.layer
        seeded = self.seed is not None
        self.state = {
            "z": {k: self._seed_for(k, g.size) for k, g in layer.groups.items()},
            "prev_z": None,
            "W": {m: np.zeros(g.size) for g in layer.groups.values() for m in g.members},
            "rho": self.options.rho,
            "penalty_on": seeded,
            "bound": None,
        }

    def restore(self, coordinator, state):
        self.state = state

    def snapshot(self):
        return copy.deepcopy(self.state)

    #===============
    def prepare(self, coordinator, k):
        """ Push W, xbar, rho and the switches into every node's block """
        state = self.state
        switch = 1 if state["penalty_on"] else 0
        for ndn in coordinator.node_ids:
            block, members = self._node_terms[ndn]
            block.rho._value = state["rho"]
            block.W_on._value = switch
            block.prox_on._value = switch
            for j, m in enumerate(members):
                gkey = self._group_key(m)
                W = state["W"][m]
                z = state["z"][gkey]
                for i in range(len(W)):
                    block.W[j, i]._value = W[i]
                    block.xbars[j, i]._value = z[i]

    def _group_key(self, member):
        return self._member_group[member]

    def update(self, coordinator, k, results, values):
        """ Consensus update, then price update; state changes only at the end """
        layer = self.layer
        options = self.options
        state = self.state
        rho = state["rho"]

        z_new = layer.consensus(values)
        primal_residual = norms.primal_residuals_norm(layer, values, z_new)
        objective = coordinator.expected_objective()
        if state["penalty_on"]:
            dual_residual = norms.dual_residuals_norm(layer, z_new, state["z"], rho)
            W_new = {m: W + rho * (values[m] - z_new[self._group_key(m)])
                     for m, W in state["W"].items()}
            bound = state["bound"]
        else:
            # no prices from an unpenalized solve
            dual_residual = None
            W_new = state["W"]
            bound = coordinator.expected({ndn: results[ndn].bound for ndn in coordinator.node_ids})
            logger.info(f"Trivial bound at iteration {k}: {bound}")

        if not (math.isfinite(primal_residual) and math.isfinite(objective)
                and all(np.all(np.isfinite(z)) for z in z_new.values())
                and all(np.all(np.isfinite(W)) for W in W_new.values())):
            raise NumericalInstability(f"ADMM produced non-finite values at iteration {k}")
        if primal_residual > options.divergence_threshold:
            raise NumericalInstability(
                f"ADMM primal residual {primal_residual} exceeds divergence threshold "
                f"{options.divergence_threshold} at iteration {k} (rho={rho})")

        converged = primal_residual <= options.primal_tolerance and \
            (dual_residual is None or dual_residual <= options.dual_tolerance)

        new_rho = rho
        if options.adaptive_rho and dual_residual is not None and not converged:
            mu = options.rho_balance_factor
            if primal_residual > mu * dual_residual:
                new_rho = rho * options.rho_increase
            elif dual_residual > mu * primal_residual:
                new_rho = rho / options.rho_decrease
            if new_rho != rho:
                logger.debug(f"Iteration {k}: rho {rho} -> {new_rho}")

        state["prev_z"] = state["z"]
        state["z"] = z_new
        state["W"] = W_new
        state["rho"] = new_rho
        state["penalty_on"] = True
        state["bound"] = bound
        return StrategyUpdate(objective=objective, dual_value=None, bound=bound,
                              primal_residual=primal_residual, dual_residual=dual_residual,
                              step=None, penalty=rho, converged=converged, accepted=True)

    #===============
    def lagrangian_bound(self, coordinator):
        """ Solve every node with the prices on and the penalty off.

        Valid because the prices of every group have a zero probability
        weighted sum.
        """
        self.prepare(coordinator, coordinator.iteration)
        for ndn in coordinator.node_ids:
            block, _ = self._node_terms[ndn]
            block.W_on._value = 1
            block.prox_on._value = 0
        results = coordinator.solve_phase(coordinator.iteration, phase="LagrangianBound")
        return coordinator.expected({ndn: results[ndn].bound for ndn in coordinator.node_ids})

    def finalize(self, coordinator, result):
        state = self.state
        result.consensus = {k: z.copy() for k, z in state["z"].items()}
        result.multipliers = {m: W.copy() for m, W in state["W"].items()}
        result.bound = state["bound"]
        if self.options.lagrangian_bound and result.iterations > 0:
            lbound = self.lagrangian_bound(coordinator)
            logger.info(f"Lagrangian bound: {lbound}")
            if result.bound is None:
                result.bound = lbound
            elif self.is_minimizing:
                result.bound = max(result.bound, lbound)
            else:
                result.bound = min(result.bound, lbound)
