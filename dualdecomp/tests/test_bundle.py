###############################################################################
# dualdecomp: scenario DUAL DECOMPosition for stochastic programs in Python
#
# Copyright (c) 2024, Lawrence Livermore National Security, LLC, Alliance for
# Sustainable Energy, LLC, The Regents of the University of California, et al.
# All rights reserved. Please see the files COPYRIGHT.md and LICENSE.md for
# full copyright and license information.
###############################################################################
# Tests of the Lagrangian bundle method driven by the coordinator; the
# subproblems are separable quadratics solved in closed form.

import unittest

import numpy as np
import pyomo.environ as pyo

from dualdecomp.coordinator import Coordinator, TerminationStatus
from dualdecomp.opt.bundle import LagrangianBundle, solve_master
from dualdecomp.errors import Infeasible
from dualdecomp.utils.config import as_config
from dualdecomp.tests.utils import SeparableQuadraticBackend
import dualdecomp.tests.examples.quadratic as quadratic

# min 1/3 * ((x-0)**2 + (x-1)**2 + (x-5)**2) is at x=2
TARGETS = [[0.0], [1.0], [5.0]]
OPTIMUM = 14.0 / 3.0
MULTIPLIERS = [-2.0 / 3.0, 2.0]


def _options(**kwargs):
    options = {"mode": "LagrangeBundle", "kmax": 300, "dual_tolerance": 1e-7}
    options.update(kwargs)
    return options


class Test_master(unittest.TestCase):
    """ The master problem on its own """

    def test_single_cut(self):
        lam, model_value, alpha = solve_master(np.array([1.0]), np.array([[1.0, -2.0]]),
                                               np.zeros(2), 0.5)
        np.testing.assert_allclose(alpha, [1.0])
        np.testing.assert_allclose(lam, [0.5, -1.0])
        self.assertAlmostEqual(model_value, 3.5)

    def test_symmetric_cuts(self):
        # min(lam, -lam) is maximized at 0
        lam, model_value, alpha = solve_master(np.zeros(2), np.array([[1.0], [-1.0]]),
                                               np.zeros(1), 1.0)
        np.testing.assert_allclose(alpha, [0.5, 0.5], atol=1e-6)
        self.assertAlmostEqual(lam[0], 0.0, places=6)
        self.assertAlmostEqual(model_value, 0.0, places=6)

    def test_prox_term_limits_step(self):
        # one steep cut and one flat cut through the center
        a = np.array([0.0, 1.0])
        G = np.array([[10.0], [0.0]])
        lam, model_value, _ = solve_master(a, G, np.zeros(1), 0.01)
        self.assertAlmostEqual(lam[0], 0.1, places=5)
        self.assertAlmostEqual(model_value, 1.0, places=5)


class Test_bundle_quadratic(unittest.TestCase):

    def setUp(self):
        self.backend = SeparableQuadraticBackend()

    def _coordinator(self, options=None, targets=TARGETS, strategy=None, infeasible=(),
                     **params):
        tree = quadratic.make_tree(targets, infeasible=infeasible)
        registry = quadratic.make_registry(tree, self.backend, **params)
        return Coordinator(tree, registry, options=_options() if options is None else options,
                           strategy=strategy)

    def test_converges(self):
        coordinator = self._coordinator()
        result = coordinator.run()
        self.assertEqual(result.status, TerminationStatus.CONVERGED)
        self.assertLessEqual(result.bound, OPTIMUM + 1e-8)
        self.assertAlmostEqual(result.bound, OPTIMUM, delta=1e-3)
        np.testing.assert_allclose(result.multipliers, MULTIPLIERS, atol=2e-2)
        self.assertEqual(len(result.multipliers), coordinator.layer.dimension)

    def test_bounds_are_valid(self):
        result = self._coordinator(_options(kmax=10)).run()
        for record in result.trace:
            self.assertLessEqual(record.dual_value, OPTIMUM + 1e-8)
            self.assertLessEqual(record.bound, OPTIMUM + 1e-8)
        bounds = [record.bound for record in result.trace]
        self.assertEqual(bounds, sorted(bounds))

    def test_steps(self):
        options = _options(kmax=25)
        result = self._coordinator(options).run()
        self.assertEqual(result.trace[0].step, "initial")
        for record in result.trace[1:]:
            self.assertIn(record.step, ("serious", "null"))
        cfg = as_config(options)
        for record in result.trace:
            self.assertGreaterEqual(record.penalty, cfg.mu_min)
            self.assertLessEqual(record.penalty, cfg.mu_max)
        # centers only move on serious steps
        for prev, rec in zip(result.trace, result.trace[1:]):
            if rec.step == "null":
                np.testing.assert_allclose(rec.state["center"], prev.state["center"])

    def test_model_over_estimates(self):
        coordinator = self._coordinator(_options(kmax=15))
        coordinator.run()
        strategy = coordinator.strategy
        state = strategy.state
        # concavity: every cut lies above the dual function at the center
        self.assertGreaterEqual(strategy.model_value(state["center"]),
                                state["center_value"] - 1e-9)
        for cut in state["cuts"]:
            self.assertAlmostEqual(strategy.model_value(cut["lam"], cuts=[cut]), cut["value"])

    def test_maximize(self):
        result = self._coordinator(sense=pyo.maximize).run()
        self.assertEqual(result.status, TerminationStatus.CONVERGED)
        self.assertGreaterEqual(result.bound, -OPTIMUM - 1e-8)
        self.assertAlmostEqual(result.bound, -OPTIMUM, delta=1e-3)
        np.testing.assert_allclose(result.multipliers, MULTIPLIERS, atol=2e-2)

    def test_bundle_max_size(self):
        result = self._coordinator(_options(kmax=20, bundle_max_size=3)).run()
        for record in result.trace:
            self.assertLessEqual(len(record.state["cuts"]), 3)
            ids = [cut["id"] for cut in record.state["cuts"]]
            self.assertIn(record.state["center_cut"], ids)
            self.assertIn(record.iteration, ids)

    def test_warm_start(self):
        coordinator = self._coordinator(_options(kmax=8))
        first = coordinator.run()
        again = coordinator.run(warm_start=first.trace[3])
        self.assertEqual(again.iterations, 4)
        for a, b in zip(first.trace[4:], again.trace):
            self.assertEqual(a.step, b.step)
            self.assertAlmostEqual(a.dual_value, b.dual_value, places=8)

    def test_infeasible_node(self):
        coordinator = self._coordinator(infeasible=(2,))
        with self.assertRaises(Infeasible) as cm:
            coordinator.run()
        self.assertEqual(cm.exception.node_id, 3)
        self.assertEqual(coordinator.status, TerminationStatus.FAILED)
        self.assertEqual(coordinator.strategy.state["cuts"], [])

    def test_kmax_zero_with_seed(self):
        options = _options(kmax=0)
        strategy = LagrangianBundle(as_config(options), seed=[1.0, 2.0])
        result = self._coordinator(options, strategy=strategy).run()
        self.assertEqual(result.status, TerminationStatus.ITERATION_LIMIT_REACHED)
        self.assertEqual(self.backend.solve_count, 0)
        np.testing.assert_allclose(result.multipliers, [1.0, 2.0])
        self.assertIsNone(result.bound)

    def test_bad_seed(self):
        options = _options()
        strategy = LagrangianBundle(as_config(options), seed=[1.0, 2.0, 3.0])
        with self.assertRaises(ValueError):
            self._coordinator(options, strategy=strategy).run()


if __name__ == '__main__':
    unittest.main()
