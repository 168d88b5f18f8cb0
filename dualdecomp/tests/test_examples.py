###############################################################################
# dualdecomp: scenario DUAL DECOMPosition for stochastic programs in Python
#
# Copyright (c) 2024, Lawrence Livermore National Security, LLC, Alliance for
# Sustainable Energy, LLC, The Regents of the University of California, et al.
# All rights reserved. Please see the files COPYRIGHT.md and LICENSE.md for
# full copyright and license information.
###############################################################################
"""
Runs on the small integer examples with a real solver.
  ADMM puts quadratic terms on integer variables, so it needs a MIQP
solver (cplex, gurobi or xpress); the bundle only needs a MIP solver and
falls back to HiGHS.
"""

import unittest

import numpy as np

from dualdecomp.coordinator import Coordinator, TerminationStatus
from dualdecomp.consensus import GroupKey
from dualdecomp.subproblems import VariableRole
from dualdecomp.solver_backend import PyomoSolverBackend
from dualdecomp.tests.utils import get_solver, get_linear_solver
import dualdecomp.tests.examples.three_scen_ip as three_scen_ip
import dualdecomp.tests.examples.investment as investment

solver_available, solver_name, persistent_available, persistent_solver_name = get_solver()
linear_available, linear_solver_name = get_linear_solver()


def _three_scen(backend, options):
    tree = three_scen_ip.make_tree()
    registry = three_scen_ip.make_registry(tree, backend)
    return Coordinator(tree, registry, options=options)


@unittest.skipIf(not solver_available, "no MIQP solver is available")
class Test_three_scen_admm(unittest.TestCase):

    def test_admm(self):
        options = {"mode": "ADMM", "rho": 50.0, "kmax": 20}
        result = _three_scen(PyomoSolverBackend(solver_name), options).run()
        self.assertEqual(result.status, TerminationStatus.CONVERGED)
        for ndn in (1, 2, 3):
            self.assertAlmostEqual(result.solution[ndn, "x"], three_scen_ip.OPTIMAL_X)
        self.assertAlmostEqual(result.objective, three_scen_ip.OPTIMAL_OBJECTIVE)
        # wait-and-see bound
        self.assertLessEqual(result.bound, three_scen_ip.OPTIMAL_OBJECTIVE + 1e-6)

    @unittest.skipIf(not persistent_available, "no persistent solver is available")
    def test_admm_persistent(self):
        options = {"mode": "ADMM", "rho": 50.0, "kmax": 20}
        result = _three_scen(PyomoSolverBackend(persistent_solver_name), options).run()
        self.assertEqual(result.status, TerminationStatus.CONVERGED)
        self.assertAlmostEqual(result.solution[1, "x"], three_scen_ip.OPTIMAL_X)

    def test_kmax_zero(self):
        options = {"mode": "ADMM", "rho": 50.0, "kmax": 0}
        result = _three_scen(PyomoSolverBackend(solver_name), options).run()
        self.assertEqual(result.status, TerminationStatus.ITERATION_LIMIT_REACHED)
        self.assertEqual(result.iterations, 0)
        self.assertEqual(result.solution, {})
        # the consensus is still the (zero) starting value
        np.testing.assert_allclose(
            result.consensus[GroupKey(0, VariableRole.NONANTICIPATIVE, "x")], [0.0])


@unittest.skipIf(not linear_available, "no MIP solver is available")
class Test_three_scen_bundle(unittest.TestCase):

    def test_bundle(self):
        options = {"mode": "LagrangeBundle", "kmax": 60}
        result = _three_scen(PyomoSolverBackend(linear_solver_name), options).run()
        self.assertIn(result.status, (TerminationStatus.CONVERGED,
                                      TerminationStatus.ITERATION_LIMIT_REACHED))
        # a Lagrangian bound no worse than wait-and-see and no better than the optimum
        self.assertLessEqual(result.bound, three_scen_ip.OPTIMAL_OBJECTIVE + 1e-6)
        self.assertGreaterEqual(result.bound, -19.0 / 3.0 - 1e-6)
        bounds = [record.bound for record in result.trace]
        self.assertEqual(bounds, sorted(bounds))


@unittest.skipIf(not linear_available, "no MIP solver is available")
class Test_investment(unittest.TestCase):

    def test_bundle_smoke(self):
        tree = investment.make_tree(K=3, L=2)
        registry = investment.make_registry(tree, PyomoSolverBackend(linear_solver_name))
        coordinator = Coordinator(tree, registry,
                                  options={"mode": "LagrangeBundle", "kmax": 5})
        result = coordinator.run()
        self.assertFalse(coordinator.is_minimizing)
        self.assertEqual(coordinator.layer.dimension, 60)
        self.assertEqual(len(result.trace), result.iterations)
        # upper bounds for a maximization only improve downward
        bounds = [record.bound for record in result.trace]
        self.assertEqual(bounds, sorted(bounds, reverse=True))
        # keeping everything in the bank is feasible, so the bound is at least its value
        a = investment.DEFAULTS["a"]
        bank = 100.0
        for _ in range(2):
            bank = bank * (1 + a) + 30.0
        self.assertGreaterEqual(result.bound, bank - 1e-6)
        self.assertEqual(len(result.multipliers), 60)


if __name__ == '__main__':
    unittest.main()
