###############################################################################
# dualdecomp: scenario DUAL DECOMPosition for stochastic programs in Python
#
# Copyright (c) 2024, Lawrence Livermore National Security, LLC, Alliance for
# Sustainable Energy, LLC, The Regents of the University of California, et al.
# All rights reserved. Please see the files COPYRIGHT.md and LICENSE.md for
# full copyright and license information.
###############################################################################
# Tests of subproblem building and the builder contract

import unittest

import pyomo.environ as pyo

from dualdecomp.scenario_tree import ScenarioTree
from dualdecomp.subproblems import Subproblem, SubproblemRegistry, VariableRole, BuildContext
from dualdecomp.errors import BuilderContractViolation, InvalidTreeState, UnknownNode
from dualdecomp.solver_backend import SolveStatus
from dualdecomp.tests.utils import SeparableQuadraticBackend
import dualdecomp.tests.examples.quadratic as quadratic
import dualdecomp.tests.examples.investment as investment


class _Penalty:
    """ Adds a constant to every objective and remembers who asked """
    mode = "test"

    def __init__(self):
        self.attached = list()

    def attach_terms(self, sub, block):
        self.attached.append(sub.node_id)
        block.c = pyo.Param(initialize=2.5, mutable=True)
        return block.c


class Test_registry(unittest.TestCase):
    """ Build the quadratic example """

    def setUp(self):
        self.tree = quadratic.make_tree([[1, 2], [3, 4]])
        self.backend = SeparableQuadraticBackend()
        self.registry = quadratic.make_registry(self.tree, self.backend, box=10)

    def test_builders(self):
        self.assertEqual(self.registry.nodes_with_builders(), [1, 2])
        self.assertIsNone(self.registry.builder_for(0))
        self.assertIs(self.registry.builder_for(2), quadratic.scenario_builder)

    def test_node_builder_wins(self):
        def other(context):
            return quadratic.scenario_builder(context)
        self.registry.register_builder(other, node=2)
        self.assertIs(self.registry.builder_for(2), other)
        self.assertIs(self.registry.builder_for(1), quadratic.scenario_builder)

    def test_register_errors(self):
        with self.assertRaises(ValueError):
            self.registry.register_builder(quadratic.scenario_builder)
        with self.assertRaises(ValueError):
            self.registry.register_builder(quadratic.scenario_builder, node=1, stage=2)
        with self.assertRaises(UnknownNode):
            self.registry.register_builder(quadratic.scenario_builder, node=17)
        with self.assertRaises(BuilderContractViolation):
            self.registry.register_builder("not a function", stage=2)

    def test_build(self):
        sub = self.registry.build(2)
        self.assertTrue(self.registry.is_built(2))
        self.assertFalse(self.registry.is_built(1))
        self.assertEqual(sub.node_id, 2)
        self.assertEqual(sub.names(VariableRole.NONANTICIPATIVE), ["x"])
        self.assertEqual(len(sub.slot(VariableRole.NONANTICIPATIVE, "x")), 2)
        # the builder's objective is deactivated and used as the stage objective
        self.assertFalse(sub.model.obj.active)
        self.assertTrue(sub.is_minimizing)
        self.assertIs(self.registry.build(2), sub)

    def test_no_builder(self):
        with self.assertRaises(BuilderContractViolation):
            self.registry.build(0)
        with self.assertRaises(InvalidTreeState):
            self.registry.subproblem(0)

    def test_params_reach_builder(self):
        sub = self.registry.build(1)
        self.assertEqual(sub.context, None)
        self.assertEqual(sub.model.x[0].ub, 10)

    def test_solve_plain(self):
        result = self.registry.solve(1)
        self.assertEqual(result.status, SolveStatus.OPTIMAL)
        sub = self.registry.subproblem(1)
        self.assertAlmostEqual(sub.model.x[0].value, 1)
        self.assertAlmostEqual(sub.model.x[1].value, 2)
        self.assertAlmostEqual(result.objective, 0)
        self.assertEqual(list(sub.slot_values(VariableRole.NONANTICIPATIVE, "x")), [1, 2])

    def test_attach(self):
        penalty = _Penalty()
        sub = self.registry.build(1, penalty_context=penalty)
        self.assertEqual(penalty.attached, [1])
        self.assertIs(sub.context, penalty)
        self.assertTrue(sub.objective.active)
        # attaching the same context again does nothing
        self.registry.build(1, penalty_context=penalty)
        self.assertEqual(penalty.attached, [1])
        result = self.registry.solve(1)
        self.assertAlmostEqual(result.objective, 2.5)

    def test_mode_in_context(self):
        seen = list()

        def builder(context):
            seen.append(context.mode)
            return quadratic.scenario_builder(context)
        self.registry.register_builder(builder, stage=2)
        self.registry.build(1, penalty_context=_Penalty())
        self.assertEqual(seen, ["test"])


class Test_contract(unittest.TestCase):
    """ Builders that break the contract """

    def _registry(self, builder, stage=2):
        tree = quadratic.make_tree([[0], [1]])
        registry = SubproblemRegistry(tree)
        registry.register_builder(builder, stage=stage)
        return registry

    def test_not_a_subproblem(self):
        registry = self._registry(lambda context: pyo.ConcreteModel())
        with self.assertRaises(BuilderContractViolation):
            registry.build(1)

    def test_foreign_variable(self):
        other = pyo.ConcreteModel()
        other.z = pyo.Var()

        def builder(context):
            sub = quadratic.scenario_builder(context)
            sub.set_nonanticipative_variable("z", other.z)
            return sub
        with self.assertRaises(BuilderContractViolation):
            self._registry(builder).build(1)

    def test_not_a_variable(self):
        def builder(context):
            sub = quadratic.scenario_builder(context)
            sub.set_output_variable("obj", sub.model.obj)
            return sub
        with self.assertRaises(BuilderContractViolation):
            self._registry(builder).build(1)

    def test_declared_twice(self):
        def builder(context):
            sub = quadratic.scenario_builder(context)
            sub.set_nonanticipative_variable("x", sub.model.x)
            return sub
        with self.assertRaises(BuilderContractViolation):
            self._registry(builder).build(1)

    def test_no_objective(self):
        def builder(context):
            sub = quadratic.scenario_builder(context)
            sub.model.del_component(sub.model.obj)
            return sub
        with self.assertRaises(BuilderContractViolation):
            self._registry(builder).build(1)

    def test_mixed_senses(self):
        def builder(context):
            sub = quadratic.scenario_builder(context)
            if context.node_id == 2:
                sub.model.obj.set_sense(pyo.maximize)
            return sub
        registry = self._registry(builder)
        registry.build(1)
        with self.assertRaises(BuilderContractViolation):
            registry.build(2)

    def test_input_without_parent_output(self):
        tree = quadratic.make_inout_tree(0.0, [1.0, 2.0])
        registry = SubproblemRegistry(tree)
        registry.register_builder(quadratic.child_builder, stage=2)
        with self.assertRaises(BuilderContractViolation):
            registry.build(1)

    def test_input_length_mismatch(self):
        def root(context):
            model = pyo.ConcreteModel()
            model.y = pyo.Var([0, 1])
            model.obj = pyo.Objective(expr=model.y[0]**2 + model.y[1]**2)
            sub = Subproblem(model)
            sub.set_output_variable("y", model.y)
            return sub
        tree = quadratic.make_inout_tree(0.0, [1.0, 2.0])
        registry = SubproblemRegistry(tree)
        registry.register_builder(root, stage=1)
        registry.register_builder(quadratic.child_builder, stage=2)
        with self.assertRaises(BuilderContractViolation):
            registry.build(2)

    def test_context_read_only(self):
        contexts = list()

        def builder(context):
            contexts.append(context)
            return quadratic.scenario_builder(context)
        self._registry(builder).build(1)
        context = contexts[0]
        self.assertIsInstance(context, BuildContext)
        self.assertEqual(context.stage, 2)
        self.assertAlmostEqual(context.unconditional_probability, 0.5)
        self.assertTrue(context.is_leaf)
        with self.assertRaises(AttributeError):
            context.stage = 3
        with self.assertRaises(TypeError):
            context.realization["target"] = [7]


class Test_multistage(unittest.TestCase):
    """ Ancestors are built before descendants """

    def test_ancestors(self):
        tree = investment.make_tree(K=3, L=2)
        registry = investment.make_registry(tree, None)
        leaf = tree.leaves()[-1]
        sub = registry.build(leaf)
        for ndn in tree.path_to_root(leaf):
            self.assertTrue(registry.is_built(ndn))
        self.assertEqual(sub.names(VariableRole.INPUT), ["B", "y"])
        self.assertFalse(registry.is_minimizing)
        self.assertEqual(sub.context, None)
        self.assertIsNotNone(sub.model.find_component("no_trade"))

    def test_parent_realization(self):
        tree = investment.make_tree(K=2, L=1)
        contexts = dict()

        def builder(context):
            contexts[context.node_id] = context
            return investment.node_builder(context)
        registry = SubproblemRegistry(tree)
        for stage in (1, 2):
            registry.register_builder(builder, stage=stage)
        registry.build(2)
        self.assertEqual(contexts[2].parent_realization["pi"], [1.0])
        self.assertEqual(len(contexts[0].parent_realization), 0)


if __name__ == '__main__':
    unittest.main()
