###############################################################################
# dualdecomp: scenario DUAL DECOMPosition for stochastic programs in Python
#
# Copyright (c) 2024, Lawrence Livermore National Security, LLC, Alliance for
# Sustainable Energy, LLC, The Regents of the University of California, et al.
# All rights reserved. Please see the files COPYRIGHT.md and LICENSE.md for
# full copyright and license information.
###############################################################################
""" Subproblem builders and the registry that materializes them.

A builder is a plain callable ``builder(context) -> Subproblem``. The
context is an immutable ``BuildContext``; everything a builder needs
(realization data, user parameters) arrives through it. The returned
``Subproblem`` wraps a Pyomo model and declares the coupling variable slots
by role.

The registry calls each builder once per node, validates what comes back,
and hands the model to the coordinator, which attaches its multiplier and
penalty terms as mutable Params on a ``_dd_model`` Block. Later iterations
only change Param values, so the model is never rebuilt.
"""
import enum
import logging
import types

import numpy as np
import pyomo.environ as pyo

import dualdecomp.utils.sputils as sputils
from dualdecomp.errors import BuilderContractViolation, InvalidTreeState

logger = logging.getLogger("dualdecomp.subproblems")


class VariableRole(enum.Enum):
    INPUT = "input"                      # received from the parent's outputs
    OUTPUT = "output"                    # offered to the children
    NONANTICIPATIVE = "nonanticipative"  # must agree across siblings


_EMPTY = types.MappingProxyType({})


class BuildContext:
    """ Read-only description of the node a builder is asked to model.

    Attributes:
        node_id (int): the node
        stage (int): the node's stage (root is 1)
        probability (float): probability conditional on the parent
        unconditional_probability (float): product of probabilities to the root
        realization (mapping): the node's realization data
        parent_realization (mapping): the parent's realization data (empty
            at the root)
        is_leaf (bool): True if the node has no children
        params (mapping): user parameters shared by every builder call
        mode (str or None): the coordinator mode the model is built for
    """
    __slots__ = ("_node_id", "_stage", "_probability", "_uncond_prob",
                 "_realization", "_parent_realization", "_is_leaf", "_params",
                 "_mode")

    def __init__(self, node_id, stage, probability, unconditional_probability,
                 realization, parent_realization, is_leaf, params=None, mode=None):
        object.__setattr__(self, "_node_id", node_id)
        object.__setattr__(self, "_stage", stage)
        object.__setattr__(self, "_probability", probability)
        object.__setattr__(self, "_uncond_prob", unconditional_probability)
        object.__setattr__(self, "_realization", realization)
        object.__setattr__(self, "_parent_realization", parent_realization)
        object.__setattr__(self, "_is_leaf", is_leaf)
        object.__setattr__(self, "_params", _EMPTY if params is None
                           else types.MappingProxyType(dict(params)))
        object.__setattr__(self, "_mode", mode)

    def __setattr__(self, name, value):
        raise AttributeError("BuildContext is read-only")

    node_id = property(lambda self: self._node_id)
    stage = property(lambda self: self._stage)
    probability = property(lambda self: self._probability)
    unconditional_probability = property(lambda self: self._uncond_prob)
    realization = property(lambda self: self._realization)
    parent_realization = property(lambda self: self._parent_realization)
    is_leaf = property(lambda self: self._is_leaf)
    params = property(lambda self: self._params)
    mode = property(lambda self: self._mode)

    def __repr__(self):
        return f"BuildContext(node_id={self._node_id}, stage={self._stage})"


class Subproblem:
    """ A node's model plus its declared coupling variables.

    Args:
        model (ConcreteModel): the node's model
        stage_objective (expression, optional): the node's own objective
            contribution; if None, the model's single active objective is used
        sense (optional): pyo.minimize or pyo.maximize, used only together
            with ``stage_objective``
    """
    def __init__(self, model, stage_objective=None, sense=pyo.minimize):
        self.model = model
        self.stage_objective = stage_objective
        self.sense = sense
        self._declared = {role: dict() for role in VariableRole}
        # filled by the registry
        self.node_id = None
        self.slots = {role: dict() for role in VariableRole}
        self.objective = None
        self.context = None

    def _declare(self, role, name, var):
        if name in self._declared[role]:
            raise BuilderContractViolation(
                f"{role.value} variable {name!r} declared twice")
        self._declared[role][name] = var

    def set_input_variable(self, name, var):
        self._declare(VariableRole.INPUT, name, var)

    def set_output_variable(self, name, var):
        self._declare(VariableRole.OUTPUT, name, var)

    def set_nonanticipative_variable(self, name, var):
        self._declare(VariableRole.NONANTICIPATIVE, name, var)

    def set_stage_objective(self, expr, sense=None):
        self.stage_objective = expr
        if sense is not None:
            self.sense = sense

    @property
    def is_minimizing(self):
        return self.sense == pyo.minimize

    def names(self, role):
        return sorted(self.slots[role])

    def slot(self, role, name):
        return self.slots[role][name]

    def slot_values(self, role, name):
        return np.array(sputils.vardata_values(self.slots[role][name]), dtype=float)

    def stage_objective_value(self):
        return pyo.value(self.stage_objective)

    def variable_values(self):
        """ name -> value for every variable with a value """
        return {v.name: v.value for v in
                self.model.component_data_objects(pyo.Var, descend_into=True)
                if v.value is not None}


class SubproblemRegistry:
    """ Bind builders to tree nodes and materialize the nodes' models.

    Args:
        tree (ScenarioTree): the scenario tree
        backend (SolverBackend, optional): used by ``solve``
        params (dict, optional): user parameters passed to every builder
            through ``BuildContext.params``
    """
    def __init__(self, tree, backend=None, params=None):
        self.tree = tree
        self.backend = backend
        self.params = params
        self._node_builders = dict()
        self._stage_builders = dict()
        self._built = dict()
        self._sense = None

    #===============
    def register_builder(self, builder, node=None, stage=None):
        """ Use ``builder`` for one node or for every node of a stage.

        A node-specific builder wins over a stage builder.
        """
        if (node is None) == (stage is None):
            raise ValueError("register_builder needs exactly one of node= or stage=")
        if not callable(builder):
            raise BuilderContractViolation(f"Builder {builder!r} is not callable")
        if node is not None:
            self.tree.node(node)   # raises UnknownNode
            self._node_builders[node] = builder
        else:
            self._stage_builders[stage] = builder

    def builder_for(self, node_id):
        if node_id in self._node_builders:
            return self._node_builders[node_id]
        return self._stage_builders.get(self.tree.node(node_id).stage)

    def nodes_with_builders(self):
        """ ids of every node that has a subproblem, in id order """
        return [nd.node_id for nd in self.tree if self.builder_for(nd.node_id) is not None]

    def is_built(self, node_id):
        return node_id in self._built

    def subproblem(self, node_id):
        if node_id not in self._built:
            raise InvalidTreeState(f"Node {node_id} has not been built")
        return self._built[node_id]

    @property
    def is_minimizing(self):
        return self._sense is None or self._sense == pyo.minimize

    #===============
    def build(self, node_id, penalty_context=None, mode=None):
        """ Return the node's Subproblem, building it (and its ancestors) if needed.

        Args:
            node_id (int): the node
            penalty_context (optional): a coordinator strategy; its
                ``attach_terms(subproblem, block)`` is called once to add
                multiplier/penalty terms to the objective
            mode (str, optional): passed to builders as BuildContext.mode;
                defaults to the penalty context's mode

        Returns:
            Subproblem: the cached subproblem
        """
        if mode is None:
            mode = getattr(penalty_context, "mode", None)
        for ndn in reversed(self.tree.path_to_root(node_id)):
            if ndn not in self._built and self.builder_for(ndn) is not None:
                self._built[ndn] = self._materialize(ndn, mode)
        if node_id not in self._built:
            raise BuilderContractViolation(f"No builder registered for node {node_id}")
        sub = self._built[node_id]
        if penalty_context is not None and sub.context is not penalty_context:
            self._attach(sub, penalty_context)
        return sub

    def _materialize(self, node_id, mode):
        tree = self.tree
        nd = tree.node(node_id)
        parent_realization = (types.MappingProxyType({}) if nd.is_root
                              else tree.node(nd.parent_id).realization)
        context = BuildContext(node_id, nd.stage, nd.probability,
                               tree.unconditional_probability(node_id),
                               nd.realization, parent_realization, nd.is_leaf,
                               params=self.params, mode=mode)
        sub = self.builder_for(node_id)(context)
        if not isinstance(sub, Subproblem):
            raise BuilderContractViolation(
                f"Builder for node {node_id} returned {type(sub).__name__}, not a Subproblem")
        sub.node_id = node_id
        model = sub.model

        for role in VariableRole:
            for name, var in sub._declared[role].items():
                vdl = sputils.build_vardatalist(model, var)
                if len(vdl) == 0:
                    raise BuilderContractViolation(
                        f"{role.value} variable {name!r} of node {node_id} is empty")
                sub.slots[role][name] = vdl

        if sub.stage_objective is None:
            try:
                obj = sputils.find_active_objective(model)
            except RuntimeError as e:
                raise BuilderContractViolation(f"Node {node_id}: {e}")
            sub.stage_objective = obj.expr
            sub.sense = obj.sense
        for obj in model.component_data_objects(pyo.Objective, active=True, descend_into=True):
            obj.deactivate()

        if self._sense is None:
            self._sense = sub.sense
        elif sub.sense != self._sense:
            raise BuilderContractViolation(
                f"Node {node_id} has a different objective sense than the nodes built before it")

        self._check_inputs(sub)
        logger.debug(f"Built subproblem for node {node_id} (stage {nd.stage})")
        return sub

    def _check_inputs(self, sub):
        inputs = sub.slots[VariableRole.INPUT]
        if len(inputs) == 0:
            return
        nd = self.tree.node(sub.node_id)
        if nd.is_root or nd.parent_id not in self._built:
            raise BuilderContractViolation(
                f"Node {sub.node_id} declares input variables but its parent has no subproblem")
        outputs = self._built[nd.parent_id].slots[VariableRole.OUTPUT]
        for name, vdl in inputs.items():
            if name not in outputs:
                raise BuilderContractViolation(
                    f"Input variable {name!r} of node {sub.node_id} is not an output "
                    f"of parent node {nd.parent_id}")
            if len(vdl) != len(outputs[name]):
                raise BuilderContractViolation(
                    f"Input variable {name!r} of node {sub.node_id} has length {len(vdl)}; "
                    f"the parent's output has length {len(outputs[name])}")

    def _attach(self, sub, penalty_context):
        model = sub.model
        if hasattr(model, "_dd_model"):
            model.del_component(model._dd_model)
            if self.backend is not None:
                self.backend.release(model)
        model._dd_model = pyo.Block(name="For dualdecomp")
        extra = penalty_context.attach_terms(sub, model._dd_model)
        model._dd_model.obj = pyo.Objective(expr=sub.stage_objective + extra, sense=sub.sense)
        sub.objective = model._dd_model.obj
        sub.context = penalty_context

    #===============
    def solve(self, node_id, tee=False):
        """ Solve the node's (already built) model with the registry's backend

        Returns:
            SolveResult: status, primal values and (when available) duals
        """
        if self.backend is None:
            raise InvalidTreeState("The registry has no solver backend")
        sub = self.build(node_id)
        if sub.objective is None:
            # built outside a coordinator: solve the plain stage problem
            model = sub.model
            model._dd_model = pyo.Block(name="For dualdecomp")
            model._dd_model.obj = pyo.Objective(expr=sub.stage_objective, sense=sub.sense)
            sub.objective = model._dd_model.obj
        return self.backend.solve(sub.model, tee=tee)
