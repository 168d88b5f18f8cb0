###############################################################################
# dualdecomp: scenario DUAL DECOMPosition for stochastic programs in Python
#
# Copyright (c) 2024, Lawrence Livermore National Security, LLC, Alliance for
# Sustainable Energy, LLC, The Regents of the University of California, et al.
# All rights reserved. Please see the files COPYRIGHT.md and LICENSE.md for
# full copyright and license information.
###############################################################################
# scenario_tree.py; the scenario tree as an arena of nodes
# Node ids are zero-based integers (the position in the arena);
# stages are one-based (the root is stage 1).
import logging
import math
import types

import numpy as np

from dualdecomp.errors import InvalidTreeState, UnknownNode, InvalidProbability

logger = logging.getLogger("dualdecomp.scenario_tree")

_EMPTY = types.MappingProxyType({})


def _frozen_mapping(data):
    if data is None:
        return _EMPTY
    if isinstance(data, types.MappingProxyType):
        return data
    return types.MappingProxyType(dict(data))


class ScenarioNode:
    """Store a node in the scenario tree.

    Note:
      Nodes are created by ``ScenarioTree.create_root`` and
      ``ScenarioTree.add_child``; do not make them directly.

    Args:
      node_id (int): position of the node in the tree's arena
      parent_id (int or None): id of the parent node, None for the root
      stage (int): stage number (root is 1)
      probability (float): probability conditional on the parent
      realization (mapping): named realization parameters (read-only)

    Lists:
      children (list of int): child ids, in creation order
    """
    __slots__ = ("node_id", "parent_id", "stage", "probability",
                 "realization", "children")

    def __init__(self, node_id, parent_id, stage, probability, realization):
        self.node_id = node_id
        self.parent_id = parent_id
        self.stage = stage
        self.probability = probability
        self.realization = _frozen_mapping(realization)
        self.children = []

    @property
    def is_root(self):
        return self.parent_id is None

    @property
    def is_leaf(self):
        return len(self.children) == 0

    def __repr__(self):
        return (f"ScenarioNode(node_id={self.node_id}, parent_id={self.parent_id}, "
                f"stage={self.stage}, probability={self.probability})")


class ScenarioTree:
    """ Hierarchical set of nodes; each root-to-leaf path is one scenario.

    The tree is built once, before any solving, and is frozen (read-only)
    when a coordinator takes hold of it.

    Args:
        probability_tolerance (float): tolerance used when checking that
            sibling probabilities add up to the expected total
    """
    def __init__(self, probability_tolerance=1e-5):
        self._nodes = []
        self._root_id = None
        self._frozen = False
        self.probability_tolerance = probability_tolerance

    #===============
    def create_root(self, realization=None):
        """ Create the root node and return its id (always 0) """
        self._check_mutable()
        if self._root_id is not None:
            raise InvalidTreeState("The scenario tree already has a root")
        node = ScenarioNode(0, None, 1, 1.0, realization)
        self._nodes.append(node)
        self._root_id = 0
        return node.node_id

    #===============
    def add_child(self, parent_id, realization, probability):
        """ Add a child below ``parent_id`` and return the new node id.

        Args:
            parent_id (int): id of an existing node
            realization (mapping): named realization parameters
            probability (float): conditional probability, in (0,1]
        """
        self._check_mutable()
        parent = self.node(parent_id)
        try:
            probability = float(probability)
        except (TypeError, ValueError):
            raise InvalidProbability(f"Probability {probability!r} is not a number")
        if not (0.0 < probability <= 1.0) or math.isnan(probability):
            raise InvalidProbability(
                f"Probability {probability} for a child of node {parent_id} "
                "is not in (0,1]")
        node = ScenarioNode(len(self._nodes), parent.node_id, parent.stage + 1,
                            probability, realization)
        self._nodes.append(node)
        parent.children.append(node.node_id)
        return node.node_id

    def _check_mutable(self):
        if self._frozen:
            raise InvalidTreeState("The scenario tree is read-only once coordination starts")

    def freeze(self):
        self._frozen = True

    @property
    def frozen(self):
        return self._frozen

    #===============
    def node(self, node_id):
        """ Return the ScenarioNode with id ``node_id`` """
        if isinstance(node_id, (bool, np.bool_)) or \
           not isinstance(node_id, (int, np.integer)) or \
           not (0 <= node_id < len(self._nodes)):
            raise UnknownNode(node_id)
        return self._nodes[node_id]

    def __contains__(self, node_id):
        try:
            self.node(node_id)
        except UnknownNode:
            return False
        return True

    def __len__(self):
        return len(self._nodes)

    def __iter__(self):
        return iter(self._nodes)

    @property
    def root(self):
        if self._root_id is None:
            raise InvalidTreeState("The scenario tree has no root")
        return self._root_id

    @property
    def num_stages(self):
        return max((nd.stage for nd in self._nodes), default=0)

    def parent(self, node_id):
        return self.node(node_id).parent_id

    def children(self, node_id):
        return list(self.node(node_id).children)

    def siblings(self, node_id):
        """ ids of the nodes that share ``node_id``'s parent (itself included) """
        nd = self.node(node_id)
        if nd.is_root:
            return [nd.node_id]
        return list(self._nodes[nd.parent_id].children)

    def nodes_at_stage(self, stage):
        return [nd.node_id for nd in self._nodes if nd.stage == stage]

    def leaves(self):
        return [nd.node_id for nd in self._nodes if nd.is_leaf]

    def path_to_root(self, node_id):
        """ Ordered ids from ``node_id`` up to (and including) the root """
        path = [self.node(node_id).node_id]
        # explicit walk; no recursion
        while self._nodes[path[-1]].parent_id is not None:
            path.append(self._nodes[path[-1]].parent_id)
        return path

    def unconditional_probability(self, node_id):
        return math.prod(self._nodes[i].probability for i in self.path_to_root(node_id))

    def scenarios(self):
        """ Root-to-leaf paths, one per scenario, in leaf id order """
        return [list(reversed(self.path_to_root(leaf))) for leaf in self.leaves()]

    #===============
    def check_probabilities(self, expected_total=1.0):
        """ Raise InvalidProbability unless, for every parent, the conditional
        probabilities of its children add up to ``expected_total``.
        """
        if self._root_id is None:
            raise InvalidTreeState("The scenario tree has no root")
        for nd in self._nodes:
            if nd.is_leaf:
                continue
            total = math.fsum(self._nodes[c].probability for c in nd.children)
            if abs(total - expected_total) > self.probability_tolerance:
                raise InvalidProbability(
                    f"Children of node {nd.node_id} have total probability {total}; "
                    f"expected {expected_total} (tolerance {self.probability_tolerance})")

    #===============
    @classmethod
    def from_scenarios(cls, probabilities, realizations=None, **kwargs):
        """ A two-level tree for single-stage scenario decomposition: a
        structural root with one child per scenario.

        Args:
            probabilities (list of float): one probability per scenario
            realizations (list of mapping, optional): one per scenario

        Returns:
            ScenarioTree: scenario i is node i+1
        """
        tree = cls(**kwargs)
        tree.create_root()
        if realizations is None:
            realizations = [None] * len(probabilities)
        if len(realizations) != len(probabilities):
            raise InvalidTreeState(f"{len(probabilities)} probabilities were given "
                                   f"for {len(realizations)} realizations")
        for prob, data in zip(probabilities, realizations):
            tree.add_child(tree.root, data, prob)
        return tree

    @classmethod
    def from_branching_factors(cls, branching_factors, realization_fn=None, **kwargs):
        """ A balanced tree with uniform conditional probabilities.

        Args:
            branching_factors (list of int): number of children at each stage
            realization_fn (callable, optional): called as
                ``realization_fn(parent_realization, branch)`` to produce
                the realization of a child

        Note:
            Nodes are created breadth first, so node ids increase by stage.
        """
        tree = cls(**kwargs)
        stage_nodes = [tree.create_root(None if realization_fn is None
                                        else realization_fn(None, None))]
        for bf in branching_factors:
            if bf < 1:
                raise InvalidTreeState(f"Branching factors must be positive, not {bf}")
            old_stage_nodes = stage_nodes
            stage_nodes = []
            for ndn in old_stage_nodes:
                parent_data = tree.node(ndn).realization
                for b in range(bf):
                    data = None if realization_fn is None else realization_fn(parent_data, b)
                    stage_nodes.append(tree.add_child(ndn, data, 1.0 / bf))
        return tree
