###############################################################################
# dualdecomp: scenario DUAL DECOMPosition for stochastic programs in Python
#
# Copyright (c) 2024, Lawrence Livermore National Security, LLC, Alliance for
# Sustainable Energy, LLC, The Regents of the University of California, et al.
# All rights reserved. Please see the files COPYRIGHT.md and LICENSE.md for
# full copyright and license information.
###############################################################################
""" Coupling groups and residuals.

A consensus group collects the variable slots that must agree:

* a parent's OUTPUT slot (the anchor) and the matching INPUT slots of its
  children (the followers), or
* the NONANTICIPATIVE slots of siblings; the first sibling by id is the
  anchor.

Each follower/anchor pair is one coupling constraint ``follower - anchor = 0``.
The constraints are laid out in one global vector ordered by the follower's
(stage, node id, variable name) and then by component. That order does not
change between iterations.
"""
import collections
import logging

import numpy as np
from sortedcollections import OrderedSet

from dualdecomp.errors import BuilderContractViolation
from dualdecomp.subproblems import VariableRole

logger = logging.getLogger("dualdecomp.consensus")

GroupKey = collections.namedtuple("GroupKey", ["parent_id", "role", "name"])
MemberKey = collections.namedtuple("MemberKey", ["node_id", "role", "name"])


class ConsensusGroup:
    """ Slots that must agree; ``members[0]`` is the anchor.

    Args:
        key (GroupKey): (parent node id, role of the followers, name)
        members (list of MemberKey): anchor first
        weights (list of float): unconditional probabilities of the members
        size (int): length of every member slot
    """
    def __init__(self, key, members, weights, size):
        self.key = key
        self.members = members
        self.weights = np.asarray(weights, dtype=float)
        self.size = size

    @property
    def anchor(self):
        return self.members[0]

    @property
    def followers(self):
        return self.members[1:]

    def weighted_average(self, values):
        """ Probability-weighted average of the members' values

        Args:
            values (dict): MemberKey -> np.array
        """
        stacked = np.vstack([values[m] for m in self.members])
        return self.weights @ stacked / self.weights.sum()

    def __repr__(self):
        return f"ConsensusGroup({self.key}, {len(self.members)} members, size {self.size})"


class CouplingConstraint:
    """ ``values[follower] - values[anchor] == 0``, occupying
    ``[offset, offset+size)`` of the global vector.
    """
    __slots__ = ("group", "follower", "anchor", "offset", "size")

    def __init__(self, group, follower, anchor, offset, size):
        self.group = group
        self.follower = follower
        self.anchor = anchor
        self.offset = offset
        self.size = size

    @property
    def span(self):
        return slice(self.offset, self.offset + self.size)

    def __repr__(self):
        return (f"CouplingConstraint({self.follower.node_id}:{self.follower.name} - "
                f"{self.anchor.node_id}:{self.anchor.name})")


class ConsensusLayer:
    """ Derive the consensus groups from a fully built registry.

    Args:
        tree (ScenarioTree): the tree
        registry (SubproblemRegistry): every node with a builder must already
            be built
    """
    def __init__(self, tree, registry):
        self.tree = tree
        self.registry = registry
        self.groups = collections.OrderedDict()
        self.constraints = list()
        self._member_nodes = dict()
        self._find_groups()
        self._layout_constraints()

    #===============
    def _size(self, member):
        sub = self.registry.subproblem(member.node_id)
        return len(sub.slot(member.role, member.name))

    def _add_group(self, key, members):
        if len(members) < 2:
            logger.debug(f"Slot {key.name!r} below node {key.parent_id} has no partner; "
                         "it is not coupled")
            return
        sizes = {self._size(m) for m in members}
        if len(sizes) != 1:
            raise BuilderContractViolation(
                f"Coupled variable {key.name!r} below node {key.parent_id} has "
                f"inconsistent lengths {sorted(sizes)}")
        weights = [self.tree.unconditional_probability(m.node_id) for m in members]
        self.groups[key] = ConsensusGroup(key, members, weights, sizes.pop())
        for m in members:
            self._member_nodes.setdefault(m.node_id, list()).append(key)

    def _find_groups(self):
        registry = self.registry
        built = set(registry.nodes_with_builders())
        for nd in self.tree:
            kids = [c for c in nd.children if c in built]
            # parent OUTPUT -> children INPUT
            if nd.node_id in built and kids:
                parent_sub = registry.subproblem(nd.node_id)
                for name in parent_sub.names(VariableRole.OUTPUT):
                    followers = [MemberKey(c, VariableRole.INPUT, name) for c in kids
                                 if name in registry.subproblem(c).slots[VariableRole.INPUT]]
                    if followers:
                        anchor = MemberKey(nd.node_id, VariableRole.OUTPUT, name)
                        self._add_group(GroupKey(nd.node_id, VariableRole.INPUT, name),
                                        [anchor] + followers)
            # siblings NONANTICIPATIVE
            names = OrderedSet()
            for c in kids:
                for name in registry.subproblem(c).names(VariableRole.NONANTICIPATIVE):
                    names.add(name)
            for name in names:
                members = list()
                for c in kids:
                    if name not in registry.subproblem(c).slots[VariableRole.NONANTICIPATIVE]:
                        raise BuilderContractViolation(
                            f"Node {c} does not declare nonanticipative variable {name!r} "
                            f"that its siblings declare")
                    members.append(MemberKey(c, VariableRole.NONANTICIPATIVE, name))
                self._add_group(GroupKey(nd.node_id, VariableRole.NONANTICIPATIVE, name),
                                members)
        # a root-level nonanticipative slot has no siblings
        root = self.tree.root
        if root in built and registry.subproblem(root).names(VariableRole.NONANTICIPATIVE):
            logger.debug("Nonanticipative variables on the root node are not coupled")

    def _layout_constraints(self):
        pairs = list()
        for group in self.groups.values():
            for f in group.followers:
                stage = self.tree.node(f.node_id).stage
                pairs.append(((stage, f.node_id, f.name, f.role.value), group, f))
        pairs.sort(key=lambda t: t[0])
        offset = 0
        for _, group, f in pairs:
            self.constraints.append(CouplingConstraint(group, f, group.anchor, offset, group.size))
            offset += group.size
        self.dimension = offset

    #===============
    @property
    def members(self):
        return [m for g in self.groups.values() for m in g.members]

    def groups_of(self, node_id):
        return [self.groups[k] for k in self._member_nodes.get(node_id, ())]

    def member_keys_of(self, node_id):
        return [m for g in self.groups_of(node_id) for m in g.members if m.node_id == node_id]

    def constraints_of(self, node_id):
        """ (constraint, sign, member) for every constraint touching the node;
        sign is +1 for the follower and -1 for the anchor.
        """
        out = list()
        for c in self.constraints:
            if c.follower.node_id == node_id:
                out.append((c, 1.0, c.follower))
            if c.anchor.node_id == node_id:
                out.append((c, -1.0, c.anchor))
        return out

    def vardata(self, member):
        return self.registry.subproblem(member.node_id).slot(member.role, member.name)

    def collect(self):
        """ Current model values of every member: MemberKey -> np.array """
        values = dict()
        for m in self.members:
            if m not in values:
                values[m] = self.registry.subproblem(m.node_id).slot_values(m.role, m.name)
        return values

    def consensus(self, values):
        """ GroupKey -> probability-weighted average of the members """
        return {k: g.weighted_average(values) for k, g in self.groups.items()}

    def residuals(self, values, consensus):
        """ MemberKey -> x - z """
        return {m: values[m] - consensus[k]
                for k, g in self.groups.items() for m in g.members}

    def violation(self, values):
        """ The global vector of ``follower - anchor`` in constraint order """
        vec = np.zeros(self.dimension)
        for c in self.constraints:
            vec[c.span] = values[c.follower] - values[c.anchor]
        return vec

    def labels(self):
        """ A readable label for every entry of the global vector """
        out = list()
        for c in self.constraints:
            for i in range(c.size):
                out.append(f"{c.follower.node_id}:{c.follower.name}[{i}]-"
                           f"{c.anchor.node_id}:{c.anchor.name}[{i}]")
        return out
