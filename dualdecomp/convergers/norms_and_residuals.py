###############################################################################
# dualdecomp: scenario DUAL DECOMPosition for stochastic programs in Python
#
# Copyright (c) 2024, Lawrence Livermore National Security, LLC, Alliance for
# Sustainable Energy, LLC, The Regents of the University of California, et al.
# All rights reserved. Please see the files COPYRIGHT.md and LICENSE.md for
# full copyright and license information.
###############################################################################

import math

import numpy as np


############################################################################


def primal_residuals_norm(layer, values, consensus):
    """
    Compute the probability weighted primal residuals Euclidean norm,
    sqrt( sum_members p * ||x - z||^2 ).
    """
    total = 0.0
    for key, group in layer.groups.items():
        for w, m in zip(group.weights, group.members):
            resid = values[m] - consensus[key]
            total += w * float(np.dot(resid, resid))
    return math.sqrt(total)


def dual_residuals_norm(layer, consensus, prev_consensus, rho):
    """
    Compute the dual residuals Euclidean norm,
    rho * sqrt( sum_members p * ||z_k - z_{k-1}||^2 ).
    """
    total = 0.0
    for key, group in layer.groups.items():
        diff = consensus[key] - prev_consensus[key]
        total += group.weights.sum() * float(np.dot(diff, diff))
    return rho * math.sqrt(total)


def primal_l1(layer, values, consensus):
    """
    sum_members p * ||x - z||_1
    """
    return sum(float(np.dot(w * np.ones(g.size), np.abs(values[m] - consensus[k])))
               for k, g in layer.groups.items()
               for w, m in zip(g.weights, g.members))


def dual_l1(layer, consensus, prev_consensus, rho):
    """
    rho * ||z_k - z_{k-1}||_1 summed over the groups
    """
    return sum(rho * float(np.sum(np.abs(consensus[k] - prev_consensus[k])))
               for k in layer.groups)
