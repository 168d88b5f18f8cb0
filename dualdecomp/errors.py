###############################################################################
# dualdecomp: scenario DUAL DECOMPosition for stochastic programs in Python
#
# Copyright (c) 2024, Lawrence Livermore National Security, LLC, Alliance for
# Sustainable Energy, LLC, The Regents of the University of California, et al.
# All rights reserved. Please see the files COPYRIGHT.md and LICENSE.md for
# full copyright and license information.
###############################################################################
""" Exceptions raised by dualdecomp.

Tree construction errors and builder contract errors are raised before any
solving starts. Subproblem failures carry the node, iteration and phase in
which they happened. Running out of iterations or wall-clock time is *not* an
error; see ``dualdecomp.coordinator.TerminationStatus``.
"""


class DualDecompError(RuntimeError):
    """ Root of the dualdecomp exception hierarchy """
    pass


class InvalidTreeState(DualDecompError):
    pass


class UnknownNode(DualDecompError):
    def __init__(self, node_id):
        self.node_id = node_id
        super().__init__(f"Unknown scenario tree node {node_id!r}")


class InvalidProbability(DualDecompError, ValueError):
    pass


class BuilderContractViolation(DualDecompError):
    pass


class NumericalInstability(DualDecompError):
    pass


class SubproblemFailure(DualDecompError):
    """ A node's subproblem could not be solved to optimality.

    Args:
        node_id (int): the offending node
        iteration (int): coordinator iteration at which the failure happened
        phase (str): coordinator phase (e.g. "SubproblemSolve")
        status (SolveStatus or None): status reported by the backend
        message (str): free text from the backend
    """
    def __init__(self, node_id, iteration, phase, status=None, message=""):
        self.node_id = node_id
        self.iteration = iteration
        self.phase = phase
        self.status = status
        self.message = message
        text = (f"{self.__class__.__name__} for node {node_id} at iteration "
                f"{iteration} during {phase}")
        if message:
            text += f": {message}"
        super().__init__(text)


class SolverError(SubproblemFailure):
    pass


class Infeasible(SubproblemFailure):
    pass


class Unbounded(SubproblemFailure):
    pass
