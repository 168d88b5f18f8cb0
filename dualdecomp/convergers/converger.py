###############################################################################
# dualdecomp: scenario DUAL DECOMPosition for stochastic programs in Python
#
# Copyright (c) 2024, Lawrence Livermore National Security, LLC, Alliance for
# Sustainable Energy, LLC, The Regents of the University of California, et al.
# All rights reserved. Please see the files COPYRIGHT.md and LICENSE.md for
# full copyright and license information.
###############################################################################
''' Base class for converger objects

    A user converger is consulted after every coordinator iteration, in
    addition to the coordinator's own tolerance tests; either one can end
    the run with TerminationStatus.CONVERGED.
'''

import abc

class Converger:
    ''' Abstract base class for converger monitors.

        Args:
            coordinator (Coordinator): the coordinator being monitored
    '''
    def __init__(self, coordinator):
        self.conv = None  # intended to be the value used for comparison

    @abc.abstractmethod
    def is_converged(self):
        ''' Indicated whether the algorithm has converged.

            Must return a boolean. If True, the coordinator will terminate at the
            current iteration--no more solves will be performed.
            Otherwise, the iterations will continue.
        '''
        pass

    def post_loops(self):
        '''Method called after the termination of the algorithm.
        '''
        pass
