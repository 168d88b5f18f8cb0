###############################################################################
# dualdecomp: scenario DUAL DECOMPosition for stochastic programs in Python
#
# Copyright (c) 2024, Lawrence Livermore National Security, LLC, Alliance for
# Sustainable Energy, LLC, The Regents of the University of California, et al.
# All rights reserved. Please see the files COPYRIGHT.md and LICENSE.md for
# full copyright and license information.
###############################################################################
import logging
import os

import dualdecomp.convergers.converger
import dualdecomp.convergers.norms_and_residuals as norms
from dualdecomp.utils.tracker import TrackedData

logger = logging.getLogger("dualdecomp.convergers.primal_dual_converger")


class PrimalDualConverger(dualdecomp.convergers.converger.Converger):
    """ Convergence checker for the primal-dual metrics of ADMM.
        Primal convergence is measured as weighted sum over all members m
        p_{m} * ||x_{m} - z||_1.
        Dual convergence is measured as
        rho * ||z_{t} - z_{t-1}||_1

        Options are read from ``primal_dual_converger_options`` (a dict)
        if the coordinator's Config has it: tol, verbose, tracking,
        results_folder, pd_fname.
    """
    def __init__(self, coordinator):
        """ Initialization method for the PrimalDualConverger class."""
        super().__init__(coordinator)
        if coordinator.strategy.mode != "ADMM":
            raise RuntimeError("PrimalDualConverger can only be used with ADMM")
        self.options = coordinator.options.get('primal_dual_converger_options', {}) or {}
        self._verbose = self.options.get('verbose', False)
        self._coordinator = coordinator
        self.convergence_threshold = self.options.get('tol', 1)
        self.tracking = self.options.get('tracking', False)

        if self.tracking:
            results_folder = self.options.get('results_folder', 'results')
            os.makedirs(results_folder, exist_ok=True)
            fname = self.options.get('pd_fname', 'pd')
            fname = fname[:-4] if fname.endswith('.csv') else fname
            self.tracker = TrackedData('pd', os.path.join(results_folder, f'{fname}.csv'),
                                       verbose=self._verbose)
            self.tracker.initialize_df(['iteration', 'primal_gap', 'dual_gap'])

    def is_converged(self):
        """ check for convergence
        Args:
            self (object): create by prep

        Returns:
           converged?: True if converged, False otherwise
        """
        coordinator = self._coordinator
        state = coordinator.strategy.state
        if state["prev_z"] is None or len(coordinator.trace) == 0:
            return False
        record = coordinator.trace[-1]
        primal_gap = norms.primal_l1(coordinator.layer, record.primal, state["z"])
        dual_gap = norms.dual_l1(coordinator.layer, state["z"], state["prev_z"], record.penalty)
        self.conv = max(primal_gap, dual_gap)
        ret_val = self.conv <= self.convergence_threshold

        if self._verbose:
            logger.info(f"primal gap = {round(primal_gap, 5)}, dual gap = {round(dual_gap, 5)}")
            if ret_val:
                logger.info("Dual convergence check passed")
            else:
                logger.info("Dual convergence check failed "
                            f"(requires primal + dual gaps) <= {self.convergence_threshold}")
        if self.tracking:
            self.tracker.add_row([record.iteration, primal_gap, dual_gap])
            self.tracker.write_out_data()
        return ret_val
