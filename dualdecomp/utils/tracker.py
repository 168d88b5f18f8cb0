###############################################################################
# dualdecomp: scenario DUAL DECOMPosition for stochastic programs in Python
#
# Copyright (c) 2024, Lawrence Livermore National Security, LLC, Alliance for
# Sustainable Energy, LLC, The Regents of the University of California, et al.
# All rights reserved. Please see the files COPYRIGHT.md and LICENSE.md for
# full copyright and license information.
###############################################################################
''' Keep the iteration trace of a coordinator run in a csv file.
'''
import logging
import os

import pandas as pd

logger = logging.getLogger("dualdecomp.utils.tracker")


class TrackedData():
    ''' Rows of one kind of data (the iteration trace, residuals, etc.)
        cached in a dataframe and appended to a csv file
    '''
    def __init__(self, name, fname, verbose=False):
        self.name = name
        self.fname = fname
        self.verbose = verbose
        self.columns = None
        self.df = None
        self.seen_iters = set()

    def initialize_df(self, columns):
        """ Initialize the dataframe for saving the data and write out the column names
        as future rows will be appended to the dataframe
        """
        folder = os.path.dirname(self.fname)
        if folder:
            os.makedirs(folder, exist_ok=True)
        self.columns = columns
        self.df = pd.DataFrame(columns=columns)
        self.df.to_csv(self.fname, index=False, header=True)

    def add_row(self, row):
        """ Add a row to the dataframe;
        Assumes the first column is the iteration number if row is a list
        """
        assert len(row) == len(self.columns)
        if isinstance(row, dict):
            row_iter = row['iteration']
        elif isinstance(row, list):
            row_iter = row[0]
        else:
            raise RuntimeError("row must be a dict or list")
        if row_iter in self.seen_iters:
            if self.verbose:
                logger.warning(f"Iteration {row_iter} already seen for {self.name}")
            return
        self.seen_iters.add(row_iter)
        new_df = pd.DataFrame([row], columns=self.columns)
        if len(self.df) == 0:
            self.df = new_df
        else:
            self.df = pd.concat([self.df, new_df], ignore_index=True)

    def write_out_data(self):
        """ Write out the cached data to csv file and clear the cache
        """
        self.df.to_csv(self.fname, mode='a', header=False, index=False)
        self.df = pd.DataFrame(columns=self.columns)


TRACE_COLUMNS = ["iteration", "objective", "bound", "primal_residual",
                 "dual_residual", "step", "penalty", "elapsed"]


def trace_tracker(fname, verbose=False):
    """ A TrackedData ready to receive ``IterationRecord.as_row()`` rows """
    tracker = TrackedData("trace", fname, verbose=verbose)
    tracker.initialize_df(TRACE_COLUMNS)
    return tracker


def read_trace(fname):
    """ The trace written by a coordinator, as a dataframe """
    return pd.read_csv(fname)
