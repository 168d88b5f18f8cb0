###############################################################################
# dualdecomp: scenario DUAL DECOMPosition for stochastic programs in Python
#
# Copyright (c) 2024, Lawrence Livermore National Security, LLC, Alliance for
# Sustainable Energy, LLC, The Regents of the University of California, et al.
# All rights reserved. Please see the files COPYRIGHT.md and LICENSE.md for
# full copyright and license information.
###############################################################################
"""
This is the logging configuration for dualdecomp.

To use the logger in your code, add the following after your imports

.. code-block:: python

   import logging
   logger = logging.getLogger('dualdecomp.path.to.module')

Then use the standard logging functions (debug, info, warning, error,
critical). By default, messages at warning level or higher are shown.

Coordinators log a subproblem failure at error level (naming the node,
iteration and phase) right before the exception propagates.
"""
import sys
import logging
log_format = '%(message)s'

# configure the root logger for dualdecomp
logger = logging.getLogger('dualdecomp')
logger.setLevel(logging.WARNING)

if not logger.handlers:
    console_handler = logging.StreamHandler(sys.stdout)
    fmtr = logging.Formatter(log_format)
    console_handler.setFormatter(fmtr)
    logger.addHandler(console_handler)


def set_verbosity(verbose):
    """ Turn dualdecomp's own messages up to INFO (or back to WARNING) """
    logger.setLevel(logging.INFO if verbose else logging.WARNING)
