###############################################################################
# dualdecomp: scenario DUAL DECOMPosition for stochastic programs in Python
#
# Copyright (c) 2024, Lawrence Livermore National Security, LLC, Alliance for
# Sustainable Energy, LLC, The Regents of the University of California, et al.
# All rights reserved. Please see the files COPYRIGHT.md and LICENSE.md for
# full copyright and license information.
###############################################################################
# Base and utility functions for dualdecomp

import pyomo.environ as pyo
from pyomo.core.expr.numvalue import value
from pyomo.solvers.plugins.solvers.persistent_solver import PersistentSolver

from dualdecomp.errors import BuilderContractViolation


def option_string_to_dict(ostr):
    """ Convert a string to the standard dict for solver options.
    Intended for use in the calling program; not internal use here.

    Args:
        ostr (string): space seperated options with = for arguments

    Returns:
        solver_options (dict): solver options

    """
    def convert_value_string_to_number(s):
        try:
            return int(s)
        except ValueError:
            try:
                return float(s)
            except ValueError:
                return s

    solver_options = dict()
    if ostr is None or ostr == "":
        return None
    for this_option_string in ostr.split():
        this_option_pieces = this_option_string.strip().split("=")
        if len(this_option_pieces) == 2:
            option_key = this_option_pieces[0]
            option_value = convert_value_string_to_number(this_option_pieces[1])
            solver_options[option_key] = option_value
        elif len(this_option_pieces) == 1:
            option_key = this_option_pieces[0]
            solver_options[option_key] = None
        else:
            raise RuntimeError("Illegally formed subsolve directive"
                               + " option=%s detected" % this_option_string)
    return solver_options


def find_active_objective(pyomomodel):
    # return the only active objective or raise and error
    obj = list(pyomomodel.component_data_objects(
        pyo.Objective, active=True, descend_into=True))
    if len(obj) != 1:
        raise RuntimeError("Could not identify exactly one active "
                           "Objective for model '%s' (found %d objectives)"
                           % (pyomomodel.name, len(obj)))
    return obj[0]


def is_persistent(solver):
    return isinstance(solver, PersistentSolver)


def build_vardatalist(model, varlist):
    """ Flatten a variable slot into a list of VarData objects.

    Args:
        model (ConcreteModel): the model that must own the variables
        varlist (Var, VarData, or a list of them): the slot; indexed
            variables contribute all their members in index order

    Returns:
        list of VarData
    """
    if varlist is None:
        return list()
    if not isinstance(varlist, (list, tuple)):
        varlist = [varlist]
    vardatalist = list()
    for v in varlist:
        if getattr(v, "ctype", None) is not pyo.Var:
            raise BuilderContractViolation(f"{v!r} is not a Pyomo variable")
        if v.model() is not model:
            raise BuilderContractViolation(
                f"Variable {v.name} does not belong to model {model.name}")
        if v.is_indexed():
            vardatalist.extend(v.values())
        else:
            vardatalist.append(v)
    return vardatalist


def vardata_values(vardatalist):
    """ Current values of ``vardatalist``; an unset value is an error """
    vals = list()
    for vd in vardatalist:
        if vd.value is None:
            raise RuntimeError(f"Variable {vd.name} has no value")
        vals.append(value(vd))
    return vals
