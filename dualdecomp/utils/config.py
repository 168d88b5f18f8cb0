###############################################################################
# dualdecomp: scenario DUAL DECOMPosition for stochastic programs in Python
#
# Copyright (c) 2024, Lawrence Livermore National Security, LLC, Alliance for
# Sustainable Energy, LLC, The Regents of the University of California, et al.
# All rights reserved. Please see the files COPYRIGHT.md and LICENSE.md for
# full copyright and license information.
###############################################################################
# A class derived from pyomo.common.config is defined with
#   supporting member functions.
# NOTE: the xxxx_args() naming convention groups the options by concern

""" Notes
Assemble the args you want and call parse_command_line, which creates
the parser and does the parsing, e.g.:

    cfg = Config()
    cfg.coordinator_args()
    cfg.solver_args()
    cfg.admm_args()
    cfg.parse_command_line("admm_failure")

If you want to add args, you need to call the add_to_config function.

Programmatic users can skip all that and hand the coordinator a plain dict;
as_config() turns it into a fully populated Config.
"""

import argparse
import pyomo.common.config as pyofig

MODES = ("ADMM", "LagrangeBundle")

# class to inherit from ConfigDict with a name field
class Config(pyofig.ConfigDict):
    # remember that the parent uses slots

    #===============
    def add_to_config(self, name, description, domain, default,
                      argparse=True,
                      complain=False,
                      argparse_args=None):
        """ Add an arg to the self dict.
        Args:
            name (str): the argument name, underscore seperated
            description (str): free text description
            domain (type): see pyomo config docs
            default (domain): value before argparse
            argparse (bool): if True put on command ine
            complain (bool): if True, raise on a duplicate
            argparse_args (dict): args to pass to argpars (option; e.g. required, or group)
        """
        if name in self:
            if complain:
                raise RuntimeError(f"Trying to add duplicate {name} to the config")
        else:
            c = self.declare(name, pyofig.ConfigValue(
                description = description,
                domain = domain,
                default = default))
            if argparse:
                if argparse_args is not None:
                    c.declare_as_argument(**argparse_args)
                else:
                    c.declare_as_argument()


    #===============
    def add_and_assign(self, name, description, domain, default, value, complain=True):
        """ Add an arg to the self dict and assign it a value
        Args:
             name (str): the argument name, underscore separated
            description (str): free text description
            domain (type): see pyomo config docs
            default (domain): probably unused, but here to avoid cut-and-paste errors
            value (domain): the value to assign
            complain (bool): if True, raise on a duplicate
        """
        if name in self:
            if complain:
                raise RuntimeError(f"Trying to add duplicate {name=} to cfg {value=}")
        else:
            self.add_to_config(name, description, domain, default, argparse=False)
            self[name] = value


    #===============
    def quick_assign(self, name, domain, value):
        """ mimic dict assignment with fewer args
        Args:
            name (str): the argument name, underscore separated
            domain (type): see pyomo config docs
            value (domain): the value to assign
        """
        if name not in self:
            self.add_and_assign(name, f"field for {name}", domain, None, value)
        else:
            self[name] = value


    #===============
    def get(self, name, ifmissing=None):
        """ replcate the behavior of dict get"""
        if name in self:
            return self[name]
        else:
            return ifmissing

    #===============
    def checker(self):
        """Verify that options *selected* make sense with respect to each other
        """
        def _bad_options(msg):
            raise ValueError(f"Options do not make sense together:\n{msg}")

        mode = self.get("mode")
        if mode is not None and mode not in MODES:
            _bad_options(f"mode must be one of {MODES}, not {mode!r}")
        if self.get("kmax") is not None and self.kmax < 0:
            _bad_options("kmax must be non-negative")
        if self.get("tmax") is not None and self.tmax <= 0:
            _bad_options("tmax must be positive")
        if mode == "ADMM" and self.get("rho") is not None and self.rho <= 0:
            _bad_options("ADMM needs rho > 0")
        if self.get("adaptive_rho"):
            if self.rho_increase <= 1 or self.rho_decrease <= 1:
                _bad_options("--adaptive-rho needs rho-increase and rho-decrease above 1")
        if mode == "LagrangeBundle" and self.get("mu_init") is not None:
            if not (0 < self.mu_min <= self.mu_init <= self.mu_max):
                _bad_options("the bundle needs 0 < mu-min <= mu-init <= mu-max")
            if not (0 < self.serious_step_fraction < 1):
                _bad_options("serious-step-fraction must be in (0,1)")
            if self.bundle_max_size < 2:
                _bad_options("bundle-max-size must be at least 2")
        if self.get("max_workers") is not None and self.max_workers < 1:
            _bad_options("max-workers must be at least 1")


    def add_solver_specs(self, prefix=""):
        sstr = f"{prefix}_solver" if prefix != "" else "solver"
        self.add_to_config(f"{sstr}_name",
                            description= "solver name (default None)",
                            domain = str,
                            default=None)

        self.add_to_config(f"{sstr}_options",
                            description= "solver options; space delimited with = for values (default None)",
                            domain = str,
                            default=None)

    def solver_args(self):
        self.add_solver_specs(prefix="")

        self.add_to_config("subproblem_time_limit",
                            description="wall-clock limit for one subproblem solve in seconds; "
                            "hitting it is a SolverError (default None)",
                            domain=float,
                            default=None)

    def coordinator_args(self):
        self.add_to_config("mode",
                            description=f"master algorithm, one of {MODES} (default ADMM)",
                            domain=pyofig.In(MODES),
                            default="ADMM")

        self.add_to_config("kmax",
                            description="iteration cap (default 100)",
                            domain=int,
                            default=100)

        self.add_to_config("tmax",
                            description="wall-clock budget in seconds (default None)",
                            domain=float,
                            default=None)

        self.add_to_config("primal_tolerance",
                            description="tolerance on the primal residual (default 1e-4)",
                            domain=float,
                            default=1e-4)

        self.add_to_config("dual_tolerance",
                            description="tolerance on the dual residual (ADMM) or on the "
                            "relative predicted increase (bundle) (default 1e-4)",
                            domain=float,
                            default=1e-4)

        self.add_to_config("max_workers",
                            description="number of threads that solve subproblems "
                            "(default 1, which solves them in node order)",
                            domain=int,
                            default=1)

        self.add_to_config("phase_time_limit",
                            description="wall-clock limit for one subproblem solve phase "
                            "in seconds (default None)",
                            domain=float,
                            default=None)

        self.add_to_config("trace_csv",
                            description="write the iteration trace to this csv file (default None)",
                            domain=str,
                            default=None)

        self.add_to_config("tee_subproblems",
                            description="show the solver output for every subproblem solve",
                            domain=bool,
                            default=False)

        self.add_to_config("verbose",
                            description="verbose output",
                            domain=bool,
                            default=False)

        self.add_to_config("display_progress",
                            description="one line of progress output per iteration",
                            domain=bool,
                            default=False)

    def admm_args(self):
        self.add_to_config("rho",
                            description="ADMM penalty coefficient (default 1.0)",
                            domain=float,
                            default=1.0)

        self.add_to_config("adaptive_rho",
                            description="ADMM: rebalance rho from the primal and dual residuals",
                            domain=bool,
                            default=False)

        self.add_to_config("rho_balance_factor",
                            description="ADMM: change rho when one residual exceeds the "
                            "other by this factor (default 10)",
                            domain=float,
                            default=10.0)

        self.add_to_config("rho_increase",
                            description="ADMM: factor applied to rho when the primal "
                            "residual dominates (default 2)",
                            domain=float,
                            default=2.0)

        self.add_to_config("rho_decrease",
                            description="ADMM: divisor applied to rho when the dual "
                            "residual dominates (default 2)",
                            domain=float,
                            default=2.0)

        self.add_to_config("divergence_threshold",
                            description="ADMM: a primal residual above this is "
                            "numerical instability (default 1e12)",
                            domain=float,
                            default=1e12)

        self.add_to_config("lagrangian_bound",
                            description="ADMM: after the last iteration, solve once more with "
                            "the prices on and the penalty off to get a Lagrangian bound",
                            domain=bool,
                            default=False)

        self.add_to_config("linearize_binary_proximal_terms",
                            description="ADMM: use x in place of x**2 in the penalty "
                            "for binary variables",
                            domain=bool,
                            default=False)

    def bundle_args(self):
        self.add_to_config("mu_init",
                            description="bundle: initial proximal weight (default 1.0)",
                            domain=float,
                            default=1.0)

        self.add_to_config("mu_min",
                            description="bundle: smallest proximal weight (default 1e-6)",
                            domain=float,
                            default=1e-6)

        self.add_to_config("mu_max",
                            description="bundle: largest proximal weight (default 1e6)",
                            domain=float,
                            default=1e6)

        self.add_to_config("mu_increase",
                            description="bundle: factor applied to mu after a serious step (default 2)",
                            domain=float,
                            default=2.0)

        self.add_to_config("mu_decrease",
                            description="bundle: divisor applied to mu after a null step (default 2)",
                            domain=float,
                            default=2.0)

        self.add_to_config("serious_step_fraction",
                            description="bundle: fraction of the predicted increase that "
                            "makes a serious step (default 0.1)",
                            domain=float,
                            default=0.1)

        self.add_to_config("bundle_max_size",
                            description="bundle: maximum number of cuts kept (default 50)",
                            domain=int,
                            default=50)

    def popular_args(self):
        self.coordinator_args()
        self.solver_args()
        self.admm_args()
        self.bundle_args()

    def create_parser(self,progname=None):
        # seldom used
        if len(self) == 0:
            raise RuntimeError("create parser called before Config is populated")
        parser = argparse.ArgumentParser(progname, conflict_handler="resolve")
        self.initialize_argparse(parser)
        return parser

    #================
    def parse_command_line(self, progname=None, args=None):
        # often used, but the return value less so
        if len(self) == 0:
            raise RuntimeError("create parser called before Config is populated")
        parser = self.create_parser(progname)
        args = parser.parse_args(args)
        args = self.import_argparse(args)
        return args


def as_config(options=None):
    """ Return a Config with every coordinator option declared.

    Args:
        options (Config, dict or None): a Config is filled in with the
            missing declarations; dict entries are assigned over the
            defaults (an unknown key is an error)
    """
    if isinstance(options, Config):
        cfg = options
        cfg.popular_args()
        return cfg
    cfg = Config()
    cfg.popular_args()
    if options is None:
        return cfg
    for name, value in options.items():
        if name not in cfg:
            raise ValueError(f"Unknown option {name!r}")
        cfg[name] = value
    return cfg
