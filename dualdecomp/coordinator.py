###############################################################################
# dualdecomp: scenario DUAL DECOMPosition for stochastic programs in Python
#
# Copyright (c) 2024, Lawrence Livermore National Security, LLC, Alliance for
# Sustainable Energy, LLC, The Regents of the University of California, et al.
# All rights reserved. Please see the files COPYRIGHT.md and LICENSE.md for
# full copyright and license information.
###############################################################################
""" The coordinator: the iteration loop shared by both master algorithms.

A coordinator owns the run: it freezes the tree, builds every subproblem,
derives the consensus groups, and then alternates a SubproblemSolve phase
with the update of its strategy until the strategy reports convergence, a
user converger fires, or ``kmax``/``tmax`` is reached.

The update rule is delegated to a strategy object; ``ConsensusADMM`` and
``LagrangianBundle`` are the two provided. A strategy implements

    mode                                  name used in BuildContext.mode
    setup(coordinator)                    called once the consensus layer exists
    attach_terms(subproblem, block)       add Params, return objective terms
    initialize(coordinator)               fresh dual state
    restore(coordinator, state)           dual state from a snapshot
    prepare(coordinator, k)               push the dual state into the Params
    update(coordinator, k, results, values) -> StrategyUpdate
    snapshot()                            deep copy of the dual state
    finalize(coordinator, result)         fill in consensus/multipliers/bound

Only ``update`` changes the dual state, and it is called only after every
node of the phase solved successfully.
"""
import collections
import concurrent.futures
import copy
import enum
import logging
import math
import time

import dualdecomp.utils.config as config
from dualdecomp import global_toc
from dualdecomp.consensus import ConsensusLayer
from dualdecomp.errors import (SolverError, Infeasible, Unbounded,
                               BuilderContractViolation, NumericalInstability)
from dualdecomp.solver_backend import SolveStatus
from dualdecomp.utils.tracker import trace_tracker

logger = logging.getLogger("dualdecomp.coordinator")

SOLVE_PHASE = "SubproblemSolve"

_FAILURES = {
    SolveStatus.INFEASIBLE: Infeasible,
    SolveStatus.UNBOUNDED: Unbounded,
    SolveStatus.ERROR: SolverError,
}


class TerminationStatus(enum.Enum):
    CONVERGED = "Converged"
    ITERATION_LIMIT_REACHED = "IterationLimitReached"
    FAILED = "Failed"


# what a strategy reports after its update
StrategyUpdate = collections.namedtuple(
    "StrategyUpdate",
    ["objective", "dual_value", "bound", "primal_residual", "dual_residual",
     "step", "penalty", "converged", "accepted"])


class IterationRecord:
    """ One row of the iteration trace.

    Attributes:
        iteration (int): the iteration index (0 based)
        primal (dict): MemberKey -> values of the coupled variables
        objective (float): expected stage objective of the iteration's solves
        dual_value (float): value of the dual function (bundle) or None
        bound (float): best bound known after the iteration (may be None)
        primal_residual (float): see the strategies
        dual_residual (float): see the strategies; None when undefined
        step (str): "serious", "null", "initial" (bundle) or None
        penalty (float): rho (ADMM) or mu (bundle) used for the update
        timestamp (float): time.time() when the record was made
        elapsed (float): seconds since the run started
        state: deep copy of the dual state after the update; pass the
            record to ``Coordinator.run(warm_start=...)`` to resume
    """
    def __init__(self, iteration, primal, update, timestamp, elapsed, state):
        self.iteration = iteration
        self.primal = primal
        self.objective = update.objective
        self.dual_value = update.dual_value
        self.bound = update.bound
        self.primal_residual = update.primal_residual
        self.dual_residual = update.dual_residual
        self.step = update.step
        self.penalty = update.penalty
        self.converged = update.converged
        self.timestamp = timestamp
        self.elapsed = elapsed
        self.state = state

    def as_row(self):
        return [self.iteration, self.objective, self.bound, self.primal_residual,
                self.dual_residual, self.step, self.penalty, self.elapsed]

    def __repr__(self):
        return (f"IterationRecord(iteration={self.iteration}, objective={self.objective}, "
                f"bound={self.bound}, primal_residual={self.primal_residual}, "
                f"dual_residual={self.dual_residual}, step={self.step})")


class CoordinatorResult:
    """ What a run produced.

    Attributes:
        status (TerminationStatus): how the run ended
        iterations (int): number of iterations performed by this run
        bound (float): best bound achieved (None if none is known)
        objective (float): expected stage objective of the accepted solution
        solution (dict): (node_id, variable name) -> value, from the last
            accepted subproblem solves
        consensus (dict): GroupKey -> consensus values (ADMM)
        multipliers (np.array): final multiplier vector in constraint order (bundle)
        trace (list of IterationRecord): one record per iteration
    """
    def __init__(self, status, iterations, trace):
        self.status = status
        self.iterations = iterations
        self.trace = trace
        self.bound = None
        self.objective = None
        self.solution = dict()
        self.consensus = dict()
        self.multipliers = None

    @property
    def last_record(self):
        return self.trace[-1] if self.trace else None

    def __repr__(self):
        return (f"CoordinatorResult(status={self.status.name}, iterations={self.iterations}, "
                f"bound={self.bound}, objective={self.objective})")


def make_strategy(options):
    # deferred import; the strategies import this module
    if options.mode == "ADMM":
        from dualdecomp.opt.admm import ConsensusADMM
        return ConsensusADMM(options)
    if options.mode == "LagrangeBundle":
        from dualdecomp.opt.bundle import LagrangianBundle
        return LagrangianBundle(options)
    raise ValueError(f"Unknown mode {options.mode!r}")


class Coordinator:
    """ Drive one decomposition run.

    Args:
        tree (ScenarioTree): the scenario tree (frozen by the run)
        registry (SubproblemRegistry): builders and solver backend
        options (Config or dict, optional): see ``dualdecomp.utils.config``
        strategy (optional): the update rule; made from ``options.mode``
            when None
        converger (class, optional): a ``Converger`` subclass; it is
            instantiated with the coordinator
    """
    def __init__(self, tree, registry, options=None, strategy=None, converger=None):
        self.tree = tree
        self.registry = registry
        self.options = config.as_config(options)
        self.options.checker()
        self.strategy = make_strategy(self.options) if strategy is None else strategy
        self.converger_class = converger
        self.converger = None
        self.status = None
        self.trace = list()
        self.layer = None
        self.node_ids = None
        self.iteration = None
        self.start_time = None
        self.accepted_solution = dict()
        self.accepted_objective = None
        self._is_set_up = False

    @property
    def is_minimizing(self):
        return self.registry.is_minimizing

    @property
    def elapsed_time(self):
        return 0.0 if self.start_time is None else time.perf_counter() - self.start_time

    #===============
    def setup(self):
        """ Validate the tree, build every subproblem and the consensus layer.

        Every error raised here happens before any solve.
        """
        if self._is_set_up:
            return
        tree = self.tree
        tree.check_probabilities()
        tree.freeze()
        self.node_ids = self.registry.nodes_with_builders()
        if len(self.node_ids) == 0:
            raise BuilderContractViolation("No node has a subproblem builder")
        for ndn in self.node_ids:
            self.registry.build(ndn, mode=self.strategy.mode)
        self.layer = ConsensusLayer(tree, self.registry)
        if len(self.layer.groups) == 0:
            logger.warning("No coupled variables were found; the nodes are independent")
        self.probabilities = {ndn: tree.unconditional_probability(ndn)
                              for ndn in self.node_ids}
        self.strategy.setup(self)
        for ndn in self.node_ids:
            self.registry.build(ndn, penalty_context=self.strategy)
        self._is_set_up = True

    #===============
    def run(self, warm_start=None):
        """ Iterate until convergence or a limit.

        Args:
            warm_start (IterationRecord, optional): resume from the state
                saved in this record, at the next iteration

        Returns:
            CoordinatorResult

        Raises:
            SubproblemFailure: a node's subproblem was infeasible, unbounded
                or could not be solved; the status is FAILED and the dual
                state is left as it was before the failing phase
        """
        self.setup()
        options = self.options
        self.status = None
        self.trace = list()
        self.accepted_solution = dict()
        self.accepted_objective = None
        if warm_start is not None:
            self.strategy.restore(self, copy.deepcopy(warm_start.state))
            k = warm_start.iteration + 1
        else:
            self.strategy.initialize(self)
            k = 0
        first_k = k
        if self.converger_class is not None:
            self.converger = self.converger_class(self)
        tracker = None if options.trace_csv is None else trace_tracker(options.trace_csv,
                                                                       options.verbose)
        self.start_time = time.perf_counter()
        global_toc(f"Starting {self.strategy.mode} at iteration {k}", options.display_progress)

        while True:
            if k >= options.kmax:
                self.status = TerminationStatus.ITERATION_LIMIT_REACHED
                logger.info(f"Iteration limit kmax={options.kmax} reached")
                break
            if options.tmax is not None and self.elapsed_time >= options.tmax:
                self.status = TerminationStatus.ITERATION_LIMIT_REACHED
                logger.info(f"Time limit tmax={options.tmax} reached")
                break
            self.iteration = k
            record = self.iterate(k)
            self.trace.append(record)
            if tracker is not None:
                tracker.add_row(record.as_row())
                tracker.write_out_data()
            global_toc(f"Iteration {k}: objective={record.objective}, bound={record.bound}, "
                       f"primal residual={record.primal_residual}, "
                       f"dual residual={record.dual_residual}"
                       + ("" if record.step is None else f", {record.step} step"),
                       options.display_progress)
            if record.converged:
                self.status = TerminationStatus.CONVERGED
                break
            if self.converger is not None and self.converger.is_converged():
                logger.info(f"User converger {type(self.converger).__name__} fired")
                self.status = TerminationStatus.CONVERGED
                break
            k += 1

        if self.converger is not None:
            self.converger.post_loops()
        result = CoordinatorResult(self.status, len(self.trace), self.trace)
        result.solution = dict(self.accepted_solution)
        result.objective = self.accepted_objective
        self.strategy.finalize(self, result)
        logger.info(f"{self.strategy.mode} finished after {result.iterations} iterations "
                    f"(from {first_k}): {self.status.value}")
        return result

    #===============
    def iterate(self, k):
        """ One SubproblemSolve phase followed by the strategy's update """
        self.strategy.prepare(self, k)
        results = self.solve_phase(k)
        values = self.layer.collect()
        try:
            update = self.strategy.update(self, k, results, values)
        except NumericalInstability as e:
            self.status = TerminationStatus.FAILED
            logger.error(f"Iteration {k}: {e}")
            raise
        if update.accepted:
            self.accepted_solution = self.current_solution()
            self.accepted_objective = update.objective
        now = time.time()
        return IterationRecord(k, {m: v.copy() for m, v in values.items()}, update,
                               now, self.elapsed_time, self.strategy.snapshot())

    def solve_phase(self, k, phase=SOLVE_PHASE):
        """ Solve every node's subproblem; return node_id -> SolveResult.

        With ``max_workers`` above 1 the solves run in a thread pool; the
        phase ends when every solve has landed.
        """
        options = self.options
        tee = options.tee_subproblems
        time_limit = options.phase_time_limit
        results = dict.fromkeys(self.node_ids)
        crashed = dict()
        phase_start = time.perf_counter()
        if options.max_workers <= 1 or len(self.node_ids) == 1:
            for ndn in self.node_ids:
                try:
                    results[ndn] = self.registry.solve(ndn, tee=tee)
                except Exception as e:
                    self.fail(SolverError, ndn, k, phase, None, f"{type(e).__name__}: {e}")
                if time_limit is not None and time.perf_counter() - phase_start > time_limit:
                    self.fail(SolverError, ndn, k, phase, None,
                              f"phase time limit {time_limit} exceeded")
        else:
            executor = concurrent.futures.ThreadPoolExecutor(max_workers=options.max_workers)
            try:
                futures = {executor.submit(self.registry.solve, ndn, tee): ndn
                           for ndn in self.node_ids}
                done, not_done = concurrent.futures.wait(futures, timeout=time_limit)
                for future in done:
                    try:
                        results[futures[future]] = future.result()
                    except Exception as e:
                        crashed[futures[future]] = e
                if not_done:
                    late = min(futures[f] for f in not_done)
                    self.fail(SolverError, late, k, phase, None,
                              f"phase time limit {time_limit} exceeded")
            finally:
                executor.shutdown(wait=False, cancel_futures=True)

        # deterministic: the first failing node in id order is reported
        for ndn in self.node_ids:
            if ndn in crashed:
                e = crashed[ndn]
                self.fail(SolverError, ndn, k, phase, None, f"{type(e).__name__}: {e}")
            res = results[ndn]
            if res.status != SolveStatus.OPTIMAL:
                self.fail(_FAILURES[res.status], ndn, k, phase, res.status, res.message)
        return results

    def fail(self, exc_class, node_id, k, phase, status, message):
        self.status = TerminationStatus.FAILED
        err = exc_class(node_id, k, phase, status=status, message=message)
        logger.error(str(err))
        raise err

    #===============
    def expected(self, per_node):
        """ sum over nodes of unconditional probability times ``per_node[n]`` """
        return math.fsum(self.probabilities[ndn] * per_node[ndn] for ndn in self.node_ids)

    def expected_objective(self):
        return self.expected({ndn: self.registry.subproblem(ndn).stage_objective_value()
                              for ndn in self.node_ids})

    def current_solution(self):
        solution = dict()
        for ndn in self.node_ids:
            for name, val in self.registry.subproblem(ndn).variable_values().items():
                solution[ndn, name] = val
        return solution


def run(tree, registry, options=None, **kwargs):
    """ Build a Coordinator and run it """
    return Coordinator(tree, registry, options=options, **kwargs).run()
