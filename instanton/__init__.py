"""Temporal instanton analysis: single-quadratic-constraint QCQP solver for line thermal limits."""

from .analysis import (
    LineParams,
    LineProblem,
    TemporalInstantonResults,
    ThermalConstants,
    objective_matrix,
    solve_temporal_instanton,
    split_solution,
    thermal_matrix,
)
from .blocks.aux import (
    DegenerateBlockError,
    IllPosedInputError,
    InstantonConfig,
    InstantonError,
    QuadraticForm,
    RootKind,
    SolveStatus,
)
from .blocks.secular import SecularSolver
from .qcqp import Candidate, InstantonQCQPSolver, InstantonSolution, solve_instanton_qcqp

__all__ = [
    "Candidate",
    "DegenerateBlockError",
    "IllPosedInputError",
    "InstantonConfig",
    "InstantonError",
    "InstantonQCQPSolver",
    "InstantonSolution",
    "LineParams",
    "LineProblem",
    "QuadraticForm",
    "RootKind",
    "SecularSolver",
    "SolveStatus",
    "TemporalInstantonResults",
    "ThermalConstants",
    "objective_matrix",
    "solve_instanton_qcqp",
    "solve_temporal_instanton",
    "split_solution",
    "thermal_matrix",
]
