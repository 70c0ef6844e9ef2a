"""koopman_uq public API."""
from .chain import Chain, ChainDiagnostics
from .data import ObservationSet, add_noise, simulate_data
from .density import (
    JointKernelDensity,
    KernelDensity,
    PointMass,
    ProductDistribution,
    estimate_density,
    marginal_densities,
)
from .ensemble import solve_many
from .errors import BatchingUnavailable, ConfigurationError, SamplingError, SolverError
from .koopman import ExpectationResult, expectation
from .model import OdeModel
from .run import Band, Results, Run
from .solver import SolverOptions, Trajectory, solve
from . import models

__all__ = [
    "BatchingUnavailable",
    "Band",
    "Chain",
    "ChainDiagnostics",
    "ConfigurationError",
    "ExpectationResult",
    "JointKernelDensity",
    "KernelDensity",
    "ObservationSet",
    "OdeModel",
    "PointMass",
    "ProductDistribution",
    "Results",
    "Run",
    "SamplingError",
    "SolverError",
    "SolverOptions",
    "Trajectory",
    "add_noise",
    "estimate_density",
    "expectation",
    "marginal_densities",
    "models",
    "simulate_data",
    "solve",
    "solve_many",
]
