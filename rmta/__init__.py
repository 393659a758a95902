from rmta.rmta import (
    rmta,
    RobustMTA,
    RMTAResult,
    TSScore,
    Fluxes,
    Stage,
    robust_score
)

from rmta.mio import load_gem, MetabolicNetwork
from rmta.mta import MTAModel, MOMAModel, transformation_score
from rmta.perturbation import PerturbationMatrix, gene_ko_matrix, reaction_ko_matrix
from rmta.solvers import Solvers, SolverStatus
from rmta.checkpoint import CheckpointError

__all__ = ["rmta", "RobustMTA", "RMTAResult", "TSScore", "Fluxes", "Stage", "robust_score",
           "load_gem", "MetabolicNetwork", "MTAModel", "MOMAModel", "transformation_score",
           "PerturbationMatrix", "gene_ko_matrix", "reaction_ko_matrix",
           "Solvers", "SolverStatus", "CheckpointError"]
__version__ = "0.1.0"
