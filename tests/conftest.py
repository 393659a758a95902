import numpy as np
import picos as pc
import pytest
from rmta.mio import MetabolicNetwork


MIQP_SOLVERS = ["gurobi", "cplex", "mosek", "scip"]


def available(names):
    solvers = set(pc.available_solvers())
    return [s for s in names if s in solvers]


requires_qp = pytest.mark.skipif(len(available(["cvxopt"] + MIQP_SOLVERS)) == 0,
                                 reason="No QP solver available")
requires_miqp = pytest.mark.skipif(len(available(MIQP_SOLVERS)) == 0,
                                   reason="No MIQP solver available")


@pytest.fixture()
def toy():
    """Network with one metabolite (v1 + v3 = 0) and an uncoupled reaction R2."""
    network = MetabolicNetwork.from_arrays(
        S=[[1, 0, 1]],
        lb=[-10, -10, -10],
        ub=[10, 10, 10],
        rxn_ids=["R1", "R2", "R3"],
        met_ids=["A"],
        gprs=["G1", "G2", "G3 or G4"]
    )
    vref = np.array([1.0, 0.0, -1.0])
    rxn_fbs = np.array([1, 0, -1])
    return network, rxn_fbs, vref


@pytest.fixture()
def qp_solver():
    return available(["cvxopt"] + MIQP_SOLVERS)[0]


@pytest.fixture()
def miqp_solver():
    return available(MIQP_SOLVERS)[0]
