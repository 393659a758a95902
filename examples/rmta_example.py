import numpy as np
import rmta

# Toy network: A is produced by R1 and consumed by R3, R2 is uncoupled
network = rmta.MetabolicNetwork.from_arrays(
    S=[[1, 0, 1]],
    lb=[-10, -10, -10],
    ub=[10, 10, 10],
    rxn_ids=["R1", "R2", "R3"],
    met_ids=["A"],
    gprs=["G1", "G2", "G3 or G4"]
)

# Reference fluxes of the source state and desired changes
vref = np.array([1.0, 0.0, -1.0])
rxn_fbs = np.array([1, 0, -1])

result = rmta.rmta(network, rxn_fbs, vref, alpha=[0.66, 0.8],
                   solver=rmta.Solvers.GUROBI,
                   moma_solver=rmta.Solvers.CVXOPT)

for alpha, scores in result.by_alpha().items():
    print(f"alpha = {alpha}")
    for gene, score in zip(result.deleted, scores.rTS):
        print(f"\t{gene}: {score:.4f}")
