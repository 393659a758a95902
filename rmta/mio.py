import io
import numpy as np
import pathlib
from numbers import Number


_REACTION_DTYPE = [
    ('id', 'object'),
    ('name', 'object'),
    ('lb', 'float'),
    ('ub', 'float'),
    ('subsystem', 'object'),
    ('gpr', 'object')
]

_METABOLITE_DTYPE = [
    ('id', 'object'),
    ('name', 'object'),
    ('formula', 'object')
]


class MetabolicNetwork:
    """A minimal class to store a metabolic network.

    Attributes:
        S (numpy.ndarray): stoichiometric matrix (metabolites x reactions)
        R (numpy.ndarray): Structured array with the reactions. The fields are:
            - id (str): reaction ID
            - name (str): reaction name
            - lb (float): lower bound
            - ub (float): upper bound
            - subsystem (str): subsystem
            - gpr (str): gene-protein-reaction rule
        M (numpy.ndarray): Structured array with the metabolites. The fields are:
            - id (str): metabolite ID
            - name (str): metabolite name
            - formula (str): metabolite formula
    """
    def __init__(self, S, R, M):
        S = np.asarray(S, dtype=float)
        if S.ndim != 2:
            raise ValueError("The stoichiometric matrix has to be a 2D matrix")
        if S.shape[1] != R.shape[0]:
            raise ValueError("Num of reactions in the stoichiometric matrix "
                             "are different from the number of reaction in R")
        if S.shape[0] != M.shape[0]:
            raise ValueError("Num of metabolites in the stoichiometric matrix "
                             "are different from the number of metabolites in M")
        invalid = np.where(R['lb'] > R['ub'])[0]
        if len(invalid) > 0:
            raise ValueError(f"Lower bound greater than upper bound for reactions "
                             f"{[R['id'][i] for i in invalid]}")
        self.S = S
        self.R = R
        self.M = M

    @classmethod
    def from_arrays(cls, S, lb, ub, rxn_ids=None, met_ids=None, gprs=None):
        """Build a network from plain arrays.

        Args:
            S (array-like): Stoichiometric matrix (metabolites x reactions).
            lb (array-like): Lower bounds of the reactions.
            ub (array-like): Upper bounds of the reactions.
            rxn_ids (list, optional): Reaction identifiers. Defaults to R1..Rn.
            met_ids (list, optional): Metabolite identifiers. Defaults to M1..Mm.
            gprs (list, optional): GPR rules. Defaults to empty rules.

        Returns:
            MetabolicNetwork: the network.
        """
        S = np.atleast_2d(np.asarray(S, dtype=float))
        m, n = S.shape
        lb = np.asarray(lb, dtype=float).reshape(-1)
        ub = np.asarray(ub, dtype=float).reshape(-1)
        if lb.shape[0] != n or ub.shape[0] != n:
            raise ValueError(f"Bound vectors must have {n} elements "
                             f"(got lb={lb.shape[0]}, ub={ub.shape[0]})")
        rxn_ids = rxn_ids if rxn_ids is not None else [f"R{i + 1}" for i in range(n)]
        met_ids = met_ids if met_ids is not None else [f"M{i + 1}" for i in range(m)]
        gprs = gprs if gprs is not None else [""] * n
        if len(rxn_ids) != n or len(gprs) != n:
            raise ValueError("Reaction identifiers and GPR rules must have one entry per reaction")
        if len(met_ids) != m:
            raise ValueError("Metabolite identifiers must have one entry per metabolite")
        R = np.array([(rid, rid, l, u, "", g) for rid, l, u, g in zip(rxn_ids, lb, ub, gprs)],
                     dtype=_REACTION_DTYPE)
        M = np.array([(mid, mid, "") for mid in met_ids], dtype=_METABOLITE_DTYPE)
        return cls(S, R, M)

    @property
    def num_reactions(self):
        """Number of reactions in the network.

        Returns:
            int: Number of reactions
        """
        return self.R.shape[0]

    @property
    def num_metabolites(self):
        return self.M.shape[0]

    @property
    def lb(self):
        return np.asarray(self.R['lb'], dtype=float)

    @property
    def ub(self):
        return np.asarray(self.R['ub'], dtype=float)

    @property
    def reaction_ids(self):
        return list(self.R['id'])

    @property
    def genes(self):
        """Sorted list of the genes referenced in the GPR rules."""
        from rmta.perturbation import genes_in
        genes = set()
        for rule in self.R['gpr']:
            genes.update(genes_in(rule))
        return sorted(genes)

    @staticmethod
    def _find_reaction(rxn_id, R):
        if isinstance(rxn_id, Number):
            return rxn_id, R[rxn_id]
        for i, r in enumerate(R):
            if r['id'] == rxn_id:
                return i, r
        raise ValueError(f"Cannot find reaction {rxn_id}")

    def find_reaction(self, rxn_id):
        """Find a particular reaction in the metabolic network.

        Args:
            rxn_id (str): Name of the reaction

        Returns:
            tuple: index and structured array with the information of the reaction.
        """
        return MetabolicNetwork._find_reaction(rxn_id, self.R)

    def get_reaction_id(self, rxn):
        i, r = self.find_reaction(rxn)
        return i

    def find_reactions(self, rxn_ids):
        return [self.find_reaction(rxn_id) for rxn_id in rxn_ids]

    @property
    def object_size(self):
        bytes = self.S.__sizeof__() + self.R.__sizeof__() + self.M.__sizeof__()
        return bytes / 1024**2


def load_gem(model_or_path):
    """Load a metabolic network from a file or a cobra model.

    The method supports any format supported by cobrapy (.xml, .yml, .json, .mat)
    or a compressed network (.miom, .xz, .npz). For the cobra supported formats,
    you need the cobrapy package installed.

    Args:
        model_or_path (str): Path to a local file, or a cobra.Model instance.

    Returns:
        MetabolicNetwork: A [MetabolicNetwork][rmta.mio] instance with the stoichiometric
            matrix, the list of reactions with their bounds and GPR rules, and the
            list of metabolites.
    """
    if isinstance(model_or_path, (str, pathlib.Path)):
        file = str(model_or_path)
        ext = pathlib.Path(file).suffix
        if ext in ('.miom', '.xz', '.npz'):
            return _load_compressed_model(file)
        return cobra_to_network(_read_cobra_model(file))
    return cobra_to_network(model_or_path)


def _read_cobra_model(filepath):
    ext = pathlib.Path(filepath).suffix
    if ext == '.mat':
        from cobra.io import load_matlab_model
        return load_matlab_model(filepath)
    elif ext == '.xml':
        from cobra.io import read_sbml_model
        return read_sbml_model(filepath)
    elif ext == '.json':
        from cobra.io import load_json_model
        return load_json_model(filepath)
    elif ext == '.yml':
        from cobra.io import load_yaml_model
        return load_yaml_model(filepath)
    else:
        raise ValueError("Unsupported file format")


def export_gem(network, path_to_exported_file):
    """Export a network to a file in the compressed format.

    Args:
        network (MetabolicNetwork): an instance of a MetabolicNetwork
        path_to_exported_file (str): Path to the exported file (e.g. /path/to/file.miom)
    """
    import lzma
    with io.BytesIO() as npz:
        np.savez_compressed(npz,
                            S=network.S,
                            reactions=network.R,
                            metabolites=network.M)
        compressed = lzma.compress(npz.getbuffer())
        with open(path_to_exported_file, 'wb') as f_out:
            f_out.write(compressed)


def cobra_to_network(model):
    try:
        from cobra.util.array import create_stoichiometric_matrix
    except ImportError as e:
        raise ImportError("Cobrapy package is not installed, "
                          "but required to read and import metabolic networks", e)
    S = create_stoichiometric_matrix(model, array_type='dense')
    subsystems = []
    for rxn in model.reactions:
        if "tolist" in dir(rxn.subsystem):
            subsystems.append(rxn.subsystem.tolist())
        else:
            subsystems.append(rxn.subsystem)
    rxn_data = [(rxn.id, rxn.name, rxn.lower_bound, rxn.upper_bound, subsystem, rxn.gene_reaction_rule)
                for rxn, subsystem in zip(model.reactions, subsystems)]
    met_data = [(met.id, met.name, met.formula) for met in model.metabolites]
    R = np.array(rxn_data, dtype=_REACTION_DTYPE)
    M = np.array(met_data, dtype=_METABOLITE_DTYPE)
    return MetabolicNetwork(S, R, M)


def _load_compressed_model(filepath):
    ext = pathlib.Path(filepath).suffix
    if ext == '.xz' or ext == '.miom':
        import lzma
        with lzma.open(filepath, 'rb') as f_in:
            M = np.load(io.BytesIO(f_in.read()), allow_pickle=True)
    else:
        M = np.load(filepath, allow_pickle=True)
    return MetabolicNetwork(M['S'], M['reactions'], M['metabolites'])
