import numpy as np
from functools import lru_cache


class PerturbationMatrix:
    """Knockout patterns for a set of entities (genes or reactions).

    Attributes:
        matrix (numpy.ndarray): Boolean matrix (reactions x entities). Column j
            contains the reactions disabled by knocking out the entity j.
        entities (list): Identifiers of the entities.
    """
    def __init__(self, matrix, entities):
        matrix = np.asarray(matrix, dtype=bool)
        if matrix.ndim != 2:
            raise ValueError("The perturbation matrix has to be a 2D matrix")
        if matrix.shape[1] != len(entities):
            raise ValueError(f"The perturbation matrix has {matrix.shape[1]} columns "
                             f"but {len(entities)} entities were provided")
        self.matrix = matrix
        self.entities = list(entities)

    @property
    def num_entities(self):
        return len(self.entities)

    @property
    def num_reactions(self):
        return self.matrix.shape[0]

    def knockout(self, j):
        """Indexes of the reactions disabled by the entity j."""
        return np.flatnonzero(self.matrix[:, j])

    def unique(self):
        """Remove duplicated knockout patterns.

        Returns:
            tuple: (unique_matrix, index, inverse), where
                ``unique_matrix == matrix[:, index]`` and
                ``unique_matrix[:, inverse] == matrix``.
        """
        if self.num_entities == 0:
            empty = np.zeros(0, dtype=int)
            return self.matrix.copy(), empty, empty
        patterns, index, inverse = np.unique(self.matrix.T, axis=0,
                                             return_index=True,
                                             return_inverse=True)
        return patterns.T, index, inverse.reshape(-1)


@lru_cache(maxsize=None)
def parse_gpr(rule):
    """Parse a GPR rule into a cobrapy GPR.

    Raises:
        ValueError: if the rule is malformed.
    """
    from cobra.core.gene import GPR
    try:
        return GPR.from_string(rule)
    except (SyntaxError, TypeError) as e:
        raise ValueError(f"Invalid GPR rule: {rule}") from e


def _rule(rule):
    return "" if rule is None else str(rule).strip()


def genes_in(rule):
    """Set of gene identifiers referenced in a GPR rule."""
    rule = _rule(rule)
    if len(rule) == 0:
        return set()
    return set(parse_gpr(rule).genes)


def eval_gpr(rule, knocked_out):
    """True if the reaction can still carry flux once `knocked_out` genes are removed.

    Reactions with an empty rule are always active.
    """
    rule = _rule(rule)
    if len(rule) == 0:
        return True
    return parse_gpr(rule).eval(set(knocked_out))


def parent_gene(gene, separator):
    """Collapse a transcript identifier to its parent gene.

    With ``separator='.'``, ``10005.1`` and ``10005.2`` map to ``10005``.
    An empty separator leaves the identifier untouched.
    """
    if not separator:
        return gene
    return gene.split(separator)[0]


def reaction_ko_matrix(network):
    """One knockout per reaction (identity matrix)."""
    return PerturbationMatrix(np.eye(network.num_reactions, dtype=bool),
                              network.reaction_ids)


def gene_ko_matrix(network, separate_transcript="", verbosity=0):
    """Calculate the reactions disabled by the knockout of each gene.

    A reaction is disabled by a gene if its GPR rule evaluates to False
    once the gene is removed. If `separate_transcript` is provided, the
    transcripts of a gene are collapsed into the parent gene
    (e.g. with '.', 10005.1 and 10005.2 are knocked out together as 10005).

    Args:
        network (MetabolicNetwork): The metabolic network.
        separate_transcript (str, optional): Transcript separator. Defaults to ''.
        verbosity (int, optional): Values above 0 print a summary. Defaults to 0.

    Returns:
        PerturbationMatrix: reactions x genes knockout matrix.
    """
    transcripts = {}
    rxns_of_gene = {}
    for i, rule in enumerate(network.R['gpr']):
        for gene in genes_in(rule):
            parent = parent_gene(gene, separate_transcript)
            transcripts.setdefault(parent, set()).add(gene)
            rxns_of_gene.setdefault(parent, set()).add(i)
    entities = sorted(transcripts)
    matrix = np.zeros((network.num_reactions, len(entities)), dtype=bool)
    for j, parent in enumerate(entities):
        knocked_out = transcripts[parent]
        # Only the reactions that contain the gene can be affected
        for i in rxns_of_gene[parent]:
            matrix[i, j] = not eval_gpr(network.R['gpr'][i], knocked_out)
    if verbosity > 0:
        print(f"Knockout matrix: {len(entities)} genes, "
              f"{np.sum(np.any(matrix, axis=1))} reactions affected")
    return PerturbationMatrix(matrix, entities)
