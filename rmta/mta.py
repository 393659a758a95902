import numpy as np
import picos as pc
import cvxopt
from abc import ABC, abstractmethod
from rmta import solvers


# Bound used to replace infinite flux bounds in the optimization problems
INF_BOUND = 1e6


def validate_labels(labels, num_reactions):
    """Check a rxnFBS vector (+1 forward, -1 backward, 0 unchanged)."""
    labels = np.asarray(labels, dtype=float).reshape(-1)
    if labels.shape[0] != num_reactions:
        raise ValueError(f"rxnFBS has {labels.shape[0]} elements, "
                         f"but the network has {num_reactions} reactions")
    if not np.all(np.isin(labels, (-1, 0, 1))):
        raise ValueError("rxnFBS can only contain the values +1, 0 and -1")
    return labels.astype(int)


def clean_labels(labels, vref, lb, tol=1e-6):
    """Remove the decreases that are not possible.

    A reaction labelled as backward (-1) cannot decrease if its reference
    flux is already zero and its lower bound is zero.

    Returns:
        numpy.ndarray: a new label vector.
    """
    labels = np.array(labels, dtype=int).reshape(-1)
    vref = np.asarray(vref, dtype=float).reshape(-1)
    lb = np.asarray(lb, dtype=float).reshape(-1)
    labels[(labels == -1) & (np.abs(vref) < tol) & (lb == 0)] = 0
    return labels


def transformation_score(v, vref, labels):
    """Transformation score (TS) of a flux vector.

    Changes in the desired direction of the labelled reactions add to the
    score, changes in the opposite direction subtract from it, and any
    deviation of the unchanged reactions (label 0) is penalized:

    $$
    TS = \\sum_{l_i \\neq 0} l_i (v_i - v^{ref}_i) - \\sum_{l_i = 0} |v_i - v^{ref}_i|
    $$

    Args:
        v (numpy.ndarray): flux vector.
        vref (numpy.ndarray): reference flux vector.
        labels (numpy.ndarray): rxnFBS labels.

    Returns:
        float: the score. A flux vector equal to the reference scores 0.
    """
    v = np.asarray(v, dtype=float).reshape(-1)
    vref = np.asarray(vref, dtype=float).reshape(-1)
    labels = np.asarray(labels).reshape(-1)
    delta = v - vref
    changed = labels != 0
    directed = labels[changed] * delta[changed]
    success = np.sum(directed[directed > 0])
    failure = -np.sum(directed[directed < 0])
    drift = np.sum(np.abs(delta[~changed]))
    return float(success - failure - drift)


def is_knocked_off(v, knockout, norm_tol=1e-6):
    """True if a knockout shut down the whole network (all-zero fluxes)."""
    return len(knockout) > 0 and np.linalg.norm(v) < norm_tol


def score_knockout(result, knockout, vref, labels, norm_tol=1e-6):
    """Score the solution of a knockout, -inf for invalid solutions.

    Args:
        result (SolverResult): result of the knockout solve.
        knockout (numpy.ndarray): indexes of the knocked out reactions.
        vref (numpy.ndarray): reference flux vector.
        labels (numpy.ndarray): rxnFBS labels.
        norm_tol (float, optional): min norm of a valid flux vector.

    Returns:
        float: transformation score or -inf.
    """
    if not result.optimal or is_knocked_off(result.fluxes, knockout, norm_tol):
        return -np.inf
    return transformation_score(result.fluxes, vref, labels)


def _selector(idxs, n):
    """Sparse matrix that selects the rows `idxs` of a vector of size n."""
    return cvxopt.spmatrix(1.0, list(range(len(idxs))), [int(i) for i in idxs], (len(idxs), n))


def _readonly(array):
    array = np.array(array, dtype=float)
    array.setflags(write=False)
    return array


class KnockoutModel(ABC):
    """Base class for the knockout simulation problems.

    The model is a template: the PICOS problem with the steady state
    constraints and the objective is built once, and every knockout solves
    a copy of it with the flux bounds added (0 for the knocked out
    reactions). The template is never modified, so knockouts are independent.
    """
    _DEFAULT_OPTIONS = {
        'solver': None,
        'timelimit': None,
        'num_workers': 0,
        'verbosity': 0,
        'int_tol': None,
        'feas_tol': None,
        'opt_tol': None
    }

    def __init__(self, network, vref, **kwargs):
        self.network = network
        vref = np.asarray(vref, dtype=float).reshape(-1)
        if vref.shape[0] != network.num_reactions:
            raise ValueError(f"Vref has {vref.shape[0]} elements, "
                             f"but the network has {network.num_reactions} reactions")
        self.vref = _readonly(vref)
        self.S = _readonly(network.S)
        self.lb = _readonly(np.clip(network.lb, -INF_BOUND, INF_BOUND))
        self.ub = _readonly(np.clip(network.ub, -INF_BOUND, INF_BOUND))
        self._template = None
        self._options = dict(self._DEFAULT_OPTIONS)
        self.setup(**kwargs)

    def setup(self, **kwargs):
        """Provide the options for the solver.

        Attributes:
            solver (Solvers or str): solver used by PICOS. If None, PICOS selects
                one of the available solvers. Defaults to None.
            timelimit (float): time limit in seconds for each knockout.
            num_workers (int): threads for the solver (0 = automatic).
            verbosity (int): Values above 0 force the solver to be verbose.
            int_tol (float): Integrality tolerance for integer variables.
            feas_tol (float): Feasibility tolerance.
            opt_tol (float): Relative MIP gap tolerance for MIP problems.

        Returns:
            KnockoutModel: the configured instance.
        """
        unknown = set(kwargs) - set(self._DEFAULT_OPTIONS)
        if len(unknown) > 0:
            raise ValueError(f"Unknown options: {sorted(unknown)}")
        self._options.update(kwargs)
        return self

    @property
    def num_reactions(self):
        return self.S.shape[1]

    def knockout_bounds(self, knockout):
        """Copy of the bounds with the knocked out reactions fixed to 0."""
        lb, ub = self.lb.copy(), self.ub.copy()
        lb[knockout] = 0
        ub[knockout] = 0
        return lb, ub

    def _knockout_indexes(self, knockout):
        if knockout is None:
            return np.zeros(0, dtype=int)
        knockout = np.asarray(knockout).reshape(-1)
        if knockout.dtype == bool:
            if knockout.shape[0] != self.num_reactions:
                raise IndexError("Boolean knockout masks must have one element per reaction")
            return np.flatnonzero(knockout)
        knockout = knockout.astype(int)
        if np.any(knockout < 0) or np.any(knockout >= self.num_reactions):
            raise IndexError(f"Invalid reaction indexes in the knockout: {knockout}")
        return knockout

    @property
    def template(self):
        """PICOS problem shared by all the knockouts (steady state and objective).

        The problem is built on first access and never modified afterwards;
        the bounds are added to a copy for each knockout.
        """
        if self._template is None:
            P = pc.Problem()
            V = pc.RealVariable("V", (self.num_reactions, 1))
            S = pc.Constant("S", self.S)
            P.add_constraint(S * V == 0)
            self._build(P, V)
            self._template = P
        return self._template

    def problem(self, knockout=None):
        """Problem for a knockout: a copy of the template plus the flux bounds.

        Args:
            knockout (list, optional): indexes of the reactions to knock out.

        Returns:
            tuple: (picos.Problem, flux variables)
        """
        knockout = self._knockout_indexes(knockout)
        lb, ub = self.knockout_bounds(knockout)
        P = self.template.copy()
        V = P.variables["V"]
        # Fixed reactions (e.g. knocked out) are added as equalities
        fixed = np.flatnonzero(lb == ub)
        free = np.flatnonzero(lb < ub)
        if len(fixed) > 0:
            F = pc.Constant("F", _selector(fixed, self.num_reactions))
            P.add_constraint(F * V == lb[fixed].tolist())
        if len(free) > 0:
            B = pc.Constant("B", _selector(free, self.num_reactions))
            P.add_constraint(B * V >= lb[free].tolist())
            P.add_constraint(B * V <= ub[free].tolist())
        return P, V

    @abstractmethod
    def _build(self, problem, fluxes):
        pass

    def solve(self, knockout=None, **kwargs):
        """Solve the problem for a knockout.

        Args:
            knockout (list, optional): indexes of the reactions to knock out.
                An empty knockout simulates the wild type.
            **kwargs: options to override for this solve (see `setup`).

        Returns:
            SolverResult: status and fluxes. If the problem is not solved to
                optimality, the fluxes are all zero.
        """
        unknown = set(kwargs) - set(self._DEFAULT_OPTIONS)
        if len(unknown) > 0:
            raise ValueError(f"Unknown options: {sorted(unknown)}")
        options = dict(self._options, **kwargs)
        P, V = self.problem(knockout)
        solvers.configure(P, **options)
        return solvers.solve(P, V, self.num_reactions)


class MOMAModel(KnockoutModel):
    """Minimization of metabolic adjustment.

    Finds the flux vector closest to the reference flux (L2 norm) subject
    to steady state and bound constraints:

    $$
    min \\; ||v - v^{ref}||^2 = v^T v - 2 v^{ref T} v + const
    $$
    """
    def _build(self, problem, fluxes):
        Vref = pc.Constant("Vref", self.vref.tolist())
        problem.set_objective('min', abs(fluxes - Vref)**2)


class MTAModel(KnockoutModel):
    """Metabolic Transformation Analysis (MIQP).

    For each labelled reaction, a binary variable `y` indicates that the
    desired change could not be achieved. Forward reactions (+1) must reach
    ``vref + eps`` and backward reactions (-1) must go below ``vref - eps``
    unless ``y = 1``. The objective trades off the distance to the reference
    flux for the unchanged reactions and the number of failed changes:

    $$
    min \\; \\frac{\\alpha}{2} \\sum_{i \\in U} (v_i - v^{ref}_i)^2 + \\frac{1 - \\alpha}{2} \\sum_j y_j
    $$

    Args:
        network (MetabolicNetwork): metabolic network.
        labels (numpy.ndarray): rxnFBS labels (+1, -1, 0).
        vref (numpy.ndarray): reference flux vector.
        alpha (float, optional): trade-off parameter in [0, 1]. Defaults to 0.66.
        epsilon (float or numpy.ndarray, optional): min perturbation of
            the labelled reactions. Defaults to 0.
    """
    _DEFAULT_OPTIONS = dict(KnockoutModel._DEFAULT_OPTIONS,
                            int_tol=1e-8, feas_tol=1e-8, opt_tol=1e-5)

    def __init__(self, network, labels, vref, alpha=0.66, epsilon=0, **kwargs):
        super().__init__(network, vref, **kwargs)
        if not 0 <= alpha <= 1:
            raise ValueError(f"alpha has to be in [0, 1] (got {alpha})")
        epsilon = np.broadcast_to(np.asarray(epsilon, dtype=float), (self.num_reactions,))
        if np.any(epsilon < 0):
            raise ValueError("epsilon has to be non negative")
        self.labels = validate_labels(labels, self.num_reactions)
        self.labels.setflags(write=False)
        self.alpha = float(alpha)
        self.epsilon = _readonly(epsilon)
        self.unchanged = np.flatnonzero(self.labels == 0)
        self.changed = np.flatnonzero(self.labels != 0)
        # Targets of the labelled reactions and values used when y = 1
        self.targets = _readonly(self.vref[self.changed] + self.labels[self.changed] * self.epsilon[self.changed])
        relax = np.where(self.labels[self.changed] > 0,
                         np.minimum(self.lb[self.changed], 0),
                         np.maximum(self.ub[self.changed], 0))
        self.relax = _readonly(relax)

    def _build(self, problem, fluxes):
        V = fluxes
        terms = []
        if len(self.changed) > 0:
            Y = pc.BinaryVariable("Y", (len(self.changed), 1))
            for j, i in enumerate(self.changed):
                t, r = float(self.targets[j]), float(self.relax[j])
                if self.labels[i] > 0:
                    problem.add_constraint(V[int(i)] >= t - Y[j] * (t - r))
                else:
                    problem.add_constraint(V[int(i)] <= t + Y[j] * (r - t))
            C = pc.Constant("C", value=[1.0] * len(self.changed))
            terms.append((1 - self.alpha) / 2 * (C.T * Y))
        if len(self.unchanged) > 0 and self.alpha > 0:
            U = pc.Constant("U", _selector(self.unchanged, self.num_reactions))
            Vref = pc.Constant("Vref", self.vref[self.unchanged].tolist())
            terms.append(self.alpha / 2 * abs(U * V - Vref)**2)
        if len(terms) > 0:
            objective = terms[0]
            for term in terms[1:]:
                objective = objective + term
            problem.set_objective('min', objective)
