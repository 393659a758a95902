import os
import warnings
import numpy as np
from enum import Enum, auto
from typing import NamedTuple
from time import perf_counter
from rmta.mta import MTAModel, MOMAModel, validate_labels, clean_labels, score_knockout
from rmta.perturbation import PerturbationMatrix, gene_ko_matrix, reaction_ko_matrix
from rmta.checkpoint import RunState, CheckpointError, signature


class Stage(Enum):
    INIT = auto()
    BEST_SCENARIO = auto()
    MOMA_SCENARIO = auto()
    WORST_SCENARIO = auto()
    AGGREGATE = auto()
    DONE = auto()


class TSScore(NamedTuple):
    bTS: np.ndarray
    mTS: np.ndarray
    wTS: np.ndarray
    rTS: np.ndarray


class Fluxes(NamedTuple):
    """Fluxes of each knockout (reactions x knocked out entities).

    Attributes:
        bMTA (dict): alpha -> fluxes of the best scenario.
        mMTA (numpy.ndarray): fluxes of the MOMA scenario.
        wMTA (dict): alpha -> fluxes of the worst scenario.
    """
    bMTA: dict
    mMTA: np.ndarray
    wMTA: dict


class RMTAResult:
    """Result of an rMTA run.

    Attributes:
        alphas (numpy.ndarray): alpha values.
        deleted (list): knocked out genes (or reactions), one per row
            of the score matrices.
        bTS (numpy.ndarray): best scenario scores (entities x alphas).
        mTS (numpy.ndarray): MOMA scores (entities x 1).
        wTS (numpy.ndarray): worst scenario scores (entities x alphas).
        rTS (numpy.ndarray): robust scores (entities x alphas).
        fluxes (Fluxes): fluxes of the three scenarios.
    """
    def __init__(self, alphas, deleted, bTS, mTS, wTS, rTS, fluxes):
        self.alphas = np.asarray(alphas, dtype=float)
        self.deleted = list(deleted)
        self.bTS = bTS
        self.mTS = mTS
        self.wTS = wTS
        self.rTS = rTS
        self.fluxes = fluxes

    def _alpha_index(self, alpha):
        if alpha is None:
            if len(self.alphas) > 1:
                raise ValueError(f"The run has {len(self.alphas)} alpha values, "
                                 f"select one of {self.alphas.tolist()}")
            return 0
        idx = np.flatnonzero(np.isclose(self.alphas, alpha))
        if len(idx) == 0:
            raise ValueError(f"alpha {alpha} not in {self.alphas.tolist()}")
        return idx[0]

    def scores(self, alpha=None):
        """Scores for a single alpha.

        Args:
            alpha (float, optional): alpha value. It can be omitted
                if the run used only one alpha.

        Returns:
            TSScore: bTS, mTS, wTS and rTS vectors (one value per entity).
        """
        a = self._alpha_index(alpha)
        return TSScore(self.bTS[:, a], self.mTS[:, 0], self.wTS[:, a], self.rTS[:, a])

    def by_alpha(self):
        """Scores of every alpha.

        Returns:
            dict: alpha (float) -> TSScore.
        """
        return {float(alpha): self.scores(alpha) for alpha in self.alphas}


def robust_score(bts, mts, wts, floor=1e30):
    """Combine the best, MOMA and worst scores into the rMTA score.

    The score is ``(bTS - wTS) * mTS``, with the sign flipped to negative
    when the best scenario has a negative score (also when MOMA is negative),
    or when the best scenario is worse than the worst scenario. Knockouts
    with an invalid best or worst solution (score below -floor) get -inf.

    Args:
        bts (numpy.ndarray): best scenario scores.
        mts (numpy.ndarray): MOMA scores.
        wts (numpy.ndarray): worst scenario scores.
        floor (float, optional): scores below -floor are invalid. Defaults to 1e30.

    Returns:
        numpy.ndarray: rTS scores.
    """
    bts = np.asarray(bts, dtype=float)
    wts = np.asarray(wts, dtype=float)
    mts = np.where((bts < -floor) | (wts < -floor), -np.inf, np.asarray(mts, dtype=float))
    with np.errstate(invalid='ignore'):
        score = np.array((bts - wts) * mts, dtype=float)
        idx = (bts < 0) & (mts < 0) & (score > 0)
        score[idx] = -score[idx]
        idx = (bts < 0) & (score > 0)
        score[idx] = -score[idx]
        idx = (bts < wts) & (score > 0)
        score[idx] = -score[idx]
    score[np.isneginf(mts)] = -np.inf
    return score


def _as_alphas(alpha):
    alphas = np.atleast_1d(np.asarray(alpha, dtype=float)).reshape(-1)
    if len(alphas) == 0:
        raise ValueError("At least one alpha value is required")
    if np.any((alphas < 0) | (alphas > 1)):
        raise ValueError(f"alpha values have to be in [0, 1] (got {alphas.tolist()})")
    if len(np.unique(alphas)) != len(alphas):
        raise ValueError(f"alpha values have to be unique (got {alphas.tolist()})")
    return alphas


class RobustMTA:
    """Robust Metabolic Transformation Analysis.

    rMTA scores every gene (or reaction) knockout with three simulations:
    MTA in the best scenario (desired changes), MOMA, and MTA in the worst
    scenario (changes in the opposite direction). The scores are combined
    into the robust transformation score (rTS).

    The run can be interrupted and launched again: the state is stored in a
    checkpoint file every `batch_size` knockouts, and a new run with the same
    inputs resumes from the last checkpoint. The checkpoint is removed once
    the run finishes.

    Example:
        ```python
        >>> from rmta import load_gem, RobustMTA
        >>> network = load_gem("model.xml")
        >>> result = RobustMTA(network, rxn_fbs, vref, alpha=[0.66, 0.8]).run()
        >>> result.scores(0.66).rTS
        ```

    Args:
        network (MetabolicNetwork): metabolic network.
        rxn_fbs (numpy.ndarray): desired change of each reaction
            (+1 forward, -1 backward, 0 unchanged).
        vref (numpy.ndarray): reference flux of the source state.
        alpha (float or list, optional): trade-off parameter(s) of MTA.
            Defaults to 0.66.
        epsilon (float or numpy.ndarray, optional): min perturbation of each
            reaction. Defaults to 0.
        **kwargs: options, see `setup`.
    """
    _DEFAULT_OPTIONS = {
        'rxn_ko': False,
        'timelimit': np.inf,
        'separate_transcript': '',
        'num_workers': 0,
        'print_level': 1,
        'solver': None,
        'moma_solver': None,
        'checkpoint': 'temp_rMTA.npz',
        'batch_size': 100,
        'norm_tol': 1e-6,
        'perturbation': None,
        'discard_invalid_checkpoint': False
    }

    def __init__(self, network, rxn_fbs, vref, alpha=0.66, epsilon=0, **kwargs):
        self.network = network
        self.rxn_fbs = rxn_fbs
        self.vref = vref
        self.alpha = alpha
        self.epsilon = epsilon
        self._options = dict(self._DEFAULT_OPTIONS)
        self.setup(**kwargs)
        self.stage = Stage.INIT
        self.state = None
        self.result = None

    def setup(self, **kwargs):
        """Provide the options for the analysis.

        Attributes:
            rxn_ko (bool): knock out reactions instead of genes. Defaults to False.
            timelimit (float): time limit in seconds for each knockout. Defaults to inf.
            separate_transcript (str): character that separates the transcripts
                of a gene (e.g. '.' to knock out 10005.1 and 10005.2 together as
                10005). Defaults to '' (no collapsing).
            num_workers (int): threads for the solver. 0 = automatic,
                1 = sequential, >1 = parallel. Defaults to 0.
            print_level (int): 0 silent, 1 progress, 2 progress and solver output.
                Defaults to 1.
            solver (Solvers or str): MIQP solver. None lets PICOS choose. Defaults to None.
            moma_solver (Solvers or str): QP solver for MOMA. Defaults to `solver`.
            checkpoint (str): path of the checkpoint file. Defaults to 'temp_rMTA.npz'.
            batch_size (int): knockouts between checkpoints. Defaults to 100.
            norm_tol (float): min norm of a valid knockout flux. Defaults to 1e-6.
            perturbation (PerturbationMatrix): precomputed knockout matrix. If provided,
                `rxn_ko` and `separate_transcript` are ignored.
            discard_invalid_checkpoint (bool): delete an unusable checkpoint and start
                from zero instead of raising CheckpointError. Defaults to False.

        Returns:
            RobustMTA: the configured instance.
        """
        unknown = set(kwargs) - set(self._DEFAULT_OPTIONS)
        if len(unknown) > 0:
            raise ValueError(f"Unknown options: {sorted(unknown)}")
        self._options.update(kwargs)
        if int(self._options['batch_size']) < 1:
            raise ValueError("batch_size has to be a positive integer")
        return self

    @property
    def print_level(self):
        return self._options['print_level']

    def _print(self, *args, **kwargs):
        if self.print_level > 0:
            print(*args, **kwargs)

    def _progress(self, fraction, title):
        if self.print_level > 0:
            print(f"\r{title}: {100 * fraction:6.2f}%", end="", flush=True)

    def _solver_options(self, solver):
        return dict(
            solver=solver,
            timelimit=self._options['timelimit'],
            num_workers=self._options['num_workers'],
            verbosity=1 if self.print_level > 1 else 0
        )

    def run(self):
        """Run (or resume) the analysis.

        Returns:
            RMTAResult: scores, knocked out entities and fluxes.
        """
        handlers = {
            Stage.INIT: self._init,
            Stage.BEST_SCENARIO: self._best_scenario,
            Stage.MOMA_SCENARIO: self._moma_scenario,
            Stage.WORST_SCENARIO: self._worst_scenario,
            Stage.AGGREGATE: self._aggregate
        }
        while self.stage is not Stage.DONE:
            self.stage = handlers[self.stage]()
        return self.result

    def _commit(self):
        self.state.save(self._options['checkpoint'])

    def _init(self):
        self._print('===================================')
        self._print('========  rMTA algorithm  =========')
        self._print('===================================')
        self._print('Step 0: preprocessing:')
        network = self.network
        n = network.num_reactions
        self.labels = validate_labels(self.rxn_fbs, n)
        self.vref = np.asarray(self.vref, dtype=float).reshape(-1)
        if self.vref.shape[0] != n:
            raise ValueError(f"Vref has {self.vref.shape[0]} elements, "
                             f"but the network has {n} reactions")
        self.alphas = _as_alphas(self.alpha)
        self.epsilon = np.asarray(self.epsilon, dtype=float)
        if self.epsilon.ndim > 0:
            self.epsilon = self.epsilon.reshape(-1)
            if self.epsilon.shape[0] != n:
                raise ValueError("epsilon has to be a number or a vector with one element per reaction")
        if np.any(self.epsilon < 0):
            raise ValueError("epsilon has to be non negative")

        perturbation = self._options['perturbation']
        if perturbation is None:
            if self._options['rxn_ko']:
                perturbation = reaction_ko_matrix(network)
            else:
                perturbation = gene_ko_matrix(network, self._options['separate_transcript'],
                                              verbosity=self.print_level)
        if not isinstance(perturbation, PerturbationMatrix):
            raise ValueError("perturbation has to be a PerturbationMatrix")
        if perturbation.num_reactions != n:
            raise ValueError(f"The perturbation matrix has {perturbation.num_reactions} rows, "
                             f"but the network has {n} reactions")
        self.perturbation = perturbation
        self.knockouts, self.index, self.inverse = perturbation.unique()
        num_knockouts = self.knockouts.shape[1]
        self._print(f"\t{perturbation.num_entities} knockouts, {num_knockouts} unique")

        self.labels_best = clean_labels(self.labels, self.vref, network.lb)
        self.labels_worst = clean_labels(-self.labels, self.vref, network.lb)

        sig = signature(network.S, network.lb, network.ub, self.labels, self.vref,
                        self.alphas, self.epsilon, self.knockouts,
                        [self._options['norm_tol']])
        shape = (n, num_knockouts, len(self.alphas))
        path = self._options['checkpoint']
        self.state = None
        if os.path.exists(path):
            try:
                self.state = RunState.load(path, shape=shape, signature=sig)
                self._print(f"\tResuming from checkpoint {path}")
            except CheckpointError as e:
                if not self._options['discard_invalid_checkpoint']:
                    raise
                warnings.warn(f"{e}. Starting a new run")
                os.remove(path)
        if self.state is None:
            self.state = RunState(*shape, signature=sig)
        self._print('-------------------')
        return Stage.BEST_SCENARIO

    def _knockout_loop(self, counter, model, labels, scores, fluxes, title):
        """Solve the remaining knockouts of a scenario.

        Args:
            counter (str): name of the counter in the state (i, j or k).
            model (KnockoutModel): template model for the scenario.
            labels (numpy.ndarray): labels used to score the solutions.
            scores (numpy.ndarray): vector where the scores are stored.
            fluxes (numpy.ndarray): matrix where the fluxes are stored.
            title (str): title of the progress bar.
        """
        state = self.state
        num_knockouts = self.knockouts.shape[1]
        batch_size = int(self._options['batch_size'])
        self._progress(getattr(state, counter) / max(num_knockouts, 1), title)
        while getattr(state, counter) < num_knockouts:
            c = getattr(state, counter)
            knockout = np.flatnonzero(self.knockouts[:, c])
            result = model.solve(knockout)
            fluxes[:, c] = result.fluxes
            scores[c] = score_knockout(result, knockout, self.vref, labels,
                                       self._options['norm_tol'])
            if not result.optimal and self.print_level > 1:
                warnings.warn(f"Knockout {c + 1} not solved ({result.status.name})")
            setattr(state, counter, c + 1)
            if (c + 1) % batch_size == 0:
                self._commit()
            self._progress((c + 1) / num_knockouts, title)
        self._print('')

    def _mta_scenario(self, scenario, labels, counter, alpha_counter, scores, fluxes, title):
        state = self.state
        if getattr(state, scenario):
            self._print('\tAll MIQP problems performed')
            return
        options = self._solver_options(self._options['solver'])
        while getattr(state, alpha_counter) < len(self.alphas):
            a = getattr(state, alpha_counter)
            alpha = self.alphas[a]
            self._print(f"\tStart rMTA {scenario} scenario case for alpha = {alpha:1.2f}")
            model = MTAModel(self.network, labels, self.vref, alpha, self.epsilon, **options)
            self._print('\tMTA model built')
            self._knockout_loop(counter, model, labels, scores[:, a], fluxes[a], title)
            self._print('\tAll MIQP problems performed')
            setattr(state, alpha_counter, a + 1)
            setattr(state, counter, 0)
            self._commit()
        setattr(state, scenario, True)
        self._commit()

    def _timed(self, step, title, fn):
        self._print(f"Step {step} in progress: {title}")
        start = perf_counter()
        fn()
        elapsed = perf_counter() - start
        self._print(f"\tStep {step} time: {elapsed:4.2f} seconds = {elapsed / 60:4.2f} minutes")
        self._print('-------------------')

    def _best_scenario(self):
        state = self.state
        self._timed(1, "the best scenario", lambda: self._mta_scenario(
            'best', self.labels_best, 'i', 'i_alpha',
            state.score_best, state.v_best, '    MIQP Iterations for bMTA'))
        return Stage.MOMA_SCENARIO

    def _moma_scenario(self):
        state = self.state

        def moma():
            if state.moma:
                self._print('\tAll MOMA problems performed')
                return
            options = self._solver_options(self._options['moma_solver'] or self._options['solver'])
            model = MOMAModel(self.network, self.vref, **options)
            self._print('\tMOMA model built')
            self._knockout_loop('j', model, self.labels_best, state.score_moma[:, 0],
                                state.v_moma, '    QP Iterations for MOMA')
            self._print('\tAll MOMA problems performed')
            state.moma = True
            self._commit()

        self._timed(2, "MOMA", moma)
        return Stage.WORST_SCENARIO

    def _worst_scenario(self):
        state = self.state
        self._timed(3, "the worst scenario", lambda: self._mta_scenario(
            'worst', self.labels_worst, 'k', 'k_alpha',
            state.score_worst, state.v_worst, '    MIQP Iterations for wMTA'))
        return Stage.AGGREGATE

    def _aggregate(self):
        state = self.state
        inverse = self.inverse
        bts = state.score_best[inverse, :]
        mts = state.score_moma[inverse, :]
        wts = state.score_worst[inverse, :]
        rts = np.zeros_like(bts)
        for a in range(len(self.alphas)):
            rts[:, a] = robust_score(bts[:, a], mts[:, 0], wts[:, a])
        fluxes = Fluxes(
            bMTA={float(alpha): state.v_best[a][:, inverse] for a, alpha in enumerate(self.alphas)},
            mMTA=state.v_moma[:, inverse],
            wMTA={float(alpha): state.v_worst[a][:, inverse] for a, alpha in enumerate(self.alphas)}
        )
        self.result = RMTAResult(self.alphas, self.perturbation.entities,
                                 bts, mts, wts, rts, fluxes)
        path = self._options['checkpoint']
        if os.path.exists(path):
            try:
                os.remove(path)
            except OSError as e:
                warnings.warn(f"Cannot remove the checkpoint {path}: {e}")
        return Stage.DONE


def rmta(network, rxn_fbs, vref, alpha=0.66, epsilon=0, **kwargs):
    """Calculate robust Metabolic Transformation Analysis (rMTA).

    See [RobustMTA][rmta.rmta.RobustMTA] for the description of the
    arguments and options.

    Returns:
        RMTAResult: scores, knocked out entities and fluxes.
    """
    return RobustMTA(network, rxn_fbs, vref, alpha=alpha, epsilon=epsilon, **kwargs).run()
