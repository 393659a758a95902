import os
import numpy as np
import pytest
from conftest import requires_miqp
from rmta.checkpoint import CheckpointError
from rmta.mio import MetabolicNetwork
from rmta.mta import MTAModel, MOMAModel
from rmta.perturbation import PerturbationMatrix
from rmta.rmta import RobustMTA, Stage, rmta
from rmta.solvers import SolverResult, SolverStatus


def fake_mta(self, knockout=None, **kwargs):
    v = self.vref + self.alpha * self.labels
    v[np.asarray(knockout, dtype=int)] = 0
    return SolverResult(SolverStatus.OPTIMAL, v, 0.0, 0.0)


def fake_moma(self, knockout=None, **kwargs):
    v = np.array(self.vref, dtype=float)
    v[np.asarray(knockout, dtype=int)] = 0
    return SolverResult(SolverStatus.OPTIMAL, v, 0.0, 0.0)


class CallCounter:
    def __init__(self, fn, fail_at=None):
        self.fn = fn
        self.calls = 0
        self.fail_at = fail_at

    def install(self, monkeypatch, cls):
        counter = self

        def solve(model, knockout=None, **kwargs):
            counter.calls += 1
            if counter.fail_at is not None and counter.calls == counter.fail_at:
                raise KeyboardInterrupt()
            return counter.fn(model, knockout, **kwargs)

        monkeypatch.setattr(cls, "solve", solve)
        return self


@pytest.fixture()
def fakes(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(MTAModel, "solve", fake_mta)
    monkeypatch.setattr(MOMAModel, "solve", fake_moma)


@pytest.fixture()
def large():
    rng = np.random.default_rng(42)
    n = 200
    network = MetabolicNetwork.from_arrays(S=np.zeros((1, n)), lb=[-10] * n, ub=[10] * n)
    vref = rng.uniform(-5, 5, n)
    rxn_fbs = rng.integers(-1, 2, n)
    return network, rxn_fbs, vref


def test_toy_gene_knockouts(toy, fakes):
    network, rxn_fbs, vref = toy
    result = rmta(network, rxn_fbs, vref, print_level=0)
    assert result.deleted == ["G1", "G2", "G3", "G4"]
    scores = result.scores()
    assert scores.bTS.shape == (4,)
    # G3 and G4 are isoenzymes, none of them removes R3 alone
    assert scores.rTS[2] == scores.rTS[3]
    assert np.array_equal(result.fluxes.mMTA[:, 2], vref)
    # Knocking out G1 removes R1, the desired forward change
    bts = scores.bTS
    assert bts[0] < bts[1]
    assert not os.path.exists("temp_rMTA.npz")


def test_duplicated_knockouts_solved_once(toy, fakes, monkeypatch):
    network, rxn_fbs, vref = toy
    mta = CallCounter(fake_mta).install(monkeypatch, MTAModel)
    moma = CallCounter(fake_moma).install(monkeypatch, MOMAModel)
    result = rmta(network, rxn_fbs, vref, alpha=[0.5, 0.8], print_level=0)
    # G1, G2 and an empty knockout shared by G3 and G4
    assert moma.calls == 3
    assert mta.calls == 2 * 2 * 3
    assert result.bTS.shape == (4, 2)


def test_duplicated_knockouts_same_scores(toy, fakes):
    network, rxn_fbs, vref = toy
    matrix = np.array([
        [1, 0, 0, 1, 0],
        [0, 1, 0, 0, 1],
        [0, 0, 1, 0, 0]
    ], dtype=bool)
    perturbation = PerturbationMatrix(matrix, ["A", "B", "C", "D", "E"])
    result = rmta(network, rxn_fbs, vref, perturbation=perturbation, print_level=0)
    unique = PerturbationMatrix(matrix[:, :3], ["A", "B", "C"])
    expected = rmta(network, rxn_fbs, vref, perturbation=unique, print_level=0)
    for name in ("bTS", "mTS", "wTS", "rTS"):
        values = getattr(result, name)
        assert np.array_equal(values[:3], getattr(expected, name))
        assert np.array_equal(values[3], values[0])
        assert np.array_equal(values[4], values[1])
    assert np.array_equal(result.fluxes.mMTA[:, 3], expected.fluxes.mMTA[:, 0])


def test_resume_after_interruption(large, fakes, monkeypatch):
    network, rxn_fbs, vref = large
    options = dict(rxn_ko=True, batch_size=20, print_level=0)
    expected = rmta(network, rxn_fbs, vref, checkpoint="reference.npz", **options)

    CallCounter(fake_mta, fail_at=50).install(monkeypatch, MTAModel)
    with pytest.raises(KeyboardInterrupt):
        rmta(network, rxn_fbs, vref, **options)
    assert os.path.exists("temp_rMTA.npz")

    mta = CallCounter(fake_mta).install(monkeypatch, MTAModel)
    moma = CallCounter(fake_moma).install(monkeypatch, MOMAModel)
    result = rmta(network, rxn_fbs, vref, **options)
    # The best scenario resumes from the last batch (40 knockouts)
    assert mta.calls == 160 + 200
    assert moma.calls == 200
    for name in ("bTS", "mTS", "wTS", "rTS"):
        assert np.array_equal(getattr(result, name), getattr(expected, name))
    assert np.array_equal(result.fluxes.bMTA[0.66], expected.fluxes.bMTA[0.66])
    assert np.array_equal(result.fluxes.wMTA[0.66], expected.fluxes.wMTA[0.66])
    assert np.array_equal(result.fluxes.mMTA, expected.fluxes.mMTA)
    assert not os.path.exists("temp_rMTA.npz")


def test_resume_with_other_inputs(large, fakes, monkeypatch):
    network, rxn_fbs, vref = large
    CallCounter(fake_mta, fail_at=30).install(monkeypatch, MTAModel)
    with pytest.raises(KeyboardInterrupt):
        rmta(network, rxn_fbs, vref, rxn_ko=True, batch_size=10, print_level=0)
    monkeypatch.setattr(MTAModel, "solve", fake_mta)
    with pytest.raises(CheckpointError):
        rmta(network, rxn_fbs, vref + 1, rxn_ko=True, batch_size=10, print_level=0)
    with pytest.raises(CheckpointError):
        rmta(network, rxn_fbs, vref, alpha=[0.5, 0.66], rxn_ko=True, batch_size=10, print_level=0)
    # The checkpoint is kept
    assert os.path.exists("temp_rMTA.npz")


def test_corrupted_checkpoint(toy, fakes, tmp_path):
    network, rxn_fbs, vref = toy
    path = tmp_path.joinpath("temp_rMTA.npz")
    path.write_bytes(b"corrupted")
    with pytest.raises(CheckpointError):
        rmta(network, rxn_fbs, vref, print_level=0)
    with pytest.warns(UserWarning):
        result = rmta(network, rxn_fbs, vref, print_level=0, discard_invalid_checkpoint=True)
    assert len(result.deleted) == 4
    assert not path.exists()


def test_checkpoint_write_failure(toy, fakes, tmp_path):
    network, rxn_fbs, vref = toy
    path = str(tmp_path.joinpath("missing", "checkpoint.npz"))
    with pytest.warns(UserWarning):
        result = rmta(network, rxn_fbs, vref, checkpoint=path, print_level=0)
    assert np.all(np.isfinite(result.bTS))


def test_failed_knockout(toy, fakes, monkeypatch):
    network, rxn_fbs, vref = toy

    def failing_moma(self, knockout=None, **kwargs):
        if 0 in np.asarray(knockout):
            return SolverResult(SolverStatus.ERROR, np.zeros(3), np.nan, 0.0)
        return fake_moma(self, knockout)

    monkeypatch.setattr(MOMAModel, "solve", failing_moma)
    result = rmta(network, rxn_fbs, vref, print_level=0)
    scores = result.scores()
    assert scores.mTS[0] == -np.inf
    assert scores.rTS[0] == -np.inf
    # The remaining knockouts are scored
    assert np.all(np.isfinite(scores.mTS[1:]))
    assert np.all(np.isfinite(scores.rTS[1:]))


def test_multiple_alphas(toy, fakes):
    network, rxn_fbs, vref = toy
    result = rmta(network, rxn_fbs, vref, alpha=[0.5, 0.8], print_level=0)
    assert result.rTS.shape == (4, 2)
    with pytest.raises(ValueError):
        result.scores()
    with pytest.raises(ValueError):
        result.scores(0.3)
    scores = result.by_alpha()
    assert set(scores) == {0.5, 0.8}
    assert np.array_equal(scores[0.8].bTS, result.bTS[:, 1])
    assert np.array_equal(scores[0.5].mTS, scores[0.8].mTS)
    assert set(result.fluxes.bMTA) == {0.5, 0.8}
    assert result.fluxes.bMTA[0.8].shape == (3, 4)


def test_single_alpha(toy, fakes):
    network, rxn_fbs, vref = toy
    result = rmta(network, rxn_fbs, vref, alpha=0.7, print_level=0)
    assert np.array_equal(result.scores().rTS, result.scores(0.7).rTS)
    assert list(result.by_alpha()) == [0.7]


def test_reaction_knockouts(toy, fakes):
    network, rxn_fbs, vref = toy
    model = RobustMTA(network, rxn_fbs, vref, rxn_ko=True, print_level=0)
    result = model.run()
    assert model.stage is Stage.DONE
    assert result.deleted == ["R1", "R2", "R3"]


def test_invalid_inputs(toy, fakes):
    network, rxn_fbs, vref = toy
    with pytest.raises(ValueError):
        rmta(network, [1, 0], vref, print_level=0)
    with pytest.raises(ValueError):
        rmta(network, [1, 0, 2], vref, print_level=0)
    with pytest.raises(ValueError):
        rmta(network, rxn_fbs, vref[:2], print_level=0)
    with pytest.raises(ValueError):
        rmta(network, rxn_fbs, vref, alpha=1.5, print_level=0)
    with pytest.raises(ValueError):
        rmta(network, rxn_fbs, vref, alpha=[0.66, 0.66], print_level=0)
    with pytest.raises(ValueError):
        rmta(network, rxn_fbs, vref, epsilon=-1, print_level=0)
    with pytest.raises(ValueError):
        rmta(network, rxn_fbs, vref, batch_size=0)
    with pytest.raises(ValueError):
        RobustMTA(network, rxn_fbs, vref, threads=4)
    with pytest.raises(ValueError):
        rmta(network, rxn_fbs, vref, print_level=0,
             perturbation=PerturbationMatrix(np.eye(2, dtype=bool), ["A", "B"]))


@requires_miqp
def test_toy_reaction_knockouts_solver(toy, miqp_solver, tmp_path):
    network, rxn_fbs, vref = toy
    result = rmta(network, rxn_fbs, vref, rxn_ko=True, solver=miqp_solver,
                  checkpoint=str(tmp_path.joinpath("toy.npz")), norm_tol=1e-4, print_level=0)
    scores = result.scores()
    # R1 and R3 are coupled, both knockouts remove all the flux
    assert scores.rTS[0] == -np.inf
    assert scores.rTS[2] == -np.inf
    # R2 carries no flux in the reference state
    assert np.isfinite(scores.rTS[1])
    assert abs(scores.mTS[1]) < 1e-3
