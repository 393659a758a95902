import numpy as np
import pytest
from rmta.__main__ import main, read_vector
from rmta.mio import export_gem, load_gem
from rmta.mta import MTAModel, MOMAModel
from rmta.solvers import SolverResult, SolverStatus


def fake_solve(self, knockout=None, **kwargs):
    v = np.array(self.vref, dtype=float)
    v[np.asarray(knockout, dtype=int)] = 0
    return SolverResult(SolverStatus.OPTIMAL, v, 0.0, 0.0)


@pytest.fixture()
def files(toy, tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(MTAModel, "solve", fake_solve)
    monkeypatch.setattr(MOMAModel, "solve", fake_solve)
    network, rxn_fbs, vref = toy
    export_gem(network, "toy.miom")
    tmp_path.joinpath("rxnfbs.txt").write_text("1, 0, -1\n")
    np.save("vref.npy", vref)
    return "toy.miom", "rxnfbs.txt", "vref.npy"


def test_read_vector(files):
    _, rxnfbs, vref = files
    assert read_vector(rxnfbs).tolist() == [1, 0, -1]
    assert read_vector(vref).tolist() == [1, 0, -1]


def test_run(files):
    model, rxnfbs, vref = files
    main(["run", model, rxnfbs, vref, "--rxn-ko", "--alpha", "0.5", "0.8",
          "--print-level", "0", "-o", "out.npz"])
    with np.load("out.npz") as data:
        assert data["deleted"].tolist() == ["R1", "R2", "R3"]
        assert data["rTS"].shape == (3, 2)
        assert data["bMTA_1"].shape == (3, 3)


def test_convert(files, tmp_path):
    model, _, _ = files
    main(["convert", model, "copy.miom"])
    assert load_gem("copy.miom").num_reactions == 3
