import os
import hashlib
import tempfile
import warnings
import zipfile
import numpy as np


class CheckpointError(RuntimeError):
    """The checkpoint of a previous run cannot be used to resume."""


def signature(*arrays):
    """Hash of the inputs of a run, used to validate a checkpoint."""
    h = hashlib.sha256()
    for array in arrays:
        array = np.ascontiguousarray(np.asarray(array, dtype=float))
        h.update(str(array.shape).encode())
        h.update(array.tobytes())
    return h.hexdigest()


class RunState:
    """State of an rMTA run.

    Counters store the number of unique knockouts already committed in the
    current alpha of each scenario (`i` best, `j` moma, `k` worst), and
    `i_alpha` / `k_alpha` the number of alpha values already completed for
    the best and worst scenarios. The flags `best`, `moma` and `worst` are
    set once a scenario is finished.

    Attributes:
        score_best (numpy.ndarray): unique knockouts x alphas
        score_moma (numpy.ndarray): unique knockouts x 1
        score_worst (numpy.ndarray): unique knockouts x alphas
        v_best (numpy.ndarray): alphas x reactions x unique knockouts
        v_moma (numpy.ndarray): reactions x unique knockouts
        v_worst (numpy.ndarray): alphas x reactions x unique knockouts
    """
    _COUNTERS = ('i', 'i_alpha', 'j', 'k', 'k_alpha')
    _FLAGS = ('best', 'moma', 'worst')
    _ARRAYS = ('score_best', 'score_moma', 'score_worst', 'v_best', 'v_moma', 'v_worst')

    def __init__(self, num_reactions, num_knockouts, num_alphas, signature=""):
        self.signature = signature
        self.i = self.i_alpha = self.j = self.k = self.k_alpha = 0
        self.best = self.moma = self.worst = False
        self.score_best = np.zeros((num_knockouts, num_alphas))
        self.score_moma = np.zeros((num_knockouts, 1))
        self.score_worst = np.zeros((num_knockouts, num_alphas))
        self.v_best = np.zeros((num_alphas, num_reactions, num_knockouts))
        self.v_moma = np.zeros((num_reactions, num_knockouts))
        self.v_worst = np.zeros((num_alphas, num_reactions, num_knockouts))

    @property
    def shape(self):
        num_alphas, num_reactions, num_knockouts = self.v_best.shape
        return num_reactions, num_knockouts, num_alphas

    def save(self, path):
        """Write the state to `path`.

        The state is written to a temporary file which then replaces the
        previous checkpoint, so an interrupted write keeps the last valid
        checkpoint. Write errors are reported as warnings.

        Returns:
            bool: True if the checkpoint was written.
        """
        path = os.path.abspath(path)
        fields = {name: getattr(self, name) for name in self._COUNTERS + self._FLAGS + self._ARRAYS}
        tmp = None
        try:
            fd, tmp = tempfile.mkstemp(dir=os.path.dirname(path), suffix=".tmp")
            with os.fdopen(fd, 'wb') as f:
                np.savez(f, signature=np.array(self.signature), **fields)
            os.replace(tmp, path)
            return True
        except OSError as e:
            warnings.warn(f"Cannot write the checkpoint {path}: {e}")
            if tmp is not None and os.path.exists(tmp):
                os.remove(tmp)
            return False

    @classmethod
    def load(cls, path, shape=None, signature=None):
        """Load a state from a checkpoint file.

        Args:
            path (str): path of the checkpoint.
            shape (tuple, optional): expected (reactions, unique knockouts, alphas).
            signature (str, optional): expected signature of the inputs.

        Raises:
            CheckpointError: if the file cannot be read or does not belong
                to the current run.
        """
        try:
            with np.load(path, allow_pickle=False) as data:
                content = {name: data[name] for name in data.files}
        except (OSError, ValueError, EOFError, zipfile.BadZipFile) as e:
            raise CheckpointError(f"Cannot read the checkpoint {path}: {e}") from e
        expected = set(cls._COUNTERS + cls._FLAGS + cls._ARRAYS + ('signature',))
        missing = expected - set(content)
        if len(missing) > 0:
            raise CheckpointError(f"Corrupted checkpoint {path}, missing fields: {sorted(missing)}")
        num_alphas, num_reactions, num_knockouts = content['v_best'].shape
        state = cls(num_reactions, num_knockouts, num_alphas, str(content['signature']))
        for name in cls._COUNTERS:
            setattr(state, name, int(content[name]))
        for name in cls._FLAGS:
            setattr(state, name, bool(content[name]))
        for name in cls._ARRAYS:
            setattr(state, name, np.array(content[name], dtype=float))
        if shape is not None and tuple(shape) != state.shape:
            raise CheckpointError(f"The checkpoint {path} has shape {state.shape} "
                                  f"but the current run requires {tuple(shape)}")
        if signature is not None and signature != state.signature:
            raise CheckpointError(f"The checkpoint {path} was created with different inputs. "
                                  f"Remove it to start a new run")
        state._validate(path)
        return state

    def _validate(self, path):
        num_reactions, num_knockouts, num_alphas = self.shape
        arrays = {
            'score_best': (num_knockouts, num_alphas),
            'score_moma': (num_knockouts, 1),
            'score_worst': (num_knockouts, num_alphas),
            'v_moma': (num_reactions, num_knockouts),
            'v_worst': (num_alphas, num_reactions, num_knockouts)
        }
        for name, shape in arrays.items():
            if getattr(self, name).shape != shape:
                raise CheckpointError(f"Corrupted checkpoint {path}: {name} has shape "
                                      f"{getattr(self, name).shape}, expected {shape}")
        limits = {'i': num_knockouts, 'j': num_knockouts, 'k': num_knockouts,
                  'i_alpha': num_alphas, 'k_alpha': num_alphas}
        for name, limit in limits.items():
            if not 0 <= getattr(self, name) <= limit:
                raise CheckpointError(f"Corrupted checkpoint {path}: invalid counter {name}")
