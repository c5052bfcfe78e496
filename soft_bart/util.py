from abc import ABC

import numpy as np

# For faster random sampling
def fast_choice(generator, array):
    """Fast random selection from an array."""
    len_arr = len(array)
    if len_arr == 1:
        return array[0]
    return array[generator.integers(0, len_arr)]

class Dataset:
    """
    Training data: design matrix, response and per-feature bounds.
    """
    def __init__(self, X, y):
        self.X = np.asarray(X, dtype=np.float64)
        self.y = np.asarray(y)
        self.xmin = self.X.min(axis=0)
        self.xmax = self.X.max(axis=0)

    @property
    def n(self):
        return self.X.shape[0]
    @property
    def p(self):
        return self.X.shape[1]

class Preprocessor(ABC):

    def fit(self, X, y):
        pass

    def transform(self, X, y) -> Dataset:
        return Dataset(
            self.transform_X(X),
            self.transform_y(y)
        )

    def fit_transform(self, X, y):
        self.fit(X, y)
        return self.transform(X, y)

    def transform_X(self, X) -> np.ndarray:
        return np.asarray(X, dtype=np.float64)

    def transform_y(self, y) -> np.ndarray:
        return y

    def backtransform_y(self, y) -> np.ndarray:
        return y

class DefaultPreprocessor(Preprocessor):
    """
    Default implementation for preprocessing input data for continuous soft BART.
    The response is rescaled to [-0.5, 0.5].
    """
    def __init__(self):
        self.y_max = None
        self.y_min = None

    def fit(self, X, y):
        if X is None or y is None or len(X) == 0 or len(y) == 0:
            raise ValueError("X and y cannot be None")
        y = np.asarray(y, dtype=np.float64)
        self.y_max = y.max()
        self.y_min = y.min()

    def transform_y(self, y) -> np.ndarray:
        y = np.asarray(y, dtype=np.float64)
        if self.y_max == self.y_min:
            y_res = y # do not transform if all values are the same
        else:
            y_res = (y - self.y_min) / (self.y_max - self.y_min) - 0.5
        return y_res.reshape(-1, )

    def backtransform_y(self, y) -> np.ndarray:
        if self.y_max == self.y_min: # y not transformed
            return y
        else:
            return (self.y_max - self.y_min) * (y + 0.5) + self.y_min

    def backtransform_scale(self, sigma):
        """Map a standard deviation on the scaled response back to the original scale."""
        if self.y_max == self.y_min:
            return sigma
        return (self.y_max - self.y_min) * sigma

class ClassificationPreprocessor(Preprocessor):
    """
    Preprocessor for binary classification: labels are encoded as 0 and 1.
    """
    def __init__(self):
        self.uniq_labels = None

    @property
    def labels(self):
        if self.uniq_labels is None:
            raise ValueError("Preprocessor must be fitted before accessing ClassificationPreprocessor.labels")
        return self.uniq_labels

    def fit(self, X, y):
        if X is None or y is None or len(X) == 0 or len(y) == 0:
            raise ValueError("X and y cannot be None")
        self.uniq_labels = np.unique(y)
        if len(self.uniq_labels) != 2:
            raise ValueError(f"Binary classification needs exactly two labels, got {len(self.uniq_labels)}.")

    def transform_y(self, y):
        if y is None or len(y) == 0:
            raise ValueError("y cannot be None or empty")
        if self.uniq_labels is None:
            raise ValueError("Preprocessor must be fitted before transforming data")
        label_to_index = {label: idx for idx, label in enumerate(self.uniq_labels)}
        y_encoded = np.array([label_to_index[val] for val in y], dtype=int)
        return y_encoded

    def backtransform_y(self, y):
        if y is None or len(y) == 0:
            raise ValueError("y cannot be None or empty")
        if self.uniq_labels is None:
            raise ValueError("Preprocessor must be fitted before backtransforming data")
        return self.uniq_labels[y]
