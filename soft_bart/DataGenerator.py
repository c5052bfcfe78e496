import logging

import numpy as np

LOGGER = logging.getLogger(__name__)


class DataGenerator:
    """
    Synthetic regression and classification data for exercising soft BART.

    Smooth scenarios ("friedman1", "sine", "linear") favour soft splits; the
    "step" scenario has a genuine discontinuity.
    """

    def __init__(self, n_samples=100, n_features=5, noise=0.1, random_seed=None):
        """
        Initialize the generator with default parameters.

        Args:
            n_samples (int): Number of data points.
            n_features (int): Number of features.
            noise (float): Standard deviation of noise.
            random_seed (int): Random seed for reproducibility.
        """
        self.n_samples = n_samples
        self.n_features = n_features
        self.noise = noise
        self.random_seed = random_seed
        self.rng = np.random.default_rng(random_seed)

    def _add_noise(self, y):
        """Add Gaussian noise to target values."""
        return y + self.rng.normal(0, self.noise, size=len(y))

    def generate(self, scenario: str = "friedman1", **kwargs) -> tuple:
        """
        Generate data for a specific scenario.

        Args:
            scenario (str): Name of the scenario.

        Returns:
            tuple: (X, y) where X is the feature matrix and y is the target array.
        """
        func = getattr(self, scenario, None)
        if scenario.startswith("_") or not callable(func) or scenario == "generate":
            raise NotImplementedError(f"No such a scenario supported: {scenario}")
        LOGGER.debug("Generating %d samples for scenario %s", self.n_samples, scenario)
        result = func(**kwargs)
        if len(result) == 2:
            X, y_noiseless = result
            return X, self._add_noise(y_noiseless)
        # noise or labels produced by the scenario itself
        X, y, _ = result
        return X, y

    def friedman1(self):
        """
        Friedman #1: 10 sin(pi x1 x2) + 20 (x3 - 0.5)^2 + 10 x4 + 5 x5; the
        remaining features are noise.
        """
        if self.n_features < 5:
            raise ValueError("The friedman1 scenario needs at least 5 features.")
        X = self.rng.uniform(0, 1, (self.n_samples, self.n_features))
        y_noiseless = 10 * np.sin(np.pi * X[:, 0] * X[:, 1]) + 20 * (X[:, 2] - 0.5) ** 2 \
            + 10 * X[:, 3] + 5 * X[:, 4]
        return X, y_noiseless

    def linear(self):
        X = self.rng.uniform(0, 1, (self.n_samples, self.n_features))
        weights = self.rng.uniform(1, 5, size=self.n_features)
        y_noiseless = X @ weights
        return X, y_noiseless

    def sine(self):
        X = self.rng.uniform(0, 1, (self.n_samples, self.n_features))
        y_noiseless = np.sin(2 * np.pi * X[:, 0])
        return X, y_noiseless

    def step(self):
        X = self.rng.uniform(0, 1, (self.n_samples, self.n_features))
        y_noiseless = np.where(X[:, 0] < 0.5, -1.0, 1.0)
        return X, y_noiseless

    def binary(self):
        """
        Probit labels: y = 1 when X w + N(0, 1) > 0, with centred features.
        """
        X = self.rng.uniform(-1, 1, (self.n_samples, self.n_features))
        weights = self.rng.uniform(1, 3, size=self.n_features)
        latent = X @ weights
        y = (latent + self.rng.normal(0, 1, size=self.n_samples) > 0).astype(int)
        return X, y, latent
