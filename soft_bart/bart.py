import numpy as np
from scipy.stats import norm

from .samplers import Sampler, DefaultSampler, ProbitSampler
from .priors import ComprehensivePrior, ProbitPrior
from .util import Preprocessor, DefaultPreprocessor, ClassificationPreprocessor


class SoftBART:
    """
    API for the soft BART model.
    """
    def __init__(self, preprocessor: Preprocessor, sampler: Sampler,
                 ndpost=1000, nskip=100):
        """
        Initialize the soft BART model.
        """
        self.preprocessor = preprocessor
        self.sampler = sampler
        self.ndpost = int(ndpost)
        self.nskip = int(nskip)
        self.trace = []
        self.is_fitted = False
        self.data = None

    def fit(self, X, y, quietly=False):
        """
        Fit the soft BART model.
        """
        self.data = self.preprocessor.fit_transform(X, y)
        self.sampler.add_data(self.data)
        self.trace = self.sampler.run(self.ndpost + self.nskip, quietly=quietly, n_skip=self.nskip)
        self.is_fitted = True
        return self

    @property
    def _trace_length(self):
        return len(self.trace)

    @property
    def range_post(self):
        """
        Get the range of posterior samples.
        """
        total_iterations = self._trace_length
        if total_iterations < self.ndpost:
            raise ValueError(f"Not enough posterior samples: {total_iterations} < {self.ndpost} (provided ndpost).")
        return range(total_iterations - self.ndpost, total_iterations)

    def _check_fitted(self):
        if not self.is_fitted:
            raise ValueError("Model must be fitted before prediction.")

    def posterior_f(self, X, backtransform=True):
        """
        Get the posterior distribution of f(x) for each row in X.
        """
        self._check_fitted()
        preds = np.zeros((X.shape[0], self.ndpost))
        for i, k in enumerate(self.range_post):
            preds[:, i] = self.predict_trace(k, X, backtransform=backtransform)
        return preds

    def predict(self, X):
        """
        Predict using the soft BART model.
        """
        return np.mean(self.posterior_f(X), axis=1)

    def predict_trace(self, k: int, X, backtransform=True):
        """
        Predict using a single trace state.
        """
        y_eval = self.trace[k].evaluate(np.asarray(X, dtype=np.float64))
        if backtransform:
            return self.preprocessor.backtransform_y(y_eval)
        else:
            return y_eval

class DefaultSoftBART(SoftBART):

    def __init__(self, ndpost=1000, nskip=100, n_trees=50, tree_alpha: float=0.95,
                 tree_beta: float=2.0, f_k=2.0, tau=None, lambda_mean=0.1,
                 eps_q: float=0.9, eps_nu: float=3, eps_delta=None, specification="linear",
                 tol=100, random_state=42):
        preprocessor = DefaultPreprocessor()
        rng = np.random.default_rng(random_state)
        prior = ComprehensivePrior(n_trees, tree_alpha, tree_beta, f_k, tau, lambda_mean,
                                   eps_q, eps_nu, eps_delta, specification, rng)
        sampler = DefaultSampler(prior=prior, generator=rng, tol=tol)
        super().__init__(preprocessor, sampler, ndpost, nskip)

    def posterior_sigma(self, backtransform=True):
        """
        Posterior draws of the residual standard deviation.
        """
        self._check_fitted()
        sigmas = np.array([self.trace[k].sigma for k in self.range_post])
        if backtransform:
            return self.preprocessor.backtransform_scale(sigmas)
        return sigmas

    def posterior_predict(self, X):
        """
        Get the full posterior distribution of predictions.

        Returns:
            Array of shape (n_samples, n_posterior_samples) with posterior samples
        """
        preds = self.posterior_f(X, backtransform=False)
        for i, k in enumerate(self.range_post):
            sigma = self.trace[k].sigma
            preds[:, i] += self.sampler.generator.normal(0, sigma, size=preds[:, i].shape)
            preds[:, i] = self.preprocessor.backtransform_y(preds[:, i])
        return preds

class ProbitSoftBART(SoftBART):
    """
    Binary soft BART using Albert-Chib data augmentation and probit link.
    """

    def __init__(self, ndpost=1000, nskip=100, n_trees=50, tree_alpha: float=0.95,
                 tree_beta: float=2.0, f_k=2.0, tau=None, lambda_mean=0.1,
                 tol=100, random_state=42):
        preprocessor = ClassificationPreprocessor()
        rng = np.random.default_rng(random_state)
        prior = ProbitPrior(n_trees, tree_alpha, tree_beta, f_k, tau, lambda_mean, rng)
        sampler = ProbitSampler(prior=prior, generator=rng, tol=tol)
        super().__init__(preprocessor, sampler, ndpost, nskip)

    def posterior_f(self, X, backtransform=True):
        """
        Get the posterior distribution of the latent f(x) for each row in X.
        """
        self._check_fitted()
        preds = np.zeros((X.shape[0], self.ndpost))
        for i, k in enumerate(self.range_post):
            preds[:, i] = self.predict_trace(k, X)
        return preds

    def predict_trace(self, k: int, X, backtransform=True):
        """
        Latent f(X) of a single trace state. The latent scale has no
        backtransform; labels come from ``predict``.
        """
        return self.trace[k].evaluate(np.asarray(X, dtype=np.float64))

    def posterior_predict_proba(self, X):
        """
        Get full posterior distribution of predicted probabilities.

        Returns:
            Array of shape (n_samples, n_posterior_samples) with probability samples
        """
        return norm.cdf(self.posterior_f(X))

    def predict_proba(self, X):
        """
        Predict class probabilities using the probit link.

        Returns:
            Array of shape (n_samples, 2) with probabilities for classes 0 and 1
        """
        mean_prob_1 = np.mean(self.posterior_predict_proba(X), axis=1)
        return np.column_stack([1 - mean_prob_1, mean_prob_1])

    def predict(self, X, threshold=0.5):
        """
        Predict class labels.

        Parameters:
            X: Input features
            threshold: Decision threshold (default 0.5)
        """
        proba = self.predict_proba(X)
        return self.preprocessor.backtransform_y((proba[:, 1] >= threshold).astype(int))

    def posterior_predict(self, X):
        """
        Get full posterior distribution of predicted classes.
        """
        prob_samples = self.posterior_predict_proba(X)
        draws = self.sampler.generator.binomial(1, prob_samples).astype(int)
        y_labels = np.empty(draws.shape, dtype=self.preprocessor.labels.dtype)
        for k in range(draws.shape[1]):
            y_labels[:, k] = self.preprocessor.backtransform_y(draws[:, k])
        return y_labels
