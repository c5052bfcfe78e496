import math
import numpy as np
from typing import Optional
from scipy.stats import invgamma, chi2, expon
from sklearn.linear_model import LinearRegression
from numba import njit

from .params import Tree, SuffStats
from .util import Dataset

# Standalone Numba-optimized functions

@njit(cache=True)
def _trees_log_prior_numba(tree_vars, alpha, beta):
    # Depth of each slot in the heap layout
    d = np.ceil(np.log2(np.arange(len(tree_vars)) + 2)) - 1
    log_p_split = np.log(alpha) - beta * np.log(1 + d)

    log_prior = 0.0
    for i in range(len(tree_vars)):
        if tree_vars[i] == -1:  # Leaf node
            log_prior += np.log(1 - np.exp(log_p_split[i]))
        elif tree_vars[i] != -2:  # Split node (not leaf and not empty)
            log_prior += log_p_split[i]

    return log_prior


class TreesPrior:
    """
    Prior for tree structure and leaf values.

    Attributes:
        n_trees (int): Number of trees.
        alpha (float): Alpha parameter for the tree prior.
        beta (float): Beta parameter for the tree prior.
        f_k (float): Scaling factor for the variance of the leaf parameters.
        tau (float): Prior variance of the leaf parameters.
        generator: Random number generator.
    """
    def __init__(self, n_trees=50, tree_alpha=0.95, tree_beta=2.0, f_k=2.0, tau: Optional[float] = None,
                 generator=np.random.default_rng()):
        self.n_trees = n_trees
        self.alpha = tree_alpha
        self.beta = tree_beta
        self.f_k = f_k
        # The default assumes a response scaled to [-0.5, 0.5]
        self.tau = 0.25 / (self.f_k ** 2 * n_trees) if tau is None else float(tau)
        self.generator = generator

    def grow_prob(self, depth):
        """
        Prior probability that a node at the given depth is a branch.
        """
        return self.alpha * (1.0 + depth) ** (-self.beta)

    def tree_log_prior(self, tree: Tree) -> float:
        return float(_trees_log_prior_numba(tree.vars, self.alpha, self.beta))

    def trees_log_prior(self, trees) -> float:
        """
        Log prior of an ensemble; the sum of the independent tree priors.
        """
        return sum(self.tree_log_prior(tree) for tree in trees)

    def log_birth_tree_ratio(self, depth: int) -> float:
        """
        Log prior ratio of growing a leaf at ``depth`` into a branch with two
        leaves.
        """
        numr = self.grow_prob(depth) * (1 - self.grow_prob(depth + 1)) ** 2
        denomr = 1 - self.grow_prob(depth)
        return math.log(numr) - math.log(denomr)

    def log_death_tree_ratio(self, depth: int) -> float:
        return -1.0 * self.log_birth_tree_ratio(depth)

    def resample_leaf_vals(self, tree: Tree, residuals, sigma: float, likelihood: "SoftBARTLikelihood"):
        """
        Draw the leaf values of a tree from their conjugate posterior.

        Parameters:
        -----------
        tree : Tree
            Tree whose cached routing matrix defines the leaf basis.
        residuals : numpy.ndarray
            Response minus the fit of every other tree.
        sigma : float
            Current residual standard deviation.
        likelihood : SoftBARTLikelihood
            Provides the sufficient statistics.

        Returns:
        --------
        numpy.ndarray
            New leaf values in left-to-right leaf order.
        """
        ss = likelihood.suff_stats(residuals, tree.S, sigma)
        mean = ss.omega @ ss.rhat
        # Raises LinAlgError when omega is not positive definite
        return self.generator.multivariate_normal(mean, ss.omega, method="cholesky")


class SharpnessPrior:
    """
    Exponential prior on the per-tree split sharpness lambda.
    """
    def __init__(self, lambda_mean=0.1):
        if lambda_mean <= 0:
            raise ValueError("lambda_mean must be positive.")
        self.lambda_mean = lambda_mean
        self._dist = expon(scale=lambda_mean)

    def log_prior(self, lam: float) -> float:
        return float(self._dist.logpdf(lam))

    def init_lambda(self) -> float:
        return float(self.lambda_mean)


class GlobalParamPrior:
    """
    Prior for the residual variance.

    sigma^2 ~ InverseGamma(nu / 2, nu * delta / 2).

        Args:
        eps_q (float, optional): Quantile used for setting delta from the data. Defaults to 0.9.
        eps_nu (float, optional): Degrees of freedom nu. Defaults to 3.
        eps_delta (float, optional): Scale delta. Fitted from the data when omitted.
        specification (str, optional): Specification for a data-driven initial estimate for sigma. Defaults to "linear".
    """
    def __init__(self, eps_q=0.9, eps_nu=3.0, eps_delta: Optional[float] = None, specification="linear",
                 generator=np.random.default_rng()):
        self.eps_q = eps_q
        self.eps_nu = eps_nu
        self.eps_delta = eps_delta
        self.sigma_hat: Optional[float] = None
        self.specification = specification
        self.generator = generator

    def fit_hyperparameters(self, data: Dataset):
        """Fit sigma_hat and, unless given, delta to the data"""
        self.sigma_hat = self._fit_sigma_hat(data)
        if self.sigma_hat <= 0:
            # Constant or perfectly fitted response; keep delta positive
            self.sigma_hat = 1.0
        if self.eps_delta is None:
            self.eps_delta = self._fit_eps_delta(self.sigma_hat)

    def init_sigma(self, data: Dataset) -> float:
        """
        Initial residual standard deviation: the data-driven estimate sigma_hat.
        """
        self.fit_hyperparameters(data)
        return self.sigma_hat

    def posterior_params(self, residuals):
        """
        Shape and scale of the inverse-gamma posterior of sigma^2.
        """
        n = len(residuals)
        post_a = 0.5 * (self.eps_nu + n)
        post_b = 0.5 * (self.eps_nu * self.eps_delta + np.sum(residuals ** 2))
        return post_a, post_b

    def resample_sigma(self, residuals) -> float:
        """
        Draw sigma given the residuals of the whole ensemble.

        Parameters:
            residuals: y minus the aggregate fit

        Returns:
            float: Sampled residual standard deviation
        """
        if self.eps_delta is None:
            raise ValueError("delta has not been set; call fit_hyperparameters first.")
        post_a, post_b = self.posterior_params(residuals)
        sigma2 = invgamma.rvs(a=post_a, scale=post_b, random_state=self.generator)
        return float(np.sqrt(sigma2))

    def _fit_sigma_hat(self, data: Dataset) -> float:
        if self.specification == "naive":
            return float(np.std(data.y))
        elif self.specification == "linear":
            model = LinearRegression().fit(data.X, data.y)
            resids = data.y - model.predict(data.X)
            return float(np.std(resids))
        raise ValueError("Invalid specification for the noise variance prior.")

    def _fit_eps_delta(self, sigma_hat: float) -> float:
        """
        Find delta such that P(sigma^2 < sigma_hat^2) = eps_q under the prior.
        """
        c = chi2.ppf(1 - self.eps_q, df=self.eps_nu).item()
        return (sigma_hat ** 2 * c) / self.eps_nu


class SoftBARTLikelihood:
    """
    Gaussian likelihood with the leaf values of one tree integrated out.
    """
    def __init__(self, tau: float):
        """
        tau (float): Prior variance of the leaf parameters.
        """
        self.tau = tau

    def suff_stats(self, residuals, S, sigma: float) -> SuffStats:
        """
        Sufficient statistics of the residuals under the routing matrix S.
        Always computed from scratch.
        """
        sigma2 = sigma ** 2
        n_leaves = S.shape[1]
        precision = S.T @ S / sigma2 + np.eye(n_leaves) / self.tau
        omega = np.linalg.inv(precision)
        omega = 0.5 * (omega + omega.T)
        rhat = S.T @ residuals / sigma2
        return SuffStats(omega=omega, rhat=rhat, n_leaves=n_leaves)

    def log_marginal_lkhd(self, residuals, ss: SuffStats, sigma: float) -> float:
        """
        Log density of the residuals with the leaf values integrated out.
        """
        n = len(residuals)
        sign, logdet = np.linalg.slogdet(2 * math.pi * ss.omega)
        if sign <= 0:
            raise np.linalg.LinAlgError("Posterior covariance of the leaf values is not positive definite.")
        mll = 0.5 * logdet
        mll -= 0.5 * n * math.log(2 * math.pi * sigma ** 2)
        mll -= 0.5 * ss.n_leaves * math.log(2 * math.pi * self.tau)
        mll -= 0.5 * float(residuals @ residuals) / sigma ** 2
        mll += 0.5 * float(ss.rhat @ ss.omega @ ss.rhat)
        return mll

    def log_marginal_lkhd_ratio(self, residuals, ss_current: SuffStats, ss_proposed: SuffStats, sigma: float) -> float:
        return self.log_marginal_lkhd(residuals, ss_proposed, sigma) - \
            self.log_marginal_lkhd(residuals, ss_current, sigma)


class ComprehensivePrior:
    def __init__(self, n_trees=50, tree_alpha=0.95, tree_beta=2.0, f_k=2.0, tau=None, lambda_mean=0.1,
                 eps_q=0.9, eps_nu=3.0, eps_delta=None, specification="linear",
                 generator=np.random.default_rng()):
        self.tree_prior = TreesPrior(n_trees, tree_alpha, tree_beta, f_k, tau, generator)
        self.lambda_prior = SharpnessPrior(lambda_mean)
        self.global_prior = GlobalParamPrior(eps_q, eps_nu, eps_delta, specification, generator)
        self.likelihood = SoftBARTLikelihood(self.tree_prior.tau)


class ProbitPrior:
    """
    Soft BART prior for binary classification; sigma is fixed at one.
    """
    def __init__(self, n_trees=50, tree_alpha=0.95, tree_beta=2.0, f_k=2.0, tau=None, lambda_mean=0.1,
                 generator=np.random.default_rng()):
        if tau is None:
            # Latent scale: f(x) mostly within [-3, 3]
            tau = 9.0 / (f_k ** 2 * n_trees)
        self.tree_prior = TreesPrior(n_trees, tree_alpha, tree_beta, f_k, tau, generator)
        self.lambda_prior = SharpnessPrior(lambda_mean)
        self.likelihood = SoftBARTLikelihood(self.tree_prior.tau)
