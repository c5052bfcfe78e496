import math
import unittest
import numpy as np
from scipy.stats import multivariate_normal, chi2

from soft_bart import Tree, Dataset
from soft_bart.priors import TreesPrior, SharpnessPrior, GlobalParamPrior, SoftBARTLikelihood, \
    ComprehensivePrior, ProbitPrior
from soft_bart.params import SuffStats


class TestTreesPrior(unittest.TestCase):

    def setUp(self):
        self.prior = TreesPrior(n_trees=10, tree_alpha=0.95, tree_beta=2.0, f_k=2.0,
                                generator=np.random.default_rng(0))

    def test_grow_prob_values(self):
        self.assertAlmostEqual(self.prior.grow_prob(0), 0.95)
        self.assertAlmostEqual(self.prior.grow_prob(1), 0.2375)
        self.assertAlmostEqual(self.prior.grow_prob(2), 0.95 / 9)

    def test_grow_prob_strictly_decreasing(self):
        probs = [self.prior.grow_prob(d) for d in range(10)]
        self.assertTrue(all(0 < p < 1 for p in probs))
        self.assertTrue(all(a > b for a, b in zip(probs, probs[1:])))

    def test_default_tau(self):
        self.assertAlmostEqual(self.prior.tau, 0.25 / (4.0 * 10))
        self.assertEqual(TreesPrior(n_trees=10, tau=0.3).tau, 0.3)

    def test_tree_log_prior(self):
        tree = Tree.new(lam=0.1)
        self.assertAlmostEqual(self.prior.tree_log_prior(tree), math.log(0.05))

        tree.split_leaf(0, var=0, cut=0.5)
        expected = math.log(0.95) + 2 * math.log(1 - 0.2375)
        self.assertAlmostEqual(self.prior.tree_log_prior(tree), expected)
        self.assertAlmostEqual(self.prior.trees_log_prior([tree, Tree.new(lam=0.1)]),
                               expected + math.log(0.05))

    def test_birth_ratio_matches_prior_difference(self):
        tree = Tree.new(lam=0.1)
        tree.split_leaf(0, var=0, cut=0.5)
        grown = tree.copy()
        grown.split_leaf(2, var=1, cut=0.2)
        diff = self.prior.tree_log_prior(grown) - self.prior.tree_log_prior(tree)
        self.assertAlmostEqual(self.prior.log_birth_tree_ratio(1), diff)
        self.assertAlmostEqual(self.prior.log_death_tree_ratio(1), -diff)

    def test_resample_leaf_vals_shape(self):
        rng = np.random.default_rng(3)
        X = rng.uniform(0, 1, (40, 2))
        tree = Tree.new(lam=0.1, dataX=X)
        tree.split_leaf(0, var=0, cut=0.5)
        tree.update_routing()
        residuals = rng.normal(size=40)
        vals = self.prior.resample_leaf_vals(tree, residuals, 1.0, SoftBARTLikelihood(self.prior.tau))
        self.assertEqual(vals.shape, (2,))
        self.assertTrue(np.all(np.isfinite(vals)))

    def test_resample_leaf_vals_indefinite_covariance_raises(self):
        X = np.random.default_rng(6).uniform(0, 1, (20, 2))
        tree = Tree.new(lam=0.1, dataX=X)
        tree.split_leaf(0, var=0, cut=0.5)
        tree.update_routing()
        # a negative tau makes the leaf precision indefinite
        prior = TreesPrior(n_trees=1, tau=-0.01, generator=np.random.default_rng(0))
        with self.assertRaises(np.linalg.LinAlgError):
            prior.resample_leaf_vals(tree, np.zeros(20), 1.0, SoftBARTLikelihood(-0.01))

    def test_resample_leaf_vals_concentrates_on_posterior_mean(self):
        # With a tiny noise level the posterior of a stump is the residual mean
        X = np.zeros((100, 1))
        tree = Tree.new(lam=0.1, dataX=X)
        residuals = np.full(100, 0.3)
        prior = TreesPrior(n_trees=1, tau=1.0, generator=np.random.default_rng(1))
        vals = prior.resample_leaf_vals(tree, residuals, 1e-3, SoftBARTLikelihood(1.0))
        self.assertAlmostEqual(vals[0], 0.3, places=3)


class TestSharpnessPrior(unittest.TestCase):

    def test_log_prior_is_exponential(self):
        prior = SharpnessPrior(lambda_mean=0.1)
        self.assertAlmostEqual(prior.log_prior(0.3), math.log(10.0) - 3.0)
        self.assertEqual(prior.log_prior(-1.0), -np.inf)
        self.assertEqual(prior.init_lambda(), 0.1)

    def test_invalid_mean(self):
        with self.assertRaises(ValueError):
            SharpnessPrior(lambda_mean=0.0)


class TestGlobalParamPrior(unittest.TestCase):

    def test_posterior_params(self):
        prior = GlobalParamPrior(eps_nu=3.0, eps_delta=0.1, generator=np.random.default_rng(0))
        # sum of squares is 5
        residuals = np.array([1.0, -1.0, 1.0, -1.0, 0.5, -0.5, 0.5, -0.5, 0.0, 0.0])
        a, b = prior.posterior_params(residuals)
        self.assertAlmostEqual(a, 6.5)
        self.assertAlmostEqual(b, 2.65)
        draws = [prior.resample_sigma(residuals) for _ in range(20)]
        self.assertTrue(all(d > 0 for d in draws))

    def test_resample_sigma_positive(self):
        prior = GlobalParamPrior(eps_nu=3.0, eps_delta=1.0, generator=np.random.default_rng(0))
        residuals = np.random.default_rng(1).normal(size=10)
        draws = [prior.resample_sigma(residuals) for _ in range(50)]
        self.assertTrue(all(d > 0 and np.isfinite(d) for d in draws))

    def test_resample_sigma_needs_delta(self):
        prior = GlobalParamPrior()
        with self.assertRaises(ValueError):
            prior.resample_sigma(np.zeros(5))

    def test_fit_hyperparameters(self):
        rng = np.random.default_rng(4)
        X = rng.uniform(0, 1, (200, 2))
        y = 2 * X[:, 0] + rng.normal(0, 0.1, 200)
        data = Dataset(X, y)

        prior = GlobalParamPrior(eps_q=0.9, eps_nu=3.0)
        sigma = prior.init_sigma(data)
        self.assertAlmostEqual(sigma, 0.1, delta=0.03)
        c = chi2.ppf(0.1, df=3.0)
        self.assertAlmostEqual(prior.eps_delta, sigma ** 2 * c / 3.0)

        naive = GlobalParamPrior(specification="naive")
        self.assertAlmostEqual(naive.init_sigma(data), float(np.std(y)))

        fixed = GlobalParamPrior(eps_delta=0.7)
        fixed.fit_hyperparameters(data)
        self.assertEqual(fixed.eps_delta, 0.7)

    def test_constant_response_keeps_delta_positive(self):
        data = Dataset(np.random.default_rng(0).uniform(size=(10, 2)), np.full(10, 3.0))
        prior = GlobalParamPrior(specification="naive")
        self.assertEqual(prior.init_sigma(data), 1.0)
        self.assertGreater(prior.eps_delta, 0)
        prior.generator = np.random.default_rng(1)
        self.assertGreater(prior.resample_sigma(np.zeros(10)), 0)

    def test_invalid_specification(self):
        data = Dataset(np.zeros((3, 1)), np.zeros(3))
        with self.assertRaises(ValueError):
            GlobalParamPrior(specification="cubic").init_sigma(data)


class TestSoftBARTLikelihood(unittest.TestCase):

    def setUp(self):
        rng = np.random.default_rng(5)
        self.X = rng.uniform(0, 1, (25, 2))
        self.tree = Tree.new(lam=0.2, dataX=self.X)
        self.tree.split_leaf(0, var=0, cut=0.5)
        self.tree.split_leaf(1, var=1, cut=0.4)
        self.tree.update_routing()
        self.residuals = rng.normal(size=25)
        self.tau = 0.5
        self.sigma = 0.8
        self.likelihood = SoftBARTLikelihood(self.tau)

    def test_suff_stats(self):
        S = self.tree.S
        ss = self.likelihood.suff_stats(self.residuals, S, self.sigma)
        self.assertEqual(ss.n_leaves, 3)
        precision = S.T @ S / self.sigma ** 2 + np.eye(3) / self.tau
        np.testing.assert_allclose(ss.omega @ precision, np.eye(3), atol=1e-10)
        np.testing.assert_array_equal(ss.omega, ss.omega.T)
        np.testing.assert_allclose(ss.rhat, S.T @ self.residuals / self.sigma ** 2)

    def test_marginal_matches_gaussian_density(self):
        # Integrating the leaves out gives r ~ N(0, sigma^2 I + tau S S')
        S = self.tree.S
        ss = self.likelihood.suff_stats(self.residuals, S, self.sigma)
        cov = self.sigma ** 2 * np.eye(25) + self.tau * S @ S.T
        expected = multivariate_normal(mean=np.zeros(25), cov=cov).logpdf(self.residuals)
        self.assertAlmostEqual(self.likelihood.log_marginal_lkhd(self.residuals, ss, self.sigma),
                               expected, places=8)

    def test_ratio_against_stump(self):
        stump = Tree.new(lam=0.2, dataX=self.X)
        ss_stump = self.likelihood.suff_stats(self.residuals, stump.S, self.sigma)
        ss_tree = self.likelihood.suff_stats(self.residuals, self.tree.S, self.sigma)
        ratio = self.likelihood.log_marginal_lkhd_ratio(self.residuals, ss_stump, ss_tree, self.sigma)
        self.assertAlmostEqual(
            ratio,
            self.likelihood.log_marginal_lkhd(self.residuals, ss_tree, self.sigma)
            - self.likelihood.log_marginal_lkhd(self.residuals, ss_stump, self.sigma))

    def test_non_positive_definite_raises(self):
        ss = SuffStats(omega=-np.eye(3), rhat=np.zeros(3), n_leaves=3)
        with self.assertRaises(np.linalg.LinAlgError):
            self.likelihood.log_marginal_lkhd(self.residuals, ss, self.sigma)


class TestPriorBundles(unittest.TestCase):

    def test_comprehensive_prior_shares_tau(self):
        prior = ComprehensivePrior(n_trees=20, f_k=2.0)
        self.assertAlmostEqual(prior.likelihood.tau, 0.25 / (4.0 * 20))
        self.assertEqual(prior.lambda_prior.lambda_mean, 0.1)
        self.assertIsNone(prior.global_prior.eps_delta)

    def test_probit_prior_default_tau(self):
        prior = ProbitPrior(n_trees=20, f_k=2.0)
        self.assertAlmostEqual(prior.tree_prior.tau, 9.0 / (4.0 * 20))
        self.assertEqual(prior.likelihood.tau, prior.tree_prior.tau)


if __name__ == "__main__":
    unittest.main()
