import unittest
from unittest.mock import patch
import numpy as np

from soft_bart import Tree, BartState, Dataset
from soft_bart.moves import Birth
from soft_bart.priors import ComprehensivePrior, ProbitPrior
from soft_bart.samplers import DefaultSampler, ProbitSampler


def make_sampler(X, y, n_trees=1, tau=1.0, seed=0):
    generator = np.random.default_rng(seed)
    prior = ComprehensivePrior(n_trees=n_trees, tau=tau, eps_delta=1.0, generator=generator)
    sampler = DefaultSampler(prior=prior, generator=generator)
    sampler.add_data(Dataset(X, y))
    return sampler


class TestSingleLeafUpdate(unittest.TestCase):

    def setUp(self):
        rng = np.random.default_rng(21)
        self.X = rng.uniform(0, 1, (4, 2))
        self.residuals = np.array([0.5, -0.3, 0.2, 0.1])
        self.sampler = make_sampler(self.X, self.residuals)

    def test_mh_ratio_of_root_birth_is_finite(self):
        stump = Tree.new(lam=0.1, dataX=self.X)
        move = Birth(stump, bounds=(self.sampler.data.xmin, self.sampler.data.xmax))
        self.assertTrue(move.propose(self.sampler.generator))
        log_ratio = self.sampler.log_mh_ratio(move, self.residuals, 1.0)
        self.assertTrue(np.isfinite(log_ratio))
        self.assertEqual(move.current.ss.n_leaves, 1)
        self.assertEqual(move.proposed.ss.n_leaves, 2)

    def test_stump_update_attempts_birth(self):
        stump = Tree.new(lam=0.1, dataX=self.X)
        with patch.object(self.sampler, "metropolis_accept", return_value=True):
            tree = self.sampler.update_tree(stump, self.residuals, 1.0)

        self.assertEqual(self.sampler.move_selected_counts["birth"], 1)
        self.assertEqual(self.sampler.move_selected_counts["death"], 0)
        self.assertEqual(self.sampler.move_selected_counts["sharpness"], 1)
        self.assertEqual(self.sampler.move_accepted_counts["birth"], 1)
        self.assertEqual(tree.n_leaves, 2)
        self.assertEqual(tree.S.shape, (4, 2))
        np.testing.assert_allclose(tree.S.sum(axis=1), 1.0)
        np.testing.assert_allclose(tree.S, tree.routing_matrix())
        self.assertTrue(np.all(np.isfinite(tree.leaf_values)))
        # the input tree is not modified by accepted proposals
        self.assertTrue(stump.is_stump)


class TestMetropolisAccept(unittest.TestCase):

    def setUp(self):
        X = np.random.default_rng(0).uniform(0, 1, (10, 2))
        self.sampler = make_sampler(X, np.zeros(10))

    def test_non_finite_ratio_rejected(self):
        self.assertFalse(self.sampler.metropolis_accept(np.nan))
        self.assertFalse(self.sampler.metropolis_accept(np.inf))
        self.assertFalse(self.sampler.metropolis_accept(-np.inf))

    def test_finite_ratio(self):
        self.assertTrue(self.sampler.metropolis_accept(1000.0))
        self.assertTrue(self.sampler.metropolis_accept(0.0))
        self.assertFalse(self.sampler.metropolis_accept(-1000.0))


class TestSweep(unittest.TestCase):

    def setUp(self):
        rng = np.random.default_rng(8)
        self.X = rng.uniform(0, 1, (30, 2))
        self.y = np.sin(3 * self.X[:, 0]) + rng.normal(0, 0.1, 30)
        self.y = self.y - self.y.mean()
        self.sampler = make_sampler(self.X, self.y, n_trees=4, tau=0.1, seed=3)

    def test_rejected_sweep_keeps_state(self):
        state = self.sampler.get_init_state()
        for _ in range(3):
            state = self.sampler.advance(state)
        snapshot = state.copy()

        with patch.object(self.sampler, "metropolis_accept", return_value=False), \
                patch.object(self.sampler.tree_prior, "resample_leaf_vals",
                             side_effect=lambda tree, *args: tree.leaf_values):
            self.sampler.sweep_trees(state, self.y)

        self.assertEqual(state.sigma, snapshot.sigma)
        np.testing.assert_array_equal(state.fhat, snapshot.fhat)
        for tree, before in zip(state.trees, snapshot.trees):
            np.testing.assert_array_equal(tree.vars, before.vars)
            np.testing.assert_array_equal(tree.thresholds, before.thresholds)
            np.testing.assert_array_equal(tree.leaf_values, before.leaf_values)
            np.testing.assert_array_equal(tree.S, before.S)
            self.assertEqual(tree.lam, before.lam)

    def test_fhat_matches_trees_after_advance(self):
        state = self.sampler.get_init_state()
        for _ in range(5):
            state = self.sampler.advance(state)
            expected = np.sum([tree.S @ tree.leaf_values for tree in state.trees], axis=0)
            np.testing.assert_allclose(state.fhat, expected)
            self.assertGreater(state.sigma, 0)

    def test_advance_does_not_modify_input(self):
        state = self.sampler.get_init_state()
        new_state = self.sampler.advance(state)
        self.assertIsNot(new_state, state)
        self.assertTrue(all(tree.is_stump for tree in state.trees))
        np.testing.assert_array_equal(state.fhat, np.zeros(30))

    def test_run_trace(self):
        trace = self.sampler.run(6, quietly=True)
        self.assertEqual(len(trace), 7)
        self.assertTrue(all(s.sigma > 0 for s in trace))
        # only the latest state keeps its training caches
        self.assertIsNone(trace[0].fhat)
        self.assertIsNotNone(trace[-1].fhat)

        trace = self.sampler.run(6, progress_bar=False, n_skip=2)
        self.assertEqual(len(trace), 4)

    def test_init_state(self):
        state = self.sampler.get_init_state()
        self.assertEqual(state.n_trees, 4)
        np.testing.assert_array_equal(state.lambdas, np.full(4, 0.1))
        np.testing.assert_array_equal(state.n_leaves, np.ones(4))
        self.assertGreater(state.sigma, 0)

    def test_init_state_needs_data(self):
        prior = ComprehensivePrior(n_trees=2)
        sampler = DefaultSampler(prior=prior, generator=np.random.default_rng(0))
        with self.assertRaises(AttributeError):
            sampler.get_init_state()


class TestProbitSampler(unittest.TestCase):

    def setUp(self):
        rng = np.random.default_rng(9)
        self.X = rng.uniform(-1, 1, (40, 2))
        self.y = (self.X[:, 0] > 0).astype(int)
        generator = np.random.default_rng(1)
        prior = ProbitPrior(n_trees=3, generator=generator)
        self.sampler = ProbitSampler(prior=prior, generator=generator)
        self.sampler.add_data(Dataset(self.X, self.y))

    def test_latents_respect_labels(self):
        Gx = np.linspace(-2, 2, 40)
        Z = self.sampler.sample_latents(self.y, Gx)
        self.assertTrue(np.all(Z[self.y == 1] >= 0))
        self.assertTrue(np.all(Z[self.y == 0] <= 0))

    def test_advance_keeps_unit_sigma(self):
        state = self.sampler.get_init_state()
        np.testing.assert_array_equal(state.latents, np.zeros(40))
        for _ in range(3):
            state = self.sampler.advance(state)
        self.assertEqual(state.sigma, 1.0)
        self.assertEqual(state.latents.shape, (40,))
        self.assertTrue(np.all(state.latents[self.y == 1] >= 0))


if __name__ == "__main__":
    unittest.main()
