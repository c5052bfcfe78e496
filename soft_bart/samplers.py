import logging
import numpy as np
from tqdm import tqdm
from abc import ABC, abstractmethod
from typing import Optional
from scipy.stats import truncnorm

from .params import Tree, BartState
from .moves import all_moves, Move, birth_prob
from .util import Dataset
from .priors import ComprehensivePrior, ProbitPrior

logger = logging.getLogger(__name__)


class Sampler(ABC):
    """
    Base class for the soft BART sampler.
    """
    def __init__(self, prior, generator: np.random.Generator, tol: int = 100):
        """
        Initialize the sampler with the given parameters.

        Parameters:
            prior: The prior distribution.
            generator (np.random.Generator): A random number generator.
            tol (int): Attempts at building a valid birth proposal.

        Attributes:
            data: Placeholder for data, initially set to None.
            prior: The prior distribution.
            n_iter: Number of iterations, initially set to None.
            trace (list): A list to store the trace of the sampling process.
            generator (np.random.Generator): A random number generator.
        """
        self._data: Optional[Dataset] = None
        self.prior = prior

        self.tree_prior = prior.tree_prior
        self.lambda_prior = prior.lambda_prior
        self.likelihood = prior.likelihood
        self.tol = tol

        self.n_iter = None
        self.trace = []
        self.generator = generator

        self.move_selected_counts = {k: 0 for k in all_moves}
        self.move_success_counts = {k: 0 for k in all_moves}
        self.move_accepted_counts = {k: 0 for k in all_moves}

    @property
    def data(self) -> Dataset:
        assert self._data, "Data has not been added yet."
        return self._data

    def add_data(self, data: Dataset):
        """
        Adds data to the sampler.

        Parameters:
        data (Dataset): The data to be added to the sampler.
        """
        self._data = data

    def clear_last_cache(self):
        '''
        This method clears the cache of the last trace in the sampler.
        '''
        if len(self.trace) > 0:
            self.trace[-1].clear_cache()

    def run(self, n_iter: int, progress_bar: bool = True, quietly: bool = False,
            current: Optional[BartState] = None, n_skip: int = 0):
        """
        Run the sampler for a specified number of iterations from `current` or a fresh start.

        Parameters:
        n_iter (int): The number of iterations to run the sampler.
        n_skip (int): Number of leading iterations left out of the trace.
        """
        if quietly:
            progress_bar = False

        current_state = current if current is not None else self.get_init_state()

        self.trace = []
        self.n_iter = n_iter
        logger.info("Running %d iterations (%d skipped) over %d trees",
                    n_iter, n_skip, current_state.n_trees)

        if n_skip == 0:
            self.trace.append(current_state) # Add initial state to trace

        iterator = tqdm(range(n_iter), desc="Iterations") if progress_bar else range(n_iter)

        for iter in iterator:
            if not progress_bar and iter % 10 == 0 and not quietly:
                logger.info("Running iteration %d/%d", iter, n_iter)

            current_state = self.advance(current_state)

            if iter >= n_skip:
                self.clear_last_cache()  # Clear cache of the last trace
                self.trace.append(current_state)

        for key in all_moves:
            logger.info("Move %s: selected %d, proposed %d, accepted %d", key,
                        self.move_selected_counts[key], self.move_success_counts[key],
                        self.move_accepted_counts[key])
        return self.trace

    def sample_structural_move(self, tree: Tree) -> str:
        """
        Birth with probability birth_prob(tree), death otherwise.
        """
        if self.generator.uniform(0, 1) < birth_prob(tree):
            return "birth"
        return "death"

    def log_mh_ratio(self, move: Move, residuals, sigma: float) -> float:
        """Calculate total log Metropolis-Hastings ratio of a proposed move."""
        move.current.ss = self.likelihood.suff_stats(residuals, move.current.S, sigma)
        move.proposed.ss = self.likelihood.suff_stats(residuals, move.proposed.S, sigma)
        return self.likelihood.log_marginal_lkhd_ratio(residuals, move.current.ss, move.proposed.ss, sigma) + \
            move.log_prior_ratio(self.tree_prior, self.lambda_prior) + \
            move.log_tran_ratio

    def metropolis_accept(self, log_ratio: float) -> bool:
        """
        Accept with probability min(1, exp(log_ratio)). Non-finite ratios are rejected.
        """
        if not np.isfinite(log_ratio):
            logger.debug("Rejecting proposal with non-finite log ratio %s", log_ratio)
            return False
        return np.log(self.generator.uniform(0, 1)) < log_ratio

    def mh_step(self, move_key: str, tree: Tree, residuals, sigma: float) -> Tree:
        """
        Propose ``move_key`` on ``tree``; returns the proposed tree when
        accepted and ``tree`` itself otherwise.
        """
        self.move_selected_counts[move_key] += 1
        move = all_moves[move_key](tree, bounds=(self.data.xmin, self.data.xmax), tol=self.tol)
        if move.propose(self.generator): # Check if a valid move was proposed
            self.move_success_counts[move_key] += 1
            if self.metropolis_accept(self.log_mh_ratio(move, residuals, sigma)):
                self.move_accepted_counts[move_key] += 1
                return move.proposed
        return tree

    def update_tree(self, tree: Tree, residuals, sigma: float) -> Tree:
        """
        Structural move, sharpness move and leaf-value draw for one tree.
        """
        tree = self.mh_step(self.sample_structural_move(tree), tree, residuals, sigma)
        tree = self.mh_step("sharpness", tree, residuals, sigma)
        new_leaf_vals = self.tree_prior.resample_leaf_vals(tree, residuals, sigma, self.likelihood)
        tree.set_leaf_values(new_leaf_vals)
        return tree

    def sweep_trees(self, state: BartState, data_y):
        """
        Backfitting sweep: update every tree against the residuals of all the
        others, then recompute the aggregate fit from scratch.
        """
        for k in range(state.n_trees):
            tree = state.trees[k]
            fhat_k = state.fhat - tree.evaluate()
            residuals = data_y - fhat_k
            tree = self.update_tree(tree, residuals, state.sigma)
            state.trees[k] = tree
            state.fhat = fhat_k + tree.evaluate()
        state.refresh_fhat()

    def init_trees(self) -> list:
        return [Tree.new(self.lambda_prior.init_lambda(), self.data.X) for _ in range(self.tree_prior.n_trees)]

    @abstractmethod
    def get_init_state(self) -> BartState:
        """
        Retrieve the initial state for the sampler.
        """
        pass

    @abstractmethod
    def advance(self, current: BartState) -> BartState:
        """
        Perform one iteration of the sampler.
        """
        pass

class DefaultSampler(Sampler):
    """
    Sampler for continuous responses.
    """
    def __init__(self, prior: ComprehensivePrior, generator: np.random.Generator, tol: int = 100):
        self.global_prior = prior.global_prior
        super().__init__(prior, generator, tol)

    def get_init_state(self) -> BartState:
        """
        Single-leaf trees and the data-driven sigma.
        """
        if self._data is None:
            raise AttributeError("Need data before running sampler.")
        sigma = self.global_prior.init_sigma(self.data)
        return BartState(self.init_trees(), sigma)

    def advance(self, current: BartState) -> BartState:
        """
        Perform one iteration of the sampler.
        """
        state = current.copy() # First make a copy
        self.sweep_trees(state, self.data.y)
        state.sigma = self.global_prior.resample_sigma(self.data.y - state.fhat)
        return state

class ProbitSampler(Sampler):
    """
    Probit sampler for binary soft BART.
    """
    def __init__(self, prior: ProbitPrior, generator: np.random.Generator, tol: int = 100):
        super().__init__(prior, generator, tol)

    def get_init_state(self) -> BartState:
        if self._data is None:
            raise AttributeError("Need data before running sampler.")
        return BartState(self.init_trees(), sigma=1.0, latents=np.zeros(self.data.n))

    def sample_latents(self, y, Gx):
        """
        Albert-Chib augmentation: Z ~ N(Gx, 1) truncated to (0, inf) where y is 1
        and to (-inf, 0) where y is 0.
        """
        Z = np.empty_like(Gx, dtype=np.float64)

        mask1 = (y == 1)
        mask0 = ~mask1

        if np.any(mask1):
            a1 = (0 - Gx[mask1]) / 1
            b1 = np.full_like(a1, np.inf)
            Z[mask1] = truncnorm.rvs(a1, b1, loc=Gx[mask1], scale=1, random_state=self.generator)

        if np.any(mask0):
            a0 = np.full_like(Gx[mask0], -np.inf)
            b0 = (0 - Gx[mask0]) / 1
            Z[mask0] = truncnorm.rvs(a0, b0, loc=Gx[mask0], scale=1, random_state=self.generator)

        return Z

    def advance(self, current: BartState) -> BartState:
        """
        Perform one iteration of the sampler.
        """
        state = current.copy() # First make a copy
        state.latents = self.sample_latents(self.data.y, state.fhat)
        self.sweep_trees(state, state.latents)
        return state

all_samplers = {"default" : DefaultSampler, "binary": ProbitSampler}
