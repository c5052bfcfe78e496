import numpy as np
import math
from abc import ABC, abstractmethod
from typing import Optional, Tuple
from .params import Tree
from .util import fast_choice


class InvalidProposal(ValueError):
    """
    Raised when a proposal cannot be built, e.g. an empty cut interval.
    """


def birth_prob(tree: Tree) -> float:
    """
    Probability of proposing a birth. A single-leaf tree can only grow.
    """
    return 1.0 if tree.is_stump else 0.5

def birth_prob_from_basis(S: np.ndarray) -> float:
    return 1.0 if S.shape[1] == 1 else 0.5

def log_birth_trans(current: Tree, proposed: Tree) -> float:
    """
    Log ratio of the transition probabilities of a birth from ``current``
    to ``proposed``.
    """
    # Probability of transitioning from the proposed tree back to the current one
    numr = (1 - birth_prob_from_basis(proposed.S)) / len(proposed.terminal_split_nodes)
    # Probability of transitioning from the current tree to the proposed one
    denomr = birth_prob_from_basis(current.S) / current.n_leaves
    return math.log(numr) - math.log(denomr)

def log_death_trans(current: Tree, proposed: Tree) -> float:
    """
    Log ratio of the transition probabilities of a death from ``current``
    to ``proposed``; the exact inverse of ``log_birth_trans``.
    """
    numr = birth_prob_from_basis(proposed.S) / proposed.n_leaves
    denomr = (1 - birth_prob_from_basis(current.S)) / len(current.terminal_split_nodes)
    return math.log(numr) - math.log(denomr)

def draw_cut(tree: Tree, node_id: int, var: int, xmin, xmax, generator) -> float:
    """
    Draw a cut for splitting the leaf ``node_id`` on ``var``.

    The interval starts at the range of the feature and is narrowed by every
    ancestor that splits on the same variable.
    """
    lower = float(xmin[var])
    upper = float(xmax[var])
    node = node_id
    while node != 0:
        left = Tree.is_left(node)
        node = Tree.parent(node)
        if tree.vars[node] == var:
            if left:
                upper = min(upper, tree.thresholds[node])
            else:
                lower = max(lower, tree.thresholds[node])
    if lower >= upper:
        raise InvalidProposal(f"Empty cut interval [{lower}, {upper}] for variable {var}.")
    return generator.uniform(lower, upper)


class Move(ABC):
    """
    Base class for Metropolis-Hastings moves on a single tree.
    """
    def __init__(self, current: Tree, bounds: Optional[Tuple[np.ndarray, np.ndarray]] = None, tol: int = 100):
        """
        Initialize the move.

        Parameters:
        - current: Tree
            Current state of the tree; never modified by the move.
        - bounds: tuple of np.ndarray, optional
            Per-feature (min, max) of the training data.
        - tol: int
            Number of attempts at building a valid proposal.
        """
        self.current = current
        self.proposed: Optional[Tree] = None
        self._bounds = bounds
        self.tol = tol
        self.log_tran_ratio = 0 # Log ratio of the reverse and forward proposal densities.

    @property
    def bounds(self):
        assert self._bounds is not None, "bounds must be initialized"
        return self._bounds

    @property
    def _num_possible_proposals(self):
        return self.tol

    def propose(self, generator):
        """
        Propose a new state.
        """
        if self.is_feasible():
            for _ in range(self._num_possible_proposals):
                proposed = self.current.copy()
                success = self.try_propose(proposed, generator)
                if success:
                    self.proposed = proposed
                    return True
            # If exit loop without returning, have exceeded tol tries without
            # finding a valid proposal.
        return False

    @abstractmethod
    def is_feasible(self) -> bool:
        """
        Check whether move is feasible.
        """
        pass

    @abstractmethod
    def try_propose(self, proposed: Tree, generator) -> bool:
        """
        Try to propose a new state.
        """
        pass

    @abstractmethod
    def log_prior_ratio(self, tree_prior, lambda_prior) -> float:
        """
        Log prior ratio of the proposed and current trees.
        """
        pass

class Birth(Move):
    """
    Move to grow a random leaf into a branch with two new leaves.
    """
    def __init__(self, current: Tree, bounds: Tuple[np.ndarray, np.ndarray], tol: int = 100):
        if bounds is None:
            raise ValueError("Feature bounds must be provided for birth move.")
        super().__init__(current, bounds, tol)
        self.depth: Optional[int] = None

    def is_feasible(self):
        self.cur_leaves = self.current.leaves
        return True

    def try_propose(self, proposed, generator):
        xmin, xmax = self.bounds
        position = int(generator.integers(0, len(self.cur_leaves)))
        node_id = int(self.cur_leaves[position])
        var = int(fast_choice(generator, np.arange(len(xmin))))
        try:
            cut = draw_cut(self.current, node_id, var, xmin, xmax, generator)
        except InvalidProposal:
            return False

        proposed.split_leaf(node_id, var, cut)
        S = self.current.S
        goesleft = S[:, position] * proposed.prob_left(node_id)
        goesright = S[:, position] - goesleft
        proposed.S = np.column_stack([S[:, :position], goesleft, goesright, S[:, position + 1:]])
        proposed.ss = None

        self.depth = Tree.depth(node_id)
        self.log_tran_ratio = log_birth_trans(self.current, proposed)
        return True

    def log_prior_ratio(self, tree_prior, lambda_prior):
        return tree_prior.log_birth_tree_ratio(self.depth)

class Death(Move):
    """
    Move to collapse a branch whose children are both leaves into a leaf.
    """
    def __init__(self, current: Tree, bounds=None, tol: int = 100):
        super().__init__(current, bounds, tol)
        self.depth: Optional[int] = None

    def is_feasible(self):
        if self.current.is_stump:
            raise RuntimeError("Death move attempted on a single-leaf tree.")
        self.cur_terminal_split_nodes = self.current.terminal_split_nodes
        return len(self.cur_terminal_split_nodes) > 0

    def try_propose(self, proposed, generator):
        node_id = int(fast_choice(generator, self.cur_terminal_split_nodes))
        # The two children are adjacent in left-to-right leaf order
        position = self.current.leaf_position(2 * node_id + 1)

        proposed.prune_split(node_id)
        S = self.current.S
        merged = S[:, position] + S[:, position + 1]
        proposed.S = np.column_stack([S[:, :position], merged, S[:, position + 2:]])
        proposed.ss = None

        self.depth = Tree.depth(node_id)
        self.log_tran_ratio = log_death_trans(self.current, proposed)
        return True

    def log_prior_ratio(self, tree_prior, lambda_prior):
        return tree_prior.log_death_tree_ratio(self.depth)

class Sharpness(Move):
    """
    Random-walk move on log(lambda) for the split sharpness of a tree.
    """
    def __init__(self, current: Tree, bounds=None, tol: int = 1, step: float = 1.0):
        super().__init__(current, bounds, tol)
        self.step = step

    @property
    def _num_possible_proposals(self):
        return 1

    def is_feasible(self):
        return True

    def try_propose(self, proposed, generator):
        log_lam = math.log(self.current.lam)
        log_lam_prime = log_lam + generator.uniform(-self.step, self.step)
        proposed.lam = math.exp(log_lam_prime)
        proposed.update_routing()
        # Change of variables for the walk on the log scale
        self.log_tran_ratio = log_lam_prime - log_lam
        return True

    def log_prior_ratio(self, tree_prior, lambda_prior):
        return lambda_prior.log_prior(self.proposed.lam) - lambda_prior.log_prior(self.current.lam)


all_moves = {"birth" : Birth,
            "death" : Death,
            "sharpness" : Sharpness}
