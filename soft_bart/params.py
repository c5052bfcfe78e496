import math
import numpy as np
from typing import NamedTuple, Optional
from numpy.typing import NDArray
from numba import njit


@njit(cache=True)
def _prob_left_scalar(x, cut, lam):
    """
    Logistic gate 1 / (1 + exp((x - cut) / lam)), evaluated without overflow.
    """
    z = (x - cut) / lam
    if z >= 0:
        e = math.exp(-z)
        return e / (1.0 + e)
    return 1.0 / (1.0 + math.exp(z))

@njit(cache=True)
def _prob_left_numba(x_col, cut, lam):
    out = np.empty(x_col.shape[0], dtype=np.float64)
    for i in range(x_col.shape[0]):
        out[i] = _prob_left_scalar(x_col[i], cut, lam)
    return out

@njit(cache=True)
def _node_prob_numba(X, vars, thresholds, lam):
    """
    Path probability of every row of X reaching every node of the tree.

    Nodes are visited in index order, so a parent is always filled in before
    its children. The right child receives psi - goesleft, which keeps the
    leaf probabilities of each row summing to one.
    """
    n_samples = X.shape[0]
    n_nodes = len(vars)
    psi = np.zeros((n_samples, n_nodes), dtype=np.float64)
    for i in range(n_samples):
        psi[i, 0] = 1.0
    for node in range(n_nodes):
        var = vars[node]
        if var < 0:
            continue
        left = 2 * node + 1
        right = 2 * node + 2
        for i in range(n_samples):
            goesleft = psi[i, node] * _prob_left_scalar(X[i, var], thresholds[node], lam)
            psi[i, left] = goesleft
            psi[i, right] = psi[i, node] - goesleft
    return psi


class SuffStats(NamedTuple):
    """
    Conjugate posterior quantities of the leaf values given a routing matrix.

    omega : (Lt, Lt) posterior covariance (S'S / sigma^2 + I / tau)^-1
    rhat : (Lt,) S'r / sigma^2
    n_leaves : Lt
    """
    omega: NDArray[np.float64]
    rhat: NDArray[np.float64]
    n_leaves: int


class Tree:
    """
    A soft decision tree stored as a heap-indexed arena.

    Slot ``i`` has children ``2i+1`` (left) and ``2i+2`` (right). ``vars[i]``
    is the split variable of a branch, -1 for a leaf and -2 for an unused
    slot. Besides the structure the tree carries its sharpness ``lam``, the
    routing matrix ``S`` of the training rows over its leaves (columns in
    left-to-right leaf order) and the sufficient statistics ``ss`` last
    derived from ``S``.
    """
    default_size: int = 8

    def __init__(self, dataX: Optional[np.ndarray], vars: np.ndarray, thresholds: np.ndarray,
                 leaf_vals: np.ndarray, lam: float, S: Optional[np.ndarray] = None,
                 ss: Optional[SuffStats] = None):
        self.dataX: Optional[NDArray[np.float64]] = dataX
        self.vars: NDArray[np.int64] = vars
        self.thresholds: NDArray[np.float64] = thresholds
        self.leaf_vals: NDArray[np.float64] = leaf_vals
        self.lam = float(lam)
        self.S: Optional[NDArray[np.float64]] = S
        self.ss: Optional[SuffStats] = ss

    @classmethod
    def new(cls, lam: float, dataX=None):
        """
        A single-leaf tree with leaf value 0.
        """
        vars = np.full(Tree.default_size, -2, dtype=np.int64)
        vars[0] = -1
        thresholds = np.full(Tree.default_size, np.nan, dtype=np.float64)
        leaf_vals = np.full(Tree.default_size, np.nan, dtype=np.float64)
        leaf_vals[0] = 0.0
        S = None
        if dataX is not None:
            dataX = np.asarray(dataX, dtype=np.float64)
            S = np.ones((dataX.shape[0], 1), dtype=np.float64)
        return cls(dataX, vars, thresholds, leaf_vals, lam, S=S)

    @classmethod
    def from_existing(cls, other: "Tree"):
        # dataX is shared across trees, SuffStats is immutable
        return cls(
            other.dataX,
            other.vars.copy(),
            other.thresholds.copy(),
            other.leaf_vals.copy(),
            other.lam,
            S=other.S.copy() if other.S is not None else None,
            ss=other.ss,
        )

    def copy(self):
        return Tree.from_existing(self)

    # Navigation

    @staticmethod
    def depth(node_id: int) -> int:
        return int(math.floor(math.log2(node_id + 1)))

    @staticmethod
    def parent(node_id: int) -> Optional[int]:
        if node_id == 0:
            return None
        return (node_id - 1) // 2

    @staticmethod
    def is_left(node_id: int) -> bool:
        return node_id % 2 == 1

    def is_leaf(self, node_id):
        return node_id < len(self.vars) and self.vars[node_id] == -1

    def is_split_node(self, node_id):
        return node_id < len(self.vars) and self.vars[node_id] >= 0

    def is_terminal_split_node(self, node_id):
        return self.is_split_node(node_id) \
            and self.is_leaf(node_id * 2 + 1) \
            and self.is_leaf(node_id * 2 + 2)

    @property
    def is_stump(self) -> bool:
        return self.vars[0] == -1

    @property
    def leaves(self) -> NDArray[np.int64]:
        """Leaf slots in left-to-right order."""
        order = []
        stack = [0]
        while stack:
            node = stack.pop()
            if self.vars[node] == -1:
                order.append(node)
            else:
                stack.append(2 * node + 2)
                stack.append(2 * node + 1)
        return np.array(order, dtype=np.int64)

    @property
    def n_leaves(self) -> int:
        return int(np.count_nonzero(self.vars == -1))

    @property
    def split_nodes(self):
        return np.where(self.vars >= 0)[0]

    @property
    def terminal_split_nodes(self):
        """Branches whose two children are both leaves."""
        return [int(i) for i in self.split_nodes if self.is_terminal_split_node(i)]

    def leaf_position(self, node_id: int) -> int:
        """Column of ``S`` that belongs to the leaf in slot ``node_id``."""
        matches = np.flatnonzero(self.leaves == node_id)
        if len(matches) == 0:
            raise ValueError(f"Node {node_id} is not a leaf.")
        return int(matches[0])

    # Structure edits

    def _resize_arrays(self):
        old_size = len(self.vars)
        new_size = old_size * 2

        a = np.full(new_size, -2, dtype=self.vars.dtype)
        a[:old_size] = self.vars
        self.vars = a

        b = np.full(new_size, np.nan, dtype=self.thresholds.dtype)
        b[:old_size] = self.thresholds
        self.thresholds = b

        c = np.full(new_size, np.nan, dtype=self.leaf_vals.dtype)
        c[:old_size] = self.leaf_vals
        self.leaf_vals = c

    def _truncate_tree_arrays(self):
        """
        Halve the arena while its second half holds no live node, keeping at
        least ``Tree.default_size`` slots.
        """
        last_active_node = np.where(self.vars == -1)[0].max()
        new_length = len(self.vars)
        while last_active_node < (new_length // 2) and new_length > Tree.default_size:
            new_length //= 2

        if new_length < len(self.vars):
            self.vars = self.vars[:new_length]
            self.thresholds = self.thresholds[:new_length]
            self.leaf_vals = self.leaf_vals[:new_length]

    def split_leaf(self, node_id: int, var: int, cut: float, left_val: float = 0.0, right_val: float = 0.0):
        """
        Turn a leaf into a branch on ``var`` at ``cut`` with two fresh leaves.
        Cached routing matrix and statistics are left to the caller.
        """
        if self.vars[node_id] != -1:
            raise ValueError("Node is not a leaf and cannot be split.")

        left_child = node_id * 2 + 1
        right_child = node_id * 2 + 2
        while right_child >= len(self.vars):
            self._resize_arrays()

        self.vars[node_id] = var
        self.thresholds[node_id] = cut
        self.leaf_vals[node_id] = np.nan

        self.vars[left_child] = -1
        self.vars[right_child] = -1
        self.leaf_vals[left_child] = left_val
        self.leaf_vals[right_child] = right_val

    def prune_split(self, node_id: int, leaf_val: float = 0.0):
        """
        Collapse a branch whose children are both leaves into a single leaf.
        """
        if not self.is_terminal_split_node(node_id):
            raise ValueError("Node is not a terminal split node and cannot be pruned.")
        for child in (node_id * 2 + 1, node_id * 2 + 2):
            self.vars[child] = -2
            self.leaf_vals[child] = np.nan
        self.vars[node_id] = -1
        self.thresholds[node_id] = np.nan
        self.leaf_vals[node_id] = leaf_val
        self._truncate_tree_arrays()

    # Soft routing

    def prob_left(self, node_id: int, X: Optional[np.ndarray] = None) -> NDArray[np.float64]:
        """
        Probability that each row of X goes left at the branch ``node_id``.
        """
        if not self.is_split_node(node_id):
            raise ValueError("Node is not a split node.")
        X = self.dataX if X is None else np.asarray(X, dtype=np.float64)
        col = np.ascontiguousarray(X[:, self.vars[node_id]], dtype=np.float64)
        return _prob_left_numba(col, self.thresholds[node_id], self.lam)

    def routing_matrix(self, X: Optional[np.ndarray] = None) -> NDArray[np.float64]:
        """
        Routing matrix of X over the leaves: rows are observations, columns
        are leaves in left-to-right order, every row sums to one.
        """
        if X is None:
            assert self.dataX is not None, "Data matrix is not provided."
            X = self.dataX
        X = np.ascontiguousarray(X, dtype=np.float64)
        if X.ndim == 1:
            X = X.reshape(1, -1)
        psi = _node_prob_numba(X, self.vars, self.thresholds, self.lam)
        return psi[:, self.leaves]

    def leaf_prob(self, x: np.ndarray) -> NDArray[np.float64]:
        """Leaf membership probabilities of a single observation."""
        return self.routing_matrix(np.asarray(x, dtype=np.float64).reshape(1, -1))[0]

    def update_routing(self):
        """Recompute ``S`` from the training data and drop stale statistics."""
        self.S = self.routing_matrix()
        self.ss = None

    # Leaf values and predictions

    @property
    def leaf_values(self) -> NDArray[np.float64]:
        """Leaf values in left-to-right order."""
        return self.leaf_vals[self.leaves]

    def set_leaf_values(self, values: np.ndarray):
        leaves = self.leaves
        values = np.asarray(values, dtype=np.float64)
        if values.shape != (len(leaves),):
            raise ValueError(f"Expected {len(leaves)} leaf values, got shape {values.shape}.")
        self.leaf_vals[leaves] = values

    def evaluate(self, X: Optional[np.ndarray] = None) -> NDArray[np.float64]:
        """
        Contribution of the tree to the fit. Uses the cached routing matrix
        when X is None.
        """
        if X is None:
            if self.S is None:
                raise ValueError("No cached routing matrix available for evaluation.")
            return self.S @ self.leaf_values
        return self.routing_matrix(X) @ self.leaf_values

    def clear_cache(self):
        self.S = None
        self.ss = None
        self.dataX = None

    def __str__(self):
        return self._print_tree()

    def __repr__(self):
        return f"Tree(vars={self.vars}, thresholds={self.thresholds}, leaf_vals={self.leaf_vals}, lam={self.lam})"

    def _print_tree(self, node_id=0, prefix=""):
        pprefix = prefix + "\t"
        if self.vars[node_id] == -1:
            return prefix + self._print_node(node_id)
        return (
            prefix
            + self._print_node(node_id)
            + "\n"
            + self._print_tree(node_id * 2 + 1, pprefix)
            + "\n"
            + self._print_tree(node_id * 2 + 2, pprefix)
        )

    def _print_node(self, node_id):
        if self.vars[node_id] == -1:
            return f"Val: {self.leaf_vals[node_id]:0.9f} (leaf)"
        return f"X_{self.vars[node_id]} ~<= {self.thresholds[node_id]:0.9f} (soft split)"


class BartState:
    """
    Mutable state of one soft BART chain.
    """
    def __init__(self, trees: list, sigma: float, fhat: Optional[np.ndarray] = None,
                 latents: Optional[np.ndarray] = None):
        """
        Parameters:
        - trees (list): The tree ensemble.
        - sigma (float): Residual standard deviation.
        - fhat (np.ndarray, optional): Aggregate fit on the training rows.
          Computed from the trees when omitted.
        - latents (np.ndarray, optional): Latent responses in probit mode.
        """
        self.trees = trees
        self.n_trees = len(self.trees)
        self.sigma = float(sigma)
        self.latents = latents
        if fhat is None:
            self.refresh_fhat()
        else:
            self.fhat = fhat

    def refresh_fhat(self):
        """Recompute the aggregate fit from all trees in one pass."""
        self.fhat = np.sum([tree.evaluate() for tree in self.trees], axis=0)

    def copy(self, modified_tree_ids=None):
        if modified_tree_ids is None:
            modified_tree_ids = range(self.n_trees)
        copied_trees = self.trees.copy()  # Shallow copy
        for tree_id in modified_tree_ids:
            copied_trees[tree_id] = self.trees[tree_id].copy()
        return BartState(
            trees=copied_trees,
            sigma=self.sigma,
            fhat=None if self.fhat is None else self.fhat.copy(),
            latents=None if self.latents is None else self.latents.copy(),
        )

    def clear_cache(self):
        self.fhat = None
        self.latents = None
        for tree in self.trees:
            tree.clear_cache()

    def evaluate(self, X: Optional[np.ndarray] = None, all_except: Optional[list] = None) -> NDArray[np.float64]:
        """
        Sum of the tree contributions, optionally leaving some trees out.

        With X None the cached routing matrices of the training rows are used.
        """
        all_except = [] if all_except is None else list(all_except)
        if X is None:
            total_output = self.fhat.copy()
            for i in all_except:
                total_output -= self.trees[i].evaluate()
            return total_output
        X = np.asarray(X, dtype=np.float64)
        total_output = np.zeros(X.shape[0])
        for i, tree in enumerate(self.trees):
            if i not in all_except:
                total_output += tree.evaluate(X)
        return total_output

    @property
    def lambdas(self) -> NDArray[np.float64]:
        return np.array([tree.lam for tree in self.trees])

    @property
    def n_leaves(self) -> NDArray[np.int64]:
        return np.array([tree.n_leaves for tree in self.trees])
