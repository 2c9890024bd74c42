# scrnaseq_integrate/analysis/anchors.py

"""
Cross-batch anchor finding.

For every pair of batches, cells are projected into a shared low-dimensional
space fit jointly on both batches, and anchors are the mutual nearest
neighbour pairs in that space. Anchors are then filtered against the
original expression space and scored by neighbourhood overlap.
"""

import anndata as ad
import itertools
import logging
import numpy as np
import pandas as pd
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from scipy import sparse
from sklearn.neighbors import NearestNeighbors
from sklearn.preprocessing import normalize
from sklearn.utils.extmath import randomized_svd
from typing import Callable, Mapping, Sequence

from .dimred import scaled_matrix, pca_embedding
from ..errors import InsufficientAnchorsError, ResourceExhaustedError, SchemaMismatchError
from ..parallel import CancellationToken, run_tasks

log = logging.getLogger(__name__)

FEATURE_POLICIES = ("frequency", "intersection", "union")
ANCHOR_COLUMNS = ["batch_a", "batch_b", "cell_a", "cell_b", "score"]


# --- Integration features ---

def select_integration_features(
    variable_features: Mapping[str, Sequence[str]],
    n_features: int = 2000,
    policy: str = "frequency",
    min_batches: int = 2
) -> list[str]:
    """
    Chooses one shared feature set from the per-batch variable features.

    Args:
        variable_features: Batch label -> variable features ordered by rank.
        n_features: Maximum number of features returned.
        policy: 'frequency' keeps features variable in at least `min_batches`
                batches, 'intersection' those variable in every batch and
                'union' those variable in any batch.
        min_batches: Threshold for the 'frequency' policy (capped at the
                     number of batches).

    Returns:
        Features ranked by how many batches selected them, then by median
        in-batch rank, then by name.

    Raises:
        ValueError: If the policy is unknown or n_features is not positive.
        InsufficientAnchorsError: If no feature satisfies the policy.
    """
    if policy not in FEATURE_POLICIES:
        raise ValueError(f"Unknown feature policy '{policy}'. Choose from {FEATURE_POLICIES}.")
    if n_features <= 0:
        raise ValueError("n_features must be a positive integer.")

    n_batches = len(variable_features)
    counts = Counter()
    ranks = defaultdict(list)
    for features in variable_features.values():
        for rank, feature in enumerate(features):
            counts[feature] += 1
            ranks[feature].append(rank)

    if policy == "frequency":
        threshold = min(min_batches, n_batches)
    elif policy == "intersection":
        threshold = n_batches
    else:
        threshold = 1

    candidates = [f for f, c in counts.items() if c >= threshold]
    candidates.sort(key=lambda f: (-counts[f], float(np.median(ranks[f])), f))
    selected = candidates[:n_features]
    if not selected:
        raise InsufficientAnchorsError(
            "No integration features satisfy the selection policy",
            stage="select_features", detail=f"policy={policy} threshold={threshold} batches={n_batches}"
        )
    log.info(f"stage=select_features policy={policy} candidates={len(candidates)} selected={len(selected)}")
    return selected


# --- Joint reductions ---

def cca_reduction(scaled_a: np.ndarray, scaled_b: np.ndarray, n_dims: int,
                  random_state: int = 0) -> tuple[np.ndarray, np.ndarray]:
    """
    Canonical correlation vectors of two scaled batches.

    The SVD of the cross-batch cell x cell covariance (A @ B.T) gives one
    set of axes along which both batches' correlated structure is aligned;
    the left vectors embed cells of A, the right vectors cells of B.
    """
    cross = scaled_a @ scaled_b.T
    u, _, vt = randomized_svd(cross, n_components=n_dims, random_state=random_state)
    return u, vt.T


def pca_reduction(scaled_a: np.ndarray, scaled_b: np.ndarray, n_dims: int,
                  random_state: int = 0) -> tuple[np.ndarray, np.ndarray]:
    """PCA fit on the concatenation of both batches."""
    joint = pca_embedding(np.vstack([scaled_a, scaled_b]), n_comps=n_dims, random_state=random_state)
    return joint[: scaled_a.shape[0]], joint[scaled_a.shape[0]:]


REDUCTIONS: dict[str, Callable] = {
    "cca": cca_reduction,
    "pca": pca_reduction,
}


# --- Results ---

@dataclass
class PairAnchors:
    """Anchors between two batches. cell_a/cell_b are positions inside each batch."""
    batch_a: str
    batch_b: str
    anchors: pd.DataFrame
    n_found: int
    n_filtered: int
    embedding_a: np.ndarray | None = field(default=None, repr=False)
    embedding_b: np.ndarray | None = field(default=None, repr=False)

    @property
    def n_retained(self) -> int:
        return len(self.anchors)


@dataclass
class AnchorSet:
    """All retained anchors plus the features they were computed on."""
    pairs: list[PairAnchors]
    features: list[str]

    def to_frame(self) -> pd.DataFrame:
        frames = []
        for pair in self.pairs:
            frame = pair.anchors[["cell_a", "cell_b", "score"]].copy()
            frame.insert(0, "batch_b", pair.batch_b)
            frame.insert(0, "batch_a", pair.batch_a)
            frames.append(frame)
        if not frames:
            return pd.DataFrame(columns=ANCHOR_COLUMNS)
        return pd.concat(frames, ignore_index=True)

    def between(self, label: str, others: Sequence[str]) -> pd.DataFrame:
        """
        Anchors linking `label` to any batch in `others`, oriented so that
        'cell' indexes `label` and 'other_cell' indexes 'other_batch'.
        """
        frames = []
        for pair in self.pairs:
            if pair.batch_a == label and pair.batch_b in others:
                frames.append(pd.DataFrame({
                    "other_batch": pair.batch_b, "cell": pair.anchors["cell_a"].to_numpy(),
                    "other_cell": pair.anchors["cell_b"].to_numpy(), "score": pair.anchors["score"].to_numpy()}))
            elif pair.batch_b == label and pair.batch_a in others:
                frames.append(pd.DataFrame({
                    "other_batch": pair.batch_a, "cell": pair.anchors["cell_b"].to_numpy(),
                    "other_cell": pair.anchors["cell_a"].to_numpy(), "score": pair.anchors["score"].to_numpy()}))
        if not frames:
            return pd.DataFrame(columns=["other_batch", "cell", "other_cell", "score"])
        return pd.concat(frames, ignore_index=True)

    def to_uns(self) -> dict:
        """Plain arrays suitable for AnnData.uns (and thus h5ad)."""
        frame = self.to_frame()
        return {
            "features": np.array(self.features, dtype=object),
            "batch_a": frame["batch_a"].to_numpy(dtype=object),
            "batch_b": frame["batch_b"].to_numpy(dtype=object),
            "cell_a": frame["cell_a"].to_numpy(dtype=np.int64),
            "cell_b": frame["cell_b"].to_numpy(dtype=np.int64),
            "score": frame["score"].to_numpy(dtype=np.float64),
            "pair_a": np.array([p.batch_a for p in self.pairs], dtype=object),
            "pair_b": np.array([p.batch_b for p in self.pairs], dtype=object),
            "n_found": np.array([p.n_found for p in self.pairs], dtype=np.int64),
            "n_filtered": np.array([p.n_filtered for p in self.pairs], dtype=np.int64),
        }

    @classmethod
    def from_uns(cls, data: Mapping) -> "AnchorSet":
        frame = pd.DataFrame({
            "batch_a": np.asarray(data["batch_a"]).astype(str),
            "batch_b": np.asarray(data["batch_b"]).astype(str),
            "cell_a": np.asarray(data["cell_a"], dtype=np.int64),
            "cell_b": np.asarray(data["cell_b"], dtype=np.int64),
            "score": np.asarray(data["score"], dtype=np.float64),
        })
        pairs = []
        for a, b, n_found, n_filtered in zip(np.asarray(data["pair_a"]).astype(str),
                                             np.asarray(data["pair_b"]).astype(str),
                                             np.asarray(data["n_found"]),
                                             np.asarray(data["n_filtered"])):
            rows = frame[(frame["batch_a"] == a) & (frame["batch_b"] == b)]
            pairs.append(PairAnchors(a, b, rows[["cell_a", "cell_b", "score"]].reset_index(drop=True),
                                     int(n_found), int(n_filtered)))
        return cls(pairs=pairs, features=[str(f) for f in np.asarray(data["features"])])


# --- Neighbour helpers ---

def _knn(reference: np.ndarray, query: np.ndarray, k: int) -> np.ndarray:
    """Indices of the k nearest `reference` rows for every `query` row."""
    nn = NearestNeighbors(n_neighbors=k).fit(reference)
    return nn.kneighbors(query, return_distance=False)


def _indicator(neighbors: np.ndarray, n_cols: int, offset: int = 0) -> sparse.csr_matrix:
    n_rows, k = neighbors.shape
    rows = np.repeat(np.arange(n_rows), k)
    data = np.ones(n_rows * k, dtype=np.float32)
    return sparse.csr_matrix((data, (rows, neighbors.ravel() + offset)), shape=(n_rows, n_cols))


def mutual_nearest_neighbors(embedding_a: np.ndarray, embedding_b: np.ndarray,
                             k: int) -> tuple[np.ndarray, np.ndarray]:
    """
    Pairs (i, j) with j among the k nearest B-cells of A-cell i and i among
    the k nearest A-cells of B-cell j. Sorted by i, then j.
    """
    n_a, n_b = embedding_a.shape[0], embedding_b.shape[0]
    a_to_b = _indicator(_knn(embedding_b, embedding_a, k), n_b)
    b_to_a = _indicator(_knn(embedding_a, embedding_b, k), n_a)
    mutual = a_to_b.multiply(b_to_a.T).tocoo()
    order = np.lexsort((mutual.col, mutual.row))
    return mutual.row[order].astype(np.int64), mutual.col[order].astype(np.int64)


def _filter_anchors(expr_a: np.ndarray, expr_b: np.ndarray, rows: np.ndarray,
                    cols: np.ndarray, k_filter: int) -> np.ndarray:
    """Mask of anchors that are also close in the (cosine-normalized) expression space."""
    n_a, n_b = expr_a.shape[0], expr_b.shape[0]
    norm_a, norm_b = normalize(expr_a), normalize(expr_b)
    a_to_b = _indicator(_knn(norm_b, norm_a, min(k_filter, n_b)), n_b)
    b_to_a = _indicator(_knn(norm_a, norm_b, min(k_filter, n_a)), n_a)
    forward = np.asarray(a_to_b[rows, cols]).ravel() > 0
    backward = np.asarray(b_to_a[cols, rows]).ravel() > 0
    return forward | backward


def _score_anchors(embedding_a: np.ndarray, embedding_b: np.ndarray, rows: np.ndarray,
                   cols: np.ndarray, k_score: int) -> np.ndarray:
    """
    Shared-neighbourhood overlap of each anchor's two cells, each neighbourhood
    being the k_score nearest cells within its own batch plus the k_score
    nearest in the other batch. Rescaled between the 1% and 90% quantiles and
    clipped to [0, 1].
    """
    n_a, n_b = embedding_a.shape[0], embedding_b.shape[0]
    k_a, k_b = min(k_score, n_a), min(k_score, n_b)
    n_total = n_a + n_b
    hood_a = (_indicator(_knn(embedding_a, embedding_a, k_a), n_total)
              + _indicator(_knn(embedding_b, embedding_a, k_b), n_total, offset=n_a))
    hood_b = (_indicator(_knn(embedding_a, embedding_b, k_a), n_total)
              + _indicator(_knn(embedding_b, embedding_b, k_b), n_total, offset=n_a))
    shared = np.asarray(hood_a[rows].multiply(hood_b[cols]).sum(axis=1)).ravel()
    raw = shared / float(k_a + k_b)

    if raw.size == 0:
        return raw
    low, high = np.quantile(raw, 0.01), np.quantile(raw, 0.90)
    if high <= low:
        return np.ones_like(raw)
    return np.clip((raw - low) / (high - low), 0.0, 1.0)


def _check_memory(label_a: str, label_b: str, n_a: int, n_b: int, n_features: int,
                  max_memory_gb: float | None) -> None:
    if max_memory_gb is None:
        return
    needed = 8.0 * (n_a * n_b + 2 * (n_a + n_b) * n_features)
    if needed > max_memory_gb * 1e9:
        raise ResourceExhaustedError(
            f"Anchor search would need ~{needed / 1e9:.2f} GB, limit is {max_memory_gb} GB",
            stage="find_anchors", batch=f"{label_a}/{label_b}",
            detail=f"cells={n_a}x{n_b} features={n_features}"
        )


# --- Anchor finding ---

def find_pair_anchors(
    label_a: str,
    adata_a: ad.AnnData,
    label_b: str,
    adata_b: ad.AnnData,
    features: Sequence[str],
    reduction: str = "cca",
    n_dims: int = 30,
    k_anchor: int = 5,
    k_filter: int | None = 200,
    k_score: int = 30,
    score_floor: float = 0.0,
    max_memory_gb: float | None = None,
    random_state: int = 0
) -> PairAnchors:
    """
    Finds mutual-nearest-neighbour anchors between two normalized batches.

    Args:
        label_a, adata_a: First batch (normalized, log1p data in X).
        label_b, adata_b: Second batch.
        features: Shared integration features.
        reduction: Key into REDUCTIONS ('cca' or 'pca').
        n_dims: Dimensions of the shared space (capped by the batch sizes).
        k_anchor: Neighbours searched in each direction for mutual pairs.
        k_filter: Neighbours in the expression space an anchor must fall
                  within to survive filtering. None disables the filter.
        k_score: Neighbourhood size used for anchor scoring.
        score_floor: Anchors with a score below this value are discarded.
        max_memory_gb: Upper bound on working memory, None for no check.
        random_state: Seed of the reduction.

    Returns:
        PairAnchors including the shared-space embeddings of both batches.

    Raises:
        InsufficientAnchorsError: If either batch has fewer than k_anchor cells.
        ResourceExhaustedError: If the memory bound would be exceeded.
    """
    if reduction not in REDUCTIONS:
        raise ValueError(f"Unknown reduction '{reduction}'. Choose from {list(REDUCTIONS)}.")
    if k_anchor <= 0 or k_score <= 0 or (k_filter is not None and k_filter <= 0):
        raise ValueError("Neighbour counts must be positive integers.")

    n_a, n_b = adata_a.n_obs, adata_b.n_obs
    pair_name = f"{label_a}/{label_b}"
    if min(n_a, n_b) < k_anchor:
        small, size = (label_a, n_a) if n_a < k_anchor else (label_b, n_b)
        raise InsufficientAnchorsError(
            f"Batch '{small}' has {size} cells, fewer than k_anchor={k_anchor}",
            stage="find_anchors", batch=pair_name, detail=f"cells={n_a}x{n_b}"
        )
    _check_memory(label_a, label_b, n_a, n_b, len(features), max_memory_gb)

    try:
        scaled_a = scaled_matrix(adata_a, features)
        scaled_b = scaled_matrix(adata_b, features)
        dims = max(1, min(n_dims, n_a - 1, n_b - 1, len(features)))
        embedding_a, embedding_b = REDUCTIONS[reduction](scaled_a, scaled_b, dims, random_state)
        embedding_a, embedding_b = normalize(embedding_a), normalize(embedding_b)

        rows, cols = mutual_nearest_neighbors(embedding_a, embedding_b, k_anchor)
        n_found = len(rows)

        if k_filter is not None and n_found:
            expr_a = adata_a[:, list(features)].X
            expr_b = adata_b[:, list(features)].X
            expr_a = expr_a.toarray() if hasattr(expr_a, "toarray") else np.asarray(expr_a)
            expr_b = expr_b.toarray() if hasattr(expr_b, "toarray") else np.asarray(expr_b)
            keep = _filter_anchors(expr_a, expr_b, rows, cols, k_filter)
            rows, cols = rows[keep], cols[keep]
        n_filtered = len(rows)

        scores = _score_anchors(embedding_a, embedding_b, rows, cols, k_score)
    except MemoryError as e:
        raise ResourceExhaustedError(
            "Out of memory during anchor search", stage="find_anchors",
            batch=pair_name, detail=f"cells={n_a}x{n_b} features={len(features)}"
        ) from e

    keep = scores >= score_floor
    anchors = pd.DataFrame({"cell_a": rows[keep], "cell_b": cols[keep], "score": scores[keep]})
    return PairAnchors(label_a, label_b, anchors, n_found, n_filtered, embedding_a, embedding_b)


def find_integration_anchors(
    batches: Mapping[str, ad.AnnData],
    features: Sequence[str],
    reduction: str = "cca",
    n_dims: int = 30,
    k_anchor: int = 5,
    k_filter: int | None = 200,
    k_score: int = 30,
    score_floor: float = 0.0,
    max_memory_gb: float | None = None,
    random_state: int = 0,
    keep_embeddings: bool = False,
    n_jobs: int = 1,
    cancel_token: CancellationToken | None = None
) -> AnchorSet:
    """
    Finds anchors for every unordered pair of batches (in arrival order).

    Pairs are independent and may run in parallel. Per-pair counts of
    found, filtered and retained anchors are logged.

    Raises:
        SchemaMismatchError: If a batch lacks some integration features.
        InsufficientAnchorsError: If any pair retains zero anchors.
    """
    labels = list(batches)
    if len(labels) < 2:
        raise ValueError("At least two batches are required to find anchors.")
    features = list(features)
    for label, adata in batches.items():
        missing = pd.Index(features).difference(adata.var_names)
        if len(missing) > 0:
            raise SchemaMismatchError(
                f"{len(missing)} integration features missing from batch",
                stage="find_anchors", batch=label, detail=f"e.g. {list(missing[:3])}"
            )

    pairs = list(itertools.combinations(labels, 2))
    log.info(f"Finding anchors for {len(pairs)} batch pairs on {len(features)} features "
             f"(reduction={reduction}, k_anchor={k_anchor}, k_filter={k_filter}, k_score={k_score}).")

    def _one(pair):
        label_a, label_b = pair
        result = find_pair_anchors(
            label_a, batches[label_a], label_b, batches[label_b], features,
            reduction=reduction, n_dims=n_dims, k_anchor=k_anchor, k_filter=k_filter,
            k_score=k_score, score_floor=score_floor, max_memory_gb=max_memory_gb,
            random_state=random_state
        )
        if not keep_embeddings:
            result.embedding_a = result.embedding_b = None
        return result

    results = run_tasks(_one, pairs, n_jobs=n_jobs, cancel_token=cancel_token, stage="find_anchors")

    for result in results:
        log.info(f"stage=find_anchors pair={result.batch_a}/{result.batch_b} "
                 f"found={result.n_found} filtered={result.n_filtered} retained={result.n_retained}")
    empty = [r for r in results if r.n_retained == 0]
    if empty:
        first = empty[0]
        raise InsufficientAnchorsError(
            f"{len(empty)} batch pair(s) have no anchors after filtering",
            stage="find_anchors", batch=f"{first.batch_a}/{first.batch_b}",
            detail=f"found={first.n_found} filtered={first.n_filtered} retained=0"
        )
    return AnchorSet(pairs=results, features=features)
