# scrnaseq_integrate/analysis/integration.py

import anndata as ad
import logging
import numpy as np
from dataclasses import dataclass
from scipy import sparse
from sklearn.neighbors import NearestNeighbors
from typing import Mapping

from .anchors import AnchorSet
from .dimred import reduce_dimensionality
from ..errors import InsufficientAnchorsError, ResourceExhaustedError
from ..parallel import CancellationToken

log = logging.getLogger(__name__)


@dataclass
class IntegrationResult:
    """Corrected values of the integration features, per batch."""
    reference: str
    order: list[str]
    features: list[str]
    corrected: dict[str, np.ndarray]


def choose_reference(batches: Mapping[str, ad.AnnData], reference: str | None = "auto") -> str:
    """
    Resolves the reference batch: an explicit label, or 'auto' (None) for the
    largest batch, ties going to the batch that arrived first.
    """
    if reference is None or reference == "auto":
        largest = max(batches, key=lambda label: (batches[label].n_obs, -list(batches).index(label)))
        log.info(f"Auto-selected reference batch '{largest}' ({batches[largest].n_obs} cells)")
        return largest
    if reference not in batches:
        raise KeyError(f"Reference batch '{reference}' not found. Available: {list(batches)}")
    return reference


def _dense(matrix) -> np.ndarray:
    return matrix.toarray() if hasattr(matrix, "toarray") else np.asarray(matrix)


def _next_query(remaining: list[str], integrated: list[str], anchors: AnchorSet) -> str:
    # Most anchors into the integrated set first; ties keep arrival order
    counts = [len(anchors.between(label, integrated)) for label in remaining]
    return remaining[int(np.argmax(counts))]


def _anchor_weights(pcs: np.ndarray, anchor_cells: np.ndarray, scores: np.ndarray,
                    k_weight: int, sd_weight: float) -> sparse.csr_matrix:
    """
    Row-normalized weights (cells x anchors) over each cell's k_weight nearest
    anchors in the query's own PCA space.
    """
    k = min(k_weight, len(anchor_cells))
    distances, neighbors = NearestNeighbors(n_neighbors=k).fit(pcs[anchor_cells]).kneighbors(pcs)
    furthest = distances[:, -1:]
    with np.errstate(divide="ignore", invalid="ignore"):
        closeness = np.where(furthest > 0, 1.0 - distances / furthest, 1.0)
    weights = closeness * scores[neighbors]
    weights = 1.0 - np.exp(-weights / (2.0 / sd_weight) ** 2)
    totals = weights.sum(axis=1, keepdims=True)
    with np.errstate(divide="ignore", invalid="ignore"):
        weights = np.where(totals > 0, weights / totals, 1.0 / k)

    n_cells = pcs.shape[0]
    rows = np.repeat(np.arange(n_cells), k)
    return sparse.csr_matrix((weights.ravel(), (rows, neighbors.ravel())),
                             shape=(n_cells, len(anchor_cells)))


def integrate_batches(
    batches: Mapping[str, ad.AnnData],
    anchors: AnchorSet,
    reference: str | None = "auto",
    k_weight: int = 100,
    sd_weight: float = 1.0,
    n_pcs: int = 30,
    random_state: int = 0,
    cancel_token: CancellationToken | None = None
) -> IntegrationResult:
    """
    Corrects every non-reference batch onto the reference.

    Batches are integrated one at a time, the next being the batch with the
    most anchors into the already-integrated set. For a query batch, each
    anchor contributes the vector from its query cell to its (already
    corrected) partner cell; every query cell is shifted by a weighted average
    of the vectors of its k_weight nearest anchors in the query's PCA space,
    weights combining distance and anchor score. Only the integration
    features are corrected.

    Args:
        batches: Label -> normalized AnnData (same objects the anchors were found on).
        anchors: Output of `find_integration_anchors`.
        reference: Reference label or 'auto' for the largest batch.
        k_weight: Anchors considered per cell.
        sd_weight: Width of the Gaussian weighting kernel.
        n_pcs: Components of the per-query PCA used for anchor distances.
        random_state: Seed of the PCA solver.
        cancel_token: Checked between batches.

    Returns:
        IntegrationResult with dense corrected matrices (cells x features).
    """
    if k_weight <= 0 or sd_weight <= 0:
        raise ValueError("k_weight and sd_weight must be positive.")

    features = list(anchors.features)
    ref = choose_reference(batches, reference)
    try:
        integrated = {ref: _dense(batches[ref][:, features].X).astype(np.float64)}
    except MemoryError as e:
        raise ResourceExhaustedError("Out of memory densifying reference", stage="integrate",
                                     batch=ref) from e
    order = [ref]
    remaining = [label for label in batches if label != ref]

    while remaining:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled("integrate")
        query = _next_query(remaining, order, anchors)
        links = anchors.between(query, order)
        if links.empty:
            raise InsufficientAnchorsError(
                "No anchors link batch to the integrated set", stage="integrate",
                batch=query, detail=f"integrated={order}"
            )
        if batches[query].n_obs < 2:
            raise InsufficientAnchorsError(
                "Too few cells to weight anchors", stage="integrate",
                batch=query, detail=f"cells={batches[query].n_obs}"
            )

        try:
            values = _dense(batches[query][:, features].X).astype(np.float64)
            targets = np.empty((len(links), len(features)), dtype=np.float64)
            for other, group in links.groupby("other_batch", sort=False):
                targets[group.index.to_numpy()] = integrated[other][group["other_cell"].to_numpy(dtype=np.int64)]
            cells = links["cell"].to_numpy(dtype=np.int64)
            vectors = targets - values[cells]

            pcs = reduce_dimensionality(batches[query], features, n_comps=n_pcs,
                                        random_state=random_state)
            weights = _anchor_weights(pcs, cells, links["score"].to_numpy(dtype=np.float64),
                                      k_weight, sd_weight)
            integrated[query] = values + np.asarray(weights @ vectors)
        except MemoryError as e:
            raise ResourceExhaustedError("Out of memory correcting batch", stage="integrate",
                                         batch=query, detail=f"cells={batches[query].n_obs}") from e

        log.info(f"stage=integrate batch={query} anchors_used={len(links)} "
                 f"cells_corrected={values.shape[0]} features={len(features)}")
        order.append(query)
        remaining.remove(query)

    log.info(f"Integration complete. Reference '{ref}', order {order}.")
    return IntegrationResult(reference=ref, order=order, features=features, corrected=integrated)


def build_integrated_adata(
    filtered: ad.AnnData,
    normalized: Mapping[str, ad.AnnData],
    result: IntegrationResult
) -> ad.AnnData:
    """
    Assembles the integrated object in the cell order of `filtered`.

    Integration features hold corrected values; all other features keep
    their per-batch normalized values. Raw counts go to layers['counts'].
    """
    combined = ad.concat(list(normalized.values()), axis=0, join="inner", merge="same")
    missing = filtered.obs_names.difference(combined.obs_names)
    if len(missing) > 0:
        raise KeyError(f"{len(missing)} filtered cells missing from normalized batches "
                       f"(e.g. '{missing[0]}').")
    combined = combined[filtered.obs_names, filtered.var_names]

    feature_idx = filtered.var_names.get_indexer(result.features)
    other_idx = np.setdiff1d(np.arange(filtered.n_vars), feature_idx)

    corrected = np.zeros((filtered.n_obs, len(result.features)), dtype=np.float32)
    for label, values in result.corrected.items():
        positions = filtered.obs_names.get_indexer(normalized[label].obs_names)
        corrected[positions] = values

    norm_x = combined.X if sparse.issparse(combined.X) else sparse.csr_matrix(combined.X)
    blocks = sparse.hstack([norm_x.tocsc()[:, other_idx], sparse.csc_matrix(corrected)]).tocsc()
    source = np.empty(filtered.n_vars, dtype=np.int64)
    source[other_idx] = np.arange(len(other_idx))
    source[feature_idx] = len(other_idx) + np.arange(len(feature_idx))
    x_integrated = blocks[:, source].tocsr().astype(np.float32)

    adata = ad.AnnData(
        X=x_integrated,
        obs=filtered.obs.copy(),
        var=filtered.var.copy(),
        layers={"counts": filtered.X.copy()},
    )
    adata.var["integration_feature"] = adata.var_names.isin(result.features)
    adata.uns["integration"] = {
        "reference": result.reference,
        "order": np.array(result.order, dtype=object),
        "features": np.array(result.features, dtype=object),
    }
    log.info(f"Built integrated object. Shape: {adata.shape}")
    return adata
