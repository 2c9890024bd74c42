# scrnaseq_integrate/analysis/diagnostics.py

import anndata as ad
import logging
import numpy as np
from sklearn.neighbors import NearestNeighbors
from typing import Sequence

from .dimred import reduce_dimensionality

log = logging.getLogger(__name__)


def batch_mixing_score(
    adata: ad.AnnData,
    batch_key: str = "batch",
    use_rep: str | None = None,
    features: Sequence[str] | None = None,
    n_neighbors: int = 15,
    n_comps: int = 30,
    random_state: int = 0
) -> float:
    """
    Measures how well batches are mixed in a low-dimensional embedding.

    For each cell, the fraction of its nearest neighbours that come from a
    different batch is compared with the fraction expected if cells were
    mixed at random. The score is the ratio of the two means: close to 0 when
    batches form separate clouds (a batch effect), around 1 when well mixed.

    Args:
        adata: Annotated data with obs[batch_key].
        batch_key: obs column holding the batch label.
        use_rep: obsm key of an existing embedding. When None, a PCA of the
                 scaled `features` (all features if None) is computed.
        features: Features used for the PCA.
        n_neighbors: Neighbours per cell.
        n_comps: PCA components when computing the embedding.
        random_state: Seed of the PCA solver.

    Returns:
        The mixing score as a float.

    Raises:
        KeyError: If batch_key or use_rep are missing.
        ValueError: If fewer than two batches or too few cells are present.
    """
    if batch_key not in adata.obs.columns:
        raise KeyError(f"Batch key '{batch_key}' not found in adata.obs.")
    labels, codes = np.unique(adata.obs[batch_key].astype(str).to_numpy(), return_inverse=True)
    if len(labels) < 2:
        raise ValueError("Batch mixing needs at least two batches.")
    if adata.n_obs < 3:
        raise ValueError("Batch mixing needs at least three cells.")

    if use_rep is not None:
        if use_rep not in adata.obsm:
            raise KeyError(f"Representation '{use_rep}' not found in adata.obsm.")
        embedding = np.asarray(adata.obsm[use_rep])
    else:
        embedding = reduce_dimensionality(adata, features, n_comps=n_comps,
                                          random_state=random_state)

    k = min(n_neighbors, adata.n_obs - 1)
    neighbors = NearestNeighbors(n_neighbors=k + 1).fit(embedding).kneighbors(
        embedding, return_distance=False)[:, 1:]
    observed = (codes[neighbors] != codes[:, None]).mean(axis=1)

    sizes = np.bincount(codes)
    expected = (adata.n_obs - sizes[codes]) / (adata.n_obs - 1)
    score = float(observed.mean() / expected.mean())
    log.info(f"Batch mixing score: {score:.3f} (k={k}, batches={len(labels)})")
    return score
