# scrnaseq_integrate/analysis/dimred.py

import scanpy as sc
import anndata as ad
import logging
import numpy as np
from typing import Sequence

log = logging.getLogger(__name__)


def scaled_matrix(
    adata: ad.AnnData,
    features: Sequence[str] | None = None,
    max_value: float | None = 10.0
) -> np.ndarray:
    """
    Returns a dense, per-feature standardized copy of X (cells x features).

    Uses scanpy.pp.scale on a copy restricted to `features`; zero-variance
    features become all-zero columns.
    """
    subset = adata[:, list(features)] if features is not None else adata
    dense = subset.X.toarray() if hasattr(subset.X, "toarray") else np.array(subset.X)
    scaled = sc.pp.scale(dense.astype(np.float64), zero_center=True, max_value=max_value, copy=True)
    return np.nan_to_num(np.asarray(scaled, dtype=np.float64))


def pca_embedding(matrix: np.ndarray, n_comps: int, random_state: int = 0) -> np.ndarray:
    """
    PCA coordinates of a dense cells x features matrix.

    Uses scanpy.tl.pca with the arpack solver. `n_comps` is lowered to
    min(shape) - 1 when the matrix is too small for it, which is routine for
    small batches and only logged at debug level.

    Raises:
        ValueError: If `n_comps` is not positive or the matrix has a
                    dimension below 2.
    """
    if not isinstance(n_comps, (int, np.integer)) or n_comps <= 0:
        raise ValueError("Argument 'n_comps' must be a positive integer.")
    matrix = np.asarray(matrix, dtype=np.float32)
    limit = min(matrix.shape) - 1
    if limit <= 0:
        raise ValueError(f"Cannot compute PCA on a matrix of shape {matrix.shape}.")
    if n_comps > limit:
        log.debug(f"Lowering n_comps from {n_comps} to {limit} for shape {matrix.shape}.")
        n_comps = limit

    work = ad.AnnData(matrix)
    try:
        sc.tl.pca(work, n_comps=int(n_comps), svd_solver='arpack',
                  random_state=random_state, zero_center=True)
    except ValueError as e:
        log.error(f"ValueError during PCA: {e}", exc_info=True)
        raise
    return np.asarray(work.obsm['X_pca'], dtype=np.float64)


def reduce_dimensionality(
    adata: ad.AnnData,
    features: Sequence[str] | None = None,
    n_comps: int = 30,
    random_state: int = 0,
    key_added: str | None = None
) -> np.ndarray:
    """
    PCA of the scaled `features` (all features if None) of one object.

    Args:
        adata: Normalized data. Not modified unless `key_added` is given.
        features: Features to scale and project.
        n_comps: Number of components, capped by the matrix shape.
        random_state: Seed of the arpack solver.
        key_added: When set, the embedding is also stored in adata.obsm[key_added].

    Returns:
        The embedding as a cells x components float64 array.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    embedding = pca_embedding(scaled_matrix(adata, features), n_comps=n_comps,
                              random_state=random_state)
    log.info(f"PCA on {adata.n_obs} cells x {adata.n_vars if features is None else len(features)} "
             f"features -> {embedding.shape[1]} components.")
    if key_added is not None:
        adata.obsm[key_added] = embedding
    return embedding
