# scrnaseq_integrate/analysis/preprocess.py

import scanpy as sc
import anndata as ad
import logging
import numpy as np
from typing import Mapping

from ..parallel import CancellationToken, run_tasks

log = logging.getLogger(__name__)

HVG_FLAVORS = ('seurat', 'cell_ranger', 'seurat_v3')


def split_by_batch(adata: ad.AnnData, batch_key: str = "batch") -> dict[str, ad.AnnData]:
    """
    Splits a merged object back into per-batch partitions.

    Partitions follow the category order of obs[batch_key] (arrival order
    after merging); empty categories are skipped.
    """
    if batch_key not in adata.obs.columns:
        raise KeyError(f"Batch key '{batch_key}' not found in adata.obs.")
    column = adata.obs[batch_key]
    labels = list(column.cat.categories) if hasattr(column, "cat") else list(dict.fromkeys(column))
    partitions = {}
    for label in labels:
        mask = (column == label).to_numpy()
        if mask.any():
            partitions[str(label)] = adata[mask, :].copy()
    sizes = {k: v.n_obs for k, v in partitions.items()}
    log.info(f"Split {adata.n_obs} cells into {len(partitions)} batches: {sizes}")
    return partitions


def normalize_log1p(
    adata: ad.AnnData,
    target_sum: float | None = 1e4
) -> ad.AnnData:
    """
    Normalizes counts per cell to target_sum and log1p transforms the data.

    Uses scanpy.pp.normalize_total and scanpy.pp.log1p. Raw counts are kept
    in layers['counts'].

    Args:
        adata: The annotated data matrix with raw counts in X.
        target_sum: Total counts per cell after normalization. If None, library
                    sizes are scaled to the median library size. Defaults to 1e4.

    Returns:
        A new AnnData object with normalized, log1p data in X.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input must be an AnnData object.")

    log.info(f"Normalizing total counts per cell to target_sum={target_sum} and log1p transforming.")
    adata_copy = adata.copy()

    data = adata_copy.X.data if hasattr(adata_copy.X, 'data') else np.asarray(adata_copy.X)
    if data.size and (data.min() < 0 or not np.allclose(np.modf(data)[0], 0)):
        log.warning("Data in adata.X does not look like raw counts (negative values or non-integers found). "
                    "Normalization and log1p transformation assume raw counts.")

    adata_copy.layers['counts'] = adata_copy.X.copy()
    try:
        sc.pp.normalize_total(adata_copy, target_sum=target_sum, inplace=True)
        sc.pp.log1p(adata_copy)
    except Exception as e:
        log.error(f"Error during normalization/log1p: {e}", exc_info=True)
        raise RuntimeError(f"Failed to normalize/log1p data: {e}") from e

    log.info("Normalization and log1p transformation complete.")
    return adata_copy


def select_variable_features(
    adata: ad.AnnData,
    n_top_genes: int = 2000,
    flavor: str = 'seurat_v3'
) -> list[str]:
    """
    Ranks features by dispersion and returns the top `n_top_genes` names.

    Uses scanpy.pp.highly_variable_genes. 'seurat_v3' ranks by the
    variance-stabilized variance of raw counts (layers['counts']); 'seurat'
    and 'cell_ranger' rank by normalized dispersion of the log data in X.
    Also writes 'highly_variable' into adata.var.

    Args:
        adata: Normalized data (output of `normalize_log1p`).
        n_top_genes: Number of features to select. Capped at n_vars.
        flavor: HVG flavor.

    Returns:
        Feature names ordered from most to least variable.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input must be an AnnData object.")
    if n_top_genes is None or n_top_genes <= 0:
        raise ValueError("n_top_genes must be a positive integer.")
    if flavor not in HVG_FLAVORS:
        raise ValueError(f"Unknown HVG flavor '{flavor}'. Choose from {HVG_FLAVORS}.")

    n_top = min(int(n_top_genes), adata.n_vars)
    log.info(f"Selecting highly variable genes (flavor='{flavor}', n_top_genes={n_top}).")

    work = adata.copy()
    try:
        if flavor == 'seurat_v3':
            layer = 'counts' if 'counts' in work.layers else None
            sc.pp.highly_variable_genes(work, flavor=flavor, n_top_genes=n_top, layer=layer, inplace=True)
            ranked = work.var['highly_variable_rank'].dropna().sort_values(kind='stable')
        else:
            sc.pp.highly_variable_genes(work, flavor=flavor, n_top_genes=n_top, inplace=True)
            selected = work.var.loc[work.var['highly_variable'], 'dispersions_norm']
            ranked = selected.sort_values(ascending=False, kind='stable')
    except Exception as e:
        log.error(f"Error during HVG selection: {e}", exc_info=True)
        raise

    features = [str(name) for name in ranked.index[:n_top]]
    adata.var['highly_variable'] = adata.var_names.isin(features)
    log.info(f"Identified {len(features)} highly variable genes.")
    return features


def preprocess_batch(
    adata: ad.AnnData,
    target_sum: float | None = 1e4,
    n_top_genes: int = 2000,
    flavor: str = 'seurat_v3'
) -> tuple[ad.AnnData, list[str]]:
    """Normalizes one batch and selects its variable features using only its own cells."""
    normalized = normalize_log1p(adata, target_sum=target_sum)
    features = select_variable_features(normalized, n_top_genes=n_top_genes, flavor=flavor)
    return normalized, features


def preprocess_batches(
    batches: Mapping[str, ad.AnnData],
    target_sum: float | None = 1e4,
    n_top_genes: int = 2000,
    flavor: str = 'seurat_v3',
    n_jobs: int = 1,
    cancel_token: CancellationToken | None = None
) -> tuple[dict[str, ad.AnnData], dict[str, list[str]]]:
    """
    Runs `preprocess_batch` on every batch independently (optionally in parallel).

    Returns:
        (label -> normalized AnnData, label -> ordered variable features).
    """
    labels = list(batches)

    def _one(label):
        log.info(f"Preprocessing batch '{label}' ({batches[label].n_obs} cells)")
        return preprocess_batch(batches[label], target_sum=target_sum,
                                n_top_genes=n_top_genes, flavor=flavor)

    results = run_tasks(_one, labels, n_jobs=n_jobs, cancel_token=cancel_token, stage="preprocess")
    normalized = {label: res[0] for label, res in zip(labels, results)}
    variable = {label: res[1] for label, res in zip(labels, results)}
    for label in labels:
        log.info(f"stage=preprocess batch={label} cells={normalized[label].n_obs} "
                 f"variable_features={len(variable[label])}")
    return normalized, variable
