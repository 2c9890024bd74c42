# scrnaseq_integrate/analysis/qc.py

import scanpy as sc
import anndata as ad
import logging
import numpy as np
import re
from typing import Sequence

from ..errors import MetadataParseError

log = logging.getLogger(__name__)

DEFAULT_METADATA_FIELDS = ("batch_label", "barcode")


def split_identifiers(
    adata: ad.AnnData,
    fields: Sequence[str] = DEFAULT_METADATA_FIELDS,
    separator: str | None = None
) -> ad.AnnData:
    """
    Splits every cell identifier into named metadata fields.

    Args:
        adata: The annotated data matrix (typically the merged object).
        fields: Names of the obs columns to create, one per identifier part.
        separator: Regular expression to split on, without capturing groups.
                   Defaults to the escaped separator recorded by
                   `merge_batches` in uns['merge'].

    Returns:
        A new AnnData object with one obs column per field.

    Raises:
        TypeError: If input is not an AnnData object.
        ValueError: If no fields are given, the separator has capturing
                    groups, or no separator is given and none was recorded
                    at merge time.
        MetadataParseError: If an identifier does not split into exactly
                            len(fields) parts.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input must be an AnnData object.")
    if not fields:
        raise ValueError("At least one metadata field is required.")
    if separator is None:
        merge_info = adata.uns.get("merge", {})
        if "separator" not in merge_info:
            raise ValueError("No separator given and none recorded in adata.uns['merge'].")
        separator = re.escape(str(merge_info["separator"]))

    pattern = re.compile(separator)
    if pattern.groups > 0:
        raise ValueError(f"Separator /{separator}/ must not contain capturing groups; "
                         f"use (?:...) instead.")
    n_fields = len(fields)
    log.info(f"Splitting cell identifiers on /{separator}/ into fields {list(fields)}")

    parsed = []
    for cell_id in adata.obs_names:
        parts = pattern.split(cell_id)
        if len(parts) != n_fields:
            raise MetadataParseError(
                f"Identifier '{cell_id}' splits into {len(parts)} parts, expected {n_fields}",
                stage="metadata", detail=f"fields={list(fields)} separator=/{separator}/"
            )
        parsed.append(parts)

    adata_copy = adata.copy()
    columns = list(zip(*parsed)) if parsed else [[] for _ in fields]
    for field, values in zip(fields, columns):
        adata_copy.obs[field] = list(values)
    return adata_copy


def calculate_qc_metrics(
    adata: ad.AnnData,
    mito_pattern: str = "^MT-"
) -> ad.AnnData:
    """
    Calculates per-cell QC metrics using scanpy.

    Adds the following to adata.obs:
        - 'n_genes_by_counts', 'total_counts'
        - 'total_counts_mt', 'pct_counts_mt'
    and marks matching features in adata.var['mt'].

    Args:
        adata: The annotated data matrix with raw counts in X.
        mito_pattern: Case-sensitive regular expression matched from the start
                      of each feature name. Defaults to "^MT-" (human).

    Returns:
        A new AnnData object with the metrics. Cells with zero total counts get
        pct_counts_mt == 0.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input must be an AnnData object.")

    log.info(f"Calculating QC metrics. Identifying mitochondrial genes with pattern: '{mito_pattern}'")
    pattern = re.compile(mito_pattern)
    adata_copy = adata.copy()

    adata_copy.var['mt'] = [pattern.match(name) is not None for name in adata_copy.var_names]
    n_mt_genes = int(np.sum(adata_copy.var['mt']))

    try:
        with np.errstate(divide="ignore", invalid="ignore"):
            sc.pp.calculate_qc_metrics(
                adata_copy,
                qc_vars=['mt'] if n_mt_genes > 0 else [],
                percent_top=None,
                log1p=False,
                inplace=True
            )
    except Exception as e:
        log.error(f"Error calculating QC metrics: {e}", exc_info=True)
        raise RuntimeError(f"Failed to calculate QC metrics: {e}") from e

    if n_mt_genes > 0:
        log.info(f"Found {n_mt_genes} mitochondrial genes. Calculated MT percentages.")
        # Empty cells divide by zero; define their percentage as 0
        adata_copy.obs['pct_counts_mt'] = adata_copy.obs['pct_counts_mt'].fillna(0.0)
    else:
        log.warning(f"No mitochondrial genes found using pattern '{mito_pattern}'. "
                    f"Columns 'total_counts_mt' and 'pct_counts_mt' will be zero.")
        adata_copy.obs['total_counts_mt'] = 0.0
        adata_copy.obs['pct_counts_mt'] = 0.0

    log.info("Finished QC metrics calculation step.")
    return adata_copy


def derive_metadata(
    adata: ad.AnnData,
    fields: Sequence[str] = DEFAULT_METADATA_FIELDS,
    separator: str | None = None,
    mito_pattern: str = "^MT-"
) -> ad.AnnData:
    """Identifier fields plus QC metrics, as one step."""
    return calculate_qc_metrics(split_identifiers(adata, fields, separator), mito_pattern=mito_pattern)


def filter_cells_qc(
    adata: ad.AnnData,
    min_counts: float | None = None,
    min_genes: float | None = None,
    max_pct_mito: float | None = None,
    max_counts: float | None = None,
    max_genes: float | None = None,
    batch_key: str = "batch"
) -> ad.AnnData:
    """
    Filters cells based on calculated QC metrics.

    All thresholds are strict: a cell is kept iff total_counts > min_counts,
    n_genes_by_counts > min_genes, pct_counts_mt < max_pct_mito,
    total_counts < max_counts and n_genes_by_counts < max_genes (each
    predicate only when its threshold is not None).

    Args:
        adata: The annotated data matrix with QC metrics.
        min_counts: Exclusive lower bound on total counts.
        min_genes: Exclusive lower bound on detected genes.
        max_pct_mito: Exclusive upper bound on mitochondrial percentage.
        max_counts: Exclusive upper bound on total counts.
        max_genes: Exclusive upper bound on detected genes.
        batch_key: obs column used for the per-batch counts in the log.

    Returns:
        A new AnnData object holding the surviving cells in their original order.

    Raises:
        KeyError: If required QC columns are missing in adata.obs.
        ValueError: If thresholds are illogical (e.g., min > max).
    """
    predicates = [
        ('total_counts', '>', min_counts),
        ('n_genes_by_counts', '>', min_genes),
        ('pct_counts_mt', '<', max_pct_mito),
        ('total_counts', '<', max_counts),
        ('n_genes_by_counts', '<', max_genes),
    ]
    predicates = [p for p in predicates if p[2] is not None]

    missing_cols = sorted({col for col, _, _ in predicates if col not in adata.obs.columns})
    if missing_cols:
        raise KeyError(
            f"Missing required QC columns in adata.obs: {missing_cols}. "
            "Run calculate_qc_metrics first."
        )

    if min_genes is not None and max_genes is not None and min_genes >= max_genes:
        raise ValueError(f"min_genes ({min_genes}) must be smaller than max_genes ({max_genes}).")
    if min_counts is not None and max_counts is not None and min_counts >= max_counts:
        raise ValueError(f"min_counts ({min_counts}) must be smaller than max_counts ({max_counts}).")
    if max_pct_mito is not None and (max_pct_mito < 0 or max_pct_mito > 100):
        raise ValueError(f"max_pct_mito ({max_pct_mito}) must be between 0 and 100.")

    n_obs_start = adata.n_obs
    keep = np.ones(n_obs_start, dtype=bool)
    for column, op, threshold in predicates:
        values = adata.obs[column].to_numpy()
        passed = values > threshold if op == '>' else values < threshold
        keep &= passed
        log.info(f"Applied filter: {column} {op} {threshold}. Cells failing: {int((~passed).sum())}")

    filtered = adata[keep, :].copy()

    if batch_key in adata.obs.columns:
        before = adata.obs[batch_key].value_counts(sort=False)
        after = filtered.obs[batch_key].value_counts(sort=False)
        for label in before.index:
            log.info(f"stage=qc_filter batch={label} cells_before={int(before[label])} "
                     f"cells_after={int(after.get(label, 0))}")

    n_obs_end = filtered.n_obs
    pct = n_obs_end / n_obs_start * 100 if n_obs_start else 0.0
    log.info(f"stage=qc_filter cells_before={n_obs_start} cells_after={n_obs_end} kept_pct={pct:.2f}")
    return filtered
