# scrnaseq_integrate/data/loader.py

import scanpy as sc
import anndata as ad
import pandas as pd
import os
import logging
from typing import Mapping

from ..errors import FormatError

log = logging.getLogger(__name__)

# Suffix stripped from a batch directory name when no label is given
DEFAULT_BATCH_SUFFIX = "_filtered_feature_bc_matrix"

_MATRIX_NAMES = ("matrix.mtx.gz", "matrix.mtx")
_FEATURE_NAMES = ("features.tsv.gz", "features.tsv", "genes.tsv.gz", "genes.tsv")
_BARCODE_NAMES = ("barcodes.tsv.gz", "barcodes.tsv")


def _find_file(directory: str, candidates: tuple, kind: str, label: str) -> str:
    for name in candidates:
        path = os.path.join(directory, name)
        if os.path.exists(path):
            return path
    raise FormatError(
        f"No {kind} file found in {directory} (looked for {', '.join(candidates)})",
        stage="load", batch=label
    )


def _read_list(path: str) -> pd.DataFrame:
    # pandas infers gzip compression from the suffix
    return pd.read_csv(path, sep="\t", header=None, dtype=str, comment=None)


def batch_label_from_path(path: str, strip_suffix: str | None = DEFAULT_BATCH_SUFFIX) -> str:
    """Returns the directory name with a known suffix removed."""
    name = os.path.basename(os.path.normpath(os.path.expanduser(path)))
    if strip_suffix and name.endswith(strip_suffix) and len(name) > len(strip_suffix):
        name = name[: -len(strip_suffix)]
    return name


def load_batch(
    data_path: str,
    label: str | None = None,
    strip_suffix: str | None = DEFAULT_BATCH_SUFFIX,
    orientation: str = "auto"
) -> tuple[str, ad.AnnData]:
    """
    Loads one batch from a directory of three aligned files.

    The directory must contain a feature list (features.tsv[.gz] or
    genes.tsv[.gz]), a cell barcode list (barcodes.tsv[.gz]) and a Matrix
    Market triplet file (matrix.mtx[.gz]).

    Args:
        data_path: Path to the batch directory.
        label: Batch label. Defaults to the directory name with `strip_suffix`
               removed.
        strip_suffix: Known suffix to strip when deriving the label.
        orientation: 'cells_by_features' (rows are barcodes),
                     'features_by_cells' (10x layout, rows are features) or
                     'auto' (whichever matches, preferring the 10x layout).

    Returns:
        A (label, AnnData) tuple. The AnnData has cells as rows, features as
        columns and obs['batch'] set to the label.

    Raises:
        TypeError: If data_path is not a string.
        FileNotFoundError: If the directory does not exist.
        FormatError: If a file is missing or the matrix dimensions do not
                     match the barcode and feature lists.
        ValueError: If orientation is not recognized.
    """
    if not isinstance(data_path, (str, os.PathLike)):
        raise TypeError(f"Expected data_path to be a string, but got {type(data_path)}")
    if orientation not in ("auto", "cells_by_features", "features_by_cells"):
        raise ValueError(f"Unknown orientation '{orientation}'.")

    expanded_path = os.path.expanduser(str(data_path))
    if not os.path.isdir(expanded_path):
        raise FileNotFoundError(f"Batch directory not found: {expanded_path}")
    if label is None:
        label = batch_label_from_path(expanded_path, strip_suffix)

    log.info(f"Loading batch '{label}' from: {expanded_path}")
    mtx_file = _find_file(expanded_path, _MATRIX_NAMES, "matrix", label)
    features_file = _find_file(expanded_path, _FEATURE_NAMES, "feature list", label)
    barcodes_file = _find_file(expanded_path, _BARCODE_NAMES, "barcode list", label)

    try:
        features = _read_list(features_file)
        barcodes = _read_list(barcodes_file)
        adata = sc.read_mtx(mtx_file)
    except (ValueError, OSError, pd.errors.ParserError) as e:
        log.error(f"Failed to parse files for batch '{label}': {e}", exc_info=True)
        raise FormatError(f"Could not parse input files: {e}", stage="load", batch=label) from e

    n_features, n_barcodes = len(features), len(barcodes)
    n_rows, n_cols = adata.shape
    cells_by_features = (n_rows, n_cols) == (n_barcodes, n_features)
    features_by_cells = (n_rows, n_cols) == (n_features, n_barcodes)

    if orientation == "features_by_cells" or (orientation == "auto" and features_by_cells):
        if not features_by_cells:
            raise FormatError(
                f"Matrix shape {adata.shape} does not match {n_features} features x {n_barcodes} barcodes",
                stage="load", batch=label, detail=mtx_file
            )
        adata = adata.T
    elif not cells_by_features:
        raise FormatError(
            f"Matrix shape {adata.shape} does not match {n_barcodes} barcodes x {n_features} features",
            stage="load", batch=label, detail=mtx_file
        )

    # Prefer gene symbols (second column) as feature names, keep ids in var
    if features.shape[1] >= 2:
        var_names = features.iloc[:, 1].to_numpy()
        adata.var = pd.DataFrame({"gene_ids": features.iloc[:, 0].to_numpy()}, index=var_names)
    else:
        adata.var = pd.DataFrame(index=features.iloc[:, 0].to_numpy())
    adata.obs = pd.DataFrame({"batch": label}, index=barcodes.iloc[:, 0].to_numpy())
    adata.var_names_make_unique()
    # Keep a compressed row layout for per-cell operations downstream
    adata.X = adata.X.tocsr() if hasattr(adata.X, "tocsr") else adata.X

    log.info(f"Loaded batch '{label}'. Shape: {adata.shape}")
    return label, adata


def load_batches(
    paths: Mapping[str, str],
    orientation: str = "auto"
) -> dict[str, ad.AnnData]:
    """Loads several batches, keyed by the caller-supplied label (insertion order kept)."""
    batches = {}
    for label, path in paths.items():
        _, batches[label] = load_batch(path, label=label, orientation=orientation)
    log.info(f"Loaded {len(batches)} batches: {list(batches)}")
    return batches


def discover_batches(input_dir: str, suffix: str = DEFAULT_BATCH_SUFFIX) -> dict[str, str]:
    """
    Maps batch label -> directory for every subdirectory of `input_dir`
    whose name ends with `suffix`, sorted by name.
    """
    expanded = os.path.expanduser(input_dir)
    if not os.path.isdir(expanded):
        raise FileNotFoundError(f"Input directory not found: {expanded}")
    found = {}
    for name in sorted(os.listdir(expanded)):
        path = os.path.join(expanded, name)
        if os.path.isdir(path) and (not suffix or name.endswith(suffix)):
            found[batch_label_from_path(path, suffix)] = path
    if not found:
        log.warning(f"No batch directories matching '*{suffix}' in {expanded}")
    return found
