# tests/conftest.py

import gzip
import os
import shutil

import anndata as ad
import numpy as np
import pandas as pd
import pytest
from scipy import io as spio
from scipy import sparse

N_FEATURES = 50
N_LOW_QUALITY = 10


def feature_names(n_features: int = N_FEATURES) -> list[str]:
    """Three mitochondrial features followed by ordinary genes."""
    return [f"MT-{i}" for i in range(1, 4)] + [f"GENE{i}" for i in range(4, n_features + 1)]


def synthetic_counts(n_cells: int, seed: int, n_low: int = N_LOW_QUALITY,
                     n_features: int = N_FEATURES) -> np.ndarray:
    """
    Counts for three cell types with a per-batch feature scaling (the batch
    effect). The last `n_low` cells are near-empty, so they are exactly the
    lowest total-count cells of the batch.
    """
    type_rng = np.random.default_rng(1234)  # cell types shared by every batch
    profiles = type_rng.gamma(2.0, 1.0, size=(3, n_features)) * 4.0
    rng = np.random.default_rng(seed)
    batch_effect = np.exp(rng.normal(0.0, 0.3, size=n_features))
    rates = profiles[np.arange(n_cells) % 3] * batch_effect
    rates[n_cells - n_low:] *= 0.01
    return rng.poisson(rates).astype(np.float32)


def make_adata(n_cells: int, seed: int, label: str, n_low: int = N_LOW_QUALITY) -> ad.AnnData:
    counts = synthetic_counts(n_cells, seed, n_low)
    obs = pd.DataFrame({"batch": label}, index=[f"CELL{i:04d}-1" for i in range(n_cells)])
    var = pd.DataFrame(index=feature_names())
    return ad.AnnData(X=sparse.csr_matrix(counts), obs=obs, var=var)


def write_batch_dir(directory, counts: np.ndarray, barcodes, features,
                    layout: str = "features_by_cells", compress: bool = False) -> str:
    """Writes features/barcodes/matrix files for one batch."""
    os.makedirs(directory, exist_ok=True)
    with open(os.path.join(directory, "features.tsv"), "w") as fh:
        for i, name in enumerate(features):
            fh.write(f"ENSG{i:05d}\t{name}\tGene Expression\n")
    with open(os.path.join(directory, "barcodes.tsv"), "w") as fh:
        fh.write("\n".join(barcodes) + "\n")
    matrix = sparse.coo_matrix(counts.T if layout == "features_by_cells" else counts).astype(np.int64)
    spio.mmwrite(os.path.join(directory, "matrix.mtx"), matrix)

    if compress:
        for name in ("features.tsv", "barcodes.tsv", "matrix.mtx"):
            path = os.path.join(directory, name)
            with open(path, "rb") as src, gzip.open(path + ".gz", "wb") as dst:
                shutil.copyfileobj(src, dst)
            os.remove(path)
    return str(directory)


@pytest.fixture
def three_batch_dirs(tmp_path):
    """Batch directories of 100, 150 and 120 cells over 50 shared features."""
    paths = {}
    for label, n_cells, seed in (("b1", 100, 11), ("b2", 150, 22), ("b3", 120, 33)):
        counts = synthetic_counts(n_cells, seed)
        barcodes = [f"CELL{i:04d}-1" for i in range(n_cells)]
        paths[label] = write_batch_dir(tmp_path / f"{label}_filtered_feature_bc_matrix",
                                       counts, barcodes, feature_names(), compress=(label == "b2"))
    return paths


@pytest.fixture
def three_batches():
    """In-memory batches of 100, 150 and 120 cells keyed by label."""
    return {
        "b1": make_adata(100, 11, "b1"),
        "b2": make_adata(150, 22, "b2"),
        "b3": make_adata(120, 33, "b3"),
    }
