# tests/test_dimred.py

import anndata as ad
import numpy as np
import pandas as pd
import pytest

from scrnaseq_integrate.analysis.dimred import pca_embedding, reduce_dimensionality, scaled_matrix


@pytest.fixture(scope="module")
def dense_adata() -> ad.AnnData:
    """Small dense matrix with one constant feature."""
    rng = np.random.default_rng(0)
    X = rng.normal(size=(40, 12)).astype(np.float32)
    X[:, 3] = 1.0
    return ad.AnnData(X=X, var=pd.DataFrame(index=[f"G{i}" for i in range(12)]))


def test_scaled_matrix_standardizes(dense_adata):
    """Columns get zero mean and unit variance; constant columns become zero."""
    scaled = scaled_matrix(dense_adata, max_value=None)
    assert scaled.shape == (40, 12)
    assert scaled.dtype == np.float64
    np.testing.assert_allclose(scaled.mean(axis=0), 0.0, atol=1e-6)
    np.testing.assert_allclose(np.delete(scaled.std(axis=0), 3), 1.0, rtol=0.05)
    assert np.all(scaled[:, 3] == 0)
    assert not np.isnan(scaled).any()


def test_scaled_matrix_feature_subset(dense_adata):
    scaled = scaled_matrix(dense_adata, features=["G5", "G1"])
    assert scaled.shape == (40, 2)
    np.testing.assert_allclose(scaled[:, 1], scaled_matrix(dense_adata, features=["G1"])[:, 0])


def test_scaled_matrix_clips(dense_adata):
    scaled = scaled_matrix(dense_adata, max_value=0.5)
    assert scaled.max() <= 0.5


def test_pca_embedding_deterministic(dense_adata):
    """Same seed, same coordinates."""
    matrix = scaled_matrix(dense_adata)
    first = pca_embedding(matrix, n_comps=4, random_state=3)
    second = pca_embedding(matrix, n_comps=4, random_state=3)
    assert first.shape == (40, 4)
    np.testing.assert_allclose(first, second)


def test_reduce_dimensionality_returns_embedding(dense_adata):
    """The embedding is returned and the input is left alone by default."""
    embedding = reduce_dimensionality(dense_adata, n_comps=5, random_state=0)
    assert embedding.shape == (40, 5)
    assert "X_pca" not in dense_adata.obsm


def test_reduce_dimensionality_key_added(dense_adata):
    adata = dense_adata.copy()
    embedding = reduce_dimensionality(adata, features=["G0", "G1", "G2", "G4"], n_comps=3,
                                      key_added="X_pca")
    np.testing.assert_allclose(adata.obsm["X_pca"], embedding)
    assert embedding.shape == (40, 3)


def test_pca_embedding_caps_n_comps(dense_adata):
    """n_comps not smaller than min(shape) is lowered to min(shape) - 1."""
    embedding = pca_embedding(scaled_matrix(dense_adata), n_comps=50)
    assert embedding.shape == (40, 11)


def test_dimred_invalid_args(dense_adata):
    with pytest.raises(TypeError):
        reduce_dimensionality(np.zeros((3, 3)))
    with pytest.raises(ValueError, match="positive integer"):
        pca_embedding(np.zeros((5, 5)), n_comps=0)
    with pytest.raises(ValueError, match="Cannot compute PCA"):
        pca_embedding(np.zeros((1, 5)), n_comps=2)
