# tests/test_loader.py

import os

import anndata as ad
import numpy as np
import pytest

from scrnaseq_integrate.data.loader import (
    batch_label_from_path,
    discover_batches,
    load_batch,
    load_batches,
)
from scrnaseq_integrate.errors import FormatError

from conftest import feature_names, synthetic_counts, write_batch_dir


@pytest.fixture
def small_counts():
    return synthetic_counts(20, seed=5, n_low=2)


@pytest.fixture
def barcodes():
    return [f"CELL{i:04d}-1" for i in range(20)]


def test_load_batch_features_by_cells(tmp_path, small_counts, barcodes):
    """10x layout (features as rows) is transposed to cells x features."""
    path = write_batch_dir(tmp_path / "s1_filtered_feature_bc_matrix", small_counts,
                           barcodes, feature_names())
    label, adata = load_batch(path)
    assert isinstance(adata, ad.AnnData)
    assert label == "s1"
    assert adata.shape == (20, 50)
    assert list(adata.obs_names) == barcodes
    assert list(adata.var_names) == feature_names()
    assert "gene_ids" in adata.var.columns
    assert (adata.obs["batch"] == "s1").all()
    np.testing.assert_array_equal(adata.X.toarray(), small_counts)


def test_load_batch_cells_by_features(tmp_path, small_counts, barcodes):
    """Matrix stored with barcodes as rows is read without transposing."""
    path = write_batch_dir(tmp_path / "s2", small_counts, barcodes, feature_names(),
                           layout="cells_by_features")
    label, adata = load_batch(path, label="custom", orientation="cells_by_features")
    assert label == "custom"
    assert adata.shape == (20, 50)
    np.testing.assert_array_equal(adata.X.toarray(), small_counts)


def test_load_batch_auto_detects_cells_by_features(tmp_path, small_counts, barcodes):
    """Auto orientation falls back to cells x features when that is the only match."""
    path = write_batch_dir(tmp_path / "s3", small_counts, barcodes, feature_names(),
                           layout="cells_by_features")
    _, adata = load_batch(path)
    assert adata.shape == (20, 50)
    np.testing.assert_array_equal(adata.X.toarray(), small_counts)


def test_load_batch_gzipped(tmp_path, small_counts, barcodes):
    """Compressed files are read transparently."""
    path = write_batch_dir(tmp_path / "gz", small_counts, barcodes, feature_names(), compress=True)
    assert os.path.exists(os.path.join(path, "matrix.mtx.gz"))
    _, adata = load_batch(path)
    assert adata.shape == (20, 50)
    assert adata.X.sum() == pytest.approx(small_counts.sum())


def test_load_batch_shape_mismatch(tmp_path, small_counts, barcodes):
    """A barcode list that does not match the matrix raises FormatError."""
    path = write_batch_dir(tmp_path / "bad", small_counts, barcodes[:-1], feature_names())
    with pytest.raises(FormatError, match="does not match"):
        load_batch(path)


def test_load_batch_wrong_forced_orientation(tmp_path, small_counts, barcodes):
    """Forcing the wrong orientation is reported as a format problem."""
    path = write_batch_dir(tmp_path / "forced", small_counts, barcodes, feature_names())
    with pytest.raises(FormatError, match="batch=forced"):
        load_batch(path, orientation="cells_by_features")


def test_load_batch_missing_matrix(tmp_path, small_counts, barcodes):
    """A directory without a matrix file raises FormatError naming the file kind."""
    path = write_batch_dir(tmp_path / "nomatrix", small_counts, barcodes, feature_names())
    os.remove(os.path.join(path, "matrix.mtx"))
    with pytest.raises(FormatError, match="No matrix file"):
        load_batch(path)


def test_load_batch_missing_dir(tmp_path):
    """Test loading a non-existent directory raises FileNotFoundError."""
    with pytest.raises(FileNotFoundError):
        load_batch(str(tmp_path / "does_not_exist"))


def test_load_batch_invalid_type():
    """Test passing a non-string path raises TypeError."""
    with pytest.raises(TypeError, match="Expected data_path to be a string"):
        load_batch(123)


def test_load_batch_invalid_orientation(tmp_path):
    with pytest.raises(ValueError, match="Unknown orientation"):
        load_batch(str(tmp_path), orientation="sideways")


def test_batch_label_from_path():
    """Known suffixes are stripped; other names are kept whole."""
    assert batch_label_from_path("/data/HB17_tumor_filtered_feature_bc_matrix") == "HB17_tumor"
    assert batch_label_from_path("/data/HB17_tumor_filtered_feature_bc_matrix/") == "HB17_tumor"
    assert batch_label_from_path("/data/plain_dir") == "plain_dir"
    assert batch_label_from_path("/data/_filtered_feature_bc_matrix") == "_filtered_feature_bc_matrix"
    assert batch_label_from_path("/data/x_suffix", strip_suffix=None) == "x_suffix"


def test_load_batches_keeps_caller_order(three_batch_dirs):
    """Labels come from the mapping and keep its order."""
    ordered = {label: three_batch_dirs[label] for label in ("b3", "b1", "b2")}
    batches = load_batches(ordered)
    assert list(batches) == ["b3", "b1", "b2"]
    assert [batches[label].n_obs for label in batches] == [120, 100, 150]
    assert (batches["b3"].obs["batch"] == "b3").all()


def test_discover_batches(three_batch_dirs, tmp_path):
    """Subdirectories with the suffix are found, sorted and labelled."""
    (tmp_path / "unrelated_dir").mkdir()
    found = discover_batches(str(tmp_path))
    assert list(found) == ["b1", "b2", "b3"]
    assert found["b2"] == three_batch_dirs["b2"]


def test_discover_batches_missing_dir(tmp_path):
    with pytest.raises(FileNotFoundError):
        discover_batches(str(tmp_path / "nope"))
