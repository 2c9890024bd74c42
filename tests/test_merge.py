# tests/test_merge.py

import anndata as ad
import numpy as np
import pandas as pd
import pytest
from scipy import sparse

from scrnaseq_integrate.data.merge import check_feature_schema, choose_separator, merge_batches
from scrnaseq_integrate.errors import IdentifierCollisionError, SchemaMismatchError


def _batch(barcodes, features, seed=0):
    rng = np.random.default_rng(seed)
    X = sparse.csr_matrix(rng.poisson(2.0, size=(len(barcodes), len(features))).astype(np.float32))
    return ad.AnnData(X=X, obs=pd.DataFrame(index=barcodes), var=pd.DataFrame(index=features))


def test_merge_counts_and_identifiers(three_batches):
    """Merged cell count is the sum of the inputs and every identifier is unique."""
    merged = merge_batches(three_batches)
    assert merged.n_obs == 100 + 150 + 120
    assert merged.n_vars == 50
    assert merged.obs_names.is_unique
    assert merged.obs_names[0] == "b1_CELL0000-1"
    assert merged.obs_names[100] == "b2_CELL0000-1"
    assert merged.uns["merge"]["separator"] == "_"
    assert list(merged.uns["merge"]["batches"]) == ["b1", "b2", "b3"]


def test_merge_preserves_order_and_values(three_batches):
    """Output order is arrival order, then within-batch order; values are unchanged."""
    merged = merge_batches(three_batches)
    assert list(merged.obs["batch"].cat.categories) == ["b1", "b2", "b3"]
    assert list(merged.obs["batch"].iloc[[0, 99, 100, 249, 250, 369]]) == ["b1", "b1", "b2", "b2", "b3", "b3"]
    np.testing.assert_array_equal(merged.X[100:250].toarray(), three_batches["b2"].X.toarray())


def test_merge_does_not_modify_inputs(three_batches):
    before = list(three_batches["b1"].obs_names)
    merge_batches(three_batches)
    assert list(three_batches["b1"].obs_names) == before


def test_merge_disjoint_features():
    """Batches with different feature sets raise SchemaMismatchError naming the batch."""
    batches = {"a": _batch(["c1", "c2"], ["G1", "G2", "G3"]),
               "b": _batch(["c1", "c2"], ["G1", "G2", "G4"])}
    with pytest.raises(SchemaMismatchError, match="batch=b") as excinfo:
        merge_batches(batches)
    assert excinfo.value.batch == "b"
    assert "1 features of 'a' missing" in excinfo.value.detail


def test_merge_feature_order_mismatch():
    """Same features in a different order are rejected, reporting the first difference."""
    batches = {"a": _batch(["c1"], ["G1", "G2", "G3"]),
               "b": _batch(["c1"], ["G1", "G3", "G2"])}
    with pytest.raises(SchemaMismatchError, match="position 1"):
        check_feature_schema(batches)


def test_choose_separator_skips_colliding_candidates():
    """Underscore in a label moves the choice to the next candidate."""
    batches = {"HB17_tumor": _batch(["AAAC-1"], ["G1"]), "HB17_normal": _batch(["AAAC-1"], ["G1"])}
    assert choose_separator(batches) == ":"
    merged = merge_batches(batches)
    assert list(merged.obs_names) == ["HB17_tumor:AAAC-1", "HB17_normal:AAAC-1"]


def test_choose_separator_explicit_collision():
    """An explicit separator that occurs in a barcode is rejected."""
    batches = {"a": _batch(["x:1", "x:2"], ["G1"])}
    with pytest.raises(IdentifierCollisionError, match="barcode 'x:1'"):
        choose_separator(batches, separator=":")


def test_choose_separator_no_candidate():
    batches = {"a_b": _batch(["1:2"], ["G1"])}
    with pytest.raises(IdentifierCollisionError, match="No separator candidate"):
        choose_separator(batches, candidates=("_", ":"))


def test_merge_duplicate_barcodes_within_batch():
    """Duplicate barcodes inside one batch cannot be disambiguated by prefixing."""
    batch = _batch(["c1", "c2"], ["G1", "G2"])
    batch.obs_names = ["c1", "c1"]
    with pytest.raises(IdentifierCollisionError, match="duplicated cell identifiers"):
        merge_batches({"a": batch, "b": _batch(["c1"], ["G1", "G2"])})


def test_merge_empty_input():
    with pytest.raises(ValueError, match="At least one batch"):
        merge_batches({})
