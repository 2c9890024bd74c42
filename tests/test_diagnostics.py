# tests/test_diagnostics.py

import anndata as ad
import numpy as np
import pandas as pd
import pytest

from scrnaseq_integrate.analysis.diagnostics import batch_mixing_score
from scrnaseq_integrate.errors import PipelineCancelledError, PipelineError, SchemaMismatchError
from scrnaseq_integrate.parallel import CancellationToken, run_tasks


def _two_clouds(offset: float) -> ad.AnnData:
    """Two batches of 60 cells in 5 dimensions, the second shifted by `offset`."""
    rng = np.random.default_rng(0)
    X = rng.normal(size=(120, 5))
    X[60:] += offset
    obs = pd.DataFrame({"batch": ["a"] * 60 + ["b"] * 60}, index=[f"c{i}" for i in range(120)])
    adata = ad.AnnData(X=X.astype(np.float32), obs=obs)
    adata.obsm["X_emb"] = X
    return adata


def test_batch_mixing_separated_vs_mixed():
    """Separate clouds score near 0, overlapping clouds near 1."""
    separated = batch_mixing_score(_two_clouds(50.0), use_rep="X_emb", n_neighbors=10)
    mixed = batch_mixing_score(_two_clouds(0.0), use_rep="X_emb", n_neighbors=10)
    assert separated < 0.05
    assert 0.7 < mixed < 1.3


def test_batch_mixing_computes_embedding():
    """Without use_rep a PCA of the scaled features is used."""
    score = batch_mixing_score(_two_clouds(50.0), n_comps=3, n_neighbors=10)
    assert score < 0.05


def test_batch_mixing_errors():
    adata = _two_clouds(0.0)
    with pytest.raises(KeyError, match="Batch key 'sample'"):
        batch_mixing_score(adata, batch_key="sample")
    with pytest.raises(KeyError, match="Representation 'X_umap'"):
        batch_mixing_score(adata, use_rep="X_umap")
    single = adata[adata.obs["batch"] == "a"].copy()
    with pytest.raises(ValueError, match="at least two batches"):
        batch_mixing_score(single, use_rep="X_emb")


def test_pipeline_error_context():
    """Stage, batch and detail are kept as attributes and rendered in the message."""
    err = SchemaMismatchError("Feature sets differ", stage="merge", batch="b2", detail="3 missing")
    assert isinstance(err, PipelineError)
    assert err.stage == "merge" and err.batch == "b2" and err.detail == "3 missing"
    assert str(err) == "Feature sets differ [stage=merge, batch=b2, detail=3 missing]"
    assert str(PipelineError("plain")) == "plain"


def test_run_tasks_keeps_order():
    """Results come back in input order for both the sequential and the threaded path."""
    items = list(range(8))
    assert run_tasks(lambda x: x * x, items) == [x * x for x in items]
    assert run_tasks(lambda x: x * x, items, n_jobs=3) == [x * x for x in items]


def test_run_tasks_cancelled():
    token = CancellationToken()
    assert not token.cancelled
    token.cancel()
    assert token.cancelled
    with pytest.raises(PipelineCancelledError, match="stage=find_anchors"):
        run_tasks(lambda x: x, [1, 2], n_jobs=2, cancel_token=token, stage="find_anchors")
