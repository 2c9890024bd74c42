# scrnaseq_integrate/agent.py

import logging
import anndata as ad
import numpy as np
from pathlib import Path
import scanpy as sc

# Import pipeline step functions
from .data.loader import load_batches, discover_batches
from .data.merge import merge_batches
from .analysis.qc import derive_metadata, filter_cells_qc
from .analysis.preprocess import split_by_batch, preprocess_batches
from .analysis.anchors import AnchorSet, select_integration_features, find_integration_anchors
from .analysis.integration import integrate_batches, build_integrated_adata
from .analysis.diagnostics import batch_mixing_score
from .checkpoint import CheckpointStore
from .parallel import CancellationToken

log = logging.getLogger(__name__)

POST_FILTER = "post-filter"
POST_INTEGRATION = "post-integration"


class IntegrationWorkflow:
    """Orchestrates loading, QC, per-batch preprocessing, anchoring and integration."""
    def __init__(self, params):
        """Initializes the workflow orchestrator."""
        required_attrs = ['output_dir', 'output_prefix']
        for attr in required_attrs:
            if not hasattr(params, attr):
                raise ValueError(f"Initialization failed: Missing required parameter '{attr}'.")
        if not getattr(params, 'batches', None) and not getattr(params, 'input_dir', None):
            raise ValueError("Initialization failed: provide 'batches' or 'input_dir'.")

        self.params = params
        self.output_dir = Path(self.params.output_dir)
        self.prefix = self.params.output_prefix
        self.batch_key = 'batch'
        self.cancel_token = CancellationToken()
        checkpoint_dir = getattr(params, 'checkpoint_dir', None) or self.output_dir / "checkpoints"
        self.checkpoints = CheckpointStore(checkpoint_dir)

        # Stage outputs, passed explicitly from one step to the next
        self.batches = None
        self.filtered = None
        self.normalized = None
        self.variable_features = None
        self.features = None
        self.anchors = None
        self.integration = None
        self.adata = None

        log.info("IntegrationWorkflow initialized.")
        log.debug(f"Workflow parameters: {vars(self.params)}")

    def cancel(self):
        """Requests cancellation; honoured between batches and batch pairs."""
        log.warning("Cancellation requested.")
        self.cancel_token.cancel()

    def run(self) -> ad.AnnData:
        """Executes the pipeline, resuming from the newest checkpoint if requested."""
        log.info(f"Starting workflow run: {self.prefix}")
        try:
            self._setup_environment()                       # Step 0
            resumed_at = self._resume()
            if resumed_at != POST_INTEGRATION:
                if resumed_at != POST_FILTER:
                    self._load_data()                       # Step 1
                    self._merge_and_derive()                # Step 2, 3
                    self._filter_cells()                    # Step 4
                self._preprocess()                          # Step 5
                self._find_anchors()                        # Step 6, 7
                self._integrate()                           # Step 8
            self._save_results()                            # Step 9
            log.info(f"Workflow run '{self.prefix}' completed successfully.")
            return self.adata
        except Exception as e:
            log.error(f"Workflow run '{self.prefix}' failed: {e}", exc_info=True)
            raise

    def _setup_environment(self):
        """Sets up Scanpy settings and output directory."""
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            sc.settings.verbosity = 1  # errors and warnings only; the pipeline logs its own progress
            log.info(f"Output directory set to: {self.output_dir}")
        except OSError as e:
            log.error(f"Failed to create output directory '{self.output_dir}': {e}")
            raise

    def _resume(self) -> str | None:
        if not getattr(self.params, 'resume', False):
            return None
        if self.checkpoints.exists(POST_INTEGRATION):
            self.adata, fitted = self.checkpoints.restore(POST_INTEGRATION)
            self.anchors = AnchorSet.from_uns(fitted['anchors'])
            self.features = list(self.anchors.features)
            log.info(f"Resumed from checkpoint '{POST_INTEGRATION}'.")
            return POST_INTEGRATION
        if self.checkpoints.exists(POST_FILTER):
            self.filtered, _ = self.checkpoints.restore(POST_FILTER)
            log.info(f"Resumed from checkpoint '{POST_FILTER}'.")
            return POST_FILTER
        log.info("Resume requested but no checkpoint found; starting from the beginning.")
        return None

    def _load_data(self):
        log.info("Step 1: Loading batches...")
        paths = self.params.batches or discover_batches(
            self.params.input_dir, suffix=self.params.batch_suffix
        )
        if not paths:
            raise ValueError("No batches to load.")
        self.batches = load_batches(paths, orientation=self.params.orientation)

    def _merge_and_derive(self):
        if self.batches is None: raise RuntimeError("Batches not loaded before merging.")
        log.info("Step 2: Merging batches...")
        merged = merge_batches(self.batches, separator=self.params.id_separator,
                               batch_key=self.batch_key)
        log.info("Step 3: Deriving cell metadata...")
        self.adata = derive_metadata(
            merged, fields=self.params.metadata_fields,
            separator=self.params.metadata_separator, mito_pattern=self.params.mito_pattern
        )
        self.batches = None  # Batch objects are no longer needed

    def _filter_cells(self):
        if self.adata is None: raise RuntimeError("Metadata not derived before filtering.")
        log.info("Step 4: Filtering cells...")
        self.filtered = filter_cells_qc(
            self.adata, min_counts=self.params.min_counts, min_genes=self.params.min_genes,
            max_pct_mito=self.params.max_pct_mito, max_counts=self.params.max_counts,
            max_genes=self.params.max_genes, batch_key=self.batch_key
        )
        if self.filtered.n_obs == 0: raise ValueError("All cells filtered out!")
        self.checkpoints.save(POST_FILTER, self.filtered)

    def _preprocess(self):
        if self.filtered is None: raise RuntimeError("No filtered data to preprocess.")
        log.info("Step 5: Normalizing and selecting variable features per batch...")
        partitions = split_by_batch(self.filtered, batch_key=self.batch_key)
        self.normalized, self.variable_features = preprocess_batches(
            partitions, target_sum=self.params.target_sum, n_top_genes=self.params.n_top_genes,
            flavor=self.params.hvg_flavor, n_jobs=self.params.n_jobs, cancel_token=self.cancel_token
        )

    def _find_anchors(self):
        if self.normalized is None: raise RuntimeError("Batches not preprocessed before anchoring.")
        log.info("Step 6: Selecting integration features...")
        self.features = select_integration_features(
            self.variable_features, n_features=self.params.n_integration_features,
            policy=self.params.feature_policy, min_batches=self.params.feature_min_batches
        )
        log.info("Step 7: Finding integration anchors...")
        self.anchors = find_integration_anchors(
            self.normalized, self.features, reduction=self.params.reduction,
            n_dims=self.params.n_dims, k_anchor=self.params.k_anchor, k_filter=self.params.k_filter,
            k_score=self.params.k_score, score_floor=self.params.score_floor,
            max_memory_gb=self.params.max_memory_gb, random_state=self.params.random_seed,
            n_jobs=self.params.n_jobs, cancel_token=self.cancel_token
        )

    def _integrate(self):
        if self.anchors is None: raise RuntimeError("Anchors not found before integration.")
        log.info("Step 8: Integrating batches...")
        self.integration = integrate_batches(
            self.normalized, self.anchors, reference=self.params.reference,
            k_weight=self.params.k_weight, sd_weight=self.params.sd_weight,
            n_pcs=self.params.n_pcs, random_state=self.params.random_seed,
            cancel_token=self.cancel_token
        )
        self.adata = build_integrated_adata(self.filtered, self.normalized, self.integration)

        if self.params.run_mixing_diagnostic:
            self._log_batch_mixing()

        transforms = {
            'anchors': self.anchors.to_uns(),
            'variable_features': {
                label: np.array(features, dtype=object)
                for label, features in self.variable_features.items()
            },
        }
        self.checkpoints.save(POST_INTEGRATION, self.adata, transforms)

    def _log_batch_mixing(self):
        """Logs the batch mixing score before and after integration."""
        try:
            before = ad.concat(list(self.normalized.values()), axis=0, join="inner")
            before = before[self.adata.obs_names].copy()
            kwargs = dict(batch_key=self.batch_key, features=self.features,
                          n_comps=self.params.n_pcs, random_state=self.params.random_seed)
            score_before = batch_mixing_score(before, **kwargs)
            score_after = batch_mixing_score(self.adata, **kwargs)
            log.info(f"stage=diagnostics batch_mixing_before={score_before:.3f} "
                     f"batch_mixing_after={score_after:.3f}")
        except ValueError as e:
            log.warning(f"Skipping batch mixing diagnostic: {e}")

    def _save_results(self):
        if self.adata is None: raise RuntimeError("No AnnData object to save.")
        log.info("Step 9: Saving results...")
        final_adata_path = self.output_dir / f"{self.prefix}_integrated.h5ad"
        anchors_path = self.output_dir / f"{self.prefix}_anchors.tsv"
        try:
            self.adata.write_h5ad(final_adata_path, compression="gzip")
            log.info(f"Integrated AnnData object saved to: {final_adata_path}")
            if self.anchors is not None:
                self.anchors.to_frame().to_csv(anchors_path, sep="\t", index=False)
                log.info(f"Anchor table saved to: {anchors_path}")
        except Exception as e: log.error(f"Failed to save results: {e}", exc_info=True); raise
