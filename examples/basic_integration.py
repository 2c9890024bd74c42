"""
Example script demonstrating step-by-step usage of scrnaseq_integrate
"""

from scrnaseq_integrate.data.loader import load_batches
from scrnaseq_integrate.data.merge import merge_batches
from scrnaseq_integrate.analysis.qc import derive_metadata, filter_cells_qc
from scrnaseq_integrate.analysis.preprocess import split_by_batch, preprocess_batches
from scrnaseq_integrate.analysis.anchors import select_integration_features, find_integration_anchors
from scrnaseq_integrate.analysis.integration import integrate_batches, build_integrated_adata
from scrnaseq_integrate.analysis.diagnostics import batch_mixing_score
from scrnaseq_integrate.logging_utils import init_logging

def main():
    init_logging()

    # Load and merge
    batches = load_batches({
        "HB17_tumor": "path/to/HB17_tumor_filtered_feature_bc_matrix",
        "HB17_background": "path/to/HB17_background_filtered_feature_bc_matrix",
    })
    adata = merge_batches(batches, separator=":")
    adata = derive_metadata(adata, fields=["patient", "type", "barcode"], separator="[_:]")

    # Perform QC
    filtered = filter_cells_qc(adata, min_counts=800, min_genes=500, max_pct_mito=10)

    # Per-batch normalization and variable features
    normalized, variable = preprocess_batches(split_by_batch(filtered), n_top_genes=2000)

    # Anchors and integration
    features = select_integration_features(variable, n_features=2000)
    anchors = find_integration_anchors(normalized, features, k_anchor=5, k_filter=200)
    result = integrate_batches(normalized, anchors, reference="auto")
    integrated = build_integrated_adata(filtered, normalized, result)

    print(f"Batch mixing after integration: {batch_mixing_score(integrated, features=features):.3f}")

    # Save results
    integrated.write_h5ad("integrated.h5ad")
    anchors.to_frame().to_csv("anchors.tsv", sep="\t", index=False)

if __name__ == "__main__":
    main()
