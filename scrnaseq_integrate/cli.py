# scrnaseq_integrate/cli.py

import argparse
import logging
import sys
from pathlib import Path
import yaml

from .agent import IntegrationWorkflow
from .logging_utils import init_logging

log = logging.getLogger("scrnaseq_integrate.cli")

DEFAULTS = {
    'output_prefix': "integrated",
    'batches': None, 'input_dir': None, 'batch_suffix': "_filtered_feature_bc_matrix",
    'orientation': "auto",
    # Merge / metadata
    'id_separator': None, 'metadata_fields': "batch_label,barcode", 'metadata_separator': None,
    # QC
    'mito_pattern': "^MT-", 'min_counts': None, 'min_genes': 200, 'max_pct_mito': 10.0,
    'max_counts': None, 'max_genes': None,
    # Preprocessing
    'target_sum': 10000.0, 'n_top_genes': 2000, 'hvg_flavor': "seurat_v3",
    # Anchors
    'n_integration_features': 2000, 'feature_policy': "frequency", 'feature_min_batches': 2,
    'reduction': "cca", 'n_dims': 30, 'k_anchor': 5, 'k_filter': 200, 'k_score': 30,
    'score_floor': 0.0,
    # Integration
    'reference': "auto", 'k_weight': 100, 'sd_weight': 1.0, 'n_pcs': 30,
    'run_mixing_diagnostic': True,
    # Resources / checkpoints
    'n_jobs': 1, 'max_memory_gb': None, 'checkpoint_dir': None, 'resume': False,
    'random_seed': 0, 'logfile': None,
}

BOOL_ACTION_KEYS = ['resume', 'run_mixing_diagnostic']
LIST_KEYS = ['metadata_fields']
OPTIONAL_KEYS = ['min_counts', 'min_genes', 'max_pct_mito', 'max_counts', 'max_genes',
                 'id_separator', 'metadata_separator', 'max_memory_gb', 'checkpoint_dir',
                 'logfile', 'input_dir']


# --- Argument Parser Setup ---
def create_parser():
    parser = argparse.ArgumentParser(
        description="Merge, quality-filter and anchor-integrate single-cell count batches.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    # --- Input/Output Arguments ---
    io_group = parser.add_argument_group("input/output")
    io_group.add_argument("-b", "--batch", dest="batch", action="append", metavar="LABEL=PATH",
                          help="Batch directory with its label. Repeat for each batch.")
    io_group.add_argument("-i", "--input-dir", type=str, help="Directory whose subdirectories are batches.")
    io_group.add_argument("--batch-suffix", type=str, help="Suffix identifying (and stripped from) batch directories.")
    io_group.add_argument("--orientation", type=str, choices=['auto', 'cells_by_features', 'features_by_cells'],
                          help="Layout of the matrix files.")
    io_group.add_argument("-o", "--output-dir", type=str, required=True, help="Directory to save results.")
    io_group.add_argument("-c", "--config", type=str, default=None, help="Path to a YAML configuration file.")
    io_group.add_argument("--output-prefix", type=str, help="Prefix for output files. Overrides config.")
    io_group.add_argument("--logfile", type=str, help="Also write the log to this file.")
    io_group.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")

    # --- Step Arguments ---
    meta_group = parser.add_argument_group("merge and metadata")
    meta_group.add_argument("--id-separator", type=str, help="Separator between batch label and barcode.")
    meta_group.add_argument("--metadata-fields", type=str, help="Comma-separated names of identifier fields.")
    meta_group.add_argument("--metadata-separator", type=str, help="Regex (no capturing groups) splitting identifiers into fields.")
    meta_group.add_argument("--mito-pattern", type=str, help="Regex matching mitochondrial feature names.")

    qc_group = parser.add_argument_group("quality filter (strict thresholds)")
    qc_group.add_argument("--min-counts", type=float, help="Keep cells with total counts above this.")
    qc_group.add_argument("--min-genes", type=float, help="Keep cells with more detected genes than this.")
    qc_group.add_argument("--max-pct-mito", type=float, help="Keep cells with mitochondrial percentage below this.")
    qc_group.add_argument("--max-counts", type=float, help="Keep cells with total counts below this.")
    qc_group.add_argument("--max-genes", type=float, help="Keep cells with fewer detected genes than this.")

    pp_group = parser.add_argument_group("per-batch preprocessing")
    pp_group.add_argument("--target-sum", type=float, help="Target sum for normalization.")
    pp_group.add_argument("--n-top-genes", type=int, help="Variable features per batch.")
    pp_group.add_argument("--hvg-flavor", type=str, choices=['seurat', 'cell_ranger', 'seurat_v3'], help="HVG selection flavor.")

    anchor_group = parser.add_argument_group("anchors")
    anchor_group.add_argument("--n-integration-features", type=int, help="Size of the shared feature set.")
    anchor_group.add_argument("--feature-policy", type=str, choices=['frequency', 'intersection', 'union'],
                              help="How per-batch variable features are combined.")
    anchor_group.add_argument("--feature-min-batches", type=int, help="Batches a feature must be variable in ('frequency').")
    anchor_group.add_argument("--reduction", type=str, choices=['cca', 'pca'], help="Joint reduction for anchor search.")
    anchor_group.add_argument("--n-dims", type=int, help="Dimensions of the shared space.")
    anchor_group.add_argument("--k-anchor", type=int, help="Neighbours for mutual nearest neighbour search.")
    anchor_group.add_argument("--k-filter", type=int, help="Neighbours for anchor filtering (0 disables).")
    anchor_group.add_argument("--k-score", type=int, help="Neighbours for anchor scoring.")
    anchor_group.add_argument("--score-floor", type=float, help="Minimum anchor score kept.")

    int_group = parser.add_argument_group("integration")
    int_group.add_argument("--reference", type=str, help="Reference batch label, or 'auto' for the largest batch.")
    int_group.add_argument("--k-weight", type=int, help="Anchors weighted per cell.")
    int_group.add_argument("--sd-weight", type=float, help="Gaussian kernel width for anchor weights.")
    int_group.add_argument("--n-pcs", type=int, help="PCs used for anchor distances.")
    int_group.add_argument("--run-mixing-diagnostic", action=argparse.BooleanOptionalAction,
                           help="Log batch mixing before and after integration.")

    run_group = parser.add_argument_group("resources and checkpoints")
    run_group.add_argument("--n-jobs", type=int, help="Parallel workers (-1 for all cores).")
    run_group.add_argument("--max-memory-gb", type=float, help="Fail instead of exceeding this working memory.")
    run_group.add_argument("--checkpoint-dir", type=str, help="Checkpoint directory (default: <output-dir>/checkpoints).")
    run_group.add_argument("--resume", action=argparse.BooleanOptionalAction, help="Resume from the newest checkpoint.")
    run_group.add_argument("--random-seed", type=int, help="Random seed for reproducibility.")

    return parser


def parse_batch_args(values) -> dict | None:
    """Turns ['a=/path/a', ...] into {'a': '/path/a', ...}."""
    if not values:
        return None
    batches = {}
    for value in values:
        label, sep, path = value.partition("=")
        if not sep or not label or not path:
            raise ValueError(f"Invalid --batch value '{value}'. Expected LABEL=PATH.")
        if label in batches:
            raise ValueError(f"Batch label '{label}' given more than once.")
        batches[label] = path
    return batches


def read_config(config_path) -> dict:
    """
    Reads a YAML config. Sections (mappings) are flattened into one namespace,
    except 'batches', which maps labels to directories.
    """
    config_params = {}
    with open(config_path, 'r') as f:
        config_yaml = yaml.safe_load(f)
    if not config_yaml:
        return config_params
    if not isinstance(config_yaml, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping.")
    for section, params_in_section in config_yaml.items():
        if section == 'batches':
            config_params['batches'] = {str(k): str(v) for k, v in (params_in_section or {}).items()}
        elif isinstance(params_in_section, dict):
            config_params.update(params_in_section)
        else:
            config_params[section] = params_in_section
    return config_params


# --- Parameter Loading and Precedence ---
def load_and_merge_params(args: argparse.Namespace) -> argparse.Namespace:
    """Loads config file and merges parameters with CLI args and defaults (CLI wins)."""
    config_params = {}
    if args.config:
        config_path = Path(args.config)
        if not config_path.is_file(): log.error(f"Config file not found: {config_path}"); sys.exit(1)
        try:
            config_params = read_config(config_path)
            log.info(f"Loaded parameters from config file: {args.config}")
        except yaml.YAMLError as e: log.error(f"Error parsing config file {args.config}: {e}"); sys.exit(1)
        except (OSError, ValueError) as e: log.error(f"Error reading config file {args.config}: {e}"); sys.exit(1)

    cli_args_dict = vars(args).copy()
    try:
        cli_args_dict['batches'] = parse_batch_args(cli_args_dict.pop('batch', None))
    except ValueError as e:
        log.error(str(e)); sys.exit(1)

    final_params = argparse.Namespace()
    for key, default_value in DEFAULTS.items():
        param_value = default_value

        if key in config_params:
            config_value = config_params[key]
            param_value = None if config_value is None or str(config_value).lower() == 'null' else config_value

        cli_value = cli_args_dict.get(key)
        if cli_value is not None:
            param_value = cli_value

        if key in LIST_KEYS and isinstance(param_value, str):
            param_value = [f.strip() for f in param_value.split(',') if f.strip()]
        elif key in OPTIONAL_KEYS and param_value == '':
            param_value = None
        setattr(final_params, key, param_value)

    if final_params.k_filter is not None and final_params.k_filter <= 0:
        final_params.k_filter = None
    final_params.output_dir = args.output_dir

    log.debug(f"Final parameters after merge: {vars(final_params)}")
    return final_params


# --- Main Pipeline Function ---
def run_pipeline(params):
    """Initializes and runs the IntegrationWorkflow."""
    try:
        workflow = IntegrationWorkflow(params)
        workflow.run()
        log.info("Workflow finished. Integrated AnnData object available.")
    except Exception:
        log.critical("Pipeline execution failed. See previous logs for details.")
        sys.exit(1)


# --- Entry Point ---
def main(argv=None):
    parser = create_parser()
    args = parser.parse_args(argv)
    init_logging(level=logging.DEBUG if args.verbose else logging.INFO)
    final_params = load_and_merge_params(args)
    if final_params.logfile:
        init_logging(Path(final_params.logfile), level=logging.DEBUG if args.verbose else logging.INFO)
    if not final_params.batches and not final_params.input_dir:
        parser.error("Provide batches with --batch LABEL=PATH, --input-dir or a config 'batches' section.")
    run_pipeline(final_params)


if __name__ == "__main__":
    main()
