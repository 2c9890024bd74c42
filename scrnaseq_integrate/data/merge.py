# scrnaseq_integrate/data/merge.py

import anndata as ad
import numpy as np
import pandas as pd
import logging
from typing import Mapping, Sequence

from ..errors import SchemaMismatchError, IdentifierCollisionError

log = logging.getLogger(__name__)

# Tried in order when no separator is given
DEFAULT_SEPARATORS = ("_", ":", "|", "#", "@", "+", "~")


def check_feature_schema(batches: Mapping[str, ad.AnnData]) -> None:
    """
    Verifies that every batch has the same features in the same order.

    Raises:
        SchemaMismatchError: Naming the first batch that differs from the
                             first batch, with a summary of the difference.
    """
    labels = list(batches)
    reference_label = labels[0]
    reference = batches[reference_label].var_names
    for label in labels[1:]:
        other = batches[label].var_names
        if len(other) == len(reference) and (other == reference).all():
            continue
        missing = reference.difference(other)
        extra = other.difference(reference)
        if len(missing) == 0 and len(extra) == 0 and len(other) == len(reference):
            # Same set, different order
            position = next(i for i, (a, b) in enumerate(zip(reference, other)) if a != b)
            detail = (f"feature order differs from '{reference_label}' at position {position} "
                      f"('{reference[position]}' vs '{other[position]}')")
        else:
            detail = (f"{len(missing)} features of '{reference_label}' missing, "
                      f"{len(extra)} unexpected features "
                      f"(e.g. {list(missing[:3]) + list(extra[:3])})")
        raise SchemaMismatchError(
            "Feature sets must be identical and order-matched across batches",
            stage="merge", batch=label, detail=detail
        )


def choose_separator(
    batches: Mapping[str, ad.AnnData],
    separator: str | None = None,
    candidates: Sequence[str] = DEFAULT_SEPARATORS
) -> str:
    """
    Picks a separator that occurs in no batch label and no barcode.

    Args:
        batches: Mapping of batch label to AnnData.
        separator: Explicit separator to validate instead of searching.
        candidates: Separators tried in order when `separator` is None.

    Raises:
        IdentifierCollisionError: If the explicit separator collides or no
                                  candidate is usable.
    """
    def collides(sep: str) -> str | None:
        for label, adata in batches.items():
            if sep in label:
                return f"batch label '{label}' contains '{sep}'"
            hits = adata.obs_names[adata.obs_names.str.contains(sep, regex=False)]
            if len(hits) > 0:
                return f"barcode '{hits[0]}' of batch '{label}' contains '{sep}'"
        return None

    if separator is not None:
        if not separator:
            raise IdentifierCollisionError("Separator must be a non-empty string", stage="merge")
        reason = collides(separator)
        if reason is not None:
            raise IdentifierCollisionError(
                f"Separator '{separator}' is ambiguous", stage="merge", detail=reason
            )
        return separator

    for sep in candidates:
        if collides(sep) is None:
            return sep
    raise IdentifierCollisionError(
        "No separator candidate is absent from all labels and barcodes",
        stage="merge", detail=f"tried {list(candidates)}"
    )


def merge_batches(
    batches: Mapping[str, ad.AnnData],
    separator: str | None = None,
    candidates: Sequence[str] = DEFAULT_SEPARATORS,
    batch_key: str = "batch"
) -> ad.AnnData:
    """
    Concatenates batches along the cell axis.

    Cell identifiers become `<label><separator><barcode>`. Output order is
    batch arrival order, then the original order within each batch. The
    chosen separator and batch order are recorded in uns['merge'].

    Args:
        batches: Mapping of batch label to AnnData (insertion order = arrival order).
        separator: Explicit separator. Defaults to the first usable candidate.
        candidates: Separators tried when `separator` is None.
        batch_key: obs column holding the batch label.

    Returns:
        A new merged AnnData object. Inputs are not modified.

    Raises:
        ValueError: If no batches are given.
        SchemaMismatchError: If features differ across batches.
        IdentifierCollisionError: If identifiers cannot be disambiguated.
    """
    if not batches:
        raise ValueError("At least one batch is required for merging.")

    check_feature_schema(batches)
    sep = choose_separator(batches, separator, candidates)
    labels = list(batches)
    log.info(f"Merging {len(labels)} batches with separator '{sep}': {labels}")

    parts = []
    for label, adata in batches.items():
        part = adata.copy()
        part.obs_names = [f"{label}{sep}{barcode}" for barcode in adata.obs_names]
        part.obs[batch_key] = label
        parts.append(part)

    merged = ad.concat(parts, axis=0, join="inner", merge="same")
    duplicated = merged.obs_names[merged.obs_names.duplicated()]
    if len(duplicated) > 0:
        raise IdentifierCollisionError(
            f"{len(duplicated)} duplicated cell identifiers after prefixing",
            stage="merge", detail=f"first duplicate '{duplicated[0]}'"
        )

    merged.obs[batch_key] = pd.Categorical(merged.obs[batch_key], categories=labels)
    merged.uns["merge"] = {"separator": sep, "batches": np.array(labels, dtype=object)}

    n_in = sum(a.n_obs for a in batches.values())
    log.info(f"stage=merge batches={len(labels)} cells_in={n_in} cells_out={merged.n_obs} "
             f"features={merged.n_vars}")
    return merged
