# scrnaseq_integrate/checkpoint.py

import anndata as ad
import logging
import os
import re
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Mapping

from .errors import FormatError

log = logging.getLogger(__name__)

CHECKPOINT_FORMAT_VERSION = 1
STAGE_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


class CheckpointStore:
    """
    Saves and restores pipeline state by stage name.

    Each stage is one .h5ad file (anndata's HDF5 layout) holding the matrix,
    the cell records and, under uns['fitted'], the fitted transforms. Files
    are written to a temporary name in the same directory and renamed into
    place, so a crash mid-save never leaves a partial checkpoint under the
    stage name.
    """

    def __init__(self, directory):
        self.directory = Path(directory).expanduser()

    def path_for(self, stage: str) -> Path:
        if not isinstance(stage, str) or not STAGE_PATTERN.match(stage) or stage.startswith("."):
            raise ValueError(f"Invalid checkpoint stage name: {stage!r}")
        return self.directory / f"{stage}.h5ad"

    def exists(self, stage: str) -> bool:
        return self.path_for(stage).is_file()

    def stages(self) -> list[str]:
        if not self.directory.is_dir():
            return []
        return sorted(p.stem for p in self.directory.glob("*.h5ad") if not p.name.startswith("."))

    def save(self, stage: str, adata: ad.AnnData, transforms: Mapping | None = None) -> Path:
        """
        Writes a checkpoint for `stage`, replacing any previous one atomically.

        Args:
            stage: Stage name, e.g. 'post-filter'.
            adata: State to persist. Not modified.
            transforms: Fitted transforms; values must be storable in
                        AnnData.uns (arrays, strings, numbers, nested dicts).

        Returns:
            Path of the written checkpoint.
        """
        target = self.path_for(stage)
        self.directory.mkdir(parents=True, exist_ok=True)

        snapshot = adata.copy()
        snapshot.uns["checkpoint"] = {
            "format_version": CHECKPOINT_FORMAT_VERSION,
            "stage": stage,
            "created": datetime.now(timezone.utc).isoformat(),
        }
        snapshot.uns["fitted"] = dict(transforms or {})

        fd, tmp_name = tempfile.mkstemp(prefix=f".{stage}.", suffix=".tmp.h5ad", dir=self.directory)
        os.close(fd)
        try:
            snapshot.write_h5ad(tmp_name, convert_strings_to_categoricals=False)
            os.replace(tmp_name, target)
        except BaseException:
            if os.path.exists(tmp_name):
                os.remove(tmp_name)
            log.error(f"Failed to write checkpoint '{stage}'; previous checkpoint left untouched.")
            raise

        log.info(f"stage=checkpoint action=save name={stage} cells={adata.n_obs} "
                 f"features={adata.n_vars} path={target}")
        return target

    def restore(self, stage: str) -> tuple[ad.AnnData, dict]:
        """
        Reads the checkpoint for `stage`.

        Returns:
            (AnnData, fitted transforms). The bookkeeping entries are removed
            from uns.

        Raises:
            FileNotFoundError: If no checkpoint exists for the stage.
            FormatError: If the file is unreadable or of an unknown version.
        """
        path = self.path_for(stage)
        if not path.is_file():
            raise FileNotFoundError(f"No checkpoint for stage '{stage}' in {self.directory}")
        try:
            adata = ad.read_h5ad(path)
        except (OSError, KeyError, ValueError) as e:
            raise FormatError(f"Unreadable checkpoint: {e}", stage=stage, detail=str(path)) from e

        info = adata.uns.pop("checkpoint", None)
        if not info or int(info.get("format_version", -1)) != CHECKPOINT_FORMAT_VERSION:
            raise FormatError(
                "Unsupported checkpoint format", stage=stage,
                detail=f"version={None if not info else info.get('format_version')} expected={CHECKPOINT_FORMAT_VERSION}"
            )
        transforms = dict(adata.uns.pop("fitted", {}))
        log.info(f"stage=checkpoint action=restore name={stage} cells={adata.n_obs} "
                 f"features={adata.n_vars} created={info.get('created')}")
        return adata, transforms
