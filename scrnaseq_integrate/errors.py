# scrnaseq_integrate/errors.py

"""Exception taxonomy for the integration pipeline.

Every error carries enough context (stage, batch label, offending value) to
diagnose the failing input from the log alone. None of these are retried.
"""


class PipelineError(Exception):
    """Base class for fatal pipeline errors."""

    def __init__(self, message: str, *, stage: str | None = None,
                 batch: str | None = None, detail: str | None = None):
        self.stage = stage
        self.batch = batch
        self.detail = detail
        context = []
        if stage is not None:
            context.append(f"stage={stage}")
        if batch is not None:
            context.append(f"batch={batch}")
        if detail is not None:
            context.append(f"detail={detail}")
        if context:
            message = f"{message} [{', '.join(context)}]"
        super().__init__(message)


class FormatError(PipelineError):
    """Malformed input or checkpoint file."""


class SchemaMismatchError(PipelineError):
    """Feature sets (or their order) differ across batches."""


class IdentifierCollisionError(PipelineError):
    """Cell identifiers cannot be made unambiguous."""


class MetadataParseError(PipelineError):
    """A cell identifier does not split into the expected fields."""


class InsufficientAnchorsError(PipelineError):
    """A batch pair has no usable anchors."""


class ResourceExhaustedError(PipelineError):
    """Memory or compute limits would be exceeded."""


class PipelineCancelledError(PipelineError):
    """The run was cancelled between batches or pairs."""
