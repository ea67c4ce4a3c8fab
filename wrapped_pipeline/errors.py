"""
Error taxonomy for the analysis pipeline.

INPUT errors are rejected immediately and never retried.
PROVIDER errors are transient and retried with bounded backoff at the
unit that failed (data page, batch, consolidation).
MALFORMED output degrades a batch to empty but is fatal for consolidation.
"""


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class InvalidAddressError(PipelineError, ValueError):
    """Address is missing, malformed or the zero address."""


class NameResolutionError(InvalidAddressError):
    """A name could not be resolved to an address."""


class ProviderError(PipelineError):
    """Transient failure talking to an external provider."""


class DataProviderError(ProviderError):
    """Transaction history provider request failed."""


class AnalysisProviderError(ProviderError):
    """AI provider request failed or the run ended in a failed status."""


class PollTimeoutError(ProviderError):
    """A poll loop exceeded its maximum wait."""


class MalformedAnalysisError(PipelineError):
    """AI output could not be parsed into the expected shape."""
