"""
Error taxonomy for the Video Variation Backend.
Routers map these to HTTP responses; the job loop stores them on the job.
"""


class VariationServiceError(Exception):
    """Base class for all expected service errors."""
    status_code = 500


class InvalidRequest(VariationServiceError):
    """Bad or missing input from the client."""
    status_code = 400


class NotFound(VariationServiceError):
    """Unknown artifact, variation or job id."""
    status_code = 404


class UnsupportedMediaError(VariationServiceError):
    status_code = 415


class PayloadTooLarge(VariationServiceError):
    status_code = 413


class PipelineError(VariationServiceError):
    """A transform stage could not be built or the render failed."""
    status_code = 500
