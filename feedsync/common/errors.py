"""Domain errors and failure typing."""


class PipelineError(Exception):
    """Base class for pipeline failures."""

    error_code = "PIPELINE_ERROR"


class ConfigError(PipelineError):
    """Raised for invalid or missing configuration."""

    error_code = "CONFIG_ERROR"


class StageError(PipelineError):
    """Raised for stage failures that should halt the run."""

    error_code = "STAGE_ERROR"


class FeedError(StageError):
    """Raised when the feed cannot be opened or is not well-formed."""

    error_code = "FEED_ERROR"


class FeedAbortError(StageError):
    """Raised when malformed records exceed the configured threshold."""

    error_code = "FEED_ABORT"


class StopRequestedError(StageError):
    """Raised at a chunk boundary when an external stop was requested."""

    error_code = "STOP_REQUESTED"


class RunInProgressError(StageError):
    """Raised when another run holds the run lock."""

    error_code = "RUN_IN_PROGRESS"


class RecordError(PipelineError):
    """Base class for failures scoped to a single record."""

    error_code = "RECORD_ERROR"


class MalformedRecordError(RecordError):
    error_code = "MALFORMED_RECORD"


class MappingError(RecordError):
    error_code = "MAPPING_ERROR"


class TrackingError(RecordError):
    error_code = "TRACKING_ERROR"


class PersistenceError(RecordError):
    error_code = "PERSISTENCE_ERROR"
