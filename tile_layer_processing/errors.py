class PipelineError(Exception):
    """Base class for failures that abort a tiling run."""


class ConfigurationError(PipelineError):
    """Missing or malformed layer configuration or rename table."""


class DataError(PipelineError):
    """A dataset does not match what a layer expects of it."""


class ToolError(PipelineError):
    """An external tool exited non-zero or could not be started."""

    def __init__(self, message: str, returncode=None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr
