# emr_wordcount/errors.py

from typing import Optional


class ClusterError(Exception):
    """Base class for every failure raised by the word-count demo."""


class ConfigurationError(ClusterError):
    """Missing or invalid launcher configuration."""


class ProvisioningError(ClusterError):
    """The EMR cluster could not be launched or terminated.

    ``cluster_id`` is set when the cluster had already been requested before
    the failure, so the caller can still terminate it.
    """

    def __init__(self, message: str, cluster_id: Optional[str] = None):
        super().__init__(message)
        self.cluster_id = cluster_id


class ProxyError(ClusterError):
    """The SSH tunnel to the master node could not be opened or closed."""


class FileSystemError(ClusterError):
    """A read or write against the shared filesystem failed."""


class JobSubmissionError(ClusterError):
    """The word-count step failed or could not be submitted."""

    def __init__(self, message: str, step_id: Optional[str] = None):
        super().__init__(message)
        self.step_id = step_id


class ClusterNotReadyError(ClusterError):
    """No worker registered before the readiness timeout expired."""
