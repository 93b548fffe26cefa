# src/pbds/errors.py
from __future__ import annotations

from typing import Optional


class PseudobulkError(Exception):
    """Base class for every error raised by pbds."""


# -----------------------------------------------------------------------------
# Aggregation / frequency input errors (fatal to the call)
# -----------------------------------------------------------------------------
class InvalidAssay(PseudobulkError, KeyError):
    def __init__(self, assay: str, available: Optional[list[str]] = None):
        self.assay = assay
        self.available = list(available or [])
        super().__init__(f"assay={assay!r} not found. Available: {self.available}")

    def __reduce__(self):
        return (self.__class__, (self.assay, self.available))

    def __str__(self) -> str:
        # KeyError.__str__ would repr() the message
        return str(self.args[0])


class InvalidGroupKeys(PseudobulkError, KeyError):
    def __init__(self, message: str, keys: Optional[list[str]] = None):
        self.keys = list(keys or [])
        super().__init__(message)

    def __str__(self) -> str:
        return str(self.args[0])


class EmptyInput(PseudobulkError, ValueError):
    pass


# -----------------------------------------------------------------------------
# Dispatcher errors
# -----------------------------------------------------------------------------
class DesignSampleMismatch(PseudobulkError, ValueError):
    """Design rows do not line up with the pseudo-bulk sample columns."""


class ClusterError(PseudobulkError):
    """A failure confined to one cluster; recorded, never propagated by pb_ds."""

    status = "failed"

    def __init__(self, cluster_id: str, reason: str):
        self.cluster_id = str(cluster_id)
        self.reason = str(reason)
        super().__init__(f"cluster {self.cluster_id!r}: {self.reason}")

    def __reduce__(self):
        return (self.__class__, (self.cluster_id, self.reason))


class EmptyCluster(ClusterError):
    status = "skipped"


class BackendFailure(ClusterError):
    status = "failed"


class RunCancelled(PseudobulkError):
    """Raised when a caller aborts pb_ds between cluster iterations."""


# -----------------------------------------------------------------------------
# Formatter errors
# -----------------------------------------------------------------------------
class InvalidLayout(PseudobulkError, ValueError):
    pass
