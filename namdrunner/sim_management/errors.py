"""
Exceptions raised by the NAMDRunner orchestration core.

Every exception derives from ``NamdRunnerError`` and carries a class attribute `kind`,
a short machine-checkable name for the category of failure. The kind is what gets
recorded in a job's ``error_info`` and reported in the final message of a failed
automation chain.
"""

from collections.abc import Collection
from typing import Any, Optional


class NamdRunnerError(Exception):
    """Base class for all errors raised by the orchestration core."""

    kind = "NamdRunnerError"


class InvalidInput(NamdRunnerError, ValueError):
    """Raised when user-supplied input (a name, path, identifier or parameter) is not
    valid. Raised before any remote side effect takes place."""

    kind = "InvalidInput"


class InvalidJobStatusError(InvalidInput):
    """Raised when the status of a job is not appropriate for some action."""

    kind = "InvalidJobStatus"

    def __init__(self, msg, status: Optional[Any] = None):
        super().__init__(msg)
        self.status = status


class SessionError(NamdRunnerError):
    """Raised when a remote operation cannot be carried out on the current session."""

    kind = "SessionError"


class AuthenticationError(SessionError):
    """Raised when the remote host rejects the supplied credentials."""

    kind = "AuthenticationError"


class NetworkError(SessionError):
    """Raised when the remote host cannot be reached."""

    kind = "NetworkError"


class ConnectionLost(SessionError):
    """Raised when an established session drops. Remote actions should not be attempted
    again until a new session has been connected."""

    kind = "ConnectionLost"


class TransferError(NamdRunnerError):
    """Raised when a file upload or download fails.

    Parameters
    ----------
    msg : str
        A description of the failure.
    bytes_transferred : int, optional
        (Default: 0) How many bytes were moved before the failure.
    total_bytes : int, optional
        (Default: None) The size of the file being moved, if known.
    connection_lost : bool, optional
        (Default: False) Whether the failure was caused by the session dropping.
    """

    kind = "TransferError"

    def __init__(
        self,
        msg: str,
        bytes_transferred: int = 0,
        total_bytes: Optional[int] = None,
        connection_lost: bool = False,
    ):
        super().__init__(msg)
        self.bytes_transferred = bytes_transferred
        self.total_bytes = total_bytes
        self.connection_lost = connection_lost


class RegistryError(NamdRunnerError):
    """Raised when the local job registry cannot be read or written."""

    kind = "RegistryError"


class UnknownJobIdError(RegistryError):
    """Raised when a job ID does not correspond to a job."""

    kind = "UnknownJobId"

    def __init__(
        self, msg: Optional[str] = "", unknown_ids: Optional[Collection[Any]] = None
    ):
        super().__init__(msg)
        self.unknown_ids = unknown_ids


class SchedulerProtocolError(NamdRunnerError):
    """Raised when the output of a scheduler command cannot be understood, or the
    scheduler rejected a command."""

    kind = "SchedulerProtocolError"


class FinalizeError(NamdRunnerError):
    """Raised when the post-completion steps for a finished job fail. The job keeps its
    ``COMPLETED`` status."""

    kind = "FinalizeError"
