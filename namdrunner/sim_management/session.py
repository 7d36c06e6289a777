import dataclasses
import getpass
import io
import logging
import os
import pathlib
import shlex
import socket
import stat
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from threading import RLock
from typing import IO, Callable, Optional

from fabric import Config, Connection
from invoke.exceptions import CommandTimedOut
from paramiko.ssh_exception import (
    AuthenticationException,
    NoValidConnectionsError,
    SSHException,
)

from namdrunner.sim_management.errors import (
    AuthenticationError,
    ConnectionLost,
    InvalidInput,
    NamdRunnerError,
    NetworkError,
    SessionError,
    TransferError,
)
from namdrunner.sim_management.jobs import utc_now
from namdrunner.sim_management.paths import sanitize_username
from namdrunner.sim_management.types import FilePath

logger = logging.getLogger(__name__)


class FailureKind(Enum):
    """Categories of failure of a remote operation."""

    CONNECTION_REFUSED = "Connection refused"
    """The remote host could not be reached or refused the connection."""

    TIMEOUT = "Timeout"
    """The operation did not finish within its time limit."""

    AUTHENTICATION = "Authentication"
    """The remote host rejected the credentials."""

    DISCONNECTED = "Disconnected"
    """An established connection dropped."""

    PERMISSION = "Permission"
    """The remote user lacks permission for the operation."""

    OTHER = "Other"
    """Any other failure. The session is assumed to still be usable."""


CONNECTION_LOST_KINDS = {
    FailureKind.CONNECTION_REFUSED,
    FailureKind.TIMEOUT,
    FailureKind.AUTHENTICATION,
    FailureKind.DISCONNECTED,
}
"""Failure kinds after which the session can no longer be used."""


def classify_failure(error: BaseException) -> FailureKind:
    """Decide what kind of failure an exception raised by the transport represents.

    Structured exception types are checked first. Only if none matches is the text of
    the error inspected for tell-tale words, which is unavoidably approximate: a
    message that merely mentions a connection will be classed as a disconnection.

    Parameters
    ----------
    error : BaseException
        An exception raised by fabric, invoke, paramiko or the socket layer.

    Returns
    -------
    FailureKind
        The kind of failure.
    """

    if isinstance(error, AuthenticationException):
        return FailureKind.AUTHENTICATION
    elif isinstance(error, (NoValidConnectionsError, ConnectionRefusedError)):
        return FailureKind.CONNECTION_REFUSED
    elif isinstance(error, (CommandTimedOut, socket.timeout, TimeoutError)):
        return FailureKind.TIMEOUT
    elif isinstance(
        error, (EOFError, ConnectionResetError, ConnectionAbortedError, BrokenPipeError)
    ):
        return FailureKind.DISCONNECTED
    elif isinstance(error, PermissionError):
        return FailureKind.PERMISSION
    elif isinstance(error, FileNotFoundError):
        return FailureKind.OTHER

    text = str(error).lower()
    if "authentication" in text or "publickey" in text:
        return FailureKind.AUTHENTICATION
    elif "timed out" in text or "timeout" in text:
        return FailureKind.TIMEOUT
    elif "connection refused" in text:
        return FailureKind.CONNECTION_REFUSED
    elif "permission denied" in text:
        return FailureKind.PERMISSION
    elif (
        "not active" in text
        or "socket is closed" in text
        or "connection" in text
        or isinstance(error, SSHException)
    ):
        return FailureKind.DISCONNECTED
    else:
        return FailureKind.OTHER


@dataclasses.dataclass(frozen=True)
class Timeouts:
    """Per-operation time limits, in seconds."""

    command: float = 120
    quick: float = 30
    scheduler: float = 60
    transfer: float = 300


@dataclasses.dataclass
class Credentials:
    """How to log in to the cluster.

    At most one of `key_filename`, `ssh_config_path` and `use_ssh_agent` may be given.
    If none is given then `password` is used, or a password is prompted for on standard
    input when `password` is ``None``.
    """

    host: str
    username: str
    port: int = 22
    password: Optional[str] = dataclasses.field(default=None, repr=False)
    key_filename: Optional[FilePath] = None
    ssh_config_path: Optional[FilePath] = None
    use_ssh_agent: bool = False


@dataclasses.dataclass(frozen=True)
class SessionHandle:
    """Details of an established session."""

    host: str
    username: str
    connected_at: str


@dataclasses.dataclass(frozen=True)
class CommandResult:
    """The outcome of a command run on the cluster. A non-zero `exit_code` is not an
    error at this level."""

    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclasses.dataclass(frozen=True)
class RemoteFile:
    """An entry of a remote directory listing."""

    name: str
    size: int
    modified_at: Optional[str]
    is_dir: bool = False


class _TransferProgress:
    def __init__(self, total: Optional[int] = None):
        self.transferred = 0
        self.total = total

    def update(self, transferred: int, total: int) -> None:
        self.transferred = transferred
        if total:
            self.total = total


class RemoteSession(ABC):
    """
    Abstract base class for a session with the cluster.

    This class owns everything about a session that does not depend on the transport:
    serialising operations (only one remote operation runs at a time), tracking whether
    the session is usable, classifying failures and telling registered listeners when
    the connection is lost. Subclasses implement the transport primitives ``_open``,
    ``_close``, ``_run``, ``_put``, ``_get`` and ``_listdir``.

    Whether the session is active is derived from the outcome of the last operation;
    there is no background health check. After a failure classified as a lost
    connection, every operation raises ``ConnectionLost`` until `connect` succeeds
    again.

    Parameters
    ----------
    timeouts : Timeouts, optional
        (Default: None) Time limits for operations. If ``None`` then the defaults of
        ``Timeouts`` are used.
    """

    def __init__(self, timeouts: Optional[Timeouts] = None):
        self._timeouts = timeouts if timeouts is not None else Timeouts()
        self._lock = RLock()
        self._handle = None
        self._active = False
        self._loss_reported = False
        self._listeners = []

    @property
    def timeouts(self) -> Timeouts:
        """(Read-only) The time limits applied to operations."""
        return self._timeouts

    @property
    def handle(self) -> Optional[SessionHandle]:
        """(Read-only) Details of the current session, or ``None`` if not connected."""
        return self._handle

    @property
    def username(self) -> str:
        """(Read-only) The username of the current session.

        Raises
        ------
        SessionError
            If no session has been connected.
        """
        if self._handle is None:
            raise SessionError("No session has been connected.")
        return self._handle.username

    def is_active(self) -> bool:
        """Whether the last operation left the session usable."""

        return self._handle is not None and self._active

    def add_connection_lost_listener(self, listener: Callable[[FailureKind], None]):
        """Register a callable to be told, once per loss, that the connection dropped."""

        self._listeners.append(listener)

    def connect(self, credentials: Credentials) -> SessionHandle:
        """Establish a session, replacing any existing one.

        Parameters
        ----------
        credentials : Credentials
            How to log in.

        Returns
        -------
        SessionHandle
            Details of the new session.

        Raises
        ------
        InvalidInput
            If the username is not valid or several authentication methods are given.
        AuthenticationError
            If the credentials were rejected.
        NetworkError
            If the host could not be reached.
        """

        username = sanitize_username(credentials.username)
        with self._lock:
            if self._handle is not None:
                self._disconnect_locked()

            try:
                self._open(credentials)
            except NamdRunnerError:
                raise
            except Exception as e:
                kind = classify_failure(e)
                message = f"Could not connect to {username}@{credentials.host}: {e}"
                if kind == FailureKind.AUTHENTICATION:
                    raise AuthenticationError(message) from e
                raise NetworkError(message) from e

            self._handle = SessionHandle(credentials.host, username, utc_now())
            self._active = True
            self._loss_reported = False

        logger.info("Connected to %s@%s.", username, credentials.host)
        return self._handle

    def disconnect(self) -> None:
        """Close the session. Does nothing if there is no session."""

        with self._lock:
            self._disconnect_locked()

    def _disconnect_locked(self) -> None:
        if self._handle is None:
            return

        host = self._handle.host
        try:
            self._close()
        except Exception as e:
            logger.warning("Error while closing the session with %s: %s", host, e)
        finally:
            self._handle = None
            self._active = False

        logger.info("Disconnected from %s.", host)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.disconnect()

    def ensure_active(self) -> None:
        """Check that the session can be used.

        Raises
        ------
        SessionError
            If no session has been connected.
        ConnectionLost
            If the connection was lost and has not been re-established.
        """

        if self._handle is None:
            raise SessionError("No active session: connect to the cluster first.")
        if not self._active:
            raise ConnectionLost(
                f"The connection to {self._handle.host} was lost. Reconnect before "
                "carrying out remote operations."
            )

    def _mark_failure(self, error: BaseException) -> FailureKind:
        kind = classify_failure(error)
        if kind in CONNECTION_LOST_KINDS:
            self._active = False
            logger.error("Connection to %s lost (%s): %s", self._handle.host, kind.value, error)
            if not self._loss_reported:
                self._loss_reported = True
                for listener in list(self._listeners):
                    listener(kind)
        return kind

    def execute(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        """Run a shell command on the cluster.

        Parameters
        ----------
        command : str
            The command to run. Any interpolated values must already be quoted.
        timeout : float, optional
            (Default: None) Time limit in seconds. If ``None`` then the `command`
            time limit of this session is used.

        Returns
        -------
        CommandResult
            The standard output, standard error and exit code.

        Raises
        ------
        SessionError
            If there is no session, or the command could not be run.
        ConnectionLost
            If the connection dropped.
        """

        limit = timeout if timeout is not None else self._timeouts.command
        with self._lock:
            self.ensure_active()
            try:
                result = self._run(command, limit)
            except Exception as e:
                kind = self._mark_failure(e)
                message = f"Could not run command on {self._handle.host}: {e}"
                if kind in CONNECTION_LOST_KINDS:
                    raise ConnectionLost(message) from e
                raise SessionError(message) from e

            self._active = True

        logger.debug("Ran '%s' (exit code %s).", command, result.exit_code)
        return result

    def upload(
        self, local_path: FilePath, remote_path: str, timeout: Optional[float] = None
    ) -> int:
        """Copy a local file to the cluster, overwriting any existing file.

        Returns
        -------
        int
            The number of bytes uploaded.

        Raises
        ------
        TransferError
            If the upload failed. The error records how many bytes had been sent.
        """

        local = pathlib.Path(local_path)
        try:
            total = local.stat().st_size
            with open(local, "rb") as f:
                return self._upload_fileobj(f, remote_path, total, timeout)
        except OSError as e:
            raise TransferError(f"Could not read local file {local}: {e}") from e

    def upload_bytes(
        self, content: bytes, remote_path: str, timeout: Optional[float] = None
    ) -> int:
        """Write `content` to a file on the cluster, overwriting any existing file."""

        with io.BytesIO(content) as buffer:
            return self._upload_fileobj(buffer, remote_path, len(content), timeout)

    def _upload_fileobj(
        self, fileobj: IO[bytes], remote_path: str, total: int, timeout: Optional[float]
    ) -> int:
        limit = timeout if timeout is not None else self._timeouts.transfer
        progress = _TransferProgress(total)
        with self._lock:
            self.ensure_active()
            try:
                self._put(fileobj, remote_path, progress.update, limit)
            except Exception as e:
                raise self._transfer_error(
                    e, f"Could not upload to {remote_path}", progress
                ) from e

            self._active = True

        logger.debug("Uploaded %s bytes to %s.", total, remote_path)
        return total

    def download(
        self, remote_path: str, local_path: FilePath, timeout: Optional[float] = None
    ) -> int:
        """Copy a file from the cluster, overwriting any existing local file.

        The file is written to a temporary name next to `local_path` and renamed once
        complete, so a failed download never leaves a truncated file behind.

        Returns
        -------
        int
            The number of bytes downloaded.

        Raises
        ------
        TransferError
            If the download failed.
        """

        local = pathlib.Path(local_path)
        partial = local.with_name(local.name + ".part")
        limit = timeout if timeout is not None else self._timeouts.transfer
        progress = _TransferProgress()
        with self._lock:
            self.ensure_active()
            try:
                local.parent.mkdir(parents=True, exist_ok=True)
                with open(partial, "wb") as f:
                    self._get(remote_path, f, progress.update, limit)
                os.replace(partial, local)
            except Exception as e:
                partial.unlink(missing_ok=True)
                raise self._transfer_error(
                    e, f"Could not download {remote_path}", progress
                ) from e

            self._active = True

        return local.stat().st_size

    def read_text(self, remote_path: str, timeout: Optional[float] = None) -> str:
        """Get the contents of a remote text file."""

        limit = timeout if timeout is not None else self._timeouts.quick
        progress = _TransferProgress()
        with self._lock:
            self.ensure_active()
            with io.BytesIO() as buffer:
                try:
                    self._get(remote_path, buffer, progress.update, limit)
                except Exception as e:
                    raise self._transfer_error(
                        e, f"Could not read {remote_path}", progress
                    ) from e

                self._active = True
                contents = buffer.getvalue().decode(encoding="utf-8")

        return contents

    def _transfer_error(
        self, error: Exception, message: str, progress: _TransferProgress
    ) -> TransferError:
        kind = self._mark_failure(error)
        return TransferError(
            f"{message} after {progress.transferred} bytes: "
            f"{str(error) or type(error).__name__}",
            bytes_transferred=progress.transferred,
            total_bytes=progress.total,
            connection_lost=kind in CONNECTION_LOST_KINDS,
        )

    def list_dir(self, remote_path: str, timeout: Optional[float] = None) -> list[RemoteFile]:
        """List the entries of a remote directory, sorted by name.

        Raises
        ------
        SessionError
            If the directory could not be listed.
        ConnectionLost
            If the connection dropped.
        """

        limit = timeout if timeout is not None else self._timeouts.quick
        with self._lock:
            self.ensure_active()
            try:
                entries = self._listdir(remote_path, limit)
            except Exception as e:
                kind = self._mark_failure(e)
                message = f"Could not list directory {remote_path}: {e}"
                if kind in CONNECTION_LOST_KINDS:
                    raise ConnectionLost(message) from e
                raise SessionError(message) from e

            self._active = True

        return sorted(entries, key=lambda entry: entry.name)

    def _run_checked(self, command: str, what: str, timeout: Optional[float] = None):
        result = self.execute(command, timeout)
        if not result.ok:
            raise SessionError(
                f"Could not {what} (exit code {result.exit_code}): {result.stderr.strip()}"
            )
        return result

    def make_dirs(self, remote_path: str) -> None:
        """Create a remote directory and any missing parents."""

        self._run_checked(
            f"mkdir -p {shlex.quote(remote_path)}",
            f"make directory {remote_path}",
            self._timeouts.quick,
        )

    def remove_tree(self, remote_path: str) -> None:
        """Recursively delete a remote path. Deleting a missing path is not an error."""

        if not remote_path or remote_path.strip() in ("/", "."):
            raise InvalidInput(f"Refusing to delete '{remote_path}'.")

        self._run_checked(
            f"rm -rf {shlex.quote(remote_path)}",
            f"delete {remote_path}",
            self._timeouts.command,
        )

    def mirror(self, source_dir: str, target_dir: str) -> None:
        """Make `target_dir` hold a copy of the contents of `source_dir`, both on the
        cluster. Files that are already up to date are not copied again."""

        source = source_dir.rstrip("/") + "/"
        target = target_dir.rstrip("/") + "/"
        self._run_checked(
            f"mkdir -p {shlex.quote(target)} && rsync -a {shlex.quote(source)} "
            f"{shlex.quote(target)}",
            f"mirror {source_dir} to {target_dir}",
            self._timeouts.transfer,
        )

    def path_exists(self, remote_path: str) -> bool:
        """Whether anything exists at the given remote path."""

        result = self.execute(f"test -e {shlex.quote(remote_path)}", self._timeouts.quick)
        if result.exit_code in (0, 1):
            return result.exit_code == 0

        raise SessionError(
            f"Could not check for {remote_path} (exit code {result.exit_code}): "
            f"{result.stderr.strip()}"
        )

    @abstractmethod
    def _open(self, credentials: Credentials) -> None:
        raise NotImplementedError

    @abstractmethod
    def _close(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def _run(self, command: str, timeout: float) -> CommandResult:
        raise NotImplementedError

    @abstractmethod
    def _put(
        self,
        fileobj: IO[bytes],
        remote_path: str,
        callback: Callable[[int, int], None],
        timeout: float,
    ) -> None:
        raise NotImplementedError

    @abstractmethod
    def _get(
        self,
        remote_path: str,
        fileobj: IO[bytes],
        callback: Callable[[int, int], None],
        timeout: float,
    ) -> None:
        raise NotImplementedError

    @abstractmethod
    def _listdir(self, remote_path: str, timeout: float) -> list[RemoteFile]:
        raise NotImplementedError


class SSHSession(RemoteSession):
    """
    A session with the cluster over SSH, using fabric for commands and paramiko's SFTP
    client for file transfers.

    It can authenticate using either a key file, an SSH config path, or via an SSH agent.
    If none of these methods are provided, the password in the credentials is used, or
    else a password is prompted for.

    Parameters
    ----------
    timeouts : Timeouts, optional
        (Default: None) Time limits for operations.
    max_attempts : int, optional
        (Default: 3) The number of password prompts before giving up.
    """

    def __init__(self, timeouts: Optional[Timeouts] = None, max_attempts: int = 3):
        super().__init__(timeouts)
        self.max_attempts = max_attempts
        self._conn = None
        self._sftp_client = None

    def _open(self, credentials: Credentials) -> None:
        # Check if more than one method is provided
        if (
            sum(
                [
                    credentials.key_filename is not None,
                    credentials.ssh_config_path is not None,
                    credentials.use_ssh_agent,
                ]
            )
            > 1
        ):
            raise InvalidInput(
                "Only one method of authentication should be provided. Please specify either "
                "'key_filename', 'ssh_config_path' or set 'use_ssh_agent' to True."
            )

        user_at_host = f"{credentials.username}@{credentials.host}"
        if credentials.key_filename is not None:
            self._conn = self._make_connection(
                user_at_host,
                credentials.port,
                connect_kwargs={"key_filename": str(credentials.key_filename)},
            )
        elif credentials.ssh_config_path is not None:
            ssh_config = Config(
                overrides={"ssh_config_path": str(credentials.ssh_config_path)}
            )
            self._conn = Connection(
                credentials.host,
                config=ssh_config,
                connect_timeout=self._timeouts.quick,
            )
        elif credentials.use_ssh_agent:
            self._conn = self._make_connection(user_at_host, credentials.port)
        elif credentials.password is not None:
            self._conn = self._make_connection(
                user_at_host,
                credentials.port,
                connect_kwargs={"password": credentials.password},
            )
        else:
            self._init_with_password(user_at_host, credentials.port)
            return

        self._check_connection()

    def _make_connection(self, user_at_host: str, port: int, **kwargs) -> Connection:
        return Connection(
            user_at_host, port=port, connect_timeout=self._timeouts.quick, **kwargs
        )

    def _check_connection(self):
        self._conn.run('echo "Testing connection"', hide=True, timeout=self._timeouts.quick)

    def _init_with_password(self, user_at_host: str, port: int):
        for attempt in range(1, self.max_attempts + 1):
            password = getpass.getpass(prompt=f"Password for {user_at_host}: ")
            try:
                self._conn = self._make_connection(
                    user_at_host, port, connect_kwargs={"password": password}
                )
                # Check connection by running a simple command
                self._check_connection()
                return

            except AuthenticationException as e:
                if attempt < self.max_attempts:  # Don't say this on the last attempt
                    print("Failed to authenticate. Please try again.")
                else:
                    print("Maximum number of attempts exceeded.")
                    raise AuthenticationError(
                        f"Could not authenticate {user_at_host} after "
                        f"{self.max_attempts} attempts."
                    ) from e

    def _close(self) -> None:
        try:
            if self._sftp_client is not None:
                self._sftp_client.close()
        finally:
            self._sftp_client = None
            if self._conn is not None:
                self._conn.close()
            self._conn = None

    def _sftp(self, timeout: float):
        if self._sftp_client is None:
            self._sftp_client = self._conn.sftp()

        self._sftp_client.get_channel().settimeout(timeout)
        return self._sftp_client

    def _run(self, command: str, timeout: float) -> CommandResult:
        res = self._conn.run(command, hide=True, warn=True, timeout=timeout)
        return CommandResult(
            stdout=str(res.stdout), stderr=str(res.stderr), exit_code=res.exited
        )

    def _put(self, fileobj, remote_path, callback, timeout) -> None:
        self._sftp(timeout).putfo(fileobj, remote_path, callback=callback)

    def _get(self, remote_path, fileobj, callback, timeout) -> None:
        self._sftp(timeout).getfo(remote_path, fileobj, callback=callback)

    def _listdir(self, remote_path, timeout) -> list[RemoteFile]:
        return [
            RemoteFile(
                name=attrs.filename,
                size=attrs.st_size or 0,
                modified_at=(
                    datetime.fromtimestamp(attrs.st_mtime, timezone.utc).isoformat()
                    if attrs.st_mtime is not None
                    else None
                ),
                is_dir=stat.S_ISDIR(attrs.st_mode or 0),
            )
            for attrs in self._sftp(timeout).listdir_attr(remote_path)
        ]
