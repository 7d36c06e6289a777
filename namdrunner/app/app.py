import logging
import pathlib
from collections.abc import Sequence
from typing import Optional, Union

from namdrunner.app.startup import Settings, configure_logging
from namdrunner.sim_management.automations import (
    CreateJobParams,
    JobAutomations,
    ProgressReporter,
)
from namdrunner.sim_management.errors import ConnectionLost, InvalidInput
from namdrunner.sim_management.jobs import Job, JobId, JobStatus
from namdrunner.sim_management.paths import validate_relative_path
from namdrunner.sim_management.reconciler import SyncReport
from namdrunner.sim_management.registry import LAST_SYNC_KEY, JobRegistry
from namdrunner.sim_management.session import (
    Credentials,
    FailureKind,
    RemoteSession,
    SessionHandle,
    SSHSession,
)
from namdrunner.sim_management.types import FilePath, ProgressListener

logger = logging.getLogger(__name__)

Progress = Union[ProgressReporter, ProgressListener, None]


class App:
    """
    Provides a high-level interface for creating, submitting and managing NAMD
    simulation jobs on a SLURM cluster.

    This class acts as a facade to the session, registry and automation components,
    offering a simplified interface to a user interface. It initialises and
    coordinates the remote session, the local job registry and the automation chains.

    When the connection to the cluster is lost, `connection_lost` becomes ``True`` and
    every remote action raises ``ConnectionLost`` until `connect` succeeds again. Local
    queries of the registry keep working.

    Log messages are sent to standard error at the level given in `settings`.

    Parameters
    ----------
    settings : Settings, optional
        (Default: None) Application settings. Defaults are used if ``None``.
    session : RemoteSession, optional
        (Default: None) The session to use with the cluster. If ``None`` then an
        ``SSHSession`` with the time limits from `settings` is made.
    registry : JobRegistry, optional
        (Default: None) The job registry. If ``None`` then the registry at the database
        path in `settings` is opened.

    Examples
    --------
    >>> app = App(Settings(database_path="jobs.db"))
    >>> app.connect(Credentials("login.rc.colorado.edu", "jdoe", key_filename="~/.ssh/id_rsa"))
    >>> job = app.create_job("demo", {"steps": 1000, "temperature": 300, "timestep": 2.0},
    ...                      {"cores": 4}, ["a.pdb", "a.psf", "par.prm"])
    >>> app.submit_job(job.job_id)
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session: Optional[RemoteSession] = None,
        registry: Optional[JobRegistry] = None,
    ):
        self._settings = settings if settings is not None else Settings()
        configure_logging(self._settings.log_level)
        self._session = (
            session if session is not None else SSHSession(self._settings.timeouts())
        )
        self._registry = (
            registry if registry is not None else JobRegistry(self._settings.database_path)
        )
        self._automations = JobAutomations(
            self._session, self._registry, self._settings.chain_options()
        )
        self._connection_lost = False
        self._session.add_connection_lost_listener(self._on_connection_lost)

    @property
    def settings(self) -> Settings:
        """(Read-only) The application settings."""
        return self._settings

    @property
    def registry(self) -> JobRegistry:
        """(Read-only) The job registry."""
        return self._registry

    @property
    def connection_lost(self) -> bool:
        """(Read-only) Whether the connection to the cluster dropped since the last
        successful `connect`."""
        return self._connection_lost

    @property
    def is_connected(self) -> bool:
        """(Read-only) Whether there is a usable session with the cluster."""
        return self._session.is_active()

    @property
    def last_sync_at(self) -> Optional[str]:
        """(Read-only) When the registry was last reconciled with the scheduler."""
        return self._registry.get_meta(LAST_SYNC_KEY)

    def _on_connection_lost(self, kind: FailureKind) -> None:
        self._connection_lost = True
        logger.warning("Connection lost (%s). Reconnect to continue.", kind.value)

    def _check_connection(self) -> None:
        if self._connection_lost:
            raise ConnectionLost(
                "The connection to the cluster was lost. Reconnect before carrying out "
                "remote actions."
            )

    def connect(self, credentials: Credentials) -> SessionHandle:
        """Connect to the cluster, replacing any existing session.

        Raises
        ------
        InvalidInput
            If the credentials are not valid.
        AuthenticationError
            If the credentials were rejected.
        NetworkError
            If the cluster could not be reached.
        """

        handle = self._session.connect(credentials)
        self._connection_lost = False
        return handle

    def disconnect(self) -> None:
        self._session.disconnect()

    def create_job(
        self,
        job_name: str,
        namd_config: dict,
        slurm_config: dict,
        input_files: Sequence[FilePath],
        progress: Progress = None,
    ) -> Job:
        """
        Create a job on the cluster from local input files. The job is not submitted.

        Parameters
        ----------
        job_name : str
            A human-readable name for the job.
        namd_config : dict or NAMDConfig
            Simulation parameters: 'steps', 'temperature', 'timestep' and optionally
            'outputname', 'dcd_freq' and 'restart_freq'.
        slurm_config : dict or SlurmConfig
            Resources to request: 'cores' and optionally 'memory', 'walltime',
            'partition' and 'qos'.
        input_files : Sequence[namdrunner.sim_management.types.FilePath]
            Local ``.pdb``, ``.psf`` and ``.prm`` files, plus any other inputs.
        progress : ProgressReporter or ProgressListener, optional
            (Default: None) Where to report progress.

        Returns
        -------
        Job
            The new job, with status ``CREATED``.
        """

        self._check_connection()
        params = CreateJobParams(
            job_name, namd_config, slurm_config, [pathlib.Path(f) for f in input_files]
        )
        return self._automations.create(params, progress)

    def submit_job(self, job_id: Union[str, JobId], progress: Progress = None) -> Job:
        """Submit a ``CREATED`` job to the scheduler."""

        self._check_connection()
        return self._automations.submit(job_id, progress)

    def sync_jobs(self, progress: Progress = None) -> SyncReport:
        """Update job statuses from the scheduler and retrieve the results of jobs that
        have completed."""

        self._check_connection()
        return self._automations.sync(progress)

    def complete_job(self, job_id: Union[str, JobId], progress: Progress = None) -> Job:
        """Retrieve the results of a ``COMPLETED`` job again, e.g. after a failed
        attempt during a sync."""

        self._check_connection()
        return self._automations.complete(job_id, progress)

    def delete_job(
        self, job_id: Union[str, JobId], force: bool = False, progress: Progress = None
    ) -> list[str]:
        """
        Delete a job from the cluster and the registry.

        Parameters
        ----------
        job_id : str or JobId
            The job to delete.
        force : bool, optional
            (Default: False) Whether to remove the job from the registry even if
            cancelling it or deleting its files fails, or there is no connection.
        progress : ProgressReporter or ProgressListener, optional
            (Default: None) Where to report progress.

        Returns
        -------
        list[str]
            Failures that were ignored because `force` was set.
        """

        if not force:
            self._check_connection()
        return self._automations.delete(job_id, force=force, progress=progress)

    def download_job_file(
        self,
        job_id: Union[str, JobId],
        relative_path: str,
        local_path: FilePath,
    ) -> pathlib.Path:
        """
        Download one of a job's files from its project directory.

        Only files recorded on the job can be downloaded: its input files, the files
        generated for it and, once its results have been retrieved, its output files.

        Parameters
        ----------
        job_id : str or JobId
            The job the file belongs to.
        relative_path : str
            The path of the file relative to the job's project directory, e.g.
            'outputs/output.dcd'.
        local_path : namdrunner.sim_management.types.FilePath
            Where to save the file. An existing file is overwritten.

        Returns
        -------
        pathlib.Path
            The path of the downloaded file.

        Raises
        ------
        UnknownJobIdError
            If there is no job with the given ID.
        InvalidInput
            If the path could escape the project directory or is not a file of the job.
        TransferError
            If the download failed.
        """

        self._check_connection()
        job = self._registry.require(job_id)
        path = validate_relative_path(relative_path)
        known = {f.path for f in job.input_files + job.generated_files + job.output_files}
        if path not in known:
            raise InvalidInput(f"'{path}' is not a file of job {job.job_id}.")

        local = pathlib.Path(local_path)
        size = self._session.download(f"{job.project_dir}/{path}", local)
        logger.info("Downloaded %s of job %s (%s bytes).", path, job.job_id, size)
        return local

    def get_job(self, job_id: Union[str, JobId]) -> Job:
        """Get a job from the registry.

        Raises
        ------
        UnknownJobIdError
            If there is no job with the given ID.
        """

        return self._registry.require(job_id)

    def list_jobs(
        self,
        statuses: Optional[Sequence[JobStatus]] = None,
        n_most_recent: Optional[int] = None,
    ) -> list[Job]:
        """
        Get jobs from the registry, most recently created first.

        Parameters
        ----------
        statuses : Sequence[JobStatus], optional
            (Default: None) Only return jobs with one of these statuses.
        n_most_recent : int, optional
            (Default: None) The maximum number of jobs to return.

        Raises
        ------
        ValueError
            If `n_most_recent` is negative.
        """

        if n_most_recent is not None and n_most_recent < 0:
            raise ValueError("'n_most_recent' must be non-negative")

        jobs = self._registry.list(statuses=statuses)
        return jobs if n_most_recent is None else jobs[:n_most_recent]

    def shutdown(self) -> None:
        """Close the session with the cluster."""

        self._session.disconnect()
        logger.info("Shut down.")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.shutdown()
