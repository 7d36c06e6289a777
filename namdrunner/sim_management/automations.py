"""
The five automation chains that drive a job through its lifecycle: create, submit,
sync, complete and delete.

Each chain is a fixed sequence of steps run against an explicit ``AutomationContext``
(the remote session, the job registry and the chain options). Chains report their
progress as an ordered series of messages ending in exactly one final message, and
either return a result or raise an error whose `kind` says what went wrong. No chain
retries on its own; running a chain again is always the caller's decision.
"""

import dataclasses
import json
import logging
import pathlib
import queue
from abc import ABC, abstractmethod
from collections.abc import Sequence
from threading import Event, Lock, RLock, Thread
from typing import Optional, Union

from namdrunner.sim_management import slurm
from namdrunner.sim_management.errors import (
    FinalizeError,
    InvalidInput,
    InvalidJobStatusError,
    NamdRunnerError,
    RegistryError,
    SchedulerProtocolError,
    SessionError,
    TransferError,
)
from namdrunner.sim_management.jobs import (
    FileDescriptor,
    Job,
    JobId,
    JobIDGenerator,
    JobStatus,
    NAMDConfig,
    SlurmConfig,
    generated_file_descriptors,
    utc_now,
)
from namdrunner.sim_management.paths import (
    BATCH_SCRIPT,
    CONFIG_FILE,
    DEFAULT_LAYOUT,
    INPUT_FILES_DIR,
    JOB_INFO_FILE,
    OUTPUTS_DIR,
    RemoteLayout,
    is_job_directory,
    project_directory,
    sanitize_job_name,
    scratch_directory,
    validate_relative_path,
)
from namdrunner.sim_management.reconciler import StatusReconciler, SyncReport
from namdrunner.sim_management.registry import JobRegistry
from namdrunner.sim_management.session import RemoteSession
from namdrunner.sim_management.templates import (
    check_required_inputs,
    render_batch_script,
    render_namd_config,
)
from namdrunner.sim_management.types import FilePath, ProgressListener

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class ProgressEvent:
    """A progress message emitted by an automation chain.

    Attributes
    ----------
    sequence : int
        The position of the event in the chain's output, starting at 1.
    message : str
        A human-readable description.
    final : bool
        Whether this is the last event of the chain.
    error_kind : str, optional
        For a final event of a failed chain, the kind of the error.
    at : str
        When the event was emitted.
    """

    sequence: int
    message: str
    final: bool = False
    error_kind: Optional[str] = None
    at: str = dataclasses.field(default_factory=utc_now)


class ProgressChannel:
    """
    Delivers progress events to a listener on a background thread.

    Publishing never blocks the chain that emits the events: they are placed on a
    bounded queue, and if the listener has fallen so far behind that the queue is full,
    the event is dropped for this listener (it is still kept by the emitting
    ``ProgressReporter``) and a warning is logged.

    Parameters
    ----------
    listener : namdrunner.sim_management.types.ProgressListener
        Called with each ``ProgressEvent``, in order, on the consumer thread.
    maxsize : int, optional
        (Default: 100) How many undelivered events may be held.
    """

    _STOP = object()

    def __init__(self, listener: ProgressListener, maxsize: int = 100):
        self._listener = listener
        self._queue = queue.Queue(maxsize=maxsize)
        self.dropped = 0
        self._stopping = Event()
        self._thread = Thread(target=self._consume, daemon=True)
        self._thread.start()

    def publish(self, event: ProgressEvent) -> bool:
        """Queue an event for the listener. Returns ``False`` if it had to be dropped."""

        try:
            self._queue.put_nowait(event)
            return True
        except queue.Full:
            self.dropped += 1
            logger.warning(
                "Progress listener is falling behind; dropped event %s: %s",
                event.sequence,
                event.message,
            )
            return False

    def _consume(self):
        while True:
            event = self._queue.get()
            try:
                if event is self._STOP:
                    return
                self._listener(event)
            except Exception:
                logger.exception("Progress listener raised an error.")
            finally:
                self._queue.task_done()

            if self._stopping.is_set() and self._queue.empty():
                return

    def close(self, timeout: Optional[float] = None) -> bool:
        """
        Stop the consumer thread once it has delivered the queued events.

        Closing never blocks on the listener for longer than `timeout` seconds. If the
        listener has not caught up by then, the remaining events are still delivered
        in the background.

        Parameters
        ----------
        timeout : float, optional
            (Default: None) How long to wait for delivery to finish. If ``None`` then
            wait until it has.

        Returns
        -------
        bool
            Whether every queued event had been delivered when this method returned.
        """

        self._stopping.set()
        try:
            self._queue.put_nowait(self._STOP)
        except queue.Full:
            # The consumer stops by itself once the queue has drained.
            logger.debug("Progress queue full on close; consumer will stop when drained.")

        self._thread.join(timeout)
        return not self._thread.is_alive()


class ProgressReporter:
    """
    An append-only, ordered log of the progress of an automation chain.

    Parameters
    ----------
    channel : ProgressChannel, optional
        (Default: None) A channel to forward each event to.
    parent : ProgressReporter, optional
        (Default: None) A reporter to forward each message to, as a non-final message.
        Used when one chain runs another.
    """

    def __init__(
        self,
        channel: Optional[ProgressChannel] = None,
        parent: Optional["ProgressReporter"] = None,
    ):
        self._channel = channel
        self._parent = parent
        self._lock = Lock()
        self._events = []

    @property
    def events(self) -> tuple[ProgressEvent, ...]:
        """(Read-only) Every event emitted so far, in order."""
        with self._lock:
            return tuple(self._events)

    @property
    def messages(self) -> tuple[str, ...]:
        """(Read-only) The messages of every event emitted so far, in order."""
        return tuple(event.message for event in self.events)

    @property
    def final_event(self) -> Optional[ProgressEvent]:
        """(Read-only) The final event, or ``None`` if the chain has not finished."""
        events = self.events
        return events[-1] if events and events[-1].final else None

    def report(self, message: str) -> None:
        self._emit(message)

    def succeed(self, message: str) -> None:
        self._emit(message, final=True)

    def fail(self, message: str, error_kind: str) -> None:
        self._emit(message, final=True, error_kind=error_kind)

    def child(self) -> "ProgressReporter":
        return ProgressReporter(parent=self)

    def _emit(self, message: str, final: bool = False, error_kind: Optional[str] = None):
        with self._lock:
            event = ProgressEvent(len(self._events) + 1, message, final, error_kind)
            self._events.append(event)

        logger.debug("Progress: %s", message)
        if self._channel is not None:
            self._channel.publish(event)
        if self._parent is not None:
            self._parent.report(message)


class RemoteDirectoryLease:
    """
    A remote directory that is deleted again unless the work using it is committed.

    The directory is created on entering the ``with`` block. If the block is left
    without `commit` having been called (normally because of an exception), the
    directory and everything in it is removed. The original exception always
    propagates; a failure to clean up is logged.

    Examples
    --------
    >>> with RemoteDirectoryLease(session, "/projects/jdoe/namdrunner_jobs/job_001") as lease:
    ...     session.upload("input.pdb", f"{lease.path}/input.pdb")
    ...     lease.commit()
    """

    def __init__(self, session: RemoteSession, path: str):
        self._session = session
        self._path = path
        self._created = False
        self._committed = False

    @property
    def path(self) -> str:
        return self._path

    @property
    def committed(self) -> bool:
        return self._committed

    def __enter__(self):
        self._session.make_dirs(self._path)
        self._created = True
        return self

    def commit(self) -> None:
        self._committed = True

    def __exit__(self, exc_type, exc_value, traceback):
        if self._created and not self._committed:
            logger.info("Rolling back: removing %s.", self._path)
            try:
                self._session.remove_tree(self._path)
            except NamdRunnerError as e:
                logger.error("Could not remove %s during rollback: %s", self._path, e)
        return False


@dataclasses.dataclass(frozen=True)
class ChainOptions:
    """Settings used by the automation chains.

    Parameters
    ----------
    layout : RemoteLayout, optional
        (Default: ``DEFAULT_LAYOUT``) The remote directory roots.
    scheduler_prelude : str, optional
        (Default: ``slurm.DEFAULT_PRELUDE``) Shell commands run before each scheduler
        command.
    namd_module : str, optional
        (Default: 'namd/3.0') The environment module loaded by batch scripts.
    namd_executable : str, optional
        (Default: 'namd3') The NAMD executable launched by batch scripts.
    log_cache_dir : namdrunner.sim_management.types.FilePath, optional
        (Default: None) Local directory where scheduler log files of completed jobs
        are cached. If ``None`` then log files are not downloaded.
    max_log_bytes : int, optional
        (Default: 10 MiB) Log files larger than this are not downloaded.
    """

    layout: RemoteLayout = DEFAULT_LAYOUT
    scheduler_prelude: Optional[str] = slurm.DEFAULT_PRELUDE
    namd_module: str = "namd/3.0"
    namd_executable: str = "namd3"
    log_cache_dir: Optional[FilePath] = None
    max_log_bytes: int = 10 * 1024 * 1024


class AutomationContext:
    """
    Everything an automation chain works with: the remote session, the job registry,
    the chain options, the job ID generator and a lock per job.

    Chains for the same job are run one at a time by taking that job's lock.
    """

    def __init__(
        self,
        session: RemoteSession,
        registry: JobRegistry,
        options: Optional[ChainOptions] = None,
    ):
        self.session = session
        self.registry = registry
        self.options = options if options is not None else ChainOptions()
        self.id_generator = JobIDGenerator(registry.max_job_number())
        self._job_locks = dict()
        self._job_locks_guard = Lock()

    def job_lock(self, job_id: Union[str, JobId]) -> RLock:
        with self._job_locks_guard:
            return self._job_locks.setdefault(str(job_id), RLock())

    def reconciler(self) -> StatusReconciler:
        return StatusReconciler(
            self.session,
            self.registry,
            self.id_generator,
            layout=self.options.layout,
            prelude=self.options.scheduler_prelude,
        )

    def upload_metadata(self, job: Job) -> None:
        """Write a job's ``job_info.json`` to its project directory."""

        content = json.dumps(job.to_metadata(), indent=4).encode("utf-8")
        self.session.upload_bytes(
            content, f"{job.project_dir}/{JOB_INFO_FILE}", self.session.timeouts.quick
        )


@dataclasses.dataclass
class CreateJobParams:
    """What is needed to create a job.

    Parameters
    ----------
    job_name : str
        A human-readable name for the job.
    namd_config : NAMDConfig or dict
        The simulation parameters.
    slurm_config : SlurmConfig or dict
        The resources to request from the scheduler.
    input_files : Sequence[namdrunner.sim_management.types.FilePath]
        Local files to upload. Their base names must be unique, and together they must
        include ``.pdb``, ``.psf`` and ``.prm`` files.
    """

    job_name: str
    namd_config: Union[NAMDConfig, dict]
    slurm_config: Union[SlurmConfig, dict]
    input_files: Sequence[FilePath] = ()


class AutomationChain(ABC):
    """
    Defines a template for the automation chains.

    `run` reports the start of the chain, runs the chain's steps (implemented by
    subclasses in ``_run``) and reports a final message: a success message, or a
    failure message naming the kind of error, after which the error is re-raised.

    Parameters
    ----------
    context : AutomationContext
        The session, registry and options to work with.
    progress : ProgressReporter, optional
        (Default: None) Where to report progress. A new reporter is made if ``None``.
    """

    name = "automation"

    def __init__(
        self, context: AutomationContext, progress: Optional[ProgressReporter] = None
    ):
        self._context = context
        self._progress = progress if progress is not None else ProgressReporter()

    @property
    def progress(self) -> ProgressReporter:
        """(Read-only) The reporter receiving this chain's progress."""
        return self._progress

    def run(self, *args, **kwargs):
        self._progress.report(f"Starting {self.name}.")
        try:
            result = self._run(*args, **kwargs)
        except Exception as e:
            kind = getattr(e, "kind", type(e).__name__)
            self._progress.fail(f"{self.name.capitalize()} failed: {e}", kind)
            logger.error("%s failed (%s): %s", self.name.capitalize(), kind, e)
            raise

        message = self._success_message(result)
        self._progress.succeed(message)
        logger.info(message)
        return result

    @abstractmethod
    def _run(self, *args, **kwargs):
        raise NotImplementedError

    def _success_message(self, result) -> str:
        return f"{self.name.capitalize()} finished."

    def _step(self, number: int, total: int, message: str) -> None:
        self._progress.report(f"Step {number}/{total}: {message}")

    def _record_failure(self, job: Job, error: Exception, code: Optional[str] = None):
        """Store `error` in the job's ``error_info``. A failure to store it is logged and
        does not replace `error`."""

        job.record_error(error, code)
        try:
            self._context.registry.upsert(job)
        except RegistryError as e:
            logger.error("Could not record failure of job %s: %s", job.job_id, e)


class CreateJobChain(AutomationChain):
    """
    Creates a job: validates the request, builds the job's directory on the cluster,
    uploads the input files and the generated configuration, and records the job in
    the registry with status ``CREATED``.

    All validation happens before anything is done on the cluster. If any step after
    the job directory has been made fails, the directory is removed again and nothing
    is recorded in the registry.
    """

    name = "job creation"
    _steps = 6

    def _run(self, params: CreateJobParams) -> Job:
        ctx = self._context
        self._step(1, self._steps, "Validating job parameters")
        job_name, namd_config, slurm_config, local_files = self._validate(params)
        ctx.session.ensure_active()

        self._step(2, self._steps, "Allocating job ID")
        job_id = ctx.id_generator.generate_id()
        username = ctx.session.username
        project_dir = project_directory(username, str(job_id), ctx.options.layout)
        scratch_dir = scratch_directory(username, str(job_id), ctx.options.layout)

        self._step(3, self._steps, f"Creating job directory {project_dir}")
        with RemoteDirectoryLease(ctx.session, project_dir) as lease:
            ctx.session.make_dirs(f"{project_dir}/{INPUT_FILES_DIR}")
            ctx.session.make_dirs(f"{project_dir}/{OUTPUTS_DIR}")

            self._step(4, self._steps, f"Uploading {len(local_files)} input files")
            input_files = []
            for remote_name, local_path in local_files:
                self._progress.report(f"Uploading {remote_name}")
                size = ctx.session.upload(
                    local_path, f"{project_dir}/{INPUT_FILES_DIR}/{remote_name}"
                )
                input_files.append(FileDescriptor(f"{INPUT_FILES_DIR}/{remote_name}", size))

            self._step(5, self._steps, "Generating NAMD configuration and batch script")
            namd_text = render_namd_config(namd_config, input_files)
            script_text = render_batch_script(
                job_name,
                slurm_config,
                scratch_dir,
                ctx.options.namd_module,
                ctx.options.namd_executable,
            )
            ctx.session.upload_bytes(
                namd_text.encode("utf-8"), f"{project_dir}/{CONFIG_FILE}"
            )
            ctx.session.upload_bytes(
                script_text.encode("utf-8"), f"{project_dir}/{BATCH_SCRIPT}"
            )

            now = utc_now()
            job = Job(
                job_id=job_id,
                job_name=job_name,
                status=JobStatus.CREATED,
                created_at=now,
                updated_at=now,
                project_dir=project_dir,
                scratch_dir=scratch_dir,
                namd_config=namd_config,
                slurm_config=slurm_config,
                input_files=input_files,
                generated_files=generated_file_descriptors(),
            )

            self._step(6, self._steps, "Saving job metadata")
            ctx.upload_metadata(job)
            ctx.registry.insert(job)
            lease.commit()

        return job

    def _success_message(self, job: Job) -> str:
        return f"Job {job.job_id} ('{job.job_name}') created."

    @staticmethod
    def _validate(params: CreateJobParams):
        job_name = sanitize_job_name(params.job_name)
        namd_config = (
            params.namd_config
            if isinstance(params.namd_config, NAMDConfig)
            else NAMDConfig.from_dict(params.namd_config)
        )
        slurm_config = (
            params.slurm_config
            if isinstance(params.slurm_config, SlurmConfig)
            else SlurmConfig.from_dict(params.slurm_config)
        )

        if not params.input_files:
            raise InvalidInput("At least one input file is required.")

        local_files = []
        seen = set()
        for local in params.input_files:
            path = pathlib.Path(local)
            if not path.is_file():
                raise InvalidInput(f"Input file {path} does not exist.")

            remote_name = validate_relative_path(path.name)
            if remote_name in seen:
                raise InvalidInput(f"More than one input file is named '{remote_name}'.")
            seen.add(remote_name)
            local_files.append((remote_name, path))

        check_required_inputs([name for name, _ in local_files])
        return job_name, namd_config, slurm_config, local_files


class SubmitJobChain(AutomationChain):
    """
    Submits a ``CREATED`` job to the scheduler.

    The job's project directory is mirrored to its scratch directory, the batch script
    is submitted from there and the scheduler's job ID is recorded along with the
    ``PENDING`` status.

    If mirroring or submission fails, the error is recorded on the job, its status stays
    ``CREATED`` and any files already mirrored are left in place: running the chain
    again picks up where it left off, and files that are already up to date are not
    copied again.
    """

    name = "job submission"
    _steps = 4

    def _run(self, job_id: Union[str, JobId]) -> Job:
        ctx = self._context
        with ctx.job_lock(job_id):
            job = ctx.registry.require(job_id)
            if job.status != JobStatus.CREATED:
                raise InvalidJobStatusError(
                    f"Cannot submit job {job.job_id}: its status is {job.status.value}, "
                    f"but only {JobStatus.CREATED.value} jobs can be submitted.",
                    status=job.status,
                )
            ctx.session.ensure_active()

            try:
                self._step(1, self._steps, f"Copying job files to {job.scratch_dir}")
                ctx.session.mirror(job.project_dir, job.scratch_dir)

                self._step(2, self._steps, "Submitting to the scheduler")
                result = ctx.session.execute(
                    slurm.submit_command(job.scratch_dir, ctx.options.scheduler_prelude),
                    ctx.session.timeouts.scheduler,
                )
                if not result.ok:
                    raise SchedulerProtocolError(
                        f"sbatch failed (exit code {result.exit_code}): "
                        f"{result.stderr.strip()}"
                    )
                scheduler_job_id = slurm.parse_submit_output(result.stdout)
            except (SessionError, SchedulerProtocolError) as e:
                self._record_failure(job, e, code="SUBMIT_FAILED")
                raise

            self._step(3, self._steps, f"Recording scheduler job ID {scheduler_job_id}")
            job.assign_scheduler_job_id(scheduler_job_id)
            job.transition_to(JobStatus.PENDING)
            job.clear_error()
            try:
                ctx.registry.upsert(job)
            except RegistryError as e:
                logger.critical(
                    "Job %s was submitted as scheduler job %s but could not be recorded.",
                    job.job_id,
                    scheduler_job_id,
                )
                raise RegistryError(
                    f"Job {job.job_id} was submitted as scheduler job {scheduler_job_id} "
                    f"but the registry could not be updated: {e}"
                ) from e

            self._step(4, self._steps, "Updating job metadata")
            try:
                ctx.upload_metadata(job)
            except (SessionError, TransferError) as e:
                logger.warning("Could not update metadata of job %s: %s", job.job_id, e)
                self._progress.report(f"Warning: could not update {JOB_INFO_FILE}: {e}")

        return job

    def _success_message(self, job: Job) -> str:
        return f"Job {job.job_id} submitted as scheduler job {job.scheduler_job_id}."


class CompleteJobChain(AutomationChain):
    """
    Retrieves the results of a ``COMPLETED`` job.

    The job's scratch directory is mirrored back to its project directory, the
    scheduler's log files are cached locally and the contents of the ``outputs``
    directory are recorded on the job.

    If any of this fails, the job keeps its ``COMPLETED`` status (the simulation itself
    did finish) and the failure is recorded in its ``error_info``. The chain can be run
    again to retry.
    """

    name = "job completion"
    _steps = 4

    def _run(self, job_id: Union[str, JobId]) -> Job:
        ctx = self._context
        with ctx.job_lock(job_id):
            job = ctx.registry.require(job_id)
            if job.status != JobStatus.COMPLETED:
                raise InvalidJobStatusError(
                    f"Cannot retrieve results of job {job.job_id}: its status is "
                    f"{job.status.value}.",
                    status=job.status,
                )

            try:
                ctx.session.ensure_active()
                self._step(1, self._steps, "Copying results from scratch storage")
                ctx.session.mirror(job.scratch_dir, job.project_dir)

                self._step(2, self._steps, "Fetching scheduler logs")
                self._cache_logs(job)

                self._step(3, self._steps, "Listing output files")
                job.output_files = [
                    FileDescriptor(f"{OUTPUTS_DIR}/{entry.name}", entry.size, entry.modified_at)
                    for entry in ctx.session.list_dir(f"{job.project_dir}/{OUTPUTS_DIR}")
                    if not entry.is_dir
                ]

                self._step(4, self._steps, "Saving results")
                if job.completed_at is None:
                    job.completed_at = utc_now()
                job.error_info = None
                job.touch()
                ctx.upload_metadata(job)
                ctx.registry.upsert(job)
            except NamdRunnerError as e:
                error = FinalizeError(f"Could not retrieve results of job {job.job_id}: {e}")
                self._record_failure(job, error, code=e.kind)
                raise error from e

        return job

    def _cache_logs(self, job: Job) -> None:
        ctx = self._context
        if job.scheduler_job_id is None:
            self._progress.report("No scheduler job ID; skipping logs.")
            return
        if ctx.options.log_cache_dir is None:
            self._progress.report("No log cache configured; skipping logs.")
            return

        listing = {entry.name: entry for entry in ctx.session.list_dir(job.project_dir)}
        cache_dir = pathlib.Path(ctx.options.log_cache_dir) / str(job.job_id)
        for name in slurm.log_file_names(job.job_name, job.scheduler_job_id):
            entry = listing.get(name)
            if entry is None:
                self._progress.report(f"Log file {name} not found; skipping.")
            elif entry.size > ctx.options.max_log_bytes:
                self._progress.report(
                    f"Log file {name} is larger than {ctx.options.max_log_bytes} bytes; "
                    "skipping."
                )
            else:
                ctx.session.download(f"{job.project_dir}/{name}", cache_dir / name)
                self._progress.report(f"Cached {name}.")

    def _success_message(self, job: Job) -> str:
        return f"Retrieved {len(job.output_files)} output files for job {job.job_id}."


class SyncJobsChain(AutomationChain):
    """
    Reconciles the registry with the scheduler, then retrieves the results of every
    job that completed since the last sync.

    A failure to retrieve the results of a job is reported but does not fail the sync.
    """

    name = "job sync"
    _steps = 2

    def _run(self) -> SyncReport:
        ctx = self._context
        ctx.session.ensure_active()
        self._step(1, self._steps, "Querying the scheduler")
        report = ctx.reconciler().reconcile()
        for change in report.changes:
            self._progress.report(
                f"Job {change.job_id}: {change.previous.value} -> {change.current.value}"
            )
        for job_id in report.discovered:
            self._progress.report(f"Discovered untracked scheduler job as {job_id}")
        for job_id in report.imported:
            self._progress.report(f"Imported {job_id} from the cluster")

        self._step(2, self._steps, f"Retrieving results of {len(report.completed)} jobs")
        for index, job_id in enumerate(report.completed):
            if not ctx.session.is_active():
                for skipped in report.completed[index:]:
                    report.finalize_failures[str(skipped)] = "Skipped: the connection was lost."
                break

            chain = CompleteJobChain(ctx, self._progress.child())
            try:
                chain.run(job_id)
            except NamdRunnerError as e:
                report.finalize_failures[str(job_id)] = str(e)

        return report

    def _success_message(self, report: SyncReport) -> str:
        message = (
            f"Sync complete: {len(report.changes)} status changes, "
            f"{len(report.discovered)} jobs discovered."
        )
        if report.finalize_failures:
            message += f" Results of {len(report.finalize_failures)} jobs could not be retrieved."
        return message


class DeleteJobChain(AutomationChain):
    """
    Deletes a job: cancels it if the scheduler is still running it, removes its project
    and scratch directories and removes it from the registry.

    Without `force`, the first failing step stops the chain and is recorded on the job.
    With `force`, failures (including having no usable session) are reported and the
    job is removed from the registry regardless, possibly leaving files on the cluster.
    """

    name = "job deletion"
    _steps = 3

    def _run(self, job_id: Union[str, JobId], force: bool = False) -> list[str]:
        ctx = self._context
        warnings = []
        with ctx.job_lock(job_id):
            job = ctx.registry.require(job_id)

            self._step(1, self._steps, "Cancelling scheduler job")
            if job.scheduler_job_id is not None and not job.is_terminal:
                try:
                    self._cancel(job)
                except NamdRunnerError as e:
                    self._handle_failure(job, e, force, warnings)
            else:
                self._progress.report("Nothing to cancel.")

            self._step(2, self._steps, "Removing job directories")
            for directory in (job.project_dir, job.scratch_dir):
                try:
                    self._remove_directory(directory)
                except NamdRunnerError as e:
                    self._handle_failure(job, e, force, warnings)

            self._step(3, self._steps, "Removing job from registry")
            ctx.registry.delete(job.job_id)

        return warnings

    def _cancel(self, job: Job) -> None:
        ctx = self._context
        ctx.session.ensure_active()
        result = ctx.session.execute(
            slurm.cancel_command(job.scheduler_job_id, ctx.options.scheduler_prelude),
            ctx.session.timeouts.scheduler,
        )
        if not result.ok:
            raise SchedulerProtocolError(
                f"scancel failed for scheduler job {job.scheduler_job_id} "
                f"(exit code {result.exit_code}): {result.stderr.strip()}"
            )
        job.transition_to(JobStatus.CANCELLED)
        ctx.registry.upsert(job)
        self._progress.report(f"Cancelled scheduler job {job.scheduler_job_id}.")

    def _remove_directory(self, directory: str) -> None:
        ctx = self._context
        ctx.session.ensure_active()
        if not is_job_directory(directory, ctx.session.username, ctx.options.layout):
            raise InvalidInput(f"Refusing to delete {directory}: not a job directory.")
        ctx.session.remove_tree(directory)
        self._progress.report(f"Removed {directory}.")

    def _handle_failure(
        self, job: Job, error: NamdRunnerError, force: bool, warnings: list[str]
    ) -> None:
        if not force:
            self._record_failure(job, error, code="DELETE_FAILED")
            raise error

        warnings.append(str(error))
        logger.warning("Continuing deletion of job %s despite: %s", job.job_id, error)
        self._progress.report(f"Warning: {error} (continuing because force is set)")

    def _success_message(self, warnings: list[str]) -> str:
        if warnings:
            return f"Job deleted with {len(warnings)} warnings."
        return "Job deleted."


class JobAutomations:
    """
    Entry point for running the automation chains.

    Each method runs one chain. Progress can be followed by passing either a
    ``ProgressReporter`` or a listener callable, which is then called with each
    ``ProgressEvent`` on a background thread. A method waits at most
    `listener_timeout` seconds after its chain has finished for the listener to
    receive the remaining events; a slower listener keeps receiving them in the
    background.

    Parameters
    ----------
    session : RemoteSession
        The session with the cluster.
    registry : JobRegistry
        The job registry.
    options : ChainOptions, optional
        (Default: None) Settings for the chains. Defaults are used if ``None``.
    listener_timeout : float, optional
        (Default: 2.0) How long to wait for a listener to catch up once a chain has
        finished.
    """

    def __init__(
        self,
        session: RemoteSession,
        registry: JobRegistry,
        options: Optional[ChainOptions] = None,
        listener_timeout: float = 2.0,
    ):
        self._context = AutomationContext(session, registry, options)
        self._listener_timeout = listener_timeout

    @property
    def context(self) -> AutomationContext:
        """(Read-only) The context the chains run in."""
        return self._context

    def _run_chain(self, chain_type, progress, *args, **kwargs):
        channel = None
        if progress is not None and not isinstance(progress, ProgressReporter):
            channel = ProgressChannel(progress)
            progress = ProgressReporter(channel=channel)

        try:
            return chain_type(self._context, progress).run(*args, **kwargs)
        finally:
            if channel is not None and not channel.close(self._listener_timeout):
                logger.warning(
                    "Progress listener is still receiving events of the %s chain.",
                    chain_type.name,
                )

    def create(self, params: CreateJobParams, progress=None) -> Job:
        """Run the create chain. See ``CreateJobChain``."""
        return self._run_chain(CreateJobChain, progress, params)

    def submit(self, job_id: Union[str, JobId], progress=None) -> Job:
        """Run the submit chain. See ``SubmitJobChain``."""
        return self._run_chain(SubmitJobChain, progress, job_id)

    def sync(self, progress=None) -> SyncReport:
        """Run the sync chain. See ``SyncJobsChain``."""
        return self._run_chain(SyncJobsChain, progress)

    def complete(self, job_id: Union[str, JobId], progress=None) -> Job:
        """Run the complete chain. See ``CompleteJobChain``."""
        return self._run_chain(CompleteJobChain, progress, job_id)

    def delete(
        self, job_id: Union[str, JobId], force: bool = False, progress=None
    ) -> list[str]:
        """Run the delete chain. See ``DeleteJobChain``."""
        return self._run_chain(DeleteJobChain, progress, job_id, force=force)
