"""
Reconciliation of the local job registry with the scheduler.

A reconciliation pass asks the scheduler about every job the registry believes to be
queued or running, in a single batched query, and applies the resulting status
changes to the registry in a single transaction. Jobs in the user's scheduler queue
that the registry does not know about are added. If anything goes wrong before the
write, the registry is left untouched.
"""

import dataclasses
import json
import logging
from typing import Optional

from namdrunner.sim_management.errors import (
    ConnectionLost,
    InvalidInput,
    NamdRunnerError,
    SchedulerProtocolError,
    TransferError,
)
from namdrunner.sim_management.jobs import (
    ACTIVE_STATUSES,
    ErrorInfo,
    Job,
    JobId,
    JobIDGenerator,
    JobStatus,
    status_path,
    utc_now,
)
from namdrunner.sim_management.paths import (
    DEFAULT_LAYOUT,
    JOB_ID_PATTERN,
    JOB_INFO_FILE,
    RemoteLayout,
    job_base_directory,
    project_directory,
    sanitize_job_name,
    scratch_directory,
)
from namdrunner.sim_management.registry import LAST_SYNC_KEY, JobRegistry
from namdrunner.sim_management.session import RemoteSession
from namdrunner.sim_management import slurm

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class StatusChange:
    """A status change applied to a job during a reconciliation pass."""

    job_id: JobId
    previous: JobStatus
    current: JobStatus
    scheduler_state: str


@dataclasses.dataclass
class SyncReport:
    """The outcome of a reconciliation pass.

    Attributes
    ----------
    synced_at : str
        When the pass started.
    checked : int
        How many tracked jobs were queried.
    changes : list[StatusChange]
        The status changes that were written.
    discovered : list[JobId]
        Jobs created for scheduler queue entries the registry did not know about.
    completed : list[JobId]
        Jobs that moved from ``RUNNING`` to ``COMPLETED`` in this pass.
    imported : list[JobId]
        Jobs imported from ``job_info.json`` files on the cluster.
    import_failures : dict[str, str]
        Remote job directories that could not be imported, with the reason.
    finalize_failures : dict[str, str]
        Completed jobs whose results could not be retrieved, with the reason. Filled
        in by the sync automation, not by the reconciler.
    """

    synced_at: str
    checked: int = 0
    changes: list[StatusChange] = dataclasses.field(default_factory=list)
    discovered: list[JobId] = dataclasses.field(default_factory=list)
    completed: list[JobId] = dataclasses.field(default_factory=list)
    imported: list[JobId] = dataclasses.field(default_factory=list)
    import_failures: dict[str, str] = dataclasses.field(default_factory=dict)
    finalize_failures: dict[str, str] = dataclasses.field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return bool(self.changes or self.discovered or self.imported)


class StatusReconciler:
    """
    Brings the registry in line with what the scheduler reports.

    Parameters
    ----------
    session : RemoteSession
        An active session with the cluster.
    registry : JobRegistry
        The job registry to update.
    id_generator : JobIDGenerator
        The generator used to allocate IDs for discovered jobs. This must be the same
        generator used when creating jobs.
    layout : RemoteLayout, optional
        (Default: ``DEFAULT_LAYOUT``) The remote directory roots.
    prelude : str, optional
        (Default: ``slurm.DEFAULT_PRELUDE``) Shell commands run before every scheduler
        command, to set up the scheduler's environment.
    """

    def __init__(
        self,
        session: RemoteSession,
        registry: JobRegistry,
        id_generator: JobIDGenerator,
        layout: RemoteLayout = DEFAULT_LAYOUT,
        prelude: Optional[str] = slurm.DEFAULT_PRELUDE,
    ):
        self._session = session
        self._registry = registry
        self._id_generator = id_generator
        self._layout = layout
        self._prelude = prelude

    def reconcile(self) -> SyncReport:
        """
        Run one reconciliation pass.

        The scheduler is asked about all queued and running jobs with one ``sacct``
        call, and the user's queue is listed with one ``squeue`` call, regardless of
        how many jobs are tracked. Status changes walk through every intermediate
        status, so a job seen as finished while still pending locally passes through
        ``RUNNING``. A scheduler state that would move a job backwards is ignored.

        Running a pass twice without any change on the cluster writes nothing the
        second time.

        Returns
        -------
        SyncReport
            What changed.

        Raises
        ------
        SessionError
            If there is no usable session.
        SchedulerProtocolError
            If a scheduler command failed or its output could not be understood. No
            job is updated in that case.
        RegistryError
            If the registry could not be read or written.
        """

        report = SyncReport(synced_at=utc_now())
        imported = []
        if self._registry.count() == 0:
            imported, report.import_failures = self.collect_remote_jobs()

        tracked = self._registry.list(statuses=ACTIVE_STATUSES, with_scheduler_id=True)
        tracked += [
            job
            for job in imported
            if job.status in ACTIVE_STATUSES and job.scheduler_job_id is not None
        ]
        report.checked = len(tracked)
        states = self._query_states([job.scheduler_job_id for job in tracked])
        queue = self._query_queue()

        # Discovered jobs must not reuse the IDs of imported ones.
        for job in imported:
            self._id_generator.observe(job.job_id)
        report.imported = [job.job_id for job in imported]
        updated = {str(job.job_id): job for job in imported}

        for job in tracked:
            raw_state = states.get(job.scheduler_job_id)
            if raw_state is None:
                logger.debug(
                    "No scheduler record yet for job %s (%s).",
                    job.job_id,
                    job.scheduler_job_id,
                )
                continue

            change = self._apply_state(job, raw_state, report.synced_at)
            if change is not None:
                report.changes.append(change)
                if change.current == JobStatus.COMPLETED:
                    report.completed.append(job.job_id)
                updated[str(job.job_id)] = job

        known_ids = self._registry.scheduler_job_ids() | {
            job.scheduler_job_id for job in imported if job.scheduler_job_id is not None
        }
        for entry in queue:
            if entry.scheduler_job_id not in known_ids:
                job = self._discovered_job(entry, report.synced_at)
                report.discovered.append(job.job_id)
                updated[str(job.job_id)] = job

        self._registry.upsert_many(list(updated.values()))
        self._registry.set_meta(LAST_SYNC_KEY, report.synced_at)
        logger.info(
            "Sync checked %s jobs: %s changed, %s discovered.",
            report.checked,
            len(report.changes),
            len(report.discovered),
        )
        return report

    def _query_states(self, scheduler_job_ids: list[str]) -> dict[str, str]:
        if not scheduler_job_ids:
            return dict()

        result = self._session.execute(
            slurm.status_command(scheduler_job_ids, self._prelude),
            self._session.timeouts.scheduler,
        )
        if not result.ok:
            raise SchedulerProtocolError(
                f"sacct failed (exit code {result.exit_code}): {result.stderr.strip()}"
            )
        return slurm.parse_status_output(result.stdout)

    def _query_queue(self) -> list[slurm.QueueEntry]:
        result = self._session.execute(
            slurm.queue_command(self._session.username, self._prelude),
            self._session.timeouts.scheduler,
        )
        if not result.ok:
            raise SchedulerProtocolError(
                f"squeue failed (exit code {result.exit_code}): {result.stderr.strip()}"
            )
        return slurm.parse_queue_output(result.stdout)

    @staticmethod
    def _apply_state(job: Job, raw_state: str, now: str) -> Optional[StatusChange]:
        """Move a job to the status matching `raw_state`, returning the change made, if
        any."""

        target = slurm.map_state(raw_state)
        path = status_path(job.status, target)
        if not path:
            if target != job.status:
                logger.warning(
                    "Ignoring scheduler state %s for job %s, which is %s locally.",
                    raw_state,
                    job.job_id,
                    job.status.value,
                )
            return None

        previous = job.status
        for status in path:
            job.transition_to(status, now)

        if target in (JobStatus.FAILED, JobStatus.CANCELLED):
            job.error_info = ErrorInfo(
                kind="SchedulerState",
                message=(
                    f"The scheduler reported job {job.scheduler_job_id} as {raw_state}."
                ),
                code=raw_state.split()[0].upper(),
                failed_at=now,
            )

        return StatusChange(job.job_id, previous, job.status, raw_state)

    def _discovered_job(self, entry: slurm.QueueEntry, now: str) -> Job:
        job_id = self._id_generator.generate_id()
        try:
            name = sanitize_job_name(entry.name)
        except InvalidInput:
            name = f"discovered_{entry.scheduler_job_id}"

        username = self._session.username
        logger.info(
            "Discovered scheduler job %s ('%s'), recording it as %s.",
            entry.scheduler_job_id,
            name,
            job_id,
        )
        return Job(
            job_id=job_id,
            job_name=name,
            status=JobStatus.RUNNING,
            created_at=now,
            updated_at=now,
            project_dir=project_directory(username, str(job_id), self._layout),
            scratch_dir=scratch_directory(username, str(job_id), self._layout),
            scheduler_job_id=entry.scheduler_job_id,
            submitted_at=now,
        )

    def import_remote_jobs(self) -> tuple[list[JobId], dict[str, str]]:
        """
        Import jobs recorded in ``job_info.json`` files under the user's project job
        directory that are missing from the registry.

        This is how a fresh installation picks up jobs created elsewhere. Directories
        whose metadata is missing or invalid are skipped and reported. A full
        `reconcile` pass on an empty registry does this as part of its single write.

        Returns
        -------
        tuple[list[JobId], dict[str, str]]
            The imported job IDs, and the directories that could not be imported
            with the reason.

        Raises
        ------
        SessionError
            If the job directory could not be listed or the connection dropped.
        RegistryError
            If the imported jobs could not be written.
        """

        imported, failures = self.collect_remote_jobs()
        self._registry.upsert_many(imported)
        for job in imported:
            self._id_generator.observe(job.job_id)

        return [job.job_id for job in imported], failures

    def collect_remote_jobs(self) -> tuple[list[Job], dict[str, str]]:
        """Read the ``job_info.json`` files of remote jobs missing from the registry,
        without writing anything.

        Returns
        -------
        tuple[list[Job], dict[str, str]]
            The jobs read, and the directories that could not be read with the
            reason.
        """

        username = self._session.username
        base = job_base_directory(username, is_scratch=False, layout=self._layout)
        if not self._session.path_exists(base):
            return [], dict()

        imported = []
        failures = dict()
        for entry in self._session.list_dir(base):
            if not entry.is_dir or not JOB_ID_PATTERN.fullmatch(entry.name):
                continue
            if self._registry.get(entry.name) is not None:
                continue

            try:
                job = self._read_remote_job(base, entry.name, username)
            except TransferError as e:
                if e.connection_lost:
                    raise ConnectionLost(str(e)) from e
                failures[entry.name] = str(e)
                continue
            except (NamdRunnerError, ValueError) as e:
                failures[entry.name] = str(e)
                continue

            imported.append(job)

        if failures:
            logger.warning("Could not import %s remote jobs: %s", len(failures), failures)

        return imported, failures

    def _read_remote_job(self, base: str, dir_name: str, username: str) -> Job:
        job = Job.from_metadata(
            json.loads(self._session.read_text(f"{base}/{dir_name}/{JOB_INFO_FILE}"))
        )
        if str(job.job_id) != dir_name:
            raise InvalidInput(
                f"Metadata in {dir_name} is for a different job ({job.job_id})."
            )

        job.project_dir = project_directory(username, dir_name, self._layout)
        job.scratch_dir = scratch_directory(username, dir_name, self._layout)
        return job
