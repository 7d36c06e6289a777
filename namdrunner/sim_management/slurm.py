"""
Construction of SLURM commands and parsing of their output.

Nothing in this module talks to the cluster: functions here only build command strings
(every argument quoted) and turn command output into structured values. Output that
cannot be understood raises ``SchedulerProtocolError``.
"""

import dataclasses
import logging
import re
import shlex
from collections.abc import Sequence
from typing import Optional

from namdrunner.sim_management.errors import InvalidInput, SchedulerProtocolError
from namdrunner.sim_management.jobs import JobStatus
from namdrunner.sim_management.paths import BATCH_SCRIPT, sanitize_username

logger = logging.getLogger(__name__)

DEFAULT_PRELUDE = "source /etc/profile && module load slurm/alpine"

_SCHEDULER_ID = re.compile(r"[0-9]+")
_SUBMITTED_PREFIX = "Submitted batch job"

STATE_MAP = {
    "PENDING": JobStatus.PENDING,
    "PD": JobStatus.PENDING,
    "CONFIGURING": JobStatus.PENDING,
    "CF": JobStatus.PENDING,
    "REQUEUED": JobStatus.PENDING,
    "RQ": JobStatus.PENDING,
    "RESIZING": JobStatus.PENDING,
    "RS": JobStatus.PENDING,
    "SUSPENDED": JobStatus.PENDING,
    "S": JobStatus.PENDING,
    "RUNNING": JobStatus.RUNNING,
    "R": JobStatus.RUNNING,
    "COMPLETING": JobStatus.RUNNING,
    "CG": JobStatus.RUNNING,
    "COMPLETED": JobStatus.COMPLETED,
    "CD": JobStatus.COMPLETED,
    "FAILED": JobStatus.FAILED,
    "F": JobStatus.FAILED,
    "TIMEOUT": JobStatus.FAILED,
    "TO": JobStatus.FAILED,
    "NODE_FAIL": JobStatus.FAILED,
    "NF": JobStatus.FAILED,
    "PREEMPTED": JobStatus.FAILED,
    "PR": JobStatus.FAILED,
    "OUT_OF_MEMORY": JobStatus.FAILED,
    "OOM": JobStatus.FAILED,
    "BOOT_FAIL": JobStatus.FAILED,
    "BF": JobStatus.FAILED,
    "DEADLINE": JobStatus.FAILED,
    "DL": JobStatus.FAILED,
    "CANCELLED": JobStatus.CANCELLED,
    "CA": JobStatus.CANCELLED,
}
"""Scheduler state codes (long and short forms) and the job status each maps to."""


@dataclasses.dataclass(frozen=True)
class QueueEntry:
    """A job listed in a user's scheduler queue."""

    scheduler_job_id: str
    state: str
    name: str


def map_state(raw_state: str) -> JobStatus:
    """Map a scheduler state to a job status.

    Matching is case-insensitive and ignores anything after the first word (sacct
    reports e.g. ``CANCELLED by 1234``). Unknown states are treated as ``RUNNING``
    and logged, so that an unrecognised but live job is never marked as finished.

    Examples
    --------
    >>> map_state("completing")
    <JobStatus.RUNNING: 'RUNNING'>
    >>> map_state("CANCELLED by 5012")
    <JobStatus.CANCELLED: 'CANCELLED'>
    """

    words = raw_state.strip().split()
    token = words[0].rstrip("+").upper() if words else ""
    try:
        return STATE_MAP[token]
    except KeyError:
        logger.warning("Unknown scheduler state '%s', treating as RUNNING.", raw_state)
        return JobStatus.RUNNING


def validate_scheduler_job_id(raw: str) -> str:
    if not isinstance(raw, str) or not _SCHEDULER_ID.fullmatch(raw):
        raise InvalidInput(f"'{raw}' is not a valid scheduler job ID.")
    return raw


def _with_prelude(command: str, prelude: Optional[str]) -> str:
    return f"{prelude} && {command}" if prelude else command


def submit_command(scratch_dir: str, prelude: Optional[str] = DEFAULT_PRELUDE) -> str:
    """The command submitting a job's batch script from its scratch directory."""

    return _with_prelude(
        f"cd {shlex.quote(scratch_dir)} && sbatch {BATCH_SCRIPT}", prelude
    )


def status_command(
    scheduler_job_ids: Sequence[str], prelude: Optional[str] = DEFAULT_PRELUDE
) -> str:
    """One ``sacct`` query reporting the state of every job in `scheduler_job_ids`.

    ``sacct`` knows about queued, running and finished jobs alike, so a single call
    covers every tracked job.

    Raises
    ------
    InvalidInput
        If no IDs are given or any ID is not numeric.
    """

    if not scheduler_job_ids:
        raise InvalidInput("At least one scheduler job ID is required.")

    ids = ",".join(validate_scheduler_job_id(sid) for sid in scheduler_job_ids)
    return _with_prelude(
        f"sacct -X -j {ids} --format=JobID,State --parsable2 --noheader", prelude
    )


def queue_command(username: str, prelude: Optional[str] = DEFAULT_PRELUDE) -> str:
    """The command listing every job in a user's scheduler queue."""

    user = sanitize_username(username)
    return _with_prelude(
        f"squeue -u {shlex.quote(user)} --format='%i|%T|%j' --noheader", prelude
    )


def cancel_command(scheduler_job_id: str, prelude: Optional[str] = DEFAULT_PRELUDE) -> str:
    return _with_prelude(f"scancel {validate_scheduler_job_id(scheduler_job_id)}", prelude)


def parse_submit_output(stdout: str) -> str:
    """Extract the scheduler job ID from the output of ``sbatch``.

    Raises
    ------
    SchedulerProtocolError
        If no line of the form ``Submitted batch job <digits>`` is present.

    Examples
    --------
    >>> parse_submit_output("Submitted batch job 12345678\\n")
    '12345678'
    """

    for line in stdout.splitlines():
        line = line.strip()
        if line.startswith(_SUBMITTED_PREFIX):
            candidate = line[len(_SUBMITTED_PREFIX) :].strip()
            if _SCHEDULER_ID.fullmatch(candidate):
                return candidate

    raise SchedulerProtocolError(
        f"Could not find a job ID in the output of sbatch: '{stdout.strip()}'"
    )


def parse_status_output(stdout: str) -> dict[str, str]:
    """Parse the output of `status_command` into raw states keyed by scheduler job ID.

    Rows for job steps (IDs such as ``123.batch``) are skipped.

    Raises
    ------
    SchedulerProtocolError
        If a row does not have the form ``<id>|<state>``.
    """

    states = dict()
    for line in stdout.splitlines():
        line = line.strip()
        if not line:
            continue

        fields = line.split("|")
        if len(fields) < 2 or not fields[0] or not fields[1].strip():
            raise SchedulerProtocolError(f"Unexpected line in sacct output: '{line}'")

        job_field = fields[0].strip()
        if "." in job_field:
            continue

        if not _SCHEDULER_ID.fullmatch(job_field):
            logger.debug("Skipping non-numeric job ID '%s' in sacct output.", job_field)
            continue

        states[job_field] = fields[1].strip()

    return states


def parse_queue_output(stdout: str) -> list[QueueEntry]:
    """Parse the output of `queue_command`.

    Raises
    ------
    SchedulerProtocolError
        If a row does not have the form ``<id>|<state>|<name>``.
    """

    entries = []
    for line in stdout.splitlines():
        line = line.strip()
        if not line:
            continue

        fields = line.split("|", 2)
        if len(fields) != 3 or not fields[0].strip():
            raise SchedulerProtocolError(f"Unexpected line in squeue output: '{line}'")

        # Array jobs are listed as e.g. 123_[1-4]
        if not _SCHEDULER_ID.fullmatch(fields[0].strip()):
            logger.debug("Skipping queue entry '%s'.", line)
            continue

        entries.append(
            QueueEntry(
                scheduler_job_id=fields[0].strip(),
                state=fields[1].strip(),
                name=fields[2].strip(),
            )
        )

    return entries


def log_file_names(job_name: str, scheduler_job_id: str) -> tuple[str, str]:
    """The names of the stdout and stderr files SLURM writes for a job, as configured
    in the batch script."""

    stem = f"{script_safe_name(job_name)}_{scheduler_job_id}"
    return f"{stem}.out", f"{stem}.err"


def script_safe_name(job_name: str) -> str:
    """A form of the job name that is safe inside ``#SBATCH`` directives and file
    names."""

    safe = re.sub(r"[^A-Za-z0-9_\-.]", "_", job_name)
    return safe or "job"
