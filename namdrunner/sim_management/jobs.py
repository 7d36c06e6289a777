from __future__ import annotations

import dataclasses
import re
from datetime import datetime, timezone
from enum import Enum
from threading import Lock
from typing import Any, Optional, Union

from namdrunner.sim_management.errors import (
    InvalidInput,
    InvalidJobStatusError,
    RegistryError,
)
from namdrunner.sim_management.paths import (
    CONFIG_FILE,
    BATCH_SCRIPT,
    sanitize_job_name,
    validate_job_id,
    validate_relative_path,
)

METADATA_SCHEMA_VERSION = 1

STEPS_RANGE = (1, 100_000_000)
TEMPERATURE_RANGE = (200.0, 400.0)
TIMESTEP_RANGE = (0.1, 4.0)
CORES_RANGE = (1, 128)

DEFAULT_OUTPUT_FREQUENCY = 1000

_IDENTIFIER = re.compile(r"[A-Za-z0-9_\-]+")
_MEMORY = re.compile(r"([0-9]+)\s*(TB|GB|MB|T|G|M)", re.IGNORECASE)
_WALLTIME = re.compile(r"([0-9]+-)?[0-9]{1,3}:[0-5][0-9]:[0-5][0-9]")


def utc_now() -> str:
    """The current time as an ISO-8601 string in UTC."""

    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _parse_timestamp(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        raise InvalidInput(f"'{value}' is not an ISO-8601 timestamp.") from None


def _latest(*timestamps: str) -> str:
    return max(timestamps, key=_parse_timestamp)


class JobStatus(Enum):
    """The lifecycle states of a job.

    The values are the fixed upper-case tokens written to ``job_info.json`` and stored
    in the registry.
    """

    CREATED = "CREATED"
    """The job directory and files exist on the cluster but nothing has been handed to
    the scheduler."""

    PENDING = "PENDING"
    """The job has been accepted by the scheduler and is waiting in the queue."""

    RUNNING = "RUNNING"
    """The scheduler reports the job as executing."""

    COMPLETED = "COMPLETED"
    """The scheduler reports the job as having finished without error."""

    FAILED = "FAILED"
    """The job finished with an error, timed out or lost its node."""

    CANCELLED = "CANCELLED"
    """The job was cancelled, either locally or on the cluster."""


TERMINAL_STATUSES = {
    JobStatus.COMPLETED,
    JobStatus.FAILED,
    JobStatus.CANCELLED,
}
"""Statuses from which no further transition is possible."""

ACTIVE_STATUSES = {
    JobStatus.PENDING,
    JobStatus.RUNNING,
}
"""Statuses of jobs that the scheduler is tracking."""

ALLOWED_TRANSITIONS = {
    JobStatus.CREATED: {JobStatus.PENDING, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.RUNNING: {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
    JobStatus.CANCELLED: set(),
}

_FORWARD_ORDER = (JobStatus.CREATED, JobStatus.PENDING, JobStatus.RUNNING)


def status_path(current: JobStatus, target: JobStatus) -> list[JobStatus]:
    """The single-step transitions leading from `current` to `target`.

    No state is skipped, so a pending job that is found to have completed goes through
    ``RUNNING`` first. An empty list is returned when `target` is the current status or
    would mean moving backwards (including out of a terminal status).

    Examples
    --------
    >>> status_path(JobStatus.PENDING, JobStatus.COMPLETED)
    [<JobStatus.RUNNING: 'RUNNING'>, <JobStatus.COMPLETED: 'COMPLETED'>]
    >>> status_path(JobStatus.RUNNING, JobStatus.PENDING)
    []
    """

    if current == target or current in TERMINAL_STATUSES:
        return []

    if target in (JobStatus.FAILED, JobStatus.CANCELLED):
        return [target]

    if target == JobStatus.COMPLETED:
        stop = JobStatus.RUNNING
    else:
        stop = target

    start = _FORWARD_ORDER.index(current)
    end = _FORWARD_ORDER.index(stop)
    if end < start:
        return []

    path = list(_FORWARD_ORDER[start + 1 : end + 1])
    if target == JobStatus.COMPLETED:
        path.append(JobStatus.COMPLETED)

    return path


class JobId:
    """A unique identifier for a job.

    A job ID consists of ``job_`` followed by between 3 and 6 digits. A string
    representation of the ID can be obtained using the ``str`` function.

    Parameters
    ----------
    job_id : Union[str, JobId]
        A string of the form ``job_NNN``, or another instance of ``JobId``.

    Raises
    ------
    InvalidInput
        If `job_id` does not define a valid job ID.
    """

    def __init__(self, job_id: Union[str, JobId]):
        self._job_id = validate_job_id(str(job_id))

    @property
    def number(self) -> int:
        """(Read-only) The numeric part of the ID."""
        return int(self._job_id[len("job_") :])

    def __str__(self) -> str:
        return self._job_id

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({repr(self._job_id)})"

    def __eq__(self, other) -> bool:
        return isinstance(other, self.__class__) and self._job_id == str(other)

    def __hash__(self):
        return hash(self._job_id)


class JobIDGenerator:
    """
    A thread-safe generator of sequential job IDs.

    IDs are issued as ``job_NNN``, zero-padded to at least three digits. The generator
    continues from the highest number already in use, which is normally read from the
    job registry when the generator is created.

    Parameters
    ----------
    last_issued : int, optional
        (Default: 0) The highest job number already in use.

    Examples
    --------
    >>> id_generator = JobIDGenerator(last_issued=41)
    >>> id_generator.generate_id()
    JobId('job_042')
    """

    max_number = 999_999

    def __init__(self, last_issued: int = 0):
        self._lock = Lock()
        self._last = last_issued

    def generate_id(self) -> JobId:
        """
        Generates the next unused job ID.

        Raises
        ------
        RegistryError
            If all job numbers have been used.
        """
        with self._lock:
            if self._last >= self.max_number:
                raise RegistryError(
                    f"Cannot allocate a new job ID: all {self.max_number} job numbers "
                    "are in use."
                )

            self._last += 1
            return JobId(f"job_{self._last:03d}")

    def observe(self, job_id: Union[str, JobId]) -> None:
        """Record that `job_id` is in use, so that it is never issued again."""

        number = JobId(job_id).number
        with self._lock:
            self._last = max(self._last, number)


def _check_number(
    value: Any, name: str, bounds: tuple, integral: bool = False
) -> Union[int, float]:
    expected = (int,) if integral else (int, float)
    if isinstance(value, bool) or not isinstance(value, expected):
        type_name = "an integer" if integral else "a number"
        raise InvalidInput(
            f"Expected '{name}' to be {type_name}, but received {type(value)} instead."
        )

    low, high = bounds
    if not low <= value <= high:
        raise InvalidInput(
            f"'{name}' must be between {low} and {high}, but received {value}."
        )

    return value


def _check_identifier(value: Any, name: str) -> str:
    if not isinstance(value, str) or not _IDENTIFIER.fullmatch(value):
        raise InvalidInput(
            f"'{name}' must consist of alphanumeric characters, hyphens and "
            f"underscores, but received '{value}'."
        )
    return value


def _from_known_fields(cls, data: dict):
    """Build a dataclass from a mapping, ignoring keys it does not define."""

    if not isinstance(data, dict):
        raise InvalidInput(
            f"Expected a mapping to build {cls.__name__}, but received {type(data)}."
        )
    fields = dataclasses.fields(cls)
    missing = [
        field.name
        for field in fields
        if field.name not in data
        and field.default is dataclasses.MISSING
        and field.default_factory is dataclasses.MISSING
    ]
    if missing:
        raise InvalidInput(
            f"Missing required fields for {cls.__name__}: {', '.join(missing)}."
        )

    names = {field.name for field in fields}
    return cls(**{key: value for key, value in data.items() if key in names})


@dataclasses.dataclass
class NAMDConfig:
    """Parameters of the NAMD simulation.

    Parameters
    ----------
    steps : int
        Number of integration steps to run, between 1 and 100,000,000.
    temperature : float
        Target temperature in kelvin, between 200 and 400.
    timestep : float
        Integration timestep in femtoseconds, between 0.1 and 4.0.
    outputname : str, optional
        (Default: 'output') Prefix for the files NAMD writes to the ``outputs``
        directory.
    dcd_freq : int, optional
        (Default: None) How often, in steps, trajectory frames are written. If ``None``
        then this is ``min(1000, steps)``.
    restart_freq : int, optional
        (Default: None) How often, in steps, restart files are written. If ``None``
        then this is ``min(1000, steps)``.

    Raises
    ------
    InvalidInput
        If any parameter is of the wrong type or out of range.
    """

    steps: int
    temperature: float
    timestep: float
    outputname: str = "output"
    dcd_freq: Optional[int] = None
    restart_freq: Optional[int] = None

    def __post_init__(self):
        _check_number(self.steps, "steps", STEPS_RANGE, integral=True)
        _check_number(self.temperature, "temperature", TEMPERATURE_RANGE)
        _check_number(self.timestep, "timestep", TIMESTEP_RANGE)
        _check_identifier(self.outputname, "outputname")
        for name in ("dcd_freq", "restart_freq"):
            if getattr(self, name) is not None:
                _check_number(getattr(self, name), name, (1, self.steps), integral=True)

    @property
    def effective_dcd_freq(self) -> int:
        return self.dcd_freq or min(DEFAULT_OUTPUT_FREQUENCY, self.steps)

    @property
    def effective_restart_freq(self) -> int:
        return self.restart_freq or min(DEFAULT_OUTPUT_FREQUENCY, self.steps)

    @classmethod
    def from_dict(cls, data: dict) -> NAMDConfig:
        return _from_known_fields(cls, data)


@dataclasses.dataclass
class SlurmConfig:
    """The resources requested from the scheduler for a job.

    Parameters
    ----------
    cores : int
        Number of cores (MPI tasks), between 1 and 128.
    memory : str, optional
        (Default: '16GB') Memory for the job, e.g. ``'16GB'`` or ``'512MB'``.
    walltime : str, optional
        (Default: '24:00:00') Time limit as ``HH:MM:SS`` (optionally prefixed by
        ``D-`` for days).
    partition : str, optional
        (Default: 'amilan') The partition to submit to, or ``None`` for the cluster
        default.
    qos : str, optional
        (Default: 'normal') The quality of service, or ``None`` for the cluster
        default.
    """

    cores: int
    memory: str = "16GB"
    walltime: str = "24:00:00"
    partition: Optional[str] = "amilan"
    qos: Optional[str] = "normal"

    def __post_init__(self):
        _check_number(self.cores, "cores", CORES_RANGE, integral=True)
        if not isinstance(self.memory, str) or not _MEMORY.fullmatch(self.memory.strip()):
            raise InvalidInput(
                f"'memory' must look like '16GB' or '512MB', but received '{self.memory}'."
            )
        if not isinstance(self.walltime, str) or not _WALLTIME.fullmatch(self.walltime):
            raise InvalidInput(
                f"'walltime' must have the form HH:MM:SS, but received '{self.walltime}'."
            )
        if self.partition is not None:
            _check_identifier(self.partition, "partition")
        if self.qos is not None:
            _check_identifier(self.qos, "qos")

    @property
    def memory_directive(self) -> str:
        """The memory request in the unit-suffix form accepted by ``sbatch --mem``."""

        match = _MEMORY.fullmatch(self.memory.strip())
        return f"{match.group(1)}{match.group(2)[0].upper()}"

    @classmethod
    def from_dict(cls, data: dict) -> SlurmConfig:
        return _from_known_fields(cls, data)


@dataclasses.dataclass
class FileDescriptor:
    """A file belonging to a job, identified by its path relative to the job's project
    directory."""

    path: str
    size: Optional[int] = None
    modified_at: Optional[str] = None

    def __post_init__(self):
        self.path = validate_relative_path(self.path)

    @property
    def name(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> FileDescriptor:
        return _from_known_fields(cls, data)


@dataclasses.dataclass
class ErrorInfo:
    """Structured details of the most recent failure affecting a job."""

    kind: str
    message: str
    code: Optional[str] = None
    failed_at: str = dataclasses.field(default_factory=utc_now)

    @classmethod
    def from_exception(cls, error: Exception, code: Optional[str] = None) -> ErrorInfo:
        kind = getattr(error, "kind", type(error).__name__)
        return cls(kind=kind, message=str(error), code=code)

    @classmethod
    def from_dict(cls, data: dict) -> ErrorInfo:
        return _from_known_fields(cls, data)


@dataclasses.dataclass
class Job:
    """The registry record of a simulation job.

    Status changes must go through `transition_to`, which enforces the allowed
    transitions and maintains the timestamps. All timestamps are ISO-8601 strings in
    UTC.

    Attributes
    ----------
    job_id : JobId
        The unique ID of the job.
    job_name : str
        A human-readable name, validated with ``sanitize_job_name``.
    status : JobStatus
        The current lifecycle state.
    created_at, updated_at : str
        When the job was created and last changed.
    project_dir, scratch_dir : str
        The remote directories of the job. Always derived from the username and job
        ID.
    namd_config : NAMDConfig, optional
        The simulation parameters, or ``None`` for jobs discovered on the cluster.
    slurm_config : SlurmConfig, optional
        The resource request, or ``None`` for jobs discovered on the cluster.
    input_files, generated_files, output_files : list[FileDescriptor]
        Files belonging to the job, relative to `project_dir`.
    scheduler_job_id : str, optional
        The ID assigned by the scheduler. Set once, at submission.
    submitted_at, completed_at : str, optional
        When the job was handed to the scheduler and when it reached a terminal status.
    error_info : ErrorInfo, optional
        Details of the most recent failure.
    """

    job_id: JobId
    job_name: str
    status: JobStatus
    created_at: str
    updated_at: str
    project_dir: str
    scratch_dir: str
    namd_config: Optional[NAMDConfig] = None
    slurm_config: Optional[SlurmConfig] = None
    input_files: list[FileDescriptor] = dataclasses.field(default_factory=list)
    generated_files: list[FileDescriptor] = dataclasses.field(default_factory=list)
    output_files: list[FileDescriptor] = dataclasses.field(default_factory=list)
    scheduler_job_id: Optional[str] = None
    submitted_at: Optional[str] = None
    completed_at: Optional[str] = None
    error_info: Optional[ErrorInfo] = None

    def __post_init__(self):
        self.job_id = JobId(self.job_id)
        self.job_name = sanitize_job_name(self.job_name)
        self.status = JobStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        """(Read-only) Whether the job is in a terminal status."""
        return self.status in TERMINAL_STATUSES

    def transition_to(self, status: JobStatus, at: Optional[str] = None) -> None:
        """Move the job to a new status.

        Entering ``PENDING`` sets `submitted_at` (never earlier than `created_at`) and
        entering a terminal status sets `completed_at`, unless already set.

        Parameters
        ----------
        status : JobStatus
            The status to move to.
        at : str, optional
            (Default: None) The time of the transition. The current time if ``None``.

        Raises
        ------
        InvalidJobStatusError
            If the transition is not allowed from the current status.
        """

        status = JobStatus(status)
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidJobStatusError(
                f"Cannot move job {self.job_id} from {self.status.value} to "
                f"{status.value}.",
                status=self.status,
            )

        now = at or utc_now()
        if status == JobStatus.PENDING and self.submitted_at is None:
            self.submitted_at = _latest(self.created_at, now)

        if status in TERMINAL_STATUSES and self.completed_at is None:
            self.completed_at = now

        self.status = status
        self.touch(now)

    def assign_scheduler_job_id(self, scheduler_job_id: str) -> None:
        """Record the ID given to the job by the scheduler.

        Raises
        ------
        InvalidJobStatusError
            If the job already has a different scheduler job ID.
        """

        if self.scheduler_job_id is not None and self.scheduler_job_id != scheduler_job_id:
            raise InvalidJobStatusError(
                f"Job {self.job_id} already has scheduler job ID {self.scheduler_job_id}.",
                status=self.status,
            )
        self.scheduler_job_id = scheduler_job_id

    def record_error(self, error: Exception, code: Optional[str] = None) -> ErrorInfo:
        self.error_info = ErrorInfo.from_exception(error, code)
        self.touch(self.error_info.failed_at)
        return self.error_info

    def clear_error(self) -> None:
        if self.error_info is not None:
            self.error_info = None
            self.touch()

    def touch(self, at: Optional[str] = None) -> None:
        """Advance `updated_at`, never moving it backwards."""

        self.updated_at = _latest(self.updated_at, at or utc_now())

    def to_metadata(self) -> dict[str, Any]:
        """Serialise the job to the structure of ``job_info.json``."""

        return {
            "schema_version": METADATA_SCHEMA_VERSION,
            "job_id": str(self.job_id),
            "job_name": self.job_name,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "status": self.status.value,
            "scheduler_job_id": self.scheduler_job_id,
            "submitted_at": self.submitted_at,
            "completed_at": self.completed_at,
            "config": {
                "namd": dataclasses.asdict(self.namd_config) if self.namd_config else None,
                "slurm": (
                    dataclasses.asdict(self.slurm_config) if self.slurm_config else None
                ),
            },
            "input_files": [descriptor.to_dict() for descriptor in self.input_files],
            "generated_files": _keyed_by_path(self.generated_files),
            "output_files": _keyed_by_path(self.output_files),
            "directories": {
                "project_dir": self.project_dir,
                "scratch_dir": self.scratch_dir,
            },
            "error_info": (
                dataclasses.asdict(self.error_info) if self.error_info else None
            ),
        }

    @classmethod
    def from_metadata(cls, data: dict[str, Any]) -> Job:
        """Build a job from the structure of ``job_info.json``.

        Unknown fields are ignored, so that files written by newer versions can still
        be read.

        Raises
        ------
        InvalidInput
            If a required field is missing or any field is not valid.
        """

        if not isinstance(data, dict):
            raise InvalidInput(f"Expected job metadata to be a mapping, got {type(data)}.")

        missing = [
            key for key in ("job_id", "job_name", "status", "created_at") if key not in data
        ]
        if missing:
            raise InvalidInput(f"Job metadata is missing fields: {', '.join(missing)}.")

        try:
            status = JobStatus(data["status"])
        except ValueError:
            raise InvalidInput(f"Unknown job status '{data['status']}'.") from None

        config = data.get("config") or {}
        directories = data.get("directories") or {}
        error_info = data.get("error_info")
        return cls(
            job_id=data["job_id"],
            job_name=data["job_name"],
            status=status,
            created_at=data["created_at"],
            updated_at=data.get("updated_at") or data["created_at"],
            project_dir=directories.get("project_dir", ""),
            scratch_dir=directories.get("scratch_dir", ""),
            namd_config=(
                NAMDConfig.from_dict(config["namd"]) if config.get("namd") else None
            ),
            slurm_config=(
                SlurmConfig.from_dict(config["slurm"]) if config.get("slurm") else None
            ),
            input_files=_descriptors(data.get("input_files")),
            generated_files=_descriptors(data.get("generated_files")),
            output_files=_descriptors(data.get("output_files")),
            scheduler_job_id=data.get("scheduler_job_id"),
            submitted_at=data.get("submitted_at"),
            completed_at=data.get("completed_at"),
            error_info=ErrorInfo.from_dict(error_info) if error_info else None,
        )


def _keyed_by_path(descriptors: list[FileDescriptor]) -> dict[str, dict[str, Any]]:
    return {
        descriptor.path: {"size": descriptor.size, "modified_at": descriptor.modified_at}
        for descriptor in descriptors
    }


def _descriptors(value: Any) -> list[FileDescriptor]:
    """Read file descriptors stored either as a list or keyed by path."""

    if value is None:
        return []
    elif isinstance(value, dict):
        return [
            FileDescriptor.from_dict({**(details or {}), "path": path})
            for path, details in value.items()
        ]
    elif isinstance(value, list):
        return [
            FileDescriptor(item) if isinstance(item, str) else FileDescriptor.from_dict(item)
            for item in value
        ]
    else:
        raise InvalidInput(f"Cannot read file descriptors from {type(value)}.")


def generated_file_descriptors() -> list[FileDescriptor]:
    """The files rendered for every job at creation time."""

    return [FileDescriptor(CONFIG_FILE), FileDescriptor(BATCH_SCRIPT)]
