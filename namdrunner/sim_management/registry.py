import json
import logging
import pathlib
import re
import sqlite3
from collections.abc import Collection, Iterable
from threading import Lock
from typing import Any, Optional, Union

from namdrunner.sim_management.errors import (
    InvalidInput,
    RegistryError,
    UnknownJobIdError,
)
from namdrunner.sim_management.jobs import Job, JobId, JobStatus, utc_now
from namdrunner.sim_management.types import FilePath

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
"""The version of the database layout written by this module."""

MIN_SUPPORTED_VERSION = 0
"""The oldest database layout that can be migrated automatically."""

LAST_SYNC_KEY = "last_sync_at"

_CREATE_JOBS = """CREATE TABLE IF NOT EXISTS jobs(
    job_id TEXT PRIMARY KEY,
    job_name TEXT NOT NULL,
    status TEXT NOT NULL,
    scheduler_job_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    data TEXT NOT NULL
)"""

_CREATE_METADATA = """CREATE TABLE IF NOT EXISTS metadata(
    key TEXT PRIMARY KEY,
    value TEXT
)"""

_CREATE_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status)",
    "CREATE INDEX IF NOT EXISTS idx_jobs_scheduler_job_id ON jobs(scheduler_job_id)",
    "CREATE INDEX IF NOT EXISTS idx_jobs_updated_at ON jobs(updated_at)",
)

_UPSERT = """INSERT INTO jobs(job_id, job_name, status, scheduler_job_id, created_at, updated_at, data)
             VALUES(?,?,?,?,?,?,?)
             ON CONFLICT(job_id) DO UPDATE SET
               job_name=excluded.job_name, status=excluded.status,
               scheduler_job_id=excluded.scheduler_job_id,
               created_at=excluded.created_at, updated_at=excluded.updated_at,
               data=excluded.data"""


class JobRegistry:
    """
    The durable local record of every job, stored in an SQLite database.

    Each job is one row of the ``jobs`` table. The columns that are queried on (status,
    scheduler job ID, timestamps) are stored individually and indexed; the full record
    is stored alongside as a JSON document with the same structure as ``job_info.json``.
    A ``metadata`` table holds the schema version and bookkeeping such as the time of
    the last sync with the scheduler.

    Opening a database written by an older version of the application migrates it in a
    single transaction. A database written by a newer version is refused.

    Writes are serialised, so concurrent updates of the same job resolve as
    last-writer-wins.

    Parameters
    ----------
    db_path : namdrunner.sim_management.types.FilePath
        Path to the SQLite database file. The file and its parent directory are created
        if they do not exist.

    Raises
    ------
    RegistryError
        If the database cannot be opened, has an unsupported schema version, or
        cannot be migrated.
    """

    def __init__(self, db_path: FilePath):
        self._db_path = pathlib.Path(db_path)
        self._lock = Lock()
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise RegistryError(
                f"Could not create directory for registry {self._db_path}: {e}"
            ) from e

        with self._lock:
            self._initialise()

    @property
    def db_path(self) -> pathlib.Path:
        """(Read-only) The path to the database file."""
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        try:
            con = sqlite3.connect(self._db_path)
            con.execute("PRAGMA journal_mode=WAL;")
            con.execute("PRAGMA synchronous=NORMAL;")
        except sqlite3.Error as e:
            raise RegistryError(f"Could not open registry {self._db_path}: {e}") from e
        return con

    def _initialise(self) -> None:
        con = self._connect()
        try:
            version = self._read_version(con)
            if version is None:
                with con:
                    self._create_schema(con)
                logger.info("Created job registry at %s.", self._db_path)
            elif version > SCHEMA_VERSION:
                raise RegistryError(
                    f"Registry {self._db_path} has schema version {version}, which is "
                    f"newer than the supported version {SCHEMA_VERSION}."
                )
            elif version < MIN_SUPPORTED_VERSION:
                raise RegistryError(
                    f"Registry {self._db_path} has schema version {version}, which is "
                    "too old to migrate."
                )
            elif version < SCHEMA_VERSION:
                with con:
                    # DDL does not open a transaction implicitly.
                    con.execute("BEGIN")
                    self._migrate(con, version)
                logger.info(
                    "Migrated job registry %s from schema version %s to %s.",
                    self._db_path,
                    version,
                    SCHEMA_VERSION,
                )
        except sqlite3.Error as e:
            raise RegistryError(f"Could not initialise registry {self._db_path}: {e}") from e
        finally:
            con.close()

    @staticmethod
    def _read_version(con: sqlite3.Connection) -> Optional[int]:
        """The schema version of the database, 0 for the legacy document-store layout, or
        ``None`` for an empty database."""

        tables = {
            row[0]
            for row in con.execute("SELECT name FROM sqlite_master WHERE type='table'")
        }
        if "metadata" in tables:
            row = con.execute(
                "SELECT value FROM metadata WHERE key='schema_version'"
            ).fetchone()
            if row is None:
                raise RegistryError("Registry metadata has no schema version.")
            try:
                return int(row[0])
            except ValueError:
                raise RegistryError(f"Unreadable schema version '{row[0]}'.") from None
        elif "jobs" in tables:
            return 0
        else:
            return None

    @staticmethod
    def _create_schema(con: sqlite3.Connection) -> None:
        con.execute(_CREATE_JOBS)
        con.execute(_CREATE_METADATA)
        for statement in _CREATE_INDEXES:
            con.execute(statement)
        con.execute(
            "INSERT OR REPLACE INTO metadata(key, value) VALUES('schema_version', ?)",
            (str(SCHEMA_VERSION),),
        )

    def _migrate(self, con: sqlite3.Connection, version: int) -> None:
        if version == 0:
            legacy = con.execute("SELECT job_id, data FROM jobs").fetchall()
            jobs = []
            for job_id, data in legacy:
                try:
                    jobs.append(Job.from_metadata(_upgrade_legacy_record(json.loads(data))))
                except (ValueError, TypeError) as e:
                    raise RegistryError(
                        f"Could not migrate legacy record for job '{job_id}': {e}"
                    ) from e

            con.execute("DROP TABLE jobs")
            self._create_schema(con)
            con.executemany(_UPSERT, [self._row(job) for job in jobs])

        con.execute(
            "INSERT OR REPLACE INTO metadata(key, value) VALUES('migrated_at', ?)",
            (utc_now(),),
        )

    @staticmethod
    def _row(job: Job) -> tuple:
        return (
            str(job.job_id),
            job.job_name,
            job.status.value,
            job.scheduler_job_id,
            job.created_at,
            job.updated_at,
            json.dumps(job.to_metadata()),
        )

    @staticmethod
    def _to_job(job_id: str, data: str) -> Job:
        try:
            return Job.from_metadata(json.loads(data))
        except (ValueError, TypeError) as e:
            raise RegistryError(f"Corrupt registry record for job '{job_id}': {e}") from e

    def _query(self, sql: str, params: tuple = ()) -> list[tuple]:
        con = self._connect()
        try:
            return con.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise RegistryError(f"Could not read registry {self._db_path}: {e}") from e
        finally:
            con.close()

    def _write(self, sql: str, rows: list[tuple]) -> int:
        with self._lock:
            con = self._connect()
            try:
                with con:
                    cursor = con.executemany(sql, rows)
                return cursor.rowcount
            except sqlite3.IntegrityError as e:
                raise RegistryError(f"Registry constraint violated: {e}") from e
            except sqlite3.Error as e:
                raise RegistryError(f"Could not write registry {self._db_path}: {e}") from e
            finally:
                con.close()

    def get(self, job_id: Union[str, JobId]) -> Optional[Job]:
        """Get the job with the given ID, or ``None`` if there is no such job."""

        rows = self._query(
            "SELECT job_id, data FROM jobs WHERE job_id = ?", (str(job_id),)
        )
        return self._to_job(*rows[0]) if rows else None

    def require(self, job_id: Union[str, JobId]) -> Job:
        """Get the job with the given ID.

        Raises
        ------
        UnknownJobIdError
            If there is no job with the given ID.
        """

        job = self.get(job_id)
        if job is None:
            raise UnknownJobIdError(
                f"Could not find job with ID '{job_id}' in the registry.",
                unknown_ids=[job_id],
            )
        return job

    def list(
        self,
        statuses: Optional[Collection[JobStatus]] = None,
        with_scheduler_id: Optional[bool] = None,
    ) -> list[Job]:
        """
        Get jobs from the registry, most recently created first.

        Parameters
        ----------
        statuses : Collection[JobStatus], optional
            (Default: None) Only return jobs with one of these statuses. If ``None``
            then jobs of any status are returned.
        with_scheduler_id : bool, optional
            (Default: None) If ``True``, only return jobs that have been given a
            scheduler job ID; if ``False``, only those that have not. If ``None`` then
            do not filter on the scheduler job ID.

        Returns
        -------
        list[Job]
            The matching jobs.
        """

        clauses = []
        params = []
        if statuses is not None:
            statuses = [JobStatus(status).value for status in statuses]
            if not statuses:
                return []
            clauses.append(f"status IN ({','.join('?' * len(statuses))})")
            params.extend(statuses)

        if with_scheduler_id is True:
            clauses.append("scheduler_job_id IS NOT NULL")
        elif with_scheduler_id is False:
            clauses.append("scheduler_job_id IS NULL")

        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._query(
            f"SELECT job_id, data FROM jobs{where} ORDER BY created_at DESC, job_id DESC",
            tuple(params),
        )
        return [self._to_job(*row) for row in rows]

    def find_by_scheduler_id(self, scheduler_job_id: str) -> Optional[Job]:
        """Get the job that was given `scheduler_job_id` by the scheduler, if any."""

        rows = self._query(
            "SELECT job_id, data FROM jobs WHERE scheduler_job_id = ?",
            (scheduler_job_id,),
        )
        return self._to_job(*rows[0]) if rows else None

    def scheduler_job_ids(self) -> set[str]:
        """The scheduler job IDs of every job in the registry."""

        rows = self._query(
            "SELECT scheduler_job_id FROM jobs WHERE scheduler_job_id IS NOT NULL"
        )
        return {row[0] for row in rows}

    def max_job_number(self) -> int:
        """The highest number used in a job ID, or 0 if the registry is empty."""

        numbers = [0]
        for (job_id,) in self._query("SELECT job_id FROM jobs"):
            match = re.fullmatch(r"job_([0-9]+)", job_id)
            if match:
                numbers.append(int(match.group(1)))
        return max(numbers)

    def count(self) -> int:
        return self._query("SELECT COUNT(*) FROM jobs")[0][0]

    def insert(self, job: Job) -> None:
        """Add a new job.

        Raises
        ------
        RegistryError
            If a job with the same ID already exists, or the write failed.
        """

        self._write(
            "INSERT INTO jobs(job_id, job_name, status, scheduler_job_id, created_at, "
            "updated_at, data) VALUES(?,?,?,?,?,?,?)",
            [self._row(job)],
        )

    def upsert(self, job: Job) -> None:
        """Insert a job, or replace the stored record of a job with the same ID."""

        self._write(_UPSERT, [self._row(job)])

    def upsert_many(self, jobs: Iterable[Job]) -> int:
        """Insert or replace several jobs in a single transaction: either every record
        is written or none is.

        Returns
        -------
        int
            The number of jobs written.
        """

        rows = [self._row(job) for job in jobs]
        if not rows:
            return 0
        self._write(_UPSERT, rows)
        return len(rows)

    def delete(self, job_id: Union[str, JobId]) -> bool:
        """Remove a job. Returns whether there was a job to remove."""

        return self._write("DELETE FROM jobs WHERE job_id = ?", [(str(job_id),)]) > 0

    def get_meta(self, key: str) -> Optional[str]:
        rows = self._query("SELECT value FROM metadata WHERE key = ?", (key,))
        return rows[0][0] if rows else None

    def set_meta(self, key: str, value: str) -> None:
        if key == "schema_version":
            raise InvalidInput("The schema version cannot be set directly.")
        self._write(
            "INSERT OR REPLACE INTO metadata(key, value) VALUES(?, ?)", [(key, value)]
        )


_LEGACY_KEYS = {
    "jobId": "job_id",
    "jobName": "job_name",
    "slurmJobId": "scheduler_job_id",
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "submittedAt": "submitted_at",
    "completedAt": "completed_at",
    "namdConfig": "namd_config",
    "slurmConfig": "slurm_config",
    "inputFiles": "input_files",
    "outputFiles": "output_files",
    "errorInfo": "error_info",
}

_LEGACY_CONFIG_KEYS = {"dcdFreq": "dcd_freq", "restartFreq": "restart_freq"}


def _upgrade_legacy_record(data: dict[str, Any]) -> dict[str, Any]:
    """Convert a record of the legacy document-store layout to the current structure."""

    if not isinstance(data, dict):
        raise InvalidInput(f"Expected a mapping, got {type(data)}.")

    record = {_LEGACY_KEYS.get(key, key): value for key, value in data.items()}
    record["status"] = str(record.get("status", "")).upper()
    record.setdefault(
        "directories",
        {
            "project_dir": record.pop("projectDir", None) or "",
            "scratch_dir": record.pop("scratchDir", None) or "",
        },
    )
    record["config"] = {
        name: (
            {_LEGACY_CONFIG_KEYS.get(key, key): value for key, value in section.items()}
            if isinstance(section, dict)
            else None
        )
        for name, section in (
            ("namd", record.pop("namd_config", None)),
            ("slurm", record.pop("slurm_config", None)),
        )
    }

    error = record.get("error_info")
    if isinstance(error, str):
        record["error_info"] = {
            "kind": "LegacyError",
            "message": error,
            "failed_at": record.get("updated_at") or record.get("created_at"),
        }

    for key in ("input_files", "output_files"):
        files = record.get(key)
        if isinstance(files, list):
            record[key] = [_legacy_file(item, key) for item in files]

    return record


def _legacy_file(item: Any, key: str) -> Any:
    if not isinstance(item, dict):
        return item
    path = item.get("path") or item.get("remote_name") or item.get("name")
    if key == "input_files" and path and "/" not in path:
        path = f"input_files/{path}"
    return {"path": path, "size": item.get("size")}
