import json
import sqlite3
import threading

from namdrunner.sim_management.errors import (
    InvalidInput,
    RegistryError,
    UnknownJobIdError,
)
from namdrunner.sim_management.jobs import ErrorInfo, JobId, JobStatus
from namdrunner.sim_management.registry import (
    LAST_SYNC_KEY,
    SCHEMA_VERSION,
    JobRegistry,
)
from tests.utilities.utilities import TempDirTestCase, exact, make_job


class TestJobRegistry(TempDirTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.db_path = self.tmp_dir / "state" / "registry.db"
        self.registry = JobRegistry(self.db_path)

    def test_new_database_is_created(self):
        self.assertTrue(self.db_path.exists())
        self.assertEqual(str(SCHEMA_VERSION), self.registry.get_meta("schema_version"))
        self.assertEqual(0, self.registry.count())
        self.assertEqual(0, self.registry.max_job_number())

    def test_insert_and_get(self):
        job = make_job()
        self.registry.insert(job)
        self.assertEqual(job, self.registry.get("job_001"))
        self.assertEqual(job, self.registry.require(JobId("job_001")))
        self.assertIsNone(self.registry.get("job_002"))

    def test_insert_duplicate_raises(self):
        self.registry.insert(make_job())
        with self.assertRaises(RegistryError):
            self.registry.insert(make_job())

    def test_require_unknown_job(self):
        with self.assertRaisesRegex(
            UnknownJobIdError, exact("Could not find job with ID 'job_009' in the registry.")
        ) as cm:
            self.registry.require("job_009")
        self.assertEqual(["job_009"], cm.exception.unknown_ids)

    def test_records_survive_reopening(self):
        job = make_job(
            error_info=ErrorInfo("SessionError", "lost", failed_at="2026-01-01T00:00:00+00:00")
        )
        self.registry.insert(job)
        self.assertEqual(job, JobRegistry(self.db_path).get("job_001"))

    def test_upsert_replaces(self):
        job = make_job()
        self.registry.insert(job)
        job.assign_scheduler_job_id("77")
        job.transition_to(JobStatus.PENDING)
        self.registry.upsert(job)

        stored = self.registry.require("job_001")
        self.assertEqual(JobStatus.PENDING, stored.status)
        self.assertEqual("77", stored.scheduler_job_id)
        self.assertEqual(1, self.registry.count())

    def test_list_filters_and_order(self):
        self.registry.upsert_many(
            [
                make_job("job_001", created_at="2026-01-01T00:00:00+00:00"),
                make_job(
                    "job_002",
                    JobStatus.PENDING,
                    scheduler_job_id="10",
                    created_at="2026-01-02T00:00:00+00:00",
                ),
                make_job(
                    "job_003",
                    JobStatus.RUNNING,
                    scheduler_job_id="11",
                    created_at="2026-01-03T00:00:00+00:00",
                ),
            ]
        )

        self.assertEqual(
            ["job_003", "job_002", "job_001"],
            [str(job.job_id) for job in self.registry.list()],
        )
        self.assertEqual(
            ["job_002"],
            [str(job.job_id) for job in self.registry.list(statuses=[JobStatus.PENDING])],
        )
        self.assertEqual(
            ["job_001"],
            [str(job.job_id) for job in self.registry.list(with_scheduler_id=False)],
        )
        self.assertEqual([], self.registry.list(statuses=[]))
        self.assertEqual({"10", "11"}, self.registry.scheduler_job_ids())
        self.assertEqual(JobId("job_003"), self.registry.find_by_scheduler_id("11").job_id)
        self.assertIsNone(self.registry.find_by_scheduler_id("12"))
        self.assertEqual(3, self.registry.max_job_number())

    def test_upsert_many_is_atomic(self):
        self.registry.insert(make_job("job_001"))
        with self.assertRaises(RegistryError):
            # The second insert of job_001 violates the primary key.
            self.registry._write(
                "INSERT INTO jobs(job_id, job_name, status, scheduler_job_id, created_at, "
                "updated_at, data) VALUES(?,?,?,?,?,?,?)",
                [self.registry._row(make_job("job_002")), self.registry._row(make_job("job_001"))],
            )
        self.assertIsNone(self.registry.get("job_002"))

    def test_upsert_many_with_nothing_to_write(self):
        self.assertEqual(0, self.registry.upsert_many([]))

    def test_delete(self):
        self.registry.insert(make_job())
        self.assertTrue(self.registry.delete("job_001"))
        self.assertFalse(self.registry.delete("job_001"))
        self.assertEqual(0, self.registry.count())

    def test_metadata(self):
        self.assertIsNone(self.registry.get_meta(LAST_SYNC_KEY))
        self.registry.set_meta(LAST_SYNC_KEY, "2026-01-01T00:00:00+00:00")
        self.assertEqual("2026-01-01T00:00:00+00:00", self.registry.get_meta(LAST_SYNC_KEY))
        with self.assertRaises(InvalidInput):
            self.registry.set_meta("schema_version", "99")

    def test_concurrent_writes(self):
        jobs = [make_job(f"job_{n:03d}") for n in range(1, 21)]

        def write(job):
            self.registry.upsert(job)

        threads = [threading.Thread(target=write, args=(job,)) for job in jobs]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(20, self.registry.count())


class TestRegistryVersions(TempDirTestCase):
    def _make_database(self, statements, rows=()):
        db_path = self.tmp_dir / "registry.db"
        con = sqlite3.connect(db_path)
        with con:
            for statement in statements:
                con.execute(statement)
            con.executemany("INSERT INTO jobs(job_id, data) VALUES(?, ?)", rows)
        con.close()
        return db_path

    def test_newer_schema_is_refused(self):
        db_path = self._make_database(
            [
                "CREATE TABLE jobs(job_id TEXT PRIMARY KEY, data TEXT)",
                "CREATE TABLE metadata(key TEXT PRIMARY KEY, value TEXT)",
                f"INSERT INTO metadata(key, value) VALUES('schema_version', '{SCHEMA_VERSION + 1}')",
            ]
        )
        with self.assertRaisesRegex(RegistryError, "newer than the supported version"):
            JobRegistry(db_path)

    def test_legacy_database_is_migrated(self):
        legacy = {
            "jobId": "job_004",
            "jobName": "legacy run",
            "status": "completed",
            "slurmJobId": "9001",
            "createdAt": "2025-06-01T10:00:00+00:00",
            "updatedAt": "2025-06-02T10:00:00+00:00",
            "completedAt": "2025-06-02T10:00:00+00:00",
            "projectDir": "/projects/jdoe/namdrunner_jobs/job_004",
            "scratchDir": "/scratch/alpine/jdoe/namdrunner_jobs/job_004",
            "namdConfig": {"steps": 100, "temperature": 300, "timestep": 2, "dcdFreq": 10},
            "slurmConfig": {"cores": 2, "memory": "8GB", "walltime": "01:00:00"},
            "inputFiles": [{"name": "a.pdb", "size": 5}],
            "outputFiles": [{"path": "outputs/output.dcd", "size": 7}],
            "errorInfo": "copy failed",
        }
        db_path = self._make_database(
            ["CREATE TABLE jobs(job_id TEXT PRIMARY KEY, data TEXT)"],
            [("job_004", json.dumps(legacy))],
        )

        registry = JobRegistry(db_path)
        self.assertEqual(str(SCHEMA_VERSION), registry.get_meta("schema_version"))
        self.assertIsNotNone(registry.get_meta("migrated_at"))

        job = registry.require("job_004")
        self.assertEqual("legacy run", job.job_name)
        self.assertEqual(JobStatus.COMPLETED, job.status)
        self.assertEqual("9001", job.scheduler_job_id)
        self.assertEqual(10, job.namd_config.dcd_freq)
        self.assertEqual("8GB", job.slurm_config.memory)
        self.assertEqual(["input_files/a.pdb"], [f.path for f in job.input_files])
        self.assertEqual(["outputs/output.dcd"], [f.path for f in job.output_files])
        self.assertEqual(
            ErrorInfo("LegacyError", "copy failed", failed_at="2025-06-02T10:00:00+00:00"),
            job.error_info,
        )
        self.assertEqual({"9001"}, registry.scheduler_job_ids())
        self.assertEqual(4, registry.max_job_number())

    def test_corrupt_legacy_record_is_not_half_migrated(self):
        db_path = self._make_database(
            ["CREATE TABLE jobs(job_id TEXT PRIMARY KEY, data TEXT)"],
            [("job_001", "{not json")],
        )
        with self.assertRaises(RegistryError):
            JobRegistry(db_path)

        con = sqlite3.connect(db_path)
        try:
            tables = {row[0] for row in con.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        finally:
            con.close()
        self.assertEqual({"jobs"}, tables)
