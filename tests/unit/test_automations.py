import json
import threading
import time
import unittest
from unittest.mock import MagicMock

from namdrunner.sim_management.automations import (
    ChainOptions,
    CreateJobParams,
    JobAutomations,
    ProgressChannel,
    ProgressEvent,
    ProgressReporter,
    RemoteDirectoryLease,
)
from namdrunner.sim_management.errors import (
    ConnectionLost,
    InvalidInput,
    InvalidJobStatusError,
    SchedulerProtocolError,
    SessionError,
    TransferError,
    UnknownJobIdError,
)
from namdrunner.sim_management.jobs import Job, JobId, JobStatus
from namdrunner.sim_management.registry import JobRegistry
from namdrunner.sim_management.session import Credentials
from tests.unit.fakes import (
    FakeCluster,
    FakeSession,
    OverlapCheckingSession,
    connected_session,
)
from tests.utilities.utilities import TempDirTestCase, make_job

NAMD_PARAMS = {"steps": 1000, "temperature": 300.0, "timestep": 2.0}
SLURM_PARAMS = {"cores": 4, "memory": "8GB", "walltime": "01:00:00"}
PROJECT_DIR = "/projects/jdoe/namdrunner_jobs/job_001"
SCRATCH_DIR = "/scratch/alpine/jdoe/namdrunner_jobs/job_001"


class AutomationTestCase(TempDirTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.cluster = FakeCluster()
        self.session = connected_session(self.cluster)
        self.registry = JobRegistry(self.tmp_dir / "registry.db")
        self.automations = self.make_automations()
        self.inputs = self.make_input_files()

    def make_automations(self, **options) -> JobAutomations:
        options = {"scheduler_prelude": None, "log_cache_dir": self.tmp_dir / "logs"} | options
        return JobAutomations(self.session, self.registry, ChainOptions(**options))

    def params(self, job_name: str = "demo", input_files=None) -> CreateJobParams:
        return CreateJobParams(
            job_name,
            NAMD_PARAMS,
            SLURM_PARAMS,
            self.inputs if input_files is None else input_files,
        )

    def create_and_submit(self, job_name: str = "demo") -> Job:
        job = self.automations.create(self.params(job_name))
        return self.automations.submit(job.job_id)

    def remote_metadata(self, project_dir: str = PROJECT_DIR) -> dict:
        return json.loads(self.cluster.read_file(f"{project_dir}/job_info.json"))


class TestCreateJobChain(AutomationTestCase):
    def test_creates_job_directory_and_record(self):
        progress = ProgressReporter()
        job = self.automations.create(self.params(), progress)

        self.assertEqual(JobId("job_001"), job.job_id)
        self.assertEqual(JobStatus.CREATED, job.status)
        self.assertEqual(PROJECT_DIR, job.project_dir)
        self.assertEqual(SCRATCH_DIR, job.scratch_dir)
        self.assertEqual(
            ["input_files/alanin.pdb", "input_files/alanin.psf", "input_files/par_all27.prm"],
            [f.path for f in job.input_files],
        )
        self.assertEqual(["config.namd", "job.sbatch"], [f.path for f in job.generated_files])
        self.assertEqual(job, self.registry.require("job_001"))

        for name in ["alanin.pdb", "alanin.psf", "par_all27.prm"]:
            self.assertEqual(
                self.inputs[0].parent.joinpath(name).read_bytes(),
                self.cluster.read_file(f"{PROJECT_DIR}/input_files/{name}"),
            )
        self.assertTrue(self.cluster.is_dir(f"{PROJECT_DIR}/outputs"))
        config = self.cluster.read_file(f"{PROJECT_DIR}/config.namd").decode()
        self.assertIn("input_files/alanin.psf", config)
        self.assertRegex(config, r"\nrun\s+1000\n")
        self.assertIn(
            b"#SBATCH --ntasks=4", self.cluster.read_file(f"{PROJECT_DIR}/job.sbatch")
        )
        self.assertEqual("CREATED", self.remote_metadata()["status"])

        self.assertEqual("Starting job creation.", progress.messages[0])
        self.assertEqual("Job job_001 ('demo') created.", progress.final_event.message)
        self.assertIsNone(progress.final_event.error_kind)
        self.assertEqual(
            list(range(1, len(progress.events) + 1)),
            [event.sequence for event in progress.events],
        )
        self.assertEqual(1, sum(event.final for event in progress.events))

    def test_job_ids_are_sequential(self):
        first = self.automations.create(self.params("one"))
        second = self.automations.create(self.params("two"))
        self.assertEqual(JobId("job_001"), first.job_id)
        self.assertEqual(JobId("job_002"), second.job_id)

    def test_ids_continue_from_registry(self):
        self.registry.insert(make_job("job_041"))
        job = self.make_automations().create(self.params())
        self.assertEqual(JobId("job_042"), job.job_id)

    def test_invalid_requests_have_no_remote_effect(self):
        missing_prm = [p for p in self.inputs if not p.name.endswith(".prm")]
        duplicate = self.make_input_files(["alanin.pdb"], subdir="other")
        for description, params in [
            ("missing .prm", self.params(input_files=missing_prm)),
            ("duplicate name", self.params(input_files=self.inputs + duplicate)),
            ("missing file", self.params(input_files=self.inputs + [self.tmp_dir / "nope.pdb"])),
            ("no files", self.params(input_files=[])),
            ("bad name", self.params(job_name="../escape")),
            ("bad namd", CreateJobParams("demo", NAMD_PARAMS | {"steps": 0}, SLURM_PARAMS, self.inputs)),
            ("bad slurm", CreateJobParams("demo", NAMD_PARAMS, {"cores": 500}, self.inputs)),
            ("partial namd", CreateJobParams("demo", {"steps": 10}, SLURM_PARAMS, self.inputs)),
            ("no cores", CreateJobParams("demo", NAMD_PARAMS, {"memory": "8GB"}, self.inputs)),
        ]:
            with self.subTest(description=description):
                progress = ProgressReporter()
                with self.assertRaises(InvalidInput):
                    self.automations.create(params, progress)
                self.assertEqual("InvalidInput", progress.final_event.error_kind)

        self.assertEqual([], self.cluster.commands)
        self.assertEqual(0, self.registry.count())

    def test_failure_after_directory_creation_rolls_back(self):
        self.cluster.inject_failure("put", OSError("Failure"), match="job.sbatch")
        progress = ProgressReporter()
        with self.assertRaises(TransferError):
            self.automations.create(self.params(), progress)

        self.assertFalse(self.cluster.exists(PROJECT_DIR))
        self.assertEqual(0, self.registry.count())
        self.assertEqual("TransferError", progress.final_event.error_kind)
        self.assertTrue(progress.final_event.final)

    def test_requires_connected_session(self):
        automations = JobAutomations(FakeSession(FakeCluster()), self.registry)
        with self.assertRaises(SessionError):
            automations.create(self.params())


class TestSubmitJobChain(AutomationTestCase):
    def test_submits_from_scratch(self):
        job = self.create_and_submit()

        self.assertEqual(JobStatus.PENDING, job.status)
        self.assertEqual("1000", job.scheduler_job_id)
        self.assertIsNotNone(job.submitted_at)
        self.assertGreaterEqual(job.submitted_at, job.created_at)
        self.assertEqual(job, self.registry.require("job_001"))
        self.assertEqual(
            self.cluster.read_file(f"{PROJECT_DIR}/input_files/alanin.pdb"),
            self.cluster.read_file(f"{SCRATCH_DIR}/input_files/alanin.pdb"),
        )
        self.assertEqual(SCRATCH_DIR, self.cluster.scheduler_jobs["1000"].workdir)
        self.assertEqual("PENDING", self.remote_metadata()["status"])
        self.assertEqual("1000", self.remote_metadata()["scheduler_job_id"])

    def test_only_created_jobs_can_be_submitted(self):
        job = self.create_and_submit()
        n_commands = len(self.cluster.commands)
        with self.assertRaises(InvalidJobStatusError) as cm:
            self.automations.submit(job.job_id)

        self.assertEqual(JobStatus.PENDING, cm.exception.status)
        self.assertEqual(n_commands, len(self.cluster.commands))

    def test_unknown_job(self):
        with self.assertRaises(UnknownJobIdError):
            self.automations.submit("job_123")

    def test_scheduler_rejection_keeps_job_created(self):
        job = self.automations.create(self.params())
        self.cluster.fail_command("sbatch", exit_code=1, stderr="Invalid qos specification")

        with self.assertRaises(SchedulerProtocolError):
            self.automations.submit(job.job_id)

        stored = self.registry.require(job.job_id)
        self.assertEqual(JobStatus.CREATED, stored.status)
        self.assertIsNone(stored.scheduler_job_id)
        self.assertEqual("SchedulerProtocolError", stored.error_info.kind)
        self.assertEqual("SUBMIT_FAILED", stored.error_info.code)

        copied = self.cluster.files_copied
        retried = self.automations.submit(job.job_id)
        self.assertEqual(JobStatus.PENDING, retried.status)
        self.assertIsNone(retried.error_info)
        self.assertEqual(copied, self.cluster.files_copied)

    def test_connection_lost_while_copying(self):
        job = self.automations.create(self.params())
        self.cluster.inject_failure("run", EOFError("Connection closed"), match="rsync")

        with self.assertRaises(ConnectionLost):
            self.automations.submit(job.job_id)

        stored = self.registry.require(job.job_id)
        self.assertEqual(JobStatus.CREATED, stored.status)
        self.assertEqual("ConnectionLost", stored.error_info.kind)
        self.assertEqual({}, self.cluster.scheduler_jobs)

    def test_metadata_refresh_failure_is_a_warning(self):
        job = self.automations.create(self.params())
        self.cluster.inject_failure("put", OSError("Failure"), match="job_info.json")
        progress = ProgressReporter()

        submitted = self.automations.submit(job.job_id, progress)
        self.assertEqual(JobStatus.PENDING, submitted.status)
        self.assertEqual(JobStatus.PENDING, self.registry.require(job.job_id).status)
        self.assertTrue(any(m.startswith("Warning:") for m in progress.messages))
        self.assertIsNone(progress.final_event.error_kind)


class TestSyncAndCompleteChains(AutomationTestCase):
    def test_job_lifecycle_to_completion(self):
        job = self.create_and_submit()
        sid = job.scheduler_job_id

        self.cluster.set_state(sid, "RUNNING")
        report = self.automations.sync()
        self.assertEqual(JobStatus.RUNNING, self.registry.require(job.job_id).status)
        self.assertEqual([], report.completed)

        self.cluster.finish_job(sid, outputs={"output.dcd": b"frames", "output.coor": b"xyz"})
        progress = ProgressReporter()
        report = self.automations.sync(progress)

        self.assertEqual([job.job_id], report.completed)
        self.assertEqual({}, report.finalize_failures)
        completed = self.registry.require(job.job_id)
        self.assertEqual(JobStatus.COMPLETED, completed.status)
        self.assertIsNotNone(completed.completed_at)
        self.assertEqual(
            ["outputs/output.coor", "outputs/output.dcd"],
            [f.path for f in completed.output_files],
        )
        self.assertEqual(b"frames", self.cluster.read_file(f"{PROJECT_DIR}/outputs/output.dcd"))
        self.assertEqual(
            b"NAMD finished\n",
            (self.tmp_dir / "logs" / "job_001" / f"demo_{sid}.out").read_bytes(),
        )

        metadata = self.remote_metadata()
        self.assertEqual("COMPLETED", metadata["status"])
        self.assertIn("outputs/output.dcd", metadata["output_files"])

        self.assertIn("Job job_001: RUNNING -> COMPLETED", progress.messages)
        self.assertEqual(1, sum(event.final for event in progress.events))

    def test_finalize_failure_does_not_fail_sync(self):
        job = self.create_and_submit()
        self.cluster.finish_job(job.scheduler_job_id, outputs={"output.dcd": b"frames"})
        self.cluster.inject_failure("listdir", OSError("Failure"), match="/outputs")

        report = self.automations.sync()
        self.assertIn("job_001", report.finalize_failures)
        stored = self.registry.require(job.job_id)
        self.assertEqual(JobStatus.COMPLETED, stored.status)
        self.assertEqual("FinalizeError", stored.error_info.kind)

        retried = self.automations.complete(job.job_id)
        self.assertIsNone(retried.error_info)
        self.assertEqual(["outputs/output.dcd"], [f.path for f in retried.output_files])

    def test_connection_loss_stops_finalizing(self):
        first = self.create_and_submit("first")
        second = self.create_and_submit("second")
        self.cluster.finish_job(first.scheduler_job_id)
        self.cluster.finish_job(second.scheduler_job_id)
        self.cluster.inject_failure("run", EOFError("Connection closed"), match="rsync")

        report = self.automations.sync()
        self.assertEqual({"job_001", "job_002"}, set(report.finalize_failures))
        self.assertFalse(self.session.is_active())
        for job in (first, second):
            self.assertEqual(JobStatus.COMPLETED, self.registry.require(job.job_id).status)

    def test_large_logs_are_not_downloaded(self):
        automations = self.make_automations(max_log_bytes=4)
        job = automations.create(self.params())
        job = automations.submit(job.job_id)
        self.cluster.finish_job(job.scheduler_job_id, log_content=b"0123456789")

        progress = ProgressReporter()
        automations.sync(progress)
        cache = self.tmp_dir / "logs" / "job_001"
        self.assertFalse((cache / f"demo_{job.scheduler_job_id}.out").exists())
        self.assertTrue((cache / f"demo_{job.scheduler_job_id}.err").exists())
        self.assertTrue(any("larger than 4 bytes" in m for m in progress.messages))

    def test_complete_requires_completed_status(self):
        job = self.automations.create(self.params())
        with self.assertRaises(InvalidJobStatusError):
            self.automations.complete(job.job_id)


class TestDeleteJobChain(AutomationTestCase):
    def test_delete_created_job(self):
        job = self.automations.create(self.params())
        self.assertEqual([], self.automations.delete(job.job_id))

        self.assertFalse(self.cluster.exists(PROJECT_DIR))
        self.assertIsNone(self.registry.get(job.job_id))
        self.assertFalse(any("scancel" in c for c in self.cluster.commands))

    def test_delete_cancels_active_job(self):
        job = self.create_and_submit()
        self.automations.delete(job.job_id)

        self.assertEqual("CANCELLED", self.cluster.scheduler_jobs[job.scheduler_job_id].state)
        self.assertFalse(self.cluster.exists(PROJECT_DIR))
        self.assertFalse(self.cluster.exists(SCRATCH_DIR))
        self.assertIsNone(self.registry.get(job.job_id))

    def test_failure_without_force_keeps_record(self):
        job = self.automations.create(self.params())
        self.cluster.fail_command("rm", exit_code=1, stderr="Device busy")

        with self.assertRaises(SessionError):
            self.automations.delete(job.job_id)

        stored = self.registry.require(job.job_id)
        self.assertEqual("SessionError", stored.error_info.kind)
        self.assertEqual("DELETE_FAILED", stored.error_info.code)

    def test_force_without_connection(self):
        job = self.automations.create(self.params())
        self.session.disconnect()

        progress = ProgressReporter()
        warnings = self.automations.delete(job.job_id, force=True, progress=progress)
        self.assertEqual(2, len(warnings))
        self.assertIsNone(self.registry.get(job.job_id))
        self.assertTrue(self.cluster.exists(PROJECT_DIR))
        self.assertEqual("Job deleted with 2 warnings.", progress.final_event.message)

    def test_refuses_to_delete_outside_job_directories(self):
        job = make_job("job_001")
        job.project_dir = "/projects/jdoe"
        self.registry.insert(job)
        self.cluster.make_dirs("/projects/jdoe")

        with self.assertRaises(InvalidInput):
            self.automations.delete("job_001")
        self.assertTrue(self.cluster.exists("/projects/jdoe"))
        self.assertIsNotNone(self.registry.get("job_001"))


class TestProgress(AutomationTestCase):
    def test_listener_receives_every_event_in_order(self):
        received = []
        self.automations.create(self.params(), progress=received.append)

        self.assertTrue(all(isinstance(event, ProgressEvent) for event in received))
        self.assertEqual(list(range(1, len(received) + 1)), [e.sequence for e in received])
        self.assertTrue(received and received[-1].final)

    def test_failing_listener_does_not_fail_chain(self):
        listener = MagicMock(side_effect=RuntimeError("UI closed"))
        with self.assertLogs("namdrunner.sim_management.automations", level="ERROR"):
            job = self.automations.create(self.params(), progress=listener)
        self.assertEqual(JobStatus.CREATED, job.status)
        self.assertTrue(listener.called)

    def test_full_channel_drops_events(self):
        started = threading.Event()
        release = threading.Event()
        received = []

        def slow_listener(event):
            started.set()
            release.wait(5)
            received.append(event.message)

        channel = ProgressChannel(slow_listener, maxsize=1)
        self.assertTrue(channel.publish(ProgressEvent(1, "one")))
        started.wait(5)
        self.assertTrue(channel.publish(ProgressEvent(2, "two")))
        with self.assertLogs("namdrunner.sim_management.automations", level="WARNING"):
            self.assertFalse(channel.publish(ProgressEvent(3, "three")))

        release.set()
        channel.close(timeout=5)
        self.assertEqual(["one", "two"], received)
        self.assertEqual(1, channel.dropped)

    def test_slow_listener_does_not_hold_up_chain(self):
        release = threading.Event()
        received = []

        def blocking_listener(event):
            release.wait(10)
            received.append(event)

        automations = JobAutomations(
            self.session,
            self.registry,
            ChainOptions(scheduler_prelude=None, log_cache_dir=self.tmp_dir / "logs"),
            listener_timeout=0.1,
        )
        start = time.monotonic()
        with self.assertLogs("namdrunner.sim_management.automations", level="WARNING"):
            job = automations.create(self.params(), progress=blocking_listener)

        self.assertLess(time.monotonic() - start, 5)
        self.assertEqual(job, self.registry.require("job_001"))

        release.set()
        deadline = time.monotonic() + 5
        while not (received and received[-1].final) and time.monotonic() < deadline:
            time.sleep(0.01)
        self.assertTrue(received and received[-1].final)

    def test_child_reporter_forwards_non_final_messages(self):
        parent = ProgressReporter()
        child = parent.child()
        child.report("working")
        child.succeed("done")

        self.assertEqual(("working", "done"), parent.messages)
        self.assertIsNone(parent.final_event)
        self.assertTrue(child.final_event.final)


class TestConcurrentChains(AutomationTestCase):
    def test_chains_share_one_session_without_overlapping_calls(self):
        session = OverlapCheckingSession(self.cluster)
        session.connect(Credentials("cluster.example.org", "jdoe", password="secret"))
        automations = JobAutomations(
            session,
            self.registry,
            ChainOptions(scheduler_prelude=None, log_cache_dir=self.tmp_dir / "logs"),
        )
        jobs = dict()
        errors = []

        def create_and_submit(job_name):
            try:
                job = automations.create(self.params(job_name))
                jobs[job_name] = automations.submit(job.job_id)
            except Exception as e:
                errors.append(e)

        threads = [
            threading.Thread(target=create_and_submit, args=(name,))
            for name in ["first", "second"]
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(30)

        self.assertEqual([], errors)
        self.assertEqual(1, session.max_in_flight)
        self.assertEqual(
            {JobId("job_001"), JobId("job_002")}, {job.job_id for job in jobs.values()}
        )
        self.assertEqual(
            {"1000", "1001"}, {job.scheduler_job_id for job in jobs.values()}
        )
        for name, job in jobs.items():
            with self.subTest(job_name=name):
                stored = self.registry.require(job.job_id)
                self.assertEqual(name, stored.job_name)
                self.assertEqual(JobStatus.PENDING, stored.status)
                for directory in [job.project_dir, job.scratch_dir]:
                    for path in ["input_files/alanin.pdb", "config.namd", "job.sbatch"]:
                        self.assertTrue(self.cluster.exists(f"{directory}/{path}"))


class TestRemoteDirectoryLease(unittest.TestCase):
    def setUp(self) -> None:
        self.cluster = FakeCluster()
        self.session = connected_session(self.cluster)
        self.path = "/projects/jdoe/namdrunner_jobs/job_001"

    def test_uncommitted_directory_is_removed(self):
        with self.assertRaises(RuntimeError):
            with RemoteDirectoryLease(self.session, self.path):
                self.cluster.write_file(f"{self.path}/f.txt", b"x")
                raise RuntimeError("boom")

        self.assertFalse(self.cluster.exists(self.path))

    def test_committed_directory_is_kept(self):
        with RemoteDirectoryLease(self.session, self.path) as lease:
            lease.commit()

        self.assertTrue(lease.committed)
        self.assertTrue(self.cluster.is_dir(self.path))

    def test_cleanup_failure_does_not_hide_original_error(self):
        with self.assertLogs("namdrunner.sim_management.automations", level="ERROR"):
            with self.assertRaisesRegex(RuntimeError, "boom"):
                with RemoteDirectoryLease(self.session, self.path):
                    self.cluster.fail_command("rm")
                    raise RuntimeError("boom")


if __name__ == "__main__":
    unittest.main()
