import unittest

from namdrunner.sim_management.errors import InvalidInput
from namdrunner.sim_management.paths import (
    MAX_NAME_LENGTH,
    RemoteLayout,
    is_job_directory,
    job_base_directory,
    job_directory,
    project_directory,
    sanitize_job_name,
    sanitize_username,
    scratch_directory,
    validate_job_id,
    validate_relative_path,
)
from tests.utilities.utilities import exact


class TestSanitizeJobName(unittest.TestCase):
    def test_strips_surrounding_whitespace(self):
        self.assertEqual("my job", sanitize_job_name("  my job \t"))

    def test_accepts_maximum_length(self):
        name = "a" * MAX_NAME_LENGTH
        self.assertEqual(name, sanitize_job_name(name))

    def test_rejects_empty_names(self):
        for name in ["", "   ", "\t"]:
            with self.subTest(name=name):
                with self.assertRaisesRegex(InvalidInput, exact("Job name cannot be empty.")):
                    sanitize_job_name(name)

    def test_rejects_names_that_are_too_long(self):
        with self.assertRaisesRegex(
            InvalidInput,
            exact(f"Job name exceeds maximum length of {MAX_NAME_LENGTH} characters."),
        ):
            sanitize_job_name("a" * (MAX_NAME_LENGTH + 1))

    def test_rejects_path_traversal(self):
        for name in ["../etc", "a/b", "a\\b", "x..y"]:
            with self.subTest(name=name):
                with self.assertRaises(InvalidInput):
                    sanitize_job_name(name)

    def test_rejects_control_characters(self):
        for name in ["bad\nname", "bad\x00name", "bad\x7fname"]:
            with self.subTest(name=name):
                with self.assertRaisesRegex(
                    InvalidInput, exact("Job name contains control characters.")
                ):
                    sanitize_job_name(name)

    def test_rejects_non_strings(self):
        for name in [None, 1, ["name"]]:
            with self.subTest(name=name):
                with self.assertRaises(InvalidInput):
                    sanitize_job_name(name)


class TestValidateJobId(unittest.TestCase):
    def test_accepts_well_formed_ids(self):
        for job_id in ["job_001", "job_999", "job_123456"]:
            with self.subTest(job_id=job_id):
                self.assertEqual(job_id, validate_job_id(job_id))

    def test_rejects_malformed_ids(self):
        for job_id in ["job_01", "job_1234567", "JOB_001", "job_001 ", "job_abc", "001", ""]:
            with self.subTest(job_id=job_id):
                with self.assertRaisesRegex(
                    InvalidInput,
                    exact(
                        "Expected 'job_id' to consist of 'job_' followed by 3 to 6 "
                        f"digits, but received '{job_id}' instead."
                    ),
                ):
                    validate_job_id(job_id)

    def test_invalid_input_is_a_value_error(self):
        with self.assertRaises(ValueError):
            validate_job_id("nope")


class TestSanitizeUsername(unittest.TestCase):
    def test_accepts_valid_usernames(self):
        for username in ["jdoe", "j.doe", "j-doe_2"]:
            with self.subTest(username=username):
                self.assertEqual(username, sanitize_username(username))

    def test_rejects_invalid_usernames(self):
        for username in ["", "j doe", "jdoe;rm", "j/doe", "..", "j..doe", "ü", "a" * 65]:
            with self.subTest(username=username):
                with self.assertRaises(InvalidInput):
                    sanitize_username(username)


class TestValidateRelativePath(unittest.TestCase):
    def test_normalises_dot_segments(self):
        self.assertEqual("input_files/a.pdb", validate_relative_path("./input_files/a.pdb"))
        self.assertEqual("a.pdb", validate_relative_path("a.pdb"))

    def test_rejects_escaping_paths(self):
        for path in ["/etc/passwd", "../a.pdb", "input_files/../../a", "a\\b", "", ".", "a\nb"]:
            with self.subTest(path=path):
                with self.assertRaises(InvalidInput):
                    validate_relative_path(path)


class TestRemoteLayout(unittest.TestCase):
    def test_rejects_relative_roots(self):
        with self.assertRaisesRegex(
            InvalidInput,
            exact("Expected 'project_root' to be an absolute path, but received 'projects'."),
        ):
            RemoteLayout(project_root="projects")

    def test_rejects_traversal(self):
        for kwargs in [{"scratch_root": "/scratch/../etc"}, {"jobs_dir": ".."}, {"jobs_dir": "a/b"}]:
            with self.subTest(kwargs=kwargs):
                with self.assertRaises(InvalidInput):
                    RemoteLayout(**kwargs)


class TestJobDirectories(unittest.TestCase):
    def test_default_layout(self):
        self.assertEqual(
            "/projects/jdoe/namdrunner_jobs/job_001", project_directory("jdoe", "job_001")
        )
        self.assertEqual(
            "/scratch/alpine/jdoe/namdrunner_jobs/job_001",
            scratch_directory("jdoe", "job_001"),
        )
        self.assertEqual(
            "/scratch/alpine/jdoe/namdrunner_jobs/job_001",
            job_directory("jdoe", "job_001", is_scratch=True),
        )

    def test_custom_layout(self):
        layout = RemoteLayout("/home", "/tmp/scratch", "jobs")
        self.assertEqual("/home/jdoe/jobs", job_base_directory("jdoe", layout=layout))
        self.assertEqual(
            "/tmp/scratch/jdoe/jobs/job_042",
            scratch_directory("jdoe", "job_042", layout=layout),
        )

    def test_invalid_components_are_rejected(self):
        with self.assertRaises(InvalidInput):
            project_directory("j doe", "job_001")
        with self.assertRaises(InvalidInput):
            project_directory("jdoe", "../job_001")

    def test_is_job_directory(self):
        self.assertTrue(is_job_directory("/projects/jdoe/namdrunner_jobs/job_001", "jdoe"))
        self.assertTrue(
            is_job_directory("/scratch/alpine/jdoe/namdrunner_jobs/job_001", "jdoe")
        )
        for path in [
            "/projects/jdoe/namdrunner_jobs",
            "/projects/jdoe",
            "/",
            "",
            "/projects/other/namdrunner_jobs/job_001",
            "/projects/jdoe/namdrunner_jobs/../job_001",
            "projects/jdoe/namdrunner_jobs/job_001",
        ]:
            with self.subTest(path=path):
                self.assertFalse(is_job_directory(path, "jdoe"))


if __name__ == "__main__":
    unittest.main()
