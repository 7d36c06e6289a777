"""
Validation of user-facing identifiers and construction of remote paths.

Every string that ends up inside a remote path or a shell command passes through one of
the functions in this module first. All functions are pure: they either return a
validated (possibly normalised) value or raise ``InvalidInput``.

Remote job directories always have the form::

    <root>/<username>/<jobs_dir>/<job_id>

where ``<root>`` is the project or scratch root of the ``RemoteLayout`` in use.
"""

import dataclasses
import pathlib
import re

from namdrunner.sim_management.errors import InvalidInput

MAX_NAME_LENGTH = 64
MAX_USERNAME_LENGTH = 64

JOB_ID_PATTERN = re.compile(r"job_[0-9]{3,6}")
USERNAME_PATTERN = re.compile(r"[A-Za-z0-9_.\-]+")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")

INPUT_FILES_DIR = "input_files"
OUTPUTS_DIR = "outputs"
JOB_INFO_FILE = "job_info.json"
CONFIG_FILE = "config.namd"
BATCH_SCRIPT = "job.sbatch"


@dataclasses.dataclass(frozen=True)
class RemoteLayout:
    """Roots of the directory trees used for jobs on the cluster.

    Parameters
    ----------
    project_root : str, optional
        (Default: '/projects') The root of the persistent per-user project storage.
    scratch_root : str, optional
        (Default: '/scratch/alpine') The root of the per-user scratch storage where
        jobs actually run.
    jobs_dir : str, optional
        (Default: 'namdrunner_jobs') The name of the directory, below each user's
        project and scratch directories, that holds one directory per job.
    """

    project_root: str = "/projects"
    scratch_root: str = "/scratch/alpine"
    jobs_dir: str = "namdrunner_jobs"

    def __post_init__(self):
        for field in ("project_root", "scratch_root"):
            value = getattr(self, field)
            if not isinstance(value, str) or not value.startswith("/"):
                raise InvalidInput(
                    f"Expected '{field}' to be an absolute path, but received '{value}'."
                )
            if ".." in pathlib.PurePosixPath(value).parts:
                raise InvalidInput(f"'{field}' must not contain '..' segments.")

        if not isinstance(self.jobs_dir, str) or not USERNAME_PATTERN.fullmatch(
            self.jobs_dir
        ) or ".." in self.jobs_dir:
            raise InvalidInput(
                f"'jobs_dir' must be a plain directory name, but received '{self.jobs_dir}'."
            )


DEFAULT_LAYOUT = RemoteLayout()


def _check_str(value, name: str) -> str:
    if not isinstance(value, str):
        raise InvalidInput(
            f"Expected '{name}' to be of type {str}, but received {type(value)} instead."
        )
    return value


def sanitize_job_name(raw: str) -> str:
    """Validate a human-readable job name.

    Surrounding whitespace is stripped. The result must be non-empty, at most
    `MAX_NAME_LENGTH` characters long and free of control characters, path separators
    and ``..``.

    Parameters
    ----------
    raw : str
        The job name supplied by the user.

    Returns
    -------
    str
        The stripped job name.

    Raises
    ------
    InvalidInput
        If the name is not acceptable.
    """

    name = _check_str(raw, "job_name").strip()
    if not name:
        raise InvalidInput("Job name cannot be empty.")

    if len(name) > MAX_NAME_LENGTH:
        raise InvalidInput(
            f"Job name exceeds maximum length of {MAX_NAME_LENGTH} characters."
        )

    if _CONTROL_CHARS.search(name):
        raise InvalidInput("Job name contains control characters.")

    if "/" in name or "\\" in name or ".." in name:
        raise InvalidInput("Job name contains path separators or '..'.")

    return name


def validate_job_id(raw: str) -> str:
    """Check that a string is a well-formed job ID, i.e. ``job_`` followed by 3 to 6
    digits.

    Raises
    ------
    InvalidInput
        If the string does not match the job ID pattern exactly.
    """

    job_id = _check_str(raw, "job_id")
    if not JOB_ID_PATTERN.fullmatch(job_id):
        raise InvalidInput(
            "Expected 'job_id' to consist of 'job_' followed by 3 to 6 digits, "
            f"but received '{job_id}' instead."
        )
    return job_id


def sanitize_username(raw: str) -> str:
    """Validate a cluster username.

    Only ASCII letters, digits, ``_``, ``-`` and ``.`` are allowed, so that the name is
    safe to embed in paths and shell commands.

    Raises
    ------
    InvalidInput
        If the username is empty, too long, contains ``..`` or any other character.
    """

    username = _check_str(raw, "username")
    if not username:
        raise InvalidInput("Username cannot be empty.")

    if len(username) > MAX_USERNAME_LENGTH:
        raise InvalidInput(
            f"Username exceeds maximum length of {MAX_USERNAME_LENGTH} characters."
        )

    if ".." in username:
        raise InvalidInput("Username contains invalid path sequences.")

    if not USERNAME_PATTERN.fullmatch(username):
        raise InvalidInput(
            "Username contains invalid characters. Allowed characters are alphanumeric, "
            "dots, hyphens and underscores."
        )

    return username


def validate_relative_path(raw: str) -> str:
    """Validate a path that is relative to a job directory.

    Leading ``./`` segments are dropped. Absolute paths, ``..`` segments, backslashes
    and control characters are rejected.

    Returns
    -------
    str
        The normalised relative path, using forward slashes.

    Raises
    ------
    InvalidInput
        If the path is empty or could escape the job directory.
    """

    path = _check_str(raw, "path")
    if not path or not path.strip():
        raise InvalidInput("File path cannot be empty.")

    if _CONTROL_CHARS.search(path):
        raise InvalidInput(f"File path '{path!r}' contains control characters.")

    if "\\" in path:
        raise InvalidInput(f"File path '{path}' contains backslashes.")

    if path.startswith("/"):
        raise InvalidInput(f"File path '{path}' must be relative.")

    parts = [part for part in path.split("/") if part not in ("", ".")]
    if ".." in parts:
        raise InvalidInput(f"File path '{path}' contains '..' segments.")

    if not parts:
        raise InvalidInput("File path cannot be empty.")

    return "/".join(parts)


def job_base_directory(
    username: str, is_scratch: bool = False, layout: RemoteLayout = DEFAULT_LAYOUT
) -> str:
    """The directory holding all of a user's job directories on the project (or, if
    `is_scratch` is ``True``, scratch) storage."""

    user = sanitize_username(username)
    root = layout.scratch_root if is_scratch else layout.project_root
    return str(pathlib.PurePosixPath(root, user, layout.jobs_dir))


def job_directory(
    username: str,
    job_id: str,
    is_scratch: bool = False,
    layout: RemoteLayout = DEFAULT_LAYOUT,
) -> str:
    """Derive the remote directory for a job.

    Parameters
    ----------
    username : str
        The cluster username owning the job.
    job_id : str
        The ID of the job.
    is_scratch : bool, optional
        (Default: False) Whether to give the scratch directory (where the job runs)
        rather than the project directory (where inputs and results are kept).
    layout : RemoteLayout, optional
        (Default: ``DEFAULT_LAYOUT``) The remote directory roots.

    Returns
    -------
    str
        An absolute POSIX path.

    Raises
    ------
    InvalidInput
        If the username or job ID are not valid.

    Examples
    --------
    >>> job_directory("jdoe", "job_001")
    '/projects/jdoe/namdrunner_jobs/job_001'
    >>> job_directory("jdoe", "job_001", is_scratch=True)
    '/scratch/alpine/jdoe/namdrunner_jobs/job_001'
    """

    base = job_base_directory(username, is_scratch, layout)
    return str(pathlib.PurePosixPath(base, validate_job_id(str(job_id))))


def project_directory(
    username: str, job_id: str, layout: RemoteLayout = DEFAULT_LAYOUT
) -> str:
    return job_directory(username, job_id, is_scratch=False, layout=layout)


def scratch_directory(
    username: str, job_id: str, layout: RemoteLayout = DEFAULT_LAYOUT
) -> str:
    return job_directory(username, job_id, is_scratch=True, layout=layout)


def is_job_directory(
    path: str, username: str, layout: RemoteLayout = DEFAULT_LAYOUT
) -> bool:
    """Whether `path` is a directory strictly inside one of the user's job base
    directories. Used to guard recursive deletes on the cluster."""

    if not isinstance(path, str) or not path.startswith("/"):
        return False

    candidate = pathlib.PurePosixPath(path)
    if ".." in candidate.parts:
        return False

    try:
        bases = [
            pathlib.PurePosixPath(job_base_directory(username, scratch, layout))
            for scratch in (False, True)
        ]
    except InvalidInput:
        return False

    return any(
        candidate != base and base in candidate.parents for base in bases
    )
