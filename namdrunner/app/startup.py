import dataclasses
import json
import logging
import pathlib
from typing import Any, Optional

from namdrunner.sim_management import slurm
from namdrunner.sim_management.automations import ChainOptions
from namdrunner.sim_management.errors import InvalidInput
from namdrunner.sim_management.paths import DEFAULT_LAYOUT, RemoteLayout
from namdrunner.sim_management.session import Timeouts
from namdrunner.sim_management.types import FilePath

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


@dataclasses.dataclass
class Settings:
    """Application settings, as stored in a JSON settings file.

    Parameters
    ----------
    project_root, scratch_root, jobs_dir : str, optional
        The remote directory layout. See ``RemoteLayout``.
    scheduler_prelude : str, optional
        (Default: ``slurm.DEFAULT_PRELUDE``) Shell commands run before each scheduler
        command. ``None`` to run scheduler commands directly.
    namd_module : str, optional
        (Default: 'namd/3.0') The environment module loaded by batch scripts.
    namd_executable : str, optional
        (Default: 'namd3') The NAMD executable launched by batch scripts.
    command_timeout, quick_timeout, scheduler_timeout, transfer_timeout : float, optional
        Time limits, in seconds, for remote operations. See ``Timeouts``.
    max_log_bytes : int, optional
        (Default: 10 MiB) Scheduler log files larger than this are not downloaded.
    database_path : str, optional
        (Default: 'namdrunner.db') Path to the job registry database.
    log_cache_dir : str, optional
        (Default: 'logs') Local directory for cached scheduler log files. ``None`` to
        not download log files.
    log_level : str, optional
        (Default: 'INFO') The level for the application's log messages.
    """

    project_root: str = DEFAULT_LAYOUT.project_root
    scratch_root: str = DEFAULT_LAYOUT.scratch_root
    jobs_dir: str = DEFAULT_LAYOUT.jobs_dir
    scheduler_prelude: Optional[str] = slurm.DEFAULT_PRELUDE
    namd_module: str = "namd/3.0"
    namd_executable: str = "namd3"
    command_timeout: float = Timeouts.command
    quick_timeout: float = Timeouts.quick
    scheduler_timeout: float = Timeouts.scheduler
    transfer_timeout: float = Timeouts.transfer
    max_log_bytes: int = 10 * 1024 * 1024
    database_path: str = "namdrunner.db"
    log_cache_dir: Optional[str] = "logs"
    log_level: str = "INFO"

    def __post_init__(self):
        if not isinstance(logging.getLevelName(str(self.log_level).upper()), int):
            raise InvalidInput(f"Unknown log level '{self.log_level}'.")

        for name in (
            "command_timeout",
            "quick_timeout",
            "scheduler_timeout",
            "transfer_timeout",
        ):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                raise InvalidInput(f"'{name}' must be a positive number, got {value!r}.")

        if (
            isinstance(self.max_log_bytes, bool)
            or not isinstance(self.max_log_bytes, int)
            or self.max_log_bytes < 0
        ):
            raise InvalidInput(
                f"'max_log_bytes' must be a non-negative integer, got {self.max_log_bytes!r}."
            )

        # Validate the layout now rather than when the first chain runs.
        self.layout()

    def layout(self) -> RemoteLayout:
        return RemoteLayout(self.project_root, self.scratch_root, self.jobs_dir)

    def timeouts(self) -> Timeouts:
        return Timeouts(
            command=self.command_timeout,
            quick=self.quick_timeout,
            scheduler=self.scheduler_timeout,
            transfer=self.transfer_timeout,
        )

    def chain_options(self) -> ChainOptions:
        return ChainOptions(
            layout=self.layout(),
            scheduler_prelude=self.scheduler_prelude,
            namd_module=self.namd_module,
            namd_executable=self.namd_executable,
            log_cache_dir=self.log_cache_dir,
            max_log_bytes=self.max_log_bytes,
        )


def save_settings(settings: Settings, settings_file: FilePath) -> None:
    """Serialise settings as JSON.

    Parameters
    ----------
    settings : Settings
        The settings to save.
    settings_file : namdrunner.sim_management.types.FilePath
        Path to the file to write. Any existing file is overwritten.
    """

    with open(settings_file, mode="w") as f:
        json.dump(dataclasses.asdict(settings), f, indent=4)

    return None


def load_settings(settings_file: FilePath) -> Settings:
    """Load settings from a JSON file written by `save_settings`.

    Settings missing from the file take their default values.

    Parameters
    ----------
    settings_file : namdrunner.sim_management.types.FilePath
        The file to load settings from.

    Returns
    -------
    Settings
        The loaded settings.

    Raises
    ------
    InvalidInput
        If the file does not contain a JSON object, contains names that are not
        settings, or any value is not valid.
    """

    path = pathlib.Path(settings_file)
    try:
        with open(path, mode="r") as f:
            params: Any = json.load(f)
    except json.JSONDecodeError as e:
        raise InvalidInput(f"Could not parse settings file {path}: {e}") from e

    if not isinstance(params, dict):
        raise InvalidInput(f"Settings file {path} does not contain a JSON object.")

    known = {field.name for field in dataclasses.fields(Settings)}
    unknown = set(params) - known
    if unknown:
        raise InvalidInput(
            f"Unknown settings in {path}: {', '.join(sorted(unknown))}."
        )

    return Settings(**params)


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Send the application's log messages to standard error.

    Installs a single timestamped stream handler on the ``namdrunner`` logger. Calling
    this again replaces the handler rather than adding another one.

    Parameters
    ----------
    level : str, optional
        (Default: 'INFO') The minimum level of messages to emit.

    Returns
    -------
    logging.Logger
        The configured ``namdrunner`` logger.
    """

    logger = logging.getLogger("namdrunner")
    for handler in list(logger.handlers):
        if getattr(handler, "_namdrunner_handler", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._namdrunner_handler = True
    logger.addHandler(handler)
    logger.setLevel(str(level).upper())
    return logger
