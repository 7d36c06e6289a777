"""
Rendering of the files generated for every job: the NAMD configuration file and the
SLURM batch script.
"""

import shlex
import string
import textwrap
from collections.abc import Sequence

from namdrunner.sim_management.errors import InvalidInput
from namdrunner.sim_management.jobs import FileDescriptor, NAMDConfig, SlurmConfig
from namdrunner.sim_management.paths import CONFIG_FILE, INPUT_FILES_DIR, OUTPUTS_DIR
from namdrunner.sim_management.slurm import script_safe_name

# Force field and integrator settings shared by every generated configuration.
EXCLUDE = "scaled1-4"
SCALING_1_4 = 1.0
SWITCH_DIST = 8.0
CUTOFF = 10.0
PAIRLIST_DIST = 12.0
NONBONDED_FREQ = 1
FULL_ELECT_FREQUENCY = 2
STEPS_PER_CYCLE = 12
PME_GRID_SPACING = 1.5
LANGEVIN_PISTON_TARGET = 1.01325
LANGEVIN_PISTON_PERIOD = 1000.0
LANGEVIN_PISTON_DECAY = 500.0
RIGID_BONDS = "all"

REQUIRED_INPUT_EXTENSIONS = (".pdb", ".psf", ".prm")
"""Each job needs at least one coordinate, structure and parameter file."""


class _Template(string.Template):
    """Subclass of ``string.Template`` that changes the default delimiter.

    Text that begins with '#PY_' will be replaced when applying text substitution.

    Examples
    --------

    >>> _Template("cores=#PY_{CORES}").substitute({"CORES": "4"})
    'cores=4'
    """

    delimiter = "#PY_"


def _inputs_with_extension(input_files: Sequence[FileDescriptor], ext: str) -> list[str]:
    return [
        f"{INPUT_FILES_DIR}/{descriptor.name}"
        for descriptor in input_files
        if descriptor.name.lower().endswith(ext)
    ]


def check_required_inputs(input_names: Sequence[str]) -> None:
    """Check that the input file names cover every required file type.

    Raises
    ------
    InvalidInput
        If no file with one of the extensions in `REQUIRED_INPUT_EXTENSIONS` is present.
    """

    lowered = [name.lower() for name in input_names]
    missing = [
        ext
        for ext in REQUIRED_INPUT_EXTENSIONS
        if not any(name.endswith(ext) for name in lowered)
    ]
    if missing:
        raise InvalidInput(
            f"Missing required input files with extensions: {', '.join(missing)}."
        )


def render_namd_config(
    config: NAMDConfig, input_files: Sequence[FileDescriptor]
) -> str:
    """Render the NAMD configuration file for a job.

    Input files are referred to relative to the job directory, which is the working
    directory the batch script runs NAMD in.

    Parameters
    ----------
    config : NAMDConfig
        The simulation parameters.
    input_files : Sequence[FileDescriptor]
        The job's input files. The first ``.psf`` and ``.pdb`` files are used for the
        structure and coordinates; every ``.prm`` file is loaded as a parameter file.

    Returns
    -------
    str
        The contents of ``config.namd``.

    Raises
    ------
    InvalidInput
        If a required input file type is missing.
    """

    check_required_inputs([descriptor.name for descriptor in input_files])
    structure = _inputs_with_extension(input_files, ".psf")[0]
    coordinates = _inputs_with_extension(input_files, ".pdb")[0]
    parameters = "\n".join(
        f"parameters          {path}"
        for path in _inputs_with_extension(input_files, ".prm")
    )

    template_str = r"""
    # NAMD configuration generated by NAMDRunner

    structure           #PY_{STRUCTURE}
    coordinates         #PY_{COORDINATES}
    paraTypeCharmm      on
    #PY_{PARAMETERS}

    set temperature     #PY_{TEMPERATURE}
    set outputname      #PY_{OUTPUT_PREFIX}
    temperature         $temperature

    exclude             #PY_{EXCLUDE}
    1-4scaling          #PY_{SCALING_1_4}
    switching           on
    switchdist          #PY_{SWITCH_DIST}
    cutoff              #PY_{CUTOFF}
    pairlistdist        #PY_{PAIRLIST_DIST}

    timestep            #PY_{TIMESTEP}
    rigidBonds          #PY_{RIGID_BONDS}
    nonbondedFreq       #PY_{NONBONDED_FREQ}
    fullElectFrequency  #PY_{FULL_ELECT_FREQUENCY}
    stepspercycle       #PY_{STEPS_PER_CYCLE}

    PME                 yes
    PMEGridSpacing      #PY_{PME_GRID_SPACING}

    langevin            on
    langevinTemp        $temperature
    langevinHydrogen    off
    langevinPiston      on
    langevinPistonTarget #PY_{PISTON_TARGET}
    langevinPistonPeriod #PY_{PISTON_PERIOD}
    langevinPistonDecay  #PY_{PISTON_DECAY}
    langevinPistonTemp  $temperature

    outputName          $outputname
    dcdfreq             #PY_{DCD_FREQ}
    restartfreq         #PY_{RESTART_FREQ}
    outputEnergies      #PY_{DCD_FREQ}

    run                 #PY_{STEPS}
    """
    template_str = template_str[1:]  # remove leading newline character
    template = _Template(textwrap.dedent(template_str))
    return template.substitute(
        {
            "STRUCTURE": structure,
            "COORDINATES": coordinates,
            "PARAMETERS": parameters,
            "TEMPERATURE": str(config.temperature),
            "OUTPUT_PREFIX": f"{OUTPUTS_DIR}/{config.outputname}",
            "EXCLUDE": EXCLUDE,
            "SCALING_1_4": str(SCALING_1_4),
            "SWITCH_DIST": str(SWITCH_DIST),
            "CUTOFF": str(CUTOFF),
            "PAIRLIST_DIST": str(PAIRLIST_DIST),
            "TIMESTEP": str(config.timestep),
            "RIGID_BONDS": RIGID_BONDS,
            "NONBONDED_FREQ": str(NONBONDED_FREQ),
            "FULL_ELECT_FREQUENCY": str(FULL_ELECT_FREQUENCY),
            "STEPS_PER_CYCLE": str(STEPS_PER_CYCLE),
            "PME_GRID_SPACING": str(PME_GRID_SPACING),
            "PISTON_TARGET": str(LANGEVIN_PISTON_TARGET),
            "PISTON_PERIOD": str(LANGEVIN_PISTON_PERIOD),
            "PISTON_DECAY": str(LANGEVIN_PISTON_DECAY),
            "DCD_FREQ": str(config.effective_dcd_freq),
            "RESTART_FREQ": str(config.effective_restart_freq),
            "STEPS": str(config.steps),
        }
    )


def render_batch_script(
    job_name: str,
    config: SlurmConfig,
    scratch_dir: str,
    namd_module: str,
    namd_executable: str = "namd3",
) -> str:
    """Render the SLURM batch script for a job.

    The script runs NAMD inside `scratch_dir` and names the scheduler's stdout and
    stderr files ``<job_name>_<scheduler job id>.out`` and ``.err``.

    Parameters
    ----------
    job_name : str
        The job name. Characters outside ``[A-Za-z0-9_.-]`` are replaced.
    config : SlurmConfig
        The resources to request.
    scratch_dir : str
        The directory the job runs in.
    namd_module : str
        The environment module providing NAMD.
    namd_executable : str, optional
        (Default: 'namd3') The NAMD executable to launch.

    Returns
    -------
    str
        The contents of ``job.sbatch``.
    """

    name = script_safe_name(job_name)
    optional_directives = []
    if config.partition is not None:
        optional_directives.append(f"#SBATCH --partition={config.partition}")
    if config.qos is not None:
        optional_directives.append(f"#SBATCH --qos={config.qos}")

    template_str = r"""
    #!/bin/bash
    #SBATCH --job-name=#PY_{JOB_NAME}
    #SBATCH --output=#PY_{JOB_NAME}_%j.out
    #SBATCH --error=#PY_{JOB_NAME}_%j.err
    #SBATCH --nodes=1
    #SBATCH --ntasks=#PY_{CORES}
    #SBATCH --mem=#PY_{MEMORY}
    #SBATCH --time=#PY_{WALLTIME}
    #PY_{OPTIONAL}

    module purge
    module load #PY_{NAMD_MODULE}

    cd #PY_{WORKING_DIR}
    mkdir -p #PY_{OUTPUTS_DIR}

    mpirun -np $SLURM_NTASKS #PY_{NAMD} #PY_{CONFIG} > #PY_{OUTPUTS_DIR}/namd_output.log
    """
    template_str = template_str[1:]  # remove leading newline character
    template = _Template(textwrap.dedent(template_str))
    return template.substitute(
        {
            "JOB_NAME": name,
            "CORES": str(config.cores),
            "MEMORY": config.memory_directive,
            "WALLTIME": config.walltime,
            "OPTIONAL": "\n".join(optional_directives),
            "NAMD_MODULE": namd_module,
            "WORKING_DIR": shlex.quote(scratch_dir),
            "OUTPUTS_DIR": OUTPUTS_DIR,
            "NAMD": namd_executable,
            "CONFIG": CONFIG_FILE,
        }
    )
