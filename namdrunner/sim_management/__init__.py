"""
namdrunner.sim_management
=========================

-------------------------------------------------------------------------------------------
The `namdrunner.sim_management` package provides the infrastructure for running NAMD
simulation jobs on a SLURM cluster: validating job identities and remote paths, holding
the SSH session, recording jobs in a local registry, talking to the scheduler and
driving each job through its lifecycle with the automation chains.

-------------------------------------------------------------------------------------------
Modules
=======

[`automations`][namdrunner.sim_management.automations]:
    The create, submit, sync, complete and delete chains, progress reporting and the
    `JobAutomations` entry point.

[`errors`][namdrunner.sim_management.errors]:
    The exception hierarchy. Every error carries a machine-checkable `kind`.

[`jobs`][namdrunner.sim_management.jobs]:
    The job record (`Job`), job identifiers (`JobId`), job statuses and their allowed
    transitions, and the NAMD and SLURM configuration of a job.

[`paths`][namdrunner.sim_management.paths]:
    Validation of job names, job IDs, usernames and relative paths, and derivation of
    the remote directories of a job.

[`reconciler`][namdrunner.sim_management.reconciler]:
    Brings the registry in line with the scheduler in a single batched pass.

[`registry`][namdrunner.sim_management.registry]:
    The SQLite job registry, with automatic schema migration.

[`session`][namdrunner.sim_management.session]:
    The remote session: command execution, file transfer and failure classification
    over SSH.

[`slurm`][namdrunner.sim_management.slurm]:
    Construction of SLURM commands and parsing of their output.

[`templates`][namdrunner.sim_management.templates]:
    Rendering of each job's NAMD configuration file and batch script.

[`types`][namdrunner.sim_management.types]:
    Defines reusable type aliases, such as `FilePath`.

-------------------------------------------------------------------------------------------
"""
