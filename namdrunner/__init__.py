"""
NAMDRunner
==========

The `namdrunner` package is the orchestration core of a desktop tool for running NAMD
molecular dynamics simulations on a SLURM cluster reached over SSH. It creates jobs
from local input files, stages them on the cluster, submits them to the scheduler,
keeps a local registry of every job in step with the scheduler and retrieves the
results once a simulation has finished.

Key Features
============
- **Remote sessions**: One SSH session at a time, with failures classified and
  connection loss reported to the application.
- **Job registry**: A local SQLite record of every job that survives restarts and is
  migrated automatically between versions.
- **Automation chains**: Create, submit, sync, complete and delete jobs as ordered
  steps with progress reporting and rollback of half-created jobs.
- **Scheduler reconciliation**: Batched status queries with monotonic status changes
  and discovery of jobs submitted elsewhere.

Subpackages
---------------------------------------------------------------------------------------------------------
- [`sim_management`][namdrunner.sim_management]:
Job model, remote session, registry, scheduler protocol and automation chains.

- [`app`][namdrunner.app]:
Settings, logging set-up and the application facade.


"""
