"""
Provides type definitions shared across the NAMDRunner core.


Type Definitions
------------------------------------------------------------------------------------
[`FilePath`][namdrunner.sim_management.types.FilePath]
Represents a local file path, defined as a union of `str` and `PathLike` to support
both string-based and OS-native path objects.

[`ProgressListener`][namdrunner.sim_management.types.ProgressListener]
A callable that receives progress events emitted by an automation chain.


"""

from os import PathLike
from typing import Any, Callable, Union

FilePath = Union[str, PathLike]
"""A type to represent filepaths."""

ProgressListener = Callable[[Any], None]
"""A type to represent consumers of automation progress events."""
