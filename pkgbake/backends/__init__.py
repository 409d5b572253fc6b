"""Execution backends.

This module handles:
- The create/exec/destroy capability interface
- Docker containers as isolated build environments
- A deterministic in-memory backend for tests
"""

from pkgbake.backends.base import BackendHandle, ExecResult, ExecutionBackend

__all__ = ["BackendHandle", "ExecResult", "ExecutionBackend"]

# DockerBackend is imported from pkgbake.backends.docker so the docker SDK
# is only loaded when a real runtime is used.
