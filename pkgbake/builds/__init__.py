"""Build orchestration module.

This module handles:
- Per-job environment context (working dir, shell, env)
- The configure/build/install stage pipeline
- Concurrent multi-target orchestration
- Artifact collection and manifest generation
- Build history records
"""

from pkgbake.builds.models import BuildRecord

__all__ = ["BuildRecord"]

# Lazy imports for submodules to avoid circular imports
# Access via pkgbake.builds.orchestrator, etc.
