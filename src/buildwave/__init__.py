"""
buildwave: dependency-ordered build pipeline orchestrator.

Purpose
- Decompose a work request into features, dispatch them to worker roles in
  dependency-ordered waves, merge results into a single integration line, drive
  that line through an ordered verification pipeline, and gate delivery behind a
  weighted quality score.

Import boundary
- Importing the package must not load config, configure logging or touch the
  learning store. Submodules are imported lazily by the CLI.
"""

__version__ = "0.4.0"

__all__ = ["__version__"]
