"""
CI Persistence module.

This module contains the database implementation of the pipeline run
archive. Currently supports SQLite, but can be extended to PostgreSQL,
MySQL, etc.

The persistence layer depends on ci_common for domain models and interfaces,
and is used by the controller's orchestrator and the CLI.
"""

from .sqlite_repository import SQLitePipelineRunRepository

__all__ = ["SQLitePipelineRunRepository"]
