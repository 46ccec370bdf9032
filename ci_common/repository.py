"""
Abstract repository interface for archiving pipeline runs.

This module defines the contract that any database implementation must follow,
allowing easy swapping between SQLite, PostgreSQL, MySQL, etc.
"""

from abc import ABC, abstractmethod

from .models import PipelineRun


class PipelineRunRepository(ABC):
    """
    Abstract base class for pipeline run storage operations.

    Runs are stored once they reach a terminal state. Implementations must
    handle their own connection management.
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Create any schema the implementation needs."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release connections held by the repository."""
        pass

    @abstractmethod
    async def save_run(self, run: PipelineRun) -> None:
        """
        Persist a finished pipeline run.

        Saving a run whose ID already exists replaces the stored copy.

        Args:
            run: PipelineRun in a terminal state
        """
        pass

    @abstractmethod
    async def get_run(self, run_id: str) -> PipelineRun | None:
        """
        Retrieve a pipeline run by its ID.

        Args:
            run_id: UUID of the run to retrieve

        Returns:
            PipelineRun with all job results if found, None otherwise
        """
        pass

    @abstractmethod
    async def list_runs(self, limit: int | None = None) -> list[PipelineRun]:
        """
        List archived runs, most recent first.

        Args:
            limit: Maximum number of runs to return (None for all)
        """
        pass
