"""Background task entrypoints shared by APScheduler, the API and the CLI."""

import logging
from typing import Optional

from src.errors import RunFatalError
from src.worker.analysis_job import CompetitiveAnalysisJob
from src.worker.outcome_log import purge_old_attempts
from src.worker.reducer import ReductionScheduler, RunSummary

logger = logging.getLogger(__name__)


class TaskRunner:
    """
    Runner for background tasks.

    - Daily reduction pass (deduplicated per UTC date)
    - Competitive analysis batches for unanalyzed listings
    - Outcome log retention
    """

    def __init__(self):
        self.reducer: Optional[ReductionScheduler] = None
        self.analysis: Optional[CompetitiveAnalysisJob] = None

    async def initialize(self):
        """Initialize task runner."""
        if self.reducer is None:
            self.reducer = ReductionScheduler()
        if self.analysis is None:
            self.analysis = CompetitiveAnalysisJob()
        logger.info("Task runner initialized")

    async def close(self):
        """Clean up resources."""
        if self.reducer:
            await self.reducer.close()
            self.reducer = None
        if self.analysis:
            await self.analysis.close()
            self.analysis = None

    async def run_reductions(
        self,
        trigger: str = "scheduled",
        force: bool = False,
        deadline_seconds: Optional[float] = None,
    ) -> RunSummary:
        """Run one reduction pass. RunFatalError propagates to the caller."""
        await self.initialize()
        return await self.reducer.run(
            force=force, trigger=trigger, deadline_seconds=deadline_seconds
        )

    async def scheduled_reductions(self):
        """APScheduler entrypoint for the daily reduction pass."""
        try:
            await self.run_reductions(trigger="scheduled")
        except RunFatalError as e:
            logger.error(f"Scheduled reduction run failed: {e}", exc_info=True)

    async def run_competitive_analysis(self, limit: Optional[int] = None) -> dict:
        """Analyze a batch of unanalyzed listings."""
        await self.initialize()
        return await self.analysis.run(limit=limit)

    async def purge_attempts(self) -> int:
        """Apply the outcome log retention window."""
        return await purge_old_attempts()


task_runner = TaskRunner()
