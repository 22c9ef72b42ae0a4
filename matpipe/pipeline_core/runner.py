"""
PipelineRunner - Executes stages in dependency order with parallel support.

Stages are grouped into levels: a stage's level is one past the deepest of
its dependencies. Within a level, stages that declare ``parallel_safe`` run
together in a thread pool (the initial checkpoint build and chunking, for
example); the others run one after another first.
"""

import logging
import time
from collections import defaultdict, deque
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from typing import Dict, List, Optional, Set

from .context import PipelineContext
from .stage import Stage

logger = logging.getLogger(__name__)


class PipelineRunner:
    """Executes stages in dependency order with support for parallel execution.

    Soft dependencies only order stages that are actually in the pipeline;
    a hard dependency on a missing stage is a configuration error. The first
    failing stage stops the run: nothing in later levels executes, and
    parallel stages that have not started yet are cancelled.

    Attributes
    ----------
    max_workers : int
        Maximum number of stages running at the same time
    """

    def __init__(self, max_workers: Optional[int] = None):
        """Initialize the pipeline runner.

        Parameters
        ----------
        max_workers : int, optional
            Maximum parallel stages (default: 4)
        """
        self.max_workers = max_workers or 4
        self._stage_times: Dict[str, float] = {}
        self._subtask_times: Dict[str, Dict[str, float]] = {}

    def run(self, stages: List[Stage], context: PipelineContext) -> PipelineContext:
        """Execute all stages level by level.

        Parameters
        ----------
        stages : List[Stage]
            Stages of the run, in pipeline order
        context : PipelineContext
            Initial pipeline context

        Returns
        -------
        PipelineContext
            Final context after all stages complete

        Raises
        ------
        ValueError
            On duplicate names, unknown hard dependencies or cycles
        PipelineError
            If any stage fails
        """
        levels = self.plan(stages)
        logger.info(f"Running {len(stages)} stages in {len(levels)} levels")

        start = time.time()
        for number, level in enumerate(levels):
            context = self._run_level(number, level, context)

        logger.info(f"All stages finished in {time.time() - start:.1f}s")
        self._log_timings()
        return context

    def dry_run(self, stages: List[Stage]) -> List[List[str]]:
        """Return the stage names of each level without running anything."""
        return [[stage.name for stage in level] for level in self.plan(stages)]

    def plan(self, stages: List[Stage]) -> List[List[Stage]]:
        """Group stages into dependency levels.

        Parameters
        ----------
        stages : List[Stage]
            All stages of the run

        Returns
        -------
        List[List[Stage]]
            Levels in execution order; within a level, longest estimated
            runtime first

        Raises
        ------
        ValueError
            On duplicate names, unknown hard dependencies or cycles
        """
        by_name = {stage.name: stage for stage in stages}
        if len(by_name) != len(stages):
            raise ValueError("Duplicate stage names detected")

        requires = self._dependency_map(stages)
        unlocks: Dict[str, Set[str]] = defaultdict(set)
        for name, deps in requires.items():
            for dep in deps:
                unlocks[dep].add(name)

        waiting = {name: len(deps) for name, deps in requires.items()}
        ready = deque(stage.name for stage in stages if waiting[stage.name] == 0)
        levels: List[List[Stage]] = []
        placed = 0

        while ready:
            level = [by_name[ready.popleft()] for _ in range(len(ready))]
            placed += len(level)
            for stage in level:
                for name in sorted(unlocks[stage.name]):
                    waiting[name] -= 1
                    if waiting[name] == 0:
                        ready.append(name)
            level.sort(key=lambda s: s.estimated_runtime, reverse=True)
            levels.append(level)

        if placed != len(stages):
            stuck = sorted(name for name, count in waiting.items() if count > 0)
            raise ValueError(f"Circular dependency detected involving stages: {stuck}")
        return levels

    @staticmethod
    def _dependency_map(stages: List[Stage]) -> Dict[str, Set[str]]:
        """Map each stage to the stages it must wait for."""
        present = {stage.name for stage in stages}
        requires = {}
        for stage in stages:
            unknown = set(stage.dependencies) - present
            if unknown:
                raise ValueError(
                    f"Stage '{stage.name}' depends on stages not in the pipeline: "
                    f"{', '.join(sorted(unknown))}"
                )
            requires[stage.name] = set(stage.dependencies) | (
                set(stage.soft_dependencies) & present
            )
        return requires

    def _run_level(
        self, number: int, level: List[Stage], context: PipelineContext
    ) -> PipelineContext:
        concurrent = [stage for stage in level if stage.parallel_safe]
        if len(concurrent) < 2:
            logger.info(f"Level {number}: {', '.join(stage.name for stage in level)}")
            for stage in level:
                context = self._run_stage(stage, context)
            return context

        for stage in level:
            if not stage.parallel_safe:
                context = self._run_stage(stage, context)

        logger.info(
            f"Level {number}: running {', '.join(s.name for s in concurrent)} in parallel"
        )
        workers = min(self.max_workers, len(concurrent))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="stage") as pool:
            futures = {pool.submit(self._run_stage, stage, context): stage for stage in concurrent}
            done, not_done = wait(futures, return_when=FIRST_EXCEPTION)
            for future in not_done:
                future.cancel()
            for future, stage in futures.items():
                if future in done and future.exception() is not None:
                    logger.error(f"Parallel stage '{stage.name}' failed")
                    raise future.exception()
        return context

    def _run_stage(self, stage: Stage, context: PipelineContext) -> PipelineContext:
        start = time.time()
        context = stage(context)
        self._stage_times[stage.name] = time.time() - start
        if stage.subtask_times:
            self._subtask_times[stage.name] = stage.subtask_times
        return context

    def _log_timings(self) -> None:
        """Log stage durations, slowest first, with their subtasks."""
        if not self._stage_times:
            return

        total = sum(self._stage_times.values())
        logger.info("Stage timings:")
        for name, elapsed in sorted(self._stage_times.items(), key=lambda x: x[1], reverse=True):
            share = 100 * elapsed / total if total else 0.0
            logger.info(f"  {name:28s} {elapsed:8.1f}s ({share:4.1f}%)")
            for subtask, sub_elapsed in self._subtask_times.get(name, {}).items():
                logger.info(f"    - {subtask:24s} {sub_elapsed:8.1f}s")
        logger.info(f"  {'total':28s} {total:8.1f}s")
