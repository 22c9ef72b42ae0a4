"""
Checkpoint threading - apply batches to a checkpoint chain, one at a time.

Diff encoding only reads a batch and the reference, so every batch is encoded
speculatively in a worker pool. Inference consumes a checkpoint and produces
the next one, so inference runs strictly in batch order in the calling
thread. The state being threaded (``ThreadState``) is never shared: each
transition receives the previous state and returns a new one. Only one
inference task is ever in flight.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from .chunker import Batch
from .pipeline_core.error_handling import DependencyMissingError
from .run_state import BATCH_APPLIED, BATCH_SKIPPED, BatchRecord
from .tasks import TaskResult, TaskRunner
from .tools import Toolbox
from .trees import Checkpoint, Tree

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ThreadState:
    """The checkpoint and text tree at one point of the chain."""

    checkpoint: Checkpoint
    tree: Tree


@dataclass
class ThreadingResult:
    """Final state of a threading run.

    Attributes
    ----------
    state : ThreadState
        Checkpoint and tree after the last applied batch
    applied : List[int]
        Indices of batches whose inference succeeded, in order
    skipped : List[int]
        Indices of batches whose inference was ignored after exhausting its
        memory retries; their sequences are missing from ``state``
    records : List[BatchRecord]
        One record per batch, in order
    """

    state: ThreadState
    applied: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)
    records: List[BatchRecord] = field(default_factory=list)


class CheckpointThreader:
    """Thread a sequence of batches through the inference tool.

    Parameters
    ----------
    toolbox : Toolbox
        Builds the encode and infer tasks
    task_runner : TaskRunner
        Runs tasks under their policies
    encode_workers : int
        Number of concurrent encode tasks
    keep_intermediates : bool
        If False, a batch's FASTA and diff are removed once the batch is
        applied. Files of skipped batches are always kept for resubmission.
    on_batch : callable, optional
        Called with each ``BatchRecord`` as soon as the batch is settled
    """

    def __init__(
        self,
        toolbox: Toolbox,
        task_runner: TaskRunner,
        encode_workers: int = 1,
        keep_intermediates: bool = True,
        on_batch: Optional[Callable[[BatchRecord], None]] = None,
    ):
        if encode_workers < 1:
            raise ValueError(f"encode_workers must be at least 1, got {encode_workers}")
        self.toolbox = toolbox
        self.task_runner = task_runner
        self.encode_workers = encode_workers
        self.keep_intermediates = keep_intermediates
        self.on_batch = on_batch

    def run(
        self,
        batches: Sequence[Batch],
        initial: ThreadState,
        completed: Optional[Dict[int, BatchRecord]] = None,
    ) -> ThreadingResult:
        """Apply ``batches`` in order, starting from ``initial``.

        Parameters
        ----------
        batches : Sequence[Batch]
            Batches in chain order (strictly increasing indices)
        initial : ThreadState
            State the chain starts from
        completed : dict, optional
            Batch records of an earlier, interrupted run. The leading run of
            batches recorded there (with their checkpoints still on disk) is
            not recomputed.

        Returns
        -------
        ThreadingResult
            Final state and per-batch outcomes; with no batches the final
            state is ``initial``

        Raises
        ------
        TaskError
            When an encode or infer task fails fatally; no later batch is
            applied and the error names the failing batch. A failed encode
            is raised before the next inference starts, even when earlier
            batches are still waiting for theirs.
        """
        indices = [batch.index for batch in batches]
        if any(b <= a for a, b in zip(indices, indices[1:])):
            raise ValueError(f"Batches must be in strictly increasing order, got {indices}")

        result = ThreadingResult(state=initial)
        pending = self._restore(batches, result, completed or {})
        if not pending:
            logger.info("No batches to apply")
            return result

        logger.info(
            f"Threading {len(pending)} batches through the checkpoint chain "
            f"({self.encode_workers} encode workers)"
        )
        with ThreadPoolExecutor(
            max_workers=self.encode_workers, thread_name_prefix="encode"
        ) as pool:
            futures: List[Future] = [
                pool.submit(self.task_runner.run, self.toolbox.encode(batch)) for batch in pending
            ]
            try:
                for position, (batch, future) in enumerate(zip(pending, futures)):
                    encoded: TaskResult = future.result()
                    self._raise_failed_encode(futures[position + 1 :])
                    result.state = self._advance(result, batch, encoded.outputs["diff"])
            except BaseException:
                for future in futures:
                    future.cancel()
                raise

        logger.info(
            f"Checkpoint chain complete: {len(result.applied)} batches applied, "
            f"{len(result.skipped)} skipped"
        )
        if result.skipped:
            logger.warning(
                f"Skipped batches (sequences not in the final tree): "
                f"{', '.join(str(i) for i in result.skipped)}"
            )
        return result

    def _restore(
        self, batches: Sequence[Batch], result: ThreadingResult, completed: Dict[int, BatchRecord]
    ) -> List[Batch]:
        """Take over the recorded prefix of an interrupted run; return what is left."""
        position = 0
        for batch in batches:
            record = completed.get(batch.index)
            if record is None:
                break
            if record.outcome == BATCH_APPLIED:
                if not (record.checkpoint and Path(record.checkpoint).exists()):
                    break
                if not (record.tree and Path(record.tree).exists()):
                    break
                result.state = ThreadState(
                    Checkpoint(Path(record.checkpoint), record.version or 0),
                    Tree(Path(record.tree)),
                )
                result.applied.append(batch.index)
            elif record.outcome == BATCH_SKIPPED:
                result.skipped.append(batch.index)
            else:
                break
            result.records.append(record)
            position += 1

        if position:
            logger.info(
                f"Resuming after batch {batches[position - 1].index}: "
                f"{position} of {len(batches)} batches already settled"
            )
        return list(batches[position:])

    def _advance(self, result: ThreadingResult, batch: Batch, diff: Path) -> ThreadState:
        """Run one inference transition and return the resulting state."""
        state = result.state
        if not Path(state.checkpoint.path).exists():
            raise DependencyMissingError(
                f"Checkpoint {state.checkpoint.path} disappeared before batch {batch.index}",
                details={"batch_index": batch.index},
            )

        infer = self.task_runner.run(self.toolbox.infer(batch.index, diff, state.checkpoint))

        if infer.ignored:
            record = BatchRecord(index=batch.index, outcome=BATCH_SKIPPED, size=batch.size)
            result.skipped.append(batch.index)
            new_state = state
        else:
            new_state = ThreadState(
                Checkpoint(infer.outputs["checkpoint"], state.checkpoint.version + 1),
                Tree(infer.outputs["tree"]),
            )
            record = BatchRecord(
                index=batch.index,
                outcome=BATCH_APPLIED,
                size=batch.size,
                checkpoint=str(new_state.checkpoint.path),
                tree=str(new_state.tree.path),
                version=new_state.checkpoint.version,
            )
            result.applied.append(batch.index)
            if not self.keep_intermediates:
                self._remove_batch_files(batch, diff)

        result.records.append(record)
        if self.on_batch is not None:
            self.on_batch(record)
        return new_state

    @staticmethod
    def _raise_failed_encode(futures: Sequence[Future]) -> None:
        """Raise the error of a later batch's encode that has already failed."""
        for future in futures:
            if future.done() and not future.cancelled() and future.exception() is not None:
                logger.error("Encoding of a later batch failed; not starting another inference")
                raise future.exception()

    @staticmethod
    def _remove_batch_files(batch: Batch, diff: Path) -> None:
        for path in (Path(batch.sequences.path), Path(diff)):
            if path.exists():
                path.unlink()
