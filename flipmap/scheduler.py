"""
Fan-out/fan-in integration of one generation over a fixed worker pool.

The batch of running cells is cut into work items which workers pull from a
bounded set of in-flight futures. The call blocks until every item has come
back, so the caller only ever sees a complete generation.
"""

import logging
import math
from concurrent.futures import (
    FIRST_COMPLETED,
    Executor,
    ProcessPoolExecutor,
    ThreadPoolExecutor,
    wait,
)
from typing import Dict, List, Optional

from tqdm import tqdm

from .configs import ParallelConfig
from .physics import G, STEP_DELTA, PendulumBatch, integrate_batch

logger = logging.getLogger(__name__)


class StepScheduler:
    """
    Integrates batches of cells, serially or on a worker pool.

    Every cell of a batch ends up in exactly one work item, and results do
    not depend on the number of workers, the chunking or the backend.

    The pool is created lazily and reused across generations. Use the
    scheduler as a context manager, or call `close`, to shut it down.

    Example:
        >>> with StepScheduler(ParallelConfig.threads(4)) as scheduler:
        ...     advanced = scheduler.integrate(batch, n_steps=100)
    """

    def __init__(
        self,
        parallel_config: Optional[ParallelConfig] = None,
        /,
        *,
        progress_bar: bool = False,
    ):
        """
        Args:
            parallel_config: Worker pool settings. Defaults to serial.
            progress_bar: Show a tqdm bar over work items.
        """
        self._config = parallel_config if parallel_config is not None else ParallelConfig()
        self._progress_bar = progress_bar
        self._executor: Optional[Executor] = None

    @property
    def config(self) -> ParallelConfig:
        return self._config

    @property
    def n_workers(self) -> int:
        return self._config.n_workers

    @property
    def parallel(self) -> bool:
        """True if work is dispatched to a pool."""
        return self._config.enabled and self.n_workers > 1

    def _get_executor(self) -> Executor:
        if self._executor is None:
            if self._config.backend == "process":
                self._executor = ProcessPoolExecutor(max_workers=self.n_workers)
            else:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.n_workers, thread_name_prefix="flipmap"
                )
            logger.debug(
                "started %s pool with %d workers", self._config.backend, self.n_workers
            )
        return self._executor

    def _chunk_size(self, n_cells: int) -> int:
        if self._config.chunk_size is not None:
            return self._config.chunk_size
        # About four work items per worker
        return max(1, math.ceil(n_cells / (4 * self.n_workers)))

    def _queue_size(self) -> int:
        if self._config.queue_size is not None:
            return self._config.queue_size
        return 2 * self.n_workers

    def integrate(
        self,
        batch: PendulumBatch,
        n_steps: int,
        dt: float = STEP_DELTA,
        g: float = G,
    ) -> PendulumBatch:
        """
        Advances every cell of `batch` by up to `n_steps` steps.

        Returns:
            A new batch holding the advanced state, in the order of `batch`.

        Raises:
            NumericalDivergenceError: Re-raised from the worker that hit it.
                Items not yet started are cancelled first.
        """
        if len(batch) == 0:
            return batch.copy()

        if not self.parallel:
            return integrate_batch(batch, n_steps, dt, g)

        chunks = batch.chunks(self._chunk_size(len(batch)))
        results = self._run(chunks, n_steps, dt, g)
        return PendulumBatch.concatenate([results[i] for i in range(len(chunks))])

    def _run(
        self, chunks: List[PendulumBatch], n_steps: int, dt: float, g: float
    ) -> Dict[int, PendulumBatch]:
        executor = self._get_executor()
        limit = self._queue_size()
        pending = {}
        results: Dict[int, PendulumBatch] = {}
        bar = tqdm(total=len(chunks), desc="Integrating", disable=not self._progress_bar)

        next_chunk = 0
        try:
            while next_chunk < len(chunks) or pending:
                # Keep the in-flight queue topped up
                while next_chunk < len(chunks) and len(pending) < limit:
                    future = executor.submit(
                        integrate_batch, chunks[next_chunk], n_steps, dt, g
                    )
                    pending[future] = next_chunk
                    next_chunk += 1

                done, _ = wait(pending, return_when=FIRST_COMPLETED)
                for future in done:
                    index = pending.pop(future)
                    results[index] = future.result()
                    bar.update(1)
        except BaseException:
            for future in pending:
                future.cancel()
            raise
        finally:
            bar.close()

        return results

    def close(self) -> None:
        """Shuts the worker pool down."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def __enter__(self) -> "StepScheduler":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
