"""
The adaptive partition of the basin map.

A `PendulumFamily` owns every cell of the map in an id-keyed arena. Parent,
child and neighbour relations are stored as ids and resolved through the
arena. Each call to `advance_generation` integrates all running cells, retires
the ones that stopped, and splits stopped cells whose step counts disagree
too much with those of their stopped neighbours.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Set, Tuple

import numpy as np
from scipy.spatial import cKDTree
from tqdm import tqdm

from .cell import Cell, CellSnapshot, RenderItem
from .configs import AngleMapping, FractalConfig, ParallelConfig
from .physics import NumericalDivergenceError, PendulumBatch
from .rolling import RollingAverage
from .scheduler import StepScheduler

logger = logging.getLogger(__name__)


@dataclass
class GenerationReport:
    """Summary of one generation.

    Attributes:
        generation: Index of the generation (1 for the first one).
        update_steps: Integrator steps per cell used in this generation.
        spawned: Cells created by splitting.
        stopped: Cells that stopped in this generation.
        removed: Fully resolved parents dropped from the done set.
        active: Cells that will integrate in the next generation.
        done: Stopped cells still retained.
        backlog: Spawned cells waiting for a free active slot.
        average_steps: Rolling mean step count of recently stopped cells.
        elapsed: Wall clock time of the generation in seconds.
    """

    generation: int
    update_steps: int
    spawned: int
    stopped: int
    removed: int
    active: int
    done: int
    backlog: int
    average_steps: float
    elapsed: float


class PendulumFamily:
    """
    Adaptive quadtree sampling of the double pendulum flip time.

    Cells live in three places:
        - active: integrating,
        - backlog: spawned but waiting for a free active slot,
        - done: stopped, kept while they may still take part in a
          divergence check or while one of their children is running.

    Example:
        >>> family = PendulumFamily(FractalConfig.preview())
        >>> family.seed()
        1
        >>> report = family.advance_generation()
        >>> items = family.cells_pending_render()
    """

    def __init__(
        self,
        config: Optional[FractalConfig] = None,
        parallel_config: Optional[ParallelConfig] = None,
        /,
        *,
        scheduler: Optional[StepScheduler] = None,
    ):
        """
        Args:
            config: Scene and refinement parameters.
            parallel_config: Worker pool used for integration. Ignored if a
                scheduler is given.
            scheduler: An existing scheduler to integrate with.
        """
        self._config = config if config is not None else FractalConfig()
        self._scheduler = scheduler if scheduler is not None else StepScheduler(parallel_config)

        self._active: Dict[int, Cell] = {}
        self._backlog: "OrderedDict[int, Cell]" = OrderedDict()
        self._done: Dict[int, Cell] = {}
        self._marked: Set[int] = set()
        self._pending_render: List[RenderItem] = []

        self._counter = 0
        self._generation = 0
        self._update_steps_override: Optional[int] = None
        self._average = RollingAverage(self._config.average_window)
        self._cap_warned = False

        logger.info(
            "step delta = %g; stop after %d; dive if < %g; min dive width = %g; color step = %d",
            self._config.step_delta,
            self._config.max_steps,
            self._config.divergence_threshold,
            self._config.min_dive_width,
            self._config.color_step,
        )

    # --- Properties & Queries ---

    @property
    def config(self) -> FractalConfig:
        return self._config

    @property
    def scheduler(self) -> StepScheduler:
        return self._scheduler

    @property
    def generation(self) -> int:
        """Number of completed generations."""
        return self._generation

    @property
    def update_steps(self) -> int:
        """Step rate of the next generation."""
        if self._update_steps_override is not None:
            return self._update_steps_override
        return self._config.update_steps(self._generation + 1)

    @property
    def average_steps(self) -> float:
        """Rolling mean of the step counts of recently stopped cells."""
        return self._average.get()

    def set_update_steps(self, steps: Optional[int]) -> None:
        """
        Fixes the step rate, or restores the adaptive rule when None.
        """
        if steps is not None and steps < 1:
            raise ValueError("steps must be at least 1")
        self._update_steps_override = steps

    def active_count(self) -> int:
        return len(self._active)

    def done_count(self) -> int:
        return len(self._done)

    def backlog_count(self) -> int:
        return len(self._backlog)

    def __len__(self) -> int:
        return len(self._active) + len(self._backlog) + len(self._done)

    def cell(self, cell_id: int) -> Optional[Cell]:
        """Looks a cell up by id in the active, backlog and done sets."""
        cell = self._active.get(cell_id)
        if cell is None:
            cell = self._backlog.get(cell_id)
        if cell is None:
            cell = self._done.get(cell_id)
        return cell

    def cells(self) -> Iterator[Cell]:
        """Iterates over every registered cell."""
        yield from self._active.values()
        yield from self._backlog.values()
        yield from self._done.values()

    def is_split(self, cell_id: int) -> bool:
        """True if the cell has already been subdivided."""
        return cell_id in self._marked

    def cells_pending_render(self) -> List[RenderItem]:
        """
        Drains the cells that stopped since the previous call.

        Each stopped cell is returned exactly once.
        """
        items, self._pending_render = self._pending_render, []
        return items

    def pick(self, x: float, y: float) -> Optional[CellSnapshot]:
        """
        Finds the cell covering (x, y).

        Among all cells whose footprint contains the point, the one with the
        smallest scale wins, then stopped cells over running ones. Returns
        None when no cell covers the point.
        """
        cells = list(self.cells())
        if not cells:
            return None

        # Chebyshev ball of the largest half-width contains every candidate
        tree = cKDTree(np.array([c.anchor for c in cells]))
        radius = max(c.width for c in cells)
        candidates = tree.query_ball_point([x, y], r=radius, p=np.inf)

        hits = [cells[i] for i in candidates if cells[i].contains(x, y)]
        if not hits:
            return None
        best = min(hits, key=lambda c: (c.scale, not c.stopped, c.id))
        return best.snapshot()

    # --- Population ---

    def _next_id(self) -> int:
        self._counter += 1
        return self._counter

    def seed(
        self,
        anchor: Optional[Tuple[float, float]] = None,
        domain_width: Optional[float] = None,
        scale: float = 1.0,
        mapping: Optional[AngleMapping] = None,
    ) -> int:
        """
        Creates the root cell.

        Args:
            anchor: Root anchor. Defaults to the centre of the domain.
            domain_width: Side of the domain. Defaults to the configured one.
            scale: Root scale; 1 makes the root cover the whole domain.
            mapping: Pixel to angle mapping. Defaults to the configured one.

        Returns:
            The id of the root cell.
        """
        if len(self) > 0:
            raise RuntimeError("family has already been seeded")

        overrides = {}
        if domain_width is not None:
            overrides["domain_width"] = domain_width
        if mapping is not None:
            overrides["mapping"] = mapping
        if overrides:
            self._config = self._config.copy(**overrides)

        width = self._config.domain_width
        if anchor is None:
            anchor = (width / 2.0, width / 2.0)

        root = Cell.from_anchor(self._next_id(), anchor, self._config, scale)
        self._active[root.id] = root
        return root.id

    def _register(self, cell: Cell) -> None:
        limit = self._config.max_active
        if limit is None or len(self._active) < limit:
            self._active[cell.id] = cell
        else:
            self._backlog[cell.id] = cell

    def _promote_backlog(self) -> None:
        limit = self._config.max_active
        while self._backlog and (limit is None or len(self._active) < limit):
            cell_id, cell = self._backlog.popitem(last=False)
            self._active[cell_id] = cell

    def _retire(self, cell: Cell) -> None:
        # Stopped cell: colour it, keep it and hand it to the renderer
        self._done[cell.id] = cell
        cell.refresh_color(self._config)
        self._pending_render.append(cell.render_item())
        self._average.add(cell.steps)

    def can_remove(self, cell_id: int) -> bool:
        """
        True if the cell is done and every one of its children is stopped.

        A cell without children, or with a child that is missing from the
        done set, is never removable.
        """
        cell = self._done.get(cell_id)
        if cell is None or not cell.children:
            return False
        for child_id in cell.children:
            child = self._done.get(child_id)
            if child is None or not child.stopped:
                return False
        return True

    def _remove(self, cell_id: int) -> None:
        cell = self._done.pop(cell_id)
        self._marked.discard(cell_id)
        for neighbor_id in cell.neighbors:
            neighbor = self.cell(neighbor_id)
            if neighbor is not None:
                neighbor.neighbors.discard(cell_id)
        cell.neighbors.clear()
        logger.debug("removed resolved parent %d", cell_id)

    # --- Subdivision ---

    def _has_capacity(self, n_new: int) -> bool:
        limit = self._config.max_cells
        if limit is None or len(self) + n_new <= limit:
            return True
        if not self._cap_warned:
            logger.warning("cell cap of %d reached, no further subdivision", limit)
            self._cap_warned = True
        return False

    @staticmethod
    def _link(a: Cell, b: Cell) -> None:
        a.neighbors.add(b.id)
        b.neighbors.add(a.id)

    def split(self, cell: Cell) -> List[Cell]:
        """
        Subdivides a stopped cell into its quadrant children.

        Children falling outside the domain are omitted. Each child gets half
        the parent's scale and inherits its colour. The neighbour graph is
        repaired so that every child is linked to its siblings and to those
        former neighbours of the parent that it touches; the parent itself
        leaves the graph.
        """
        assert cell.stopped, f"cannot split running cell {cell.id}"
        assert cell.id not in self._marked, f"cell {cell.id} is already split"
        self._marked.add(cell.id)

        children = [
            Cell.from_anchor(
                self._next_id(),
                anchor,
                self._config,
                cell.scale / 2.0,
                parent_id=cell.id,
                color=cell.color,
            )
            for anchor in cell.child_anchors(self._config.domain_width)
        ]
        cell.children.extend(child.id for child in children)

        former = [self.cell(i) for i in sorted(cell.neighbors)]
        former = [n for n in former if n is not None]
        for neighbor in former:
            neighbor.neighbors.discard(cell.id)
        cell.neighbors.clear()

        tolerance = self._config.adjacency_tolerance
        for child in children:
            for sibling in children:
                if sibling is not child:
                    child.neighbors.add(sibling.id)
            for neighbor in former:
                if child.adjacent(neighbor, tolerance):
                    self._link(child, neighbor)

        for child in children:
            self._register(child)

        logger.debug(
            "split %d %d -> %s", self._generation, cell.id, [c.id for c in children]
        )
        return children

    def _splittable(self, cell: Cell) -> bool:
        return (
            cell.width > self._config.min_dive_width
            and cell.id not in self._marked
            and self._has_capacity(len(cell.child_anchors(self._config.domain_width)))
        )

    def dive(self, cell: Cell) -> List[Cell]:
        """
        Refines around a stopped cell whose neighbours disagree with it.

        Every stopped, not yet split neighbour whose step count ratio with
        `cell` is below the divergence threshold (or where either of the two
        expired) and which shares an edge with `cell` is split. If any
        neighbour was split, `cell` is split as well.

        Returns:
            The spawned children.
        """
        assert cell.stopped, f"cannot dive from running cell {cell.id}"
        config = self._config
        tolerance = config.adjacency_tolerance

        spawned: List[Cell] = []
        qualified = False
        for neighbor_id in sorted(cell.neighbors):
            neighbor = self.cell(neighbor_id)
            if neighbor is None or not neighbor.stopped or neighbor_id in self._marked:
                continue

            low, high = sorted((cell.steps, neighbor.steps))
            ratio = low / high if high > 0 else 1.0
            diverges = (
                ratio < config.divergence_threshold or cell.expired or neighbor.expired
            )
            if not diverges or not cell.adjacent(neighbor, tolerance):
                continue
            # Regions that never converge are not refined forever
            if (
                cell.expired
                and neighbor.expired
                and neighbor.width < config.expired_min_width
            ):
                continue
            if not self._splittable(neighbor):
                continue

            spawned.extend(self.split(neighbor))
            qualified = True

        if (
            qualified
            and not (cell.expired and cell.width < config.expired_min_width)
            and self._splittable(cell)
        ):
            spawned.extend(self.split(cell))
        return spawned

    # --- Generation Loop ---

    def advance_generation(self) -> GenerationReport:
        """
        Runs one generation.

        1. integrate every active cell by the current step rate,
        2. retire the cells that stopped (colour, render queue, telemetry),
        3. split a lone childless root so the sweep always has cells to refine,
        4. drop parents whose children have all stopped,
        5. run the divergence pass over the newly stopped cells.

        Raises:
            NumericalDivergenceError: If a cell's state blew up. Nothing of
                the failed generation is applied.
        """
        start = time.perf_counter()
        generation = self._generation + 1
        update_steps = self.update_steps

        cells = [self._active[i] for i in sorted(self._active)]
        batch = PendulumBatch.from_rows([c.phase_row() for c in cells])
        try:
            advanced = self._scheduler.integrate(
                batch, update_steps, self._config.step_delta, self._config.gravity
            )
        except NumericalDivergenceError as err:
            logger.error("generation %d aborted: %s", generation, err)
            raise
        self._generation = generation

        newly_stopped: List[Cell] = []
        still_active: Dict[int, Cell] = {}
        for i, cell in enumerate(cells):
            cell.apply_row(advanced.row(i))
            if cell.stopped:
                newly_stopped.append(cell)
            else:
                still_active[cell.id] = cell

        for cell in newly_stopped:
            self._retire(cell)
        self._active = still_active

        spawned: List[Cell] = []
        if len(self) == 1:
            (root,) = self.cells()
            if not root.children and root.id not in self._marked:
                if not root.stopped:
                    root.stop()
                    del self._active[root.id]
                    self._retire(root)
                    newly_stopped.append(root)
                logger.debug("bootstrap split of cell %d", root.id)
                spawned.extend(self.split(root))

        removed = 0
        for cell in newly_stopped:
            if self.can_remove(cell.parent_id):
                self._remove(cell.parent_id)
                removed += 1

        for cell in newly_stopped:
            if cell.id in self._done:
                spawned.extend(self.dive(cell))

        self._promote_backlog()

        report = GenerationReport(
            generation=generation,
            update_steps=update_steps,
            spawned=len(spawned),
            stopped=len(newly_stopped),
            removed=removed,
            active=len(self._active),
            done=len(self._done),
            backlog=len(self._backlog),
            average_steps=self._average.get(),
            elapsed=time.perf_counter() - start,
        )
        if generation % 100 == 0:
            logger.info(
                "generation %d: active %d, backlog %d, done %d, avg steps %.1f",
                generation,
                report.active,
                report.backlog,
                report.done,
                report.average_steps,
            )
        return report

    def run(
        self, max_generations: int, progress_bar: bool = False
    ) -> List[GenerationReport]:
        """
        Advances generations until no cell is running or the limit is hit.

        Returns:
            The report of every generation that ran.
        """
        reports = []
        iterator = range(max_generations)
        if progress_bar:
            iterator = tqdm(iterator, desc="Generations")
        for _ in iterator:
            if not self._active and not self._backlog:
                break
            reports.append(self.advance_generation())
        return reports

    def close(self) -> None:
        """Shuts down the scheduler's worker pool."""
        self._scheduler.close()

    def __enter__(self) -> "PendulumFamily":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
