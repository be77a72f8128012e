"""
Configuration objects for the basin map and its parallel integration.

This module gathers every tunable of the simulation in a few dataclasses so
that the manager, the cells and the scheduler never depend on module level
constants.
"""

import math
import os
from dataclasses import dataclass, field
from typing import Literal, Optional


@dataclass
class AngleMapping:
    """
    Linear map from pixel space to the initial pendulum angles.

    A point (x, y) of a square domain of side `width` is mapped to

        theta1 = theta1_min + x / width * theta1_span
        theta2 = theta2_min + y / width * theta2_span

    Attributes:
        theta1_min: Angle of the first arm at x = 0.
        theta1_span: Range of the first arm angle across the domain.
        theta2_min: Angle of the second arm at y = 0.
        theta2_span: Range of the second arm angle across the domain.

    Example:
        >>> mapping = AngleMapping()
        >>> mapping.angles(1024.0, 1024.0, 2048.0)
        (3.141592653589793, 1.5707963267948966)
    """

    theta1_min: float = 0.0
    theta1_span: float = 2.0 * math.pi
    theta2_min: float = 0.0
    theta2_span: float = math.pi

    def angles(self, x: float, y: float, width: float) -> tuple:
        """Initial (theta1, theta2) for an anchor at (x, y)."""
        theta1 = self.theta1_min + x / width * self.theta1_span
        theta2 = self.theta2_min + y / width * self.theta2_span
        return theta1, theta2

    @classmethod
    def full_turn(cls) -> 'AngleMapping':
        """Preset covering a full turn on both axes."""
        return cls(theta2_span=2.0 * math.pi)


@dataclass
class FractalConfig:
    """
    Scene and refinement parameters for the adaptive basin map.

    Lengths are in pixels of the square domain. Step counts are numbers of
    integrator steps of size `step_delta`.

    Attributes:
        domain_width: Side of the square domain.
        gravity: Gravitational acceleration.
        step_delta: Integrator time step.
        divergence_threshold: Neighbouring cells whose step count ratio
            min/max falls below this value are refined.
        min_dive_width: Cells with a footprint half-width at or below this
            value are never split. Also sets the adjacency tolerance
            (min_dive_width / 4).
        expired_min_width: Pairs of expired cells are not refined below
            this half-width.
        max_steps: Step budget after which a cell expires.
        scale_ceiling: If True the budget is max_steps / scale, so finer
            cells may run longer.
        color_step: Number of steps per hue increment.
        color_period: Number of hue increments per full colour cycle.
        base_steps: Minimum number of steps per generation.
        growth_a, growth_b: Step rate growth constants, see update_steps.
        max_update_steps: Upper bound for the step rate.
        max_cells: Optional hard cap on the cell population. Once reached no
            more cells are split.
        max_active: Optional limit on the number of integrating cells. Extra
            cells wait in a backlog.
        average_window: Window of the stop step rolling average.
        mapping: Pixel to angle mapping.

    Example:
        >>> config = FractalConfig(divergence_threshold=0.8)
        >>> fast = config.copy(max_steps=5000)
    """

    domain_width: float = 2048.0
    gravity: float = 9.81
    step_delta: float = 0.01
    divergence_threshold: float = 0.9
    min_dive_width: float = 8.0
    expired_min_width: float = 32.0
    max_steps: int = 1_200_000
    scale_ceiling: bool = False
    color_step: int = 16
    color_period: int = 360
    base_steps: int = 100
    growth_a: float = 150.0
    growth_b: float = 2.0
    max_update_steps: int = 2000
    max_cells: Optional[int] = None
    max_active: Optional[int] = None
    average_window: int = 100
    mapping: AngleMapping = field(default_factory=AngleMapping)

    def __post_init__(self):
        if self.domain_width <= 0:
            raise ValueError("domain_width must be positive")
        if self.step_delta <= 0:
            raise ValueError("step_delta must be positive")
        if not 0.0 < self.divergence_threshold <= 1.0:
            raise ValueError("divergence_threshold must lie in (0, 1]")
        if self.min_dive_width <= 0:
            raise ValueError("min_dive_width must be positive")
        if self.max_steps < 1:
            raise ValueError("max_steps must be at least 1")
        if self.color_step < 1 or self.color_period < 1:
            raise ValueError("color_step and color_period must be at least 1")
        if self.growth_a <= 0 or self.growth_b <= 0:
            raise ValueError("growth constants must be positive")
        if self.base_steps < 0:
            raise ValueError("base_steps must be non-negative")
        if self.max_update_steps < max(1, self.base_steps):
            raise ValueError("max_update_steps must be at least base_steps")
        if self.max_cells is not None and self.max_cells < 1:
            raise ValueError("max_cells must be positive or None")
        if self.max_active is not None and self.max_active < 1:
            raise ValueError("max_active must be positive or None")
        if self.average_window < 1:
            raise ValueError("average_window must be at least 1")

    @property
    def arm_length(self) -> float:
        """Arm length of every cell, derived from the domain width."""
        return self.domain_width / 4.0

    @property
    def adjacency_tolerance(self) -> float:
        return self.min_dive_width / 4.0

    def update_steps(self, generation: int) -> int:
        """
        Number of integrator steps per cell for a given generation.

            steps = base_steps + exp(exp(generation / growth_a) / growth_b)

        clamped to max_update_steps. Growth is slow for early generations and
        fast later on, so coarse cells resolve quickly and fine detail gets a
        finer time resolution.
        """
        try:
            growth = math.exp(math.exp(generation / self.growth_a) / self.growth_b)
        except OverflowError:
            return self.max_update_steps
        return min(self.max_update_steps, self.base_steps + int(growth))

    def step_ceiling(self, scale: float) -> int:
        """Step budget of a cell with the given scale."""
        if self.scale_ceiling:
            return int(self.max_steps / scale)
        return self.max_steps

    def copy(self, **overrides) -> 'FractalConfig':
        """
        Create a copy with optional parameter overrides.

        Example:
            >>> base = FractalConfig()
            >>> coarse = base.copy(min_dive_width=32.0)
        """
        import copy
        new_config = copy.copy(self)
        for key, value in overrides.items():
            if hasattr(new_config, key):
                setattr(new_config, key, value)
            else:
                raise ValueError(f"Unknown parameter: {key}")
        new_config.__post_init__()
        return new_config

    @classmethod
    def preview(cls) -> 'FractalConfig':
        """Preset for a small, quickly converging map."""
        return cls(
            domain_width=256.0,
            min_dive_width=4.0,
            expired_min_width=16.0,
            max_steps=20_000,
            base_steps=50,
            max_update_steps=500,
        )


@dataclass
class ParallelConfig:
    """
    Configuration for the parallel integration of a generation.

    Attributes:
        enabled: Whether to use a worker pool at all.
        n_jobs: Number of workers (-1 = all cores, 1 = no parallel).
        backend: 'thread' for a ThreadPoolExecutor, 'process' for a
            ProcessPoolExecutor.
        chunk_size: Cells per work item. None picks a size giving about four
            work items per worker.
        queue_size: Maximum number of work items in flight. None means twice
            the number of workers.

    Example:
        >>> # Use defaults (no parallelization)
        >>> config = ParallelConfig()
        >>>
        >>> # Four worker processes
        >>> config = ParallelConfig.processes(4)
    """

    enabled: bool = False
    n_jobs: int = -1
    backend: Literal['thread', 'process'] = 'thread'
    chunk_size: Optional[int] = None
    queue_size: Optional[int] = None

    def __post_init__(self):
        if self.backend not in ('thread', 'process'):
            raise ValueError(f"Unknown backend: {self.backend}")
        if self.n_jobs == 0 or self.n_jobs < -1:
            raise ValueError("n_jobs must be -1 or a positive integer")
        if self.chunk_size is not None and self.chunk_size < 1:
            raise ValueError("chunk_size must be positive or None")
        if self.queue_size is not None and self.queue_size < 1:
            raise ValueError("queue_size must be positive or None")

    @property
    def n_workers(self) -> int:
        """Resolved number of workers."""
        if not self.enabled:
            return 1
        if self.n_jobs == -1:
            return os.cpu_count() or 1
        return self.n_jobs

    def copy(self, **overrides) -> 'ParallelConfig':
        """
        Create a copy with optional parameter overrides.

        Example:
            >>> base = ParallelConfig(enabled=False)
            >>> parallel = base.copy(enabled=True, n_jobs=4)
        """
        import copy
        new_config = copy.copy(self)
        for key, value in overrides.items():
            if hasattr(new_config, key):
                setattr(new_config, key, value)
            else:
                raise ValueError(f"Unknown parameter: {key}")
        new_config.__post_init__()
        return new_config

    @classmethod
    def threads(cls, n: int = -1) -> 'ParallelConfig':
        """Preset for a thread pool with n workers."""
        return cls(enabled=True, n_jobs=n, backend='thread')

    @classmethod
    def processes(cls, n: int = -1) -> 'ParallelConfig':
        """Preset for a process pool with n workers."""
        return cls(enabled=True, n_jobs=n, backend='process')

    @classmethod
    def serial(cls) -> 'ParallelConfig':
        """Preset for serial (non-parallel) computation."""
        return cls(enabled=False, n_jobs=1)
