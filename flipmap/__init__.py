"""
Adaptive flip-time basin maps of the double pendulum.

Modules:
    configs       - Scene, refinement and parallelism settings.
    physics       - Equations of motion, batched integration, flip detection.
    cell          - One sample of the map and its footprint.
    family        - The adaptive partition and the generation loop.
    scheduler     - Parallel integration of a generation.
    rolling       - Rolling average used for telemetry.
    visualisation - Rasterisation and plots.
"""

from .configs import AngleMapping, FractalConfig, ParallelConfig

from .physics import (
    G,
    STEP_DELTA,
    NumericalDivergenceError,
    PendulumBatch,
    accelerations,
    semi_implicit_step,
    flipped,
    get_coords,
    integrate_batch,
)

from .cell import Cell, CellSnapshot, RenderItem, step_color

from .rolling import RollingAverage

from .scheduler import StepScheduler

from .family import GenerationReport, PendulumFamily
