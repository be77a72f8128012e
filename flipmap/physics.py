"""
physics.py

Equations of motion, time stepping and the flip detector for the planar
double pendulum with two equal point masses.

State of one pendulum: [theta1, theta2, dtheta1, dtheta2]
Convention: 0 is vertically DOWN. Angles are never wrapped.

All functions accept scalars or numpy arrays, so a whole batch of cells can
be advanced with a single vectorised call.
"""

from dataclasses import dataclass, fields
from typing import Dict, List, Tuple, Union

import numpy as np

G = 9.81
STEP_DELTA = 0.01

ArrayLike = Union[float, np.ndarray]


class NumericalDivergenceError(ArithmeticError):
    """
    Raised when the state of a pendulum stops being finite.

    The physical model has broken down for that cell, so the generation in
    which it happened cannot be applied.
    """

    def __init__(self, cell_id: int, state: Dict[str, float]):
        super().__init__(cell_id, state)
        self.cell_id = cell_id
        self.state = state

    def __str__(self) -> str:
        values = ", ".join(f"{k}={v!r}" for k, v in self.state.items())
        return f"non-finite state for cell {self.cell_id}: {values}"


# --- 1. Equations of Motion ---


def accelerations(
    theta1: ArrayLike,
    theta2: ArrayLike,
    dtheta1: ArrayLike,
    dtheta2: ArrayLike,
    l1: ArrayLike,
    l2: ArrayLike,
    g: float = G,
) -> Tuple[ArrayLike, ArrayLike]:
    """
    Angular accelerations of both arms.

    Returns:
        (d2theta1, d2theta2)
    """
    delta = theta1 - theta2
    s, c = np.sin(delta), np.cos(delta)

    # Shared denominator term
    a = 2.0 * l1 + l2 - l2 * np.cos(2.0 * theta1 - 2.0 * theta2)

    d2theta1 = (
        -g * (2.0 * l1 + l2) * np.sin(theta1)
        - l2 * g * np.sin(theta1 - 2.0 * theta2)
        - 2.0 * s * l2 * (dtheta2**2 * l2 - dtheta1**2 * l1 * c)
    ) / (l1 * a)

    d2theta2 = (
        2.0
        * s
        * (
            dtheta1**2 * l1 * (l1 + l2)
            + g * (l1 + l2) * np.cos(theta1)
            + dtheta2**2 * l2**2 * c
        )
    ) / (l2 * a)

    return d2theta1, d2theta2


def semi_implicit_step(
    theta1: ArrayLike,
    theta2: ArrayLike,
    dtheta1: ArrayLike,
    dtheta2: ArrayLike,
    l1: ArrayLike,
    l2: ArrayLike,
    dt: float = STEP_DELTA,
    g: float = G,
) -> Tuple[ArrayLike, ...]:
    """
    One semi-implicit Euler step: velocities are updated before positions.

    Returns:
        (theta1, theta2, dtheta1, dtheta2, d2theta1, d2theta2) after the step.
    """
    d2theta1, d2theta2 = accelerations(theta1, theta2, dtheta1, dtheta2, l1, l2, g)

    dtheta1 = dtheta1 + d2theta1 * dt
    dtheta2 = dtheta2 + d2theta2 * dt

    theta1 = theta1 + dtheta1 * dt
    theta2 = theta2 + dtheta2 * dt

    return theta1, theta2, dtheta1, dtheta2, d2theta1, d2theta2


def flipped(theta2: ArrayLike, prev: ArrayLike, dtheta2: ArrayLike) -> ArrayLike:
    """
    Detects the second arm crossing the +/- pi boundary.

    A crossing only counts when it agrees with the sign of the angular
    velocity. A non-finite `prev` (no history yet) never triggers.
    """
    pi = np.pi
    down = (theta2 < -pi) & (prev > -pi)
    forward = dtheta2 > 0.0
    backward = dtheta2 < 0.0
    crossed = (forward & (down | ((theta2 > pi) & (prev < pi)))) | (
        backward & (down | ((theta2 < pi) & (prev > pi)))
    )
    return np.isfinite(prev) & crossed


def get_coords(
    theta1: ArrayLike,
    theta2: ArrayLike,
    l1: float = 1.0,
    l2: float = 1.0,
) -> Tuple[ArrayLike, ...]:
    """
    Converts angles to Cartesian coordinates for both bobs.
    Convention: (0,0) is the pivot, +y is Up, +x is Right.
    """
    x1 = l1 * np.sin(theta1)
    y1 = -l1 * np.cos(theta1)
    x2 = x1 + l2 * np.sin(theta2)
    y2 = y1 - l2 * np.cos(theta2)
    return x1, y1, x2, y2


# --- 2. Batched Integration ---


@dataclass
class PendulumBatch:
    """
    Dynamical state of a set of cells, stored as parallel arrays.

    This is the only thing handed to workers: it holds numbers, not cells,
    and integrating it never touches the cells it was built from.

    Attributes:
        ids: Cell ids.
        theta1, theta2: Arm angles.
        dtheta1, dtheta2: Angular velocities.
        d2theta1, d2theta2: Angular accelerations of the last step.
        l1, l2: Arm lengths.
        prev: theta2 before the last step (+inf before the first one).
        steps: Steps taken so far.
        ceiling: Step budget; reaching it expires the cell.
        stopped: Integration halted.
        expired: Halted by the budget rather than by a flip.
    """

    ids: np.ndarray
    theta1: np.ndarray
    theta2: np.ndarray
    dtheta1: np.ndarray
    dtheta2: np.ndarray
    d2theta1: np.ndarray
    d2theta2: np.ndarray
    l1: np.ndarray
    l2: np.ndarray
    prev: np.ndarray
    steps: np.ndarray
    ceiling: np.ndarray
    stopped: np.ndarray
    expired: np.ndarray

    def __len__(self) -> int:
        return len(self.ids)

    @classmethod
    def from_rows(cls, rows: List[dict]) -> "PendulumBatch":
        """Builds a batch from one dict of field values per cell."""
        dtypes = {
            "ids": np.int64,
            "steps": np.int64,
            "ceiling": np.int64,
            "stopped": bool,
            "expired": bool,
        }
        columns = {}
        for f in fields(cls):
            dtype = dtypes.get(f.name, np.float64)
            columns[f.name] = np.array([row[f.name] for row in rows], dtype=dtype)
        return cls(**columns)

    @classmethod
    def concatenate(cls, batches: List["PendulumBatch"]) -> "PendulumBatch":
        """Joins batches in order."""
        if not batches:
            return cls.from_rows([])
        return cls(
            **{
                f.name: np.concatenate([getattr(b, f.name) for b in batches])
                for f in fields(cls)
            }
        )

    def take(self, index) -> "PendulumBatch":
        """Sub-batch selected by a slice, mask or index array (copied)."""
        return PendulumBatch(
            **{f.name: np.array(getattr(self, f.name)[index]) for f in fields(self)}
        )

    def copy(self) -> "PendulumBatch":
        return self.take(slice(None))

    def chunks(self, size: int) -> List["PendulumBatch"]:
        """Splits the batch into consecutive pieces of at most `size` cells."""
        return [self.take(slice(i, i + size)) for i in range(0, len(self), size)]

    def row(self, i: int) -> dict:
        """Field values of the i-th cell as plain Python scalars."""
        return {f.name: getattr(self, f.name)[i].item() for f in fields(self)}

    def integrate(
        self, n_steps: int, dt: float = STEP_DELTA, g: float = G
    ) -> "PendulumBatch":
        """
        Advances every running cell by up to `n_steps` steps.

        Cells stop individually, either on a flip of the second arm or on
        reaching their step budget. The batch itself is left unchanged; the
        advanced state is returned as a new batch.

        Raises:
            NumericalDivergenceError: If a cell's state becomes non-finite.
        """
        out = self.copy()
        for _ in range(n_steps):
            live = out._expire()
            idx = np.flatnonzero(live)
            if idx.size == 0:
                break
            out._advance(idx, dt, g)
        out._expire()
        return out

    def _expire(self) -> np.ndarray:
        # Marks cells at their budget as expired; returns the still running mask.
        live = ~self.stopped
        expire = live & (self.steps >= self.ceiling)
        if expire.any():
            self.stopped |= expire
            self.expired |= expire
            live &= ~expire
        return live

    def _advance(self, idx: np.ndarray, dt: float, g: float) -> None:
        self.steps[idx] += 1

        theta1, theta2, dtheta1, dtheta2, d2theta1, d2theta2 = semi_implicit_step(
            self.theta1[idx],
            self.theta2[idx],
            self.dtheta1[idx],
            self.dtheta2[idx],
            self.l1[idx],
            self.l2[idx],
            dt,
            g,
        )

        state = np.vstack([theta1, theta2, dtheta1, dtheta2, d2theta1, d2theta2])
        bad = ~np.isfinite(state).all(axis=0)
        if bad.any():
            j = int(np.flatnonzero(bad)[0])
            k = idx[j]
            # Last finite state, with the accelerations that broke it
            raise NumericalDivergenceError(
                int(self.ids[k]),
                {
                    "l1": float(self.l1[k]),
                    "l2": float(self.l2[k]),
                    "theta1": float(self.theta1[k]),
                    "dtheta1": float(self.dtheta1[k]),
                    "d2theta1": float(d2theta1[j]),
                    "theta2": float(self.theta2[k]),
                    "dtheta2": float(self.dtheta2[k]),
                    "d2theta2": float(d2theta2[j]),
                    "steps": int(self.steps[k]),
                },
            )

        self.theta1[idx] = theta1
        self.theta2[idx] = theta2
        self.dtheta1[idx] = dtheta1
        self.dtheta2[idx] = dtheta2
        self.d2theta1[idx] = d2theta1
        self.d2theta2[idx] = d2theta2

        stop = flipped(theta2, self.prev[idx], dtheta2)
        self.stopped[idx[stop]] = True
        self.prev[idx] = theta2


def integrate_batch(
    batch: PendulumBatch, n_steps: int, dt: float = STEP_DELTA, g: float = G
) -> PendulumBatch:
    """Module level entry point for worker pools (must be picklable)."""
    return batch.integrate(n_steps, dt, g)
