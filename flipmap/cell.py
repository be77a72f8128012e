"""
A single sample of the basin map.

A cell is one double pendulum started from the angles its anchor maps to,
together with the square footprint of the map it stands for, its place in
the subdivision tree and the ids of its edge-adjacent cells.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Set, Tuple

from matplotlib.colors import hsv_to_rgb

from .configs import FractalConfig

Color = Tuple[float, float, float]

WHITE: Color = (1.0, 1.0, 1.0)
GRAY: Color = (0.5, 0.5, 0.5)

# Phase state fields exchanged with physics.PendulumBatch
_PHASE_FIELDS = (
    "theta1",
    "theta2",
    "dtheta1",
    "dtheta2",
    "d2theta1",
    "d2theta2",
    "prev",
    "steps",
)


def step_color(steps: int, expired: bool, color_step: int, color_period: int) -> Color:
    """
    Display colour of a stopped cell.

    The hue cycles once every `color_step * color_period` steps. Expired
    cells did not converge and are drawn in neutral grey.
    """
    if expired:
        return GRAY
    hue = (steps // color_step) % color_period / color_period
    r, g, b = hsv_to_rgb([hue, 1.0, 1.0])
    return float(r), float(g), float(b)


@dataclass(frozen=True)
class CellSnapshot:
    """Read-only copy of a cell, as returned by picking."""

    id: int
    parent_id: int
    children: Tuple[int, ...]
    neighbors: Tuple[int, ...]
    anchor: Tuple[float, float]
    scale: float
    width: float
    theta1: float
    theta2: float
    dtheta1: float
    dtheta2: float
    steps: int
    stopped: bool
    expired: bool
    color: Color


@dataclass(frozen=True)
class RenderItem:
    """
    A newly stopped cell handed to the renderer.

    Attributes:
        id: Cell id.
        footprint: (x0, y0, side) of the square covered by the cell.
        color: RGB triple in [0, 1].
        stopped: Whether the cell was stopped when queued.
    """

    id: int
    footprint: Tuple[float, float, float]
    color: Color
    stopped: bool


class Cell:
    """
    One double pendulum sample.

    Geometry (anchor, arm lengths, scale) is fixed at construction. Only the
    phase state, the stop flags, the colour and the neighbour set change
    afterwards, and `stopped` never goes back to False.
    """

    def __init__(
        self,
        cell_id: int,
        anchor: Tuple[float, float],
        theta1: float,
        theta2: float,
        l1: float,
        l2: float,
        scale: float,
        /,
        *,
        parent_id: int = 0,
        ceiling: int,
        color: Color = WHITE,
    ):
        self._id = cell_id
        self._parent_id = parent_id
        self._anchor = (float(anchor[0]), float(anchor[1]))
        self._l1 = float(l1)
        self._l2 = float(l2)
        self._scale = float(scale)
        self._ceiling = int(ceiling)

        self.children: List[int] = []
        self.neighbors: Set[int] = set()

        self.theta1 = float(theta1)
        self.theta2 = float(theta2)
        self.dtheta1 = 0.0
        self.dtheta2 = 0.0
        self.d2theta1 = 0.0
        self.d2theta2 = 0.0
        self.prev = math.inf
        self.steps = 0

        self._stopped = False
        self._expired = False
        self.color = color

    @classmethod
    def from_anchor(
        cls,
        cell_id: int,
        anchor: Tuple[float, float],
        config: FractalConfig,
        scale: float,
        /,
        *,
        parent_id: int = 0,
        color: Color = WHITE,
    ) -> "Cell":
        """
        Creates a cell whose angles come from the configured angle mapping
        and whose arms have the configured arm length.
        """
        theta1, theta2 = config.mapping.angles(anchor[0], anchor[1], config.domain_width)
        return cls(
            cell_id,
            anchor,
            theta1,
            theta2,
            config.arm_length,
            config.arm_length,
            scale,
            parent_id=parent_id,
            ceiling=config.step_ceiling(scale),
            color=color,
        )

    # --- Identity & Geometry ---

    @property
    def id(self) -> int:
        return self._id

    @property
    def parent_id(self) -> int:
        """Id of the parent cell, 0 for the root."""
        return self._parent_id

    @property
    def anchor(self) -> Tuple[float, float]:
        return self._anchor

    @property
    def l1(self) -> float:
        return self._l1

    @property
    def l2(self) -> float:
        return self._l2

    @property
    def scale(self) -> float:
        return self._scale

    @property
    def ceiling(self) -> int:
        """Step budget of this cell."""
        return self._ceiling

    @property
    def width(self) -> float:
        """Half the side of the footprint square."""
        return self._scale * (self._l1 + self._l2)

    @property
    def footprint(self) -> Tuple[float, float, float]:
        """(x0, y0, side) of the footprint square."""
        w = self.width
        return self._anchor[0] - w, self._anchor[1] - w, 2.0 * w

    def contains(self, x: float, y: float) -> bool:
        """True if (x, y) lies strictly inside the footprint."""
        w = self.width
        px, py = self._anchor
        return px - w < x < px + w and py - w < y < py + w

    def adjacent(self, other: "Cell", tolerance: float) -> bool:
        """
        True if the two footprints share an edge of positive length.

        Along one axis the footprints must touch (gap equal to the sum of the
        half-widths, within `tolerance`) while overlapping along the other.
        Touching at a corner only does not count.
        """
        w2 = self.width + other.width
        dx = abs(self._anchor[0] - other._anchor[0])
        dy = abs(self._anchor[1] - other._anchor[1])
        overlap = w2 - tolerance
        return (dx < overlap and abs(dy - w2) < tolerance) or (
            dy < overlap and abs(dx - w2) < tolerance
        )

    def child_anchors(self, domain_width: float) -> List[Tuple[float, float]]:
        """
        Anchors of the quadrant children that fall inside the domain.

        Each child is half as wide as this cell, so its anchor is offset by
        half of this cell's half-width along both axes.
        """
        d = self.width / 2.0
        x, y = self._anchor
        anchors = []
        for cx in (x - d, x + d):
            for cy in (y - d, y + d):
                if 0.0 < cx < domain_width and 0.0 < cy < domain_width:
                    anchors.append((cx, cy))
        return anchors

    # --- Lifecycle ---

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def expired(self) -> bool:
        return self._expired

    def stop(self, expired: bool = False) -> None:
        """Halts integration. Stopping is permanent."""
        self._stopped = True
        self._expired = self._expired or expired

    def phase_row(self) -> dict:
        """Phase state in the layout expected by PendulumBatch.from_rows."""
        row = {name: getattr(self, name) for name in _PHASE_FIELDS}
        row.update(
            ids=self._id,
            l1=self._l1,
            l2=self._l2,
            ceiling=self._ceiling,
            stopped=self._stopped,
            expired=self._expired,
        )
        return row

    def apply_row(self, row: dict) -> None:
        """Copies integrated phase state back into the cell."""
        assert row["ids"] == self._id, "phase state belongs to another cell"
        for name in _PHASE_FIELDS:
            setattr(self, name, row[name])
        if row["stopped"]:
            self.stop(expired=row["expired"])

    def refresh_color(self, config: FractalConfig) -> Color:
        """Recomputes the display colour from the step count."""
        self.color = step_color(
            self.steps, self._expired, config.color_step, config.color_period
        )
        return self.color

    def render_item(self) -> RenderItem:
        return RenderItem(self._id, self.footprint, self.color, self._stopped)

    def snapshot(self) -> CellSnapshot:
        return CellSnapshot(
            id=self._id,
            parent_id=self._parent_id,
            children=tuple(self.children),
            neighbors=tuple(sorted(self.neighbors)),
            anchor=self._anchor,
            scale=self._scale,
            width=self.width,
            theta1=self.theta1,
            theta2=self.theta2,
            dtheta1=self.dtheta1,
            dtheta2=self.dtheta2,
            steps=self.steps,
            stopped=self._stopped,
            expired=self._expired,
            color=self.color,
        )

    def __repr__(self) -> str:
        x, y = self._anchor
        state = "expired" if self._expired else "stopped" if self._stopped else "active"
        return f"Cell(id={self._id}, anchor=({x:g}, {y:g}), scale={self._scale:g}, steps={self.steps}, {state})"
