"""
visualisation.py

Consumers of the basin map: rasterisation of the cell population into an
RGB image, a static plot and a generation-by-generation animation.
"""

import numpy as np
import matplotlib.pyplot as plt
from matplotlib.animation import FuncAnimation

from . import physics as phys


# --- 1. Rasterisation ---


def rasterize(family, resolution=512, background=(1.0, 1.0, 1.0)):
    """
    Paints every cell footprint into an RGB image.

    Larger cells are painted first so refined cells end up on top. Running
    cells show the colour inherited from their parent.

    Args:
        family: A PendulumFamily.
        resolution: Side of the square image in pixels.
        background: Colour of uncovered pixels.

    Returns:
        image: Array of shape (resolution, resolution, 3), rows along y.
    """
    image = np.empty((resolution, resolution, 3))
    image[:] = background

    k = resolution / family.config.domain_width
    cells = sorted(family.cells(), key=lambda c: (-c.width, c.stopped, c.id))
    for cell in cells:
        x0, y0, side = cell.footprint
        j0, j1 = int(np.floor(x0 * k)), int(np.ceil((x0 + side) * k))
        i0, i1 = int(np.floor(y0 * k)), int(np.ceil((y0 + side) * k))
        image[max(i0, 0) : max(i1, 0), max(j0, 0) : max(j1, 0)] = cell.color
    return image


# --- 2. Static Plots ---


def plot_basins(family, ax=None, resolution=512, show_pendulums=False, max_pendulums=200):
    """
    Shows the current basin map.

    Args:
        family: A PendulumFamily.
        ax: Matplotlib Axes object. If None, a new figure is created.
        resolution: Raster resolution.
        show_pendulums: Draw the arms of running cells on top of the map.
        max_pendulums: Upper bound on the number of arms drawn.

    Returns:
        ax: The axis object.
        image: The AxesImage.
    """
    if ax is None:
        fig, ax = plt.subplots(figsize=(7, 7))

    width = family.config.domain_width
    image = ax.imshow(
        rasterize(family, resolution),
        extent=(0.0, width, width, 0.0),
        interpolation="nearest",
    )

    if show_pendulums:
        running = [c for c in family.cells() if not c.stopped][:max_pendulums]
        for cell in running:
            x1, y1, x2, y2 = phys.get_coords(
                cell.theta1, cell.theta2, cell.scale * cell.l1, cell.scale * cell.l2
            )
            px, py = cell.anchor
            # Image rows grow downwards, physics y grows upwards
            ax.plot([px, px + x1, px + x2], [py, py - y1, py - y2], "k-", lw=1)

    ax.set_xlabel(r"$\theta_1$")
    ax.set_ylabel(r"$\theta_2$")
    ax.set_title(f"Flip time basins (generation {family.generation})")
    return ax, image


def plot_step_histogram(family, ax=None, bins=50):
    """Histogram of step counts of the stopped, non-expired cells."""
    if ax is None:
        fig, ax = plt.subplots(figsize=(7, 4))
    steps = [c.steps for c in family.cells() if c.stopped and not c.expired]
    ax.hist(steps, bins=bins, color="royalblue")
    ax.set_xlabel("steps until flip")
    ax.set_ylabel("cells")
    ax.grid(True, alpha=0.3)
    return ax


# --- 3. Animations ---


def animate_generations(family, frames, resolution=256, interval=40):
    """
    Animation that advances the family by one generation per frame.
    """
    fig, ax = plt.subplots(figsize=(6, 6))
    _, image = plot_basins(family, ax=ax, resolution=resolution)
    text = ax.text(0.02, 0.97, "", transform=ax.transAxes, va="top")

    def update(i):
        if family.active_count() or family.backlog_count():
            report = family.advance_generation()
            text.set_text(
                f"gen {report.generation}: {report.active} active, {report.done} done"
            )
        image.set_data(rasterize(family, resolution))
        return image, text

    return FuncAnimation(fig, update, frames=frames, interval=interval, blit=True)
