import logging

import matplotlib.pyplot as plt

from flipmap import FractalConfig, ParallelConfig, PendulumFamily
from flipmap.visualisation import plot_basins, plot_step_histogram

logging.basicConfig(level=logging.INFO)


# Set the scene: a small domain that resolves in a few hundred generations.
config = FractalConfig.preview().copy(max_cells=50_000)

# Integrate on four worker threads.
family = PendulumFamily(config, ParallelConfig.threads(4))
family.seed()

# Run until every cell has stopped.
reports = family.run(max_generations=2000, progress_bar=True)
last = reports[-1]
print(
    f"{last.generation} generations, {last.done} cells done, "
    f"average flip time {last.average_steps:.0f} steps"
)

# Inspect one cell of the map.
snapshot = family.pick(config.domain_width / 3, config.domain_width / 3)
if snapshot is not None:
    print(f"cell {snapshot.id}: {snapshot.steps} steps, expired={snapshot.expired}")

fig, (ax1, ax2) = plt.subplots(1, 2, figsize=(14, 6))
plot_basins(family, ax=ax1)
plot_step_histogram(family, ax=ax2)
plt.tight_layout()
plt.show()

family.close()
