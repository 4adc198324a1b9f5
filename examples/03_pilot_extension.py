"""
Pilot Extension Example
=======================

Fit a random-intercept model to a small pilot, then project power to
larger numbers of subjects by extending the pilot dataset.
"""

import numpy as np
import pandas as pd

from simpower import PowerSimulation, fit_model

print("=" * 60)
print("PILOT EXTENSION EXAMPLE")
print("=" * 60)

# 1. A pilot: 8 subjects, 10 trials each, condition varies within subject
rng = np.random.default_rng(7)
subjects = np.repeat(np.arange(1, 9), 10)
cond = np.tile([-0.5, 0.5], 40)
rt = 500 + 20 * cond + rng.normal(0, 30, 8)[subjects - 1] + rng.normal(0, 50, 80)
pilot = pd.DataFrame({"subj": subjects, "cond": cond, "rt": rt})

# 2. Fit the pilot model
state = fit_model("rt ~ cond + (1|subj)", pilot)
print("\n1. PILOT ESTIMATES:")
print(f"Fixed effects: {state.fixed_effects}")
for component in state.random_effects:
    print(f"Random-effect variances ({component.group}): {component.variances}")
print(f"Residual SD: {state.sigma:.2f}")

# 3. Extend to more subjects and vary the condition effect
print("\n2. PROJECTED POWER:")
sim = PowerSimulation(state, test="cond", along="subj")
sim.set_simulations(100)
sim.set_parallel(True)
sweep = sim.find_power_surface(
    sample_sizes=[10, 20, 30],
    effect_sizes=[10, 20, 30],
    checkpoint="pilot_power_partial.csv",
)
