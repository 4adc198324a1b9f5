"""
Two-Group Power Example
=======================

How many participants per group are needed to detect a 5-point difference
between two groups on a count outcome with SD 10 (Cohen's d = 0.5)?
"""

from simpower import PowerSimulation, TwoGroupRecipe, save_power_table

print("=" * 60)
print("TWO-GROUP POWER EXAMPLE")
print("=" * 60)

# 1. Describe one study: 10 per group, means 25 and 20, SD 10
recipe = TwoGroupRecipe(n_a=10, n_b=10, mean_a=25, sd_a=10, mean_b=20, sd_b=10)
sim = PowerSimulation(recipe)
sim.set_simulations(1000)

# 2. Power of the study as planned (low, roughly 0.2)
print("\n1. POWER WITH 10 PER GROUP:")
result = sim.find_power()

# 3. Sweep group sizes and effect sizes (Cohen's d)
print("\n2. POWER SURFACE:")
sweep = sim.find_power_surface(
    sample_sizes=[10, 20, 40, 60, 80, 100],
    effect_sizes=[0.3, 0.5, 0.8],
)

print("\nSmallest group size reaching 80% power, per effect size:")
for effect, n in sweep.first_achieved(0.8).items():
    print(f"  d = {effect}: {n if n is not None else 'not reached'}")

# 4. Keep the table for later
save_power_table(sweep.table, "two_groups_power.csv")
