import numpy as np
import matplotlib.pyplot as plt
from koopman_uq import simulate_data
from koopman_uq.models import lotka_volterra

model = lotka_volterra(u0=(1.0, 1.0), tspan=(0.0, 10.0))
truth = {"alpha": 1.5, "beta": 1.0, "gamma": 3.0, "delta": 1.0}

# Observe both species every 0.1 time units with sd 0.8 noise.
t_obs = np.arange(0.0, 10.0 + 1e-9, 0.1)
data = simulate_data(model, truth, t_obs, 0.8, rng=0)

run = model.fit(
    data,
    num_samples=400,
    n_chains=2,
    sampler_options={"n_walkers": 16, "burn": 300},
    rng=1,
)
print(run.summary())
print(run.results.summary(digits=3))

for d in run.chain.diagnostics:
    print(f"chain {d.chain}: acceptance={d.acceptance_fraction:.2f} success={d.success}")

fig, ax = run.plot(band_options={"nsamples": 100, "rng": 2}, show_params=True)
ax.set_title("Lotka-Volterra posterior")
run.plot_trace()
plt.show()
