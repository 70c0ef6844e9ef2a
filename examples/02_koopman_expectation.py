import numpy as np
from koopman_uq import simulate_data
from koopman_uq.models import lotka_volterra

model = lotka_volterra()
truth = [1.5, 1.0, 3.0, 1.0]
data = simulate_data(model, truth, np.linspace(0.0, 10.0, 51), 0.5, rng=0)

run = model.fit(
    data,
    num_samples=300,
    n_chains=2,
    sampler_options={"n_walkers": 16, "burn": 250},
    rng=3,
)
print(run.results.summary(digits=3))


def final_prey(traj):
    return traj.final[0]


# Quadrature over the posterior marginals vs plain Monte Carlo.
kq = run.expectation(final_prey, t_eval=[10.0], rtol=1e-2, max_subdivisions=200)
mc = run.expectation(final_prey, t_eval=[10.0], method="montecarlo", n_samples=300, rng=4)

print(f"koopman:     {kq.value:.5f} ± {kq.residual:.2g} ({kq.n_solves} solves, {kq.status})")
print(f"monte carlo: {mc.value:.5f} ± {mc.residual:.2g} ({mc.n_solves} solves)")
