import numpy as np
import pytest

from koopman_uq.models import exponential_decay, lotka_volterra


@pytest.fixture
def decay_model():
    return exponential_decay(u0=2.0, tspan=(0.0, 3.0)).with_solver(rtol=1e-9, atol=1e-12)


@pytest.fixture
def lv_model():
    return lotka_volterra().with_solver(rtol=1e-8, atol=1e-10)


@pytest.fixture
def lv_truth():
    return np.array([1.5, 1.0, 3.0, 1.0])
