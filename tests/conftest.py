"""Shared fixtures for nbdiff tests."""

import numpy as np
import pandas as pd
import pytest


def simulate_counts(seed=42, ngenes=300, n_per_group=3):
    """Negative binomial counts with a known mean-dispersion trend.

    Genes 0-19 are 4-fold up and genes 20-29 4-fold down in 'treated';
    the last gene is all zero.
    """
    rng = np.random.RandomState(seed)
    nsamples = 2 * n_per_group
    sf = np.array([0.8, 1.0, 1.2, 0.9, 1.1, 1.3])[:nsamples]
    base = np.exp(rng.uniform(np.log(5), np.log(2000), ngenes))
    alpha = 0.05 + 1.0 / base
    fold = np.ones(ngenes)
    fold[:20] = 4.0
    fold[20:30] = 0.25
    group = np.repeat([0, 1], n_per_group)

    mu = base[:, None] * sf[None, :] * np.where(group[None, :] == 1, fold[:, None], 1.0)
    size = 1.0 / alpha[:, None]
    counts = rng.negative_binomial(size, size / (size + mu)).astype(np.float64)
    counts[-1] = 0

    genes = [f"gene{i + 1}" for i in range(ngenes)]
    samples = [f"S{j + 1}" for j in range(nsamples)]
    counts = pd.DataFrame(counts, index=genes, columns=samples)
    coldata = pd.DataFrame({'condition': np.where(group == 1, 'treated', 'untreated')},
                           index=samples)
    return counts, coldata


@pytest.fixture
def rng():
    """Seeded random number generator for reproducibility."""
    return np.random.RandomState(42)


@pytest.fixture(scope="session")
def sim_data():
    """300 genes x 6 samples (3 untreated, 3 treated)."""
    return simulate_counts()


@pytest.fixture(scope="session")
def sim_dataset(sim_data):
    """Dataset with size factors from the simulated counts."""
    import nbdiff as nd
    counts, coldata = sim_data
    ds = nd.make_dataset(counts, coldata, reference='untreated')
    return nd.estimate_size_factors(ds)


@pytest.fixture(scope="session")
def sim_disp(sim_dataset):
    """Dispersion fit on the simulated dataset."""
    import nbdiff as nd
    return nd.estimate_dispersions(sim_dataset)


@pytest.fixture(scope="session")
def sim_glm(sim_dataset, sim_disp):
    """GLM fit on the simulated dataset."""
    import nbdiff as nd
    return nd.nb_glm_fit(sim_dataset, sim_disp)


@pytest.fixture(scope="session")
def sim_wald(sim_glm):
    """Wald test of treated vs untreated."""
    import nbdiff as nd
    return nd.nbinom_wald_test(sim_glm)


@pytest.fixture
def four_gene_data():
    """Four genes x four samples: one clear change, one flat gene."""
    counts = pd.DataFrame(
        [[100, 110, 10, 12],
         [50, 51, 50, 49],
         [30, 60, 45, 20],
         [80, 40, 70, 120]],
        index=['A', 'B', 'C', 'D'],
        columns=['s1', 's2', 's3', 's4'])
    samples = pd.DataFrame(
        {'condition': ['treated', 'treated', 'untreated', 'untreated']},
        index=['s1', 's2', 's3', 's4'])
    return counts, samples
