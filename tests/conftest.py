"""Synthetic fixtures shared across the test suite."""

import matplotlib

matplotlib.use("Agg")

import anndata as ad
import numpy as np
import pandas as pd
import pytest


N_BINS = 20


def make_traj(rows: dict, n_bins: int = N_BINS) -> pd.DataFrame:
    """Build a features × bins trajectory matrix from named 1-D arrays."""
    centers = (np.arange(n_bins) + 0.5) * (100 / n_bins)
    return pd.DataFrame(
        np.vstack([np.asarray(v, dtype=float) for v in rows.values()]),
        index=list(rows.keys()),
        columns=centers,
    )


@pytest.fixture
def traj():
    return make_traj


@pytest.fixture
def rng():
    return np.random.default_rng(0)


@pytest.fixture
def ramp():
    return np.linspace(0, 1, N_BINS)


def _program_counts(rng, n_cells, n_genes, prefix):
    """Poisson counts for two cell states with distinct gene programs."""
    state = np.arange(n_cells) % 2
    rates = np.full((n_cells, n_genes), 1.0)
    half = n_genes // 2
    rates[state == 0, :half] = 6.0
    rates[state == 1, half:] = 6.0
    X = rng.poisson(rates).astype(np.float32)
    obs = pd.DataFrame(
        {
            "patient": [f"P{i % 3}" for i in range(n_cells)],
            "region": ["LV" if i % 2 else "RV" for i in range(n_cells)],
            "patient_group": ["control" if i % 3 else "DCM" for i in range(n_cells)],
            "state": state.astype(str),
        },
        index=[f"{prefix}{i}" for i in range(n_cells)],
    )
    var = pd.DataFrame(index=[f"GENE{j}" for j in range(n_genes)])
    return ad.AnnData(X=X, obs=obs, var=var)


@pytest.fixture
def rna(rng):
    return _program_counts(rng, 150, 200, "rna_")


@pytest.fixture
def gene_activity(rng):
    return _program_counts(rng, 120, 200, "atac_")


@pytest.fixture
def curve_cells(rng):
    """Cells along a 1-D curve in three ordered clusters plus an outlying cluster."""
    n = 300
    t = np.sort(rng.uniform(0, 1, n))
    emb = np.column_stack([3 * t, np.sin(np.pi * t), np.zeros((n, 3))])
    emb += rng.normal(0, 0.02, emb.shape)
    labels = np.digitize(t, [1 / 3, 2 / 3]).astype(str)

    n_out = 30
    outliers = rng.normal(0, 0.05, (n_out, 5)) + np.array([0, 5, 5, 0, 0])

    obs = pd.DataFrame(
        {
            "subcluster": np.concatenate([labels, np.full(n_out, "3")]),
            "t": np.concatenate([t, np.full(n_out, np.nan)]),
        },
        index=[f"cell{i}" for i in range(n + n_out)],
    )
    adata = ad.AnnData(X=np.zeros((n + n_out, 1), dtype=np.float32), obs=obs)
    adata.obsm["X_harmony"] = np.vstack([emb, outliers])
    return adata
