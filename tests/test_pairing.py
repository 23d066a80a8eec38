import anndata as ad
import numpy as np
import pandas as pd
import pytest

from cardiofib_grn.pairing import PAIR_COLUMNS, build_paired_object, pair_cells, pair_coembedded


@pytest.fixture
def twin_embeddings(rng):
    base = rng.normal(size=(50, 5))
    atac = pd.DataFrame(base, index=[f"a{i}" for i in range(50)])
    rna = pd.DataFrame(
        np.vstack([base + rng.normal(0, 1e-3, base.shape), rng.normal(size=(20, 5)) + 20]),
        index=[f"r{i}" for i in range(70)],
    )
    return atac, rna


def test_pair_cells_finds_nearest_twins(twin_embeddings):
    atac, rna = twin_embeddings
    pairs = pair_cells(atac, rna, n_neighbors=5)
    assert list(pairs.columns) == PAIR_COLUMNS
    assert len(pairs) == 50
    expected = pairs["atac_barcode"].str.replace("a", "r", regex=False)
    assert (pairs["rna_barcode"] == expected).all()
    assert (pairs["distance"] < 0.01).all()


def test_pair_cells_uses_each_rna_cell_once(rng):
    atac = pd.DataFrame(rng.normal(size=(40, 3)), index=[f"a{i}" for i in range(40)])
    rna = pd.DataFrame(rng.normal(size=(25, 3)), index=[f"r{i}" for i in range(25)])
    pairs = pair_cells(atac, rna, n_neighbors=3, chunk_size=7)
    assert pairs["rna_barcode"].is_unique
    assert pairs["atac_barcode"].is_unique
    assert len(pairs) <= 25


def test_pair_cells_input_errors(twin_embeddings):
    atac, rna = twin_embeddings
    with pytest.raises(ValueError):
        pair_cells(atac.iloc[:0], rna)
    with pytest.raises(ValueError):
        pair_cells(atac, rna.iloc[:, :3])


def test_pair_coembedded_splits_modalities(twin_embeddings):
    atac, rna = twin_embeddings
    obs = pd.DataFrame({
        "modality": ["ATAC"] * len(atac) + ["RNA"] * len(rna),
        "barcode": list(atac.index) + list(rna.index),
    })
    obs.index = obs["modality"] + "#" + obs["barcode"]
    combined = ad.AnnData(X=np.zeros((len(obs), 1), dtype=np.float32), obs=obs)
    combined.obsm["X_harmony"] = np.vstack([atac.to_numpy(), rna.to_numpy()])

    pairs = pair_coembedded(combined, n_neighbors=5)
    assert len(pairs) == 50
    assert set(pairs["rna_barcode"]) <= set(rna.index)


def test_build_paired_object():
    rna = ad.AnnData(
        X=np.arange(12, dtype=np.float32).reshape(4, 3),
        obs=pd.DataFrame(index=["r0", "r1", "r2", "r3"]),
    )
    atac = ad.AnnData(
        X=np.ones((3, 2), dtype=np.float32),
        obs=pd.DataFrame(index=["a0", "a1", "a2"]),
    )
    pairs = pd.DataFrame({
        "atac_barcode": ["a0", "a2"],
        "rna_barcode": ["r3", "r1"],
        "distance": [0.1, 0.2],
    })
    rna_p, atac_p = build_paired_object(rna, atac, pairs)
    assert list(rna_p.obs_names) == ["a0", "a2"]
    assert list(atac_p.obs_names) == ["a0", "a2"]
    assert rna_p.obs["rna_barcode"].tolist() == ["r3", "r1"]
    assert rna_p.X[0].tolist() == [9.0, 10.0, 11.0]

    with pytest.raises(ValueError):
        build_paired_object(rna, atac, pairs.iloc[:0])
    bad = pairs.assign(rna_barcode=["r9", "r1"])
    with pytest.raises(ValueError):
        build_paired_object(rna, atac, bad)
