import copy
from pathlib import Path

import anndata as ad
import numpy as np
import pandas as pd
import pytest

from cardiofib_grn import pipeline
from cardiofib_grn.pipeline import (
    _anndata_to_motif_match,
    _attach_atac_metadata,
    _motif_match_to_anndata,
    run_deviation_stage,
    run_full_pipeline,
)
from cardiofib_grn.utils.io import load_config

CONFIG = Path(__file__).resolve().parent.parent / "configs" / "default_config.yaml"


def test_default_config_has_every_section():
    cfg = load_config(CONFIG)
    for section in (
        "paths", "inputs", "metadata", "coembedding", "clustering", "pairing",
        "trajectory", "tf_activity", "peak2gene", "network", "plots",
    ):
        assert section in cfg
    assert cfg["peak2gene"]["max_distance"] == 250_000
    assert cfg["tf_activity"]["fdr_cutoff"] == pytest.approx(1e-4)


def test_run_full_pipeline_requires_trajectory_clusters(tmp_path):
    cfg = {"trajectory": {"clusters": ["0"]}}
    with pytest.raises(ValueError, match="trajectory.clusters"):
        run_full_pipeline(cfg, output_dir=tmp_path)


def test_attach_atac_metadata():
    atac = ad.AnnData(
        X=np.zeros((3, 1), dtype=np.float32),
        obs=pd.DataFrame({"patient": ["P1", "P2", "P3"]}, index=["a0", "a1", "a2"]),
    )
    ga = ad.AnnData(X=np.zeros((2, 1), dtype=np.float32), obs=pd.DataFrame(index=["a2", "a0"]))
    _attach_atac_metadata(ga, atac, ["patient"])
    assert ga.obs["patient"].tolist() == ["P3", "P1"]

    stray = ad.AnnData(X=np.zeros((1, 1), dtype=np.float32), obs=pd.DataFrame(index=["x9"]))
    with pytest.raises(ValueError):
        _attach_atac_metadata(stray, atac, ["patient"])


def test_motif_match_survives_h5ad(tmp_path):
    match = pd.DataFrame(
        {"MA0001.1.GATA4": [True, False], "MA0003.1.TBX20": [False, True]},
        index=["chr1:100-200", "chr1:300-400"],
    )
    path = tmp_path / "motif_match.h5ad"
    _motif_match_to_anndata(match).write_h5ad(path)
    restored = _anndata_to_motif_match(ad.read_h5ad(path))
    pd.testing.assert_frame_equal(restored, match, check_names=False, check_index_type=False,
                                  check_column_type=False)


# ── End-to-end run on synthetic inputs ────────────────────────────────────────

GENES = ["GATA4", "TCF21", "COL1A1", "POSTN", "ACTA2", "FAP"] + [f"GENE{i}" for i in range(34)]
MOTIFS = ["MA0482.1.GATA4", "MA0830.1.TCF21", "MA0001.1.UNLISTED"]
OUTPUTS = [
    "coembedding.h5ad", "cluster_composition.csv", "cluster_markers.csv",
    "cell_pairs.csv", "pseudotime.csv", "motif_deviations.h5ad", "motif_match.h5ad",
    "trajectory_expression.csv", "tf_correlation.csv", "tf_selection.csv",
    "peak2gene_links.csv", "tf_peak_hits.csv", "grn_edges.csv", "grn_centrality.csv",
]


def _state_counts(rng, t, n_features):
    """Poisson counts where even features rise and odd features fall with t."""
    rising = np.arange(n_features) % 2 == 0
    rates = np.where(rising[None, :], 1 + 8 * t[:, None], 1 + 8 * (1 - t[:, None]))
    return rng.poisson(rates).astype(np.float32)


def _cell_obs(t, prefix):
    n = len(t)
    return pd.DataFrame(
        {
            "patient": [f"P{i % 3}" for i in range(n)],
            "region": ["LV" if i % 2 else "RV" for i in range(n)],
            "patient_group": ["control" if i % 3 else "DCM" for i in range(n)],
            "t": t,
        },
        index=[f"{prefix}{i}" for i in range(n)],
    )


@pytest.fixture
def pipeline_cfg(tmp_path, rng):
    t_rna = rng.uniform(0, 1, 160)
    t_atac = rng.uniform(0, 1, 120)
    peaks = [f"chr1:{i * 1_000_000 + 1000}-{i * 1_000_000 + 1500}" for i in range(len(GENES))]

    rna = ad.AnnData(X=_state_counts(rng, t_rna, len(GENES)), obs=_cell_obs(t_rna, "rna_"),
                     var=pd.DataFrame(index=GENES))
    atac_obs = _cell_obs(t_atac, "atac_")
    atac = ad.AnnData(X=_state_counts(rng, t_atac, len(peaks)), obs=atac_obs,
                      var=pd.DataFrame(index=peaks))
    # gene activity carries no patient metadata; the pipeline copies it from ATAC
    gene_activity = ad.AnnData(X=_state_counts(rng, t_atac, len(GENES)), obs=atac_obs[["t"]].copy(),
                               var=pd.DataFrame(index=GENES))

    rna.write_h5ad(tmp_path / "rna.h5ad")
    atac.write_h5ad(tmp_path / "atac.h5ad")
    gene_activity.write_h5ad(tmp_path / "gene_activity.h5ad")
    (tmp_path / "genes.bed").write_text("".join(
        f"chr1\t{i * 1_000_000 + 500}\t{i * 1_000_000 + 5500}\t{gene}\t0\t+\n"
        for i, gene in enumerate(GENES)
    ))

    return {
        "seed": 0,
        "paths": {
            "rna": str(tmp_path / "rna.h5ad"),
            "atac": str(tmp_path / "atac.h5ad"),
            "gene_activity": str(tmp_path / "gene_activity.h5ad"),
            "genome_fasta": str(tmp_path / "genome.fa"),
            "gene_annotation": str(tmp_path / "genes.bed"),
            "output_dir": str(tmp_path / "results"),
        },
        "coembedding": {"n_top_genes": 30, "n_components": 5, "batch_key": None, "n_neighbors": 15},
        "clustering": {"drop": ["3"], "min_cells": 5},
        "pairing": {"n_neighbors": 20},
        "trajectory": {"clusters": ["0", "1", "2"], "n_neighbors": 10, "n_comps": 5,
                       "n_bins": 10, "smooth_window": 3},
        "tf_activity": {"cor_cutoff": -1.0, "fdr_cutoff": 1.01,
                        "var_cutoff_motif": 0.0, "var_cutoff_expr": 0.0},
        "peak2gene": {"cor_cutoff": -1.0, "fdr_cutoff": 1.01},
        "network": {"cor_cutoff": 0.0, "fdr_cutoff": 1.01},
    }


def _stage_by_t(adata, **kwargs):
    adata.obs["subcluster"] = pd.cut(
        adata.obs["t"], [-0.01, 0.25, 0.5, 0.75, 1.01], labels=["0", "1", "2", "3"]
    )
    return adata


def _fake_deviations(calls):
    def compute(atac, genome_fasta, **kwargs):
        calls.append(sorted(atac.obs_names))
        t = atac.obs["t"].to_numpy()
        noise = np.random.default_rng(1).normal(0, 1.0, len(t))
        X = np.column_stack([t + 0.1 * noise, 1 - t + 0.1 * noise, 10 * noise])
        deviations = ad.AnnData(X=X.astype(np.float32), obs=atac.obs.copy(),
                                var=pd.DataFrame(index=MOTIFS))
        match = pd.DataFrame(True, index=atac.var_names, columns=MOTIFS)
        return deviations, match
    return compute


@pytest.fixture
def deviation_calls(monkeypatch):
    calls = []
    monkeypatch.setattr(pipeline, "subcluster", _stage_by_t)
    monkeypatch.setattr(pipeline, "compute_motif_deviations", _fake_deviations(calls))
    return calls


def test_run_full_pipeline_end_to_end(pipeline_cfg, deviation_calls):
    result = run_full_pipeline(pipeline_cfg)
    out = Path(pipeline_cfg["paths"]["output_dir"])

    for name in OUTPUTS:
        assert (out / name).exists(), name
    assert (out / "figures" / "umap_modality.png").exists()
    assert (out / "figures" / "umap_modality.svg").exists()
    assert (out / "figures" / "grn_network.png").exists()

    atac = ad.read_h5ad(pipeline_cfg["paths"]["atac"])
    assert deviation_calls == [sorted(atac.obs_names)]

    pairs = result["pairs"]
    assert pairs["rna_barcode"].is_unique
    assert set(pairs["atac_barcode"]) <= set(atac.obs_names)
    assert "3" not in set(result["coembedding"].obs["subcluster"].astype(str))

    pt = result["pseudotime"]
    assert set(pt.index) <= set(pairs["atac_barcode"])
    assert (atac.obs.loc[pt.index, "t"] <= 0.75).all()
    assert pt.max() == pytest.approx(100.0)

    assert set(result["tf_selection"]["TF"]) == {"GATA4", "TCF21"}
    assert not result["links"].empty
    assert set(result["grn"]["TF"]) <= {"GATA4", "TCF21"}
    assert (result["grn"]["importance"] > 0).all()


def test_rerun_with_other_trajectory_reuses_deviations(pipeline_cfg, deviation_calls):
    run_full_pipeline(pipeline_cfg)

    cfg = copy.deepcopy(pipeline_cfg)
    cfg["trajectory"]["clusters"] = ["1", "2"]
    result = run_full_pipeline(cfg)

    assert len(deviation_calls) == 1
    atac = ad.read_h5ad(pipeline_cfg["paths"]["atac"])
    t = atac.obs.loc[result["pseudotime"].index, "t"]
    assert len(t) > 0
    assert ((t > 0.25) & (t <= 0.75)).all()
    assert not result["tf_selection"].empty


def test_run_full_pipeline_without_tf_candidates(pipeline_cfg, deviation_calls):
    # only the unexpressed motif clears a strict motif variance filter
    pipeline_cfg["tf_activity"]["var_cutoff_motif"] = 0.9
    with pytest.raises(ValueError, match="No TF"):
        run_full_pipeline(pipeline_cfg)

    out = Path(pipeline_cfg["paths"]["output_dir"])
    assert pd.read_csv(out / "tf_correlation.csv").empty
    assert not (out / "figures" / "tf_selection.png").exists()


def test_deviation_cache_must_cover_atac_cells(tmp_path, monkeypatch):
    calls = []
    monkeypatch.setattr(pipeline, "compute_motif_deviations", _fake_deviations(calls))
    obs = _cell_obs(np.linspace(0, 1, 6), "atac_")
    atac = ad.AnnData(X=np.ones((6, 2), dtype=np.float32), obs=obs,
                      var=pd.DataFrame(index=["chr1:1-2", "chr1:5-6"]))
    cfg = {"paths": {"genome_fasta": str(tmp_path / "genome.fa")}}

    run_deviation_stage(atac[:3].copy(), cfg, tmp_path)
    deviations, match = run_deviation_stage(atac[:3].copy(), cfg, tmp_path)
    assert len(calls) == 1
    assert list(match.columns) == MOTIFS

    deviations, _ = run_deviation_stage(atac, cfg, tmp_path)
    assert len(calls) == 2
    assert set(deviations.obs_names) == set(atac.obs_names)

    run_deviation_stage(atac, cfg, tmp_path, force=True)
    assert len(calls) == 3
