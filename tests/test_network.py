import numpy as np
import pandas as pd
import pytest

from cardiofib_grn import network
from cardiofib_grn.network import (
    GRN_COLUMNS,
    build_grn,
    compute_centrality_metrics,
    construct_nx_graph,
    enrich_genes,
    filter_tf_by_min_targets,
    filter_top_edges,
    motif_hits,
    remove_self_loops,
    run_network,
)
from cardiofib_grn.utils.io import load_adj


@pytest.fixture
def evidence(traj, ramp):
    tfs = pd.DataFrame({"TF": ["TF1", "TF2"], "motif": ["M1", "M2"]})
    links = pd.DataFrame({
        "peak": ["pk1", "pk2", "pk3", "pk4", "pk5"],
        "gene": ["G1", "G2", "G3", "TF1", "G1"],
    })
    hits = pd.DataFrame({
        "peak": ["pk1", "pk3", "pk2", "pk4", "pk3", "pk5"],
        "motif": ["M1", "M1", "M2", "M1", "M2", "M1"],
    })
    traj_expr = traj({
        "TF1": ramp,
        "TF2": 1 - np.sqrt(ramp),
        "G1": ramp ** 2,
        "G2": ramp,
        "G3": 1 - ramp,
    })
    return tfs, links, hits, traj_expr


def test_motif_hits():
    match = pd.DataFrame(
        {"M1": [True, False, True], "M2": [False, True, False], "M3": [True, True, True]},
        index=["pk1", "pk2", "pk3"],
    )
    hits = motif_hits(match, motifs=["M2", "M1", "MISSING"])
    assert set(zip(hits["peak"], hits["motif"])) == {("pk2", "M2"), ("pk1", "M1"), ("pk3", "M1")}
    assert len(motif_hits(match)) == 6


def test_build_grn_requires_all_evidence(evidence):
    grn = build_grn(*evidence)
    assert list(grn.columns) == GRN_COLUMNS
    edges = set(zip(grn["TF"], grn["target"]))
    # TF1→G2 lacks motif support; TF1→G3 and TF2→G2 are anti-correlated
    assert edges == {("TF1", "G1"), ("TF2", "G3")}
    assert grn.set_index(["TF", "target"]).loc[("TF1", "G1"), "n_peaks"] == 2
    assert (grn["importance"] > 0.4).all()
    assert grn["importance"].is_monotonic_decreasing


def test_build_grn_without_targets(evidence):
    tfs, links, hits, traj_expr = evidence
    grn = build_grn(tfs, links.iloc[:0], hits, traj_expr)
    assert grn.empty
    assert list(grn.columns) == GRN_COLUMNS


def test_edge_filters():
    df = pd.DataFrame({
        "TF": ["A", "A", "A", "B", "C"],
        "target": ["A", "X", "Y", "X", "Z"],
        "importance": [0.9, 0.8, 0.5, 0.6, 0.45],
    })
    assert len(remove_self_loops(df)) == 4
    assert filter_top_edges(df, quantile=0.5)["importance"].min() >= 0.6
    assert len(filter_top_edges(df, quantile=0.0)) == 5
    assert set(filter_tf_by_min_targets(df, min_targets=2)["TF"]) == {"A"}


def test_graph_and_centrality():
    grn = pd.DataFrame({
        "TF": ["TF1", "TF1", "TF2", "TF2"],
        "target": ["G1", "TF2", "G1", "G2"],
        "importance": [0.9, 0.8, 0.7, 0.6],
    })
    G = construct_nx_graph(grn, tf_set={"TF1", "TF2"})
    assert G.number_of_nodes() == 4
    assert G.nodes["TF2"]["type"] == "TF"
    assert G.nodes["G1"]["type"] == "Gene"
    assert G["TF1"]["G1"]["weight"] == pytest.approx(0.9)

    cent = compute_centrality_metrics(G)
    assert list(cent.columns) == [
        "node", "type", "out_degree", "pagerank", "degree", "betweenness", "closeness",
    ]
    assert cent["out_degree"].iloc[0] == 2
    assert cent["pagerank"].sum() == pytest.approx(1.0)
    assert cent.set_index("node").loc["TF2", "betweenness"] > 0


def test_betweenness_ignores_edge_weights():
    # a strong direct edge must not be routed around through weak edges
    grn = pd.DataFrame({
        "TF": ["TF1", "TF1", "TF2"],
        "target": ["G1", "TF2", "G1"],
        "importance": [0.9, 0.1, 0.1],
    })
    cent = compute_centrality_metrics(construct_nx_graph(grn, tf_set={"TF1", "TF2"}))
    assert cent.set_index("node").loc["TF2", "betweenness"] == 0


def test_enrich_genes_handles_failures(monkeypatch):
    assert enrich_genes([], "GO_Biological_Process_2023") is None

    def boom(**kwargs):
        raise RuntimeError("offline")

    monkeypatch.setattr(network.gp, "enrich", boom)
    assert enrich_genes(["COL1A1"], "GO_Biological_Process_2023") is None


def test_run_network_writes_outputs(evidence, tmp_path):
    result = run_network(*evidence, output_dir=tmp_path, plot=True)
    assert set(result) == {"grn", "graph", "centrality", "enrichment"}
    assert result["enrichment"] is None

    edges = load_adj(tmp_path / "grn_edges.csv")
    assert len(edges) == 2
    assert (tmp_path / "grn_centrality.csv").exists()
    assert (tmp_path / "figures" / "grn_network.png").exists()
    assert (tmp_path / "figures" / "grn_network.svg").exists()


def test_run_network_empty_grn_raises(evidence, tmp_path):
    tfs, links, hits, traj_expr = evidence
    with pytest.raises(ValueError):
        run_network(tfs, links, hits.iloc[:0], traj_expr, output_dir=tmp_path, plot=False)


def test_cli_flags_override_config(evidence, tmp_path, monkeypatch):
    tfs, links, hits, traj_expr = evidence
    tfs.to_csv(tmp_path / "tf_selection.csv", index=False)
    links.to_csv(tmp_path / "links.csv", index=False)
    hits.to_csv(tmp_path / "hits.csv", index=False)
    traj_expr.to_csv(tmp_path / "traj.csv")
    (tmp_path / "config.yaml").write_text(
        "network:\n  cor_cutoff: 0.99\n  fdr_cutoff: 0.5\n  min_targets: 3\n"
    )

    calls = {}
    monkeypatch.setattr(network, "run_network", lambda **kwargs: calls.update(kwargs))
    monkeypatch.setattr("sys.argv", [
        "cardiofib-grn-network",
        "--config", str(tmp_path / "config.yaml"),
        "--tf-selection", str(tmp_path / "tf_selection.csv"),
        "--links", str(tmp_path / "links.csv"),
        "--hits", str(tmp_path / "hits.csv"),
        "--trajectory", str(tmp_path / "traj.csv"),
        "--output-dir", str(tmp_path / "out"),
        "--cor-cutoff", "0.4",
    ])
    network.main()

    assert calls["cor_cutoff"] == pytest.approx(0.4)
    assert calls["fdr_cutoff"] == pytest.approx(0.5)
    assert calls["min_targets"] == 3
    assert calls["top_edge_quantile"] == 0.0
    assert calls["gene_sets"] is None
    assert list(calls["traj_expr"].columns) == pytest.approx(list(traj_expr.columns))
