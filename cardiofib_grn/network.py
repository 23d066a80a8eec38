"""GRN assembly, network metrics and target-set enrichment.

A directed TF → target edge is emitted when three lines of evidence agree:
  1. The TF was selected because its motif activity tracks its expression
     along pseudotime (tf_activity.select_tfs).
  2. The target gene has at least one peak-to-gene link whose peak carries
     a motif of the TF (peak2gene.link_peaks_to_genes + motif matches).
  3. Smoothed TF expression and target expression are positively and
     significantly correlated along pseudotime (correlation > 0.4,
     FDR < 1e-4, BH over all TF × linked-gene pairs).

Edge importance is that expression correlation. Self-loops are removed.
The edge list is then turned into a NetworkX graph for centrality metrics
(PageRank, degree, betweenness, closeness), rendering, and optional
over-representation analysis of each TF's targets with gseapy.

Usage:
    python -m cardiofib_grn.network --config configs/default_config.yaml \\
        --tf-selection results/tf_selection.csv \\
        --links results/peak2gene_links.csv \\
        --hits results/tf_peak_hits.csv \\
        --trajectory results/trajectory_expression.csv \\
        --output-dir results/network/ --plot
"""

import argparse
import logging
from pathlib import Path
from typing import Optional

import gseapy as gp
import networkx as nx
import numpy as np
import pandas as pd

from .trajectory import correlate_trajectories
from .utils.io import load_config, save_adj, save_table
from .utils.plotting import plot_grn

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
log = logging.getLogger(__name__)

GRN_COLUMNS = ["TF", "target", "importance", "FDR", "n_peaks"]


# ── Evidence tables ───────────────────────────────────────────────────────────

def motif_hits(motif_match: pd.DataFrame, motifs: Optional[list[str]] = None) -> pd.DataFrame:
    """Convert a peaks × motifs match matrix into a long (peak, motif) table.

    Args:
        motif_match: Boolean DataFrame (index = peaks, columns = motifs).
        motifs: Optional subset of motif columns to keep.

    Returns:
        DataFrame with columns ['peak', 'motif'].
    """
    if motifs is not None:
        motif_match = motif_match.loc[:, [m for m in motifs if m in motif_match.columns]]
    rows, cols = np.nonzero(motif_match.to_numpy(dtype=bool))
    return pd.DataFrame({
        "peak": motif_match.index.values[rows],
        "motif": motif_match.columns.values[cols],
    })


# ── GRN assembly ──────────────────────────────────────────────────────────────

def build_grn(
    tfs: pd.DataFrame,
    links: pd.DataFrame,
    hits: pd.DataFrame,
    traj_expr: pd.DataFrame,
    cor_cutoff: float = 0.4,
    fdr_cutoff: float = 1e-4,
) -> pd.DataFrame:
    """Assemble TF → target edges from correlation, linkage and motif evidence.

    Args:
        tfs: Selected TFs with columns ['TF', 'motif'].
        links: Peak-to-gene links with columns ['peak', 'gene'].
        hits: Motif occurrences with columns ['peak', 'motif'].
        traj_expr: Genes × bins smoothed expression.
        cor_cutoff: Minimum TF–target expression correlation.
        fdr_cutoff: Maximum BH-adjusted p-value.

    Returns:
        Edge DataFrame with columns GRN_COLUMNS, sorted by importance.
    """
    tf_genes = [tf for tf in tfs["TF"].unique() if tf in traj_expr.index]
    targets = [g for g in links["gene"].unique() if g in traj_expr.index]
    if not tf_genes or not targets:
        log.warning("No TFs (%d) or linked target genes (%d) to connect.", len(tf_genes), len(targets))
        return pd.DataFrame(columns=GRN_COLUMNS)

    pairs = pd.MultiIndex.from_product([tf_genes, targets], names=["feature_a", "feature_b"]).to_frame(index=False)
    pairs = pairs[pairs["feature_a"] != pairs["feature_b"]]
    corr = correlate_trajectories(traj_expr, traj_expr, pairs)
    corr = corr.rename(columns={"feature_a": "TF", "feature_b": "target"})
    corr = corr[(corr["correlation"] > cor_cutoff) & (corr["FDR"] < fdr_cutoff)]
    log.info("TF–target pairs with correlated expression: %d of %d", len(corr), len(pairs))

    support = (
        links[["peak", "gene"]]
        .merge(hits[["peak", "motif"]], on="peak")
        .merge(tfs[["TF", "motif"]], on="motif")
        .groupby(["TF", "gene"])["peak"].nunique()
        .rename("n_peaks")
        .reset_index()
        .rename(columns={"gene": "target"})
    )

    grn = corr.merge(support, on=["TF", "target"], how="inner")
    grn["importance"] = grn["correlation"]
    grn = remove_self_loops(grn[GRN_COLUMNS])
    grn = grn.sort_values("importance", ascending=False).reset_index(drop=True)
    log.info("GRN: %d edges, %d TFs, %d targets", len(grn), grn["TF"].nunique(), grn["target"].nunique())
    return grn


# ── Edge filtering ────────────────────────────────────────────────────────────

def remove_self_loops(df: pd.DataFrame) -> pd.DataFrame:
    """Remove edges where the TF regulates itself."""
    return df[df["TF"] != df["target"]].copy()


def filter_top_edges(df: pd.DataFrame, quantile: float = 0.75) -> pd.DataFrame:
    """Retain only the strongest edges (importance ≥ the given quantile).

    Args:
        df: Edge DataFrame.
        quantile: Minimum importance quantile (0 keeps everything).

    Returns:
        Filtered DataFrame.
    """
    threshold = df["importance"].quantile(quantile)
    return df[df["importance"] >= threshold].copy()


def filter_tf_by_min_targets(df: pd.DataFrame, min_targets: int = 10) -> pd.DataFrame:
    """Remove TFs with fewer than min_targets edges.

    Args:
        df: Edge DataFrame.
        min_targets: Minimum target edges per TF.

    Returns:
        Filtered DataFrame.
    """
    counts = df.groupby("TF")["target"].transform("count")
    return df[counts >= min_targets].copy()


# ── NetworkX graph construction ───────────────────────────────────────────────

def construct_nx_graph(
    grn: pd.DataFrame,
    tf_set: Optional[set] = None,
) -> nx.DiGraph:
    """Build a directed NetworkX graph from an edge DataFrame.

    Args:
        grn: Edge DataFrame with columns ['TF', 'target', 'importance'].
        tf_set: Optional set of TF names used to label node types. If None,
            every source node is labeled TF.

    Returns:
        Directed graph with 'weight' edge attributes and 'type' node
        attributes ('TF' or 'Gene').
    """
    G = nx.DiGraph()
    for tf, target, importance in grn[["TF", "target", "importance"]].itertuples(index=False):
        G.add_edge(tf, target, weight=float(importance))

    inferred_tfs = set(grn["TF"].unique()) if tf_set is None else tf_set
    for node in G.nodes():
        G.nodes[node]["type"] = "TF" if node in inferred_tfs else "Gene"

    return G


def compute_centrality_metrics(G: nx.DiGraph) -> pd.DataFrame:
    """Compute four centrality metrics for all nodes in the network.

    - PageRank: importance from the structure of incoming regulatory edges.
    - Degree centrality: fraction of all other nodes connected to this node.
    - Betweenness centrality: fraction of unweighted shortest paths through this node.
    - Closeness centrality: inverse of the average shortest path length.

    Args:
        G: Directed NetworkX graph.

    Returns:
        DataFrame with columns ['node', 'type', 'out_degree', 'pagerank',
        'degree', 'betweenness', 'closeness'], sorted by out-degree.
    """
    pr = nx.pagerank(G, weight="weight")
    deg = nx.degree_centrality(G)
    btwn = nx.betweenness_centrality(G, weight=None)
    close = nx.closeness_centrality(G)

    return pd.DataFrame({
        "node": list(pr.keys()),
        "type": [G.nodes[n].get("type", "Gene") for n in pr],
        "out_degree": [G.out_degree(n) for n in pr],
        "pagerank": list(pr.values()),
        "degree": [deg[n] for n in pr],
        "betweenness": [btwn[n] for n in pr],
        "closeness": [close[n] for n in pr],
    }).sort_values("out_degree", ascending=False).reset_index(drop=True)


# ── Target enrichment ─────────────────────────────────────────────────────────

def enrich_genes(
    gene_list: list[str],
    gene_sets: str,
    background: Optional[list[str]] = None,
    cutoff: float = 1.0,
) -> Optional[pd.DataFrame]:
    """Run over-representation analysis of a gene list with gseapy.

    Args:
        gene_list: Genes to test.
        gene_sets: GMT path or gseapy library name
            (e.g. 'GO_Biological_Process_2023').
        background: Optional background gene universe.
        cutoff: p-value cutoff passed to gseapy (1.0 keeps everything;
            filter by FDR downstream).

    Returns:
        Enrichment DataFrame, or None if nothing was returned.
    """
    if not gene_list:
        return None

    try:
        enr = gp.enrich(
            gene_list=gene_list,
            gene_sets=gene_sets,
            background=background,
            cutoff=cutoff,
            verbose=False,
        )
    except Exception as e:
        log.warning("gseapy enrichment failed: %s", e)
        return None

    if enr is None or enr.res2d is None or enr.res2d.empty:
        return None

    return enr.res2d.copy()


def enrich_targets(
    grn: pd.DataFrame,
    gene_sets: str,
    background: Optional[list[str]] = None,
    pval_thresh: float = 0.05,
) -> pd.DataFrame:
    """Run enrichment on the target genes of every TF.

    Returns:
        Concatenated enrichment results with a 'TF' column, filtered to
        'Adjusted P-value' ≤ pval_thresh. Empty if nothing is enriched.
    """
    results = []
    for tf, targets in grn.groupby("TF")["target"]:
        res = enrich_genes(sorted(set(targets)), gene_sets, background=background)
        if res is not None:
            res["TF"] = tf
            results.append(res)

    if not results:
        return pd.DataFrame()

    combined = pd.concat(results, ignore_index=True)
    combined = combined[combined["Adjusted P-value"] <= pval_thresh]
    log.info("Target enrichment: %d significant terms across %d TFs",
             len(combined), combined["TF"].nunique())
    return combined


# ── Full pipeline ─────────────────────────────────────────────────────────────

def run_network(
    tfs: pd.DataFrame,
    links: pd.DataFrame,
    hits: pd.DataFrame,
    traj_expr: pd.DataFrame,
    output_dir: str | Path,
    cor_cutoff: float = 0.4,
    fdr_cutoff: float = 1e-4,
    top_edge_quantile: float = 0.0,
    min_targets: int = 1,
    gene_sets: Optional[str] = None,
    plot: bool = True,
) -> dict:
    """Assemble, prune, analyse and render the GRN.

    Returns:
        Dict with keys 'grn' (edge DataFrame), 'graph' (nx.DiGraph),
        'centrality' (DataFrame) and 'enrichment' (DataFrame or None).
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    grn = build_grn(tfs, links, hits, traj_expr, cor_cutoff=cor_cutoff, fdr_cutoff=fdr_cutoff)
    if grn.empty:
        raise ValueError("No GRN edges passed the correlation and motif evidence filters.")
    grn = filter_top_edges(grn, quantile=top_edge_quantile)
    grn = filter_tf_by_min_targets(grn, min_targets=min_targets)
    save_adj(grn, output_dir / "grn_edges.csv")

    G = construct_nx_graph(grn, tf_set=set(tfs["TF"]))
    centrality = compute_centrality_metrics(G)
    save_table(centrality, output_dir / "grn_centrality.csv")

    enrichment = None
    if gene_sets:
        enrichment = enrich_targets(grn, gene_sets, background=traj_expr.index.tolist())
        if not enrichment.empty:
            save_table(enrichment, output_dir / "grn_target_enrichment.csv")

    if plot:
        plot_grn(G, output_dir / "figures" / "grn_network.png")

    return {"grn": grn, "graph": G, "centrality": centrality, "enrichment": enrichment}


# ── CLI ───────────────────────────────────────────────────────────────────────

def main() -> None:
    parser = argparse.ArgumentParser(
        description="Assemble and render a TF → gene network from saved pipeline tables."
    )
    parser.add_argument("--config", help="Path to YAML config file.")
    parser.add_argument("--tf-selection", required=True, help="tf_selection.csv (TF, motif, ...).")
    parser.add_argument("--links", required=True, help="peak2gene_links.csv (peak, gene, ...).")
    parser.add_argument("--hits", required=True, help="tf_peak_hits.csv (peak, motif).")
    parser.add_argument("--trajectory", required=True,
                        help="trajectory_expression.csv (genes × pseudotime bins).")
    parser.add_argument("--output-dir", required=True, help="Output directory.")
    parser.add_argument("--cor-cutoff", type=float, default=None,
                        help="Minimum TF-target correlation (default 0.4).")
    parser.add_argument("--fdr-cutoff", type=float, default=None,
                        help="Maximum BH-adjusted p-value (default 1e-4).")
    parser.add_argument("--top-edge-quantile", type=float, default=None,
                        help="Keep edges at or above this importance quantile (default 0).")
    parser.add_argument("--min-targets", type=int, default=None,
                        help="Minimum targets per TF (default 1).")
    parser.add_argument("--gene-sets", default=None,
                        help="GMT file or gseapy library name for target enrichment.")
    parser.add_argument("--plot", action="store_true")
    args = parser.parse_args()

    cfg = load_config(args.config) if args.config else {}
    nw_cfg = cfg.get("network", {})

    def option(name, default):
        value = getattr(args, name)
        return value if value is not None else nw_cfg.get(name, default)

    traj_expr = pd.read_csv(args.trajectory, index_col=0)
    traj_expr.columns = traj_expr.columns.astype(float)

    run_network(
        tfs=pd.read_csv(args.tf_selection),
        links=pd.read_csv(args.links),
        hits=pd.read_csv(args.hits),
        traj_expr=traj_expr,
        output_dir=args.output_dir,
        cor_cutoff=option("cor_cutoff", 0.4),
        fdr_cutoff=option("fdr_cutoff", 1e-4),
        top_edge_quantile=option("top_edge_quantile", 0.0),
        min_targets=option("min_targets", 1),
        gene_sets=option("gene_sets", None),
        plot=args.plot,
    )


if __name__ == "__main__":
    main()
