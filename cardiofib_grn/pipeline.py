"""End-to-end GRN inference for cardiac fibroblasts from snRNA + snATAC.

Pipeline overview:
  1. Load the RNA expression, ATAC peak and ATAC gene-activity objects
     (downloading them first when URLs are configured).
  2. Co-embed RNA and ATAC cells (CCA on shared HVGs + Harmony by patient).
  3. Sub-cluster with Leiden, tabulate cluster composition and markers,
     and drop the clusters listed in the config (optionally all clusters
     flagged as small, modality-biased or patient-biased).
  4. Pair every ATAC cell with one RNA cell in the co-embedding to form
     pseudo-multimodal cells.
  5. Fit a diffusion pseudotime over the configured cluster order.
  6. Compute chromVAR motif deviations, smooth them and TF expression
     along pseudotime, and select TFs whose activity tracks expression.
  7. Link peaks to genes within 250 kb by correlation along pseudotime.
  8. Assemble the TF → gene network and render it.

The trajectory cluster order is a judgement call made after inspecting
the sub-clusters; it must be set in the config (trajectory.clusters) or
with --trajectory-clusters.

Usage:
    python -m cardiofib_grn.pipeline --config configs/default_config.yaml \\
        --output-dir results/ --trajectory-clusters 2 0 1
"""

import argparse
import logging
from pathlib import Path
from typing import Optional

import anndata as ad
import pandas as pd
import scanpy as sc
import scipy.sparse as sp

from .clustering import (
    cluster_composition,
    cluster_markers,
    filter_clusters,
    flag_clusters,
    subcluster,
)
from .coembedding import MODALITY_KEY, run_coembedding, split_by_modality
from .network import motif_hits, run_network
from .pairing import build_paired_object, pair_coembedded
from .peak2gene import (
    find_candidate_links,
    link_peaks_to_genes,
    load_gene_annotation,
    parse_peak_names,
)
from .tf_activity import compute_motif_deviations, correlate_tf_activity, select_tfs
from .trajectory import add_trajectory, get_trajectory
from .utils.io import (
    load_config,
    load_h5ad,
    load_inputs,
    save_table,
    validate_obs_columns,
)
from .utils.plotting import (
    plot_diffmap,
    plot_embedding,
    plot_tf_selection,
    plot_trajectory_heatmap,
)

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
log = logging.getLogger(__name__)


# ── Stage helpers ─────────────────────────────────────────────────────────────

def _attach_atac_metadata(gene_activity: ad.AnnData, atac: ad.AnnData, columns: list[str]) -> None:
    """Copy cell metadata from the ATAC object onto the gene-activity object."""
    missing = [c for c in columns if c not in gene_activity.obs.columns]
    if not missing:
        return
    unknown = gene_activity.obs_names.difference(atac.obs_names)
    if len(unknown):
        raise ValueError(f"{len(unknown)} gene-activity cells are absent from the ATAC object.")
    for col in missing:
        gene_activity.obs[col] = atac.obs.loc[gene_activity.obs_names, col].values


def _motif_match_to_anndata(motif_match: pd.DataFrame) -> ad.AnnData:
    match = ad.AnnData(X=sp.csr_matrix(motif_match.to_numpy(dtype="float32")))
    match.obs_names = motif_match.index.astype(str)
    match.var_names = motif_match.columns.astype(str)
    return match


def _anndata_to_motif_match(match: ad.AnnData) -> pd.DataFrame:
    X = match.X.toarray() if sp.issparse(match.X) else match.X
    return pd.DataFrame(X.astype(bool), index=match.obs_names, columns=match.var_names)


def run_clustering_stage(
    coembed: ad.AnnData,
    cfg: dict,
    output_dir: Path,
    patient_key: str,
    seed: int,
) -> ad.AnnData:
    """Sub-cluster, write review tables and drop the chosen clusters."""
    cl_cfg = cfg.get("clustering", {})
    subcluster(
        coembed,
        resolution=cl_cfg.get("resolution", 0.5),
        n_neighbors=cl_cfg.get("n_neighbors", 30),
        seed=seed,
    )
    comp = flag_clusters(
        cluster_composition(coembed, patient_key=patient_key),
        min_cells=cl_cfg.get("min_cells", 50),
        min_modality_frac=cl_cfg.get("min_modality_frac", 0.1),
        max_patient_frac=cl_cfg.get("max_patient_frac", 0.8),
    )
    save_table(comp, output_dir / "cluster_composition.csv", index=True)
    save_table(
        cluster_markers(coembed, n_genes=cl_cfg.get("n_marker_genes", 20)),
        output_dir / "cluster_markers.csv",
    )

    drop = [str(c) for c in cl_cfg.get("drop", []) or []]
    if cl_cfg.get("drop_flagged", False):
        drop += [c for c in comp.index[comp["flagged"]] if c not in drop]
    if drop:
        coembed = filter_clusters(coembed, drop)
        sc.pp.neighbors(coembed, use_rep="X_harmony", random_state=seed)
        sc.tl.umap(coembed, random_state=seed)
    return coembed


def run_deviation_stage(
    atac: ad.AnnData,
    cfg: dict,
    output_dir: Path,
    force: bool = False,
) -> tuple[ad.AnnData, pd.DataFrame]:
    """Load cached chromVAR results, or compute them for every ATAC cell.

    Deviations cover the whole ATAC object so the cache does not depend
    on the trajectory clusters. A cache missing any ATAC cell or peak is
    recomputed.
    """
    tf_cfg = cfg.get("tf_activity", {})
    dev_path = output_dir / "motif_deviations.h5ad"
    match_path = output_dir / "motif_match.h5ad"
    if dev_path.exists() and match_path.exists() and not force:
        deviations = load_h5ad(dev_path)
        motif_match = _anndata_to_motif_match(load_h5ad(match_path))
        if atac.obs_names.isin(deviations.obs_names).all() and atac.var_names.isin(motif_match.index).all():
            log.info("Loading cached motif deviations: %s", dev_path)
            return deviations, motif_match
        log.warning("Cached motif deviations do not cover the ATAC object; recomputing.")

    deviations, motif_match = compute_motif_deviations(
        atac,
        genome_fasta=cfg.get("paths", {})["genome_fasta"],
        jaspar_release=tf_cfg.get("jaspar_release", "JASPAR2020"),
        tax_group=tf_cfg.get("tax_group", "vertebrates"),
        n_jobs=tf_cfg.get("n_jobs", -1),
    )
    deviations.write_h5ad(dev_path)
    _motif_match_to_anndata(motif_match).write_h5ad(match_path)
    return deviations, motif_match


# ── Full pipeline ─────────────────────────────────────────────────────────────

def run_full_pipeline(
    cfg: dict,
    output_dir: Optional[str | Path] = None,
    force: bool = False,
) -> dict:
    """Run every stage from input objects to the rendered GRN.

    Args:
        cfg: Parsed configuration (see configs/default_config.yaml).
        output_dir: Root output directory; overrides paths.output_dir.
        force: Recompute cached intermediates (co-embedding, deviations).

    Returns:
        Dict with the main results: 'coembedding', 'pairs', 'pseudotime',
        'tf_selection', 'links', 'grn', 'centrality'.

    Raises:
        ValueError: If no trajectory clusters are configured or a stage
            produces no usable result.
    """
    paths = cfg.get("paths", {})
    meta = cfg.get("metadata", {})
    seed = cfg.get("seed", 42)
    output_dir = Path(output_dir or paths.get("output_dir", "results"))
    fig_dir = output_dir / "figures"
    output_dir.mkdir(parents=True, exist_ok=True)

    traj_cfg = cfg.get("trajectory", {})
    trajectory_clusters = [str(c) for c in traj_cfg.get("clusters", []) or []]
    if len(trajectory_clusters) < 2:
        raise ValueError("Set trajectory.clusters to an ordered list of at least two clusters.")

    patient_key = meta.get("patient_key", "patient")
    obs_cols = [patient_key, meta.get("region_key", "region"), meta.get("group_key", "patient_group")]

    # Step 1: inputs
    data = load_inputs(
        {k: paths.get(k) for k in ("rna", "atac", "gene_activity")},
        cfg.get("inputs"),
    )
    validate_obs_columns(data["rna"], obs_cols, "RNA object")
    validate_obs_columns(data["atac"], obs_cols, "ATAC object")
    _attach_atac_metadata(data["gene_activity"], data["atac"], obs_cols)

    # Step 2: co-embedding
    ce_cfg = cfg.get("coembedding", {})
    coembed_path = output_dir / "coembedding.h5ad"
    if coembed_path.exists() and not force:
        log.info("Loading cached co-embedding: %s", coembed_path)
        coembed = load_h5ad(coembed_path)
    else:
        coembed = run_coembedding(
            data["rna"], data["gene_activity"],
            n_top_genes=ce_cfg.get("n_top_genes", 2000),
            n_components=ce_cfg.get("n_components", 30),
            batch_key=ce_cfg.get("batch_key", patient_key),
            n_neighbors=ce_cfg.get("n_neighbors", 30),
            seed=seed,
        )
        coembed.write_h5ad(coembed_path)

    # Step 3: sub-clustering and filtering
    coembed = run_clustering_stage(coembed, cfg, output_dir, patient_key, seed)
    for color in [MODALITY_KEY, *obs_cols, "subcluster"]:
        plot_embedding(coembed, color, fig_dir / f"umap_{color}.png")

    # Step 4: cell pairing
    pr_cfg = cfg.get("pairing", {})
    pairs = pair_coembedded(
        coembed,
        n_neighbors=pr_cfg.get("n_neighbors", 20),
        chunk_size=pr_cfg.get("chunk_size", 1000),
        seed=seed,
    )
    save_table(pairs, output_dir / "cell_pairs.csv")
    rna_paired, atac_paired = build_paired_object(data["rna"], data["atac"], pairs)

    # Step 5: trajectory on the paired ATAC cells
    atac_embed = split_by_modality(coembed, "ATAC")
    atac_embed = atac_embed[atac_embed.obs_names.isin(pairs["atac_barcode"])].copy()
    traj_cells = add_trajectory(
        atac_embed,
        trajectory_clusters,
        n_neighbors=traj_cfg.get("n_neighbors", 30),
        n_comps=traj_cfg.get("n_comps", 10),
        pre_filter_quantile=traj_cfg.get("pre_filter_quantile", 0.9),
        seed=seed,
    )
    pseudotime = traj_cells.obs["pseudotime"].dropna()
    save_table(pseudotime.rename_axis("cell").reset_index(), output_dir / "pseudotime.csv")
    plot_diffmap(traj_cells, fig_dir / "diffmap_pseudotime.png")

    n_bins = traj_cfg.get("n_bins", 100)
    smooth_window = traj_cfg.get("smooth_window", 11)
    atac_traj = atac_paired[pseudotime.index].copy()
    rna_traj = rna_paired[pseudotime.index].copy()

    # Step 6: TF activity and selection
    tf_cfg = cfg.get("tf_activity", {})
    deviations, motif_match = run_deviation_stage(data["atac"], cfg, output_dir, force=force)
    deviations = deviations[pseudotime.index].copy()

    traj_motif = get_trajectory(deviations, pseudotime, n_bins=n_bins,
                                smooth_window=smooth_window, log2_norm=False)
    traj_expr = get_trajectory(rna_traj, pseudotime, n_bins=n_bins,
                               smooth_window=smooth_window, log2_norm=True)
    save_table(traj_expr, output_dir / "trajectory_expression.csv", index=True)

    tf_cor = tf_cfg.get("cor_cutoff", 0.5)
    tf_fdr = tf_cfg.get("fdr_cutoff", 1e-4)
    tf_corr = correlate_tf_activity(
        traj_motif, traj_expr,
        var_cutoff_motif=tf_cfg.get("var_cutoff_motif", 0.8),
        var_cutoff_expr=tf_cfg.get("var_cutoff_expr", 0.8),
    )
    save_table(tf_corr, output_dir / "tf_correlation.csv")
    plot_tf_selection(tf_corr, fig_dir / "tf_selection.png", cor_cutoff=tf_cor, fdr_cutoff=tf_fdr)
    tfs = select_tfs(
        traj_motif, traj_expr,
        cor_cutoff=tf_cor, fdr_cutoff=tf_fdr,
        var_cutoff_motif=tf_cfg.get("var_cutoff_motif", 0.8),
        var_cutoff_expr=tf_cfg.get("var_cutoff_expr", 0.8),
    )
    if tfs.empty:
        raise ValueError("No TF passed the motif–expression correlation thresholds.")
    save_table(tfs, output_dir / "tf_selection.csv")
    plot_trajectory_heatmap(traj_motif, fig_dir / "heatmap_tf_motif.png",
                            features=tfs["motif"].tolist(), title="TF motif activity")
    plot_trajectory_heatmap(traj_expr, fig_dir / "heatmap_tf_expression.png",
                            features=tfs["TF"].tolist(), title="TF expression")

    # Step 7: peak-to-gene links
    p2g_cfg = cfg.get("peak2gene", {})
    genes = load_gene_annotation(paths["gene_annotation"])
    candidates = find_candidate_links(
        parse_peak_names(atac_traj.var_names),
        genes[genes["gene"].isin(traj_expr.index)],
        max_distance=p2g_cfg.get("max_distance", 250_000),
    )
    if candidates.empty:
        raise ValueError("No peak lies within range of an expressed gene TSS.")
    # depth scaling uses every peak, so restrict only after binning
    traj_peaks = get_trajectory(atac_traj, pseudotime, n_bins=n_bins,
                                smooth_window=smooth_window, log2_norm=True)
    traj_peaks = traj_peaks.loc[candidates["peak"].unique()]
    links = link_peaks_to_genes(
        traj_peaks, traj_expr, candidates,
        cor_cutoff=p2g_cfg.get("cor_cutoff", 0.45),
        fdr_cutoff=p2g_cfg.get("fdr_cutoff", 1e-4),
        var_cutoff_peak=p2g_cfg.get("var_cutoff_peak", 0.0),
        var_cutoff_gene=p2g_cfg.get("var_cutoff_gene", 0.0),
    )
    if links.empty:
        raise ValueError("No peak-to-gene link passed the correlation thresholds.")
    save_table(links, output_dir / "peak2gene_links.csv")
    plot_trajectory_heatmap(traj_peaks, fig_dir / "heatmap_p2g_peaks.png",
                            features=links["peak"].unique().tolist(),
                            title="Linked peaks", label_rows=False)
    plot_trajectory_heatmap(traj_expr, fig_dir / "heatmap_p2g_genes.png",
                            features=links["gene"].unique().tolist(),
                            title="Linked genes", label_rows=False)

    # Step 8: network assembly
    nw_cfg = cfg.get("network", {})
    hits = motif_hits(motif_match.loc[motif_match.index.isin(links["peak"])],
                      motifs=tfs["motif"].tolist())
    save_table(hits, output_dir / "tf_peak_hits.csv")
    network = run_network(
        tfs, links, hits, traj_expr,
        output_dir=output_dir,
        cor_cutoff=nw_cfg.get("cor_cutoff", 0.4),
        fdr_cutoff=nw_cfg.get("fdr_cutoff", 1e-4),
        top_edge_quantile=nw_cfg.get("top_edge_quantile", 0.0),
        min_targets=nw_cfg.get("min_targets", 1),
        gene_sets=nw_cfg.get("gene_sets"),
        plot=cfg.get("plots", {}).get("network", True),
    )

    return {
        "coembedding": coembed,
        "pairs": pairs,
        "pseudotime": pseudotime,
        "tf_selection": tfs,
        "links": links,
        "grn": network["grn"],
        "centrality": network["centrality"],
    }


# ── CLI ───────────────────────────────────────────────────────────────────────

def main() -> None:
    parser = argparse.ArgumentParser(
        description="Infer a fibroblast GRN from unpaired snRNA-seq and snATAC-seq."
    )
    parser.add_argument("--config", required=True, help="Path to YAML config file.")
    parser.add_argument("--output-dir", help="Root output directory (overrides config).")
    parser.add_argument("--trajectory-clusters", nargs="+",
                        help="Ordered sub-clusters defining the trajectory (root first).")
    parser.add_argument("--drop-clusters", nargs="+",
                        help="Sub-clusters to remove before pairing.")
    parser.add_argument("--force", action="store_true",
                        help="Recompute cached co-embedding and motif deviations.")
    args = parser.parse_args()

    cfg = load_config(args.config)
    if args.trajectory_clusters:
        cfg.setdefault("trajectory", {})["clusters"] = args.trajectory_clusters
    if args.drop_clusters:
        cfg.setdefault("clustering", {})["drop"] = args.drop_clusters

    run_full_pipeline(cfg, output_dir=args.output_dir, force=args.force)


if __name__ == "__main__":
    main()
