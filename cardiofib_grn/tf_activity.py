"""TF motif activity (chromVAR) and pseudotime-based TF selection.

Pipeline:
  1. Attach peak sequences and GC content to the ATAC object, draw
     GC/accessibility-matched background peaks, and match JASPAR CORE
     vertebrate motifs to every peak (pychromvar + pyjaspar).
  2. Compute per-cell motif accessibility deviations (chromVAR).
  3. Smooth deviations and TF gene expression along pseudotime.
  4. Correlate each motif's smoothed deviation with the smoothed
     expression of its TF gene. TFs whose motif accessibility rises and
     falls with their own expression (correlation > ``cor_cutoff``,
     FDR < ``fdr_cutoff``) are retained as candidate drivers.
"""

import logging
from pathlib import Path
from typing import Optional

import anndata as ad
import pandas as pd

from .peak2gene import PEAK_DELIMITER
from .trajectory import correlate_trajectories

log = logging.getLogger(__name__)

TF_COLUMNS = ["TF", "motif", "correlation", "pvalue", "FDR", "var_motif", "var_expr", "pseudotime_peak"]


# ── chromVAR ──────────────────────────────────────────────────────────────────

def fetch_jaspar_motifs(
    release: str = "JASPAR2020",
    collection: str = "CORE",
    tax_group: str = "vertebrates",
) -> list:
    """Fetch position frequency matrices from the bundled JASPAR database."""
    from pyjaspar import jaspardb

    jdb = jaspardb(release=release)
    motifs = jdb.fetch_motifs(collection=collection, tax_group=[tax_group])
    log.info("Fetched %d %s %s motifs (%s)", len(motifs), collection, tax_group, release)
    return motifs


def compute_motif_deviations(
    atac: ad.AnnData,
    genome_fasta: str | Path,
    motifs: Optional[list] = None,
    jaspar_release: str = "JASPAR2020",
    tax_group: str = "vertebrates",
    peak_delimiter: str = PEAK_DELIMITER,
    n_jobs: int = -1,
) -> tuple[ad.AnnData, pd.DataFrame]:
    """Compute chromVAR motif deviations for every ATAC cell.

    Args:
        atac: ATAC peak counts (cells × peaks); var_names are peak
            coordinates such as 'chr1:1000-1500'.
        genome_fasta: Indexed genome FASTA matching the peak coordinates.
        motifs: Optional list of Bio.motifs objects; defaults to JASPAR CORE.
        jaspar_release: JASPAR release when motifs is None.
        tax_group: JASPAR taxonomic group when motifs is None.
        peak_delimiter: Regex splitting peak names into chrom/start/end.
        n_jobs: Parallel jobs for pychromvar.

    Returns:
        Tuple (deviations, motif_match): a cells × motifs AnnData of
        deviation scores and a boolean peaks × motifs DataFrame.

    Raises:
        FileNotFoundError: If the genome FASTA does not exist.
    """
    import pychromvar as pc

    genome_fasta = Path(genome_fasta)
    if not genome_fasta.exists():
        raise FileNotFoundError(f"Genome FASTA not found: {genome_fasta}")

    data = atac.copy()
    log.info("Adding peak sequences and GC bias for %d peaks", data.n_vars)
    pc.add_peak_seq(data, genome_file=str(genome_fasta), delimiter=peak_delimiter)
    pc.add_gc_bias(data)
    pc.get_bg_peaks(data)

    if motifs is None:
        motifs = fetch_jaspar_motifs(release=jaspar_release, tax_group=tax_group)
    pc.match_motif(data, motifs=motifs)

    log.info("Computing chromVAR deviations (%d cells × %d motifs)", data.n_obs, len(motifs))
    deviations = pc.compute_deviations(data, n_jobs=n_jobs)
    deviations.obs = atac.obs.loc[deviations.obs_names].copy()

    match = data.varm["motif_match"]
    match = match.toarray() if hasattr(match, "toarray") else match
    motif_match = pd.DataFrame(
        match.astype(bool), index=data.var_names, columns=list(data.uns["motif_name"])
    )
    return deviations, motif_match


# ── Motif → TF mapping ────────────────────────────────────────────────────────

def motif_to_gene(motif_names: list[str]) -> pd.DataFrame:
    """Map motif identifiers to TF gene symbols.

    'MA0003.4.TFAP2A' → TFAP2A. Heterodimer motifs such as
    'MA0089.2.MAFG::NFE2L1' map to each partner.

    Returns:
        DataFrame with columns ['motif', 'TF'].
    """
    records = []
    for motif in motif_names:
        parts = str(motif).split(".", 2)
        name = parts[2] if len(parts) == 3 and parts[0].startswith("MA") else str(motif)
        for tf in name.split("::"):
            tf = tf.strip().upper()
            if tf:
                records.append({"motif": motif, "TF": tf})
    return pd.DataFrame(records, columns=["motif", "TF"])


# ── TF selection ──────────────────────────────────────────────────────────────

def correlate_tf_activity(
    traj_motif: pd.DataFrame,
    traj_expr: pd.DataFrame,
    var_cutoff_motif: float = 0.0,
    var_cutoff_expr: float = 0.0,
) -> pd.DataFrame:
    """Correlate smoothed motif deviation with smoothed TF expression.

    Args:
        traj_motif: Motifs × bins (chromVAR deviations).
        traj_expr: Genes × bins (log2 expression), same bins.
        var_cutoff_motif: Variance quantile filter for motifs.
        var_cutoff_expr: Variance quantile filter for genes.

    Returns:
        One row per (motif, TF) pair with columns TF_COLUMNS (+ 'neg_log10_FDR').
    """
    mapping = motif_to_gene(traj_motif.index.tolist())
    mapping = mapping[mapping["TF"].isin(traj_expr.index)]
    pairs = mapping.rename(columns={"motif": "feature_a", "TF": "feature_b"})
    log.info("Motifs with an expressed TF gene: %d pairs", len(pairs))

    corr = correlate_trajectories(
        traj_motif, traj_expr, pairs,
        var_cutoff_a=var_cutoff_motif, var_cutoff_b=var_cutoff_expr,
    )
    corr = corr.rename(columns={
        "feature_a": "motif", "feature_b": "TF",
        "var_a": "var_motif", "var_b": "var_expr", "peak_a": "pseudotime_peak",
    })
    return corr[TF_COLUMNS + ["neg_log10_FDR"]]


def select_tfs(
    traj_motif: pd.DataFrame,
    traj_expr: pd.DataFrame,
    cor_cutoff: float = 0.5,
    fdr_cutoff: float = 1e-4,
    var_cutoff_motif: float = 0.0,
    var_cutoff_expr: float = 0.0,
) -> pd.DataFrame:
    """Shortlist TFs whose motif activity tracks their expression.

    When a TF has several motifs, the best-correlated one is kept.

    Returns:
        DataFrame with columns TF_COLUMNS (+ 'neg_log10_FDR'), one row per
        TF, sorted by correlation descending.
    """
    corr = correlate_tf_activity(
        traj_motif, traj_expr,
        var_cutoff_motif=var_cutoff_motif, var_cutoff_expr=var_cutoff_expr,
    )
    selected = corr[(corr["correlation"] > cor_cutoff) & (corr["FDR"] < fdr_cutoff)]
    selected = (
        selected.sort_values("correlation", ascending=False)
        .drop_duplicates("TF")
        .reset_index(drop=True)
    )
    log.info(
        "Selected %d TFs (correlation > %.2f, FDR < %.0e) from %d motif–TF pairs",
        len(selected), cor_cutoff, fdr_cutoff, len(corr),
    )
    return selected
