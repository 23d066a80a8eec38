"""Peak-to-gene linkage along pseudotime.

Each accessible peak is paired with every gene whose TSS lies within
``max_distance`` of the peak centre. For each candidate pair, smoothed
accessibility of the peak is correlated with smoothed expression of the
gene over pseudotime (using the paired pseudo-multimodal cells).
Positive links with correlation > 0.45 and FDR < 1e-4 are kept as
putative enhancer–gene interactions.
"""

import logging
from pathlib import Path

import numpy as np
import pandas as pd

from .trajectory import correlate_trajectories

log = logging.getLogger(__name__)

PEAK_DELIMITER = "[:_-]"
_PEAK_RE = rf"^(?P<chrom>[^:_-]+){PEAK_DELIMITER}(?P<start>\d+){PEAK_DELIMITER}(?P<end>\d+)$"
LINK_COLUMNS = ["peak", "gene", "distance", "correlation", "pvalue", "FDR"]


# ── Coordinates ───────────────────────────────────────────────────────────────

def parse_peak_names(names) -> pd.DataFrame:
    """Split peak names ('chr1:100-200', 'chr1-100-200', 'chr1_100_200') into coordinates.

    Returns:
        DataFrame indexed by peak name with columns ['chrom', 'start', 'end'].

    Raises:
        ValueError: If any name does not look like a genomic interval.
    """
    names = pd.Index(names).astype(str)
    parsed = names.str.extract(_PEAK_RE)
    bad = parsed["chrom"].isna()
    if bad.any():
        examples = list(names[bad.values][:3])
        raise ValueError(f"Malformed peak names ({bad.sum()}), e.g. {examples}")
    parsed.index = names
    parsed["start"] = parsed["start"].astype(int)
    parsed["end"] = parsed["end"].astype(int)
    return parsed


def load_gene_annotation(path: str | Path) -> pd.DataFrame:
    """Load a BED6 gene annotation and derive strand-aware TSS positions.

    Expected columns (no header): chrom, start, end, gene, score, strand.

    Returns:
        DataFrame with columns ['gene', 'chrom', 'tss'], one row per gene.

    Raises:
        FileNotFoundError: If the annotation file does not exist.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Gene annotation not found: {path}")
    bed = pd.read_csv(
        path, sep="\t", header=None, comment="#",
        names=["chrom", "start", "end", "gene", "score", "strand"],
        usecols=range(6),
    )
    bed["tss"] = np.where(bed["strand"] == "-", bed["end"], bed["start"])
    genes = bed[["gene", "chrom", "tss"]].drop_duplicates("gene").reset_index(drop=True)
    log.info("Loaded TSS for %d genes", len(genes))
    return genes


def find_candidate_links(
    peaks: pd.DataFrame,
    genes: pd.DataFrame,
    max_distance: int = 250_000,
) -> pd.DataFrame:
    """Enumerate peak–gene pairs whose distance to the TSS is within range.

    Args:
        peaks: Output of parse_peak_names().
        genes: DataFrame with columns ['gene', 'chrom', 'tss'].
        max_distance: Maximum |peak centre − TSS| in bp.

    Returns:
        DataFrame with columns ['peak', 'gene', 'distance'] (signed,
        peak centre minus TSS).
    """
    centers = ((peaks["start"] + peaks["end"]) // 2).rename("center")
    peak_df = pd.concat([peaks["chrom"], centers], axis=1)

    frames = []
    for chrom, chrom_genes in genes.groupby("chrom"):
        chrom_peaks = peak_df[peak_df["chrom"] == chrom].sort_values("center")
        if chrom_peaks.empty:
            continue
        pos = chrom_peaks["center"].to_numpy()
        tss = chrom_genes["tss"].to_numpy()
        lo = np.searchsorted(pos, tss - max_distance, side="left")
        hi = np.searchsorted(pos, tss + max_distance, side="right")
        n_hits = hi - lo
        if n_hits.sum() == 0:
            continue
        gene_idx = np.repeat(np.arange(len(tss)), n_hits)
        peak_idx = np.concatenate([np.arange(a, b) for a, b in zip(lo, hi)])
        frames.append(pd.DataFrame({
            "peak": chrom_peaks.index.values[peak_idx],
            "gene": chrom_genes["gene"].to_numpy()[gene_idx],
            "distance": pos[peak_idx] - tss[gene_idx],
        }))

    if not frames:
        return pd.DataFrame(columns=["peak", "gene", "distance"])
    links = pd.concat(frames, ignore_index=True)
    log.info("Candidate peak–gene pairs within %d bp: %d", max_distance, len(links))
    return links


# ── Correlation along pseudotime ──────────────────────────────────────────────

def link_peaks_to_genes(
    traj_peaks: pd.DataFrame,
    traj_genes: pd.DataFrame,
    candidates: pd.DataFrame,
    cor_cutoff: float = 0.45,
    fdr_cutoff: float = 1e-4,
    var_cutoff_peak: float = 0.0,
    var_cutoff_gene: float = 0.0,
) -> pd.DataFrame:
    """Keep candidate links whose accessibility and expression co-vary.

    Args:
        traj_peaks: Peaks × bins (smoothed accessibility).
        traj_genes: Genes × bins (smoothed expression), same bins.
        candidates: Output of find_candidate_links().
        cor_cutoff: Minimum Pearson correlation.
        fdr_cutoff: Maximum BH-adjusted p-value.
        var_cutoff_peak: Variance quantile filter for peaks.
        var_cutoff_gene: Variance quantile filter for genes.

    Returns:
        DataFrame with columns LINK_COLUMNS sorted by correlation.
    """
    cand = candidates[
        candidates["peak"].isin(traj_peaks.index) & candidates["gene"].isin(traj_genes.index)
    ]
    pairs = cand.rename(columns={"peak": "feature_a", "gene": "feature_b"})
    corr = correlate_trajectories(
        traj_peaks, traj_genes, pairs,
        var_cutoff_a=var_cutoff_peak, var_cutoff_b=var_cutoff_gene,
    ).rename(columns={"feature_a": "peak", "feature_b": "gene"})

    corr = corr.merge(cand[["peak", "gene", "distance"]], on=["peak", "gene"], how="left")
    links = corr[(corr["correlation"] > cor_cutoff) & (corr["FDR"] < fdr_cutoff)]
    links = links[LINK_COLUMNS].sort_values("correlation", ascending=False).reset_index(drop=True)
    log.info(
        "Peak-to-gene links: %d of %d tested (%d genes, %d peaks)",
        len(links), len(corr), links["gene"].nunique(), links["peak"].nunique(),
    )
    return links
