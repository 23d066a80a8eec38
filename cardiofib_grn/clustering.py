"""Sub-clustering of the co-embedded fibroblasts and cluster filtering.

Clusters are found with Leiden on the Harmony neighbour graph. Removing
clusters is an analyst decision: this module supplies the evidence
(composition table, heuristic flags, marker genes) and applies the
chosen drop list.

Heuristic flags:
  - small          : fewer than ``min_cells`` cells
  - modality-bias  : one modality contributes less than ``min_modality_frac``
                     of the cluster (likely an integration artefact)
  - patient-bias   : a single patient contributes more than
                     ``max_patient_frac`` of the cluster
"""

import logging
from typing import Iterable, Optional

import anndata as ad
import pandas as pd
import scanpy as sc

from .coembedding import MODALITY_KEY

log = logging.getLogger(__name__)


def subcluster(
    adata: ad.AnnData,
    resolution: float = 0.5,
    use_rep: str = "X_harmony",
    key_added: str = "subcluster",
    n_neighbors: int = 30,
    seed: int = 42,
) -> ad.AnnData:
    """Leiden clustering on the batch-corrected embedding (in place).

    Args:
        adata: Co-embedded AnnData.
        resolution: Leiden resolution.
        use_rep: obsm key used for the neighbour graph.
        key_added: obs column receiving cluster labels.
        n_neighbors: Neighbours in the graph.
        seed: Random seed.

    Returns:
        The same AnnData, for chaining.
    """
    sc.pp.neighbors(adata, use_rep=use_rep, n_neighbors=n_neighbors, random_state=seed)
    sc.tl.leiden(adata, resolution=resolution, key_added=key_added, random_state=seed)
    log.info("Leiden (resolution=%.2f): %d clusters", resolution, adata.obs[key_added].nunique())
    return adata


def cluster_composition(
    adata: ad.AnnData,
    cluster_key: str = "subcluster",
    modality_key: str = MODALITY_KEY,
    patient_key: str = "patient",
) -> pd.DataFrame:
    """Summarise cell counts, modality mix and patient mix per cluster.

    Returns:
        DataFrame indexed by cluster with columns 'n_cells', one
        'frac_<modality>' column per modality, 'n_patients' and
        'max_patient_frac'.
    """
    obs = adata.obs
    comp = pd.DataFrame({"n_cells": obs.groupby(cluster_key, observed=True).size()})

    modality_frac = pd.crosstab(obs[cluster_key], obs[modality_key], normalize="index")
    for modality in modality_frac.columns:
        comp[f"frac_{modality}"] = modality_frac[modality]

    patient_frac = pd.crosstab(obs[cluster_key], obs[patient_key], normalize="index")
    comp["n_patients"] = (patient_frac > 0).sum(axis=1)
    comp["max_patient_frac"] = patient_frac.max(axis=1)
    comp.index = comp.index.astype(str)
    comp.index.name = cluster_key
    return comp


def flag_clusters(
    composition: pd.DataFrame,
    min_cells: int = 50,
    min_modality_frac: float = 0.1,
    max_patient_frac: float = 0.8,
) -> pd.DataFrame:
    """Flag clusters that look low-quality or technical.

    Args:
        composition: Output of cluster_composition().
        min_cells: Minimum cluster size.
        min_modality_frac: Minimum share of each modality.
        max_patient_frac: Maximum share of a single patient.

    Returns:
        Copy of composition with a boolean 'flagged' column and a
        'reason' column (';'-joined, empty when not flagged).
    """
    comp = composition.copy()
    reasons = pd.Series([[] for _ in range(len(comp))], index=comp.index)

    for cluster in comp.index[comp["n_cells"] < min_cells]:
        reasons[cluster].append("small")

    frac_cols = [c for c in comp.columns if c.startswith("frac_")]
    if frac_cols:
        biased = comp[frac_cols].min(axis=1) < min_modality_frac
        for cluster in comp.index[biased]:
            reasons[cluster].append("modality-bias")

    for cluster in comp.index[comp["max_patient_frac"] > max_patient_frac]:
        reasons[cluster].append("patient-bias")

    comp["reason"] = reasons.apply(";".join)
    comp["flagged"] = comp["reason"] != ""
    log.info("Flagged %d of %d clusters", comp["flagged"].sum(), len(comp))
    return comp


def cluster_markers(
    adata: ad.AnnData,
    cluster_key: str = "subcluster",
    n_genes: int = 20,
    modality: Optional[str] = "RNA",
) -> pd.DataFrame:
    """Wilcoxon marker genes per cluster for manual review.

    Only cells of ``modality`` are tested so that gene activity scores do
    not dilute expression markers.

    Returns:
        Long DataFrame with columns ['group', 'names', 'scores',
        'logfoldchanges', 'pvals', 'pvals_adj'].
    """
    sub = adata[adata.obs[MODALITY_KEY] == modality] if modality else adata
    sub = sub.copy()
    counts = sub.obs[cluster_key].value_counts()
    keep = counts.index[counts >= 2]
    sub = sub[sub.obs[cluster_key].isin(keep)].copy()
    sub.obs[cluster_key] = sub.obs[cluster_key].astype(str).astype("category")
    if sub.obs[cluster_key].nunique() < 2:
        raise ValueError("At least two clusters are required for marker detection.")

    sc.tl.rank_genes_groups(sub, groupby=cluster_key, method="wilcoxon", n_genes=n_genes)
    return sc.get.rank_genes_groups_df(sub, group=None)


def filter_clusters(
    adata: ad.AnnData,
    drop: Iterable[str],
    cluster_key: str = "subcluster",
) -> ad.AnnData:
    """Remove the given clusters.

    Args:
        adata: Clustered AnnData.
        drop: Cluster labels to remove.
        cluster_key: obs column with cluster labels.

    Returns:
        Filtered copy.

    Raises:
        ValueError: If a label in ``drop`` is not a cluster of ``adata``.
    """
    drop = {str(c) for c in drop}
    labels = adata.obs[cluster_key].astype(str)
    unknown = drop - set(labels)
    if unknown:
        raise ValueError(f"Unknown clusters in drop list: {sorted(unknown)}")

    keep = ~labels.isin(drop)
    out = adata[keep.values].copy()
    if hasattr(out.obs[cluster_key], "cat"):
        out.obs[cluster_key] = out.obs[cluster_key].cat.remove_unused_categories()
    log.info(
        "Removed clusters %s: %d → %d cells",
        sorted(drop), adata.n_obs, out.n_obs,
    )
    return out
