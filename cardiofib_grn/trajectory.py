"""Trajectory inference and pseudotime-resolved feature matrices.

Pseudotime:
  1. Restrict the co-embedding to an ordered list of clusters
     (e.g. quiescent → activated → myofibroblast sub-clusters).
  2. Build a neighbour graph and a diffusion map on the Harmony space.
  3. Drop cells lying far from their own cluster centroid in diffusion
     space (above ``pre_filter_quantile`` of the within-cluster distances).
  4. Root diffusion pseudotime (DPT) at the first-cluster cell farthest from
     the centroid of the last cluster, then rank-transform to (0, 100].

Trajectory matrices:
  Cells are grouped into ``n_bins`` equal-width pseudotime bins, averaged,
  optionally depth-scaled and log2-transformed, and smoothed with a centred
  rolling mean. Two trajectory matrices over the same bins can then be
  correlated feature pair by feature pair.
"""

import logging
from typing import Optional, Sequence

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc
import scipy.sparse as sp

from .utils.stats import apply_bh_correction, rowwise_pearson

log = logging.getLogger(__name__)

CORR_NUMERIC_COLUMNS = ["correlation", "pvalue", "FDR", "neg_log10_FDR", "var_a", "var_b", "peak_a"]


# ── Pseudotime ────────────────────────────────────────────────────────────────

def _diffusion_coords(adata: ad.AnnData, use_rep: str, n_neighbors: int, n_comps: int, seed: int) -> np.ndarray:
    sc.pp.neighbors(adata, use_rep=use_rep, n_neighbors=n_neighbors, random_state=seed)
    sc.tl.diffmap(adata, n_comps=n_comps)
    # component 0 is the stationary state
    return adata.obsm["X_diffmap"][:, 1:]


def _centroid_distance(coords: np.ndarray, labels: np.ndarray, cluster) -> np.ndarray:
    centroid = coords[labels == cluster].mean(axis=0)
    return np.linalg.norm(coords - centroid, axis=1)


def add_trajectory(
    adata: ad.AnnData,
    trajectory: Sequence[str],
    cluster_key: str = "subcluster",
    use_rep: str = "X_harmony",
    key_added: str = "pseudotime",
    n_neighbors: int = 30,
    n_comps: int = 10,
    pre_filter_quantile: Optional[float] = 0.9,
    seed: int = 42,
) -> ad.AnnData:
    """Fit a 1-D pseudotime over an ordered set of clusters.

    ``adata.obs[key_added]`` is written for every cell (NaN off-trajectory).

    Args:
        adata: Clustered co-embedding.
        trajectory: Ordered cluster labels; the first is the root.
        cluster_key: obs column with cluster labels.
        use_rep: obsm key of the embedding.
        key_added: obs column receiving pseudotime.
        n_neighbors: Neighbours for the diffusion graph.
        n_comps: Diffusion components.
        pre_filter_quantile: Within-cluster centroid distance quantile above
            which cells are excluded; None keeps every cell.
        seed: Random seed.

    Returns:
        AnnData of the trajectory cells with pseudotime and 'X_diffmap'.

    Raises:
        ValueError: If fewer than two clusters are given or one is unknown.
    """
    trajectory = [str(c) for c in trajectory]
    if len(trajectory) < 2:
        raise ValueError("A trajectory needs at least two clusters.")
    labels_all = adata.obs[cluster_key].astype(str)
    unknown = set(trajectory) - set(labels_all)
    if unknown:
        raise ValueError(f"Unknown trajectory clusters: {sorted(unknown)}")

    sub = adata[labels_all.isin(trajectory).values].copy()
    labels = sub.obs[cluster_key].astype(str).values

    if pre_filter_quantile is not None:
        coords = _diffusion_coords(sub, use_rep, n_neighbors, n_comps, seed)
        keep = np.ones(sub.n_obs, dtype=bool)
        for cluster in trajectory:
            in_cluster = labels == cluster
            dist = _centroid_distance(coords, labels, cluster)[in_cluster]
            cutoff = np.quantile(dist, pre_filter_quantile)
            keep[np.where(in_cluster)[0][dist > cutoff]] = False
        log.info("Trajectory pre-filter kept %d of %d cells", keep.sum(), sub.n_obs)
        sub = sub[keep].copy()
        labels = labels[keep]

    coords = _diffusion_coords(sub, use_rep, n_neighbors, n_comps, seed)
    root_candidates = np.where(labels == trajectory[0])[0]
    dist_to_end = _centroid_distance(coords, labels, trajectory[-1])
    sub.uns["iroot"] = int(root_candidates[np.argmax(dist_to_end[root_candidates])])
    sc.tl.dpt(sub, n_dcs=min(n_comps, sub.obsm["X_diffmap"].shape[1]))

    dpt = sub.obs["dpt_pseudotime"].replace([np.inf, -np.inf], np.nan)
    sub.obs[key_added] = 100 * dpt.rank(method="first") / dpt.notna().sum()

    adata.obs[key_added] = np.nan
    adata.obs.loc[sub.obs_names, key_added] = sub.obs[key_added].values

    means = sub.obs.groupby(labels)[key_added].mean().reindex(trajectory)
    log.info("Mean pseudotime per cluster: %s", means.round(1).to_dict())
    return sub


# ── Trajectory matrices ───────────────────────────────────────────────────────

def get_trajectory(
    adata: ad.AnnData,
    pseudotime: Optional[pd.Series] = None,
    pseudotime_key: str = "pseudotime",
    layer: Optional[str] = None,
    n_bins: int = 100,
    smooth_window: int = 11,
    log2_norm: bool = True,
    scale_to: float = 1e4,
) -> pd.DataFrame:
    """Average and smooth a cells × features matrix along pseudotime.

    Args:
        adata: Cells × features (genes, peaks or motifs).
        pseudotime: Optional pseudotime per cell (index = obs_names);
            defaults to adata.obs[pseudotime_key]. Cells with NaN are ignored.
        pseudotime_key: obs column used when pseudotime is None.
        layer: Layer to use instead of X.
        n_bins: Number of equal-width bins over [0, 100].
        smooth_window: Width of the centred rolling mean (in bins).
        log2_norm: Scale each bin to ``scale_to`` total and take log2(x+1).
            Use for counts; disable for deviation scores.
        scale_to: Bin total after depth scaling.

    Returns:
        DataFrame of shape (n_features × n_bins); columns are bin centres.

    Raises:
        ValueError: If no cell has a pseudotime.
    """
    if pseudotime is None:
        pseudotime = adata.obs[pseudotime_key]
    pt = pd.Series(pseudotime).reindex(adata.obs_names).to_numpy(dtype=float)
    keep = ~np.isnan(pt)
    if not keep.any():
        raise ValueError("No cells with pseudotime.")

    X = adata.layers[layer] if layer else adata.X
    X = X[np.where(keep)[0]]
    pt = pt[keep]

    edges = np.linspace(0, 100, n_bins + 1)
    bins = np.clip(np.searchsorted(edges, pt, side="right") - 1, 0, n_bins - 1)
    n = len(pt)
    indicator = sp.csr_matrix((np.ones(n), (bins, np.arange(n))), shape=(n_bins, n))
    counts = np.asarray(indicator.sum(axis=1)).ravel()

    sums = indicator @ X
    sums = sums.toarray() if sp.issparse(sums) else np.asarray(sums)
    with np.errstate(divide="ignore", invalid="ignore"):
        means = sums / counts[:, None]
        if log2_norm:
            totals = means.sum(axis=1, keepdims=True)
            means = np.log2(means / totals * scale_to + 1)

    centers = (edges[:-1] + edges[1:]) / 2
    df = pd.DataFrame(means, index=centers, columns=adata.var_names)
    df = df.interpolate(axis=0, limit_direction="both")
    df = df.rolling(smooth_window, center=True, min_periods=1).mean()
    return df.T


def correlate_trajectories(
    traj_a: pd.DataFrame,
    traj_b: pd.DataFrame,
    pairs: pd.DataFrame,
    var_cutoff_a: float = 0.0,
    var_cutoff_b: float = 0.0,
) -> pd.DataFrame:
    """Correlate matched features of two trajectory matrices.

    Args:
        traj_a: Features × bins (e.g. motif deviations or peaks).
        traj_b: Features × bins over the same bins (e.g. gene expression).
        pairs: DataFrame with columns ['feature_a', 'feature_b'].
        var_cutoff_a: Variance quantile a feature of traj_a must exceed
            (computed over all rows of traj_a); 0 keeps all.
        var_cutoff_b: Same for traj_b.

    Returns:
        DataFrame with columns ['feature_a', 'feature_b', 'correlation',
        'pvalue', 'FDR', 'neg_log10_FDR', 'var_a', 'var_b', 'peak_a'],
        where 'peak_a' is the bin centre at which feature_a is maximal.
    """
    if not traj_a.columns.equals(traj_b.columns):
        raise ValueError("Trajectory matrices must share the same pseudotime bins.")

    var_a = traj_a.var(axis=1)
    var_b = traj_b.var(axis=1)
    pass_a = var_a[var_a >= var_a.quantile(var_cutoff_a)].index
    pass_b = var_b[var_b >= var_b.quantile(var_cutoff_b)].index

    df = pairs[["feature_a", "feature_b"]].drop_duplicates()
    df = df[df["feature_a"].isin(pass_a) & df["feature_b"].isin(pass_b)].reset_index(drop=True)
    if df.empty:
        log.warning("No feature pairs passed the variance filters.")
        columns = {"feature_a": pd.Series(dtype=object), "feature_b": pd.Series(dtype=object)}
        columns.update({c: pd.Series(dtype=float) for c in CORR_NUMERIC_COLUMNS})
        return pd.DataFrame(columns)

    a = traj_a.loc[df["feature_a"]].to_numpy()
    b = traj_b.loc[df["feature_b"]].to_numpy()
    df["correlation"], df["pvalue"] = rowwise_pearson(a, b)
    df = apply_bh_correction(df, pvalue_col="pvalue")
    df["var_a"] = var_a.loc[df["feature_a"]].values
    df["var_b"] = var_b.loc[df["feature_b"]].values
    df["peak_a"] = traj_a.columns.values[np.argmax(a, axis=1)]
    return df
