"""Co-embedding of snRNA-seq and snATAC-seq cells.

RNA expression and ATAC gene activity are unpaired measurements of the
same fibroblast population. They are placed in one latent space in
three steps:

  1. Feature selection: highly variable genes of the RNA data that are
     also present in the gene-activity matrix.
  2. Canonical correlation: both matrices are standardised on the shared
     genes and the cell × cell cross-product is decomposed by truncated
     SVD. The left and right singular vectors are the canonical
     correlation vectors of RNA and ATAC cells respectively (L2
     normalised per cell).
  3. Batch correction: Harmony is run on the CCA coordinates over the
     patient label, followed by a neighbour graph and UMAP.
"""

import logging
from typing import Optional

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc
from scipy.sparse.linalg import LinearOperator, svds
from sklearn.preprocessing import normalize

log = logging.getLogger(__name__)

MODALITY_KEY = "modality"


# ── Feature selection ─────────────────────────────────────────────────────────

def _lognorm(adata: ad.AnnData, target_sum: float = 1e4) -> ad.AnnData:
    out = adata.copy()
    sc.pp.normalize_total(out, target_sum=target_sum)
    sc.pp.log1p(out)
    return out


def select_integration_features(
    rna: ad.AnnData,
    gene_activity: ad.AnnData,
    n_top_genes: int = 2000,
) -> list[str]:
    """Pick the genes used to anchor RNA and ATAC cells.

    Args:
        rna: Log-normalised RNA expression (cells × genes).
        gene_activity: Log-normalised ATAC gene activity (cells × genes).
        n_top_genes: Number of RNA highly variable genes to consider.

    Returns:
        Sorted list of HVGs present in both objects.

    Raises:
        ValueError: If no HVG is present in the gene-activity matrix.
    """
    hvg = sc.pp.highly_variable_genes(
        rna, n_top_genes=min(n_top_genes, rna.n_vars), inplace=False
    )
    hvg_genes = set(rna.var_names[hvg["highly_variable"].values])
    features = sorted(hvg_genes & set(gene_activity.var_names))
    if not features:
        raise ValueError("No highly variable RNA genes found in the gene-activity matrix.")
    log.info("Integration features: %d of %d HVGs", len(features), len(hvg_genes))
    return features


# ── CCA ───────────────────────────────────────────────────────────────────────

def run_cca(
    x_rna: np.ndarray,
    x_atac: np.ndarray,
    n_components: int = 30,
    seed: int = 42,
) -> tuple[np.ndarray, np.ndarray]:
    """Canonical correlation vectors of two standardised cell × gene matrices.

    The cross-product x_rna · x_atacᵀ (cells_rna × cells_atac) is never
    materialised; ``svds`` works on it through a LinearOperator.

    Args:
        x_rna: Standardised RNA matrix (cells_rna × genes).
        x_atac: Standardised gene-activity matrix (cells_atac × genes),
            same gene order as x_rna.
        n_components: Number of canonical vectors.
        seed: Random state for the ARPACK start vector.

    Returns:
        Tuple (rna_cca, atac_cca) of L2-normalised embeddings, components
        ordered by decreasing singular value.
    """
    x_rna = np.asarray(x_rna, dtype=float)
    x_atac = np.asarray(x_atac, dtype=float)
    if x_rna.shape[1] != x_atac.shape[1]:
        raise ValueError("RNA and ATAC matrices must share the same features.")
    n_rna, n_atac = x_rna.shape[0], x_atac.shape[0]
    k = min(n_components, min(n_rna, n_atac) - 1)
    if k < 1:
        raise ValueError("Too few cells for canonical correlation.")

    op = LinearOperator(
        (n_rna, n_atac),
        matvec=lambda v: x_rna @ (x_atac.T @ v),
        rmatvec=lambda u: x_atac @ (x_rna.T @ u),
        dtype=float,
    )
    u, s, vt = svds(op, k=k, random_state=seed)
    order = np.argsort(s)[::-1]
    rna_cca = normalize(u[:, order])
    atac_cca = normalize(vt[order].T)
    return rna_cca, atac_cca


# ── Batch correction ──────────────────────────────────────────────────────────

def run_harmony(embedding: np.ndarray, meta: pd.DataFrame, batch_key: str) -> np.ndarray:
    """Harmony-correct a cells × dims embedding over one obs column.

    harmonypy releases differ in whether Z_corr is dims × cells or
    cells × dims; the result here is always cells × dims.
    """
    import harmonypy

    embedding = np.asarray(embedding, dtype=float)
    ho = harmonypy.run_harmony(embedding, meta, [batch_key])
    z = np.asarray(ho.Z_corr)
    if z.shape[0] != embedding.shape[0]:
        z = z.T
    return z


# ── Full co-embedding ─────────────────────────────────────────────────────────

def run_coembedding(
    rna: ad.AnnData,
    gene_activity: ad.AnnData,
    n_top_genes: int = 2000,
    n_components: int = 30,
    batch_key: Optional[str] = "patient",
    n_neighbors: int = 30,
    seed: int = 42,
) -> ad.AnnData:
    """Co-embed RNA cells and ATAC cells (via gene activity) in one space.

    Args:
        rna: Raw RNA counts (cells × genes) with patient metadata in obs.
        gene_activity: ATAC gene activity (ATAC cells × genes).
        n_top_genes: HVGs considered for integration features.
        n_components: Number of CCA dimensions.
        batch_key: obs column for Harmony; None skips batch correction.
        n_neighbors: Neighbours for the UMAP graph.
        seed: Random seed for SVD, neighbours and UMAP.

    Returns:
        Combined AnnData (RNA + ATAC cells) over the integration features
        with obs['modality'], obs['barcode'], and obsm 'X_cca',
        'X_harmony' and 'X_umap'. Cell ids are '<modality>#<barcode>'.
    """
    rna_norm = _lognorm(rna)
    ga_norm = _lognorm(gene_activity)
    features = select_integration_features(rna_norm, ga_norm, n_top_genes=n_top_genes)

    rna_sub = rna_norm[:, features].copy()
    ga_sub = ga_norm[:, features].copy()
    rna_scaled = sc.pp.scale(rna_sub, max_value=10, copy=True)
    ga_scaled = sc.pp.scale(ga_sub, max_value=10, copy=True)

    log.info("Running CCA on %d RNA × %d ATAC cells", rna.n_obs, gene_activity.n_obs)
    rna_cca, atac_cca = run_cca(
        _dense(rna_scaled.X), _dense(ga_scaled.X),
        n_components=n_components, seed=seed,
    )

    combined = ad.concat(
        {"RNA": rna_sub, "ATAC": ga_sub},
        label=MODALITY_KEY,
        join="inner",
        merge="same",
    )
    combined.obs["barcode"] = np.concatenate(
        [rna_sub.obs_names.values, ga_sub.obs_names.values]
    )
    combined.obs_names = (
        combined.obs[MODALITY_KEY].astype(str) + "#" + combined.obs["barcode"].astype(str)
    ).values
    combined.obsm["X_cca"] = np.vstack([rna_cca, atac_cca])

    if batch_key is not None:
        if batch_key not in combined.obs.columns:
            raise ValueError(f"Batch key '{batch_key}' missing from RNA/ATAC metadata.")
        log.info("Running Harmony over '%s'", batch_key)
        combined.obsm["X_harmony"] = run_harmony(combined.obsm["X_cca"], combined.obs, batch_key)
    else:
        combined.obsm["X_harmony"] = combined.obsm["X_cca"].copy()

    sc.pp.neighbors(combined, use_rep="X_harmony", n_neighbors=n_neighbors, random_state=seed)
    sc.tl.umap(combined, random_state=seed)
    log.info("Co-embedding: %d cells, %d dims", combined.n_obs, combined.obsm["X_cca"].shape[1])
    return combined


def split_by_modality(adata: ad.AnnData, modality: str) -> ad.AnnData:
    """Return the cells of one modality, indexed by their original barcode."""
    sub = adata[adata.obs[MODALITY_KEY] == modality].copy()
    sub.obs_names = sub.obs["barcode"].astype(str).values
    return sub


def _dense(x) -> np.ndarray:
    return x.toarray() if hasattr(x, "toarray") else np.asarray(x)
