"""Pairing ATAC cells with RNA cells to build pseudo-multimodal cells.

The snRNA-seq and snATAC-seq libraries were profiled on different nuclei.
To relate chromatin accessibility to expression cell by cell, each ATAC
cell is matched to one RNA cell in the co-embedded (Harmony) space:

  1. ATAC cells are shuffled and split into chunks to bound memory.
  2. For each chunk, candidate RNA cells are the k nearest RNA neighbours
     of its ATAC cells that have not been used by an earlier chunk.
  3. An optimal assignment (Hungarian algorithm) between the chunk and its
     candidates minimises the total Euclidean distance.

Every RNA cell is used at most once. ATAC cells left without a candidate
are reported and stay unpaired.
"""

import logging

import anndata as ad
import numpy as np
import pandas as pd
from scipy.optimize import linear_sum_assignment
from scipy.spatial.distance import cdist
from sklearn.neighbors import NearestNeighbors

log = logging.getLogger(__name__)

PAIR_COLUMNS = ["atac_barcode", "rna_barcode", "distance"]


def pair_cells(
    atac_emb: pd.DataFrame,
    rna_emb: pd.DataFrame,
    n_neighbors: int = 20,
    chunk_size: int = 1000,
    seed: int = 42,
) -> pd.DataFrame:
    """Match ATAC cells to RNA cells one-to-one in a shared embedding.

    Args:
        atac_emb: ATAC cells × embedding dims (index = ATAC barcodes).
        rna_emb: RNA cells × embedding dims (index = RNA barcodes), same
            columns as atac_emb.
        n_neighbors: RNA candidates per ATAC cell.
        chunk_size: ATAC cells solved jointly in one assignment problem.
        seed: Seed for the chunk order.

    Returns:
        DataFrame with columns ['atac_barcode', 'rna_barcode', 'distance'].

    Raises:
        ValueError: If either embedding is empty or dimensions differ.
    """
    if atac_emb.empty or rna_emb.empty:
        raise ValueError("Both ATAC and RNA embeddings must contain cells.")
    if atac_emb.shape[1] != rna_emb.shape[1]:
        raise ValueError("ATAC and RNA embeddings have different dimensions.")

    atac_x = atac_emb.to_numpy(dtype=float)
    rna_x = rna_emb.to_numpy(dtype=float)
    k = min(n_neighbors, len(rna_x))

    nn = NearestNeighbors(n_neighbors=k).fit(rna_x)
    _, knn = nn.kneighbors(atac_x)

    rng = np.random.default_rng(seed)
    order = rng.permutation(len(atac_x))
    used = np.zeros(len(rna_x), dtype=bool)
    records = []

    for start in range(0, len(order), chunk_size):
        chunk = order[start:start + chunk_size]
        candidates = np.unique(knn[chunk])
        candidates = candidates[~used[candidates]]
        if len(candidates) == 0:
            continue

        cost = cdist(atac_x[chunk], rna_x[candidates])
        rows, cols = linear_sum_assignment(cost)
        for r, c in zip(rows, cols):
            records.append((chunk[r], candidates[c], cost[r, c]))
        used[candidates[cols]] = True

    pairs = pd.DataFrame(records, columns=["atac_i", "rna_j", "distance"])
    pairs["atac_barcode"] = atac_emb.index[pairs["atac_i"].to_numpy(dtype=int)]
    pairs["rna_barcode"] = rna_emb.index[pairs["rna_j"].to_numpy(dtype=int)]
    pairs = pairs[PAIR_COLUMNS].sort_values("atac_barcode").reset_index(drop=True)

    n_unpaired = len(atac_x) - len(pairs)
    log.info(
        "Paired %d ATAC cells with RNA cells (%d unpaired, median distance %.3f)",
        len(pairs), n_unpaired, pairs["distance"].median() if len(pairs) else float("nan"),
    )
    return pairs


def pair_coembedded(
    coembedded: ad.AnnData,
    use_rep: str = "X_harmony",
    **kwargs,
) -> pd.DataFrame:
    """Run pair_cells() on the two modalities of a co-embedded object."""
    modality = coembedded.obs["modality"].astype(str).values
    emb = pd.DataFrame(
        coembedded.obsm[use_rep], index=coembedded.obs["barcode"].astype(str).values
    )
    return pair_cells(emb[modality == "ATAC"], emb[modality == "RNA"], **kwargs)


def build_paired_object(
    rna: ad.AnnData,
    atac: ad.AnnData,
    pairs: pd.DataFrame,
) -> tuple[ad.AnnData, ad.AnnData]:
    """Build pseudo-multimodal cells from a pair table.

    Both returned objects are indexed by ATAC barcode in the same order,
    so that row i of each describes the same pseudo-cell.

    Args:
        rna: RNA expression (index = RNA barcodes).
        atac: ATAC peaks (index = ATAC barcodes).
        pairs: Output of pair_cells().

    Returns:
        Tuple (rna_paired, atac_paired). rna_paired.obs carries the
        original 'rna_barcode'.

    Raises:
        ValueError: If the pair table is empty or references unknown cells.
    """
    if pairs.empty:
        raise ValueError("No cell pairs to build pseudo-multimodal cells from.")
    missing_rna = set(pairs["rna_barcode"]) - set(rna.obs_names)
    missing_atac = set(pairs["atac_barcode"]) - set(atac.obs_names)
    if missing_rna or missing_atac:
        raise ValueError(
            f"Pairs reference unknown cells: {len(missing_rna)} RNA, {len(missing_atac)} ATAC"
        )

    atac_paired = atac[pairs["atac_barcode"].values].copy()
    rna_paired = rna[pairs["rna_barcode"].values].copy()
    rna_paired.obs["rna_barcode"] = rna_paired.obs_names.values
    rna_paired.obs_names = pairs["atac_barcode"].values
    rna_paired.obs["pair_distance"] = pairs["distance"].values
    log.info("Built %d pseudo-multimodal cells", len(pairs))
    return rna_paired, atac_paired
