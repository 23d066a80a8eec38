"""Figures for the co-embedding, trajectory, TF selection and GRN stages.

Every function writes its figure to output_path (PNG plus an SVG copy)
and closes it. Nothing is shown interactively.
"""

from pathlib import Path
from typing import Optional

import anndata as ad
import matplotlib.pyplot as plt
import networkx as nx
import numpy as np
import pandas as pd
import seaborn as sns
from adjustText import adjust_text

from .stats import row_minmax


def _save(fig: plt.Figure, output_path: str | Path) -> None:
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_path, dpi=150, bbox_inches="tight")
    fig.savefig(output_path.with_suffix(".svg"), bbox_inches="tight")
    plt.close(fig)


def plot_embedding(
    adata: ad.AnnData,
    color: str,
    output_path: str | Path,
    basis: str = "X_umap",
    title: Optional[str] = None,
    point_size: float = 2.0,
    figsize: tuple = (7, 6),
) -> None:
    """Scatter a 2-D embedding coloured by a categorical obs column.

    Used for UMAPs of the co-embedding coloured by modality, patient,
    region, patient group or sub-cluster.

    Args:
        adata: AnnData with ``adata.obsm[basis]``.
        color: Categorical obs column.
        output_path: Path to save the figure.
        basis: obsm key with at least two dimensions.
        title: Figure title (defaults to the column name).
        point_size: Marker size.
        figsize: Figure width × height in inches.
    """
    coords = np.asarray(adata.obsm[basis])[:, :2]
    labels = adata.obs[color].astype(str)
    categories = sorted(labels.unique())
    palette = sns.color_palette("tab20", n_colors=max(len(categories), 1))

    fig, ax = plt.subplots(figsize=figsize)
    for cat, col in zip(categories, palette):
        mask = (labels == cat).values
        ax.scatter(coords[mask, 0], coords[mask, 1], s=point_size, color=col,
                   label=cat, rasterized=True, linewidths=0)
    ax.set_title(title or color)
    ax.set_xlabel(f"{basis.replace('X_', '').upper()}1")
    ax.set_ylabel(f"{basis.replace('X_', '').upper()}2")
    ax.set_xticks([])
    ax.set_yticks([])
    ax.legend(markerscale=4, frameon=False, bbox_to_anchor=(1.0, 1.0), loc="upper left")
    _save(fig, output_path)


def plot_diffmap(
    adata: ad.AnnData,
    output_path: str | Path,
    pseudotime_key: str = "pseudotime",
    components: tuple = (1, 2),
    cmap: str = "viridis",
    figsize: tuple = (6, 5),
) -> None:
    """Plot two diffusion components coloured by pseudotime.

    Args:
        adata: Trajectory AnnData with ``obsm['X_diffmap']``.
        output_path: Path to save the figure.
        pseudotime_key: obs column with pseudotime.
        components: Diffusion components to plot (0 is the stationary state).
        cmap: Colormap for pseudotime.
        figsize: Figure dimensions.
    """
    dm = adata.obsm["X_diffmap"]
    i, j = components
    fig, ax = plt.subplots(figsize=figsize)
    points = ax.scatter(dm[:, i], dm[:, j], c=adata.obs[pseudotime_key], cmap=cmap,
                        s=3, rasterized=True, linewidths=0)
    plt.colorbar(points, ax=ax, label="Pseudotime", shrink=0.6)
    ax.set_xlabel(f"DC{i}")
    ax.set_ylabel(f"DC{j}")
    ax.set_title("Diffusion map")
    _save(fig, output_path)


def plot_trajectory_heatmap(
    traj: pd.DataFrame,
    output_path: str | Path,
    features: Optional[list[str]] = None,
    cmap: str = "viridis",
    title: str = "",
    label_rows: bool = True,
    figsize: tuple = (8, 10),
) -> None:
    """Plot a features × pseudotime heatmap ordered by peak position.

    Each row is min-max scaled, then rows are sorted by the bin of their
    maximum so that the heatmap reads as a diagonal wave.

    Args:
        traj: Features × bins trajectory matrix.
        output_path: Path to save the figure.
        features: Optional subset (and order pool) of rows to show.
        cmap: Colormap name.
        title: Figure title.
        label_rows: Show row names on the y-axis.
        figsize: Figure dimensions.
    """
    mat = traj.loc[[f for f in features if f in traj.index]] if features is not None else traj
    if mat.empty:
        return
    mat = row_minmax(mat)
    mat = mat.iloc[np.argsort(np.argmax(mat.to_numpy(), axis=1), kind="stable")]

    fig, ax = plt.subplots(figsize=figsize)
    sns.heatmap(
        mat,
        ax=ax,
        cmap=cmap,
        vmin=0,
        vmax=1,
        xticklabels=False,
        yticklabels=label_rows,
        cbar_kws={"shrink": 0.5, "label": "Scaled value"},
    )
    ax.set_xlabel("Pseudotime")
    ax.set_ylabel("")
    ax.set_title(title)
    _save(fig, output_path)


def plot_tf_selection(
    corr: pd.DataFrame,
    output_path: str | Path,
    cor_cutoff: float = 0.5,
    fdr_cutoff: float = 1e-4,
    max_labels: int = 30,
    figsize: tuple = (7, 6),
) -> None:
    """Scatter TF motif–expression correlation against −log10 FDR.

    Selected TFs (above both thresholds) are highlighted and labeled.

    Args:
        corr: Output of tf_activity.correlate_tf_activity().
        output_path: Path to save the figure.
        cor_cutoff: Correlation threshold (vertical line).
        fdr_cutoff: FDR threshold (horizontal line).
        max_labels: Maximum number of labeled TFs.
        figsize: Figure dimensions.
    """
    if corr.empty:
        return
    df = corr.copy()
    df["selected"] = (df["correlation"] > cor_cutoff) & (df["FDR"] < fdr_cutoff)

    fig, ax = plt.subplots(figsize=figsize)
    ax.scatter(df.loc[~df["selected"], "correlation"], df.loc[~df["selected"], "neg_log10_FDR"],
               s=8, color="lightgrey")
    ax.scatter(df.loc[df["selected"], "correlation"], df.loc[df["selected"], "neg_log10_FDR"],
               s=14, color="firebrick")
    ax.axvline(cor_cutoff, color="grey", linestyle="--", linewidth=0.8)
    ax.axhline(-np.log10(fdr_cutoff), color="grey", linestyle="--", linewidth=0.8)

    top = df[df["selected"]].nlargest(max_labels, "correlation")
    texts = [ax.text(r.correlation, r.neg_log10_FDR, r.TF, fontsize=8)
             for r in top.itertuples()]
    if texts:
        adjust_text(texts, ax=ax, arrowprops=dict(arrowstyle="-", color="lightgrey"))

    ax.set_xlabel("Correlation (motif deviation vs. TF expression)")
    ax.set_ylabel("−log10 FDR")
    ax.set_title("TF selection along pseudotime")
    _save(fig, output_path)


def plot_grn(
    G: nx.DiGraph,
    output_path: str | Path,
    seed: int = 42,
    label_genes: bool = False,
    figsize: tuple = (12, 12),
) -> None:
    """Draw the GRN with TFs highlighted and sized by out-degree.

    Args:
        G: Directed graph from network.construct_nx_graph().
        output_path: Path to save the figure.
        seed: Layout seed.
        label_genes: Also label non-TF target nodes.
        figsize: Figure dimensions.
    """
    pos = nx.spring_layout(G, seed=seed, k=1.5 / np.sqrt(max(G.number_of_nodes(), 1)))
    tfs = [n for n, d in G.nodes(data=True) if d.get("type") == "TF"]
    genes = [n for n in G.nodes() if n not in set(tfs)]
    weights = np.array([d.get("weight", 1.0) for _, _, d in G.edges(data=True)])

    fig, ax = plt.subplots(figsize=figsize)
    nx.draw_networkx_edges(
        G, pos, ax=ax, alpha=0.3, arrows=True, arrowsize=6,
        width=(0.3 + 1.5 * weights).tolist() if len(weights) else 1.0,
        edge_color="grey",
    )
    nx.draw_networkx_nodes(G, pos, nodelist=genes, ax=ax, node_size=15, node_color="lightsteelblue")
    nx.draw_networkx_nodes(
        G, pos, nodelist=tfs, ax=ax,
        node_size=[80 + 20 * G.out_degree(n) for n in tfs], node_color="firebrick",
    )
    labels = {n: n for n in (G.nodes() if label_genes else tfs)}
    nx.draw_networkx_labels(G, pos, labels=labels, ax=ax, font_size=8)
    ax.set_axis_off()
    ax.set_title(f"GRN: {len(tfs)} TFs, {G.number_of_edges()} edges")
    _save(fig, output_path)
