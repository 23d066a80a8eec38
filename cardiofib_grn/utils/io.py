"""I/O helpers for loading and saving analysis data."""

import logging
from pathlib import Path
from typing import Optional

import pandas as pd
import requests
import scanpy as sc
import yaml

log = logging.getLogger(__name__)

EDGE_COLUMNS = ["TF", "target", "importance"]


def load_h5ad(path: str | Path) -> sc.AnnData:
    """Load an AnnData object from an h5ad file.

    Args:
        path: Path to the .h5ad file.

    Returns:
        AnnData object with cells × features matrix.

    Raises:
        FileNotFoundError: If the file does not exist.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"h5ad file not found: {path}")
    return sc.read_h5ad(str(path))


def fetch_dataset(url: str, dest: str | Path, chunk_size: int = 1 << 20) -> Path:
    """Download a remote artifact once and return its local path.

    An existing file at ``dest`` is returned untouched. Downloads are
    streamed to a ``.tmp`` sibling and renamed when complete, so an
    interrupted transfer never leaves a truncated file in place.

    Args:
        url: Remote location of the file.
        dest: Local destination path.
        chunk_size: Streaming chunk size in bytes.

    Returns:
        Path to the local file.
    """
    dest = Path(dest)
    if dest.exists():
        log.info("Using cached %s", dest)
        return dest

    dest.parent.mkdir(parents=True, exist_ok=True)
    tmp = dest.with_suffix(dest.suffix + ".tmp")
    log.info("Downloading %s → %s", url, dest)
    with requests.get(url, stream=True, timeout=60) as r:
        r.raise_for_status()
        with open(tmp, "wb") as f:
            for chunk in r.iter_content(chunk_size=chunk_size):
                if chunk:
                    f.write(chunk)
    tmp.replace(dest)
    return dest


def load_inputs(
    paths: dict[str, str | Path],
    urls: Optional[dict[str, str]] = None,
) -> dict[str, sc.AnnData]:
    """Load the RNA, ATAC and gene-activity objects.

    Each entry of ``paths`` is fetched from the matching entry of ``urls``
    first when the file is missing locally and a URL is configured.

    Args:
        paths: Dict with keys 'rna', 'atac', 'gene_activity' → h5ad path.
        urls: Optional dict with the same keys → download URL.

    Returns:
        Dict with the same keys → AnnData.

    Raises:
        ValueError: If one of the three inputs is not configured.
    """
    urls = urls or {}
    required = ("rna", "atac", "gene_activity")
    missing = [k for k in required if not paths.get(k)]
    if missing:
        raise ValueError(f"Input paths not configured: {missing}")

    data = {}
    for key in required:
        path = Path(paths[key])
        if not path.exists() and urls.get(key):
            fetch_dataset(urls[key], path)
        data[key] = load_h5ad(path)
        log.info("Loaded %s: %d cells × %d features", key, *data[key].shape)
    return data


def validate_obs_columns(adata: sc.AnnData, columns: list[str], name: str = "object") -> None:
    """Raise if cell metadata columns are missing.

    Args:
        adata: AnnData to check.
        columns: Required obs column names.
        name: Label used in the error message.

    Raises:
        ValueError: If any column is absent from ``adata.obs``.
    """
    missing = [c for c in columns if c not in adata.obs.columns]
    if missing:
        raise ValueError(f"{name} is missing obs columns: {missing}")


def load_adj(path: str | Path) -> pd.DataFrame:
    """Load a GRN edge table (TF–target–importance plus optional columns).

    Args:
        path: Path to a CSV with at least the columns ['TF', 'target', 'importance'].

    Returns:
        DataFrame with the required columns first.

    Raises:
        ValueError: If required columns are missing.
    """
    df = pd.read_csv(path)
    missing = set(EDGE_COLUMNS) - set(df.columns)
    if missing:
        raise ValueError(f"Adjacency file missing columns: {missing}")
    extra = [c for c in df.columns if c not in EDGE_COLUMNS]
    return df[EDGE_COLUMNS + extra]


def save_adj(df: pd.DataFrame, path: str | Path) -> None:
    """Save a GRN edge table to CSV, required columns first.

    Args:
        df: DataFrame with columns ['TF', 'target', 'importance'] and any
            additional evidence columns.
        path: Output path for the CSV file.
    """
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    extra = [c for c in df.columns if c not in EDGE_COLUMNS]
    df[EDGE_COLUMNS + extra].to_csv(path, index=False)


def save_table(df: pd.DataFrame, path: str | Path, index: bool = False) -> Path:
    """Write a result table to CSV, creating parent directories."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=index)
    log.info("Saved %s (%d rows)", path, len(df))
    return path


def load_config(path: str | Path) -> dict:
    """Load a YAML configuration file.

    Args:
        path: Path to a YAML config file.

    Returns:
        Dictionary of configuration parameters.

    Raises:
        FileNotFoundError: If the config file does not exist.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with open(path) as f:
        return yaml.safe_load(f) or {}
