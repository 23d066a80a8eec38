"""Shared statistical functions used across analysis modules."""

import numpy as np
import pandas as pd
from scipy.stats import t as t_dist
from statsmodels.stats.multitest import multipletests


def apply_bh_correction(
    df: pd.DataFrame,
    pvalue_col: str = "pvalue",
) -> pd.DataFrame:
    """Apply Benjamini-Hochberg FDR correction to a p-value column.

    Adds 'FDR' and 'neg_log10_FDR' columns to the DataFrame. Missing
    p-values (e.g. from constant features) are treated as 1.

    Args:
        df: DataFrame containing a column of p-values.
        pvalue_col: Name of the column containing raw p-values.

    Returns:
        Copy of df with 'FDR' and 'neg_log10_FDR' columns added.
    """
    df = df.copy()
    if df.empty:
        df["FDR"] = pd.Series(dtype=float)
        df["neg_log10_FDR"] = pd.Series(dtype=float)
        return df

    pvals = df[pvalue_col].fillna(1.0).values
    _, fdr, _, _ = multipletests(pvals, method="fdr_bh")
    df["FDR"] = fdr
    df["neg_log10_FDR"] = -np.log10(df["FDR"].clip(lower=np.finfo(float).tiny))
    return df


def rowwise_pearson(
    x: np.ndarray,
    y: np.ndarray,
) -> tuple[np.ndarray, np.ndarray]:
    """Pearson correlation between matched rows of two matrices.

    Row i of ``x`` is correlated with row i of ``y``. Significance uses the
    usual t statistic r·sqrt((n-2)/(1-r²)) with n-2 degrees of freedom,
    where n is the number of columns (pseudotime bins).

    Args:
        x: Array of shape (n_pairs × n_points).
        y: Array of shape (n_pairs × n_points).

    Returns:
        Tuple of (correlation, two-sided p-value) arrays of length n_pairs.
        Rows with zero variance get NaN for both.
    """
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    if x.shape != y.shape:
        raise ValueError(f"Shape mismatch: {x.shape} vs {y.shape}")
    n = x.shape[1]
    if n < 3:
        raise ValueError("At least three points are required for a correlation test.")

    xc = x - x.mean(axis=1, keepdims=True)
    yc = y - y.mean(axis=1, keepdims=True)
    denom = np.sqrt((xc ** 2).sum(axis=1) * (yc ** 2).sum(axis=1))
    with np.errstate(divide="ignore", invalid="ignore"):
        r = (xc * yc).sum(axis=1) / denom
        r = np.clip(r, -1.0, 1.0)
        t_stat = r * np.sqrt((n - 2) / (1.0 - r ** 2))
    pvalue = 2 * t_dist.sf(np.abs(t_stat), df=n - 2)
    pvalue[np.isnan(r)] = np.nan
    return r, pvalue


def row_minmax(df: pd.DataFrame) -> pd.DataFrame:
    """Rescale each row to [0, 1]; constant rows become 0."""
    lo = df.min(axis=1)
    span = (df.max(axis=1) - lo).replace(0, np.nan)
    return df.sub(lo, axis=0).div(span, axis=0).fillna(0.0)
