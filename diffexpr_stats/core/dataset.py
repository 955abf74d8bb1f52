#!/usr/bin/env python
# coding: utf-8

"""
Expression Dataset Loading and Preprocessing
Download ReCount tables, assemble an expression set, log-transform and filter
"""

import os
import tempfile
from dataclasses import dataclass, field
from io import StringIO
from typing import Optional, Tuple
from urllib.parse import urlparse

import numpy as np
import pandas as pd
import requests

from diffexpr_stats.core.config import VignetteConfig, get_config


# ============================================================================
# EXPRESSION CONTAINER
# ============================================================================


@dataclass
class ExpressionSet:
    """
    Gene expression container.

    Attributes
    ----------
    pdata : pd.DataFrame
        samples x phenotype covariates
    edata : pd.DataFrame
        genes x samples expression values
    fdata : pd.DataFrame
        genes x feature annotation columns
    """

    pdata: pd.DataFrame
    edata: pd.DataFrame
    fdata: pd.DataFrame = field(default=None)

    def __post_init__(self):
        if self.fdata is None:
            self.fdata = pd.DataFrame(index=self.edata.index)

        if not np.array_equal(self.pdata.index.values, self.edata.columns.values):
            raise ValueError("pdata index must exactly match edata columns")

        if not np.array_equal(self.fdata.index.values, self.edata.index.values):
            raise ValueError("fdata index must exactly match edata index")

    @property
    def n_genes(self) -> int:
        return self.edata.shape[0]

    @property
    def n_samples(self) -> int:
        return self.edata.shape[1]

    def subset_genes(self, keep) -> "ExpressionSet":
        """Return a new ExpressionSet restricted to the given rows."""
        edata = self.edata.loc[keep]
        return ExpressionSet(
            pdata=self.pdata.copy(),
            edata=edata,
            fdata=self.fdata.loc[edata.index],
        )


# ============================================================================
# DOWNLOAD & PARSING
# ============================================================================


def download_table(
    url: str, timeout: float = 60, cache_dir: Optional[str] = None
) -> str:
    """
    Fetch a text table over HTTP.

    The connection is closed as soon as the body has been read. When
    ``cache_dir`` is given, a previously downloaded copy is reused and
    fresh downloads are written there.

    Parameters
    ----------
    url : str
        Location of the table
    timeout : float
        Seconds to wait for the server
    cache_dir : str, optional
        Directory for cached copies

    Returns
    -------
    str
        Response body
    """
    cache_path = None
    if cache_dir is not None:
        cache_path = os.path.join(cache_dir, os.path.basename(urlparse(url).path))
        if os.path.exists(cache_path):
            with open(cache_path, "r") as f:
                return f.read()

    with requests.get(url, timeout=timeout) as response:
        response.raise_for_status()
        text = response.text

    if cache_path is not None:
        os.makedirs(cache_dir, exist_ok=True)
        # Write then rename so a partial file is never picked up as a cache hit
        fd, tmp_path = tempfile.mkstemp(dir=cache_dir, suffix=".part")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(text)
            os.replace(tmp_path, cache_path)
        except BaseException:
            os.remove(tmp_path)
            raise

    return text


def parse_count_table(text: str) -> pd.DataFrame:
    """Parse a whitespace-delimited genes x samples count table."""
    counts = pd.read_csv(StringIO(text), sep=r"\s+", index_col=0)
    if counts.empty:
        raise ValueError("Count table contains no rows")

    non_numeric = counts.select_dtypes(exclude=[np.number]).columns.tolist()
    if non_numeric:
        raise ValueError(f"Count table contains non-numeric columns: {non_numeric}")

    counts.index = counts.index.astype(str)
    counts.index.name = "gene"
    return counts.astype(float)


def parse_pheno_table(text: str) -> pd.DataFrame:
    """Parse a whitespace-delimited phenotype table indexed by sample id."""
    pheno = pd.read_csv(StringIO(text), sep=r"\s+")
    if "sample.id" not in pheno.columns:
        raise ValueError("Phenotype table must contain a 'sample.id' column")
    pheno["sample.id"] = pheno["sample.id"].astype(str)
    return pheno.set_index("sample.id")


def load_expression_set(
    dataset_id: Optional[str] = None, config: Optional[VignetteConfig] = None
) -> ExpressionSet:
    """
    Download a ReCount dataset and assemble an ExpressionSet.

    Parameters
    ----------
    dataset_id : str, optional
        Registry key (defaults to the configured dataset)
    config : VignetteConfig, optional
        Configuration (defaults to the global instance)

    Returns
    -------
    ExpressionSet
        Raw counts with phenotype data aligned to the count columns
    """
    config = config or get_config()
    info = config.get_dataset(dataset_id)
    timeout = config.report["timeout"]
    cache_dir = config.report["cache_dir"]

    print(f"Downloading {info['name']} ...")
    counts = parse_count_table(
        download_table(info["count_url"], timeout=timeout, cache_dir=cache_dir)
    )
    pheno = parse_pheno_table(
        download_table(info["pheno_url"], timeout=timeout, cache_dir=cache_dir)
    )

    missing = [s for s in counts.columns if s not in pheno.index]
    if missing:
        raise ValueError(
            f"Phenotype table is missing {len(missing)} samples: {missing[:5]}"
        )

    pheno = pheno.loc[counts.columns]
    print(f"  {counts.shape[0]:,} genes x {counts.shape[1]} samples")

    return ExpressionSet(pdata=pheno, edata=counts)


# ============================================================================
# TRANSFORMATION & FILTERING
# ============================================================================


def log_transform(
    edata: pd.DataFrame, pseudocount: float = 1.0, base: float = 2.0
) -> pd.DataFrame:
    """Return log_base(edata + pseudocount)."""
    if (edata.values < 0).any():
        raise ValueError("edata contains negative values; cannot log-transform")
    if pseudocount <= 0 and (edata.values == 0).any():
        raise ValueError("pseudocount must be positive when edata contains zeros")

    return np.log(edata + pseudocount) / np.log(base)


def filter_by_mean_expression(
    eset: ExpressionSet, min_mean: float = 10.0
) -> Tuple[ExpressionSet, int, int]:
    """
    Keep genes whose average expression is strictly above ``min_mean``.

    Returns
    -------
    Tuple[ExpressionSet, int, int]
        (filtered_eset, n_removed, n_kept)
    """
    keep = eset.edata.mean(axis=1) > min_mean
    n_kept = int(keep.sum())
    n_removed = int((~keep).sum())
    return eset.subset_genes(keep), n_removed, n_kept


def preprocess(
    eset: ExpressionSet, config: Optional[VignetteConfig] = None
) -> Tuple[ExpressionSet, int, int]:
    """Log-transform then filter by mean expression using configured values."""
    params = (config or get_config()).preprocessing

    logged = ExpressionSet(
        pdata=eset.pdata,
        edata=log_transform(
            eset.edata, pseudocount=params["pseudocount"], base=params["log_base"]
        ),
        fdata=eset.fdata,
    )
    return filter_by_mean_expression(logged, min_mean=params["min_mean_expression"])
