#!/usr/bin/env python
# coding: utf-8

"""
Test suite for dataset download, parsing and preprocessing

Run with:
    pytest tests/test_dataset.py -v --cov=diffexpr_stats.core.dataset
"""

from unittest.mock import MagicMock, patch

import numpy as np
import pandas as pd
import pytest
import requests

from diffexpr_stats.core.config import VignetteConfig
from diffexpr_stats.core.dataset import (
    ExpressionSet,
    download_table,
    filter_by_mean_expression,
    load_expression_set,
    log_transform,
    parse_count_table,
    parse_pheno_table,
    preprocess,
)

COUNT_TEXT = (
    "gene\tSRX001\tSRX002\tSRX003\tSRX004\n"
    "ENSMUSG01\t0\t10\t5\t7\n"
    "ENSMUSG02\t4000\t4100\t3900\t4050\n"
    "ENSMUSG03\t2500\t2600\t2400\t2550\n"
)

PHENO_TEXT = (
    "sample.id num.tech.reps strain experiment.number lane.number\n"
    "SRX003 1 DBA/2J 6 2\n"
    "SRX001 1 C57BL/6J 6 1\n"
    "SRX004 1 DBA/2J 6 2\n"
    "SRX002 1 C57BL/6J 6 1\n"
)


# ============================================================================
# FIXTURES
# ============================================================================


@pytest.fixture
def config():
    conf = VignetteConfig()
    conf.report["echo"] = False
    return conf


@pytest.fixture
def eset():
    counts = parse_count_table(COUNT_TEXT)
    pheno = parse_pheno_table(PHENO_TEXT).loc[counts.columns]
    return ExpressionSet(pdata=pheno, edata=counts)


def _fake_response(text="", status_error=None):
    response = MagicMock()
    response.text = text
    response.__enter__.return_value = response
    response.__exit__.return_value = False
    if status_error is not None:
        response.raise_for_status.side_effect = status_error
    return response


# ============================================================================
# CONTAINER TESTS
# ============================================================================


class TestExpressionSet:
    """Test the expression container."""

    def test_default_fdata(self, eset):
        """fdata defaults to an annotation frame indexed by gene."""
        assert eset.fdata.index.equals(eset.edata.index)
        assert eset.n_genes == 3
        assert eset.n_samples == 4

    def test_misaligned_pdata(self, eset):
        """pdata rows must match edata columns."""
        with pytest.raises(ValueError, match="pdata index"):
            ExpressionSet(pdata=eset.pdata.iloc[::-1], edata=eset.edata)

    def test_misaligned_fdata(self, eset):
        """fdata rows must match edata rows."""
        with pytest.raises(ValueError, match="fdata index"):
            ExpressionSet(
                pdata=eset.pdata,
                edata=eset.edata,
                fdata=pd.DataFrame(index=["x", "y", "z"]),
            )

    def test_subset_genes(self, eset):
        """Subsetting keeps edata and fdata aligned."""
        sub = eset.subset_genes(["ENSMUSG02"])
        assert sub.n_genes == 1
        assert sub.fdata.index.tolist() == ["ENSMUSG02"]
        assert sub.pdata.equals(eset.pdata)


# ============================================================================
# PARSING TESTS
# ============================================================================


class TestParsing:
    """Test table parsing."""

    def test_parse_count_table(self):
        """Counts parse into a float genes x samples frame."""
        counts = parse_count_table(COUNT_TEXT)
        assert counts.shape == (3, 4)
        assert counts.columns.tolist() == ["SRX001", "SRX002", "SRX003", "SRX004"]
        assert counts.loc["ENSMUSG02", "SRX002"] == 4100.0
        assert counts.index.name == "gene"

    def test_parse_count_table_non_numeric(self):
        """Non-numeric columns raise ValueError."""
        with pytest.raises(ValueError, match="non-numeric"):
            parse_count_table("gene s1 s2\ng1 1 a\ng2 2 b\n")

    def test_parse_count_table_empty(self):
        """Header-only tables raise ValueError."""
        with pytest.raises(ValueError, match="no rows"):
            parse_count_table("gene s1 s2\n")

    def test_parse_pheno_table(self):
        """Phenotypes are indexed by sample id."""
        pheno = parse_pheno_table(PHENO_TEXT)
        assert pheno.index.name == "sample.id"
        assert pheno.loc["SRX001", "strain"] == "C57BL/6J"
        assert pheno.loc["SRX003", "lane.number"] == 2

    def test_parse_pheno_table_missing_id(self):
        """A table without sample.id raises ValueError."""
        with pytest.raises(ValueError, match="sample.id"):
            parse_pheno_table("id strain\nA x\n")


# ============================================================================
# DOWNLOAD TESTS
# ============================================================================


class TestDownload:
    """Test HTTP download with the network stubbed out."""

    def test_download_table(self):
        """Body text is returned and the connection context is closed."""
        response = _fake_response(COUNT_TEXT)
        with patch(
            "diffexpr_stats.core.dataset.requests.get", return_value=response
        ) as mock_get:
            text = download_table("http://example.org/counts.txt", timeout=5)

        assert text == COUNT_TEXT
        mock_get.assert_called_once_with("http://example.org/counts.txt", timeout=5)
        response.raise_for_status.assert_called_once()
        response.__exit__.assert_called_once()

    def test_download_table_http_error(self):
        """HTTP errors propagate."""
        response = _fake_response(status_error=requests.HTTPError("404"))
        with patch("diffexpr_stats.core.dataset.requests.get", return_value=response):
            with pytest.raises(requests.HTTPError):
                download_table("http://example.org/missing.txt")

    def test_download_table_cache(self, tmp_path):
        """A cached copy is written once and reused."""
        cache_dir = tmp_path / "cache"
        response = _fake_response(PHENO_TEXT)
        with patch(
            "diffexpr_stats.core.dataset.requests.get", return_value=response
        ) as mock_get:
            first = download_table(
                "http://example.org/tables/pheno.txt", cache_dir=str(cache_dir)
            )
            second = download_table(
                "http://example.org/tables/pheno.txt", cache_dir=str(cache_dir)
            )

        assert first == second == PHENO_TEXT
        assert mock_get.call_count == 1
        assert (cache_dir / "pheno.txt").read_text() == PHENO_TEXT
        assert [p.name for p in cache_dir.iterdir()] == ["pheno.txt"]

    def test_download_table_cache_write_failure(self, tmp_path):
        """A failed cache write leaves no file behind for later runs."""
        cache_dir = tmp_path / "cache"
        response = _fake_response(PHENO_TEXT)
        with patch(
            "diffexpr_stats.core.dataset.requests.get", return_value=response
        ), patch(
            "diffexpr_stats.core.dataset.os.replace", side_effect=OSError("disk full")
        ):
            with pytest.raises(OSError, match="disk full"):
                download_table(
                    "http://example.org/tables/pheno.txt", cache_dir=str(cache_dir)
                )

        assert list(cache_dir.iterdir()) == []

    def test_load_expression_set(self, config):
        """Phenotype rows are reordered to follow the count columns."""
        info = config.get_dataset("bottomly")
        tables = {info["count_url"]: COUNT_TEXT, info["pheno_url"]: PHENO_TEXT}

        with patch(
            "diffexpr_stats.core.dataset.download_table",
            side_effect=lambda url, **kwargs: tables[url],
        ) as mock_download:
            eset = load_expression_set("bottomly", config=config)

        # One request for the counts, one for the phenotypes
        requested = [c.args[0] for c in mock_download.call_args_list]
        assert requested == [info["count_url"], info["pheno_url"]]

        assert eset.pdata.index.tolist() == ["SRX001", "SRX002", "SRX003", "SRX004"]
        assert eset.pdata["strain"].tolist() == [
            "C57BL/6J",
            "C57BL/6J",
            "DBA/2J",
            "DBA/2J",
        ]
        assert eset.edata.shape == (3, 4)

    def test_load_expression_set_missing_sample(self, config):
        """Samples absent from the phenotype table raise ValueError."""
        info = config.get_dataset("bottomly")
        pheno = "\n".join(PHENO_TEXT.splitlines()[:-1]) + "\n"
        tables = {info["count_url"]: COUNT_TEXT, info["pheno_url"]: pheno}

        with patch(
            "diffexpr_stats.core.dataset.download_table",
            side_effect=lambda url, **kwargs: tables[url],
        ):
            with pytest.raises(ValueError, match="missing 1 samples"):
                load_expression_set("bottomly", config=config)


# ============================================================================
# PREPROCESSING TESTS
# ============================================================================


class TestPreprocessing:
    """Test log transform and filtering."""

    def test_log_transform(self, eset):
        """log2(x + 1)."""
        logged = log_transform(eset.edata)
        assert logged.loc["ENSMUSG01", "SRX001"] == 0.0
        assert logged.loc["ENSMUSG01", "SRX002"] == pytest.approx(np.log2(11))

    def test_log_transform_base(self, eset):
        """Alternative base and pseudocount."""
        logged = log_transform(eset.edata, pseudocount=0.5, base=10)
        assert logged.loc["ENSMUSG02", "SRX001"] == pytest.approx(np.log10(4000.5))

    def test_log_transform_negative(self, eset):
        """Negative values raise ValueError."""
        edata = eset.edata.copy()
        edata.iloc[0, 0] = -1
        with pytest.raises(ValueError, match="negative"):
            log_transform(edata)

    def test_log_transform_zero_pseudocount(self, eset):
        """Zeros need a positive pseudocount."""
        with pytest.raises(ValueError, match="pseudocount"):
            log_transform(eset.edata, pseudocount=0)

    def test_filter_by_mean_expression(self, eset):
        """Only rows strictly above the threshold survive."""
        logged = ExpressionSet(
            pdata=eset.pdata, edata=log_transform(eset.edata), fdata=eset.fdata
        )
        filtered, n_removed, n_kept = filter_by_mean_expression(logged, 10)
        assert n_removed == 1
        assert n_kept == 2
        assert filtered.edata.index.tolist() == ["ENSMUSG02", "ENSMUSG03"]

    def test_filter_is_strict(self, eset):
        """A row exactly at the threshold is removed."""
        edata = pd.DataFrame(
            [[10.0, 10.0, 10.0, 10.0], [11.0, 11.0, 11.0, 11.0]],
            index=["a", "b"],
            columns=eset.edata.columns,
        )
        filtered, n_removed, _ = filter_by_mean_expression(
            ExpressionSet(pdata=eset.pdata, edata=edata), 10
        )
        assert n_removed == 1
        assert filtered.edata.index.tolist() == ["b"]

    def test_preprocess_uses_config(self, eset, config):
        """Configured pseudocount, base and threshold are applied."""
        config.preprocessing["min_mean_expression"] = 11.5
        filtered, n_removed, n_kept = preprocess(eset, config)
        assert (n_removed, n_kept) == (2, 1)
        assert filtered.edata.index.tolist() == ["ENSMUSG02"]
        assert filtered.edata.iloc[0, 0] == pytest.approx(np.log2(4001))
