#!/usr/bin/env python
# coding: utf-8

"""
End-to-end tests for the rendered vignette on a synthetic Bottomly-like dataset

Run with:
    pytest tests/test_vignette.py -v --cov=diffexpr_stats.core.vignette
"""

import matplotlib

matplotlib.use("Agg")

import os

import numpy as np
import pandas as pd
import pytest

from diffexpr_stats.core.config import VignetteConfig
from diffexpr_stats.core.dataset import ExpressionSet
from diffexpr_stats.core.vignette import VignetteResult, render_vignette


@pytest.fixture
def config():
    conf = VignetteConfig()
    conf.report["echo"] = False
    conf.report["dpi"] = 50
    return conf


@pytest.fixture(scope="module")
def bottomly_like():
    """21 samples, two strains crossed with seven lanes, 300 expressed genes."""
    rng = np.random.default_rng(7)
    n_samples = 21
    samples = [f"SRX0335{i:02d}" for i in range(n_samples)]

    pdata = pd.DataFrame(
        {
            "num.tech.reps": 1,
            "strain": ["C57BL/6J" if i < 10 else "DBA/2J" for i in range(n_samples)],
            "experiment.number": [4 if i % 2 else 6 for i in range(n_samples)],
            "lane.number": [i % 7 + 1 for i in range(n_samples)],
        },
        index=pd.Index(samples, name="sample.id"),
    )

    n_expressed, n_low = 300, 10
    mu = np.exp(rng.uniform(7.5, 9.0, size=n_expressed))[:, None] * np.ones(n_samples)
    mu[:20, 10:] *= 2.0
    expressed = rng.negative_binomial(20, 20 / (20 + mu))
    low = rng.poisson(5, size=(n_low, n_samples))

    genes = [f"ENSMUSG{i:011d}" for i in range(n_expressed + n_low)]
    edata = pd.DataFrame(
        np.vstack([expressed, low]).astype(float), index=genes, columns=samples
    )
    return ExpressionSet(pdata=pdata, edata=edata)


@pytest.fixture(scope="module")
def rendered(bottomly_like, tmp_path_factory):
    conf = VignetteConfig()
    conf.report["echo"] = False
    conf.report["dpi"] = 50
    output_dir = tmp_path_factory.mktemp("vignette")
    result = render_vignette(conf, output_dir=str(output_dir), eset=bottomly_like)
    return result, output_dir


class TestRenderVignette:
    """Test the full narrated analysis."""

    def test_report_written(self, rendered):
        """The PDF is built next to its figure assets."""
        result, output_dir = rendered
        assert isinstance(result, VignetteResult)
        assert result.saved
        assert result.report_path == os.path.join(str(output_dir), "vignette.pdf")
        assert os.path.getsize(result.report_path) > 0

        figures = os.listdir(os.path.join(str(output_dir), "assets"))
        assert len(figures) == 9
        assert all(name.endswith(".png") for name in figures)

    def test_filtering(self, rendered):
        """Lowly expressed genes are dropped before testing."""
        result, _ = rendered
        assert result.eset.n_genes == 300
        assert result.eset.edata.mean(axis=1).min() > 10

    def test_statistics_table(self, rendered):
        """All statistics share the filtered gene index."""
        result, output_dir = rendered
        expected = {
            "t",
            "moderated_t",
            "moderated_t_adj",
            "F",
            "moderated_F",
            "lrt_stat",
            "lrt_qval",
            "lrt_stat_adj",
            "lrt_qval_adj",
        }
        assert set(result.statistics.columns) == expected
        assert result.statistics.index.equals(result.eset.edata.index)

        exported = pd.read_csv(
            os.path.join(str(output_dir), "statistics.csv"), index_col=0
        )
        assert exported.shape == result.statistics.shape

    def test_lrt_matches_row_ftests(self, rendered):
        """Without adjustment the nested comparison is one-way ANOVA."""
        result, _ = rendered
        np.testing.assert_allclose(
            result.statistics["lrt_stat"], result.statistics["F"], rtol=1e-6
        )

    def test_moderated_t_tracks_row_t(self, rendered):
        """Moderated t follows the ordinary t with the opposite sign."""
        result, _ = rendered
        stats = result.statistics
        assert np.corrcoef(stats["moderated_t"], -stats["t"])[0, 1] > 0.9

    def test_strain_effect_detected(self, rendered):
        """Spiked genes top the strain comparison."""
        result, _ = rendered
        top = result.statistics["moderated_t"].abs().nlargest(20).index
        spiked = result.eset.edata.index[:20]
        assert len(top.intersection(spiked)) >= 15

    def test_batch_coefficients(self, rendered):
        """The moderated F covers the six non-reference lanes."""
        result, _ = rendered
        lane_cols = [c for c in result.top_batch.columns if c.startswith("lane.number")]
        assert len(lane_cols) == 6
        assert (result.top_batch["F"] >= 0).all()

    def test_qvalues_bounded(self, rendered):
        result, _ = rendered
        for qv in (result.qval, result.qval_adj):
            assert 0 < qv.pi0 <= 1
            assert qv.qvalues.between(0, 1).all()

    def test_too_few_genes(self, bottomly_like, config, tmp_path):
        """A filter that removes nearly everything stops the vignette."""
        config.preprocessing["min_mean_expression"] = 100.0
        with pytest.raises(ValueError, match="genes pass the expression filter"):
            render_vignette(config, output_dir=str(tmp_path), eset=bottomly_like)
