#!/usr/bin/env python
# coding: utf-8

"""
Differential Expression Statistics

Toolkit and narrated vignette for gene-wise differential expression tests.

Modules
-------
config : Configuration database for datasets, preprocessing, report output
dataset : Download, parsing, log-transform and filtering of expression data
engine : Statistical analysis (row-wise tests, empirical Bayes, nested models)
report : PDF rendering and session metadata
vignette : End-to-end narrated analysis
"""

__version__ = "0.1.0"

# Configuration
from diffexpr_stats.core.config import (
    VignetteConfig,
    export_default_config,
    get_config,
    load_config,
)

# Data
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

# Statistics
from diffexpr_stats.core.engine import (
    # Design
    model_matrix,
    # Row-wise tests
    row_ftests,
    row_ttests,
    # Moderated linear models
    LinearModelFit,
    ModeratedFit,
    e_bayes,
    lm_fit,
    squeeze_var,
    top_table,
    # Nested models
    DEResult,
    DEStudy,
    QValueResult,
    build_study,
    estimate_pi0,
    lrt,
    qvalue,
    qvalue_obj,
    # Results
    compare_statistics,
    export_results,
    summarize_statistics,
    # Visualization
    plot_pvalue_histogram,
    plot_sample_pca,
    plot_statistic_comparison,
    plot_statistic_histogram,
)

# Reporting
from diffexpr_stats.core.report import PDFLogger, session_info
from diffexpr_stats.core.vignette import VignetteResult, render_vignette

__all__ = [
    # Version
    "__version__",
    # Config
    "VignetteConfig",
    "get_config",
    "load_config",
    "export_default_config",
    # Data
    "ExpressionSet",
    "download_table",
    "parse_count_table",
    "parse_pheno_table",
    "load_expression_set",
    "log_transform",
    "filter_by_mean_expression",
    "preprocess",
    # Engine
    "model_matrix",
    "row_ttests",
    "row_ftests",
    "LinearModelFit",
    "ModeratedFit",
    "lm_fit",
    "squeeze_var",
    "e_bayes",
    "top_table",
    "DEStudy",
    "DEResult",
    "QValueResult",
    "build_study",
    "lrt",
    "estimate_pi0",
    "qvalue",
    "qvalue_obj",
    "summarize_statistics",
    "compare_statistics",
    "export_results",
    "plot_statistic_histogram",
    "plot_statistic_comparison",
    "plot_pvalue_histogram",
    "plot_sample_pca",
    # Reporting
    "PDFLogger",
    "session_info",
    "render_vignette",
    "VignetteResult",
]
