#!/usr/bin/env python
# coding: utf-8

"""
Differential Expression Statistics Demo
Renders the vignette against the Bottomly RNA-seq dataset
"""

import matplotlib

matplotlib.use("Agg")

from diffexpr_stats.core.config import get_config
from diffexpr_stats.core.vignette import render_vignette


# ============================================================================
# CONFIGURATION
# ============================================================================

config = get_config()
config.report.update(
    {
        "dataset": "bottomly",
        "output_dir": "log",
        "dpi": 150,
        "cache_dir": "data",  # Reuse downloaded tables between runs
    }
)

result = render_vignette(config)

print("\n" + "=" * 70)
print("VIGNETTE COMPLETE!")
print("=" * 70)
print(f"Genes analysed: {result.eset.n_genes:,}")
print(f"Samples: {result.eset.n_samples}")
print(f"Prior df (strain model): {result.ebayes.df_prior:.2f}")
print(f"pi0 (lane effect): {result.qval.pi0:.3f}")
print(f"PDF report: {result.report_path}")
print("=" * 70)
