#!/usr/bin/env python
# coding: utf-8

"""
Differential Expression Statistics Vignette

Narrated walk-through of row-wise t- and F-tests, moderated linear models
and nested model comparisons on a public RNA-seq dataset, rendered to PDF.
"""

import os
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import pandas as pd

from diffexpr_stats.core.config import VignetteConfig, get_config
from diffexpr_stats.core.dataset import (
    ExpressionSet,
    load_expression_set,
    preprocess,
)
from diffexpr_stats.core.engine import (
    DEResult,
    ModeratedFit,
    QValueResult,
    build_study,
    compare_statistics,
    e_bayes,
    export_results,
    lm_fit,
    lrt,
    model_matrix,
    plot_pvalue_histogram,
    plot_sample_pca,
    plot_statistic_comparison,
    plot_statistic_histogram,
    qvalue_obj,
    row_ftests,
    row_ttests,
    summarize_statistics,
    top_table,
)
from diffexpr_stats.core.report import PDFLogger


@dataclass
class VignetteResult:
    """Everything computed while rendering the vignette."""

    eset: ExpressionSet
    tstats: pd.DataFrame
    fstats: pd.DataFrame
    ebayes: ModeratedFit
    ebayes_adj: ModeratedFit
    ebayes_batch: ModeratedFit
    top_batch: pd.DataFrame
    de: DEResult
    qval: QValueResult
    de_adj: DEResult
    qval_adj: QValueResult
    statistics: pd.DataFrame
    report_path: str
    saved: bool


def _section(pdf: PDFLogger, title: str):
    print("\n" + "=" * 70)
    pdf.log_text(f"## {title}")
    print("=" * 70)


def render_vignette(
    config: Optional[VignetteConfig] = None,
    output_dir: Optional[str] = None,
    eset: Optional[ExpressionSet] = None,
) -> VignetteResult:
    """
    Run the vignette top to bottom and build the PDF report.

    Parameters
    ----------
    config : VignetteConfig, optional
        Configuration (defaults to the global instance)
    output_dir : str, optional
        Report directory (defaults to ``<report.output_dir>/<timestamp>``)
    eset : ExpressionSet, optional
        Raw expression set; when omitted the configured dataset is downloaded

    Returns
    -------
    VignetteResult
    """
    config = config or get_config()
    dataset = config.get_dataset()
    report = config.report
    group_col = dataset["group_col"]
    batch_col = dataset["batch_col"]

    if output_dir is None:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        output_dir = os.path.join(report["output_dir"], timestamp)
    os.makedirs(output_dir, exist_ok=True)

    pdf = PDFLogger(
        os.path.join(output_dir, "vignette.pdf"),
        echo=report["echo"],
        assets_dir=os.path.join(output_dir, "assets"),
        dpi=report["dpi"],
    )
    start_time = time.time()

    pdf.log_text("# Calculating statistics for differential expression")
    pdf.log_text(f"**Generated**: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    pdf.log_paragraphs(
        """
        This vignette computes gene-wise test statistics on an RNA-seq
        experiment. We start with classical t- and F-tests applied to every
        row, then fit moderated linear models that borrow strength across
        genes, and finally compare nested models with and without an
        adjustment variable.
        """
    )

    # ------------------------------------------------------------------
    # 1. Data
    # ------------------------------------------------------------------
    _section(pdf, "1. Load the data")
    pdf.log_paragraphs(
        f"""
        We use the **{dataset['name']}** dataset from the ReCount project:
        {dataset.get('description', '')}. The phenotype table, the expression
        matrix and the feature annotation are pulled out of the expression set.
        """
    )
    pdf.log_code(
        f"eset = load_expression_set('{report['dataset']}')\n"
        "pdata, edata, fdata = eset.pdata, eset.edata, eset.fdata"
    )
    if eset is None:
        eset = load_expression_set(config=config)
    pdf.log_dataframe(eset.pdata, title="Phenotype data")

    pdf.log_paragraphs(
        """
        Counts are log2-transformed after adding a pseudocount, and lowly
        expressed genes are removed by thresholding the average expression.
        """
    )
    params = config.preprocessing
    pdf.log_code(
        f"edata = log_transform(edata, pseudocount={params['pseudocount']:g}, "
        f"base={params['log_base']:g})\n"
        f"edata = edata[edata.mean(axis=1) > {params['min_mean_expression']:g}]"
    )
    eset, n_removed, n_kept = preprocess(eset, config)
    if n_kept < 3:
        raise ValueError(
            f"Only {n_kept} genes pass the expression filter; lower "
            "min_mean_expression"
        )
    pdf.log_text(f"- **Genes removed**: {n_removed:,}")
    pdf.log_text(f"- **Genes kept**: {n_kept:,}")
    pdf.log_text(f"- **Samples**: {eset.n_samples}")

    pdata, edata = eset.pdata, eset.edata
    groups = pdata[group_col]
    batches = pdata[batch_col]

    pdf.log_code(f"plot_sample_pca(edata, pdata, color_col='{group_col}')")
    pdf.log_figure(
        plot_sample_pca(edata, pdata, color_col=group_col),
        "sample_pca",
        f"Samples projected on the first two principal components, coloured by {group_col}",
    )

    # ------------------------------------------------------------------
    # 2. Row-wise tests
    # ------------------------------------------------------------------
    _section(pdf, "2. Row-wise t- and F-tests")
    pdf.log_paragraphs(
        f"""
        `row_ttests` computes an equal-variance two-sample t-statistic for
        every gene comparing the levels of `{group_col}`. `row_ftests` computes
        a one-way ANOVA F-statistic for a factor with more than two levels,
        here `{batch_col}`.
        """
    )
    pdf.log_code(f"tstats = row_ttests(edata, pdata['{group_col}'])")
    tstats = row_ttests(edata, groups)
    pdf.log_dataframe(tstats, title="Row-wise t-tests")
    pdf.log_figure(
        plot_statistic_histogram(
            tstats["statistic"], title="Row-wise t-statistics", xlabel="t"
        ),
        "ttest_hist",
        f"t-statistics for {group_col}",
    )

    pdf.log_code(f"fstats = row_ftests(edata, pdata['{batch_col}'])")
    fstats = row_ftests(edata, batches)
    pdf.log_dataframe(fstats, title="Row-wise F-tests")
    pdf.log_figure(
        plot_statistic_histogram(
            fstats["statistic"], title="Row-wise F-statistics", xlabel="F"
        ),
        "ftest_hist",
        f"F-statistics for {batch_col}",
    )

    # ------------------------------------------------------------------
    # 3. Moderated t-statistics
    # ------------------------------------------------------------------
    _section(pdf, "3. Moderated t-statistics")
    pdf.log_paragraphs(
        """
        `lm_fit` fits a linear model to every gene and `e_bayes` shrinks the
        gene-wise variances towards a common prior before forming
        t-statistics. The moderated statistics track the ordinary ones
        closely; the sign is flipped because the model coefficient measures
        the second level relative to the first.
        """
    )
    pdf.log_code(
        f"mod = model_matrix(pdata, ['{group_col}'])\n"
        "ebayes = e_bayes(lm_fit(edata, mod))"
    )
    mod = model_matrix(pdata, [group_col])
    ebayes = e_bayes(lm_fit(edata, mod))
    group_coef = mod.columns[1]
    pdf.log_text(
        f"- **Prior df**: {ebayes.df_prior:.2f}; **prior variance**: "
        f"{ebayes.s2_prior:.4f}"
    )
    pdf.log_dataframe(ebayes.t, title="Moderated t-statistics")
    pdf.log_figure(
        plot_statistic_comparison(
            ebayes.t[group_coef],
            -tstats["statistic"],
            xlabel="Moderated t",
            ylabel="-row_ttests t",
        ),
        "moderated_vs_ttest",
        "Moderated against ordinary t-statistics",
    )

    pdf.log_paragraphs(
        f"""
        Adding `{batch_col}` to the model adjusts the strain comparison for
        the lane a sample was sequenced on.
        """
    )
    pdf.log_code(
        f"mod_adj = model_matrix(pdata, ['{group_col}', '{batch_col}'])\n"
        "ebayes_adj = e_bayes(lm_fit(edata, mod_adj))"
    )
    mod_adj = model_matrix(pdata, [group_col, batch_col])
    ebayes_adj = e_bayes(lm_fit(edata, mod_adj))
    pdf.log_dataframe(ebayes_adj.t, title="Adjusted moderated t-statistics")
    pdf.log_figure(
        plot_statistic_comparison(
            ebayes.t[group_coef],
            ebayes_adj.t[group_coef],
            xlabel="Unadjusted moderated t",
            ylabel="Adjusted moderated t",
        ),
        "adjusted_vs_unadjusted_t",
        f"Effect of adjusting for {batch_col}",
    )

    # ------------------------------------------------------------------
    # 4. Moderated F-statistics
    # ------------------------------------------------------------------
    _section(pdf, "4. Moderated F-statistics")
    pdf.log_paragraphs(
        f"""
        Testing whether `{batch_col}` matters at all requires all of its
        coefficients at once. `top_table` returns the moderated F-statistic
        when several coefficients are requested.
        """
    )
    pdf.log_code(
        f"mod_batch = model_matrix(pdata, ['{batch_col}'])\n"
        "ebayes_batch = e_bayes(lm_fit(edata, mod_batch))\n"
        "top_batch = top_table(ebayes_batch, coef=list(mod_batch.columns[1:]),\n"
        "                      sort_by='none')"
    )
    mod_batch = model_matrix(pdata, [batch_col])
    ebayes_batch = e_bayes(lm_fit(edata, mod_batch))
    top_batch = top_table(ebayes_batch, coef=list(mod_batch.columns[1:]), sort_by="none")
    pdf.log_dataframe(top_batch[["ave_expr", "F", "pval", "padj"]], title="Top table")
    pdf.log_figure(
        plot_statistic_comparison(
            fstats["statistic"],
            top_batch["F"],
            xlabel="row_ftests F",
            ylabel="Moderated F",
        ),
        "moderated_vs_ftest",
        "Moderated against ordinary F-statistics",
    )

    # ------------------------------------------------------------------
    # 5. Nested model comparison
    # ------------------------------------------------------------------
    _section(pdf, "5. Nested model comparison")
    pdf.log_paragraphs(
        f"""
        `build_study` sets up a full model including `{batch_col}` and a null
        model without it; `lrt` compares them gene by gene and `qvalue_obj`
        attaches q-values. Without adjustment the statistic is the one-way
        ANOVA F.
        """
    )
    pdf.log_code(
        f"study = build_study(edata, grp=pdata['{batch_col}'])\n"
        "qval = qvalue_obj(lrt(study))"
    )
    de = lrt(build_study(edata, grp=batches))
    qval = qvalue_obj(de)
    pdf.log_text(f"- **pi0**: {qval.pi0:.3f}")
    pdf.log_text(f"- **q < {report['fdr']}**: {len(qval.significant(report['fdr'])):,} genes")
    pdf.log_figure(
        plot_statistic_comparison(
            qval.stat,
            fstats["statistic"],
            xlabel="lrt statistic",
            ylabel="row_ftests F",
        ),
        "lrt_vs_ftest",
        "Nested model statistic against row-wise F",
    )
    pdf.log_figure(
        plot_pvalue_histogram(qval.pvalues, pi0=qval.pi0),
        "lrt_pvalues",
        "P-values of the nested comparison",
    )

    pdf.log_paragraphs(
        f"""
        The same comparison can be adjusted for `{group_col}` by passing it as
        `adj_var`; both models then include it.
        """
    )
    pdf.log_code(
        f"study_adj = build_study(edata, grp=pdata['{batch_col}'],\n"
        f"                        adj_var=pdata['{group_col}'])\n"
        "qval_adj = qvalue_obj(lrt(study_adj))"
    )
    de_adj = lrt(build_study(edata, grp=batches, adj_var=groups))
    qval_adj = qvalue_obj(de_adj)
    pdf.log_text(f"- **pi0**: {qval_adj.pi0:.3f}")
    pdf.log_text(
        f"- **q < {report['fdr']}**: {len(qval_adj.significant(report['fdr'])):,} genes"
    )
    pdf.log_figure(
        plot_statistic_comparison(
            qval.stat,
            qval_adj.stat,
            xlabel="Unadjusted lrt statistic",
            ylabel="Adjusted lrt statistic",
        ),
        "lrt_adjusted_vs_unadjusted",
        f"Effect of adjusting the nested comparison for {group_col}",
    )

    # ------------------------------------------------------------------
    # 6. Summary
    # ------------------------------------------------------------------
    _section(pdf, "6. Summary")
    statistics = pd.DataFrame(
        {
            "t": tstats["statistic"],
            "moderated_t": ebayes.t[group_coef],
            "moderated_t_adj": ebayes_adj.t[group_coef],
            "F": fstats["statistic"],
            "moderated_F": top_batch["F"],
            "lrt_stat": qval.stat,
            "lrt_qval": qval.qvalues,
            "lrt_stat_adj": qval_adj.stat,
            "lrt_qval_adj": qval_adj.qvalues,
        }
    )

    agreement = pd.DataFrame(
        {
            "moderated t vs t": compare_statistics(
                statistics["moderated_t"], -statistics["t"]
            ),
            "moderated F vs F": compare_statistics(
                statistics["moderated_F"], statistics["F"]
            ),
            "lrt vs F": compare_statistics(statistics["lrt_stat"], statistics["F"]),
        }
    ).T
    pdf.log_dataframe(agreement, title="Agreement between statistics")

    summary = summarize_statistics(
        top_table(ebayes, coef=group_coef), stat_col="t", fdr=report["fdr"]
    )
    pdf.log_text(
        f"- **Moderated t, {group_col}**: {summary['significant']:,} of "
        f"{summary['total_tested']:,} genes at FDR {report['fdr']}"
    )

    stats_path = os.path.join(output_dir, "statistics.csv")
    export_results(statistics, stats_path, format="csv")
    pdf.log_text(f"- **Statistics exported**: `{os.path.basename(stats_path)}`")

    elapsed = time.time() - start_time
    pdf.log_text(f"✔ Completed in {elapsed:.2f} seconds")

    _section(pdf, "Session information")
    pdf.log_session_info()

    saved = pdf.save()

    return VignetteResult(
        eset=eset,
        tstats=tstats,
        fstats=fstats,
        ebayes=ebayes,
        ebayes_adj=ebayes_adj,
        ebayes_batch=ebayes_batch,
        top_batch=top_batch,
        de=de,
        qval=qval,
        de_adj=de_adj,
        qval_adj=qval_adj,
        statistics=statistics,
        report_path=pdf.path,
        saved=saved,
    )
