#!/usr/bin/env python
# coding: utf-8

"""
Differential Expression Statistics Engine
Row-wise tests, moderated linear models, nested model comparisons and q-values
"""

import warnings
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd
from scipy import linalg, optimize, stats
from scipy.special import digamma, polygamma
from statsmodels.stats.multitest import multipletests

CoefSpec = Union[int, str, Sequence[Union[int, str]], None]


# ============================================================================
# INPUT VALIDATION
# ============================================================================


def validate_design(design: pd.DataFrame, edata: pd.DataFrame) -> None:
    """Validate design matrix against expression data."""
    if not isinstance(design, pd.DataFrame):
        raise TypeError("design must be a pandas DataFrame")

    if design.shape[1] >= design.shape[0]:
        raise ValueError(
            f"Too many covariates ({design.shape[1]}) for sample "
            f"size ({design.shape[0]})"
        )

    if design.shape[0] != edata.shape[1]:
        raise ValueError(
            f"design rows ({design.shape[0]}) != data columns ({edata.shape[1]})"
        )

    if not np.array_equal(design.index.values, edata.columns.values):
        raise ValueError("design index must exactly match edata columns")

    if design.isnull().any().any():
        raise ValueError("design contains missing values")

    non_numeric = [
        c for c in design.columns if not pd.api.types.is_numeric_dtype(design[c])
    ]
    if non_numeric:
        raise ValueError(f"design contains non-numeric columns: {non_numeric}")


def validate_groups(groups, edata: pd.DataFrame) -> pd.Categorical:
    """Validate a sample grouping and return it as a Categorical."""
    if isinstance(groups, pd.Series):
        if not np.array_equal(groups.index.values, edata.columns.values):
            raise ValueError("groups index must exactly match edata columns")
        values = groups.values
    else:
        values = np.asarray(groups)
        if values.shape[0] != edata.shape[1]:
            raise ValueError(
                f"groups length ({values.shape[0]}) != data columns ({edata.shape[1]})"
            )

    if pd.isnull(values).any():
        raise ValueError("groups contains missing values")

    factor = pd.Categorical(values)
    if len(factor.categories) < 2:
        raise ValueError("groups must contain at least 2 levels")

    return factor


# ============================================================================
# DESIGN MATRICES
# ============================================================================


def model_matrix(
    pdata: pd.DataFrame, terms: Sequence[str] = (), intercept: bool = True
) -> pd.DataFrame:
    """
    Build a treatment-coded design matrix from categorical covariates.

    Each term is treated as a factor whose first sorted level is the
    reference. Indicator columns are named ``"{term}[T.{level}]"``; without
    an intercept the first term is fully coded as ``"{term}[{level}]"``.

    Parameters
    ----------
    pdata : pd.DataFrame
        samples x phenotype covariates
    terms : sequence of str
        Columns of pdata to include
    intercept : bool
        Include an ``Intercept`` column

    Returns
    -------
    pd.DataFrame
        samples x coefficients design matrix

    Examples
    --------
    >>> pdata = pd.DataFrame({'strain': ['A', 'A', 'B', 'B']})
    >>> model_matrix(pdata, ['strain']).columns.tolist()
    ['Intercept', 'strain[T.B]']
    """
    columns = {}
    if intercept:
        columns["Intercept"] = np.ones(len(pdata))

    for i, term in enumerate(terms):
        if term not in pdata.columns:
            raise ValueError(f"Unknown term '{term}'")
        values = pdata[term]
        if values.isnull().any():
            raise ValueError(f"Term '{term}' contains missing values")

        factor = pd.Categorical(values)
        if len(factor.categories) < 2:
            raise ValueError(f"Term '{term}' needs at least 2 levels")

        full_coding = not intercept and i == 0
        levels = factor.categories if full_coding else factor.categories[1:]
        for level in levels:
            name = f"{term}[{level}]" if full_coding else f"{term}[T.{level}]"
            columns[name] = (factor == level).astype(float)

    if not columns:
        raise ValueError("Design matrix has no columns")

    return pd.DataFrame(columns, index=pdata.index)


# ============================================================================
# ROW-WISE CLASSICAL TESTS
# ============================================================================


def row_ttests(edata: pd.DataFrame, groups) -> pd.DataFrame:
    """
    Equal-variance two-sample t-test for every row.

    The statistic and ``dm`` are oriented as first level minus second level.

    Returns
    -------
    pd.DataFrame
        Columns ``statistic``, ``dm``, ``pval`` indexed like edata
    """
    factor = validate_groups(groups, edata)
    if len(factor.categories) != 2:
        raise ValueError(
            f"row_ttests needs exactly 2 groups, got {len(factor.categories)}"
        )

    first = np.asarray(factor == factor.categories[0])
    second = np.asarray(factor == factor.categories[1])
    Y = edata.values

    t_stat, pvals = stats.ttest_ind(Y[:, first], Y[:, second], axis=1, equal_var=True)
    dm = Y[:, first].mean(axis=1) - Y[:, second].mean(axis=1)

    return pd.DataFrame(
        {"statistic": t_stat, "dm": dm, "pval": pvals}, index=edata.index
    )


def row_ftests(edata: pd.DataFrame, groups) -> pd.DataFrame:
    """
    One-way ANOVA F-test for every row.

    Returns
    -------
    pd.DataFrame
        Columns ``statistic``, ``pval`` indexed like edata
    """
    factor = validate_groups(groups, edata)
    Y = edata.values
    samples = [Y[:, np.asarray(factor == level)] for level in factor.categories]

    with warnings.catch_warnings():
        warnings.simplefilter("ignore", category=RuntimeWarning)
        f_stat, pvals = stats.f_oneway(*samples, axis=1)

    return pd.DataFrame({"statistic": f_stat, "pval": pvals}, index=edata.index)


# ============================================================================
# CORE STATISTICAL FUNCTIONS
# ============================================================================


@dataclass
class LinearModelFit:
    """Per-gene ordinary least squares fit."""

    coefficients: pd.DataFrame
    stdev_unscaled: pd.DataFrame
    sigma: pd.Series
    df_residual: pd.Series
    cov_coefficients: pd.DataFrame
    design: pd.DataFrame
    amean: pd.Series

    @property
    def n_genes(self) -> int:
        return self.coefficients.shape[0]


@dataclass
class ModeratedFit:
    """Linear model fit with empirical Bayes moderated statistics."""

    fit: LinearModelFit
    t: pd.DataFrame
    p_value: pd.DataFrame
    lods: pd.DataFrame
    s2_prior: float
    df_prior: float
    s2_post: pd.Series
    df_total: pd.Series
    var_prior: np.ndarray
    F: pd.Series
    F_p_value: pd.Series
    proportion: float = 0.01

    @property
    def coefficients(self) -> pd.DataFrame:
        return self.fit.coefficients


def _trigamma_inverse(x: float) -> float:
    """Solve trigamma(y) = x for y > 0."""
    if not np.isfinite(x) or x <= 0:
        raise ValueError(f"trigamma inverse undefined for {x}")
    if x > 1e7:
        return 1.0 / np.sqrt(x)
    if x < 1e-6:
        return 1.0 / x

    # trigamma(y) > 1/y**2 and trigamma(y) < 1/y + 1/y**2 bracket the root
    low = 0.5 / np.sqrt(x)
    high = 2.0 / x + 2.0
    return float(
        optimize.brentq(lambda y: polygamma(1, y) - x, low, high, maxiter=200)
    )


def _fit_f_dist(s2: np.ndarray, df: np.ndarray):
    """
    Moment estimates of a scaled F prior on the gene-wise variances.

    Returns
    -------
    Tuple[float, float]
        (d0, s0_squared); d0 is inf when the variances show no extra spread
    """
    ok = np.isfinite(s2) & np.isfinite(df) & (df > 0)
    if ok.sum() < 2:
        raise ValueError("Need at least 2 finite variances to estimate the prior")

    x = np.maximum(s2[ok], 0.0)
    d = df[ok]

    m = np.median(x)
    if m == 0:
        warnings.warn("More than half of residual variances are exactly zero")
        m = 1.0
    x = np.maximum(x, 1e-5 * m)

    e = np.log(x) - digamma(d / 2.0) + np.log(d / 2.0)
    emean = np.mean(e)
    evar = np.var(e, ddof=1) - np.mean(polygamma(1, d / 2.0))

    if evar > 0:
        d0 = 2.0 * _trigamma_inverse(evar)
        s0_sq = float(np.exp(emean + digamma(d0 / 2.0) - np.log(d0 / 2.0)))
    else:
        d0 = np.inf
        s0_sq = float(np.exp(emean))

    return float(d0), s0_sq


def squeeze_var(s2, df):
    """
    Empirical Bayes posterior variances.

    Parameters
    ----------
    s2 : array-like
        Residual variances
    df : array-like or float
        Residual degrees of freedom

    Returns
    -------
    Tuple[np.ndarray, float, float]
        (s2_post, d0, s0_squared)
    """
    s2 = np.asarray(s2, dtype=float)
    df = np.broadcast_to(np.asarray(df, dtype=float), s2.shape)

    d0, s0_sq = _fit_f_dist(s2, df)

    if np.isinf(d0):
        s2_post = np.where(np.isfinite(s2), s0_sq, np.nan)
    else:
        s2_post = (df * s2 + d0 * s0_sq) / (df + d0)

    return s2_post, d0, s0_sq


def _tmixture_vector(
    tstat: np.ndarray,
    stdev_unscaled: np.ndarray,
    df: np.ndarray,
    proportion: float,
) -> float:
    """Estimate the prior variance of non-null coefficients from the top t's."""
    ok = np.isfinite(tstat)
    tstat = np.abs(tstat[ok])
    su = stdev_unscaled[ok]
    df = df[ok]

    n = tstat.size
    ntarget = int(np.ceil(proportion / 2.0 * n))
    if ntarget < 1:
        return np.nan

    p = max(ntarget / n, proportion)

    max_df = df.max()
    if (df < max_df).any():
        tstat = stats.t.isf(stats.t.sf(tstat, df), max_df)

    top = np.argsort(-tstat)[:ntarget]
    tstat = tstat[top]
    v1 = su[top] ** 2

    r = np.arange(1, ntarget + 1)
    p0 = 2.0 * stats.t.sf(tstat, max_df)
    ptarget = ((r - 0.5) / n - (1.0 - p) * p0) / p

    v0 = np.zeros(ntarget)
    pos = ptarget > p0
    if pos.any():
        qtarget = stats.t.isf(ptarget[pos] / 2.0, max_df)
        v0[pos] = v1[pos] * ((tstat[pos] / qtarget) ** 2 - 1.0)

    return float(np.mean(v0))


def _cov_to_cor(cov: np.ndarray) -> np.ndarray:
    sd = np.sqrt(np.diag(cov))
    return cov / np.outer(sd, sd)


def _moderated_f(t: np.ndarray, cov: np.ndarray):
    """Multi-coefficient F from moderated t's and the unscaled covariance."""
    cor = _cov_to_cor(cov)
    r = int(np.linalg.matrix_rank(cor))
    cor_inv = linalg.pinv(cor)
    F_stat = np.sum((t @ cor_inv) * t, axis=1) / r
    return F_stat, r


# ============================================================================
# MAIN DIFFERENTIAL ANALYSIS
# ============================================================================


def lm_fit(edata: pd.DataFrame, design: pd.DataFrame) -> LinearModelFit:
    """
    Fit a linear model to every gene.

    Parameters
    ----------
    edata : pd.DataFrame
        genes x samples expression matrix (may contain NaN)
    design : pd.DataFrame
        samples x coefficients design matrix

    Returns
    -------
    LinearModelFit
        Coefficients, unscaled standard deviations, residual SDs and df

    Examples
    --------
    >>> design = model_matrix(pdata, ['strain'])
    >>> fit = lm_fit(edata, design)
    >>> fit.coefficients['strain[T.DBA/2J]'].head()
    """
    validate_design(design, edata)

    Y = edata.values.astype(float)
    X = design.values.astype(float)
    G, n = Y.shape
    p = X.shape[1]

    XtX_inv = linalg.pinv(X.T @ X)
    rank = int(np.linalg.matrix_rank(X))
    if rank < p:
        warnings.warn(
            f"Design matrix is not of full rank ({rank} < {p}); "
            "some coefficients are not estimable"
        )

    coef = np.full((G, p), np.nan)
    stdev_unscaled = np.full((G, p), np.nan)
    sigma = np.full(G, np.nan)
    df_resid = np.zeros(G)

    complete = ~np.isnan(Y).any(axis=1)

    # Complete rows share one projection
    if complete.any() and n - rank > 0:
        Yc = Y[complete]
        B = Yc @ X @ XtX_inv
        resid = Yc - B @ X.T
        coef[complete] = B
        stdev_unscaled[complete] = np.sqrt(np.diag(XtX_inv))
        df_resid[complete] = n - rank
        sigma[complete] = np.sqrt(np.sum(resid**2, axis=1) / (n - rank))

    for g in np.where(~complete)[0]:
        mask = ~np.isnan(Y[g])
        X_obs = X[mask]
        rank_g = int(np.linalg.matrix_rank(X_obs)) if mask.any() else 0
        # Rank-deficient rows are fit through the pseudo-inverse like complete rows
        if mask.sum() - rank_g < 1:
            continue

        V = linalg.pinv(X_obs.T @ X_obs)
        beta = V @ (X_obs.T @ Y[g, mask])
        resid = Y[g, mask] - X_obs @ beta
        coef[g] = beta
        stdev_unscaled[g] = np.sqrt(np.diag(V))
        df_resid[g] = mask.sum() - rank_g
        sigma[g] = np.sqrt(np.sum(resid**2) / df_resid[g])

    if np.isfinite(sigma).sum() == 0:
        raise ValueError("No genes could be fit successfully")

    with warnings.catch_warnings():
        warnings.simplefilter("ignore", category=RuntimeWarning)
        amean = np.nanmean(Y, axis=1)

    return LinearModelFit(
        coefficients=pd.DataFrame(coef, index=edata.index, columns=design.columns),
        stdev_unscaled=pd.DataFrame(
            stdev_unscaled, index=edata.index, columns=design.columns
        ),
        sigma=pd.Series(sigma, index=edata.index, name="sigma"),
        df_residual=pd.Series(df_resid, index=edata.index, name="df_residual"),
        cov_coefficients=pd.DataFrame(
            XtX_inv, index=design.columns, columns=design.columns
        ),
        design=design,
        amean=pd.Series(amean, index=edata.index, name="amean"),
    )


def e_bayes(
    fit: LinearModelFit,
    proportion: float = 0.01,
    stdev_coef_lim: tuple = (0.1, 4.0),
) -> ModeratedFit:
    """
    Empirical Bayes moderation of the gene-wise standard errors.

    Residual variances are shrunk towards a common prior estimated from
    all genes; t-statistics use the posterior variances and the augmented
    degrees of freedom.

    Parameters
    ----------
    fit : LinearModelFit
        Result of lm_fit
    proportion : float
        Assumed proportion of differentially expressed genes (for B)
    stdev_coef_lim : tuple
        Bounds on the prior standard deviation of non-null coefficients

    Returns
    -------
    ModeratedFit
    """
    if not 0 < proportion < 1:
        raise ValueError("proportion must be between 0 and 1")

    index = fit.coefficients.index
    columns = fit.coefficients.columns

    s2 = fit.sigma.values**2
    df = fit.df_residual.values.astype(float)
    valid = np.isfinite(s2) & (df > 0)

    s2_post, d0, s0_sq = squeeze_var(np.where(valid, s2, np.nan), df)

    df_pooled = df[valid].sum()
    df_total = np.minimum(df + d0, df_pooled)
    df_total[~valid] = np.nan

    coef = fit.coefficients.values
    su = fit.stdev_unscaled.values
    t_stat = coef / su / np.sqrt(s2_post)[:, None]
    pvals = 2.0 * stats.t.sf(np.abs(t_stat), df_total[:, None])

    # Prior variance of non-null coefficients, per coefficient
    n_coef = coef.shape[1]
    var_prior = np.full(n_coef, np.nan)
    for j in range(n_coef):
        var_prior[j] = _tmixture_vector(
            t_stat[valid, j], su[valid, j], df_total[valid], proportion
        )
    lim = np.asarray(stdev_coef_lim, dtype=float) ** 2 / s0_sq
    var_prior = np.where(np.isnan(var_prior), 1.0 / s0_sq, var_prior)
    var_prior = np.clip(var_prior, lim[0], lim[1])

    r = (su**2 + var_prior[None, :]) / su**2
    t2 = t_stat**2
    if np.isinf(d0):
        kernel = t2 * (1.0 - 1.0 / r) / 2.0
    else:
        dft = df_total[:, None]
        kernel = (1.0 + dft) / 2.0 * np.log((t2 + dft) / (t2 / r + dft))
    lods = np.log(proportion / (1.0 - proportion)) - np.log(r) / 2.0 + kernel

    F_stat, r_all = _moderated_f(t_stat, fit.cov_coefficients.values)
    F_p = stats.f.sf(F_stat, r_all, df_total)

    return ModeratedFit(
        fit=fit,
        t=pd.DataFrame(t_stat, index=index, columns=columns),
        p_value=pd.DataFrame(pvals, index=index, columns=columns),
        lods=pd.DataFrame(lods, index=index, columns=columns),
        s2_prior=s0_sq,
        df_prior=d0,
        s2_post=pd.Series(s2_post, index=index, name="s2_post"),
        df_total=pd.Series(df_total, index=index, name="df_total"),
        var_prior=var_prior,
        F=pd.Series(F_stat, index=index, name="F"),
        F_p_value=pd.Series(F_p, index=index, name="F_p_value"),
        proportion=proportion,
    )


def _resolve_coefs(columns: pd.Index, coef: CoefSpec) -> List[str]:
    if coef is None:
        names = list(columns)
        if len(names) > 1 and names[0] == "Intercept":
            names = names[1:]
        return names

    if isinstance(coef, (int, np.integer, str)):
        coef = [coef]

    names = []
    for c in coef:
        if isinstance(c, (int, np.integer)):
            if not 0 <= c < len(columns):
                raise ValueError(
                    f"Coefficient position {c} out of range (0-{len(columns) - 1})"
                )
            names.append(columns[c])
        elif c in columns:
            names.append(c)
        else:
            raise ValueError(f"Unknown coefficient '{c}'. Available: {list(columns)}")

    if not names:
        raise ValueError("No coefficients selected")
    return names


def _adjust(pvals: np.ndarray, method: str = "fdr_bh") -> np.ndarray:
    padj = np.full(pvals.shape, np.nan)
    ok = np.isfinite(pvals)
    if ok.any():
        _, padj[ok], _, _ = multipletests(pvals[ok], method=method)
    return padj


def top_table(
    efit: ModeratedFit,
    coef: CoefSpec = None,
    number: Optional[int] = None,
    sort_by: str = "none",
    adjust_method: str = "fdr_bh",
) -> pd.DataFrame:
    """
    Summary table of moderated statistics.

    A single coefficient yields ``logFC``, ``ave_expr``, ``t``, ``pval``,
    ``padj`` and ``B``. Several coefficients yield one estimate column per
    coefficient plus ``ave_expr``, the moderated ``F``, ``pval`` and ``padj``.

    Parameters
    ----------
    efit : ModeratedFit
        Result of e_bayes
    coef : int, str or sequence, optional
        Coefficient name(s) or position(s). Defaults to every non-intercept
        coefficient.
    number : int, optional
        Maximum number of rows to return (all by default)
    sort_by : str
        'none', 'p', 't', 'F', 'logFC' or 'B'
    adjust_method : str
        Multiple testing method passed to statsmodels

    Returns
    -------
    pd.DataFrame
    """
    fit = efit.fit
    names = _resolve_coefs(fit.coefficients.columns, coef)
    df_total = efit.df_total.values

    if len(names) == 1:
        name = names[0]
        pvals = efit.p_value[name].values
        res = pd.DataFrame(
            {
                "logFC": fit.coefficients[name].values,
                "ave_expr": fit.amean.values,
                "t": efit.t[name].values,
                "pval": pvals,
                "padj": _adjust(pvals, adjust_method),
                "B": efit.lods[name].values,
            },
            index=fit.coefficients.index,
        )
        sort_keys = {
            "none": None,
            "p": ("pval", "ascending"),
            "t": ("t", "abs"),
            "logFC": ("logFC", "abs"),
            "B": ("B", "descending"),
        }
    else:
        cov = fit.cov_coefficients.loc[names, names].values
        F_stat, r = _moderated_f(efit.t[names].values, cov)
        pvals = stats.f.sf(F_stat, r, df_total)

        res = fit.coefficients[names].copy()
        res["ave_expr"] = fit.amean.values
        res["F"] = F_stat
        res["pval"] = pvals
        res["padj"] = _adjust(pvals, adjust_method)
        sort_keys = {"none": None, "p": ("pval", "ascending"), "F": ("F", "descending")}

    if sort_by not in sort_keys:
        raise ValueError(
            f"Unsupported sort_by '{sort_by}' for this table. "
            f"Use one of {list(sort_keys)}"
        )

    key = sort_keys[sort_by]
    if key is not None:
        col, direction = key
        if direction == "ascending":
            order = res[col]
        elif direction == "descending":
            order = -res[col]
        else:
            order = -res[col].abs()
        res = res.loc[order.sort_values(kind="mergesort").index]

    if number is not None:
        res = res.head(number)

    return res


# ============================================================================
# NESTED MODEL COMPARISON
# ============================================================================


@dataclass
class DEStudy:
    """Nested pair of design matrices for a set of genes."""

    edata: pd.DataFrame
    full_model: pd.DataFrame
    null_model: pd.DataFrame
    grp: pd.Series
    adj_var: Optional[pd.DataFrame] = None


@dataclass
class DEResult:
    """Outcome of a nested model comparison."""

    study: DEStudy
    stat: pd.Series
    p_value: pd.Series
    df1: int
    df2: int
    rss_full: pd.Series
    rss_null: pd.Series


@dataclass
class QValueResult:
    """Storey q-values with the estimated null proportion."""

    pvalues: pd.Series
    qvalues: pd.Series
    pi0: float
    lambdas: np.ndarray
    pi0_lambda: np.ndarray
    stat: Optional[pd.Series] = field(default=None)

    def significant(self, fdr: float = 0.05) -> pd.Index:
        return self.qvalues.index[self.qvalues < fdr]


def _as_series(values, name: str, samples: pd.Index) -> pd.Series:
    if isinstance(values, pd.Series):
        if not np.array_equal(values.index.values, samples.values):
            raise ValueError(f"{name} index must exactly match edata columns")
        return values.rename(name if values.name is None else values.name)
    values = np.asarray(values)
    if values.shape[0] != len(samples):
        raise ValueError(f"{name} length ({values.shape[0]}) != samples ({len(samples)})")
    return pd.Series(values, index=samples, name=name)


def build_study(
    edata: pd.DataFrame,
    grp,
    adj_var: Optional[Union[pd.Series, pd.DataFrame]] = None,
) -> DEStudy:
    """
    Set up a nested comparison of ``~ adj_var + grp`` against ``~ adj_var``.

    Parameters
    ----------
    edata : pd.DataFrame
        genes x samples expression matrix (no missing values)
    grp : pd.Series or array-like
        Variable of interest (treated as a factor)
    adj_var : pd.Series or pd.DataFrame, optional
        Adjustment covariates (treated as factors)

    Returns
    -------
    DEStudy
    """
    if edata.isnull().any().any():
        raise ValueError("edata contains missing values")

    samples = edata.columns
    grp = _as_series(grp, "grp", samples)

    covariates = pd.DataFrame(index=samples)
    adj_terms: List[str] = []
    if adj_var is not None:
        if isinstance(adj_var, pd.DataFrame):
            if not np.array_equal(adj_var.index.values, samples.values):
                raise ValueError("adj_var index must exactly match edata columns")
            adj_frame = adj_var
        else:
            adj_frame = _as_series(adj_var, "adj_var", samples).to_frame()
        for col in adj_frame.columns:
            covariates[col] = adj_frame[col].values
            adj_terms.append(col)

    if grp.name in adj_terms:
        raise ValueError(f"'{grp.name}' appears in both grp and adj_var")
    covariates[grp.name] = grp.values

    null_model = model_matrix(covariates, adj_terms)
    full_model = model_matrix(covariates, adj_terms + [grp.name])

    rank_null = np.linalg.matrix_rank(null_model.values)
    rank_full = np.linalg.matrix_rank(full_model.values)
    if rank_full <= rank_null:
        raise ValueError(
            "grp is confounded with adj_var; the full model adds no information"
        )
    if rank_full >= len(samples):
        raise ValueError(
            f"Full model has {rank_full} parameters for {len(samples)} samples"
        )

    return DEStudy(
        edata=edata,
        full_model=full_model,
        null_model=null_model,
        grp=grp,
        adj_var=adj_frame if adj_var is not None else None,
    )


def _rss(Y: np.ndarray, X: np.ndarray) -> np.ndarray:
    B, _, _, _ = linalg.lstsq(X, Y.T)
    resid = Y.T - X @ B
    return np.sum(resid**2, axis=0)


def lrt(study: DEStudy) -> DEResult:
    """
    Compare the full and null models of a study gene by gene.

    The statistic is ``((RSS0 - RSS1) / (df1 - df0)) / (RSS1 / (n - df1))``
    and p-values come from the F distribution.
    """
    Y = study.edata.values.astype(float)
    n = Y.shape[1]
    df0 = int(np.linalg.matrix_rank(study.null_model.values))
    df1 = int(np.linalg.matrix_rank(study.full_model.values))

    rss_null = _rss(Y, study.null_model.values)
    rss_full = _rss(Y, study.full_model.values)

    with np.errstate(divide="ignore", invalid="ignore"):
        stat = ((rss_null - rss_full) / (df1 - df0)) / (rss_full / (n - df1))
    pvals = stats.f.sf(stat, df1 - df0, n - df1)

    index = study.edata.index
    return DEResult(
        study=study,
        stat=pd.Series(stat, index=index, name="stat"),
        p_value=pd.Series(pvals, index=index, name="pval"),
        df1=df1 - df0,
        df2=n - df1,
        rss_full=pd.Series(rss_full, index=index, name="rss_full"),
        rss_null=pd.Series(rss_null, index=index, name="rss_null"),
    )


def _smoothing_spline_fit(x: np.ndarray, y: np.ndarray, df: float = 3.0) -> np.ndarray:
    """
    Fitted values of a natural cubic smoothing spline with ``df`` effective
    degrees of freedom (trace of the hat matrix).

    Uses the Reinsch form: the roughness penalty is ``g' K g`` with
    ``K = Q R^-1 Q'`` and the fit is ``(I + lam K)^-1 y``.
    """
    n = x.size
    if n <= df:
        raise ValueError(f"Need more than {df:g} distinct points to smooth")

    h = np.diff(x)
    Q = np.zeros((n, n - 2))
    R = np.zeros((n - 2, n - 2))
    for j in range(n - 2):
        Q[j, j] = 1.0 / h[j]
        Q[j + 1, j] = -1.0 / h[j] - 1.0 / h[j + 1]
        Q[j + 2, j] = 1.0 / h[j + 1]
        R[j, j] = (h[j] + h[j + 1]) / 3.0
        if j < n - 3:
            R[j, j + 1] = R[j + 1, j] = h[j + 1] / 6.0

    K = Q @ linalg.solve(R, Q.T, assume_a="pos")
    d, V = linalg.eigh(K)
    # Linear functions are unpenalized
    d[:2] = 0.0
    d = np.clip(d, 0.0, None)

    def excess_df(log_lam):
        return np.sum(1.0 / (1.0 + 10.0**log_lam * d)) - df

    scale = np.log10(d.max())
    log_lam = optimize.brentq(excess_df, -8.0 - scale, 12.0 - scale, maxiter=500)
    shrink = 1.0 / (1.0 + 10.0**log_lam * d)
    return V @ (shrink * (V.T @ y))


def estimate_pi0(
    pvals: np.ndarray,
    lambdas: Optional[np.ndarray] = None,
    pi0_method: str = "smoother",
):
    """
    Estimate the proportion of true null hypotheses.

    Returns
    -------
    Tuple[float, np.ndarray, np.ndarray]
        (pi0, lambdas, pi0 at each lambda)
    """
    pvals = np.asarray(pvals, dtype=float)
    if lambdas is None:
        lambdas = np.round(np.arange(0.05, 0.96, 0.05), 2)
    lambdas = np.unique(np.atleast_1d(np.asarray(lambdas, dtype=float)))

    if (lambdas < 0).any() or (lambdas >= 1).any():
        raise ValueError("lambdas must be within [0, 1)")
    if pvals.max() < lambdas.max():
        raise ValueError("max(p-values) must be at least max(lambdas)")

    m = pvals.size
    pi0_lambda = np.array([np.mean(pvals >= lam) / (1.0 - lam) for lam in lambdas])

    if lambdas.size == 1:
        pi0 = pi0_lambda[0]
    elif lambdas.size < 4:
        raise ValueError("Provide a single lambda or at least 4 values")
    elif pi0_method == "smoother":
        pi0 = _smoothing_spline_fit(lambdas, pi0_lambda, df=3.0)[-1]
    elif pi0_method == "bootstrap":
        min_pi0 = np.quantile(pi0_lambda, 0.1)
        W = np.array([np.sum(pvals >= lam) for lam in lambdas])
        mse = (W / (m**2 * (1.0 - lambdas) ** 2)) * (1.0 - W / m) + (
            pi0_lambda - min_pi0
        ) ** 2
        pi0 = pi0_lambda[np.argmin(mse)]
    else:
        raise ValueError(
            f"Unsupported pi0_method: {pi0_method}. Use 'smoother' or 'bootstrap'."
        )

    pi0 = min(float(pi0), 1.0)
    if pi0 <= 0:
        raise ValueError(
            "Estimated pi0 <= 0; check the p-values or use a different range of lambda"
        )
    return pi0, lambdas, pi0_lambda


def qvalue(
    p_values,
    lambdas: Optional[np.ndarray] = None,
    pi0_method: str = "smoother",
) -> QValueResult:
    """
    Storey q-values.

    Parameters
    ----------
    p_values : pd.Series or array-like
        P-values in [0, 1]; NaN entries are carried through as NaN
    lambdas : np.ndarray, optional
        Tuning grid for pi0 (default 0.05, 0.10, ..., 0.95)
    pi0_method : str
        'smoother' (df=3 cubic smoothing spline over the grid) or 'bootstrap'

    Returns
    -------
    QValueResult
    """
    if not isinstance(p_values, pd.Series):
        p_values = pd.Series(np.asarray(p_values, dtype=float))

    p_all = p_values.values.astype(float)
    ok = np.isfinite(p_all)
    p = p_all[ok]
    if p.size == 0:
        raise ValueError("No finite p-values provided")
    if (p < 0).any() or (p > 1).any():
        raise ValueError("p-values must lie within [0, 1]")

    pi0, lambdas, pi0_lambda = estimate_pi0(p, lambdas, pi0_method)

    m = p.size
    order = np.argsort(p)[::-1]
    ranks = np.arange(m, 0, -1)
    q_sorted = np.minimum.accumulate(pi0 * m * p[order] / ranks)
    q = np.empty(m)
    q[order] = np.minimum(q_sorted, 1.0)

    q_all = np.full(p_all.shape, np.nan)
    q_all[ok] = q

    return QValueResult(
        pvalues=p_values,
        qvalues=pd.Series(q_all, index=p_values.index, name="qval"),
        pi0=pi0,
        lambdas=lambdas,
        pi0_lambda=pi0_lambda,
    )


def qvalue_obj(result: DEResult, **kwargs) -> QValueResult:
    """Attach q-values to a nested model comparison."""
    qobj = qvalue(result.p_value, **kwargs)
    qobj.stat = result.stat
    return qobj


# ============================================================================
# RESULTS ANALYSIS
# ============================================================================


def summarize_statistics(
    table: pd.DataFrame,
    stat_col: str = "t",
    pval_col: str = "pval",
    adj_col: Optional[str] = "padj",
    fdr: float = 0.05,
) -> Dict:
    """Generate summary statistics for a table of test results."""
    if adj_col is not None and adj_col in table.columns:
        adj = table[adj_col].values
    else:
        adj = _adjust(table[pval_col].values)

    n_sig = int(np.sum(adj < fdr))
    stat = table[stat_col].abs()

    return {
        "total_tested": len(table),
        "significant": n_sig,
        "pct_significant": n_sig / len(table) * 100 if len(table) > 0 else 0,
        "min_pval": table[pval_col].min(),
        "median_abs_stat": stat.median(),
        "max_abs_stat": stat.max(),
    }


def compare_statistics(x: pd.Series, y: pd.Series) -> Dict:
    """Agreement between two per-gene statistics after aligning on genes."""
    common = x.index.intersection(y.index)
    pair = pd.DataFrame({"x": x.loc[common], "y": y.loc[common]}).dropna()
    if len(pair) < 3:
        raise ValueError("Need at least 3 shared finite values to compare")

    return {
        "n": len(pair),
        "pearson": float(stats.pearsonr(pair["x"], pair["y"])[0]),
        "spearman": float(stats.spearmanr(pair["x"], pair["y"])[0]),
        "max_abs_diff": float((pair["x"] - pair["y"]).abs().max()),
    }


def export_results(
    res: pd.DataFrame,
    output_path: str,
    format: str = "csv",
):
    """Export results to file."""
    if format == "csv":
        res.to_csv(output_path)
    elif format == "excel":
        res.to_excel(output_path, engine="openpyxl")
    elif format == "tsv":
        res.to_csv(output_path, sep="\t")
    else:
        raise ValueError(f"Unsupported format: {format}")

    print(f"✔ Results exported to {output_path}")


# ============================================================================
# VISUALIZATION
# ============================================================================


def plot_statistic_histogram(
    stat: pd.Series,
    bins: int = 50,
    title: str = "Test statistics",
    xlabel: str = "Statistic",
    save_path: Optional[str] = None,
    dpi: int = 300,
):
    """Histogram of a per-gene statistic."""
    import matplotlib.pyplot as plt

    values = np.asarray(stat, dtype=float)
    values = values[np.isfinite(values)]

    fig, ax = plt.subplots(figsize=(7, 5))
    ax.hist(values, bins=bins, color="steelblue", edgecolor="k", linewidth=0.3)
    ax.set_xlabel(xlabel, fontsize=12)
    ax.set_ylabel("Frequency", fontsize=12)
    ax.set_title(title, fontsize=14)
    ax.grid(alpha=0.3)

    plt.tight_layout()
    if save_path:
        plt.savefig(save_path, dpi=dpi, bbox_inches="tight")

    return fig


def plot_statistic_comparison(
    x: pd.Series,
    y: pd.Series,
    xlabel: str = "x",
    ylabel: str = "y",
    title: Optional[str] = None,
    identity: bool = True,
    save_path: Optional[str] = None,
    dpi: int = 300,
):
    """Scatter plot of two per-gene statistics with their correlation."""
    import matplotlib.pyplot as plt

    common = x.index.intersection(y.index)
    xv = x.loc[common].values
    yv = y.loc[common].values

    fig, ax = plt.subplots(figsize=(6, 6))
    ax.scatter(xv, yv, alpha=0.5, s=10, edgecolor="none")

    finite = np.isfinite(xv) & np.isfinite(yv)
    if identity and finite.any():
        lo = min(xv[finite].min(), yv[finite].min())
        hi = max(xv[finite].max(), yv[finite].max())
        ax.plot([lo, hi], [lo, hi], "r--", lw=1.5, label="y = x")
        ax.legend(loc="upper left")

    if finite.sum() >= 3:
        agreement = compare_statistics(x, y)
        ax.text(
            0.98,
            0.02,
            f"r = {agreement['pearson']:.3f}",
            transform=ax.transAxes,
            ha="right",
            va="bottom",
            fontsize=10,
        )

    ax.set_xlabel(xlabel, fontsize=12)
    ax.set_ylabel(ylabel, fontsize=12)
    if title:
        ax.set_title(title, fontsize=14)
    ax.grid(alpha=0.3)

    plt.tight_layout()
    if save_path:
        plt.savefig(save_path, dpi=dpi, bbox_inches="tight")

    return fig


def plot_pvalue_histogram(
    pvals: pd.Series,
    pi0: Optional[float] = None,
    bins: int = 20,
    save_path: Optional[str] = None,
    dpi: int = 300,
):
    """Histogram of p-values with the estimated null level."""
    import matplotlib.pyplot as plt

    values = np.asarray(pvals, dtype=float)
    values = values[np.isfinite(values)]

    fig, ax = plt.subplots(figsize=(7, 5))
    ax.hist(values, bins=bins, range=(0, 1), density=True, color="lightgrey",
            edgecolor="k", linewidth=0.3)
    if pi0 is not None:
        ax.axhline(pi0, color="red", linestyle="--", lw=1.5,
                   label=f"pi0 = {pi0:.3f}")
        ax.legend()

    ax.set_xlabel("p-value", fontsize=12)
    ax.set_ylabel("Density", fontsize=12)
    ax.set_title("P-value Distribution", fontsize=14)
    ax.grid(alpha=0.3)

    plt.tight_layout()
    if save_path:
        plt.savefig(save_path, dpi=dpi, bbox_inches="tight")

    return fig


def plot_sample_pca(
    edata: pd.DataFrame,
    pdata: pd.DataFrame,
    color_col: str,
    save_path: Optional[str] = None,
    dpi: int = 300,
):
    """PCA of samples coloured by a phenotype column."""
    import matplotlib.pyplot as plt
    from sklearn.decomposition import PCA

    if color_col not in pdata.columns:
        raise ValueError(f"Unknown phenotype column '{color_col}'")

    centered = edata.sub(edata.mean(axis=1), axis=0)
    pca = PCA(n_components=2)
    coords = pca.fit_transform(centered.T.values)

    labels = pdata.loc[edata.columns, color_col].astype(str)
    cmap = plt.get_cmap("tab10")

    fig, ax = plt.subplots(figsize=(7, 6))
    for i, level in enumerate(sorted(labels.unique())):
        mask = (labels == level).values
        ax.scatter(
            coords[mask, 0],
            coords[mask, 1],
            label=level,
            alpha=0.8,
            s=70,
            color=cmap(i % 10),
            edgecolor="k",
        )

    ax.set_xlabel(f"PC1 ({pca.explained_variance_ratio_[0]:.1%})")
    ax.set_ylabel(f"PC2 ({pca.explained_variance_ratio_[1]:.1%})")
    ax.set_title(f"PCA of Samples by {color_col}")
    ax.legend(title=color_col, fontsize=8)
    ax.grid(alpha=0.3)

    plt.tight_layout()
    if save_path:
        plt.savefig(save_path, dpi=dpi, bbox_inches="tight")

    return fig
