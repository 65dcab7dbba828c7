"""
Model fitting for the survey responses.

One ModelSpec describes a model the way the notebooks write them:

    ModelSpec("zoo_density", linear=("temp",), factors=("season",),
              smooth=("salinity", "log_turb"), random=("SampleEvent",),
              family="gamma", link="log")

fit_model picks the engine from the ModelSpec terms:
    glm     - no smooth and no random terms (statsmodels GLM)
    mixedlm - Gaussian/identity with random intercepts only (statsmodels MixedLM, REML)
    gam     - everything else (statsmodels GLMGam): shrinkage splines for smooth
              terms, ridge-penalized indicators for random intercepts

A fit that does not converge, or lands on a boundary, is still returned: the
problem is recorded on the result, logged and re-issued as a FitWarning.
"""

import logging
import warnings
from dataclasses import dataclass, field, replace
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import statsmodels.api as sm
from patsy import build_design_matrices, dmatrix
from scipy import stats
from statsmodels.gam.api import GLMGam
from statsmodels.gam.smooth_basis import GenericSmoothers

from . import config
from .data_loader import complete_cases
from .errors import DomainError, FitWarning, ModelSpecError
from .smoothers import RandomIntercepts, ShrinkageBSplines
from .transforms import forward, inverse

logger = logging.getLogger(__name__)

FAMILIES = {"gaussian": sm.families.Gaussian, "gamma": sm.families.Gamma}
LINKS = {
    "identity": sm.families.links.Identity,
    "log": sm.families.links.Log,
    "inverse": sm.families.links.InversePower,
}
DEFAULT_LINK = {"gaussian": "identity", "gamma": "log"}
RESPONSE_TRANSFORMS = (None, "log", "log1p")
CRITERIA = ("gcv", "aic", "bic", "cv")


# --- model description
@dataclass(frozen=True)
class ModelSpec:
    response: str
    linear: Tuple[str, ...] = ()
    factors: Tuple[str, ...] = ()
    smooth: Tuple[str, ...] = ()
    random: Tuple[str, ...] = ()
    family: str = "gaussian"
    link: Optional[str] = None
    response_transform: Optional[str] = None
    k: Union[int, Mapping[str, int]] = config.SPLINE_DF
    penalty: Union[None, float, Mapping[str, float]] = None

    def __post_init__(self):
        for name in ("linear", "factors", "smooth", "random"):
            value = getattr(self, name)
            if isinstance(value, str):
                value = (value,)
            object.__setattr__(self, name, tuple(value))

        if self.family not in FAMILIES:
            raise ModelSpecError(f"family must be one of {sorted(FAMILIES)}, got '{self.family}'")
        if self.link is not None and self.link not in LINKS:
            raise ModelSpecError(f"link must be one of {sorted(LINKS)}, got '{self.link}'")
        if self.response_transform not in RESPONSE_TRANSFORMS:
            raise ModelSpecError(f"response_transform must be one of {RESPONSE_TRANSFORMS}")

        seen = {}
        for role in ("linear", "factors", "smooth", "random"):
            for col in getattr(self, role):
                if col in seen:
                    raise ModelSpecError(f"'{col}' appears as both {seen[col]} and {role}")
                seen[col] = role
        if self.response in seen:
            raise ModelSpecError(f"response '{self.response}' is also a predictor")

    @property
    def link_name(self) -> str:
        return self.link or DEFAULT_LINK[self.family]

    @property
    def predictors(self) -> List[str]:
        return list(self.linear) + list(self.factors) + list(self.smooth) + list(self.random)

    @property
    def columns(self) -> List[str]:
        return [self.response] + self.predictors

    @property
    def engine(self) -> str:
        if self.smooth:
            return "gam"
        if self.random:
            if self.family == "gaussian" and self.link_name == "identity":
                return "mixedlm"
            return "gam"
        return "glm"

    @property
    def label(self) -> str:
        lhs = f"{self.response_transform}({self.response})" if self.response_transform else self.response
        terms = list(self.linear) + [f"C({f})" for f in self.factors]
        terms += [f"s({s})" for s in self.smooth] + [f"(1|{r})" for r in self.random]
        return f"{lhs} ~ {' + '.join(terms) or '1'}  [{self.family}/{self.link_name}]"

    def formula_rhs(self) -> str:
        terms = list(self.linear) + [f"C({f})" for f in self.factors]
        return " + ".join(["1"] + terms)

    def k_for(self, column: str) -> int:
        if isinstance(self.k, Mapping):
            return int(self.k.get(column, config.SPLINE_DF))
        return int(self.k)

    def make_family(self):
        return FAMILIES[self.family](link=LINKS[self.link_name]())

    def replace(self, **changes) -> "ModelSpec":
        return replace(self, **changes)


def family_variants(spec: ModelSpec) -> Dict[str, ModelSpec]:
    """The two error models the notebooks compare for a positive, heteroscedastic response."""
    return {
        "log_gaussian": spec.replace(family="gaussian", link="identity", response_transform="log"),
        "gamma_log": spec.replace(family="gamma", link="log", response_transform=None),
    }


def effect_variants(spec: ModelSpec, factors: Sequence[str]) -> Dict[str, ModelSpec]:
    """The same model with ``factors`` as fixed effects and as random intercepts."""
    factors = [factors] if isinstance(factors, str) else list(factors)
    base_factors = [f for f in spec.factors if f not in factors]
    base_random = [r for r in spec.random if r not in factors]
    return {
        "fixed": spec.replace(factors=tuple(base_factors + factors), random=tuple(base_random)),
        "random": spec.replace(factors=tuple(base_factors), random=tuple(base_random + factors)),
    }


# --- fitted model
@dataclass
class FittedModel:
    spec: ModelSpec
    engine: str
    result: object
    data: pd.DataFrame
    endog: pd.Series
    exog: pd.DataFrame
    design_info: object
    params: pd.Series
    cov: pd.DataFrame
    family: object
    smoothers: list = field(default_factory=list)
    alpha: Optional[np.ndarray] = None
    criterion: Optional[str] = None
    converged: bool = True
    singular: bool = False
    warnings: List[str] = field(default_factory=list)
    n_dropped: int = 0

    @property
    def flagged(self) -> bool:
        return (not self.converged) or self.singular or bool(self.warnings)

    @property
    def nobs(self) -> int:
        return len(self.endog)

    @property
    def scale(self) -> float:
        return float(self.result.scale)

    @property
    def aic(self) -> float:
        return float(getattr(self.result, "aic", np.nan))

    @property
    def edf(self) -> pd.Series:
        """Effective degrees of freedom per coefficient."""
        if self.engine == "gam":
            return pd.Series(np.asarray(self.result.edf), index=self.params.index)
        return pd.Series(1.0, index=self.params.index)

    @property
    def fitted_values(self) -> pd.Series:
        """Fitted means on the model scale (random effects included)."""
        return pd.Series(np.asarray(self.result.fittedvalues), index=self.endog.index)

    @property
    def residuals(self) -> pd.Series:
        return self.endog - self.fitted_values

    def penalty_weights(self) -> Dict[str, float]:
        if self.alpha is None:
            return {}
        return {s.variable_name: float(a) for s, a in zip(self.smoothers, self.alpha)}

    def term_columns(self) -> Dict[str, Tuple[str, List[str]]]:
        """term -> (kind, design columns)."""
        terms = {}
        if self.design_info is None:
            terms["Intercept"] = ("parametric", ["Intercept"])
        else:
            names = list(self.exog.columns)
            for term, slc in self.design_info.term_name_slices.items():
                terms[term] = ("parametric", names[slc])
        for smoother in self.smoothers:
            kind = "random" if isinstance(smoother, RandomIntercepts) else "smooth"
            label = f"s({smoother.variable_name})" if kind == "smooth" else f"(1|{smoother.variable_name})"
            terms[label] = (kind, list(smoother.col_names))
        return terms

    def leverage(self) -> pd.Series:
        if self.engine == "gam":
            hat = np.asarray(self.result.hat_matrix_diag)
        elif self.engine == "glm":
            hat = np.asarray(self.result.get_influence().hat_matrix_diag)
        else:
            # fixed-effects design only; the random part has no closed-form hat here
            X = self.exog.to_numpy(float)
            hat = np.einsum("ij,jk,ik->i", X, np.linalg.pinv(X.T @ X), X)
        return pd.Series(hat, index=self.endog.index)

    # --- tables
    def coefficients(self, level: float = config.CI_LEVEL) -> pd.DataFrame:
        """Parametric coefficients with Wald standard errors and intervals."""
        cols = [c for kind, columns in self.term_columns().values() if kind == "parametric" for c in columns]
        est = self.params[cols]
        se = np.sqrt(np.clip(np.diag(self.cov.loc[cols, cols].to_numpy()), 0, None))
        z = est.to_numpy() / np.where(se > 0, se, np.nan)
        q = stats.norm.ppf(0.5 + level / 2)
        return pd.DataFrame({
            "term": cols,
            "estimate": est.to_numpy(),
            "std_error": se,
            "z": z,
            "p_value": 2 * stats.norm.sf(np.abs(z)),
            "ci_low": est.to_numpy() - q * se,
            "ci_high": est.to_numpy() + q * se,
            "edf": self.edf[cols].to_numpy(),
        })

    def anova(self) -> pd.DataFrame:
        """
        One Wald test per term (the Intercept is skipped).

        Parametric terms are referred to chi-square with df = rank of the term's
        covariance block. Smooth and random terms use the penalized (Bayesian)
        covariance and df = max(edf, 1), so a term shrunk out of the fit shows
        edf near zero and a large p-value.
        """
        rows = []
        for term, (kind, cols) in self.term_columns().items():
            if term == "Intercept":
                continue
            b = self.params[cols].to_numpy()
            V = self.cov.loc[cols, cols].to_numpy()
            stat = float(b @ np.linalg.pinv(V) @ b)
            edf = float(self.edf[cols].sum())
            if kind == "parametric":
                df = float(np.linalg.matrix_rank(V))
            else:
                df = max(edf, 1.0)
            rows.append({
                "term": term,
                "kind": kind,
                "n_coef": len(cols),
                "edf": edf,
                "df": df,
                "statistic": stat,
                "p_value": float(stats.chi2.sf(stat, df)) if df > 0 else np.nan,
            })
        return pd.DataFrame(rows, columns=["term", "kind", "n_coef", "edf", "df", "statistic", "p_value"])

    # --- prediction
    def design(self, newdata: pd.DataFrame, include_random=False) -> pd.DataFrame:
        """
        Full design matrix for new rows, columns aligned with ``params``.

        include_random: False for population-level rows (random intercepts at
        zero), True for every random term, or a list of the random terms to keep.
        """
        if include_random is True:
            keep = set(self.spec.random)
        else:
            keep = set(include_random or ())
        if self.design_info is None:
            parametric = pd.DataFrame({"Intercept": 1.0}, index=newdata.index)
        else:
            parametric = build_design_matrices([self.design_info], newdata,
                                               NA_action="raise", return_type="dataframe")[0]
            parametric.index = newdata.index
        parts = [parametric]
        for smoother in self.smoothers:
            if isinstance(smoother, RandomIntercepts):
                if smoother.variable_name in keep:
                    basis = smoother.transform(newdata[smoother.variable_name].to_numpy())
                else:
                    basis = np.zeros((len(newdata), smoother.dim_basis))
            else:
                basis = smoother.transform(newdata[smoother.variable_name].to_numpy(float))
            parts.append(pd.DataFrame(basis, index=newdata.index, columns=smoother.col_names))
        X = pd.concat(parts, axis=1)
        return X[list(self.params.index)]

    def predict(self, newdata: Optional[pd.DataFrame] = None, level: Optional[float] = None,
                scale: str = "response", include_random=False) -> pd.DataFrame:
        """
        Predicted means for new rows.

        scale="link" returns the linear predictor; scale="response" applies the
        inverse link and then undoes the response transform (so a log-response
        Gaussian model predicts exp(E[log y])). Intervals are built on the link
        scale and mapped through the same monotone functions.
        """
        if scale not in ("link", "response"):
            raise ValueError("scale must be 'link' or 'response'")
        if include_random and self.engine == "mixedlm":
            raise ModelSpecError("group-level predictions for new rows need the gam engine")
        if newdata is None:
            newdata = self.data

        X = self.design(newdata, include_random=include_random)
        Xv = X.to_numpy(float)
        eta = Xv @ self.params.to_numpy()
        out = pd.DataFrame({"eta": eta}, index=newdata.index)
        columns = {"mean": eta}
        if level is not None:
            V = self.cov.loc[X.columns, X.columns].to_numpy()
            se = np.sqrt(np.clip(np.einsum("ij,jk,ik->i", Xv, V, Xv), 0, None))
            q = stats.norm.ppf(0.5 + level / 2)
            out["se_link"] = se
            columns["lower"] = eta - q * se
            columns["upper"] = eta + q * se

        for name, values in columns.items():
            if scale == "response":
                values = self.family.link.inverse(values)
                if self.spec.response_transform:
                    values = inverse(self.spec.response_transform, values)
            out[name] = values
        if level is not None:
            # an inverse link can reverse the order of the bounds
            lo = np.minimum(out["lower"], out["upper"])
            hi = np.maximum(out["lower"], out["upper"])
            out["lower"], out["upper"] = lo, hi
        return out

    def summary(self) -> str:
        lines = [
            f"Model: {self.spec.label}",
            f"Engine: {self.engine}   Rows used: {self.nobs}"
            + (f" ({self.n_dropped} dropped for missing values)" if self.n_dropped else ""),
            f"Converged: {'yes' if self.converged else 'NO'}   Singular: {'yes' if self.singular else 'no'}"
            f"   AIC: {self.aic:.2f}   Scale: {self.scale:.4g}",
        ]
        if self.alpha is not None:
            weights = ", ".join(f"{k}={v:.3g}" for k, v in self.penalty_weights().items())
            lines.append(f"Smoothing weights ({self.criterion or 'fixed'}): {weights}")
        lines.append("\nParametric coefficients:")
        lines.append(self.coefficients().to_string(index=False, float_format=lambda x: f"{x:.4g}"))
        table = self.anova()
        if not table.empty:
            lines.append("\nTerm tests:")
            lines.append(table.to_string(index=False, float_format=lambda x: f"{x:.4g}"))
        if self.warnings:
            lines.append("\nWarnings:")
            lines.extend(f"  - {msg}" for msg in self.warnings)
        return "\n".join(lines)


# --- engines
def _model_response(spec: ModelSpec, rows: pd.DataFrame) -> pd.Series:
    y = rows[spec.response].astype(float)
    if spec.response_transform:
        y = forward(spec.response_transform, y, name=spec.response)
    if spec.family == "gamma" and (y <= 0).any():
        raise DomainError(
            f"Gamma family needs a strictly positive response; {spec.response} has "
            f"{int((y <= 0).sum())} non-positive values"
        )
    return y.rename(spec.response)


def _parametric_design(spec: ModelSpec, rows: pd.DataFrame):
    if not spec.linear and not spec.factors:
        return pd.DataFrame({"Intercept": 1.0}, index=rows.index), None
    X = dmatrix(spec.formula_rhs(), rows, NA_action="raise", return_type="dataframe")
    return X, X.design_info


def _fit_glm(spec, y, X, family):
    res = sm.GLM(y, X, family=family).fit()
    params = pd.Series(np.asarray(res.params), index=X.columns)
    cov = pd.DataFrame(np.asarray(res.cov_params()), index=X.columns, columns=X.columns)
    singular = np.linalg.matrix_rank(X.to_numpy(float)) < X.shape[1]
    return res, params, cov, bool(getattr(res, "converged", True)), singular


def _fit_mixedlm(spec, y, X, rows):
    work = rows.copy()
    work["_response"] = y
    formula = "_response ~ " + spec.formula_rhs()
    if len(spec.random) == 1:
        model = sm.MixedLM.from_formula(formula, data=work, groups=spec.random[0])
    else:
        # crossed random intercepts: one group holding a variance component per factor
        work["_all"] = 1
        vc = {g: f"0 + C({g})" for g in spec.random}
        model = sm.MixedLM.from_formula(formula, data=work, groups="_all", re_formula="0", vc_formula=vc)
    res = model.fit(reml=True)

    k_fe = int(res.model.k_fe)
    params = res.fe_params.reindex(X.columns)
    cov = pd.DataFrame(np.asarray(res.cov_params())[:k_fe, :k_fe],
                       index=res.fe_params.index, columns=res.fe_params.index).loc[X.columns, X.columns]
    variances = np.concatenate([np.ravel(np.asarray(res.cov_re)), np.ravel(np.asarray(res.vcomp))])
    variances = variances[np.isfinite(variances)]
    singular = bool(variances.size and (variances <= 1e-8 * max(res.scale, 1e-12)).any())
    return res, params, cov, bool(res.converged), singular


def _build_smoothers(spec: ModelSpec, rows: pd.DataFrame) -> list:
    smoothers = []
    for col in spec.smooth:
        x = rows[col].to_numpy(float)
        k = spec.k_for(col)
        if k < config.SPLINE_DEGREE + 1:
            raise ModelSpecError(f"s({col}): a cubic basis needs k >= {config.SPLINE_DEGREE + 1}, got {k}")
        if np.unique(x).size <= k:
            raise ModelSpecError(
                f"s({col}) asks for a basis of {k} but the data has only {np.unique(x).size} distinct values"
            )
        smoothers.append(ShrinkageBSplines(x, df=k, variable_name=col))
    for col in spec.random:
        smoothers.append(RandomIntercepts(rows[col].to_numpy(), variable_name=col))
    return smoothers


def _fixed_alpha(spec: ModelSpec, smoothers: list) -> List[float]:
    if isinstance(spec.penalty, Mapping):
        missing = [s.variable_name for s in smoothers if s.variable_name not in spec.penalty]
        if missing:
            raise ModelSpecError(f"no penalty weight given for {missing}")
        return [float(spec.penalty[s.variable_name]) for s in smoothers]
    return [float(spec.penalty)] * len(smoothers)


def _fit_gam(spec, y, X, family, rows, criterion):
    smoothers = _build_smoothers(spec, rows)
    inputs = np.column_stack([
        s.codes() if isinstance(s, RandomIntercepts) else s.x for s in smoothers
    ])
    gs = GenericSmoothers(inputs, smoothers)
    endog = y.to_numpy(float)
    exog = X.to_numpy(float)

    if spec.penalty is None:
        probe = GLMGam(endog, exog=exog, smoother=gs, alpha=1.0, family=family)
        # select_penweight starts from the scale of a fitted model
        probe.fit()
        # Nelder-Mead on log(alpha) from alpha=1: deterministic, unlike basinhopping
        alpha, _, history = probe.select_penweight(criterion=criterion, method="nm", disp=False)
        logger.debug("%s: penalty search took %d fits", spec.label, len(history["alpha"]))
    else:
        alpha = _fixed_alpha(spec, smoothers)

    res = GLMGam(endog, exog=exog, smoother=gs, alpha=list(alpha), family=family).fit()
    names = list(X.columns) + list(gs.col_names)
    params = pd.Series(np.asarray(res.params), index=names)
    cov = pd.DataFrame(np.asarray(res.cov_params()), index=names, columns=names)

    # random indicators overlap the intercept, so only fixed and spline columns are rank checked
    fixed = np.column_stack([exog] + [s.basis for s in smoothers if not isinstance(s, RandomIntercepts)])
    edf = np.asarray(res.edf)
    start = X.shape[1]
    singular = bool(np.linalg.matrix_rank(fixed) < fixed.shape[1])
    for smoother in smoothers:
        width = smoother.dim_basis
        if isinstance(smoother, RandomIntercepts):
            if edf[start:start + width].sum() < 0.01:
                singular = True
            if len(smoother.levels) > len(endog) / 2:
                warnings.warn(f"{smoother.variable_name} has {len(smoother.levels)} levels for "
                              f"{len(endog)} rows", FitWarning)
        start += width
    return res, params, cov, bool(getattr(res, "converged", True)), singular, smoothers, np.asarray(alpha, float)


def _collect_warnings(caught) -> List[str]:
    messages = []
    for w in caught:
        if issubclass(w.category, (DeprecationWarning, FutureWarning)):
            warnings.warn_explicit(w.message, w.category, w.filename, w.lineno)
            continue
        text = f"{w.category.__name__}: {w.message}"
        if text not in messages:
            messages.append(text)
    return messages


def fit_model(spec: ModelSpec, data: pd.DataFrame, criterion: str = config.PENALTY_CRITERION) -> FittedModel:
    """
    Fit ``spec`` to the complete cases of ``data``.

    Rows missing any column ``spec`` uses are dropped for this fit only.
    criterion picks the smoothing weights ("gcv", "aic", "bic" or "cv") when
    spec.penalty is None; it is ignored by the glm and mixedlm engines.
    """
    if criterion not in CRITERIA:
        raise ModelSpecError(f"criterion must be one of {CRITERIA}")
    rows = complete_cases(data, spec.columns)
    n_dropped = len(data) - len(rows)
    if rows.empty:
        raise ModelSpecError(f"{spec.label}: no complete rows")

    y = _model_response(spec, rows)
    X, design_info = _parametric_design(spec, rows)
    if X.shape[1] >= len(rows):
        raise ModelSpecError(f"{spec.label}: {X.shape[1]} parametric columns for {len(rows)} rows")
    family = spec.make_family()
    engine = spec.engine
    smoothers, alpha = [], None

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        if engine == "glm":
            res, params, cov, converged, singular = _fit_glm(spec, y, X, family)
        elif engine == "mixedlm":
            res, params, cov, converged, singular = _fit_mixedlm(spec, y, X, rows)
        else:
            res, params, cov, converged, singular, smoothers, alpha = _fit_gam(
                spec, y, X, family, rows, criterion)
    messages = _collect_warnings(caught)

    fitted = FittedModel(
        spec=spec, engine=engine, result=res, data=rows, endog=y, exog=X,
        design_info=design_info, params=params, cov=cov, family=family,
        smoothers=smoothers, alpha=alpha,
        criterion=criterion if (engine == "gam" and spec.penalty is None) else None,
        converged=converged, singular=singular, warnings=messages, n_dropped=n_dropped,
    )

    logger.info("Fitted %s with %s on %d rows (%d dropped)", spec.label, engine, len(rows), n_dropped)
    if fitted.flagged:
        problems = []
        if not converged:
            problems.append("did not converge")
        if singular:
            problems.append("singular fit (a random-effect variance is ~0 or the design is rank deficient)")
        problems.extend(messages)
        note = f"{spec.label}: " + "; ".join(problems)
        logger.warning(note)
        warnings.warn(note, FitWarning, stacklevel=2)
    return fitted


# --- mapping one spec over groups
def fit_by_group(data: pd.DataFrame, spec: ModelSpec, by: str, **fit_kwds) -> Dict[object, FittedModel]:
    """Fit the same spec separately within each level of ``by``."""
    fits = {}
    for key, sub in data.groupby(by, observed=True, sort=True):
        logger.debug("Fitting %s for %s=%s", spec.label, by, key)
        fits[key] = fit_model(spec, sub, **fit_kwds)
    return fits


def fit_each_response(data: pd.DataFrame, spec: ModelSpec, responses: Sequence[str],
                      **fit_kwds) -> Dict[str, FittedModel]:
    """Fit the same right-hand side to each response column."""
    return {resp: fit_model(spec.replace(response=resp), data, **fit_kwds) for resp in responses}


def fit_specs(data: pd.DataFrame, specs: Mapping[object, ModelSpec], **fit_kwds) -> Dict[object, FittedModel]:
    return {key: fit_model(spec, data, **fit_kwds) for key, spec in specs.items()}


def compare_fits(fits: Mapping[object, FittedModel]) -> pd.DataFrame:
    """AIC, edf and flags side by side (AIC only compares fits on the same response scale)."""
    rows = []
    for key, fit in fits.items():
        rows.append({
            "model": key,
            "label": fit.spec.label,
            "engine": fit.engine,
            "nobs": fit.nobs,
            "edf": float(fit.edf.sum()),
            "aic": fit.aic,
            "converged": fit.converged,
            "singular": fit.singular,
        })
    return pd.DataFrame(rows)
