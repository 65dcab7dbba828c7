import logging

import numpy as np
import pytest

from penobscot_models.errors import DomainError, FitWarning, ModelSpecError
from penobscot_models.models import (
    ModelSpec, compare_fits, effect_variants, family_variants, fit_by_group, fit_each_response, fit_model,
)

LOG_DENSITY = ModelSpec("zoo_density", linear=("salinity", "log_turb"), factors=("season",),
                        response_transform="log")


def test_engine_choice():
    assert LOG_DENSITY.engine == "glm"
    assert LOG_DENSITY.replace(random=("year_f",)).engine == "mixedlm"
    assert LOG_DENSITY.replace(random=("year_f",), family="gamma", response_transform=None).engine == "gam"
    assert LOG_DENSITY.replace(smooth=("temp",)).engine == "gam"


def test_spec_validation():
    with pytest.raises(ModelSpecError):
        ModelSpec("zoo_density", family="poisson")
    with pytest.raises(ModelSpecError):
        ModelSpec("zoo_density", link="logit")
    with pytest.raises(ModelSpecError):
        ModelSpec("zoo_density", linear=("salinity",), smooth=("salinity",))
    with pytest.raises(ModelSpecError):
        ModelSpec("zoo_density", linear=("zoo_density",))
    spec = ModelSpec("shannon", smooth="temp", family="gamma")
    assert spec.smooth == ("temp",)
    assert spec.link_name == "log"
    assert spec.formula_rhs() == "1"
    assert LOG_DENSITY.formula_rhs() == "1 + salinity + log_turb + C(season)"


def test_glm_fit_tables(features):
    fit = fit_model(LOG_DENSITY, features)
    assert fit.engine == "glm"
    assert fit.nobs == 60 and fit.n_dropped == 0
    assert fit.converged and not fit.flagged

    coefs = fit.coefficients()
    assert list(coefs["term"]) == ["Intercept", "C(season)[T.Summer]", "C(season)[T.Fall]", "salinity", "log_turb"]
    assert (coefs["ci_low"] < coefs["estimate"]).all() and (coefs["estimate"] < coefs["ci_high"]).all()
    # simulated effect of salinity on log density is +0.03
    assert coefs.set_index("term").at["salinity", "estimate"] == pytest.approx(0.03, abs=0.02)

    table = fit.anova()
    assert list(table["term"]) == ["C(season)", "salinity", "log_turb"]
    assert table.set_index("term").at["C(season)", "df"] == 2
    assert "Parametric coefficients" in fit.summary()


def test_glm_same_spec_same_coefficients(features):
    a = fit_model(LOG_DENSITY, features)
    b = fit_model(LOG_DENSITY, features)
    np.testing.assert_array_equal(a.params.to_numpy(), b.params.to_numpy())


def test_glm_prediction_matches_fitted_values(features):
    fit = fit_model(LOG_DENSITY, features)
    pred = fit.predict(level=0.95)
    np.testing.assert_allclose(pred["eta"], fit.fitted_values)
    np.testing.assert_allclose(pred["mean"], np.exp(fit.fitted_values))
    assert (pred["lower"] <= pred["mean"]).all() and (pred["mean"] <= pred["upper"]).all()
    hat = fit.leverage()
    assert hat.sum() == pytest.approx(fit.exog.shape[1])


def test_missing_values_drop_rows_for_that_fit_only(features):
    features.loc[[1, 5, 9], "salinity"] = np.nan
    fit = fit_model(LOG_DENSITY, features)
    assert fit.n_dropped == 3
    assert fit.nobs == 57
    other = fit_model(ModelSpec("zoo_density", linear=("temp",), response_transform="log"), features)
    assert other.nobs == 60


def test_gamma_rejects_non_positive_response(features):
    features.loc[0, "shannon"] = 0.0
    with pytest.raises(DomainError):
        fit_model(ModelSpec("shannon", linear=("temp",), family="gamma"), features)
    with pytest.raises(DomainError):
        fit_model(ModelSpec("shannon", linear=("temp",), response_transform="log"), features)


def test_gam_smooth_terms(features):
    spec = ModelSpec("zoo_density", factors=("season",), smooth=("salinity", "log_turb"),
                     response_transform="log", k=5)
    fit = fit_model(spec, features)
    assert fit.engine == "gam"
    assert fit.criterion == "gcv"
    assert fit.alpha.shape == (2,)
    assert set(fit.penalty_weights()) == {"salinity", "log_turb"}

    table = fit.anova().set_index("term")
    assert table.at["s(salinity)", "kind"] == "smooth"
    assert table.at["s(salinity)", "n_coef"] == 4
    assert 0 < table.at["s(salinity)", "edf"] <= 4
    assert table.at["s(salinity)", "p_value"] < 0.05

    again = fit_model(spec, features)
    np.testing.assert_allclose(again.params.to_numpy(), fit.params.to_numpy(), rtol=1e-10, atol=1e-12)


def test_gam_fixed_penalty_skips_selection(features):
    spec = ModelSpec("zoo_density", smooth=("salinity",), response_transform="log", k=5, penalty=2.0)
    fit = fit_model(spec, features)
    assert fit.criterion is None
    assert fit.penalty_weights() == {"salinity": 2.0}


def test_large_penalty_shrinks_smooth_away(features):
    spec = ModelSpec("zoo_density", smooth=("do_sat",), response_transform="log", k=5, penalty=1e10)
    fit = fit_model(spec, features)
    assert fit.anova().set_index("term").at["s(do_sat)", "edf"] < 0.05


def test_basis_larger_than_data_is_rejected(features):
    spec = ModelSpec("zoo_density", smooth=("year",), response_transform="log", k=6)
    with pytest.raises(ModelSpecError, match="distinct"):
        fit_model(spec, features)


def test_gam_random_intercepts(features):
    spec = ModelSpec("shannon", linear=("salinity",), random=("SampleEvent",), family="gamma", penalty=1.0)
    fit = fit_model(spec, features)
    assert fit.engine == "gam"
    table = fit.anova().set_index("term")
    assert table.at["(1|SampleEvent)", "kind"] == "random"
    assert table.at["(1|SampleEvent)", "n_coef"] == 15
    population = fit.predict(features.head(3))
    grouped = fit.predict(features.head(3), include_random=True)
    assert (population["mean"] > 0).all()
    assert not np.allclose(population["mean"], grouped["mean"])


def test_gam_with_default_penalty_selection(features):
    spec = ModelSpec("shannon", smooth=("temp",), family="gamma", link="log", k=5)
    fit = fit_model(spec, features)
    assert fit.criterion == "gcv"
    assert np.isfinite(fit.alpha).all() and (fit.alpha > 0).all()
    assert np.isfinite(fit.params).all()
    assert not fit.singular


def test_vanishing_random_effect_is_reported(features, caplog, monkeypatch):
    monkeypatch.setattr(logging.getLogger("penobscot_models"), "propagate", True)
    spec = ModelSpec("shannon", linear=("salinity",), random=("SampleEvent",), family="gamma", penalty=1e10)
    with caplog.at_level(logging.WARNING, logger="penobscot_models"):
        with pytest.warns(FitWarning, match="singular"):
            fit = fit_model(spec, features)
    assert fit.singular and fit.flagged
    assert np.isfinite(fit.params).all()
    assert "Singular: yes" in fit.summary()
    assert any("singular" in record.getMessage() for record in caplog.records)


def test_fit_warnings_are_kept_on_the_result(features):
    data = features.assign(visit=np.arange(len(features)))
    spec = ModelSpec("shannon", linear=("salinity",), random=("visit",), family="gamma", penalty=1.0)
    with pytest.warns(FitWarning, match="levels"):
        fit = fit_model(spec, data)
    assert fit.flagged
    assert any(msg.startswith("FitWarning") and "60 levels" in msg for msg in fit.warnings)
    summary = fit.summary()
    assert "Warnings:" in summary
    assert "60 levels for 60 rows" in summary


def test_rank_deficient_gam_design_is_singular(features):
    data = features.assign(salinity_copy=features["salinity"])
    spec = ModelSpec("zoo_density", linear=("salinity_copy",), smooth=("salinity",),
                     response_transform="log", k=5, penalty=1.0)
    with pytest.warns(FitWarning):
        fit = fit_model(spec, data)
    assert fit.singular
    assert "Singular: yes" in fit.summary()


def test_mixedlm_random_intercepts(features):
    spec = LOG_DENSITY.replace(random=("station",))
    fit = fit_model(spec, features)
    assert fit.engine == "mixedlm"
    assert "salinity" in fit.coefficients()["term"].tolist()
    assert fit.leverage().between(0, 1).all()
    with pytest.raises(ModelSpecError):
        fit.predict(features, include_random=True)


def test_effect_variants_expose_both_structures(features):
    variants = effect_variants(LOG_DENSITY, ["year_f", "station"])
    assert variants["fixed"].factors == ("season", "year_f", "station")
    assert variants["fixed"].random == ()
    assert variants["random"].random == ("year_f", "station")
    assert variants["fixed"].engine == "glm"
    assert variants["random"].engine == "mixedlm"

    crossed = fit_model(variants["random"], features)
    assert crossed.engine == "mixedlm"
    assert np.isfinite(crossed.params).all()


def test_family_variants():
    variants = family_variants(LOG_DENSITY)
    assert variants["log_gaussian"].response_transform == "log"
    assert variants["log_gaussian"].link_name == "identity"
    assert variants["gamma_log"].family == "gamma"
    assert variants["gamma_log"].response_transform is None
    assert variants["gamma_log"].link_name == "log"


def test_fit_by_group_and_each_response(features):
    spec = ModelSpec("zoo_density", linear=("salinity",), response_transform="log")
    by_season = fit_by_group(features, spec, "season")
    assert list(by_season) == ["Spring", "Summer", "Fall"]
    assert all(fit.nobs == 20 for fit in by_season.values())

    taxa = fit_each_response(features, spec.replace(response_transform="log1p"), ["acartia", "bosmina"])
    assert set(taxa) == {"acartia", "bosmina"}
    assert taxa["bosmina"].spec.response == "bosmina"
    # bosmina was simulated to decline with salinity
    assert taxa["bosmina"].coefficients().set_index("term").at["salinity", "estimate"] < 0

    table = compare_fits(taxa)
    assert list(table["model"]) == ["acartia", "bosmina"]
