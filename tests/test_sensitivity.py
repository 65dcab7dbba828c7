import numpy as np
import pytest

from penobscot_models.diagnostics import flag_influential, influence_thresholds, residual_table
from penobscot_models.errors import ModelSpecError
from penobscot_models.models import ModelSpec, fit_model
from penobscot_models.sensitivity import compare_coefficients, leave_one_out, refit_excluding

SALINITY_ONLY = ModelSpec("zoo_density", linear=("salinity",), response_transform="log")


def test_residual_table(features):
    fit = fit_model(ModelSpec("zoo_density", linear=("salinity", "log_turb"), response_transform="log"), features)
    table = residual_table(fit)
    assert list(table.columns) == ["observed", "fitted", "residual", "pearson", "std_resid", "leverage", "cooks_d"]
    assert len(table) == 60
    np.testing.assert_allclose(table["observed"], np.log(features["zoo_density"]))
    np.testing.assert_allclose(table["residual"], table["observed"] - table["fitted"])
    assert table["leverage"].sum() == pytest.approx(3.0)
    assert (table["cooks_d"] >= 0).all()


def test_outlier_is_flagged_not_removed(salinity_outlier):
    fit = fit_model(SALINITY_ONLY, salinity_outlier)
    flagged = flag_influential(fit)
    assert 59 in flagged.index
    assert "high leverage" in flagged.at[59, "reasons"]
    assert "high Cook's D" in flagged.at[59, "reasons"]
    assert fit.nobs == 60

    limits = influence_thresholds(fit)
    assert limits["leverage"] == pytest.approx(2 * 2 / 60)
    assert limits["cooks_d"] == pytest.approx(4 / 60)


def test_single_low_salinity_row_drives_the_salinity_effect(salinity_outlier):
    fit = fit_model(SALINITY_ONLY, salinity_outlier)
    without = refit_excluding(fit, [59])
    assert without.nobs == 59

    table = compare_coefficients(fit, without).set_index("term")
    assert table.at["salinity", "relative_change"] > 0.5
    assert abs(table.at["salinity", "estimate_b"]) < abs(table.at["salinity", "estimate_a"])


def test_refit_rejects_unknown_rows(salinity_outlier):
    fit = fit_model(SALINITY_ONLY, salinity_outlier)
    with pytest.raises(ModelSpecError):
        refit_excluding(fit, [1000])


def test_refit_keeps_smoothing_weights(features):
    spec = ModelSpec("zoo_density", smooth=("salinity",), response_transform="log", k=5)
    fit = fit_model(spec, features)
    refit = refit_excluding(fit, [0])
    np.testing.assert_allclose(refit.alpha, fit.alpha)
    assert refit.criterion is None
    reselected = refit_excluding(fit, [0], reselect_penalty=True)
    assert reselected.criterion == "gcv"


def test_leave_one_out(salinity_outlier):
    fit = fit_model(SALINITY_ONLY, salinity_outlier)
    changes = leave_one_out(fit, terms=["salinity"], indices=[0, 1, 59])
    assert list(changes.index) == [0, 1, 59]
    assert list(changes.columns) == ["salinity", "flagged"]
    biggest = changes["salinity"].abs().idxmax()
    assert biggest == 59

    with pytest.raises(ModelSpecError):
        leave_one_out(fit, terms=["temp"])
