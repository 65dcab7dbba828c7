import sys

import pytest

from penobscot_models import analysis
from penobscot_models.marginal import marginal_prediction
from penobscot_models.models import ModelSpec, family_variants, fit_model
from penobscot_models.ordination import fit_vectors, nmds
from penobscot_models.plots import (
    plot_family_comparison, plot_marginal, plot_marginal_facets, plot_ordination,
    plot_residual_diagnostics, save_plot,
)


@pytest.fixture
def density_fits(features):
    base = ModelSpec("zoo_density", linear=("salinity", "log_turb"), factors=("season",))
    return {name: fit_model(spec, features) for name, spec in family_variants(base).items()}


def test_residual_diagnostics_figure(tmp_path, density_fits):
    fig = plot_residual_diagnostics(density_fits["log_gaussian"])
    assert len(fig.axes) == 4
    path = save_plot(fig, "diagnostics.png", tmp_path)
    assert path.exists() and path.stat().st_size > 0


def test_marginal_figures(tmp_path, density_fits, features):
    grids = {name: marginal_prediction(fit, "turbidity") for name, fit in density_fits.items()}
    assert save_plot(plot_family_comparison(grids, features), "family.png", tmp_path).exists()
    assert save_plot(plot_marginal(grids["gamma_log"], features), "single.png", tmp_path).exists()

    facets = {focal: marginal_prediction(density_fits["gamma_log"], focal)
              for focal in ("turbidity", "salinity", "season")}
    fig = plot_marginal_facets(facets, features, ncols=2)
    assert sum(ax.get_visible() for ax in fig.axes) == 3
    save_plot(fig, "facets.png", tmp_path)


def test_ordination_figure(tmp_path, features):
    ordination = nmds(features, n_init=1)
    vectors = fit_vectors(ordination.scores, features, ["salinity", "temp"], permutations=49)
    fig = plot_ordination(ordination, features, vectors=vectors, max_p=1.0)
    assert save_plot(fig, "nmds.png", tmp_path).exists()


def test_analysis_end_to_end(tmp_path, workbook, monkeypatch):
    outdir = tmp_path / "out"
    monkeypatch.setattr(sys, "argv", ["penobscot-analysis", "--workbook", str(workbook), "--outdir", str(outdir)])
    analysis.main()

    summary = (outdir / "results_summary.txt").read_text(encoding="utf-8")
    assert "Total density: error model comparison" in summary
    assert "Sensitivity: lowest-salinity sample" in summary
    assert "NMDS" in summary
    for name in ("density_turbidity_family_comparison.png", "shannon_marginals.png",
                 "taxa_salinity_marginals.png", "sensitivity_salinity_loo.png", "ordination_nmds.png"):
        assert (outdir / name).exists()
    assert list(outdir.glob("analysis_*.log"))
