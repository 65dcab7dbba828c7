"""
End-to-end analysis of the Penobscot survey workbook.

    python -m penobscot_models.analysis --workbook data/Penobscot_zooplankton_and_river_data.xlsx

Writes figures, tables and a text summary to the output folder.
"""

import argparse
import logging
from pathlib import Path

import pandas as pd

from . import config
from .data_loader import load_survey
from .diagnostics import flag_influential, residual_table
from .errors import AnalysisError
from .features import derive_features
from .logging_config import setup_logging
from .marginal import marginal_prediction
from .models import ModelSpec, compare_fits, effect_variants, family_variants, fit_each_response, fit_model, fit_specs
from .ordination import fit_vectors, nmds
from .plots import (
    plot_family_comparison, plot_leave_one_out, plot_marginal, plot_marginal_facets,
    plot_ordination, plot_residual_diagnostics, save_plot,
)
from .sensitivity import compare_coefficients, leave_one_out, refit_excluding

logger = logging.getLogger(__name__)

SMOOTH_TERMS = ("salinity", "log_turb", "temp", "log_chl")


# --- model sets
def fit_density_models(data: pd.DataFrame, outdir: Path, criterion: str) -> dict:
    """Total density: log-response Gaussian GAM vs Gamma/log GAM."""
    base = ModelSpec("zoo_density", factors=("season",), smooth=SMOOTH_TERMS,
                     random=("SampleEvent",), k=5)
    fits = fit_specs(data, family_variants(base), criterion=criterion)

    facets = {}
    for focal in config.MARGINAL_FOCI:
        grids = {name: marginal_prediction(fit, focal) for name, fit in fits.items()}
        save_plot(plot_family_comparison(grids, data), f"density_{focal}_family_comparison.png", outdir)
        facets[focal] = grids["gamma_log"]
    save_plot(plot_marginal_facets(facets, data, title="Total density (Gamma, log link)"),
              "density_marginals.png", outdir)

    for name, fit in fits.items():
        save_plot(plot_residual_diagnostics(fit), f"density_{name}_diagnostics.png", outdir)
        residual_table(fit).to_csv(outdir / f"density_{name}_residuals.csv")
    return fits


def fit_shannon_model(data: pd.DataFrame, outdir: Path, criterion: str):
    spec = ModelSpec("shannon", factors=("season",), smooth=SMOOTH_TERMS,
                     random=("SampleEvent",), family="gamma", link="log", k=5)
    fit = fit_model(spec, data, criterion=criterion)
    grids = {focal: marginal_prediction(fit, focal) for focal in config.MARGINAL_FOCI}
    save_plot(plot_marginal_facets(grids, data, title="Shannon diversity (Gamma, log link)"),
              "shannon_marginals.png", outdir)
    save_plot(plot_residual_diagnostics(fit), "shannon_diagnostics.png", outdir)
    return fit


def fit_taxa_models(data: pd.DataFrame, outdir: Path, criterion: str) -> dict:
    spec = ModelSpec(config.TAXA[0], smooth=("salinity", "temp"), factors=("season",),
                     response_transform="log1p", k=5)
    fits = fit_each_response(data, spec, config.TAXA, criterion=criterion)
    for focal in ("salinity", "temp"):
        grids = {taxon: marginal_prediction(fit, focal) for taxon, fit in fits.items()}
        save_plot(plot_marginal_facets(grids, data, ncols=3, title=f"Taxa density vs {focal}"),
                  f"taxa_{focal}_marginals.png", outdir)
    return fits


def fit_effect_structures(data: pd.DataFrame) -> dict:
    """Year and Station as fixed effects and as random intercepts, side by side."""
    base = ModelSpec("zoo_density", linear=("salinity", "temp", "log_turb"),
                     factors=("season",), response_transform="log")
    return fit_specs(data, effect_variants(base, ["year_f", "station"]))


def run_sensitivity(data: pd.DataFrame, outdir: Path) -> dict:
    """Gaussian-on-log-density fit with and without its lowest-salinity sample."""
    spec = ModelSpec("zoo_density", linear=("salinity", "temp", "log_turb", "log_chl"),
                     factors=("season",), response_transform="log")
    fit = fit_model(spec, data)
    flagged = flag_influential(fit)
    lowest = fit.data["salinity"].idxmin()
    without = refit_excluding(fit, [lowest])
    changes = leave_one_out(fit, terms=["salinity"])

    save_plot(plot_leave_one_out(changes, "salinity"), "sensitivity_salinity_loo.png", outdir)
    grid = marginal_prediction(fit, "salinity")
    save_plot(plot_marginal(grid, data, title="Log-density model: salinity"),
              "sensitivity_salinity_marginal.png", outdir)
    flagged.to_csv(outdir / "sensitivity_flagged_rows.csv")
    changes.to_csv(outdir / "sensitivity_leave_one_out.csv")
    return {
        "fit": fit,
        "flagged": flagged,
        "excluded_row": lowest,
        "comparison": compare_coefficients(fit, without),
    }


def run_ordination(data: pd.DataFrame, outdir: Path) -> dict:
    ordination = nmds(data)
    vectors = fit_vectors(ordination.scores, data, config.PREDICTORS)
    save_plot(plot_ordination(ordination, data, vectors=vectors), "ordination_nmds.png", outdir)
    ordination.scores.to_csv(outdir / "ordination_scores.csv")
    vectors.to_csv(outdir / "ordination_vectors.csv", index=False)
    return {"ordination": ordination, "vectors": vectors}


# --- report
def write_summary_txt(outdir: Path, data: pd.DataFrame, density: dict, shannon, taxa: dict,
                      effects: dict, sensitivity: dict, ordination: dict):
    fmt = lambda x: f"{x:.4g}"
    with open(outdir / "results_summary.txt", "w", encoding="utf-8") as f:
        f.write("Penobscot Estuary zooplankton models\n")
        f.write("====================================\n\n")
        f.write(f"Sampling events: {len(data)}   Stations: {data['station'].nunique()}   "
                f"Years: {data['year'].min()}-{data['year'].max()}\n")
        mapping = data.attrs.get("station_mapping", {})
        if mapping:
            f.write("Station codes: " + ", ".join(f"{k} -> {v}" for k, v in mapping.items()) + "\n")
        f.write("\n")

        f.write("Total density: error model comparison\n")
        f.write(compare_fits(density).to_string(index=False, float_format=fmt) + "\n")
        f.write("(AIC values are on different response scales and are not directly comparable.)\n\n")
        for name, fit in density.items():
            f.write(f"--- {name}\n{fit.summary()}\n\n")

        f.write(f"--- Shannon diversity\n{shannon.summary()}\n\n")

        f.write("Per-taxon models (log1p density)\n")
        rows = []
        for taxon, fit in taxa.items():
            tests = fit.anova().set_index("term")
            row = {"taxon": taxon, "nobs": fit.nobs}
            row.update({term: tests.at[term, "p_value"] for term in tests.index})
            rows.append(row)
        f.write(pd.DataFrame(rows).to_string(index=False, float_format=fmt) + "\n\n")

        f.write("Year and Station as fixed vs random effects (log density)\n")
        for name, fit in effects.items():
            f.write(f"--- {name}\n{fit.summary()}\n\n")

        f.write("Sensitivity: lowest-salinity sample\n")
        row = sensitivity["fit"].data.loc[sensitivity["excluded_row"]]
        f.write(f"Excluded row {sensitivity['excluded_row']}: date {row['date']:%Y-%m-%d}, "
                f"station {row['station']}, salinity {row['salinity']:.2f}, density {row['zoo_density']:.2f}\n")
        f.write(sensitivity["comparison"].to_string(index=False, float_format=fmt) + "\n")
        f.write(f"Rows flagged as influential: {len(sensitivity['flagged'])}\n\n")

        if ordination is None:
            return
        ordn = ordination["ordination"]
        f.write(f"NMDS (Bray-Curtis on log1p densities): stress {ordn.stress:.3f}, "
                f"{len(ordn.scores)} samples, {len(ordn.dropped)} empty samples left out\n")
        f.write(ordination["vectors"].to_string(index=False, float_format=fmt) + "\n")


# --- main orchestration
def main():
    parser = argparse.ArgumentParser(description="Fit the Penobscot zooplankton models and write the figures.")
    parser.add_argument("--workbook", type=Path, default=config.DEFAULT_WORKBOOK,
                        help="Survey workbook with the Final and Taxa sheets.")
    parser.add_argument("--outdir", type=Path, default=config.OUTPUT_DIR,
                        help="Folder for figures, tables and the summary.")
    parser.add_argument("--criterion", default=config.PENALTY_CRITERION, choices=["gcv", "aic", "bic"],
                        help="Criterion used to choose smoothing weights.")
    parser.add_argument("--skip-ordination", action="store_true")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    outdir = args.outdir
    outdir.mkdir(parents=True, exist_ok=True)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO, log_dir=outdir)

    try:
        survey = load_survey(args.workbook)
    except (AnalysisError, FileNotFoundError) as e:
        raise SystemExit(f"Failed to read the workbook: {e}")
    data = derive_features(survey, invalid="flag")
    data.to_csv(outdir / "survey_with_features.csv", index=False)

    density = fit_density_models(data, outdir, args.criterion)
    shannon = fit_shannon_model(data, outdir, args.criterion)
    taxa = fit_taxa_models(data, outdir, args.criterion)
    effects = fit_effect_structures(data)
    sensitivity = run_sensitivity(data, outdir)
    ordination = run_ordination(data, outdir) if not args.skip_ordination else None

    write_summary_txt(outdir, data, density, shannon, taxa, effects, sensitivity, ordination)

    print(f"Done. Outputs are in: {outdir.resolve()}")


if __name__ == "__main__":
    main()
