"""
Statistics helpers for the Penobscot Estuary zooplankton / river-herring survey.

Load the workbook, derive season and sampling-event keys, fit GLM / mixed /
penalized additive models, and inspect them through marginal predictions,
residual diagnostics, refit-without-a-row checks and an NMDS ordination.
"""

from .data_loader import EVENT_SCHEMA, TAXA_SCHEMA, SheetSchema, complete_cases, load_sheet, load_survey, remap_stations
from .errors import AnalysisError, DomainError, EmptyDataError, FitWarning, ModelSpecError, SchemaError
from .features import derive_features, taxa_long
from .transforms import TRANSFORMED_PREDICTORS
from .models import (
    FittedModel, ModelSpec, compare_fits, effect_variants, family_variants,
    fit_by_group, fit_each_response, fit_model, fit_specs,
)
from .marginal import MarginalGrid, marginal_prediction
from .diagnostics import flag_influential, residual_table
from .sensitivity import compare_coefficients, leave_one_out, refit_excluding
from .ordination import Ordination, fit_vectors, nmds

__all__ = [
    # Loading
    "SheetSchema", "EVENT_SCHEMA", "TAXA_SCHEMA", "load_sheet", "load_survey",
    "remap_stations", "complete_cases",

    # Features
    "derive_features", "taxa_long", "TRANSFORMED_PREDICTORS",

    # Models
    "ModelSpec", "FittedModel", "fit_model", "fit_specs", "fit_by_group", "fit_each_response",
    "family_variants", "effect_variants", "compare_fits",

    # Inspection
    "MarginalGrid", "marginal_prediction", "residual_table", "flag_influential",
    "refit_excluding", "compare_coefficients", "leave_one_out",
    "Ordination", "nmds", "fit_vectors",

    # Errors
    "AnalysisError", "SchemaError", "EmptyDataError", "DomainError", "ModelSpecError", "FitWarning",
]

__version__ = "0.1.0"
