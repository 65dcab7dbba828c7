"""Exceptions and warnings raised across the survey toolkit."""


class AnalysisError(Exception):
    """Base class for every error raised by penobscot_models."""


class SchemaError(AnalysisError, ValueError):
    """The workbook does not match the declared column layout."""


class EmptyDataError(AnalysisError, ValueError):
    """Nothing left to analyse after filtering."""


class DomainError(AnalysisError, ValueError):
    """A value falls outside the domain of a transform or a fitted basis."""


class ModelSpecError(AnalysisError, ValueError):
    """A model specification refers to something the data cannot support."""


class FitWarning(UserWarning):
    """A model was fitted but did not converge cleanly (or hit a boundary)."""
