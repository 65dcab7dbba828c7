"""Defaults shared by the loader, the models and the orchestration script."""

from pathlib import Path

# --- default file locations
BASE_DIR = Path(__file__).resolve().parent.parent
DEFAULT_WORKBOOK = BASE_DIR / "data" / "Penobscot_zooplankton_and_river_data.xlsx"
OUTPUT_DIR = BASE_DIR / "outputs"

EVENT_SHEET = "Final"
TAXA_SHEET = "Taxa"

# --- plotting
DEFAULT_DPI = 200
PALETTE = "Set2"

# --- seasons (month number -> season); months not listed are never sampled
SEASON_LEVELS = ["Spring", "Summer", "Fall"]
SEASON_BY_MONTH = {
    3: "Spring", 4: "Spring", 5: "Spring", 6: "Spring",
    7: "Summer", 8: "Summer",
    9: "Fall", 10: "Fall", 11: "Fall",
}

# --- variables
TAXA = ["acartia", "bosmina", "eurytemora", "polychaeta", "calanoida", "cyclopoida"]
RESPONSES = ["zoo_density", "shannon"] + TAXA
PREDICTORS = ["temp", "salinity", "log_turb", "log_chl", "do_sat", "log1p_herring"]
MARGINAL_FOCI = ["turbidity", "salinity", "temp", "chl"]

# --- modelling defaults
CI_LEVEL = 0.95
GRID_SIZE = 100
SPLINE_DF = 6
SPLINE_DEGREE = 3
# null-space eigenvalue as a fraction of the smallest positive penalty eigenvalue
SHRINKAGE = 0.1
PENALTY_CRITERION = "gcv"

# --- diagnostics thresholds (reporting only, nothing is dropped automatically)
LEVERAGE_MULTIPLIER = 2.0
RESIDUAL_CUTOFF = 2.0
