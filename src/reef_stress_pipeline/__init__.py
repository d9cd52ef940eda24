"""
reef_stress_pipeline - logger calibration, tissue assays and thermal-tolerance fits
for coral heat-stress experiments.

Modules:
  - schemas: typed records, column schemas, join reports
  - loader: Hobo / Odyssey / plate-reader / metadata readers
  - units: unit conversions (lux->PAR, mV->pH, flow, sphere area)
  - calibration: per-logger calibration against a standard-logger reference
  - standards: standard curves, surface area, areal density
  - dose_response: LL.3 fits with Cook's distance refinement
  - pi_curve: photosynthesis-irradiance fits
  - field: manual measurement logs
  - timeseries: daily logger summaries, daily light integral
  - plotting: paper-style figures
"""

from .calibration import (
    CalibrationError,
    CalibrationRun,
    apply_calibration,
    fit_logger_calibration,
    reference_series,
)
from .config import DEFAULTS, load_config, resolve_config
from .dose_response import (
    DoseResponseBatch,
    DoseResponseFitError,
    RefinedFit,
    cooks_distance,
    effective_dose,
    fit_groups,
    fit_ll3,
    ll3,
    refine_fit,
)
from .loader import (
    attach_metadata,
    filter_window,
    read_fragment_metadata,
    read_hobo_export,
    read_logger_metadata,
    read_odyssey_export,
    read_plate_map_tsv,
    read_synergy_endpoint,
)
from .pi_curve import fit_pi_curve, fit_pi_groups
from .schemas import (
    CalibrationParams,
    DoseResponseFit,
    JoinReport,
    MetadataRecord,
    Observation,
    SchemaError,
    validate_table,
)
from .standards import (
    StandardCurve,
    StandardCurveError,
    areal_density,
    build_areal_table,
    fit_standard_curve,
    quantify_plate,
    surface_area_curve,
)

__version__ = "0.1.0"

__all__ = [
    "CalibrationError",
    "CalibrationParams",
    "CalibrationRun",
    "DEFAULTS",
    "DoseResponseBatch",
    "DoseResponseFit",
    "DoseResponseFitError",
    "JoinReport",
    "MetadataRecord",
    "Observation",
    "RefinedFit",
    "SchemaError",
    "StandardCurve",
    "StandardCurveError",
    "apply_calibration",
    "areal_density",
    "attach_metadata",
    "build_areal_table",
    "cooks_distance",
    "effective_dose",
    "filter_window",
    "fit_groups",
    "fit_ll3",
    "fit_logger_calibration",
    "fit_pi_curve",
    "fit_pi_groups",
    "fit_standard_curve",
    "ll3",
    "load_config",
    "quantify_plate",
    "read_fragment_metadata",
    "read_hobo_export",
    "read_logger_metadata",
    "read_odyssey_export",
    "read_plate_map_tsv",
    "read_synergy_endpoint",
    "reference_series",
    "refine_fit",
    "resolve_config",
    "surface_area_curve",
    "validate_table",
    "__version__",
]
