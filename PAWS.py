#!/usr/bin/env python3
# ==============================================================================
# PAWS: Puppy-to-Adult Welfare Statistics
# Batch modelling of adult dog behaviour outcomes against puppy training
# practices reported in owner surveys.
# ==============================================================================

VERSION = "1.0.0"  # PAWS version for audit and reproducibility

import argparse
import hashlib
import hmac
import json
import os
import platform
import re
import secrets
import sys
import time
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

# ---------------------------
# Dependency bootstrap
# ---------------------------


def ensure_deps():
    """
    Verify the statistical stack is importable.

    The runtime environment is never mutated unless PAWS_ALLOW_PIP=1 is set,
    in which case a best-effort pip install is attempted.
    """
    pkgs = [
        "numpy",
        "pandas",
        "scipy",
        "statsmodels",
        "patsy",
        "joblib",
        "matplotlib",
        "seaborn",
        "openpyxl",
    ]
    try:
        import joblib  # noqa: F401
        import matplotlib  # noqa: F401
        import patsy  # noqa: F401
        import scipy  # noqa: F401
        import seaborn  # noqa: F401
        import statsmodels  # noqa: F401
    except ImportError as e:
        if os.environ.get("PAWS_ALLOW_PIP") == "1":
            os.system(f"{sys.executable} -m pip install -q " + " ".join(pkgs))
        else:
            raise RuntimeError(
                "Missing dependencies. Install them via a pinned environment (preferred). "
                "To allow auto-install, set PAWS_ALLOW_PIP=1."
            ) from e


ensure_deps()

import matplotlib  # noqa: E402

matplotlib.use("Agg")
import matplotlib.pyplot as plt  # noqa: E402
import seaborn as sns  # noqa: E402
import statsmodels.api as sm  # noqa: E402
import statsmodels.formula.api as smf  # noqa: E402
from joblib import Parallel, delayed  # noqa: E402
from patsy import EvalFactor, PatsyError  # noqa: E402
from scipy import special, stats  # noqa: E402
from scipy.stats.contingency import odds_ratio  # noqa: E402
from statsmodels.stats.outliers_influence import variance_inflation_factor  # noqa: E402
from statsmodels.tools.sm_exceptions import PerfectSeparationError  # noqa: E402

"""
PAWS: Puppy-to-Adult Welfare Statistics

Three procedures are applied to a survey table of dogs (rows) by variables
(columns):

1. Sparse-contingency filtering: predictors whose cross-tabulation with an
   outcome has any cell below a minimum count are removed before modelling.
2. Batch model evaluation: every outcome is regressed on the surviving
   predictors (logistic for binary outcomes, OLS for continuous ones) and
   reported as odds ratios / slopes with confidence intervals and variance
   inflation factors.
3. Multiple-hypothesis screening: Fisher's exact test of one predictor against
   many outcomes, Benjamini-Hochberg adjusted and tiered by significance.

References:
[1] Benjamini Y, Hochberg Y. Controlling the false discovery rate. J R Stat Soc B 1995;57:289-300.
[2] Fox J, Monette G. Generalized collinearity diagnostics. JASA 1992;87:178-83.
[3] Albert A, Anderson JA. On the existence of maximum likelihood estimates in
    logistic regression models. Biometrika 1984;71:1-10.
"""

# ---------------------------
# Styling
# ---------------------------

plt.rcParams["figure.dpi"] = 250
plt.rcParams["savefig.dpi"] = 250
plt.rcParams["savefig.bbox"] = "tight"

# ---------------------------
# Defaults
# ---------------------------

RANDOM_STATE = 42
OUTPUT_ROOT_DEFAULT = "PAWS_OUTPUT"
MIN_CELL_COUNT = 10  # Minimum contingency cell count for a predictor to be modelled
CI_LEVEL = 0.95
FDR_METHOD = "fdr_bh"
GLM_MAXITER = 100
MC_SIMULATIONS = 2000  # Monte-Carlo draws for Fisher tests larger than 2x2
CATEGORICAL_MAX_UNIQUE = 50

# Adjusted p-value cut-offs, highest tier first
SIGNIFICANCE_TIERS = [(0.001, 3), (0.01, 2), (0.05, 1)]
TIER_STARS = {3: "***", 2: "**", 1: "*", 0: ""}

BINOMIAL = "binomial"
GAUSSIAN = "gaussian"

POSITIVE = "positive"
NEGATIVE = "negative"
NEUTRAL = "neutral"


class AnalysisSettings:
    """
    Run-time settings resolved from session_config, then environment, then defaults.

    Environment variables:
        PAWS_MIN_CELL_COUNT=<int>  - Minimum contingency cell count (default 10)
        PAWS_N_JOBS=<int>          - Worker processes for per-outcome fits (default 1)
        PAWS_STRICT_MODE=1         - Re-raise the first per-outcome failure
    """

    @classmethod
    def _lookup(cls, key: str, session_config: Optional[Dict], default: Any) -> Any:
        if session_config and session_config.get(key) is not None:
            return session_config[key]
        env = os.environ.get(f"PAWS_{key.upper()}")
        if env not in (None, ""):
            return env
        return default

    @classmethod
    def min_cell_count(cls, session_config: Optional[Dict] = None) -> int:
        return int(cls._lookup("min_cell_count", session_config, MIN_CELL_COUNT))

    @classmethod
    def n_jobs(cls, session_config: Optional[Dict] = None) -> int:
        return int(cls._lookup("n_jobs", session_config, 1))

    @classmethod
    def is_strict_mode(cls, session_config: Optional[Dict] = None) -> bool:
        """Check if strict mode is enabled (fail on the first per-outcome error)."""
        if os.environ.get("PAWS_STRICT_MODE") == "1":
            return True
        if session_config and session_config.get("strict_mode"):
            return True
        return False


# ---------------------------
# Errors
# ---------------------------


class PawsError(Exception):
    """Base class for PAWS errors."""


class SchemaError(PawsError):
    """A referenced column is absent or has a type that cannot be analysed."""

    def __init__(
        self,
        message: str,
        columns: Optional[Sequence[str]] = None,
        outcome: Optional[str] = None,
    ):
        super().__init__(message)
        self.columns = list(columns or [])
        self.outcome = outcome


class FitFailure(PawsError):
    """A model or test could not be fitted for one outcome."""

    def __init__(self, outcome: str, diagnostic: str):
        super().__init__(outcome, diagnostic)
        self.outcome = outcome
        self.diagnostic = diagnostic

    def __str__(self) -> str:
        return f"{self.outcome}: {self.diagnostic}"


# ---------------------------
# Utilities
# ---------------------------


def now_ts() -> str:
    return time.strftime("%Y-%m-%d %H:%M:%S")


def safe_name(s: str) -> str:
    s = re.sub(r"[^a-zA-Z0-9._-]+", "_", str(s)).strip("_")
    return s[:120] if s else "dataset"


class NumpyEncoder(json.JSONEncoder):
    """JSON encoder that handles numpy and pandas scalar types."""

    def default(self, obj):
        if isinstance(obj, np.bool_):
            return bool(obj)
        if isinstance(obj, np.integer):
            return int(obj)
        if isinstance(obj, np.floating):
            return float(obj)
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if obj is pd.NA:
            return None
        if isinstance(obj, (set, frozenset)):
            return sorted(obj, key=str)
        return str(obj)


TEXT_EXTENSIONS = {".csv", ".tsv", ".txt", ".data"}
EXCEL_EXTENSIONS = {".xlsx", ".xls"}
PICKLE_EXTENSIONS = {".pkl", ".pickle"}


def sniff_sep(path: Path) -> str:
    """Auto-detect delimiter for text-based tabular files."""
    with open(path, "r", errors="ignore") as f:
        head = f.readline()
    if "\t" in head and "," not in head:
        return "\t"
    if ";" in head and "," not in head:
        return ";"
    return ","


def smart_read_file(path: Path, audit: Optional["AuditLog"] = None) -> pd.DataFrame:
    """
    Read a survey table from delimited text, Excel or a pickled DataFrame.

    Pickled frames keep their declared column types (integer, category,
    boolean); delimited text should be passed through declare_column_types.
    """
    path = Path(path)
    suffix = path.suffix.lower()

    if suffix in PICKLE_EXTENSIONS:
        df = pd.read_pickle(path)
        if not isinstance(df, pd.DataFrame):
            raise SchemaError(f"{path} does not contain a DataFrame")
        fmt = "pickle"
    elif suffix in EXCEL_EXTENSIONS:
        engine = "openpyxl" if suffix == ".xlsx" else None
        df = pd.read_excel(path, engine=engine)
        fmt = "excel"
    elif suffix in TEXT_EXTENSIONS:
        sep = sniff_sep(path)
        df = pd.read_csv(path, sep=sep, low_memory=False)
        fmt = f"text(sep={sep!r})"
    else:
        raise ValueError(f"Unsupported file type: {suffix}")

    if audit:
        audit.log(
            "DATA_READ",
            {"file": str(path), "format": fmt, "rows": len(df), "cols": df.shape[1]},
        )
    return df


def declare_column_types(
    df: pd.DataFrame,
    integer_columns: Iterable[str] = (),
    continuous_columns: Iterable[str] = (),
    boolean_columns: Iterable[str] = (),
    audit: Optional["AuditLog"] = None,
) -> pd.DataFrame:
    """
    Restore declared column types on a table read from delimited text.

    Integer columns become nullable Int64 (exempt from sparse filtering),
    continuous columns float, boolean columns nullable boolean. Every other
    column with at most CATEGORICAL_MAX_UNIQUE levels becomes categorical;
    higher-cardinality numeric columns are treated as continuous.
    """
    integer_columns = list(integer_columns)
    continuous_columns = list(continuous_columns)
    boolean_columns = list(boolean_columns)
    declared = integer_columns + continuous_columns + boolean_columns
    missing = [c for c in declared if c not in df.columns]
    if missing:
        raise SchemaError(f"Declared columns not found: {missing}", columns=missing)

    out = df.copy()
    types: Dict[str, str] = {}
    for col in out.columns:
        s = out[col]
        if col in integer_columns:
            num = pd.to_numeric(s, errors="coerce")
            frac = num.dropna() % 1
            if (frac != 0).any():
                raise SchemaError(
                    f"Column '{col}' declared integer but holds fractional values",
                    columns=[col],
                )
            out[col] = num.astype("Int64")
            types[col] = "integer"
        elif col in continuous_columns:
            out[col] = pd.to_numeric(s, errors="coerce").astype(float)
            types[col] = "continuous"
        elif col in boolean_columns:
            y = normalize_binary_target(s)
            if y is None:
                raise SchemaError(
                    f"Column '{col}' declared boolean but does not have two levels",
                    columns=[col],
                )
            out[col] = y.astype("boolean")
            types[col] = "boolean"
        elif pd.api.types.is_bool_dtype(s):
            types[col] = "boolean"
        elif pd.api.types.is_float_dtype(s) and s.nunique() > CATEGORICAL_MAX_UNIQUE:
            types[col] = "continuous"
        elif s.nunique(dropna=True) <= CATEGORICAL_MAX_UNIQUE:
            out[col] = s.astype("category")
            types[col] = "categorical"
        else:
            types[col] = str(s.dtype)

    if audit:
        audit.log("COLUMN_TYPES_DECLARED", types)
    return out


def write_csv(path: Path, df: pd.DataFrame):
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False)


def write_json(path: Path, obj: Dict[str, Any]):
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(obj, f, indent=2, ensure_ascii=False, cls=NumpyEncoder)


def get_versions() -> Dict[str, str]:
    import joblib as _jl
    import patsy as _pt
    import scipy as _sp
    import statsmodels as _sm

    return {
        "python": sys.version.replace("\n", " "),
        "numpy": np.__version__,
        "pandas": pd.__version__,
        "scipy": _sp.__version__,
        "statsmodels": _sm.__version__,
        "patsy": _pt.__version__,
        "joblib": _jl.__version__,
        "matplotlib": matplotlib.__version__,
        "seaborn": sns.__version__,
        "os_system": platform.system(),
        "os_release": platform.release(),
        "machine": platform.machine(),
        "cpu_count": str(os.cpu_count() or "unknown"),
    }


# ---------------------------
# Immutable audit log (JSONL)
# ---------------------------


def _compute_log_integrity_hash(entries: List[Dict[str, Any]], key: bytes) -> str:
    """HMAC-SHA256 over all entries, serialized in deterministic order."""
    serialized = json.dumps(entries, sort_keys=True, ensure_ascii=False, cls=NumpyEncoder)
    return (
        hmac.new(key=key, msg=serialized.encode("utf-8"), digestmod=hashlib.sha256)
        .hexdigest()
        .upper()
    )


class AuditLog:
    """
    Append-only JSONL audit trail of every analytical decision in a run.

    Each entry carries a timestamp, the session key and a sequence number.
    finalize_session() seals the run with an HMAC-SHA256 hash over all entries,
    so later edits to the file are detectable.
    """

    def __init__(self, jsonl_path: Path):
        self.jsonl_path = Path(jsonl_path)
        self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)

        self._key = secrets.token_bytes(32)
        self.session_key = hashlib.sha256(self._key).hexdigest()[:16].upper()
        self.session_start = now_ts()
        self.log_count = 0
        self._entries: List[Dict[str, Any]] = []

        self._write_entry(
            "SESSION_INIT",
            {"session_key": self.session_key, "paws_version": VERSION},
        )

    def _write_entry(self, event: str, details: Optional[Dict[str, Any]] = None):
        self.log_count += 1
        entry = {
            "ts": now_ts(),
            "event": event,
            "details": details or {},
            "session_key": self.session_key,
            "log_sequence": self.log_count,
        }
        self._entries.append(entry)
        with open(self.jsonl_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, ensure_ascii=False, cls=NumpyEncoder) + "\n")
        return entry

    def log(self, event: str, details: Optional[Dict[str, Any]] = None):
        """Log an event."""
        return self._write_entry(event, details)

    def finalize_session(self) -> Dict[str, Any]:
        integrity_hash = _compute_log_integrity_hash(self._entries, self._key)
        summary = {
            "session_key": self.session_key,
            "session_start": self.session_start,
            "session_end": now_ts(),
            "total_entries": self.log_count,
            "integrity_hash": integrity_hash,
            "integrity_algorithm": "HMAC-SHA256",
        }
        self._write_entry(
            "SESSION_FINALIZED",
            {"integrity_hash": integrity_hash, "total_entries": self.log_count},
        )
        return summary


# ---------------------------
# Outcome typing
# ---------------------------


def normalize_binary_target(y: pd.Series) -> Optional[pd.Series]:
    """
    Map a two-level column to 0/1, or return None if it does not have two levels.

    Booleans map False/True to 0/1, numerics map min/max, ordered or unordered
    categoricals follow category order, and other labels follow sorted order.
    Missing values are kept (nullable Int64).
    """
    if pd.api.types.is_bool_dtype(y):
        return y.astype("Int64") if y.isna().any() else y.astype(int)

    observed = pd.Series(y.dropna().unique())
    if observed.nunique() != 2:
        return None

    if isinstance(y.dtype, pd.CategoricalDtype):
        present = set(observed)
        levels = [c for c in y.cat.categories if c in present]
        mapped = y.astype(object).map({levels[0]: 0, levels[1]: 1})
    else:
        try:
            num = pd.to_numeric(y, errors="raise")
            lo, hi = sorted(pd.to_numeric(observed))
            mapped = num.map({lo: 0, hi: 1})
        except (ValueError, TypeError):
            vals = sorted(observed.astype(str).unique())
            mapped = y.map(lambda v: v if pd.isna(v) else str(v)).map(
                {vals[0]: 0, vals[-1]: 1}
            )

    if mapped.isna().any():
        return mapped.astype("Int64")
    return mapped.astype(int)


def infer_outcome_family(y: pd.Series, name: Optional[str] = None) -> str:
    """Binary outcomes are modelled with a binomial GLM, numeric ones with OLS."""
    name = name if name is not None else str(y.name)
    y_nonnull = y.dropna()
    if y_nonnull.empty:
        raise SchemaError(f"Outcome '{name}' has no observed values", outcome=name)
    if pd.api.types.is_bool_dtype(y) or normalize_binary_target(y) is not None:
        return BINOMIAL
    if pd.api.types.is_numeric_dtype(y):
        return GAUSSIAN
    raise SchemaError(
        f"Outcome '{name}' is categorical with {y_nonnull.nunique()} levels; "
        "only binary or continuous outcomes can be modelled",
        columns=[name],
        outcome=name,
    )


# ---------------------------
# Sparse-contingency filter
# ---------------------------


def _observed(s: pd.Series) -> pd.Series:
    if isinstance(s.dtype, pd.CategoricalDtype):
        return s.cat.remove_unused_categories()
    return s


def _is_tabulated_outcome(y: pd.Series) -> bool:
    """Continuous outcomes are not cross-tabulated."""
    if pd.api.types.is_bool_dtype(y) or not pd.api.types.is_numeric_dtype(y):
        return True
    return int(y.nunique(dropna=True)) <= 2


def _require_columns(df: pd.DataFrame, columns: Iterable[str], outcome: Optional[str] = None):
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise SchemaError(
            f"Columns not found in dataset: {missing}", columns=missing, outcome=outcome
        )


def contingency_table(df: pd.DataFrame, column: str, outcome: str) -> pd.DataFrame:
    """
    Count table of `column` levels (rows) by `outcome` levels (columns).

    Only observed levels appear and rows missing either value are excluded.
    A continuous outcome collapses the table to the column's level counts.
    """
    _require_columns(df, [column, outcome])
    y = df[outcome]
    keep = df[column].notna() & y.notna()
    x = _observed(df.loc[keep, column])
    if _is_tabulated_outcome(y):
        return pd.crosstab(x, _observed(y[keep]))
    return x.value_counts().sort_index().to_frame(name="n")


def first_sparse_cell(
    table: pd.DataFrame, threshold: int
) -> Optional[Tuple[Any, Any, int]]:
    """
    First cell (row level, column level, count) below threshold, scanning
    row-major in level order; None when every cell meets the threshold.
    """
    if table.size == 0:
        return (None, None, 0)
    for row in table.index:
        for col in table.columns:
            n = int(table.at[row, col])
            if n < threshold:
                return (row, col, n)
    return None


def _check_threshold(threshold: Any):
    if isinstance(threshold, bool) or not isinstance(threshold, (int, np.integer)):
        raise ValueError(f"threshold must be a positive integer, got {threshold!r}")
    if threshold < 1:
        raise ValueError(f"threshold must be a positive integer, got {threshold!r}")


def sparse_columns(
    df: pd.DataFrame, outcome: str, threshold: int = MIN_CELL_COUNT
) -> Dict[str, Tuple[Any, Any, int]]:
    """Columns to drop, in dataset order, each with its first undersized cell."""
    _require_columns(df, [outcome], outcome=outcome)
    _check_threshold(threshold)
    found: Dict[str, Tuple[Any, Any, int]] = {}
    for col in df.columns:
        if col == outcome:
            continue
        if pd.api.types.is_integer_dtype(df[col]):
            continue
        table = contingency_table(df, col, outcome)
        if len(table.index) == 1:
            # Only one observed level among complete rows
            found[col] = (table.index[0], None, int(table.to_numpy().sum()))
            continue
        cell = first_sparse_cell(table, threshold)
        if cell is not None:
            found[col] = cell
    return found


def _log_sparse(audit: Optional["AuditLog"], outcome: str, threshold: int, cells: Dict):
    if audit and cells:
        audit.log(
            "SPARSE_COLUMNS_DROPPED",
            {
                "outcome": outcome,
                "threshold": threshold,
                "columns": [
                    {"column": c, "row_level": r, "outcome_level": o, "count": n}
                    for c, (r, o, n) in cells.items()
                ],
            },
        )


def filter_sparse_columns(
    df: pd.DataFrame,
    outcome: str,
    threshold: int = MIN_CELL_COUNT,
    audit: Optional["AuditLog"] = None,
) -> Tuple[pd.DataFrame, List[str]]:
    """
    Remove predictors whose contingency table against `outcome` has any cell
    below `threshold`.

    Integer-typed columns are never tabulated and always kept. A column is
    dropped on its first undersized cell, or when only one of its levels is
    observed alongside the outcome. The input frame is not modified.

    Args:
        df: Survey table containing `outcome`
        outcome: Outcome column name
        threshold: Minimum count per cell (positive integer)
        audit: Optional AuditLog instance

    Returns:
        Tuple of (filtered copy, dropped column names in column order)
    """
    cells = sparse_columns(df, outcome, threshold)
    _log_sparse(audit, outcome, threshold, cells)
    dropped = list(cells)
    return df.drop(columns=dropped), dropped


# ---------------------------
# Model evaluation
# ---------------------------


def _quote(name: str) -> str:
    return f"Q({name!r})"


def build_formula(outcome: str, predictors: Sequence[str], columns: Iterable[str]) -> str:
    """Explicit additive formula; unknown column references raise SchemaError."""
    available = set(columns)
    unknown = [c for c in [outcome, *predictors] if c not in available]
    if unknown:
        raise SchemaError(f"Formula references unknown columns: {unknown}", unknown, outcome)
    terms = [_quote(p) for p in dict.fromkeys(predictors)]
    return f"{_quote(outcome)} ~ " + (" + ".join(terms) if terms else "1")


def _design_info(model):
    """patsy DesignInfo of a formula model (model_spec from statsmodels 0.15 on)."""
    spec = getattr(model.data, "model_spec", None)
    return spec if spec is not None else model.data.design_info


def _column_predictors(design_info, predictors: Sequence[str]) -> Dict[str, str]:
    """Map each design-matrix column to the predictor it encodes."""
    by_term = {EvalFactor(_quote(p)).name(): p for p in predictors}
    out: Dict[str, str] = {}
    for term_name, sl in design_info.term_name_slices.items():
        for col in design_info.column_names[sl]:
            out[col] = by_term.get(term_name, term_name)
    return out


def compute_vif(
    exog: np.ndarray, design_info, predictors: Sequence[str] = ()
) -> pd.DataFrame:
    """
    Variance inflation per predictor term.

    Single-column terms use the classic VIF; multi-level categorical terms use
    the generalized VIF of Fox & Monette, det(R11) det(R22) / det(R), with
    vif_adj = GVIF ** (1 / (2 df)) comparable across terms.
    """
    columns = ["predictor", "term", "df", "vif", "vif_adj"]
    X = np.asarray(exog, dtype=float)
    by_term = {EvalFactor(_quote(p)).name(): p for p in predictors}
    terms = [
        (name, sl) for name, sl in design_info.term_name_slices.items() if name != "Intercept"
    ]
    if not terms:
        return pd.DataFrame(columns=columns)

    design_cols = [i for _, sl in terms for i in range(sl.start, sl.stop)]
    R = None
    if any(sl.stop - sl.start > 1 for _, sl in terms):
        R = np.atleast_2d(np.corrcoef(X[:, design_cols], rowvar=False))
        det_R = np.linalg.det(R)

    rows = []
    pos = 0
    for name, sl in terms:
        k = sl.stop - sl.start
        if k == 1:
            vif = float(variance_inflation_factor(X, sl.start))
        else:
            idx = np.arange(pos, pos + k)
            rest = np.setdiff1d(np.arange(len(design_cols)), idx)
            det_rest = np.linalg.det(R[np.ix_(rest, rest)]) if rest.size else 1.0
            vif = float(np.linalg.det(R[np.ix_(idx, idx)]) * det_rest / det_R)
        pos += k
        rows.append(
            {
                "predictor": by_term.get(name, name),
                "term": name,
                "df": k,
                "vif": vif,
                "vif_adj": vif ** (1.0 / (2 * k)),
            }
        )
    return pd.DataFrame(rows, columns=columns)


def association_direction(estimate: float, null_value: float = 1.0) -> Optional[str]:
    """'negative' below the null value, 'positive' above, 'neutral' at it."""
    if estimate is None or pd.isna(estimate):
        return None
    if estimate < null_value:
        return NEGATIVE
    if estimate > null_value:
        return POSITIVE
    return NEUTRAL


@dataclass(frozen=True)
class ModelResult:
    """Fitted model for one outcome. Tables are not mutated after construction."""

    outcome: str
    family: str
    formula: str
    predictors: List[str]
    dropped_columns: List[str]
    n_obs: int
    coefficients: pd.DataFrame
    effects: pd.DataFrame
    vif: pd.DataFrame
    aic: float = float("nan")
    sparse_cells: Dict[str, Tuple[Any, Any, int]] = field(default_factory=dict)
    warnings: Tuple[str, ...] = ()

    @property
    def effect_column(self) -> str:
        return "odds_ratio" if self.family == BINOMIAL else "estimate"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome,
            "family": self.family,
            "formula": self.formula,
            "predictors": list(self.predictors),
            "dropped_columns": list(self.dropped_columns),
            "n_obs": self.n_obs,
            "aic": self.aic,
            "coefficients": self.coefficients.to_dict(orient="records"),
            "effects": self.effects.to_dict(orient="records"),
            "vif": self.vif.to_dict(orient="records"),
            "warnings": list(self.warnings),
        }


def _model_frame(
    df: pd.DataFrame, outcome: str, predictors: Sequence[str], family: str
) -> pd.DataFrame:
    """Complete cases with extension dtypes converted to what patsy expects."""
    frame = df[[outcome, *predictors]].dropna()
    if frame.empty:
        raise FitFailure(outcome, "no complete cases")
    if frame[outcome].nunique() < 2:
        raise FitFailure(outcome, "outcome has a single observed level among complete cases")

    cols = {}
    for col in frame.columns:
        s = frame[col]
        if isinstance(s.dtype, pd.CategoricalDtype):
            s = s.cat.remove_unused_categories()
        elif pd.api.types.is_bool_dtype(s):
            s = s.astype(bool)
        elif pd.api.types.is_integer_dtype(s):
            s = s.astype("int64")
        elif pd.api.types.is_float_dtype(s):
            s = s.astype("float64")
        cols[col] = s
    frame = pd.DataFrame(cols, index=frame.index)

    if family == BINOMIAL:
        frame[outcome] = normalize_binary_target(frame[outcome]).astype(int)
    return frame


def _fit_formula(formula: str, frame: pd.DataFrame, family: str, outcome: str):
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        try:
            if family == BINOMIAL:
                model = smf.glm(formula, data=frame, family=sm.families.Binomial())
                res = model.fit(maxiter=GLM_MAXITER)
            else:
                res = smf.ols(formula, data=frame).fit()
        except (np.linalg.LinAlgError, ValueError, PatsyError, PerfectSeparationError) as e:
            raise FitFailure(outcome, f"{type(e).__name__}: {e}") from e

    if family == BINOMIAL and not getattr(res, "converged", True):
        raise FitFailure(outcome, f"IRLS did not converge within {GLM_MAXITER} iterations")

    # IRLS repeats the same warning on every iteration
    solver_warnings = tuple(
        dict.fromkeys(
            f"{w.category.__name__}: {w.message}"
            for w in caught
            if issubclass(w.category, (UserWarning, RuntimeWarning))
        )
    )
    return res, solver_warnings


def fit_outcome_model(
    df: pd.DataFrame,
    outcome: str,
    predictors: Sequence[str],
    threshold: int = MIN_CELL_COUNT,
    ci_level: float = CI_LEVEL,
    audit: Optional["AuditLog"] = None,
) -> ModelResult:
    """
    Filter sparse predictors, then fit one additive model for `outcome`.

    Binary outcomes get a binomial GLM (logit link) reported as odds ratios;
    continuous outcomes get OLS reported as slopes. Perfect or quasi-complete
    separation is not detected: it shows up as extreme coefficients and is
    left to the caller (see flag_implausible_estimates and `exclusions` in
    evaluate).

    Raises:
        SchemaError: outcome or a predictor is absent, or the outcome type is unsupported
        FitFailure: no complete cases, single-level outcome, or solver failure
    """
    _require_columns(df, [outcome, *predictors], outcome=outcome)
    predictors = [p for p in dict.fromkeys(predictors) if p != outcome]
    family = infer_outcome_family(df[outcome], outcome)

    projected = df[[outcome, *predictors]]
    cells = sparse_columns(projected, outcome, threshold)
    _log_sparse(audit, outcome, threshold, cells)
    retained = [p for p in predictors if p not in cells]

    frame = _model_frame(projected, outcome, retained, family)
    formula = build_formula(outcome, retained, frame.columns)
    res, solver_warnings = _fit_formula(formula, frame, family, outcome)

    design_info = _design_info(res.model)
    col_pred = _column_predictors(design_info, retained)

    ci = res.conf_int(alpha=1.0 - ci_level)
    coefficients = pd.DataFrame(
        {
            "term": res.params.index,
            "predictor": [col_pred.get(t, t) for t in res.params.index],
            "estimate": res.params.values,
            "std_error": res.bse.values,
            "statistic": res.tvalues.values,
            "p_value": res.pvalues.values,
            "ci_lower": ci.iloc[:, 0].values,
            "ci_upper": ci.iloc[:, 1].values,
        }
    )

    terms = coefficients[coefficients["term"] != "Intercept"].reset_index(drop=True)
    if family == BINOMIAL:
        with np.errstate(over="ignore"):
            effects = pd.DataFrame(
                {
                    "term": terms["term"],
                    "predictor": terms["predictor"],
                    "odds_ratio": np.exp(terms["estimate"]),
                    "ci_lower": np.exp(terms["ci_lower"]),
                    "ci_upper": np.exp(terms["ci_upper"]),
                    "p_value": terms["p_value"],
                }
            )
        effects["direction"] = [association_direction(v, 1.0) for v in effects["odds_ratio"]]
    else:
        effects = terms[["term", "predictor", "estimate", "ci_lower", "ci_upper", "p_value"]].copy()
        effects["direction"] = [association_direction(v, 0.0) for v in effects["estimate"]]

    vif = compute_vif(res.model.exog, design_info, retained)

    result = ModelResult(
        outcome=outcome,
        family=family,
        formula=formula,
        predictors=retained,
        dropped_columns=list(cells),
        n_obs=int(res.nobs),
        coefficients=coefficients,
        effects=effects,
        vif=vif,
        aic=float(res.aic),
        sparse_cells=dict(cells),
        warnings=solver_warnings,
    )
    if audit:
        audit.log(
            "MODEL_FIT",
            {
                "outcome": outcome,
                "family": family,
                "n_obs": result.n_obs,
                "predictors": retained,
                "dropped_columns": result.dropped_columns,
                "warnings": list(solver_warnings),
            },
        )
    return result


def flag_implausible_estimates(
    result: ModelResult, max_abs_coef: float = 10.0, max_ci_ratio: float = 1e3
) -> List[str]:
    """
    Terms whose estimates look like separation artefacts: a coefficient beyond
    max_abs_coef (log-odds for logistic models), a non-finite standard error,
    or an odds-ratio interval wider than max_ci_ratio (upper / lower).

    Reporting aid only; evaluate never drops anything on this basis.
    """
    flagged = []
    coefs = result.coefficients
    for _, row in coefs[coefs["term"] != "Intercept"].iterrows():
        bad = abs(row["estimate"]) > max_abs_coef or not np.isfinite(row["std_error"])
        if result.family == BINOMIAL and not bad:
            with np.errstate(over="ignore", divide="ignore"):
                ratio = np.exp(row["ci_upper"] - row["ci_lower"])
            bad = not np.isfinite(ratio) or ratio > max_ci_ratio
        if bad:
            flagged.append(row["term"])
    return flagged


@dataclass
class EvaluationReport:
    """Per-outcome results in input order plus the outcomes that failed."""

    results: Dict[str, ModelResult] = field(default_factory=dict)
    failures: List[PawsError] = field(default_factory=list)

    def __getitem__(self, outcome: str) -> ModelResult:
        return self.results[outcome]

    def __contains__(self, outcome: str) -> bool:
        return outcome in self.results

    def __len__(self) -> int:
        return len(self.results)

    def to_frame(self) -> pd.DataFrame:
        """Long table of all effect estimates."""
        frames = []
        for outcome, res in self.results.items():
            eff = res.effects.rename(columns={res.effect_column: "effect"})
            eff.insert(0, "family", res.family)
            eff.insert(0, "outcome", outcome)
            frames.append(eff)
        if not frames:
            return pd.DataFrame(
                columns=["outcome", "family", "term", "predictor", "effect",
                         "ci_lower", "ci_upper", "p_value", "direction"]
            )
        return pd.concat(frames, ignore_index=True)

    def coefficient_frame(self) -> pd.DataFrame:
        frames = [r.coefficients.assign(outcome=o) for o, r in self.results.items()]
        return pd.concat(frames, ignore_index=True) if frames else pd.DataFrame()

    def vif_frame(self) -> pd.DataFrame:
        frames = [r.vif.assign(outcome=o) for o, r in self.results.items() if not r.vif.empty]
        return pd.concat(frames, ignore_index=True) if frames else pd.DataFrame()

    def dropped_frame(self) -> pd.DataFrame:
        rows = [
            {"outcome": o, "column": c, "row_level": r, "outcome_level": lvl, "count": n}
            for o, res in self.results.items()
            for c, (r, lvl, n) in res.sparse_cells.items()
        ]
        return pd.DataFrame(rows, columns=["outcome", "column", "row_level", "outcome_level", "count"])

    def failure_frame(self) -> pd.DataFrame:
        return _failure_frame(self.failures)


def _failure_frame(failures: Sequence[PawsError]) -> pd.DataFrame:
    rows = [
        {
            "outcome": getattr(e, "outcome", None),
            "error": type(e).__name__,
            "message": getattr(e, "diagnostic", None) or str(e),
        }
        for e in failures
    ]
    return pd.DataFrame(rows, columns=["outcome", "error", "message"])


def _evaluate_one(
    df: pd.DataFrame, outcome: str, predictors: List[str], threshold: int, ci_level: float
) -> Union[ModelResult, PawsError]:
    try:
        return fit_outcome_model(df, outcome, predictors, threshold=threshold, ci_level=ci_level)
    except (SchemaError, FitFailure) as e:
        return e


def evaluate(
    df: pd.DataFrame,
    outcomes: Sequence[str],
    predictors: Sequence[str],
    threshold: Optional[int] = None,
    exclusions: Optional[Mapping[str, Sequence[str]]] = None,
    ci_level: float = CI_LEVEL,
    n_jobs: Optional[int] = None,
    random_state: int = RANDOM_STATE,
    audit: Optional["AuditLog"] = None,
    session_config: Optional[Dict[str, Any]] = None,
) -> EvaluationReport:
    """
    Fit one model per outcome against a fixed predictor set.

    Every outcome is handled independently: its own sparse filter, family and
    fit. Failures for one outcome (absent column, repeated entry, unsupported
    type, FitFailure) are collected and the batch continues; predictors absent
    from the dataset are fatal for the whole call.

    Args:
        df: Survey table (read-only)
        outcomes: Outcome columns, in reporting order
        predictors: Predictor columns, in formula order
        threshold: Minimum contingency cell count (default from AnalysisSettings)
        exclusions: {outcome: [predictor, ...]} removed for that outcome only,
            typically predictors that separate it
        ci_level: Confidence level for intervals
        n_jobs: Worker processes for the per-outcome loop (joblib)
        random_state: Seed applied before the batch
        audit: Optional AuditLog instance
        session_config: Optional overrides (min_cell_count, n_jobs, strict_mode)

    Returns:
        EvaluationReport with results keyed and ordered by outcome
    """
    threshold = AnalysisSettings.min_cell_count(session_config) if threshold is None else threshold
    n_jobs = AnalysisSettings.n_jobs(session_config) if n_jobs is None else n_jobs
    _check_threshold(threshold)
    _require_columns(df, predictors)

    np.random.seed(random_state)
    exclusions = exclusions or {}
    tasks = []
    report = EvaluationReport()
    seen = set()
    for outcome in outcomes:
        if outcome in seen:
            report.failures.append(
                SchemaError(f"Outcome '{outcome}' is listed more than once", [outcome], outcome)
            )
            continue
        seen.add(outcome)
        if outcome not in df.columns:
            report.failures.append(
                SchemaError(f"Outcome '{outcome}' not found in dataset", [outcome], outcome)
            )
            continue
        excluded = set(exclusions.get(outcome, ()))
        preds = [p for p in predictors if p != outcome and p not in excluded]
        tasks.append((df[[outcome, *dict.fromkeys(preds)]], outcome, preds, threshold, ci_level))

    if audit:
        audit.log(
            "EVALUATION_START",
            {
                "outcomes": [t[1] for t in tasks],
                "predictors": list(predictors),
                "threshold": threshold,
                "exclusions": {k: list(v) for k, v in exclusions.items()},
                "n_jobs": n_jobs,
                "random_state": random_state,
            },
        )

    if n_jobs == 1:
        outputs = [_evaluate_one(*t) for t in tasks]
    else:
        outputs = Parallel(n_jobs=n_jobs)(delayed(_evaluate_one)(*t) for t in tasks)

    for (_, outcome, _, _, _), out in zip(tasks, outputs):
        if isinstance(out, ModelResult):
            report.results[outcome] = out
            if audit:
                _log_sparse(audit, outcome, threshold, out.sparse_cells)
                audit.log(
                    "MODEL_FIT",
                    {
                        "outcome": outcome,
                        "family": out.family,
                        "n_obs": out.n_obs,
                        "predictors": out.predictors,
                        "warnings": list(out.warnings),
                    },
                )
        else:
            report.failures.append(out)

    if audit:
        for e in report.failures:
            audit.log(
                "MODEL_FIT_FAILED",
                {"outcome": getattr(e, "outcome", None), "error": type(e).__name__, "message": str(e)},
            )
        audit.log(
            "EVALUATION_COMPLETE",
            {"n_models": len(report.results), "n_failures": len(report.failures)},
        )

    if report.failures and AnalysisSettings.is_strict_mode(session_config):
        raise report.failures[0]
    return report


# ---------------------------
# Multiple Testing Correction
# ---------------------------


def apply_multiple_testing_correction(
    p_values: Sequence[float],
    method: str = FDR_METHOD,
    alpha: float = 0.05,
    audit: Optional[AuditLog] = None,
) -> Dict[str, Any]:
    """
    Apply multiple testing correction to a complete list of p-values.

    Methods:
    - bonferroni: Bonferroni correction (most conservative)
    - holm: Holm-Bonferroni step-down method
    - fdr_bh: Benjamini-Hochberg FDR control (recommended for exploratory)
    - fdr_by: Benjamini-Yekutieli FDR (for dependent tests)

    Args:
        p_values: Uncorrected p-values, all hypotheses of the family
        method: Correction method ('bonferroni', 'holm', 'fdr_bh', 'fdr_by')
        alpha: Family-wise error rate or FDR level
        audit: Optional AuditLog instance

    Returns:
        Dictionary with corrected p-values (input order) and rejection decisions
    """
    p = np.asarray(p_values, dtype=float)
    n_tests = len(p)
    if np.isnan(p).any():
        raise ValueError("p-values must not contain NaN")

    if n_tests == 0:
        corrected = p.copy()
    elif method == "bonferroni":
        corrected = np.minimum(p * n_tests, 1.0)
    else:
        order = np.argsort(p, kind="mergesort")
        ranks = np.arange(1, n_tests + 1)
        p_sorted = p[order]
        if method == "holm":
            # Step-down, then enforce monotonicity forwards
            adj = np.maximum.accumulate(p_sorted * (n_tests - ranks + 1))
        elif method in ("fdr_bh", "fdr_by"):
            c_n = 1.0 if method == "fdr_bh" else float(np.sum(1.0 / ranks))
            # Step-up, then enforce monotonicity from the largest p-value down
            adj = np.minimum.accumulate((p_sorted * n_tests * c_n / ranks)[::-1])[::-1]
        else:
            raise ValueError(f"Unknown method: {method}")
        corrected = np.empty(n_tests)
        corrected[order] = np.minimum(adj, 1.0)

    reject = corrected < alpha
    result = {
        "method": method,
        "alpha": alpha,
        "n_tests": n_tests,
        "original_p_values": p.tolist(),
        "corrected_p_values": corrected.tolist(),
        "reject_null": reject.tolist(),
        "n_significant": int(reject.sum()),
    }

    if audit:
        audit.log(
            "MULTIPLE_TESTING_CORRECTION",
            {
                "method": method,
                "n_tests": n_tests,
                "n_significant_after_correction": int(reject.sum()),
            },
        )
    return result


# ---------------------------
# Multiple-hypothesis screening
# ---------------------------


def significance_tier(p_value: float) -> int:
    """3 for p <= 0.001, 2 for p <= 0.01, 1 for p <= 0.05, else 0."""
    if p_value is None or pd.isna(p_value):
        return 0
    for cutoff, tier in SIGNIFICANCE_TIERS:
        if p_value <= cutoff:
            return tier
    return 0


def tier_stars(tier: int) -> str:
    return TIER_STARS.get(int(tier), "")


def fisher_exact_test(
    table: Any,
    n_simulations: int = MC_SIMULATIONS,
    random_state: int = RANDOM_STATE,
) -> Tuple[float, float, str]:
    """
    Two-sided Fisher's exact test of independence.

    2x2 tables get the exact p-value and the conditional maximum-likelihood
    odds ratio. Larger tables get a Monte-Carlo p-value over random tables
    with the observed margins, (1 + #{sim as or less probable}) / (B + 1),
    and no odds-ratio estimate.

    Returns:
        Tuple of (p_value, odds_ratio_estimate, method)
    """
    table = np.asarray(table, dtype=np.int64)
    if table.ndim != 2 or min(table.shape) < 2:
        raise ValueError(
            f"Fisher's exact test needs at least two levels per variable, got table shape {table.shape}"
        )

    if table.shape == (2, 2):
        _, p_value = stats.fisher_exact(table, alternative="two-sided")
        estimate = odds_ratio(table, kind="conditional").statistic
        return float(p_value), float(estimate), "fisher_exact"

    rng = np.random.default_rng(random_state)
    dist = stats.random_table(table.sum(axis=1), table.sum(axis=0))
    sims = dist.rvs(size=n_simulations, random_state=rng)
    # Table probability given the margins is proportional to 1 / prod(x_ij!)
    observed = -special.gammaln(table + 1).sum()
    simulated = -special.gammaln(sims + 1).sum(axis=(1, 2))
    almost_one = 1.0 + 64 * np.finfo(float).eps
    p_value = (1 + np.sum(simulated <= observed / almost_one)) / (n_simulations + 1)
    return float(p_value), float("nan"), "fisher_monte_carlo"


@dataclass(frozen=True)
class ScreeningRecord:
    outcome: str
    p_value: float
    adjusted_p_value: float
    effect_estimate: float
    significance_tier: int
    direction: Optional[str]
    table_shape: Tuple[int, int]
    method: str

    @property
    def stars(self) -> str:
        return tier_stars(self.significance_tier)


@dataclass
class ScreeningReport:
    """Screening records in input order, plus outcomes that could not be tested."""

    predictor: str
    correction_method: str
    records: List[ScreeningRecord] = field(default_factory=list)
    failures: List[PawsError] = field(default_factory=list)

    def __iter__(self):
        return iter(self.records)

    def __len__(self) -> int:
        return len(self.records)

    def to_frame(self) -> pd.DataFrame:
        rows = []
        for r in self.records:
            rows.append(
                {
                    "predictor": self.predictor,
                    "outcome": r.outcome,
                    "p_value": r.p_value,
                    "adjusted_p_value": r.adjusted_p_value,
                    "effect_estimate": r.effect_estimate,
                    "significance_tier": r.significance_tier,
                    "stars": r.stars,
                    "direction": r.direction,
                    "table_shape": "x".join(str(s) for s in r.table_shape),
                    "method": r.method,
                }
            )
        return pd.DataFrame(
            rows,
            columns=["predictor", "outcome", "p_value", "adjusted_p_value", "effect_estimate",
                     "significance_tier", "stars", "direction", "table_shape", "method"],
        )

    def failure_frame(self) -> pd.DataFrame:
        return _failure_frame(self.failures)


def screen(
    df: pd.DataFrame,
    predictor: str,
    outcomes: Sequence[str],
    method: str = FDR_METHOD,
    n_simulations: int = MC_SIMULATIONS,
    random_state: int = RANDOM_STATE,
    audit: Optional[AuditLog] = None,
    session_config: Optional[Dict[str, Any]] = None,
) -> ScreeningReport:
    """
    Fisher's exact test of one predictor against each outcome, with all raw
    p-values corrected together once every test has run.

    Tiers and directions are assigned from the adjusted p-value and the
    odds-ratio estimate. Records keep the order of `outcomes`. Outcomes that
    are absent, repeated, continuous, or give a degenerate table are reported
    as failures and left out of the correction.

    Raises:
        SchemaError: `predictor` is absent from the dataset
    """
    _require_columns(df, [predictor])
    tested = []
    failures: List[PawsError] = []
    seen = set()
    for outcome in outcomes:
        if outcome in seen:
            failures.append(
                SchemaError(f"Outcome '{outcome}' is listed more than once", [outcome], outcome)
            )
            continue
        seen.add(outcome)
        if outcome == predictor:
            failures.append(SchemaError("Outcome is the screening predictor", [outcome], outcome))
            continue
        if outcome not in df.columns:
            failures.append(
                SchemaError(f"Outcome '{outcome}' not found in dataset", [outcome], outcome)
            )
            continue
        if not _is_tabulated_outcome(df[outcome]):
            failures.append(
                SchemaError(f"Outcome '{outcome}' is continuous", [outcome], outcome)
            )
            continue
        table = contingency_table(df, predictor, outcome)
        try:
            p_value, estimate, test = fisher_exact_test(table.to_numpy(), n_simulations, random_state)
        except ValueError as e:
            failures.append(FitFailure(outcome, str(e)))
            continue
        tested.append((outcome, p_value, estimate, tuple(table.shape), test))

    correction = apply_multiple_testing_correction(
        [t[1] for t in tested], method=method, audit=audit
    )
    report = ScreeningReport(predictor=predictor, correction_method=method, failures=failures)
    for (outcome, p_value, estimate, shape, test), adj in zip(
        tested, correction["corrected_p_values"]
    ):
        report.records.append(
            ScreeningRecord(
                outcome=outcome,
                p_value=p_value,
                adjusted_p_value=adj,
                effect_estimate=estimate,
                significance_tier=significance_tier(adj),
                direction=association_direction(estimate, 1.0),
                table_shape=shape,
                method=test,
            )
        )

    if audit:
        for e in failures:
            audit.log(
                "SCREENING_TEST_FAILED",
                {"outcome": getattr(e, "outcome", None), "error": type(e).__name__, "message": str(e)},
            )
        audit.log(
            "SCREENING_COMPLETE",
            {
                "predictor": predictor,
                "n_tested": len(report.records),
                "n_failures": len(failures),
                "n_significant": sum(1 for r in report.records if r.significance_tier > 0),
            },
        )

    if failures and AnalysisSettings.is_strict_mode(session_config):
        raise failures[0]
    return report


# ---------------------------
# Charts
# ---------------------------


def save_odds_ratio_forest_plot(result: ModelResult, outpath: Path) -> bool:
    """Forest plot of odds ratios with confidence intervals on a log axis."""
    if result.family != BINOMIAL or result.effects.empty:
        return False
    try:
        eff = result.effects
        finite = np.isfinite(eff[["odds_ratio", "ci_lower", "ci_upper"]]).all(axis=1)
        eff = eff[finite & (eff["ci_lower"] > 0)].reset_index(drop=True)
        if eff.empty:
            return False

        y = np.arange(len(eff))
        colors = ["firebrick" if d == POSITIVE else "steelblue" for d in eff["direction"]]
        fig, ax = plt.subplots(figsize=(7, max(2.5, 0.45 * len(eff) + 1)))
        ax.errorbar(
            eff["odds_ratio"],
            y,
            xerr=[eff["odds_ratio"] - eff["ci_lower"], eff["ci_upper"] - eff["odds_ratio"]],
            fmt="none",
            ecolor="gray",
            capsize=3,
        )
        ax.scatter(eff["odds_ratio"], y, c=colors, zorder=3)
        ax.axvline(1.0, color="black", linestyle="--", linewidth=1)
        ax.set_xscale("log")
        ax.set_yticks(y)
        ax.set_yticklabels(eff["term"])
        ax.invert_yaxis()
        ax.set_xlabel("Odds ratio (log scale)")
        ax.set_title(f"{result.outcome} (n={result.n_obs})")
        ax.grid(alpha=0.3, axis="x")

        outpath.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(outpath, dpi=250, bbox_inches="tight")
        plt.close(fig)
        return True
    except Exception as e:
        print(f"Warning: Forest plot failed for {result.outcome}: {e}")
        return False


def save_screening_plot(report: ScreeningReport, outpath: Path) -> bool:
    """Bar chart of -log10 adjusted p-values with tier cut-offs."""
    if not report.records:
        return False
    try:
        df = report.to_frame()
        df["neg_log10_p"] = -np.log10(df["adjusted_p_value"].clip(lower=1e-300))
        palette = sns.color_palette("rocket_r", 4)

        fig, ax = plt.subplots(figsize=(7, max(2.5, 0.4 * len(df) + 1)))
        ax.barh(
            df["outcome"],
            df["neg_log10_p"],
            color=[palette[t] for t in df["significance_tier"]],
        )
        for cutoff, _ in SIGNIFICANCE_TIERS:
            ax.axvline(-np.log10(cutoff), color="gray", linestyle="--", linewidth=0.8)
        ax.invert_yaxis()
        ax.set_xlabel(f"-log10 adjusted p ({report.correction_method})")
        ax.set_title(f"Fisher screening: {report.predictor}")
        ax.grid(alpha=0.3, axis="x")

        outpath.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(outpath, dpi=250, bbox_inches="tight")
        plt.close(fig)
        return True
    except Exception as e:
        print(f"Warning: Screening plot failed: {e}")
        return False


# ---------------------------
# Testing Infrastructure
# ---------------------------


class SyntheticDataGenerator:
    """
    Generate synthetic puppy-training survey data for testing and demos.
    """

    PREDICTORS = [
        "puppy_class",
        "socialised_early",
        "reward_training",
        "punishment_used",
        "acquired_age_group",
        "sex",
        "age_years",
        "rare_practice",
    ]
    BINARY_OUTCOMES = ["aggression", "fearfulness", "separation_anxiety"]
    CONTINUOUS_OUTCOMES = ["behaviour_score"]

    @staticmethod
    def generate_survey(
        n_samples: int = 800,
        n_rare: int = 6,
        missing_rate: float = 0.0,
        random_state: int = RANDOM_STATE,
    ) -> pd.DataFrame:
        """
        Generate a synthetic owner survey.

        Args:
            n_samples: Number of dogs
            n_rare: Dogs exposed to `rare_practice` (kept below the cell
                threshold so the sparse filter removes it)
            missing_rate: Fraction of missing predictor values
            random_state: Random seed

        Returns:
            DataFrame with boolean/categorical/integer predictors, binary
            behaviour outcomes and a continuous behaviour score
        """
        np.random.seed(random_state)
        n = n_samples

        puppy_class = np.random.random(n) < 0.55
        socialised_early = np.random.random(n) < 0.6
        reward_training = np.random.random(n) < 0.7
        punishment_used = np.random.random(n) < 0.35
        acquired_age_group = np.random.choice(
            ["under_8w", "8_to_12w", "over_12w"], n, p=[0.25, 0.5, 0.25]
        )
        sex = np.random.choice(["female", "male"], n)
        age_years = np.random.randint(1, 15, n)
        rare_practice = np.zeros(n, dtype=bool)
        rare_practice[:n_rare] = True

        def _draw(logit):
            return np.random.random(n) < 1.0 / (1.0 + np.exp(-logit))

        aggression = _draw(-1.6 + 1.4 * punishment_used - 0.6 * puppy_class + 0.03 * age_years)
        fearfulness = _draw(
            -0.6 - 1.2 * socialised_early + 0.5 * (acquired_age_group == "over_12w")
        )
        separation_anxiety = _draw(-1.0 + 0.4 * ~reward_training)
        behaviour_score = (
            50.0 + 6.0 * punishment_used - 4.0 * socialised_early + np.random.normal(0, 8, n)
        )

        df = pd.DataFrame(
            {
                "puppy_class": puppy_class,
                "socialised_early": socialised_early,
                "reward_training": reward_training,
                "punishment_used": punishment_used,
                "acquired_age_group": pd.Categorical(
                    acquired_age_group, categories=["under_8w", "8_to_12w", "over_12w"]
                ),
                "sex": pd.Categorical(sex),
                "age_years": age_years.astype("int64"),
                "rare_practice": rare_practice,
                "aggression": aggression,
                "fearfulness": fearfulness,
                "separation_anxiety": separation_anxiety,
                "behaviour_score": behaviour_score,
            }
        )

        if missing_rate > 0:
            predictors = SyntheticDataGenerator.PREDICTORS
            mask = np.random.random((n, len(predictors))) < missing_rate
            df[predictors] = df[predictors].mask(pd.DataFrame(mask, columns=predictors))
            df["age_years"] = df["age_years"].astype("Int64")
            for col in ("puppy_class", "socialised_early", "reward_training",
                        "punishment_used", "rare_practice"):
                df[col] = df[col].astype("boolean")

        return df


def run_integration_test(output_dir: Optional[Path] = None) -> Dict[str, Any]:
    """
    Run the full pipeline on synthetic data.

    Returns:
        Dictionary with test results
    """
    import tempfile

    results = {"passed": False, "tests_run": 0, "tests_passed": 0, "errors": []}
    gen = SyntheticDataGenerator

    with tempfile.TemporaryDirectory() as tmpdir:
        tmpdir = Path(tmpdir)
        df = gen.generate_survey(n_samples=600)
        pkl_path = tmpdir / "synthetic_survey.pkl"
        df.to_pickle(pkl_path)

        results["tests_run"] += 1
        try:
            output_root = output_dir or (tmpdir / "output")
            run_result = run_paws_analysis(
                pkl_path,
                output_root,
                outcomes=gen.BINARY_OUTCOMES + gen.CONTINUOUS_OUTCOMES,
                predictors=gen.PREDICTORS,
                screen_predictor="puppy_class",
            )
            assert run_result.get("status") == "success"
            results["tests_passed"] += 1
        except Exception as e:
            results["errors"].append(f"Pipeline execution failed: {e}")
            run_result = {}

        results["tests_run"] += 1
        try:
            tables = Path(run_result["output_dir"]) / "Tables"
            for name in ("model_effects.csv", "model_vif.csv", "screening.csv"):
                assert (tables / name).exists(), f"{name} not written"
            results["tests_passed"] += 1
        except Exception as e:
            results["errors"].append(f"Output verification failed: {e}")

    results["passed"] = results["tests_passed"] == results["tests_run"]
    return results


# ---------------------------
# Pipeline
# ---------------------------


def run_paws_analysis(
    filepath: Path,
    output_root: Path,
    outcomes: Sequence[str],
    predictors: Sequence[str],
    screen_predictor: Optional[str] = None,
    integer_columns: Sequence[str] = (),
    continuous_columns: Sequence[str] = (),
    boolean_columns: Sequence[str] = (),
    exclusions: Optional[Mapping[str, Sequence[str]]] = None,
    session_config: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Load a survey table, evaluate every outcome, optionally screen one
    predictor, and write tables, charts, a manifest and the audit log under
    output_root/<dataset>_PAWS.
    """
    filepath = Path(filepath)
    dataset_name = safe_name(filepath.stem)
    out_dir = Path(output_root) / f"{dataset_name}_PAWS"
    tables_dir = out_dir / "Tables"
    charts_dir = out_dir / "Charts"
    tables_dir.mkdir(parents=True, exist_ok=True)
    charts_dir.mkdir(parents=True, exist_ok=True)

    audit = AuditLog(out_dir / "PAWS_IMMUTABLE_LOG.jsonl")
    audit.log(
        "RUN_START",
        {
            "input_file": str(filepath),
            "output_dir": str(out_dir),
            "versions": get_versions(),
            "session_config": session_config,
        },
    )

    print(f"\n{'=' * 70}\nPAWS Analysis: {filepath.name}\n{'=' * 70}")
    print(f"Session Key: {audit.session_key}")
    print("-" * 70)

    df = smart_read_file(filepath, audit)
    if filepath.suffix.lower() not in PICKLE_EXTENSIONS:
        df = declare_column_types(
            df, integer_columns, continuous_columns, boolean_columns, audit=audit
        )

    report = evaluate(
        df,
        outcomes,
        predictors,
        exclusions=exclusions,
        audit=audit,
        session_config=session_config,
    )
    print(f"Models fitted: {len(report)} / {len(outcomes)}")
    for outcome, res in report.results.items():
        note = f" (dropped: {', '.join(res.dropped_columns)})" if res.dropped_columns else ""
        print(f"   {outcome}: {res.family}, n={res.n_obs}{note}")
        flagged = flag_implausible_estimates(res)
        if flagged:
            print(f"   WARNING {outcome}: implausible estimates for {flagged}")
            audit.log("IMPLAUSIBLE_ESTIMATES", {"outcome": outcome, "terms": flagged})
        save_odds_ratio_forest_plot(res, charts_dir / f"forest_{safe_name(outcome)}.png")
    for e in report.failures:
        print(f"   FAILED {e}")

    write_csv(tables_dir / "model_effects.csv", report.to_frame())
    write_csv(tables_dir / "model_coefficients.csv", report.coefficient_frame())
    write_csv(tables_dir / "model_vif.csv", report.vif_frame())
    write_csv(tables_dir / "dropped_columns.csv", report.dropped_frame())
    write_csv(tables_dir / "model_failures.csv", report.failure_frame())

    screening = None
    if screen_predictor:
        screening = screen(
            df,
            screen_predictor,
            [o for o in outcomes if o != screen_predictor],
            audit=audit,
            session_config=session_config,
        )
        write_csv(tables_dir / "screening.csv", screening.to_frame())
        write_csv(tables_dir / "screening_failures.csv", screening.failure_frame())
        save_screening_plot(screening, charts_dir / "screening.png")
        n_sig = sum(1 for r in screening if r.significance_tier > 0)
        print(f"Screening '{screen_predictor}': {n_sig} / {len(screening)} significant after correction")

    session = audit.finalize_session()
    manifest = {
        "paws_version": VERSION,
        "dataset": dataset_name,
        "input_file": str(filepath),
        "outcomes": list(outcomes),
        "predictors": list(predictors),
        "models": {o: r.to_dict() for o, r in report.results.items()},
        "failures": report.failure_frame().to_dict(orient="records"),
        "screening": (
            screening.to_frame().to_dict(orient="records") if screening is not None else None
        ),
        "session": session,
    }
    write_json(out_dir / "run_manifest.json", manifest)

    print(f"Results folder: {out_dir}\n{'=' * 70}")
    return {
        "status": "success",
        "output_dir": str(out_dir),
        "n_models": len(report.results),
        "n_failures": len(report.failures),
        "session_key": session["session_key"],
    }


def _split(value: Optional[str]) -> List[str]:
    return [x.strip() for x in (value or "").split(",") if x.strip()]


def _parse_exclusions(items: Sequence[str]) -> Dict[str, List[str]]:
    out: Dict[str, List[str]] = {}
    for item in items:
        if ":" not in item:
            raise argparse.ArgumentTypeError(f"--exclude expects OUTCOME:PREDICTOR, got {item!r}")
        outcome, predictor = item.split(":", 1)
        out.setdefault(outcome.strip(), []).append(predictor.strip())
    return out


def main(argv: Optional[Sequence[str]] = None):
    parser = argparse.ArgumentParser(
        description="PAWS: batch models and Fisher screening of dog behaviour outcomes."
    )
    parser.add_argument("input", nargs="?", help="Survey table (.csv/.tsv/.txt/.xlsx/.pkl)")
    parser.add_argument("--outcomes", help="Comma-separated outcome columns")
    parser.add_argument("--predictors", help="Comma-separated predictor columns")
    parser.add_argument("--screen-predictor", help="Predictor for Fisher screening")
    parser.add_argument("--integer", help="Comma-separated integer columns")
    parser.add_argument("--continuous", help="Comma-separated continuous columns")
    parser.add_argument("--boolean", help="Comma-separated boolean columns")
    parser.add_argument(
        "--exclude", action="append", default=[], metavar="OUTCOME:PREDICTOR",
        help="Drop a predictor for one outcome (repeatable)",
    )
    parser.add_argument("--output", default=OUTPUT_ROOT_DEFAULT, help="Output root directory")
    parser.add_argument("--min-cell-count", type=int, help="Minimum contingency cell count")
    parser.add_argument("--n-jobs", type=int, help="Worker processes for model fits")
    parser.add_argument("--strict", action="store_true", help="Fail on the first outcome error")
    parser.add_argument("--test", action="store_true", help="Run the synthetic integration test")
    args = parser.parse_args(argv)

    np.random.seed(RANDOM_STATE)
    sns.set_theme(style="white", context="paper", font_scale=1.15)

    print("=" * 70 + f"\nPAWS {VERSION}\n" + "=" * 70)

    if args.test:
        print("\nRunning Integration Tests\n" + "=" * 70)
        results = run_integration_test()
        print(f"\nTests passed: {results['tests_passed']}/{results['tests_run']}")
        for e in results["errors"]:
            print(f"  - {e}")
        return 0 if results["passed"] else 1

    if not args.input or not args.outcomes or not args.predictors:
        parser.error("input, --outcomes and --predictors are required")

    session_config = {
        "min_cell_count": args.min_cell_count,
        "n_jobs": args.n_jobs,
        "strict_mode": args.strict,
    }
    result = run_paws_analysis(
        Path(args.input).expanduser(),
        Path(args.output).expanduser().resolve(),
        outcomes=_split(args.outcomes),
        predictors=_split(args.predictors),
        screen_predictor=args.screen_predictor,
        integer_columns=_split(args.integer),
        continuous_columns=_split(args.continuous),
        boolean_columns=_split(args.boolean),
        exclusions=_parse_exclusions(args.exclude),
        session_config=session_config,
    )
    return 0 if result["status"] == "success" else 1


if __name__ == "__main__":
    sys.exit(main())
