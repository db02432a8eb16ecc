"""
Home Credit Default Risk - Applicant Feature Pipeline
=====================================================

Turns the applicant table plus the previous-application, bureau and
installment-payment history tables into a single feature matrix for a
default-risk classifier.

Every statistic fitted on a training table (EXT_SOURCE medians, credit/income
quantile boundaries) is returned in a FeatureConfig so the paired test run can
replay it verbatim.
"""

import logging
from typing import Dict, List, Sequence, Tuple

import numpy as np
import polars as pl

logger = logging.getLogger(__name__)


# ============================================================================
# GLOBAL CONFIGURATION
# ============================================================================

ID_COLUMN = 'SK_ID_CURR'
TARGET_COLUMN = 'TARGET'

DAYS_EMPLOYED_SENTINEL = 365243
DAYS_PER_YEAR = 365.25

EXT_SOURCE_COLUMNS = ['EXT_SOURCE_1', 'EXT_SOURCE_2', 'EXT_SOURCE_3']
MEDIAN_FALLBACK = 0.0

AGE_BIN_EDGES = [20, 30, 40, 50, 60, 70]
CREDIT_INCOME_QUANTILES = [0.0, 0.2, 0.4, 0.6, 0.8, 1.0]

MISSING_SUFFIX = '_MISSING'


class FeatureEngineeringError(Exception):
    """Base class for fatal input problems."""


class MissingColumnsError(FeatureEngineeringError):
    """A table is missing columns the pipeline needs."""

    def __init__(self, table: str, missing: Sequence[str]):
        self.table = table
        self.missing = list(missing)
        super().__init__(f"{table} is missing required columns: {', '.join(self.missing)}")


class Reference:
    """
    Where a fitted statistic comes from.

    Either ``Reference.compute()`` (fit it on the table being processed) or
    ``Reference.supplied(values)`` (replay values fitted on another table,
    typically the training set).
    """
    COMPUTE = 'compute'
    SUPPLIED = 'supplied'

    def __init__(self, kind: str, values=None):
        if kind not in (self.COMPUTE, self.SUPPLIED):
            raise ValueError(f"Unknown reference kind: {kind!r}")
        if kind == self.SUPPLIED and values is None:
            raise ValueError("A supplied reference needs values")
        self.kind = kind
        self.values = values

    @classmethod
    def compute(cls) -> 'Reference':
        return cls(cls.COMPUTE)

    @classmethod
    def supplied(cls, values) -> 'Reference':
        return cls(cls.SUPPLIED, values)

    @property
    def is_supplied(self) -> bool:
        return self.kind == self.SUPPLIED

    def __repr__(self):
        if self.is_supplied:
            return f"Reference.supplied({self.values!r})"
        return "Reference.compute()"


class FeatureConfig:
    """
    Stores training statistics for consistent train/test transformation.

    Produced by a training run of feature_engineering_pipeline(); pass
    ``config.medians_reference()`` and ``config.breaks_reference()`` back in
    for the paired test run.
    """
    def __init__(self, ext_source_medians: Dict[str, float], credit_income_breaks: List[float]):
        self.ext_source_medians = dict(ext_source_medians)
        self.credit_income_breaks = list(credit_income_breaks)

    def medians_reference(self) -> Reference:
        return Reference.supplied(dict(self.ext_source_medians))

    def breaks_reference(self) -> Reference:
        return Reference.supplied(list(self.credit_income_breaks))

    def to_dict(self) -> Dict:
        """Plain mapping suitable for json.dump by the caller."""
        return {
            'ext_source_medians': dict(self.ext_source_medians),
            'credit_income_breaks': list(self.credit_income_breaks),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'FeatureConfig':
        if 'ext_source_medians' not in data:
            raise FeatureEngineeringError("FeatureConfig mapping has no 'ext_source_medians' entry")
        return cls(
            {k: float(v) for k, v in data['ext_source_medians'].items()},
            _check_breaks([float(b) for b in data.get('credit_income_breaks', [])]),
        )

    def __eq__(self, other):
        if not isinstance(other, FeatureConfig):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self):
        return (f"FeatureConfig(ext_source_medians={self.ext_source_medians!r}, "
                f"credit_income_breaks={self.credit_income_breaks!r})")


# ============================================================================
# HELPERS
# ============================================================================

def _require_columns(df: pl.DataFrame, columns: Sequence[str], table: str) -> None:
    if not isinstance(df, pl.DataFrame):
        raise TypeError(f"{table} must be a polars DataFrame, got {type(df).__name__}")
    missing = [col for col in columns if col not in df.columns]
    if missing:
        raise MissingColumnsError(table, missing)


def _require_reference(reference, name: str) -> Reference:
    if not isinstance(reference, Reference):
        raise TypeError(
            f"{name} must be Reference.compute() or Reference.supplied(...), got {reference!r}"
        )
    return reference


def _check_breaks(breaks: List[float]) -> List[float]:
    if any(lo >= hi for lo, hi in zip(breaks[:-1], breaks[1:])):
        raise FeatureEngineeringError(f"Bin boundaries must be strictly increasing, got {breaks}")
    return breaks


def _safe_ratio(numerator: pl.Expr, denominator: pl.Expr) -> pl.Expr:
    # Zero or null denominator -> null, never inf/NaN
    return pl.when(denominator != 0).then(numerator / denominator).otherwise(None)


def _sum_or_null(col: str) -> pl.Expr:
    # Sum of non-null values; null when the whole group is null
    return pl.when(pl.col(col).count() > 0).then(pl.col(col).sum()).otherwise(None)


# ============================================================================
# DATA CLEANING FUNCTIONS
# ============================================================================

def clean_days_employed(df: pl.DataFrame) -> pl.DataFrame:
    """
    Fix the DAYS_EMPLOYED = 365243 anomaly.

    The sentinel marks "not applicable" (unemployed, pensioner) rather than a
    real duration. We:
    1. Replace it with null
    2. Derive EMPLOYMENT_YEARS from the cleaned day count
    3. Flag rows where the cleaned value is missing

    Parameters:
    -----------
    df : pl.DataFrame
        Applicant table with DAYS_EMPLOYED column

    Returns:
    --------
    pl.DataFrame
        Table with cleaned DAYS_EMPLOYED, EMPLOYMENT_YEARS and DAYS_EMPLOYED_MISSING
    """
    _require_columns(df, ['DAYS_EMPLOYED'], 'applicant table')

    sentinel_count = df.select((pl.col('DAYS_EMPLOYED') == DAYS_EMPLOYED_SENTINEL).sum()).item()

    df = df.with_columns(
        pl.when(pl.col('DAYS_EMPLOYED') == DAYS_EMPLOYED_SENTINEL)
        .then(None)
        .otherwise(pl.col('DAYS_EMPLOYED'))
        .alias('DAYS_EMPLOYED')
    )
    df = df.with_columns([
        # DAYS_EMPLOYED is negative by convention
        (-pl.col('DAYS_EMPLOYED') / DAYS_PER_YEAR).alias('EMPLOYMENT_YEARS'),
        pl.col('DAYS_EMPLOYED').is_null().alias('DAYS_EMPLOYED' + MISSING_SUFFIX),
    ])

    logger.info("  ✓ Employment sentinel replaced: %s cases", f"{sentinel_count:,}")

    return df


def impute_ext_sources(
    df: pl.DataFrame,
    reference: Reference = Reference.compute(),
) -> Tuple[pl.DataFrame, Dict[str, float]]:
    """
    Impute missing values in EXT_SOURCE_1, EXT_SOURCE_2, EXT_SOURCE_3.

    Strategy: median fill + a Boolean missing indicator per column, taken
    before filling.

    Parameters:
    -----------
    df : pl.DataFrame
        Applicant table
    reference : Reference
        ``Reference.compute()`` (default) fits medians on ``df``; an all-null
        column falls back to MEDIAN_FALLBACK. ``Reference.supplied(mapping)``
        uses the mapping unconditionally.

    Returns:
    --------
    Tuple[pl.DataFrame, Dict[str, float]]
        Imputed table and the exact medians used
    """
    _require_reference(reference, 'reference')
    _require_columns(df, EXT_SOURCE_COLUMNS, 'applicant table')

    # NaN counts as missing, same as null
    df = df.with_columns([pl.col(col).cast(pl.Float64).fill_nan(None).alias(col) for col in EXT_SOURCE_COLUMNS])

    if reference.is_supplied:
        missing = [col for col in EXT_SOURCE_COLUMNS if col not in reference.values]
        if missing:
            raise MissingColumnsError('supplied median mapping', missing)
        medians = {col: float(reference.values[col]) for col in EXT_SOURCE_COLUMNS}
    else:
        medians = {}
        for col in EXT_SOURCE_COLUMNS:
            median_val = df.select(pl.col(col).median()).item()
            medians[col] = float(median_val) if median_val is not None else MEDIAN_FALLBACK

    df = df.with_columns(
        [pl.col(col).is_null().alias(col + MISSING_SUFFIX) for col in EXT_SOURCE_COLUMNS]
        + [pl.col(col).fill_null(medians[col]).alias(col) for col in EXT_SOURCE_COLUMNS]
    )

    for col in EXT_SOURCE_COLUMNS:
        missing_count = df.select(pl.col(col + MISSING_SUFFIX).sum()).item()
        logger.info("  ✓ %s: %s missing values imputed with median = %.4f",
                    col, f"{missing_count:,}", medians[col])

    return df, medians


def add_missing_indicators(df: pl.DataFrame, columns: Sequence[str]) -> pl.DataFrame:
    """Add a Boolean ``<col>_MISSING`` flag for each column, leaving values untouched."""
    _require_columns(df, columns, 'input table')
    return df.with_columns([pl.col(col).is_null().alias(col + MISSING_SUFFIX) for col in columns])


# ============================================================================
# FEATURE ENGINEERING FUNCTIONS
# ============================================================================

def create_demographic_financial_features(df: pl.DataFrame) -> pl.DataFrame:
    """
    Create demographic and financial ratio features.

    Features created:
    - AGE_YEARS: Age in years (from DAYS_BIRTH)
    - CREDIT_INCOME_RATIO: Loan size relative to annual income
    - ANNUITY_INCOME_RATIO: Payment burden
    - CREDIT_ANNUITY_RATIO: Implied loan term in years
    - LOAN_TO_VALUE: Credit amount vs. goods price

    A zero or missing denominator gives null.
    """
    _require_columns(
        df,
        ['DAYS_BIRTH', 'AMT_CREDIT', 'AMT_INCOME_TOTAL', 'AMT_ANNUITY', 'AMT_GOODS_PRICE'],
        'applicant table',
    )

    df = df.with_columns([
        (-pl.col('DAYS_BIRTH') / DAYS_PER_YEAR).alias('AGE_YEARS'),
        _safe_ratio(pl.col('AMT_CREDIT'), pl.col('AMT_INCOME_TOTAL')).alias('CREDIT_INCOME_RATIO'),
        _safe_ratio(pl.col('AMT_ANNUITY'), pl.col('AMT_INCOME_TOTAL')).alias('ANNUITY_INCOME_RATIO'),
        _safe_ratio(pl.col('AMT_CREDIT'), pl.col('AMT_ANNUITY')).alias('CREDIT_ANNUITY_RATIO'),
        _safe_ratio(pl.col('AMT_CREDIT'), pl.col('AMT_GOODS_PRICE')).alias('LOAN_TO_VALUE'),
    ])

    logger.info("  ✓ Demographic/financial features engineered: 5 new features")

    return df


def compute_credit_income_breaks(df: pl.DataFrame) -> List[float]:
    """
    Quantile boundaries of CREDIT_INCOME_RATIO (0/20/40/60/80/100th percentiles).

    Duplicate boundaries are collapsed, so heavily tied data gives fewer
    buckets. Returns an empty list when the ratio is entirely null.
    """
    _require_columns(df, ['CREDIT_INCOME_RATIO'], 'applicant table')

    breaks = df.select([
        pl.col('CREDIT_INCOME_RATIO').quantile(q, interpolation='linear').alias(f'q{i}')
        for i, q in enumerate(CREDIT_INCOME_QUANTILES)
    ]).row(0)

    if any(b is None for b in breaks):
        return []
    return [float(b) for b in np.unique(np.asarray(breaks, dtype=float))]


def _age_bin_expr() -> pl.Expr:
    labels = [f'[{lo},{hi})' for lo, hi in zip(AGE_BIN_EDGES[:-1], AGE_BIN_EDGES[1:])]
    age = pl.col('AGE_YEARS')

    expr = None
    for label, lo, hi in zip(labels, AGE_BIN_EDGES[:-1], AGE_BIN_EDGES[1:]):
        cond = (age >= lo) & (age < hi)
        expr = pl.when(cond).then(pl.lit(label)) if expr is None else expr.when(cond).then(pl.lit(label))

    return expr.otherwise(None).cast(pl.Enum(labels))


def _credit_income_bin_expr(breaks: List[float]) -> pl.Expr:
    if len(breaks) < 2:
        return pl.lit(None, dtype=pl.String)

    ratio = pl.col('CREDIT_INCOME_RATIO')
    labels = [f'Q{i + 1}' for i in range(len(breaks) - 1)]

    expr = None
    for i, (label, lo, hi) in enumerate(zip(labels, breaks[:-1], breaks[1:])):
        # Lowest interval includes its lower edge
        lower = ratio >= lo if i == 0 else ratio > lo
        cond = lower & (ratio <= hi)
        expr = pl.when(cond).then(pl.lit(label)) if expr is None else expr.when(cond).then(pl.lit(label))

    return expr.otherwise(None).cast(pl.Enum(labels))


def create_binned_interaction_features(
    df: pl.DataFrame,
    breaks: Reference = Reference.compute(),
) -> Tuple[pl.DataFrame, List[float]]:
    """
    Create binned and interaction features.

    Features created:
    - AGE_BIN: [20,30) ... [60,70); ages outside [20, 70) get null
    - CREDIT_INCOME_BIN: quantile bucket Q1..Q5 of CREDIT_INCOME_RATIO
    - AGE_EMPLOYED_INTERACT: AGE_YEARS * EMPLOYMENT_YEARS

    Parameters:
    -----------
    df : pl.DataFrame
        Output of clean_days_employed() and create_demographic_financial_features()
    breaks : Reference
        ``Reference.compute()`` (default) recomputes quantile boundaries on
        ``df``. Pass ``Reference.supplied(training_breaks)`` on a test table
        to bucket it on the training boundaries.

    Returns:
    --------
    Tuple[pl.DataFrame, List[float]]
        Table with new features and the boundaries used
    """
    _require_reference(breaks, 'breaks')
    _require_columns(df, ['AGE_YEARS', 'CREDIT_INCOME_RATIO', 'EMPLOYMENT_YEARS'], 'applicant table')

    if breaks.is_supplied:
        breaks_used = _check_breaks([float(b) for b in breaks.values])
    else:
        breaks_used = compute_credit_income_breaks(df)

    df = df.with_columns([
        _age_bin_expr().alias('AGE_BIN'),
        _credit_income_bin_expr(breaks_used).alias('CREDIT_INCOME_BIN'),
        (pl.col('AGE_YEARS') * pl.col('EMPLOYMENT_YEARS')).alias('AGE_EMPLOYED_INTERACT'),
    ])

    logger.info("  ✓ Binned/interaction features engineered: %d credit/income buckets",
                max(len(breaks_used) - 1, 0))

    return df, breaks_used


# ============================================================================
# SUPPLEMENTARY DATA AGGREGATION FUNCTIONS
# ============================================================================

def aggregate_previous_application(prev_app: pl.DataFrame) -> pl.DataFrame:
    """
    Aggregate previous_application.csv to applicant level (SK_ID_CURR).

    Features created:
    - PREV_APP_COUNT: number of previous applications
    - PREV_APPROVED / PREV_REFUSED: status counts
    - PREV_APPROVAL_RATE: share approved among rows with a known status
    """
    _require_columns(prev_app, [ID_COLUMN, 'NAME_CONTRACT_STATUS'], 'previous applications')

    status = pl.col('NAME_CONTRACT_STATUS')
    prev_agg = prev_app.group_by(ID_COLUMN, maintain_order=True).agg([
        pl.len().alias('PREV_APP_COUNT'),
        (status == 'Approved').sum().alias('PREV_APPROVED'),
        (status == 'Refused').sum().alias('PREV_REFUSED'),
        (status == 'Approved').cast(pl.Float64).mean().alias('PREV_APPROVAL_RATE'),
    ])

    logger.info("  ✓ Previous application data aggregated: %d features for %s applicants",
                prev_agg.width - 1, f"{prev_agg.height:,}")

    return prev_agg


def aggregate_bureau(bureau: pl.DataFrame) -> pl.DataFrame:
    """
    Aggregate bureau.csv to applicant level (SK_ID_CURR).

    Features created:
    - BUREAU_COUNT: number of bureau credits
    - BUREAU_ACTIVE / BUREAU_CLOSED: status counts
    - BUREAU_OVERDUE: total overdue amount
    - BUREAU_DEBT_RATIO: summed debt / summed credit (null when credit sums to 0)
    """
    _require_columns(
        bureau,
        [ID_COLUMN, 'CREDIT_ACTIVE', 'AMT_CREDIT_SUM_OVERDUE', 'AMT_CREDIT_SUM_DEBT', 'AMT_CREDIT_SUM'],
        'bureau',
    )

    active = pl.col('CREDIT_ACTIVE')
    bureau_agg = bureau.group_by(ID_COLUMN, maintain_order=True).agg([
        pl.len().alias('BUREAU_COUNT'),
        (active == 'Active').sum().alias('BUREAU_ACTIVE'),
        (active == 'Closed').sum().alias('BUREAU_CLOSED'),
        _sum_or_null('AMT_CREDIT_SUM_OVERDUE').alias('BUREAU_OVERDUE'),
        _safe_ratio(
            _sum_or_null('AMT_CREDIT_SUM_DEBT'),
            _sum_or_null('AMT_CREDIT_SUM'),
        ).alias('BUREAU_DEBT_RATIO'),
    ])

    logger.info("  ✓ Bureau data aggregated: %d features for %s applicants",
                bureau_agg.width - 1, f"{bureau_agg.height:,}")

    return bureau_agg


def aggregate_installments_payments(installments: pl.DataFrame) -> pl.DataFrame:
    """
    Aggregate installments_payments.csv to applicant level (SK_ID_CURR).

    An installment is late when DAYS_ENTRY_PAYMENT > DAYS_INSTALMENT.
    INSTAL_PAYMENT_TREND is the mean of per-row AMT_PAYMENT / AMT_INSTALMENT,
    not a ratio of sums.
    """
    _require_columns(
        installments,
        [ID_COLUMN, 'DAYS_ENTRY_PAYMENT', 'DAYS_INSTALMENT', 'AMT_PAYMENT', 'AMT_INSTALMENT'],
        'installments',
    )

    installments = installments.with_columns([
        (pl.col('DAYS_ENTRY_PAYMENT') > pl.col('DAYS_INSTALMENT')).alias('LATE_PAYMENT'),
        _safe_ratio(pl.col('AMT_PAYMENT'), pl.col('AMT_INSTALMENT')).alias('PAYMENT_RATIO'),
    ])

    inst_agg = installments.group_by(ID_COLUMN, maintain_order=True).agg([
        pl.len().alias('INSTAL_PAYMENT_COUNT'),
        pl.col('LATE_PAYMENT').sum().alias('INSTAL_LATE_PAYMENTS'),
        pl.col('LATE_PAYMENT').cast(pl.Float64).mean().alias('INSTAL_LATE_PAYMENT_PCT'),
        pl.col('PAYMENT_RATIO').mean().alias('INSTAL_PAYMENT_TREND'),
    ])

    logger.info("  ✓ Installments data aggregated: %d features for %s applicants",
                inst_agg.width - 1, f"{inst_agg.height:,}")

    return inst_agg


# ============================================================================
# PIPELINE ORCHESTRATION FUNCTIONS
# ============================================================================

def join_aggregates(app_df: pl.DataFrame, aggregates: Sequence[pl.DataFrame]) -> pl.DataFrame:
    """
    Left-join per-applicant aggregate tables onto the applicant table.

    Applicant row order and row count are preserved; applicants without
    history get nulls in that table's columns.
    """
    _require_columns(app_df, [ID_COLUMN], 'applicant table')

    n_rows = app_df.height
    joined = app_df.with_row_index('__row_nr')
    for agg in aggregates:
        _require_columns(agg, [ID_COLUMN], 'aggregate table')
        joined = joined.join(agg, on=ID_COLUMN, how='left')
    joined = joined.sort('__row_nr').drop('__row_nr')

    if joined.height != n_rows:
        raise FeatureEngineeringError(
            f"Join changed applicant row count from {n_rows} to {joined.height}; "
            f"aggregate tables must have one row per {ID_COLUMN}"
        )

    return joined


def feature_engineering_pipeline(
    app_df: pl.DataFrame,
    prev_app_df: pl.DataFrame,
    bureau_df: pl.DataFrame,
    inst_pay_df: pl.DataFrame,
    *,
    medians: Reference,
    credit_income_breaks: Reference,
) -> Tuple[pl.DataFrame, FeatureConfig]:
    """
    Complete feature engineering pipeline for one applicant table.

    Steps:
    1. Clean DAYS_EMPLOYED sentinel
    2. Impute EXT_SOURCE variables
    3. Demographic / financial ratios
    4. Binned and interaction features
    5. Aggregate the three history tables and left-join them

    Parameters:
    -----------
    app_df : pl.DataFrame
        Raw applicant table (train or test)
    prev_app_df, bureau_df, inst_pay_df : pl.DataFrame
        History tables, many rows per SK_ID_CURR
    medians : Reference
        ``Reference.compute()`` on a training run;
        ``config.medians_reference()`` on the paired test run
    credit_income_breaks : Reference
        Same choice for the CREDIT_INCOME_BIN boundaries

    Returns:
    --------
    Tuple[pl.DataFrame, FeatureConfig]
        Enriched applicant table and the statistics used, for the caller to persist
    """
    _require_reference(medians, 'medians')
    _require_reference(credit_income_breaks, 'credit_income_breaks')
    _require_columns(app_df, [ID_COLUMN], 'applicant table')

    logger.info("Feature pipeline: %s applicants × %d columns", f"{app_df.height:,}", app_df.width)

    app_df = clean_days_employed(app_df)
    app_df, medians_used = impute_ext_sources(app_df, medians)
    app_df = create_demographic_financial_features(app_df)
    app_df, breaks_used = create_binned_interaction_features(app_df, credit_income_breaks)

    prev_agg = aggregate_previous_application(prev_app_df)
    bureau_agg = aggregate_bureau(bureau_df)
    inst_agg = aggregate_installments_payments(inst_pay_df)

    app_df = join_aggregates(app_df, [prev_agg, bureau_agg, inst_agg])

    logger.info("  ✓ Final dataset: %s rows × %d columns", f"{app_df.height:,}", app_df.width)

    return app_df, FeatureConfig(medians_used, breaks_used)


def process_train_test(
    app_train: pl.DataFrame,
    app_test: pl.DataFrame,
    prev_app_df: pl.DataFrame,
    bureau_df: pl.DataFrame,
    inst_pay_df: pl.DataFrame,
) -> Tuple[pl.DataFrame, pl.DataFrame, FeatureConfig]:
    """
    Run the pipeline on train, then replay the fitted statistics on test.

    Both the EXT_SOURCE medians and the credit/income bin boundaries come
    from the training table.
    """
    logger.info("PROCESSING TRAINING DATA")
    train_final, config = feature_engineering_pipeline(
        app_train, prev_app_df, bureau_df, inst_pay_df,
        medians=Reference.compute(),
        credit_income_breaks=Reference.compute(),
    )

    logger.info("PROCESSING TEST DATA")
    test_final, _ = feature_engineering_pipeline(
        app_test, prev_app_df, bureau_df, inst_pay_df,
        medians=config.medians_reference(),
        credit_income_breaks=config.breaks_reference(),
    )

    train_cols = set(train_final.columns) - {TARGET_COLUMN}
    test_cols = set(test_final.columns) - {TARGET_COLUMN}
    if train_cols != test_cols:
        logger.warning("Train and test columns differ: train only %s, test only %s",
                       sorted(train_cols - test_cols), sorted(test_cols - train_cols))
    else:
        logger.info("  ✓ Train/test consistency verified: %d matching columns", len(train_cols))

    return train_final, test_final, config
