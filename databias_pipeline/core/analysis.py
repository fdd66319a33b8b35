"""Bias statistics for uniform record sets.

Implements per-column distributions, sensitive-attribute detection, fairness
metrics (disparate impact, statistical parity) and issue synthesis. Pure
functions; no I/O.
"""
from typing import Any, Dict, List, Optional
import numpy as np
import pandas as pd

from .config import settings
from .errors import ValidationError
from .explainability import explain_feature_influence
from .schema import (
    BiasAnalysisResult,
    ColumnDistribution,
    DataQualityIssues,
    PotentialIssue,
)
from .utils import coerce_numeric, detect_outcome_column, is_favorable, is_missing, present_values

SENSITIVE_KEYWORDS = [
    "gender", "sex", "race", "ethnic", "age", "nationality",
    "religion", "disability", "zip", "postal", "location",
]

Records = List[Dict[str, Any]]

# --- Helpers ---

def normalize_records(data: Any) -> Records:
    """Accept an array of objects or a single object (wrapped as a singleton)."""
    if isinstance(data, dict):
        return [data]
    if isinstance(data, (list, tuple)):
        for i, row in enumerate(data):
            if not isinstance(row, dict):
                raise ValidationError(f"Record at index {i} is not an object")
        return list(data)
    raise ValidationError("Input data must be an array of records or an object")


def records_frame(records: Records) -> pd.DataFrame:
    """Object-dtype frame over the first record's columns; values kept as given."""
    columns = list(records[0].keys())
    return pd.DataFrame(records, columns=columns, dtype=object)


def find_sensitive_attributes(columns: List[str]) -> List[str]:
    return [c for c in columns if any(k in str(c).lower() for k in SENSITIVE_KEYWORDS)]

# --- Distributions ---

def calculate_numeric_stats(values: np.ndarray) -> Dict[str, Any]:
    """Min/max/mean/median, population std dev, index quartiles and 1.5×IQR outliers."""
    values = np.sort(values)
    n = len(values)
    median = float(np.median(values))
    q1 = float(values[int(n * 0.25)])
    q3 = float(values[int(n * 0.75)])
    iqr = q3 - q1
    low, high = q1 - 1.5 * iqr, q3 + 1.5 * iqr
    outliers = int(((values < low) | (values > high)).sum())
    return {
        "min": float(values[0]),
        "max": float(values[-1]),
        "mean": float(values.mean()),
        "median": median,
        "std_dev": float(values.std()),
        "quartiles": {"q1": q1, "q2": median, "q3": q3},
        "outliers": outliers,
        "outliers_percent": outliers / n * 100.0,
    }


def calculate_distribution(s: pd.Series) -> ColumnDistribution:
    values = present_values(s)
    missing = int(len(s) - len(values))
    if values.empty:
        return ColumnDistribution(count=0, missing=missing)
    counts = values.map(str).value_counts(sort=False)
    distribution = {str(k): int(v) for k, v in counts.items()}
    numeric = coerce_numeric(values)
    stats = calculate_numeric_stats(numeric.to_numpy()) if numeric is not None else {}
    return ColumnDistribution(
        count=int(len(values)),
        missing=missing,
        unique_values=len(distribution),
        distribution=distribution,
        numeric=numeric is not None,
        **stats,
    )


def is_skewed(stats: ColumnDistribution, ratio: float) -> bool:
    if not stats.std_dev or not stats.mean:
        return False
    return abs(stats.std_dev / stats.mean) > ratio

# --- Fairness metrics ---

def group_favorable_rates(df: pd.DataFrame, sensitive: str, target: str) -> Dict[str, float]:
    """Favorable-outcome rate per populated group of `sensitive`.

    Rows missing either the attribute or the outcome are skipped, so a group
    only appears once it has at least one scored row.
    """
    counts: Dict[str, List[int]] = {}
    for group, outcome in zip(df[sensitive], df[target]):
        if is_missing(group) or is_missing(outcome):
            continue
        c = counts.setdefault(str(group), [0, 0])
        c[1] += 1
        if is_favorable(outcome):
            c[0] += 1
    return {g: pos / total for g, (pos, total) in counts.items() if total > 0}


def compute_disparate_impact_ratio(rates: Dict[str, float]) -> Optional[float]:
    """Lowest over highest group rate; None with fewer than two groups or no favorable outcomes."""
    if len(rates) < 2:
        return None
    highest = max(rates.values())
    if highest <= 0:
        return None
    return float(min(rates.values()) / highest)


def compute_statistical_parity_difference(rates: Dict[str, float]) -> Optional[float]:
    """Difference between highest and lowest group rate."""
    if len(rates) < 2:
        return None
    return float(max(rates.values()) - min(rates.values()))

# --- Issues and recommendations ---

def synthesize_issues(
    total_records: int,
    distributions: Dict[str, ColumnDistribution],
    skewed: List[str],
    disparate_impact: Dict[str, float],
    outcome: Optional[str],
) -> List[PotentialIssue]:
    issues: List[PotentialIssue] = []

    high_missing = [
        c for c, d in distributions.items()
        if d.missing and d.missing / total_records > settings.HIGH_MISSING_RATIO
    ]
    if high_missing:
        issues.append(PotentialIssue(
            attribute=", ".join(high_missing),
            issue="High rate of missing values",
            severity="medium",
            explanation="Missing data can lead to biased models if not properly handled.",
        ))

    if skewed:
        issues.append(PotentialIssue(
            attribute=", ".join(skewed),
            issue="Skewed distributions",
            severity="low",
            explanation="Severely skewed data may lead to model bias toward majority cases.",
        ))

    for attribute, impact in disparate_impact.items():
        if impact < settings.DIR_MIN_RATIO:
            issues.append(PotentialIssue(
                attribute=attribute,
                issue="Disparate impact detected",
                severity="high",
                explanation=(
                    f"The {attribute} attribute shows a disparate impact ratio of {impact:.2f}, "
                    f"which is below the {settings.DIR_MIN_RATIO} threshold typically used in legal contexts."
                ),
            ))

    if outcome and outcome in distributions:
        target_dist = distributions[outcome]
        if 0 < target_dist.unique_values <= settings.CLASS_IMBALANCE_MAX_CLASSES:
            class_counts = list(target_dist.distribution.values())
            if max(class_counts) / min(class_counts) > settings.CLASS_IMBALANCE_RATIO:
                issues.append(PotentialIssue(
                    attribute=outcome,
                    issue="Severe class imbalance",
                    severity="high",
                    explanation="The target variable has highly imbalanced classes, which can lead to biased predictions.",
                ))
    return issues


def suggest_bias_corrections(
    quality: DataQualityIssues,
    issues: List[PotentialIssue],
    sensitive_attributes: List[str],
    outcome: Optional[str],
) -> List[str]:
    """Heuristic, model-agnostic actions keyed to which issue categories fired."""
    suggestions: List[str] = []
    fired = {i.issue for i in issues}

    if quality.missing_values:
        suggestions.append("Implement robust handling of missing values (imputation or explicit missing indicators).")

    if quality.skewed_distributions:
        suggestions.append("Consider data transformation (log, rank or binning) for skewed features.")

    if quality.outliers:
        suggestions.append("Review values flagged as outliers by the 1.5×IQR rule before training.")

    if "Disparate impact detected" in fired:
        suggestions.append("Review features causing disparate impact and remove proxies correlated with the sensitive attribute.")
        suggestions.append("Reweigh training samples to equalize selection rates across groups (Kamiran & Calders reweighing).")
        suggestions.append("Review decision threshold; raise for advantaged group or lower for disadvantaged group to target DIR≈1.")

    if "Severe class imbalance" in fired:
        suggestions.append("Apply class weights or resampling to address target imbalance (e.g., WeightedLoss, SMOTE).")

    if sensitive_attributes and not outcome:
        suggestions.append("Designate an outcome column to enable disparate impact analysis of sensitive attributes.")

    # General process improvements (configurable)
    if settings.ALWAYS_ON_TIPS:
        suggestions.append("Increase diversity in training data and collect more samples for underrepresented groups.")
        suggestions.append("Apply fairness constraints to the model and monitor subgroup metrics during training.")

    # Deduplicate while preserving order
    seen = set()
    deduped: List[str] = []
    for s in suggestions:
        if s not in seen:
            deduped.append(s)
            seen.add(s)
    return deduped

# --- Analysis entrypoint ---

def analyze_bias(
    data: Any,
    outcome_column: Optional[str] = None,
    auto_detect_outcome: Optional[bool] = None,
) -> BiasAnalysisResult:
    """Run the statistics pipeline over an array of records or a single object.

    Raises ValidationError for empty input, non-object records, or an outcome
    column that does not exist in the data.
    """
    records = normalize_records(data)
    total_records = len(records)
    if total_records == 0:
        raise ValidationError("Input data is empty: no records to analyze")

    df = records_frame(records)
    columns = [str(c) for c in df.columns]

    if outcome_column is not None and outcome_column not in df.columns:
        raise ValidationError(f"Outcome column '{outcome_column}' not found in data")
    if auto_detect_outcome is None:
        auto_detect_outcome = settings.AUTO_DETECT_OUTCOME
    outcome = outcome_column
    if outcome is None and auto_detect_outcome:
        outcome = detect_outcome_column(df)

    sensitive_attributes = find_sensitive_attributes(columns)
    distributions = {c: calculate_distribution(df[c]) for c in df.columns}

    missing_values = {c: d.missing for c, d in distributions.items() if d.missing > 0}
    skewed = [c for c, d in distributions.items() if is_skewed(d, settings.SKEW_RATIO)]
    outliers = {c: d.outliers for c, d in distributions.items() if d.outliers}

    disparate_impact: Dict[str, float] = {}
    group_rates: Dict[str, Dict[str, float]] = {}
    parity: Dict[str, float] = {}
    if outcome:
        for attribute in sensitive_attributes:
            if attribute == outcome:
                continue
            rates = group_favorable_rates(df, attribute, outcome)
            impact = compute_disparate_impact_ratio(rates)
            if impact is None:
                continue
            disparate_impact[attribute] = impact
            group_rates[attribute] = rates
            parity[attribute] = compute_statistical_parity_difference(rates)

    quality = DataQualityIssues(
        missing_values=missing_values,
        skewed_distributions=skewed,
        outliers=outliers,
    )
    issues = synthesize_issues(total_records, distributions, skewed, disparate_impact, outcome)

    return BiasAnalysisResult(
        total_records=total_records,
        columns=columns,
        outcome_column=outcome,
        distribution_stats=distributions,
        sensitive_attributes=sensitive_attributes,
        disparate_impact=disparate_impact,
        group_outcome_rates=group_rates,
        statistical_parity_difference=parity,
        feature_influence=explain_feature_influence(df, outcome) if outcome else {},
        potential_issues=issues,
        data_quality=quality,
        recommended_actions=suggest_bias_corrections(quality, issues, sensitive_attributes, outcome),
    )
