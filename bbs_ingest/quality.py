from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict

import pandas as pd

# The survey's first season.
FIRST_SURVEY_YEAR = 1966


def completeness_score(df: pd.DataFrame, dropped_rows: int = 0) -> float:
    total = len(df) + dropped_rows
    if total == 0:
        return 0.0
    return round(len(df) / total, 3)


def consistency_score(df: pd.DataFrame, state_num: int | None = None) -> float:
    if df.empty:
        return 0.3

    score = 1.0
    for col in ("count", "route", "aou"):
        if col not in df.columns:
            score -= 0.05
            continue
        if (pd.to_numeric(df[col], errors="coerce") < 0).any():
            score -= 0.25

    if "year" in df.columns:
        years = pd.to_numeric(df["year"], errors="coerce")
        this_year = datetime.now(timezone.utc).year
        if ((years < FIRST_SURVEY_YEAR) | (years > this_year)).any():
            score -= 0.25

    if state_num is not None and "state_num" in df.columns:
        if (df["state_num"] != state_num).any():
            score -= 0.1

    return round(min(max(score, 0.0), 1.0), 3)


def coverage(df: pd.DataFrame) -> Dict[str, Any]:
    if df.empty:
        return {"first_year": None, "last_year": None, "routes": 0, "species": 0}
    return {
        "first_year": int(df["year"].min()),
        "last_year": int(df["year"].max()),
        "routes": int(df["route"].nunique()),
        "species": int(df["aou"].nunique()),
    }


def confidence_badge(scores: Dict[str, float]) -> tuple[str, list[str]]:
    reasons = []
    overall = 0.6 * scores.get("completeness", 0) + 0.4 * scores.get("consistency", 0)

    if scores.get("completeness", 0) < 0.95:
        reasons.append("More than 5% of source rows were dropped during parsing")
    if scores.get("consistency", 0) < 0.7:
        reasons.append("Range checks showed potential consistency issues")

    if overall >= 0.9:
        return "High", reasons
    if overall >= 0.7:
        return "Med", reasons
    return "Low", reasons + ["Inspect the raw archive before relying on this region"]


def evaluate(df: pd.DataFrame, dropped_rows: int = 0, state_num: int | None = None) -> Dict[str, Any]:
    c = completeness_score(df, dropped_rows)
    cs = consistency_score(df, state_num)
    badge, reasons = confidence_badge({"completeness": c, "consistency": cs})
    return {
        "completeness_score": c,
        "consistency_score": cs,
        "coverage": coverage(df),
        "overall_confidence_badge": badge,
        "overall_confidence_reason": reasons,
    }
