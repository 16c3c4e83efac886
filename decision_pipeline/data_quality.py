"""
Market data validation at the provider boundary. A snapshot with an unusable latest
quote is rejected before any agent sees it; a statistical outlier is only flagged.
"""
import logging
import math
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .config import MAX_DATA_AGE_SECONDS
from .models import DataQualityReport, MarketSnapshot, utc_now

# --- Logging ---
logger = logging.getLogger(__name__)

# --- Constants for Data Validation ---
MIN_VALID_PRICE = 0.001
MAX_VALID_PRICE = 1_000_000.0
ANOMALY_Z_SCORE = 3.0
ANOMALY_MIN_HISTORY = 2


def validate_market_data(
    price: float,
    volume: float,
    timestamp: datetime,
    now: Optional[datetime] = None,
    max_age_seconds: float = MAX_DATA_AGE_SECONDS,
) -> List[str]:
    """Returns the problems with a single quote. An empty list means it is usable."""
    now = now or utc_now()
    issues = []

    if price < 0 or volume < 0:
        issues.append("Negative price or volume detected")

    age = (now - timestamp).total_seconds()
    if age > max_age_seconds:
        issues.append(f"Stale data: {int(age)}s old")

    if price > MAX_VALID_PRICE or price < MIN_VALID_PRICE:
        issues.append("Extreme price value detected")

    return issues


def detect_data_anomaly(current: float, history: Sequence[float]) -> Tuple[bool, float, str]:
    """
    z-score of `current` against `history` (population std). A move off a perfectly
    flat history counts as an anomaly with an infinite z-score.
    """
    values = np.asarray(history, dtype=float)
    mean = float(values.mean())
    std = float(values.std(ddof=0))

    if std == 0:
        z_score = 0.0 if current == mean else math.copysign(math.inf, current - mean)
    else:
        z_score = (current - mean) / std

    if abs(z_score) > ANOMALY_Z_SCORE:
        return True, z_score, (
            f"DATA ANOMALY: Current value {current} is {abs(z_score):.1f} std devs from mean. Possible data error."
        )
    return False, z_score, f"Data point within normal range (z-score: {z_score:.2f})"


def check_snapshot_quality(
    snapshot: MarketSnapshot,
    now: Optional[datetime] = None,
    max_age_seconds: float = MAX_DATA_AGE_SECONDS,
) -> DataQualityReport:
    """Validates the latest bar of a snapshot and checks its close against the earlier closes."""
    if not snapshot.bars:
        return DataQualityReport(valid=True, message="No bars to validate.")

    last = snapshot.bars[-1]
    issues = validate_market_data(last.close, last.volume, snapshot.as_of, now, max_age_seconds)
    if issues:
        logger.warning(f"Market data for {snapshot.symbol} rejected: {'; '.join(issues)}")
        return DataQualityReport(valid=False, issues=issues, message="; ".join(issues))

    previous = [bar.close for bar in snapshot.bars[:-1]]
    if len(previous) < ANOMALY_MIN_HISTORY:
        return DataQualityReport(valid=True, message="Latest quote valid.")

    anomaly, z_score, message = detect_data_anomaly(last.close, previous)
    if anomaly:
        logger.warning(f"{snapshot.symbol}: {message}")
    return DataQualityReport(valid=True, anomaly=anomaly, z_score=z_score, message=message)
