"""Water-monitoring table: loading, location filter and comment severity."""
from __future__ import annotations

import io
import logging
import math
import re
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence

import pandas as pd

from simeto_dashboard.errors import LoadFailure

logger = logging.getLogger(__name__)

ALL_LOCATIONS = 'all'
COLUMNS = ['date', 'location', 'parameter', 'value', 'unit', 'comment']
REQUIRED_COLUMNS = {'date', 'location', 'parameter', 'value'}
COLUMN_ALIASES = {
    'unit': ['unit', 'uom', 'UoM'],
    'comment': ['comment', 'Range/Comment', 'Comment'],
}
NUMERIC_PREFIX = re.compile(r'\s*[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?')


@dataclass(frozen=True)
class MeasurementRecord:
    date: str
    location: str
    parameter: str
    value: str
    unit: str = ''
    comment: str = ''

    @property
    def numeric_value(self) -> Optional[float]:
        return parse_value(self.value)


def parse_value(raw: Any) -> Optional[float]:
    """Leading number of a raw cell, read like ``parseFloat``.

    ``'4 mg/L'`` gives 4.0 and ``'7,5'`` gives 7.0; ``None`` when no finite
    number starts the text.
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        value = float(raw)
    else:
        match = NUMERIC_PREFIX.match(str(raw))
        if not match:
            return None
        value = float(match.group(0))
    return value if math.isfinite(value) else None


def _rename_first_match(df: pd.DataFrame, candidates: List[str], target: str) -> pd.DataFrame:
    for candidate in candidates:
        if candidate in df.columns:
            if candidate != target:
                df = df.rename(columns={candidate: target})
            return df
    return df


def parse_measurements(text: str, source: str = 'measurements') -> List[MeasurementRecord]:
    try:
        df = pd.read_csv(io.StringIO(text), dtype=str, keep_default_na=False)
    except (pd.errors.ParserError, pd.errors.EmptyDataError) as exc:
        raise LoadFailure(f"unreadable CSV: {exc}", source) from exc
    df.columns = [str(col).strip() for col in df.columns]
    for target, candidates in COLUMN_ALIASES.items():
        df = _rename_first_match(df, candidates, target)
    missing = REQUIRED_COLUMNS - set(df.columns)
    if missing:
        raise LoadFailure(f"CSV missing columns: {sorted(missing)}", source)
    for col in ('unit', 'comment'):
        if col not in df.columns:
            df[col] = ''
    df['date'] = df['date'].str.strip()
    df['location'] = df['location'].str.strip()
    kept = df[(df['date'] != '') & (df['location'] != '')]
    dropped = len(df) - len(kept)
    if dropped:
        logger.info('%s: dropped %d rows without date or location', source, dropped)
    return [MeasurementRecord(**row) for row in kept[COLUMNS].to_dict(orient='records')]


def records_frame(records: Sequence[MeasurementRecord]) -> pd.DataFrame:
    return pd.DataFrame([asdict(record) for record in records], columns=COLUMNS)


def distinct_locations(records: Iterable[MeasurementRecord]) -> List[str]:
    seen: Dict[str, None] = {}
    for record in records:
        seen.setdefault(record.location, None)
    return list(seen)


def by_location(records: Sequence[MeasurementRecord], location: str) -> List[MeasurementRecord]:
    if location == ALL_LOCATIONS:
        return list(records)
    return [record for record in records if record.location == location]


# -----------------------------------------------------------------------------------------------
# Severity


class Severity(str, Enum):
    GOOD = 'good'
    BAD = 'bad'
    MODERATE = 'moderate'
    NEUTRAL = 'neutral'


# Checked in order; the first bucket with a matching keyword wins.
SEVERITY_KEYWORDS = (
    (Severity.GOOD, ('good', 'normal')),
    (Severity.BAD, ('bad',)),
    (Severity.MODERATE, ('agricultural', 'presence')),
)


def classify_severity(comment: Optional[str]) -> Severity:
    text = (comment or '').lower()
    for severity, keywords in SEVERITY_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return severity
    return Severity.NEUTRAL


def table_rows(records: Sequence[MeasurementRecord], location: str = ALL_LOCATIONS) -> List[Dict[str, str]]:
    return [
        {
            'date': record.date,
            'location': record.location,
            'parameter': record.parameter,
            'value': record.value,
            'unit': record.unit or '-',
            'comment': record.comment,
            'severity': classify_severity(record.comment).value,
        }
        for record in by_location(records, location)
    ]
