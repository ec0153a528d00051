"""Pivot measurement records into chart-ready series."""
from __future__ import annotations

import logging
import math
from typing import Any, Callable, Dict, List, Optional, Sequence

import pandas as pd

from simeto_dashboard.measurements import MeasurementRecord, parse_value, records_frame

logger = logging.getLogger(__name__)

LOCATION_COLORS = {
    'Sorgente di Ponte Barca': {'bg': 'rgba(39, 174, 96, 0.7)', 'border': '#27ae60'},
    'Impianto di depurazione di Ponte Barca': {'bg': 'rgba(231, 76, 60, 0.7)', 'border': '#e74c3c'},
    'Pietralunga': {'bg': 'rgba(243, 156, 18, 0.7)', 'border': '#f39c12'},
}
DEFAULT_LOCATION_COLOR = {'bg': 'rgba(41, 128, 185, 0.7)', 'border': '#2980b9'}


def _parameter_frame(records: Sequence[MeasurementRecord], parameter: str) -> pd.DataFrame:
    frame = records_frame(records)
    if frame.empty:
        return frame
    return frame[frame['parameter'].str.strip() == parameter.strip()]


def time_series(records: Sequence[MeasurementRecord], parameter: str) -> Dict[str, Any]:
    """Dense date-indexed values per location.

    Dates are the distinct stored date strings sorted ascending; locations keep
    first-seen order. Each slot holds the first record's numeric value, or
    ``None`` when there is no record or it is not numeric.
    """
    frame = _parameter_frame(records, parameter)
    if frame.empty:
        return {'dates': [], 'series': []}
    locations = [str(loc) for loc in pd.unique(frame['location'])]
    dates = sorted(str(date) for date in pd.unique(frame['date']))
    first = frame.drop_duplicates(subset=['location', 'date'], keep='first')
    lookup = {
        (location, date): parse_value(value)
        for location, date, value in first[['location', 'date', 'value']].itertuples(index=False)
    }
    return {
        'dates': dates,
        'series': [
            {'location': location, 'values': [lookup.get((location, date)) for date in dates]}
            for location in locations
        ],
    }


def mean_by_location(
    records: Sequence[MeasurementRecord],
    parameter: str,
    locations: Optional[Sequence[str]] = None,
) -> List[Dict[str, Any]]:
    """Arithmetic mean per location.

    Unparsable values count as 0 rather than being skipped. Locations listed
    in ``locations`` without any record get ``NaN``.
    """
    frame = _parameter_frame(records, parameter)
    if frame.empty:
        return [{'location': location, 'mean': math.nan} for location in locations or []]
    numeric = frame['value'].map(lambda raw: parse_value(raw) or 0.0).astype(float)
    means = numeric.groupby(frame['location'], sort=False).mean()
    if locations is not None:
        means = means.reindex(list(locations))
    return [{'location': str(location), 'mean': float(mean)} for location, mean in means.items()]


def _clean(value: Optional[float]) -> Optional[float]:
    if value is None or math.isnan(value):
        return None
    return float(value)


# -----------------------------------------------------------------------------------------------
# Ratings shown beside the summary bars


def rate_turbidity(value: Optional[float]) -> Optional[str]:
    value = _clean(value)
    if value is None:
        return None
    if value >= 30:
        return 'excellent'
    if value >= 20:
        return 'moderate'
    return 'critical'


def rate_nitrate(value: Optional[float]) -> Optional[str]:
    value = _clean(value)
    if value is None:
        return None
    if value == 0:
        return 'absent'
    if value <= 2:
        return 'acceptable'
    if value <= 4:
        return 'agricultural'
    return 'critical'


# -----------------------------------------------------------------------------------------------
# Chart registry

ChartConfig = Dict[str, Any]

CHARTS: Dict[str, ChartConfig] = {
    'temperature': {
        'parameters': ('Temperature',),
        'type': 'line',
        'aggregate': 'time_series',
        'x_title': 'Data',
        'y_title': 'Temperatura (°C)',
        'y_range': (14, 22),
    },
    'turbidity': {
        'parameters': ('Turbidity', 'Torbidity'),
        'type': 'bar',
        'aggregate': 'mean',
        'label': 'Trasparenza media (cm)',
        'y_title': 'Profondità Secchi (cm)',
        'y_range': (0, 35),
        'rating': rate_turbidity,
    },
    'nitrate': {
        'parameters': ('Nitrate',),
        'type': 'bar',
        'aggregate': 'mean',
        'label': 'Nitrati medi (mg/L)',
        'y_title': 'Nitrati (mg/L)',
        'y_range': (0, 6),
        'rating': rate_nitrate,
    },
    'ph': {
        'parameters': ('pH',),
        'type': 'bar',
        'aggregate': 'time_series',
        'x_title': 'Data',
        'y_title': 'pH',
        'y_range': (7, 9),
    },
}


def _location_color(location: str) -> Dict[str, str]:
    return LOCATION_COLORS.get(location, DEFAULT_LOCATION_COLOR)


def _pick_parameter(records: Sequence[MeasurementRecord], candidates: Sequence[str]) -> str:
    present = {record.parameter.strip() for record in records}
    for candidate in candidates:
        if candidate in present:
            return candidate
    return candidates[0]


def build_chart(records: Sequence[MeasurementRecord], key: str) -> Dict[str, Any]:
    config = CHARTS[key]
    parameter = _pick_parameter(records, config['parameters'])
    y_min, y_max = config['y_range']
    chart: Dict[str, Any] = {
        'key': key,
        'parameter': parameter,
        'type': config['type'],
        'axes': {'x': config.get('x_title'), 'y': config['y_title'], 'yMin': y_min, 'yMax': y_max},
    }
    if config['aggregate'] == 'time_series':
        pivot = time_series(records, parameter)
        chart['labels'] = pivot['dates']
        chart['datasets'] = [
            {
                'label': entry['location'],
                'data': entry['values'],
                'backgroundColor': _location_color(entry['location'])['bg'],
                'borderColor': _location_color(entry['location'])['border'],
            }
            for entry in pivot['series']
        ]
    else:
        rating: Callable[[Optional[float]], Optional[str]] = config['rating']
        means = mean_by_location(records, parameter)
        chart['labels'] = [entry['location'] for entry in means]
        chart['datasets'] = [
            {
                'label': config['label'],
                'data': [_clean(entry['mean']) for entry in means],
                'ratings': [rating(entry['mean']) for entry in means],
                'backgroundColor': [_location_color(entry['location'])['bg'] for entry in means],
                'borderColor': [_location_color(entry['location'])['border'] for entry in means],
            }
        ]
    return chart


def build_charts(records: Sequence[MeasurementRecord]) -> Dict[str, Dict[str, Any]]:
    charts = {key: build_chart(records, key) for key in CHARTS}
    empty = [key for key, chart in charts.items() if not chart['labels']]
    if empty:
        logger.warning('No measurements for charts: %s', ', '.join(empty))
    return charts
