#!/usr/bin/env python3
"""Generate the monitoring dashboard data bundle from the static datasets."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from simeto_dashboard.errors import DashboardError
from simeto_dashboard.feature_loader import LAYER_GROUPS, DisplayFeature, FeatureLoader
from simeto_dashboard.geometry_index import BUFFER_RADIUS_KM, GeometryIndex
from simeto_dashboard.logging_config import setup_logging
from simeto_dashboard.measurements import MeasurementRecord, distinct_locations, parse_measurements, table_rows
from simeto_dashboard.series import build_charts
from simeto_dashboard.sources import fetch_geojson, fetch_text
from simeto_dashboard.visibility import VisibilityClassifier

logger = logging.getLogger(__name__)

DATA_DIR = Path(os.environ.get('SIMETO_DATA_DIR', Path.cwd() / 'data'))
DATA_URL = os.environ.get('SIMETO_DATA_URL')
OUTPUT_DIR = Path(os.environ.get('SIMETO_OUTPUT_DIR', Path.cwd() / 'dashboard'))

BOUNDARIES = 'boundaries'
MEASUREMENTS = 'measurements'

DATASETS: Dict[str, str] = {
    BOUNDARIES: 'confini_comuni_patto_simeto.geojson',
    'sampling_points': 'punti_campionamento.geojson',
    'water_resources': 'risorse_idriche.geojson',
    'power_plants': 'centrali.geojson',
    MEASUREMENTS: 'water_monitoring.csv',
}

# Map layers that wait on the boundary index, with the loader method shaping each one.
FEATURE_LAYERS: Dict[str, Callable[[FeatureLoader, Any], List[DisplayFeature]]] = {
    'sampling_points': FeatureLoader.load_sampling_points,
    'water_resources': FeatureLoader.load_water_resources,
    'power_plants': FeatureLoader.load_power_plants,
}


@dataclass
class DashboardState:
    """Everything the renderer reads, filled once per dataset.

    Created empty at startup. Each dataset task writes only its own slots
    (layer groups, records, charts) once; afterwards the state is read-only
    and serialised by :meth:`to_payload`.
    """

    index: GeometryIndex
    layers: Dict[str, List[DisplayFeature]] = field(default_factory=lambda: {key: [] for key in LAYER_GROUPS})
    records: Tuple[MeasurementRecord, ...] = ()
    charts: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    loaded: List[str] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)

    def add_features(self, dataset: str, features: Sequence[DisplayFeature]) -> None:
        for feature in features:
            self.layers[feature.category.value].append(feature)
        self.loaded.append(dataset)
        logger.info('%s: %d features', dataset, len(features))

    def record_failure(self, dataset: str, error: Exception) -> None:
        self.failures[dataset] = str(error)
        if isinstance(error, DashboardError):
            logger.error('Dataset %s failed to load (%s): %s', dataset, error.kind.value, error)
        else:
            logger.error('Dataset %s failed unexpectedly: %r', dataset, error, exc_info=error)

    def to_payload(self) -> Dict[str, Any]:
        return {
            'layers': {key: [feature.to_dict() for feature in features] for key, features in self.layers.items()},
            'charts': self.charts,
            'table': {
                'locations': distinct_locations(self.records),
                'rows': table_rows(self.records),
            },
            'geometry': self.index.describe(),
            'failures': dict(self.failures),
        }


def dataset_sources(
    keys: Optional[Sequence[str]] = None,
    data_dir: Path = DATA_DIR,
    base_url: Optional[str] = DATA_URL,
) -> Dict[str, str]:
    sources = {}
    for key in keys or DATASETS:
        filename = DATASETS[key]
        sources[key] = f"{base_url.rstrip('/')}/{filename}" if base_url else str(data_dir / filename)
    return sources


async def _load_boundaries(state: DashboardState, loader: FeatureLoader, source: Optional[str]) -> None:
    if source is None:
        logger.info('No boundary dataset requested; all features stay visible')
        state.index.mark_failed()
        return
    try:
        data = await asyncio.to_thread(fetch_geojson, source, BOUNDARIES)
        region = await asyncio.to_thread(state.index.build, data)
    except Exception as exc:
        state.index.mark_failed()
        state.record_failure(BOUNDARIES, exc)
        return
    state.add_features(BOUNDARIES, loader.load_boundaries(region))


async def _load_layer(state: DashboardState, loader: FeatureLoader, dataset: str, source: str) -> None:
    shape = FEATURE_LAYERS[dataset]
    try:
        data = await asyncio.to_thread(fetch_geojson, source, dataset)
        features = await asyncio.to_thread(shape, loader, data)
    except Exception as exc:
        state.record_failure(dataset, exc)
        return
    state.add_features(dataset, features)


async def _build_map(state: DashboardState, sources: Mapping[str, str]) -> None:
    loader = FeatureLoader(VisibilityClassifier(state.index))
    await _load_boundaries(state, loader, sources.get(BOUNDARIES))
    await asyncio.gather(
        *(
            _load_layer(state, loader, dataset, sources[dataset])
            for dataset in FEATURE_LAYERS
            if dataset in sources
        )
    )


async def _build_monitoring(state: DashboardState, source: Optional[str]) -> None:
    if source is None:
        return
    try:
        text = await asyncio.to_thread(fetch_text, source, MEASUREMENTS)
        records = tuple(parse_measurements(text, MEASUREMENTS))
        charts = build_charts(records)
    except Exception as exc:
        state.record_failure(MEASUREMENTS, exc)
        return
    state.records = records
    state.charts = charts
    state.loaded.append(MEASUREMENTS)
    logger.info('%s: %d records', MEASUREMENTS, len(records))


async def build_dashboard(
    sources: Mapping[str, str],
    radius_km: float = BUFFER_RADIUS_KM,
) -> DashboardState:
    """Load every requested dataset; boundaries gate the map layers only."""
    state = DashboardState(index=GeometryIndex(radius_km))
    await asyncio.gather(
        _build_map(state, sources),
        _build_monitoring(state, sources.get(MEASUREMENTS)),
    )
    return state


def write_data_js(payload: Dict[str, Any], output_dir: Path = OUTPUT_DIR) -> Path:
    output_dir.mkdir(parents=True, exist_ok=True)
    data_js = output_dir / 'dashboard_data.js'
    data_js.write_text(f"window.DASHBOARD_DATA = {json.dumps(payload, default=str)};\n", encoding='utf-8')
    data_json = output_dir / 'dashboard_data.json'
    data_json.write_text(json.dumps(payload, default=str, indent=2), encoding='utf-8')
    logger.info('Wrote %s', data_js)
    return data_js


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description='Build the monitoring dashboard data bundle.')
    parser.add_argument('dataset', nargs='*', help=f"Optional dataset keys (default: all of {', '.join(DATASETS)})")
    parser.add_argument('--data-dir', type=Path, default=DATA_DIR, help='Folder holding the datasets')
    parser.add_argument('--base-url', default=DATA_URL, help='Fetch the datasets from this URL instead')
    parser.add_argument('--output-dir', type=Path, default=OUTPUT_DIR)
    parser.add_argument('--buffer-km', type=float, default=BUFFER_RADIUS_KM)
    parser.add_argument('--log-level', default='INFO')
    parser.add_argument('--log-file')
    args = parser.parse_args(argv)

    setup_logging(getattr(logging, args.log_level.upper(), logging.INFO), args.log_file)

    keys = []
    for key in args.dataset:
        if key not in DATASETS:
            logger.error("Unknown dataset '%s'. Available: %s", key, ', '.join(DATASETS))
            continue
        keys.append(key)
    if args.dataset and not keys:
        return 2

    sources = dataset_sources(keys or None, args.data_dir, args.base_url)
    state = asyncio.run(build_dashboard(sources, radius_km=args.buffer_km))
    write_data_js(state.to_payload(), args.output_dir)
    if state.failures:
        logger.warning('Finished with %d failed dataset(s): %s', len(state.failures), ', '.join(state.failures))
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
