"""Fetch the static datasets from disk or over HTTP."""
from __future__ import annotations

import json
import logging
import os
import tempfile
import zipfile
from pathlib import Path
from typing import Any, Dict, List, Union

import requests
import shapefile  # type: ignore
import shapely
from pyproj import CRS, Transformer
from pyproj.exceptions import CRSError
from shapely.geometry import mapping, shape

from simeto_dashboard.errors import LoadFailure

logger = logging.getLogger(__name__)

HTTP_TIMEOUT = float(os.environ.get('SIMETO_HTTP_TIMEOUT', 30))
SHAPEFILE_SUFFIXES = ('.shp', '.zip')

Source = Union[str, Path]


def is_url(source: Source) -> bool:
    return str(source).lower().startswith(('http://', 'https://'))


def fetch_text(source: Source, dataset: str) -> str:
    if is_url(source):
        try:
            response = requests.get(str(source), timeout=HTTP_TIMEOUT)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise LoadFailure(f"request failed: {exc}", dataset) from exc
        return response.text
    path = Path(source)
    if not path.exists():
        raise LoadFailure(f"Missing source file: {path}", dataset)
    try:
        return path.read_text(encoding='utf-8-sig')
    except (OSError, UnicodeDecodeError) as exc:
        raise LoadFailure(f"cannot read {path}: {exc}", dataset) from exc


def fetch_geojson(source: Source, dataset: str) -> Dict[str, Any]:
    if not is_url(source) and str(source).lower().endswith(SHAPEFILE_SUFFIXES):
        return read_shapefile(Path(source), dataset)
    text = fetch_text(source, dataset)
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise LoadFailure(f"invalid JSON: {exc}", dataset) from exc
    if not isinstance(payload, dict):
        raise LoadFailure('expected a JSON object', dataset)
    return payload


# -----------------------------------------------------------------------------------------------
# Shapefiles


def _reproject(features: List[Dict[str, Any]], prj_path: Path, dataset: str) -> List[Dict[str, Any]]:
    try:
        source_crs = CRS.from_wkt(prj_path.read_text(encoding='latin-1'))
    except (CRSError, OSError) as exc:
        logger.warning('%s: unreadable projection %s (%s); assuming WGS84', dataset, prj_path.name, exc)
        return features
    if source_crs.to_epsg() == 4326:
        return features
    transformer = Transformer.from_crs(source_crs, 'EPSG:4326', always_xy=True)
    logger.info('%s: reprojecting from %s to EPSG:4326', dataset, source_crs.name)
    for feature in features:
        geometry = shape(feature['geometry'])
        feature['geometry'] = mapping(shapely.transform(geometry, transformer.transform, interleaved=False))
    return features


def _shapefile_features(shp_path: Path, dataset: str) -> Dict[str, Any]:
    features = []
    with shapefile.Reader(str(shp_path)) as reader:
        fields = [field[0] for field in reader.fields[1:]]
        for shape_record in reader.iterShapeRecords():
            if shape_record.shape.shapeType == shapefile.NULL:
                continue
            attr = {name: value for name, value in zip(fields, shape_record.record)}
            features.append(
                {
                    'type': 'Feature',
                    'geometry': shape_record.shape.__geo_interface__,
                    'properties': attr,
                }
            )
    prj_path = shp_path.with_suffix('.prj')
    if prj_path.exists():
        features = _reproject(features, prj_path, dataset)
    return {'type': 'FeatureCollection', 'features': features}


def read_shapefile(path: Path, dataset: str) -> Dict[str, Any]:
    """Read a plain or zipped ESRI shapefile as a GeoJSON feature collection."""
    if not path.exists():
        raise LoadFailure(f"Missing source file: {path}", dataset)
    try:
        if path.suffix.lower() != '.zip':
            return _shapefile_features(path, dataset)
        with tempfile.TemporaryDirectory() as tmpdir:
            with zipfile.ZipFile(path) as archive:
                archive.extractall(tmpdir)
            shp_files = sorted(Path(tmpdir).rglob('*.shp'))
            if not shp_files:
                raise LoadFailure(f"no .shp inside {path.name}", dataset)
            return _shapefile_features(shp_files[0], dataset)
    except (shapefile.ShapefileException, zipfile.BadZipFile, OSError) as exc:
        raise LoadFailure(f"cannot read shapefile {path.name}: {exc}", dataset) from exc
