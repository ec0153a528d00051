"""Boundary polygons, the buffered area of interest and containment queries."""
from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass, field
from enum import Enum
from functools import cached_property
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import shapely
from pyproj import CRS, Transformer
from pyproj.exceptions import ProjError
from shapely.errors import ShapelyError
from shapely.geometry import Point, Polygon, shape
from shapely.geometry.base import BaseGeometry
from shapely.ops import unary_union

from simeto_dashboard.errors import GeometryOpFailure, MalformedGeometry, Result

logger = logging.getLogger(__name__)

CRS_WGS84 = 'EPSG:4326'
BUFFER_RADIUS_KM = float(os.environ.get('SIMETO_BUFFER_KM', 15))
BUFFER_QUAD_SEGS = 32

SUPPORTED_TYPES = ('Point', 'LineString', 'Polygon', 'MultiLineString', 'MultiPolygon')
POLYGONAL_TYPES = ('Polygon', 'MultiPolygon')

NAME_ATTRIBUTES = ('COMUNE', 'name', 'NAME', 'Nome')
PROVINCE_ATTRIBUTE = 'PRO_COM_T'

LngLat = Tuple[float, float]
GEOMETRY_ERRORS = (ShapelyError, ValueError, TypeError, AttributeError)
BUFFER_ERRORS = (GeometryOpFailure, ProjError) + GEOMETRY_ERRORS


@dataclass(frozen=True)
class GeoFeature:
    geometry_type: str
    coordinates: Any
    properties: Mapping[str, Any]
    geometry: BaseGeometry = field(repr=False, compare=False)

    @property
    def is_point(self) -> bool:
        return self.geometry_type == 'Point'

    @property
    def lng_lat(self) -> LngLat:
        return float(self.geometry.x), float(self.geometry.y)


def _check_point(coords: Any) -> None:
    if not isinstance(coords, (list, tuple)) or len(coords) < 2:
        raise MalformedGeometry(f"point needs [lng, lat], got {coords!r}")
    for value in coords[:2]:
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            raise MalformedGeometry(f"non-numeric coordinate {value!r}")


def parse_feature(raw: Any, source: Optional[str] = None) -> GeoFeature:
    """Parse one GeoJSON feature, raising MalformedGeometry when it cannot be drawn."""
    if not isinstance(raw, Mapping):
        raise MalformedGeometry('feature is not an object', source)
    geometry = raw.get('geometry')
    if not isinstance(geometry, Mapping):
        raise MalformedGeometry('feature has no geometry', source)
    geometry_type = geometry.get('type')
    coords = geometry.get('coordinates')
    if geometry_type not in SUPPORTED_TYPES:
        raise MalformedGeometry(f"unsupported geometry type {geometry_type!r}", source)
    if not coords:
        raise MalformedGeometry('geometry.coordinates missing or empty', source)
    try:
        if geometry_type == 'Point':
            _check_point(coords)
        parsed = shape({'type': geometry_type, 'coordinates': coords})
    except MalformedGeometry as exc:
        raise MalformedGeometry(str(exc), source) from exc
    except GEOMETRY_ERRORS as exc:
        raise MalformedGeometry(f"invalid {geometry_type} coordinates: {exc}", source) from exc
    if parsed.is_empty:
        raise MalformedGeometry(f"empty {geometry_type}", source)
    properties = raw.get('properties') or {}
    return GeoFeature(
        geometry_type=geometry_type,
        coordinates=coords,
        properties=dict(properties) if isinstance(properties, Mapping) else {},
        geometry=parsed,
    )


# -----------------------------------------------------------------------------------------------
# Regions


@dataclass(frozen=True)
class BoundaryUnit:
    name: str
    province_code: Optional[str]
    geometry: BaseGeometry = field(repr=False)
    properties: Mapping[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @property
    def province(self) -> str:
        return self.province_code[:2] if self.province_code else 'N/A'


@dataclass(frozen=True)
class BoundaryRegion:
    units: Tuple[BoundaryUnit, ...]

    @property
    def polygons(self) -> List[Polygon]:
        """Every polygon part, with multipolygons flattened."""
        parts: List[Polygon] = []
        for unit in self.units:
            if unit.geometry.geom_type == 'MultiPolygon':
                parts.extend(unit.geometry.geoms)
            else:
                parts.append(unit.geometry)
        return parts

    @cached_property
    def surface(self) -> BaseGeometry:
        return unary_union(self.polygons)


@dataclass(frozen=True)
class BufferedRegion:
    surface: Optional[BaseGeometry] = field(repr=False)
    radius_km: float
    degraded: bool = False


def load_boundary(data: Mapping[str, Any]) -> BoundaryRegion:
    features = data.get('features') if isinstance(data, Mapping) else None
    if not isinstance(features, Sequence) or isinstance(features, (str, bytes)):
        raise MalformedGeometry('boundary data is not a feature collection', 'boundaries')
    units = []
    for idx, raw in enumerate(features):
        try:
            feature = parse_feature(raw, source=f'boundaries[{idx}]')
            if feature.geometry_type not in POLYGONAL_TYPES:
                raise MalformedGeometry(f"expected polygon, got {feature.geometry_type}", f'boundaries[{idx}]')
        except MalformedGeometry as exc:
            logger.warning('Skipping boundary unit: %s', exc)
            continue
        props = feature.properties
        name = next((props[key] for key in NAME_ATTRIBUTES if props.get(key)), f'Area {idx + 1}')
        province = props.get(PROVINCE_ATTRIBUTE)
        units.append(
            BoundaryUnit(
                name=str(name),
                province_code=str(province) if province not in (None, '') else None,
                geometry=feature.geometry,
                properties=props,
            )
        )
    if not units:
        raise MalformedGeometry('boundary collection has no usable polygons', 'boundaries')
    return BoundaryRegion(units=tuple(units))


def _local_metric_crs(geometry: BaseGeometry) -> CRS:
    centre = geometry.centroid
    return CRS.from_proj4(
        f"+proj=aeqd +lat_0={centre.y:.6f} +lon_0={centre.x:.6f} +datum=WGS84 +units=m +no_defs"
    )


def _buffer_metric(geometry: BaseGeometry, distance_m: float) -> BaseGeometry:
    local = _local_metric_crs(geometry)
    to_local = Transformer.from_crs(CRS_WGS84, local, always_xy=True)
    to_wgs84 = Transformer.from_crs(local, CRS_WGS84, always_xy=True)
    local_geometry = shapely.transform(geometry, to_local.transform, interleaved=False)
    buffered = local_geometry.buffer(distance_m, quad_segs=BUFFER_QUAD_SEGS)
    result = shapely.transform(buffered, to_wgs84.transform, interleaved=False)
    if result.is_empty or not all(math.isfinite(value) for value in result.bounds):
        raise GeometryOpFailure('buffer produced an empty or non-finite geometry')
    if not result.is_valid:
        result = result.buffer(0)
    # Reprojection wobble must never shrink the area below the original boundary.
    return result.union(geometry)


def buffer_region(region: BoundaryRegion, radius_km: float = BUFFER_RADIUS_KM) -> BufferedRegion:
    try:
        union = region.surface
    except GEOMETRY_ERRORS as exc:
        logger.warning('Could not merge %d boundary units: %s', len(region.units), exc)
        return BufferedRegion(surface=None, radius_km=0.0, degraded=True)
    if radius_km <= 0:
        return BufferedRegion(surface=union, radius_km=0.0)
    try:
        buffered = _buffer_metric(union, radius_km * 1000.0)
    except BUFFER_ERRORS as exc:
        logger.warning('Could not create %.1f km buffer, using original boundaries: %s', radius_km, exc)
        return BufferedRegion(surface=union, radius_km=0.0, degraded=True)
    return BufferedRegion(surface=buffered, radius_km=radius_km)


def _as_point(point: Union[BaseGeometry, LngLat]) -> BaseGeometry:
    if isinstance(point, BaseGeometry):
        return point
    lng, lat = point
    return Point(float(lng), float(lat))


def contains_point(region: Union[BoundaryRegion, BufferedRegion], point: Union[BaseGeometry, LngLat]) -> Result[bool]:
    """Point-in-region test; points on the boundary line count as inside."""
    try:
        surface = region.surface
        if surface is None:
            return Result.failure(GeometryOpFailure('no containment surface available'))
        return Result.success(bool(surface.covers(_as_point(point))))
    except GEOMETRY_ERRORS as exc:
        return Result.failure(GeometryOpFailure(f"containment test failed: {exc}"))


def contains_point_by_unit(region: BoundaryRegion, point: Union[BaseGeometry, LngLat]) -> Result[bool]:
    """Test each unbuffered polygon on its own, without building the union."""
    try:
        target = _as_point(point)
        return Result.success(any(polygon.covers(target) for polygon in region.polygons))
    except GEOMETRY_ERRORS as exc:
        return Result.failure(GeometryOpFailure(f"per-polygon containment failed: {exc}"))


def intersects(region: Union[BoundaryRegion, BufferedRegion], geometry: BaseGeometry) -> Result[bool]:
    try:
        if isinstance(region, BoundaryRegion):
            return Result.success(any(unit.geometry.intersects(geometry) for unit in region.units))
        if region.surface is None:
            return Result.failure(GeometryOpFailure('no intersection surface available'))
        return Result.success(bool(region.surface.intersects(geometry)))
    except GEOMETRY_ERRORS as exc:
        return Result.failure(GeometryOpFailure(f"intersection test failed: {exc}"))


# -----------------------------------------------------------------------------------------------
# Index


class IndexStatus(str, Enum):
    LOADING = 'loading'
    READY = 'ready'
    FAILED = 'failed'


class GeometryIndex:
    """Holds the boundary and buffered regions once they are built.

    The index is written once by :meth:`build` (or :meth:`mark_failed`) and only
    read afterwards. Until it is ready every query answers ``True`` so nothing
    is hidden while the boundaries are loading or after they failed to load.
    """

    def __init__(self, radius_km: float = BUFFER_RADIUS_KM):
        self.radius_km = radius_km
        self.boundary: Optional[BoundaryRegion] = None
        self.buffered: Optional[BufferedRegion] = None
        self.status = IndexStatus.LOADING

    @property
    def ready(self) -> bool:
        return self.status is IndexStatus.READY

    def build(self, data: Mapping[str, Any]) -> BoundaryRegion:
        try:
            boundary = load_boundary(data)
        except MalformedGeometry:
            self.status = IndexStatus.FAILED
            raise
        buffered = buffer_region(boundary, self.radius_km)
        self.boundary, self.buffered = boundary, buffered
        self.status = IndexStatus.READY
        logger.info(
            'Boundary index ready: %d units, buffer %.1f km%s',
            len(boundary.units),
            buffered.radius_km,
            ' (degraded)' if buffered.degraded else '',
        )
        return boundary

    def mark_failed(self) -> None:
        self.status = IndexStatus.FAILED

    def contains_point(self, point: Union[BaseGeometry, LngLat]) -> Result[bool]:
        if not self.ready:
            return Result.success(True)
        return contains_point(self.buffered, point)

    def contains_point_by_unit(self, point: Union[BaseGeometry, LngLat]) -> Result[bool]:
        if not self.ready:
            return Result.success(True)
        return contains_point_by_unit(self.boundary, point)

    def intersects(self, geometry: BaseGeometry) -> Result[bool]:
        if not self.ready:
            return Result.success(True)
        return intersects(self.boundary, geometry)

    def describe(self) -> Dict[str, Any]:
        return {
            'status': self.status.value,
            'radiusKm': self.buffered.radius_km if self.buffered else None,
            'degraded': bool(self.buffered and self.buffered.degraded),
            'units': len(self.boundary.units) if self.boundary else 0,
        }
