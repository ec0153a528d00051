"""Inside/outside tagging of map features against the area of interest."""
from __future__ import annotations

import logging
from enum import Enum
from typing import Optional

from shapely.geometry.base import BaseGeometry

from simeto_dashboard.geometry_index import GeoFeature, GeometryIndex

logger = logging.getLogger(__name__)


class Visibility(str, Enum):
    INSIDE = 'inside'
    OUTSIDE = 'outside'


class VisibilityClassifier:
    """Fail-open classifier: anything that cannot be tested is drawn as inside.

    Points are tested against the buffered region, falling back to the raw
    boundary polygons when that test raises. Lines and polygons are inside when
    they touch any boundary unit.
    """

    def __init__(self, index: Optional[GeometryIndex]):
        self.index = index

    def classify(self, feature: GeoFeature) -> Visibility:
        if self.index is None or not self.index.ready:
            return Visibility.INSIDE
        if feature.is_point:
            return self.classify_point(feature.geometry)
        return self._classify_shape(feature.geometry)

    def classify_point(self, point: BaseGeometry) -> Visibility:
        if self.index is None:
            return Visibility.INSIDE
        result = self.index.contains_point(point)
        if not result.ok:
            logger.debug('Buffered containment unavailable (%s); testing boundary polygons', result.error)
            result = self.index.contains_point_by_unit(point)
        if not result.ok:
            logger.warning('Containment check failed, keeping point visible: %s', result.error)
            return Visibility.INSIDE
        return Visibility.INSIDE if result.value else Visibility.OUTSIDE

    def _classify_shape(self, geometry: BaseGeometry) -> Visibility:
        result = self.index.intersects(geometry)
        if not result.ok:
            logger.warning('Intersection check failed, keeping feature visible: %s', result.error)
            return Visibility.INSIDE
        return Visibility.INSIDE if result.value else Visibility.OUTSIDE
