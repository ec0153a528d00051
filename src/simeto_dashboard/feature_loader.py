"""Shape the map datasets into display-ready features."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Mapping, NamedTuple, Optional, Tuple

from shapely.geometry import mapping

from simeto_dashboard.errors import LoadFailure, MalformedGeometry, MissingField, Result
from simeto_dashboard.geometry_index import BoundaryRegion, GeoFeature, parse_feature
from simeto_dashboard.visibility import Visibility, VisibilityClassifier

logger = logging.getLogger(__name__)


class Category(str, Enum):
    SAMPLING_EXCELLENT = 'sampling-excellent'
    SAMPLING_CRITICAL = 'sampling-critical'
    SAMPLING_MODERATE = 'sampling-moderate'
    INFRASTRUCTURE = 'infrastructure'
    BOUNDARIES = 'boundaries'


LAYER_GROUPS = [category.value for category in Category]

DEFAULT_COLOR = '#2980b9'
WATER_FILL_COLOR = '#5dade2'
BOUNDARY_COLOR = '#82e0aa'
DIMMED_OPACITY = 0.3

SITE_STYLES: Dict[str, Tuple[str, Category]] = {
    'Sorgente di Ponte Barca': ('#27ae60', Category.SAMPLING_EXCELLENT),
    'Impianto di depurazione di Ponte Barca': ('#e74c3c', Category.SAMPLING_CRITICAL),
    'Pietralunga': ('#f39c12', Category.SAMPLING_MODERATE),
}
DEFAULT_SITE_STYLE = (DEFAULT_COLOR, Category.SAMPLING_EXCELLENT)


class PopupLayout(NamedTuple):
    default_title: str
    fields: Tuple[Tuple[str, Tuple[str, ...]], ...]


TITLE_LABEL = 'Nome'
COORDINATES_LABEL = 'Coordinate'

SAMPLING_POPUP = PopupLayout(
    'Punto di campionamento',
    (
        (TITLE_LABEL, ('name',)),
        ('Tipo', ('type',)),
    ),
)
WATER_POPUP = PopupLayout(
    'Risorsa idrica',
    (
        (TITLE_LABEL, ('name', 'Nome')),
        ('Tipo', ('type', 'tipo', 'Tipo')),
        ('Comune', ('comune', 'Comune')),
        ('Fiume', ('fiume', 'Fiume')),
        ('Descrizione', ('descrizione', 'Descrizione')),
    ),
)
POWER_POPUP = PopupLayout(
    'Punto di interesse',
    (
        (TITLE_LABEL, ('name',)),
        ('Tipo', ('type',)),
    ),
)


def resolve_alias(properties: Mapping[str, Any], aliases: Iterable[str]) -> Result[Any]:
    """Return the first alias carrying a non-empty value."""
    aliases = tuple(aliases)
    for alias in aliases:
        value = properties.get(alias)
        if value is None or (isinstance(value, str) and not value.strip()):
            continue
        return Result.success(value)
    return Result.failure(MissingField(f"none of {', '.join(aliases)} present"))


def site_style(name: Any) -> Tuple[str, Category]:
    if name is None:
        return DEFAULT_SITE_STYLE
    return SITE_STYLES.get(name if isinstance(name, str) else str(name), DEFAULT_SITE_STYLE)


def format_coordinates(lng: float, lat: float) -> str:
    return f"{lat:.4f}, {lng:.4f}"


def build_popup_fields(feature: GeoFeature, layout: PopupLayout) -> List[Tuple[str, str]]:
    fields = []
    for label, aliases in layout.fields:
        resolved = resolve_alias(feature.properties, aliases)
        if resolved.ok:
            fields.append((label, str(resolved.value)))
    if feature.is_point:
        fields.append((COORDINATES_LABEL, format_coordinates(*feature.lng_lat)))
    return fields


def point_style(color: str, visibility: Visibility) -> Dict[str, Any]:
    return {'color': color, 'opacity': 1.0 if visibility is Visibility.INSIDE else DIMMED_OPACITY}


def shape_style(visibility: Visibility) -> Dict[str, Any]:
    inside = visibility is Visibility.INSIDE
    return {
        'color': DEFAULT_COLOR,
        'weight': 3,
        'fillColor': WATER_FILL_COLOR,
        'opacity': 1.0 if inside else DIMMED_OPACITY,
        'fillOpacity': 0.5 if inside else 0.1,
    }


@dataclass(frozen=True)
class DisplayFeature:
    feature: GeoFeature
    visibility: Visibility
    category: Category
    color: str
    title: str
    popup_fields: Tuple[Tuple[str, str], ...]
    style: Mapping[str, Any] = field(default_factory=dict)

    @property
    def opacity(self) -> float:
        return float(self.style.get('opacity', 1.0))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': 'Feature',
            'geometry': {'type': self.feature.geometry_type, 'coordinates': self.feature.coordinates},
            'properties': dict(self.feature.properties),
            'display': {
                'visibility': self.visibility.value,
                'category': self.category.value,
                'color': self.color,
                'title': self.title,
                'popup': [{'label': label, 'value': value} for label, value in self.popup_fields],
                'style': dict(self.style),
            },
        }


class FeatureLoader:
    """Turns raw feature collections into :class:`DisplayFeature` lists."""

    def __init__(self, classifier: VisibilityClassifier):
        self.classifier = classifier

    def _iter_features(self, data: Any, dataset: str) -> Iterator[GeoFeature]:
        features = data.get('features') if isinstance(data, Mapping) else None
        if not isinstance(features, list):
            raise LoadFailure('not a GeoJSON feature collection', dataset)
        skipped = 0
        for idx, raw in enumerate(features):
            try:
                yield parse_feature(raw, source=f'{dataset}[{idx}]')
            except MalformedGeometry as exc:
                skipped += 1
                logger.warning('Skipping feature: %s', exc)
        if skipped:
            logger.warning('%s: skipped %d of %d features', dataset, skipped, len(features))

    def _display(
        self,
        feature: GeoFeature,
        layout: PopupLayout,
        category: Category,
        color: str,
    ) -> DisplayFeature:
        visibility = self.classifier.classify(feature)
        popup = build_popup_fields(feature, layout)
        title = next((value for label, value in popup if label == TITLE_LABEL), layout.default_title)
        style = point_style(color, visibility) if feature.is_point else shape_style(visibility)
        return DisplayFeature(
            feature=feature,
            visibility=visibility,
            category=category,
            color=color,
            title=title,
            popup_fields=tuple(popup),
            style=style,
        )

    def load_sampling_points(self, data: Any) -> List[DisplayFeature]:
        shaped = []
        for feature in self._iter_features(data, 'sampling_points'):
            color, category = site_style(feature.properties.get('name'))
            shaped.append(self._display(feature, SAMPLING_POPUP, category, color))
        return shaped

    def load_water_resources(self, data: Any) -> List[DisplayFeature]:
        return [
            self._display(feature, WATER_POPUP, Category.INFRASTRUCTURE, DEFAULT_COLOR)
            for feature in self._iter_features(data, 'water_resources')
        ]

    def load_power_plants(self, data: Any) -> List[DisplayFeature]:
        return [
            self._display(feature, POWER_POPUP, Category.INFRASTRUCTURE, DEFAULT_COLOR)
            for feature in self._iter_features(data, 'power_plants')
        ]

    def load_boundaries(self, region: Optional[BoundaryRegion]) -> List[DisplayFeature]:
        if region is None:
            return []
        shaped = []
        for unit in region.units:
            geometry = mapping(unit.geometry)
            feature = GeoFeature(
                geometry_type=geometry['type'],
                coordinates=geometry['coordinates'],
                properties=unit.properties,
                geometry=unit.geometry,
            )
            shaped.append(
                DisplayFeature(
                    feature=feature,
                    visibility=Visibility.INSIDE,
                    category=Category.BOUNDARIES,
                    color=BOUNDARY_COLOR,
                    title=unit.name,
                    popup_fields=(('Provincia', unit.province),),
                    style={'color': BOUNDARY_COLOR, 'weight': 0, 'fillColor': BOUNDARY_COLOR, 'fillOpacity': 0.35},
                )
            )
        return shaped
