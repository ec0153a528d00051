import pytest

SQUARE = [[14.0, 37.5], [14.5, 37.5], [14.5, 38.0], [14.0, 38.0], [14.0, 37.5]]
CENTROID = (14.25, 37.75)
FAR_AWAY = (14.6, 14.25)


def point_feature(lng, lat, **properties):
    return {
        'type': 'Feature',
        'geometry': {'type': 'Point', 'coordinates': [lng, lat]},
        'properties': properties,
    }


def feature(geometry_type, coordinates, **properties):
    return {
        'type': 'Feature',
        'geometry': {'type': geometry_type, 'coordinates': coordinates},
        'properties': properties,
    }


def collection(*features):
    return {'type': 'FeatureCollection', 'features': list(features)}


@pytest.fixture
def boundary_data():
    return collection(feature('Polygon', [SQUARE], COMUNE='Paternò', PRO_COM_T='087033'))
