import json
import zipfile

import pytest
import requests
import shapefile
from pyproj import CRS, Transformer
from pyproj.enums import WktVersion

from conftest import collection, point_feature
from simeto_dashboard import sources
from simeto_dashboard.errors import LoadFailure

# Clockwise ring, the orientation shapefiles use for outer rings
CLOCKWISE_SQUARE = [[14.0, 37.5], [14.0, 38.0], [14.5, 38.0], [14.5, 37.5], [14.0, 37.5]]


class _FakeResponse:
    def __init__(self, text, status_code=200):
        self.text = text
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f'{self.status_code} error')


def _write_boundary_shapefile(base_path, ring, prj_wkt=None):
    with shapefile.Writer(str(base_path), shapeType=shapefile.POLYGON) as writer:
        writer.field('COMUNE', 'C')
        writer.field('PRO_COM_T', 'C')
        writer.poly([ring])
        writer.record('Paterno', '087033')
    if prj_wkt:
        base_path.with_suffix('.prj').write_text(prj_wkt, encoding='latin-1')


def test_fetch_geojson_reads_local_files(tmp_path):
    path = tmp_path / 'punti.geojson'
    path.write_text(json.dumps(collection(point_feature(14.2, 37.7, name='Pietralunga'))), encoding='utf-8')

    payload = sources.fetch_geojson(path, 'sampling_points')

    assert payload['features'][0]['properties']['name'] == 'Pietralunga'


def test_fetch_geojson_missing_or_invalid_files(tmp_path):
    with pytest.raises(LoadFailure, match='Missing source file'):
        sources.fetch_geojson(tmp_path / 'absent.geojson', 'power_plants')
    broken = tmp_path / 'broken.geojson'
    broken.write_text('{"type": ', encoding='utf-8')
    with pytest.raises(LoadFailure, match='invalid JSON'):
        sources.fetch_geojson(broken, 'power_plants')


def test_fetch_text_over_http(monkeypatch):
    calls = []

    def _fake_get(url, timeout):
        calls.append((url, timeout))
        return _FakeResponse('date,location\n')

    monkeypatch.setattr(sources.requests, 'get', _fake_get)

    assert sources.fetch_text('https://example.org/data/water_monitoring.csv', 'measurements') == 'date,location\n'
    assert calls == [('https://example.org/data/water_monitoring.csv', sources.HTTP_TIMEOUT)]


def test_fetch_text_http_errors_become_load_failures(monkeypatch):
    monkeypatch.setattr(sources.requests, 'get', lambda url, timeout: _FakeResponse('', status_code=404))
    with pytest.raises(LoadFailure) as excinfo:
        sources.fetch_text('https://example.org/missing.csv', 'measurements')
    assert excinfo.value.source == 'measurements'

    def _offline(url, timeout):
        raise requests.ConnectionError('offline')

    monkeypatch.setattr(sources.requests, 'get', _offline)
    with pytest.raises(LoadFailure):
        sources.fetch_geojson('https://example.org/confini.geojson', 'boundaries')


def test_read_shapefile_as_feature_collection(tmp_path):
    _write_boundary_shapefile(tmp_path / 'confini', CLOCKWISE_SQUARE)

    payload = sources.fetch_geojson(tmp_path / 'confini.shp', 'boundaries')

    [feature] = payload['features']
    assert feature['properties'] == {'COMUNE': 'Paterno', 'PRO_COM_T': '087033'}
    assert feature['geometry']['type'] == 'Polygon'


def test_read_zipped_shapefile_reprojects_to_wgs84(tmp_path):
    utm = CRS.from_epsg(32633)
    to_utm = Transformer.from_crs('EPSG:4326', utm, always_xy=True)
    ring = [list(to_utm.transform(lng, lat)) for lng, lat in CLOCKWISE_SQUARE]
    folder = tmp_path / 'shp'
    folder.mkdir()
    _write_boundary_shapefile(folder / 'confini', ring, utm.to_wkt(WktVersion.WKT1_ESRI))
    archive_path = tmp_path / 'confini.zip'
    with zipfile.ZipFile(archive_path, 'w') as archive:
        for part in folder.iterdir():
            archive.write(part, arcname=part.name)

    payload = sources.fetch_geojson(archive_path, 'boundaries')

    coords = payload['features'][0]['geometry']['coordinates'][0]
    lngs = [point[0] for point in coords]
    lats = [point[1] for point in coords]
    assert min(lngs) == pytest.approx(14.0, abs=1e-6)
    assert max(lngs) == pytest.approx(14.5, abs=1e-6)
    assert min(lats) == pytest.approx(37.5, abs=1e-6)
    assert max(lats) == pytest.approx(38.0, abs=1e-6)


def test_read_shapefile_rejects_bad_archives(tmp_path):
    bogus = tmp_path / 'confini.zip'
    bogus.write_bytes(b'not a zip')

    with pytest.raises(LoadFailure):
        sources.fetch_geojson(bogus, 'boundaries')
