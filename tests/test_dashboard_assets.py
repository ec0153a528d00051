import asyncio
import json
import logging

import pytest

from conftest import CENTROID, FAR_AWAY, SQUARE, collection, feature, point_feature
from simeto_dashboard import build_dashboard_assets as dashboard
from simeto_dashboard.errors import LoadFailure
from simeto_dashboard.geometry_index import GeometryIndex

MONITORING_CSV = """date,location,parameter,value,uom,Range/Comment
2024-01-15,Pietralunga,Temperature,15.2,°C,Normal range
2024-02-12,Pietralunga,Temperature,16.0,°C,Normal range
2024-01-15,Sorgente di Ponte Barca,Nitrate,0,mg/L,Good
2024-01-15,Pietralunga,Nitrate,3.5,mg/L,Agricultural presence
"""


def _write(path, payload):
    path.write_text(json.dumps(payload) if not isinstance(payload, str) else payload, encoding='utf-8')


@pytest.fixture
def data_dir(tmp_path):
    folder = tmp_path / 'data'
    folder.mkdir()
    names = dashboard.DATASETS
    _write(folder / names['boundaries'], collection(feature('Polygon', [SQUARE], COMUNE='Paternò', PRO_COM_T='087033')))
    _write(
        folder / names['sampling_points'],
        collection(
            point_feature(*CENTROID, name='Sorgente di Ponte Barca'),
            point_feature(*FAR_AWAY, name='Impianto di depurazione di Ponte Barca'),
        ),
    )
    _write(
        folder / names['water_resources'],
        collection(
            feature('LineString', [[14.1, 37.6], [14.2, 37.7]], Nome='Simeto'),
            point_feature(16.0, 39.0, Nome='Pozzo'),
        ),
    )
    _write(folder / names['power_plants'], collection(point_feature(14.3, 37.6, name='Centrale Paternò')))
    _write(folder / names['measurements'], MONITORING_CSV)
    return folder


def _visibility(state, layer):
    return [(item.title, item.visibility.value) for item in state.layers[layer]]


def test_build_dashboard_loads_every_dataset(data_dir):
    sources = dashboard.dataset_sources(data_dir=data_dir, base_url=None)

    state = asyncio.run(dashboard.build_dashboard(sources, radius_km=15))

    assert state.failures == {}
    assert sorted(state.loaded) == sorted(dashboard.DATASETS)
    assert _visibility(state, 'sampling-excellent') == [('Sorgente di Ponte Barca', 'inside')]
    assert _visibility(state, 'sampling-critical') == [('Impianto di depurazione di Ponte Barca', 'outside')]
    assert sorted(_visibility(state, 'infrastructure')) == [
        ('Centrale Paternò', 'inside'),
        ('Pozzo', 'outside'),
        ('Simeto', 'inside'),
    ]
    assert len(state.layers['boundaries']) == 1
    assert len(state.records) == 4
    assert state.charts['temperature']['labels'] == ['2024-01-15', '2024-02-12']


def test_one_failed_dataset_does_not_block_the_rest(data_dir):
    (data_dir / dashboard.DATASETS['water_resources']).unlink()
    (data_dir / dashboard.DATASETS['measurements']).write_text('date,location\n2024-01-01,Pietralunga\n')
    sources = dashboard.dataset_sources(data_dir=data_dir, base_url=None)

    state = asyncio.run(dashboard.build_dashboard(sources))

    assert set(state.failures) == {'water_resources', 'measurements'}
    assert state.layers['sampling-excellent']
    assert state.layers['infrastructure'][0].title == 'Centrale Paternò'
    assert state.records == ()
    assert state.charts == {}


def test_broken_boundaries_leave_every_feature_visible(data_dir):
    _write(data_dir / dashboard.DATASETS['boundaries'], collection(feature('Polygon', [], COMUNE='Broken')))
    sources = dashboard.dataset_sources(data_dir=data_dir, base_url=None)

    state = asyncio.run(dashboard.build_dashboard(sources))

    assert 'boundaries' in state.failures
    assert state.index.status.value == 'failed'
    assert _visibility(state, 'sampling-critical') == [('Impianto di depurazione di Ponte Barca', 'inside')]


def test_payload_is_json_ready(data_dir):
    sources = dashboard.dataset_sources(data_dir=data_dir, base_url=None)
    state = asyncio.run(dashboard.build_dashboard(sources))

    payload = state.to_payload()

    assert set(payload) == {'layers', 'charts', 'table', 'geometry', 'failures'}
    assert payload['table']['locations'] == ['Pietralunga', 'Sorgente di Ponte Barca']
    assert [row['severity'] for row in payload['table']['rows']] == ['good', 'good', 'good', 'moderate']
    assert payload['geometry']['status'] == 'ready'
    json.dumps(payload, allow_nan=False)


def test_dataset_sources_prefers_base_url(tmp_path):
    sources = dashboard.dataset_sources(['measurements'], data_dir=tmp_path, base_url='https://example.org/data/')

    assert sources == {'measurements': 'https://example.org/data/water_monitoring.csv'}


def test_main_writes_data_bundle(data_dir, tmp_path):
    output_dir = tmp_path / 'out'

    exit_code = dashboard.main(['--data-dir', str(data_dir), '--output-dir', str(output_dir), '--log-level', 'WARNING'])

    assert exit_code == 0
    data_js = (output_dir / 'dashboard_data.js').read_text(encoding='utf-8')
    assert data_js.startswith('window.DASHBOARD_DATA = ')
    bundle = json.loads((output_dir / 'dashboard_data.json').read_text(encoding='utf-8'))
    assert bundle['charts']['nitrate']['datasets'][0]['ratings'] == ['absent', 'agricultural']


def test_main_subset_without_boundaries_fails_open(data_dir, tmp_path):
    output_dir = tmp_path / 'out'

    assert dashboard.main(['sampling_points', '--data-dir', str(data_dir), '--output-dir', str(output_dir)]) == 0

    bundle = json.loads((output_dir / 'dashboard_data.json').read_text(encoding='utf-8'))
    visibilities = [item['display']['visibility'] for item in bundle['layers']['sampling-critical']]
    assert visibilities == ['inside']
    assert bundle['charts'] == {}


def test_main_rejects_unknown_datasets(tmp_path):
    assert dashboard.main(['nope', '--output-dir', str(tmp_path / 'out')]) == 2


def test_list_valued_site_name_keeps_every_dataset(data_dir):
    _write(
        data_dir / dashboard.DATASETS['sampling_points'],
        collection(point_feature(*CENTROID, name=['Sorgente', 'Ponte Barca'])),
    )
    sources = dashboard.dataset_sources(data_dir=data_dir, base_url=None)

    state = asyncio.run(dashboard.build_dashboard(sources))

    assert state.failures == {}
    assert _visibility(state, 'sampling-excellent') == [("['Sorgente', 'Ponte Barca']", 'inside')]
    assert len(state.records) == 4


def test_unexpected_error_in_one_layer_is_recorded(data_dir, monkeypatch):
    def _explode(loader, data):
        raise RuntimeError('shaping blew up')

    monkeypatch.setitem(dashboard.FEATURE_LAYERS, 'power_plants', _explode)
    sources = dashboard.dataset_sources(data_dir=data_dir, base_url=None)

    state = asyncio.run(dashboard.build_dashboard(sources))

    assert state.failures == {'power_plants': 'shaping blew up'}
    assert state.layers['sampling-excellent']
    assert len(state.records) == 4
    assert state.charts['temperature']['labels'] == ['2024-01-15', '2024-02-12']


def test_malformed_boundary_unit_is_skipped(data_dir):
    _write(
        data_dir / dashboard.DATASETS['boundaries'],
        collection(
            feature('Polygon', [SQUARE], COMUNE='Paternò', PRO_COM_T='087033'),
            feature('Polygon', [], COMUNE='Broken'),
        ),
    )
    sources = dashboard.dataset_sources(data_dir=data_dir, base_url=None)

    state = asyncio.run(dashboard.build_dashboard(sources))

    assert 'boundaries' not in state.failures
    assert state.index.status.value == 'ready'
    assert [item.title for item in state.layers['boundaries']] == ['Paternò']
    assert _visibility(state, 'sampling-critical') == [('Impianto di depurazione di Ponte Barca', 'outside')]


def test_record_failure_logs_error_kind(caplog):
    state = dashboard.DashboardState(index=GeometryIndex())

    with caplog.at_level(logging.ERROR):
        state.record_failure('measurements', LoadFailure('CSV missing columns', 'measurements'))

    assert state.failures == {'measurements': 'measurements: CSV missing columns'}
    assert '(load_failure)' in caplog.text
