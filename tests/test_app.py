import json
import pathlib
import sys

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import app as hub_app
from services.store import InMemoryDocumentStore, StoreError, StoreErrorKind

OWNER = {'X-Owner-Id': 'u1'}


@pytest.fixture(autouse=True)
def configure_environment(tmp_path, monkeypatch):
    data_dir = tmp_path / 'data'
    data_dir.mkdir()
    monkeypatch.setenv('KEFIR_DATA_DIR', str(data_dir))
    store = InMemoryDocumentStore(seed=21)
    hub_app.app.config['DOCUMENT_STORE'] = store
    hub_app.app.config['AUTH_MODE'] = 'header'
    hub_app.app.config['TESTING'] = True
    yield {'data_dir': data_dir, 'store': store}
    hub_app.reset_hubs()
    hub_app.app.config.pop('DOCUMENT_STORE', None)
    hub_app.app.config.pop('AUTH_MODE', None)


@pytest.fixture()
def client():
    return hub_app.app.test_client()


def test_requests_without_owner_are_rejected(client):
    response = client.get('/api/state')

    assert response.status_code == 401
    assert response.get_json()['message'] == 'Authentication required'


def test_state_reports_ready_hub(client):
    response = client.get('/api/state', headers=OWNER)

    body = response.get_json()
    assert response.status_code == 200
    assert body['state'] == 'ready'
    assert body['ownerId'] == 'u1'
    assert body['contacts'] == []
    assert body['migrationRecommended'] is True
    assert body['analytics']['deliveryStats'] == {'onTime': 0, 'delayed': 0, 'failed': 0}


def test_contact_crud_round_trip(client):
    created = client.post('/api/contacts', json={'name': 'Rasoa', 'phone': '+261 34 11 222 33'}, headers=OWNER)
    contact_id = created.get_json()['id']

    updated = client.put(f'/api/contacts/{contact_id}', json={'starred': True}, headers=OWNER)
    contacts = client.get('/api/state', headers=OWNER).get_json()['contacts']

    assert created.status_code == 201
    assert updated.get_json() == {'message': 'Updated'}
    assert contacts[0]['id'] == contact_id
    assert contacts[0]['starred'] is True
    assert isinstance(contacts[0]['createdAt'], str)

    deleted = client.delete(f'/api/contacts/{contact_id}', headers=OWNER)

    assert deleted.get_json() == {'message': 'Deleted'}
    assert client.get('/api/state', headers=OWNER).get_json()['contacts'] == []


def test_order_dates_are_accepted_as_iso_strings(client):
    response = client.post(
        '/api/orders',
        json={'customerId': 'c1', 'orderDate': '2024-04-02T08:15:00Z', 'totalAmount': 44000},
        headers=OWNER,
    )

    orders = client.get('/api/state', headers=OWNER).get_json()['orders']
    assert response.status_code == 201
    assert orders[0]['orderDate'].startswith('2024-04-02T08:15:00')


def test_invalid_payloads(client):
    missing_price = client.post('/api/products', json={'name': 'Kombucha'}, headers=OWNER)
    not_an_object = client.post('/api/products', data='[1, 2]', content_type='application/json', headers=OWNER)
    unknown = client.post('/api/invoices', json={'name': 'x'}, headers=OWNER)

    assert missing_price.status_code == 400
    assert 'price' in missing_price.get_json()['errors']
    assert not_an_object.status_code == 400
    assert unknown.status_code == 404


def test_update_of_unknown_document_is_not_found(client):
    response = client.put('/api/products/missing', json={'price': 1000}, headers=OWNER)

    assert response.status_code == 404
    assert response.get_json()['kind'] == 'not_found'


def test_permission_failure_and_local_mode_recovery(client, configure_environment):
    configure_environment['store'].inject_failure(
        'query', StoreError(StoreErrorKind.PERMISSION_DENIED, 'Missing or insufficient permissions.'),
        collection='contacts',
    )

    state = client.get('/api/state', headers=OWNER).get_json()
    blocked = client.post('/api/contacts', json={'name': 'Rasoa'}, headers=OWNER)
    local = client.post('/api/local-mode', headers=OWNER).get_json()

    assert state['state'] == 'error'
    assert state['error']['kind'] == 'permission_denied'
    assert state['error']['recovery'] == ['use_local_mode', 'retry']
    assert blocked.status_code == 409
    assert local['state'] == 'degraded-local'
    assert len(local['contacts']) == 3
    assert local['vendorInfo']['name'] == 'Kéfir Madagascar SARL'

    created = client.post('/api/contacts', json={'name': 'Nouvelle cliente'}, headers=OWNER)
    assert created.get_json()['id'].startswith('local-')


def test_retry_through_initialize(client, configure_environment):
    configure_environment['store'].inject_failure(
        'query', StoreError(StoreErrorKind.TRANSPORT, 'unavailable'), collection='orders'
    )

    first = client.get('/api/state', headers=OWNER).get_json()
    retried = client.post('/api/initialize', headers=OWNER).get_json()

    assert first['state'] == 'error'
    assert first['error']['kind'] == 'other'
    assert retried['state'] == 'ready'


def test_vendor_info_and_analytics(client):
    saved = client.put('/api/vendor-info', json={'name': 'Kéfir Mada', 'nif': '1234567890123'}, headers=OWNER)
    client.post('/api/contacts', json={'name': 'Rasoa', 'customerStatus': 'active'}, headers=OWNER)

    vendor = client.get('/api/vendor-info', headers=OWNER).get_json()
    analytics = client.get('/api/analytics', headers=OWNER).get_json()

    assert saved.status_code == 200
    assert vendor['name'] == 'Kéfir Mada'
    assert vendor['nif'] == '1234567890123'
    assert analytics['totalCustomers'] == 1
    assert analytics['activeCustomers'] == 1


def test_migration_runs_once(client, configure_environment):
    first = client.post('/api/migrate', headers=OWNER)
    second = client.post('/api/migrate', headers=OWNER)
    forced = client.post('/api/migrate', json={'force': True}, headers=OWNER)

    assert first.status_code == 201
    assert first.get_json()['total'] == 13
    assert first.get_json()['counts']['contacts'] == 3
    assert second.status_code == 409
    assert forced.status_code == 201
    assert configure_environment['store'].count('contacts') == 6

    state = client.get('/api/state', headers=OWNER).get_json()
    assert state['migrationRecommended'] is False
    assert len(state['products']) == 8


def test_local_dataset_file_is_used(client, configure_environment):
    dataset_path = configure_environment['data_dir'] / 'local_dataset.json'
    dataset_path.write_text(json.dumps({'contacts': [{'id': '9', 'name': 'Fara'}]}), encoding='utf-8')

    local = client.post('/api/local-mode', headers=OWNER).get_json()

    assert [contact['name'] for contact in local['contacts']] == ['Fara']


def test_unreadable_local_dataset_is_reported(client, configure_environment):
    dataset_path = configure_environment['data_dir'] / 'local_dataset.json'
    dataset_path.write_text(json.dumps({'contacts': 'oops'}), encoding='utf-8')

    response = client.get('/api/state', headers=OWNER)

    assert response.status_code == 500
    assert 'Local dataset is unreadable' in response.get_json()['message']


def test_timezone_setting(configure_environment):
    settings_path = configure_environment['data_dir'] / 'settings.json'
    settings_path.write_text(json.dumps({'timezone': 'Indian/Antananarivo'}), encoding='utf-8')
    assert hub_app.get_hub('u1').timezone_name == 'Indian/Antananarivo'

    settings_path.write_text(json.dumps({'timezone': 'Nowhere/Special'}), encoding='utf-8')
    assert hub_app.get_hub('u2').timezone_name == 'UTC'


def test_hubs_are_isolated_per_owner(client):
    client.post('/api/contacts', json={'name': 'Rasoa'}, headers=OWNER)

    other = client.get('/api/state', headers={'X-Owner-Id': 'u2'}).get_json()

    assert other['contacts'] == []


def test_end_session_closes_the_hub(client, configure_environment):
    client.get('/api/state', headers=OWNER)
    assert configure_environment['store'].listener_count() == 6

    response = client.delete('/api/session', headers=OWNER)

    assert response.status_code == 200
    assert configure_environment['store'].listener_count() == 0


class TestFirebaseAuth:
    @pytest.fixture(autouse=True)
    def firebase_mode(self, monkeypatch):
        hub_app.app.config['AUTH_MODE'] = 'firebase'
        monkeypatch.setattr(hub_app, '_ensure_firebase_app', lambda: None)

        def fake_verify(token):
            if token != 'good-token':
                raise ValueError('bad token')
            return {'uid': 'firebase-user'}

        monkeypatch.setattr(hub_app.firebase_auth, 'verify_id_token', fake_verify)

    def test_valid_token_selects_owner(self, client):
        response = client.get('/api/state', headers={'Authorization': 'Bearer good-token'})

        assert response.status_code == 200
        assert response.get_json()['ownerId'] == 'firebase-user'

    def test_invalid_or_missing_token_is_rejected(self, client):
        assert client.get('/api/state', headers={'Authorization': 'Bearer nope'}).status_code == 401
        assert client.get('/api/state', headers=OWNER).status_code == 401
