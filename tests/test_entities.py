import pathlib
import sys
from datetime import datetime, timedelta, timezone

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from services.entities import EntityCollectionService, VendorProfileService, build_collection_services
from services.local_data import sample_dataset
from services.migration import MigrationService
from services.records import CONTACTS, ORDERS, REMINDERS, VENDOR_INFO, RecordValidationError, get_schema
from services.store import InMemoryDocumentStore, StoreError, StoreErrorKind


@pytest.fixture()
def store():
    return InMemoryDocumentStore(seed=11)


@pytest.fixture()
def services(store):
    return build_collection_services(store)


def _order(day: int) -> dict:
    return {'customerId': 'c1', 'orderDate': datetime(2024, 4, day, tzinfo=timezone.utc), 'totalAmount': 10.0 * day}


def test_add_then_get_is_scoped_to_owner(services):
    contacts = services[CONTACTS]

    new_id = contacts.add({'name': 'Rasoa', 'totalSpent': 0}, 'u1')

    owned = contacts.get_all('u1')
    assert len(owned) == 1
    assert owned[0]['id'] == new_id
    assert owned[0]['name'] == 'Rasoa'
    assert owned[0]['userId'] == 'u1'
    assert isinstance(owned[0]['createdAt'], datetime)
    assert owned[0]['createdAt'] == owned[0]['updatedAt']
    assert contacts.get_all('u2') == []


def test_get_all_never_leaks_other_owners(services):
    contacts = services[CONTACTS]
    for index in range(3):
        contacts.add({'name': f'Owner one {index}'}, 'u1')
        contacts.add({'name': f'Owner two {index}'}, 'u2')

    assert {record['userId'] for record in contacts.get_all('u1')} == {'u1'}
    assert {record['userId'] for record in contacts.get_all('u2')} == {'u2'}


def test_get_by_id_returns_none_for_missing(services):
    assert services[CONTACTS].get_by_id('does-not-exist') is None


def test_dates_round_trip_as_native_datetimes(services):
    orders = services[ORDERS]
    order_date = datetime(2024, 4, 2, 8, 15, 30, 250000, tzinfo=timezone.utc)

    order_id = orders.add({'customerId': 'c1', 'orderDate': order_date}, 'u1')

    assert orders.get_by_id(order_id)['orderDate'] == order_date


def test_orders_are_returned_newest_first(services):
    orders = services[ORDERS]
    for day in (2, 9, 5):
        orders.add(_order(day), 'u1')

    dates = [record['orderDate'].day for record in orders.get_all('u1')]

    assert dates == [9, 5, 2]


def test_reminders_are_returned_soonest_first(services):
    reminders = services[REMINDERS]
    base = datetime(2024, 6, 1, tzinfo=timezone.utc)
    for offset in (3, 1, 2):
        reminders.add({'title': f'T{offset}', 'dueDate': base + timedelta(days=offset)}, 'u1')

    assert [record['title'] for record in reminders.get_all('u1')] == ['T1', 'T2', 'T3']


def test_update_changes_only_the_patched_field(services):
    contacts = services[CONTACTS]
    contact_id = contacts.add({'name': 'Hery', 'phone': '+261 33 00 000 00', 'totalSpent': 50}, 'u1')
    before = contacts.get_by_id(contact_id)

    contacts.update(contact_id, {'totalSpent': 75})

    after = contacts.get_by_id(contact_id)
    assert after['totalSpent'] == 75.0
    assert after['phone'] == before['phone']
    assert after['name'] == before['name']
    assert after['createdAt'] == before['createdAt']
    assert after['updatedAt'] >= before['updatedAt']


def test_update_rejects_invalid_patch_without_writing(services):
    contacts = services[CONTACTS]
    contact_id = contacts.add({'name': 'Hery'}, 'u1')

    with pytest.raises(RecordValidationError):
        contacts.update(contact_id, {'customerStatus': 'vip'})

    assert contacts.get_by_id(contact_id)['customerStatus'] == 'active'


def test_update_of_missing_document_raises_not_found(services):
    with pytest.raises(StoreError) as excinfo:
        services[CONTACTS].update('missing', {'name': 'Nobody'})

    assert excinfo.value.kind is StoreErrorKind.NOT_FOUND


def test_owner_check_blocks_cross_owner_writes(services):
    contacts = services[CONTACTS]
    contact_id = contacts.add({'name': 'Rasoa'}, 'u1')

    with pytest.raises(StoreError) as excinfo:
        contacts.update(contact_id, {'name': 'Stolen'}, owner_id='u2')
    assert excinfo.value.kind is StoreErrorKind.PERMISSION_DENIED

    with pytest.raises(StoreError):
        contacts.delete(contact_id, owner_id='u2')

    assert contacts.get_by_id(contact_id)['name'] == 'Rasoa'


def test_delete_is_permanent_and_missing_is_success(services):
    contacts = services[CONTACTS]
    keep_id = contacts.add({'name': 'Keep'}, 'u1')
    drop_id = contacts.add({'name': 'Drop'}, 'u1')

    contacts.delete(drop_id, owner_id='u1')
    contacts.delete(drop_id, owner_id='u1')
    contacts.delete('never-existed')

    assert [record['id'] for record in contacts.get_all('u1')] == [keep_id]


def test_add_failure_propagates(store, services):
    store.inject_failure('add', StoreError(StoreErrorKind.PERMISSION_DENIED, 'denied'), collection=CONTACTS)

    with pytest.raises(StoreError) as excinfo:
        services[CONTACTS].add({'name': 'Rasoa'}, 'u1')

    assert excinfo.value.kind is StoreErrorKind.PERMISSION_DENIED
    assert store.count(CONTACTS) == 0


class TestSubscriptions:
    def test_delivers_full_sorted_lists(self, services):
        contacts = services[CONTACTS]
        a_id = contacts.add({'name': 'Andry'}, 'u1')
        b_id = contacts.add({'name': 'Bako'}, 'u1')
        snapshots = []

        unsubscribe = contacts.subscribe('u1', snapshots.append)
        contacts.update(b_id, {'phone': '+261 34 00 000 00'})

        assert [[record['name'] for record in snapshot] for snapshot in snapshots] == [
            ['Andry', 'Bako'],
            ['Andry', 'Bako'],
        ]
        assert snapshots[-1][1]['id'] == b_id
        assert snapshots[-1][1]['phone'] == '+261 34 00 000 00'
        assert snapshots[-1][0]['id'] == a_id
        unsubscribe()

    def test_ignores_other_owners(self, services):
        contacts = services[CONTACTS]
        snapshots = []
        contacts.subscribe('u1', snapshots.append)

        contacts.add({'name': 'Someone else'}, 'u2')

        assert snapshots == [[]]

    def test_unsubscribe_is_idempotent_and_final(self, store, services):
        contacts = services[CONTACTS]
        snapshots = []
        unsubscribe = contacts.subscribe('u1', snapshots.append)

        unsubscribe()
        unsubscribe()
        contacts.add({'name': 'Late'}, 'u1')

        assert snapshots == [[]]
        assert store.listener_count() == 0

    def test_error_is_reported_once_and_stops_delivery(self, store, services):
        contacts = services[CONTACTS]
        snapshots = []
        errors = []
        contacts.subscribe('u1', snapshots.append, errors.append)

        store.break_listeners(StoreError(StoreErrorKind.PERMISSION_DENIED, 'rules changed'))
        store.break_listeners(StoreError(StoreErrorKind.TRANSPORT, 'again'))
        contacts.add({'name': 'After failure'}, 'u1')

        assert [error.kind for error in errors] == [StoreErrorKind.PERMISSION_DENIED]
        assert snapshots == [[]]


class TestVendorProfile:
    def test_set_twice_keeps_a_single_document(self, store):
        vendor = VendorProfileService(store)

        first_id = vendor.set({'name': 'Kéfir Madagascar SARL', 'nif': ''}, 'u1')
        second_id = vendor.set({'name': 'Kéfir Mada', 'nif': '1234567890123'}, 'u1')

        assert first_id == second_id
        assert store.count(VENDOR_INFO) == 1
        profile = vendor.get('u1')
        assert profile['name'] == 'Kéfir Mada'
        assert profile['nif'] == '1234567890123'

    def test_set_after_migration_collapses_duplicates(self, store):
        vendor = VendorProfileService(store)
        vendor.set({'name': 'First'}, 'u1')
        MigrationService(store).migrate_all(sample_dataset(), 'u1')
        assert store.count(VENDOR_INFO) == 2

        kept_id = vendor.set({'name': 'Final'}, 'u1')

        assert [profile['name'] for profile in vendor.get_all('u1')] == ['Final']
        assert vendor.get('u1')['id'] == kept_id

    def test_profiles_are_per_owner(self, store):
        vendor = VendorProfileService(store)

        vendor.set({'name': 'One'}, 'u1')
        vendor.set({'name': 'Two'}, 'u2')

        assert store.count(VENDOR_INFO) == 2
        assert vendor.get('u1')['name'] == 'One'
        assert vendor.get('u3') is None

    def test_registry_uses_the_vendor_service(self, services):
        assert isinstance(services[VENDOR_INFO], VendorProfileService)
        assert isinstance(services[CONTACTS], EntityCollectionService)
        assert services[CONTACTS].schema is not get_schema(ORDERS)
