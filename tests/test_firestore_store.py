import pathlib
import sys
import threading
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from google.api_core import exceptions as google_exceptions
from google.cloud import firestore

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from services import firestore_store
from services.firestore_store import FirestoreDocumentStore, classify_exception, create_document_store
from services.store import SERVER_TIMESTAMP, InMemoryDocumentStore, StoreError, StoreErrorKind
from services.timestamps import Timestamp


def _snapshot(doc_id, data, exists=True):
    snapshot = MagicMock()
    snapshot.id = doc_id
    snapshot.exists = exists
    snapshot.to_dict.return_value = data
    return snapshot


@pytest.fixture()
def client():
    return MagicMock()


@pytest.fixture()
def store(client):
    return FirestoreDocumentStore(client, watchdog_interval=60)


@pytest.mark.parametrize(
    'exc, expected',
    [
        (google_exceptions.PermissionDenied('Missing or insufficient permissions.'), StoreErrorKind.PERMISSION_DENIED),
        (google_exceptions.Unauthenticated('token expired'), StoreErrorKind.PERMISSION_DENIED),
        (google_exceptions.FailedPrecondition('The query requires an index.'), StoreErrorKind.MISSING_INDEX),
        (google_exceptions.FailedPrecondition('Transaction aborted'), StoreErrorKind.OTHER),
        (google_exceptions.NotFound('No document to update'), StoreErrorKind.NOT_FOUND),
        (google_exceptions.ServiceUnavailable('backend down'), StoreErrorKind.TRANSPORT),
        (google_exceptions.DeadlineExceeded('slow'), StoreErrorKind.TRANSPORT),
        (google_exceptions.InvalidArgument('Value is too large'), StoreErrorKind.OTHER),
        (RuntimeError('boom'), StoreErrorKind.OTHER),
    ],
)
def test_classify_exception(exc, expected):
    assert classify_exception(exc).kind is expected


def test_classify_exception_passes_store_errors_through():
    error = StoreError(StoreErrorKind.NOT_FOUND, 'gone')

    assert classify_exception(error) is error


def test_query_uses_field_filter_and_decodes_timestamps(client, store):
    created = datetime(2024, 4, 1, 9, 30, tzinfo=timezone.utc)
    where = client.collection.return_value.where
    where.return_value.stream.return_value = [
        _snapshot('a1', {'userId': 'u1', 'createdAt': created, 'items': [{'at': created}]}),
    ]

    documents = store.query('orders', 'userId', 'u1')

    client.collection.assert_called_with('orders')
    field_filter = where.call_args.kwargs['filter']
    assert (field_filter.field_path, field_filter.op_string, field_filter.value) == ('userId', '==', 'u1')
    assert [document.id for document in documents] == ['a1']
    assert documents[0].data['createdAt'] == Timestamp.from_datetime(created)
    assert documents[0].data['items'][0]['at'] == Timestamp.from_datetime(created)


def test_query_failure_is_classified(client, store):
    client.collection.return_value.where.return_value.stream.side_effect = google_exceptions.PermissionDenied(
        'Missing or insufficient permissions.'
    )

    with pytest.raises(StoreError) as excinfo:
        store.query('contacts', 'userId', 'u1')

    assert excinfo.value.kind is StoreErrorKind.PERMISSION_DENIED


def test_add_encodes_sentinels_and_timestamps(client, store):
    doc_ref = client.collection.return_value.document.return_value
    doc_ref.id = 'generated-id'
    due = Timestamp.from_datetime(datetime(2024, 5, 1, tzinfo=timezone.utc))

    new_id = store.add('reminders', {'userId': 'u1', 'dueDate': due, 'createdAt': SERVER_TIMESTAMP})

    assert new_id == 'generated-id'
    written = doc_ref.set.call_args.args[0]
    assert written['createdAt'] is firestore.SERVER_TIMESTAMP
    assert written['dueDate'] == datetime(2024, 5, 1, tzinfo=timezone.utc)


def test_get_missing_document_returns_none(client, store):
    client.collection.return_value.document.return_value.get.return_value = _snapshot('x', None, exists=False)

    assert store.get('contacts', 'x') is None


def test_update_of_missing_document_is_not_found(client, store):
    client.collection.return_value.document.return_value.update.side_effect = google_exceptions.NotFound(
        'No document to update: contacts/x'
    )

    with pytest.raises(StoreError) as excinfo:
        store.update('contacts', 'x', {'name': 'Rasoa'})

    assert excinfo.value.kind is StoreErrorKind.NOT_FOUND


def test_batch_creates_then_commits_once(client, store):
    client.collection.return_value.document.side_effect = [MagicMock(id='d1'), MagicMock(id='d2')]
    batch = store.batch()

    ids = [batch.create('products', {'name': 'Kombucha'}), batch.create('products', {'name': 'Kéfir'})]
    batch.commit()

    assert ids == ['d1', 'd2']
    assert len(batch) == 2
    assert client.batch.return_value.set.call_count == 2
    client.batch.return_value.commit.assert_called_once_with()


def test_batch_commit_failure_is_classified(client, store):
    client.batch.return_value.commit.side_effect = google_exceptions.ServiceUnavailable('backend down')
    batch = store.batch()
    batch.create('products', {'name': 'Kombucha'})

    with pytest.raises(StoreError) as excinfo:
        batch.commit()

    assert excinfo.value.kind is StoreErrorKind.TRANSPORT


def test_listen_delivers_decoded_snapshots_until_unsubscribed(client, store):
    on_snapshot = client.collection.return_value.where.return_value.on_snapshot
    watch = on_snapshot.return_value
    received = []

    handle = store.listen('notes', 'userId', 'u1', received.append)
    callback = on_snapshot.call_args.args[0]
    callback([_snapshot('n1', {'userId': 'u1'})], [], datetime(2024, 4, 1, 10, tzinfo=timezone.utc))
    callback([_snapshot('n0', {'userId': 'u1'})], [], datetime(2024, 4, 1, 9, tzinfo=timezone.utc))
    handle.unsubscribe()
    callback([_snapshot('n2', {'userId': 'u1'})], [], datetime(2024, 4, 1, 11, tzinfo=timezone.utc))

    assert [[document.id for document in documents] for documents in received] == [['n1']]
    watch.unsubscribe.assert_called_once_with()


def test_watchdog_reports_a_dead_listener(client):
    store = FirestoreDocumentStore(client, watchdog_interval=0.01)
    watch = client.collection.return_value.where.return_value.on_snapshot.return_value
    watch.is_active = False
    detached = threading.Event()
    watch.unsubscribe.side_effect = detached.set
    errors = []

    store.listen('orders', 'userId', 'u1', lambda documents: None, errors.append)

    assert detached.wait(timeout=5)
    assert [error.kind for error in errors] == [StoreErrorKind.TRANSPORT]


class TestStoreFactory:
    def test_memory_backend(self):
        assert isinstance(create_document_store('memory'), InMemoryDocumentStore)

    def test_backend_from_environment(self, monkeypatch):
        monkeypatch.setenv('KEFIR_STORE_BACKEND', 'Memory')

        assert isinstance(create_document_store(), InMemoryDocumentStore)

    def test_firestore_backend_uses_project(self, monkeypatch):
        fake_client = MagicMock()
        monkeypatch.setattr(firestore_store.firestore, 'Client', fake_client)

        created = create_document_store('firestore', project_id='kefir-mada')

        assert isinstance(created, FirestoreDocumentStore)
        fake_client.assert_called_once_with(project='kefir-mada')

    def test_unknown_backend_is_rejected(self):
        with pytest.raises(ValueError):
            create_document_store('sqlite')
