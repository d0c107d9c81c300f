import logging
import os
from datetime import date, datetime
from enum import Enum
from threading import Lock
from typing import Any, Callable, Dict, Optional

import firebase_admin
import pytz
from dotenv import load_dotenv
from firebase_admin import auth as firebase_auth
from flask import Flask, jsonify, request

from data_paths import ensure_data_root, local_dataset_file, read_json_file, settings_file
from services.data_hub import DataHub, HubStateError, NotAuthenticated
from services.firestore_store import create_document_store
from services.local_data import LocalDatasetError, load_local_dataset
from services.migration import MigrationError
from services.records import CONTACTS, NOTES, ORDERS, PRODUCTS, REMINDERS, RecordValidationError
from services.store import DocumentStore, StoreError, StoreErrorKind

# Load environment variables from .env file
load_dotenv()

logging.basicConfig(
    level=os.getenv('LOG_LEVEL', 'INFO').upper(),
    format='%(asctime)s %(levelname)s %(name)s: %(message)s',
)

# --- App Initialization ---
DEFAULT_PORT = 5002

app = Flask(__name__)
app.json.sort_keys = False

ensure_data_root()

ENTITY_ROUTES = {
    CONTACTS: ('add_contact', 'update_contact', 'delete_contact'),
    PRODUCTS: ('add_product', 'update_product', 'delete_product'),
    ORDERS: ('add_order', 'update_order', 'delete_order'),
    NOTES: ('add_note', 'update_note', 'delete_note'),
    REMINDERS: ('add_reminder', 'update_reminder', 'delete_reminder'),
}

_store_lock = Lock()
_document_store: Optional[DocumentStore] = None
_hubs_lock = Lock()
_hubs: Dict[str, DataHub] = {}


def get_document_store() -> DocumentStore:
    global _document_store
    configured = app.config.get('DOCUMENT_STORE')
    if configured is not None:
        return configured
    with _store_lock:
        if _document_store is None:
            _document_store = create_document_store()
        return _document_store


def _resolve_timezone_setting() -> str:
    settings = read_json_file(settings_file())
    if isinstance(settings, dict):
        tz_value = (settings.get('timezone') or 'UTC').strip() or 'UTC'
    else:
        tz_value = 'UTC'
    try:
        pytz.timezone(tz_value)
    except pytz.UnknownTimeZoneError:
        app.logger.warning("Unknown timezone '%s' in settings; using UTC", tz_value)
        tz_value = 'UTC'
    return tz_value


def get_hub(owner_id: str) -> DataHub:
    """Return the owner's hub, creating and initialising it on first use."""
    with _hubs_lock:
        hub = _hubs.get(owner_id)
        if hub is not None:
            return hub
        hub = DataHub(
            get_document_store(),
            local_dataset=load_local_dataset(local_dataset_file()),
            timezone_name=_resolve_timezone_setting(),
        )
        _hubs[owner_id] = hub
    hub.start_session(owner_id)
    return hub


def reset_hubs() -> None:
    """Close every hub; used on shutdown and between tests."""
    with _hubs_lock:
        hubs = list(_hubs.values())
        _hubs.clear()
    for hub in hubs:
        hub.close()


# --- Authentication ---


def _ensure_firebase_app() -> None:
    if not firebase_admin._apps:
        firebase_admin.initialize_app()


def _current_owner_id() -> Optional[str]:
    mode = (app.config.get('AUTH_MODE') or os.getenv('KEFIR_AUTH_MODE') or 'header').lower()
    if mode == 'firebase':
        header = request.headers.get('Authorization', '')
        if not header.startswith('Bearer '):
            return None
        token = header[len('Bearer '):].strip()
        _ensure_firebase_app()
        try:
            decoded = firebase_auth.verify_id_token(token)
        except (ValueError, firebase_auth.InvalidIdTokenError, firebase_auth.ExpiredIdTokenError,
                firebase_auth.RevokedIdTokenError, firebase_auth.CertificateFetchError) as exc:
            app.logger.warning('Rejected Firebase ID token: %s', exc)
            return None
        return decoded.get('uid')
    owner_id = (request.headers.get('X-Owner-Id') or '').strip()
    return owner_id or None


# --- Serialisation ---


def _serialise(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {key: _serialise(entry) for key, entry in value.items()}
    if isinstance(value, (list, tuple)):
        return [_serialise(entry) for entry in value]
    return value


_STORE_ERROR_STATUS = {
    StoreErrorKind.NOT_FOUND: 404,
    StoreErrorKind.PERMISSION_DENIED: 403,
}


def _with_hub(action: Callable[[DataHub], Any]):
    """Run ``action`` against the caller's hub, translating failures into JSON errors."""
    owner_id = _current_owner_id()
    if not owner_id:
        return jsonify({'message': 'Authentication required'}), 401
    try:
        return action(get_hub(owner_id))
    except NotAuthenticated as exc:
        return jsonify({'message': str(exc)}), 401
    except RecordValidationError as err:
        return jsonify({'message': 'Validation failed', 'errors': err.errors}), 400
    except HubStateError as exc:
        return jsonify({'message': str(exc)}), 409
    except MigrationError as exc:
        return jsonify({'message': str(exc)}), 409
    except StoreError as exc:
        app.logger.error('Store error for %s: %r', owner_id, exc)
        return jsonify({'message': exc.message, 'kind': exc.kind.value}), _STORE_ERROR_STATUS.get(exc.kind, 502)


def _state_response(hub: DataHub, status: int = 200):
    return jsonify(_serialise(hub.view())), status


# --- Routes ---


@app.route('/api/state', methods=['GET'])
def api_state():
    return _with_hub(_state_response)


@app.route('/api/initialize', methods=['POST'])
def api_initialize():
    def _initialize(hub: DataHub):
        hub.initialize_data()
        return _state_response(hub)

    return _with_hub(_initialize)


@app.route('/api/local-mode', methods=['POST'])
def api_local_mode():
    def _local(hub: DataHub):
        hub.use_local_mode()
        return _state_response(hub)

    return _with_hub(_local)


@app.route('/api/session', methods=['DELETE'])
def api_end_session():
    owner_id = _current_owner_id()
    if not owner_id:
        return jsonify({'message': 'Authentication required'}), 401
    with _hubs_lock:
        hub = _hubs.pop(owner_id, None)
    if hub is not None:
        hub.close()
    return jsonify({'message': 'Session closed'})


@app.route('/api/<string:collection>', methods=['POST'])
def api_create_entity(collection):
    if collection not in ENTITY_ROUTES:
        return jsonify({'message': f'Unknown collection {collection}'}), 404
    payload = request.get_json(force=True, silent=True)
    if not isinstance(payload, dict):
        return jsonify({'message': 'Request body must be a JSON object'}), 400
    add_name = ENTITY_ROUTES[collection][0]

    def _create(hub: DataHub):
        new_id = getattr(hub, add_name)(payload)
        return jsonify({'id': new_id}), 201

    return _with_hub(_create)


@app.route('/api/<string:collection>/<string:doc_id>', methods=['PUT', 'DELETE'])
def api_entity_detail(collection, doc_id):
    if collection not in ENTITY_ROUTES:
        return jsonify({'message': f'Unknown collection {collection}'}), 404
    _, update_name, delete_name = ENTITY_ROUTES[collection]
    if request.method == 'DELETE':
        def _delete(hub: DataHub):
            getattr(hub, delete_name)(doc_id)
            return jsonify({'message': 'Deleted'})

        return _with_hub(_delete)

    payload = request.get_json(force=True, silent=True)
    if not isinstance(payload, dict):
        return jsonify({'message': 'Request body must be a JSON object'}), 400

    def _update(hub: DataHub):
        getattr(hub, update_name)(doc_id, payload)
        return jsonify({'message': 'Updated'})

    return _with_hub(_update)


@app.route('/api/vendor-info', methods=['GET', 'PUT'])
def api_vendor_info():
    if request.method == 'GET':
        return _with_hub(lambda hub: jsonify(_serialise(hub.vendor_info())))
    payload = request.get_json(force=True, silent=True)
    if not isinstance(payload, dict):
        return jsonify({'message': 'Request body must be a JSON object'}), 400

    def _save(hub: DataHub):
        hub.set_vendor_info(payload)
        return jsonify(_serialise(hub.vendor_info()))

    return _with_hub(_save)


@app.route('/api/analytics', methods=['GET'])
def api_analytics():
    return _with_hub(lambda hub: jsonify(_serialise(hub.analytics().as_dict())))


@app.route('/api/migrate', methods=['POST'])
def api_migrate():
    payload = request.get_json(force=True, silent=True) or {}
    force = bool(payload.get('force')) if isinstance(payload, dict) else False

    def _migrate(hub: DataHub):
        result = hub.migrate_local_data(force=force)
        app.logger.info('Migrated %d records for %s', result.total, result.owner_id)
        return jsonify({'message': 'Migration completed', 'total': result.total, 'counts': result.counts}), 201

    return _with_hub(_migrate)


@app.errorhandler(LocalDatasetError)
def _local_dataset_error(exc):
    app.logger.error('Local dataset is unreadable: %s', exc)
    return jsonify({'message': f'Local dataset is unreadable: {exc}'}), 500


def main():
    port = int(os.getenv('KEFIR_PORT', DEFAULT_PORT))
    app.logger.info('Starting server on port %s', port)
    app.run(host='0.0.0.0', port=port, debug=False)


if __name__ == '__main__':
    main()
