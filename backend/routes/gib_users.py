"""
GIB Registered User API Routes

Endpoint: /api/v1/*

Per category (einvoice, edespatch):
- GET  /api/v1/<category>/<identifier>?firstCreationTime=   point lookup
- GET  /api/v1/<category>/?search=&page=&pageSize=          title / identifier search
- POST /api/v1/<category>/batch   {"identifiers": [...]}    batch lookup (max 100)
- GET  /api/v1/<category>/changes?since=&until=&page=&pageSize=
- GET  /api/v1/<category>/archives
- GET  /api/v1/<category>/archives/latest
- GET  /api/v1/<category>/archives/<fileName>

Plus:
- GET  /api/v1/status

Every response carries X-Last-Sync-At (ISO, registry local time) once a sync
has completed. A `since` older than the retained change log answers 410 and
the consumer has to re-sync from the latest archive.

This is a THIN route handler - all query logic is in services/gib_user_reader.py.
"""

import logging

from flask import Blueprint, current_app, jsonify, request, send_file
from pydantic import ValidationError as PydanticValidationError
from werkzeug.routing import BaseConverter, ValidationError as RoutingValidationError

from api.contracts.pydantic_models import (
    ArchiveListParams,
    ChangesParams,
    UserBatchParams,
    UserLookupParams,
    UserSearchParams,
)
from api.middleware.error_envelope import make_error_response
from constants import Category
from services.gib_errors import ArchiveStorageError
from services.gib_user_reader import Expired
from utils.normalize import ValidationError

logger = logging.getLogger(__name__)

gib_users_bp = Blueprint('gib_users', __name__)

LAST_SYNC_HEADER = 'X-Last-Sync-At'


class CategoryConverter(BaseConverter):
    """URL converter: 'einvoice' / 'edespatch' -> Category. Unknown tokens do not match (404)."""

    def to_python(self, value):
        try:
            return Category.parse(value)
        except ValueError:
            raise RoutingValidationError()

    def to_url(self, value):
        return Category.parse(value).value


def _reader():
    return current_app.extensions['gib_user_reader']


def _params_error(error: PydanticValidationError):
    first = error.errors()[0]
    field = '.'.join(str(part) for part in first.get('loc', ())) or None
    message = first.get('msg', 'Invalid parameters')
    if message.startswith('Value error, '):
        message = message[len('Value error, '):]
    return make_error_response('INVALID_PARAMS', message, field=field)


def _normalize_error(error: ValidationError):
    details = {'received_value': str(error.received_value)} if error.received_value is not None else None
    return make_error_response('INVALID_PARAMS', str(error), field=error.field, details=details)


@gib_users_bp.after_request
def add_last_sync_header(response):
    """Add X-Last-Sync-At to every registry response."""
    provider = current_app.extensions.get('gib_sync_time')
    if provider is None:
        return response
    try:
        last_sync_at = provider.get_last_sync_at()
    except Exception as e:
        logger.warning(f"Could not read last sync time: {e}")
        return response
    if last_sync_at is not None:
        response.headers[LAST_SYNC_HEADER] = last_sync_at.isoformat()
    return response


# --- Users ---

@gib_users_bp.route("/<category:category>/<identifier>", methods=["GET"])
def get_user(category, identifier):
    """
    Get one registered user by VKN/TCKN.

    Query params:
        - firstCreationTime: only match users registered at or before it (optional)
    """
    try:
        params = UserLookupParams(
            category=category,
            identifier=identifier,
            firstCreationTime=request.args.get('firstCreationTime'),
        )
        user = _reader().get_by_identifier(params.category, params.identifier, params.as_of)
    except PydanticValidationError as e:
        return _params_error(e)
    except ValidationError as e:
        return _normalize_error(e)

    if user is None:
        return make_error_response(
            'NOT_FOUND',
            f"No {category.document_tag} user registered with identifier {identifier}",
        )
    return jsonify(user)


@gib_users_bp.route("/<category:category>/", methods=["GET"], strict_slashes=False)
def search_users(category):
    """
    Search users by title (Turkish case-insensitive) or identifier substring.

    Query params:
        - search: 1-200 chars (required)
        - page: default 1
        - pageSize: 1-100, default 20
    """
    try:
        params = UserSearchParams(**{**request.args.to_dict(), 'category': category})
        result = _reader().search(params.category, params.search, params.page, params.page_size)
    except PydanticValidationError as e:
        return _params_error(e)
    except ValidationError as e:
        return _normalize_error(e)
    return jsonify(result)


@gib_users_bp.route("/<category:category>/batch", methods=["POST"])
def batch_users(category):
    """
    Look up up to 100 identifiers at once.

    Body:
        {"identifiers": ["1234567890", ...]}
    """
    body = request.get_json(silent=True) or {}
    try:
        params = UserBatchParams(category=category, identifiers=body.get('identifiers'))
        result = _reader().get_by_identifiers(params.category, params.identifiers)
    except PydanticValidationError as e:
        return _params_error(e)
    except ValidationError as e:
        return _normalize_error(e)
    return jsonify(result)


# --- Change feed ---

@gib_users_bp.route("/<category:category>/changes", methods=["GET"])
def get_changes(category):
    """
    Change events after `since`, oldest first.

    Query params:
        - since: exclusive lower bound (required)
        - until: inclusive upper bound, capped at now (optional)
        - page: default 1
        - pageSize: 1-1000, default 100

    Returns 410 when `since` predates the retained change log.
    """
    try:
        params = ChangesParams(**{**request.args.to_dict(), 'category': category})
        result = _reader().get_changes_since(
            params.category, params.since, params.page, params.page_size, params.until,
        )
    except PydanticValidationError as e:
        return _params_error(e)
    except ValidationError as e:
        return _normalize_error(e)

    if isinstance(result, Expired):
        return make_error_response(
            'DELTA_EXPIRED',
            "Delta expired",
            details=result.to_dict(),
            hint=(
                f"Changes before {result.oldest_change_at.isoformat()} are no longer retained. "
                f"Download the latest archive from /api/v1/{category.value}/archives/latest "
                "and re-sync in full."
            ),
        )
    return jsonify(result)


# --- Archives ---

@gib_users_bp.route("/<category:category>/archives", methods=["GET"])
def list_archives(category):
    params = ArchiveListParams(category=category)
    return jsonify({'archives': _reader().list_archives(params.category)})


@gib_users_bp.route("/<category:category>/archives/latest", methods=["GET"])
def download_latest_archive(category):
    archive = _reader().get_latest_archive(category)
    if archive is None:
        return make_error_response('NOT_FOUND', f"No archive available for {category.value}")
    download_name, stream = archive
    return send_file(stream, mimetype='application/gzip', as_attachment=True, download_name=download_name)


@gib_users_bp.route("/<category:category>/archives/<file_name>", methods=["GET"])
def download_archive(category, file_name):
    try:
        archive = _reader().get_archive(category, file_name)
    except (ValidationError, ArchiveStorageError) as e:
        return make_error_response('INVALID_PARAMS', str(e), field='fileName')

    if archive is None:
        return make_error_response('NOT_FOUND', f"Archive not found: {file_name}")
    download_name, stream = archive
    return send_file(stream, mimetype='application/gzip', as_attachment=True, download_name=download_name)


# --- Status ---

@gib_users_bp.route("/status", methods=["GET"])
def get_status():
    """Last sync outcome and current user counts."""
    return jsonify(_reader().get_sync_status())
