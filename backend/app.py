"""
Flask Application Factory - GIB registered user read API

Serves the synced e-Invoice / e-Despatch registry from the derived views:
point lookups, batch lookups, search, the change feed, snapshot archives,
sync status and Prometheus metrics.

The sync job itself runs out of process (services/gib_sync_engine.py,
scripts/gib_sync.py); this app only reads what it committed.
"""

import logging
import os

from flask import Flask, Response, jsonify
from flask_cors import CORS
from prometheus_client import CONTENT_TYPE_LATEST

from config import Config

logger = logging.getLogger(__name__)


def _web_session():
    from db.engine import session_factory
    return session_factory("web")()


def create_app(reader=None, metrics=None, sync_time=None):
    """
    Build the API app.

    reader, metrics and sync_time can be injected (tests); by default they are
    wired against the "web" engine, the configured cache provider and a
    private Prometheus registry.
    """
    app = Flask(__name__)
    app.config.from_object(Config)

    # Initialize CORS - public read API, allow all origins
    CORS(app,
         resources={r"/api/*": {"origins": "*"}},
         methods=["GET", "POST", "OPTIONS"],
         allow_headers=["Content-Type", "X-Request-ID"],
         expose_headers=["X-Request-ID", "X-Last-Sync-At"],
         supports_credentials=False,
         send_wildcard=True)

    # === API CONTRACT MIDDLEWARE ===
    from api.middleware import setup_error_handlers, setup_request_id_middleware
    setup_request_id_middleware(app)
    setup_error_handlers(app)

    # === SERVICES ===
    from services.gib_cache import build_cache_service
    from services.gib_metrics import PrometheusMetrics, SyncGaugeRefresher
    from services.gib_sync_config import (
        get_gauge_refresh_seconds,
        get_sync_time_ttl_seconds,
        is_gauge_refresher_enabled,
    )
    from services.gib_sync_metadata import SyncMetadataStore, SyncTimeProvider
    from services.gib_user_reader import GibUserReader

    metrics = metrics or PrometheusMetrics()
    metadata = SyncMetadataStore(_web_session)
    if reader is None:
        reader = GibUserReader(_web_session, cache=build_cache_service(), metrics=metrics, metadata=metadata)
    if sync_time is None:
        sync_time = SyncTimeProvider(metadata.fetch_last_sync_at, ttl_seconds=get_sync_time_ttl_seconds())

    app.extensions['gib_user_reader'] = reader
    app.extensions['gib_metrics'] = metrics
    app.extensions['gib_sync_time'] = sync_time

    if is_gauge_refresher_enabled() and not app.config.get('TESTING'):
        refresher = SyncGaugeRefresher(metrics, metadata.fetch, interval_seconds=get_gauge_refresh_seconds())
        refresher.start()
        app.extensions['gib_gauge_refresher'] = refresher

    # === ROUTES ===
    from routes.gib_users import CategoryConverter, gib_users_bp
    app.url_map.converters['category'] = CategoryConverter
    app.register_blueprint(gib_users_bp, url_prefix='/api/v1')

    @app.route("/metrics", methods=["GET"])
    def prometheus_metrics():
        return Response(app.extensions['gib_metrics'].render(), mimetype=CONTENT_TYPE_LATEST)

    @app.route("/health", methods=["GET"])
    def health():
        return jsonify({"status": "ok"})

    return app


def run_app():
    """Main entry point for local development - starts server with Flask's dev server."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
    )
    print("=" * 60)
    print("Starting GIB registry read API")
    print("=" * 60)

    app = create_app()
    port = int(os.getenv('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=Config.DEBUG)


if __name__ == '__main__':
    run_app()
