"""
Request ID middleware - X-Request-ID for correlating API calls with logs.

A client-supplied X-Request-ID is kept (truncated to 64 chars); otherwise a
UUID4 is generated. The id is stored on g and echoed on the response.
"""

import uuid

from flask import Flask, g, request

REQUEST_ID_HEADER = 'X-Request-ID'
MAX_REQUEST_ID_LENGTH = 64


def setup_request_id_middleware(app: Flask) -> None:

    @app.before_request
    def inject_request_id():
        request_id = (request.headers.get(REQUEST_ID_HEADER) or '').strip()[:MAX_REQUEST_ID_LENGTH]
        g.request_id = request_id or str(uuid.uuid4())

    @app.after_request
    def add_request_id_header(response):
        if hasattr(g, 'request_id'):
            response.headers[REQUEST_ID_HEADER] = g.request_id
        return response

