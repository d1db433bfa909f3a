"""
Loopback Request Guard

Shared by the dashboard and viewer servers: rejects requests whose Host or
Origin is not a loopback name (DNS rebinding and cross-site requests), sets
CORS headers for local origins only and disables caching.
"""

import logging
from typing import Optional
from urllib.parse import urlsplit

from flask import Flask, Response, request

logger = logging.getLogger(__name__)

LOOPBACK_HOSTS = frozenset({'localhost', '127.0.0.1', '::1'})
ALLOWED_METHODS = 'GET, POST, DELETE, OPTIONS'


def is_request_allowed(host: Optional[str], origin: Optional[str]) -> bool:
    """
    Check Host and Origin headers.

    Clients like curl send no Origin, so only a present, non-loopback
    Origin is rejected.
    """
    if host and _hostname(f"//{host}") not in LOOPBACK_HOSTS:
        return False
    if origin and _hostname(origin) not in LOOPBACK_HOSTS:
        return False
    return True


def _hostname(url: str) -> Optional[str]:
    try:
        return urlsplit(url).hostname
    except ValueError:
        return None


def is_loopback_origin(origin: Optional[str]) -> bool:
    """True for an http origin on a loopback host with an explicit port."""
    if not origin or not origin.startswith('http://'):
        return False
    try:
        parts = urlsplit(origin)
        return parts.hostname in LOOPBACK_HOSTS and parts.port is not None
    except ValueError:
        return False


def install_loopback_guard(app: Flask) -> None:
    """Register the guard and response headers on an app."""

    @app.before_request
    def _reject_foreign_requests():
        if not is_request_allowed(request.headers.get('Host'), request.headers.get('Origin')):
            logger.warning(
                f"Rejected {request.method} {request.path} "
                f"(host={request.headers.get('Host')}, origin={request.headers.get('Origin')})"
            )
            return Response('Forbidden', status=403, mimetype='text/plain')
        if request.method == 'OPTIONS':
            return Response(status=200)
        return None

    @app.after_request
    def _local_only_headers(response: Response) -> Response:
        origin = request.headers.get('Origin')
        if is_loopback_origin(origin):
            response.headers['Access-Control-Allow-Origin'] = origin
        response.headers['Access-Control-Allow-Methods'] = ALLOWED_METHODS
        response.headers['Access-Control-Allow-Headers'] = 'Content-Type'
        response.headers['Cache-Control'] = 'no-store'
        return response
