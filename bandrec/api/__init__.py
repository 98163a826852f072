"""
bandrec.api
===========

JSON HTTP surface over :class:`bandrec.projects.ProjectService`.

Requests authenticate with ``Authorization: Bearer <token>`` where the token
is either an admin session token or a member's capability token.  A
capability token only opens the project it was minted for and the assets that
project refers to, and its holder can only submit recordings for themselves.

Errors raised by the service are translated here and nowhere else:

* ``ProjectNotFound`` / ``NotFound`` -> 404
* ``AccessDenied`` / ``NotAllowed`` -> 403
* missing or invalid token -> 401
* malformed input -> 400
* ``StoreError`` -> 502
* anything else -> 500
"""

import json
import logging
import os
import re
import urllib.parse
from http import HTTPStatus
from http.server import ThreadingHTTPServer, BaseHTTPRequestHandler

from bandrec.auth import InvalidToken, decode_capability_token, decode_session_token
from bandrec.projects import AccessDenied, NotFound, ProjectService
from bandrec.store import StoreError
from bandrec.utils import UploadError, checked_upload, parse_multipart_form_data

logger = logging.getLogger(__name__)

# Maximum allowed size for HTTP request bodies (default 60 MB, recordings included)
MAX_REQUEST_SIZE = int(os.environ.get('MAX_REQUEST_SIZE', 60 * 1024 * 1024))


class Unauthenticated(Exception):
    pass


def read_request_body(handler: BaseHTTPRequestHandler) -> bytes | None:
    """Read and return the request body for the current request.

    When the declared length exceeds ``MAX_REQUEST_SIZE`` an HTTP
    ``413 Payload Too Large`` response is sent and ``None`` is returned so the
    caller can abort further processing."""
    try:
        length = int(handler.headers.get('Content-Length', 0))
    except ValueError:
        return b''
    if length > MAX_REQUEST_SIZE:
        send_json(handler, HTTPStatus.REQUEST_ENTITY_TOO_LARGE, {'error': 'Payload too large'})
        return None
    return handler.rfile.read(length) if length > 0 else b''


def send_json(handler: BaseHTTPRequestHandler, status: int, data) -> None:
    payload = json.dumps(data).encode('utf-8')
    handler.send_response(status)
    handler.send_header('Content-Type', 'application/json; charset=utf-8')
    handler.send_header('Content-Length', str(len(payload)))
    handler.end_headers()
    handler.wfile.write(payload)


def send_bytes(handler: BaseHTTPRequestHandler, data: bytes, content_type: str | None) -> None:
    handler.send_response(HTTPStatus.OK)
    handler.send_header('Content-Type', content_type or 'application/octet-stream')
    handler.send_header('Content-Length', str(len(data)))
    handler.end_headers()
    handler.wfile.write(data)


def bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) == 2 and parts[0].lower() == 'bearer':
        return parts[1]
    return None


def parse_labels(raw) -> list[str]:
    """Accept part labels as a JSON list or one label per line."""
    if isinstance(raw, list):
        return [str(label) for label in raw]
    raw = (raw or '').strip()
    if raw.startswith('['):
        return [str(label) for label in json.loads(raw)]
    return [line.strip() for line in raw.splitlines() if line.strip()]


def query_int(query: dict, name: str, default: int) -> int:
    try:
        return int(query.get(name, [default])[0])
    except (TypeError, ValueError):
        return default


#############################
# HTTP request handler
#############################

class BandRecHandler(BaseHTTPRequestHandler):
    """Request handler for the ``/api`` routes."""

    server_version = 'BandRec/1.0'

    # Routing table: (HTTP method, regex pattern, handler method name)
    ROUTES = [
        ('GET', r'^/api/projects$', 'api_list_projects'),
        ('POST', r'^/api/projects$', 'api_create_project'),
        ('GET', r'^/api/projects/(?P<project_id>[\w.-]+)$', 'api_get_project'),
        ('PUT', r'^/api/projects/(?P<project_id>[\w.-]+)$', 'api_update_project'),
        ('GET', r'^/api/projects/(?P<project_id>[\w.-]+)/recordings$', 'api_list_recordings'),
        ('POST', r'^/api/projects/(?P<project_id>[\w.-]+)/recordings$', 'api_submit_recording'),
        ('GET', r'^/api/bands$', 'api_list_bands'),
        ('GET', r'^/api/bands/(?P<band_id>[\w.-]+)/members$', 'api_band_members'),
        ('POST', r'^/api/cache/purge$', 'api_purge_cache'),
        ('GET', r'^/api/assets/(?P<asset_id>[\w.-]+)$', 'api_get_asset'),
    ]

    @property
    def service(self) -> ProjectService:
        return self.server.service

    def log_message(self, format, *args):  # noqa: A002 (matching http.server naming)
        logger.info("%s - %s", self.address_string(), format % args)

    def do_GET(self):  # noqa: N802
        self.handle_api_request('GET')

    def do_POST(self):  # noqa: N802
        self.handle_api_request('POST')

    def do_PUT(self):  # noqa: N802
        self.handle_api_request('PUT')

    def _find_route_handler(self, method: str, path: str):
        """Return the handler method and path parameters for a request."""
        for m, pattern, handler_name in self.ROUTES:
            match = re.match(pattern, path)
            if m == method and match:
                return getattr(self, handler_name), match.groupdict()
        return None, {}

    def authenticate(self) -> dict:
        """Return the requester for the bearer token of the current request."""
        token = bearer_token(self.headers.get('Authorization'))
        if not token:
            raise Unauthenticated('Missing bearer token')
        secret = self.service.settings.site.tokensecret
        try:
            email = decode_session_token(token, secret)
        except InvalidToken:
            email = None
        if email is not None:
            admin = self.service.get_admin_user(email)
            if not admin:
                raise Unauthenticated('Unknown admin user')
            return {'id': admin['id'], 'kind': 'admin', 'email': email}
        try:
            claims = decode_capability_token(token, secret)
        except InvalidToken as exc:
            raise Unauthenticated(str(exc)) from exc
        member = self.service.get_user(claims.member_id)
        if not member:
            raise Unauthenticated('Unknown member')
        return {'id': member['id'], 'kind': 'member', 'project_id': claims.project_id}

    def handle_api_request(self, method: str):
        parsed = urllib.parse.urlparse(self.path)
        query = urllib.parse.parse_qs(parsed.query)
        handler, params = self._find_route_handler(method, parsed.path)
        if handler is None:
            send_json(self, HTTPStatus.NOT_FOUND, {'error': 'Not found'})
            return

        body = {}
        if method in ('POST', 'PUT'):
            body_bytes = read_request_body(self)
            if body_bytes is None:
                return
            content_type = self.headers.get('Content-Type', '')
            if content_type.startswith('multipart/form-data'):
                body = parse_multipart_form_data(body_bytes, content_type)
            else:
                try:
                    body = json.loads(body_bytes.decode('utf-8')) if body_bytes else {}
                except (UnicodeDecodeError, json.JSONDecodeError):
                    send_json(self, HTTPStatus.BAD_REQUEST, {'error': 'Invalid JSON'})
                    return

        try:
            requester = self.authenticate()
            handler(requester, query, body, **params)
        except Unauthenticated as exc:
            send_json(self, HTTPStatus.UNAUTHORIZED, {'error': str(exc)})
        except NotFound:
            send_json(self, HTTPStatus.NOT_FOUND, {'error': 'Not found'})
        except AccessDenied:
            send_json(self, HTTPStatus.FORBIDDEN, {'error': 'Forbidden'})
        except UploadError as exc:
            send_json(self, HTTPStatus.BAD_REQUEST, {'error': str(exc)})
        except (TypeError, ValueError) as exc:
            send_json(self, HTTPStatus.BAD_REQUEST, {'error': f'Invalid request: {exc}'})
        except StoreError:
            logger.exception("Document store failure on %s %s", method, parsed.path)
            send_json(self, HTTPStatus.BAD_GATEWAY, {'error': 'Document store unavailable'})
        except Exception:
            logger.exception("Unhandled error on %s %s", method, parsed.path)
            send_json(self, HTTPStatus.INTERNAL_SERVER_ERROR, {'error': 'Internal server error'})

    # Guards ---------------------------------------------------------------

    @staticmethod
    def require_admin(requester: dict) -> None:
        if requester['kind'] != 'admin':
            raise AccessDenied('Admin session required')

    @staticmethod
    def require_project_scope(requester: dict, project_id: str) -> None:
        if requester['kind'] == 'member' and requester['project_id'] != project_id:
            raise AccessDenied('Token is not valid for this project')

    # Projects -------------------------------------------------------------

    def api_list_projects(self, requester, query, body):
        self.require_admin(requester)
        start = query_int(query, 'start', 0)
        end = query_int(query, 'end', 20)
        send_json(self, HTTPStatus.OK, self.service.get_projects(requester['id'], start, end))

    def api_create_project(self, requester, query, body):
        self.require_admin(requester)
        if not isinstance(body, tuple):
            raise UploadError('Expected multipart/form-data')
        fields, files = body
        upload = checked_upload(files)
        project = self.service.create_project(
            requester['id'],
            fields.get('band', ''),
            fields.get('name', ''),
            upload['content'],
            parse_labels(fields.get('parts')),
            fields.get('bpm', '120'),
            filename=upload['filename'],
        )
        send_json(self, HTTPStatus.CREATED, project)

    def api_get_project(self, requester, query, body, project_id):
        self.require_project_scope(requester, project_id)
        fresh = query.get('fresh', ['0'])[0] in ('1', 'true')
        project = self.service.get_project(requester['id'], project_id, force_fresh=fresh, strict=True)
        send_json(self, HTTPStatus.OK, project)

    def api_update_project(self, requester, query, body, project_id):
        self.require_admin(requester)
        if not isinstance(body, dict):
            raise ValueError('Expected a JSON object')
        send_json(self, HTTPStatus.OK, self.service.update_project(requester['id'], project_id, body))

    # Recordings -----------------------------------------------------------

    def api_list_recordings(self, requester, query, body, project_id):
        self.require_project_scope(requester, project_id)
        self.service.get_project(requester['id'], project_id, strict=True)
        send_json(self, HTTPStatus.OK, self.service.list_recordings(project_id))

    def api_submit_recording(self, requester, query, body, project_id):
        self.require_project_scope(requester, project_id)
        if not isinstance(body, tuple):
            raise UploadError('Expected multipart/form-data')
        fields, files = body
        upload = checked_upload(files)
        member_id = fields.get('member') or requester['id']
        project = self.service.submit_recording(
            requester['id'],
            project_id,
            member_id,
            fields.get('instrument') or None,
            upload['content'],
            filename=upload['filename'],
        )
        send_json(self, HTTPStatus.CREATED, project)

    # Bands ----------------------------------------------------------------

    def api_list_bands(self, requester, query, body):
        self.require_admin(requester)
        send_json(self, HTTPStatus.OK, self.service.get_bands_for_admin(requester['id']))

    def api_band_members(self, requester, query, body, band_id):
        self.require_admin(requester)
        bands = self.service.get_bands_for_admin(requester['id'])
        if not any(band['id'] == band_id for band in bands):
            raise AccessDenied(band_id)
        send_json(self, HTTPStatus.OK, self.service.get_members(band_id))

    # Misc -----------------------------------------------------------------

    def api_purge_cache(self, requester, query, body):
        self.require_admin(requester)
        self.service.purge_cache()
        send_json(self, HTTPStatus.OK, {'detail': 'Cache purged'})

    def api_get_asset(self, requester, query, body, asset_id):
        if requester['kind'] == 'member' and asset_id not in self.service.project_asset_ids(requester['project_id']):
            raise AccessDenied(asset_id)
        asset = self.service.store.fetch_asset(asset_id)
        if not asset:
            raise NotFound(asset_id)
        send_bytes(self, asset['data'], asset.get('content_type'))


#############################
# Server entry point
#############################

def make_server(service: ProjectService, host: str = '0.0.0.0', port: int = 8080) -> ThreadingHTTPServer:
    httpd = ThreadingHTTPServer((host, port), BandRecHandler)
    httpd.service = service
    return httpd


def run_server(service: ProjectService, host: str = '0.0.0.0', port: int = 8080):
    httpd = make_server(service, host, port)
    logger.info("BandRec server running on http://%s:%s (Ctrl-C to stop)", host, port)
    try:
        httpd.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down server...")
        httpd.server_close()
