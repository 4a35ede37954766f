#!/usr/bin/env python
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0
#
# MirrorProxy - Write-through local mirror for proxied content
# Copyright (C) 2025 MirrorProxy contributors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""
Reverse proxy host for the mirror handler.

Every request is forwarded to the upstream with requests; GET responses pass through a
Mirror on their way back to the client, so the local root fills up as content is fetched.

Usage:
    server = createServer(MirrorConfig(root='/srv/mirror'), ServerConfig(upstream='https://example.com', port=0))
    server.start()
    ...
    server.stop()
"""

import socket
import threading

from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Optional
from urllib.parse import quote, unquote, urlsplit

import requests

from requests.adapters import HTTPAdapter
from urllib3.connection import HTTPConnection
from urllib3.exceptions import HTTPError as UpstreamHTTPError
from urllib3.util.retry import Retry

from mirror.Kernel import getLogger
from mirror.Errors import MirrorError
from mirror.Mirror import Mirror, MirrorRequest
from mirror.Settings import MirrorConfig, ServerConfig
from mirror.Utils import Replacer

logger = getLogger(__name__)

# Headers that describe one connection, never forwarded in either direction
HOP_BY_HOP_HEADERS = frozenset(
    (
        'connection',
        'keep-alive',
        'proxy-authenticate',
        'proxy-authorization',
        'te',
        'trailer',
        'transfer-encoding',
        'upgrade',
    )
)


class UpstreamAdapter(HTTPAdapter):
    """
    HTTP adapter for upstream connections: TCP keepalive for early dead connection detection,
    and a small urllib3 retry budget for connection failures only. Once a response has
    started streaming it is never retried.
    """

    DEFAULT_SOCKET_OPTIONS = HTTPConnection.default_socket_options

    def __init__(self, *args, **kwargs):
        kwargs['max_retries'] = Retry(
            total=2,
            connect=2,
            read=0, # A retried read could replay bytes already mirrored
            status=0, # Upstream status codes are relayed as they are
            backoff_factor=0.5,
            allowed_methods={'GET', 'HEAD', 'OPTIONS'},
            raise_on_status=False
        )
        super().__init__(*args, **kwargs)

    def init_poolmanager(self, connections, maxsize, block=False, **kwargs):
        socketOptions = list(self.DEFAULT_SOCKET_OPTIONS)
        socketOptions.append((socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1))

        if hasattr(socket, "TCP_KEEPIDLE"):
            socketOptions.append((socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, 30))
        if hasattr(socket, "TCP_KEEPINTVL"):
            socketOptions.append((socket.IPPROTO_TCP, socket.TCP_KEEPINTVL, 10))
        if hasattr(socket, "TCP_KEEPCNT"):
            socketOptions.append((socket.IPPROTO_TCP, socket.TCP_KEEPCNT, 3))

        kwargs["socket_options"] = socketOptions
        super().init_poolmanager(connections, maxsize, block=block, **kwargs)


def createUpstreamSession():
    session = requests.Session()
    adapter = UpstreamAdapter()
    session.mount('http://', adapter)
    session.mount('https://', adapter)
    return session


def _safeSegment(value):
    """A placeholder value that is used inside a path must stay a single path segment."""
    if not value or '/' in value or '\\' in value or value.startswith('.') or '\x00' in value:
        return ''
    return value


class HandlerResponseWriter:
    """ResponseWriter on top of a BaseHTTPRequestHandler."""

    def __init__(self, handler):
        self.handler = handler
        self.headerSent = False
        self.bytesSent = 0

    def writeHeader(self, statusCode, headers):
        self.handler.send_response(statusCode)

        hasLength = False
        for name, value in (headers or {}).items():
            if name.lower() in HOP_BY_HOP_HEADERS:
                continue
            if name.lower() == 'content-length':
                hasLength = True
            self.handler.send_header(name, value)

        if not hasLength:
            # Without a length the end of the body is marked by closing the connection
            self.handler.close_connection = True

        self.handler.end_headers()
        self.headerSent = True

    def write(self, data):
        if not self.headerSent:
            self.writeHeader(HTTPStatus.OK, {})

        if data:
            self.handler.wfile.write(data)
            self.bytesSent += len(data)

        return len(data)


class MirrorProxyHandler(BaseHTTPRequestHandler):

    # Bodies without Content-Length are delimited by connection close
    protocol_version = 'HTTP/1.0'

    def log_message(self, format, *args):
        logger.debug(f"Proxy request: {format % args}")

    def do_GET(self):
        self._handle()

    def do_HEAD(self):
        self._handle()

    def do_POST(self):
        self._handle()

    def do_PUT(self):
        self._handle()

    def do_DELETE(self):
        self._handle()

    def do_PATCH(self):
        self._handle()

    def do_OPTIONS(self):
        self._handle()

    # Upstream supplies its own Date and Server headers
    def send_response(self, code, message=None):
        self.log_request(code)
        self.send_response_only(code, message)

    def _createReplacer(self):
        host = (self.headers.get('Host') or '').rsplit(':', 1)[0]
        values = dict(self.server.variables)
        values.update({
            'request.host': _safeSegment(host),
            'request.method': self.command,
            'upstream.host': _safeSegment(urlsplit(self.server.config.upstream).hostname or ''),
        })
        return Replacer(values)

    def _handle(self):
        parsedURL = urlsplit(self.path)
        request = MirrorRequest(
            method=self.command,
            path=unquote(parsedURL.path),
            rawPath=parsedURL.path,
            headers=self.headers,
            query=parsedURL.query,
            replacer=self._createReplacer(),
        )
        writer = HandlerResponseWriter(self)

        try:
            self.server.mirror.serve(request, writer, self._fetchUpstream)
        except MirrorError as e:
            if writer.headerSent:
                logger.error(f'Mirror failed while sending {request.path}: {e}')
                self.close_connection = True
            else:
                logger.warning(f'Refused {request.method} {request.path}: {e}')
                self.send_error(e.statusCode or HTTPStatus.INTERNAL_SERVER_ERROR, explain=str(e))
        except (requests.RequestException, UpstreamHTTPError) as e:
            logger.error(f'Upstream request for {request.path} failed: {e}')
            if writer.headerSent:
                self.close_connection = True
            else:
                self.send_error(HTTPStatus.BAD_GATEWAY, explain=str(e))
        except (ConnectionResetError, ConnectionAbortedError, BrokenPipeError) as e:
            logger.debug(f'Client disconnected during {request.path}: {e}')
            self.close_connection = True

    def _upstreamURL(self, request):
        # The raw path keeps escapes such as %2F that decoding would turn into separators
        path = request.rawPath if request.rawPath is not None else quote(request.path)
        url = self.server.config.upstream.rstrip('/') + path
        if request.query:
            url = f'{url}?{request.query}'
        return url

    def _fetchUpstream(self, request, writer):
        headers = {
            name: value
            for name, value in request.headers.items()
            if name.lower() not in HOP_BY_HOP_HEADERS and name.lower() not in ('host', 'accept-encoding')
        }
        # Mirror files hold the representation itself, never a compressed transfer of it
        headers['Accept-Encoding'] = 'identity'

        body = None
        length = int(self.headers.get('Content-Length') or 0)
        if length:
            body = self.rfile.read(length)

        config = self.server.config
        with self.server.session.request(
            request.method,
            self._upstreamURL(request),
            headers=headers,
            data=body,
            stream=True,
            timeout=config.timeout,
            allow_redirects=False,
        ) as response:
            writer.writeHeader(response.status_code, response.raw.headers)

            for chunk in response.raw.stream(config.chunkSize, decode_content=False):
                writer.write(chunk)


class MirrorProxyServer(ThreadingHTTPServer):

    daemon_threads = True
    allow_reuse_address = True

    def __init__(
        self,
        mirror: Mirror,
        config: ServerConfig,
        session: Optional[requests.Session] = None,
        variables=None,
        requestHandlerClass=None,
    ):
        if not config.upstream:
            raise ValueError('An upstream URL is required')

        self.mirror = mirror
        self.config = config
        self.session = session if session is not None else createUpstreamSession()
        self.variables = dict(variables or {})

        self._thread: Optional[threading.Thread] = None
        self._running = False

        super().__init__((config.host, config.port), requestHandlerClass or MirrorProxyHandler)

        self.port = self.server_address[1] # Actual port if 0 was passed

    def getURL(self):
        return f'http://{self.config.host}:{self.port}'

    def start(self):
        """Serve in a background thread."""
        if self._running:
            raise RuntimeError('Server already running')

        self._running = True
        self._thread = threading.Thread(target=self.serve_forever, kwargs={'poll_interval': 0.5}, daemon=True)
        self._thread.start()

        logger.debug(f'Mirror proxy started on {self.getURL()} -> {self.config.upstream}')

    def stop(self):
        if not self._running:
            return

        self._running = False
        self.shutdown()

        if self._thread:
            self._thread.join(timeout=5.0)

        self.server_close()
        self.session.close()

        logger.debug('Mirror proxy stopped')


def createServer(mirrorConfig: MirrorConfig, serverConfig: ServerConfig, session=None, variables=None):
    return MirrorProxyServer(Mirror(mirrorConfig), serverConfig, session=session, variables=variables)
