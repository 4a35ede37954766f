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
The mirror handler: decides per request whether a mirror write happens and installs a
ResponseInterceptor in front of the real response writer.

Usage:
    mirror = Mirror(MirrorConfig(root='/srv/mirror', etagFileSuffix='.etag'))

    def nextHandler(request, writer):
        writer.writeHeader(200, {'Content-Length': '5'})
        writer.write(b'hello')

    mirror.serve(MirrorRequest('GET', '/a.txt'), realWriter, nextHandler)

Requests are independent: a Mirror keeps no per-request state, so one instance can serve
many threads. Two requests for the same path race, and the last rename wins.
"""

import logging

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from mirror.Kernel import getLogger
from mirror.Errors import Diagnostics, IsDirectoryError, InvalidRequestError, MirrorError
from mirror.Interceptor import ResponseInterceptor
from mirror.Paths import TargetState, classifyTarget, pathInsideRoot, raiseForState
from mirror.PendingFile import PendingFile
from mirror.Settings import MirrorConfig
from mirror.Sidecar import SidecarWriter
from mirror.Utils import Replacer

logger = getLogger(__name__)


@dataclass
class MirrorRequest:
    """
    One request as the mirror handler sees it. `path` is the decoded URL path and names
    the mirror target; `rawPath` is the path as received, for forwarding it unchanged.
    """
    method: str
    path: str
    headers: Mapping[str, Any] = field(default_factory=dict)
    query: str = ''
    replacer: Optional[Replacer] = None
    rawPath: Optional[str] = None


class RequestLoggerAdapter(logging.LoggerAdapter):
    """Prefixes every message with the site root and request path of one request."""

    def process(self, msg, kwargs):
        kwargs.setdefault('extra', {}).update(self.extra)
        return f"[site_root={self.extra['site_root']} request_path={self.extra['request_path']}] {msg}", kwargs


def requestLogger(baseLogger, siteRoot, requestPath):
    extra = dict(getattr(baseLogger, 'extra', None) or {})
    extra.update({'site_root': siteRoot, 'request_path': requestPath})
    return RequestLoggerAdapter(getattr(baseLogger, 'logger', baseLogger), extra)


class Mirror:

    def __init__(self, config: MirrorConfig = None, log=None):
        self.config = config if config is not None else MirrorConfig()
        self.logger = log or logger

    def resolveRoot(self, request):
        replacer = request.replacer if request.replacer is not None else Replacer()
        return replacer.replaceAll(self.config.root, '.')

    def serve(self, request, writer, nextHandler, diagnostics=None):
        """
        Handle one request. nextHandler(request, writer) produces the response; it is always
        called, with either the real writer or an interceptor around it.

        Returns:
            Whatever nextHandler returns.

        Raises:
            InvalidRequestError: The URL path is not absolute (400)
            NotRegularError, PermissionDeniedError: The target cannot be mirrored (403)
            InternalError: Filesystem failure before the response started (500)
        """
        urlPath = request.path

        if request.method != 'GET':
            self.logger.debug(f'Pass through non-GET request, method={request.method} path={urlPath}')
            return nextHandler(request, writer)

        if not urlPath.startswith('/'):
            raise InvalidRequestError('URL path not absolute', path=urlPath)

        if urlPath.endswith('/'):
            # Pass through directory requests unmodified
            self.logger.debug(f'Skip directory browse, request_path={urlPath}')
            return nextHandler(request, writer)

        root = self.resolveRoot(request)
        log = requestLogger(self.logger, root, urlPath)
        filename = pathInsideRoot(root, urlPath)

        state = classifyTarget(filename)
        if state == TargetState.DIRECTORY:
            log.debug(f'Target {filename} is a directory, passing through')
            return nextHandler(request, writer)
        if state == TargetState.REGULAR and self.config.skipExisting:
            log.debug(f'Target {filename} already mirrored, passing through')
            return nextHandler(request, writer)
        raiseForState(state, filename)

        log.debug('Creating temp file')
        try:
            pendingFile = PendingFile.create(filename)
        except IsDirectoryError:
            log.debug(f'Target {filename} became a directory, passing through')
            return nextHandler(request, writer)
        except MirrorError as e:
            log.error(f'Failed to create temp file: {e}')
            raise

        if diagnostics is None:
            diagnostics = Diagnostics(log)

        sidecars = SidecarWriter.create(self.config, filename, pendingFile, diagnostics, log=log)

        with ResponseInterceptor(writer, pendingFile, self.config, sidecars, diagnostics, log=log) as interceptor:
            result = nextHandler(request, interceptor)
            interceptor.finish()

        return result
