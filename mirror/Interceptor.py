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

from http import HTTPStatus
from typing import Any, Mapping, Protocol

from requests.structures import CaseInsensitiveDict

from mirror.Kernel import getLogger
from mirror.Errors import Diagnostics, MirrorError
from mirror.PendingFile import writeAll
from mirror.Sidecar import ContentHasher, SidecarWriter
from mirror.Utils import formatSize

logger = getLogger(__name__)

# Only a plain 200 carries the complete representation. 206 is a byte range, 204 has no body.
MIRRORED_STATUS = HTTPStatus.OK


class ResponseWriter(Protocol):
    """The outbound half of a response: one header event, then zero or more body writes."""

    def writeHeader(self, statusCode: int, headers: Mapping[str, Any]) -> None:
        ...

    def write(self, data: bytes) -> int:
        ...


def parseContentLength(value):
    """Returns the declared length, or None when it is absent or unparseable."""
    if value is None:
        return None

    value = str(value).strip()
    if not value.isdigit():
        return None

    return int(value)


def headerView(headers):
    if headers is None:
        return CaseInsensitiveDict()
    if hasattr(headers, 'items'):
        return CaseInsensitiveDict(list(headers.items()))
    return CaseInsensitiveDict(list(headers))


class ResponseInterceptor:
    """
    Mirrors a response into a PendingFile while passing it through to the real writer.

    The interceptor exposes the ResponseWriter interface, so it can stand in for the real
    writer anywhere in the response pipeline. It holds a reference to the real writer
    but does not own it.

    On every chunk the bytes are mirrored first and forwarded second. Mirror failures are
    reported to the Diagnostics channel and never change what the client receives, with
    one exception: a failed write to the mirror file is raised, as a failed send would be.
    """

    def __init__(self, writer, pendingFile, config, sidecars=None, diagnostics=None, log=None):
        self.writer = writer
        self.file = pendingFile
        self.config = config
        self.logger = log or logger
        self.diagnostics = diagnostics if diagnostics is not None else Diagnostics(self.logger)

        # Without sidecar files the xattrs still have to be written on the primary
        if sidecars is None and pendingFile is not None:
            sidecars = SidecarWriter(config, pendingFile, self.diagnostics, log=self.logger)
        self.sidecars = sidecars

        self.statusCode = None
        self.bytesExpected = None
        self.bytesWritten = 0
        self.contentHash = None
        self.finalized = False

    @property
    def mirroring(self):
        return self.file is not None and self.file.isOpen

    def writeHeader(self, statusCode, headers):
        self.logger.debug(f'WriteHeader status_code={statusCode}')

        if self.statusCode is not None:
            self.logger.warning(f'Header written twice ({self.statusCode} then {statusCode}), not mirroring')
            self._abortMirror()
        elif statusCode == MIRRORED_STATUS:
            if self.mirroring:
                view = headerView(headers)
                self.bytesExpected = parseContentLength(view.get('Content-Length'))

                etag = view.get('ETag')
                if etag and self.sidecars is not None:
                    self.sidecars.writeEntityTag(etag)

                if self.config.hashingEnabled:
                    self.contentHash = ContentHasher()
        else:
            # Avoid writing error messages and such to disk
            self._abortMirror()

        self.statusCode = statusCode
        self.writer.writeHeader(statusCode, headers)

    def write(self, data):
        if self.statusCode is None:
            self.writeHeader(MIRRORED_STATUS, {})

        if data and self.mirroring:
            if self.contentHash is not None:
                try:
                    writeAll(self.contentHash, data)
                except Exception as e:
                    self.diagnostics.report('hash', e, path=self.file.targetPath)
                    self.contentHash = None
                    if self.sidecars is not None:
                        self.sidecars.abortDigest()

            try:
                written = self.file.write(data)
            except MirrorError:
                self._abortMirror()
                raise

            self._writeDone(written)

        # Continue by passing the buffer on to the real writer
        return self.writer.write(data)

    def _writeDone(self, written):
        self.bytesWritten += written

        if not self.bytesExpected:
            return

        if self.bytesWritten == self.bytesExpected:
            self.logger.debug(
                f'Response fully written, bytes_written={self.bytesWritten} bytes_expected={self.bytesExpected}'
            )
            self.finalize()
        elif self.bytesWritten > self.bytesExpected:
            self.logger.warning(
                f'Body longer than Content-Length ({self.bytesWritten} > {self.bytesExpected}), not mirroring'
            )
            self._abortMirror()

    def finish(self):
        """
        End of the body stream. Publishes a mirror whose length was unknown, and discards
        one whose body did not match the declared length.
        """
        if not self.mirroring:
            return

        if self.statusCode != MIRRORED_STATUS:
            self._abortMirror()
        elif self.bytesExpected is None or self.bytesWritten == self.bytesExpected:
            self.finalize()
        else:
            self.logger.warning(
                f'Body ended after {self.bytesWritten} of {self.bytesExpected} bytes, not mirroring'
            )
            self._abortMirror()

    def finalize(self):
        if self.finalized or not self.mirroring:
            return
        self.finalized = True

        if self.contentHash is not None:
            hexDigest = self.contentHash.hexdigest()
            self.logger.debug(f'Hash done, sha256={hexDigest}')
            if self.sidecars is not None:
                self.sidecars.writeDigest(hexDigest)

        try:
            self.file.complete()
        except MirrorError as e:
            self.diagnostics.report('complete mirror file', e, path=self.file.targetPath)
            if self.sidecars is not None:
                self.sidecars.abortAll()
            return

        self.logger.info(f'Mirrored {self.file.targetPath} ({formatSize(self.bytesWritten)})')

        if self.sidecars is not None:
            self.sidecars.completeAll()

    def _abortMirror(self):
        if self.mirroring:
            try:
                self.file.abort()
            except MirrorError as e:
                self.diagnostics.report('abort mirror file', e, path=self.file.targetPath)

        if self.sidecars is not None:
            self.sidecars.abortAll()

    def release(self):
        """Implicit close of every pending file at the end of the request. Never raises."""
        if self.file is not None:
            try:
                self.file.cleanup()
            except MirrorError as e:
                self.diagnostics.report('cleanup mirror file', e, path=self.file.targetPath)

        if self.sidecars is not None:
            self.sidecars.release()

    def __enter__(self):
        return self

    def __exit__(self, excType, excValue, traceback):
        self.release()
        return False
