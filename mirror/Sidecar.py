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
Response metadata stored next to a mirrored file.

- ETag: raw header value, in `target + etagFileSuffix` and/or the user.xdg.origin.etag xattr
- SHA-256: hex digest of the body, in `target + digestFileSuffix` and/or the
  user.xdg.origin.sha256 xattr

Every operation here is best-effort: failures are reported to Diagnostics and the
response continues.
"""

import hashlib

from mirror.Kernel import getLogger
from mirror.Errors import MirrorError
from mirror.PendingFile import PendingFile
from mirror.Settings import XATTR_ETAG, XATTR_SHA256

logger = getLogger(__name__)


def headerBytes(value):
    """Header values travel as ISO-8859-1 on the wire; keep their raw octets."""
    if isinstance(value, bytes):
        return value
    try:
        return value.encode('latin-1')
    except UnicodeEncodeError:
        return value.encode('utf-8')


class ContentHasher:
    """Streaming digest with a file-like write() so it can be fed through writeAll()."""

    def __init__(self, algorithm='sha256'):
        self.algorithm = algorithm
        self._hash = hashlib.new(algorithm)
        self.bytesHashed = 0

    def write(self, data):
        self._hash.update(data)
        self.bytesHashed += len(data)
        return len(data)

    def digest(self):
        return self._hash.digest()

    def hexdigest(self):
        return self._hash.hexdigest()


class SidecarWriter:

    def __init__(self, config, primary, diagnostics, etagFile=None, digestFile=None, log=None):
        self.config = config
        self.primary = primary
        self.diagnostics = diagnostics
        self.etagFile = etagFile
        self.digestFile = digestFile
        self.logger = log or logger

    @classmethod
    def create(cls, config, targetPath, primary, diagnostics, log=None):
        """Allocate the sidecar pending files the config asks for. A sidecar that cannot be created is skipped."""
        etagFile = None
        digestFile = None

        if config.etagFileSuffix:
            etagFile = cls._createSidecar(targetPath + config.etagFileSuffix, 'create ETag sidecar', diagnostics)
        if config.digestFileSuffix:
            digestFile = cls._createSidecar(targetPath + config.digestFileSuffix, 'create digest sidecar', diagnostics)

        return cls(config, primary, diagnostics, etagFile=etagFile, digestFile=digestFile, log=log)

    @staticmethod
    def _createSidecar(path, operation, diagnostics):
        try:
            return PendingFile.create(path)
        except MirrorError as e:
            diagnostics.report(operation, e, path=path)
            return None

    @property
    def pendingFiles(self):
        return [f for f in (self.etagFile, self.digestFile) if f is not None]

    def _writeSidecar(self, pendingFile, data, operation):
        if pendingFile is None or not pendingFile.isOpen:
            return

        try:
            pendingFile.write(data)
        except MirrorError as e:
            self.diagnostics.report(operation, e, path=pendingFile.targetPath)
            self._abort(pendingFile)

    def _setAttribute(self, name, value, operation):
        if not self.primary.isOpen:
            return

        try:
            self.primary.setAttribute(name, value)
        except MirrorError as e:
            self.diagnostics.report(operation, e, path=self.primary.targetPath)

    def writeEntityTag(self, etag):
        if self.config.useXattr:
            self._setAttribute(XATTR_ETAG, headerBytes(etag), 'write ETag xattr')

        self._writeSidecar(self.etagFile, headerBytes(etag), 'write ETag sidecar')

    def writeDigest(self, hexDigest):
        """Must run before the primary file is completed, xattrs are set on the open temp file."""
        if self.config.sha256Xattr:
            self._setAttribute(XATTR_SHA256, hexDigest.encode('ascii'), 'write sha256 xattr')

        self._writeSidecar(self.digestFile, hexDigest.encode('ascii'), 'write digest sidecar')

    def completeAll(self):
        for pendingFile in self.pendingFiles:
            if not pendingFile.isOpen:
                continue
            try:
                pendingFile.complete()
            except MirrorError as e:
                self.diagnostics.report('complete sidecar', e, path=pendingFile.targetPath)

    def _abort(self, pendingFile):
        try:
            pendingFile.abort()
        except MirrorError as e:
            self.diagnostics.report('abort sidecar', e, path=pendingFile.targetPath)

    def abortDigest(self):
        """The body digest became unavailable; a digest sidecar must not be published empty."""
        if self.digestFile is not None and self.digestFile.isOpen:
            self._abort(self.digestFile)

    def abortAll(self):
        for pendingFile in self.pendingFiles:
            if pendingFile.isOpen:
                self._abort(pendingFile)

    def release(self):
        for pendingFile in self.pendingFiles:
            try:
                pendingFile.cleanup()
            except MirrorError as e:
                self.diagnostics.report('cleanup sidecar', e, path=pendingFile.targetPath)
