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
Atomic file publishing.

A PendingFile is a hidden temporary file next to its target. Bytes are appended to it,
and exactly one of complete() or abort() ends its life:

    OPEN -> COMPLETED   flush, fsync, close, then rename onto the target
    OPEN -> ABORTED     close and unlink, the target is untouched

Readers of the target never observe partial content because the rename is atomic
within one directory.

Usage:
    with PendingFile.create('/srv/mirror/a.txt') as pending:
        pending.write(b'hello')
        pending.complete()
    # Leaving the block without complete() discards the temp file.
"""

import os
import secrets

from enum import Enum

from mirror.Kernel import getLogger
from mirror.Errors import (
    AlreadyAbortedError, AlreadyCompletedError, InternalError, NoProgressError, PermissionDeniedError
)
from mirror.Paths import inspectTarget, raiseForState

logger = getLogger(__name__)

# Modes before umask is applied
MKDIR_MODE = 0o777
TEMP_FILE_MODE = 0o666

TEMP_SUFFIX = '.tmp'
# Keeps `.<name>.<16 hex>.tmp` under the usual 255 byte name limit
TEMP_NAME_PREFIX_MAX = 200
TEMP_CREATE_ATTEMPTS = 100

PERMISSION_BITS = 0o777


class PendingState(Enum):
    OPEN = 'open'
    COMPLETED = 'completed'
    ABORTED = 'aborted'


def writeAll(writer, data):
    """
    Write data to writer, retrying until all of it has been consumed.

    Raises:
        NoProgressError: If a write call consumed nothing. `error.written` holds the
                         number of bytes written before the stall.
    """
    view = memoryview(data)
    total = len(view)
    written = 0

    while written < total:
        n = writer.write(view[written:])
        if not n:
            error = NoProgressError(f'Not making progress after {written} of {total} bytes')
            error.written = written
            raise error

        written += n
        if written > total:
            raise RuntimeError(f'Wrote more than len(data): {written} > {total}')

    return written


def _toMirrorError(message, path, errors):
    if any(isinstance(e, PermissionError) for e in errors):
        return PermissionDeniedError(message, path=path, errors=errors)
    return InternalError(message, path=path, errors=errors)


def _tempNameFor(targetPath):
    baseName = os.path.basename(targetPath)[:TEMP_NAME_PREFIX_MAX]
    return f'.{baseName}.{secrets.token_hex(8)}{TEMP_SUFFIX}'


def isTempName(name):
    """True if name looks like a file allocated by PendingFile.create()."""
    return name.startswith('.') and name.endswith(TEMP_SUFFIX)


class PendingFile:

    def __init__(self, fileObject, tempPath, targetPath):
        self._file = fileObject
        self.tempPath = tempPath
        self.targetPath = targetPath
        self.bytesWritten = 0
        self._state = PendingState.OPEN

    @classmethod
    def create(cls, targetPath):
        """
        Allocate a temp file in the same directory as targetPath.

        The parent directory is created when missing. If a regular file already exists
        at targetPath, its permission bits are copied to the temp file.

        Raises:
            IsDirectoryError, NotRegularError: targetPath cannot be replaced by a file
            PermissionDeniedError: the directory or temp file cannot be created
            InternalError: any other filesystem failure
        """
        directory = os.path.dirname(targetPath) or '.'

        try:
            os.makedirs(directory, mode=MKDIR_MODE, exist_ok=True)
        except OSError as e:
            raise _toMirrorError('Unable to create mirror directory', directory, [e]) from e

        state, existingStat = inspectTarget(targetPath)
        raiseForState(state, targetPath)

        flags = os.O_WRONLY | os.O_CREAT | os.O_EXCL | getattr(os, 'O_BINARY', 0) | getattr(os, 'O_CLOEXEC', 0)
        fd = None
        for _ in range(TEMP_CREATE_ATTEMPTS):
            tempPath = os.path.join(directory, _tempNameFor(targetPath))
            try:
                fd = os.open(tempPath, flags, TEMP_FILE_MODE)
                break
            except FileExistsError:
                continue
            except OSError as e:
                raise _toMirrorError('Unable to create temp file', targetPath, [e]) from e

        if fd is None:
            raise InternalError('Unable to allocate a unique temp file name', path=targetPath)

        try:
            if existingStat is not None:
                wanted = existingStat.st_mode & PERMISSION_BITS
                if os.fstat(fd).st_mode & PERMISSION_BITS != wanted:
                    if hasattr(os, 'fchmod'):
                        os.fchmod(fd, wanted)
                    else:
                        os.chmod(tempPath, wanted)

            fileObject = os.fdopen(fd, 'wb')
        except OSError as e:
            errors = [e]
            try:
                os.close(fd)
            except OSError as closeError:
                errors.append(closeError)
            try:
                os.unlink(tempPath)
            except OSError as removeError:
                errors.append(removeError)
            raise _toMirrorError('Unable to prepare temp file', targetPath, errors) from e

        logger.debug(f'Created temp file {tempPath} for {targetPath}')
        return cls(fileObject, tempPath, targetPath)

    @property
    def state(self):
        return self._state

    @property
    def isOpen(self):
        return self._state == PendingState.OPEN

    def fileno(self):
        return self._file.fileno()

    def _ensureOpen(self):
        if self._state == PendingState.COMPLETED:
            raise AlreadyCompletedError('PendingFile already completed', path=self.targetPath)
        if self._state == PendingState.ABORTED:
            raise AlreadyAbortedError('PendingFile already aborted', path=self.targetPath)

    def write(self, data):
        """
        Append data to the temp file.

        Returns:
            int: Number of bytes written, always len(data) on success

        Raises:
            NoProgressError: The underlying file stopped consuming bytes
            AlreadyCompletedError, AlreadyAbortedError: The file was already finalized
            InternalError: Any other write failure (disk full, I/O error)
        """
        self._ensureOpen()

        try:
            written = writeAll(self._file, data)
        except NoProgressError as e:
            e.path = self.tempPath
            self.bytesWritten += e.written
            raise
        except OSError as e:
            raise _toMirrorError('Unable to write temp file', self.tempPath, [e]) from e

        self.bytesWritten += written
        return written

    def setAttribute(self, name, value):
        """Set an extended attribute on the temp file, it moves with the file on rename."""
        self._ensureOpen()

        if not hasattr(os, 'setxattr'):
            raise InternalError('Extended attributes are not supported on this platform', path=self.tempPath)

        if isinstance(value, str):
            value = value.encode('utf-8')

        try:
            os.setxattr(self._file.fileno(), name, value)
        except OSError as e:
            raise _toMirrorError(f'Unable to set extended attribute {name}', self.tempPath, [e]) from e

    def _discard(self, errors):
        try:
            os.unlink(self.tempPath)
        except FileNotFoundError:
            pass
        except OSError as e:
            errors.append(e)

        self._state = PendingState.ABORTED

    def complete(self):
        """
        Durably publish the temp file at the target path, replacing any previous target.

        A second call after success is a no-op. On failure the temp file is removed and
        the target is left as it was.

        Raises:
            AlreadyAbortedError: The file was aborted before
            InternalError, PermissionDeniedError: sync, close or rename failed
        """
        if self._state == PendingState.COMPLETED:
            return
        if self._state == PendingState.ABORTED:
            raise AlreadyAbortedError('PendingFile already aborted', path=self.targetPath)

        errors = []

        # Without fsync before rename, a crash could leave a truncated target behind.
        try:
            self._file.flush()
            os.fsync(self._file.fileno())
        except OSError as e:
            errors.append(e)

        try:
            self._file.close()
        except OSError as e:
            errors.append(e)

        if errors:
            self._discard(errors)
            raise _toMirrorError('Unable to sync temp file', self.tempPath, errors)

        try:
            os.replace(self.tempPath, self.targetPath)
        except OSError as e:
            errors.append(e)
            self._discard(errors)
            raise _toMirrorError('Unable to rename temp file onto target', self.targetPath, errors) from e

        self._state = PendingState.COMPLETED
        logger.debug(f'Published {self.targetPath} ({self.bytesWritten} bytes)')

    def abort(self):
        """
        Discard the temp file. A second call is a no-op.

        Raises:
            AlreadyCompletedError: The file was completed before
            InternalError: close or unlink failed (the file is aborted anyway)
        """
        if self._state == PendingState.ABORTED:
            return
        if self._state == PendingState.COMPLETED:
            raise AlreadyCompletedError('PendingFile already completed', path=self.targetPath)

        errors = []
        if not self._file.closed:
            try:
                self._file.close()
            except OSError as e:
                errors.append(e)

        self._discard(errors)
        logger.debug(f'Discarded temp file {self.tempPath}')

        if errors:
            raise _toMirrorError('Unable to discard temp file', self.tempPath, errors)

    def cleanup(self):
        """Implicit close: aborts the file if it is still open, otherwise does nothing."""
        if self._state == PendingState.OPEN:
            self.abort()

    def __enter__(self):
        return self

    def __exit__(self, excType, excValue, traceback):
        self.cleanup()
        return False

    def __repr__(self):
        return f'<PendingFile {self.tempPath} -> {self.targetPath} ({self._state.value})>'
