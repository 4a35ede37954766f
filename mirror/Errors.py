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
Error taxonomy of the mirror write pipeline.

Two channels are kept apart:
- MirrorError and its subclasses are raised. They may change the response delivered
  to the client, so they are only raised before any byte has been sent (the one
  exception is a failed write to the mirror file, reported as a failed send).
- Diagnostic records go to a Diagnostics channel. They describe best-effort failures
  (sidecars, hashing, finalize, implicit cleanup) and are logged, never raised.
"""

import threading

from dataclasses import dataclass, field
from http import HTTPStatus
from typing import List, Optional

from mirror.Kernel import getLogger

logger = getLogger(__name__)


class MirrorError(Exception):
    """Base exception for mirror pipeline errors"""

    defaultStatusCode = HTTPStatus.INTERNAL_SERVER_ERROR

    def __init__(self, message, statusCode=None, path=None, errors=None):
        super().__init__(message)
        self.statusCode = statusCode if statusCode is not None else self.defaultStatusCode
        self.path = path
        self.errors = list(errors or [])

    def __str__(self):
        message = super().__str__()
        if self.path:
            message = f'{message}: {self.path}'
        if self.errors:
            message = f"{message} ({'; '.join(str(e) for e in self.errors)})"
        return message


class InvalidRequestError(MirrorError):
    """Raised when the request path is malformed, e.g. not absolute (400)"""
    defaultStatusCode = HTTPStatus.BAD_REQUEST


class PermissionDeniedError(MirrorError):
    """Raised when the filesystem refuses access to the target or its directory (403)"""
    defaultStatusCode = HTTPStatus.FORBIDDEN


class NotRegularError(MirrorError):
    """Raised when the target exists but is neither a regular file nor a directory (403)"""
    defaultStatusCode = HTTPStatus.FORBIDDEN


class IsDirectoryError(MirrorError):
    """Raised when the target is a directory. Not a client error: the request passes through."""
    defaultStatusCode = None


class NoProgressError(MirrorError):
    """Raised when a write call consumes nothing without reporting an error"""


class AlreadyCompletedError(MirrorError):
    """Raised when a completed PendingFile is aborted or written to"""


class AlreadyAbortedError(MirrorError):
    """Raised when an aborted PendingFile is completed or written to"""


class InternalError(MirrorError):
    """Any other filesystem failure (disk full, I/O error, failed rename)"""


@dataclass
class Diagnostic:
    """A best-effort failure. Never alters what the client receives."""
    operation: str
    error: BaseException
    path: Optional[str] = None

    def __str__(self):
        where = f' [{self.path}]' if self.path else ''
        return f'{self.operation}{where}: {self.error}'


@dataclass
class Diagnostics:
    """
    Collects Diagnostic records for one request and logs each of them.

    There is no way to turn a Diagnostic back into a raised error; components that
    only have access to this channel cannot affect the client-visible result.
    """
    log: object = None
    records: List[Diagnostic] = field(default_factory=list)

    def __post_init__(self):
        self._lock = threading.Lock()
        if self.log is None:
            self.log = logger

    def report(self, operation, error, path=None):
        diagnostic = Diagnostic(operation=operation, error=error, path=path)
        with self._lock:
            self.records.append(diagnostic)
        self.log.error(f'Best-effort operation failed: {diagnostic}')
        return diagnostic

    def __len__(self):
        return len(self.records)

    def __iter__(self):
        return iter(list(self.records))

    def operations(self):
        return [d.operation for d in self.records]
