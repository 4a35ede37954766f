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

from dataclasses import dataclass

from mirror.Utils import getEnv

# Placeholder resolved per request; an unset value means the working directory.
DEFAULT_ROOT = '{vars.root}'

DEFAULT_HOST = '127.0.0.1'
DEFAULT_PORT = 8080

# Upstream read/relay chunk size (256 KiB), TRANSFER_CHUNK_SIZE overrides it
DEFAULT_TRANSFER_CHUNK_SIZE = 256 * 1024

# Upstream connect/read timeout in seconds
DEFAULT_UPSTREAM_TIMEOUT = 30.0

# Extended attribute names, shared with other tools following the xdg convention
XATTR_ETAG = 'user.xdg.origin.etag'
XATTR_SHA256 = 'user.xdg.origin.sha256'


@dataclass(frozen=True)
class MirrorConfig:
    """
    Options of the mirror handler.

    root:             Root directory template. Responses are written below it.
    etagFileSuffix:   If set, ETags are written to `target + etagFileSuffix`.
    useXattr:         Store ETags as the user.xdg.origin.etag extended attribute.
    sha256Xattr:      Hash mirrored bodies and store the hex SHA-256 as user.xdg.origin.sha256.
    digestFileSuffix: If set, the hex SHA-256 is also written to `target + digestFileSuffix`.
    skipExisting:     Do not refresh a target that already exists as a regular file.

    fromEnv() reads MIRROR_* variables; boolean ones are enabled only by the exact value 'True'.
    """
    root: str = DEFAULT_ROOT
    etagFileSuffix: str = ''
    useXattr: bool = False
    sha256Xattr: bool = False
    digestFileSuffix: str = ''
    skipExisting: bool = False

    @property
    def hashingEnabled(self):
        return self.sha256Xattr or bool(self.digestFileSuffix)

    @classmethod
    def fromEnv(cls, **overrides):
        values = {
            'root': getEnv('MIRROR_ROOT', DEFAULT_ROOT),
            'etagFileSuffix': getEnv('MIRROR_ETAG_FILE_SUFFIX', ''),
            'useXattr': getEnv('MIRROR_XATTR', False),
            'sha256Xattr': getEnv('MIRROR_SHA256_XATTR', False),
            'digestFileSuffix': getEnv('MIRROR_DIGEST_FILE_SUFFIX', ''),
            'skipExisting': getEnv('MIRROR_SKIP_EXISTING', False),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


@dataclass(frozen=True)
class ServerConfig:
    """Options of the proxy host that drives the mirror handler."""
    upstream: str = ''
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    timeout: float = DEFAULT_UPSTREAM_TIMEOUT
    chunkSize: int = DEFAULT_TRANSFER_CHUNK_SIZE

    @classmethod
    def fromEnv(cls, **overrides):
        values = {
            'upstream': getEnv('MIRROR_UPSTREAM', ''),
            'host': getEnv('MIRROR_HOST', DEFAULT_HOST),
            'port': getEnv('MIRROR_PORT', DEFAULT_PORT),
            'timeout': getEnv('MIRROR_UPSTREAM_TIMEOUT', DEFAULT_UPSTREAM_TIMEOUT),
            'chunkSize': getEnv('TRANSFER_CHUNK_SIZE', DEFAULT_TRANSFER_CHUNK_SIZE),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
