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
Mapping of request paths to local mirror targets, and classification of what is
already on disk at a target.

The site root is not a sandbox. The request path is cleaned so that it cannot climb
above the root, but files and links inside the root are used as they are found.
"""

import os
import posixpath
import stat as _stat

from enum import Enum

from mirror.Kernel import getLogger
from mirror.Errors import (
    InternalError, InvalidRequestError, IsDirectoryError, NotRegularError, PermissionDeniedError
)

logger = getLogger(__name__)


class TargetState(Enum):
    ABSENT = 'absent'
    REGULAR = 'regular'
    DIRECTORY = 'directory'
    NOT_REGULAR = 'not_regular'
    PERMISSION_DENIED = 'permission_denied'


def sanitizedPathJoin(root, reqPath):
    """
    Join a URL path onto a root directory without letting `..` segments escape the root.
    A trailing slash on reqPath is kept on the result.
    """
    if not root:
        root = '.'

    relPath = posixpath.normpath('/' + reqPath).lstrip('/')
    if relPath in ('', '.'):
        joined = root
    else:
        joined = os.path.join(root, *relPath.split('/'))

    if reqPath.endswith('/') and not joined.endswith(os.sep):
        joined += os.sep

    return joined


def pathInsideRoot(root, urlPath):
    """
    Figure out the local path of the given URL path.

    Args:
        root: Root directory, placeholders already replaced
        urlPath: Decoded request path, must be absolute

    Returns:
        str: Absolute local path with any trailing separator stripped

    Raises:
        InvalidRequestError: If urlPath is not absolute or cannot name a local file
    """
    if not urlPath.startswith('/'):
        raise InvalidRequestError('URL path not absolute', path=urlPath)
    if '\x00' in urlPath:
        raise InvalidRequestError('URL path contains NUL byte', path=repr(urlPath))

    absRoot = os.path.abspath(root or '.')
    filename = sanitizedPathJoin(absRoot, urlPath).rstrip(os.sep) or os.sep

    # Drive letters and similar platform quirks must not move the target out of the root.
    if os.path.commonpath([absRoot, os.path.abspath(filename)]) != absRoot:
        raise InvalidRequestError('URL path escapes site root', path=urlPath)

    return filename


def inspectTarget(path):
    """
    Stat path without following a final symlink.

    Returns:
        (TargetState, os.stat_result or None)

    Raises:
        InternalError: If the stat fails for any reason other than absence or permissions
    """
    try:
        st = os.lstat(path)
    except FileNotFoundError:
        return TargetState.ABSENT, None
    except PermissionError:
        return TargetState.PERMISSION_DENIED, None
    except OSError as e:
        raise InternalError('Unable to stat mirror target', path=path, errors=[e]) from e

    if _stat.S_ISREG(st.st_mode):
        return TargetState.REGULAR, st
    if _stat.S_ISDIR(st.st_mode):
        return TargetState.DIRECTORY, st
    return TargetState.NOT_REGULAR, st


def classifyTarget(path):
    """Classify what currently exists at path, without following a final symlink."""
    return inspectTarget(path)[0]


def checkTarget(path):
    """
    Classify path and raise for states where no mirror file may be created.

    Returns:
        TargetState: ABSENT or REGULAR

    Raises:
        IsDirectoryError, NotRegularError, PermissionDeniedError, InternalError
    """
    return raiseForState(classifyTarget(path), path)


def raiseForState(state, path):
    if state == TargetState.DIRECTORY:
        raise IsDirectoryError('Mirror target is a directory', path=path)
    if state == TargetState.NOT_REGULAR:
        raise NotRegularError('File is not a regular file', path=path)
    if state == TargetState.PERMISSION_DENIED:
        raise PermissionDeniedError('Permission denied', path=path)

    return state
