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

import os
import re
import sys

import bitmath

from mirror.Kernel import getLogger

ONE_KB = bitmath.KiB(1).bytes
ONE_MB = bitmath.MiB(1).bytes
ONE_GB = bitmath.GiB(1).bytes
ONE_TB = bitmath.TiB(1).bytes

logger = getLogger(__name__)


# flush is required when stdout is piped (e.g. under a process supervisor).
def flushPrint(text):
    try:
        print(text, flush=True)
    except UnicodeEncodeError as e:
        logger.debug(f"UnicodeEncodeError during print, using fallback encoding: {e}, {sys.stdout.encoding=}")
        print(text.encode(sys.stdout.encoding, errors='replace').decode(sys.stdout.encoding), flush=True)


def formatSize(size, decimal=None, plural=None):
    if size is None:
        return 'unknown size'

    if decimal is None:
        if size < ONE_GB: # Less than 1GB
            decimal = 0
        elif size < ONE_TB: # Between 1GB and 1TB
            decimal = 1
        else: # Greater than 1TB
            decimal = 2

    if plural is None:
        plural = False if size > ONE_KB else True

    best = bitmath.Byte(size).best_prefix(system=bitmath.SI)

    # bitmath 1.x names the byte unit 'Byte', 2.x names it 'B'
    if type(best) is bitmath.Byte:
        unit = 'Bytes' if plural and best.value != 1 else 'Byte'
        return f'{best.value:.{decimal}f} {unit}'

    sizeStr = best.format("{value:.%df}{unit}" % decimal)
    return sizeStr.replace('B', '').upper()


def getEnv(envVar, default):
    """Safely get value from environment variable with automatic type detection based on default"""
    try:
        value = os.getenv(envVar)
        if value is not None:
            if default is None:
                return value

            # Automatically detect type based on default value
            if isinstance(default, bool):
                return value == "True"
            elif isinstance(default, int):
                return int(value)
            elif isinstance(default, float):
                return float(value)
            elif isinstance(default, str):
                return str(value)
            else:
                return type(default)(value)
        return default
    except (ValueError, TypeError):
        return default


class Replacer:
    """
    Substitutes `{name}` placeholders in configuration strings with per-request values.

    Example:
        repl = Replacer({'vars.root': '/srv/mirror', 'host': 'example.com'})
        repl.replaceAll('{vars.root}/{host}', '.')  # '/srv/mirror/example.com'
    """

    PLACEHOLDER = re.compile(r'\{([A-Za-z0-9_.\-]+)\}')

    def __init__(self, values=None):
        self.values = dict(values or {})

    def set(self, name, value):
        self.values[name] = value

    def get(self, name):
        return self.values.get(name)

    def replaceAll(self, template, empty=''):
        """
        Replace every placeholder. Unknown placeholders, and placeholders whose value
        is empty, are replaced with `empty`.
        """

        def substitute(match):
            value = self.values.get(match.group(1))
            if value is None or value == '':
                return empty
            return str(value)

        return self.PLACEHOLDER.sub(substitute, template)
