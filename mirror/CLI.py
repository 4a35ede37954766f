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

import argparse
import json
import os
import logging
import logging.config

from mirror.Kernel import PUBLIC_VERSION, LOG_LEVEL_MAPPING, getLogger, configureGlobalLogLevel, StorageLocator
from mirror.Settings import DEFAULT_HOST, DEFAULT_PORT, DEFAULT_UPSTREAM_TIMEOUT, MirrorConfig, ServerConfig
from mirror.Utils import flushPrint, getEnv

logger = getLogger(__name__)


def loadEnvFile():
    """
    Load environment variables from the .env file found by StorageLocator.
    Variables already present in os.environ are kept.
    """
    envFilePath = StorageLocator.getInstance().findConfig('.env')

    if not os.path.exists(envFilePath):
        return 0

    loadedCount = 0
    try:
        with open(envFilePath, 'r', encoding='utf-8') as f:
            for lineNum, line in enumerate(f, 1):
                line = line.strip()

                # Skip empty lines and comments
                if not line or line.startswith('#'):
                    continue

                if '=' not in line:
                    logger.warning(f'.env line {lineNum}: Invalid format (missing =): {line}')
                    continue

                key, _, value = line.partition('=')
                key = key.strip()
                value = value.strip()

                if not key:
                    logger.warning(f'.env line {lineNum}: Empty key')
                    continue

                # Remove quotes if present (both single and double)
                if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
                    value = value[1:-1]

                # Environment takes precedence
                if key not in os.environ:
                    os.environ[key] = value
                    loadedCount += 1
                else:
                    logger.debug(f'.env: Skipped {key} (already set in environment)')

        logger.info(f'Loaded {loadedCount} environment variables from {envFilePath}')

    except (OSError, UnicodeDecodeError) as e:
        logger.error(f'Unable to load .env file {envFilePath}: {e}')

    return loadedCount


def configureLogging(logLevel):
    """
    Configure logging from --log-level or MIRROR_LOGGING_LEVEL (CLI wins).

    The value is either a level name (DEBUG, INFO, WARNING, ERROR) or the path of a JSON
    logging.config.dictConfig file.
    """

    def suppressNoisyLogger():
        logging.getLogger('urllib3').setLevel(logging.INFO)
        logging.getLogger('urllib3.connectionpool').setLevel(logging.INFO)
        logging.getLogger('sentry_sdk').setLevel(logging.INFO)

    if logLevel is None:
        logLevel = getEnv('MIRROR_LOGGING_LEVEL', None)

    if logLevel is None:
        suppressNoisyLogger()
        return None

    if os.path.isfile(logLevel):
        try:
            with open(logLevel, 'r') as configFile:
                configDict = json.load(configFile)

            logging.config.dictConfig(configDict)
            logger.info(f"Logging configured from file: {logLevel}")
            suppressNoisyLogger()
            return logLevel

        except (json.JSONDecodeError, OSError, KeyError, ValueError) as e:
            flushPrint(f"Failed to load logging config from {logLevel}: {e}")
            flushPrint("Falling back to default logging level configuration")

    if logLevel.upper() in LOG_LEVEL_MAPPING:
        configureGlobalLogLevel(LOG_LEVEL_MAPPING[logLevel.upper()])
        logger.info(f"Logging level set to {logLevel}")
    else:
        logger.warning(f"Invalid logging level '{logLevel}', using WARNING as default")
        configureGlobalLogLevel(logging.WARNING)

    suppressNoisyLogger()

    return logLevel


def configureCLIParser():
    parser = argparse.ArgumentParser(
        prog='mirrorproxy',
        description='Reverse proxy that keeps a write-through local mirror of fetched content.',
        epilog='Boolean MIRROR_* environment variables are only enabled by the exact value True.',
    )

    parser.add_argument('--version', action='version', version=f'MirrorProxy v{PUBLIC_VERSION}')
    parser.add_argument('--upstream', help='Upstream base URL, e.g. https://example.com (env: MIRROR_UPSTREAM)')
    parser.add_argument(
        '--root',
        help='Mirror root directory, may contain {placeholders} such as {request.host} (env: MIRROR_ROOT)'
    )
    parser.add_argument('--host', help=f'Address to listen on (default: {DEFAULT_HOST})')
    parser.add_argument('--port', type=int, help=f'Port to listen on (default: {DEFAULT_PORT})')
    parser.add_argument(
        '--timeout',
        type=float,
        help=f'Upstream connect/read timeout in seconds (default: {DEFAULT_UPSTREAM_TIMEOUT})'
    )
    parser.add_argument('--etag-file-suffix', dest='etagFileSuffix', help='Write ETags to <file><suffix>')
    parser.add_argument('--digest-file-suffix', dest='digestFileSuffix', help='Write SHA-256 digests to <file><suffix>')
    parser.add_argument(
        '--xattr',
        dest='useXattr',
        action='store_true',
        default=None,
        help='Store ETags as user.xdg.origin.etag (env: MIRROR_XATTR=True)'
    )
    parser.add_argument(
        '--sha256-xattr',
        dest='sha256Xattr',
        action='store_true',
        default=None,
        help='Store SHA-256 digests as user.xdg.origin.sha256 (env: MIRROR_SHA256_XATTR=True)'
    )
    parser.add_argument(
        '--skip-existing',
        dest='skipExisting',
        action='store_true',
        default=None,
        help='Do not refresh files that are already mirrored (env: MIRROR_SKIP_EXISTING=True)'
    )
    parser.add_argument(
        '--var',
        dest='variables',
        action='append',
        default=[],
        metavar='NAME=VALUE',
        help='Value for a {NAME} placeholder in --root, may be repeated (e.g. --var vars.root=/srv/mirror)'
    )
    parser.add_argument('--log-level', dest='logLevel', help='DEBUG, INFO, WARNING, ERROR or a logging config JSON file')

    return parser


def parseVariables(pairs):
    variables = {}
    for pair in pairs or []:
        name, sep, value = pair.partition('=')
        if not sep or not name.strip():
            raise ValueError(f'Invalid --var {pair!r}, expected NAME=VALUE')
        variables[name.strip()] = value
    return variables


def buildConfigs(args):
    """Merge CLI arguments over environment configuration."""
    mirrorConfig = MirrorConfig.fromEnv(
        root=args.root,
        etagFileSuffix=args.etagFileSuffix,
        digestFileSuffix=args.digestFileSuffix,
        useXattr=args.useXattr,
        sha256Xattr=args.sha256Xattr,
        skipExisting=args.skipExisting,
    )
    serverConfig = ServerConfig.fromEnv(
        upstream=args.upstream,
        host=args.host,
        port=args.port,
        timeout=args.timeout,
    )
    return mirrorConfig, serverConfig
