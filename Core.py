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
import signal
import sys

from mirror.Kernel import getLogger
from mirror.CLI import buildConfigs, configureCLIParser, configureLogging, loadEnvFile, parseVariables
from mirror.Server import createServer
from mirror.Utils import flushPrint

logger = getLogger(__name__)


def setupGracefulShutdown():
    """Setup signal handlers for graceful shutdown on multiple Ctrl+C"""
    context = {'shutdownInProgress': False}

    def signalHandler(signum, frame):
        if context['shutdownInProgress']:
            # Second Ctrl+C - force immediate exit without cleanup messages
            os._exit(0)
        else:
            context['shutdownInProgress'] = True
            raise KeyboardInterrupt()

    signal.signal(signal.SIGINT, signalHandler)


def main(argv=None):
    # Load .env file early, before any configuration is read
    loadEnvFile()

    parser = configureCLIParser()
    args = parser.parse_args(argv)

    configureLogging(args.logLevel)

    try:
        variables = parseVariables(args.variables)
    except ValueError as e:
        parser.error(str(e))

    mirrorConfig, serverConfig = buildConfigs(args)
    if not serverConfig.upstream:
        parser.error('--upstream (or MIRROR_UPSTREAM) is required')

    try:
        server = createServer(mirrorConfig, serverConfig, variables=variables)
    except OSError as e:
        flushPrint(f'Unable to listen on {serverConfig.host}:{serverConfig.port}: {e}')
        logger.debug(f'Bind failure: {e}', exc_info=True)
        return 1

    flushPrint(f'Mirroring {serverConfig.upstream} into {mirrorConfig.root} via {server.getURL()}')

    setupGracefulShutdown()
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        flushPrint('\nExiting on user request (Ctrl+C)...')
    finally:
        server.server_close()
        server.session.close()

    return 0


if __name__ == '__main__':
    sys.exit(main() or 0)
