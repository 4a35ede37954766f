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
import unittest

from unittest.mock import MagicMock, patch

import Core

from mirror.CLI import buildConfigs, configureCLIParser, loadEnvFile, parseVariables
from mirror.Settings import DEFAULT_ROOT, DEFAULT_PORT, DEFAULT_TRANSFER_CHUNK_SIZE, MirrorConfig, ServerConfig
from mirror.Utils import Replacer, formatSize, getEnv
from .MirrorTestBase import MirrorTestBase

MIRROR_ENV_KEYS = [
    'MIRROR_ROOT', 'MIRROR_ETAG_FILE_SUFFIX', 'MIRROR_XATTR', 'MIRROR_SHA256_XATTR', 'MIRROR_DIGEST_FILE_SUFFIX',
    'MIRROR_SKIP_EXISTING', 'MIRROR_UPSTREAM', 'MIRROR_HOST', 'MIRROR_PORT', 'MIRROR_UPSTREAM_TIMEOUT',
    'TRANSFER_CHUNK_SIZE'
]


def cleanEnviron(**values):
    """os.environ without any MIRROR_* configuration, plus values."""
    environ = {k: v for k, v in os.environ.items() if k not in MIRROR_ENV_KEYS}
    environ.update(values)
    return patch.dict(os.environ, environ, clear=True)


class UtilsTest(unittest.TestCase):

    def testGetEnvTypes(self):
        with patch.dict(os.environ, {'T_INT': '42', 'T_FLOAT': '1.5', 'T_BOOL': 'True', 'T_BAD': 'x'}):
            self.assertEqual(getEnv('T_INT', 0), 42)
            self.assertEqual(getEnv('T_FLOAT', 0.0), 1.5)
            self.assertIs(getEnv('T_BOOL', False), True)
            self.assertEqual(getEnv('T_BAD', 7), 7)
            self.assertEqual(getEnv('T_MISSING', 'default'), 'default')
            self.assertEqual(getEnv('T_INT', None), '42')

    def testReplacer(self):
        replacer = Replacer({'vars.root': '/srv/mirror', 'request.host': 'example.com', 'empty': ''})

        self.assertEqual(replacer.replaceAll('{vars.root}/{request.host}'), '/srv/mirror/example.com')
        self.assertEqual(replacer.replaceAll('{unknown}/x', '.'), './x')
        self.assertEqual(replacer.replaceAll('{empty}', '.'), '.')
        self.assertEqual(replacer.replaceAll('plain'), 'plain')

        replacer.set('request.host', 'other.org')
        self.assertEqual(replacer.get('request.host'), 'other.org')

    def testFormatSize(self):
        self.assertEqual(formatSize(None), 'unknown size')
        self.assertIn('M', formatSize(3 * 1024 * 1024))
        self.assertEqual(formatSize(2000), '2K')

    def testFormatSizeKeepsByteUnit(self):
        """Sizes below one kilobyte keep a spelled out unit whatever bitmath calls it."""
        self.assertEqual(formatSize(5), '5 Bytes')
        self.assertEqual(formatSize(0), '0 Bytes')
        self.assertEqual(formatSize(1), '1 Byte')
        self.assertEqual(formatSize(5, plural=False), '5 Byte')


class SettingsTest(unittest.TestCase):

    def testDefaults(self):
        with cleanEnviron():
            config = MirrorConfig.fromEnv()
            serverConfig = ServerConfig.fromEnv()

        self.assertEqual(config, MirrorConfig())
        self.assertEqual(config.root, DEFAULT_ROOT)
        self.assertFalse(config.hashingEnabled)
        self.assertEqual(serverConfig.upstream, '')
        self.assertEqual(serverConfig.port, DEFAULT_PORT)

    def testEnvironment(self):
        environ = {
            'MIRROR_ROOT': '/srv/mirror',
            'MIRROR_ETAG_FILE_SUFFIX': '.etag',
            'MIRROR_SHA256_XATTR': 'True',
            'MIRROR_SKIP_EXISTING': 'True',
            'MIRROR_UPSTREAM': 'https://example.com',
            'MIRROR_PORT': '9000',
            'MIRROR_UPSTREAM_TIMEOUT': '2.5',
        }
        with cleanEnviron(**environ):
            config = MirrorConfig.fromEnv()
            serverConfig = ServerConfig.fromEnv()

        self.assertEqual(config.root, '/srv/mirror')
        self.assertEqual(config.etagFileSuffix, '.etag')
        self.assertTrue(config.sha256Xattr)
        self.assertTrue(config.hashingEnabled)
        self.assertTrue(config.skipExisting)
        self.assertFalse(config.useXattr)
        self.assertEqual(serverConfig.upstream, 'https://example.com')
        self.assertEqual(serverConfig.port, 9000)
        self.assertEqual(serverConfig.timeout, 2.5)

    def testOverridesWinOverEnvironment(self):
        with cleanEnviron(MIRROR_ROOT='/from/env', MIRROR_PORT='9000'):
            config = MirrorConfig.fromEnv(root='/from/cli', etagFileSuffix=None)
            serverConfig = ServerConfig.fromEnv(port=0, host=None)

        self.assertEqual(config.root, '/from/cli')
        self.assertEqual(config.etagFileSuffix, '')
        self.assertEqual(serverConfig.port, 0)
        self.assertEqual(serverConfig.host, ServerConfig().host)

    def testChunkSizeReadWhenConfigIsBuilt(self):
        # Variables loaded from .env after import must still apply
        with cleanEnviron():
            self.assertEqual(ServerConfig.fromEnv().chunkSize, DEFAULT_TRANSFER_CHUNK_SIZE)

        with cleanEnviron(TRANSFER_CHUNK_SIZE='4096'):
            self.assertEqual(ServerConfig.fromEnv().chunkSize, 4096)

    def testBooleanVariablesNeedExactTrue(self):
        for value, expected in (('True', True), ('true', False), ('1', False)):
            with self.subTest(value=value):
                with cleanEnviron(MIRROR_XATTR=value):
                    self.assertIs(MirrorConfig.fromEnv().useXattr, expected)

    def testDigestSuffixEnablesHashing(self):
        self.assertTrue(MirrorConfig(digestFileSuffix='.sha256').hashingEnabled)


class CLITest(MirrorTestBase):

    def testParseVariables(self):
        self.assertEqual(parseVariables(['vars.root=/srv', 'a=b=c']), {'vars.root': '/srv', 'a': 'b=c'})
        self.assertEqual(parseVariables(None), {})

        for bad in ('novalue', '=value', ' =x'):
            with self.subTest(bad=bad):
                with self.assertRaises(ValueError):
                    parseVariables([bad])

    def testBuildConfigs(self):
        args = configureCLIParser().parse_args([
            '--upstream', 'http://upstream.local', '--root', self.root, '--port', '0', '--etag-file-suffix',
            '.etag', '--xattr', '--var', 'vars.root=/x'
        ])
        with cleanEnviron(MIRROR_SKIP_EXISTING='True'):
            mirrorConfig, serverConfig = buildConfigs(args)

        self.assertEqual(args.variables, ['vars.root=/x'])
        self.assertEqual(mirrorConfig.root, self.root)
        self.assertEqual(mirrorConfig.etagFileSuffix, '.etag')
        self.assertTrue(mirrorConfig.useXattr)
        self.assertFalse(mirrorConfig.sha256Xattr)
        # Unset flags fall back to the environment
        self.assertTrue(mirrorConfig.skipExisting)
        self.assertEqual(serverConfig.upstream, 'http://upstream.local')
        self.assertEqual(serverConfig.port, 0)

    def testHelpExplainsBooleanVariables(self):
        helpText = ' '.join(configureCLIParser().format_help().split())
        for name in ('MIRROR_XATTR=True', 'MIRROR_SHA256_XATTR=True', 'MIRROR_SKIP_EXISTING=True'):
            self.assertIn(name, helpText)
        self.assertIn('exact value True', helpText)

    def testLoadEnvFile(self):
        with open(self.path('.env'), 'w', encoding='utf-8') as f:
            f.write('# comment\n')
            f.write('MIRROR_TEST_A="quoted value"\n')
            f.write('MIRROR_TEST_B=plain\n')
            f.write('not a pair\n')

        with patch.dict(os.environ, {'MIRROR_STORAGE_LOCATION': self.root, 'MIRROR_TEST_B': 'kept'}):
            loaded = loadEnvFile()

            self.assertEqual(loaded, 1)
            self.assertEqual(os.environ['MIRROR_TEST_A'], 'quoted value')
            self.assertEqual(os.environ['MIRROR_TEST_B'], 'kept')


class CoreTest(MirrorTestBase):

    def setUp(self):
        super().setUp()
        # Keep any .env of the developer out of the way
        patcher = patch('Core.loadEnvFile', return_value=0)
        patcher.start()
        self.addCleanup(patcher.stop)

    def testUpstreamRequired(self):
        with cleanEnviron():
            with self.assertRaises(SystemExit) as ctx:
                Core.main(['--root', self.root])
        self.assertEqual(ctx.exception.code, 2)

    def testInvalidVariable(self):
        with cleanEnviron():
            with self.assertRaises(SystemExit):
                Core.main(['--upstream', 'http://upstream.local', '--var', 'broken'])

    def testServesUntilInterrupted(self):
        server = MagicMock()
        server.serve_forever.side_effect = KeyboardInterrupt()
        server.getURL.return_value = 'http://127.0.0.1:0'

        with cleanEnviron(), \
            patch('Core.createServer', return_value=server) as createServer, \
            patch('Core.setupGracefulShutdown'):
            result = Core.main(['--upstream', 'http://upstream.local', '--root', self.root, '--var', 'k=v'])

        self.assertEqual(result, 0)
        mirrorConfig, serverConfig = createServer.call_args[0]
        self.assertEqual(mirrorConfig.root, self.root)
        self.assertEqual(serverConfig.upstream, 'http://upstream.local')
        self.assertEqual(createServer.call_args[1]['variables'], {'k': 'v'})
        server.server_close.assert_called_once()
        server.session.close.assert_called_once()

    def testBindFailure(self):
        with cleanEnviron(), patch('Core.createServer', side_effect=OSError('Address already in use')):
            self.assertEqual(Core.main(['--upstream', 'http://upstream.local', '--port', '1']), 1)


if __name__ == '__main__':
    unittest.main()
