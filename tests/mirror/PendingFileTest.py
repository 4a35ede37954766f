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

import errno
import os
import stat
import unittest

from unittest.mock import patch

from mirror.Errors import (
    AlreadyAbortedError, AlreadyCompletedError, InternalError, IsDirectoryError, NoProgressError,
    NotRegularError
)
from mirror.PendingFile import PendingFile, PendingState, writeAll, isTempName
from .MirrorTestBase import MirrorTestBase


class StallingWriter:
    """Accepts a fixed number of bytes per call, then stops consuming."""

    def __init__(self, perCall, budget):
        self.perCall = perCall
        self.budget = budget
        self.data = bytearray()

    def write(self, data):
        n = min(self.perCall, len(data), self.budget - len(self.data))
        self.data.extend(bytes(data[:n]))
        return n


class WriteAllTest(unittest.TestCase):

    def testShortWritesAreRetried(self):
        writer = StallingWriter(perCall=3, budget=100)
        self.assertEqual(writeAll(writer, b'hello world'), 11)
        self.assertEqual(bytes(writer.data), b'hello world')

    def testZeroWriteRaisesNoProgress(self):
        writer = StallingWriter(perCall=4, budget=6)
        with self.assertRaises(NoProgressError) as ctx:
            writeAll(writer, b'hello world')
        self.assertEqual(ctx.exception.written, 6)
        self.assertEqual(bytes(writer.data), b'hello ')

    def testOverlongWriteIsAnError(self):

        class Liar:
            def write(self, data):
                return len(data) + 1

        with self.assertRaises(RuntimeError):
            writeAll(Liar(), b'abc')

    def testEmptyData(self):
        self.assertEqual(writeAll(StallingWriter(perCall=1, budget=0), b''), 0)


class PendingFileTest(MirrorTestBase):

    def testCompletePublishesContent(self):
        target = self.path('a.txt')
        pending = PendingFile.create(target)

        self.assertTrue(pending.isOpen)
        self.assertEqual(os.path.dirname(pending.tempPath), self.root)
        self.assertTrue(isTempName(os.path.basename(pending.tempPath)))
        self.assertFalse(os.path.exists(target))

        self.assertEqual(pending.write(b'hello '), 6)
        self.assertEqual(pending.write(b'world'), 5)
        pending.complete()

        self.assertEqual(pending.state, PendingState.COMPLETED)
        self.assertEqual(pending.bytesWritten, 11)
        self.assertEqual(self.readFile('a.txt'), b'hello world')
        self.assertNoTempFiles()

    def testCreatesParentDirectories(self):
        pending = PendingFile.create(self.path('x', 'y', 'z.txt'))
        pending.write(b'deep')
        pending.complete()
        self.assertEqual(self.readFile('x/y/z.txt'), b'deep')

    def testCompleteReplacesExistingTarget(self):
        self.writeFile('a.txt', b'old content')
        pending = PendingFile.create(self.path('a.txt'))

        # Target keeps its old content until the rename
        pending.write(b'new')
        self.assertEqual(self.readFile('a.txt'), b'old content')

        pending.complete()
        self.assertEqual(self.readFile('a.txt'), b'new')

    def testEmptyFile(self):
        pending = PendingFile.create(self.path('empty'))
        pending.complete()
        self.assertEqual(self.readFile('empty'), b'')

    def testAbortLeavesTargetUntouched(self):
        self.writeFile('a.txt', b'old')
        pending = PendingFile.create(self.path('a.txt'))
        pending.write(b'partial')
        pending.abort()

        self.assertEqual(pending.state, PendingState.ABORTED)
        self.assertEqual(self.readFile('a.txt'), b'old')
        self.assertNoTempFiles()

    def testAbortWithoutTargetLeavesNothing(self):
        pending = PendingFile.create(self.path('a.txt'))
        pending.abort()
        self.assertFalse(os.path.exists(self.path('a.txt')))
        self.assertNoTempFiles()

    def testSecondCompleteIsNoop(self):
        pending = PendingFile.create(self.path('a.txt'))
        pending.write(b'x')
        pending.complete()
        pending.complete()
        self.assertEqual(pending.state, PendingState.COMPLETED)

    def testSecondAbortIsNoop(self):
        pending = PendingFile.create(self.path('a.txt'))
        pending.abort()
        pending.abort()
        self.assertEqual(pending.state, PendingState.ABORTED)

    def testAbortAfterCompleteRaises(self):
        pending = PendingFile.create(self.path('a.txt'))
        pending.complete()
        with self.assertRaises(AlreadyCompletedError):
            pending.abort()
        self.assertTrue(os.path.exists(self.path('a.txt')))

    def testCompleteAfterAbortRaises(self):
        pending = PendingFile.create(self.path('a.txt'))
        pending.abort()
        with self.assertRaises(AlreadyAbortedError):
            pending.complete()
        self.assertFalse(os.path.exists(self.path('a.txt')))

    def testWriteAfterFinishRaises(self):
        completed = PendingFile.create(self.path('a.txt'))
        completed.complete()
        with self.assertRaises(AlreadyCompletedError):
            completed.write(b'x')

        aborted = PendingFile.create(self.path('b.txt'))
        aborted.abort()
        with self.assertRaises(AlreadyAbortedError):
            aborted.write(b'x')

    def testContextManagerAbortsUnfinishedFile(self):
        with PendingFile.create(self.path('a.txt')) as pending:
            pending.write(b'partial')

        self.assertEqual(pending.state, PendingState.ABORTED)
        self.assertFalse(os.path.exists(self.path('a.txt')))
        self.assertNoTempFiles()

    def testContextManagerKeepsCompletedFile(self):
        with PendingFile.create(self.path('a.txt')) as pending:
            pending.write(b'done')
            pending.complete()

        self.assertEqual(pending.state, PendingState.COMPLETED)
        self.assertEqual(self.readFile('a.txt'), b'done')

    @unittest.skipUnless(hasattr(os, 'fchmod'), 'POSIX permissions only')
    def testCopiesPermissionsOfExistingTarget(self):
        self.writeFile('a.txt', b'old', mode=0o640)
        pending = PendingFile.create(self.path('a.txt'))

        self.assertEqual(stat.S_IMODE(os.stat(pending.tempPath).st_mode), 0o640)
        pending.complete()
        self.assertEqual(stat.S_IMODE(os.stat(self.path('a.txt')).st_mode), 0o640)

    def testDirectoryTargetRefused(self):
        os.mkdir(self.path('dir'))
        with self.assertRaises(IsDirectoryError):
            PendingFile.create(self.path('dir'))
        self.assertNoTempFiles()

    @unittest.skipUnless(hasattr(os, 'symlink'), 'symlinks not available')
    def testSymlinkTargetRefused(self):
        real = self.writeFile('real.txt', b'x')
        try:
            os.symlink(real, self.path('link.txt'))
        except OSError as e:
            self.skipTest(f'Cannot create symlink: {e}')

        with self.assertRaises(NotRegularError):
            PendingFile.create(self.path('link.txt'))
        self.assertNoTempFiles()

    def testTempNamesAreUnique(self):
        first = PendingFile.create(self.path('a.txt'))
        second = PendingFile.create(self.path('a.txt'))
        try:
            self.assertNotEqual(first.tempPath, second.tempPath)
        finally:
            first.abort()
            second.abort()

    def testLastCompleteWins(self):
        first = PendingFile.create(self.path('a.txt'))
        second = PendingFile.create(self.path('a.txt'))
        first.write(b'first')
        second.write(b'second')
        first.complete()
        second.complete()
        self.assertEqual(self.readFile('a.txt'), b'second')
        self.assertNoTempFiles()

    def testSyncFailureDiscardsTempFile(self):
        self.writeFile('a.txt', b'old')
        pending = PendingFile.create(self.path('a.txt'))
        pending.write(b'new')

        with patch('mirror.PendingFile.os.fsync', side_effect=OSError(errno.EIO, 'I/O error')):
            with self.assertRaises(InternalError) as ctx:
                pending.complete()

        self.assertIn('I/O error', str(ctx.exception))
        self.assertEqual(pending.state, PendingState.ABORTED)
        self.assertEqual(self.readFile('a.txt'), b'old')
        self.assertNoTempFiles()

    def testRenameFailureDiscardsTempFile(self):
        self.writeFile('a.txt', b'old')
        pending = PendingFile.create(self.path('a.txt'))
        pending.write(b'new')

        with patch('mirror.PendingFile.os.replace', side_effect=OSError(errno.EXDEV, 'Cross-device link')):
            with self.assertRaises(InternalError):
                pending.complete()

        self.assertEqual(pending.state, PendingState.ABORTED)
        self.assertEqual(self.readFile('a.txt'), b'old')
        self.assertNoTempFiles()

    def testWriteFailureIsInternalError(self):
        pending = PendingFile.create(self.path('a.txt'))
        try:
            with patch('mirror.PendingFile.writeAll', side_effect=OSError(errno.ENOSPC, 'No space left on device')):
                with self.assertRaises(InternalError) as ctx:
                    pending.write(b'data')
            self.assertEqual(ctx.exception.statusCode, 500)
            self.assertIn('No space left', str(ctx.exception))
            self.assertTrue(pending.isOpen)
        finally:
            pending.abort()
        self.assertNoTempFiles()

    def testStalledWriteRaisesNoProgress(self):

        class StalledFile:
            closed = False

            def write(self, data):
                return 0

            def close(self):
                self.closed = True

        pending = PendingFile(StalledFile(), self.path('.a.txt.0000000000000000.tmp'), self.path('a.txt'))
        with self.assertRaises(NoProgressError) as ctx:
            pending.write(b'data')

        self.assertEqual(ctx.exception.written, 0)
        self.assertTrue(pending.isOpen)
        pending.abort()
        self.assertEqual(pending.state, PendingState.ABORTED)


if __name__ == '__main__':
    unittest.main()
