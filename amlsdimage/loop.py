# Copyright 2019  Jonas Eriksson
#
#   Licensed under the Apache License, Version 2.0 (the "License");
#   you may not use this file except in compliance with the License.
#   You may obtain a copy of the License at
#
#       http://www.apache.org/licenses/LICENSE-2.0
#
#   Unless required by applicable law or agreed to in writing, software
#   distributed under the License is distributed on an "AS IS" BASIS,
#   WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#   See the License for the specific language governing permissions and
#   limitations under the License.

"""
Scoped loop devices and mounts. Both are released on every exit path; if an
exception is already on its way out, a failing release is logged rather than
raised, so that the original error is the one reported.
"""

import contextlib
import os
import stat
import time

from .common import logger, DiskImageException, ImageIOError
from .tools import get_tool

def _is_block_device(path):
    try:
        return stat.S_ISBLK(os.stat(path).st_mode)
    except FileNotFoundError:
        return False

def _release(function, *args):
    try:
        function(*args)
    except DiskImageException as exception:
        logger.warning("Cleanup failed: %s", exception)

class LoopDevice():
    """
    Context manager attaching an image file to a loop device, with partition
    scanning.

    :param image_path: Image file to attach.
    :param partitions: Number of partition devices to wait for.
    :param settle_timeout: Seconds to wait for the partition devices.
    """
    def __init__(self, image_path, partitions=2, settle_timeout=5.0):
        self._image_path = image_path
        self._partitions = partitions
        self._settle_timeout = settle_timeout
        self._losetup = get_tool('none', 'losetup')
        self.device = None

    def partition(self, number):
        """
        Get the device node of a partition, e.g. `/dev/loop0p1`.
        """
        return "{}p{}".format(self.device, number)

    def _wait_for_partitions(self):
        deadline = time.monotonic() + self._settle_timeout
        wanted = [self.partition(n) for n in range(1, self._partitions + 1)]
        while True:
            missing = [path for path in wanted if not _is_block_device(path)]
            if not missing:
                return
            if time.monotonic() > deadline:
                raise ImageIOError("Partition device(s) {} not found".format(
                    ", ".join(missing)))
            time.sleep(0.1)

    def __enter__(self):
        self.device = self._losetup.attach(self._image_path)
        logger.info("  Loop device: %s", self.device)
        try:
            self._wait_for_partitions()
        except BaseException:
            _release(self._losetup.detach, self.device)
            raise
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        if exc_type is None:
            self._losetup.detach(self.device)
        else:
            _release(self._losetup.detach, self.device)
        self.device = None

@contextlib.contextmanager
def mounted(device, mountpoint):
    """
    Mount a device for the duration of a `with` block.

    :param device: Block device.
    :param mountpoint: Existing directory to mount it on.
    """
    umount = get_tool('none', 'umount')
    get_tool('none', 'mount').call(device, mountpoint)
    try:
        yield mountpoint
    except BaseException:
        _release(umount.call, mountpoint)
        raise
    umount.call(mountpoint)
