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
File system creation and population of the two partitions.

Two strategies are available:

- `LoopPopulator` attaches the image to a loop device, formats the partition
  devices, mounts them and fills them in place. It needs root.

- `OfflinePopulator` builds each file system in a temp file (`mkfs.ext4 -d`
  for the rootfs, mtools for the boot partition) and copies the files into
  the image at the partition offsets. No loop devices or mounts are needed,
  but file ownership is only preserved when run as root or under fakeroot.

Both copy the contents of the rootfs `/boot` directory to the boot partition.
FAT has no symlinks, so links are copied as the files they point to; this
matters for `dtb.img`, which is usually a link into `dtb/`.
"""

import contextlib
import os
import shutil
import tarfile
import tempfile

from .common import logger, ConfigError, ImageIOError, create_sparse_file, \
        human_size
from .cfr import copy_file_to_offset
from .loop import LoopDevice, mounted
from .tools import get_tool

_MAX_SYMLINK_HOPS = 40

def _is_within_directory(directory, target):
    abs_directory = os.path.abspath(directory)
    abs_target = os.path.abspath(target)
    return os.path.commonpath([abs_directory, abs_target]) == abs_directory

def _directory_size(path):
    total = 0
    for parent, _dirs, files in os.walk(path):
        for filename in files:
            file_path = os.path.join(parent, filename)
            if not os.path.islink(file_path):
                total += os.path.getsize(file_path)
    return total

def extract_rootfs(tarball, destination):
    """
    Extract a rootfs tarball, preserving permissions, ownership (when root)
    and symlinks.

    :param tarball: Compressed or uncompressed tar archive.
    :param destination: Directory to extract into.
    """
    try:
        with tarfile.open(tarball, 'r:*') as tar:
            members = tar.getmembers()
            for member in members:
                member_path = os.path.join(destination, member.name)
                if not _is_within_directory(destination, member_path):
                    raise ConfigError("Attempted path traversal in {}: "
                                      "{}".format(tarball, member.name))
            kwargs = {}
            # Keep setuid bits and absolute symlinks, this is a whole OS
            if hasattr(tarfile, 'fully_trusted_filter'):
                kwargs['filter'] = 'fully_trusted'
            tar.extractall(destination, members, numeric_owner=True, **kwargs)
    except (tarfile.TarError, OSError) as exception:
        raise ImageIOError("Failed to extract {}: {}".format(tarball,
                                                             exception))
    logger.info("  Rootfs extracted: %s", human_size(
        _directory_size(destination)))

def resolve_in_root(path, root):
    """
    Resolve a path, following symlinks the way they would be followed with
    `root` as the file system root. Absolute link targets are looked up under
    `root` rather than on the host.

    :param path: Path below `root`.
    :param root: Root directory of the extracted file system.
    :return: The resolved path, or None for dangling or looping links.
    """
    for _ in range(_MAX_SYMLINK_HOPS):
        if not os.path.islink(path):
            return path if os.path.exists(path) else None
        target = os.readlink(path)
        if os.path.isabs(target):
            path = os.path.join(root, target.lstrip('/'))
        else:
            path = os.path.normpath(os.path.join(os.path.dirname(path),
                                                 target))
    return None

def _copy_tree(source, destination, root, ancestors=frozenset()):
    # Not shutil.copytree, as copying the mode bits fails on FAT mounts
    os.makedirs(destination, exist_ok=True)
    real_source = os.path.realpath(source)
    if real_source in ancestors:
        logger.warning("  Skipped directory loop: %s", source)
        return
    ancestors = ancestors | {real_source}
    for name in sorted(os.listdir(source)):
        path = resolve_in_root(os.path.join(source, name), root)
        target = os.path.join(destination, name)
        if path is None:
            logger.warning("  Skipped dangling link: %s",
                           os.path.join(source, name))
        elif os.path.isfile(path):
            shutil.copyfile(path, target)
        elif os.path.isdir(path):
            _copy_tree(path, target, root, ancestors)
        else:
            logger.warning("  Skipped: %s (not a file or directory)",
                           os.path.join(source, name))

def copy_boot_files(boot_source, boot_destination, root):
    """
    Copy the kernel, initrd, device trees and boot scripts from the rootfs
    `/boot` directory to the boot partition.

    :param boot_source: The `boot` directory of the extracted rootfs.
    :param boot_destination: Root of the boot partition.
    :param root: Root of the extracted rootfs, used to resolve links.
    :return: List of the copied entries.
    """
    if not os.path.isdir(boot_source):
        raise ConfigError("The rootfs has no boot directory "
                          "({})".format(boot_source))
    copied = []
    for name in sorted(os.listdir(boot_source)):
        path = resolve_in_root(os.path.join(boot_source, name), root)
        target = os.path.join(boot_destination, name)
        if path is None:
            logger.warning("  Skipped dangling link: %s", name)
            continue
        if os.path.isfile(path):
            shutil.copyfile(path, target)
            logger.info("  Copied: %s", name)
        elif os.path.isdir(path):
            _copy_tree(path, target, root)
            logger.info("  Copied dir: %s/", name)
        else:
            logger.warning("  Skipped: %s (not a file or directory)", name)
            continue
        copied.append(name)
    logger.info("  Boot partition: %s", human_size(
        _directory_size(boot_destination)))
    return copied

def remove_mount_points(parent):
    """
    Remove a mount point directory created by `LoopPopulator`, and the mount
    points in it. Only empty directories are removed, so a file system that
    failed to unmount is left alone; failures are logged.

    :param parent: Directory holding the mount points.
    """
    for path in (os.path.join(parent, 'boot'), os.path.join(parent, 'root'),
                 parent):
        if not os.path.isdir(path):
            continue
        try:
            os.rmdir(path)
        except OSError as exception:
            logger.warning("Cleanup failed: %s", exception)

class Populator():
    """
    Populator abstraction class
    """
    def tools(self, layout):
        """
        Get the tools needed to populate a layout, for checking.
        """
        raise NotImplementedError()

    def populate(self, image_path, layout, rootfs_tarball):
        """
        Create the file systems of the layout in a partitioned image, extract
        the rootfs into the rootfs partition and copy its boot files into the
        boot partition.

        :param image_path: Partitioned image.
        :param layout: The `Layout` the image was partitioned with.
        :param rootfs_tarball: Rootfs tar archive.
        """
        raise NotImplementedError()

class LoopPopulator(Populator):
    """
    Populate an image through a loop device and mounts (requires root).

    :param temp_dir: Parent directory for the mount points.
    :param settle_timeout: Seconds to wait for the loop partition devices.
    """
    def __init__(self, temp_dir=None, settle_timeout=5.0):
        self._temp_dir = temp_dir
        self._settle_timeout = settle_timeout

    def tools(self, layout):
        tools = [get_tool('none', 'losetup'), get_tool('none', 'mount'),
                 get_tool('none', 'umount')]
        tools.extend(get_tool(extent.filesystem, 'mkfs')
                     for extent in layout.partitions)
        return tools

    def populate(self, image_path, layout, rootfs_tarball):
        with contextlib.ExitStack() as stack:
            # Released last, after the unmounts
            temp_dir = tempfile.mkdtemp(prefix='amlsdimage-',
                                        dir=self._temp_dir)
            stack.callback(remove_mount_points, temp_dir)
            boot_mount = os.path.join(temp_dir, 'boot')
            root_mount = os.path.join(temp_dir, 'root')
            os.mkdir(boot_mount)
            os.mkdir(root_mount)

            loop = stack.enter_context(LoopDevice(
                image_path, partitions=len(layout.partitions),
                settle_timeout=self._settle_timeout))

            for extent in layout.partitions:
                device = loop.partition(extent.index)
                get_tool(extent.filesystem, 'mkfs').mkfs(device,
                                                         label=extent.label)
                logger.info("  %s (%s): %s", extent.label, extent.filesystem,
                            device)

            stack.enter_context(mounted(loop.partition(layout.boot.index),
                                        boot_mount))
            stack.enter_context(mounted(loop.partition(layout.rootfs.index),
                                        root_mount))

            extract_rootfs(rootfs_tarball, root_mount)
            copy_boot_files(os.path.join(root_mount, 'boot'), boot_mount,
                            root_mount)
            os.sync()

class OfflinePopulator(Populator):
    """
    Populate an image by building the file systems in temp files.

    :param temp_dir: Directory for the temp files, default is the directory of
                     the image. Make sure it has room for both partitions.
    """
    def __init__(self, temp_dir=None):
        self._temp_dir = temp_dir

    def tools(self, layout):
        tools = [get_tool(extent.filesystem, 'mkfs')
                 for extent in layout.partitions]
        tools.append(get_tool(layout.boot.filesystem, 'populate'))
        return tools

    def populate(self, image_path, layout, rootfs_tarball):
        temp_parent = self._temp_dir
        if temp_parent is None:
            temp_parent = os.path.dirname(os.path.abspath(image_path))
        with tempfile.TemporaryDirectory(prefix='amlsdimage-',
                                         dir=temp_parent) as temp_dir:
            root = os.path.join(temp_dir, 'root')
            boot_staging = os.path.join(temp_dir, 'boot')
            os.mkdir(root)
            os.mkdir(boot_staging)

            extract_rootfs(rootfs_tarball, root)
            copied = copy_boot_files(os.path.join(root, 'boot'),
                                     boot_staging, root)

            boot = layout.boot
            boot_file = os.path.join(temp_dir, 'p{}.img'.format(boot.index))
            create_sparse_file(boot_file, boot.size_bytes)
            get_tool(boot.filesystem, 'mkfs').mkfs(boot_file, label=boot.label)
            get_tool(boot.filesystem, 'populate').copy(
                boot_file, [os.path.join(boot_staging, name) for name in copied])

            rootfs = layout.rootfs
            rootfs_file = os.path.join(temp_dir,
                                       'p{}.img'.format(rootfs.index))
            create_sparse_file(rootfs_file, rootfs.size_bytes)
            get_tool(rootfs.filesystem, 'mkfs').mkfs(rootfs_file,
                                                     label=rootfs.label,
                                                     initial_data_root=root)

            for extent, path in ((boot, boot_file), (rootfs, rootfs_file)):
                if os.path.getsize(path) != extent.size_bytes:
                    raise ImageIOError("Partition {} size changed during "
                                       "creation".format(extent.index))
                logger.info("  Writing partition %d at sector %d",
                            extent.index, extent.start)
                copy_file_to_offset(path, image_path, extent.offset_bytes)
