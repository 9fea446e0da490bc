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
Partition layout planning

The image holds a raw bootloader area, followed by a boot partition of fixed
size and a rootfs partition filling up the rest:

    sector 0                      MBR (partition table in bytes 442-511)
    sectors 1 .. start-1          bootloader, written raw
    sectors start .. boot_end     partition 1, boot
    sectors boot_end+1 .. end     partition 2, rootfs
"""

from collections import namedtuple

from .common import ConfigError, SECTOR_SIZE, SECTORS_PER_MB

class PartitionExtent(namedtuple('PartitionExtent', [
        'index', 'start', 'end', 'filesystem', 'label', 'flags'])):
    """
    A partition, in sectors; `end` is inclusive.
    """
    __slots__ = ()

    @property
    def size_sectors(self):
        return self.end - self.start + 1

    @property
    def size_bytes(self):
        return self.size_sectors * SECTOR_SIZE

    @property
    def offset_bytes(self):
        return self.start * SECTOR_SIZE

class Layout(namedtuple('Layout', ['image_sectors', 'boot', 'rootfs'])):
    """
    A planned image layout.
    """
    __slots__ = ()

    @property
    def partitions(self):
        return (self.boot, self.rootfs)

    @property
    def image_size_bytes(self):
        return self.image_sectors * SECTOR_SIZE

    @property
    def bootloader_area_bytes(self):
        """
        Number of bytes in front of the first partition.
        """
        return self.boot.start * SECTOR_SIZE

def plan_layout(image_size_mb, boot_size_mb, boot_start_sector,
                boot_filesystem='fat32', boot_label='BOOT',
                rootfs_filesystem='ext4', rootfs_label='ROOTFS'):
    """
    Calculate the partition boundaries of the image.

    :param image_size_mb: Total image size in MiB.
    :param boot_size_mb: Boot partition size in MiB.
    :param boot_start_sector: First sector of the boot partition; everything
                              before it is reserved for the bootloader.
    :param boot_filesystem: File system of the boot partition.
    :param boot_label: File system label of the boot partition.
    :param rootfs_filesystem: File system of the rootfs partition.
    :param rootfs_label: File system label of the rootfs partition.
    """
    for name, value in (('image_size_mb', image_size_mb),
                        ('boot_size_mb', boot_size_mb),
                        ('boot_start_sector', boot_start_sector)):
        if not isinstance(value, int) or value < 0:
            raise ConfigError("{} must be a non-negative integer, got "
                              "{!r}".format(name, value))
    if boot_start_sector < 1:
        raise ConfigError("The boot partition can not start in the MBR sector")
    if boot_size_mb < 1:
        raise ConfigError("The boot partition must be at least 1 MiB")

    image_sectors = image_size_mb * SECTORS_PER_MB
    boot_sectors = boot_size_mb * SECTORS_PER_MB
    if boot_sectors > image_sectors - boot_start_sector:
        raise ConfigError("Boot partition of {} MiB starting at sector {} does "
                          "not fit in a {} MiB image".format(
                              boot_size_mb, boot_start_sector, image_size_mb))

    boot_end = boot_start_sector + boot_sectors - 1
    rootfs_start = boot_end + 1
    rootfs_end = image_sectors - 1
    if rootfs_end < rootfs_start:
        raise ConfigError("No space left for the rootfs partition in a {} MiB "
                          "image".format(image_size_mb))

    boot = PartitionExtent(index=1, start=boot_start_sector, end=boot_end,
                           filesystem=boot_filesystem, label=boot_label,
                           flags=('BOOT',))
    rootfs = PartitionExtent(index=2, start=rootfs_start, end=rootfs_end,
                             filesystem=rootfs_filesystem, label=rootfs_label,
                             flags=())
    return Layout(image_sectors=image_sectors, boot=boot, rootfs=rootfs)

def plan_layout_for(config):
    """
    Plan the layout described by a `BoardConfig`.
    """
    return plan_layout(config.image_size_mb, config.boot_size_mb,
                       config.boot_start_sector,
                       boot_filesystem=config.boot_filesystem,
                       boot_label=config.boot_label,
                       rootfs_filesystem=config.rootfs_filesystem,
                       rootfs_label=config.rootfs_label)
