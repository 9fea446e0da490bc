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
Abstraction of different partitioning tools used to write the MBR partition
table of the SD card image
"""

from .common import logger, SI, SECTOR_SIZE, InvalidArguments, ToolFailure, \
        UnknownError
from .tools import get_tool

class PartitionerException(ToolFailure):
    """
    Generic partitioner error
    """

class SfdiskException(PartitionerException):
    """
    Sfdisk partitioner error
    """

class PyPartedException(PartitionerException):
    """
    PyParted partitioner error
    """

class Partitioner():
    """
    Partitioner abstraction class

    :param image_path: Path to the image to be partitioned
    :param table_type: Partition table type (label type), only 'msdos'
    """
    @classmethod
    def tools(cls):
        """
        Get the external tools this partitioner needs, for checking.
        """
        return []

    def __init__(self, image_path, table_type='msdos'):
        raise PartitionerException("Not implemented!")

    def new_partition(self, offset_blocks, size_blocks, filesystem, flags=()):
        """
        Create new partition

        :param offset_blocks: Offset for the new partition in blocks (sectors)
        :param size_blocks: Size of the new partition in blocks (sectors)
        :param filesystem: File system of the new partition
        :param flags: Flags for the new partition
        """
        raise PartitionerException("Not implemented!")

    def commit(self):
        """
        Commit the partition table to the image
        """
        raise PartitionerException("Not implemented!")

def apply_layout(partitioner, layout):
    """
    Add all partitions of a `Layout` to a partitioner, and commit.

    :param partitioner: Partitioner instance
    :param layout: The planned layout
    """
    for extent in layout.partitions:
        logger.info("  Partition %d (%s/%s): sectors %d-%d (%d MiB)",
                    extent.index, extent.label, extent.filesystem,
                    extent.start, extent.end, extent.size_bytes // SI.Mi)
        partitioner.new_partition(extent.start, extent.size_sectors,
                                  extent.filesystem, flags=extent.flags)
    partitioner.commit()

def _get_filesystem_type(filesystem, size_bytes):
    if filesystem in ('ext2', 'ext3', 'ext4'):
        return 0x83

    if filesystem == 'fat32':
        if size_bytes > SI.Gi * 8:
            return 0x0C # LBA

        return 0x0B

    # Fall through
    raise PartitionerException("Unknown file system: {}".format(filesystem))

def _check_table_type(table_type):
    if table_type != 'msdos':
        raise InvalidArguments("Table type {} not supported, the Amlogic ROM "
                               "needs an msdos table".format(table_type))

class Sfdisk(Partitioner):
    """
    Sfdisk partitioner abstraction
    """
    _allowed_flags = set(['BOOT'])

    @classmethod
    def tools(cls):
        return [get_tool('none', 'sfdisk')]

    def __init__(self, image_path, table_type='msdos'):
        _check_table_type(table_type)
        self._image_path = image_path
        self._tool = get_tool('none', 'sfdisk')
        self._commands = [
            "unit: sectors",
            "label: dos",
            "grain: 512", # Take care of alignment elsewhere
        ]

    def new_partition(self, offset_blocks, size_blocks, filesystem, flags=()):
        # Parse filesystem
        fs_type = _get_filesystem_type(filesystem, size_blocks * SECTOR_SIZE)

        # Parse flags
        if not self._allowed_flags >= set(flags):
            errflags = set(flags) - self._allowed_flags
            raise SfdiskException("Disallowed flags: {}".format(errflags))
        bootable_string = ''
        if 'BOOT' in flags:
            bootable_string = ', bootable'

        # Generate command
        self._commands.append(
            'start={}, size={}, type={:x}{}'.format(offset_blocks, size_blocks,
                                                    fs_type, bootable_string)
        )

    def script(self):
        """
        Get the sfdisk script compiled so far.
        """
        return "\n".join(self._commands) + "\n"

    def commit(self):
        stdin = self.script()
        logger.debug("sfdisk input:\n%s", stdin)
        self._tool.call(self._image_path, '--no-reread', '--no-tell-kernel',
                        input=stdin.encode('utf-8'))

class PyParted(Partitioner):
    """
    PyParted partitioner abstraction
    """
    def __init__(self, image_path, table_type='msdos'):
        try:
            import parted
        except ImportError:
            raise PyPartedException("pyparted is not installed, install "
                                    "amlsdimage[parted] or use Sfdisk")
        self._pmod = parted

        _check_table_type(table_type)
        self._table_type = table_type
        self._image_path = image_path
        self._partitions = []

        self._parted_flag_map = {
            'BOOT':              parted.PARTITION_BOOT,
            'HIDDEN':            parted.PARTITION_HIDDEN,
            'LBA':               parted.PARTITION_LBA,
        }

    def new_partition(self, offset_blocks, size_blocks, filesystem, flags=()):
        _get_filesystem_type(filesystem, size_blocks * SECTOR_SIZE)
        partition = {
            'offset_blocks': offset_blocks,
            'size_blocks': size_blocks,
            'filesystem': filesystem,
            'flags': [],
        }
        for flag in flags:
            if flag not in self._parted_flag_map:
                choices = ", ".join(self._parted_flag_map.keys())
                raise InvalidArguments("Flag {} invalid. Possible "
                                       "choices: {}".format(flag, choices))
            partition['flags'].append(self._parted_flag_map[flag])
        self._partitions.append(partition)

    def commit(self):
        # Create disk label and constraint
        parted_device = self._pmod.getDevice(self._image_path)
        logger.debug("Parted: Created device: %s", parted_device)
        parted_disk = self._pmod.freshDisk(parted_device, self._table_type)
        logger.debug("Parted: Created disk: %s", parted_disk)
        parted_constraint = parted_device.minimalAlignedConstraint

        # Sanity check
        if not parted_device.sectorSize == SECTOR_SIZE:
            raise PyPartedException("Parted sector size mismatches with our "
                                    "blocksize")

        for partition in self._partitions:
            # Create geometry
            geometry = self._pmod.Geometry(device=parted_device,
                                           start=partition['offset_blocks'],
                                           length=partition['size_blocks'])
            logger.debug('Parted: Created geometry: %s', geometry)

            # Create partition (= filesystem)
            filesystem = self._pmod.FileSystem(type=partition['filesystem'],
                                               geometry=geometry)
            logger.debug('Parted: Created filesystem: %s', filesystem)
            parted_partition = self._pmod.Partition(disk=parted_disk,
                                                    type=self._pmod.PARTITION_NORMAL,
                                                    fs=filesystem, geometry=geometry)

            for flag in partition['flags']:
                if not parted_partition.isFlagAvailable(flag):
                    raise InvalidArguments("Flag was valid but rejected by "
                                           "pyparted")
                parted_partition.setFlag(flag)
            logger.debug('Parted: Created partition: %s', parted_partition)
            parted_disk.addPartition(partition=parted_partition,
                                     constraint=parted_constraint)

            # Sanity check: Try to get the partition we just created, to make
            # sure that parted did not re-align the partition by itself. If
            # that would happen, our calculations would be off.
            fetched_partition = parted_disk.getPartitionBySector(partition['offset_blocks'])
            if parted_partition.number != fetched_partition.number:
                raise UnknownError("Failed to re-fetch partition! Expected "
                                   "{}, {}".format(parted_partition,
                                                   fetched_partition))

        parted_disk.commit()
