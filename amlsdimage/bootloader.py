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
Raw bootloader handling: writing U-Boot into the sectors in front of the first
partition, and deriving the SD card variant from the eMMC one.

The Amlogic ROM reads U-Boot from the raw sectors at the start of the SD card.
The SD variant (`u-boot.bin.sd.bin`) is the eMMC variant (`u-boot.bin`) with a
512 byte header in front of it, so that the payload starts at sector 1.
"""

import os
from collections import namedtuple

from .common import logger, SECTOR_SIZE, ImageIOError, NotFoundError, \
        TargetMissingError, human_size, sha256sum
from .cfr import copy_range

EMMC_NAME = 'u-boot.bin'
SD_NAME = 'u-boot.bin.sd.bin'

BootloaderDeployment = namedtuple('BootloaderDeployment', [
    'emmc_path', 'sd_path', 'source_sha256', 'emmc_sha256', 'sd_sha256'])

def _device_size(handle):
    # Works for both regular files and block devices
    return handle.seek(0, os.SEEK_END)

def _writable_ranges(length, protected):
    """
    Split [0, length) into the ranges not covered by the protected range.
    """
    ranges = []
    protected_start, protected_end = protected
    if protected_start > 0:
        ranges.append((0, min(protected_start, length)))
    if length > protected_end:
        ranges.append((protected_end, length))
    return ranges

def inject_bootloader(image_path, blob_path, mbr_boot_code_bytes=442,
                      limit_bytes=None):
    """
    Write a bootloader blob into the raw sectors of an image, at the same
    offsets as in the blob, leaving the partition table area of sector 0
    (bytes `mbr_boot_code_bytes` up to 512) untouched.

    :param image_path: Image file or block device.
    :param blob_path: Bootloader blob, e.g. `u-boot.bin.sd.bin`.
    :param mbr_boot_code_bytes: Number of bytes at the start of sector 0 that
                                the bootloader may occupy.
    :param limit_bytes: Maximum blob size, typically the offset of the first
                        partition.
    :return: The number of bytes written.
    """
    if not 0 < mbr_boot_code_bytes <= SECTOR_SIZE:
        raise ImageIOError("Invalid MBR boot code size {}".format(
            mbr_boot_code_bytes))
    try:
        blob_size = os.path.getsize(blob_path)
    except OSError as exception:
        raise ImageIOError("Unable to read bootloader {}: {}".format(
            blob_path, exception))
    if blob_size < SECTOR_SIZE:
        raise ImageIOError("Bootloader {} is only {} bytes, it can not contain "
                           "a {} byte header".format(blob_path, blob_size,
                                                     SECTOR_SIZE))
    if limit_bytes is not None and blob_size > limit_bytes:
        raise ImageIOError("Bootloader {} ({} bytes) would overwrite the first "
                           "partition at byte {}".format(blob_path, blob_size,
                                                         limit_bytes))

    ranges = _writable_ranges(blob_size, (mbr_boot_code_bytes, SECTOR_SIZE))
    total_written = 0
    try:
        with open(blob_path, 'rb') as f_src, open(image_path, 'rb+') as f_dst:
            image_size = _device_size(f_dst)
            if image_size < blob_size:
                raise ImageIOError("Image {} ({} bytes) is smaller than the "
                                   "bootloader ({} bytes)".format(
                                       image_path, image_size, blob_size))
            for start, end in ranges:
                logger.debug("Writing bootloader bytes %d-%d", start, end)
                total_written += copy_range(f_src.fileno(), f_dst.fileno(),
                                            end - start, offset_src=start,
                                            offset_dst=start)
            f_dst.flush()
            os.fsync(f_dst.fileno())
    except OSError as exception:
        raise ImageIOError("Unable to write bootloader to {}: {}".format(
            image_path, exception))

    logger.info("  Bootloader written (%s)", human_size(blob_size))
    return total_written

def make_sd_variant(emmc_bytes, header_bytes=SECTOR_SIZE):
    """
    Create the SD card variant of a bootloader: a zero-filled header followed
    by the eMMC variant.

    :param emmc_bytes: Contents of the eMMC variant.
    :param header_bytes: Size of the header.
    """
    return bytes(header_bytes) + bytes(emmc_bytes)

def _replace_files(contents):
    """
    Replace a set of files. All of them are written to temp files first, so
    a failed write leaves every destination as it was.

    :param contents: List of (path, data) tuples.
    """
    created = []
    try:
        for path, data in contents:
            temp_path = path + '.tmp'
            with open(temp_path, 'wb') as handle:
                created.append(temp_path)
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
        for path, _data in contents:
            os.replace(path + '.tmp', path)
    except OSError as exception:
        for temp_path in created:
            if os.path.isfile(temp_path):
                try:
                    os.unlink(temp_path)
                except OSError as cleanup_exception:
                    logger.warning("Cleanup failed: %s", cleanup_exception)
        raise ImageIOError("Unable to write {}: {}".format(
            exception.filename, exception))

def deploy_bootloader(source_path, target_dir, header_bytes=SECTOR_SIZE):
    """
    Replace the eMMC and SD card bootloaders in a build tree with a custom
    one. Both files are overwritten if they exist.

    :param source_path: The custom `u-boot.bin`.
    :param target_dir: Directory where the build placed its U-Boot images.
    :param header_bytes: Size of the SD card header.
    :raises NotFoundError: If the source does not exist.
    :raises TargetMissingError: If the target directory does not exist.
    """
    if not os.path.isfile(source_path):
        raise NotFoundError("Custom u-boot.bin not found at "
                            "{}".format(source_path))
    if not os.path.isdir(target_dir):
        raise TargetMissingError("U-Boot image directory does not exist: {} "
                                 "(did you run 'make uboot' first?)".format(
                                     target_dir))

    try:
        with open(source_path, 'rb') as handle:
            emmc = handle.read()
    except OSError as exception:
        raise ImageIOError("Unable to read {}: {}".format(source_path,
                                                          exception))
    logger.info("  Source : %s (%d bytes)", source_path, len(emmc))
    logger.info("  Target : %s", target_dir)

    emmc_path = os.path.join(target_dir, EMMC_NAME)
    sd_path = os.path.join(target_dir, SD_NAME)
    logger.info("  Creating %s (%d byte header + %s)", SD_NAME, header_bytes,
                EMMC_NAME)
    _replace_files([(emmc_path, emmc),
                    (sd_path, make_sd_variant(emmc, header_bytes))])
    os.sync()

    return BootloaderDeployment(emmc_path=emmc_path, sd_path=sd_path,
                                source_sha256=sha256sum(source_path),
                                emmc_sha256=sha256sum(emmc_path),
                                sd_sha256=sha256sum(sd_path))
