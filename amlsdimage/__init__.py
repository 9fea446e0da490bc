# Copyright 2019, 2020  Jonas Eriksson
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
Module used to assemble bootable SD card images for Amlogic (Khadas VIM3L)
boards from pre-built components: a rootfs tarball and a custom U-Boot.

The resulting image has an MBR partition table, U-Boot in the raw sectors in
front of the first partition, a FAT32 boot partition with the kernel, initrd,
device tree and boot scripts, and an ext4 rootfs partition.
"""

import os
import shutil
from collections import namedtuple

from .common import *
from .config import BoardConfig, ProjectPaths, board_config, project_paths
from .layout import Layout, PartitionExtent, plan_layout, plan_layout_for
from .bootloader import inject_bootloader, make_sd_variant, deploy_bootloader
from .partitioners import Sfdisk, PyParted, apply_layout
from .populators import LoopPopulator, OfflinePopulator

ImageReport = namedtuple('ImageReport', ['path', 'size_bytes', 'sha256'])

class SDCardImage():
    """
    Helper class to assemble an SD card image.

    :param path: Path to the destination image file.
    :param config: `BoardConfig` with the sizes and offsets of the image.
    :param rootfs_tarball: Rootfs tarball, its `/boot` directory is copied to
                           the boot partition.
    :param bootloader: SD card variant of the bootloader, see
                       `bootloader.make_sd_variant()`.
    :param partitioner: Partitioner class, Sfdisk or PyParted.
    :param populator: Populator instance, default is a `LoopPopulator` which
                      requires root. `OfflinePopulator` does not.
    :param temp_fmt: Format/path of the temp image, containing format strings
                     for `path` and `extra`. Make sure the temp file is on the
                     same filesystem as the destination path.
    :param clean_temp_files: Whether or not to remove the temp image on
                             errors, accepts either `"always"` or `"never"`.
                             Default is `"always"`. On success the temp image
                             is moved in place, so there is nothing to clean.
    """
    def __init__(self, path, config, rootfs_tarball, bootloader,
                 partitioner=Sfdisk, populator=None,
                 temp_fmt="{path}-{extra}.tmp", clean_temp_files="always"):
        self._path = path
        self._config = config
        self._rootfs_tarball = rootfs_tarball
        self._bootloader = bootloader
        self._partitioner = partitioner
        if populator is None:
            populator = LoopPopulator()
        self._populator = populator
        self._temp_fmt = temp_fmt

        if clean_temp_files not in ("always", "never"):
            raise InvalidArguments("Invalid argument for clean_temp_files")
        self._clean_temp_files = clean_temp_files

    @property
    def path(self):
        return self._path

    def layout(self):
        """
        Get the planned partition layout.
        """
        return plan_layout_for(self._config)

    def check(self):
        """
        Check this image for errors that will hinder us from doing a
        `commit()` later. Errors are logged.
        """
        errors = 0

        if os.path.isfile(self._rootfs_tarball):
            logger.info("  Rootfs tarball : %s", human_size(
                os.path.getsize(self._rootfs_tarball)))
        else:
            logger.error("Rootfs tarball not found: %s", self._rootfs_tarball)
            errors += 1

        try:
            layout = self.layout()
        except ConfigError as exception:
            logger.error("Invalid layout: %s", exception)
            return False

        if os.path.isfile(self._bootloader):
            blob_size = os.path.getsize(self._bootloader)
            logger.info("  U-Boot SD bin  : %s", human_size(blob_size))
            if blob_size < SECTOR_SIZE:
                logger.error("Bootloader %s is smaller than one sector",
                             self._bootloader)
                errors += 1
            elif blob_size > layout.bootloader_area_bytes:
                logger.error("Bootloader %s (%d bytes) does not fit in front "
                             "of the boot partition (%d bytes)",
                             self._bootloader, blob_size,
                             layout.bootloader_area_bytes)
                errors += 1
        else:
            logger.error("U-Boot SD binary not found: %s", self._bootloader)
            errors += 1

        # Check tools
        tools = list(self._partitioner.tools())
        tools.extend(self._populator.tools(layout))
        for tool in tools:
            if not tool.check():
                errors += 1

        logger.info("  Output image   : %s", self._path)
        return errors == 0

    def _finalize(self, temp_path):
        os.sync()
        # Move tempfile into place
        if os.path.isdir(self._path):
            raise ImageIOError("Output path {} is a directory".format(
                self._path))
        try:
            if os.path.lexists(self._path):
                os.unlink(self._path)
            shutil.move(temp_path, self._path)
        except OSError as exception:
            raise ImageIOError("Unable to move {} to {}: {}".format(
                temp_path, self._path, exception))

    def commit(self):
        """
        Assemble the image.

        :return: An `ImageReport` with the size and checksum of the image.
        """
        logger.info("=== Step 1: Validating components ===")
        if not self.check():
            raise CheckFailed("Check failed, see the errors above")

        layout = self.layout()
        temp_path = self._temp_fmt.format(path=self._path, extra="image")
        config = self._config

        steps = [
            ("Creating {} MiB sparse image".format(config.image_size_mb),
             lambda: create_sparse_file(temp_path, layout.image_size_bytes)),
            ("Creating MBR partition table",
             lambda: apply_layout(self._partitioner(temp_path, 'msdos'),
                                  layout)),
            ("Writing bootloader to raw sectors",
             lambda: inject_bootloader(
                 temp_path, self._bootloader,
                 mbr_boot_code_bytes=config.mbr_boot_code_bytes,
                 limit_bytes=layout.bootloader_area_bytes)),
            ("Creating and populating file systems",
             lambda: self._populator.populate(temp_path, layout,
                                              self._rootfs_tarball)),
            ("Syncing and moving image into place",
             lambda: self._finalize(temp_path)),
        ]

        try:
            for number, (description, step) in enumerate(steps, start=2):
                logger.info("=== Step %d: %s ===", number, description)
                try:
                    step()
                except DiskImageException:
                    logger.error("Step %d (%s) failed", number, description)
                    raise
                except OSError as exception:
                    logger.error("Step %d (%s) failed", number, description)
                    raise ImageIOError("{}: {}".format(description, exception))
        except BaseException as exception:
            # Make sure image temp file is gone
            if self._clean_temp_files == "always" and \
                    os.path.isfile(temp_path):
                os.unlink(temp_path)

            # Re-raise
            raise exception

        logger.info("=== Step %d: Verification ===", len(steps) + 2)
        try:
            report = ImageReport(path=self._path,
                                 size_bytes=os.path.getsize(self._path),
                                 sha256=sha256sum(self._path))
        except OSError as exception:
            raise ImageIOError("Unable to verify {}: {}".format(self._path,
                                                                exception))
        logger.info("  Image file: %s", report.path)
        logger.info("  Image size: %s", human_size(report.size_bytes))
        logger.info("  SHA256:     %s...", report.sha256[:16])
        return report
