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
Entry points of the `scripts/assemble-image.py` and
`scripts/override-uboot.py` scripts. Both take no arguments; paths are
derived from the project root and `$KHADAS_BOARD`.
"""

import logging
import os
import sys

from . import SDCardImage, LoopPopulator
from .bootloader import deploy_bootloader
from .common import logger, DiskImageException
from .config import board_config, project_paths

LOG_FORMAT = "[%(levelname)s] %(message)s"

def setup_logging(level=logging.INFO):
    """
    Log to stderr, in the format used by both scripts.
    """
    logging.basicConfig(level=level, format=LOG_FORMAT)

def _is_root():
    return os.geteuid() == 0

def _fail(message):
    print("ERROR: {}".format(message), file=sys.stderr)
    return 1

def override_uboot(root, environ=None, require_root=True):
    """
    Replace the U-Boot binaries of the build tree with the custom one, after
    U-Boot is built but before the image is packed.

    :param root: Project root directory.
    :param environ: Environment mapping, default `os.environ`.
    :param require_root: Refuse to run unless root.
    :return: Exit code.
    """
    if require_root and not _is_root():
        return _fail("This script requires root. Run it with sudo")
    try:
        config = board_config(environ=environ)
        paths = project_paths(root, config)
        logger.info(">>> Overriding U-Boot binaries for %s", config.board)
        deployment = deploy_bootloader(paths.custom_uboot,
                                       paths.uboot_image_dir,
                                       header_bytes=config.sd_header_bytes)
    except DiskImageException as exception:
        return _fail(exception)

    logger.info("  Verification:")
    logger.info("  u-boot.bin     : %s...", deployment.emmc_sha256[:16])
    logger.info("  u-boot.bin.sd  : %s...", deployment.sd_sha256[:16])
    logger.info("  custom source  : %s...", deployment.source_sha256[:16])
    logger.info(">>> Override complete. Proceed with 'make image'")
    return 0

def assemble_image(root, environ=None, require_root=True, populator=None,
                   **config_overrides):
    """
    Assemble the SD card image from the build tree.

    :param root: Project root directory.
    :param environ: Environment mapping, default `os.environ`.
    :param require_root: Refuse to run unless root.
    :param populator: Populator instance, default `LoopPopulator`.
    :param config_overrides: `BoardConfig` fields to override.
    :return: Exit code.
    """
    if require_root and not _is_root():
        return _fail("This script requires root. Run it with sudo")
    try:
        config = board_config(environ=environ, **config_overrides)
        paths = project_paths(root, config)
        if populator is None:
            populator = LoopPopulator()
        image = SDCardImage(paths.output, config, paths.rootfs_tarball,
                            paths.uboot_sd, populator=populator)
        image.commit()
    except DiskImageException as exception:
        return _fail(exception)

    logger.info("============================================")
    logger.info("  IMAGE READY: %s", config.image_name)
    logger.info("============================================")
    logger.info("To flash to SD card (replace /dev/sdX with your SD card):")
    logger.info("  sudo dd if=%s of=/dev/sdX bs=4M status=progress",
                paths.output)
    logger.info("Serial console: ttyAML0 at 115200 baud, the custom U-Boot "
                "banner comes first")
    return 0
