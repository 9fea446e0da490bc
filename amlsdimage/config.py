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
Board configuration and project paths

All fixed constants live in an immutable `BoardConfig` record which is passed
around explicitly, and all file locations are derived from it and a project
root by `project_paths()`.
"""

import os
from collections import namedtuple

from .common import InvalidArguments

BOARD_ENV = 'KHADAS_BOARD'
DEFAULT_BOARD = 'VIM3L'

BoardConfig = namedtuple('BoardConfig', [
    'board',
    'image_name',
    'image_size_mb',
    'boot_size_mb',
    'boot_start_sector',
    'sd_header_bytes',
    'mbr_boot_code_bytes',
    'boot_filesystem',
    'boot_label',
    'rootfs_filesystem',
    'rootfs_label',
    'rootfs_release',
])

ProjectPaths = namedtuple('ProjectPaths', [
    'root',
    'build_images',
    'rootfs_tarball',
    'uboot_image_dir',
    'uboot_emmc',
    'uboot_sd',
    'custom_uboot',
    'output',
])

def board_config(board=None, environ=None, **overrides):
    """
    Create the configuration record for a board.

    :param board: Board name, e.g. `VIM3L`. If not given, `$KHADAS_BOARD` is
                  used, falling back to `VIM3L`.
    :param environ: Environment mapping, default `os.environ`.
    :param overrides: Replacement values for individual fields, e.g.
                      `image_size_mb=128`.
    """
    if environ is None:
        environ = os.environ
    if board is None:
        board = environ.get(BOARD_ENV) or DEFAULT_BOARD
    if not board or '/' in board:
        raise InvalidArguments("Invalid board name: {!r}".format(board))

    config = BoardConfig(
        board=board,
        image_name="{}-debian-12-minimal-custom-uboot-sd.img".format(
            board.lower()),
        image_size_mb=1700,
        boot_size_mb=240,
        # 16 MiB; the Amlogic ROM loads U-Boot from the raw sectors before it
        boot_start_sector=32768,
        sd_header_bytes=512,
        mbr_boot_code_bytes=442,
        boot_filesystem='fat32',
        boot_label='BOOT',
        rootfs_filesystem='ext4',
        rootfs_label='ROOTFS',
        rootfs_release='bookworm-minimal',
    )
    unknown = set(overrides) - set(BoardConfig._fields)
    if unknown:
        raise InvalidArguments("Unknown configuration fields: {}".format(
            ", ".join(sorted(unknown))))
    return config._replace(**overrides)

def project_paths(root, config):
    """
    Get all paths used by the scripts, relative to the project root.

    :param root: Project root directory.
    :param config: `BoardConfig` instance.
    """
    root = os.path.abspath(root)
    build_images = os.path.join(root, 'build', 'images')
    uboot_image_dir = os.path.join(build_images, 'u-boot-mainline',
                                   config.board)
    tarball = "rootfs-{}-{}.tar.gz".format(config.board.lower(),
                                           config.rootfs_release)
    return ProjectPaths(
        root=root,
        build_images=build_images,
        rootfs_tarball=os.path.join(build_images, tarball),
        uboot_image_dir=uboot_image_dir,
        uboot_emmc=os.path.join(uboot_image_dir, 'u-boot.bin'),
        uboot_sd=os.path.join(uboot_image_dir, 'u-boot.bin.sd.bin'),
        custom_uboot=os.path.join(root, 'custom', 'uboot', 'u-boot.bin'),
        output=os.path.join(build_images, config.image_name),
    )
