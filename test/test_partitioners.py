#!/usr/bin/env python3

import shutil
import struct

import pytest

from amlsdimage import InvalidArguments, SI, create_sparse_file
from amlsdimage.bootloader import inject_bootloader
from amlsdimage.layout import plan_layout
from amlsdimage.partitioners import Sfdisk, PyParted, SfdiskException, \
        PartitionerException, apply_layout

requires_sfdisk = pytest.mark.skipif(
    shutil.which('sfdisk', path='/usr/sbin:/sbin:/usr/bin:/bin') is None,
    reason="sfdisk not installed")

def _mbr_entries(path):
    with open(path, 'rb') as handle:
        sector = handle.read(512)
    entries = []
    for i in range(4):
        entry = sector[446 + 16 * i:446 + 16 * (i + 1)]
        status, part_type, start, size = struct.unpack('<B3xB3xII', entry)
        entries.append((status, part_type, start, size))
    return sector, entries

def test_sfdisk_script():
    layout = plan_layout(1700, 240, 32768)
    partitioner = Sfdisk('unused.img')
    for extent in layout.partitions:
        partitioner.new_partition(extent.start, extent.size_sectors,
                                  extent.filesystem, flags=extent.flags)
    assert partitioner.script().splitlines() == [
        "unit: sectors",
        "label: dos",
        "grain: 512",
        "start=32768, size=491520, type=b, bootable",
        "start=524288, size=2957312, type=83",
    ]

def test_sfdisk_large_fat_uses_lba_type():
    partitioner = Sfdisk('unused.img')
    partitioner.new_partition(2048, 9 * SI.Gi // 512, 'fat32')
    assert partitioner.script().splitlines()[-1].endswith('type=c')

def test_sfdisk_rejects_unknown_flag():
    partitioner = Sfdisk('unused.img')
    with pytest.raises(SfdiskException):
        partitioner.new_partition(2048, 2048, 'fat32', flags=['HIDDEN'])

def test_sfdisk_rejects_unknown_filesystem():
    partitioner = Sfdisk('unused.img')
    with pytest.raises(PartitionerException):
        partitioner.new_partition(2048, 2048, 'ntfs')

def test_gpt_is_rejected():
    with pytest.raises(InvalidArguments):
        Sfdisk('unused.img', 'gpt')

@requires_sfdisk
def test_sfdisk_writes_layout(tmp_path):
    layout = plan_layout(64, 24, 32768)
    image = str(tmp_path / 'image.img')
    create_sparse_file(image, layout.image_size_bytes)

    apply_layout(Sfdisk(image), layout)

    sector, entries = _mbr_entries(image)
    assert sector[510:512] == b'\x55\xaa'
    assert entries[0] == (0x80, 0x0b, 32768, 24 * 2048)
    assert entries[1] == (0x00, 0x83, layout.rootfs.start,
                          layout.rootfs.size_sectors)
    assert entries[2][3] == 0
    assert entries[3][3] == 0

@requires_sfdisk
def test_bootloader_after_partitioning_keeps_table(tmp_path):
    layout = plan_layout(64, 24, 32768)
    image = str(tmp_path / 'image.img')
    create_sparse_file(image, layout.image_size_bytes)
    apply_layout(Sfdisk(image), layout)
    table_before, entries_before = _mbr_entries(image)

    blob = str(tmp_path / 'blob')
    with open(blob, 'wb') as handle:
        handle.write(b'\xa5' * (2 * SI.Mi))
    inject_bootloader(image, blob, limit_bytes=layout.bootloader_area_bytes)

    table_after, entries_after = _mbr_entries(image)
    assert table_after[442:512] == table_before[442:512]
    assert entries_after == entries_before
    assert table_after[:442] == b'\xa5' * 442

def test_pyparted_writes_layout(tmp_path):
    pytest.importorskip('parted')
    layout = plan_layout(64, 24, 32768)
    image = str(tmp_path / 'image.img')
    create_sparse_file(image, layout.image_size_bytes)

    apply_layout(PyParted(image), layout)

    sector, entries = _mbr_entries(image)
    assert sector[510:512] == b'\x55\xaa'
    assert entries[0][0] == 0x80
    assert entries[0][2:] == (32768, 24 * 2048)
    assert entries[1][2:] == (layout.rootfs.start, layout.rootfs.size_sectors)
