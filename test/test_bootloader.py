#!/usr/bin/env python3

import hashlib
import os

import pytest

from amlsdimage import ImageIOError, NotFoundError, TargetMissingError, SI
from amlsdimage.bootloader import inject_bootloader, make_sd_variant, \
        deploy_bootloader

# A recognizable partition table tail: disk id, entries and signature
MBR_TAIL = bytes(range(1, 69)) + b'\x55\xaa'

def _pattern(length, seed=7):
    # Non-zero everywhere, so that any write to a protected byte shows
    return bytes((i * seed) % 251 + 1 for i in range(length))

def _write(path, data):
    with open(path, 'wb') as handle:
        handle.write(data)

def _read(path):
    with open(path, 'rb') as handle:
        return handle.read()

@pytest.fixture
def image(tmp_path):
    path = str(tmp_path / 'image.img')
    data = bytearray(b'\xee' * SI.Mi)
    data[442:512] = MBR_TAIL
    _write(path, bytes(data))
    return path

def test_sd_variant_layout():
    emmc = _pattern(4096)
    sd_variant = make_sd_variant(emmc)
    assert len(sd_variant) == 512 + len(emmc)
    assert sd_variant[:512] == bytes(512)
    assert sd_variant[512:] == emmc

@pytest.mark.parametrize('length', [0, 1, 511, 512, 70000])
def test_sd_variant_length(length):
    emmc = _pattern(length)
    assert len(make_sd_variant(emmc)) == 512 + length

def test_sd_variant_is_deterministic():
    emmc = _pattern(10000, seed=3)
    assert make_sd_variant(emmc) == make_sd_variant(bytearray(emmc))

def test_inject_preserves_partition_table(tmp_path, image):
    blob_path = str(tmp_path / 'u-boot.bin.sd.bin')
    blob = _pattern(64 * SI.ki)
    _write(blob_path, blob)

    written = inject_bootloader(image, blob_path)

    result = _read(image)
    assert written == len(blob) - 70
    assert result[:442] == blob[:442]
    assert result[442:512] == MBR_TAIL
    assert result[512:len(blob)] == blob[512:]
    assert result[len(blob):] == b'\xee' * (SI.Mi - len(blob))
    assert len(result) == SI.Mi

def test_inject_single_sector_blob(tmp_path, image):
    blob_path = str(tmp_path / 'blob')
    blob = _pattern(512)
    _write(blob_path, blob)
    inject_bootloader(image, blob_path)
    result = _read(image)
    assert result[:442] == blob[:442]
    assert result[442:512] == MBR_TAIL
    assert result[512:] == b'\xee' * (SI.Mi - 512)

def test_inject_sd_variant(tmp_path, image):
    emmc = _pattern(100000, seed=11)
    blob_path = str(tmp_path / 'u-boot.bin.sd.bin')
    _write(blob_path, make_sd_variant(emmc))
    inject_bootloader(image, blob_path)
    result = _read(image)
    assert result[:442] == bytes(442)
    assert result[442:512] == MBR_TAIL
    assert result[512:512 + len(emmc)] == emmc

def test_inject_blob_too_small(tmp_path, image):
    blob_path = str(tmp_path / 'blob')
    _write(blob_path, _pattern(511))
    with pytest.raises(ImageIOError):
        inject_bootloader(image, blob_path)
    assert _read(image)[:442] == b'\xee' * 442

def test_inject_image_too_small(tmp_path):
    image_path = str(tmp_path / 'small.img')
    _write(image_path, bytes(4096))
    blob_path = str(tmp_path / 'blob')
    _write(blob_path, _pattern(8192))
    with pytest.raises(ImageIOError):
        inject_bootloader(image_path, blob_path)
    assert _read(image_path) == bytes(4096)

def test_inject_over_first_partition(tmp_path, image):
    blob_path = str(tmp_path / 'blob')
    _write(blob_path, _pattern(8192))
    with pytest.raises(ImageIOError):
        inject_bootloader(image, blob_path, limit_bytes=4096)

def _uboot_tree(tmp_path, payload):
    source = tmp_path / 'custom' / 'u-boot.bin'
    source.parent.mkdir(parents=True)
    source.write_bytes(payload)
    target = tmp_path / 'u-boot-mainline' / 'VIM3L'
    target.mkdir(parents=True)
    return str(source), str(target)

def test_deploy(tmp_path):
    payload = _pattern(30000)
    source, target = _uboot_tree(tmp_path, payload)
    deployment = deploy_bootloader(source, target)

    assert _read(deployment.emmc_path) == payload
    assert _read(deployment.sd_path) == bytes(512) + payload
    assert deployment.emmc_path == os.path.join(target, 'u-boot.bin')
    assert deployment.sd_path == os.path.join(target, 'u-boot.bin.sd.bin')
    assert deployment.source_sha256 == hashlib.sha256(payload).hexdigest()
    assert deployment.emmc_sha256 == deployment.source_sha256
    assert deployment.sd_sha256 == \
        hashlib.sha256(bytes(512) + payload).hexdigest()
    assert sorted(os.listdir(target)) == ['u-boot.bin', 'u-boot.bin.sd.bin']

def test_deploy_is_idempotent(tmp_path):
    source, target = _uboot_tree(tmp_path, _pattern(5000))
    first = deploy_bootloader(source, target)
    second = deploy_bootloader(source, target)
    assert first == second

def test_deploy_overwrites(tmp_path):
    source, target = _uboot_tree(tmp_path, _pattern(5000))
    _write(os.path.join(target, 'u-boot.bin'), b'stale' * 10000)
    _write(os.path.join(target, 'u-boot.bin.sd.bin'), b'stale' * 10000)
    deployment = deploy_bootloader(source, target)
    assert len(_read(deployment.sd_path)) == 5512

def test_deploy_missing_source(tmp_path):
    target = tmp_path / 'u-boot-mainline' / 'VIM3L'
    target.mkdir(parents=True)
    with pytest.raises(NotFoundError):
        deploy_bootloader(str(tmp_path / 'missing.bin'), str(target))
    assert os.listdir(str(target)) == []

def test_deploy_missing_target(tmp_path):
    source, _target = _uboot_tree(tmp_path, _pattern(5000))
    with pytest.raises(TargetMissingError):
        deploy_bootloader(source, str(tmp_path / 'not-built'))
    assert not os.path.exists(str(tmp_path / 'not-built'))

def test_deploy_failed_write_keeps_old_files(tmp_path):
    source, target = _uboot_tree(tmp_path, _pattern(5000))
    _write(os.path.join(target, 'u-boot.bin'), b'old')
    _write(os.path.join(target, 'u-boot.bin.sd.bin'), b'old sd')
    # A directory in the way of the second temp file
    os.mkdir(os.path.join(target, 'u-boot.bin.sd.bin.tmp'))

    with pytest.raises(ImageIOError):
        deploy_bootloader(source, target)

    assert _read(os.path.join(target, 'u-boot.bin')) == b'old'
    assert _read(os.path.join(target, 'u-boot.bin.sd.bin')) == b'old sd'
    assert sorted(os.listdir(target)) == [
        'u-boot.bin', 'u-boot.bin.sd.bin', 'u-boot.bin.sd.bin.tmp']

def test_inject_into_directory(tmp_path):
    blob_path = str(tmp_path / 'blob')
    _write(blob_path, _pattern(4096))
    with pytest.raises(ImageIOError):
        inject_bootloader(str(tmp_path), blob_path)

def test_inject_missing_blob(tmp_path, image):
    with pytest.raises(ImageIOError):
        inject_bootloader(image, str(tmp_path / 'missing.bin'))
