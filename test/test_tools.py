#!/usr/bin/env python3

import os

import pytest

from amlsdimage import ImageIOError, ToolFailure, PreconditionError, \
        create_sparse_file
from amlsdimage.cfr import copy_range, copy_file_to_offset
from amlsdimage.tools import Tool, ToolNotFound, get_tool, MkfsFAT32

def test_tool_output():
    assert Tool('echo').call('hello') == 'hello\n'

def test_tool_not_found():
    tool = Tool('amlsdimage-no-such-tool')
    assert not tool.check()
    with pytest.raises(ToolNotFound):
        tool.call()
    assert issubclass(ToolNotFound, PreconditionError)

def test_tool_failure():
    with pytest.raises(ToolFailure) as excinfo:
        Tool('sh').call('-c', 'echo broken >&2; exit 3')
    assert excinfo.value.returncode == 3
    assert 'broken' in excinfo.value.output
    assert 'broken' in str(excinfo.value)

def test_get_tool_is_cached():
    assert get_tool('fat32', 'mkfs') is get_tool('fat32', 'mkfs')
    assert isinstance(get_tool('fat32', 'mkfs'), MkfsFAT32)

def test_get_unknown_tool():
    with pytest.raises(ToolNotFound):
        get_tool('ntfs', 'mkfs')

def test_copy_file_to_offset(tmp_path):
    source = tmp_path / 'source'
    source.write_bytes(b'abcdef' * 1000)
    destination = tmp_path / 'destination'
    destination.write_bytes(b'\x00' * 10000)

    copy_file_to_offset(str(source), str(destination), 1000)

    data = destination.read_bytes()
    assert len(data) == 10000
    assert data[:1000] == b'\x00' * 1000
    assert data[1000:7000] == b'abcdef' * 1000
    assert data[7000:] == b'\x00' * 3000

def test_short_copy_is_an_error(tmp_path):
    source = tmp_path / 'source'
    source.write_bytes(b'x' * 100)
    destination = tmp_path / 'destination'
    destination.write_bytes(b'')
    with open(str(source), 'rb') as f_src, \
            open(str(destination), 'rb+') as f_dst:
        with pytest.raises(ImageIOError):
            copy_range(f_src.fileno(), f_dst.fileno(), 200)
    assert os.path.getsize(str(destination)) == 100

def test_create_sparse_file(tmp_path):
    path = str(tmp_path / 'sparse.img')
    create_sparse_file(path, 4096)
    assert os.path.getsize(path) == 4096

def test_create_sparse_file_in_missing_directory(tmp_path):
    with pytest.raises(ImageIOError):
        create_sparse_file(str(tmp_path / 'missing' / 'sparse.img'), 4096)
