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
Copying of byte ranges between files and block devices
"""

import errno
import os

from .common import SI, logger, ImageIOError

# copy_file_range refuses these, e.g. for block devices or across file systems
_FALLBACK_ERRNOS = (errno.EXDEV, errno.EINVAL, errno.ENOSYS, errno.EOPNOTSUPP,
                    errno.EBADF)

def _naive_copy_range(src_fd, dst_fd, count, offset_src, offset_dst):
    block_size = 16 * SI.Mi
    ncopied_total = 0
    while count > 0:
        buffer = os.pread(src_fd, min(block_size, count),
                          offset_src + ncopied_total)
        if not buffer:
            break
        view = memoryview(buffer)
        while view:
            nwritten = os.pwrite(dst_fd, view, offset_dst + ncopied_total)
            view = view[nwritten:]
            ncopied_total += nwritten
            count -= nwritten
    return ncopied_total

def copy_range(src_fd, dst_fd, count, offset_src=0, offset_dst=0):
    """
    Copy `count` bytes from one file descriptor to another, using
    `copy_file_range` where the kernel supports it and plain reads and writes
    where it does not.

    :param src_fd: Source file descriptor
    :param dst_fd: Destination file descriptor
    :param count: Number of bytes to copy
    :param offset_src: Offset in the source
    :param offset_dst: Offset in the destination
    :raises ImageIOError: If the source ended before `count` bytes was copied
    """
    total_copied = 0
    copy_file_range = getattr(os, 'copy_file_range', None)
    while copy_file_range is not None and total_copied < count:
        try:
            ncopied = copy_file_range(src_fd, dst_fd, count - total_copied,
                                      offset_src + total_copied,
                                      offset_dst + total_copied)
        except OSError as error:
            if error.errno not in _FALLBACK_ERRNOS:
                raise
            logger.debug("copy_file_range failed (%s), falling back to naive "
                         "copy", os.strerror(error.errno))
            copy_file_range = None
            break
        if ncopied == 0:
            break
        total_copied += ncopied

    if total_copied < count:
        total_copied += _naive_copy_range(src_fd, dst_fd, count - total_copied,
                                          offset_src + total_copied,
                                          offset_dst + total_copied)
    if total_copied != count:
        raise ImageIOError("Short copy: {} of {} bytes".format(total_copied,
                                                               count))
    return total_copied

def copy_file_to_offset(source, destination, offset_bytes):
    """
    Copy a whole file into another file (or block device) at an offset,
    without truncating the destination.

    :param source: Source path
    :param destination: Destination path
    :param offset_bytes: Offset in the destination
    """
    length = os.path.getsize(source)
    # Open destination in 'rb+', as this will allow us to write without
    # truncating the file.
    with open(source, 'rb') as f_src, open(destination, 'rb+') as f_dst:
        copy_range(f_src.fileno(), f_dst.fileno(), length,
                   offset_src=0, offset_dst=offset_bytes)
        f_dst.flush()
        os.fsync(f_dst.fileno())
