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
Common parts shared between the SD card image modules
"""
import hashlib
import logging

# pylint: disable=invalid-name
logger = logging.getLogger("amlsdimage")

SECTOR_SIZE = 512
SECTORS_PER_MB = 2048

class DiskImageException(Exception):
    """
    A generic DiskImage error
    """

class ConfigError(DiskImageException):
    """
    Invalid configuration, or a required artifact is missing; raised before
    anything is mutated
    """

class InvalidArguments(ConfigError):
    """
    Invalid arguments was passed
    """

class CheckFailed(ConfigError):
    """
    A check has failed
    """

class NotFoundError(ConfigError):
    """
    A source file does not exist
    """

class PreconditionError(DiskImageException):
    """
    Something an upstream step should have produced is missing
    """

class TargetMissingError(PreconditionError):
    """
    The deployment directory does not exist (was the build step skipped?)
    """

class ImageIOError(DiskImageException):
    """
    Read or write failure, size mismatch or a device that never appeared
    """

class ToolFailure(DiskImageException):
    """
    An external tool returned non-zero

    :param message: Error message.
    :param returncode: Exit status of the tool, if it ran.
    :param output: Combined stdout/stderr of the tool, if it ran.
    """
    def __init__(self, message, returncode=None, output=None):
        super(ToolFailure, self).__init__(message)
        self.returncode = returncode
        self.output = output

class UnknownError(DiskImageException):
    """
    Unknown error, probably related to an underlying library
    """

# pylint: disable=too-few-public-methods
class SI:
    """
    Helper class with some constants for calculating sizes in bytes.
    """
    k = 1000**1
    M = 1000**2
    G = 1000**3
    T = 1000**4
    ki = 1024**1
    Mi = 1024**2
    Gi = 1024**3
    Ti = 1024**4

def human_size(nbytes):
    """
    Format a byte count the way `du -h` does, e.g. `240M`.

    :param nbytes: Number of bytes.
    """
    for suffix, unit in (('T', SI.Ti), ('G', SI.Gi), ('M', SI.Mi),
                         ('K', SI.ki)):
        if nbytes >= unit:
            value = nbytes / unit
            if value < 10:
                return "{:.1f}{}".format(value, suffix)
            return "{:.0f}{}".format(value, suffix)
    return "{}B".format(nbytes)

def sha256sum(path):
    """
    Calculate the SHA-256 hex digest of a file.

    :param path: File to hash.
    """
    digest = hashlib.sha256()
    with open(path, 'rb') as handle:
        while True:
            data = handle.read(16 * SI.Mi)
            if not data:
                break
            digest.update(data)
    return digest.hexdigest()

def create_sparse_file(path, size_bytes):
    """
    Create (or truncate) a sparse file of a given size.

    :param path: File to create.
    :param size_bytes: Size of the file.
    :raises ImageIOError: If the file can not be created.
    """
    try:
        with open(path, 'wb') as handle:
            handle.truncate(size_bytes)
            handle.flush()
    except OSError as exception:
        raise ImageIOError("Unable to create {}: {}".format(path, exception))
