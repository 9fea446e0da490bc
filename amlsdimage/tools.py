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
Tool helpers; used to run commands for the SD card image package
"""

import os
import shutil
import subprocess

from .common import logger, InvalidArguments, PreconditionError, ToolFailure

class ToolNotFound(PreconditionError):
    """
    The tool requested was not found (check $PATH and install all
    dependencies).
    """

class Tool():
    """
    Wrapper class for a runnable tool (command).

    :param command: Command to be run, e.g. `ls`.
    """
    def __init__(self, command):
        self._command = command
        self._command_path = None

    @property
    def command(self):
        return self._command

    def check(self):
        """
        Check if the tool is available, i.e. in $path and executable.
        """
        if self._command_path is not None:
            return True
        # sbin is often missing from $PATH for non-root users
        path = os.pathsep.join([os.environ.get('PATH', os.defpath),
                                '/usr/sbin', '/sbin'])
        self._command_path = shutil.which(self._command, path=path)
        if self._command_path is None:
            logger.error("Unable to find %s", self._command)
        else:
            logger.debug("Found %s at %s", self._command, self._command_path)
        return self._command_path is not None

    def call(self, *args, **kwargs):
        """
        Call the tool with the given arguments, and debug-log the output

        :param args: Command-line arguments
        :param kwargs: Keyword arguments to pass to subprocess.check_output
        :return: The output of the command, decoded
        """
        if not self.check():
            raise ToolNotFound("Unable to find executable "
                               "{}".format(self._command))
        call_args = [self._command_path]
        call_args.extend(args)
        logger.debug("Running: '%s'", "' '".join(call_args))
        try:
            output = subprocess.check_output(call_args,
                                             stderr=subprocess.STDOUT,
                                             **kwargs)
        except subprocess.CalledProcessError as error:
            output = error.output.decode('utf-8', errors='ignore')
            logger.debug("Output:\n%s", output)
            last_line = output.strip().splitlines()[-1:] or ['no output']
            raise ToolFailure("{} failed with exit status {}: {}".format(
                self._command, error.returncode, last_line[0]),
                              returncode=error.returncode, output=output)
        output = output.decode('utf-8', errors='ignore')
        logger.debug("Output:\n%s", output)
        return output


class MkfsExt(Tool):
    """
    Tool wrapper for mkfs.ext*
    """
    def mkfs(self, device, label=None, initial_data_root=None):
        """
        Create file system

        :param device: Device, a loop partition or a partition file
        :param label: File system label
        :param initial_data_root: Directory to populate the file system from
        """
        args = ['-F', '-q']
        if label is not None:
            args.append('-L')
            args.append(label)
        if initial_data_root is not None:
            args.append('-d')
            args.append(initial_data_root)
        args.append(device)
        self.call(*args)

class MkfsExt4(MkfsExt):
    """
    Tool wrapper for mkfs.ext4
    """
    def __init__(self):
        super(MkfsExt4, self).__init__('mkfs.ext4')

class MkfsFAT(Tool):
    """
    Tool wrapper for mkfs.fat
    """
    def __init__(self, fat_size):
        self._fat_size = str(fat_size)
        super(MkfsFAT, self).__init__('mkfs.fat')

    def mkfs(self, device, label=None, initial_data_root=None):
        """
        Create file system

        :param device: Device, a loop partition or a partition file
        :param label: File system label
        :param initial_data_root: Not supported for FAT, must be None
        """
        if initial_data_root is not None:
            raise InvalidArguments("mkfs.fat can not populate a file system")
        args = ['-F', self._fat_size]
        if label is not None:
            args.append('-n')
            args.append(label)
        args.append(device)
        self.call(*args)

class MkfsFAT32(MkfsFAT):
    """
    Tool wrapper for mkfs.fat -F 32
    """
    def __init__(self):
        super(MkfsFAT32, self).__init__(32)

def _fat_format_dest(path):
    if path[0] == '/':
        path = path[1:]
    return '::' + path

class PopulateFAT():
    """
    tool wrapper for mtools
    """
    def __init__(self):
        self._mcopy = Tool('mcopy')

    def check(self):
        """
        Check that mcopy is available
        """
        return self._mcopy.check()

    def copy(self, device, sources, destination='/'):
        """
        Recursively copy files and directories into a FAT image.

        :param device: Partition file
        :param sources: Files and directories to copy
        :param destination: Destination directory in the image
        """
        if not sources:
            return
        env = dict(os.environ, MTOOLS_SKIP_CHECK='1')
        self._mcopy.call('-i', device, '-bsQ', *sources,
                         _fat_format_dest(destination), env=env)

class Losetup(Tool):
    """
    Tool wrapper for losetup
    """
    def __init__(self):
        super(Losetup, self).__init__('losetup')

    def attach(self, image_path):
        """
        Attach an image to the first free loop device, scanning for
        partitions.

        :param image_path: Image file
        :return: The loop device, e.g. `/dev/loop0`
        """
        return self.call('--find', '--show', '--partscan',
                         image_path).strip()

    def detach(self, device):
        """
        Detach a loop device.

        :param device: Loop device
        """
        self.call('-d', device)

class Sfdisk(Tool):
    """
    Tool wrapper for sfdisk
    """
    def __init__(self):
        super(Sfdisk, self).__init__('sfdisk')

class Mount(Tool):
    """
    Tool wrapper for mount
    """
    def __init__(self):
        super(Mount, self).__init__('mount')

class Umount(Tool):
    """
    Tool wrapper for umount
    """
    def __init__(self):
        super(Umount, self).__init__('umount')

# pylint: disable=bad-whitespace
_TOOLS = {
    ('ext4',    'mkfs'):        MkfsExt4,
    ('fat32',   'mkfs'):        MkfsFAT32,
    ('fat32',   'populate'):    PopulateFAT,
    ('none',    'sfdisk'):      Sfdisk,
    ('none',    'losetup'):     Losetup,
    ('none',    'mount'):       Mount,
    ('none',    'umount'):      Umount,
}

_TOOLS_CACHE = {}

def get_tool(file_system, action):
    """
    Get a tool to perform a certain action on a certain file system type.

    :param file_system: File system, e.g. "fat32", or "none" for plain tools
    :param action: Action, e.g. "mkfs" or "populate"
    """
    tool_tuple = (file_system, action)
    if tool_tuple not in _TOOLS_CACHE:
        if tool_tuple not in _TOOLS:
            raise ToolNotFound("Unable to find tool {} "
                               "for {}".format(action, file_system))
        _TOOLS_CACHE[tool_tuple] = _TOOLS[tool_tuple]()

    return _TOOLS_CACHE[tool_tuple]
