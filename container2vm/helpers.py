"""Useful helper functions."""

import os
import re
import pwd
import shutil
import logging

from subprocess import PIPE, run as subprocess_run
from container2vm.state import ExpectedError


__all__ = [
    'COMMASPACE',
    'GiB',
    'MiB',
    'SPACE',
    'Teardown',
    'as_size',
    'check_dependencies',
    'device_uuid',
    'mkfs_ext4',
    'mkfs_vfat',
    'run',
    'set_debug',
    ]


SPACE = ' '
COMMASPACE = ', '
_logger = logging.getLogger('container2vm')
# When set, commands which do not explicitly ask for their output to be
# captured write straight to the terminal.
_debug = False


def GiB(count):
    return count * 2**30


def MiB(count):
    return count * 2**20


def straight_up_bytes(count):
    return count


def as_size(size, min=0, max=None):
    mo = re.match(r'^(\d+)([a-zA-Z]*)$', str(size).strip())
    if mo is None:
        raise ValueError(size)
    size_in_bytes = mo.group(1)
    value = {
        '': straight_up_bytes,
        'B': straight_up_bytes,
        'G': GiB,
        'GB': GiB,
        'GiB': GiB,
        'M': MiB,
        'MB': MiB,
        'MiB': MiB,
        }[mo.group(2)](int(size_in_bytes))
    if max is None:
        if value < min:
            raise ValueError('Value outside range: {} < {}'.format(value, min))
    elif not (min <= value < max):
        raise ValueError('Value outside range: {} <= {} < {}'.format(
            min, value, max))
    return value


def set_debug(debug):
    global _debug
    _debug = debug


def run(command, *, check=True, **args):
    runnable_command = (
        command.split() if isinstance(command, str) and 'shell' not in args
        else command)
    default_output = None if _debug else PIPE
    stdout = args.pop('stdout', default_output)
    stderr = args.pop('stderr', default_output)
    proc = subprocess_run(
        runnable_command,
        stdout=stdout, stderr=stderr,
        universal_newlines=True,
        **args)
    if check and proc.returncode != 0:
        _logger.error('COMMAND FAILED: %s', (
            command if isinstance(command, str) else SPACE.join(command)))
        if proc.stdout is not None:
            _logger.error(proc.stdout)
        if proc.stderr is not None:
            _logger.error(proc.stderr)
        proc.check_returncode()
    return proc


def check_dependencies(names):
    """Make sure every host tool in `names` can be found on $PATH.

    All the missing tools are reported at once.
    """
    missing = [name for name in names if shutil.which(name) is None]
    if missing:
        raise DependencyError(missing)


def device_uuid(device):
    proc = run(['blkid', '-s', 'UUID', '-o', 'value', device], stdout=PIPE)
    return proc.stdout.strip()


def mkfs_ext4(device, label=None):
    cmd = ['mkfs.ext4']
    if label is not None:
        cmd.extend(['-L', label])
    cmd.append(device)
    run(cmd)


def mkfs_vfat(device, label=None):
    cmd = ['mkfs.fat', '-F32']
    if label is not None:
        cmd.extend(['-n', label])
    cmd.append(device)
    run(cmd)


def check_root_privilege():
    if os.geteuid() != 0:
        current_user = pwd.getpwuid(os.geteuid())[0]
        raise PrivilegeError(current_user)


class Teardown:
    """Release actions for host resources, undone in reverse order.

    Unlike an ExitStack, a failing action does not hide the other
    failures: every action is attempted and all of the errors are raised
    together as a MultiError.
    """

    def __init__(self):
        self._actions = []

    def __len__(self):
        return len(self._actions)

    def push(self, description, function, *args):
        self._actions.append((description, function, args))

    def unwind(self):
        errors = []
        while self._actions:
            description, function, args = self._actions.pop()
            _logger.debug('teardown: %s', description)
            try:
                function(*args)
            except Exception as error:
                _logger.error('failed to %s: %s', description, error)
                errors.append(error)
        if errors:
            raise MultiError(errors)


class MultiError(ExpectedError):
    """Several independent operations failed."""

    def __init__(self, errors):
        self.errors = list(errors)

    def __str__(self):
        return '; '.join(str(error) for error in self.errors)


class ConfigurationError(ExpectedError):
    """The requested build cannot be performed as configured."""


class PrivilegeError(ExpectedError):
    """Exception raised whenever this tool has not granted root permission."""

    def __init__(self, user_name):
        self.user_name = user_name


class DependencyError(ExpectedError):
    """One or more required host tools are missing."""

    def __init__(self, names, additional_info=''):
        self.names = list(names)
        self.additional_info = additional_info

    def __str__(self):
        return 'missing required dependencies: {}'.format(
            COMMASPACE.join(self.names))
