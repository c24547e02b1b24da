"""Testing helpers."""

import os
import json
import logging

from container2vm.helpers import GiB
from container2vm.options import BuildOptions
from container2vm.osrelease import OSRelease
from contextlib import ExitStack, contextmanager
from subprocess import CalledProcessError, CompletedProcess
from unittest.mock import patch
from uuid import NAMESPACE_URL, uuid5


# Every module which drives host tools through helpers.run().
RUN_MODULES = (
    'container2vm.builder',
    'container2vm.docker',
    'container2vm.grub',
    'container2vm.helpers',
    'container2vm.qemu_img',
    'container2vm.rootfs',
    'container2vm.syslinux',
    )

UBUNTU_22_04 = OSRelease(
    id='ubuntu', name='Ubuntu', version_id='22.04',
    version='22.04.3 LTS (Jammy Jellyfish)', version_codename='jammy')
DEBIAN_11 = OSRelease(
    id='debian', name='Debian GNU/Linux', version_id='11',
    version='11 (bullseye)', version_codename='bullseye')
ALPINE_3_18 = OSRelease(
    id='alpine', name='Alpine Linux', version_id='3.18.4')
CENTOS_8 = OSRelease(id='centos', name='CentOS Stream', version_id='8')


class LogCapture:
    def __init__(self):
        self.logs = []
        self._resources = ExitStack()

    def capture(self, *args, **kws):
        level, fmt, fmt_args = args
        self.logs.append((level, fmt % fmt_args if fmt_args else fmt))
        # Was .exception() called?
        exc_info = kws.pop('exc_info', None)
        assert len(kws) == 0, kws
        if exc_info:
            self.logs.append('IMAGINE THE TRACEBACK HERE')

    def __enter__(self):
        log = logging.getLogger('container2vm')
        self._resources.enter_context(patch.object(log, '_log', self.capture))
        return self

    def __exit__(self, *exception):
        self._resources.close()
        # Don't suppress any exceptions.
        return False


class CommandRecorder:
    """Stand in for helpers.run() which records instead of executing.

    The few commands whose output the code parses get plausible answers:
    losetup prints a loop device, blkid a stable UUID per device, and
    qemu-img writes and describes its output file.
    """

    def __init__(self, loop_device='/dev/loop7'):
        self.commands = []
        self.loop_device = loop_device
        self._failures = []
        self._formats = {}
        self._resources = ExitStack()

    def fail_on(self, *prefix):
        """Make commands starting with `prefix` exit with status 1."""
        self._failures.append(list(prefix))

    @staticmethod
    def uuid_for(device):
        return str(uuid5(NAMESPACE_URL, device))

    def programs(self):
        return [command[0] for command in self.commands]

    def matching(self, *prefix):
        return [command for command in self.commands
                if command[:len(prefix)] == list(prefix)]

    def run(self, command, *, check=True, **kws):
        command = (command.split() if isinstance(command, str)
                   else list(command))
        self.commands.append(command)
        for prefix in self._failures:
            if command[:len(prefix)] == prefix:
                if check:
                    raise CalledProcessError(1, command, '', 'failed')
                return CompletedProcess(command, 1, stdout='', stderr='')
        stdout = ''
        if command[:3] == ['losetup', '--show', '-f']:
            stdout = self.loop_device + '\n'
        elif command[0] == 'blkid':
            stdout = self.uuid_for(command[-1]) + '\n'
        elif command[:2] == ['qemu-img', 'convert']:
            format, src, dst = command[3:6]
            with open(dst, 'wb') as fp:
                fp.write(b'QFI\xfb\x00\x00\x00\x03')
            self._formats[dst] = format
        elif command[:2] == ['qemu-img', 'info']:
            path = command[2]
            stdout = json.dumps({
                'virtual-size': GiB(10),
                'filename': path,
                'format': self._formats.get(path, 'raw'),
                'actual-size': os.path.getsize(path),
                'dirty-flag': False,
                })
        return CompletedProcess(command, 0, stdout=stdout, stderr='')

    def __enter__(self):
        for module in RUN_MODULES:
            self._resources.enter_context(
                patch('{}.run'.format(module), self.run))
        return self

    def __exit__(self, *exception):
        self._resources.close()
        return False


class FakeImage:
    """Image replacement which creates the file but writes no table."""

    def __init__(self, path, size):
        self.path = path
        self.size = size
        self.layouts = []
        with open(path, 'wb'):
            pass

    def layout(self, split_boot, boot_size=None):
        self.layouts.append((split_boot, boot_size))
        return 2 if split_boot else 1


class FakeRootFS:
    """A root file system source writing a handful of files."""

    FILES = {
        '.dockerenv': '',
        'usr/sbin/policy-rc.d': '#!/bin/sh\nexit 101\n',
        'etc/hostname': '',
        'etc/hosts': '127.0.0.1 localhost container\n',
        'etc/inittab': '::sysinit:/sbin/openrc sysinit\n',
        'boot/vmlinuz': '',
        'boot/initrd.img': '',
        }

    def __init__(self, files=None, links=None, dependencies=()):
        self.files = dict(self.FILES if files is None else files)
        # Image path -> symlink target, created as is.
        self.links = dict(() if links is None else links)
        self.dependencies = tuple(dependencies)
        self.flattened = []
        self.closed = False

    def flatten(self, out_dir):
        self.flattened.append(out_dir)
        for path, contents in self.files.items():
            full_path = os.path.join(out_dir, path)
            os.makedirs(os.path.dirname(full_path), exist_ok=True)
            with open(full_path, 'w', encoding='utf-8') as fp:
                fp.write(contents)
        for path, target in self.links.items():
            full_path = os.path.join(out_dir, path)
            os.makedirs(os.path.dirname(full_path), exist_ok=True)
            os.symlink(target, full_path)

    def close(self):
        self.closed = True


def make_options(workdir, **kws):
    kws.setdefault('source', FakeRootFS())
    kws.setdefault('os_release', UBUNTU_22_04)
    return BuildOptions(workdir=workdir, **kws)


@contextmanager
def mock_host(tmpdir):
    """Pretend to be a privileged host with every tool installed.

    :return: The CommandRecorder standing in for the host tools.
    """
    mbr = os.path.join(tmpdir, 'mbr.bin')
    with open(mbr, 'wb') as fp:
        fp.write(b'\0' * 440)
    with ExitStack() as resources:
        resources.enter_context(
            patch('container2vm.builder.check_dependencies'))
        resources.enter_context(
            patch('container2vm.builder.check_root_privilege'))
        resources.enter_context(
            patch('container2vm.builder.Image', FakeImage))
        resources.enter_context(
            patch('container2vm.syslinux.MBR_PATHS', (mbr,)))
        yield resources.enter_context(CommandRecorder())


@contextmanager
def envar(key, value):
    missing = object()
    # Temporarily set an environment variable.
    old_value = os.environ.get(key, missing)
    os.environ[key] = value
    try:
        yield
    finally:
        if old_value is missing:
            del os.environ[key]
        else:
            os.environ[key] = old_value
