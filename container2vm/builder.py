"""Build a bootable VM disk from a root file system."""

import os
import fcntl
import logging

from container2vm import qemu_img
from container2vm.bootconfig import RootUUID, boot_config, crypt_params
from container2vm.bootloader import default_registry
from container2vm.fs import BootFS, RootFS
from container2vm.helpers import (
    COMMASPACE, ConfigurationError, MiB, MultiError, Teardown,
    check_dependencies, check_root_privilege, device_uuid, mkfs_ext4,
    mkfs_vfat, run)
from container2vm.image import Image
from container2vm.osrelease import Release
from container2vm.state import State
from subprocess import PIPE
from tempfile import NamedTemporaryFile
from uuid import uuid4


__all__ = [
    'DiskBuilder',
    'FORMATS',
    'build',
    'output_formats',
    ]


_logger = logging.getLogger('container2vm')


FORMATS = ('qcow2', 'qed', 'raw', 'vdi', 'vhdx', 'vhd', 'vmdk')

PLATFORMS = {
    'linux/amd64': 'x86_64',
    'linux/arm64': 'arm64',
    'linux/aarch64': 'arm64',
    }

MIN_BOOT_SIZE = MiB(50)
DEFAULT_BOOTLOADER = 'syslinux'
CRYPT_NAME_PREFIX = 'container2vm'
LOCK_FILE = '.container2vm.lock'

DEPENDENCIES = (
    'mount', 'umount', 'blkid', 'tar', 'losetup', 'kpartx', 'qemu-img',
    'dd', 'mkfs.ext4',
    )

HOSTS = """\
127.0.0.1 localhost

# The following lines are desirable for IPv6 capable hosts
::1 ip6-localhost ip6-loopback
fe00::0 ip6-localnet
ff00::0 ip6-mcastprefix
ff02::1 ip6-allnodes
ff02::2 ip6-allrouters
ff02::3 ip6-allhosts
"""

# Files a container runtime bind mounts over and which would otherwise be
# missing or empty in the image.
DEFAULT_FILES = (
    ('etc/resolv.conf', 'nameserver 8.8.8.8\n'),
    ('etc/hostname', 'localhost\n'),
    ('etc/hosts', HOSTS),
    )

# Container artifacts which break a real boot: the runtime marker, and the
# policy script forbidding services to start.
CONTAINER_ARTIFACTS = (
    '.dockerenv',
    'usr/sbin/policy-rc.d',
    )


def output_formats():
    return FORMATS


def _alpine_fixups(root):
    # Serial console login, and the file the networking service insists on.
    with open(os.path.join(root, 'etc', 'inittab'), 'a',
              encoding='utf-8') as fp:
        fp.write('\nttyS0::respawn:/sbin/getty -L ttyS0 115200 vt100\n')
    interfaces = os.path.join(root, 'etc', 'network', 'interfaces')
    if not os.path.exists(interfaces):
        os.makedirs(os.path.dirname(interfaces), exist_ok=True)
        open(interfaces, 'w').close()


DISTRIBUTION_FIXUPS = {
    Release.alpine: _alpine_fixups,
    }


def _write_if_empty(path, contents):
    # A symlink counts as content, its target may lie outside the image.
    if os.path.islink(path):
        return False
    if os.path.exists(path) and os.path.getsize(path) > 0:
        return False
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, 'w', encoding='utf-8') as fp:
        fp.write(contents)
    return True


class DiskBuilder(State):
    """Turn a root file system source into a bootable disk image.

    `options` carries the resolved build configuration, see
    `container2vm.options.BuildOptions`.  Everything which can be checked
    up front is checked here, before the first step touches the disk.
    """

    def __init__(self, options, registry=None):
        super().__init__()
        self.options = options
        self.source = options.source
        self.os_release = options.os_release
        self.cmdline_extra = options.cmdline_extra or ''
        self.luks_password = options.luks_password or None
        self.size = options.size
        self.boot_size = options.boot_size
        self.split_boot = bool(options.split_boot)
        try:
            self.arch = PLATFORMS[options.platform]
        except KeyError:
            raise ConfigurationError(
                'unexpected platform: {}, supported platforms: {}'.format(
                    options.platform, COMMASPACE.join(sorted(PLATFORMS)))
                ) from None
        self.format = (options.format or '').lower()
        if self.format not in FORMATS:
            raise ConfigurationError(
                'invalid format: {} valid formats are: {}'.format(
                    options.format, COMMASPACE.join(FORMATS)))
        self.boot_fs = (None if options.boot_fs is None
                        else BootFS.validate(options.boot_fs))
        config = boot_config(self.os_release)
        if registry is None:
            registry = default_registry()
        provider = registry.lookup(options.bootloader or DEFAULT_BOOTLOADER)
        required = provider.bootloader_class.required_boot_fs
        if required is BootFS.fat32 and self.boot_fs is None:
            _logger.warning(
                '%s requires a fat32 boot partition, enabling split boot',
                provider.name)
            self.split_boot = True
            self.boot_fs = BootFS.fat32
        if self.boot_fs is None:
            self.boot_fs = BootFS.ext4
        if self.boot_fs.is_fat and not self.split_boot:
            raise ConfigurationError('fat32 boot filesystem requires split boot')
        if self.luks_password is not None:
            if not self.split_boot:
                raise ConfigurationError('luks encryption requires split boot')
            if not self.os_release.supports_luks:
                raise ConfigurationError(
                    'luks encryption not supported on {}'.format(
                        self.os_release))
        if self.split_boot:
            if self.boot_size is None or self.boot_size < MIN_BOOT_SIZE:
                raise ConfigurationError(
                    'boot partition size must be at least 50MiB')
            if self.boot_size >= self.size:
                raise ConfigurationError(
                    'boot partition size must be less than the disk size')
            config = config.without_boot_prefix()
        self.bootloader = provider.new(config, self.os_release, self.arch)
        self.bootloader.validate(self.boot_fs)
        check_dependencies(self.dependencies())
        check_root_privilege()
        # Paths owned by this builder.
        self.workdir = options.workdir
        disk_name = options.disk_name or 'disk0'
        self.raw_disk = os.path.join(
            self.workdir, '{}.container2vm.raw'.format(disk_name))
        self.disk_out = os.path.join(
            self.workdir, '{}.{}'.format(disk_name, self.format))
        self.mountpoint = os.path.join(self.workdir, 'mnt')
        os.makedirs(self.mountpoint, exist_ok=True)
        self._lock()
        # Information passed between states.
        self.image = None
        self.loop_device = None
        self.boot_partition = None
        self.root_partition = None
        self.crypt_partition = None
        self.crypt_name = None
        self.mapped_crypt_device = None
        self.boot_uuid = None
        self.root_uuid = None
        self.crypt_uuid = None
        self.cmdline = None
        self.done = False
        self._teardown = Teardown()
        self.resources.callback(self._rollback)
        self._next.append(self.clean_stale_disk)

    def dependencies(self):
        names = list(DEPENDENCIES)
        if self.luks_password is not None:
            names.append('cryptsetup')
        if self.split_boot and self.boot_fs.is_fat:
            names.append('mkfs.fat')
        for name in (tuple(self.source.dependencies) +
                     tuple(self.bootloader.dependencies)):
            if name not in names:
                names.append(name)
        return names

    def _lock(self):
        path = os.path.join(self.workdir, LOCK_FILE)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            raise ConfigurationError(
                'working directory {} is in use by another build'.format(
                    self.workdir)) from None
        self.resources.callback(os.close, fd)
        self.resources.callback(fcntl.flock, fd, fcntl.LOCK_UN)

    @property
    def luks_enabled(self):
        return self.luks_password is not None

    @property
    def root_device(self):
        # The device carrying the root file system, the mapped one when the
        # root partition is encrypted.
        if self.mapped_crypt_device is not None:
            return self.mapped_crypt_device
        return self.root_partition

    def _image_path(self, path):
        return os.path.join(self.mountpoint, path.lstrip('/'))

    def unmount(self):
        """Release every host resource acquired so far, newest first.

        Each release is attempted even when an earlier one fails; failures
        are raised together as a MultiError.  With nothing acquired this
        does nothing.
        """
        self._teardown.unwind()

    def _rollback(self):
        if self.done:
            return
        try:
            self.unmount()
        except MultiError as error:
            _logger.error('failed to unmount: %s', error)
        for path in (self.raw_disk, self.disk_out):
            try:
                os.remove(path)
            except FileNotFoundError:
                pass
            except OSError as error:
                _logger.error('failed to remove %s: %s', path, error)

    def clean_stale_disk(self):
        if os.path.exists(self.raw_disk):
            _logger.info('Removing stale raw image %s', self.raw_disk)
            os.remove(self.raw_disk)
        self._next.append(self.allocate_disk)

    def allocate_disk(self):
        _logger.info('Creating raw image')
        self.image = Image(self.raw_disk, self.size)
        self._next.append(self.partition_disk)

    def partition_disk(self):
        self.image.layout(self.split_boot, self.boot_size)
        self._next.append(self.attach_disk)

    def attach_disk(self):
        _logger.info('Mounting raw image')
        proc = run(['losetup', '--show', '-f', self.raw_disk], stdout=PIPE)
        self.loop_device = proc.stdout.strip()
        self._teardown.push(
            'detach {}'.format(self.loop_device),
            run, ['losetup', '-d', self.loop_device])
        run(['kpartx', '-a', self.loop_device])
        self._teardown.push(
            'remove partition mappings of {}'.format(self.loop_device),
            run, ['kpartx', '-d', self.loop_device])
        mapper = os.path.join('/dev/mapper', os.path.basename(self.loop_device))
        self.boot_partition = '{}p1'.format(mapper)
        self.root_partition = (
            '{}p2'.format(mapper) if self.split_boot else self.boot_partition)
        if self.luks_enabled:
            self._next.append(self.encrypt_root)
        else:
            self._next.append(self.make_filesystems)

    def encrypt_root(self):
        _logger.info('Encrypting root partition')
        # NamedTemporaryFile is only readable by us, and gone on close.
        with NamedTemporaryFile('w', prefix='key') as keyfile:
            keyfile.write(self.luks_password)
            keyfile.flush()
            run(['cryptsetup', 'luksFormat', '--batch-mode', '--type', 'luks2',
                 self.root_partition, keyfile.name])
            crypt_name = '{}-{}-root'.format(CRYPT_NAME_PREFIX, uuid4())
            run(['cryptsetup', 'open', '--key-file', keyfile.name,
                 self.root_partition, crypt_name])
        self.crypt_name = crypt_name
        self._teardown.push(
            'close {}'.format(crypt_name),
            run, ['cryptsetup', 'close', crypt_name])
        self.crypt_partition = self.root_partition
        self.mapped_crypt_device = os.path.join('/dev/mapper', crypt_name)
        self._next.append(self.make_filesystems)

    def make_filesystems(self):
        _logger.info('Creating raw image file system')
        mkfs_ext4(self.root_device)
        if self.split_boot:
            if self.boot_fs.is_fat:
                mkfs_vfat(self.boot_partition)
            else:
                mkfs_ext4(self.boot_partition)
        self._next.append(self.mount_filesystems)

    def mount_filesystems(self):
        run(['mount', self.root_device, self.mountpoint])
        self._teardown.push(
            'unmount {}'.format(self.mountpoint),
            run, ['umount', self.mountpoint])
        if self.split_boot:
            bootdir = os.path.join(self.mountpoint, 'boot')
            os.makedirs(bootdir, exist_ok=True)
            run(['mount', self.boot_partition, bootdir])
            self._teardown.push(
                'unmount {}'.format(bootdir), run, ['umount', bootdir])
        self._next.append(self.copy_rootfs)

    def copy_rootfs(self):
        _logger.info('Copying rootfs to raw image')
        self.source.flatten(self.mountpoint)
        self._next.append(self.configure_rootfs)

    def configure_rootfs(self):
        _logger.info('Setting up rootfs')
        self.root_uuid = device_uuid(self.root_device)
        fstab = ['UUID={} / ext4 errors=remount-ro 0 1'.format(self.root_uuid)]
        if self.split_boot:
            self.boot_uuid = device_uuid(self.boot_partition)
            if self.luks_enabled:
                self.crypt_uuid = device_uuid(self.crypt_partition)
            fstab.append('UUID={} /boot {} errors=remount-ro 0 2'.format(
                self.boot_uuid, self.boot_fs.linux))
        else:
            self.boot_uuid = self.root_uuid
        etc = self._image_path('etc')
        os.makedirs(etc, exist_ok=True)
        with open(os.path.join(etc, 'fstab'), 'w', encoding='utf-8') as fp:
            fp.write('\n'.join(fstab) + '\n')
        for path, contents in DEFAULT_FILES:
            _write_if_empty(self._image_path(path), contents)
        for path in CONTAINER_ARTIFACTS:
            try:
                os.remove(self._image_path(path))
            except FileNotFoundError:
                pass
        fixup = DISTRIBUTION_FIXUPS.get(self.os_release.id)
        if fixup is not None:
            fixup(self.mountpoint)
        self._next.append(self.compute_cmdline)

    def compute_cmdline(self):
        config = self.bootloader.config
        if self.luks_enabled:
            params = crypt_params(self.os_release)
            self.cmdline = config.cmdline(
                params.root_specifier(self.root_uuid), RootFS.ext4,
                *params.render(self.root_uuid, self.crypt_uuid),
                self.cmdline_extra)
        else:
            self.cmdline = config.cmdline(
                RootUUID(self.root_uuid), RootFS.ext4, self.cmdline_extra)
        _logger.debug('kernel command line: %s', self.cmdline)
        self._next.append(self.install_bootloader)

    def install_bootloader(self):
        _logger.info('Installing bootloader')
        self.bootloader.setup(self.loop_device, self.mountpoint, self.cmdline)
        self._next.append(self.unmount_disk)

    def unmount_disk(self):
        _logger.info('Unmounting raw image')
        self.unmount()
        self._next.append(self.convert_disk)

    def convert_disk(self):
        qemu_img.convert(self.format, self.raw_disk, self.disk_out)
        self._next.append(self.clean_raw_disk)

    def clean_raw_disk(self):
        os.remove(self.raw_disk)
        self._next.append(self.finish)

    def finish(self):
        self.done = True

    def build(self):
        """Run every step and return the path of the finished disk."""
        list(self)
        return self.disk_out


def build(options, registry=None):
    """Build a disk image as described by `options`."""
    with DiskBuilder(options, registry) as builder:
        return builder.build()
