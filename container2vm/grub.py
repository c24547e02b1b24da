"""GRUB bootloaders, installed from inside the image through chroot."""

import os
import logging

from contextlib import ExitStack, contextmanager
from container2vm.bootloader import Bootloader, BootloaderProvider
from container2vm.fs import BootFS
from container2vm.helpers import ConfigurationError, run
from container2vm.osrelease import Release


__all__ = [
    'GRUB_PROVIDERS',
    'Grub',
    'GrubBIOS',
    'GrubEFI',
    ]


_logger = logging.getLogger('container2vm')


GRUB_DEFAULT = """\
GRUB_DEFAULT=0
GRUB_HIDDEN_TIMEOUT=0
GRUB_HIDDEN_TIMEOUT_QUIET=true
GRUB_TIMEOUT=0
GRUB_CMDLINE_LINUX_DEFAULT="{cmdline}"
GRUB_CMDLINE_LINUX=""
GRUB_TERMINAL=console
"""

# Host file systems the GRUB tools probe while running in the chroot.
BIND_MOUNTS = ('dev', 'proc', 'sys')


def grub_name(release):
    # Red Hat derivatives ship the tools as grub2-install and grub2-mkconfig.
    return 'grub2' if release.id is Release.centos else 'grub'


class GrubCommon(Bootloader):
    dependencies = ('chroot', 'mount', 'umount')

    def __init__(self, config, release, arch):
        super().__init__(config, release, arch)
        self.grub = grub_name(release)

    def _unmount(self, path):
        try:
            run(['umount', path])
        except Exception as error:
            _logger.error('failed to unmount %s: %s', path, error)

    @contextmanager
    def _bind_mounts(self, root):
        with ExitStack() as resources:
            for name in BIND_MOUNTS:
                target = os.path.join(root, name)
                run(['mount', '-o', 'bind', '/' + name, target])
                resources.callback(self._unmount, target)
            yield

    def prepare(self, root, cmdline):
        default = os.path.join(root, 'etc', 'default')
        os.makedirs(default, exist_ok=True)
        with open(os.path.join(default, 'grub'), 'w', encoding='utf-8') as fp:
            fp.write(GRUB_DEFAULT.format(cmdline=cmdline))
        os.makedirs(os.path.join(root, 'boot', self.grub), exist_ok=True)

    def install(self, root, *args):
        run(['chroot', root, '{}-install'.format(self.grub)] + list(args))

    def mkconfig(self, root):
        run(['chroot', root, '{}-mkconfig'.format(self.grub),
             '-o', '/boot/{}/grub.cfg'.format(self.grub)])

    def bios_install(self, device, root):
        self.install(root, '--target=i386-pc', '--boot-directory=/boot',
                     device)

    def efi_install(self, root):
        self.install(root,
                     '--target={}-efi'.format(self.efi_arch),
                     '--efi-directory=/boot',
                     '--no-nvram', '--removable', '--no-floppy')

    @property
    def efi_arch(self):
        return 'x86_64' if self.arch == 'x86_64' else 'arm64'

    def targets(self, device, root):
        raise NotImplementedError

    def setup(self, device, root, cmdline):
        _logger.info('Installing %s bootloader', self.name)
        self.prepare(root, cmdline)
        with self._bind_mounts(root):
            self.targets(device, root)
            self.mkconfig(root)


class GrubBIOS(GrubCommon):
    name = 'grub-bios'

    def targets(self, device, root):
        self.bios_install(device, root)


class GrubEFI(GrubCommon):
    name = 'grub-efi'
    required_boot_fs = BootFS.fat32

    def targets(self, device, root):
        self.efi_install(root)


class Grub(GrubCommon):
    """Both the BIOS and the EFI flavors, so the disk boots either way."""

    name = 'grub'
    required_boot_fs = BootFS.fat32

    def targets(self, device, root):
        self.bios_install(device, root)
        self.efi_install(root)


class GrubBIOSProvider(BootloaderProvider):
    name = 'grub-bios'
    bootloader_class = GrubBIOS
    architectures = ('x86_64',)


class GrubEFIProvider(BootloaderProvider):
    name = 'grub-efi'
    bootloader_class = GrubEFI

    def new(self, config, release, arch):
        if release.id is Release.centos:
            raise ConfigurationError(
                'grub-efi is not supported for CentOS, use grub-bios instead')
        return super().new(config, release, arch)


class GrubProvider(BootloaderProvider):
    name = 'grub'
    bootloader_class = Grub
    architectures = ('x86_64',)

    def new(self, config, release, arch):
        if release.id is Release.centos:
            raise ConfigurationError(
                'grub is not supported for CentOS, use grub-bios instead')
        return super().new(config, release, arch)


GRUB_PROVIDERS = (
    GrubProvider(),
    GrubBIOSProvider(),
    GrubEFIProvider(),
    )
