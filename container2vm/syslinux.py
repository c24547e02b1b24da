"""Legacy BIOS boot through extlinux."""

import os
import logging

from container2vm.bootloader import Bootloader, BootloaderProvider
from container2vm.fs import BootFS
from container2vm.helpers import ConfigurationError, run


__all__ = [
    'MBR_PATHS',
    'Syslinux',
    'SyslinuxProvider',
    ]


_logger = logging.getLogger('container2vm')


# Where distributions install the syslinux MBR boot code; the first one
# found wins.
MBR_PATHS = (
    '/usr/lib/syslinux/mbr/mbr.bin',
    '/usr/lib/EXTLINUX/mbr.bin',
    '/usr/share/syslinux/mbr.bin',
    '/usr/lib/syslinux/bios/mbr.bin',
    )

SYSLINUX_CFG = """\
DEFAULT linux
  SAY Now booting the kernel from SYSLINUX...
 LABEL linux
  KERNEL {kernel}
  APPEND {append}
"""

# Only the boot code area of the MBR is written, the partition table
# following it is left alone.
MBR_BOOT_CODE_SIZE = 440


def find_mbr(paths=None):
    if paths is None:
        paths = MBR_PATHS
    for path in paths:
        if os.path.exists(path):
            return path
    raise ConfigurationError(
        'syslinux mbr.bin not found in any of: {}'.format(', '.join(paths)))


class Syslinux(Bootloader):
    name = 'syslinux'
    required_boot_fs = BootFS.ext4
    dependencies = ('extlinux',)

    def __init__(self, config, release, arch):
        super().__init__(config, release, arch)
        # A host without mbr.bin fails here, before any disk is built.
        self.mbr = find_mbr()

    def setup(self, device, root, cmdline):
        bootdir = os.path.join(root, 'boot')
        _logger.info('Installing syslinux')
        os.makedirs(bootdir, exist_ok=True)
        run(['extlinux', '--install', bootdir])
        with open(os.path.join(bootdir, 'syslinux.cfg'), 'w',
                  encoding='utf-8') as fp:
            fp.write(SYSLINUX_CFG.format(
                kernel=self.config.kernel, append=cmdline))
        run(['dd', 'if={}'.format(self.mbr), 'of={}'.format(device),
             'bs={}'.format(MBR_BOOT_CODE_SIZE), 'count=1', 'conv=notrunc'])


class SyslinuxProvider(BootloaderProvider):
    name = 'syslinux'
    bootloader_class = Syslinux
    architectures = ('x86_64',)
