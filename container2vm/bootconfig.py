"""Per-distribution boot artifacts and kernel command line construction."""

import attr

from container2vm.fs import RootFS
from container2vm.helpers import SPACE, ConfigurationError
from container2vm.osrelease import Release


__all__ = [
    'BootConfig',
    'CryptParams',
    'RootPath',
    'RootUUID',
    'boot_config',
    'crypt_params',
    ]


BOOT_PREFIX = '/boot'
# Arguments every generated command line carries, in this order, after the
# root specifier.
NETWORK_ARGS = ('net.ifnames=0',)
CONSOLE_ARGS = ('console=tty0', 'console=ttyS0,115200n8')


@attr.s(frozen=True)
class RootUUID:
    uuid = attr.ib()

    def __str__(self):
        return 'UUID={}'.format(self.uuid)


@attr.s(frozen=True)
class RootPath:
    path = attr.ib()

    def __str__(self):
        return self.path


@attr.s(frozen=True)
class BootConfig:
    kernel = attr.ib()
    initrd = attr.ib()

    def without_boot_prefix(self):
        """The same config as seen from a separate /boot partition."""
        def strip(path):
            if path.startswith(BOOT_PREFIX + '/'):
                return path[len(BOOT_PREFIX):]
            return path
        return BootConfig(strip(self.kernel), strip(self.initrd))

    def cmdline(self, root=None, rootfs=RootFS.ext4, *args):
        """Build the kernel command line.

        :param root: The root device specifier, or None to leave the
            ``root=`` parameter out.
        :type root: RootUUID or RootPath
        :param rootfs: The root file system type.
        :type rootfs: RootFS
        :param args: Extra parameters, appended in order.  Empty strings are
            dropped; a string may hold several space separated parameters.
        :return: The space separated command line.
        :rtype: str
        """
        tokens = ['ro', 'initrd={}'.format(self.initrd)]
        if root is not None:
            tokens.append('root={}'.format(root))
        tokens.extend(NETWORK_ARGS)
        tokens.append('rootfstype={}'.format(RootFS(rootfs).value))
        tokens.extend(CONSOLE_ARGS)
        for arg in args:
            tokens.extend(arg.split())
        return SPACE.join(tokens)


_DEBIAN = BootConfig(kernel='/boot/vmlinuz', initrd='/boot/initrd.img')
_ALPINE = BootConfig(kernel='/boot/vmlinuz-virt', initrd='/boot/initramfs-virt')

BOOT_CONFIGS = {
    Release.ubuntu: _DEBIAN,
    Release.debian: _DEBIAN,
    Release.kali: _DEBIAN,
    Release.alpine: _ALPINE,
    Release.centos: _DEBIAN,
    }


def boot_config(release):
    """Return the BootConfig for an OSRelease."""
    try:
        return BOOT_CONFIGS[release.id]
    except KeyError:
        raise ConfigurationError(
            '{}: distribution not supported'.format(release.id_name)
            ) from None


@attr.s(frozen=True)
class CryptParams:
    """How an initramfs is told to unlock the encrypted root.

    ``root`` is either 'uuid' (the mapped device's file system UUID) or a
    device path.  The ``params`` templates are filled from ``root_uuid``
    and ``crypt_uuid``, the latter being the UUID of the LUKS container.
    """
    root = attr.ib()
    params = attr.ib()

    def root_specifier(self, root_uuid):
        if self.root == 'uuid':
            return RootUUID(root_uuid)
        return RootPath(self.root)

    def render(self, root_uuid, crypt_uuid):
        return [param.format(root_uuid=root_uuid, crypt_uuid=crypt_uuid)
                for param in self.params]


MAPPED_ROOT = '/dev/mapper/root'

CRYPT_PARAMS = {
    Release.alpine: CryptParams(
        root=MAPPED_ROOT,
        params=('cryptdm=root', 'cryptroot=UUID={crypt_uuid}')),
    Release.centos: CryptParams(
        root='uuid',
        params=('rd.luks.name=UUID={root_uuid}',
                'rd.luks.uuid={crypt_uuid}',
                'rd.luks.crypttab=0')),
    }
# Debian's cryptroot initramfs hook wants every field of cryptopts, see
# README.initramfs in the cryptsetup-initramfs package.
DEFAULT_CRYPT_PARAMS = CryptParams(
    root=MAPPED_ROOT,
    params=('cryptopts=target=root,source=UUID={crypt_uuid},key=none,luks',))


def crypt_params(release):
    return CRYPT_PARAMS.get(release.id, DEFAULT_CRYPT_PARAMS)
