"""Bootloader strategies and the registry they are looked up in."""

import logging

from container2vm.helpers import ConfigurationError
from container2vm.state import ExpectedError


__all__ = [
    'Bootloader',
    'BootloaderNotFound',
    'BootloaderProvider',
    'Registry',
    'default_registry',
    ]


_logger = logging.getLogger('container2vm')
_default_registry = None


class BootloaderNotFound(ExpectedError):
    """No provider is registered under the requested name."""

    def __init__(self, name, known):
        self.name = name
        self.known = known

    def __str__(self):
        return 'bootloader provider {} not found, valid bootloaders: {}'.format(
            self.name, ', '.join(self.known))


class Bootloader:
    """Makes a mounted disk bootable.

    Subclasses implement setup().  validate() is called before the disk is
    touched so that incompatible choices are rejected early.
    """

    name = None
    # The boot file system this bootloader insists on, if any.
    required_boot_fs = None
    # Host tools which must be available to set the bootloader up.
    dependencies = ()

    def __init__(self, config, release, arch):
        self.config = config
        self.release = release
        self.arch = arch

    def validate(self, boot_fs):
        if (self.required_boot_fs is not None and
                boot_fs is not self.required_boot_fs):
            raise ConfigurationError(
                '{} only supports {} boot filesystem'.format(
                    self.name, self.required_boot_fs.value))

    def setup(self, device, root, cmdline):
        """Install the bootloader.

        :param device: The loop device the whole disk is attached to.
        :param root: Where the image's root file system is mounted.
        :param cmdline: The kernel command line.
        """
        raise NotImplementedError


class BootloaderProvider:
    name = None
    bootloader_class = None
    # Architectures the bootloader can be installed for.
    architectures = ('x86_64', 'arm64')

    def new(self, config, release, arch):
        """Create a bootloader for the given boot config, OS and arch."""
        if arch not in self.architectures:
            raise ConfigurationError(
                '{} bootloader is not supported on {}'.format(
                    self.name, arch))
        return self.bootloader_class(config, release, arch)


class Registry:
    def __init__(self):
        self._providers = {}

    def register(self, provider):
        if provider.name in self._providers:
            _logger.warning('replacing bootloader provider %s', provider.name)
        self._providers[provider.name] = provider

    def lookup(self, name):
        try:
            return self._providers[name]
        except KeyError:
            raise BootloaderNotFound(name, self.names()) from None

    def names(self):
        return sorted(self._providers)


def default_registry():
    """The process wide registry holding the built-in bootloaders.

    It is filled once, on first use, from the explicit provider list.
    """
    global _default_registry
    if _default_registry is None:
        # Imported here since the strategies import this module.
        from container2vm.grub import GRUB_PROVIDERS
        from container2vm.syslinux import SyslinuxProvider
        registry = Registry()
        for provider in (SyslinuxProvider(),) + GRUB_PROVIDERS:
            registry.register(provider)
        _default_registry = registry
    return _default_registry
