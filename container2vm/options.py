"""Build options from the command line and from a YAML build file."""

import os
import attr
import logging

from container2vm.fs import BootFS
from container2vm.helpers import (
    COMMASPACE, ConfigurationError, GiB, MiB, as_size)
from io import StringIO
from voluptuous import Any, Coerce, Invalid, Optional, Schema
from yaml import load
from yaml.loader import SafeLoader
from yaml.parser import ParserError
from yaml.scanner import ScannerError


__all__ = [
    'BuildOptions',
    'DEFAULTS',
    'build_options',
    'load_config',
    'merge_config',
    'resolve_options',
    ]


COLON = ':'
_logger = logging.getLogger('container2vm')

AMD64 = 'linux/amd64'
ARM64 = 'linux/arm64'
# Bootloaders which need an EFI system partition.
EFI_BOOTLOADERS = ('grub-efi', 'grub')

# Values used for whatever neither the command line nor the build file set.
DEFAULTS = dict(
    output='disk0.qcow2',
    size=GiB(10),
    force=False,
    append_to_cmdline='',
    split_boot=False,
    boot_size=100,
    boot_fs=None,
    bootloader=None,
    luks_password=None,
    platform=AMD64,
    workdir=None,
    tag=None,
    push=False,
    pull=False,
    keep_cache=False,
    )


@attr.s
class BuildOptions:
    """The fully resolved configuration of one disk build.

    Sizes are in bytes.
    """
    workdir = attr.ib()
    source = attr.ib()
    os_release = attr.ib()
    disk_name = attr.ib(default='disk0')
    size = attr.ib(default=GiB(10))
    format = attr.ib(default='qcow2')
    cmdline_extra = attr.ib(default='')
    split_boot = attr.ib(default=False)
    boot_fs = attr.ib(default=None)
    boot_size = attr.ib(default=MiB(100))
    luks_password = attr.ib(default=None)
    bootloader = attr.ib(default=None)
    platform = attr.ib(default=AMD64)


# PyYAML silently accepts duplicate mapping keys, which the YAML spec
# prohibits, so reject them while constructing the mapping.
class StrictLoader(SafeLoader):
    def construct_mapping(self, node):
        pairs = self.construct_pairs(node)
        mapping = {}
        for key, value in pairs:
            if key in mapping:
                raise ConfigurationError('Duplicate key: {}'.format(key))
            mapping[key] = value
        return mapping


StrictLoader.add_constructor(
    'tag:yaml.org,2002:map', StrictLoader.construct_mapping)
# Passwords and tags made only of digits must stay strings.
StrictLoader.add_constructor(
    'tag:yaml.org,2002:int', StrictLoader.construct_yaml_str)


def _size(value):
    try:
        return as_size(value)
    except KeyError:
        raise ValueError(value) from None


BuildFile = Schema({
    Optional('output'): str,
    Optional('size'): Coerce(_size),
    Optional('force'): bool,
    Optional('append-to-cmdline'): str,
    Optional('split-boot'): bool,
    Optional('boot-size'): Coerce(int),
    Optional('boot-fs'): Any(*(member.value for member in BootFS)),
    Optional('bootloader'): str,
    Optional('luks-password'): str,
    Optional('platform'): str,
    Optional('workdir'): str,
    Optional('tag'): str,
    Optional('push'): bool,
    Optional('pull'): bool,
    Optional('keep-cache'): bool,
    })


def load_config(stream_or_string):
    """Load and validate a YAML build file.

    :param stream_or_string: Either a string or a file-like object open for
        reading with a UTF-8 encoding.
    :return: The settings, keyed by their command line destination names,
        e.g. ``split_boot`` for ``split-boot``.
    :rtype: dict
    :raises ConfigurationError: If the file is not valid.
    """
    stream = (StringIO(stream_or_string)
              if isinstance(stream_or_string, str)
              else stream_or_string)
    try:
        yaml = load(stream, Loader=StrictLoader)
    except (ParserError, ScannerError) as error:
        raise ConfigurationError('build file is not valid YAML') from error
    if yaml is None:
        return {}
    try:
        validated = BuildFile(yaml)
    except Invalid as error:
        path = COLON.join(str(component) for component in error.path)
        raise ConfigurationError(
            'Invalid build file @ {}'.format(path or '<root>')) from None
    return {key.replace('-', '_'): value for key, value in validated.items()}


def merge_config(args, config):
    """Fill the options the command line left unset.

    Options given on the command line win over the build file, which wins
    over DEFAULTS.
    """
    for key, default in DEFAULTS.items():
        if getattr(args, key, None) is None:
            setattr(args, key, config.get(key, default))
    return args


def resolve_options(args):
    """Apply the rules which tie the options to each other.

    Some options imply others; those are switched on with a warning.
    """
    if args.platform == AMD64:
        if not args.bootloader:
            args.bootloader = 'syslinux'
    elif args.platform in (ARM64, 'linux/aarch64'):
        args.platform = ARM64
        if not args.bootloader:
            args.bootloader = 'grub-efi'
        if args.bootloader != 'grub-efi':
            raise ConfigurationError(
                'unsupported bootloader for platform {}: {}, only grub-efi '
                'is supported'.format(args.platform, args.bootloader))
    else:
        raise ConfigurationError(
            'unexpected platform: {}, supported platforms: {}'.format(
                args.platform, COMMASPACE.join((AMD64, ARM64))))
    if args.luks_password and not args.split_boot:
        _logger.warning('luks password is set: enabling split boot')
        args.split_boot = True
    if args.boot_fs:
        args.boot_fs = BootFS.validate(args.boot_fs)
        if not args.split_boot:
            _logger.warning('boot filesystem is set: enabling split boot')
            args.split_boot = True
    efi = args.bootloader in EFI_BOOTLOADERS
    if efi and not args.split_boot:
        _logger.warning(
            '%s bootloader is set: enabling split boot', args.bootloader)
        args.split_boot = True
    if efi and args.boot_fs and not args.boot_fs.is_fat:
        raise ConfigurationError(
            '{} bootloader only supports fat32 boot filesystem'.format(
                args.bootloader))
    if efi and not args.boot_fs:
        _logger.warning(
            '%s bootloader is set: enabling fat32 boot filesystem',
            args.bootloader)
        args.boot_fs = BootFS.fat32
    if args.push and not args.tag:
        raise ConfigurationError(
            'tag is required when pushing container disk image')
    if os.path.lexists(args.output) and not args.force:
        raise ConfigurationError('{} already exists'.format(args.output))
    return args


def output_format(output):
    """The disk format named by the output file extension, raw if none."""
    extension = os.path.splitext(output)[1]
    return extension[1:].lower() if extension else 'raw'


def build_options(args, source, os_release, workdir):
    """BuildOptions for a resolved command line."""
    return BuildOptions(
        workdir=workdir,
        source=source,
        os_release=os_release,
        size=args.size,
        format=output_format(args.output),
        cmdline_extra=args.append_to_cmdline or '',
        split_boot=args.split_boot,
        boot_fs=args.boot_fs or None,
        boot_size=MiB(args.boot_size),
        luks_password=args.luks_password or None,
        bootloader=args.bootloader,
        platform=args.platform,
        )
