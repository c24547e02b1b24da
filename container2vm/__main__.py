"""Allows the package to be run with `python3 -m container2vm`."""

import sys
import signal
import logging
import argparse

from container2vm import __version__
from container2vm.builder import output_formats
from container2vm.convert import convert_directory, convert_image
from container2vm.helpers import (
    COMMASPACE, SPACE, DependencyError, MultiError, PrivilegeError, as_size,
    set_debug)
from container2vm.options import load_config, merge_config, resolve_options
from container2vm.state import ExpectedError
from subprocess import CalledProcessError


_logger = logging.getLogger('container2vm')


PROGRAM = 'container2vm'


class SizeAction(argparse.Action):
    def __call__(self, parser, namespace, values, option_string=None):
        try:
            size = as_size(values)
        except (KeyError, ValueError):
            raise argparse.ArgumentError(
                self, 'Invalid size: {}'.format(values))
        setattr(namespace, self.dest, size)


def add_common_args(subcommand):
    # Defaults are None so that a build file can fill in what the command
    # line leaves out.
    output_group = subcommand.add_argument_group('Output options')
    output_group.add_argument(
        '-o', '--output',
        default=None, metavar='FILENAME',
        help="""The output image.  Its extension selects the image format,
        raw is used if there is none.  Supported formats: {}""".format(
            COMMASPACE.join(output_formats())))
    output_group.add_argument(
        '-s', '--size',
        default=None, action=SizeAction, metavar='SIZE',
        help="""The size of the disk.  The value is the size in bytes, with
        allowable suffixes 'M' for MiB and 'G' for GiB.  Defaults to 10G.""")
    output_group.add_argument(
        '--force',
        default=None, action='store_true',
        help='Overwrite the output image if it exists')
    output_group.add_argument(
        '-t', '--tag',
        default=None, metavar='TAG',
        help='Also wrap the disk in a container disk image with this tag')
    output_group.add_argument(
        '--push',
        default=None, action='store_true',
        help='Push the container disk image to its registry')
    boot_group = subcommand.add_argument_group('Boot options')
    boot_group.add_argument(
        '--append-to-cmdline',
        default=None, metavar='ARGS',
        help="""Extra kernel command line arguments to append to the
        generated one""")
    boot_group.add_argument(
        '--split-boot',
        default=None, action='store_true',
        help='Put /boot on its own partition')
    boot_group.add_argument(
        '--boot-size',
        default=None, type=int, metavar='MIB',
        help='Size of the boot partition in MiB.  Defaults to 100.')
    boot_group.add_argument(
        '--boot-fs',
        default=None, metavar='FS',
        help='Filesystem of the boot partition: ext4 or fat32')
    boot_group.add_argument(
        '--bootloader',
        default=None, metavar='NAME',
        help="""Bootloader to use: syslinux, grub, grub-bios or grub-efi.
        Defaults to syslinux on amd64 and grub-efi on arm64.""")
    boot_group.add_argument(
        '--luks-password',
        default=None, metavar='PASSWORD',
        help="""Encrypt the root partition with LUKS using this password.
        Implies --split-boot.""")
    boot_group.add_argument(
        '--platform',
        default=None, metavar='PLATFORM',
        help='Target platform: linux/amd64 or linux/arm64')
    common_group = subcommand.add_argument_group('Common options')
    common_group.add_argument(
        '-d', '--debug',
        default=False, action='store_true',
        help='Enable debugging output')
    common_group.add_argument(
        '-c', '--config',
        default=None, metavar='FILENAME',
        help="""YAML build file providing defaults for the options above.
        Options given on the command line take precedence.""")
    common_group.add_argument(
        '-w', '--workdir',
        default=None, metavar='DIRECTORY',
        help="""The working directory in which the raw disk is assembled.
        It is not removed after this program exits.  If not given, a
        temporary working directory is used instead, which *is* deleted
        after this program exits.""")
    return subcommand


def parseargs(argv=None):
    parser = argparse.ArgumentParser(
        prog=PROGRAM,
        description='Build a bootable virtual machine disk image from a '
                    'container root filesystem.')
    parser.add_argument(
        '--version', action='version',
        version='{} {}'.format(PROGRAM, __version__))
    subparser = parser.add_subparsers(title='Command', dest='cmd')
    convert_cmd = subparser.add_parser(
        'convert',
        help='Convert a container image to a VM disk image')
    build_cmd = subparser.add_parser(
        'build',
        help='Build a VM disk image from an unpacked root filesystem')
    convert_cmd = add_common_args(convert_cmd)
    build_cmd = add_common_args(build_cmd)
    convert_cmd.add_argument(
        'image', metavar='IMAGE',
        help='The container image, :latest is assumed if no tag is given')
    convert_cmd.add_argument(
        '--pull',
        default=None, action='store_true',
        help='Always pull the image, even if it exists locally')
    convert_cmd.add_argument(
        '--keep-cache',
        default=None, action='store_true',
        help='Keep the pulled image and exported filesystem after the build')
    build_cmd.add_argument(
        '-f', '--filesystem',
        required=True, metavar='DIRECTORY',
        help='Unpacked root filesystem to copy to the root partition')
    args = parser.parse_args(argv)
    if args.cmd is None:
        parser.error('a command is required')
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format='%(levelname)s: %(message)s')
    set_debug(args.debug)
    config = {}
    if args.config is not None:
        try:
            with open(args.config, 'r', encoding='utf-8') as fp:
                config = load_config(fp)
        except OSError as error:
            parser.error('cannot read build file: {}'.format(error))
        except ExpectedError as error:
            parser.error(str(error))
    merge_config(args, config)
    return args


def _terminate(signum, frame):
    # Turn SIGTERM into the same unwinding as a ^C.
    raise KeyboardInterrupt


def main(argv=None):
    if argv is None:
        argv = sys.argv[1:]
    args = parseargs(argv)
    signal.signal(signal.SIGTERM, _terminate)
    try:
        resolve_options(args)
        if args.cmd == 'convert':
            convert_image(args.image, args)
        else:
            convert_directory(args.filesystem, args)
    except KeyboardInterrupt:
        _logger.error('Build interrupted')
        return 1
    except PrivilegeError as error:
        _logger.error('Current user({}) does not have root privilege to '
                      'build a disk image. Please run {} as root.'.format(
                          error.user_name, PROGRAM))
        return 1
    except DependencyError as error:
        _logger.error('Required dependencies seem to be missing: {}. {}'.format(
            COMMASPACE.join(error.names), error.additional_info).strip())
        return 1
    except MultiError as error:
        _logger.error('Multiple errors: {}'.format(error))
        return 1
    except CalledProcessError as error:
        command = (error.cmd if isinstance(error.cmd, str)
                   else SPACE.join(error.cmd))
        _logger.error('Command failed with exit status {}: {}'.format(
            error.returncode, command))
        return 1
    except FileNotFoundError as error:
        _logger.error('No such file or directory: {}'.format(
            error.filename or error))
        return 1
    except ExpectedError as error:
        _logger.error('{}'.format(error))
        return 1
    except Exception:
        _logger.exception('Crash in build')
        return 1
    _logger.info('Disk image written to {}'.format(args.output))
    return 0


if __name__ == '__main__':                          # pragma: nocover
    sys.exit(main())
