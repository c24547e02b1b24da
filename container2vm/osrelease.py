"""Operating system identity, as described by /etc/os-release."""

import os
import re
import attr
import shlex
import logging

from container2vm.helpers import SPACE
from enum import Enum


_logger = logging.getLogger('container2vm')


class Release(Enum):
    ubuntu = 'ubuntu'
    debian = 'debian'
    kali = 'kali'
    alpine = 'alpine'
    centos = 'centos'
    rhel = 'rhel'


SUPPORTED_RELEASES = frozenset({
    Release.ubuntu,
    Release.debian,
    Release.kali,
    Release.alpine,
    Release.centos,
    })


# The oldest version of each distribution whose initramfs knows how to
# unlock a LUKS2 root device.  None means every version does.
LUKS_MINIMUM_VERSION = {
    Release.ubuntu: (20, 4),
    Release.debian: (10,),
    Release.kali: None,
    Release.alpine: (3, 17),
    Release.centos: (8,),
    }


def version_tuple(version):
    """Turn a dotted version string into a tuple of integers.

    Non-numeric suffixes are ignored, so '3.17.2' gives (3, 17, 2) and
    '11' gives (11,).  An unparseable version gives the empty tuple.
    """
    parts = []
    for part in version.split('.'):
        mo = re.match(r'\d+', part)
        if mo is None:
            break
        parts.append(int(mo.group(0)))
    return tuple(parts)


def _as_release(value):
    try:
        return Release(value.lower())
    except ValueError:
        # Keep unknown distribution ids around for error messages.
        return value.lower()


@attr.s(frozen=True)
class OSRelease:
    id = attr.ib(converter=_as_release)
    name = attr.ib(default='')
    version_id = attr.ib(default='')
    version = attr.ib(default='')
    version_codename = attr.ib(default='')

    @property
    def id_name(self):
        return self.id.value if isinstance(self.id, Release) else self.id

    @property
    def supported(self):
        return self.id in SUPPORTED_RELEASES

    @property
    def supports_luks(self):
        if not self.supported:
            return False
        minimum = LUKS_MINIMUM_VERSION[self.id]
        if minimum is None:
            return True
        return version_tuple(self.version_id) >= minimum

    def __str__(self):
        return '{} {}'.format(self.id_name, self.version_id).strip()


def parse_os_release(text):
    """Parse the contents of an os-release(5) file.

    :param text: The file contents.
    :type text: str
    :return: The parsed operating system identity.
    :rtype: OSRelease
    """
    env = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith('#'):
            continue
        key, equals, value = line.partition('=')
        if equals != '=':
            _logger.debug('ignoring malformed os-release line: %s', line)
            continue
        # Values follow shell quoting rules.
        try:
            words = shlex.split(value)
        except ValueError:
            words = [value.strip('"\'')]
        env[key.strip()] = SPACE.join(words)
    return OSRelease(
        id=env.get('ID', ''),
        name=env.get('NAME', ''),
        version_id=env.get('VERSION_ID', ''),
        version=env.get('VERSION', ''),
        version_codename=env.get('VERSION_CODENAME', ''),
        )


def read_os_release(root):
    """Read the os-release file of an unpacked root file system."""
    for candidate in ('etc/os-release', 'usr/lib/os-release'):
        path = os.path.join(root, candidate)
        try:
            with open(path, 'r', encoding='utf-8') as fp:
                return parse_os_release(fp.read())
        except FileNotFoundError:
            continue
    raise FileNotFoundError('no os-release file found under {}'.format(root))
