"""Boot and root file system kinds."""

from enum import Enum
from container2vm.helpers import ConfigurationError


class BootFS(Enum):
    ext4 = 'ext4'
    fat32 = 'fat32'

    @property
    def is_ext(self):
        return self is BootFS.ext4

    @property
    def is_fat(self):
        return self is BootFS.fat32

    @property
    def linux(self):
        # The type name mount(8) and fstab(5) know this file system by.
        return 'vfat' if self.is_fat else 'ext4'

    @classmethod
    def validate(cls, value):
        """Return the BootFS member for `value`, or raise."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ConfigurationError(
                'invalid boot filesystem: {} valid filesystems are: {}'.format(
                    value, ', '.join(member.value for member in cls))
                ) from None


class RootFS(Enum):
    ext4 = 'ext4'
    btrfs = 'btrfs'
