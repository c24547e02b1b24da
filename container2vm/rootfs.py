"""Root file systems that already exist as a directory tree."""

import os
import logging

from container2vm.helpers import run
from container2vm.osrelease import read_os_release


_logger = logging.getLogger('container2vm')


class DirectoryRootFS:
    """An unpacked root file system, copied with its ownership and modes."""

    dependencies = ('cp',)

    def __init__(self, path):
        if not os.path.isdir(path):
            raise FileNotFoundError(path)
        self.path = path

    def os_release(self):
        return read_os_release(self.path)

    def flatten(self, out_dir):
        _logger.info('Copying %s', self.path)
        # The trailing /. copies the contents rather than the directory.
        run(['cp', '-a', os.path.join(self.path, '.'), out_dir])

    def close(self):
        pass
