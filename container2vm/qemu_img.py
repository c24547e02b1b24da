"""Disk format conversion and inspection through qemu-img."""

import json
import attr
import logging

from container2vm.helpers import run
from subprocess import PIPE


__all__ = [
    'ImgInfo',
    'convert',
    'info',
    ]


_logger = logging.getLogger('container2vm')


@attr.s(frozen=True)
class ImgInfo:
    virtual_size = attr.ib()
    filename = attr.ib()
    format = attr.ib()
    actual_size = attr.ib(default=0)
    dirty_flag = attr.ib(default=False)

    @classmethod
    def from_json(cls, text):
        data = json.loads(text)
        return cls(
            virtual_size=data['virtual-size'],
            filename=data['filename'],
            format=data['format'],
            actual_size=data.get('actual-size', 0),
            dirty_flag=data.get('dirty-flag', False),
            )


def convert(format, src, dst):
    """Convert the disk image at `src` into `dst`, in the given format."""
    _logger.info('Converting to %s', format)
    run(['qemu-img', 'convert', '-O', format, src, dst])


def info(path):
    """Return the ImgInfo qemu-img reports for a disk image."""
    proc = run(['qemu-img', 'info', path, '--output', 'json'], stdout=PIPE)
    return ImgInfo.from_json(proc.stdout)
