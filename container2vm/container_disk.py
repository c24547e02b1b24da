"""Wrap a finished disk in a minimal container image.

The layout is the one KubeVirt expects from a containerDisk: a qcow2 file
under /disk/, owned by the qemu user (uid 107).
"""

import os
import logging

from container2vm import docker, qemu_img
from tempfile import TemporaryDirectory


__all__ = [
    'make_container_disk',
    ]


_logger = logging.getLogger('container2vm')

QEMU_UID = 107
DISK_NAME = 'disk.qcow2'
DOCKERFILE = """\
FROM scratch

ADD --chown={uid}:{uid} {disk} /disk/
"""


def make_container_disk(path, tag, push=False):
    """Build the container image `tag` holding the disk at `path`.

    :param push: Also push the image to its registry.
    """
    if not os.path.exists(path):
        raise FileNotFoundError(path)
    _logger.info('Creating container disk image %s', tag)
    with TemporaryDirectory(prefix='container2vm-') as tmpdir:
        # Converting also copies the disk into the build context, even when
        # it already is a qcow2.
        qemu_img.convert('qcow2', path, os.path.join(tmpdir, DISK_NAME))
        dockerfile = os.path.join(tmpdir, 'Dockerfile')
        with open(dockerfile, 'w', encoding='utf-8') as fp:
            fp.write(DOCKERFILE.format(uid=QEMU_UID, disk=DISK_NAME))
        docker.build(tag, dockerfile, tmpdir)
    if push:
        docker.push(tag)
