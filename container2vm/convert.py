"""Turn a container image, or an unpacked root file system, into a disk."""

import os
import shutil
import logging

from container2vm import docker
from container2vm.builder import build
from container2vm.container_disk import make_container_disk
from container2vm.options import build_options
from container2vm.rootfs import DirectoryRootFS
from contextlib import ExitStack
from tempfile import TemporaryDirectory


__all__ = [
    'convert_directory',
    'convert_image',
    ]


_logger = logging.getLogger('container2vm')


def qualified_tag(image):
    """Add the implicit :latest tag to an image reference."""
    name, colon, tag = image.rpartition(':')
    # A colon inside the last path component separates the tag, otherwise
    # it belongs to a registry host:port.
    if colon and '/' not in tag:
        return image
    return '{}:latest'.format(image)


def ensure_image(tag, pull=False):
    """Make the image available locally.

    :return: True when the image had to be pulled.
    """
    if not pull:
        if docker.image_list(tag) == [tag]:
            _logger.info('Using local image %s', tag)
            return False
    docker.pull(tag)
    return True


def _workdir(args, resources):
    if args.workdir is not None:
        os.makedirs(args.workdir, exist_ok=True)
        return args.workdir
    return resources.enter_context(TemporaryDirectory(
        prefix='container2vm-',
        dir=os.environ.get('CONTAINER2VM_WORKDIR')))


def replace_output(disk, output):
    # The previous output is only removed once its replacement exists.
    if os.path.lexists(output):
        os.remove(output)
    shutil.move(disk, output)


def chown_to_sudo_user(path):
    uid = os.environ.get('SUDO_UID')
    if not uid:
        return
    gid = os.environ.get('SUDO_GID', uid)
    os.chown(path, int(uid), int(gid))


def _convert(source, os_release, workdir, args):
    _logger.info('Creating vm image')
    options = build_options(args, source, os_release, workdir)
    disk = build(options)
    replace_output(disk, args.output)
    chown_to_sudo_user(args.output)
    if args.tag:
        make_container_disk(args.output, args.tag, args.push)
    return args.output


def convert_image(image, args):
    """Convert a container image to a VM disk at args.output."""
    tag = qualified_tag(image)
    pulled = ensure_image(tag, args.pull)
    _logger.info('Inspecting image %s', tag)
    os_release = docker.fetch_os_release(tag)
    _logger.info('Docker image based on %s', os_release.name or os_release)
    with ExitStack() as resources:
        workdir = _workdir(args, resources)
        source = docker.DockerImage(tag, os.path.join(workdir, 'image'))
        if not args.keep_cache:
            resources.callback(source.close)
            if pulled:
                resources.callback(docker.remove, tag)
        return _convert(source, os_release, workdir, args)


def convert_directory(path, args):
    """Convert an unpacked root file system to a VM disk at args.output."""
    source = DirectoryRootFS(path)
    os_release = source.os_release()
    with ExitStack() as resources:
        workdir = _workdir(args, resources)
        resources.callback(source.close)
        return _convert(source, os_release, workdir, args)
