"""Thin wrappers around the docker command line."""

import os
import logging

from container2vm.helpers import run
from container2vm.osrelease import parse_os_release
from subprocess import PIPE


__all__ = [
    'DockerImage',
    'build',
    'cmd',
    'fetch_os_release',
    'image_list',
    'pull',
    'push',
    'remove',
    ]


_logger = logging.getLogger('container2vm')


def cmd(*args, **kws):
    return run(['docker'] + list(args), **kws)


def pull(tag):
    _logger.info('Pulling image %s', tag)
    cmd('image', 'pull', tag)


def image_list(tag):
    """Return the repository:tag names of the local images matching tag."""
    proc = cmd('image', 'ls', '--format={{ .Repository }}:{{ .Tag }}', tag,
               stdout=PIPE)
    return [line for line in proc.stdout.splitlines() if line.strip()]


def build(tag, dockerfile, directory, *build_args):
    args = ['image', 'build', '-t', tag, '-f', dockerfile]
    for arg in build_args:
        args.extend(['--build-arg', arg])
    args.append(directory)
    cmd(*args)


def remove(tag):
    cmd('image', 'rm', tag)


def push(tag):
    _logger.info('Pushing image %s', tag)
    cmd('image', 'push', tag)


def fetch_os_release(tag):
    """Read /etc/os-release from inside an image."""
    proc = cmd('run', '--rm', '--entrypoint', 'cat', tag, '/etc/os-release',
               stdout=PIPE)
    return parse_os_release(proc.stdout)


class DockerImage:
    """A local image which can be flattened into a directory.

    The image's file system is exported from a throw away container into
    a tar file in `workdir` and unpacked from there.
    """

    dependencies = ('docker', 'tar')

    def __init__(self, tag, workdir):
        self.tag = tag
        self.workdir = workdir
        self.tarball = os.path.join(workdir, 'img.tar')
        os.makedirs(workdir, exist_ok=True)

    def flatten(self, out_dir):
        _logger.info('Exporting %s', self.tag)
        proc = cmd('create', self.tag, stdout=PIPE)
        container = proc.stdout.strip()
        try:
            cmd('export', '--output', self.tarball, container)
        finally:
            cmd('rm', container)
        run(['tar', '-xf', self.tarball, '-C', out_dir])

    def close(self):
        try:
            os.remove(self.tarball)
        except FileNotFoundError:
            pass
