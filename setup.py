#!/usr/bin/env python3

import sys

from setuptools import find_packages, setup


def require_python(minimum):
    """Require at least a minimum Python version.

    The version number is expressed in terms of `sys.hexversion`.  E.g. to
    require a minimum of Python 3.6, use::

    >>> require_python(0x30600f0)

    :param minimum: Minimum Python version supported.
    :type minimum: integer
    """
    if sys.hexversion < minimum:
        hversion = hex(minimum)[2:]
        if len(hversion) % 2 != 0:
            hversion = '0' + hversion
        split = list(hversion)
        parts = []
        while split:
            parts.append(int(''.join((split.pop(0), split.pop(0))), 16))
        major, minor, micro, release = parts
        if release == 0xf0:
            print('Python {}.{}.{} or better is required'.format(
                major, minor, micro))
        else:
            print('Python {}.{}.{} ({}) or better is required'.format(
                major, minor, micro, hex(release)[2:]))
        sys.exit(1)

require_python(0x30600f0)


# `container2vm --version` reads the same file at run time.
with open('container2vm/version.txt', encoding='utf-8') as infp:
    __version__ = infp.read().strip()


setup(
    name='container2vm',
    version=__version__,
    description='Build bootable virtual machine disk images from containers',
    packages=find_packages(),
    package_data={'container2vm': ['version.txt']},
    include_package_data=True,
    install_requires=[
        'attrs',
        'pyparted',
        'PyYAML',
        'voluptuous<0.13',
        ],
    extras_require={
        'test': ['nose2', 'pytest'],
        },
    entry_points={
        'console_scripts': ['container2vm = container2vm.__main__:main'],
        },
    license='GPLv3',
    classifiers=(
        'Development Status :: 3 - Alpha',
        'Environment :: Console',
        'Intended Audience :: Developers',
        'Intended Audience :: System Administrators',
        'License :: OSI Approved :: GNU General Public License v3 (GPLv3)',
        'Natural Language :: English',
        'Programming Language :: Python',
        'Programming Language :: Python :: 3',
        'Topic :: Software Development :: Build Tools',
        'Topic :: System :: Systems Administration',
        ),
    )
