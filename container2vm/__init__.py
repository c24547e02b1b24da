import os


# The version number can be overridden from the environment, which is handy
# when running from a container image build.  Otherwise it comes from the
# version.txt file shipped alongside the package.
__version__ = os.environ.get('CONTAINER2VM_VERSION')
if __version__ is None:                                      # pragma: nocover
    try:
        with open(os.path.join(os.path.dirname(__file__), 'version.txt'),
                  encoding='utf-8') as fp:
            __version__ = fp.read().strip()
    except FileNotFoundError:
        __version__ = 'dev'
