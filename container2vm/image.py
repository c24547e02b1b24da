"""The raw disk image file and its partition table."""

import os
import parted

from math import ceil
from container2vm.helpers import MiB


__all__ = [
    'Image',
    'PARTITION_ALIGNMENT',
    ]


# The first partition starts at 1MiB, leaving room for the boot code and
# for bootloaders which embed themselves after the MBR.
PARTITION_ALIGNMENT = MiB(1)


class Image:
    def __init__(self, path, size):
        """Initialize a sparse image file to a given size in bytes.

        :param path: Path to image file on the file system.
        :type path: str
        :param size: Size in bytes to set the image file to.
        :type size: int

        Public attributes:

        * path - Path to the image file.
        * size - Its logical size in bytes.
        """
        self.path = path
        self.size = size
        # Create an empty image file of a fixed size.  Unlike
        # truncate(1) --size 0, os.truncate(path, 0) doesn't touch the
        # file; i.e. it must already exist.
        with open(path, 'wb'):
            pass
        # Truncate to zero, so that extending the size in the next call
        # will cause all the bytes to read as zero.  Stevens $4.13
        os.truncate(path, 0)
        os.truncate(path, size)
        self.device = None
        self.disk = None
        self.sector_size = 512

    def create_table(self):
        """Prepare an empty msdos partition table on the image.

        Nothing is written until the first call to partition().
        """
        self.device = parted.Device(self.path)
        self.disk = parted.freshDisk(self.device, 'msdos')
        self.sector_size = self.device.sectorSize

    def partition(self, offset, size, is_bootable=False):
        """Add a new primary partition in the image file.

        :param offset: Offset (start position) of the partition in bytes.
        :type offset: int
        :param size: Size of partition in bytes.
        :type size: int
        :param is_bootable: Toggle if the bootable flag should be set.
        :type is_bootable: bool
        """
        if self.disk is None:
            self.create_table()
        # parted.sizeToSectors() rounds down, which could leave the
        # partition a sector short, so round the geometry up ourselves but
        # never past the end of the device.
        start = ceil(offset / self.sector_size)
        length = min(ceil(size / self.sector_size),
                     self.device.length - start)
        geometry = parted.Geometry(
            device=self.device,
            start=start,
            length=length)
        partition = parted.Partition(
            disk=self.disk,
            type=parted.PARTITION_NORMAL,
            geometry=geometry)
        # Force an exact geometry constraint as otherwise libparted tries to be
        # too smart and changes our geometry itself.
        constraint = parted.Constraint(exactGeom=geometry)
        self.disk.addPartition(partition, constraint)
        if is_bootable:
            partition.setFlag(parted.PARTITION_BOOT)
        # Save all the partition changes so far to disk.
        self.disk.commit()
        return partition

    def layout(self, split_boot, boot_size=None):
        """Lay out the partitions of a VM disk.

        Without split_boot a single bootable partition spans the disk from
        the alignment offset to the end.  With it, a bootable /boot partition
        ends at boot_size bytes and the root partition takes the rest.

        :return: The number of partitions created.
        """
        if not split_boot:
            self.partition(
                PARTITION_ALIGNMENT, self.size - PARTITION_ALIGNMENT,
                is_bootable=True)
            return 1
        self.partition(
            PARTITION_ALIGNMENT, boot_size - PARTITION_ALIGNMENT,
            is_bootable=True)
        self.partition(boot_size, self.size - boot_size)
        return 2
