"""ISO 9660 detection and extraction of single files from tarballs."""

from __future__ import annotations

import logging
import os
import shutil
import tarfile
from dataclasses import dataclass
from typing import IO

logger = logging.getLogger(__name__)

_DESCRIPTOR_OFFSET = 16 * 2048
_STANDARD_IDENTIFIER = b"CD001"


@dataclass
class Entry:
    """A file to place on an image: its path and a reader for its content."""

    path: str
    reader: IO


def is_iso9660(image_path: str) -> bool:
    """Report whether the file holds an ISO 9660 volume descriptor."""
    with open(image_path, "rb") as image:
        try:
            image.seek(_DESCRIPTOR_OFFSET)
            header = image.read(6)
        except OSError:
            return False
    return header[1:6] == _STANDARD_IDENTIFIER


def extract(tar_path: str, file_in_tar: str, output_path: str) -> None:
    """Write the regular file ``file_in_tar`` of a gzipped tarball to ``output_path``."""
    with tarfile.open(tar_path, mode="r:gz") as archive:
        for member in archive:
            logger.info("Header %s", member.name)
            if not (member.isreg() and member.name == file_in_tar):
                continue
            source = archive.extractfile(member)
            if source is None:
                continue
            fd = os.open(output_path, os.O_CREAT | os.O_RDWR, member.mode)
            with source, os.fdopen(fd, "wb") as target:
                shutil.copyfileobj(source, target)