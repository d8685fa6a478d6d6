"""
Utility functions.
"""

import os
import pathlib as pl
from typing import List

_SIZE_UNITS = ('B', 'KB', 'MB', 'GB', 'TB')


def path_parts(path: str) -> List[str]:
    """
    Splits an archive path into its parts. Empty segments and '.' segments are dropped.
    :param path: Input path, using '/' or '\\' as separator.
    :return: parts of the path
    """
    return [part for part in path.replace('\\', '/').split('/') if part not in ('', '.')]


def format_size(size: int, decimals: int = 2) -> str:
    """
    Formats a byte count in a human-readable way, using a base of 1024.

    >>> format_size(29)
    '29.00B'
    >>> format_size(6799)
    '6.64KB'

    :param size: Size in bytes.
    :param decimals: Number of decimals to print.
    :return: formatted size
    """
    power = 0
    while power < len(_SIZE_UNITS) - 1 and size >= 1024 ** (power + 1):
        power += 1
    return f'{size / (1024 ** power):.{decimals}f}{_SIZE_UNITS[power]}'


def safe_join(root: pl.Path, relpath: str) -> pl.Path:
    """
    Joins an archive path onto a directory, refusing paths that would escape that directory.
    :param root: Target directory.
    :param relpath: Path of an archive entry.
    :raises ValueError: If the entry path is absolute or contains '..' segments.
    :return: The joined path.
    """
    parts = path_parts(relpath)
    if not parts or '..' in parts or os.path.isabs(relpath):
        raise ValueError(f'Refusing to extract unsafe path: {relpath}')
    return root.joinpath(*parts)
