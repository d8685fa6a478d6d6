"""
Rendering and diffing of archive summaries, i.e. the archive level information such as
compression and signature.
"""

from __future__ import annotations

import difflib
from typing import List, Sequence

from phar_diff.diff_data import ArchiveMetadata, SignatureAlgorithm
from phar_diff.utils import format_size

ARCHIVE_NAME_LABEL = 'Archive'


def render_summary(metadata: ArchiveMetadata, file_name: str) -> List[str]:
    """
    Renders the summary block of an archive.

    :param metadata: Archive metadata.
    :param file_name: Name under which the archive is shown.
    :return: Lines of the summary.
    """
    lines = [
        f'{ARCHIVE_NAME_LABEL}: {file_name}',
        f'Archive Compression: {metadata.compression.summary_label}',
        f'Files Compression: {metadata.files_compression.summary_label}',
        f'Signature: {metadata.signature.label}',
    ]
    if metadata.signature is not SignatureAlgorithm.NONE:
        lines.append(f'Signature Hash: {metadata.signature_hash}')
    lines.append(f'Metadata: {"None" if metadata.metadata is None else metadata.metadata}')

    plural = '' if metadata.entry_count == 1 else 's'
    lines.append(f'Contents: {metadata.entry_count} file{plural}'
                 f' ({format_size(metadata.archive_size)})')
    return lines


def _strip_name(lines: Sequence[str]) -> List[str]:
    return [line for line in lines if not line.startswith(f'{ARCHIVE_NAME_LABEL}: ')]


def summaries_equal(lines_a: Sequence[str], lines_b: Sequence[str]) -> bool:
    """
    :return: True if the summaries match, ignoring the archive names.
    """
    return _strip_name(lines_a) == _strip_name(lines_b)


def diff_summaries(lines_a: Sequence[str], lines_b: Sequence[str]) -> List[str]:
    """
    Computes a unified diff of two archive summaries with a single hunk which contains all lines.
    The archive names are not compared.

    :param lines_a: Summary of the first archive.
    :param lines_b: Summary of the second archive.
    :return: Diff lines, empty if the summaries are equal.
    """
    left = _strip_name(lines_a)
    right = _strip_name(lines_b)
    if left == right:
        return []

    diff = difflib.unified_diff(left, right, fromfile='PHAR A', tofile='PHAR B', lineterm='',
                                n=max(len(left), len(right)))
    return ['@@ @@' if line.startswith('@@') else line for line in diff]
