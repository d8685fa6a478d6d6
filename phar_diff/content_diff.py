"""
Comparison of archive contents. Three strategies are available, selected by `DiffMode`:

* file-name: compares the sets of file paths, the file contents are not looked at.
* gnu: extracts both archives and compares the directories with GNU diff.
* git: extracts both archives and compares the directories with git, detecting renamed files.
"""

from __future__ import annotations

import contextlib
import logging
import pathlib as pl
import shlex
import shutil
import tempfile
from typing import Callable, Iterator, List, Optional, Tuple

from phar_diff.archive_format_handler import META_SIDECAR_NAME, ArchiveHandle
from phar_diff.diff_data import ArchiveEntry, ContentKind, ContentSection, DiffMode, DiffRecord, \
    DiffState, ExitCode
from phar_diff.exceptions import ExternalToolFailure
from phar_diff.external_tools import Runner, git_diff_command, gnu_diff_command, run_comparator
from phar_diff.utils import format_size, path_parts

logger = logging.getLogger(__name__)

NO_DIFFERENCE = ContentSection(ContentKind.NO_DIFFERENCE, exit_code=ExitCode.SUCCESS)

# Lines of the git output which indicate that files were added, removed or renamed.
_GIT_STRUCTURAL_PREFIXES = ('rename from ', 'new file mode ', 'deleted file mode ')


def compute_listing_diff(
        listing1: List[ArchiveEntry], listing2: List[ArchiveEntry],
        same_content: Optional[Callable[[ArchiveEntry, ArchiveEntry], bool]] = None
) -> List[DiffRecord]:
    """
    Computes a simple diff between the two listings. The diff only compares files with the same
    path.

    :param listing1: First archive listing
    :param listing2: Second archive listing
    :param same_content: Optional predicate deciding whether two entries with the same path have the
                         same content. Without it, entries with the same path are equal.
    :return: List of diff records, one for each path present in at least one of the two listings.
    """
    listing1 = sorted(listing1, key=lambda x: path_parts(x.relpath))
    listing2 = sorted(listing2, key=lambda x: path_parts(x.relpath))

    # Since the listings are sorted by their path we can simply traverse the listings in parallel,
    # always proceeding with the listing where the next record has the lexicographically smaller
    # path. Where we proceed determines the diff output for the given record.
    records = []
    i, j = 0, 0
    while i < len(listing1) and j < len(listing2):
        left = listing1[i]
        right = listing2[j]
        left_key = path_parts(left.relpath)
        right_key = path_parts(right.relpath)
        if left_key == right_key:
            equal = same_content is None or same_content(left, right)
            records.append(DiffRecord(
                left.relpath, DiffState.EQUAL if equal else DiffState.DIFFERENT))
            i += 1
            j += 1
        elif left_key < right_key:
            records.append(DiffRecord(left.relpath, DiffState.ONLY_LEFT))
            i += 1
        else:
            records.append(DiffRecord(right.relpath, DiffState.ONLY_RIGHT))
            j += 1
    # When the first pass is completed, one of the lists might not have been traversed fully. These
    # loops deal with the remaining items.
    while i < len(listing1):
        records.append(DiffRecord(listing1[i].relpath, DiffState.ONLY_LEFT))
        i += 1
    while j < len(listing2):
        records.append(DiffRecord(listing2[j].relpath, DiffState.ONLY_RIGHT))
        j += 1

    return records


def _describe_entry(entry: ArchiveEntry) -> str:
    return f'{entry.relpath} [{entry.compression.label}] - {format_size(entry.size)}'


def file_name_diff(handle_a: ArchiveHandle, handle_b: ArchiveHandle, **_) -> ContentSection:
    """
    Compares the file paths of two archives. Files present in both archives are considered equal,
    whatever their contents.
    """
    entries_a = {entry.relpath: entry for entry in handle_a.entries()}
    entries_b = {entry.relpath: entry for entry in handle_b.entries()}
    records = compute_listing_diff(list(entries_a.values()), list(entries_b.values()))

    only_left = [f'- {_describe_entry(entries_a[r.relpath])}'
                 for r in records if r.result == DiffState.ONLY_LEFT]
    only_right = [f'+ {_describe_entry(entries_b[r.relpath])}'
                  for r in records if r.result == DiffState.ONLY_RIGHT]
    if not only_left and not only_right:
        return NO_DIFFERENCE

    lines = [
        f'--- Files present in "{handle_a.name}" but not in "{handle_b.name}"',
        f'+++ Files present in "{handle_b.name}" but not in "{handle_a.name}"',
        '',
    ]
    lines += only_left
    if only_left and only_right:
        lines.append('')
    lines += only_right

    return ContentSection(ContentKind.STRUCTURED, tuple(lines),
                          difference_count=len(only_left) + len(only_right),
                          exit_code=ExitCode.FAILURE)


@contextlib.contextmanager
def extracted_archives(handle_a: ArchiveHandle, handle_b: ArchiveHandle, sidecar: bool,
                       temp_root: Optional[pl.Path] = None) -> Iterator[Tuple[pl.Path, str, str]]:
    """
    Extracts both archives into a new temporary directory which is removed again on exit, whether
    or not an error occurred. The archives are extracted to directories named after the archive
    files so that tool outputs show the archive names.

    :param handle_a: First archive.
    :param handle_b: Second archive.
    :param sidecar: True to write the metadata sidecar file next to the contents.
    :param temp_root: Directory in which the temporary directory is created.
    :return: Temporary directory and the paths of both extracted archives relative to it.
    """
    root = pl.Path(tempfile.mkdtemp(prefix='phar-diff-', dir=temp_root))
    try:
        if handle_a.name != handle_b.name:
            left, right = pl.PurePosixPath(handle_a.name), pl.PurePosixPath(handle_b.name)
        else:
            left, right = pl.PurePosixPath('a', handle_a.name), pl.PurePosixPath('b', handle_b.name)

        handle_a.extract_to(root / left, sidecar=sidecar)
        handle_b.extract_to(root / right, sidecar=sidecar)
        yield root, str(left), str(right)
    finally:
        shutil.rmtree(root, ignore_errors=True)
        logger.debug('Removed %s', root)


def _tool_output_lines(stdout: str) -> Tuple[str, ...]:
    return tuple(line.rstrip() for line in stdout.rstrip().splitlines())


def gnu_diff(handle_a: ArchiveHandle, handle_b: ArchiveHandle, runner: Runner = run_comparator,
             temp_root: Optional[pl.Path] = None) -> ContentSection:
    """
    Compares the extracted archives with GNU diff. The tool output is passed through.

    :raises ExternalToolFailure: If diff cannot be run or reports an error.
    """
    with extracted_archives(handle_a, handle_b, sidecar=True, temp_root=temp_root) as \
            (root, left, right):
        command = gnu_diff_command(left, right, META_SIDECAR_NAME)
        result = runner(command, str(root))

    if result.exit_code == 0:
        return NO_DIFFERENCE
    if result.exit_code != 1:
        raise ExternalToolFailure(shlex.split(command), result.exit_code, result.stderr)

    lines = _tool_output_lines(result.stdout)
    count = sum(1 for line in lines if line.startswith(('Only in ', 'diff ')))
    return ContentSection(ContentKind.TOOL_OUTPUT, lines, difference_count=count,
                          exit_code=ExitCode.FAILURE)


def git_diff(handle_a: ArchiveHandle, handle_b: ArchiveHandle, runner: Runner = run_comparator,
             temp_root: Optional[pl.Path] = None) -> ContentSection:
    """
    Compares the extracted archives with git. The tool output is passed through. Added, removed or
    renamed files are reported with `ExitCode.CONTENT_DIFFERENCE`, changes limited to file contents
    with `ExitCode.FAILURE`.

    :raises ExternalToolFailure: If git cannot be run or reports an error.
    """
    with extracted_archives(handle_a, handle_b, sidecar=False, temp_root=temp_root) as \
            (root, left, right):
        command = git_diff_command(left, right)
        result = runner(command, str(root))

    if result.exit_code == 0:
        return NO_DIFFERENCE
    if result.exit_code != 1:
        raise ExternalToolFailure(command, result.exit_code, result.stderr)

    lines = _tool_output_lines(result.stdout)
    structural = any(line.startswith(_GIT_STRUCTURAL_PREFIXES) for line in lines)
    count = sum(1 for line in lines if line.startswith('diff --git '))
    return ContentSection(ContentKind.TOOL_OUTPUT, lines, difference_count=count,
                          exit_code=ExitCode.CONTENT_DIFFERENCE if structural else ExitCode.FAILURE)


_STRATEGIES = {
    DiffMode.FILE_NAME: file_name_diff,
    DiffMode.GNU: gnu_diff,
    DiffMode.GIT: git_diff,
}


def compare_contents(mode: DiffMode, handle_a: ArchiveHandle, handle_b: ArchiveHandle,
                     runner: Runner = run_comparator,
                     temp_root: Optional[pl.Path] = None) -> ContentSection:
    """
    Compares the contents of two archives with the strategy selected by the mode.

    :param mode: Diff strategy.
    :param handle_a: First archive.
    :param handle_b: Second archive.
    :param runner: Function running the external tools of the gnu and git strategies.
    :param temp_root: Directory in which temporary extraction directories are created.
    :return: Result of the comparison.
    """
    logger.info('Comparing the contents of %s and %s (%s diff)', handle_a.path, handle_b.path,
                mode.value)
    return _STRATEGIES[mode](handle_a, handle_b, runner=runner, temp_root=temp_root)
