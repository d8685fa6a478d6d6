"""
Diffing implementation.
"""

from __future__ import annotations

import contextlib
import io
import logging
import pathlib as pl
from typing import Optional, Tuple, Union

from phar_diff.archive_format_handler import ArchiveHandle, DispatchingArchiveHandler
from phar_diff.cli_output import ConsoleIO, render_report
from phar_diff.content_diff import compare_contents, compute_listing_diff
from phar_diff.diff_data import DiffMode, DiffReport, DiffState, ExitCode
from phar_diff.exceptions import ArchiveNotFound
from phar_diff.external_tools import Runner, run_comparator
from phar_diff.file_comparison import FileHasher
from phar_diff.summary import diff_summaries, render_summary, summaries_equal

logger = logging.getLogger(__name__)

PathLike = Union[str, pl.Path]


def resolve_archive_path(path: PathLike) -> pl.Path:
    """
    :param path: Path as given by the user.
    :raises ArchiveNotFound: If the path does not point to an existing file.
    :return: Canonical path with all links and relative parts resolved.
    """
    if not pl.Path(path).is_file():
        raise ArchiveNotFound(str(path))
    return pl.Path(path).absolute().resolve(strict=True)


class PharDiffer:
    """
    Compares two archives: first their summaries, then their contents with the configured diff
    strategy.
    """

    def __init__(self, mode: DiffMode = DiffMode.FILE_NAME, hash_algorithm: str = 'md5',
                 runner: Runner = run_comparator, temp_root: Optional[pl.Path] = None):
        """
        :param mode: Strategy used to compare the archive contents.
        :param hash_algorithm: String describing a hash algorithm supported by `hashlib`, used to
                               decide whether the contents of two archives are identical.
        :param runner: Function running the external diff tools.
        :param temp_root: Directory in which temporary extraction directories are created.
        """
        self.mode = mode
        self._hasher = FileHasher(hash_algorithm)
        self._format_handler = DispatchingArchiveHandler()
        self._runner = runner
        self._temp_root = temp_root

    def _open_both(self, stack: contextlib.ExitStack, path_a: PathLike,
                   path_b: PathLike) -> Tuple[ArchiveHandle, ArchiveHandle]:
        # Both paths are checked before any archive is opened.
        resolved_a = resolve_archive_path(path_a)
        resolved_b = resolve_archive_path(path_b)
        handle_a = stack.enter_context(self._format_handler.open(resolved_a))
        handle_b = stack.enter_context(self._format_handler.open(resolved_b))
        return handle_a, handle_b

    def compare(self, path_a: PathLike, path_b: PathLike) -> DiffReport:
        """
        Computes a full diff between the archives located at the given paths.

        :param path_a: Path to the first archive.
        :param path_b: Path to the second archive.
        :raises ArchiveNotFound: If one of the paths does not exist.
        :raises InvalidArchive: If one of the files is not a readable archive.
        :raises ExternalToolFailure: If the external tool of the gnu or git mode fails.
        :return: Diff between the archives.
        """
        with contextlib.ExitStack() as stack:
            handle_a, handle_b = self._open_both(stack, path_a, path_b)

            summary_a = render_summary(handle_a.metadata(), handle_a.name)
            summary_b = render_summary(handle_b.metadata(), handle_b.name)

            report = DiffReport(
                name_left=handle_a.name,
                name_right=handle_b.name,
                summary_left=tuple(summary_a),
                summary_right=tuple(summary_b),
                summary_diff=tuple(diff_summaries(summary_a, summary_b)),
                mode=self.mode,
            )

            if summaries_equal(summary_a, summary_b) and \
                    handle_a.fingerprint(self._hasher) == handle_b.fingerprint(self._hasher):
                logger.info('%s and %s are identical', handle_a.path, handle_b.path)
                return report

            content = compare_contents(self.mode, handle_a, handle_b, runner=self._runner,
                                       temp_root=self._temp_root)
            return DiffReport(
                name_left=report.name_left,
                name_right=report.name_right,
                summary_left=report.summary_left,
                summary_right=report.summary_right,
                summary_diff=report.summary_diff,
                mode=self.mode,
                content=content,
            )

    def check(self, path_a: PathLike, path_b: PathLike) -> bool:
        """
        Compares the contents of two archives by their file paths and content hashes only.

        :param path_a: Path to the first archive.
        :param path_b: Path to the second archive.
        :return: True if both archives contain the same files with the same contents.
        """
        with contextlib.ExitStack() as stack:
            handle_a, handle_b = self._open_both(stack, path_a, path_b)

            def same_content(left, right) -> bool:
                return self._hasher.compute_hash(handle_a.read(left)) == \
                    self._hasher.compute_hash(handle_b.read(right))

            records = compute_listing_diff(handle_a.entries(), handle_b.entries(), same_content)
            return all(record.result == DiffState.EQUAL for record in records)


def diff_archives(path_a: PathLike, path_b: PathLike,
                  mode: DiffMode = DiffMode.FILE_NAME, **kwargs) -> Tuple[str, ExitCode]:
    """
    Compares two archives and renders the result.

    :param path_a: Path to the first archive.
    :param path_b: Path to the second archive.
    :param mode: Strategy used to compare the archive contents.
    :param kwargs: Further arguments of `PharDiffer`.
    :return: The rendered report and the exit code of the comparison.
    """
    report = PharDiffer(mode, **kwargs).compare(path_a, path_b)
    output = io.StringIO()
    render_report(report, ConsoleIO(output))
    return output.getvalue(), report.exit_code
