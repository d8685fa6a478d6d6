"""
Command-line interface to the phar-diff module.
"""

import argparse
import logging
import sys
from typing import List, Optional, Sequence, Tuple

from phar_diff.__version__ import __version__
from phar_diff.archive_format_handler import DispatchingArchiveHandler
from phar_diff.cli_output import ConsoleIO, render_report
from phar_diff.diff_data import DiffMode, ExitCode
from phar_diff.exceptions import PharDiffError, UnsupportedOptionCombination
from phar_diff.file_comparison import SUPPORTED_HASH_ALGORITHMS
from phar_diff.phar_diff import PharDiffer, resolve_archive_path
from phar_diff.summary import render_summary
from phar_diff.utils import format_size

logger = logging.getLogger('phar_diff')

# Deprecated flags of the diff command and the diff mode each of them stands for.
DEPRECATED_DIFF_OPTIONS = {
    'list_diff': ('list-diff', DiffMode.FILE_NAME),
    'gnu_diff': ('gnu-diff', DiffMode.GNU),
    'git_diff': ('git-diff', DiffMode.GIT),
}

CHECK_SUCCESS_MESSAGE = 'No differences encountered.'
CHECK_FAILURE_MESSAGE = 'Differences encountered.'


def resolve_diff_mode(args: argparse.Namespace) -> Tuple[DiffMode, List[str]]:
    """
    Maps the diff options, including the deprecated ones, to a single diff mode.

    :param args: Parsed arguments of the diff command.
    :raises UnsupportedOptionCombination: If the options select different modes.
    :return: The diff mode and the deprecation warnings to show.
    """
    explicit = DiffMode(args.diff) if args.diff is not None else None
    legacy = [(flag, mode) for dest, (flag, mode) in DEPRECATED_DIFF_OPTIONS.items()
              if getattr(args, dest, False)]

    modes = {mode for _, mode in legacy}
    if explicit is not None:
        modes.add(explicit)
    if len(modes) > 1:
        options = [f'--{flag}' for flag, _ in legacy]
        if explicit is not None:
            options.append(f'--diff={explicit.value}')
        raise UnsupportedOptionCombination(
            f'The options {", ".join(options)} select different diff modes.')

    warnings = [f'Using the option "{flag}" is deprecated. Use "--diff={mode.value}" instead.'
                for flag, mode in legacy]
    mode = modes.pop() if modes else DiffMode.FILE_NAME
    return mode, warnings


def diff_command(args: argparse.Namespace, io: ConsoleIO) -> ExitCode:
    """
    Compares two archives.
    """
    mode, warnings = resolve_diff_mode(args)
    for warning in warnings:
        io.warning(warning)

    differ = PharDiffer(mode, hash_algorithm=args.hash_algorithm)
    if args.check:
        if differ.check(args.pharA, args.pharB):
            io.writeln(CHECK_SUCCESS_MESSAGE)
            return ExitCode.SUCCESS
        io.writeln(CHECK_FAILURE_MESSAGE)
        return ExitCode.FAILURE

    report = differ.compare(args.pharA, args.pharB)
    render_report(report, io)
    return report.exit_code


def info_command(args: argparse.Namespace, io: ConsoleIO) -> ExitCode:
    """
    Shows the summary of a single archive.
    """
    path = resolve_archive_path(args.phar)
    with DispatchingArchiveHandler().open(path) as handle:
        io.writeln(*render_summary(handle.metadata(), handle.name))
        if args.list:
            io.newline()
            for entry in handle.entries():
                io.writeln(f'{entry.relpath} [{entry.compression.label}] - {format_size(entry.size)}')
    return ExitCode.SUCCESS


def build_parser() -> argparse.ArgumentParser:
    """
    Construct the CLI argument parser.
    """
    shared = argparse.ArgumentParser(add_help=False)
    shared.add_argument('-v', '--verbose',
                        action='store_true',
                        help='Log progress information.')
    shared.add_argument('--debug',
                        action='store_true',
                        help='Log debug information, including the traceback of errors.')

    parser = argparse.ArgumentParser('phar-diff', description='''Diff tool for PHAR archives.''')
    parser.add_argument('-V', '--version',
                        action='version',
                        version=f'%(prog)s {__version__}')
    sub = parser.add_subparsers(dest='command', required=True)

    diff = sub.add_parser('diff',
                          parents=[shared],
                          help='Display the differences between two archives.')
    diff.add_argument('pharA',
                      metavar='PHAR_A',
                      help='First archive file.')
    diff.add_argument('pharB',
                      metavar='PHAR_B',
                      help='Second archive file.')
    diff.add_argument('--diff',
                      choices=[mode.value for mode in DiffMode],
                      default=None,
                      help='Strategy used to compare the archive contents (default: file-name).')
    diff.add_argument('--list-diff',
                      action='store_true',
                      help='Deprecated, use --diff=file-name.')
    diff.add_argument('--gnu-diff',
                      action='store_true',
                      help='Deprecated, use --diff=gnu.')
    diff.add_argument('--git-diff',
                      action='store_true',
                      help='Deprecated, use --diff=git.')
    diff.add_argument('-c', '--check',
                      action='store_true',
                      help='Only check whether the archives contain the same files (provisional).')
    diff.add_argument('--hash-algorithm',
                      required=False,
                      choices=SUPPORTED_HASH_ALGORITHMS,
                      default='md5',
                      help='Hash algorithm used for file equality comparison.')
    diff.set_defaults(handler=diff_command)

    info = sub.add_parser('info',
                          parents=[shared],
                          help='Display the summary of an archive.')
    info.add_argument('phar',
                      metavar='PHAR',
                      help='Archive file.')
    info.add_argument('--list', '-l',
                      action='store_true',
                      help='Also list the files of the archive.')
    info.set_defaults(handler=info_command)

    return parser


def configure_logging(verbose: bool, debug: bool) -> None:
    """
    Sends log records to the standard error stream, at a level chosen by the verbosity flags.
    """
    level = logging.DEBUG if debug else logging.INFO if verbose else logging.WARNING
    logging.basicConfig(level=level, format='%(levelname)s: %(message)s', stream=sys.stderr)


def execute(argv: Optional[Sequence[str]], io: ConsoleIO) -> ExitCode:
    """
    Runs a command. Errors are not handled here.

    :param argv: Command line arguments, without the program name.
    :param io: Output sink of the command.
    :return: Exit code of the command.
    """
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, args.debug)
    return args.handler(args, io)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    Main method that handles the command line interface of phar-diff
    """
    try:
        return int(execute(argv, ConsoleIO(sys.stdout)))
    except PharDiffError as error:
        logger.debug('The command failed.', exc_info=True)
        ConsoleIO(sys.stderr).error(str(error))
        return int(ExitCode.FAILURE)


if __name__ == '__main__':
    sys.exit(main())
