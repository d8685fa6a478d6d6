"""
Invocation of the external comparison tools (GNU diff and git).
"""

from __future__ import annotations

import logging
import shlex
import subprocess
import sys
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Union

from phar_diff.exceptions import ExternalToolFailure

logger = logging.getLogger(__name__)

# Format of the exclude argument passed to GNU diff, per platform. The diff tool echoes its
# arguments in its output, so the quoting has to follow the conventions of each platform.
GNU_DIFF_EXCLUDE_FORMATS = {
    'darwin': '--exclude={pattern}',
    'win32': '"--exclude={pattern}"',
}
DEFAULT_GNU_DIFF_EXCLUDE_FORMAT = "'--exclude={pattern}'"


@dataclass(frozen=True)
class ToolResult:
    """
    Outcome of running an external tool.
    """
    exit_code: int
    stdout: str
    stderr: str


Command = Union[str, Sequence[str]]
Runner = Callable[[Command, str], ToolResult]


def gnu_diff_exclude_argument(pattern: str, platform: Optional[str] = None) -> str:
    """
    :param pattern: File name pattern to exclude.
    :param platform: Value of `sys.platform`, the current platform if omitted.
    :return: The exclude argument, quoted for the shell of the platform.
    """
    platform = sys.platform if platform is None else platform
    template = GNU_DIFF_EXCLUDE_FORMATS.get(platform, DEFAULT_GNU_DIFF_EXCLUDE_FORMAT)
    return template.format(pattern=pattern)


def gnu_diff_command(left: str, right: str, exclude: str,
                     platform: Optional[str] = None) -> str:
    """
    Builds the shell command line comparing two directories with GNU diff. The tool echoes its
    options in the header of each file it reports, so no option beyond the exclude is passed.
    """
    platform = sys.platform if platform is None else platform
    quote = (lambda value: f'"{value}"') if platform == 'win32' else shlex.quote
    return ' '.join([
        'diff',
        gnu_diff_exclude_argument(exclude, platform),
        quote(left),
        quote(right),
    ])


def git_diff_command(left: str, right: str) -> List[str]:
    """
    Builds the command comparing two directories with git, detecting renamed files. The path
    prefixes are reduced to a bare `a` and `b` so that the headers read like `asimple.phar/file`.
    """
    return ['git', 'diff', '--no-index', '--no-color', '--find-renames', '--src-prefix=a',
            '--dst-prefix=b', left, right]


def run_comparator(command: Command, cwd: str) -> ToolResult:
    """
    Runs an external comparison tool and captures its output. A string command is run through the
    shell.

    :param command: Command line or argument list.
    :param cwd: Working directory of the tool.
    :raises ExternalToolFailure: If the tool cannot be started.
    :return: Exit code and captured output of the tool.
    """
    argv = shlex.split(command) if isinstance(command, str) else list(command)
    logger.debug('Running %s in %s', command, cwd)
    try:
        process = subprocess.run(command, cwd=cwd, shell=isinstance(command, str),
                                 capture_output=True, text=True, check=False)
    except OSError as error:
        raise ExternalToolFailure(argv, None, str(error)) from error

    logger.debug('%s exited with %d', argv[0], process.returncode)
    return ToolResult(process.returncode, process.stdout, process.stderr)
