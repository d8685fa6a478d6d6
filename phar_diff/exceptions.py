"""
Errors raised while comparing archives.
"""
from typing import Optional, Sequence


class PharDiffError(Exception):
    """
    Base class of all errors raised by phar-diff.
    """


class ArchiveNotFound(PharDiffError, FileNotFoundError):
    """
    Raised if an input path does not resolve to an existing file.
    """

    def __init__(self, path: str):
        super().__init__(f'The file "{path}" does not exist.')
        self.filename = path

    def __str__(self):
        return self.args[0]


class InvalidArchive(PharDiffError):
    """
    Raised if a file exists but cannot be read as a PHAR or PharData archive.
    """

    def __init__(self, path, reason: Optional[str] = None):
        message = f'Could not create a Phar or PharData instance for the file "{path}".'
        if reason:
            message += f' {reason}'
        super().__init__(message)
        self.path = path
        self.reason = reason


class ExternalToolFailure(PharDiffError):
    """
    Raised if the external comparison tool could not be run or exited with an unexpected status.
    """

    def __init__(self, command: Sequence[str], exit_code: Optional[int], stderr: str = ''):
        tool = command[0] if command else '<unknown>'
        if exit_code is None:
            message = f'Could not run "{tool}".'
        else:
            message = f'"{tool}" failed with exit code {exit_code}.'
        if stderr.strip():
            message += '\n' + stderr.strip()
        super().__init__(message)
        self.command = list(command)
        self.exit_code = exit_code
        self.stderr = stderr


class UnsupportedOptionCombination(PharDiffError):
    """
    Raised if the given command line options contradict each other.
    """
