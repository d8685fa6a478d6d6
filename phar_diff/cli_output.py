"""
Helper to display archive diffs on the command line.
"""

import sys
from typing import Optional, TextIO

from phar_diff.diff_data import ContentKind, DiffReport

NO_DIFFERENCE_MESSAGE = 'No difference could be observed with this mode.'


class ConsoleIO:
    """
    Line based output sink. Blocks (comments, success and error messages) are separated from the
    surrounding output by exactly one blank line.
    """

    def __init__(self, output: Optional[TextIO] = None):
        """
        :param output: Output stream to write to, the standard output if omitted.
        """
        self.output = sys.stdout if output is None else output
        self._tail = ''
        self._written = False

    def _write(self, text: str):
        if not text:
            return
        self.output.write(text)
        self._tail = (self._tail + text)[-2:]
        self._written = True

    def writeln(self, *lines: str):
        """
        Writes each argument as a line.
        """
        for line in lines:
            self._write(line + '\n')

    def newline(self, count: int = 1):
        self._write('\n' * count)

    def _auto_prepend_block(self):
        if not self._written:
            self.newline()
            return
        self.newline(2 - self._tail.count('\n'))

    def block(self, prefix: str, message: str):
        """
        Writes a message as a block, preceded and followed by a blank line.
        :param prefix: Prefix of each line of the message.
        :param message: Message, may span several lines.
        """
        self._auto_prepend_block()
        self.writeln(*(prefix + line for line in message.splitlines()))
        self.newline()

    def comment(self, message: str):
        self.block(' // ', message)

    def success(self, message: str):
        self.block(' [OK] ', message)

    def error(self, message: str):
        self.block(' [ERROR] ', message)

    def warning(self, message: str):
        """
        Writes a warning line. Warnings are not blocks, they are written in place.
        """
        self.writeln(f'⚠️  {message}')


def render_report(report: DiffReport, io: ConsoleIO) -> None:
    """
    Writes a diff report in its human-readable form.

    :param report: Report of a comparison.
    :param io: Output sink.
    """
    io.comment('Comparing the two archives...')
    if report.identical:
        io.success('The two archives are identical.')
        return

    io.writeln(*report.summary_left)
    io.newline()
    io.writeln(*report.summary_right)
    io.newline()
    if report.summary_diff:
        io.writeln(*report.summary_diff)

    io.comment(f'Comparing the two archives contents ({report.mode.value} diff)...')

    content = report.content
    if content.kind is ContentKind.NO_DIFFERENCE:
        io.writeln(NO_DIFFERENCE_MESSAGE)
    elif content.kind is ContentKind.STRUCTURED:
        io.writeln(*content.lines)
        io.error(f'{content.difference_count} file(s) difference')
    else:
        io.writeln(*content.lines)
