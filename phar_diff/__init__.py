"""
PHAR archive diff tool
"""

from .__version__ import (
    __author__,
    __author_email__,
    __copyright__,
    __description__,
    __license__,
    __title__,
    __url__,
    __version__,
)

from .exceptions import (
    PharDiffError,
    ArchiveNotFound,
    InvalidArchive,
    ExternalToolFailure,
    UnsupportedOptionCombination,
)

from .diff_data import (
    ArchiveEntry,
    ArchiveMetadata,
    CompressionAlgorithm,
    ContentKind,
    ContentSection,
    DiffMode,
    DiffRecord,
    DiffReport,
    DiffState,
    ExitCode,
    SignatureAlgorithm,
)

from .archive_format_handler import (
    ArchiveHandle,
    DispatchingArchiveHandler,
    PharArchive,
    ZipPharArchive,
    TarPharArchive,
)

from .file_comparison import FileHasher

from .summary import (
    render_summary,
    diff_summaries,
)

from .content_diff import (
    compare_contents,
    compute_listing_diff,
)

from .cli_output import (
    ConsoleIO,
    render_report,
)

from .phar_diff import (
    PharDiffer,
    diff_archives,
)

from .builder import PharBuilder
