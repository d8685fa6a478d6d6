"""
Data classes representing archives and archive diffs.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum, auto
from typing import Optional, Tuple


class DiffState(Enum):
    """
    Enumeration that describes possible difference states for a single file path in the archive.
    """

    EQUAL = auto()
    DIFFERENT = auto()
    ONLY_LEFT = auto()
    ONLY_RIGHT = auto()


class CompressionAlgorithm(Enum):
    """
    Compression algorithms supported by PHAR archives. The value is the PHAR entry flag.
    """

    NONE = 0x0000
    GZ = 0x1000
    BZIP2 = 0x2000

    @property
    def label(self) -> str:
        """
        :return: Short upper case name, as used in file listings.
        """
        return {
            CompressionAlgorithm.NONE: 'NONE',
            CompressionAlgorithm.GZ: 'GZ',
            CompressionAlgorithm.BZIP2: 'BZ2',
        }[self]

    @property
    def summary_label(self) -> str:
        """
        :return: Name used in archive summaries.
        """
        return 'None' if self is CompressionAlgorithm.NONE else self.label


class SignatureAlgorithm(Enum):
    """
    Signature algorithms supported by PHAR archives. The first value is the PHAR signature flag.
    """

    NONE = (0x00, 'None', None, 0)
    MD5 = (0x01, 'MD5', 'md5', 16)
    SHA1 = (0x02, 'SHA-1', 'sha1', 20)
    SHA256 = (0x03, 'SHA-256', 'sha256', 32)
    SHA512 = (0x04, 'SHA-512', 'sha512', 64)
    OPENSSL = (0x10, 'OpenSSL', 'sha1', None)
    OPENSSL_SHA256 = (0x11, 'OpenSSL SHA-256', 'sha256', None)
    OPENSSL_SHA512 = (0x12, 'OpenSSL SHA-512', 'sha512', None)

    def __init__(self, flag: int, label: str, hash_name: Optional[str], digest_size: Optional[int]):
        self.flag = flag
        self.label = label
        self.hash_name = hash_name
        self.digest_size = digest_size

    @property
    def is_openssl(self) -> bool:
        """
        :return: True for signatures created with a private key.
        """
        return self.flag >= 0x10

    @classmethod
    def from_flag(cls, flag: int) -> SignatureAlgorithm:
        """
        :param flag: PHAR signature flag
        :raises ValueError: If the flag is unknown.
        :return: Matching algorithm.
        """
        for algorithm in cls:
            if algorithm.flag == flag and algorithm is not cls.NONE:
                return algorithm
        raise ValueError(f'Unknown signature flag 0x{flag:x}.')


class DiffMode(Enum):
    """
    Strategy used to compare the contents of two archives.
    """

    FILE_NAME = 'file-name'
    GNU = 'gnu'
    GIT = 'git'


class ExitCode(IntEnum):
    """
    Process exit codes of a comparison.
    """

    SUCCESS = 0
    FAILURE = 1
    CONTENT_DIFFERENCE = 3


class ContentKind(Enum):
    """
    Outcome of a content comparison.
    """

    IDENTICAL = auto()
    NO_DIFFERENCE = auto()
    STRUCTURED = auto()
    TOOL_OUTPUT = auto()


@dataclass(frozen=True)
class ArchiveEntry:
    """
    A single file stored in an archive.
    """
    relpath: str
    size: int
    compression: CompressionAlgorithm = CompressionAlgorithm.NONE
    crc32: Optional[int] = None


@dataclass(frozen=True)
class ArchiveMetadata:
    """
    Archive level information, as shown in the archive summary.
    """
    compression: CompressionAlgorithm
    files_compression: CompressionAlgorithm
    signature: SignatureAlgorithm
    signature_hash: Optional[str]
    metadata: Optional[str]
    entry_count: int
    total_size: int
    archive_size: int

    def __post_init__(self):
        if (self.signature is SignatureAlgorithm.NONE) != (self.signature_hash is None):
            raise ValueError('A signature hash is required if and only if the archive is signed.')


@dataclass(frozen=True)
class DiffRecord:
    """
    This record represents an archive file path with the associated difference state between the two
    inputs.
    """
    relpath: str
    result: DiffState


@dataclass(frozen=True)
class ContentSection:
    """
    Result of a content comparison.
    """
    kind: ContentKind
    lines: Tuple[str, ...] = ()
    difference_count: int = 0
    exit_code: ExitCode = ExitCode.FAILURE

    @property
    def has_difference(self) -> bool:
        return self.kind in (ContentKind.STRUCTURED, ContentKind.TOOL_OUTPUT)


IDENTICAL_CONTENT = ContentSection(ContentKind.IDENTICAL, exit_code=ExitCode.SUCCESS)


@dataclass(frozen=True)
class DiffReport:
    """
    This class contains the full results of a comparison of two archives.
    """
    name_left: str
    name_right: str
    summary_left: Tuple[str, ...]
    summary_right: Tuple[str, ...]
    summary_diff: Tuple[str, ...]
    mode: DiffMode
    content: ContentSection = IDENTICAL_CONTENT

    @property
    def identical(self) -> bool:
        return self.content.kind is ContentKind.IDENTICAL

    @property
    def exit_code(self) -> ExitCode:
        """
        The archives are only considered equal if both the summaries and the contents match. A
        difference in the summaries alone is a generic failure.
        """
        if self.identical:
            return ExitCode.SUCCESS
        if self.content.has_difference:
            return self.content.exit_code
        return ExitCode.FAILURE
