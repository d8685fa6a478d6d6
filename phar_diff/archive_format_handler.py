"""
Implementations of handlers (metadata, listing and reading of contents) for the archive formats a
PHAR can be stored in: the native PHAR format and the zip and tar based PharData formats.
"""
from __future__ import annotations

import bz2
import gzip
import hashlib
import io
import json
import logging
import os
import pathlib as pl
import struct
import tarfile
import zipfile
import zlib
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass
from typing import BinaryIO, Dict, Iterable, List, Optional, Tuple

from phar_diff.diff_data import ArchiveEntry, ArchiveMetadata, CompressionAlgorithm, \
    SignatureAlgorithm
from phar_diff.exceptions import ArchiveNotFound, InvalidArchive
from phar_diff.file_comparison import FileHasher
from phar_diff.utils import path_parts, safe_join

logger = logging.getLogger(__name__)

HALT_COMPILER_TOKEN = b'__halt_compiler();'
SIGNATURE_MAGIC = b'GBMB'
META_SIDECAR_NAME = '.phar_meta.json'

PHAR_API_VERSION = b'\x11\x10'
PHAR_ENTRY_COMPRESSION_MASK = 0xF000
PHAR_ENTRY_PERMISSION_MASK = 0x01FF
PHAR_HAS_SIGNATURE = 0x10000

# Directory inside zip and tar based archives which holds the PHAR bookkeeping files.
PHAR_INTERNAL_DIR = '.phar/'
PHAR_METADATA_FILE = '.phar/.metadata.bin'
PHAR_SIGNATURE_FILE = '.phar/signature.bin'

_GZIP_MAGIC = b'\x1f\x8b'
_BZIP2_MAGIC = b'BZh'
# Local file header and, for archives without entries, end of central directory record.
_ZIP_MAGICS = (b'PK\x03\x04', b'PK\x05\x06')
_READ_CHUNK_SIZE = 128 * 1024


def detect_compression(head: bytes) -> CompressionAlgorithm:
    """
    Detects whether a file is wrapped in a gzip or bzip2 stream from its first bytes.
    :param head: First bytes of the file.
    :return: The wrapping compression, `CompressionAlgorithm.NONE` for plain files.
    """
    if head.startswith(_GZIP_MAGIC):
        return CompressionAlgorithm.GZ
    if head.startswith(_BZIP2_MAGIC):
        return CompressionAlgorithm.BZIP2
    return CompressionAlgorithm.NONE


def dominant_compression(entries: Iterable[ArchiveEntry]) -> CompressionAlgorithm:
    """
    :param entries: Archive entries
    :return: The compression used by most of the entries, `NONE` for empty archives.
    """
    counts = Counter(entry.compression for entry in entries)
    if not counts:
        return CompressionAlgorithm.NONE
    order = list(CompressionAlgorithm)
    return max(counts, key=lambda algorithm: (counts[algorithm], -order.index(algorithm)))


def decompress_entry(data: bytes, compression: CompressionAlgorithm) -> bytes:
    """
    Decompresses the stored data of a PHAR entry. Gzip compressed entries hold a raw deflate
    stream without gzip header.
    """
    if compression is CompressionAlgorithm.GZ:
        return zlib.decompress(data, -zlib.MAX_WBITS)
    if compression is CompressionAlgorithm.BZIP2:
        return bz2.decompress(data)
    return data


def _decode_text(raw: bytes) -> Optional[str]:
    if not raw:
        return None
    return raw.decode('utf-8', errors='replace')


class ArchiveHandle(ABC):
    """
    An opened archive. The handle owns the underlying file until it is closed and is meant to be
    used as a context manager.
    """

    def __init__(self, path: pl.Path):
        self.path = path
        self._entries: Optional[List[ArchiveEntry]] = None

    @property
    def name(self) -> str:
        """
        :return: File name of the archive, without directories.
        """
        return self.path.name

    def __enter__(self) -> ArchiveHandle:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __repr__(self):
        return f'{type(self).__name__}({str(self.path)!r})'

    @abstractmethod
    def close(self) -> None:
        """
        Releases the underlying file.
        """
        raise NotImplementedError()

    @abstractmethod
    def _list_entries(self) -> List[ArchiveEntry]:
        raise NotImplementedError()

    @abstractmethod
    def metadata(self) -> ArchiveMetadata:
        """
        :return: Archive level information.
        """
        raise NotImplementedError()

    @abstractmethod
    def read(self, entry: ArchiveEntry) -> bytes:
        """
        Reads the uncompressed contents of an entry.

        :param entry: Entry of this archive.
        :raises InvalidArchive: If the stored data is corrupt.
        :return: Entry contents.
        """
        raise NotImplementedError()

    def entries(self) -> List[ArchiveEntry]:
        """
        :return: Entries of the archive ordered by their relative path.
        """
        if self._entries is None:
            self._entries = sorted(self._list_entries(), key=lambda entry: path_parts(entry.relpath))
        return list(self._entries)

    def fingerprint(self, hasher: FileHasher) -> List[Tuple[str, str]]:
        """
        :param hasher: Hasher used for the entry contents.
        :return: (path, content hash) pairs of all entries, ordered by path.
        """
        return [(entry.relpath, hasher.compute_hash(self.read(entry))) for entry in self.entries()]

    def extract_to(self, directory: pl.Path, sidecar: bool = True) -> pl.Path:
        """
        Writes all entries of the archive to the given directory.

        :param directory: Target directory, created if missing.
        :param sidecar: True to also write the archive metadata to `META_SIDECAR_NAME`.
        :return: The target directory.
        """
        directory.mkdir(parents=True, exist_ok=True)
        for entry in self.entries():
            try:
                target = safe_join(directory, entry.relpath)
            except ValueError as error:
                raise InvalidArchive(self.path, str(error)) from error
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(self.read(entry))

        if sidecar:
            metadata = self.metadata()
            meta = {
                'compression': metadata.compression.summary_label,
                'files_compression': metadata.files_compression.summary_label,
                'signature': metadata.signature.label,
                'signature_hash': metadata.signature_hash,
                'metadata': metadata.metadata,
                'entry_count': metadata.entry_count,
            }
            (directory / META_SIDECAR_NAME).write_text(json.dumps(meta, indent=4), encoding='utf8')

        logger.debug('Extracted %s to %s', self.path, directory)
        return directory


@dataclass(frozen=True)
class _PharEntryLocation:
    offset: int
    stored_size: int


class _ManifestCursor:
    """
    Sequential reader for the little-endian fields of a PHAR manifest.
    """

    def __init__(self, data: bytes):
        self._data = data
        self._pos = 0

    def take(self, count: int) -> bytes:
        if self._pos + count > len(self._data):
            raise ValueError('Truncated manifest.')
        chunk = self._data[self._pos:self._pos + count]
        self._pos += count
        return chunk

    def uint32(self) -> int:
        return struct.unpack('<I', self.take(4))[0]

    def sized(self) -> bytes:
        return self.take(self.uint32())


class PharArchive(ArchiveHandle):
    """
    Archive stored in the native PHAR format, optionally wrapped in a gzip or bzip2 stream.
    """

    def __init__(self, path: pl.Path):
        super().__init__(path)
        self._file: Optional[BinaryIO] = open(path, 'rb')
        try:
            self._stream, self._compression = self._open_stream(self._file)
            self._parse()
        except (ValueError, OSError, EOFError, zlib.error) as error:
            self.close()
            raise InvalidArchive(path, str(error)) from error
        except InvalidArchive:
            self.close()
            raise

    @staticmethod
    def _open_stream(file: BinaryIO) -> Tuple[BinaryIO, CompressionAlgorithm]:
        compression = detect_compression(file.read(3))
        file.seek(0)
        if compression is CompressionAlgorithm.GZ:
            with gzip.GzipFile(fileobj=file, mode='rb') as reader:
                return io.BytesIO(reader.read()), compression
        if compression is CompressionAlgorithm.BZIP2:
            with bz2.BZ2File(file, mode='rb') as reader:
                return io.BytesIO(reader.read()), compression
        return file, compression

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    def _stream_size(self) -> int:
        self._stream.seek(0, io.SEEK_END)
        return self._stream.tell()

    def _read_at(self, offset: int, count: int) -> bytes:
        self._stream.seek(offset)
        data = self._stream.read(count)
        if len(data) != count:
            raise ValueError('Unexpected end of file.')
        return data

    def _parse(self) -> None:
        size = self._stream_size()
        offset = find_manifest_offset(self._stream)
        if offset is None:
            raise ValueError('No __HALT_COMPILER(); token found.')

        manifest_length = struct.unpack('<I', self._read_at(offset, 4))[0]
        if manifest_length < 14 or offset + 4 + manifest_length > size:
            raise ValueError('Invalid manifest length.')
        cursor = _ManifestCursor(self._read_at(offset + 4, manifest_length))

        entry_count = cursor.uint32()
        cursor.take(2)  # API version
        global_flags = cursor.uint32()
        self.alias = cursor.sized().decode('utf-8', errors='replace')
        self._metadata_raw = cursor.sized()

        data_offset = offset + 4 + manifest_length
        self._locations: Dict[str, _PharEntryLocation] = {}
        self._listing: List[ArchiveEntry] = []
        for _ in range(entry_count):
            name = cursor.sized().decode('utf-8', errors='replace')
            uncompressed_size = cursor.uint32()
            cursor.uint32()  # timestamp
            stored_size = cursor.uint32()
            crc32 = cursor.uint32()
            flags = cursor.uint32()
            cursor.sized()  # entry metadata

            compression_flag = flags & PHAR_ENTRY_COMPRESSION_MASK
            try:
                compression = CompressionAlgorithm(compression_flag)
            except ValueError as error:
                raise ValueError(f'Unknown compression flag for "{name}".') from error

            location = _PharEntryLocation(data_offset, stored_size)
            data_offset += stored_size
            if name.endswith('/'):
                # Empty directories are stored as entries without contents.
                continue
            self._locations[name] = location
            self._listing.append(ArchiveEntry(name, uncompressed_size, compression, crc32))

        content_end = size
        self._signature = SignatureAlgorithm.NONE
        self._signature_hash: Optional[str] = None
        if global_flags & PHAR_HAS_SIGNATURE:
            content_end = self._read_signature(size)
        if data_offset > content_end:
            raise ValueError('Truncated entry data.')

        logger.debug('Parsed PHAR %s: %d entries, signature %s', self.path, len(self._listing),
                     self._signature.label)

    def _read_signature(self, size: int) -> int:
        """
        Reads and verifies the signature trailer.
        :return: Offset at which the signed content ends.
        """
        if size < 8 or self._read_at(size - 4, 4) != SIGNATURE_MAGIC:
            raise ValueError('Missing signature.')
        flag = struct.unpack('<I', self._read_at(size - 8, 4))[0]
        algorithm = SignatureAlgorithm.from_flag(flag)

        if algorithm.is_openssl:
            signature_length = struct.unpack('<I', self._read_at(size - 12, 4))[0]
            content_end = size - 12 - signature_length
            if content_end < 0:
                raise ValueError('Invalid signature length.')
            signature = self._read_at(content_end, signature_length)
            self._verify_openssl(algorithm, signature, content_end)
        else:
            content_end = size - 8 - algorithm.digest_size
            if content_end < 0:
                raise ValueError('Invalid signature length.')
            signature = self._read_at(content_end, algorithm.digest_size)
            digest = hashlib.new(algorithm.hash_name)
            self._stream.seek(0)
            remaining = content_end
            while remaining > 0:
                chunk = self._stream.read(min(_READ_CHUNK_SIZE, remaining))
                if not chunk:
                    break
                digest.update(chunk)
                remaining -= len(chunk)
            if digest.digest() != signature:
                raise InvalidArchive(self.path, 'The signature does not match the contents.')

        self._signature = algorithm
        self._signature_hash = signature.hex().upper()
        return content_end

    def _verify_openssl(self, algorithm: SignatureAlgorithm, signature: bytes,
                        content_end: int) -> None:
        """
        Verifies an OpenSSL signature against the public key stored next to the archive, if there
        is one.
        """
        key_path = pl.Path(str(self.path) + '.pubkey')
        if not key_path.is_file():
            logger.info('No public key found for %s, skipping signature verification', self.path)
            return

        from cryptography.exceptions import InvalidSignature
        from cryptography.hazmat.primitives import hashes, serialization
        from cryptography.hazmat.primitives.asymmetric import padding

        hash_types = {'sha1': hashes.SHA1, 'sha256': hashes.SHA256, 'sha512': hashes.SHA512}
        public_key = serialization.load_pem_public_key(key_path.read_bytes())
        try:
            public_key.verify(signature, self._read_at(0, content_end), padding.PKCS1v15(),
                              hash_types[algorithm.hash_name]())
        except InvalidSignature as error:
            raise InvalidArchive(self.path, 'The OpenSSL signature is invalid.') from error

    def _list_entries(self) -> List[ArchiveEntry]:
        return list(self._listing)

    def metadata(self) -> ArchiveMetadata:
        entries = self.entries()
        return ArchiveMetadata(
            compression=self._compression,
            files_compression=dominant_compression(entries),
            signature=self._signature,
            signature_hash=self._signature_hash,
            metadata=_decode_text(self._metadata_raw),
            entry_count=len(entries),
            total_size=sum(entry.size for entry in entries),
            archive_size=os.path.getsize(self.path),
        )

    def read(self, entry: ArchiveEntry) -> bytes:
        location = self._locations[entry.relpath]
        try:
            data = decompress_entry(self._read_at(location.offset, location.stored_size),
                                    entry.compression)
        except (ValueError, OSError, EOFError, zlib.error) as error:
            raise InvalidArchive(self.path, f'Could not read "{entry.relpath}": {error}') from error

        if len(data) != entry.size or (zlib.crc32(data) & 0xFFFFFFFF) != entry.crc32:
            raise InvalidArchive(self.path, f'The CRC32 check of "{entry.relpath}" failed.')
        return data


def find_manifest_offset(stream: BinaryIO) -> Optional[int]:
    """
    Finds the start of the manifest, which follows the `__HALT_COMPILER();` token of the stub. The
    token may be followed by ' ?>' and a line break.

    :param stream: Seekable archive stream.
    :return: Offset of the manifest length field, None if the stub has no halt token.
    """
    stream.seek(0)
    overlap = len(HALT_COMPILER_TOKEN) - 1
    consumed = 0
    tail = b''
    while True:
        chunk = stream.read(_READ_CHUNK_SIZE)
        if not chunk:
            return None
        window = tail + chunk
        index = window.lower().find(HALT_COMPILER_TOKEN)
        if index >= 0:
            offset = consumed - len(tail) + index + len(HALT_COMPILER_TOKEN)
            break
        tail = window[-overlap:]
        consumed += len(chunk)

    stream.seek(offset)
    after = stream.read(3)
    if len(after) == 3 and after[0:1] in (b' ', b'\n') and after[1:3] == b'?>':
        offset += 3
        line_break = stream.read(2)
        if line_break.startswith(b'\r\n'):
            offset += 2
        elif line_break.startswith(b'\n'):
            offset += 1
    return offset


def _read_signature_file(data: bytes) -> Tuple[SignatureAlgorithm, Optional[str]]:
    """
    Parses the `.phar/signature.bin` file of zip and tar based archives.
    """
    if len(data) < 8:
        raise ValueError('Invalid signature file.')
    flag, length = struct.unpack('<II', data[:8])
    signature = data[8:8 + length]
    return SignatureAlgorithm.from_flag(flag), signature.hex().upper()


class PharDataArchive(ArchiveHandle, ABC):
    """
    Shared behavior of the zip and tar based formats: PHAR bookkeeping files live in `.phar/` and
    are not part of the contents.
    """

    def __init__(self, path: pl.Path, compression: CompressionAlgorithm):
        super().__init__(path)
        self._compression = compression

    @abstractmethod
    def _read_member(self, name: str) -> Optional[bytes]:
        raise NotImplementedError()

    def metadata(self) -> ArchiveMetadata:
        entries = self.entries()
        signature, signature_hash = SignatureAlgorithm.NONE, None
        signature_data = self._read_member(PHAR_SIGNATURE_FILE)
        if signature_data is not None:
            try:
                signature, signature_hash = _read_signature_file(signature_data)
            except ValueError as error:
                raise InvalidArchive(self.path, str(error)) from error
        return ArchiveMetadata(
            compression=self._compression,
            files_compression=dominant_compression(entries),
            signature=signature,
            signature_hash=signature_hash,
            metadata=_decode_text(self._read_member(PHAR_METADATA_FILE) or b''),
            entry_count=len(entries),
            total_size=sum(entry.size for entry in entries),
            archive_size=os.path.getsize(self.path),
        )


class ZipPharArchive(PharDataArchive):
    """
    Archive stored in the zip based PharData format.
    """

    _COMPRESSION = {
        zipfile.ZIP_STORED: CompressionAlgorithm.NONE,
        zipfile.ZIP_DEFLATED: CompressionAlgorithm.GZ,
        zipfile.ZIP_BZIP2: CompressionAlgorithm.BZIP2,
    }

    def __init__(self, path: pl.Path):
        super().__init__(path, CompressionAlgorithm.NONE)
        try:
            self._archive = zipfile.ZipFile(path, 'r')
        except (zipfile.BadZipFile, OSError) as error:
            raise InvalidArchive(path, str(error)) from error

    def close(self) -> None:
        self._archive.close()

    def _list_entries(self) -> List[ArchiveEntry]:
        entries = []
        for info in self._archive.infolist():
            if info.is_dir() or info.filename.startswith(PHAR_INTERNAL_DIR):
                continue
            compression = self._COMPRESSION.get(info.compress_type)
            if compression is None:
                raise InvalidArchive(self.path, f'Unsupported compression for "{info.filename}".')
            entries.append(ArchiveEntry(info.filename, info.file_size, compression, info.CRC))
        return entries

    def _read_member(self, name: str) -> Optional[bytes]:
        try:
            return self._archive.read(name)
        except KeyError:
            return None

    def read(self, entry: ArchiveEntry) -> bytes:
        try:
            return self._archive.read(entry.relpath)
        except (zipfile.BadZipFile, zlib.error, OSError) as error:
            raise InvalidArchive(self.path, f'Could not read "{entry.relpath}": {error}') from error


class TarPharArchive(PharDataArchive):
    """
    Archive stored in the tar based PharData format, including its gzip and bzip2 compressed
    variants.
    """

    def __init__(self, path: pl.Path):
        with open(path, 'rb') as reader:
            compression = detect_compression(reader.read(3))
        super().__init__(path, compression)
        try:
            self._archive = tarfile.open(path, mode='r')
        except (tarfile.TarError, OSError) as error:
            raise InvalidArchive(path, str(error)) from error
        self._members = {
            member.name: member for member in self._archive.getmembers() if member.isfile()
        }

    def close(self) -> None:
        self._archive.close()

    def _list_entries(self) -> List[ArchiveEntry]:
        return [
            ArchiveEntry(name, member.size)
            for name, member in self._members.items()
            if not name.startswith(PHAR_INTERNAL_DIR)
        ]

    def _read_member(self, name: str) -> Optional[bytes]:
        member = self._members.get(name)
        if member is None:
            return None
        with self._archive.extractfile(member) as file:
            return file.read()

    def read(self, entry: ArchiveEntry) -> bytes:
        try:
            return self._read_member(entry.relpath)
        except (tarfile.TarError, OSError, EOFError) as error:
            raise InvalidArchive(self.path, f'Could not read "{entry.relpath}": {error}') from error


class ArchiveFormatHandler(ABC):
    """
    Base class for all archive handlers.
    """

    @abstractmethod
    def check_file(self, path: pl.Path) -> bool:
        """
        Checks if the given path can be processed by this handler.

        :param path: Input path
        :return: True, if the path is a valid archive for this handler.
        """
        raise NotImplementedError()

    @abstractmethod
    def open(self, path: pl.Path) -> ArchiveHandle:
        """
        Opens the archive at the given path.

        :param path: Input path
        :raises InvalidArchive: If the input is not supported by this handler.
        :return: Handle of the opened archive.
        """
        raise NotImplementedError()


class PharArchiveHandler(ArchiveFormatHandler):
    """
    Handler for archives in the native PHAR format.
    """

    def check_file(self, path: pl.Path) -> bool:
        if not path.is_file():
            return False
        with open(path, 'rb') as file:
            try:
                stream, _ = PharArchive._open_stream(file)
                return find_manifest_offset(stream) is not None
            except (OSError, EOFError, zlib.error):
                return False

    def open(self, path: pl.Path) -> ArchiveHandle:
        if not self.check_file(path):
            raise InvalidArchive(path, 'Not a PHAR file.')
        return PharArchive(path)


class ZipArchiveHandler(ArchiveFormatHandler):
    """
    Handler for zip-based archives.
    """

    def check_file(self, path: pl.Path) -> bool:
        """
        Only files starting with a zip record are accepted. `zipfile.is_zipfile` alone also accepts
        native archives whose last entry is a stored zip file.
        """
        if not path.is_file():
            return False
        with open(path, 'rb') as file:
            if not file.read(4).startswith(_ZIP_MAGICS):
                return False
        return zipfile.is_zipfile(path)

    def open(self, path: pl.Path) -> ArchiveHandle:
        if not self.check_file(path):
            raise InvalidArchive(path, 'Not a zip file.')
        return ZipPharArchive(path)


class TarArchiveHandler(ArchiveFormatHandler):
    """
    Handler for tar-based archives, including various compressed variants thereof.
    """

    def check_file(self, path: pl.Path) -> bool:
        return path.is_file() and tarfile.is_tarfile(path)

    def open(self, path: pl.Path) -> ArchiveHandle:
        if not self.check_file(path):
            raise InvalidArchive(path, 'Not a tar file.')
        return TarPharArchive(path)


class DispatchingArchiveHandler(ArchiveFormatHandler):
    """
    Handler that dispatches to the first supported handler in a collection of other handlers.
    """

    def __init__(self):
        self._format_handlers = [
            ZipArchiveHandler(),
            TarArchiveHandler(),
            PharArchiveHandler(),
        ]

    def _get_handler_for_file(self, path: pl.Path) -> ArchiveFormatHandler:
        """
        Checks the added handlers one-by-one in order for compatibility with the given archive. The
        first matching handler is returned. The native format is checked last because zip and tar
        based archives usually carry a stub with a halt token as well.

        :param path: Input archive path.
        :return: First matching handler.
        :throws InvalidArchive: If no suitable handler is found.
        """
        for handler in self._format_handlers:
            if handler.check_file(path):
                return handler

        raise InvalidArchive(path)

    def check_file(self, path: pl.Path) -> bool:
        try:
            handler = self._get_handler_for_file(path)
            return handler is not None
        except InvalidArchive:
            return False

    def open(self, path: pl.Path) -> ArchiveHandle:
        """
        Opens the archive with the first handler that supports it. The file extension is not
        taken into account.

        :param path: Input archive path.
        :raises ArchiveNotFound: If the path does not point to an existing file.
        :raises InvalidArchive: If the file is not a supported archive.
        :return: Handle of the opened archive.
        """
        if not path.is_file():
            raise ArchiveNotFound(str(path))
        handler = self._get_handler_for_file(path)
        logger.debug('Opening %s with %s', path, type(handler).__name__)
        return handler.open(path)
