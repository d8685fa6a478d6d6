"""
Writer for archives in the native PHAR format.

Layout of a PHAR file::

    stub                 PHP code ending with __HALT_COMPILER(); ?>
    [4 B] manifest length
    manifest             entry count, API version, flags, alias, metadata, entry records
    entry contents       raw, deflate or bzip2 compressed
    [signature]          digest or OpenSSL signature, flags and the GBMB magic
"""

from __future__ import annotations

import bz2
import gzip
import hashlib
import logging
import pathlib as pl
import struct
import time
import zlib
from dataclasses import dataclass
from typing import Dict, Optional, Union

from phar_diff.archive_format_handler import PHAR_API_VERSION, PHAR_ENTRY_PERMISSION_MASK, \
    PHAR_HAS_SIGNATURE, SIGNATURE_MAGIC
from phar_diff.diff_data import CompressionAlgorithm, SignatureAlgorithm

logger = logging.getLogger(__name__)

DEFAULT_STUB = '<?php\n\n__HALT_COMPILER(); ?>\r\n'
DEFAULT_PERMISSIONS = 0o644


@dataclass
class _PendingEntry:
    contents: bytes
    compression: CompressionAlgorithm
    permissions: int


def _compress(data: bytes, compression: CompressionAlgorithm) -> bytes:
    if compression is CompressionAlgorithm.GZ:
        compressor = zlib.compressobj(9, zlib.DEFLATED, -zlib.MAX_WBITS)
        return compressor.compress(data) + compressor.flush()
    if compression is CompressionAlgorithm.BZIP2:
        return bz2.compress(data)
    return data


def _sized(data: bytes) -> bytes:
    return struct.pack('<I', len(data)) + data


class PharBuilder:
    """
    Collects files, stub, metadata and signature settings and writes them as a PHAR archive.
    """

    def __init__(self, alias: str = '', timestamp: Optional[int] = None):
        """
        :param alias: Alias of the archive.
        :param timestamp: Modification time stored for all entries, the current time if omitted.
        """
        self.alias = alias
        self.timestamp = int(time.time()) if timestamp is None else timestamp
        self.stub = DEFAULT_STUB
        self.metadata: Optional[str] = None
        self.signature = SignatureAlgorithm.SHA1
        self._private_key = None
        self._entries: Dict[str, _PendingEntry] = {}

    def set_stub(self, stub: str) -> PharBuilder:
        """
        :param stub: PHP code run when the archive is executed. Must contain `__HALT_COMPILER();`.
        """
        if '__halt_compiler();' not in stub.lower():
            raise ValueError('The stub must contain "__HALT_COMPILER();".')
        self.stub = stub
        return self

    def set_alias(self, alias: str) -> PharBuilder:
        self.alias = alias
        return self

    def set_metadata(self, metadata: Optional[str]) -> PharBuilder:
        """
        :param metadata: Serialized archive metadata, None to remove it.
        """
        self.metadata = metadata
        return self

    def add_from_string(self, path: str, contents: Union[str, bytes],
                        permissions: int = DEFAULT_PERMISSIONS) -> PharBuilder:
        """
        Adds a file to the archive. An existing file with the same path is replaced.

        :param path: Path of the file inside the archive.
        :param contents: File contents, strings are UTF-8 encoded.
        :param permissions: Unix permission bits of the file.
        """
        if isinstance(contents, str):
            contents = contents.encode('utf8')
        path = path.replace('\\', '/').lstrip('/')
        if not path:
            raise ValueError('Empty file path.')
        self._entries[path] = _PendingEntry(contents, CompressionAlgorithm.NONE,
                                            permissions & PHAR_ENTRY_PERMISSION_MASK)
        return self

    def add_file(self, path: str, local_path: Union[str, pl.Path]) -> PharBuilder:
        """
        Adds a file from the file system.

        :param path: Path of the file inside the archive.
        :param local_path: File to add.
        """
        local_path = pl.Path(local_path)
        return self.add_from_string(path, local_path.read_bytes(),
                                    local_path.stat().st_mode & PHAR_ENTRY_PERMISSION_MASK)

    def compress_files(self, compression: CompressionAlgorithm) -> PharBuilder:
        """
        Sets the compression of all files added so far.
        """
        for entry in self._entries.values():
            entry.compression = compression
        return self

    def sign(self, algorithm: SignatureAlgorithm) -> PharBuilder:
        """
        Signs the archive with a hash, or removes the signature with `SignatureAlgorithm.NONE`.
        """
        if algorithm.is_openssl:
            raise ValueError('OpenSSL signatures require a private key, use sign_with_private_key.')
        self.signature = algorithm
        self._private_key = None
        return self

    def sign_with_private_key(self, pem: bytes, passphrase: Optional[str] = None) -> PharBuilder:
        """
        Signs the archive with an RSA private key. The matching public key is written next to the
        archive as `<archive>.pubkey`, where readers expect it.

        :param pem: PEM encoded private key.
        :param passphrase: Passphrase of the key, if it is encrypted.
        """
        from cryptography.hazmat.primitives import serialization

        password = passphrase.encode('utf8') if passphrase is not None else None
        self._private_key = serialization.load_pem_private_key(pem, password=password)
        self.signature = SignatureAlgorithm.OPENSSL
        return self

    def _manifest(self) -> bytes:
        global_flags = 0
        if self.signature is not SignatureAlgorithm.NONE:
            global_flags |= PHAR_HAS_SIGNATURE

        records = []
        for path, entry in self._entries.items():
            global_flags |= entry.compression.value
            records.append(b''.join([
                _sized(path.encode('utf8')),
                struct.pack('<IIIII',
                            len(entry.contents),
                            self.timestamp,
                            len(_compress(entry.contents, entry.compression)),
                            zlib.crc32(entry.contents) & 0xFFFFFFFF,
                            entry.permissions | entry.compression.value),
                _sized(b''),
            ]))

        return b''.join([
            struct.pack('<I', len(self._entries)),
            PHAR_API_VERSION,
            struct.pack('<I', global_flags),
            _sized(self.alias.encode('utf8')),
            _sized((self.metadata or '').encode('utf8')),
        ] + records)

    def _signature_trailer(self, data: bytes) -> bytes:
        if self.signature is SignatureAlgorithm.NONE:
            return b''

        flag = struct.pack('<I', self.signature.flag)
        if self._private_key is not None:
            from cryptography.hazmat.primitives import hashes
            from cryptography.hazmat.primitives.asymmetric import padding

            signature = self._private_key.sign(data, padding.PKCS1v15(), hashes.SHA1())
            return signature + struct.pack('<I', len(signature)) + flag + SIGNATURE_MAGIC

        return hashlib.new(self.signature.hash_name, data).digest() + flag + SIGNATURE_MAGIC

    def to_bytes(self) -> bytes:
        """
        :return: The uncompressed archive.
        """
        manifest = self._manifest()
        data = b''.join(
            [self.stub.encode('utf8'), _sized(manifest)]
            + [_compress(entry.contents, entry.compression) for entry in self._entries.values()])
        return data + self._signature_trailer(data)

    def build(self, path: Union[str, pl.Path],
              compression: CompressionAlgorithm = CompressionAlgorithm.NONE) -> pl.Path:
        """
        Writes the archive.

        :param path: Output path.
        :param compression: Compression of the whole archive file.
        :return: The output path.
        """
        path = pl.Path(path)
        data = self.to_bytes()
        if compression is CompressionAlgorithm.GZ:
            data = gzip.compress(data, mtime=self.timestamp)
        elif compression is CompressionAlgorithm.BZIP2:
            data = bz2.compress(data)
        path.write_bytes(data)

        if self._private_key is not None:
            from cryptography.hazmat.primitives import serialization

            public_pem = self._private_key.public_key().public_bytes(
                serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo)
            pl.Path(str(path) + '.pubkey').write_bytes(public_pem)

        logger.info('Built %s with %d file(s)', path, len(self._entries))
        return path
