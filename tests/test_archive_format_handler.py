import hashlib
import io
import json
import pathlib as pl
import struct
import tarfile
import tempfile
import unittest
import zipfile
from unittest import TestCase

from phar_diff.archive_format_handler import DispatchingArchiveHandler, PharArchive, \
    PharArchiveHandler, TarArchiveHandler, ZipArchiveHandler, find_manifest_offset, \
    META_SIDECAR_NAME
from phar_diff.builder import PharBuilder
from phar_diff.diff_data import ArchiveEntry, CompressionAlgorithm, SignatureAlgorithm
from phar_diff.exceptions import ArchiveNotFound, InvalidArchive
from phar_diff.file_comparison import FileHasher

from phar_fixtures import HELLO_DOUBLE_QUOTES, TIMESTAMP, build_phar


class TestPharArchiveHandler(TestCase):
    """
    Tests reading of archives in the native PHAR format.
    """

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = pl.Path(self._tmp.name)
        self.handler = DispatchingArchiveHandler()

    def tearDown(self):
        self._tmp.cleanup()

    def test_metadata(self):
        """
        Metadata of a signed, uncompressed archive.
        """
        path = build_phar(self.root / 'simple.phar', {'foo.php': HELLO_DOUBLE_QUOTES})
        data = path.read_bytes()
        expected_hash = hashlib.sha1(data[:-28]).hexdigest().upper()

        with self.handler.open(path) as handle:
            self.assertIsInstance(handle, PharArchive)
            metadata = handle.metadata()

        self.assertEqual(CompressionAlgorithm.NONE, metadata.compression)
        self.assertEqual(CompressionAlgorithm.NONE, metadata.files_compression)
        self.assertEqual(SignatureAlgorithm.SHA1, metadata.signature)
        self.assertEqual(expected_hash, metadata.signature_hash)
        self.assertIsNone(metadata.metadata)
        self.assertEqual(1, metadata.entry_count)
        self.assertEqual(29, metadata.total_size)
        self.assertEqual(len(data), metadata.archive_size)

    def test_entries_are_sorted(self):
        """
        Entries are listed by path, not in the order they were added.
        """
        path = build_phar(self.root / 'sorted.phar', {
            'src/b.php': 'b',
            'a.php': 'a',
            'src/a.php': 'aa',
        })
        with self.handler.open(path) as handle:
            entries = handle.entries()

        self.assertEqual(['a.php', 'src/a.php', 'src/b.php'], [e.relpath for e in entries])
        self.assertEqual([1, 2, 1], [e.size for e in entries])

    def test_compressed_entries(self):
        """
        Gzip and bzip2 compressed entries are decompressed on read.
        """
        for compression in (CompressionAlgorithm.GZ, CompressionAlgorithm.BZIP2):
            with self.subTest(compression=compression):
                path = build_phar(self.root / f'{compression.label}.phar',
                                  {'foo.php': HELLO_DOUBLE_QUOTES * 10},
                                  file_compression=compression)
                with self.handler.open(path) as handle:
                    entry, = handle.entries()
                    self.assertEqual(compression, entry.compression)
                    self.assertEqual(compression, handle.metadata().files_compression)
                    self.assertEqual((HELLO_DOUBLE_QUOTES * 10).encode(), handle.read(entry))

    def test_compressed_archive(self):
        """
        Archives wrapped in a gzip or bzip2 stream are detected without looking at the extension.
        """
        for compression in (CompressionAlgorithm.GZ, CompressionAlgorithm.BZIP2):
            with self.subTest(compression=compression):
                path = build_phar(self.root / f'archive-{compression.label}',
                                  {'foo.php': HELLO_DOUBLE_QUOTES},
                                  archive_compression=compression)
                with self.handler.open(path) as handle:
                    self.assertEqual(compression, handle.metadata().compression)
                    entry, = handle.entries()
                    self.assertEqual(HELLO_DOUBLE_QUOTES.encode(), handle.read(entry))

    def test_signature_algorithms(self):
        """
        All hash based signatures are read and verified.
        """
        for algorithm in (SignatureAlgorithm.MD5, SignatureAlgorithm.SHA1,
                          SignatureAlgorithm.SHA256, SignatureAlgorithm.SHA512):
            with self.subTest(algorithm=algorithm):
                path = build_phar(self.root / f'{algorithm.name}.phar', {'a.php': 'a'},
                                  signature=algorithm)
                data = path.read_bytes()
                signed = data[:-(8 + algorithm.digest_size)]
                with self.handler.open(path) as handle:
                    metadata = handle.metadata()
                self.assertEqual(algorithm, metadata.signature)
                self.assertEqual(hashlib.new(algorithm.hash_name, signed).hexdigest().upper(),
                                 metadata.signature_hash)

    def test_unsigned_archive(self):
        path = build_phar(self.root / 'unsigned.phar', {'a.php': 'a'},
                          signature=SignatureAlgorithm.NONE)
        with self.handler.open(path) as handle:
            metadata = handle.metadata()
        self.assertEqual(SignatureAlgorithm.NONE, metadata.signature)
        self.assertIsNone(metadata.signature_hash)

    def test_tampered_signature(self):
        """
        A modified archive does not match its signature anymore.
        """
        path = build_phar(self.root / 'tampered.phar', {'a.php': 'original'})
        data = path.read_bytes().replace(b'original', b'modified')
        path.write_bytes(data)

        with self.assertRaisesRegex(InvalidArchive, 'signature does not match'):
            self.handler.open(path)

    def test_corrupt_entry(self):
        """
        Entry data that does not match the CRC32 is rejected when it is read.
        """
        path = build_phar(self.root / 'corrupt.phar', {'a.php': 'original'},
                          signature=SignatureAlgorithm.NONE)
        path.write_bytes(path.read_bytes().replace(b'original', b'modified'))

        with self.handler.open(path) as handle:
            entry, = handle.entries()
            with self.assertRaisesRegex(InvalidArchive, 'CRC32'):
                handle.read(entry)

    def test_metadata_is_shown(self):
        path = build_phar(self.root / 'meta.phar', {'a.php': 'a'},
                          metadata='a:1:{s:3:"foo";s:3:"bar";}')
        with self.handler.open(path) as handle:
            self.assertEqual('a:1:{s:3:"foo";s:3:"bar";}', handle.metadata().metadata)

    def test_empty_archive(self):
        path = build_phar(self.root / 'empty.phar', {})
        with self.handler.open(path) as handle:
            self.assertEqual([], handle.entries())
            self.assertEqual(0, handle.metadata().entry_count)
            self.assertEqual(CompressionAlgorithm.NONE, handle.metadata().files_compression)

    def test_not_a_phar(self):
        """
        Files which are not archives are rejected with a message naming the file.
        """
        path = self.root / 'not-a-phar.phar'
        path.write_text('<?php echo "Not a PHAR";\n')

        with self.assertRaisesRegex(
                InvalidArchive,
                r'^Could not create a Phar or PharData instance for the file.+not-a-phar\.phar.+$'):
            self.handler.open(path)

    def test_missing_file(self):
        with self.assertRaises(ArchiveNotFound):
            self.handler.open(self.root / 'missing.phar')

    def test_truncated_manifest(self):
        path = self.root / 'truncated.phar'
        path.write_bytes(b'<?php __HALT_COMPILER(); ?>\n' + struct.pack('<I', 1000) + b'\x00' * 20)

        with self.assertRaises(InvalidArchive):
            self.handler.open(path)


class TestFindManifestOffset(TestCase):
    """
    Tests the detection of the end of the stub.
    """

    def test_close_tag_and_crlf(self):
        stub = b'<?php\n__HALT_COMPILER(); ?>\r\n'
        self.assertEqual(len(stub), find_manifest_offset(io.BytesIO(stub + b'MANIFEST')))

    def test_close_tag_and_lf(self):
        stub = b'<?php\n__HALT_COMPILER(); ?>\n'
        self.assertEqual(len(stub), find_manifest_offset(io.BytesIO(stub + b'MANIFEST')))

    def test_without_close_tag(self):
        stub = b'<?php\n__halt_compiler();'
        self.assertEqual(len(stub), find_manifest_offset(io.BytesIO(stub + b'MANIFEST')))

    def test_no_token(self):
        self.assertIsNone(find_manifest_offset(io.BytesIO(b'<?php echo 1;')))

    def test_custom_stub(self):
        """
        Builder and reader agree on custom stubs.
        """
        with tempfile.TemporaryDirectory() as tmp:
            builder = PharBuilder(timestamp=TIMESTAMP)
            builder.set_stub('#!/usr/bin/env php\n<?php\nPhar::mapPhar();\n__HALT_COMPILER();')
            builder.add_from_string('index.php', '<?php echo 1;')
            path = builder.build(pl.Path(tmp) / 'custom')

            self.assertTrue(PharArchiveHandler().check_file(path))
            with PharArchiveHandler().open(path) as handle:
                entry, = handle.entries()
                self.assertEqual(b'<?php echo 1;', handle.read(entry))


class TestPharDataHandlers(TestCase):
    """
    Tests the zip and tar based archive formats.
    """

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = pl.Path(self._tmp.name)

    def tearDown(self):
        self._tmp.cleanup()

    def test_zip_archive(self):
        path = self.root / 'archive.zip'
        with zipfile.ZipFile(path, 'w') as archive:
            archive.writestr('src/plain.php', 'plain', compress_type=zipfile.ZIP_STORED)
            archive.writestr('deflated.php', 'deflated', compress_type=zipfile.ZIP_DEFLATED)
            archive.writestr('.phar/stub.php', '<?php __HALT_COMPILER(); ?>')
            archive.writestr('.phar/.metadata.bin', 's:3:"foo";')

        self.assertTrue(ZipArchiveHandler().check_file(path))
        with DispatchingArchiveHandler().open(path) as handle:
            entries = handle.entries()
            metadata = handle.metadata()
            contents = [handle.read(entry) for entry in entries]

        self.assertEqual([
            ArchiveEntry('deflated.php', 8, CompressionAlgorithm.GZ, entries[0].crc32),
            ArchiveEntry('src/plain.php', 5, CompressionAlgorithm.NONE, entries[1].crc32),
        ], entries)
        self.assertEqual([b'deflated', b'plain'], contents)
        self.assertEqual('s:3:"foo";', metadata.metadata)
        self.assertEqual(SignatureAlgorithm.NONE, metadata.signature)

    def test_zip_signature_file(self):
        path = self.root / 'signed.zip'
        digest = hashlib.sha256(b'contents').digest()
        with zipfile.ZipFile(path, 'w') as archive:
            archive.writestr('a.php', 'a')
            archive.writestr('.phar/signature.bin',
                             struct.pack('<II', SignatureAlgorithm.SHA256.flag, len(digest)) + digest)

        with DispatchingArchiveHandler().open(path) as handle:
            metadata = handle.metadata()
        self.assertEqual(SignatureAlgorithm.SHA256, metadata.signature)
        self.assertEqual(digest.hex().upper(), metadata.signature_hash)

    def test_phar_ending_with_a_zip_file(self):
        """
        A native archive whose last entry is a stored zip file is not a zip based archive.
        """
        bundled = io.BytesIO()
        with zipfile.ZipFile(bundled, 'w') as archive:
            archive.writestr('inner.txt', 'inner', compress_type=zipfile.ZIP_STORED)
        for signature in (SignatureAlgorithm.NONE, SignatureAlgorithm.SHA1):
            with self.subTest(signature=signature):
                path = build_phar(self.root / f'app-{signature.label}.phar',
                                  {'a.php': HELLO_DOUBLE_QUOTES,
                                   'z/fixture.zip': bundled.getvalue()},
                                  signature=signature)

                self.assertFalse(ZipArchiveHandler().check_file(path))
                with DispatchingArchiveHandler().open(path) as handle:
                    self.assertIsInstance(handle, PharArchive)
                    self.assertEqual(['a.php', 'z/fixture.zip'],
                                     [entry.relpath for entry in handle.entries()])
                    self.assertEqual(bundled.getvalue(), handle.read(handle.entries()[1]))

    def test_empty_zip_archive(self):
        path = self.root / 'empty.zip'
        zipfile.ZipFile(path, 'w').close()

        self.assertTrue(ZipArchiveHandler().check_file(path))
        with DispatchingArchiveHandler().open(path) as handle:
            self.assertEqual([], handle.entries())

    def test_tar_archive(self):
        for mode, compression in (('w', CompressionAlgorithm.NONE),
                                  ('w:gz', CompressionAlgorithm.GZ),
                                  ('w:bz2', CompressionAlgorithm.BZIP2)):
            with self.subTest(mode=mode):
                path = self.root / f'archive-{compression.label}.tar'
                with tarfile.open(path, mode) as archive:
                    for name, data in (('b.php', b'bb'), ('a.php', b'a'),
                                       ('.phar/stub.php', b'<?php __HALT_COMPILER();')):
                        info = tarfile.TarInfo(name)
                        info.size = len(data)
                        archive.addfile(info, io.BytesIO(data))

                self.assertTrue(TarArchiveHandler().check_file(path))
                with DispatchingArchiveHandler().open(path) as handle:
                    self.assertEqual(['a.php', 'b.php'], [e.relpath for e in handle.entries()])
                    self.assertEqual(compression, handle.metadata().compression)
                    self.assertEqual(b'bb', handle.read(handle.entries()[1]))


class TestArchiveHandle(TestCase):
    """
    Tests the format independent operations of archive handles.
    """

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = pl.Path(self._tmp.name)

    def tearDown(self):
        self._tmp.cleanup()

    def test_extract_to(self):
        path = build_phar(self.root / 'extract.phar', {'a.php': 'a', 'src/b.php': 'b'})
        target = self.root / 'out'
        with DispatchingArchiveHandler().open(path) as handle:
            handle.extract_to(target)

        self.assertEqual('a', (target / 'a.php').read_text())
        self.assertEqual('b', (target / 'src' / 'b.php').read_text())
        sidecar = json.loads((target / META_SIDECAR_NAME).read_text())
        self.assertEqual('SHA-1', sidecar['signature'])
        self.assertEqual(2, sidecar['entry_count'])

    def test_extract_without_sidecar(self):
        path = build_phar(self.root / 'extract.phar', {'a.php': 'a'})
        target = self.root / 'out'
        with DispatchingArchiveHandler().open(path) as handle:
            handle.extract_to(target, sidecar=False)

        self.assertEqual(['a.php'], sorted(p.name for p in target.iterdir()))

    def test_extract_refuses_unsafe_paths(self):
        path = self.root / 'evil.zip'
        with zipfile.ZipFile(path, 'w') as archive:
            archive.writestr('../evil.php', 'evil')

        with DispatchingArchiveHandler().open(path) as handle:
            with self.assertRaises(InvalidArchive):
                handle.extract_to(self.root / 'out')
        self.assertFalse((self.root / 'evil.php').exists())

    def test_fingerprint(self):
        path = build_phar(self.root / 'fingerprint.phar', {'a.php': 'a'})
        with DispatchingArchiveHandler().open(path) as handle:
            fingerprint = handle.fingerprint(FileHasher('md5'))
        self.assertEqual([('a.php', hashlib.md5(b'a').hexdigest())], fingerprint)


if __name__ == '__main__':
    unittest.main()
