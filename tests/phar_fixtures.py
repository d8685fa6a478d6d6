"""
Builders for the archives used by the test cases.
"""
import pathlib as pl

from phar_diff.builder import PharBuilder
from phar_diff.diff_data import CompressionAlgorithm, SignatureAlgorithm

TIMESTAMP = 1700000000

HELLO_DOUBLE_QUOTES = '<?php\n\necho "Hello world!";\n\n'
HELLO_SINGLE_QUOTES = "<?php\n\necho 'Hello world!';\n\n"


def build_phar(path: pl.Path, files: dict,
               file_compression: CompressionAlgorithm = CompressionAlgorithm.NONE,
               archive_compression: CompressionAlgorithm = CompressionAlgorithm.NONE,
               signature: SignatureAlgorithm = SignatureAlgorithm.SHA1,
               metadata=None) -> pl.Path:
    """
    Writes a PHAR with the given files.

    :param path: Output path.
    :param files: Mapping of archive paths to file contents.
    """
    builder = PharBuilder(alias=path.name, timestamp=TIMESTAMP)
    for name, contents in files.items():
        builder.add_from_string(name, contents)
    builder.compress_files(file_compression)
    builder.sign(signature)
    builder.set_metadata(metadata)
    return builder.build(path, archive_compression)


def build_simple_phars(directory: pl.Path) -> dict:
    """
    Builds the standard set of archives:

    * foo: foo.php
    * bar: bar.php, same contents as foo.php
    * baz: bar.php with different contents
    * bar-compressed: like bar, but with gzip compressed files
    """
    return {
        'foo': build_phar(directory / 'simple-phar-foo.phar', {'foo.php': HELLO_DOUBLE_QUOTES}),
        'bar': build_phar(directory / 'simple-phar-bar.phar', {'bar.php': HELLO_DOUBLE_QUOTES}),
        'baz': build_phar(directory / 'simple-phar-baz.phar', {'bar.php': HELLO_SINGLE_QUOTES}),
        'bar-compressed': build_phar(directory / 'simple-phar-bar-compressed.phar',
                                     {'bar.php': HELLO_DOUBLE_QUOTES},
                                     file_compression=CompressionAlgorithm.GZ),
    }
