"""
Helper to compare file contents.
"""

from __future__ import annotations

import hashlib as hl
import io
from typing import Union


def _has_fixed_digest_size(algorithm: str) -> bool:
    # Variable length algorithms (shake_128, shake_256) need a length for hexdigest().
    try:
        return hl.new(algorithm).digest_size > 0
    except ValueError:
        # Listed by hashlib but disabled in the linked OpenSSL, e.g. md4.
        return False


SUPPORTED_HASH_ALGORITHMS = sorted(filter(_has_fixed_digest_size, hl.algorithms_available))


class FileHasher:
    """
    Helper class to compute hash values of io streams and archive entry contents.
    """

    def __init__(self, hash_algorithm: str = 'md5', hash_buffer_size=128 * 1024):
        """
        :param hash_algorithm: Hashing algorithm, one of `SUPPORTED_HASH_ALGORITHMS`
        :param hash_buffer_size: Buffer size used to read the input streams.
        """
        if hl.new(hash_algorithm).digest_size == 0:
            raise ValueError(f'Hash algorithm "{hash_algorithm}" has no fixed digest size.')
        self.hash_algorithm = hash_algorithm
        self.hash_buffer_size = hash_buffer_size

    def __repr__(self):
        return f'FileHasher({self.hash_algorithm})'

    def compute_hash(self, input_io: Union[io.RawIOBase, io.BufferedIOBase, bytes]) -> str:
        """
        Computes the hash sum for an input io object or a byte string.
        :param input_io: input io object or bytes
        :return: string with the hex representation of the hash
        """
        digest = hl.new(self.hash_algorithm)
        if isinstance(input_io, (bytes, bytearray, memoryview)):
            digest.update(input_io)
            return digest.hexdigest()

        while True:
            data = input_io.read(self.hash_buffer_size)
            if not data:
                break
            digest.update(data)
        return digest.hexdigest()
