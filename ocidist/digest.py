import collections.abc
import hashlib
import re

import ocidist.errors as oe

DIGEST_PATTERN = re.compile(r'^[a-z0-9]+:[a-f0-9]{32,}$')

_hash_ctors = {
    'sha256': hashlib.sha256,
    'sha512': hashlib.sha512,
}

# expected hexdigest-lengths for supported algorithms
_hex_lengths = {
    'sha256': 64,
    'sha512': 128,
}


def validate(digest: str) -> str:
    '''
    checks the passed digest is of the form `<algorithm>:<hex>`, and that algorithm is one
    of the supported ones (sha256, sha512). returns the passed digest unchanged.
    '''
    if not isinstance(digest, str) or not DIGEST_PATTERN.match(digest):
        raise oe.InvalidReference(f'not a valid digest: {digest=}')

    algorithm, hexdigest = digest.split(':', 1)

    if not algorithm in _hash_ctors:
        raise oe.InvalidReference(f'unsupported digest-algorithm: {algorithm=}')

    if not len(hexdigest) == _hex_lengths[algorithm]:
        raise oe.InvalidReference(f'{digest=} has wrong length for {algorithm=}')

    return digest


def parse(digest: str) -> tuple[str, str]:
    validate(digest)
    algorithm, hexdigest = digest.split(':', 1)
    return algorithm, hexdigest


def digest_of(
    octets: bytes,
    algorithm: str='sha256',
) -> str:
    if not algorithm in _hash_ctors:
        raise oe.InvalidReference(f'unsupported digest-algorithm: {algorithm=}')

    return f'{algorithm}:{_hash_ctors[algorithm](octets).hexdigest()}'


class DigestVerifier:
    '''
    incrementally hashes a stream of octets using the algorithm named by the expected digest.
    Once the stream is exhausted, `verify` compares the computed digest against the expected
    one, raising `DigestMismatch` if they differ.

    instances are single-use and must not be shared between streams.
    '''
    def __init__(self, expected_digest: str):
        algorithm, _ = parse(expected_digest)
        self.expected_digest = expected_digest
        self.algorithm = algorithm
        self.octets_count = 0
        self._hash = _hash_ctors[algorithm]()

    def update(self, chunk: bytes):
        self._hash.update(chunk)
        self.octets_count += len(chunk)

    @property
    def digest(self) -> str:
        return f'{self.algorithm}:{self._hash.hexdigest()}'

    def verify(
        self,
        expected_size: int=None,
    ) -> str:
        if (actual := self.digest) != self.expected_digest:
            raise oe.DigestMismatch(
                expected=self.expected_digest,
                actual=actual,
            )

        if expected_size is not None and expected_size != self.octets_count:
            raise oe.SizeMismatch(
                expected=expected_size,
                actual=self.octets_count,
            )

        return actual


def verify(
    octets: bytes,
    expected_digest: str,
    expected_size: int=None,
) -> str:
    verifier = DigestVerifier(expected_digest=expected_digest)
    verifier.update(octets)
    return verifier.verify(expected_size=expected_size)


async def iter_verified(
    chunks: collections.abc.AsyncIterable[bytes],
    expected_digest: str,
    expected_size: int=None,
) -> collections.abc.AsyncGenerator[bytes, None]:
    '''
    passes through the given chunks, hashing them on the way. After the last chunk was
    consumed, the stream's digest is verified (raising `DigestMismatch` on mismatch).

    consumers must treat all octets received so far as invalid in case of an error.
    '''
    verifier = DigestVerifier(expected_digest=expected_digest)

    async for chunk in chunks:
        verifier.update(chunk)
        yield chunk

    verifier.verify(expected_size=expected_size)
