import hashlib

import pytest

import ocidist.digest as od
import ocidist.errors as oe

octets = b'cafebabe'
sha256_digest = 'sha256:' + hashlib.sha256(octets).hexdigest()
sha512_digest = 'sha512:' + hashlib.sha512(octets).hexdigest()


def test_digest_of():
    assert od.digest_of(octets) == sha256_digest
    assert od.digest_of(octets, algorithm='sha512') == sha512_digest

    with pytest.raises(oe.InvalidReference):
        od.digest_of(octets, algorithm='md5')


def test_validate():
    assert od.validate(sha256_digest) == sha256_digest
    assert od.validate(sha512_digest) == sha512_digest

    for invalid in (
        'sha256:bad',
        'sha256:' + 'A' * 64,
        'sha256' + 'a' * 64,
        'sha256:' + 'a' * 63,
        'sha512:' + 'a' * 64,
        'foo:' + 'a' * 64,
        None,
    ):
        with pytest.raises(oe.InvalidReference):
            od.validate(invalid)


def test_parse():
    assert od.parse(sha256_digest) == ('sha256', hashlib.sha256(octets).hexdigest())


def test_verifier_incremental():
    verifier = od.DigestVerifier(expected_digest=sha512_digest)
    verifier.update(octets[:3])
    verifier.update(octets[3:])

    assert verifier.octets_count == len(octets)
    assert verifier.verify(expected_size=len(octets)) == sha512_digest


def test_verify_mismatch():
    with pytest.raises(oe.DigestMismatch) as excinfo:
        od.verify(b'other-octets', expected_digest=sha256_digest)

    assert excinfo.value.expected == sha256_digest
    assert excinfo.value.actual == od.digest_of(b'other-octets')
    assert sha256_digest in str(excinfo.value)


def test_verify_size_mismatch():
    with pytest.raises(oe.SizeMismatch) as excinfo:
        od.verify(octets, expected_digest=sha256_digest, expected_size=len(octets) + 1)

    assert excinfo.value.expected == len(octets) + 1
    assert excinfo.value.actual == len(octets)

    # size-mismatches are digest-mismatches, too
    assert isinstance(excinfo.value, oe.DigestMismatch)


async def _chunks(*chunks):
    for chunk in chunks:
        yield chunk


@pytest.mark.asyncio
async def test_iter_verified():
    received = [
        chunk async for chunk in od.iter_verified(
            chunks=_chunks(octets[:4], octets[4:]),
            expected_digest=sha256_digest,
        )
    ]
    assert b''.join(received) == octets

    with pytest.raises(oe.DigestMismatch):
        async for _ in od.iter_verified(
            chunks=_chunks(octets, b'!'),
            expected_digest=sha256_digest,
        ):
            pass
