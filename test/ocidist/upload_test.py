import pytest

import ocidist.errors as oe
import ocidist.upload as ou

digest = 'sha256:' + 'a' * 64


def mk_session():
    return ou.UploadSession(
        location='https://example.org/v2/repo/blobs/uploads/1234',
        digest=digest,
    )


def test_lifecycle():
    session = mk_session()
    assert session.state is ou.UploadState.STARTED

    assert session.chunk_range(chunk_size=10) == '0-9'
    session.chunk_sent(chunk_size=10, location=None, reported_range='0-9')
    assert session.offset == 10
    assert session.state is ou.UploadState.UPLOADING

    assert session.chunk_range(chunk_size=5) == '10-14'
    session.chunk_sent(
        chunk_size=5,
        location='https://example.org/v2/repo/blobs/uploads/5678',
        reported_range='bytes=0-14',
    )
    assert session.offset == 15
    assert session.location.endswith('5678')

    assert session.finalize_url() == \
        f'https://example.org/v2/repo/blobs/uploads/5678?digest={digest.replace(":", "%3A")}'
    assert session.state is ou.UploadState.FINALIZING

    session.commit()
    assert session.state is ou.UploadState.COMMITTED


def test_absent_range_trusts_local_offset():
    session = mk_session()
    session.chunk_sent(chunk_size=3, location=None, reported_range=None)
    assert session.offset == 3


@pytest.mark.parametrize('reported_range', ['0-10', '1-9', 'garbage'])
def test_diverging_offset(reported_range):
    session = mk_session()

    with pytest.raises(oe.UploadSessionInvalid):
        session.chunk_sent(chunk_size=10, location=None, reported_range=reported_range)

    assert session.state is ou.UploadState.INVALID

    # invalid sessions are terminal
    with pytest.raises(oe.UploadSessionInvalid):
        session.chunk_range(chunk_size=1)
    with pytest.raises(oe.UploadSessionInvalid):
        session.finalize_url()


def test_empty_chunk():
    session = mk_session()

    with pytest.raises(oe.UploadSessionInvalid):
        session.chunk_sent(chunk_size=0, location=None, reported_range=None)


def test_commit_requires_finalizing():
    session = mk_session()

    with pytest.raises(oe.UploadSessionInvalid):
        session.commit()


def test_with_query():
    assert ou.with_query('https://x/uploads/1', digest='d') == 'https://x/uploads/1?digest=d'
    assert ou.with_query('https://x/uploads/1?_state=abc', digest='d') == \
        'https://x/uploads/1?_state=abc&digest=d'


def test_absolute_location():
    request_url = 'http://127.0.0.1:5000/v2/repo/blobs/uploads/'

    assert ou.absolute_location('/v2/repo/blobs/uploads/1', request_url) == \
        'http://127.0.0.1:5000/v2/repo/blobs/uploads/1'
    assert ou.absolute_location('https://other.example.org/upload/1', request_url) == \
        'https://other.example.org/upload/1'
