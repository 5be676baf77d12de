import hashlib

import pytest

import ocidist.errors as oe
import ocidist.reference as oref

example_digest = 'sha256:' + hashlib.sha256('cafebabe'.encode('utf-8')).hexdigest()


def test_parse():
    ref = oref.resolve('example.org/path:tag')
    assert ref.registry == 'example.org'
    assert ref.repository == 'path'
    assert ref.tag == 'tag'
    assert ref.digest is None

    ref = oref.resolve('example.org:1234/some/nested/path:1.2.3')
    assert ref.registry == 'example.org:1234'
    assert ref.repository == 'some/nested/path'
    assert ref.tag == '1.2.3'

    ref = oref.resolve(f'example.org/path@{example_digest}')
    assert ref.tag is None
    assert ref.digest == example_digest
    assert ref.manifest_ref == example_digest

    # digest pins content, tag is kept for informational purposes
    ref = oref.resolve(f'example.org/path:tag@{example_digest}')
    assert ref.tag == 'tag'
    assert ref.manifest_ref == example_digest

    ref = oref.resolve('localhost/path:tag')
    assert ref.registry == 'localhost'


def test_default_tag():
    ref = oref.resolve('example.org:1234/path')
    assert ref.tag == 'latest'
    assert ref.registry == 'example.org:1234'


def test_docker_hub_alias():
    ref = oref.resolve('docker.io/library/alpine:3')
    assert ref.registry == 'docker.io'
    assert ref.api_registry == 'registry-1.docker.io'
    assert str(ref) == 'docker.io/library/alpine:3'


def test_str():
    for image_reference in (
        'example.org/path:tag',
        'example.org:1234/a/b:tag',
        f'example.org/path@{example_digest}',
    ):
        assert str(oref.resolve(image_reference)) == image_reference


def test_with_digest_and_tag():
    ref = oref.resolve('example.org/path:tag')

    pinned = ref.with_digest(example_digest)
    assert pinned.digest == example_digest
    assert pinned.tag is None
    assert pinned.ref_without_tag == 'example.org/path'

    assert pinned.with_tag('other').tag == 'other'


@pytest.mark.parametrize('image_reference', [
    '',
    'alpine:3', # registry-host is mandatory
    'library/alpine:3',
    'https://example.org/path:tag',
    'example.org/UPPER:tag',
    'example.org/path:-tag',
    'example.org/path:',
    'example.org/path:' + 'a' * 129,
    'example.org/path@',
    'example.org/path@sha256:abc',
    'example.org/path@md5:' + 'a' * 32,
    'example.org//path:tag',
    'example.org/path/:tag',
])
def test_invalid(image_reference):
    with pytest.raises(oe.InvalidReference):
        oref.resolve(image_reference)


def test_invalid_reference_is_value_error():
    with pytest.raises(ValueError):
        oref.resolve('alpine')


def test_name_too_long():
    with pytest.raises(oe.InvalidReference):
        oref.resolve('example.org/' + 'a' * 255 + ':tag')
