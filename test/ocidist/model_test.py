import json

import pytest

import ocidist.digest as od
import ocidist.errors as oe
import ocidist.model as om

import mock_registry


def test_as_manifest_docker_v2():
    manifest = om.as_manifest(mock_registry.MANIFEST)

    assert isinstance(manifest, om.ImageManifest)
    assert manifest.schemaVersion == 2
    assert manifest.mediaType == om.DOCKER_MANIFEST_SCHEMA_V2_MIME
    assert manifest.config.digest == mock_registry.CONFIG_DIGEST
    assert [layer.digest for layer in manifest.layers] == [mock_registry.BLOB_DIGEST]
    assert manifest.manifest_type is om.ManifestType.IMAGE

    assert list(manifest.blobs()) == [manifest.config, *manifest.layers]


def test_as_manifest_index():
    raw = {
        'schemaVersion': 2,
        'mediaType': om.OCI_IMAGE_INDEX_MIME,
        'manifests': [
            {
                'mediaType': om.OCI_IMAGE_MANIFEST_MIME,
                'digest': 'sha256:' + 'a' * 64,
                'size': 42,
                'platform': {
                    'architecture': 'amd64',
                    'os': 'windows',
                    'os.version': '10.0.17763.1457',
                    'os.features': ['win32k'],
                },
            },
        ],
    }

    index = om.as_manifest(json.dumps(raw))

    assert isinstance(index, om.ImageIndex)
    assert index.manifest_type is om.ManifestType.INDEX

    platform = index.manifests[0].platform
    assert platform.osVersion == '10.0.17763.1457'
    assert platform.osFeatures == ['win32k']

    # dotted keys must survive serialisation
    assert index.as_dict()['manifests'][0]['platform']['os.version'] == '10.0.17763.1457'
    assert 'osVersion' not in index.as_dict()['manifests'][0]['platform']


def test_as_manifest_by_structure():
    # mediaType is optional in OCI manifests
    raw = json.loads(mock_registry.MANIFEST)
    del raw['mediaType']

    assert isinstance(om.as_manifest(raw), om.ImageManifest)

    # .. though, if returned, Content-Type takes precedence over structure
    with pytest.raises(oe.UnsupportedMediaType):
        om.as_manifest(raw, media_type='text/html')


@pytest.mark.parametrize('raw', [
    b'<html>not json</html>',
    {'schemaVersion': 1, 'name': 'legacy'},
    {'schemaVersion': 2, 'mediaType': 'application/vnd.unknown+json'},
    {'schemaVersion': 2, 'mediaType': om.OCI_IMAGE_MANIFEST_MIME, 'layers': []},
])
def test_as_manifest_unsupported(raw):
    with pytest.raises(oe.UnsupportedMediaType):
        om.as_manifest(raw)


def test_serialisation_omits_absent_values():
    config = om.Config(data=b'{}')
    manifest = om.ImageManifest(
        config=config.descriptor(),
        layers=[om.ImageLayer(data=b'layer', media_type=om.IMAGE_LAYER_MIME).descriptor()],
    )

    raw = manifest.as_dict()
    assert raw['schemaVersion'] == 2
    assert raw['mediaType'] == om.OCI_IMAGE_MANIFEST_MIME
    assert 'subject' not in raw
    assert 'annotations' not in raw
    assert 'urls' not in raw['layers'][0]

    assert om.manifest_digest(manifest) == od.digest_of(om.manifest_bytes(manifest))
    assert om.as_manifest(om.manifest_bytes(manifest)) == manifest


def test_artifact_manifest():
    subject = om.Descriptor(
        mediaType=om.OCI_IMAGE_MANIFEST_MIME,
        digest='sha256:' + 'b' * 64,
        size=123,
    )
    manifest = om.ImageManifest(
        config=om.Config(data=b'{}', media_type=om.EMPTY_CONFIG_MIME).descriptor(),
        layers=[],
        artifactType='application/vnd.example.sbom',
        subject=subject,
        annotations={om.Annotations.CREATED: '2024-01-01T00:00:00Z'},
    )

    parsed = om.as_manifest(om.manifest_bytes(manifest))

    assert parsed.subject == subject
    assert parsed.artifactType == 'application/vnd.example.sbom'
    assert parsed.annotations == {'org.opencontainers.image.created': '2024-01-01T00:00:00Z'}


def test_platform_normalise():
    assert om.Platform(architecture='x86_64', os='Linux').normalise() == \
        om.Platform(architecture='amd64', os='linux')
    assert om.Platform(architecture='aarch64', os='linux', variant='v8').normalise() == \
        om.Platform(architecture='arm64', os='linux')
    assert str(om.Platform(architecture='arm', os='linux', variant='v7')) == 'linux/arm/v7'


def test_manifest_mimetype():
    index = om.ImageIndex(manifests=[], mediaType=None)
    assert om.manifest_mimetype(index) == om.OCI_IMAGE_INDEX_MIME

    manifest = om.as_manifest(mock_registry.MANIFEST)
    assert om.manifest_mimetype(manifest) == om.DOCKER_MANIFEST_SCHEMA_V2_MIME
