import json

import pytest

import ocidist
import ocidist.client as oc
import ocidist.config as oconf
import ocidist.digest as od
import ocidist.errors as oe
import ocidist.model as om
import ocidist.platform as op

from mock_registry import (
    BLOB,
    CONFIG,
    MANIFEST,
    MANIFEST_DIGEST,
)


def mk_client(**kwargs) -> oc.Client:
    platform_resolver = kwargs.pop('platform_resolver', None)
    return oc.Client(
        config=oconf.ClientConfig(protocol=oconf.ClientProtocol.HTTP, **kwargs),
        platform_resolver=platform_resolver,
    )


def mk_image(layer_count: int, media_type: str=om.IMAGE_LAYER_GZIP_MIME):
    layers = [
        om.ImageLayer(data=f'layer-{idx}'.encode('utf-8') * 64, media_type=media_type)
        for idx in range(layer_count)
    ]
    config = om.Config(data=json.dumps({'layers': layer_count}).encode('utf-8'))

    return layers, config


@pytest.mark.asyncio
async def test_pull(registry, client):
    image_data = await ocidist.pull(
        oci_client=client,
        image_reference=registry.reference(),
        accepted_media_types=[om.DOCKER_LAYER_GZIP_MIME],
    )

    assert image_data.digest == MANIFEST_DIGEST
    assert image_data.config.data == CONFIG
    assert [layer.data for layer in image_data.layers] == [BLOB]
    assert image_data.layers[0].media_type == om.DOCKER_LAYER_GZIP_MIME


@pytest.mark.asyncio
async def test_pull_skips_unaccepted_layers(registry, client):
    image_data = await ocidist.pull(
        oci_client=client,
        image_reference=registry.reference(),
        accepted_media_types=[om.IMAGE_LAYER_MIME],
    )

    assert image_data.layers == []
    assert image_data.config.data == CONFIG


@pytest.mark.asyncio
async def test_pull_aborts_on_digest_mismatch(registry, client):
    registry.bad_blob_digest = True

    with pytest.raises(oe.DigestMismatch):
        await ocidist.pull(
            oci_client=client,
            image_reference=registry.reference(),
            accepted_media_types=[om.DOCKER_LAYER_GZIP_MIME],
        )


@pytest.mark.asyncio
async def test_push_and_pull(registry, client):
    layers, config = mk_image(layer_count=2)
    image_reference = registry.reference(repository='pushed', tag='1.0')

    push_res = await ocidist.push(
        oci_client=client,
        image_reference=image_reference,
        layers=layers,
        config=config,
    )

    assert push_res.config_url == \
        f'http://{registry.host}/v2/pushed/blobs/{config.sha256_digest}'

    expected_manifest = om.ImageManifest(
        config=config.descriptor(),
        layers=[layer.descriptor() for layer in layers],
    )
    expected_digest = om.manifest_digest(expected_manifest)
    assert push_res.manifest_url == \
        f'http://{registry.host}/v2/pushed/manifests/{expected_digest}'

    image_data = await ocidist.pull(
        oci_client=client,
        image_reference=image_reference,
        accepted_media_types=[om.IMAGE_LAYER_GZIP_MIME],
    )

    assert image_data.digest == expected_digest
    assert len(image_data.manifest.layers) == 2
    assert [layer.data for layer in image_data.layers] == [layer.data for layer in layers]
    assert image_data.config.data == config.data


@pytest.mark.asyncio
async def test_push_w_manifest(registry, client):
    layers, config = mk_image(layer_count=1)
    manifest = om.ImageManifest(
        config=config.descriptor(),
        layers=[layer.descriptor() for layer in layers],
        annotations={om.Annotations.TITLE: 'example'},
    )

    await ocidist.push(
        oci_client=client,
        image_reference=registry.reference(repository='pushed'),
        layers=layers,
        config=config,
        manifest=manifest,
    )

    pulled, _ = await client.pull_manifest(registry.reference(repository='pushed'))
    assert pulled.annotations == {om.Annotations.TITLE: 'example'}


@pytest.mark.asyncio
async def test_push_rejects_inconsistent_manifest(registry, client):
    layers, config = mk_image(layer_count=2)
    manifest = om.ImageManifest(
        config=config.descriptor(),
        layers=[layers[0].descriptor(), layers[0].descriptor()],
    )

    with pytest.raises(oe.DigestMismatch):
        await ocidist.push(
            oci_client=client,
            image_reference=registry.reference(repository='pushed'),
            layers=layers,
            config=config,
            manifest=manifest,
        )

    # nothing must have been uploaded
    assert registry.requests == []


@pytest.mark.asyncio
async def test_push_rejects_manifest_w_other_layer_count(registry, client):
    layers, config = mk_image(layer_count=2)
    manifest = om.ImageManifest(
        config=config.descriptor(),
        layers=[layers[0].descriptor()],
    )

    with pytest.raises(oe.DigestMismatch) as excinfo:
        await ocidist.push(
            oci_client=client,
            image_reference=registry.reference(repository='pushed'),
            layers=layers,
            config=config,
            manifest=manifest,
        )

    assert 'references 1 layers, but got 2' in str(excinfo.value)
    assert excinfo.value.expected is None
    assert excinfo.value.actual is None
    assert registry.requests == []


@pytest.mark.asyncio
async def test_push_never_references_missing_blobs(registry, client):
    layers, config = mk_image(layer_count=2)
    # provoke a failure when uploading one of the blobs
    registry.wrong_range = True

    with pytest.raises(oe.UploadSessionInvalid):
        await ocidist.push(
            oci_client=client,
            image_reference=registry.reference(repository='pushed'),
            layers=layers,
            config=config,
        )

    assert registry.count_requests('PUT', '/manifests/') == 0


@pytest.mark.asyncio
async def test_pull_concurrency_bound(registry):
    layers, config = mk_image(layer_count=6)
    image_reference = registry.reference(repository='many-layers')

    async with mk_client(max_concurrent_download=2) as client:
        await ocidist.push(
            oci_client=client,
            image_reference=image_reference,
            layers=layers,
            config=config,
        )

        registry.blob_delay = 0.05
        image_data = await ocidist.pull(
            oci_client=client,
            image_reference=image_reference,
            accepted_media_types=[om.IMAGE_LAYER_GZIP_MIME],
        )

    assert len(image_data.layers) == 6
    assert 1 <= registry.max_blobs_in_flight <= 2


@pytest.mark.asyncio
async def test_pull_unresolved_index(registry, client):
    index = om.ImageIndex(
        manifests=[
            om.ImageIndexEntry(
                mediaType=om.DOCKER_MANIFEST_SCHEMA_V2_MIME,
                digest=MANIFEST_DIGEST,
                size=len(MANIFEST),
                platform=om.Platform(architecture=architecture, os='linux'),
            ) for architecture in ('amd64', 'arm64')
        ],
    )
    await client.push_manifest_list(registry.reference(tag='multi'), manifest_list=index)

    image_data = await ocidist.pull(
        oci_client=client,
        image_reference=registry.reference(tag='multi'),
    )

    assert image_data.manifest == index
    assert image_data.digest == om.manifest_digest(index)
    assert image_data.config is None
    assert image_data.layers == []


@pytest.mark.asyncio
async def test_pull_index_w_resolver(registry):
    index = om.ImageIndex(
        manifests=[
            om.ImageIndexEntry(
                mediaType=om.DOCKER_MANIFEST_SCHEMA_V2_MIME,
                digest=od.digest_of(b'arm64-manifest'),
                size=1,
                platform=om.Platform(architecture='arm64', os='linux'),
            ),
            om.ImageIndexEntry(
                mediaType=om.DOCKER_MANIFEST_SCHEMA_V2_MIME,
                digest=MANIFEST_DIGEST,
                size=len(MANIFEST),
                platform=om.Platform(architecture='amd64', os='linux'),
            ),
        ],
    )

    async with mk_client(platform_resolver=op.linux_amd64_resolver()) as client:
        await client.push_manifest_list(registry.reference(tag='multi'), manifest_list=index)

        image_data = await ocidist.pull(
            oci_client=client,
            image_reference=registry.reference(tag='multi'),
            accepted_media_types=[om.DOCKER_LAYER_GZIP_MIME],
        )

    assert image_data.digest == MANIFEST_DIGEST
    assert [layer.data for layer in image_data.layers] == [BLOB]
