'''
end-to-end operations (pulling and pushing complete images), composed from the lower-level
operations offered by ocidist.client.Client
'''

import collections.abc
import logging

import ocidist.auth as oa
import ocidist.client as oc
import ocidist.digest as od
import ocidist.errors as oe
import ocidist.model as om
import ocidist.reference as oref
import ocidist.util as outil

logger = logging.getLogger(__name__)


async def pull(
    oci_client: oc.Client,
    image_reference: str | oref.Reference,
    auth: oa.RegistryAuth=None,
    accepted_media_types: collections.abc.Iterable[str]=(
        om.IMAGE_LAYER_MIME,
        om.IMAGE_LAYER_GZIP_MIME,
    ),
) -> om.ImageData:
    '''
    retrieves the manifest, config-blob, and layer-blobs of the given image.

    if the manifest is an index, it is resolved to a single image-manifest (see
    `Client.resolve_index`). If this is not possible, the returned ImageData holds the index
    (w/o config and layers), so callers may inspect `manifest.manifests`.

    only layers of one of the `accepted_media_types` are retrieved (others are silently
    skipped); layers are returned in manifest-order. Any failure aborts the whole pull.
    '''
    image_reference = oref.resolve(image_reference)

    manifest, digest = await oci_client.pull_manifest(
        reference=image_reference,
        auth=auth,
    )

    if isinstance(manifest, om.ImageIndex):
        if not (entry := oci_client.resolve_index(index=manifest)):
            logger.info(
                f'{image_reference=}: could not resolve index w/ {len(manifest.manifests)} '
                'entries - returning index'
            )
            return om.ImageData(
                manifest=manifest,
                digest=digest,
                config=None,
                layers=[],
            )

        logger.debug(f'{image_reference=}: resolved index to {entry.digest=}')
        manifest, digest = await oci_client.pull_manifest(
            reference=image_reference.with_digest(entry.digest),
            auth=auth,
        )

        if not isinstance(manifest, om.ImageManifest):
            raise oe.UnsupportedMediaType(
                f'index-entry {entry.digest} is not an image-manifest: {manifest.mediaType=}',
                operation='pull',
                reference=image_reference,
            )

    manifest: om.ImageManifest
    accepted_media_types = set(accepted_media_types)

    layer_descriptors = [
        layer for layer in manifest.layers
        if layer.mediaType in accepted_media_types
    ]
    if (skipped := len(manifest.layers) - len(layer_descriptors)):
        logger.debug(f'{image_reference=}: skipping {skipped} layer(s) w/ unaccepted mimetype')

    config_octets = await oci_client.pull_blob(
        reference=image_reference,
        digest=manifest.config.digest,
        auth=auth,
        size=manifest.config.size,
    )

    layers_octets = await oci_client.pull_blobs(
        reference=image_reference,
        descriptors=layer_descriptors,
        auth=auth,
    )

    return om.ImageData(
        manifest=manifest,
        digest=digest,
        config=om.Config(
            data=config_octets,
            media_type=manifest.config.mediaType,
            annotations=manifest.config.annotations,
        ),
        layers=[
            om.ImageLayer(
                data=octets,
                media_type=descriptor.mediaType,
                annotations=descriptor.annotations,
            ) for descriptor, octets in zip(layer_descriptors, layers_octets)
        ],
    )


def _validate_manifest(
    manifest: om.ImageManifest,
    config: om.Config,
    layers: collections.abc.Sequence[om.ImageLayer],
):
    '''
    checks that the given manifest references exactly the given config and layers (in the
    given order)
    '''
    if len(manifest.layers) != len(layers):
        raise oe.DigestMismatch(
            f'manifest references {len(manifest.layers)} layers, but got {len(layers)}',
            operation='push',
        )

    for descriptor, blob in zip(manifest.blobs(), (config, *layers)):
        # descriptors may use any supported algorithm
        algorithm, _ = od.parse(descriptor.digest)
        if (actual := od.digest_of(blob.data, algorithm=algorithm)) != descriptor.digest:
            raise oe.DigestMismatch(
                f'manifest does not reference passed blob ({descriptor.mediaType})',
                expected=actual,
                actual=descriptor.digest,
                operation='push',
            )
        if descriptor.size != len(blob.data):
            raise oe.SizeMismatch(
                expected=len(blob.data),
                actual=descriptor.size,
                operation='push',
            )


async def push(
    oci_client: oc.Client,
    image_reference: str | oref.Reference,
    layers: collections.abc.Sequence[om.ImageLayer],
    config: om.Config,
    auth: oa.RegistryAuth=None,
    manifest: om.ImageManifest=None,
) -> om.PushResponse:
    '''
    uploads the given layers and config (concurrently, bounded by `max_concurrent_upload`),
    and, once all of them were uploaded successfully, the manifest.

    if no manifest is passed, a minimal one referencing config and layers is created. A passed
    manifest must reference exactly the passed config and layers.

    pushes are not transactional: if this fails, already uploaded blobs remain in registry
    (however, the manifest will never reference absent blobs).
    '''
    image_reference = oref.resolve(image_reference)

    if manifest:
        _validate_manifest(manifest=manifest, config=config, layers=layers)
    else:
        manifest = om.ImageManifest(
            config=config.descriptor(),
            layers=[layer.descriptor() for layer in layers],
        )

    blob_urls = await outil.gather(
        oci_client.push_blob(
            reference=image_reference,
            data=blob.data,
            digest=descriptor.digest,
            auth=auth,
        ) for blob, descriptor in zip((config, *layers), manifest.blobs())
    )
    config_url = blob_urls[0]

    logger.info(f'pushed {len(blob_urls)} blob(s) - pushing manifest for {image_reference=}')

    manifest_url = await oci_client.push_manifest(
        reference=image_reference,
        manifest=manifest,
        auth=auth,
    )

    return om.PushResponse(
        config_url=config_url,
        manifest_url=manifest_url,
    )
