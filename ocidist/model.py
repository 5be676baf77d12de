import collections.abc
import dataclasses
import enum
import json

import dacite

import ocidist.digest as od
import ocidist.errors as oe

OCI_IMAGE_MANIFEST_MIME = 'application/vnd.oci.image.manifest.v1+json'
OCI_IMAGE_INDEX_MIME = 'application/vnd.oci.image.index.v1+json'

DOCKER_MANIFEST_LIST_MIME = 'application/vnd.docker.distribution.manifest.list.v2+json'
DOCKER_MANIFEST_SCHEMA_V2_MIME = 'application/vnd.docker.distribution.manifest.v2+json'

IMAGE_CONFIG_MIME = 'application/vnd.oci.image.config.v1+json'
DOCKER_IMAGE_CONFIG_MIME = 'application/vnd.docker.container.image.v1+json'
EMPTY_CONFIG_MIME = 'application/vnd.oci.empty.v1+json'

IMAGE_LAYER_MIME = 'application/vnd.oci.image.layer.v1.tar'
IMAGE_LAYER_GZIP_MIME = 'application/vnd.oci.image.layer.v1.tar+gzip'
IMAGE_LAYER_NONDISTRIBUTABLE_MIME = 'application/vnd.oci.image.layer.nondistributable.v1.tar'
IMAGE_LAYER_NONDISTRIBUTABLE_GZIP_MIME = \
    'application/vnd.oci.image.layer.nondistributable.v1.tar+gzip'
DOCKER_LAYER_TAR_MIME = 'application/vnd.docker.image.rootfs.diff.tar'
DOCKER_LAYER_GZIP_MIME = 'application/vnd.docker.image.rootfs.diff.tar.gzip'

WASM_LAYER_MIME = 'application/vnd.wasm.content.layer.v1+wasm'
WASM_CONFIG_MIME = 'application/vnd.wasm.config.v1+json'

OCTET_STREAM_MIME = 'application/octet-stream'

IMAGE_MANIFEST_MIMES = (OCI_IMAGE_MANIFEST_MIME, DOCKER_MANIFEST_SCHEMA_V2_MIME)
IMAGE_INDEX_MIMES = (OCI_IMAGE_INDEX_MIME, DOCKER_MANIFEST_LIST_MIME)

# order expresses preference (used for `Accept` header)
DEFAULT_ACCEPTED_MANIFEST_MIMES = (
    OCI_IMAGE_MANIFEST_MIME,
    OCI_IMAGE_INDEX_MIME,
    DOCKER_MANIFEST_SCHEMA_V2_MIME,
    DOCKER_MANIFEST_LIST_MIME,
)


class Annotations:
    '''
    well-known annotation-keys, as defined by OCI image-spec
    (https://github.com/opencontainers/image-spec/blob/main/annotations.md)
    '''
    CREATED = 'org.opencontainers.image.created'
    AUTHORS = 'org.opencontainers.image.authors'
    URL = 'org.opencontainers.image.url'
    DOCUMENTATION = 'org.opencontainers.image.documentation'
    SOURCE = 'org.opencontainers.image.source'
    VERSION = 'org.opencontainers.image.version'
    REVISION = 'org.opencontainers.image.revision'
    VENDOR = 'org.opencontainers.image.vendor'
    LICENSES = 'org.opencontainers.image.licenses'
    REF_NAME = 'org.opencontainers.image.ref.name'
    TITLE = 'org.opencontainers.image.title'
    DESCRIPTION = 'org.opencontainers.image.description'
    BASE_DIGEST = 'org.opencontainers.image.base.digest'
    BASE_NAME = 'org.opencontainers.image.base.name'


class ManifestType(enum.Enum):
    IMAGE = 'image'
    INDEX = 'index'


def _drop_none(raw: dict) -> dict:
    # some OCI registries do not like null-values (must be absent instead)
    return {k: v for k, v in raw.items() if v is not None}


@dataclasses.dataclass(kw_only=True)
class Descriptor:
    mediaType: str
    digest: str
    size: int
    urls: list[str] | None = None
    annotations: dict[str, str] | None = None
    artifactType: str | None = None

    def as_dict(self) -> dict:
        return _drop_none({
            'mediaType': self.mediaType,
            'digest': self.digest,
            'size': self.size,
            'urls': self.urls,
            'annotations': self.annotations,
            'artifactType': self.artifactType,
        })

    def __hash__(self):
        annotations = tuple(sorted(self.annotations.items())) if self.annotations else ()
        return hash((self.digest, self.size, self.mediaType, annotations))


@dataclasses.dataclass(frozen=True)
class Platform:
    '''
    https://github.com/opencontainers/image-spec/blob/main/image-index.md#image-index-property-descriptions

    `osVersion` and `osFeatures` are serialised as `os.version` and `os.features`
    '''
    architecture: str
    os: str
    variant: str | None = None
    osVersion: str | None = None
    osFeatures: list[str] | None = None
    features: list[str] | None = None

    def as_dict(self) -> dict:
        return _drop_none({
            'architecture': self.architecture,
            'os': self.os,
            'os.version': self.osVersion,
            'os.features': self.osFeatures,
            'variant': self.variant,
            'features': self.features,
        })

    @staticmethod
    def from_dict(raw: collections.abc.Mapping) -> 'Platform':
        if isinstance(raw, Platform):
            return raw

        raw = dict(raw)
        if 'os.version' in raw:
            raw['osVersion'] = raw.pop('os.version')
        if 'os.features' in raw:
            raw['osFeatures'] = raw.pop('os.features')

        return dacite.from_dict(
            data_class=Platform,
            data=raw,
        )

    def normalise(self) -> 'Platform':
        '''
        returns an equivalent platform using canonical names (e.g. `x86_64` -> `amd64`), as
        common in oci-image-indexes.
        '''
        architecture = _architecture_aliases.get(self.architecture, self.architecture)
        variant = self.variant

        if architecture == 'arm64' and variant == 'v8':
            variant = None

        return dataclasses.replace(
            self,
            architecture=architecture,
            os=self.os.lower(),
            variant=variant,
        )

    def __eq__(self, other):
        if not isinstance(other, Platform):
            return False

        return (
            self.architecture == other.architecture
            and self.os == other.os
            and self.variant == other.variant
        )

    def __hash__(self):
        return hash((self.architecture, self.os, self.variant))

    def __str__(self):
        if self.variant:
            return f'{self.os}/{self.architecture}/{self.variant}'
        return f'{self.os}/{self.architecture}'


_architecture_aliases = {
    'x86_64': 'amd64',
    'x86-64': 'amd64',
    'aarch64': 'arm64',
    'armhf': 'arm',
    'i386': '386',
}


@dataclasses.dataclass(kw_only=True)
class ImageIndexEntry(Descriptor):
    platform: Platform | None = None

    def as_dict(self) -> dict:
        raw = Descriptor.as_dict(self)
        # platform is an optional attribute according to oci spec
        if self.platform:
            raw['platform'] = self.platform.as_dict()
        return raw

    def __hash__(self):
        return hash((Descriptor.__hash__(self), self.platform))


@dataclasses.dataclass
class ImageManifest:
    config: Descriptor
    layers: list[Descriptor]
    mediaType: str | None = OCI_IMAGE_MANIFEST_MIME
    schemaVersion: int = 2
    artifactType: str | None = None
    subject: Descriptor | None = None
    annotations: dict[str, str] | None = None

    def as_dict(self) -> dict:
        return _drop_none({
            'schemaVersion': self.schemaVersion,
            'mediaType': self.mediaType,
            'artifactType': self.artifactType,
            'config': self.config.as_dict(),
            'layers': [layer.as_dict() for layer in self.layers],
            'subject': self.subject.as_dict() if self.subject else None,
            'annotations': self.annotations or None,
        })

    def blobs(self) -> collections.abc.Generator[Descriptor, None, None]:
        yield self.config
        yield from self.layers

    @property
    def manifest_type(self) -> ManifestType:
        return ManifestType.IMAGE


@dataclasses.dataclass
class ImageIndex:
    '''Covers both Docker Manifest List
        (https://github.com/distribution/distribution/blob/main/docs/spec/manifest-v2-2.md#manifest-list)
        and OCI Image Index
        (https://github.com/opencontainers/image-spec/blob/main/image-index.md)
    '''
    manifests: list[ImageIndexEntry]
    mediaType: str | None = OCI_IMAGE_INDEX_MIME
    schemaVersion: int = 2
    artifactType: str | None = None
    annotations: dict[str, str] | None = None

    def as_dict(self) -> dict:
        raw = _drop_none({
            'schemaVersion': self.schemaVersion,
            'mediaType': self.mediaType,
            'artifactType': self.artifactType,
            'manifests': [entry.as_dict() for entry in self.manifests],
        })

        # docker's manifest-list does not know about annotations
        if self.annotations and self.mediaType != DOCKER_MANIFEST_LIST_MIME:
            raw['annotations'] = self.annotations

        return raw

    @property
    def manifest_type(self) -> ManifestType:
        return ManifestType.INDEX


# a manifest is either a single image-manifest, or an index (a.k.a. manifest-list)
Manifest = ImageManifest | ImageIndex

_dacite_cfg = dacite.Config(
    type_hooks={
        Platform: Platform.from_dict,
    },
)


def as_manifest(
    manifest: str | bytes | dict | ImageManifest | ImageIndex,
    media_type: str=None,
) -> Manifest:
    '''
    returns a deserialised equivalent of the passed-in manifest. For convenience, if passed-in
    manifest is already an instance of either ImageManifest or ImageIndex, the passed value is
    returned unchanged.

    the variant is determined by `mediaType` (falling back to the passed `media_type`, which
    is typically the `Content-Type` a registry returned), or by structure if neither is set.
    '''
    if isinstance(manifest, (ImageManifest, ImageIndex)):
        return manifest

    if isinstance(manifest, (str, bytes)):
        try:
            manifest = json.loads(manifest)
        except json.JSONDecodeError as jde:
            raise oe.UnsupportedMediaType(f'manifest is not valid json: {jde}') from jde

    if not isinstance(manifest, dict):
        raise oe.UnsupportedMediaType(f'unexpected manifest: {type(manifest)=}')

    if (schema_version := manifest.get('schemaVersion')) != 2:
        raise oe.UnsupportedMediaType(f'unsupported {schema_version=}')

    if not (mime := manifest.get('mediaType')):
        mime = media_type

    if mime in IMAGE_INDEX_MIMES or (not mime and 'manifests' in manifest):
        data_class = ImageIndex
    elif mime in IMAGE_MANIFEST_MIMES or (not mime and 'config' in manifest):
        data_class = ImageManifest
    else:
        raise oe.UnsupportedMediaType(f'unsupported manifest-mimetype: {mime=}')

    try:
        return dacite.from_dict(
            data_class=data_class,
            data=manifest,
            config=_dacite_cfg,
        )
    except dacite.DaciteError as de:
        raise oe.UnsupportedMediaType(f'malformed manifest: {de}') from de


def manifest_bytes(manifest: Manifest) -> bytes:
    '''
    returns the serialised form of the given manifest, as it is uploaded to registries
    (digests of manifests are calculated from those octets)
    '''
    return json.dumps(manifest.as_dict()).encode('utf-8')


def manifest_digest(manifest: Manifest) -> str:
    return od.digest_of(manifest_bytes(manifest))


def manifest_mimetype(manifest: Manifest) -> str:
    if manifest.mediaType:
        return manifest.mediaType
    if isinstance(manifest, ImageIndex):
        return OCI_IMAGE_INDEX_MIME
    return OCI_IMAGE_MANIFEST_MIME


@dataclasses.dataclass
class ImageLayer:
    data: bytes
    media_type: str
    annotations: dict[str, str] | None = None

    @property
    def sha256_digest(self) -> str:
        return od.digest_of(self.data)

    def descriptor(self) -> Descriptor:
        return Descriptor(
            mediaType=self.media_type,
            digest=self.sha256_digest,
            size=len(self.data),
            annotations=self.annotations,
        )


@dataclasses.dataclass
class Config:
    data: bytes
    media_type: str = IMAGE_CONFIG_MIME
    annotations: dict[str, str] | None = None

    @property
    def sha256_digest(self) -> str:
        return od.digest_of(self.data)

    def descriptor(self) -> Descriptor:
        return Descriptor(
            mediaType=self.media_type,
            digest=self.sha256_digest,
            size=len(self.data),
            annotations=self.annotations,
        )


@dataclasses.dataclass
class ImageData:
    '''
    result of pulling an image. If the pulled manifest was an index that could not be resolved
    to a single image, `manifest` is the index, `config` is None and `layers` is empty.
    '''
    manifest: Manifest
    digest: str
    config: Config | None
    layers: list[ImageLayer] = dataclasses.field(default_factory=list)


@dataclasses.dataclass(frozen=True)
class PushResponse:
    config_url: str
    manifest_url: str


@dataclasses.dataclass
class TagList:
    name: str
    tags: list[str] = dataclasses.field(default_factory=list)
