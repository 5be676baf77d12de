'''
parsing of image references of the form

    <registry-host>[:<port>]/<repository>[:<tag>][@<digest>]

the registry host is mandatory. References w/o tag and w/o digest default to the `latest`
tag.
'''

import dataclasses
import re

import ocidist.digest as od
import ocidist.errors as oe

DEFAULT_TAG = 'latest'

# docker-cli compatibility: docker.io is only an alias for the actual api-endpoint
DOCKER_HUB_ALIAS = 'docker.io'
DOCKER_HUB_API_HOST = 'registry-1.docker.io'

NAME_TOTAL_LENGTH_MAX = 255

_path_component = r'[a-z0-9]+(?:[._-][a-z0-9]+)*'
REPOSITORY_PATTERN = re.compile(rf'^{_path_component}(?:/{_path_component})*$')
TAG_PATTERN = re.compile(r'^[A-Za-z0-9_][A-Za-z0-9._-]{0,127}$')

_domain_component = r'(?:[a-zA-Z0-9]|[a-zA-Z0-9][a-zA-Z0-9-]*[a-zA-Z0-9])'
REGISTRY_PATTERN = re.compile(
    rf'^(?:{_domain_component}(?:\.{_domain_component})*|\[[0-9a-fA-F:.]+\])(?::[0-9]+)?$'
)


def _looks_like_registry(component: str) -> bool:
    # same heuristics as used by docker-cli
    return '.' in component or ':' in component or component == 'localhost'


@dataclasses.dataclass(frozen=True)
class Reference:
    registry: str
    repository: str
    tag: str | None = None
    digest: str | None = None

    def __post_init__(self):
        if not self.registry or not REGISTRY_PATTERN.match(self.registry):
            raise oe.InvalidReference(f'invalid registry: {self.registry=}')
        if not REPOSITORY_PATTERN.match(self.repository):
            raise oe.InvalidReference(f'invalid repository: {self.repository=}')
        if len(self.registry) + 1 + len(self.repository) > NAME_TOTAL_LENGTH_MAX:
            raise oe.InvalidReference(
                f'repository-name must not exceed {NAME_TOTAL_LENGTH_MAX} characters'
            )
        if self.tag is not None and not TAG_PATTERN.match(self.tag):
            raise oe.InvalidReference(f'invalid tag: {self.tag=}')
        if self.digest is not None:
            od.validate(self.digest)
        if self.tag is None and self.digest is None:
            raise oe.InvalidReference('either tag or digest must be set')

    @staticmethod
    def parse(image_reference: str) -> 'Reference':
        if not isinstance(image_reference, str) or not image_reference:
            raise oe.InvalidReference(f'not a valid image-reference: {image_reference=}')

        if '://' in image_reference:
            raise oe.InvalidReference(
                f'image-references must not contain a scheme: {image_reference=}'
            )

        name, _, digest = image_reference.partition('@')
        if not digest:
            if image_reference.endswith('@'):
                raise oe.InvalidReference(f'empty digest: {image_reference=}')
            digest = None

        registry, sep, remainder = name.partition('/')
        if not sep or not _looks_like_registry(registry):
            raise oe.InvalidReference(
                f'image-reference must start with a registry-host: {image_reference=}'
            )

        # a colon after the last slash separates the tag
        repository, sep, tag = remainder.rpartition(':')
        if not sep or '/' in tag:
            repository = remainder
            tag = None
        elif not tag:
            raise oe.InvalidReference(f'empty tag: {image_reference=}')

        if not tag and digest is None:
            tag = DEFAULT_TAG

        return Reference(
            registry=registry,
            repository=repository,
            tag=tag,
            digest=digest,
        )

    @property
    def api_registry(self) -> str:
        '''
        the host (and port) to actually send requests to
        '''
        if self.registry == DOCKER_HUB_ALIAS:
            return DOCKER_HUB_API_HOST
        return self.registry

    @property
    def ref_without_tag(self) -> str:
        return f'{self.registry}/{self.repository}'

    @property
    def has_digest(self) -> bool:
        return self.digest is not None

    @property
    def manifest_ref(self) -> str:
        '''
        the tag-or-digest to use in manifest-urls; digests take precedence over tags
        '''
        return self.digest or self.tag

    def with_digest(self, digest: str) -> 'Reference':
        return Reference(
            registry=self.registry,
            repository=self.repository,
            tag=None,
            digest=digest,
        )

    def with_tag(self, tag: str) -> 'Reference':
        return Reference(
            registry=self.registry,
            repository=self.repository,
            tag=tag,
            digest=None,
        )

    def __str__(self):
        ref = self.ref_without_tag
        if self.tag:
            ref += f':{self.tag}'
        if self.digest:
            ref += f'@{self.digest}'
        return ref


def resolve(image_reference: str | Reference) -> Reference:
    if isinstance(image_reference, Reference):
        return image_reference
    return Reference.parse(image_reference)
