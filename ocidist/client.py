import asyncio
import collections.abc
import json
import logging

import aiohttp

import ocidist.auth as oa
import ocidist.config as oconf
import ocidist.digest as od
import ocidist.errors as oe
import ocidist.model as om
import ocidist.reference as oref
import ocidist.upload as ou
import ocidist.util as outil

logger = logging.getLogger(__name__)

oci_request_logger = logging.getLogger('ocidist.client.request_logger')
oci_request_logger.setLevel(logging.DEBUG)

USER_AGENT = 'ocidist (python3; aiohttp)'

CONTENT_DIGEST_HEADER = 'Docker-Content-Digest'
REFERRERS_FILTERS_HEADER = 'OCI-Filters-Applied'

_DOWNLOAD_CHUNK_SIZE = 64 * 1024

# returns the entry to use from an image-index, or None if there is no match
PlatformResolver = collections.abc.Callable[
    [list[om.ImageIndexEntry]],
    om.ImageIndexEntry | None,
]


class OciRoutes:
    def __init__(
        self,
        config: oconf.ClientConfig,
    ):
        self.config = config

    def base_api_url(self, reference: oref.Reference) -> str:
        registry = reference.api_registry
        scheme = self.config.scheme(registry=registry)

        return outil.urljoin(f'{scheme}://{registry}', 'v2') + '/'

    def artifact_base_url(self, reference: oref.Reference) -> str:
        return outil.urljoin(
            self.base_api_url(reference=reference),
            reference.repository,
        )

    def _blobs_url(self, reference: oref.Reference) -> str:
        return outil.urljoin(
            self.artifact_base_url(reference),
            'blobs',
        )

    def blob_url(self, reference: oref.Reference, digest: str) -> str:
        return outil.urljoin(
            self._blobs_url(reference=reference),
            digest,
        )

    def uploads_url(self, reference: oref.Reference) -> str:
        return outil.urljoin(
            self._blobs_url(reference=reference),
            'uploads',
        ) + '/'

    def mount_url(
        self,
        reference: oref.Reference,
        digest: str,
        source_repository: str,
    ) -> str:
        return ou.with_query(
            self.uploads_url(reference=reference),
            mount=digest,
            **{'from': source_repository},
        )

    def manifest_url(self, reference: oref.Reference) -> str:
        return outil.urljoin(
            self.artifact_base_url(reference=reference),
            'manifests',
            reference.manifest_ref,
        )

    def ls_tags_url(
        self,
        reference: oref.Reference,
        n: int=None,
        last: str=None,
    ) -> str:
        url = outil.urljoin(
            self.artifact_base_url(reference),
            'tags',
            'list',
        )

        query = {}
        if n is not None:
            query['n'] = n
        if last:
            query['last'] = last

        if not query:
            return url

        return ou.with_query(url, **query)

    def referrers_url(
        self,
        reference: oref.Reference,
        digest: str,
        artifact_type: str=None,
    ) -> str:
        url = outil.urljoin(
            self.artifact_base_url(reference),
            'referrers',
            digest,
        )

        if not artifact_type:
            return url

        return ou.with_query(url, artifactType=artifact_type)


def _scope(reference: oref.Reference, action: str):
    # action = 'pull' | 'pull,push'
    return f'repository:{reference.repository}:{action}'


def referrers_tag(digest: str) -> str:
    '''
    returns the tag under which referrers are stored by registries lacking native support for
    the referrers-api (see "referrers tag schema" in oci-distribution-spec)
    '''
    algorithm, hexdigest = od.parse(digest)
    return f'{algorithm[:32]}-{hexdigest[:64]}'


def _error_message(body: bytes) -> str:
    '''
    renders the (optional) error-document returned by registries into a human-readable form
    '''
    if not body:
        return ''

    try:
        errors = json.loads(body).get('errors') or []
        return '; '.join(
            f'{error.get("code")}: {error.get("message")}' for error in errors
        )
    except (ValueError, AttributeError):
        return body[:256].decode('utf-8', errors='replace')


def _media_type(res: aiohttp.ClientResponse) -> str | None:
    if not (content_type := res.headers.get('Content-Type')):
        return None
    return content_type.split(';')[0].strip()


def _verify_content_digest(octets: bytes, claimed_digest: str) -> str:
    '''
    checks the digest claimed by a registry (typically via `Docker-Content-Digest` header)
    against the locally computed one, using the algorithm named in the claimed digest.
    '''
    try:
        od.validate(claimed_digest)
    except oe.InvalidReference:
        raise oe.DigestMismatch(
            expected=claimed_digest,
            actual=od.digest_of(octets),
        )

    return od.verify(octets, expected_digest=claimed_digest)


def _redacted(headers: dict) -> dict:
    return {
        k: ('<redacted>' if k.lower() == 'authorization' else v)
        for k, v in headers.items()
    }


class Client:
    def __init__(
        self,
        config: oconf.ClientConfig=None,
        session: aiohttp.ClientSession=None,
        platform_resolver: PlatformResolver=None,
        token_cache: oa.TokenCache=None,
    ):
        '''
        @param config <ClientConfig>
        @param session <ClientSession>
            if not passed, a session will be created upon first request, and closed by `close`
        @param platform_resolver <Callable>
            used to pick an entry from image-indexes (see ocidist.platform). If absent, only
            indexes with exactly one entry are resolved
        @param token_cache <TokenCache>
            holds tokens and stored credentials. Not intended to be shared between clients
        '''
        self.config = config or oconf.ClientConfig()
        self.routes = OciRoutes(config=self.config)
        self.token_cache = token_cache or oa.TokenCache()
        self.platform_resolver = platform_resolver

        self._session = session
        self._owns_session = session is None
        self._ssl = self.config.ssl()
        self._timeout = self.config.timeout()

        # semaphores hand out slots in FIFO-order
        self._download_slots = asyncio.Semaphore(self.config.max_concurrent_download)
        self._upload_slots = asyncio.Semaphore(self.config.max_concurrent_upload)

    @property
    def session(self) -> aiohttp.ClientSession:
        if not self._session:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self):
        if self._owns_session and self._session:
            await self._session.close()
            self._session = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.close()

    def store_auth(
        self,
        registry: str,
        auth: oa.RegistryAuth,
    ):
        '''
        stores credentials for later use for requests against the given registry (if no
        credentials are passed explicitly). No network round trip is done.
        '''
        self.token_cache.store_credentials(registry=registry, auth=auth)

    def _credentials(
        self,
        reference: oref.Reference,
        auth: oa.RegistryAuth | None,
    ) -> oa.RegistryAuth:
        if auth:
            if not self.token_cache.stored_credentials(registry=reference.registry):
                self.store_auth(registry=reference.registry, auth=auth)
            return auth

        if stored := self.token_cache.stored_credentials(registry=reference.registry):
            return stored

        return oa.anonymous_auth()

    async def _send(
        self,
        method: str,
        url: str,
        headers: dict,
        operation: str,
        reference: oref.Reference,
        **kwargs,
    ) -> aiohttp.ClientResponse:
        oci_request_logger.debug(
            msg=f'oci request sent {method=} {url=}',
            extra={
                'method': method,
                'url': url,
                'headers': _redacted(headers),
            },
        )

        with outil.transport_errors(operation=operation, reference=reference):
            return await self.session.request(
                method=method,
                url=url,
                headers=headers,
                ssl=self._ssl,
                timeout=self._timeout,
                proxy=self.config.proxy(url),
                **kwargs,
            )

    async def _exchange_token(
        self,
        reference: oref.Reference,
        scope: str,
        credentials: oa.RegistryAuth,
        challenge: oa.BearerChallenge,
        operation: str,
    ) -> oa.OauthToken:
        params = {'scope': challenge.scope or scope}
        if challenge.service:
            params['service'] = challenge.service

        realm = ou.with_query(challenge.realm, **params)

        if credentials.auth_type is oa.RegistryAuthType.BASIC:
            auth = aiohttp.BasicAuth(
                login=credentials.username,
                password=credentials.password,
            )
        else:
            auth = None

        logger.debug(f'token-exchange against {challenge.realm=} for {params=}')

        with outil.transport_errors(operation=operation, reference=reference):
            res = await self.session.get(
                url=realm,
                auth=auth,
                headers={'User-Agent': USER_AGENT},
                ssl=self._ssl,
                timeout=self._timeout,
                proxy=self.config.proxy(realm),
            )
            body = await res.read()

        if res.status in (401, 403):
            raise oe.AuthenticationFailed(
                f'token-exchange against {challenge.realm} was rejected: {_error_message(body)}',
                operation=operation,
                reference=reference,
                status=res.status,
            )
        if not res.ok:
            raise oe.TransportError(
                f'token-exchange against {challenge.realm} failed: {_error_message(body)}',
                operation=operation,
                reference=reference,
                status=res.status,
            )

        try:
            token = oa.OauthToken.from_response(
                token_dict=json.loads(body),
                default_expires_in=self.config.default_token_expiration_secs,
            )
            self.token_cache.set_token(
                registry=reference.registry,
                repository=reference.repository,
                scope=scope,
                token=token,
            )
        except (ValueError, AttributeError) as e:
            # malformed, or already expired (e.g. due to clock-skew)
            raise oe.AuthenticationFailed(
                f'could not use token-response: {e}',
                operation=operation,
                reference=reference,
            ) from e

        return token

    async def _request(
        self,
        url: str,
        reference: oref.Reference,
        scope: str,
        credentials: oa.RegistryAuth,
        operation: str,
        method: str='GET',
        headers: dict=None,
        raise_for_status=True,
        warn_if_not_ok=True,
        **kwargs,
    ) -> aiohttp.ClientResponse:
        '''
        sends a request, authorised w/ the given credentials. If the registry challenges for a
        bearer-token, the token is retrieved, and the request is retried exactly once.

        request-bodies (if any) must be passed as bytes, so they can be re-sent.
        '''
        def request_headers():
            return {
                'User-Agent': USER_AGENT,
                **(headers or {}),
                **oa.authorize(
                    registry=reference.registry,
                    repository=reference.repository,
                    scope=scope,
                    credentials=credentials,
                    token_cache=self.token_cache,
                ),
            }

        res = await self._send(
            method=method,
            url=url,
            headers=request_headers(),
            operation=operation,
            reference=reference,
            **kwargs,
        )

        if res.status == 401:
            challenge = oa.parse_challenge(res.headers.get('WWW-Authenticate'))
            body = await self._read(res, operation=operation, reference=reference)

            if not challenge or credentials.auth_type is oa.RegistryAuthType.BEARER:
                raise oe.AuthenticationFailed(
                    f'{method} {url} was rejected: {_error_message(body)}',
                    operation=operation,
                    reference=reference,
                    status=401,
                )

            await self._exchange_token(
                reference=reference,
                scope=scope,
                credentials=credentials,
                challenge=challenge,
                operation=operation,
            )

            res = await self._send(
                method=method,
                url=url,
                headers=request_headers(),
                operation=operation,
                reference=reference,
                **kwargs,
            )

            if res.status == 401:
                body = await self._read(res, operation=operation, reference=reference)
                raise oe.AuthenticationFailed(
                    f'{method} {url} was rejected after token-exchange: {_error_message(body)}',
                    operation=operation,
                    reference=reference,
                    status=401,
                )

        if not res.ok and warn_if_not_ok:
            logger.warning(f'rq against {url=} failed {res.status=} {res.reason=} {method=}')

        if raise_for_status:
            await self._raise_for_status(res, operation=operation, reference=reference)

        return res

    async def _read(
        self,
        res: aiohttp.ClientResponse,
        operation: str,
        reference: oref.Reference,
    ) -> bytes:
        with outil.transport_errors(operation=operation, reference=reference):
            return await res.read()

    async def _raise_for_status(
        self,
        res: aiohttp.ClientResponse,
        operation: str,
        reference: oref.Reference,
    ):
        if res.ok:
            return

        body = await self._read(res, operation=operation, reference=reference)
        msg = f'{res.method} {res.url} failed: {res.status} {res.reason} {_error_message(body)}'

        if res.status == 404:
            exc_type = oe.NotFound
        elif res.status in (401, 403):
            exc_type = oe.AuthenticationFailed
        else:
            exc_type = oe.TransportError

        raise exc_type(
            msg,
            operation=operation,
            reference=reference,
            status=res.status,
        )

    def resolve_index(
        self,
        index: om.ImageIndex,
    ) -> om.ImageIndexEntry | None:
        '''
        picks the entry to use from the given index. If a platform-resolver was configured, it
        decides; otherwise, only indexes w/ exactly one entry are resolved unambiguously.
        '''
        if self.platform_resolver:
            return self.platform_resolver(index.manifests)

        if len(index.manifests) == 1:
            return index.manifests[0]

        return None

    async def _pull_manifest(
        self,
        reference: oref.Reference,
        credentials: oa.RegistryAuth,
        accepted_media_types: collections.abc.Iterable[str]=(),
        operation: str='pull_manifest',
    ) -> tuple[bytes, str, str | None]:
        accept = ', '.join(dict.fromkeys((
            *om.DEFAULT_ACCEPTED_MANIFEST_MIMES,
            *(accepted_media_types or ()),
        )))

        res = await self._request(
            url=self.routes.manifest_url(reference=reference),
            reference=reference,
            scope=_scope(reference=reference, action='pull'),
            credentials=credentials,
            operation=operation,
            headers={
                'Accept': accept,
            },
        )
        raw = await self._read(res, operation=operation, reference=reference)

        if claimed_digest := res.headers.get(CONTENT_DIGEST_HEADER):
            digest = _verify_content_digest(raw, claimed_digest=claimed_digest)
        else:
            # recomputed digest is authoritative
            digest = od.digest_of(raw)

        if reference.digest:
            if digest != reference.digest:
                digest = od.verify(raw, expected_digest=reference.digest)

        return raw, digest, _media_type(res)

    async def pull_manifest_raw(
        self,
        reference: str | oref.Reference,
        auth: oa.RegistryAuth=None,
        accepted_media_types: collections.abc.Iterable[str]=(),
    ) -> tuple[bytes, str]:
        '''
        returns the manifest's octets (as returned by registry), and its (verified) digest
        '''
        reference = oref.resolve(reference)

        raw, digest, _ = await self._pull_manifest(
            reference=reference,
            credentials=self._credentials(reference=reference, auth=auth),
            accepted_media_types=accepted_media_types,
            operation='pull_manifest_raw',
        )

        return raw, digest

    async def pull_manifest(
        self,
        reference: str | oref.Reference,
        auth: oa.RegistryAuth=None,
        accepted_media_types: collections.abc.Iterable[str]=(),
    ) -> tuple[om.Manifest, str]:
        '''
        returns the parsed manifest (either ImageManifest or ImageIndex) and its digest.

        The `Accept` header always lists OCI-image-manifest, OCI-image-index, and the docker
        equivalents (in this order of preference), followed by passed `accepted_media_types`.
        '''
        reference = oref.resolve(reference)

        raw, digest, media_type = await self._pull_manifest(
            reference=reference,
            credentials=self._credentials(reference=reference, auth=auth),
            accepted_media_types=accepted_media_types,
        )

        try:
            manifest = om.as_manifest(raw, media_type=media_type)
        except oe.UnsupportedMediaType as umt:
            umt.operation = 'pull_manifest'
            umt.reference = reference
            raise

        return manifest, digest

    async def pull_image_manifest(
        self,
        reference: str | oref.Reference,
        auth: oa.RegistryAuth=None,
    ) -> tuple[om.ImageManifest, str]:
        '''
        like `pull_manifest`, but resolves image-indexes to a single image-manifest (see
        `resolve_index`). Raises NotFound if resolution is not possible.
        '''
        reference = oref.resolve(reference)

        manifest, digest = await self.pull_manifest(reference=reference, auth=auth)

        if isinstance(manifest, om.ImageManifest):
            return manifest, digest

        if not (entry := self.resolve_index(index=manifest)):
            raise oe.NotFound(
                f'no matching entry in index (of {len(manifest.manifests)} entries)',
                operation='pull_image_manifest',
                reference=reference,
            )

        manifest, digest = await self.pull_manifest(
            reference=reference.with_digest(entry.digest),
            auth=auth,
        )

        if not isinstance(manifest, om.ImageManifest):
            raise oe.UnsupportedMediaType(
                f'expected image-manifest, got {manifest.mediaType=}',
                operation='pull_image_manifest',
                reference=reference,
            )

        return manifest, digest

    async def fetch_manifest_digest(
        self,
        reference: str | oref.Reference,
        auth: oa.RegistryAuth=None,
    ) -> str:
        '''
        returns the manifest's digest, preferrably as returned in response to a HEAD-request.
        If registry omits the `Docker-Content-Digest` header, the manifest is retrieved, and
        its digest is computed.
        '''
        reference = oref.resolve(reference)
        credentials = self._credentials(reference=reference, auth=auth)

        res = await self._request(
            url=self.routes.manifest_url(reference=reference),
            reference=reference,
            scope=_scope(reference=reference, action='pull'),
            credentials=credentials,
            operation='fetch_manifest_digest',
            method='HEAD',
            headers={
                'Accept': ', '.join(om.DEFAULT_ACCEPTED_MANIFEST_MIMES),
            },
        )
        await self._read(res, operation='fetch_manifest_digest', reference=reference)

        digest = res.headers.get(CONTENT_DIGEST_HEADER)
        if digest and od.DIGEST_PATTERN.match(digest):
            if reference.digest and digest != reference.digest:
                raise oe.DigestMismatch(
                    expected=reference.digest,
                    actual=digest,
                    operation='fetch_manifest_digest',
                    reference=reference,
                )
            return digest

        logger.debug(f'{reference=}: no (usable) digest-header in HEAD-response - falling back')
        _, digest, _ = await self._pull_manifest(
            reference=reference,
            credentials=credentials,
            operation='fetch_manifest_digest',
        )

        return digest

    async def push_manifest_raw(
        self,
        reference: str | oref.Reference,
        raw: bytes,
        media_type: str,
        auth: oa.RegistryAuth=None,
    ) -> str:
        '''
        uploads the given manifest-octets. If the reference carries a digest, it must match the
        digest of the given octets. Returns the manifest's url.
        '''
        reference = oref.resolve(reference)

        if reference.digest:
            od.verify(raw, expected_digest=reference.digest)
            digest = reference.digest
        else:
            digest = od.digest_of(raw)

        logger.debug(f'pushing manifest {reference=} {media_type=} {digest=}')

        res = await self._request(
            url=self.routes.manifest_url(reference=reference),
            reference=reference,
            scope=_scope(reference=reference, action='pull,push'),
            credentials=self._credentials(reference=reference, auth=auth),
            operation='push_manifest',
            method='PUT',
            headers={
                'Content-Type': media_type,
            },
            data=raw,
            raise_for_status=False,
        )

        if not res.ok:
            logger.warning(f'our manifest was rejected (see below for more details): {raw=}')
        await self._raise_for_status(res, operation='push_manifest', reference=reference)
        await self._read(res, operation='push_manifest', reference=reference)

        if res.status != 201: # registries MUST respond w/ 201
            raise oe.TransportError(
                f'unexpected response to manifest-upload (expected 201): {res.status=}',
                operation='push_manifest',
                reference=reference,
                status=res.status,
            )

        if echoed_digest := res.headers.get(CONTENT_DIGEST_HEADER):
            try:
                _verify_content_digest(raw, claimed_digest=echoed_digest)
            except oe.DigestMismatch as dm:
                dm.operation = 'push_manifest'
                dm.reference = reference
                raise

        if location := res.headers.get('Location'):
            return ou.absolute_location(location, request_url=res.url)

        return self.routes.manifest_url(reference=reference.with_digest(digest))

    async def push_manifest(
        self,
        reference: str | oref.Reference,
        manifest: om.Manifest,
        auth: oa.RegistryAuth=None,
    ) -> str:
        return await self.push_manifest_raw(
            reference=reference,
            raw=om.manifest_bytes(manifest),
            media_type=om.manifest_mimetype(manifest),
            auth=auth,
        )

    async def push_manifest_list(
        self,
        reference: str | oref.Reference,
        manifest_list: om.ImageIndex,
        auth: oa.RegistryAuth=None,
    ) -> str:
        '''
        uploads the given image-index. Manifests referenced from index are expected to have
        been uploaded before (they are not uploaded implicitly).
        '''
        if not isinstance(manifest_list, om.ImageIndex):
            raise oe.UnsupportedMediaType(
                f'expected an image-index, got {type(manifest_list)=}',
                operation='push_manifest_list',
                reference=reference,
            )

        return await self.push_manifest(
            reference=reference,
            manifest=manifest_list,
            auth=auth,
        )

    async def pull_referrers(
        self,
        reference: str | oref.Reference,
        artifact_type: str=None,
        auth: oa.RegistryAuth=None,
    ) -> om.ImageIndex:
        '''
        returns an index listing the manifests referring to the given (subject) manifest,
        optionally filtered by artifact-type. Registries lacking support for the referrers-api
        are handled by falling back to the referrers-tag-schema.

        absence of referrers yields an empty index.
        '''
        reference = oref.resolve(reference)
        credentials = self._credentials(reference=reference, auth=auth)

        if not (digest := reference.digest):
            digest = await self.fetch_manifest_digest(reference=reference, auth=credentials)

        res = await self._request(
            url=self.routes.referrers_url(
                reference=reference,
                digest=digest,
                artifact_type=artifact_type,
            ),
            reference=reference,
            scope=_scope(reference=reference, action='pull'),
            credentials=credentials,
            operation='pull_referrers',
            headers={
                'Accept': om.OCI_IMAGE_INDEX_MIME,
            },
            raise_for_status=False,
            warn_if_not_ok=False,
        )

        if res.status == 404:
            await self._read(res, operation='pull_referrers', reference=reference)
            logger.debug(f'{reference=}: no referrers-api - falling back to tag-schema')
            index = await self._referrers_from_tag_schema(
                reference=reference,
                digest=digest,
                credentials=credentials,
            )
            filters_applied = False
        else:
            await self._raise_for_status(res, operation='pull_referrers', reference=reference)
            raw = await self._read(res, operation='pull_referrers', reference=reference)
            index = om.as_manifest(raw, media_type=om.OCI_IMAGE_INDEX_MIME)
            filters_applied = 'artifactType' in res.headers.get(REFERRERS_FILTERS_HEADER, '')

        if not isinstance(index, om.ImageIndex):
            raise oe.UnsupportedMediaType(
                f'expected referrers to be returned as index, got: {index.mediaType=}',
                operation='pull_referrers',
                reference=reference,
            )

        if artifact_type and not filters_applied:
            index.manifests = [
                entry for entry in index.manifests
                if entry.artifactType == artifact_type
            ]

        return index

    async def _referrers_from_tag_schema(
        self,
        reference: oref.Reference,
        digest: str,
        credentials: oa.RegistryAuth,
    ) -> om.ImageIndex:
        try:
            index, _ = await self.pull_manifest(
                reference=reference.with_tag(referrers_tag(digest)),
                auth=credentials,
            )
        except oe.NotFound:
            return om.ImageIndex(manifests=[])

        return index

    async def list_tags(
        self,
        reference: str | oref.Reference,
        auth: oa.RegistryAuth=None,
        n: int=None,
        last: str=None,
    ) -> om.TagList:
        reference = oref.resolve(reference)

        res = await self._request(
            url=self.routes.ls_tags_url(reference=reference, n=n, last=last),
            reference=reference,
            scope=_scope(reference=reference, action='pull'),
            credentials=self._credentials(reference=reference, auth=auth),
            operation='list_tags',
        )
        body = await self._read(res, operation='list_tags', reference=reference)

        # some registries will return http-200 + HTML in certain error cases
        try:
            tags_res = json.loads(body)
            return om.TagList(
                name=tags_res.get('name', reference.repository),
                tags=tags_res.get('tags') or [],
            )
        except (ValueError, AttributeError) as e:
            raise oe.TransportError(
                f'unexpected response to tags-listing: {e}; {_media_type(res)=}',
                operation='list_tags',
                reference=reference,
                status=res.status,
            ) from e

    async def blob_exists(
        self,
        reference: str | oref.Reference,
        digest: str,
        auth: oa.RegistryAuth=None,
    ) -> bool:
        reference = oref.resolve(reference)
        od.validate(digest)

        res = await self._request(
            url=self.routes.blob_url(reference=reference, digest=digest),
            reference=reference,
            scope=_scope(reference=reference, action='pull'),
            credentials=self._credentials(reference=reference, auth=auth),
            operation='blob_exists',
            method='HEAD',
            raise_for_status=False,
            warn_if_not_ok=False,
        )
        await self._read(res, operation='blob_exists', reference=reference)

        if res.status == 404:
            return False

        await self._raise_for_status(res, operation='blob_exists', reference=reference)

        return True

    async def pull_blob_stream(
        self,
        reference: str | oref.Reference,
        digest: str,
        auth: oa.RegistryAuth=None,
        size: int=None,
    ) -> collections.abc.AsyncGenerator[bytes, None]:
        '''
        yields the blob's content in chunks. The digest (and size, if passed) is verified once
        the last chunk was received; callers must discard what they received so far if this
        raises.

        a download-slot is held until the stream is exhausted (or closed).
        '''
        reference = oref.resolve(reference)
        algorithm, _ = od.parse(digest)

        async with self._download_slots:
            res = await self._request(
                url=self.routes.blob_url(reference=reference, digest=digest),
                reference=reference,
                scope=_scope(reference=reference, action='pull'),
                credentials=self._credentials(reference=reference, auth=auth),
                operation='pull_blob',
            )

            try:
                claimed_digest = res.headers.get(CONTENT_DIGEST_HEADER)
                # registries may echo a digest of a different algorithm; content is verified below
                if claimed_digest and claimed_digest.partition(':')[0] == algorithm \
                    and claimed_digest != digest:
                    raise oe.DigestMismatch(
                        expected=digest,
                        actual=claimed_digest,
                        operation='pull_blob',
                        reference=reference,
                    )

                with outil.transport_errors(operation='pull_blob', reference=reference):
                    async for chunk in od.iter_verified(
                        chunks=res.content.iter_chunked(_DOWNLOAD_CHUNK_SIZE),
                        expected_digest=digest,
                        expected_size=size,
                    ):
                        yield chunk
            finally:
                res.close()

    async def pull_blob(
        self,
        reference: str | oref.Reference,
        digest: str,
        auth: oa.RegistryAuth=None,
        size: int=None,
    ) -> bytes:
        '''
        returns the (verified) blob-content. No partial content is ever returned.
        '''
        buf = bytearray()

        stream = self.pull_blob_stream(
            reference=reference,
            digest=digest,
            auth=auth,
            size=size,
        )
        try:
            async for chunk in stream:
                buf += chunk
        finally:
            await stream.aclose()

        return bytes(buf)

    async def pull_blobs(
        self,
        reference: str | oref.Reference,
        descriptors: collections.abc.Iterable[om.Descriptor],
        auth: oa.RegistryAuth=None,
    ) -> list[bytes]:
        '''
        retrieves the given blobs concurrently (bounded by `max_concurrent_download`), and
        returns their contents in the order of the passed descriptors. The first failure
        cancels all other downloads.
        '''
        reference = oref.resolve(reference)

        return await outil.gather(
            self.pull_blob(
                reference=reference,
                digest=descriptor.digest,
                auth=auth,
                size=descriptor.size,
            ) for descriptor in descriptors
        )

    async def push_blob(
        self,
        reference: str | oref.Reference,
        data: bytes,
        digest: str=None,
        auth: oa.RegistryAuth=None,
    ) -> str:
        '''
        uploads the given blob (unless it already exists), and returns the blob's url. If a
        digest is passed, it must match the data's digest.

        depending on configuration, the upload is done monolithically (single PUT), or
        chunked (sequence of PATCH requests).
        '''
        reference = oref.resolve(reference)

        if digest:
            try:
                od.verify(data, expected_digest=digest)
            except oe.DigestMismatch as dm:
                dm.operation = 'push_blob'
                dm.reference = reference
                raise
        else:
            digest = od.digest_of(data)

        credentials = self._credentials(reference=reference, auth=auth)
        blob_url = self.routes.blob_url(reference=reference, digest=digest)

        async with self._upload_slots:
            if await self.blob_exists(reference=reference, digest=digest, auth=credentials):
                logger.debug(f'skipping blob upload {digest=} - already exists')
                return blob_url

            if self.config.use_monolithic_push:
                await self._push_blob_monolithic(
                    reference=reference,
                    data=data,
                    digest=digest,
                    credentials=credentials,
                )
            else:
                await self._push_blob_chunked(
                    reference=reference,
                    data=data,
                    digest=digest,
                    credentials=credentials,
                )

        return blob_url

    async def _start_upload(
        self,
        reference: oref.Reference,
        digest: str,
        credentials: oa.RegistryAuth,
    ) -> ou.UploadSession:
        res = await self._request(
            url=self.routes.uploads_url(reference=reference),
            reference=reference,
            scope=_scope(reference=reference, action='pull,push'),
            credentials=credentials,
            operation='push_blob',
            method='POST',
            headers={
                'Content-Length': '0',
            },
            data=b'',
        )
        await self._read(res, operation='push_blob', reference=reference)

        if not (location := res.headers.get('Location')):
            raise oe.TransportError(
                'registry did not return an upload-location',
                operation='push_blob',
                reference=reference,
                status=res.status,
            )

        return ou.UploadSession(
            location=ou.absolute_location(location, request_url=res.url),
            digest=digest,
        )

    async def _finalize_upload(
        self,
        reference: oref.Reference,
        session: ou.UploadSession,
        credentials: oa.RegistryAuth,
        data: bytes=b'',
    ):
        res = await self._request(
            url=session.finalize_url(),
            reference=reference,
            scope=_scope(reference=reference, action='pull,push'),
            credentials=credentials,
            operation='push_blob',
            method='PUT',
            headers={
                'Content-Type': om.OCTET_STREAM_MIME,
                'Content-Length': str(len(data)),
            },
            data=data,
        )
        await self._read(res, operation='push_blob', reference=reference)

        # 202 indicates the upload actually did not succeed e.g. for "docker-hub"
        if res.status != 201:
            raise oe.TransportError(
                f'unexpected response to blob-upload (expected 201): {res.status=}',
                operation='push_blob',
                reference=reference,
                status=res.status,
            )

        session.commit()

    async def _push_blob_monolithic(
        self,
        reference: oref.Reference,
        data: bytes,
        digest: str,
        credentials: oa.RegistryAuth,
    ):
        logger.debug(f'monolithic upload {reference=} {digest=} octets_count={len(data)}')

        # XXX according to distribution-spec, single-POST should also work - however
        # this seems not to be true for registry-1.docker.io. Thus, always do a two-step upload
        session = await self._start_upload(
            reference=reference,
            digest=digest,
            credentials=credentials,
        )

        try:
            await self._finalize_upload(
                reference=reference,
                session=session,
                credentials=credentials,
                data=data,
            )
        except BaseException as e:
            session.invalidate(reason=f'{type(e).__name__}: {e}')
            raise

    async def _push_blob_chunked(
        self,
        reference: oref.Reference,
        data: bytes,
        digest: str,
        credentials: oa.RegistryAuth,
    ):
        chunk_size = self.config.push_chunk_size
        logger.debug(f'chunked upload {reference=} {digest=} {chunk_size=}')

        session = await self._start_upload(
            reference=reference,
            digest=digest,
            credentials=credentials,
        )

        try:
            for offset in range(0, len(data), chunk_size):
                chunk = data[offset:offset + chunk_size]
                await self._push_chunk(
                    reference=reference,
                    session=session,
                    chunk=chunk,
                    credentials=credentials,
                )

            await self._finalize_upload(
                reference=reference,
                session=session,
                credentials=credentials,
            )
        except BaseException as e:
            session.invalidate(reason=f'{type(e).__name__}: {e}')
            raise

    async def _push_chunk(
        self,
        reference: oref.Reference,
        session: ou.UploadSession,
        chunk: bytes,
        credentials: oa.RegistryAuth,
    ):
        res = await self._request(
            url=session.location,
            reference=reference,
            scope=_scope(reference=reference, action='pull,push'),
            credentials=credentials,
            operation='push_blob',
            method='PATCH',
            headers={
                'Content-Type': om.OCTET_STREAM_MIME,
                'Content-Range': session.chunk_range(chunk_size=len(chunk)),
                'Content-Length': str(len(chunk)),
            },
            data=chunk,
            raise_for_status=False,
        )
        body = await self._read(res, operation='push_blob', reference=reference)

        # 416: registry rejected range; 404: session is unknown (e.g. expired)
        if res.status in (404, 416):
            session.invalidate(reason=f'{res.status=}')
            raise oe.UploadSessionInvalid(
                f'upload-session was rejected: {_error_message(body)}',
                operation='push_blob',
                reference=reference,
                status=res.status,
            )

        await self._raise_for_status(res, operation='push_blob', reference=reference)

        if location := res.headers.get('Location'):
            location = ou.absolute_location(location, request_url=res.url)

        try:
            session.chunk_sent(
                chunk_size=len(chunk),
                location=location,
                reported_range=res.headers.get('Range'),
            )
        except oe.UploadSessionInvalid as usi:
            usi.operation = 'push_blob'
            usi.reference = reference
            usi.status = res.status
            raise

    async def mount_blob(
        self,
        reference: str | oref.Reference,
        source: str | oref.Reference,
        digest: str,
        auth: oa.RegistryAuth=None,
    ) -> bool:
        '''
        asks the registry to mount the given blob from source-repository into the target
        repository (thus avoiding the upload). Returns True if the blob was mounted, and False
        if registry declined (in which case the blob needs to be uploaded, e.g. by `push_blob`).
        '''
        reference = oref.resolve(reference)
        source = oref.resolve(source)
        od.validate(digest)

        if source.api_registry != reference.api_registry:
            raise oe.InvalidReference(
                f'cannot mount blobs across registries: {source.registry=}',
                operation='mount_blob',
                reference=reference,
            )

        res = await self._request(
            url=self.routes.mount_url(
                reference=reference,
                digest=digest,
                source_repository=source.repository,
            ),
            reference=reference,
            scope=_scope(reference=reference, action='pull,push'),
            credentials=self._credentials(reference=reference, auth=auth),
            operation='mount_blob',
            method='POST',
            headers={
                'Content-Length': '0',
            },
            data=b'',
        )
        await self._read(res, operation='mount_blob', reference=reference)

        if res.status == 201:
            return True

        # registry started a regular upload-session instead; we do not use it
        logger.debug(f'registry declined to mount {digest=} from {source=}: {res.status=}')
        return False
