'''
book-keeping for chunked blob-uploads, as specified in oci-distribution-spec:
https://github.com/opencontainers/distribution-spec/blob/main/spec.md#pushing-a-blob-in-chunks

An upload-session is a small state-machine:

    STARTED -> UPLOADING -> FINALIZING -> COMMITTED

any divergence between the offset reported by the registry and the locally tracked offset
(or any other error) moves the session into the terminal INVALID state. Sessions are never
resumed; callers need to restart the upload from scratch.
'''

import dataclasses
import enum
import logging
import re
import urllib.parse

import ocidist.errors as oe

logger = logging.getLogger(__name__)

_range_pattern = re.compile(r'^(?:bytes=)?(\d+)-(\d+)$')


class UploadState(enum.Enum):
    STARTED = 'started'
    UPLOADING = 'uploading'
    FINALIZING = 'finalizing'
    COMMITTED = 'committed'
    INVALID = 'invalid'


def absolute_location(location: str, request_url: str) -> str:
    '''
    returned location-urls _may_ be relative
    '''
    if not location:
        raise ValueError('location must not be empty')
    return urllib.parse.urljoin(str(request_url), location)


def with_query(url: str, **params) -> str:
    if '?' in url:
        prefix = '&'
    else:
        prefix = '?'

    return url + prefix + urllib.parse.urlencode(params)


def parse_range(range_header: str) -> tuple[int, int]:
    if not (match := _range_pattern.match(range_header.strip())):
        raise ValueError(f'not a valid range: {range_header=}')
    return int(match.group(1)), int(match.group(2))


@dataclasses.dataclass
class UploadSession:
    location: str
    digest: str
    offset: int = 0
    state: UploadState = UploadState.STARTED

    def _require_state(self, *states: UploadState):
        if not self.state in states:
            raise oe.UploadSessionInvalid(
                f'upload-session in unexpected {self.state=} (expected one of {states})'
            )

    def chunk_range(self, chunk_size: int) -> str:
        '''
        returns the value for `Content-Range` for the next chunk of the given size
        '''
        self._require_state(UploadState.STARTED, UploadState.UPLOADING)
        return f'{self.offset}-{self.offset + chunk_size - 1}'

    def chunk_sent(
        self,
        chunk_size: int,
        location: str | None,
        reported_range: str | None,
    ):
        '''
        records a successfully transmitted chunk. If the registry reported the range it
        received so far, it must match the locally tracked offset.
        '''
        self._require_state(UploadState.STARTED, UploadState.UPLOADING)

        expected_offset = self.offset + chunk_size

        if reported_range:
            try:
                start, end = parse_range(reported_range)
            except ValueError as ve:
                self.invalidate(reason=str(ve))
                raise oe.UploadSessionInvalid(str(ve)) from ve

            if start != 0 or end + 1 != expected_offset:
                self.invalidate(reason=f'{reported_range=} vs {expected_offset=}')
                raise oe.UploadSessionInvalid(
                    f'registry reported {reported_range=}, expected 0-{expected_offset - 1}'
                )

        if expected_offset <= self.offset:
            # offsets must strictly increase; empty chunks are a programming error
            self.invalidate(reason='empty chunk')
            raise oe.UploadSessionInvalid(f'offset did not advance: {chunk_size=}')

        self.offset = expected_offset
        if location:
            self.location = location
        self.state = UploadState.UPLOADING

    def finalize_url(self) -> str:
        self._require_state(UploadState.STARTED, UploadState.UPLOADING)
        self.state = UploadState.FINALIZING
        return with_query(self.location, digest=self.digest)

    def commit(self):
        self._require_state(UploadState.FINALIZING)
        self.state = UploadState.COMMITTED

    def invalidate(self, reason: str):
        if self.state is UploadState.COMMITTED:
            return
        if self.state is not UploadState.INVALID:
            logger.warning(f'abandoning upload-session {self.location=} {self.digest=}: {reason}')
        self.state = UploadState.INVALID
