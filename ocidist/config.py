import dataclasses
import enum
import logging
import ssl
import urllib.parse

import aiohttp
import dacite

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT_UPLOAD = 16
DEFAULT_MAX_CONCURRENT_DOWNLOAD = 16
DEFAULT_TOKEN_EXPIRATION_SECS = 300
DEFAULT_PUSH_CHUNK_SIZE = 1024 * 1024 * 16 # 16 MiB


class ClientProtocol(enum.Enum):
    HTTP = 'http'
    HTTPS = 'https'
    HTTPS_EXCEPT = 'https_except'


class CertificateEncoding(enum.Enum):
    PEM = 'pem'
    DER = 'der'


@dataclasses.dataclass(frozen=True)
class Certificate:
    encoding: CertificateEncoding
    data: bytes


@dataclasses.dataclass(frozen=True)
class ClientConfig:
    '''
    @param protocol: whether to talk http or https to registries
    @param https_except_registries: registries (host[:port]) to talk plain http to if protocol
        is `HTTPS_EXCEPT`
    @param accept_invalid_certificates: disables tls-validation
    @param use_monolithic_push: upload blobs w/ a single PUT (instead of chunked PATCHes)
    @param extra_root_certificates: additional root-certificates to trust
    @param max_concurrent_upload: upper bound for parallel blob-uploads (per client)
    @param max_concurrent_download: upper bound for parallel blob-downloads (per client)
    @param default_token_expiration_secs: assumed lifetime of tokens that do not declare one
    @param read_timeout_ms: max time to wait for data on an already established connection
    @param connect_timeout_ms: max time to wait for (tcp+tls) connection establishment
    @param push_chunk_size: octets to send per PATCH-request (chunked upload)
    '''
    protocol: ClientProtocol = ClientProtocol.HTTPS
    https_except_registries: tuple[str, ...] = ()
    accept_invalid_certificates: bool = False
    use_monolithic_push: bool = False
    extra_root_certificates: tuple[Certificate, ...] = ()
    max_concurrent_upload: int = DEFAULT_MAX_CONCURRENT_UPLOAD
    max_concurrent_download: int = DEFAULT_MAX_CONCURRENT_DOWNLOAD
    default_token_expiration_secs: int = DEFAULT_TOKEN_EXPIRATION_SECS
    read_timeout_ms: int | None = None
    connect_timeout_ms: int | None = None
    http_proxy: str | None = None
    https_proxy: str | None = None
    no_proxy: str | None = None
    push_chunk_size: int = DEFAULT_PUSH_CHUNK_SIZE

    def __post_init__(self):
        if self.max_concurrent_upload < 1:
            raise ValueError(f'{self.max_concurrent_upload=} must be positive')
        if self.max_concurrent_download < 1:
            raise ValueError(f'{self.max_concurrent_download=} must be positive')
        if self.default_token_expiration_secs < 1:
            raise ValueError(f'{self.default_token_expiration_secs=} must be positive')
        if self.push_chunk_size < 1:
            raise ValueError(f'{self.push_chunk_size=} must be positive')

        for timeout in (self.read_timeout_ms, self.connect_timeout_ms):
            if timeout is not None and timeout < 1:
                raise ValueError(f'{timeout=} must be positive')

    @staticmethod
    def from_dict(raw: dict) -> 'ClientConfig':
        return dacite.from_dict(
            data_class=ClientConfig,
            data=raw,
            config=dacite.Config(
                cast=[ClientProtocol, CertificateEncoding, tuple],
                strict=True,
            ),
        )

    def scheme(self, registry: str) -> str:
        if self.protocol is ClientProtocol.HTTP:
            return 'http'
        if self.protocol is ClientProtocol.HTTPS:
            return 'https'
        if self.protocol is ClientProtocol.HTTPS_EXCEPT:
            if registry in self.https_except_registries:
                return 'http'
            return 'https'

        raise NotImplementedError(self.protocol)

    def ssl(self) -> ssl.SSLContext | bool:
        '''
        returns a value suitable to be passed as `ssl` argument to aiohttp
        '''
        if self.accept_invalid_certificates:
            return False

        if not self.extra_root_certificates:
            return True

        ctx = ssl.create_default_context()
        for cert in self.extra_root_certificates:
            if cert.encoding is CertificateEncoding.PEM:
                ctx.load_verify_locations(cadata=cert.data.decode('utf-8'))
            elif cert.encoding is CertificateEncoding.DER:
                ctx.load_verify_locations(cadata=cert.data)
            else:
                raise NotImplementedError(cert.encoding)

        return ctx

    def timeout(self) -> aiohttp.ClientTimeout:
        def to_seconds(ms: int | None):
            if ms is None:
                return None
            return ms / 1000

        return aiohttp.ClientTimeout(
            total=None,
            sock_connect=to_seconds(self.connect_timeout_ms),
            sock_read=to_seconds(self.read_timeout_ms),
        )

    def proxy(self, url: str) -> str | None:
        '''
        returns the proxy-url to use for the given (request-)url, or None if no proxy is to be
        used
        '''
        parsed = urllib.parse.urlparse(url)

        if parsed.scheme == 'https':
            proxy = self.https_proxy
        else:
            proxy = self.http_proxy

        if not proxy:
            return None

        if self._bypass_proxy(host=parsed.hostname, netloc=parsed.netloc):
            return None

        return proxy

    def _bypass_proxy(self, host: str, netloc: str) -> bool:
        if not self.no_proxy:
            return False

        for entry in self.no_proxy.split(','):
            entry = entry.strip().lower()
            if not entry:
                continue
            if entry == '*':
                return True

            entry = entry.lstrip('.')
            for candidate in (host.lower(), netloc.lower()):
                if candidate == entry or candidate.endswith('.' + entry):
                    return True

        return False
