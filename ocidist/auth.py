import base64
import dataclasses
import datetime
import enum
import json
import logging
import threading

import dateutil.parser
import www_authenticate

import ocidist.config

logger = logging.getLogger(__name__)


class RegistryAuthType(enum.Enum):
    ANONYMOUS = 'anonymous'
    BASIC = 'basic'
    BEARER = 'bearer'


@dataclasses.dataclass(frozen=True)
class RegistryAuth:
    auth_type: RegistryAuthType
    username: str | None = None
    password: str | None = None
    token: str | None = None

    def __post_init__(self):
        if self.auth_type is RegistryAuthType.BASIC:
            # empty strings are okay
            if self.username is None:
                raise ValueError('username required for basic-auth')
            if self.password is None:
                raise ValueError('password required for basic-auth')
        elif self.auth_type is RegistryAuthType.BEARER:
            if not self.token:
                raise ValueError('token required for bearer-auth')

    def authorization_header(self) -> str | None:
        if self.auth_type is RegistryAuthType.ANONYMOUS:
            return None
        if self.auth_type is RegistryAuthType.BASIC:
            credentials = f'{self.username}:{self.password}'.encode('utf-8')
            return f'Basic {base64.b64encode(credentials).decode("utf-8")}'
        if self.auth_type is RegistryAuthType.BEARER:
            return f'Bearer {self.token}'

        raise NotImplementedError(self.auth_type)

    def __repr__(self):
        # do not leak secrets into logs
        return f'RegistryAuth(auth_type={self.auth_type}, username={self.username!r})'


def anonymous_auth() -> RegistryAuth:
    return RegistryAuth(auth_type=RegistryAuthType.ANONYMOUS)


def basic_auth(username: str, password: str) -> RegistryAuth:
    return RegistryAuth(
        auth_type=RegistryAuthType.BASIC,
        username=username,
        password=password,
    )


def bearer_auth(token: str) -> RegistryAuth:
    return RegistryAuth(
        auth_type=RegistryAuthType.BEARER,
        token=token,
    )


def _append_b64_padding_if_missing(b64_str: str):
    if b64_str[-1] == '=':
        return b64_str

    if (mod4 := len(b64_str) % 4) == 2:
        return b64_str + '=' * 2
    elif mod4 == 3:
        return b64_str + '='
    elif mod4 == 0:
        return b64_str
    else:
        raise ValueError('this is a bug')


@dataclasses.dataclass
class OauthToken:
    token: str
    expires_in: int = None
    issued_at: str = None
    default_expires_in: int = ocidist.config.DEFAULT_TOKEN_EXPIRATION_SECS

    def expiry_date(self) -> datetime.datetime:
        issued_at = dateutil.parser.isoparse(self.issued_at)
        if issued_at.tzinfo is None:
            issued_at = issued_at.replace(tzinfo=datetime.timezone.utc)

        # pessimistically deduct 30s, to be on the safe side (unless lifetime is very short)
        leeway = 30 if self.expires_in > 60 else 0

        return issued_at + datetime.timedelta(seconds=self.expires_in - leeway)

    def valid(self) -> bool:
        now = datetime.datetime.now(tz=datetime.timezone.utc)
        return now < self.expiry_date()

    def __post_init__(self):
        if not self.issued_at:
            self.issued_at = datetime.datetime.now(tz=datetime.timezone.utc).isoformat()
        if not self.expires_in:
            # check if format seems to be jwt
            if self.token.count('.') >= 2 and (claims := _jwt_claims(self.token)):
                exp = claims.get('exp')
                iat = claims.get('iat')
            else:
                exp = iat = None

            if isinstance(exp, int) and isinstance(iat, int) and exp > iat:
                self.expires_in = exp - iat
                self.issued_at = datetime.datetime.fromtimestamp(iat, tz=datetime.timezone.utc)\
                    .isoformat()
            else:
                self.expires_in = self.default_expires_in

    @staticmethod
    def from_response(
        token_dict: dict,
        default_expires_in: int=ocidist.config.DEFAULT_TOKEN_EXPIRATION_SECS,
    ) -> 'OauthToken':
        # docker's token-spec allows both `token` and `access_token`
        if not (token := token_dict.get('token') or token_dict.get('access_token')):
            raise ValueError('token-response did not contain a token')

        return OauthToken(
            token=token,
            expires_in=token_dict.get('expires_in'),
            issued_at=token_dict.get('issued_at'),
            default_expires_in=default_expires_in,
        )


def _jwt_claims(token: str) -> dict | None:
    if not (payload := token.split('.')[1]):
        return None

    try:
        # add padding (JWT by convention has unpadded base64)
        payload = _append_b64_padding_if_missing(b64_str=payload)
        claims = json.loads(base64.urlsafe_b64decode(payload.encode('utf-8')))
    except ValueError:
        # not a jwt, after all
        return None

    if not isinstance(claims, dict):
        return None

    return claims


# (registry, repository, scope)
TokenKey = tuple[str, str, str]


class TokenCache:
    '''
    holds bearer-tokens retrieved through token-exchange, and credentials stored for later
    (implicit) use, both per registry. Expired tokens are never returned (and purged lazily).

    instances are safe to be used concurrently.
    '''
    def __init__(self):
        self.tokens: dict[TokenKey, OauthToken] = {}
        self.credentials: dict[str, RegistryAuth] = {}
        self._lock = threading.Lock()

    def token(self, registry: str, repository: str, scope: str) -> OauthToken | None:
        key = (registry, repository, scope)
        with self._lock:
            if not (token := self.tokens.get(key)):
                return None
            if token.valid():
                return token
            del self.tokens[key]
            return None

    def set_token(
        self,
        registry: str,
        repository: str,
        scope: str,
        token: OauthToken,
    ):
        if not token.valid():
            raise ValueError(f'token expired: {token.expiry_date()=}')

        # last writer wins; tokens for same scope are interchangeable
        with self._lock:
            self.tokens[(registry, repository, scope)] = token

    def purge_expired(self):
        with self._lock:
            self.tokens = {k: t for k, t in self.tokens.items() if t.valid()}

    def store_credentials(self, registry: str, auth: RegistryAuth):
        with self._lock:
            self.credentials[registry] = auth

    def stored_credentials(self, registry: str) -> RegistryAuth | None:
        with self._lock:
            return self.credentials.get(registry)


def authorize(
    registry: str,
    repository: str,
    scope: str,
    credentials: RegistryAuth,
    token_cache: TokenCache,
) -> dict[str, str]:
    '''
    returns the headers to authorise a request against the given registry with. Credentials
    passed explicitly as bearer-token always take precedence; otherwise, a cached token from a
    previous token-exchange is used, if present. Basic-credentials are sent unconditionally.
    '''
    if credentials.auth_type is RegistryAuthType.BEARER:
        return {'Authorization': credentials.authorization_header()}

    if token := token_cache.token(registry=registry, repository=repository, scope=scope):
        return {'Authorization': f'Bearer {token.token}'}

    if header := credentials.authorization_header():
        return {'Authorization': header}

    return {}


@dataclasses.dataclass(frozen=True)
class BearerChallenge:
    realm: str
    service: str | None = None
    scope: str | None = None


def parse_challenge(www_authenticate_header: str | None) -> BearerChallenge | None:
    '''
    parses the value of a `WWW-Authenticate` header. Returns None unless the registry asks for
    bearer-token authentication (e.g. if it asks for basic-auth, or if header is absent).
    '''
    if not www_authenticate_header:
        return None

    auth_challenge = www_authenticate.parse(www_authenticate_header)

    if not 'bearer' in auth_challenge:
        if not 'basic' in auth_challenge:
            logger.warning(f'did not understand {auth_challenge=} - pbly a bug')
        return None

    bearer = auth_challenge['bearer']
    if not bearer or not (realm := bearer.get('realm')):
        logger.warning(f'bearer-challenge w/o realm: {www_authenticate_header=}')
        return None

    return BearerChallenge(
        realm=realm,
        service=bearer.get('service'),
        scope=bearer.get('scope'),
    )
