'''
platform-matching for image-indexes (a.k.a. multiarch images)

image-indexes commonly contain more than one entry matching a given platform expression
(e.g. `linux/*`). Which entry wins is not guessed: platform-resolvers created from this module
always pick the first matching entry, in the order the entries appear in the index.
'''

import collections.abc
import enum
import platform as _platform
import sys

import ocidist.model as om


class OperatingSystem(enum.Enum):
    '''
    OperatingSystem contains the values for the 'os' property in an oci multiarch image.
    See https://go.dev/doc/install/source#environment.
    '''
    AIX = 'aix'
    ANDROID = 'android'
    DARWIN = 'darwin'
    DRAGONFLY = 'dragonfly'
    FREEBSD = 'freebsd'
    ILLUMOS = 'illumos'
    IOS = 'ios'
    JS = 'js'
    LINUX = 'linux'
    NETBSD = 'netbsd'
    OPENBSD = 'openbsd'
    PLAN9 = 'plan9'
    SOLARIS = 'solaris'
    WASIP1 = 'wasip1'
    WINDOWS = 'windows'

    @classmethod
    def contains_value(cls, value: str):
        return value in [v.value for v in OperatingSystem]


class Architecture(enum.Enum):
    '''
    Architecture contains the values for the 'architecture' property in an oci multiarch image.
    See https://go.dev/doc/install/source#environment.
    '''
    PPC64 = 'ppc64'
    _386 = '386'
    AMD64 = 'amd64'
    ARM = 'arm'
    ARM64 = 'arm64'
    WASM = 'wasm'
    LOONG64 = 'loong64'
    MIPS = 'mips'
    MIPSLE = 'mipsle'
    MIPS64 = 'mips64'
    MIPS64LE = 'mips64le'
    PPC64le = 'ppc64le'
    RISCV64 = 'riscv64'
    S390X = 's390x'

    @classmethod
    def contains_value(cls, value: str):
        return value in [v.value for v in Architecture]


class PlatformFilter:
    @staticmethod
    def create(
        included_platforms: collections.abc.Iterable[str],
    ) -> collections.abc.Callable[[om.Platform], bool]:
        matchers = []
        for included_platform in included_platforms:
            matchers.append(PlatformFilter._parse_expr(included_platform))

        def filter(platform_to_match: om.Platform) -> bool:
            for m in matchers:
                if PlatformFilter._match(m, platform_to_match):
                    return True

            return False

        return filter

    @staticmethod
    def _parse_expr(platform_expr: str) -> dict:
        splitted = platform_expr.split('/')
        if len(splitted) < 2 or len(splitted) > 3:
            raise ValueError(f'invalid oci platform expression {platform_expr=}.'
                              ' expression must have the format os/architecture[/variant]')

        os = splitted[0]
        if os != '*' and not OperatingSystem.contains_value(os):
            raise ValueError(f'invalid os in oci platform expression {platform_expr=}.'
                             f' allowed values are {["*"] + [o.value for o in OperatingSystem]}')

        architecture = splitted[1]
        if architecture != '*' and not Architecture.contains_value(architecture):
            raise ValueError(f'invalid architecture in oci platform expression {platform_expr=}.'
                             f' allowed values are {["*"] + [a.value for a in Architecture]}')

        variant = '*'
        if len(splitted) == 3:
            variant = splitted[2]

        return {
            'os': os,
            'architecture': architecture,
            'variant': variant,
        }

    @staticmethod
    def _match(m: dict, p: om.Platform) -> bool:
        normalised_p = p.normalise()
        return ((m['os'] == '*' or m['os'] == normalised_p.os) and
                (m['architecture'] == '*' or m['architecture'] == normalised_p.architecture) and
                (m['variant'] == '*' or m['variant'] == normalised_p.variant)
               )


def platform_resolver(
    included_platforms: collections.abc.Iterable[str],
) -> collections.abc.Callable[[list[om.ImageIndexEntry]], om.ImageIndexEntry | None]:
    '''
    returns a callable suitable to be passed as `platform_resolver` to ocidist.client.Client.

    the returned callable picks the first index-entry (in index-order) whose platform matches
    any of the given platform-expressions (`os/architecture[/variant]`, `*` matches all).
    Entries w/o platform never match.
    '''
    platform_filter = PlatformFilter.create(included_platforms=included_platforms)

    def resolve(entries: list[om.ImageIndexEntry]) -> om.ImageIndexEntry | None:
        for entry in entries:
            if not entry.platform:
                continue
            if platform_filter(entry.platform):
                return entry

        return None

    return resolve


def current_platform() -> om.Platform:
    '''
    returns the platform of the running interpreter, using oci-names
    '''
    os = sys.platform
    if os.startswith('linux'):
        os = OperatingSystem.LINUX.value
    elif os == 'win32':
        os = OperatingSystem.WINDOWS.value

    return om.Platform(
        architecture=_platform.machine().lower(),
        os=os,
    ).normalise()


def current_platform_resolver():
    '''
    resolves to the index-entry matching the running interpreter's os and architecture
    '''
    platform = current_platform()
    return platform_resolver(
        included_platforms=(f'{platform.os}/{platform.architecture}',),
    )


def linux_amd64_resolver():
    return platform_resolver(
        included_platforms=('linux/amd64',),
    )
