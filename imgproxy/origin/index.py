import dataclasses
import ipaddress
import re
from typing import Mapping, Optional

from imgproxy.errors import ImgProxyError
from imgproxy.typing import HttpPath, HttpUrl, OriginAlias

UPLOADS_DIR = 'wp-content/uploads'

# Checked in this order; the first one carrying a valid address wins.
FORWARDING_HEADERS = [
    'forwarded',
    'x-forwarded-for',
    'x-forwarded',
    'x-cluster-client-ip',
    'client-ip',
]

forwarded_for_re = re.compile(r'for="?\[?([^\]";,]+)', re.IGNORECASE)


class EmptyTarget(ImgProxyError):
  pass


class UnknownOrigin(ImgProxyError):
  pass


@dataclasses.dataclass(eq=True, frozen=True)
class NamedOrigin:
  alias: OriginAlias
  relative_path: str

  def resolve(self, origins: Mapping[OriginAlias, str]) -> HttpUrl:
    return resolve_named(origins, self.alias, self.relative_path)


@dataclasses.dataclass(eq=True, frozen=True)
class RawOrigin:
  uri: str
  secure: bool

  def resolve(self, origins: Mapping[OriginAlias, str]) -> HttpUrl:
    return resolve_raw(self.uri, self.secure)


OriginSpec = NamedOrigin | RawOrigin


def resolve_named(origins: Mapping[OriginAlias, str], alias: str, relative_path: str) -> HttpUrl:
  if alias not in origins:
    raise UnknownOrigin(alias)

  return HttpUrl(f'{origins[OriginAlias(alias)]}/{UPLOADS_DIR}/{relative_path}')


def resolve_raw(uri: str, secure: bool) -> HttpUrl:
  if not uri:
    raise EmptyTarget()

  if uri.startswith('http'):
    return HttpUrl(uri)

  scheme = 'https' if secure else 'http'
  return HttpUrl(f'{scheme}://{uri}')


def is_secure(qs: dict[str, list[str]]) -> bool:
  if 'secure' not in qs:
    return False

  return qs['secure'][0].strip().lower() not in ['', '0', 'false']


def origin_spec_from_path(
    origins: Mapping[OriginAlias, str],
    path: HttpPath,
    secure: bool,
) -> OriginSpec:
  uri = path[1:] if path.startswith('/') else str(path)

  alias, sep, rest = uri.partition('/')
  if sep and rest and alias in origins:
    return NamedOrigin(OriginAlias(alias), rest)

  return RawOrigin(uri, secure)


def parse_ip(s: str) -> Optional[str]:
  s = s.strip()
  try:
    return str(ipaddress.ip_address(s))
  except ValueError:
    pass

  # IPv4 with a port, e.g. 192.0.2.1:8080
  host, sep, port = s.rpartition(':')
  if sep and port.isdigit() and '.' in host:
    try:
      return str(ipaddress.IPv4Address(host))
    except ValueError:
      return None

  return None


def ip_from_header(name: str, value: str) -> Optional[str]:
  if name == 'forwarded':
    candidates = [m.group(1) for m in forwarded_for_re.finditer(value)]
  else:
    candidates = value.split(',')

  for candidate in candidates:
    ip = parse_ip(candidate)
    if ip is not None:
      return ip

  return None


def detect_client_ip(
    remote_addr: Optional[str],
    headers: Mapping[str, str],
    trusted_proxies: frozenset[str],
) -> Optional[str]:
  """Works out the caller's IP address.

  Forwarding headers are consulted only if no trusted proxies are configured, or if the direct peer
  is one of them. Otherwise the peer address itself is used.
  """
  ip = None if remote_addr is None else parse_ip(remote_addr)

  if trusted_proxies and ip not in trusted_proxies:
    return ip

  for name in FORWARDING_HEADERS:
    if name in headers:
      forwarded = ip_from_header(name, headers[name])
      if forwarded is not None:
        return forwarded

  return ip


def forwarded_header(ip: Optional[str]) -> str:
  if ip is None:
    return 'for=unknown'

  if ipaddress.ip_address(ip).version == 6:
    return f'for="[{ip}]"'

  return f'for={ip}'
