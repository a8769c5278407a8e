import dataclasses
import datetime
import json
import logging
import os
import time
from http import HTTPStatus
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Sequence
from urllib import parse

from dateutil import tz

from imgproxy.errors import ImgProxyError
from imgproxy.fetch.index import (
    DiskCache,
    FetchError,
    Fetcher,
    FetchTimeout,
    InvalidTarget,
    get_now
)
from imgproxy.origin.index import (
    EmptyTarget,
    detect_client_ip,
    is_secure,
    origin_spec_from_path
)
from imgproxy.transform.index import (
    OUTPUT_CONTENT_TYPE,
    TransformParam,
    UnsupportedFormat,
    transform_image
)
from imgproxy.typing import Headers, HttpPath, HttpUrl, OriginAlias

ENV_PREFIX = 'IMGPROXY_'

DEFAULT_ORIGINS = 'himmag=http://himmag.com,iamkoo=http://iamkoo.net'
DEFAULT_CACHE_DIR = './cache'
DEFAULT_TTL = 3600
DEFAULT_CACHE_LIFETIME = 86400 * 5
DEFAULT_FETCH_TIMEOUT = 10.0
DEFAULT_HEADERS = '{"cache-control": "public, max-age=31536000"}'

# Headers copied from the origin response onto ours.
CLONED_HEADERS = ['content-type', 'date']


def http_date(dt: datetime.datetime) -> str:
  return dt.astimezone(tz.tzutc()).strftime('%a, %d %b %Y %H:%M:%S GMT')


class InvalidSettings(ImgProxyError):
  pass


def parse_origins(s: str) -> tuple[tuple[OriginAlias, str], ...]:
  origins = []
  for entry in s.split(','):
    if entry.strip() == '':
      continue
    alias, sep, base_url = entry.partition('=')
    alias = alias.strip()
    base_url = base_url.strip().rstrip('/')
    if not sep or alias == '' or '/' in alias or base_url == '':
      raise InvalidSettings(f'invalid origin: {entry}')
    origins.append((OriginAlias(alias), base_url))
  return tuple(origins)


def parse_headers(s: str) -> tuple[tuple[str, str], ...]:
  try:
    headers = json.loads(s)
  except ValueError as e:
    raise InvalidSettings(f'invalid headers: {e}') from e

  if not isinstance(headers, dict) or not all(
      isinstance(k, str) and isinstance(v, str) for k, v in headers.items()):
    raise InvalidSettings(f'headers must be a JSON object of strings: {s}')

  return tuple((k.lower(), v) for k, v in headers.items())


@dataclasses.dataclass(eq=True, frozen=True)
class Settings:
  origins: tuple[tuple[OriginAlias, str], ...]
  cache_dir: str
  trusted_proxies: frozenset[str]
  default_ttl: int
  cache_lifetime: int
  fetch_timeout: float
  headers: tuple[tuple[str, str], ...]

  @classmethod
  def from_env(cls, env: Mapping[str, str] = os.environ) -> 'Settings':

    def get(name: str, default: str) -> str:
      return env.get(f'{ENV_PREFIX}{name}', default)

    try:
      default_ttl = int(get('DEFAULT_TTL', str(DEFAULT_TTL)))
      cache_lifetime = int(get('CACHE_LIFETIME', str(DEFAULT_CACHE_LIFETIME)))
      fetch_timeout = float(get('FETCH_TIMEOUT', str(DEFAULT_FETCH_TIMEOUT)))
    except ValueError as e:
      raise InvalidSettings(str(e)) from e

    if default_ttl < 0 or cache_lifetime < 0 or fetch_timeout <= 0:
      raise InvalidSettings('durations must not be negative and the timeout must be positive')

    return cls(
        origins=parse_origins(get('ORIGINS', DEFAULT_ORIGINS)),
        cache_dir=get('CACHE_DIR', DEFAULT_CACHE_DIR),
        trusted_proxies=frozenset(
            p.strip() for p in get('TRUSTED_PROXIES', '').split(',') if p.strip() != ''),
        default_ttl=default_ttl,
        cache_lifetime=cache_lifetime,
        fetch_timeout=fetch_timeout,
        headers=parse_headers(get('HEADERS', DEFAULT_HEADERS)))

  @property
  def origin_map(self) -> dict[OriginAlias, str]:
    return dict(self.origins)


@dataclasses.dataclass(frozen=True)
class ProxyRequest:
  path: HttpPath
  querystring: str
  headers: Headers
  remote_addr: Optional[str]

  @property
  def qs(self) -> dict[str, list[str]]:
    return parse.parse_qs(self.querystring)

  def header(self, name: str, default: str = '') -> str:
    return self.headers.get(name, default)


@dataclasses.dataclass(frozen=True)
class ProxyResponse:
  status: int
  headers: Headers
  body: bytes

  @classmethod
  def error(cls, status: HTTPStatus) -> 'ProxyResponse':
    return cls(
        status=status,
        headers={'content-type': 'text/plain; charset=utf-8'},
        body=status.phrase.encode())

  def with_headers(self, headers: Mapping[str, str]) -> 'ProxyResponse':
    return dataclasses.replace(self, headers={**self.headers, **headers})

  @property
  def content_type(self) -> str:
    return self.headers.get('content-type', '')


@dataclasses.dataclass(frozen=True)
class Exchange:
  """One request and the response being built for it.

  ``pending_origin_url`` is set by the resolve stage and cleared by the fetch stage. It never
  survives to the caller.
  """
  request: ProxyRequest
  response: ProxyResponse
  caller_ip: Optional[str]
  pending_origin_url: Optional[HttpUrl] = None

  @property
  def log_context(self) -> dict[str, Any]:
    return {'path': str(self.request.path), 'qstr': self.request.querystring}


Stage = Callable[[Exchange], Exchange]


def run_stages(stages: Sequence[Stage], exchange: Exchange) -> Exchange:
  for stage in stages:
    exchange = stage(exchange)
  return exchange


class ImgProxy:
  instances: dict[Settings, 'ImgProxy'] = {}

  def __init__(self, log: logging.Logger, settings: Settings, fetcher: Fetcher):
    self.log = log
    self.settings = settings
    self.origins = settings.origin_map
    self.fetcher = fetcher
    self.stages: list[Stage] = [
        self.resolve,
        self.fetch,
        self.transform,
        self.stamp_headers,
    ]

  @classmethod
  def from_settings(cls, log: logging.Logger, settings: Settings) -> 'ImgProxy':
    if settings not in cls.instances:
      fetcher = Fetcher(
          log=log,
          cache=DiskCache(log, Path(settings.cache_dir)),
          default_ttl=settings.default_ttl,
          cache_lifetime=settings.cache_lifetime,
          timeout=settings.fetch_timeout)
      cls.instances[settings] = cls(log, settings, fetcher)

    return cls.instances[settings]

  @classmethod
  def from_env(cls, log: logging.Logger) -> 'ImgProxy':
    try:
      settings = Settings.from_env()
    except InvalidSettings as e:
      log.error({'message': 'invalid settings', 'reason': str(e)})
      raise

    return cls.from_settings(log, settings)

  def close(self) -> None:
    self.fetcher.close()

  def log_warning(self, exchange: Exchange, message: str, dict: dict[str, Any]) -> None:
    self.log.warning({
        'message': message,
        **exchange.log_context,
        **dict,
    })

  def log_debug(self, exchange: Exchange, message: str, dict: dict[str, Any]) -> None:
    self.log.debug({
        'message': message,
        **exchange.log_context,
        **dict,
    })

  def log_error(self, exchange: Exchange, message: str, dict: dict[str, Any]) -> None:
    self.log.error({
        'message': message,
        **exchange.log_context,
        **dict,
    })

  def resolve(self, exchange: Exchange) -> Exchange:
    req = exchange.request
    origin = origin_spec_from_path(self.origins, req.path, is_secure(req.qs))

    try:
      url = origin.resolve(self.origins)
    except EmptyTarget:
      self.log_debug(exchange, 'empty target', {})
      return dataclasses.replace(exchange, response=ProxyResponse.error(HTTPStatus.BAD_REQUEST))

    self.log_debug(exchange, 'resolved', {'origin': dataclasses.asdict(origin), 'url': url})
    return dataclasses.replace(exchange, pending_origin_url=url)

  def fetch(self, exchange: Exchange) -> Exchange:
    url = exchange.pending_origin_url
    if url is None:
      return exchange

    result = self.fetcher.fetch(url, exchange.caller_ip, exchange.request.header('user-agent'))

    headers = dict(exchange.response.headers)
    for name in CLONED_HEADERS:
      if name in result.headers:
        headers[name] = result.headers[name]

    self.log_debug(exchange, 'fetched', {
        'url': url,
        'status': result.status,
        'size': len(result.body),
    })

    return dataclasses.replace(
        exchange,
        response=ProxyResponse(status=result.status, headers=headers, body=result.body),
        pending_origin_url=None)

  def transform(self, exchange: Exchange) -> Exchange:
    res = exchange.response
    if res.status != HTTPStatus.OK or 'image' not in res.content_type:
      return exchange

    param = TransformParam.from_querystring(exchange.request.qs)

    start_ns = time.time_ns()
    transformed = transform_image(res.body, param)
    if transformed is None:
      return exchange

    vips_us = (time.time_ns() - start_ns) // 1000
    self.log_debug(exchange, 'transformed', {
        'param': dataclasses.asdict(param),
        'original_size': len(res.body),
        'img_size': len(transformed),
        'vips_us': vips_us,
    })

    return dataclasses.replace(
        exchange,
        response=dataclasses.replace(
            res,
            body=transformed,
            headers={
                **res.headers,
                'content-type': OUTPUT_CONTENT_TYPE,
                'last-modified': http_date(get_now()),
            }))

  def stamp_headers(self, exchange: Exchange) -> Exchange:
    if exchange.response.status != HTTPStatus.OK:
      return exchange

    return dataclasses.replace(
        exchange, response=exchange.response.with_headers(dict(self.settings.headers)))

  def process(self, req: ProxyRequest) -> ProxyResponse:
    exchange = Exchange(
        request=req,
        response=ProxyResponse(status=HTTPStatus.OK, headers={}, body=b''),
        caller_ip=detect_client_ip(req.remote_addr, req.headers, self.settings.trusted_proxies))

    try:
      exchange = run_stages(self.stages, exchange)
    except InvalidTarget as e:
      self.log_warning(exchange, 'invalid target', {'reason': str(e)})
      return ProxyResponse.error(HTTPStatus.BAD_REQUEST)
    except FetchTimeout as e:
      self.log_error(exchange, 'fetch timed out', {'reason': str(e)})
      return ProxyResponse.error(HTTPStatus.GATEWAY_TIMEOUT)
    except FetchError as e:
      self.log_error(exchange, 'fetch failed', {'reason': str(e)})
      return ProxyResponse.error(HTTPStatus.BAD_GATEWAY)
    except UnsupportedFormat as e:
      self.log_error(exchange, 'failed to decode image', {'reason': str(e)})
      return ProxyResponse.error(HTTPStatus.INTERNAL_SERVER_ERROR)

    assert exchange.pending_origin_url is None

    self.log_debug(
        exchange, 'done', {
            'status': exchange.response.status,
            'content_type': exchange.response.content_type,
            'size': len(exchange.response.body),
        })

    return exchange.response
