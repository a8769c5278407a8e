import base64
import dataclasses
import datetime
import hashlib
import json
import logging
import os
import re
import time
from http import HTTPStatus
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Any, Optional

import httpx
from dateutil import parser, tz

from imgproxy.errors import ImgProxyError
from imgproxy.origin.index import forwarded_header
from imgproxy.typing import CacheRecord, Headers, HttpUrl

REDIRECT_FOUND = 'Bad Request: Redirect found'

CACHEABLE_STATUSES = frozenset([200, 203, 300, 301, 302, 404, 410])

# Headers a 304 may update on the stored response.
REVALIDATION_HEADERS = ['age', 'cache-control', 'date', 'etag', 'expires', 'last-modified']

max_age_re = re.compile(r'(?:^|,)\s*(?:s-maxage|max-age)\s*=\s*"?(-?\d+)"?', re.IGNORECASE)
directive_re = re.compile(r'(?:^|,)\s*([\w-]+)', re.IGNORECASE)


def get_now() -> datetime.datetime:
  # Return timezone-aware datetime
  return datetime.datetime.now(tz=tz.tzutc())


class FetchError(ImgProxyError):
  pass


class FetchTimeout(FetchError):
  pass


class FetchNetworkError(FetchError):
  pass


class InvalidTarget(FetchError):
  pass


@dataclasses.dataclass(frozen=True)
class FetchResult:
  status: int
  reason: str
  headers: Headers
  body: bytes

  @classmethod
  def from_response(cls, res: httpx.Response, body: bytes) -> 'FetchResult':
    return cls(
        status=res.status_code,
        reason=res.reason_phrase,
        headers={k.lower(): v for k, v in res.headers.items()},
        body=body)

  @classmethod
  def from_record(cls, record: CacheRecord) -> 'FetchResult':
    return cls(
        status=record['status'],
        reason=record['reason'],
        headers=dict(record['headers']),
        body=base64.b64decode(record['body']))

  @classmethod
  def redirect_rejected(cls) -> 'FetchResult':
    return cls(
        status=HTTPStatus.BAD_REQUEST,
        reason=REDIRECT_FOUND,
        headers={'content-type': 'text/plain; charset=utf-8'},
        body=REDIRECT_FOUND.encode())

  @property
  def is_redirect(self) -> bool:
    return 300 <= self.status < 400


def cache_control_directives(headers: Headers) -> frozenset[str]:
  return frozenset(
      m.group(1).lower() for m in directive_re.finditer(headers.get('cache-control', '')))


def is_cacheable(result: FetchResult) -> bool:
  if result.status not in CACHEABLE_STATUSES:
    return False

  directives = cache_control_directives(result.headers)
  return 'no-store' not in directives and 'private' not in directives


def freshness_lifetime(headers: Headers, default_ttl: int, now: datetime.datetime) -> int:
  """Returns how many seconds a response stays fresh.

  Explicit ``max-age`` (or ``s-maxage``) wins over ``Expires``, which wins over the default TTL.
  ``no-cache`` responses are stale right away.
  """
  if 'no-cache' in cache_control_directives(headers):
    return 0

  ages = [int(m.group(1)) for m in max_age_re.finditer(headers.get('cache-control', ''))]
  if ages:
    try:
      age = int(headers.get('age', '0'))
    except ValueError:
      age = 0
    return max(0, max(ages) - age)

  if 'expires' in headers:
    try:
      expires = parser.parse(headers['expires'])
    except (ValueError, OverflowError):
      return 0
    if expires.tzinfo is None:
      expires = expires.replace(tzinfo=tz.tzutc())
    return max(0, int((expires - now).total_seconds()))

  return default_ttl


def has_validators(record: CacheRecord) -> bool:
  return 'etag' in record['headers'] or 'last-modified' in record['headers']


def conditional_headers(record: CacheRecord) -> Headers:
  headers: Headers = {}
  if 'etag' in record['headers']:
    headers['if-none-match'] = record['headers']['etag']
  if 'last-modified' in record['headers']:
    headers['if-modified-since'] = record['headers']['last-modified']
  return headers


class DiskCache:
  """Stores origin responses as one JSON file per URL.

  Files are replaced atomically, so concurrent writers for the same URL do not corrupt each other;
  the last one wins.
  """

  def __init__(self, log: logging.Logger, cache_dir: Path):
    self.log = log
    self.cache_dir = cache_dir

  @staticmethod
  def key(url: HttpUrl) -> str:
    return hashlib.sha256(f'GET {url}'.encode()).hexdigest()

  def path(self, url: HttpUrl) -> Path:
    key = self.key(url)
    return self.cache_dir / key[:2] / f'{key}.json'

  def get(self, url: HttpUrl, now: datetime.datetime) -> Optional[CacheRecord]:
    path = self.path(url)
    try:
      with open(path, 'r') as f:
        record: CacheRecord = json.load(f)
      evict_at = record['evict_at']
    except FileNotFoundError:
      return None
    except (OSError, ValueError, KeyError, TypeError) as e:
      self.log.warning({'message': 'broken cache entry', 'url': url, 'reason': str(e)})
      self.delete(url)
      return None

    if evict_at <= now.timestamp():
      self.delete(url)
      return None

    return record

  def put(self, record: CacheRecord) -> None:
    path = self.path(record['url'])
    try:
      path.parent.mkdir(parents=True, exist_ok=True)
      with NamedTemporaryFile('w', dir=path.parent, suffix='.tmp', delete=False) as f:
        json.dump(record, f, separators=(',', ':'))
      os.replace(f.name, path)
    except OSError as e:
      self.log.error({
          'message': 'failed to store cache entry',
          'url': record['url'],
          'reason': str(e),
      })

  def delete(self, url: HttpUrl) -> None:
    self.path(url).unlink(missing_ok=True)


class Fetcher:

  def __init__(
      self,
      log: logging.Logger,
      cache: Optional[DiskCache],
      default_ttl: int,
      cache_lifetime: int,
      timeout: float,
      transport: Optional[httpx.BaseTransport] = None,
  ):
    self.log = log
    self.cache = cache
    self.default_ttl = default_ttl
    self.cache_lifetime = cache_lifetime
    self.timeout = timeout
    self.client = httpx.Client(
        timeout=httpx.Timeout(timeout), follow_redirects=False, transport=transport)

  def close(self) -> None:
    self.client.close()

  def new_record(
      self,
      url: HttpUrl,
      result: FetchResult,
      now: datetime.datetime,
  ) -> CacheRecord:
    fresh = freshness_lifetime(result.headers, self.default_ttl, now)
    stored_at = now.timestamp()
    return {
        'url': url,
        'status': result.status,
        'reason': result.reason,
        'headers': result.headers,
        'body': base64.b64encode(result.body).decode(),
        'stored_at': stored_at,
        'fresh_until': stored_at + fresh,
        'evict_at': stored_at + fresh + self.cache_lifetime,
    }

  def request(self, url: HttpUrl, headers: Headers) -> FetchResult:
    # httpx limits each phase on its own; the deadline bounds the whole fetch.
    deadline = time.monotonic() + self.timeout
    try:
      with self.client.stream('GET', url, headers=headers) as res:
        chunks: list[bytes] = []
        for chunk in res.iter_bytes():
          if time.monotonic() > deadline:
            raise FetchTimeout(f'{url}: no complete response within {self.timeout}s')
          chunks.append(chunk)
        return FetchResult.from_response(res, b''.join(chunks))
    except httpx.TimeoutException as e:
      raise FetchTimeout(f'{url}: {e}') from e
    except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
      raise InvalidTarget(f'{url}: {e}') from e
    except httpx.RequestError as e:
      raise FetchNetworkError(f'{url}: {e}') from e

  def fetch_through_cache(self, url: HttpUrl, headers: Headers) -> FetchResult:
    if self.cache is None:
      return self.request(url, headers)

    now = get_now()
    record = self.cache.get(url, now)

    if record is not None and now.timestamp() < record['fresh_until']:
      self.log.debug({'message': 'cache hit', 'url': url})
      return FetchResult.from_record(record)

    if record is not None and has_validators(record):
      result = self.request(url, {**headers, **conditional_headers(record)})
      if result.status == HTTPStatus.NOT_MODIFIED:
        self.log.debug({'message': 'cache revalidated', 'url': url})
        cached = FetchResult.from_record(record)
        refreshed = dataclasses.replace(
            cached,
            headers={
                **cached.headers,
                **{k: result.headers[k] for k in REVALIDATION_HEADERS if k in result.headers},
            })
        self.cache.put(self.new_record(url, refreshed, now))
        return refreshed
    else:
      result = self.request(url, headers)

    if is_cacheable(result):
      self.cache.put(self.new_record(url, result, now))
      self.log.debug({'message': 'cache stored', 'url': url, 'status': result.status})

    return result

  def fetch(self, url: HttpUrl, caller_ip: Optional[str], user_agent: str) -> FetchResult:
    # An empty user-agent is sent as is, never replaced by the client default.
    headers: Headers = {
        'forwarded': forwarded_header(caller_ip),
        'user-agent': user_agent,
    }

    result = self.fetch_through_cache(url, headers)

    if result.is_redirect:
      self.log.warning({
          'message': 'redirect rejected',
          'url': url,
          'status': result.status,
          'location': result.headers.get('location', ''),
      })
      return FetchResult.redirect_rejected()

    return result

  def __enter__(self) -> 'Fetcher':
    return self

  def __exit__(self, *args: Any) -> None:
    self.close()
