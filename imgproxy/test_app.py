import logging
from pathlib import Path
from typing import Generator

import httpx
import pytest
from fastapi.testclient import TestClient
from pyvips import Image  # type: ignore

from imgproxy.app import create_app
from imgproxy.fetch.index import DiskCache, Fetcher
from imgproxy.pipeline.index import ImgProxy, Settings

ORIGIN_DATE = 'Mon, 01 Jan 2024 00:00:00 GMT'


def make_png(width: int, height: int) -> bytes:
  return (Image.black(width, height, bands=3) + 200).cast('uchar').write_to_buffer('.png')


@pytest.fixture
def requests() -> list[httpx.Request]:
  return []


@pytest.fixture
def client(tmp_path: Path, requests: list[httpx.Request]) -> Generator[TestClient, None, None]:
  log = logging.getLogger(__name__)
  settings = Settings.from_env({'IMGPROXY_CACHE_DIR': str(tmp_path / 'cache')})

  def handler(request: httpx.Request) -> httpx.Response:
    requests.append(request)
    if request.url.path.endswith('/moved.png'):
      return httpx.Response(302, headers={'location': 'http://elsewhere/'})
    if request.url.path.endswith('/missing.png'):
      return httpx.Response(404, headers={'content-type': 'text/html'}, content=b'not found')
    return httpx.Response(
        200, headers={
            'content-type': 'image/png',
            'date': ORIGIN_DATE,
        }, content=make_png(400, 200))

  fetcher = Fetcher(
      log=log,
      cache=DiskCache(log, Path(settings.cache_dir)),
      default_ttl=settings.default_ttl,
      cache_lifetime=settings.cache_lifetime,
      timeout=settings.fetch_timeout,
      transport=httpx.MockTransport(handler))

  with TestClient(create_app(ImgProxy(log, settings, fetcher))) as c:
    yield c


def test_named_origin_with_transform(client: TestClient, requests: list[httpx.Request]) -> None:
  res = client.get(
      '/himmag/2020/01/pic.png',
      params={
          'w': '100',
          'h': '100',
          'fit': 'crop',
          'crop': 'top-left',
          'q': '60',
      },
      headers={'user-agent': 'Browser/1.0'})

  assert res.status_code == 200
  assert res.headers['content-type'] == 'image/jpeg'
  assert res.headers['cache-control'] == 'public, max-age=31536000'
  assert res.headers['date'] == ORIGIN_DATE
  assert 'last-modified' in res.headers

  image = Image.new_from_buffer(res.content, '')
  assert (image.get('width'), image.get('height')) == (100, 100)

  assert str(requests[0].url) == 'http://himmag.com/wp-content/uploads/2020/01/pic.png'
  assert requests[0].headers['user-agent'] == 'Browser/1.0'
  assert requests[0].headers['forwarded'].startswith('for=')


def test_raw_url(client: TestClient, requests: list[httpx.Request]) -> None:
  res = client.get('/example.com/images/a.png', params={'secure': '1'})

  assert res.status_code == 200
  assert res.headers['content-type'] == 'image/png'
  assert str(requests[0].url) == 'https://example.com/images/a.png'


def test_percent_encoded_path_is_kept(client: TestClient, requests: list[httpx.Request]) -> None:
  res = client.get('/himmag/%E3%83%86%E3%82%B9%E3%83%88%3F.png')

  assert res.status_code == 200
  assert requests[0].url.raw_path == (
      b'/wp-content/uploads/%E3%83%86%E3%82%B9%E3%83%88%3F.png')


def test_empty_target(client: TestClient, requests: list[httpx.Request]) -> None:
  res = client.get('/')

  assert res.status_code == 400
  assert 'cache-control' not in res.headers
  assert 'date' in res.headers
  assert requests == []


def test_redirect(client: TestClient) -> None:
  res = client.get('/himmag/moved.png', params={'w': '10'})

  assert res.status_code == 400
  assert 'cache-control' not in res.headers


def test_upstream_not_found(client: TestClient) -> None:
  res = client.get('/himmag/missing.png')

  assert res.status_code == 404
  assert res.content == b'not found'
  assert 'cache-control' not in res.headers


def test_repeated_forwarding_headers_use_first_hop(
    client: TestClient, requests: list[httpx.Request]) -> None:
  res = client.get(
      '/himmag/pic.png',
      headers=[
          ('x-forwarded-for', '198.51.100.1'),
          ('x-forwarded-for', '203.0.113.9'),
      ])

  assert res.status_code == 200
  assert requests[0].headers['forwarded'] == 'for=198.51.100.1'
