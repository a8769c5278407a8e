import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import Response

import imgproxy
from imgproxy.fetch.index import get_now
from imgproxy.logger import init_logging
from imgproxy.pipeline.index import ImgProxy, ProxyRequest, http_date
from imgproxy.typing import HttpPath

logger = init_logging()


def proxy_request(request: Request) -> ProxyRequest:
  # Keep the path percent-encoded so it reaches the origin unchanged.
  raw_path = request.scope.get('raw_path')
  path = raw_path.split(b'?', 1)[0].decode('latin-1') if raw_path else request.url.path

  return ProxyRequest(
      path=HttpPath(path),
      querystring=request.url.query,
      # Repeated header lines are joined, as for X-Forwarded-For hops.
      headers={k.lower(): ', '.join(request.headers.getlist(k)) for k in request.headers.keys()},
      remote_addr=None if request.client is None else request.client.host)


def create_app(server: Optional[ImgProxy] = None) -> FastAPI:
  img_proxy = server if server is not None else ImgProxy.from_env(logger)

  @asynccontextmanager
  async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    logger.info({'message': 'started', 'origins': list(img_proxy.origins)})
    yield
    img_proxy.close()

  app = FastAPI(title='imgproxy', version=imgproxy.version, lifespan=lifespan)

  # A plain function runs in the threadpool, one thread per request.
  @app.get('/{uri:path}')
  def proxy(request: Request) -> Response:
    res = img_proxy.process(proxy_request(request))
    headers = {'date': http_date(get_now()), **res.headers}
    return Response(content=res.body, status_code=res.status, headers=headers)

  return app


def main() -> None:
  uvicorn.run(
      create_app(),
      host=os.environ.get('IMGPROXY_HOST', '127.0.0.1'),
      port=int(os.environ.get('IMGPROXY_PORT', '8000')),
      log_config=None,
      date_header=False)
