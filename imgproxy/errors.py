class ImgProxyError(Exception):
  """Base of every error raised while serving a request."""
