from typing import NewType, TypedDict

HttpPath = NewType('HttpPath', str)
HttpUrl = NewType('HttpUrl', str)
OriginAlias = NewType('OriginAlias', str)

# Lower-cased header name to a single value.
Headers = dict[str, str]


class CacheRecord(TypedDict):
  url: HttpUrl
  status: int
  reason: str
  headers: Headers
  body: str
  stored_at: float
  fresh_until: float
  evict_at: float
