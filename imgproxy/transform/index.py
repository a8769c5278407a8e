import dataclasses
from enum import Enum
from typing import Optional

from pyvips import Error as VipsError  # type: ignore
from pyvips import Image  # type: ignore

from imgproxy.errors import ImgProxyError

OUTPUT_CONTENT_TYPE = 'image/jpeg'
OUTPUT_EXTENSION = '.jpg'

DEFAULT_QUALITY = 75
MIN_QUALITY = 0
MAX_QUALITY = 100

FLATTEN_BACKGROUND = [255.0, 255.0, 255.0]


class UnsupportedFormat(ImgProxyError):
  pass


class FitMode(Enum):
  NONE = 0
  CROP = 1

  @classmethod
  def from_str(cls, s: Optional[str]) -> 'FitMode':
    return cls.CROP if s == 'crop' else cls.NONE


@dataclasses.dataclass(eq=True, frozen=True)
class Size:
  width: int
  height: int

  @classmethod
  def from_image(cls, image: Image) -> 'Size':
    return cls(image.get('width'), image.get('height'))


@dataclasses.dataclass(eq=True, frozen=True)
class Point:
  x: int
  y: int


def ceildiv(a: int, b: int) -> int:
  return -(a // -b)


def rounddiv(a: int, b: int) -> int:
  # Half away from zero for non-negative operands.
  return (2 * a + b) // (2 * b)


def query_int(qs: dict[str, list[str]], name: str, default: int) -> int:
  if name not in qs:
    return default
  try:
    return int(qs[name][0].strip())
  except ValueError:
    return default


@dataclasses.dataclass(eq=True, frozen=True)
class TransformParam:
  width: int = 0
  height: int = 0
  fit: FitMode = FitMode.NONE
  crop: str = ''
  quality: int = DEFAULT_QUALITY

  @classmethod
  def from_querystring(cls, qs: dict[str, list[str]]) -> 'TransformParam':
    width = max(0, query_int(qs, 'w', 0))
    height = max(0, query_int(qs, 'h', 0))
    quality = min(MAX_QUALITY, max(MIN_QUALITY, query_int(qs, 'q', DEFAULT_QUALITY)))
    fit = FitMode.from_str(qs['fit'][0] if 'fit' in qs else None)
    crop = qs['crop'][0].strip() if 'crop' in qs else ''

    return cls(width=width, height=height, fit=fit, crop=crop, quality=quality)

  @property
  def requested(self) -> bool:
    return self.width != 0 or self.height != 0


def calc_box(original: Size, width: int, height: int) -> Optional[Size]:
  """Computes the output size for a requested width and height.

  A dimension of 0 means "not given". Requests larger than the original are clamped to it. With
  only one dimension given the other follows the original aspect ratio. Returns None when neither
  is given.
  """
  if width > original.width:
    width = original.width

  if height > original.height:
    height = original.height

  if width and height:
    return Size(width, height)

  if width:
    return Size(width, max(1, rounddiv(original.height * width, original.width)))

  if height:
    return Size(max(1, rounddiv(original.width * height, original.height)), height)

  return None


def calc_crop_origin(original: Size, box: Size, crop: str) -> Point:
  """Returns the top-left corner of a ``box`` sized crop taken from ``original``.

  Anchor keywords are matched as substrings of ``crop``, so ``top-left`` and ``lefttop`` both work.
  ``right`` is checked after ``left`` and ``bottom`` after ``top``, so the later one wins when both
  are present. Without any keyword the crop is centred.
  """
  x = 0 if 'left' in crop else ceildiv(original.width - box.width, 2)
  y = 0 if 'top' in crop else ceildiv(original.height - box.height, 2)

  if 'bottom' in crop:
    y = original.height - box.height

  if 'right' in crop:
    x = original.width - box.width

  return Point(x, y)


@dataclasses.dataclass(frozen=True)
class TransformPlan:
  original: Size
  box: Size
  crop_origin: Optional[Point]

  @classmethod
  def maybe_from_param(cls, original: Size, param: TransformParam) -> Optional['TransformPlan']:
    box = calc_box(original, param.width, param.height)
    if box is None:
      return None

    if param.fit == FitMode.CROP:
      crop_origin = calc_crop_origin(original, box, param.crop)
    else:
      crop_origin = None

    return cls(original=original, box=box, crop_origin=crop_origin)


def decode_image(data: bytes) -> Image:
  try:
    image = Image.new_from_buffer(data, '')
  except VipsError as e:
    raise UnsupportedFormat(str(e)) from e
  return image


def apply_plan(image: Image, plan: TransformPlan) -> Image:
  if plan.crop_origin is not None:
    image = image.extract_area(
        plan.crop_origin.x, plan.crop_origin.y, plan.box.width, plan.box.height)

  current = Size.from_image(image)
  if current != plan.box:
    image = image.resize(plan.box.width / current.width, vscale=plan.box.height / current.height)

  return image


def encode_image(image: Image, quality: int) -> bytes:
  if image.hasalpha():
    image = image.flatten(background=FLATTEN_BACKGROUND)

  try:
    return image.write_to_buffer(OUTPUT_EXTENSION, Q=max(1, quality))
  except VipsError as e:
    raise UnsupportedFormat(str(e)) from e


def transform_image(data: bytes, param: TransformParam) -> Optional[bytes]:
  """Resizes and optionally crops ``data`` according to ``param``.

  Returns None if no transform was requested; the caller keeps the original bytes in that case.
  Otherwise the result is always JPEG, whatever the input format was.
  """
  if not param.requested:
    return None

  image = decode_image(data)
  plan = TransformPlan.maybe_from_param(Size.from_image(image), param)
  if plan is None:
    return None

  return encode_image(apply_plan(image, plan), param.quality)
