"""
Normalization of chat input into ``{text, images}``.

Clients submit images in several shapes:

* multipart form with ``imageCount`` and indexed files ``image_0 ... image_{n-1}``
* multipart form with a single legacy ``image`` file
* JSON with an ``images`` array of ``{"base64", "mimeType"}`` objects
* JSON with a single legacy ``imageData`` object

Whatever the shape, the result is a :class:`NormalizedInput` whose images keep the order in which
they were submitted.  Legacy single-image fields are read only when no indexed or array images
were found, so a multi-image submission is never cut down to one image.
"""

import asyncio
import base64
import binascii
import logging
import mimetypes
from dataclasses import dataclass
from typing import (
    Any,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
)

from pydantic import (
    BaseModel,
    Field,
)

from lifedesk.config import settings
from lifedesk.core.errors import (
    FieldError,
    InputValidationError,
)
from lifedesk.core.schema import Image

logger = logging.getLogger(__name__)

INDEXED_FIELD = "image_{}"
LEGACY_FORM_FIELD = "image"
LEGACY_JSON_FIELD = "imageData"
JSON_ARRAY_FIELDS = ("images", "imagesData")


class UploadedFile(Protocol):
    """The part of Starlette's ``UploadFile`` this module relies on."""

    filename: Optional[str]
    content_type: Optional[str]

    async def read(self, size: int = -1) -> bytes: ...


class NormalizedInput(BaseModel):
    """Canonical chat input: trimmed non-empty text plus ordered images."""

    text: str
    images: List[Image] = Field(default_factory=list)

    @property
    def has_images(self) -> bool:
        return bool(self.images)


@dataclass(frozen=True)
class _ImageSource:
    """One submitted image before decoding."""

    field: str
    mime_type: Optional[str]
    data: Any  # base64 str, raw bytes or an UploadedFile


# ---------------------------------------------------------------------------
# Public entry points
# ---------------------------------------------------------------------------
async def normalize_json(body: Mapping[str, Any]) -> NormalizedInput:
    """
    Normalize a JSON chat body.

    Parameters
    ----------
    body:
        Parsed JSON object with ``message`` and optionally ``images`` / ``imagesData`` (array) or
        ``imageData`` (legacy single object).

    Raises
    ------
    InputValidationError
        If the text is empty or an image is malformed.
    """
    text = _clean_text(body.get("message"))
    sources: List[_ImageSource] = []

    for key in JSON_ARRAY_FIELDS:
        items = body.get(key)
        if not items:
            continue
        if not isinstance(items, list):
            raise _invalid(key, "must be a list of images")
        sources = [_json_source(f"{key}[{i}]", item) for i, item in enumerate(items)]
        break

    if not sources and body.get(LEGACY_JSON_FIELD):
        sources = [_json_source(LEGACY_JSON_FIELD, body[LEGACY_JSON_FIELD])]

    return NormalizedInput(text=text, images=await _decode_all(sources))


async def normalize_form(form: Mapping[str, Any]) -> NormalizedInput:
    """
    Normalize a multipart form submission.

    Indexed files are read for ``0 .. imageCount-1`` when ``imageCount`` is given, otherwise
    indexes are probed from 0 until the first missing one.
    """
    text = _clean_text(form.get("message"))
    sources: List[_ImageSource] = []

    count = _image_count(form.get("imageCount"))
    if count is not None:
        for index in range(count):
            name = INDEXED_FIELD.format(index)
            upload = form.get(name)
            if _is_upload(upload):
                sources.append(_form_source(name, upload))
            else:
                logger.warning("Form declared %d images but '%s' is missing", count, name)
    else:
        index = 0
        while _is_upload(form.get(INDEXED_FIELD.format(index))):
            name = INDEXED_FIELD.format(index)
            sources.append(_form_source(name, form[name]))
            index += 1

    if not sources and _is_upload(form.get(LEGACY_FORM_FIELD)):
        sources = [_form_source(LEGACY_FORM_FIELD, form[LEGACY_FORM_FIELD])]

    return NormalizedInput(text=text, images=await _decode_all(sources))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _invalid(field: str, message: str) -> InputValidationError:
    return InputValidationError(f"{field}: {message}", [FieldError(field=field, message=message)])


def _clean_text(value: Any) -> str:
    text = value.strip() if isinstance(value, str) else ""
    if not text:
        raise _invalid("message", "message must not be empty")
    return text


def _image_count(raw: Any) -> Optional[int]:
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return None
    try:
        count = int(raw)
    except (TypeError, ValueError):
        raise _invalid("imageCount", "must be an integer") from None
    if count < 0:
        raise _invalid("imageCount", "must not be negative")
    return count


def _is_upload(value: Any) -> bool:
    return value is not None and not isinstance(value, str) and hasattr(value, "read")


def _json_source(field: str, item: Any) -> _ImageSource:
    if not isinstance(item, Mapping):
        raise _invalid(field, "must be an object with base64 and mimeType")
    data = item.get("base64") or item.get("payload")
    if not isinstance(data, str) or not data:
        raise _invalid(field, "base64 payload is missing")
    return _ImageSource(field=field, mime_type=item.get("mimeType"), data=data)


def _form_source(field: str, upload: UploadedFile) -> _ImageSource:
    mime_type = upload.content_type
    if not mime_type and upload.filename:
        mime_type, _ = mimetypes.guess_type(upload.filename)
    return _ImageSource(field=field, mime_type=mime_type, data=upload)


def _strip_data_url(data: str) -> tuple[Optional[str], str]:
    """Split ``data:<mime>;base64,<payload>`` into its parts; plain base64 passes through."""
    if data.startswith("data:") and "," in data:
        header, payload = data.split(",", 1)
        return header[5:].split(";", 1)[0] or None, payload
    return None, data


async def _decode_all(sources: Sequence[_ImageSource]) -> List[Image]:
    if len(sources) > settings.MAX_IMAGES:
        raise _invalid("images", f"at most {settings.MAX_IMAGES} images are accepted")
    # gather keeps the submission order regardless of completion order
    return list(await asyncio.gather(*(_decode(source) for source in sources)))


async def _decode(source: _ImageSource) -> Image:
    mime_type = source.mime_type
    if isinstance(source.data, str):
        embedded_mime, encoded = _strip_data_url(source.data)
        mime_type = mime_type or embedded_mime
        try:
            payload = await asyncio.to_thread(base64.b64decode, encoded, validate=True)
        except (binascii.Error, ValueError):
            raise _invalid(source.field, "payload is not valid base64") from None
    elif isinstance(source.data, bytes):
        payload = source.data
    else:
        payload = await source.data.read()

    if not payload:
        raise _invalid(source.field, "image is empty")
    if len(payload) > settings.MAX_IMAGE_BYTES:
        raise _invalid(source.field, f"image exceeds {settings.MAX_IMAGE_BYTES} bytes")
    if not mime_type or not mime_type.startswith("image/"):
        raise _invalid(source.field, f"unsupported content type '{mime_type}'")

    logger.debug("Decoded %s: %s, %d bytes", source.field, mime_type, len(payload))
    return Image(payload=payload, mime_type=mime_type)
