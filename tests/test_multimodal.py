"""
Tests for chat input normalization (text plus ordered images).

Run with:
$ pytest -q
"""

import base64
from dataclasses import dataclass
from typing import Optional

import pytest

from lifedesk.agent.multimodal import (
    normalize_form,
    normalize_json,
)
from lifedesk.config import settings
from lifedesk.core.errors import InputValidationError

PNG = b"\x89PNG\r\n\x1a\nfake-png-body"
JPEG = b"\xff\xd8\xff\xe0fake-jpeg-body"


@dataclass
class FakeUpload:
    """Minimal stand-in for an uploaded form file."""

    filename: Optional[str]
    content_type: Optional[str]
    data: bytes

    async def read(self, size: int = -1) -> bytes:
        return self.data


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


@pytest.mark.asyncio
async def test_legacy_form_and_legacy_json_are_identical() -> None:
    """The single-image form field and the single-image JSON field normalize the same way."""

    from_form = await normalize_form(
        {"message": "  lunch receipt ", "image": FakeUpload("r.png", "image/png", PNG)}
    )
    from_json = await normalize_json(
        {"message": "lunch receipt", "imageData": {"base64": _b64(PNG), "mimeType": "image/png"}}
    )

    assert from_form == from_json
    assert from_form.text == "lunch receipt"
    assert from_form.images[0].payload == PNG
    assert from_form.has_images


@pytest.mark.asyncio
async def test_indexed_form_images_keep_order() -> None:
    """image_0 .. image_{n-1} arrive in index order."""

    form = {
        "message": "three receipts",
        "imageCount": "3",
        "image_2": FakeUpload("c.png", "image/png", PNG + b"2"),
        "image_0": FakeUpload("a.png", "image/png", PNG + b"0"),
        "image_1": FakeUpload("b.jpg", "image/jpeg", JPEG),
    }
    result = await normalize_form(form)

    assert [img.payload for img in result.images] == [PNG + b"0", JPEG, PNG + b"2"]
    assert [img.mime_type for img in result.images] == ["image/png", "image/jpeg", "image/png"]


@pytest.mark.asyncio
async def test_indexed_form_images_probed_without_count() -> None:
    """Without imageCount, indexes are read until the first gap."""

    form = {
        "message": "receipts",
        "image_0": FakeUpload("a.png", "image/png", PNG),
        "image_1": FakeUpload("b.png", "image/png", PNG),
        "image_3": FakeUpload("d.png", "image/png", PNG),
    }
    result = await normalize_form(form)
    assert len(result.images) == 2


@pytest.mark.asyncio
async def test_declared_count_tolerates_missing_index() -> None:
    """A declared but missing index is skipped, the rest are still read."""

    form = {
        "message": "receipts",
        "imageCount": 2,
        "image_0": FakeUpload("a.png", "image/png", PNG),
    }
    result = await normalize_form(form)
    assert len(result.images) == 1


@pytest.mark.asyncio
async def test_legacy_field_ignored_when_indexed_images_present() -> None:
    """A multi-image submission is never reduced to the legacy single image."""

    form = {
        "message": "receipts",
        "imageCount": "2",
        "image_0": FakeUpload("a.png", "image/png", PNG),
        "image_1": FakeUpload("b.png", "image/png", PNG),
        "image": FakeUpload("legacy.jpg", "image/jpeg", JPEG),
    }
    result = await normalize_form(form)
    assert len(result.images) == 2
    assert all(img.payload == PNG for img in result.images)

    body = {
        "message": "receipts",
        "images": [{"base64": _b64(PNG), "mimeType": "image/png"}] * 2,
        "imageData": {"base64": _b64(JPEG), "mimeType": "image/jpeg"},
    }
    result = await normalize_json(body)
    assert [img.mime_type for img in result.images] == ["image/png", "image/png"]


@pytest.mark.asyncio
async def test_json_images_data_alias_and_data_url() -> None:
    """imagesData is accepted and data: URLs carry their own mime type."""

    body = {
        "message": "receipt",
        "imagesData": [{"base64": f"data:image/jpeg;base64,{_b64(JPEG)}"}],
    }
    result = await normalize_json(body)
    assert result.images[0].payload == JPEG
    assert result.images[0].mime_type == "image/jpeg"


@pytest.mark.asyncio
async def test_form_mime_type_guessed_from_filename() -> None:
    """Uploads without a content type fall back to the filename extension."""

    result = await normalize_form({"message": "scan", "image": FakeUpload("scan.png", None, PNG)})
    assert result.images[0].mime_type == "image/png"


@pytest.mark.asyncio
async def test_text_only_input() -> None:
    """No images at all is fine."""

    result = await normalize_json({"message": "hello"})
    assert result.text == "hello"
    assert result.images == []
    assert not result.has_images


@pytest.mark.asyncio
@pytest.mark.parametrize("message", ["", "   ", None, 5])
async def test_empty_text_rejected(message) -> None:
    """Both entry points reject a missing or blank message."""

    for normalize in (normalize_json, normalize_form):
        try:
            await normalize({"message": message})
        except InputValidationError as exc:
            assert exc.errors[0].field == "message"
        else:  # pragma: no cover
            raise AssertionError("InputValidationError was not raised")


@pytest.mark.asyncio
async def test_invalid_images_rejected() -> None:
    """Bad base64, non-image content and empty files are input errors."""

    with pytest.raises(InputValidationError, match="base64"):
        await normalize_json(
            {"message": "x", "images": [{"base64": "not base64!!", "mimeType": "image/png"}]}
        )
    with pytest.raises(InputValidationError, match="unsupported content type"):
        await normalize_json(
            {"message": "x", "images": [{"base64": _b64(b"%PDF"), "mimeType": "application/pdf"}]}
        )
    with pytest.raises(InputValidationError, match="empty"):
        await normalize_form({"message": "x", "image": FakeUpload("a.png", "image/png", b"")})
    with pytest.raises(InputValidationError, match="imageCount"):
        await normalize_form({"message": "x", "imageCount": "many"})


@pytest.mark.asyncio
async def test_too_many_images_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    """The number of images per request is bounded."""

    monkeypatch.setattr(settings, "MAX_IMAGES", 2)
    body = {"message": "x", "images": [{"base64": _b64(PNG), "mimeType": "image/png"}] * 3}
    with pytest.raises(InputValidationError) as info:
        await normalize_json(body)
    assert info.value.errors[0].field == "images"
