import pytest

from src.utils.image_sniffer import (
    ICO_SIGNATURE,
    PNG_IEND,
    PNG_SIGNATURE,
    ImageFormat,
    classify,
    extract_embedded_png,
    is_valid_image,
    mime_type_for,
)


PNG = PNG_SIGNATURE + b"\x00\x00\x00\rIHDR" + b"\x00" * 13 + PNG_IEND


@pytest.mark.parametrize("data,expected", [
    (PNG, ImageFormat.PNG),
    (b"GIF89a" + b"\x01" * 10, ImageFormat.GIF),
    (b"GIF87a", ImageFormat.GIF),
    (b"\xff\xd8\xff\xe0" + b"\x00" * 10, ImageFormat.JPEG),
    (ICO_SIGNATURE + b"\x01\x00" + b"\x00" * 16, ImageFormat.ICO),
])
def test_classifies_by_signature(data, expected):
    assert classify(data) is expected
    # Trailing garbage does not change the verdict
    assert classify(data + b"garbage" * 50) is expected


def test_empty_buffer_is_never_valid():
    assert classify(b"") is ImageFormat.UNKNOWN
    assert not is_valid_image(b"", "https://example.com/favicon.ico")
    assert not is_valid_image(None, "https://example.com/favicon.ico")


def test_html_is_not_an_image():
    assert not is_valid_image(b"<!DOCTYPE html><html></html>", "https://example.com/logo.png")


def test_icon_url_hint_accepts_unknown_bytes():
    data = b"\x10\x20\x30\x40 not a real header"
    assert not is_valid_image(data)
    assert is_valid_image(data, "https://example.com/favicon.ico")
    assert is_valid_image(data, "https://example.com/static/site.ico")
    # No real ICO header, so inline it as PNG
    assert mime_type_for(data, "https://example.com/favicon.ico") == "image/png"


def test_embedded_png_counts_as_ico():
    data = ICO_SIGNATURE[:2] + b"\x05\x05" + PNG
    assert classify(data) is ImageFormat.ICO
    assert extract_embedded_png(data) == PNG


def test_extract_embedded_png_requires_iend():
    truncated = ICO_SIGNATURE + PNG[:20]
    assert extract_embedded_png(truncated) is None
    assert extract_embedded_png(ICO_SIGNATURE + b"\x00" * 20) is None


def test_mime_types():
    assert mime_type_for(PNG) == "image/png"
    assert mime_type_for(b"GIF89a") == "image/gif"
    assert mime_type_for(b"\xff\xd8\xff\xdb") == "image/jpeg"
    assert mime_type_for(ICO_SIGNATURE + b"\x00" * 10) == "image/x-icon"
