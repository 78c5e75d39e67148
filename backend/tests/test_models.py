from __future__ import annotations

from PIL import Image

from emage.compression.models import (
    UNKNOWN_MEDIA_TYPE,
    EventKind,
    ImageFile,
    RunEvent,
    StepError,
    StepInfo,
    guess_media_type,
)


def test_image_file_from_path_uses_extension(tmp_path):
    path = tmp_path / "Photo.JPG"
    path.write_bytes(b"\xff\xd8" + b"0" * 98)

    image = ImageFile.from_path(path)

    assert image.path == path.absolute()
    assert image.media_type == "image/jpeg"
    assert image.size == 100


def test_explicit_media_type_wins(tmp_path):
    path = tmp_path / "vector.txt"
    path.write_text("<svg/>", encoding="utf-8")

    assert ImageFile.from_path(path, media_type="image/svg+xml").media_type == "image/svg+xml"


def test_media_type_sniffed_with_pillow_when_extension_is_unknown(tmp_path):
    path = tmp_path / "upload.bin"
    Image.new("RGB", (4, 4), (200, 10, 10)).save(path, format="PNG")

    assert guess_media_type(path) == "image/png"


def test_unreadable_content_is_unknown(tmp_path):
    path = tmp_path / "notes.dat"
    path.write_bytes(b"definitely not an image")

    assert guess_media_type(path) == UNKNOWN_MEDIA_TYPE


def test_svg_is_known_by_extension(tmp_path):
    path = tmp_path / "icon.svg"
    path.write_text("<svg xmlns='http://www.w3.org/2000/svg'/>", encoding="utf-8")

    assert guess_media_type(path) == "image/svg+xml"


def test_event_to_dict():
    step = StepInfo("optipng", 1, 3)

    assert RunEvent(EventKind.STEP_END, step=step, size=512).to_dict() == {
        "kind": "step-end",
        "algorithm": "optipng",
        "index": 1,
        "total": 3,
        "size": 512,
    }
    assert RunEvent(EventKind.FAILED, error=RuntimeError("bad")).to_dict() == {"kind": "failed", "error": "bad"}
    assert RunEvent(EventKind.FINISH).to_dict() == {"kind": "finish"}


def test_step_error_to_dict():
    assert StepError("svgo", "broken").to_dict() == {"algorithm": "svgo", "message": "broken"}
