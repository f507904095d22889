from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import piexif
import pytest
import requests
from PIL import Image, ImageFont

from geostamp import AppConfig, StructuredLogger, WatermarkSettings


def _dms(value: float) -> Tuple[Tuple[int, int], ...]:
    degrees = int(value)
    minutes_float = (value - degrees) * 60
    minutes = int(minutes_float)
    seconds = round((minutes_float - minutes) * 60 * 100)
    return ((degrees, 1), (minutes, 1), (seconds, 100))


def make_jpeg(
    path: Path,
    size: Tuple[int, int] = (64, 48),
    color: Tuple[int, int, int] = (90, 120, 150),
    timestamp: Optional[str] = "2023:05:01 10:00:00",
    orientation: Optional[int] = None,
    gps: Optional[Tuple[float, float]] = None,
    image: Optional[Image.Image] = None,
) -> Path:
    img = image if image is not None else Image.new("RGB", size, color)
    exif_dict: Dict[str, Dict[int, Any]] = {"0th": {}, "Exif": {}, "GPS": {}}
    if orientation is not None:
        exif_dict["0th"][piexif.ImageIFD.Orientation] = orientation
    if timestamp is not None:
        exif_dict["Exif"][piexif.ExifIFD.DateTimeOriginal] = timestamp.encode("ascii")
    if gps is not None:
        lat, lon = gps
        exif_dict["GPS"] = {
            piexif.GPSIFD.GPSLatitudeRef: b"N" if lat >= 0 else b"S",
            piexif.GPSIFD.GPSLatitude: _dms(abs(lat)),
            piexif.GPSIFD.GPSLongitudeRef: b"E" if lon >= 0 else b"W",
            piexif.GPSIFD.GPSLongitude: _dms(abs(lon)),
        }

    if any(exif_dict.values()):
        img.save(path, "JPEG", quality=95, exif=piexif.dump(exif_dict))
    else:
        img.save(path, "JPEG", quality=95)
    return path


class FakeResponse:
    def __init__(self, payload: Any = None, status_code: int = 200, text: str = "") -> None:
        self.payload = payload
        self.status_code = status_code
        self.text = text

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error")

    def json(self) -> Any:
        if self.payload is None:
            raise ValueError("Expecting value: line 1 column 1 (char 0)")
        return self.payload


class FakeSession:
    """Stands in for requests.Session and records every GET."""

    def __init__(self, response: Optional[FakeResponse] = None,
                 error: Optional[Exception] = None) -> None:
        self.response = response
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    def get(self, url: str, params: Optional[Dict[str, Any]] = None,
            timeout: Optional[float] = None) -> FakeResponse:
        self.calls.append({"url": url, "params": params, "timeout": timeout})
        if self.error is not None:
            raise self.error
        assert self.response is not None
        return self.response


def amap_payload(province: Any = "上海市", city: Any = "", district: Any = "黄浦区",
                 status: str = "1") -> Dict[str, Any]:
    return {
        "status": status,
        "info": "OK" if status == "1" else "INVALID_USER_KEY",
        "regeocode": {
            "addressComponent": {
                "province": province,
                "city": city,
                "district": district,
            }
        },
    }


@pytest.fixture
def jpeg_factory() -> Callable[..., Path]:
    return make_jpeg


@pytest.fixture
def logger() -> StructuredLogger:
    return StructuredLogger("geostamp-test", console=False)


@pytest.fixture
def font_loader() -> Callable[[float], ImageFont.FreeTypeFont]:
    return lambda size: ImageFont.load_default(size)


@pytest.fixture
def config(tmp_path: Path) -> AppConfig:
    output = tmp_path / "out"
    no_exif = tmp_path / "no_exif"
    output.mkdir()
    no_exif.mkdir()
    return AppConfig(
        output_folder=output,
        no_exif_folder=no_exif,
        jpeg_quality=90,
        amap_api_key="test-key",
        max_concurrency=2,
        font_path=tmp_path / "missing-font.ttf",
        log_file=tmp_path / "process.log",
        watermark_settings=WatermarkSettings(font_size=0.05),
    )
