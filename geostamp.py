#!/usr/bin/env python3
"""
Geostamp Photo Watermarker
--------------------------
Scans a folder for JPEG photographs, extracts capture time, orientation and
GPS coordinates from EXIF, resolves a province/city/district address through
the AMap reverse geocoding API, and stamps a two-line timestamp/address
watermark into the bottom-right corner of every photo.

Photos without usable EXIF are copied unchanged into a separate folder.

Processing model:
- One worker per file on a bounded thread pool
- Each filename is processed at most once per run
- Failures are isolated per file and logged, never fatal to the run
- Configuration via YAML file, env vars and CLI
"""

import argparse
import json
import logging
import os
import shutil
import sys
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import (Any, Callable, Dict, Iterator, List, NamedTuple, Optional,
                    Sequence, Set, Tuple)

import exifread
import requests
import yaml
from PIL import Image, ImageDraw, ImageFont


# ----------------------------------------------------------------------
# Constants and Enums
# ----------------------------------------------------------------------
INPUT_PATTERN = '*.jpg'
EXIF_TIME_FORMAT = '%Y:%m:%d %H:%M:%S'
DISPLAY_TIME_FORMAT = '%Y-%m-%d %H:%M:%S'
OUTPUT_NAME_FORMAT = '%Y%m%d%H%M%S'

AMAP_REGEO_URL = 'https://restapi.amap.com/v3/geocode/regeo'
AMAP_SEARCH_RADIUS = 10
AMAP_STATUS_OK = '1'

# Orientation code -> counter-clockwise rotation in degrees.
# 6 and 8 are deliberately the reverse of the usual EXIF table.
ORIENTATION_ROTATIONS: Dict[int, int] = {3: 180, 6: 270, 8: 90}

STROKE_OFFSETS: Tuple[Tuple[int, int], ...] = (
    (-2, -2), (-2, 0), (-2, 2),
    (0, -2), (0, 2),
    (2, -2), (2, 0), (2, 2),
)
SHADOW_OFFSETS: Tuple[Tuple[int, int], ...] = ((4, 4), (3, 3), (5, 5))
STROKE_COLOR = (0, 0, 0, 255)
SHADOW_COLOR = (0, 0, 0, 180)

LINE_HEIGHT_RATIO = 1.2
TIME_CHAR_WIDTH = 0.5
ADDRESS_CHAR_WIDTH = 0.33


class TaskStatus(Enum):
    """Lifecycle outcome of a single image task."""
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"


class TaskRoute(Enum):
    """Which branch of the pipeline a task took."""
    PASSTHROUGH = "passthrough"
    WATERMARKED = "watermarked"


# ----------------------------------------------------------------------
# Configuration Management
# ----------------------------------------------------------------------
class ConfigError(ValueError):
    """Raised when the configuration is missing, unreadable or invalid."""


@dataclass
class WatermarkColor:
    r: int = 255
    g: int = 165
    b: int = 0
    a: int = 255

    def as_tuple(self) -> Tuple[int, int, int, int]:
        return (self.r, self.g, self.b, self.a)


@dataclass
class WatermarkSettings:
    """Watermark geometry, expressed as fractions of the image size."""
    font_size: float = 0.02
    width_padding: float = 0.02
    height_padding: float = 0.01
    color: WatermarkColor = field(default_factory=WatermarkColor)

    @classmethod
    def from_dict(cls, settings_dict: Dict[str, Any]) -> 'WatermarkSettings':
        settings_dict = dict(settings_dict)
        for field_name in ('font_size', 'width_padding', 'height_padding'):
            if field_name in settings_dict:
                settings_dict[field_name] = float(settings_dict[field_name])
        color = settings_dict.pop('color', None) or {}
        return cls(
            color=WatermarkColor(**{k: int(v) for k, v in color.items()}),
            **settings_dict
        )


@dataclass
class AppConfig:
    """
    Application configuration with validation and defaults.

    Loaded from a YAML file, with environment variable overrides.
    """
    output_folder: Path = Path('已处理')
    no_exif_folder: Path = Path('无EXIF信息')
    jpeg_quality: int = 70
    amap_api_key: str = ''
    max_concurrency: int = 5
    font_path: Path = Path('C:/Windows/Fonts/msyh.ttc')
    request_timeout: Optional[float] = None
    log_file: Path = Path('process.log')
    log_level: str = 'INFO'
    log_rotation_days: int = 7
    watermark_settings: WatermarkSettings = field(default_factory=WatermarkSettings)

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> 'AppConfig':
        """Create AppConfig from dictionary with type conversion."""
        config_dict = dict(config_dict)
        path_fields = ['output_folder', 'no_exif_folder', 'font_path', 'log_file']
        for field_name in path_fields:
            if field_name in config_dict:
                config_dict[field_name] = Path(config_dict[field_name])

        int_fields = ['jpeg_quality', 'max_concurrency', 'log_rotation_days']
        try:
            for field_name in int_fields:
                if field_name in config_dict:
                    config_dict[field_name] = int(config_dict[field_name])
            if config_dict.get('request_timeout') is not None:
                config_dict['request_timeout'] = float(config_dict['request_timeout'])
            if 'watermark_settings' in config_dict:
                config_dict['watermark_settings'] = WatermarkSettings.from_dict(
                    config_dict['watermark_settings'] or {}
                )
            if config_dict.get('amap_api_key') is None:
                config_dict['amap_api_key'] = ''
            return cls(**config_dict)
        except (AttributeError, TypeError, ValueError) as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    def validate(self) -> None:
        """Validate configuration values."""
        if self.max_concurrency <= 0:
            raise ConfigError("max_concurrency must be positive")
        if not 1 <= self.jpeg_quality <= 100:
            raise ConfigError("jpeg_quality must be between 1 and 100")
        if self.request_timeout is not None and self.request_timeout <= 0:
            raise ConfigError("request_timeout must be positive when set")
        ws = self.watermark_settings
        if ws.font_size <= 0:
            raise ConfigError("watermark_settings.font_size must be positive")
        if ws.width_padding < 0 or ws.height_padding < 0:
            raise ConfigError("watermark paddings cannot be negative")
        if any(not 0 <= channel <= 255 for channel in ws.color.as_tuple()):
            raise ConfigError("watermark color channels must be within 0-255")

    def resolve_paths(self, base_dir: Path) -> 'AppConfig':
        """Return a copy with relative output paths anchored at base_dir."""
        def anchor(path: Path) -> Path:
            return path if path.is_absolute() else base_dir / path

        return replace(
            self,
            output_folder=anchor(self.output_folder),
            no_exif_folder=anchor(self.no_exif_folder),
            log_file=anchor(self.log_file),
        )

    def to_dict(self) -> Dict[str, Any]:
        ws = self.watermark_settings
        return {
            'output_folder': str(self.output_folder),
            'no_exif_folder': str(self.no_exif_folder),
            'jpeg_quality': self.jpeg_quality,
            'amap_api_key': self.amap_api_key,
            'max_concurrency': self.max_concurrency,
            'font_path': self.font_path.as_posix(),
            'request_timeout': self.request_timeout,
            'log_file': str(self.log_file),
            'log_level': self.log_level,
            'log_rotation_days': self.log_rotation_days,
            'watermark_settings': {
                'font_size': ws.font_size,
                'width_padding': ws.width_padding,
                'height_padding': ws.height_padding,
                'color': {'r': ws.color.r, 'g': ws.color.g,
                          'b': ws.color.b, 'a': ws.color.a},
            },
        }


def write_default_config(config_path: Path) -> None:
    """Write a config file populated with the default values."""
    with open(config_path, 'w', encoding='utf-8') as f:
        yaml.safe_dump(AppConfig().to_dict(), f, allow_unicode=True, sort_keys=False)


def load_config(config_path: Path) -> AppConfig:
    """
    Load configuration from file and env vars with proper precedence.

    A missing file is replaced by a freshly written default one, but the
    load still fails so the user gets a chance to fill in the API key.
    """
    config_path = Path(config_path)
    if not config_path.exists():
        try:
            write_default_config(config_path)
        except OSError as e:
            raise ConfigError(
                f"Config file {config_path} not found and a default could not be written: {e}"
            ) from e
        raise ConfigError(
            f"Config file {config_path} not found; a default one was written, "
            f"review it and run again"
        )

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            file_config = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to read config file {config_path}: {e}") from e
    if not isinstance(file_config, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")

    config: Dict[str, Any] = dict(file_config)

    # Override with environment variables
    env_mapping = {
        'GEOSTAMP_OUTPUT_FOLDER': 'output_folder',
        'GEOSTAMP_NO_EXIF_FOLDER': 'no_exif_folder',
        'GEOSTAMP_AMAP_API_KEY': 'amap_api_key',
        'GEOSTAMP_MAX_CONCURRENCY': 'max_concurrency',
        'GEOSTAMP_FONT_PATH': 'font_path',
        'GEOSTAMP_JPEG_QUALITY': 'jpeg_quality',
    }

    for env_var, config_key in env_mapping.items():
        env_value = os.getenv(env_var)
        if env_value is not None:
            if config_key in ['max_concurrency', 'jpeg_quality']:
                try:
                    config[config_key] = int(env_value)
                except ValueError:
                    pass  # Keep file value if invalid
            else:
                config[config_key] = env_value

    app_config = AppConfig.from_dict(config)
    app_config.validate()
    return app_config


# ----------------------------------------------------------------------
# Logging Infrastructure
# ----------------------------------------------------------------------
class StructuredLogger:
    """Structured logging wrapper with an append-only file and console output."""

    def __init__(self, name: str, log_file: Optional[Path] = None,
                 log_level: str = 'INFO', rotation_days: int = 7,
                 console: bool = True):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, log_level.upper()))

        # Clear existing handlers
        self.logger.handlers.clear()

        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

        if log_file is not None:
            file_handler = TimedRotatingFileHandler(
                log_file, when='midnight', interval=rotation_days,
                backupCount=5, encoding='utf-8'
            )
            file_handler.setFormatter(formatter)
            self.logger.addHandler(file_handler)

        if console:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setFormatter(formatter)
            self.logger.addHandler(console_handler)

    @staticmethod
    def _format(message: str, kwargs: Dict[str, Any]) -> str:
        if not kwargs:
            return message
        return f"{message} | {json.dumps(kwargs, ensure_ascii=False, default=str)}"

    def info(self, message: str, **kwargs) -> None:
        self.logger.info(self._format(message, kwargs))

    def warning(self, message: str, **kwargs) -> None:
        self.logger.warning(self._format(message, kwargs))

    def error(self, message: str, **kwargs) -> None:
        self.logger.error(self._format(message, kwargs))

    def debug(self, message: str, **kwargs) -> None:
        self.logger.debug(self._format(message, kwargs))

    def close(self) -> None:
        for handler in list(self.logger.handlers):
            handler.close()
            self.logger.removeHandler(handler)


# ----------------------------------------------------------------------
# Data Models
# ----------------------------------------------------------------------
class CaptureMetadata(NamedTuple):
    """Capture information extracted from a photo's EXIF block."""
    timestamp: datetime
    orientation: int
    gps_coordinates: Optional[Tuple[float, float]]


@dataclass
class ImageTask:
    """One input file travelling through the pipeline."""
    path: Path
    status: TaskStatus = TaskStatus.PENDING
    route: Optional[TaskRoute] = None
    output_path: Optional[Path] = None
    error_message: Optional[str] = None

    @property
    def name(self) -> str:
        return self.path.name


@dataclass
class RunSummary:
    """Aggregate outcome of one batch run."""
    total: int = 0
    done: int = 0
    failed: int = 0
    skipped: int = 0
    passthrough: int = 0
    watermarked: int = 0
    peak_in_flight: int = 0

    def record(self, task: ImageTask) -> None:
        self.total += 1
        if task.status == TaskStatus.DONE:
            self.done += 1
        elif task.status == TaskStatus.FAILED:
            self.failed += 1
        elif task.status == TaskStatus.SKIPPED:
            self.skipped += 1
        if task.status != TaskStatus.DONE:
            return
        if task.route == TaskRoute.PASSTHROUGH:
            self.passthrough += 1
        elif task.route == TaskRoute.WATERMARKED:
            self.watermarked += 1

    def as_dict(self) -> Dict[str, int]:
        return dict(self.__dict__)


# ----------------------------------------------------------------------
# Metadata Extraction
# ----------------------------------------------------------------------
class MetadataExtractor:
    """Reads capture time, orientation and GPS from EXIF tags."""

    TIMESTAMP_TAGS = ('EXIF DateTimeOriginal', 'Image DateTime')

    def __init__(self, logger: StructuredLogger):
        self.logger = logger

    def extract(self, file_path: Path) -> Optional[CaptureMetadata]:
        """
        Return the photo's capture metadata, or None when it has none usable.

        A missing or zero timestamp discards the whole block, GPS and
        orientation included.
        """
        tags = self._read_tags(file_path)
        if not tags:
            return None

        timestamp = self._parse_timestamp(tags)
        if timestamp is None:
            self.logger.info("No valid capture timestamp", path=str(file_path))
            return None

        return CaptureMetadata(
            timestamp=timestamp,
            orientation=self._parse_orientation(tags),
            gps_coordinates=self._extract_gps(tags, file_path),
        )

    def has_usable_metadata(self, file_path: Path) -> bool:
        return self.extract(file_path) is not None

    def _read_tags(self, file_path: Path) -> Dict[str, Any]:
        """Read raw EXIF tags, empty when the file carries no EXIF block."""
        try:
            with open(file_path, 'rb') as f:
                return exifread.process_file(f, details=False)
        except Exception as e:
            self.logger.warning("EXIF extraction failed",
                                path=str(file_path), error=str(e))
            return {}

    def _parse_timestamp(self, tags: Dict[str, Any]) -> Optional[datetime]:
        for key in self.TIMESTAMP_TAGS:
            tag = tags.get(key)
            if tag is None:
                continue
            raw = str(tag).strip('\x00 ')
            try:
                return datetime.strptime(raw, EXIF_TIME_FORMAT)
            except ValueError:
                # zero-filled "0000:00:00 00:00:00" lands here too
                return None
        return None

    def _parse_orientation(self, tags: Dict[str, Any]) -> int:
        tag = tags.get('Image Orientation')
        if tag is None:
            return 1
        try:
            return int(tag.values[0])
        except (AttributeError, IndexError, TypeError, ValueError):
            return 1

    def _extract_gps(self, tags: Dict[str, Any],
                     file_path: Path) -> Optional[Tuple[float, float]]:
        """Extract GPS coordinates as signed decimal degrees."""
        try:
            lat_ref = tags.get('GPS GPSLatitudeRef')
            lat = tags.get('GPS GPSLatitude')
            lon_ref = tags.get('GPS GPSLongitudeRef')
            lon = tags.get('GPS GPSLongitude')

            if not (lat_ref and lat and lon_ref and lon):
                self.logger.info("No GPS data", path=str(file_path))
                return None

            lat_deg, lat_min, lat_sec = [float(x) for x in lat.values]
            lon_deg, lon_min, lon_sec = [float(x) for x in lon.values]

            latitude = lat_deg + lat_min/60 + lat_sec/3600
            longitude = lon_deg + lon_min/60 + lon_sec/3600

            if lat_ref.values[0] in ['S', 's']:
                latitude = -latitude
            if lon_ref.values[0] in ['W', 'w']:
                longitude = -longitude

            self.logger.info("Parsed GPS coordinates", path=str(file_path),
                             latitude=latitude, longitude=longitude)
            return (latitude, longitude)
        except Exception as e:
            self.logger.warning("GPS extraction error",
                                path=str(file_path), error=str(e))
            return None


# ----------------------------------------------------------------------
# Geocoding Service
# ----------------------------------------------------------------------
def _normalize_text_field(value: Any) -> str:
    """Collapse AMap's string-or-array fields into one string."""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        if value and isinstance(value[0], str):
            return value[0]
        return ''
    return ''


@dataclass(frozen=True)
class AddressComponent:
    """The administrative parts of an AMap ``regeo`` answer."""
    province: str = ''
    city: str = ''
    district: str = ''

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> 'AddressComponent':
        regeocode = data.get('regeocode')
        if not isinstance(regeocode, dict):
            return cls()
        component = regeocode.get('addressComponent')
        if not isinstance(component, dict):
            return cls()
        return cls(
            province=_normalize_text_field(component.get('province')),
            city=_normalize_text_field(component.get('city')),
            district=_normalize_text_field(component.get('district')),
        )

    def format(self) -> str:
        return f"{self.province}{self.city}{self.district}"


class GeoResolver:
    """Reverse geocoding through the AMap web API."""

    def __init__(self, api_key: str, logger: StructuredLogger,
                 session: Optional[requests.Session] = None,
                 url: str = AMAP_REGEO_URL, radius: int = AMAP_SEARCH_RADIUS):
        self.api_key = api_key
        self.logger = logger
        self.url = url
        self.radius = radius
        self.session = session if session is not None else requests.Session()

    def resolve(self, lat: Optional[float], lon: Optional[float],
                timeout: Optional[float] = None) -> str:
        """
        Resolve coordinates into a province+city+district string.

        Never raises: every failure degrades to an empty string. ``timeout``
        of None waits on the endpoint indefinitely.
        """
        if lat is None or lon is None:
            return ''
        if not self.api_key:
            self.logger.warning("AMap API key is empty, skipping reverse geocoding")
            return ''

        params = {
            'output': 'JSON',
            'location': f"{lon:.6f},{lat:.6f}",
            'key': self.api_key,
            'radius': self.radius,
        }
        try:
            response = self.session.get(self.url, params=params, timeout=timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            self.logger.warning("Geocoding request failed",
                                latitude=lat, longitude=lon, error=str(e))
            return ''

        try:
            data = response.json()
        except ValueError as e:
            self.logger.warning("Failed to parse geocoding response",
                                status_code=response.status_code,
                                body=response.text[:500], error=str(e))
            return ''

        if not isinstance(data, dict) or data.get('status') != AMAP_STATUS_OK:
            status = data.get('status') if isinstance(data, dict) else None
            self.logger.warning("Geocoding API returned error status", status=status)
            return ''

        address = AddressComponent.from_response(data).format()
        self.logger.info("Geocoding successful",
                         latitude=lat, longitude=lon, address=address)
        return address


# ----------------------------------------------------------------------
# Orientation
# ----------------------------------------------------------------------
def correct_orientation(img: Image.Image, orientation: int) -> Image.Image:
    """Rotate raw pixel data according to the EXIF orientation code."""
    angle = ORIENTATION_ROTATIONS.get(orientation)
    if angle is None:
        return img
    return img.rotate(angle, expand=True)


# ----------------------------------------------------------------------
# Watermark Rendering
# ----------------------------------------------------------------------
def watermark_text(timestamp: datetime, address: str) -> str:
    return f"{timestamp.strftime(DISPLAY_TIME_FORMAT)}\n{address}"


def _text_units(line: str) -> int:
    # Widths are estimated from the UTF-8 byte length, not glyph metrics.
    return len(line.encode('utf-8'))


@dataclass(frozen=True)
class WatermarkLayout:
    """Where and how large the text block is drawn on one image."""
    font_size: float
    width_padding: int
    height_padding: int
    line_height: int
    block_width: int
    block_height: int
    x: int
    y: int

    def baseline(self, line_index: int) -> int:
        return self.y + int(self.font_size) + line_index * self.line_height

    @property
    def box(self) -> Tuple[int, int, int, int]:
        return (self.x, self.y, self.x + self.block_width, self.y + self.block_height)


def compute_layout(size: Tuple[int, int], lines: Sequence[str],
                   settings: WatermarkSettings) -> WatermarkLayout:
    """Place the text block bottom-right, inset by the configured padding."""
    width, height = size
    font_size = max(width, height) * settings.font_size
    width_padding = int(width * settings.width_padding)
    height_padding = int(height * settings.height_padding)

    line_height = int(font_size * LINE_HEIGHT_RATIO)
    time_line = lines[0] if lines else ''
    address_line = lines[1] if len(lines) > 1 else ''
    block_width = int(font_size * max(_text_units(time_line) * TIME_CHAR_WIDTH,
                                      _text_units(address_line) * ADDRESS_CHAR_WIDTH))
    block_height = line_height * len(lines)

    return WatermarkLayout(
        font_size=font_size,
        width_padding=width_padding,
        height_padding=height_padding,
        line_height=line_height,
        block_width=block_width,
        block_height=block_height,
        x=width - block_width - width_padding,
        y=height - block_height - height_padding,
    )


class WatermarkCompositor:
    """Draws the stroked, shadowed two-line watermark onto an image."""

    def __init__(self, settings: WatermarkSettings, font_path: Path,
                 logger: StructuredLogger,
                 font_loader: Optional[Callable[[float], ImageFont.FreeTypeFont]] = None):
        self.settings = settings
        self.font_path = font_path
        self.logger = logger
        self.font_loader = font_loader or self._load_truetype

    def _load_truetype(self, size: float) -> ImageFont.FreeTypeFont:
        return ImageFont.truetype(str(self.font_path), size)

    def compose(self, img: Image.Image, text: str, filename: str = '') -> Image.Image:
        """
        Return an opaque RGB copy of ``img`` with ``text`` stamped on it.

        Text is drawn in three complete passes: stroke, shadow, fill. A
        failing draw call is skipped and reported once per image.
        """
        lines = text.split('\n')
        while len(lines) < 2:
            lines.append('')

        canvas = img.convert('RGB')
        layout = compute_layout(canvas.size, lines, self.settings)

        try:
            font = self.font_loader(layout.font_size)
        except Exception as e:
            self.logger.warning("Failed to load font, writing image without watermark",
                                filename=filename, font_path=str(self.font_path),
                                error=str(e))
            return canvas

        # RGBA draw mode on an RGB canvas blends the translucent shadow
        draw = ImageDraw.Draw(canvas, 'RGBA')
        passes = (
            ('stroke', STROKE_COLOR, STROKE_OFFSETS),
            ('shadow', SHADOW_COLOR, SHADOW_OFFSETS),
            ('fill', self.settings.color.as_tuple(), ((0, 0),)),
        )
        failures: List[str] = []
        for pass_name, color, offsets in passes:
            failures.extend(self._draw_pass(draw, font, lines, layout,
                                            pass_name, color, offsets))

        if failures:
            self.logger.warning("Some watermark draws failed",
                                filename=filename, failed=len(failures),
                                errors=sorted(set(failures)))
        return canvas

    def _draw_pass(self, draw: ImageDraw.ImageDraw, font: ImageFont.FreeTypeFont,
                   lines: Sequence[str], layout: WatermarkLayout, pass_name: str,
                   color: Tuple[int, int, int, int],
                   offsets: Sequence[Tuple[int, int]]) -> List[str]:
        failures = []
        for index, line in enumerate(lines):
            for dx, dy in offsets:
                try:
                    draw.text((layout.x + dx, layout.baseline(index) + dy), line,
                              font=font, fill=color, anchor='ls')
                except Exception as e:
                    failures.append(f"{pass_name}: {e}")
        return failures


# ----------------------------------------------------------------------
# Image Processing Pipeline
# ----------------------------------------------------------------------
class ImageProcessor:
    """Runs the per-file pipeline: metadata, geocoding, rotation, watermark."""

    def __init__(self, config: AppConfig, extractor: MetadataExtractor,
                 resolver: GeoResolver, compositor: WatermarkCompositor,
                 geo_executor: ThreadPoolExecutor, logger: StructuredLogger):
        self.config = config
        self.extractor = extractor
        self.resolver = resolver
        self.compositor = compositor
        self.geo_executor = geo_executor
        self.logger = logger

    def process(self, task: ImageTask) -> ImageTask:
        """Process one claimed task; errors propagate to the dispatcher."""
        metadata = self.extractor.extract(task.path)
        if metadata is None:
            task.route = TaskRoute.PASSTHROUGH
            task.output_path = self._copy_passthrough(task.path)
            return task

        task.route = TaskRoute.WATERMARKED
        lat, lon = metadata.gps_coordinates or (None, None)
        future = self.geo_executor.submit(
            self.resolver.resolve, lat, lon, self.config.request_timeout
        )
        address = self._await_address(future, task)

        task.output_path = self._write_watermarked(task, metadata, address)
        return task

    def _await_address(self, future: Future, task: ImageTask) -> str:
        try:
            return future.result(timeout=self.config.request_timeout)
        except FutureTimeoutError:
            self.logger.warning("Geocoding timed out", filename=task.name,
                                timeout=self.config.request_timeout)
        except Exception as e:
            self.logger.warning("Geocoding failed", filename=task.name, error=str(e))
        return ''

    def _write_watermarked(self, task: ImageTask, metadata: CaptureMetadata,
                           address: str) -> Path:
        self.logger.info("Processing image", filename=task.name)
        output_path = (self.config.output_folder /
                       f"{metadata.timestamp.strftime(OUTPUT_NAME_FORMAT)}.jpg")

        with Image.open(task.path) as img:
            upright = correct_orientation(img, metadata.orientation)
            stamped = self.compositor.compose(
                upright, watermark_text(metadata.timestamp, address), filename=task.name
            )
        stamped.save(output_path, format='JPEG', quality=self.config.jpeg_quality)
        self.logger.info("Watermarked image saved",
                         filename=task.name, output=str(output_path))
        return output_path

    def _copy_passthrough(self, file_path: Path) -> Path:
        """Copy a file without usable EXIF unchanged into the no-EXIF folder."""
        target = self.config.no_exif_folder / file_path.name
        shutil.copyfile(file_path, target)
        self.logger.info("Copied file without EXIF",
                         source=str(file_path), target=str(target))
        return target


# ----------------------------------------------------------------------
# Dispatching
# ----------------------------------------------------------------------
class RunContext:
    """
    Shared state of one run: the claimed-filename set and the admission gate.

    Locks are held only for the check-and-claim or the counter update, never
    across file or network I/O.
    """

    def __init__(self, max_concurrency: int):
        if max_concurrency <= 0:
            raise ValueError("max_concurrency must be positive")
        self.max_concurrency = max_concurrency
        self._claimed: Set[str] = set()
        self._claim_lock = threading.Lock()
        self._gate = threading.BoundedSemaphore(max_concurrency)
        self._counter_lock = threading.Lock()
        self.in_flight = 0
        self.peak_in_flight = 0

    def try_claim(self, name: str) -> bool:
        """Claim ``name`` for this run; False if it was already claimed."""
        with self._claim_lock:
            if name in self._claimed:
                return False
            self._claimed.add(name)
            return True

    @contextmanager
    def admit(self) -> Iterator[None]:
        """Hold one concurrency slot for the duration of the block."""
        self._gate.acquire()
        with self._counter_lock:
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            yield
        finally:
            with self._counter_lock:
                self.in_flight -= 1
            self._gate.release()


def enumerate_files(input_dir: Path) -> List[Path]:
    """List the photos to process; the set is fixed for the whole run."""
    if not input_dir.is_dir():
        raise NotADirectoryError(f"Input directory {input_dir} does not exist")
    return sorted(p for p in input_dir.glob(INPUT_PATTERN) if p.is_file())


class FileDispatcher:
    """Fans image tasks out to a bounded worker pool."""

    def __init__(self, processor: ImageProcessor, context: RunContext,
                 logger: StructuredLogger):
        self.processor = processor
        self.context = context
        self.logger = logger

    def run(self, files: Sequence[Path]) -> RunSummary:
        """Process every file and return once all workers released their slot."""
        summary = RunSummary()
        with ThreadPoolExecutor(max_workers=self.context.max_concurrency,
                                thread_name_prefix='geostamp-worker') as executor:
            futures = [executor.submit(self._run_task, ImageTask(path=Path(f)))
                       for f in files]
            wait(futures)

        for future in futures:
            summary.record(future.result())
        summary.peak_in_flight = self.context.peak_in_flight
        self.logger.info("All files processed", **summary.as_dict())
        return summary

    def _run_task(self, task: ImageTask) -> ImageTask:
        with self.context.admit():
            if not self.context.try_claim(task.name):
                task.status = TaskStatus.SKIPPED
                self.logger.debug("Skipping already claimed file", filename=task.name)
                return task
            try:
                self.processor.process(task)
                task.status = TaskStatus.DONE
            except Exception as e:
                task.status = TaskStatus.FAILED
                task.error_message = str(e)
                self.logger.error("Failed to process file",
                                  filename=task.name, error=str(e))
        return task


# ----------------------------------------------------------------------
# Main Application
# ----------------------------------------------------------------------
class GeostampApp:
    """Main application class wiring all components for one batch run."""

    def __init__(self, config: AppConfig, input_dir: Path,
                 session: Optional[requests.Session] = None,
                 font_loader: Optional[Callable[[float], ImageFont.FreeTypeFont]] = None,
                 console: bool = True):
        self.input_dir = input_dir
        self.config = config.resolve_paths(input_dir)
        self.logger = StructuredLogger(
            'Geostamp',
            self.config.log_file,
            self.config.log_level,
            self.config.log_rotation_days,
            console=console,
        )
        self.logger.info("Logger initialized", log_file=str(self.config.log_file))

        self.extractor = MetadataExtractor(self.logger)
        self.resolver = GeoResolver(self.config.amap_api_key, self.logger, session=session)
        self.compositor = WatermarkCompositor(self.config.watermark_settings,
                                              self.config.font_path, self.logger,
                                              font_loader=font_loader)
        self.context = RunContext(self.config.max_concurrency)

    def run(self) -> RunSummary:
        self.logger.info("Configuration loaded",
                         input_dir=str(self.input_dir),
                         output_folder=str(self.config.output_folder),
                         no_exif_folder=str(self.config.no_exif_folder),
                         max_concurrency=self.config.max_concurrency)
        self._ensure_directories()

        files = enumerate_files(self.input_dir)
        self.logger.info("Found jpg files", count=len(files))

        with ThreadPoolExecutor(max_workers=self.config.max_concurrency,
                                thread_name_prefix='geostamp-geo') as geo_executor:
            processor = ImageProcessor(self.config, self.extractor, self.resolver,
                                       self.compositor, geo_executor, self.logger)
            dispatcher = FileDispatcher(processor, self.context, self.logger)
            return dispatcher.run(files)

    def _ensure_directories(self) -> None:
        """Ensure required directories exist."""
        for directory in (self.config.output_folder, self.config.no_exif_folder):
            directory.mkdir(parents=True, exist_ok=True)
            self.logger.info("Directory ready", path=str(directory))


# ----------------------------------------------------------------------
# Entry Point
# ----------------------------------------------------------------------
def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Stamp capture time and location onto JPEG photos"
    )
    parser.add_argument(
        '--config',
        default='config.yaml',
        help='Path to YAML configuration file (default: config.yaml)'
    )
    parser.add_argument(
        '--input-dir',
        default='.',
        help='Folder holding the .jpg photos (default: current directory)'
    )
    args = parser.parse_args(argv)

    print("Processing photos, check the log file if anything goes wrong")
    try:
        config = load_config(Path(args.config))
        app = GeostampApp(config, Path(args.input_dir))
        try:
            summary = app.run()
        finally:
            app.logger.close()
    except Exception as e:
        print(f"Failed to start application: {e}")
        sys.exit(1)

    print(f"Done: {summary.watermarked} watermarked, {summary.passthrough} copied "
          f"without EXIF, {summary.failed} failed")


if __name__ == '__main__':
    main()
