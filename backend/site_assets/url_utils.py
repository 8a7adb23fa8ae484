"""
URL, filename and job-id helpers.

Includes the SSRF safety validator that runs before any network fetch
(page loads, HEAD probes and downloads alike).
"""

import ipaddress
import math
import mimetypes
import os
import re
import secrets
import socket
from urllib.parse import urljoin, urlparse, unquote

from site_assets.models import MediaFilters


SUPPORTED_IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg", ".bmp", ".ico", ".tiff", ".avif")
SUPPORTED_VIDEO_EXTENSIONS = (".mp4", ".webm", ".avi", ".mov", ".mkv", ".wmv", ".flv", ".m4v", ".3gp")
SUPPORTED_EXTENSIONS = SUPPORTED_IMAGE_EXTENSIONS + SUPPORTED_VIDEO_EXTENSIONS

_EXT_GROUP = "|".join(ext.lstrip(".") for ext in SUPPORTED_EXTENSIONS)
MEDIA_KEYWORD_RE = re.compile(r"(image|img|photo|picture|video|media|thumb|thumbnail|gallery)", re.IGNORECASE)
NUMERIC_HOST_RE = re.compile(r"^(0x[0-9a-f]*|\d+)(\.(0x[0-9a-f]*|\d+)){0,3}$")

REDIRECT_STATUSES = (301, 302, 303, 307, 308)

METADATA_HOSTS = {
    "169.254.169.254",
    "metadata.google.internal",
    "metadata",
    "100.100.100.200",
    "fd00:ec2::254",
}

JOB_ID_RE = re.compile(r"[^A-Za-z0-9_-]")
MAX_JOB_ID_LENGTH = 128


# ---------------------------------------------------------------------------
# Validation & SSRF safety
# ---------------------------------------------------------------------------

def is_valid_url(url: str) -> bool:
    """True for absolute http(s) URLs with a host."""
    if not url or not isinstance(url, str):
        return False
    try:
        parsed = urlparse(url.strip())
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc) and bool(parsed.hostname)


def is_private_host(host: str) -> bool:
    """
    Hostname or IP literal that must never be fetched: localhost, loopback,
    private ranges, link-local, reserved/unspecified and cloud metadata.
    Public DNS names are not resolved here.
    """
    if not host:
        return True
    host = host.strip().strip("[]").rstrip(".").lower()
    if host in METADATA_HOSTS:
        return True
    if host == "localhost" or host.endswith(".localhost"):
        return True
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        if not NUMERIC_HOST_RE.match(host):
            return False
        # Shorthand, integer, hex and octal IPv4 forms that resolvers accept.
        try:
            ip = ipaddress.IPv4Address(socket.inet_aton(host))
        except OSError:
            return True
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped:
        ip = ip.ipv4_mapped
    return (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_reserved
        or ip.is_unspecified
        or ip.is_multicast
    )


def is_safe_url(url: str) -> bool:
    if not is_valid_url(url):
        return False
    parsed = urlparse(url.strip())
    if parsed.username or parsed.password:
        return False
    try:
        parsed.port
    except ValueError:
        return False
    return not is_private_host(parsed.hostname or "")


def get_domain(url: str) -> str | None:
    try:
        return urlparse(url).hostname
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Job ids
# ---------------------------------------------------------------------------

def create_job_id() -> str:
    return secrets.token_hex(16)


def sanitize_job_id(value) -> str | None:
    """Strip everything outside [A-Za-z0-9_-]. Returns None when nothing is left."""
    if not value or not isinstance(value, str):
        return None
    cleaned = JOB_ID_RE.sub("", value)[:MAX_JOB_ID_LENGTH]
    return cleaned or None


def is_valid_job_id(value) -> bool:
    return sanitize_job_id(value) == value


# ---------------------------------------------------------------------------
# Media URL classification
# ---------------------------------------------------------------------------

def normalize_url(src: str, base_url: str) -> str | None:
    """Resolve protocol-relative, root-relative and relative references. Drops fragments."""
    if not src or not isinstance(src, str):
        return None
    src = src.strip()
    if src.startswith(("data:", "blob:", "javascript:", "mailto:")):
        return None
    try:
        if src.startswith("//"):
            absolute = "https:" + src
        else:
            absolute = urljoin(base_url, src)
        parsed = urlparse(absolute)
    except ValueError:
        return None
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None
    return parsed._replace(fragment="").geturl()


def get_file_extension(url: str) -> str | None:
    try:
        path = urlparse(url).path
    except ValueError:
        return None
    ext = os.path.splitext(unquote(path))[1].lower()
    return ext or None


def is_image_url(url: str) -> bool:
    return get_file_extension(url) in SUPPORTED_IMAGE_EXTENSIONS


def is_video_url(url: str) -> bool:
    return get_file_extension(url) in SUPPORTED_VIDEO_EXTENSIONS


def is_supported_media_url(url: str) -> bool:
    """Known media extension, or an extension hidden behind a query string or a media-ish path."""
    if get_file_extension(url) in SUPPORTED_EXTENSIONS:
        return True
    if re.search(rf"\.({_EXT_GROUP})", url, re.IGNORECASE):
        return True
    return bool(MEDIA_KEYWORD_RE.search(url))


def media_type_for(url: str, content_type: str | None = None) -> str:
    """
    "image" or "video". URL extension wins, then Content-Type; unknown
    media falls back to "image".
    """
    if is_image_url(url):
        return "image"
    if is_video_url(url):
        return "video"
    if content_type:
        major = content_type.split(";")[0].strip().lower().split("/")[0]
        if major in ("image", "video"):
            return major
    return "image"


# ---------------------------------------------------------------------------
# Filenames
# ---------------------------------------------------------------------------

def sanitize_filename(filename: str) -> str:
    cleaned = re.sub(r'[<>:"/\\|?*\x00-\x1f]', "_", filename)
    cleaned = re.sub(r"\s+", "_", cleaned)
    cleaned = re.sub(r"_{2,}", "_", cleaned)
    return cleaned[:255]


def filename_from_url(url: str, content_type: str | None = None) -> str:
    """Base filename for a download: URL basename, extension guessed when missing."""
    try:
        path = unquote(urlparse(url).path)
    except ValueError:
        path = ""
    filename = os.path.basename(path) or "download"

    if not os.path.splitext(filename)[1]:
        ext = None
        if content_type:
            ext = mimetypes.guess_extension(content_type.split(";")[0].strip().lower())
        if not ext:
            guessed, _ = mimetypes.guess_type(url)
            if guessed:
                ext = mimetypes.guess_extension(guessed)
        if ext:
            filename += ext

    filename = sanitize_filename(filename)
    if filename in ("", ".", ".."):
        filename = "download"
    return filename


def numbered_filename(filename: str, counter: int) -> str:
    """photo.jpg, 2 -> photo_2.jpg"""
    if counter <= 0:
        return filename
    base, ext = os.path.splitext(filename)
    return f"{base}_{counter}{ext}"


# ---------------------------------------------------------------------------
# Filters & formatting
# ---------------------------------------------------------------------------

def _parse_int(value, default):
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return value if not math.isnan(value) else default
    match = re.match(r"^\s*(-?\d+)", str(value))
    return int(match.group(1)) if match else default


def _first(filters: dict, *keys):
    for key in keys:
        if key in filters and filters[key] is not None:
            return filters[key]
    return None


def validate_media_filters(filters: dict | None = None) -> MediaFilters:
    """
    Normalize caller-supplied filters. Both media types default to included,
    and excluding both is treated as including both.
    """
    filters = filters or {}
    include_images = _first(filters, "includeImages", "include_images") is not False
    include_videos = _first(filters, "includeVideos", "include_videos") is not False
    if not include_images and not include_videos:
        include_images = include_videos = True

    min_size = max(0, int(_parse_int(_first(filters, "minSizeBytes", "min_size_bytes"), 0)))
    max_size = _parse_int(_first(filters, "maxSizeBytes", "max_size_bytes"), None)
    if not max_size:
        max_size = math.inf

    return MediaFilters(
        include_images=include_images,
        include_videos=include_videos,
        min_size_bytes=min_size,
        max_size_bytes=max_size,
    )


def format_bytes(num_bytes: int) -> str:
    if not num_bytes:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB", "TB"]
    value, i = float(num_bytes), 0
    while value >= 1024 and i < len(units) - 1:
        value /= 1024
        i += 1
    text = f"{value:.2f}".rstrip("0").rstrip(".")
    return f"{text} {units[i]}"


def format_duration(ms: int) -> str:
    seconds = int(ms // 1000)
    minutes, hours = seconds // 60, seconds // 3600
    if hours:
        return f"{hours}h {minutes % 60}m {seconds % 60}s"
    if minutes:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"
