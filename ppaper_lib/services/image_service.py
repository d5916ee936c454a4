# --- ppaper_lib/services/image_service.py ---
import logging
import os
from io import BytesIO
from urllib.parse import urlparse

import requests
from PIL import Image, UnidentifiedImageError

from ppaper_lib.errors import ImageFetchError
from ppaper_lib.ids import is_safe_id

log = logging.getLogger("ppaper.images")

FORMAT_EXTENSIONS = {
    "PNG": ".png",
    "JPEG": ".jpg",
    "GIF": ".gif",
    "WEBP": ".webp",
    "BMP": ".bmp",
    "TIFF": ".tif",
}
KNOWN_SUFFIXES = (".png", ".jpg", ".jpeg", ".gif", ".webp", ".bmp", ".tif", ".tiff", ".svg")
MAX_IMAGE_BYTES = 20 * 1024 * 1024


def is_remote_url(src: str) -> bool:
    return bool(src) and src.lower().startswith(("http://", "https://"))


def url_suffix(url: str) -> str:
    """Returns the file suffix of a URL path if it is a known image suffix."""
    suffix = os.path.splitext(urlparse(url).path)[1].lower()
    return suffix if suffix in KNOWN_SUFFIXES else ""


class ImageService:
    """Downloads remote figure images and stores them under the image directory."""

    def __init__(self, image_dir: str, timeout: int = 30):
        self.image_dir = image_dir
        self.timeout = timeout

    def fetch(self, url: str) -> bytes:
        """
        Downloads an image.
        Raises:
            ImageFetchError: On a non-http(s) URL, a transport error, an oversized
                             body or bytes that do not decode as an image.
        """
        if not is_remote_url(url):
            raise ImageFetchError(f"Only http(s) images can be fetched: {url}")
        log.debug("Fetching image %s", url)
        try:
            with requests.get(url, stream=True, timeout=self.timeout) as response:
                response.raise_for_status()
                data = BytesIO()
                for chunk in response.iter_content(chunk_size=65536):
                    data.write(chunk)
                    if data.tell() > MAX_IMAGE_BYTES:
                        raise ImageFetchError(f"Image exceeds {MAX_IMAGE_BYTES} bytes: {url}")
        except requests.exceptions.RequestException as e:
            raise ImageFetchError(f"Failed to download {url}: {e}") from e

        payload = data.getvalue()
        if not payload:
            raise ImageFetchError(f"Empty response for {url}")
        if url_suffix(url) != ".svg":
            self.detect_extension(payload, url)
        return payload

    @staticmethod
    def detect_extension(data: bytes, url: str = "") -> str:
        """Picks a file extension from the decoded format, then the URL, then '.png'."""
        if url_suffix(url) == ".svg":
            return ".svg"
        try:
            with Image.open(BytesIO(data)) as img:
                image_format = img.format
                img.verify()
        except (UnidentifiedImageError, OSError, SyntaxError) as e:
            raise ImageFetchError(f"Downloaded data is not a valid image: {e}") from e
        return FORMAT_EXTENSIONS.get(image_format or "", url_suffix(url) or ".png")

    def save(self, doc_id: str, block_id: str, data: bytes, url: str = "") -> str:
        """Writes the image to `{image_dir}/{doc_id}/{block_id}{ext}` and returns the path."""
        if not (is_safe_id(doc_id) and is_safe_id(block_id)):
            raise ImageFetchError(f"Cannot store image under '{doc_id}/{block_id}'.")
        ext = self.detect_extension(data, url)
        target_dir = os.path.join(self.image_dir, doc_id)
        os.makedirs(target_dir, exist_ok=True)
        path = os.path.join(target_dir, f"{block_id}{ext}")
        with open(path, "wb") as f:
            f.write(data)
        log.debug("Saved image %s (%d bytes).", path, len(data))
        return path
