"""
Perceptual image comparison using a 64-bit difference hash (dHash).

Both images are reduced to a 9x8 grayscale grid; bit i of the hash is 1 when
pixel i is darker than its right-hand neighbour, scanned row-major over the
8x8 output. Similarity is derived from the Hamming distance between hashes.
Any fetch/decode failure returns a neutral comparison instead of raising.
"""
import hashlib
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional, Union

import cv2
import numpy as np
import requests

from config import settings
from modules.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

HASH_WIDTH = 9
HASH_HEIGHT = 8
HASH_BITS = 64

FALLBACK_SIMILARITY = 50.0
FALLBACK_DISTANCE = 32


@dataclass
class FetchedImage:
    data: bytes
    mime_type: str = "image/jpeg"
    source: Optional[str] = None


@dataclass
class ImageComparison:
    similarity: float
    hash_distance: int
    before_hash: Optional[str] = None
    after_hash: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_fallback(self) -> bool:
        return self.error is not None


# ============================================================================
# IMAGE FETCHING
# ============================================================================

def fetch_image(url: str, timeout: float = None, storage=None) -> FetchedImage:
    """
    Fetch an image by URL. URLs owned by local object storage are read from
    disk; anything else is downloaded with requests.
    Raises UpstreamUnavailable on any failure.
    """
    timeout = timeout or settings.HASH_DOWNLOAD_TIMEOUT

    if storage is not None:
        local = storage.read(url)
        if local is not None:
            return local

    try:
        r = requests.get(url, timeout=timeout)
        r.raise_for_status()
    except requests.RequestException as e:
        logger.error(f"[PHASH] Failed to download image from {url}: {e}")
        raise UpstreamUnavailable(f"Failed to download image: {e}")

    if not r.content:
        raise UpstreamUnavailable(f"Empty image body from {url}")

    mime_type = r.headers.get("content-type", "image/jpeg").split(";")[0].strip() or "image/jpeg"
    return FetchedImage(data=r.content, mime_type=mime_type, source=url)


def fetch_image_pair(before_url: str, after_url: str, timeout: float = None, storage=None):
    """Download both images concurrently. Returns (before, after) FetchedImage."""
    with ThreadPoolExecutor(max_workers=2) as pool:
        before_future = pool.submit(fetch_image, before_url, timeout, storage)
        after_future = pool.submit(fetch_image, after_url, timeout, storage)
        return before_future.result(), after_future.result()


# ============================================================================
# HASHING
# ============================================================================

def _as_bytes(image: Union[bytes, FetchedImage]) -> bytes:
    if isinstance(image, FetchedImage):
        return image.data
    return image


def generate_dhash(image: Union[bytes, FetchedImage]) -> str:
    """Compute the 64-bit difference hash as a 16-character hex string."""
    data = np.frombuffer(_as_bytes(image), dtype=np.uint8)
    gray = cv2.imdecode(data, cv2.IMREAD_GRAYSCALE)
    if gray is None:
        raise ValueError("Failed to decode image for hashing")

    small = cv2.resize(gray, (HASH_WIDTH, HASH_HEIGHT), interpolation=cv2.INTER_AREA)
    pixels = small.astype(np.int16)

    bits = []
    for row in range(HASH_HEIGHT):
        for col in range(HASH_WIDTH - 1):
            bits.append("1" if pixels[row, col] < pixels[row, col + 1] else "0")

    binary = "".join(bits)
    return "".join(format(int(binary[i:i + 4], 2), "x") for i in range(0, HASH_BITS, 4))


def hamming_distance(hash1: Optional[str], hash2: Optional[str]) -> int:
    """
    Count differing bits between two hex hashes, nibble by nibble.
    Invalid or mismatched hashes are maximally distant.
    """
    if not hash1 or not hash2 or len(hash1) != len(hash2):
        return HASH_BITS

    distance = 0
    try:
        for a, b in zip(hash1, hash2):
            distance += bin(int(a, 16) ^ int(b, 16)).count("1")
    except ValueError:
        return HASH_BITS
    return distance


def similarity_from_distance(distance: int) -> float:
    return max(0.0, 100.0 - (distance / HASH_BITS) * 100.0)


def neutral_comparison(reason: str) -> ImageComparison:
    return ImageComparison(
        similarity=FALLBACK_SIMILARITY,
        hash_distance=FALLBACK_DISTANCE,
        error=reason,
    )


def compare_images(
    before: Optional[Union[bytes, FetchedImage]],
    after: Optional[Union[bytes, FetchedImage]],
) -> ImageComparison:
    """
    Compare two already-fetched images. A missing image or a decode failure
    yields the neutral comparison (similarity 50, distance 32).
    """
    if before is None or after is None:
        logger.warning("[PHASH] Image unavailable - returning neutral comparison")
        return neutral_comparison("Image unavailable for comparison")

    try:
        before_hash = generate_dhash(before)
        after_hash = generate_dhash(after)
    except Exception as e:
        logger.warning(f"[PHASH] Error comparing images: {e}")
        return neutral_comparison(str(e))

    distance = hamming_distance(before_hash, after_hash)
    similarity = similarity_from_distance(distance)

    logger.info(f"[PHASH] Similarity: {similarity:.2f}% (hamming distance {distance})")

    return ImageComparison(
        similarity=similarity,
        hash_distance=distance,
        before_hash=before_hash,
        after_hash=after_hash,
    )


def compare_image_urls(before_url: str, after_url: str, timeout: float = None, storage=None) -> ImageComparison:
    """Download both images and compare them. Never raises."""
    try:
        before, after = fetch_image_pair(before_url, after_url, timeout, storage)
    except UpstreamUnavailable as e:
        return neutral_comparison(e.message)
    return compare_images(before, after)


def md5_hex(data: bytes) -> str:
    """Exact-content fingerprint for duplicate upload detection."""
    return hashlib.md5(data).hexdigest()
