"""
Tests for dHash generation, Hamming distance and the neutral fallback.
"""
from unittest.mock import MagicMock, patch

import cv2
import numpy as np
import pytest
import requests

from conftest import noise_image_bytes
from modules.errors import UpstreamUnavailable
from modules.perceptual_hash import (
    FALLBACK_DISTANCE,
    FALLBACK_SIMILARITY,
    FetchedImage,
    compare_image_urls,
    compare_images,
    fetch_image,
    generate_dhash,
    hamming_distance,
    md5_hex,
    similarity_from_distance,
)


def gradient_png(increasing: bool = True) -> bytes:
    row = np.arange(90, dtype=np.uint8) * 2
    if not increasing:
        row = row[::-1]
    ok, buffer = cv2.imencode(".png", np.tile(row, (80, 1)))
    assert ok
    return buffer.tobytes()


class TestDhash:

    def test_hash_is_16_hex_chars(self):
        value = generate_dhash(noise_image_bytes(1))
        assert len(value) == 16
        int(value, 16)

    def test_brightening_gradient_sets_every_bit(self):
        assert generate_dhash(gradient_png(increasing=True)) == "f" * 16

    def test_darkening_gradient_clears_every_bit(self):
        assert generate_dhash(gradient_png(increasing=False)) == "0" * 16

    def test_accepts_fetched_image(self):
        data = noise_image_bytes(4)
        assert generate_dhash(FetchedImage(data=data)) == generate_dhash(data)

    def test_undecodable_bytes_raise(self):
        with pytest.raises(ValueError):
            generate_dhash(b"definitely not an image")


class TestHammingDistance:

    def test_identical(self):
        assert hamming_distance("a1b2c3d4e5f60718", "a1b2c3d4e5f60718") == 0

    def test_nibble_wise_count(self):
        assert hamming_distance("0000000000000000", "000000000000000f") == 4
        assert hamming_distance("0000000000000000", "ffffffffffffffff") == 64

    @pytest.mark.parametrize("h1,h2", [(None, "00"), ("", ""), ("abc", "abcd"), ("zz", "00")])
    def test_invalid_hashes_are_maximally_distant(self, h1, h2):
        assert hamming_distance(h1, h2) == 64

    def test_similarity_formula(self):
        assert similarity_from_distance(0) == 100.0
        assert similarity_from_distance(16) == 75.0
        assert similarity_from_distance(64) == 0.0


class TestCompareImages:

    def test_identical_buffers(self):
        data = noise_image_bytes(7)
        result = compare_images(data, data)
        assert result.hash_distance == 0
        assert result.similarity == 100.0
        assert not result.is_fallback

    def test_opposite_gradients_are_unrelated(self):
        result = compare_images(gradient_png(True), gradient_png(False))
        assert result.hash_distance == 64
        assert result.similarity == 0.0

    def test_missing_image_returns_neutral(self):
        result = compare_images(None, noise_image_bytes(1))
        assert result.similarity == FALLBACK_SIMILARITY
        assert result.hash_distance == FALLBACK_DISTANCE
        assert result.is_fallback

    def test_decode_failure_returns_neutral(self):
        result = compare_images(b"junk", noise_image_bytes(1))
        assert (result.similarity, result.hash_distance) == (50.0, 32)

    def test_download_failure_returns_neutral(self):
        with patch("modules.perceptual_hash.requests.get", side_effect=requests.ConnectionError("down")):
            result = compare_image_urls("http://example.com/a.jpg", "http://example.com/b.jpg")
        assert result.similarity == 50.0
        assert result.hash_distance == 32


class TestFetchImage:

    def test_prefers_storage(self):
        storage = MagicMock()
        storage.read.return_value = FetchedImage(data=b"local", mime_type="image/png")
        with patch("modules.perceptual_hash.requests.get") as mock_get:
            image = fetch_image("http://localhost:8000/uploads/x.png", storage=storage)
        assert image.data == b"local"
        mock_get.assert_not_called()

    def test_downloads_when_storage_does_not_own_url(self):
        storage = MagicMock()
        storage.read.return_value = None
        response = MagicMock(content=b"remote", headers={"content-type": "image/png; charset=binary"})
        with patch("modules.perceptual_hash.requests.get", return_value=response):
            image = fetch_image("http://cdn.example.com/x.png", timeout=3, storage=storage)
        assert image.data == b"remote"
        assert image.mime_type == "image/png"

    def test_http_error_raises_upstream_unavailable(self):
        response = MagicMock()
        response.raise_for_status.side_effect = requests.HTTPError("404")
        with patch("modules.perceptual_hash.requests.get", return_value=response):
            with pytest.raises(UpstreamUnavailable):
                fetch_image("http://cdn.example.com/missing.jpg")


def test_md5_hex():
    assert md5_hex(b"") == "d41d8cd98f00b204e9800998ecf8427e"
