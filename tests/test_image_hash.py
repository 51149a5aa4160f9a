import random

import numpy as np
import pytest
from PIL import Image

from provenance.core.errors import DecodeError, EmptyInputError, LengthMismatchError
from provenance.services.image_hash import dhash, hamming_distance, perceptual_hash, phash, similarity

from conftest import encode, make_image, make_natural_image, resize_bytes

def test_dhash_is_16_hex_chars(image_x):
    h = dhash(image_x)
    assert len(h) == 16
    int(h, 16)

def test_dhash_bit_order():
    grid = np.zeros((8, 9), dtype=np.uint8)
    grid[0, 0] = 200
    assert dhash(encode(Image.fromarray(grid))) == "8000000000000000"

    grid = np.zeros((8, 9), dtype=np.uint8)
    grid[7, 7] = 200
    assert dhash(encode(Image.fromarray(grid))) == "0000000000000001"

def test_dhash_left_pads_with_zeros():
    assert dhash(encode(Image.new("L", (90, 80), color=128))) == "0" * 16

@pytest.mark.parametrize("scale", [0.8, 0.9, 1.1, 1.2])
def test_dhash_survives_resize(image_x, scale):
    resized = resize_bytes(image_x, scale)
    assert similarity(dhash(image_x), dhash(resized)) > 0.9

def test_dhash_survives_half_size(image_x):
    resized = resize_bytes(image_x, 0.5)
    assert similarity(dhash(image_x), dhash(resized)) > 0.85

@pytest.mark.parametrize("scale", [0.8, 0.9, 1.1, 1.2])
def test_dhash_survives_resize_of_natural_image(scale):
    original = make_natural_image()
    resized = resize_bytes(original, scale)
    assert similarity(dhash(original), dhash(resized)) > 0.85

def test_natural_images_are_not_similar():
    a = dhash(make_natural_image(seed=7))
    b = dhash(make_natural_image(seed=8))
    assert similarity(a, b) < 0.85

def test_dhash_ignores_aspect_ratio(image_x):
    assert dhash(make_image(width=301, height=277)) == dhash(image_x)

def test_dhash_survives_brightness_shift(image_x):
    assert dhash(make_image(shift=15)) == dhash(image_x)

def test_dhash_survives_jpeg_reencode(image_x):
    jpeg = make_image(fmt="JPEG", quality=85)
    assert similarity(dhash(image_x), dhash(jpeg)) > 0.9

def test_inverted_image_is_maximally_distant(image_x):
    assert hamming_distance(dhash(image_x), dhash(make_image(invert=True))) == 64

def test_perceptual_hash_dispatch(image_x):
    assert perceptual_hash(image_x, "dhash") == dhash(image_x)
    assert perceptual_hash(image_x, "phash") == phash(image_x)
    with pytest.raises(ValueError):
        perceptual_hash(image_x, "ahash")

def test_phash_is_64_bit_and_deterministic(image_x):
    h = phash(image_x)
    assert len(h) == 16
    assert phash(bytes(image_x)) == h
    assert phash(make_image(invert=True)) != h

def test_corrupt_image_raises_decode_error(image_x):
    with pytest.raises(DecodeError):
        dhash(b"definitely not an image")
    with pytest.raises(DecodeError):
        dhash(image_x[:64])

def test_empty_image_raises():
    with pytest.raises(EmptyInputError):
        dhash(b"")

def test_hamming_distance_counts_bits():
    assert hamming_distance("0000000000000000", "0000000000000000") == 0
    assert hamming_distance("0000000000000000", "ffffffffffffffff") == 64
    assert hamming_distance("0000000000000001", "0000000000000003") == 1
    assert hamming_distance("F000000000000000", "0000000000000000") == 4

@pytest.mark.parametrize("a, b", [
    ("abc", "0000000000000000"),
    ("0000000000000000", "00000000000000000000000000000000"),
    ("zzzzzzzzzzzzzzzz", "0000000000000000"),
    (None, "0000000000000000"),
    ("-000000000000001", "0000000000000000"),
    ("+000000000000001", "0000000000000000"),
    ("0x00000000000000", "0000000000000000"),
    ("0000_00000000000", "0000000000000000"),
    (" 00000000000000 ", "0000000000000000"),
])
def test_hamming_distance_length_mismatch(a, b):
    with pytest.raises(LengthMismatchError):
        hamming_distance(a, b)

def _random_hashes(n, seed=1234):
    rng = random.Random(seed)
    return [format(rng.getrandbits(64), "016x") for _ in range(n)]

def test_hamming_distance_is_a_metric():
    hashes = _random_hashes(12)
    for a in hashes:
        assert hamming_distance(a, a) == 0
        for b in hashes:
            d_ab = hamming_distance(a, b)
            assert 0 <= d_ab <= 64
            assert d_ab == hamming_distance(b, a)
            assert (d_ab == 0) == (a == b)
            for c in hashes:
                assert hamming_distance(a, c) <= d_ab + hamming_distance(b, c)

def test_similarity_properties():
    hashes = _random_hashes(10, seed=99)
    for a in hashes:
        assert similarity(a, a) == 1.0
        for b in hashes:
            assert similarity(a, b) == similarity(b, a)
            assert 0.0 <= similarity(a, b) <= 1.0
    assert similarity("0000000000000000", "00000000000003ff") == 1 - 10 / 64
