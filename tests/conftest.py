import io
import time

import numpy as np
import pytest
from PIL import Image, ImageFilter

from provenance.core.errors import LedgerUnavailable
from provenance.core.index import SimilarityIndex
from provenance.models.records import OracleResult, OracleVerdict
from provenance.services.ledger import InMemoryLedger
from provenance.services.oracle import Oracle, StaticOracle
from provenance.services.registration import RegistrationGate
from provenance.services.verification import VerificationPipeline

def pattern_grid(invert=False, shift=0):
    """9x8 luminance grid where horizontal neighbours always differ by >= 100."""
    grid = np.array(
        [[30 + ((r * 7 + c * 13) % 9) * 25 for c in range(9)] for r in range(8)],
        dtype=np.int16,
    )
    if invert:
        grid = 255 - grid
    return np.clip(grid + shift, 0, 255).astype(np.uint8)

def make_image(width=360, height=320, invert=False, shift=0, fmt="PNG", **save_kwargs):
    """Blocky RGB test image, encoded to bytes."""
    image = Image.fromarray(pattern_grid(invert, shift)).convert("RGB")
    image = image.resize((width, height), Image.Resampling.NEAREST)
    return encode(image, fmt, **save_kwargs)

def make_natural_image(width=360, height=320, seed=7, fmt="PNG"):
    """Smooth random luminance field with soft edges, closer to a photograph than the grid."""
    rng = np.random.default_rng(seed)
    coarse = Image.fromarray(rng.integers(0, 256, size=(5, 6, 3), dtype=np.uint8))
    image = coarse.resize((width, height), Image.Resampling.BICUBIC)
    image = image.filter(ImageFilter.GaussianBlur(radius=4))
    return encode(image, fmt)

def encode(image, fmt="PNG", **save_kwargs):
    buf = io.BytesIO()
    image.save(buf, format=fmt, **save_kwargs)
    return buf.getvalue()

def resize_bytes(image_bytes, scale, resample=Image.Resampling.BILINEAR):
    image = Image.open(io.BytesIO(image_bytes))
    size = (max(1, round(image.width * scale)), max(1, round(image.height * scale)))
    return encode(image.resize(size, resample))

class FailingLedger(InMemoryLedger):
    """Ledger whose lookups fail; writes still go through."""

    def is_registered(self, content_fingerprint):
        raise LedgerUnavailable("ledger node unreachable")

class SlowLedger(InMemoryLedger):
    def __init__(self, delay):
        super().__init__()
        self.delay = delay

    def is_registered(self, content_fingerprint):
        time.sleep(self.delay)
        return super().is_registered(content_fingerprint)

class SlowOracle(Oracle):
    def __init__(self, delay, result):
        self.delay = delay
        self.result = result
        self.calls = 0

    def classify(self, image_bytes, mime_type=None):
        self.calls += 1
        time.sleep(self.delay)
        return self.result

class RecordingOracle(StaticOracle):
    def __init__(self, result=None):
        super().__init__(result)
        self.mime_types = []

    def classify(self, image_bytes, mime_type=None):
        self.mime_types.append(mime_type)
        return super().classify(image_bytes, mime_type)

def oracle_result(verdict, confidence, explanation="because"):
    return OracleResult(verdict=OracleVerdict(verdict), confidence=confidence, explanation=explanation)

@pytest.fixture
def image_x():
    return make_image()

@pytest.fixture
def index():
    return SimilarityIndex()

@pytest.fixture
def ledger():
    return InMemoryLedger()

@pytest.fixture
def gate(index, ledger):
    return RegistrationGate(index, ledger, hash_algorithm="dhash")

@pytest.fixture
def make_pipeline(index, ledger):
    pipelines = []

    def factory(oracle=None, **kwargs):
        kwargs.setdefault("ledger", ledger)
        kwargs.setdefault("index", index)
        kwargs.setdefault("hash_algorithm", "dhash")
        pipeline = VerificationPipeline(oracle=oracle, **kwargs)
        pipelines.append(pipeline)
        return pipeline

    yield factory
    for pipeline in pipelines:
        pipeline.close()
