import threading

import pytest

from provenance.core.errors import (
    AlreadyRegisteredError,
    DecodeError,
    InputError,
    LedgerRejected,
    LedgerUnavailable,
    StorageError,
)
from provenance.core.index import SimilarityIndex
from provenance.core.storage import MemoryRecordStore
from provenance.services.fingerprint import content_fingerprint
from provenance.services.image_hash import dhash
from provenance.services.ledger import InMemoryLedger
from provenance.services.registration import RegistrationGate

from conftest import FailingLedger, make_image

def test_register_creates_record(gate, index, ledger, image_x):
    record = gate.register(image_x, owner="alice", classifier_score=0.93)

    assert record.content_fingerprint == content_fingerprint(image_x)
    assert record.perceptual_hash == dhash(image_x)
    assert record.owner == "alice"
    assert record.classifier_score == 0.93
    assert record.token_id == "token_1"
    assert index.lookup_exact(record.content_fingerprint) == record
    assert ledger.is_registered(record.content_fingerprint)

def test_register_twice_rejected(gate, ledger, image_x):
    gate.register(image_x)
    with pytest.raises(AlreadyRegisteredError):
        gate.register(image_x)
    # The pre-check stopped the second attempt before the ledger write
    assert ledger.write_attempts == 1

def test_register_rejects_bad_image_before_ledger(gate, ledger):
    with pytest.raises(DecodeError):
        gate.register(b"not an image")
    assert ledger.write_attempts == 0

@pytest.mark.parametrize("score", [1.5, -0.1])
def test_register_rejects_bad_score_before_ledger(gate, index, ledger, image_x, score):
    with pytest.raises(InputError):
        gate.register(image_x, classifier_score=score)
    assert ledger.write_attempts == 0
    assert ledger.confirmed_writes() == []
    assert len(index) == 0

def test_concurrent_registration_of_same_bytes(gate, index, ledger, image_x):
    results = []
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        try:
            results.append(gate.register(image_x))
        except AlreadyRegisteredError as e:
            results.append(e)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    records = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, AlreadyRegisteredError)]
    assert len(records) == 1
    assert len(rejected) == 7
    assert len(index) == 1
    assert len(ledger.confirmed_writes()) == 1

def test_concurrent_registration_of_different_bytes(gate, index):
    images = [make_image(width=360 + n) for n in range(6)]
    errors = []

    def worker(data):
        try:
            gate.register(data)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(data,)) for data in images]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(index) == 6

class BlindLedger(InMemoryLedger):
    """Always claims nothing is registered; relies on the atomic write check."""

    def is_registered(self, content_fingerprint):
        return False

def test_ledger_atomic_check_is_the_enforcement_point(index, image_x):
    ledger = BlindLedger()
    gate = RegistrationGate(index, ledger, hash_algorithm="dhash")
    gate.register(image_x)

    with pytest.raises(AlreadyRegisteredError):
        gate.register(image_x)
    assert ledger.write_attempts == 2
    assert len(index) == 1

def test_precheck_failure_does_not_block_registration(index, image_x):
    gate = RegistrationGate(index, FailingLedger(), hash_algorithm="dhash")
    record = gate.register(image_x)
    assert index.lookup_exact(record.content_fingerprint) == record

class RefusingLedger(InMemoryLedger):
    def __init__(self, error):
        super().__init__()
        self.error = error

    def write(self, content_fingerprint, owner=None, metadata=None):
        raise self.error

def test_non_duplicate_rejection_propagates(index, image_x):
    gate = RegistrationGate(index, RefusingLedger(LedgerRejected("owner not allowed")), hash_algorithm="dhash")
    with pytest.raises(LedgerRejected):
        gate.register(image_x)
    assert len(index) == 0

def test_ledger_unavailable_on_write_propagates(index, image_x):
    gate = RegistrationGate(index, RefusingLedger(LedgerUnavailable("rpc down")), hash_algorithm="dhash")
    with pytest.raises(LedgerUnavailable):
        gate.register(image_x)
    assert len(index) == 0

class FlakyStore(MemoryRecordStore):
    def __init__(self, failures):
        super().__init__()
        self.failures = failures

    def append(self, record):
        if self.failures:
            self.failures -= 1
            raise StorageError("disk full")
        super().append(record)

def test_index_failure_does_not_fail_registration(ledger, image_x):
    index = SimilarityIndex(FlakyStore(failures=1))
    gate = RegistrationGate(index, ledger, hash_algorithm="dhash")

    record = gate.register(image_x)

    assert ledger.is_registered(record.content_fingerprint)
    assert len(index) == 0
    assert gate.index_failures == 1

    # Replaying the ledger repairs the index
    assert gate.reconcile() == 1
    assert index.lookup_exact(record.content_fingerprint).token_id == record.token_id

def test_reconcile_rebuilds_fresh_index(gate, ledger):
    first = gate.register(make_image(), classifier_score=0.8, owner="alice")
    second = gate.register(make_image(invert=True))

    rebuilt = SimilarityIndex()
    fresh_gate = RegistrationGate(rebuilt, ledger, hash_algorithm="dhash")
    assert fresh_gate.reconcile() == 2
    assert fresh_gate.reconcile() == 0

    restored = rebuilt.lookup_exact(first.content_fingerprint)
    assert restored == first
    assert rebuilt.lookup_exact(second.content_fingerprint).perceptual_hash == second.perceptual_hash

def test_reconcile_skips_entries_without_perceptual_hash(index, ledger):
    ledger.write(content_fingerprint(b"legacy"), owner="bob")
    gate = RegistrationGate(index, ledger, hash_algorithm="dhash")
    assert gate.reconcile() == 0
    assert len(index) == 0
