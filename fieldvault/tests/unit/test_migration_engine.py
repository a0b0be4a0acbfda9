from __future__ import annotations

import asyncio

import pytest

from fieldvault.core.errors import (
    MigrationAbortedError,
    MigrationFailedError,
    MigrationInProgressError,
    MigrationNotFoundError,
    PolicyConfigurationError,
    RollbackUnavailableError,
)
from fieldvault.services.audit import OPERATION_MIGRATE, OUTCOME_FAILURE, InMemoryAuditSink
from fieldvault.services.crypto import codec
from fieldvault.services.migration.checkpoint import (
    STATUS_ABORTED,
    STATUS_COMPLETED,
    STATUS_ENCRYPTING,
    STATUS_FAILED,
)
from fieldvault.services.migration.engine import MigrationEngine
from fieldvault.services.migration.store import EncryptedRecordStore
from fieldvault.services.resilience import RetryPolicy
from fieldvault.tests.utils.crypto import make_encryptor, make_registry
from fieldvault.tests.utils.stores import InMemoryCheckpointStore, InMemoryRecordStore


FAST_RETRY = RetryPolicy(timeout_ms=1000, max_attempts=2, backoff_ms=1)
FIELDS = ["phone_number", "whatsapp_id"]


def _phone(index: int) -> str:
    return f"+1555{index:07d}"


def _seed(store: InMemoryRecordStore, count: int, **extra) -> None:
    store.seed(
        "contacts",
        [
            {"id": index, "name": f"contact-{index}", "phone_number": _phone(index), "whatsapp_id": None, **extra}
            for index in range(1, count + 1)
        ],
    )


def _engine(store, checkpoints, *, encryptor=None, audit_sink=None, **kwargs) -> MigrationEngine:
    kwargs.setdefault("retry_policy", FAST_RETRY)
    kwargs.setdefault("snapshot_retry_policy", FAST_RETRY)
    return MigrationEngine(
        store,
        checkpoints,
        encryptor or make_encryptor(),
        audit_sink=audit_sink,
        **kwargs,
    )


async def _migrate(engine: MigrationEngine, *, batch_size: int = 100, **kwargs):
    checkpoint = await engine.prepare(table="contacts", fields=FIELDS, batch_size=batch_size, **kwargs)
    return await engine.run(checkpoint)


@pytest.mark.asyncio
async def test_dry_run_counts_without_writing() -> None:
    store = InMemoryRecordStore()
    checkpoints = InMemoryCheckpointStore()
    _seed(store, 1000)
    before = store.rows("contacts")

    result = await _migrate(_engine(store, checkpoints), dry_run=True)

    assert result.status == STATUS_COMPLETED
    assert result.counts.as_dict() == {"scanned": 1000, "encrypted": 1000, "skipped": 0, "failed": 0}
    assert result.snapshot_id is None
    assert store.rows("contacts") == before
    assert store.calls.get("conditional_update", 0) == 0
    assert (await checkpoints.get(result.run_id)).status == STATUS_COMPLETED


@pytest.mark.asyncio
async def test_migration_encrypts_every_record_and_is_idempotent() -> None:
    store = InMemoryRecordStore()
    checkpoints = InMemoryCheckpointStore()
    _seed(store, 1000)
    encryptor = make_encryptor()
    engine = _engine(store, checkpoints, encryptor=encryptor, max_workers=4)

    first = await _migrate(engine)
    assert first.status == STATUS_COMPLETED
    assert first.counts.as_dict() == {"scanned": 1000, "encrypted": 1000, "skipped": 0, "failed": 0}
    assert first.last_processed_key == 1000
    assert first.snapshot_id is not None
    rows = store.rows("contacts")
    assert all(codec.is_encoded(row["phone_number"]) for row in rows)
    assert all(row["whatsapp_id"] is None for row in rows)
    assert [encryptor.decrypt_field(row["phone_number"], "phone_number") for row in rows] == [
        _phone(index) for index in range(1, 1001)
    ]

    second = await _migrate(engine)
    assert second.run_id != first.run_id
    assert second.counts.as_dict() == {"scanned": 1000, "encrypted": 0, "skipped": 1000, "failed": 0}
    assert store.rows("contacts") == rows


@pytest.mark.asyncio
async def test_completed_checkpoint_is_not_rerun() -> None:
    store = InMemoryRecordStore()
    _seed(store, 5)
    engine = _engine(store, InMemoryCheckpointStore())
    done = await _migrate(engine)
    scans = store.calls["scan"]
    again = await engine.run(done)
    assert again.status == STATUS_COMPLETED
    assert store.calls["scan"] == scans


@pytest.mark.asyncio
async def test_null_and_empty_values_are_skipped() -> None:
    store = InMemoryRecordStore()
    store.seed(
        "contacts",
        [
            {"id": 1, "phone_number": None, "whatsapp_id": None},
            {"id": 2, "phone_number": "", "whatsapp_id": ""},
            {"id": 3, "phone_number": _phone(3), "whatsapp_id": None},
        ],
    )
    result = await _migrate(_engine(store, InMemoryCheckpointStore()))
    assert result.counts.as_dict() == {"scanned": 3, "encrypted": 1, "skipped": 2, "failed": 0}
    assert store.rows("contacts")[1]["phone_number"] == ""


@pytest.mark.asyncio
async def test_failed_record_is_counted_and_the_run_continues() -> None:
    store = InMemoryRecordStore()
    _seed(store, 10)
    store.tables["contacts"][4]["phone_number"] = 15550000004
    sink = InMemoryAuditSink()

    result = await _migrate(_engine(store, InMemoryCheckpointStore(), audit_sink=sink), batch_size=3)

    assert result.status == STATUS_COMPLETED
    assert result.counts.as_dict() == {"scanned": 10, "encrypted": 9, "skipped": 0, "failed": 1}
    assert result.failures == [{"record_id": "4", "field": "phone_number", "error": "ENCRYPTION_FAILED"}]
    assert store.tables["contacts"][4]["phone_number"] == 15550000004
    migrate_events = sink.filter(operation=OPERATION_MIGRATE)
    assert len(migrate_events) == 10
    assert [event.record_id for event in sink.filter(operation=OPERATION_MIGRATE, outcome=OUTCOME_FAILURE)] == ["4"]


@pytest.mark.asyncio
async def test_undecryptable_payloads_fail_alone_within_their_batch() -> None:
    store = InMemoryRecordStore()
    old = make_encryptor(make_registry(1))
    rotated = make_encryptor(make_registry(1, 2))
    original = codec.decode(old.encrypt_field(_phone(2), "phone_number"))
    flipped_tag = bytes([original.tag[0] ^ 0x01]) + original.tag[1:]
    tampered = codec.encode(original.version, original.nonce, original.ciphertext, flipped_tag)
    unknown_version = codec.encode(99, b"\x00" * 12, b"ciphertext", b"\x00" * 16)
    rows = [{"id": index, "phone_number": _phone(index)} for index in range(1, 7)]
    rows[1]["phone_number"] = tampered
    rows[3]["phone_number"] = unknown_version
    store.seed("contacts", rows)

    result = await _migrate(_engine(store, InMemoryCheckpointStore(), encryptor=rotated), batch_size=3)

    assert result.status == STATUS_COMPLETED
    assert result.counts.as_dict() == {"scanned": 6, "encrypted": 4, "skipped": 0, "failed": 2}
    assert [failure["record_id"] for failure in result.failures] == ["2", "4"]
    for failure in result.failures:
        assert failure["field"] == "phone_number"
        assert failure["error"] in {"AUTHENTICATION_FAILED", "KEY_VERSION_NOT_FOUND"}
    assert store.tables["contacts"][2]["phone_number"] == tampered
    assert store.tables["contacts"][4]["phone_number"] == unknown_version
    for index in (1, 3, 5, 6):
        value = store.tables["contacts"][index]["phone_number"]
        assert codec.decode(value).version == 2
        assert rotated.decrypt_field(value, "phone_number") == _phone(index)


@pytest.mark.asyncio
async def test_cancel_between_batches_then_resume_same_run() -> None:
    store = InMemoryRecordStore()
    checkpoints = InMemoryCheckpointStore()
    _seed(store, 500)
    engine = _engine(store, checkpoints)
    cancel = asyncio.Event()
    batches = {"count": 0}

    async def stop_after_three(checkpoint) -> None:
        batches["count"] += 1
        if batches["count"] == 3:
            cancel.set()

    checkpoint = await engine.prepare(table="contacts", fields=FIELDS, batch_size=100)
    aborted = await engine.run(checkpoint, cancel_event=cancel, on_batch=stop_after_three)
    assert aborted.status == STATUS_ABORTED
    assert aborted.last_processed_key == 300
    assert aborted.counts.encrypted == 300
    with pytest.raises(MigrationAbortedError):
        aborted.raise_for_status()
    after_first = store.rows("contacts")
    assert not codec.is_encoded(after_first[300]["phone_number"])

    resumed = await engine.prepare(table="contacts", fields=FIELDS, batch_size=100)
    assert resumed.run_id == checkpoint.run_id
    assert resumed.last_processed_key == 300
    finished = await engine.run(resumed)

    assert finished.status == STATUS_COMPLETED
    assert finished.counts.as_dict() == {"scanned": 500, "encrypted": 500, "skipped": 0, "failed": 0}
    final_rows = store.rows("contacts")
    # Records finished before the interruption are untouched by the resumed run.
    assert final_rows[:300] == after_first[:300]
    assert all(codec.is_encoded(row["phone_number"]) for row in final_rows)


@pytest.mark.asyncio
async def test_unexpected_error_mid_run_fails_run_then_resumes() -> None:
    store = InMemoryRecordStore()
    checkpoints = InMemoryCheckpointStore()
    _seed(store, 500)
    engine = _engine(store, checkpoints)
    batches = {"count": 0}

    async def crash_after_three(checkpoint) -> None:
        batches["count"] += 1
        if batches["count"] == 3:
            raise RuntimeError("worker killed")

    checkpoint = await engine.prepare(table="contacts", fields=FIELDS, batch_size=100)
    with pytest.raises(RuntimeError):
        await engine.run(checkpoint, on_batch=crash_after_three)
    stored = await checkpoints.get(checkpoint.run_id)
    assert stored.status == STATUS_FAILED
    assert stored.error_code == "MIGRATION_ERROR"
    assert stored.error_message == "RuntimeError: worker killed"
    assert stored.last_processed_key == 300
    assert engine.is_active("contacts") is False

    resumed = await engine.prepare(table="contacts", fields=FIELDS, batch_size=100)
    assert resumed.run_id == checkpoint.run_id
    finished = await engine.run(resumed)
    assert finished.counts.encrypted == 500
    assert finished.counts.scanned == 500


@pytest.mark.asyncio
async def test_persisted_cancel_request_survives_progress_saves() -> None:
    store = InMemoryRecordStore()
    checkpoints = InMemoryCheckpointStore()
    _seed(store, 300)
    engine = _engine(store, checkpoints)
    checkpoint = await engine.prepare(table="contacts", fields=FIELDS, batch_size=100)

    def cancel_from_another_process(table, key) -> None:
        # Lands while the first batch is still being written.
        if key == 50:
            checkpoints.runs[checkpoint.run_id].cancel_requested = True

    store.before_conditional_update = cancel_from_another_process
    result = await engine.run(checkpoint)

    assert result.status == STATUS_ABORTED
    assert result.last_processed_key == 100
    assert result.counts.scanned == 100

    resumed = await engine.prepare(table="contacts", fields=FIELDS, batch_size=100)
    assert resumed.run_id == checkpoint.run_id
    assert (await checkpoints.get(checkpoint.run_id)).cancel_requested is False
    store.before_conditional_update = None
    assert (await engine.run(resumed)).status == STATUS_COMPLETED


@pytest.mark.asyncio
async def test_store_outage_fails_run_then_resumes() -> None:
    store = InMemoryRecordStore()
    checkpoints = InMemoryCheckpointStore()
    _seed(store, 500)
    store.fail_scans_after = 2
    engine = _engine(store, checkpoints)

    failed = await _migrate(engine)
    assert failed.status == STATUS_FAILED
    assert failed.error_code == "STORE_UNAVAILABLE"
    assert failed.last_processed_key == 200
    assert (await checkpoints.get(failed.run_id)).status == STATUS_FAILED
    with pytest.raises(MigrationFailedError):
        failed.raise_for_status()

    store.fail_scans_after = None
    resumed = await _migrate(engine)
    assert resumed.run_id == failed.run_id
    assert resumed.status == STATUS_COMPLETED
    assert resumed.error_code is None
    assert resumed.counts.encrypted == 500


@pytest.mark.asyncio
async def test_transient_store_errors_are_retried() -> None:
    store = InMemoryRecordStore()
    _seed(store, 20)
    store.failures = {"scan": 1, "conditional_update": 1, "snapshot": 1}
    result = await _migrate(_engine(store, InMemoryCheckpointStore()), batch_size=5)
    assert result.status == STATUS_COMPLETED
    assert result.counts.encrypted == 20


@pytest.mark.asyncio
async def test_unwritable_record_is_counted_as_failed() -> None:
    store = InMemoryRecordStore()
    _seed(store, 3)
    # Both attempts of one conditional write fail; the rest of the batch still commits.
    store.failures = {"conditional_update": 2}
    result = await _migrate(_engine(store, InMemoryCheckpointStore()))
    assert result.status == STATUS_COMPLETED
    assert result.counts.as_dict() == {"scanned": 3, "encrypted": 2, "skipped": 0, "failed": 1}
    assert result.failures[0]["error"] == "WRITE_FAILED"


@pytest.mark.asyncio
async def test_checkpoint_store_outage_fails_run() -> None:
    store = InMemoryRecordStore()
    checkpoints = InMemoryCheckpointStore()
    _seed(store, 10)
    engine = _engine(store, checkpoints)
    checkpoint = await engine.prepare(table="contacts", fields=FIELDS, batch_size=5)
    checkpoints.fail_saves = True
    result = await engine.run(checkpoint)
    assert result.status == STATUS_FAILED
    assert result.error_code == "STORE_UNAVAILABLE"


@pytest.mark.asyncio
async def test_concurrent_plaintext_write_is_restaged() -> None:
    store = InMemoryRecordStore()
    _seed(store, 10)
    encryptor = make_encryptor()
    seen = {"count": 0}

    def concurrent_writer(table, key) -> None:
        if key == 5 and seen["count"] == 0:
            seen["count"] += 1
            store.tables[table][key]["phone_number"] = "+19990000000"

    store.before_conditional_update = concurrent_writer
    result = await _migrate(_engine(store, InMemoryCheckpointStore(), encryptor=encryptor))

    assert result.counts.as_dict() == {"scanned": 10, "encrypted": 10, "skipped": 0, "failed": 0}
    assert encryptor.decrypt_field(store.tables["contacts"][5]["phone_number"], "phone_number") == "+19990000000"


@pytest.mark.asyncio
async def test_concurrent_encrypted_write_is_skipped() -> None:
    store = InMemoryRecordStore()
    _seed(store, 3)
    encryptor = make_encryptor()
    concurrent_value = encryptor.encrypt_field("+18880000000", "phone_number")

    def concurrent_writer(table, key) -> None:
        if key == 2:
            store.tables[table][key]["phone_number"] = concurrent_value

    store.before_conditional_update = concurrent_writer
    result = await _migrate(_engine(store, InMemoryCheckpointStore(), encryptor=encryptor))

    assert result.counts.as_dict() == {"scanned": 3, "encrypted": 2, "skipped": 1, "failed": 0}
    assert store.tables["contacts"][2]["phone_number"] == concurrent_value


@pytest.mark.asyncio
async def test_persistent_write_conflict_gives_up() -> None:
    store = InMemoryRecordStore()
    _seed(store, 3)
    writes = {"count": 0}

    def keeps_changing(table, key) -> None:
        if key == 1:
            writes["count"] += 1
            store.tables[table][key]["phone_number"] = f"+1777000000{writes['count']}"

    store.before_conditional_update = keeps_changing
    result = await _migrate(_engine(store, InMemoryCheckpointStore(), conflict_max_attempts=3))

    assert writes["count"] == 3
    assert result.counts.failed == 1
    assert result.failures[0] == {"record_id": "1", "field": None, "error": "WRITE_CONFLICT"}


@pytest.mark.asyncio
async def test_migration_upgrades_old_key_versions() -> None:
    store = InMemoryRecordStore()
    old = make_encryptor(make_registry(1))
    store.seed(
        "contacts",
        [
            {"id": 1, "phone_number": old.encrypt_field(_phone(1), "phone_number")},
            {"id": 2, "phone_number": _phone(2)},
        ],
    )
    rotated = make_encryptor(make_registry(1, 2))
    result = await _migrate(_engine(store, InMemoryCheckpointStore(), encryptor=rotated))

    assert result.counts.encrypted == 2
    for index in (1, 2):
        value = store.tables["contacts"][index]["phone_number"]
        assert codec.decode(value).version == 2
        assert rotated.decrypt_field(value, "phone_number") == _phone(index)


@pytest.mark.asyncio
async def test_scope_limits_the_migrated_records() -> None:
    store = InMemoryRecordStore()
    store.seed(
        "contacts",
        [{"id": index, "tenant_id": "a" if index % 2 else "b", "phone_number": _phone(index)} for index in range(1, 11)],
    )
    result = await _migrate(_engine(store, InMemoryCheckpointStore()), scope={"tenant_id": "a"}, batch_size=2)

    assert result.counts.encrypted == 5
    assert result.scope == {"tenant_id": "a"}
    for row in store.rows("contacts"):
        assert codec.is_encoded(row["phone_number"]) is (row["tenant_id"] == "a")


@pytest.mark.asyncio
async def test_rollback_restores_pre_migration_values() -> None:
    store = InMemoryRecordStore()
    checkpoints = InMemoryCheckpointStore()
    _seed(store, 50)
    before = store.rows("contacts")
    sink = InMemoryAuditSink()
    engine = _engine(store, checkpoints, audit_sink=sink)

    result = await _migrate(engine, batch_size=20)
    restored = await engine.rollback(result.run_id)

    assert restored == 50
    assert store.rows("contacts") == before
    stored = await checkpoints.get(result.run_id)
    assert stored.rolled_back_at is not None
    assert stored.is_resumable is False
    assert sink.events[-1].metadata["action"] == "rollback"


@pytest.mark.asyncio
async def test_rollback_requires_a_snapshot() -> None:
    store = InMemoryRecordStore()
    _seed(store, 5)
    engine = _engine(store, InMemoryCheckpointStore())
    dry = await _migrate(engine, dry_run=True)
    with pytest.raises(RollbackUnavailableError):
        await engine.rollback(dry.run_id)
    with pytest.raises(MigrationNotFoundError):
        await engine.rollback("missing")


@pytest.mark.asyncio
async def test_snapshots_can_be_disabled() -> None:
    store = InMemoryRecordStore()
    _seed(store, 5)
    result = await _migrate(_engine(store, InMemoryCheckpointStore(), snapshot_enabled=False))
    assert result.snapshot_id is None
    assert store.calls.get("snapshot", 0) == 0


@pytest.mark.asyncio
async def test_prepare_rejects_non_sensitive_fields() -> None:
    engine = _engine(InMemoryRecordStore(), InMemoryCheckpointStore())
    with pytest.raises(PolicyConfigurationError):
        await engine.prepare(table="contacts", fields=["name"], batch_size=10)


@pytest.mark.asyncio
async def test_second_run_on_same_table_is_rejected_while_active() -> None:
    store = InMemoryRecordStore()
    checkpoints = InMemoryCheckpointStore()
    _seed(store, 30)
    engine = _engine(store, checkpoints)
    release = asyncio.Event()
    started = asyncio.Event()

    async def hold(checkpoint) -> None:
        started.set()
        await release.wait()

    first = await engine.prepare(table="contacts", fields=FIELDS, batch_size=10)
    task = asyncio.create_task(engine.run(first, on_batch=hold))
    await started.wait()
    assert engine.is_active("contacts") is True

    other = await engine.prepare(table="contacts", fields=["phone_number"], batch_size=10)
    with pytest.raises(MigrationInProgressError):
        await engine.run(other)
    with pytest.raises(MigrationInProgressError):
        await engine.rollback(first.run_id)

    release.set()
    result = await task
    assert result.status == STATUS_COMPLETED
    assert engine.is_active("contacts") is False


@pytest.mark.asyncio
async def test_prepare_rejects_fields_not_mapped_to_the_table() -> None:
    store = InMemoryRecordStore()
    store.seed("contacts", [{"id": 1, "email": "ada@example.com"}])
    store.seed("profiles", [{"id": 1, "email": "ada@example.com"}])
    encryptor = make_encryptor()
    engine = _engine(store, InMemoryCheckpointStore(), encryptor=encryptor)

    # email is sensitive, but only declared for profiles.
    with pytest.raises(PolicyConfigurationError):
        await engine.prepare(table="contacts", fields=["email"], batch_size=10)
    assert await engine.checkpoints.list_runs() == []

    checkpoint = await engine.prepare(table="profiles", fields=["email"], batch_size=10)
    result = await engine.run(checkpoint)

    assert result.counts.encrypted == 1
    assert store.tables["contacts"][1]["email"] == "ada@example.com"
    assert await EncryptedRecordStore(store, encryptor).get("profiles", 1) == {"id": 1, "email": "ada@example.com"}


@pytest.mark.asyncio
async def test_rollback_is_rejected_while_the_stored_run_is_in_flight() -> None:
    store = InMemoryRecordStore()
    checkpoints = InMemoryCheckpointStore()
    _seed(store, 10)
    encryptor = make_encryptor()
    worker = _engine(store, checkpoints, encryptor=encryptor)
    checkpoint = await worker.prepare(table="contacts", fields=FIELDS, batch_size=5)
    checkpoint.snapshot_id = await store.snapshot("contacts", fields=FIELDS)
    checkpoint.status = STATUS_ENCRYPTING
    await checkpoints.save(checkpoint)
    # A worker elsewhere has committed part of the run.
    store.tables["contacts"][1]["phone_number"] = encryptor.encrypt_field(_phone(1), "phone_number")
    during = store.rows("contacts")

    api_side = _engine(store, checkpoints, encryptor=encryptor)
    assert api_side.is_active("contacts") is False
    with pytest.raises(MigrationInProgressError):
        await api_side.rollback(checkpoint.run_id)
    assert store.rows("contacts") == during
    assert (await checkpoints.get(checkpoint.run_id)).rolled_back_at is None

    checkpoint.status = STATUS_ABORTED
    await checkpoints.save(checkpoint)
    assert await api_side.rollback(checkpoint.run_id) == 10
    assert store.tables["contacts"][1]["phone_number"] == _phone(1)


@pytest.mark.asyncio
async def test_snapshot_and_restore_run_under_their_own_timeout() -> None:
    store = InMemoryRecordStore()
    checkpoints = InMemoryCheckpointStore()
    _seed(store, 20)
    before = store.rows("contacts")
    store.bulk_delay_s = 0.2
    per_call = RetryPolicy(timeout_ms=100, max_attempts=1, backoff_ms=1)

    too_short = _engine(
        store,
        checkpoints,
        retry_policy=per_call,
        snapshot_retry_policy=RetryPolicy(timeout_ms=50, max_attempts=1, backoff_ms=1),
    )
    failed = await _migrate(too_short, batch_size=10)
    assert failed.status == STATUS_FAILED
    assert failed.error_code == "STORE_UNAVAILABLE"
    assert failed.last_processed_key is None
    assert store.rows("contacts") == before

    # Each whole-table copy takes longer than the per-call timeout but fits the bulk one.
    engine = _engine(
        store,
        checkpoints,
        retry_policy=per_call,
        snapshot_retry_policy=RetryPolicy(timeout_ms=5000, max_attempts=1, backoff_ms=1),
    )
    result = await _migrate(engine, batch_size=10)
    assert result.run_id == failed.run_id
    assert result.status == STATUS_COMPLETED
    assert result.counts.encrypted == 20

    assert await engine.rollback(result.run_id) == 20
    assert store.rows("contacts") == before
