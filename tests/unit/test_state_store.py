"""Unit tests for StateStore persistence."""

import json

import pytest

from devnet_upgrader.errors import CorruptStateError
from devnet_upgrader.models.spec import DevnetRef
from devnet_upgrader.models.status import PhaseEnum
from devnet_upgrader.services.state_store import SCHEMA_VERSION, StateStore, record_checksum

from conftest import make_record, make_spec


@pytest.fixture
def store(tmp_path):
    return StateStore(tmp_path / "state")


def _rewrite(path, mutate):
    envelope = json.loads(path.read_text())
    mutate(envelope)
    path.write_text(json.dumps(envelope))


@pytest.mark.unit
class TestSaveLoad:
    """save/load round trip and file layout."""

    @pytest.mark.asyncio
    async def test_load_missing_returns_none(self, store, devnet_ref):
        assert await store.load(devnet_ref) is None

    @pytest.mark.asyncio
    async def test_save_then_load(self, store):
        record = make_record(phase=PhaseEnum.VOTING, proposal_id=7, target_height=215, attempts=2)

        await store.save(record)
        loaded = await store.load(record.ref)

        assert loaded == record

    @pytest.mark.asyncio
    async def test_file_layout_and_envelope(self, store):
        record = make_record()

        await store.save(record)

        path = store.path_for(record.ref)
        assert path == store.state_dir / "upgrades" / "default" / "dev1.json"
        envelope = json.loads(path.read_text())
        assert envelope["schema_version"] == SCHEMA_VERSION
        assert envelope["checksum"] == record_checksum(envelope["record"])
        assert envelope["record"]["name"] == record.name

    @pytest.mark.asyncio
    async def test_save_leaves_no_temp_files(self, store):
        record = make_record()

        await store.save(record)
        await store.save(record)

        files = list(store.path_for(record.ref).parent.iterdir())
        assert [f.name for f in files] == ["dev1.json"]

    @pytest.mark.asyncio
    async def test_save_overwrites(self, store):
        record = make_record()
        await store.save(record)

        record.phase = PhaseEnum.PROPOSED
        record.proposal_id = 3
        await store.save(record)

        loaded = await store.load(record.ref)
        assert loaded.phase == PhaseEnum.PROPOSED
        assert loaded.proposal_id == 3

    @pytest.mark.asyncio
    async def test_delete(self, store):
        record = make_record()
        await store.save(record)

        assert await store.delete(record.ref) is True
        assert await store.delete(record.ref) is False
        assert await store.load(record.ref) is None


@pytest.mark.unit
class TestCorruption:
    """Every kind of damaged file is reported as CorruptStateError."""

    @pytest.mark.asyncio
    async def test_truncated_json(self, store):
        record = make_record()
        await store.save(record)
        path = store.path_for(record.ref)
        path.write_text(path.read_text()[:40])

        with pytest.raises(CorruptStateError) as exc_info:
            await store.load(record.ref)
        assert "invalid JSON" in exc_info.value.reason

    @pytest.mark.asyncio
    async def test_checksum_mismatch(self, store):
        record = make_record()
        await store.save(record)

        _rewrite(store.path_for(record.ref), lambda e: e["record"].update(phase="completed"))

        with pytest.raises(CorruptStateError) as exc_info:
            await store.load(record.ref)
        assert "checksum mismatch" in exc_info.value.reason

    @pytest.mark.asyncio
    async def test_unknown_schema_version(self, store):
        record = make_record()
        await store.save(record)

        _rewrite(store.path_for(record.ref), lambda e: e.update(schema_version=99))

        with pytest.raises(CorruptStateError, match="schema version"):
            await store.load(record.ref)

    @pytest.mark.asyncio
    async def test_missing_envelope(self, store):
        record = make_record()
        await store.save(record)
        store.path_for(record.ref).write_text(json.dumps(record.model_dump(mode="json")))

        with pytest.raises(CorruptStateError, match="envelope"):
            await store.load(record.ref)

    @pytest.mark.asyncio
    async def test_schema_violation_with_valid_checksum(self, store):
        record = make_record()
        await store.save(record)

        def corrupt(envelope):
            envelope["record"]["phase"] = "halfway"
            envelope["checksum"] = record_checksum(envelope["record"])

        _rewrite(store.path_for(record.ref), corrupt)

        with pytest.raises(CorruptStateError, match="schema violation"):
            await store.load(record.ref)

    @pytest.mark.asyncio
    async def test_record_for_other_devnet(self, store):
        record = make_record()
        await store.save(record)
        other = DevnetRef(namespace="default", name="dev2")
        target = store.path_for(other)
        target.write_text(store.path_for(record.ref).read_text())

        with pytest.raises(CorruptStateError):
            await store.load(other)


@pytest.mark.unit
class TestScanAndHistory:
    """scan, list_active, archive, history and quarantine."""

    @pytest.mark.asyncio
    async def test_scan_separates_corrupt_records(self, store):
        good = make_record(make_spec("dev1"))
        done = make_record(make_spec("dev2"), phase=PhaseEnum.COMPLETED)
        bad = make_record(make_spec("dev3"))
        for record in (good, done, bad):
            await store.save(record)
        store.path_for(bad.ref).write_text("{not json")

        records, corrupt = await store.scan()

        assert sorted(r.devnet for r in records) == ["dev1", "dev2"]
        assert list(corrupt) == ["default/dev3"]

    @pytest.mark.asyncio
    async def test_list_active_skips_terminal(self, store):
        await store.save(make_record(make_spec("dev1"), phase=PhaseEnum.AWAITING_HEIGHT))
        await store.save(make_record(make_spec("dev2"), phase=PhaseEnum.VOTE_REJECTED))

        active = await store.list_active()

        assert [r.devnet for r in active] == ["dev1"]

    @pytest.mark.asyncio
    async def test_scan_empty_store(self, store):
        assert await store.scan() == ([], {})

    @pytest.mark.asyncio
    async def test_archive_moves_record_to_history(self, store):
        first = make_record(phase=PhaseEnum.FAILED)
        await store.save(first)

        target = await store.archive(first)

        assert target == store.history_path_for(first.ref, first.name)
        assert await store.load(first.ref) is None
        history = await store.history(first.ref)
        assert [r.name for r in history] == [first.name]

    @pytest.mark.asyncio
    async def test_history_oldest_first(self, store):
        older = make_record(phase=PhaseEnum.FAILED)
        newer = make_record(phase=PhaseEnum.CANCELLED)
        newer.started_at = older.started_at.replace(year=older.started_at.year + 1)
        await store.archive(newer)
        await store.archive(older)

        history = await store.history(older.ref)

        assert [r.name for r in history] == [older.name, newer.name]

    @pytest.mark.asyncio
    async def test_quarantine_renames_file(self, store):
        record = make_record()
        await store.save(record)
        store.path_for(record.ref).write_text("garbage")

        moved = await store.quarantine(record.ref)

        assert moved is not None and moved.exists()
        assert moved.name.startswith("dev1.json.corrupt-")
        assert await store.load(record.ref) is None
        assert await store.scan() == ([], {})

    @pytest.mark.asyncio
    async def test_quarantine_missing(self, store, devnet_ref):
        assert await store.quarantine(devnet_ref) is None
