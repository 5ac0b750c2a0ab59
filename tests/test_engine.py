import asyncio
import threading
import time
from pathlib import Path
from typing import Dict, Iterator, List
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from deep_freeze.auth.google_drive import GoogleDriveAuthProvider
from deep_freeze.config import EngineSettings
from deep_freeze.migration.chunking import MIN_CHUNK_SIZE
from deep_freeze.migration.engine import MigrationEngine, RecordOutcome, StopReason
from deep_freeze.migration.state import MigrationStatus, StateStore
from deep_freeze.sources.google_drive import DriveFile, GoogleDriveClient, ListFolderPage
from deep_freeze.targets.s3_archive import S3ArchiveClient
from deep_freeze.utils.exceptions import (
    AuthenticationError,
    DownloadError,
    RateLimitError,
    UploadError,
)

pytestmark = pytest.mark.unit

CONTENTS: Dict[str, bytes] = {
    "f1": b"first file",
    "f2": b"second",
}


def _settings(tmp_path: Path, **overrides) -> EngineSettings:
    values = dict(
        base_folder_id="root-folder",
        bucket="archive",
        region="us-east-1",
        db_path=tmp_path / "db.sqlite",
        temp_dir=tmp_path / "temp",
        retry_attempts=1,
        retry_delay_seconds=0,
    )
    values.update(overrides)
    return EngineSettings(**values)


def _serve(file_id: str, start: int = 0) -> Iterator[bytes]:
    yield CONTENTS[file_id][start:]


def _metadata(file_id: str) -> DriveFile:
    return DriveFile(
        id=file_id,
        name=file_id,
        mime_type="application/octet-stream",
        size=len(CONTENTS[file_id]),
    )


@pytest.fixture
def drive_client() -> MagicMock:
    mock = MagicMock(spec=GoogleDriveClient)
    mock.download.side_effect = _serve
    mock.get_metadata.side_effect = _metadata
    return mock


@pytest.fixture
def archive() -> Dict[str, int]:
    return {}


@pytest.fixture
def storage_client(archive: Dict[str, int]) -> MagicMock:
    mock = MagicMock(spec=S3ArchiveClient)
    mock.get_object_size.side_effect = lambda key: archive.get(key)
    mock.put_object.side_effect = lambda key, path: archive.__setitem__(
        key, path.stat().st_size
    )
    mock.delete_object.side_effect = lambda key: archive.pop(key, None)
    mock.get_url.side_effect = lambda key: f"s3://archive/{key}"
    return mock


@pytest.fixture
def state(tmp_path: Path) -> StateStore:
    store = StateStore(tmp_path / "db.sqlite")
    store.insert_records(
        [
            ("f1", "Photos/first.jpg", len(CONTENTS["f1"]), None),
            ("f2", "Photos/second.jpg", len(CONTENTS["f2"]), None),
        ]
    )
    return store


@pytest.fixture
def engine(
    drive_client: MagicMock,
    storage_client: MagicMock,
    state: StateStore,
    tmp_path: Path,
) -> MigrationEngine:
    return MigrationEngine(drive_client, storage_client, state, _settings(tmp_path))


def _status(state: StateStore, source_id: str) -> MigrationStatus:
    record = state.get_record(source_id)
    assert record is not None
    return record.status


class TestCatalog:
    def test_lists_base_folder(
        self, drive_client: MagicMock, storage_client: MagicMock, tmp_path: Path
    ) -> None:
        state = StateStore(tmp_path / "fresh.sqlite")
        drive_client.list_folder.return_value = ListFolderPage(
            entries=[
                DriveFile(
                    id="f1", name="a.jpg", mime_type="image/jpeg", size=3, path="a.jpg"
                )
            ],
            has_more=False,
        )
        engine = MigrationEngine(drive_client, storage_client, state, _settings(tmp_path))

        result = engine.catalog()

        drive_client.list_folder.assert_called_once_with(
            "root-folder", recursive=True, cursor=None
        )
        assert result.files_added == 1


class TestProcessRecord:
    def test_missing_object_is_transferred(
        self,
        engine: MigrationEngine,
        state: StateStore,
        drive_client: MagicMock,
        storage_client: MagicMock,
        archive: Dict[str, int],
        tmp_path: Path,
    ) -> None:
        record = state.get_record("f1")
        assert record is not None

        outcome = asyncio.run(engine.process_record(record))

        assert outcome == RecordOutcome.MIGRATED
        drive_client.download.assert_called_once_with("f1", start=0)
        storage_client.put_object.assert_called_once()
        assert storage_client.put_object.call_args.args[0] == "Photos/first.jpg"
        assert archive == {"Photos/first.jpg": len(CONTENTS["f1"])}
        assert _status(state, "f1") == MigrationStatus.MIGRATED
        assert not (tmp_path / "temp" / "f1").exists()

    def test_already_archived_skips_transfer(
        self,
        engine: MigrationEngine,
        state: StateStore,
        drive_client: MagicMock,
        storage_client: MagicMock,
        archive: Dict[str, int],
    ) -> None:
        archive["Photos/first.jpg"] = len(CONTENTS["f1"])
        record = state.get_record("f1")
        assert record is not None

        outcome = asyncio.run(engine.process_record(record))

        assert outcome == RecordOutcome.ALREADY_MIGRATED
        drive_client.download.assert_not_called()
        storage_client.put_object.assert_not_called()
        assert _status(state, "f1") == MigrationStatus.MIGRATED

    def test_wrong_size_object_is_replaced(
        self,
        engine: MigrationEngine,
        state: StateStore,
        storage_client: MagicMock,
        archive: Dict[str, int],
    ) -> None:
        archive["Photos/first.jpg"] = 3
        record = state.get_record("f1")
        assert record is not None

        outcome = asyncio.run(engine.process_record(record))

        assert outcome == RecordOutcome.MIGRATED
        storage_client.delete_object.assert_called_once_with("Photos/first.jpg")
        assert archive["Photos/first.jpg"] == len(CONTENTS["f1"])

    def test_resumes_partial_staged_file(
        self,
        engine: MigrationEngine,
        state: StateStore,
        drive_client: MagicMock,
        tmp_path: Path,
    ) -> None:
        staged = tmp_path / "temp" / "f1"
        staged.parent.mkdir(parents=True)
        staged.write_bytes(CONTENTS["f1"][:4])
        record = state.get_record("f1")
        assert record is not None

        outcome = asyncio.run(engine.process_record(record))

        assert outcome == RecordOutcome.MIGRATED
        drive_client.download.assert_called_once_with("f1", start=4)

    def test_refreshes_credentials_before_each_file(
        self,
        drive_client: MagicMock,
        storage_client: MagicMock,
        state: StateStore,
        tmp_path: Path,
    ) -> None:
        auth_provider = MagicMock(spec=GoogleDriveAuthProvider)
        engine = MigrationEngine(
            drive_client, storage_client, state, _settings(tmp_path), auth_provider
        )

        asyncio.run(engine.run())

        assert auth_provider.refresh_if_needed.call_count == 2


class TestFailures:
    def test_upload_failure_marks_skip(
        self,
        engine: MigrationEngine,
        state: StateStore,
        storage_client: MagicMock,
    ) -> None:
        storage_client.put_object.side_effect = UploadError("denied", key="k")
        record = state.get_record("f1")
        assert record is not None

        outcome = asyncio.run(engine.process_record(record))

        assert outcome == RecordOutcome.FAILED
        stored = state.get_record("f1")
        assert stored is not None
        assert stored.skip is True
        assert stored.status == MigrationStatus.NEEDS_TRANSFER

    def test_download_failure_keeps_partial_bytes(
        self,
        engine: MigrationEngine,
        state: StateStore,
        drive_client: MagicMock,
        storage_client: MagicMock,
        tmp_path: Path,
    ) -> None:
        def broken(file_id: str, start: int = 0) -> Iterator[bytes]:
            yield CONTENTS[file_id][:5]
            raise DownloadError("reset", file_id=file_id)

        drive_client.download.side_effect = broken
        record = state.get_record("f1")
        assert record is not None

        outcome = asyncio.run(engine.process_record(record))

        assert outcome == RecordOutcome.FAILED
        storage_client.put_object.assert_not_called()
        assert (tmp_path / "temp" / "f1").read_bytes() == CONTENTS["f1"][:5]
        assert state.get_record("f1").skip is True  # type: ignore[union-attr]

    def test_mismatch_after_upload_fails_record(
        self,
        engine: MigrationEngine,
        state: StateStore,
        storage_client: MagicMock,
        tmp_path: Path,
    ) -> None:
        storage_client.put_object.side_effect = None
        record = state.get_record("f1")
        assert record is not None
        storage_client.get_object_size.side_effect = [None, 1]

        outcome = asyncio.run(engine.process_record(record))

        assert outcome == RecordOutcome.FAILED
        storage_client.delete_object.assert_called_once_with("Photos/first.jpg")
        assert not (tmp_path / "temp" / "f1").exists()
        stored = state.get_record("f1")
        assert stored is not None
        assert stored.skip is True
        assert stored.local_path is None

    def test_verification_error_marks_skip(
        self,
        engine: MigrationEngine,
        state: StateStore,
        storage_client: MagicMock,
        drive_client: MagicMock,
    ) -> None:
        storage_client.get_object_size.side_effect = UploadError("timeout", key="k")
        record = state.get_record("f1")
        assert record is not None

        outcome = asyncio.run(engine.process_record(record))

        assert outcome == RecordOutcome.FAILED
        drive_client.download.assert_not_called()
        assert state.get_record("f1").skip is True  # type: ignore[union-attr]

    def test_auth_error_propagates(
        self, engine: MigrationEngine, storage_client: MagicMock
    ) -> None:
        storage_client.get_object_size.side_effect = AuthenticationError(
            "expired", provider="aws"
        )

        with pytest.raises(AuthenticationError):
            asyncio.run(engine.run())

    def test_auth_error_during_download_propagates(
        self, engine: MigrationEngine, state: StateStore, drive_client: MagicMock
    ) -> None:
        drive_client.get_metadata.side_effect = AuthenticationError(
            "revoked", provider="google_drive"
        )
        record = state.get_record("f1")
        assert record is not None

        with pytest.raises(AuthenticationError):
            asyncio.run(engine.process_record(record))


class TestRetry:
    @patch("deep_freeze.migration.engine.random.uniform", return_value=0)
    def test_retries_rate_limited_download(
        self,
        _mock_random: MagicMock,
        engine: MigrationEngine,
        state: StateStore,
        drive_client: MagicMock,
    ) -> None:
        calls: List[int] = []

        def flaky(file_id: str, start: int = 0) -> Iterator[bytes]:
            calls.append(start)
            if len(calls) == 1:
                raise RateLimitError("429", retry_after=0.0)
            yield CONTENTS[file_id][start:]

        drive_client.download.side_effect = flaky
        record = state.get_record("f1")
        assert record is not None

        outcome = asyncio.run(engine.process_record(record))

        assert outcome == RecordOutcome.MIGRATED
        assert calls == [0, 0]

    @patch("deep_freeze.migration.engine.random.uniform", return_value=0)
    def test_exhausted_retries_mark_failed(
        self,
        _mock_random: MagicMock,
        engine: MigrationEngine,
        state: StateStore,
        storage_client: MagicMock,
    ) -> None:
        storage_client.put_object.side_effect = RateLimitError("SlowDown")
        record = state.get_record("f1")
        assert record is not None

        outcome = asyncio.run(engine.process_record(record))

        assert outcome == RecordOutcome.FAILED
        assert storage_client.put_object.call_count == 2
        assert state.get_record("f1").skip is True  # type: ignore[union-attr]


class TestRun:
    def test_migrates_everything(
        self, engine: MigrationEngine, archive: Dict[str, int]
    ) -> None:
        result = asyncio.run(engine.run())

        assert result.completed
        assert result.stop_reason == StopReason.COMPLETE
        assert result.passes == 1
        assert result.outcomes["migrated"] == 2
        assert set(archive) == {"Photos/first.jpg", "Photos/second.jpg"}

    def test_second_run_transfers_nothing(
        self,
        engine: MigrationEngine,
        drive_client: MagicMock,
        storage_client: MagicMock,
    ) -> None:
        asyncio.run(engine.run())
        drive_client.reset_mock()
        storage_client.put_object.reset_mock()
        storage_client.get_object_size.reset_mock()

        result = asyncio.run(engine.run())

        assert result.completed
        assert result.passes == 0
        drive_client.download.assert_not_called()
        storage_client.put_object.assert_not_called()
        storage_client.get_object_size.assert_not_called()

    def test_failed_record_leaves_run_incomplete(
        self, engine: MigrationEngine, storage_client: MagicMock, archive: Dict[str, int]
    ) -> None:
        def put(key: str, path: Path) -> None:
            if key == "Photos/second.jpg":
                raise UploadError("denied", key=key)
            archive[key] = path.stat().st_size

        storage_client.put_object.side_effect = put

        result = asyncio.run(engine.run())

        assert not result.completed
        assert result.summary.migrated == 1
        assert result.summary.skipped == 1
        assert result.outcomes["failed"] == 1

    def test_check_only_transfers_nothing(
        self,
        drive_client: MagicMock,
        storage_client: MagicMock,
        state: StateStore,
        archive: Dict[str, int],
        tmp_path: Path,
    ) -> None:
        archive["Photos/first.jpg"] = len(CONTENTS["f1"])
        auth_provider = MagicMock(spec=GoogleDriveAuthProvider)
        engine = MigrationEngine(
            drive_client,
            storage_client,
            state,
            _settings(tmp_path, check_only=True),
            auth_provider,
        )

        result = asyncio.run(engine.run())

        assert result.stop_reason == StopReason.CHECK_ONLY
        assert result.passes == 1
        assert result.outcomes["already_migrated"] == 1
        assert result.outcomes["needs_transfer"] == 1
        assert _status(state, "f1") == MigrationStatus.MIGRATED
        assert _status(state, "f2") == MigrationStatus.NEEDS_TRANSFER
        drive_client.download.assert_not_called()
        storage_client.put_object.assert_not_called()
        auth_provider.refresh_if_needed.assert_not_called()

    def test_operator_skip_list(
        self,
        drive_client: MagicMock,
        storage_client: MagicMock,
        state: StateStore,
        tmp_path: Path,
    ) -> None:
        engine = MigrationEngine(
            drive_client,
            storage_client,
            state,
            _settings(tmp_path, skip_ids=frozenset({"f2"})),
        )

        result = asyncio.run(engine.run())

        assert _status(state, "f1") == MigrationStatus.MIGRATED
        assert _status(state, "f2") == MigrationStatus.UNVERIFIED
        assert result.stop_reason == StopReason.COMPLETE
        assert not result.completed

    def test_stops_when_a_pass_changes_nothing(self, engine: MigrationEngine) -> None:
        with patch.object(
            engine,
            "process_record",
            new=AsyncMock(return_value=RecordOutcome.NEEDS_TRANSFER),
        ):
            result = asyncio.run(engine.run())

        assert result.stop_reason == StopReason.NO_PROGRESS
        assert result.passes == 1

    def test_stops_at_pass_limit(
        self,
        drive_client: MagicMock,
        storage_client: MagicMock,
        state: StateStore,
        tmp_path: Path,
    ) -> None:
        engine = MigrationEngine(
            drive_client, storage_client, state, _settings(tmp_path, max_passes=1)
        )
        with patch.object(
            engine,
            "process_record",
            new=AsyncMock(return_value=RecordOutcome.NEEDS_TRANSFER),
        ):
            result = asyncio.run(engine.run())

        assert result.stop_reason == StopReason.MAX_PASSES
        assert result.passes == 1
        assert not result.completed

    def test_progress_callback(self, engine: MigrationEngine) -> None:
        seen: List[tuple] = []
        engine.set_progress_callback(lambda path, outcome: seen.append((path, outcome)))

        asyncio.run(engine.run())

        assert sorted(seen) == [
            ("Photos/first.jpg", RecordOutcome.MIGRATED),
            ("Photos/second.jpg", RecordOutcome.MIGRATED),
        ]

    def test_bytes_callback(self, engine: MigrationEngine) -> None:
        counted: List[int] = []
        engine.set_bytes_callback(counted.append)

        asyncio.run(engine.run())

        # Each file is counted once downloading and once uploading.
        assert sum(counted) == 2 * sum(len(c) for c in CONTENTS.values())


def _byte_archive(objects: Dict[str, bytes]) -> MagicMock:
    mock = MagicMock(spec=S3ArchiveClient)
    mock.get_object_size.side_effect = lambda key: (
        len(objects[key]) if key in objects else None
    )
    mock.put_object.side_effect = lambda key, path: objects.__setitem__(
        key, path.read_bytes()
    )
    mock.delete_object.side_effect = lambda key: objects.pop(key, None)
    return mock


def _serve_from(contents: Dict[str, bytes], drive_client: MagicMock) -> None:
    drive_client.download.side_effect = lambda file_id, start=0: iter(
        [contents[file_id][start:]]
    )
    drive_client.get_metadata.side_effect = lambda file_id: DriveFile(
        id=file_id,
        name=file_id,
        mime_type="application/octet-stream",
        size=len(contents[file_id]),
    )


class TestSharedNames:
    def test_same_named_siblings_keep_separate_objects(
        self, drive_client: MagicMock, tmp_path: Path
    ) -> None:
        contents = {"idA": b"A" * 10, "idB": b"B" * 7}
        _serve_from(contents, drive_client)
        drive_client.list_folder.return_value = ListFolderPage(
            entries=[
                DriveFile(
                    id=file_id,
                    name="img.jpg",
                    mime_type="image/jpeg",
                    size=len(data),
                    path="photos/img.jpg",
                )
                for file_id, data in contents.items()
            ],
            has_more=False,
        )
        objects: Dict[str, bytes] = {}
        state = StateStore(tmp_path / "shared.sqlite")
        engine = MigrationEngine(
            drive_client, _byte_archive(objects), state, _settings(tmp_path)
        )

        engine.catalog()
        result = asyncio.run(engine.run())

        assert result.completed
        assert objects == {
            "photos/img.jpg": contents["idA"],
            "photos/img (idB).jpg": contents["idB"],
        }
        assert _status(state, "idA") == MigrationStatus.MIGRATED
        assert _status(state, "idB") == MigrationStatus.MIGRATED


def _make_client_error(code: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, "S3")


@pytest.fixture
def boto_objects() -> Dict[str, bytes]:
    return {}


@pytest.fixture
def mock_boto(boto_objects: Dict[str, bytes]) -> MagicMock:
    mock = MagicMock()

    def get_attributes(Bucket: str, Key: str, ObjectAttributes: List[str]) -> dict:
        if Key not in boto_objects:
            raise _make_client_error("NoSuchKey")
        return {"ObjectSize": len(boto_objects[Key])}

    def put(Bucket: str, Key: str, Body, StorageClass: str) -> dict:
        boto_objects[Key] = Body.read()
        return {}

    mock.get_object_attributes.side_effect = get_attributes
    mock.put_object.side_effect = put
    mock.delete_object.side_effect = lambda Bucket, Key: boto_objects.pop(Key, None)
    return mock


@pytest.fixture
def s3_engine(
    drive_client: MagicMock, state: StateStore, mock_boto: MagicMock, tmp_path: Path
) -> MigrationEngine:
    client = S3ArchiveClient(bucket="archive")
    client._client = mock_boto
    return MigrationEngine(drive_client, client, state, _settings(tmp_path))


def _fail_for_key(key: str, error: Exception, fallback):
    def side_effect(**kwargs):
        if kwargs["Key"] == key:
            raise error
        return fallback(**kwargs)

    return side_effect


class TestDestinationFaults:
    def test_access_denied_skips_only_that_record(
        self,
        s3_engine: MigrationEngine,
        state: StateStore,
        mock_boto: MagicMock,
        boto_objects: Dict[str, bytes],
    ) -> None:
        mock_boto.get_object_attributes.side_effect = _fail_for_key(
            "Photos/first.jpg",
            _make_client_error("AccessDenied"),
            mock_boto.get_object_attributes.side_effect,
        )

        result = asyncio.run(s3_engine.run())

        assert not result.completed
        assert state.get_record("f1").skip is True  # type: ignore[union-attr]
        assert _status(state, "f2") == MigrationStatus.MIGRATED
        assert boto_objects == {"Photos/second.jpg": CONTENTS["f2"]}

    def test_connection_fault_on_put_skips_only_that_record(
        self,
        s3_engine: MigrationEngine,
        state: StateStore,
        mock_boto: MagicMock,
    ) -> None:
        mock_boto.put_object.side_effect = _fail_for_key(
            "Photos/first.jpg",
            EndpointConnectionError(endpoint_url="https://s3"),
            mock_boto.put_object.side_effect,
        )

        result = asyncio.run(s3_engine.run())

        assert result.stop_reason == StopReason.COMPLETE
        assert not result.completed
        stored = state.get_record("f1")
        assert stored is not None
        assert stored.skip is True
        assert stored.status == MigrationStatus.NEEDS_TRANSFER
        assert _status(state, "f2") == MigrationStatus.MIGRATED

    def test_connection_fault_in_multipart_skips_only_that_record(
        self,
        s3_engine: MigrationEngine,
        state: StateStore,
        drive_client: MagicMock,
        mock_boto: MagicMock,
    ) -> None:
        contents = dict(CONTENTS, big=b"\0" * (MIN_CHUNK_SIZE + 1))
        _serve_from(contents, drive_client)
        state.insert_records([("big", "Archive/big.bin", len(contents["big"]), None)])
        mock_boto.list_multipart_uploads.side_effect = EndpointConnectionError(
            endpoint_url="https://s3"
        )

        result = asyncio.run(s3_engine.run())

        assert not result.completed
        assert state.get_record("big").skip is True  # type: ignore[union-attr]
        assert _status(state, "f1") == MigrationStatus.MIGRATED
        assert _status(state, "f2") == MigrationStatus.MIGRATED

    def test_connection_fault_on_delete_skips_record(
        self,
        s3_engine: MigrationEngine,
        state: StateStore,
        drive_client: MagicMock,
        mock_boto: MagicMock,
        boto_objects: Dict[str, bytes],
    ) -> None:
        boto_objects["Photos/first.jpg"] = b"stale"
        mock_boto.delete_object.side_effect = EndpointConnectionError(
            endpoint_url="https://s3"
        )
        record = state.get_record("f1")
        assert record is not None

        outcome = asyncio.run(s3_engine.process_record(record))

        assert outcome == RecordOutcome.FAILED
        drive_client.download.assert_not_called()
        assert state.get_record("f1").skip is True  # type: ignore[union-attr]


class TestConcurrency:
    def test_parallel_workers_migrate_every_record(
        self, drive_client: MagicMock, tmp_path: Path
    ) -> None:
        contents = {f"c{n}": bytes([65 + n]) * (n + 3) for n in range(6)}
        _serve_from(contents, drive_client)
        lock = threading.Lock()
        active = [0, 0]

        def slow_metadata(file_id: str) -> DriveFile:
            with lock:
                active[0] += 1
                active[1] = max(active[1], active[0])
            time.sleep(0.05)
            with lock:
                active[0] -= 1
            return DriveFile(
                id=file_id,
                name=file_id,
                mime_type="application/octet-stream",
                size=len(contents[file_id]),
            )

        drive_client.get_metadata.side_effect = slow_metadata
        state = StateStore(tmp_path / "parallel.sqlite")
        state.insert_records(
            (file_id, f"Docs/{file_id}.bin", len(data), None)
            for file_id, data in contents.items()
        )
        objects: Dict[str, bytes] = {}
        counted: List[int] = []
        engine = MigrationEngine(
            drive_client,
            _byte_archive(objects),
            state,
            _settings(tmp_path, concurrency=3),
        )
        engine.set_bytes_callback(counted.append)

        result = asyncio.run(engine.run())

        assert result.completed
        assert sum(result.outcomes.values()) == len(contents)
        assert result.outcomes[RecordOutcome.MIGRATED.value] == len(contents)
        assert 1 < active[1] <= 3
        assert objects == {f"Docs/{k}.bin": v for k, v in contents.items()}
        assert sum(counted) == 2 * sum(len(v) for v in contents.values())
