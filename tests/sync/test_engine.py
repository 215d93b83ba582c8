"""Tests for push, pull, full sync and retry-failed orchestration."""

import asyncio
from datetime import UTC, datetime
from unittest.mock import AsyncMock, patch

import pytest

from integration_sync.sync.engine import (
    FullSyncInput,
    PullSyncInput,
    PushSyncInput,
    RetryFailedInput,
    execute_full_sync,
    execute_pull_sync,
    execute_push_sync,
    prepare_full_sync,
    prepare_push_sync,
    retry_failed_sync,
)
from integration_sync.sync.models import (
    AdapterFetchResult,
    AdapterResult,
    ExternalIdMapping,
    IntegrationConnection,
    RecordOperation,
    RetryConfig,
    SyncDirection,
    SyncError,
    SyncLog,
    SyncMapping,
    SyncStatus,
    SyncType,
    TokenRefreshResult,
)

NO_RETRIES = RetryConfig(max_retries=0, base_delay=0.01, max_delay=0.1)
NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


class FakeAdapter:
    """Push-only adapter; create ids are numbered in call order."""

    def __init__(self, create_result=None, update_result=None):
        self.created = 0

        async def create(payload):
            self.created += 1
            return create_result or AdapterResult(success=True, external_id=f"ext-{self.created}")

        self.create_record = AsyncMock(side_effect=create)
        self.update_record = AsyncMock(return_value=update_result or AdapterResult(success=True))


class FakePullAdapter(FakeAdapter):
    def __init__(self, fetch_result, **kwargs):
        super().__init__(**kwargs)
        self.fetch_records = AsyncMock(return_value=fetch_result)


@pytest.fixture(autouse=True)
def mock_sleep():
    with patch("integration_sync.sync.retry.sleep", new_callable=AsyncMock) as sleep:
        yield sleep


def _connection(**overrides):
    data = {
        "id": "conn-1",
        "connection_code": "TEST",
        "connection_name": "Test Connection",
        "integration_type": "accounting",
        "provider": "accurate",
        "created_at": NOW,
    }
    data.update(overrides)
    return IntegrationConnection(**data)


def _mapping(**overrides):
    data = {
        "id": "map-1",
        "connection_id": "conn-1",
        "local_table": "invoices",
        "remote_entity": "Invoice",
        "field_mappings": [
            {"local_field": "id", "remote_field": "transNo"},
            {"local_field": "amount", "remote_field": "totalAmount"},
        ],
    }
    data.update(overrides)
    return SyncMapping(**data)


def _external_id(local_id, external_id, local_table="invoices", connection_id="conn-1"):
    return ExternalIdMapping(
        id=f"eid-{local_id}",
        connection_id=connection_id,
        local_table=local_table,
        local_id=local_id,
        external_id=external_id,
        synced_at=NOW,
    )


class TestPreparePushSync:
    def test_prepares_records_and_context(self):
        sync_input = PushSyncInput(
            connection=_connection(),
            mapping=_mapping(),
            records=[{"id": "inv-1", "amount": 100}, {"id": "inv-2", "amount": 200}],
            existing_mappings=[],
            adapter=FakeAdapter(),
        )

        prepared = prepare_push_sync(sync_input)

        assert len(prepared.prepared_records) == 2
        assert prepared.prepared_records[0].local_id == "inv-1"
        assert prepared.prepared_records[0].data == {"transNo": "inv-1", "totalAmount": 100}
        assert prepared.context.connection_id == "conn-1"
        assert prepared.context.mapping_id == "map-1"
        assert prepared.context.sync_type is SyncType.PUSH
        assert prepared.mapping_lookup == {}

    def test_lookup_uses_mappings_for_this_table_and_connection(self):
        sync_input = PushSyncInput(
            connection=_connection(),
            mapping=_mapping(),
            records=[{"id": "inv-1", "amount": 100}],
            existing_mappings=[
                _external_id("inv-1", "ext-inv-1"),
                _external_id("cus-1", "ext-cus-1", local_table="customers"),
                _external_id("inv-2", "ext-other", connection_id="conn-2"),
            ],
            adapter=FakeAdapter(),
        )

        prepared = prepare_push_sync(sync_input)

        assert prepared.mapping_lookup == {"inv-1": "ext-inv-1"}

    def test_filters_records_and_reports_missing_ids(self):
        mapping = _mapping(filter_conditions=[{"field": "amount", "operator": "gt", "value": 50}])
        sync_input = PushSyncInput(
            connection=_connection(),
            mapping=mapping,
            records=[{"id": "inv-1", "amount": 10}, {"amount": 100}, {"id": 7, "amount": 300}],
            existing_mappings=[],
            adapter=FakeAdapter(),
        )

        prepared = prepare_push_sync(sync_input)

        assert [record.local_id for record in prepared.prepared_records] == ["7"]
        assert prepared.invalid_record_count == 1
        assert prepared.invalid_record_indices == (1,)


class TestExecutePushSync:
    @pytest.mark.asyncio
    async def test_creates_and_updates(self):
        adapter = FakeAdapter()
        sync_input = PushSyncInput(
            connection=_connection(),
            mapping=_mapping(),
            records=[{"id": "inv-1", "amount": 100}, {"id": "inv-2", "amount": 200}],
            existing_mappings=[_external_id("inv-2", "ext-inv-2")],
            adapter=adapter,
        )

        outcome = await execute_push_sync(sync_input, NO_RETRIES)

        assert [result.operation for result in outcome.results] == [
            RecordOperation.CREATE,
            RecordOperation.UPDATE,
        ]
        assert outcome.context.records_created == 1
        assert outcome.context.records_updated == 1
        assert outcome.requires_reauth is False
        adapter.update_record.assert_awaited_once_with(
            "ext-inv-2", {"transNo": "inv-2", "totalAmount": 200}
        )

    @pytest.mark.asyncio
    async def test_large_amounts_are_pushed_rounded(self):
        """Test that amounts beyond the default decimal precision still map and push."""
        adapter = FakeAdapter()
        mapping = _mapping(
            field_mappings=[
                {"local_field": "id", "remote_field": "transNo"},
                {"local_field": "amount", "remote_field": "totalAmount", "transform": "currency_format"},
            ]
        )
        sync_input = PushSyncInput(
            connection=_connection(),
            mapping=mapping,
            records=[{"id": "inv-1", "amount": 1e30}, {"id": "inv-2", "amount": "12.345"}],
            existing_mappings=[],
            adapter=adapter,
        )

        outcome = await execute_push_sync(sync_input, NO_RETRIES)

        assert outcome.context.records_created == 2
        assert outcome.context.records_failed == 0
        payloads = [call.args[0] for call in adapter.create_record.await_args_list]
        assert payloads == [
            {"transNo": "inv-1", "totalAmount": 1e30},
            {"transNo": "inv-2", "totalAmount": 12.35},
        ]

    @pytest.mark.asyncio
    async def test_records_without_id_fail_validation(self):
        sync_input = PushSyncInput(
            connection=_connection(),
            mapping=_mapping(),
            records=[{"amount": 100}, {"id": "inv-2", "amount": 200}],
            existing_mappings=[],
            adapter=FakeAdapter(),
        )

        outcome = await execute_push_sync(sync_input, NO_RETRIES)

        assert outcome.context.records_processed == 2
        assert outcome.context.records_failed == 1
        assert outcome.context.errors[0].error_code == "VALIDATION_ERROR"
        assert len(outcome.results) == 1

    @pytest.mark.asyncio
    async def test_inactive_mapping_is_skipped(self):
        adapter = FakeAdapter()
        sync_input = PushSyncInput(
            connection=_connection(),
            mapping=_mapping(is_active=False),
            records=[{"id": "inv-1", "amount": 100}],
            existing_mappings=[],
            adapter=adapter,
        )

        outcome = await execute_push_sync(sync_input, NO_RETRIES)

        assert outcome.results == []
        assert outcome.context.records_processed == 0
        adapter.create_record.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_refresh_requires_reauth(self):
        adapter = FakeAdapter(
            create_result=AdapterResult(success=False, error="expired", error_code="401")
        )
        refresh_handler = AsyncMock(
            return_value=TokenRefreshResult(success=False, error="invalid_grant")
        )
        sync_input = PushSyncInput(
            connection=_connection(refresh_token="refresh"),
            mapping=_mapping(),
            records=[{"id": "inv-1", "amount": 100}],
            existing_mappings=[],
            adapter=adapter,
        )

        outcome = await execute_push_sync(sync_input, NO_RETRIES, refresh_handler)

        assert outcome.results[0].error_code == "TOKEN_REFRESH_FAILED"
        assert outcome.requires_reauth is True
        refresh_handler.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_token_expiry_without_refresh_token_requires_reauth(self):
        adapter = FakeAdapter(
            create_result=AdapterResult(success=False, error="expired", error_code="TOKEN_EXPIRED")
        )
        refresh_handler = AsyncMock()
        sync_input = PushSyncInput(
            connection=_connection(refresh_token=None),
            mapping=_mapping(),
            records=[{"id": "inv-1", "amount": 100}],
            existing_mappings=[],
            adapter=adapter,
        )

        outcome = await execute_push_sync(sync_input, NO_RETRIES, refresh_handler)

        assert outcome.requires_reauth is True
        refresh_handler.assert_not_awaited()


class TestExecutePullSync:
    @pytest.mark.asyncio
    async def test_adapter_without_fetch_is_not_supported(self):
        sync_input = PullSyncInput(
            connection=_connection(),
            mapping=_mapping(sync_direction=SyncDirection.PULL),
            adapter=FakeAdapter(),
        )

        outcome = await execute_pull_sync(sync_input)

        assert outcome.data is None
        assert outcome.error_code == "NOT_SUPPORTED"
        assert outcome.context.records_failed == 1
        assert outcome.context.errors[0].record_id == "map-1"

    @pytest.mark.asyncio
    async def test_fetches_and_maps_records(self):
        adapter = FakePullAdapter(
            AdapterFetchResult(
                success=True,
                data=[{"code": "loc-1", "lat": 1.0}, {"code": "loc-2", "lat": 3.0}],
            )
        )
        mapping = _mapping(
            local_table="locations",
            remote_entity="Location",
            sync_direction=SyncDirection.PULL,
            field_mappings=[
                {"local_field": "id", "remote_field": "code"},
                {"local_field": "position.lat", "remote_field": "lat"},
            ],
        )

        outcome = await execute_pull_sync(PullSyncInput(_connection(), mapping, adapter))

        assert outcome.data == [
            {"id": "loc-1", "position": {"lat": 1.0}},
            {"id": "loc-2", "position": {"lat": 3.0}},
        ]
        assert outcome.context.records_created == 2
        assert outcome.error is None
        adapter.fetch_records.assert_awaited_once_with("Location", None)

    @pytest.mark.asyncio
    async def test_mapping_filters_apply_to_pulled_records(self):
        adapter = FakePullAdapter(
            AdapterFetchResult(success=True, data=[{"code": "a", "n": 1}, {"code": "b", "n": 5}])
        )
        mapping = _mapping(
            sync_direction=SyncDirection.PULL,
            field_mappings=[
                {"local_field": "id", "remote_field": "code"},
                {"local_field": "qty", "remote_field": "n"},
            ],
            filter_conditions=[{"field": "qty", "operator": "gte", "value": 2}],
        )

        outcome = await execute_pull_sync(PullSyncInput(_connection(), mapping, adapter))

        assert outcome.data == [{"id": "b", "qty": 5}]
        assert outcome.context.records_created == 1

    @pytest.mark.asyncio
    async def test_fetch_error_is_reported(self):
        adapter = FakePullAdapter(
            AdapterFetchResult(success=False, error="API Error", error_code="VALIDATION_ERROR")
        )
        sync_input = PullSyncInput(
            connection=_connection(),
            mapping=_mapping(sync_direction=SyncDirection.PULL),
            adapter=adapter,
            retry_config=NO_RETRIES,
        )

        outcome = await execute_pull_sync(sync_input)

        assert outcome.data is None
        assert outcome.error == "API Error"
        assert outcome.error_code == "VALIDATION_ERROR"
        assert outcome.context.records_failed == 1

    @pytest.mark.asyncio
    async def test_retryable_fetch_error_is_retried(self, mock_sleep):
        adapter = FakePullAdapter(None)
        adapter.fetch_records.side_effect = [
            AdapterFetchResult(success=False, error="busy", error_code="429"),
            AdapterFetchResult(success=True, data=[]),
        ]
        sync_input = PullSyncInput(
            connection=_connection(),
            mapping=_mapping(sync_direction=SyncDirection.PULL),
            adapter=adapter,
            retry_config=RetryConfig(max_retries=1, base_delay=0.01),
        )

        outcome = await execute_pull_sync(sync_input)

        assert outcome.data == []
        assert outcome.context.records_processed == 0
        mock_sleep.assert_awaited_once_with(0.01)


class TestFullSync:
    def test_prepare_full_sync_filters_to_active_mappings(self):
        mappings = [_mapping(id="map-1"), _mapping(id="map-2", is_active=False)]

        prepared = prepare_full_sync(FullSyncInput(_connection(), mappings))

        assert [mapping.id for mapping in prepared.active_mappings] == ["map-1"]
        assert prepared.context.sync_type is SyncType.FULL_SYNC
        assert prepared.context.mapping_id is None

    @pytest.mark.asyncio
    async def test_processes_all_active_mappings(self):
        adapter = FakeAdapter()
        get_mapping_records = AsyncMock(return_value=[{"id": "inv-1"}, {"id": "inv-2"}])
        get_existing_mappings = AsyncMock(return_value=[])

        outcome = await execute_full_sync(
            FullSyncInput(_connection(), [_mapping()]),
            get_mapping_records,
            get_existing_mappings,
            adapter,
            NO_RETRIES,
        )

        assert len(outcome.mapping_results) == 1
        assert outcome.mapping_results[0].success is True
        assert outcome.mapping_results[0].records_created == 2
        assert outcome.context.records_created == 2
        assert outcome.context.sync_type is SyncType.FULL_SYNC
        get_mapping_records.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_mapping_errors_do_not_stop_the_run(self):
        get_mapping_records = AsyncMock(
            side_effect=[RuntimeError("Database error"), [{"id": "cus-1"}]]
        )
        mappings = [
            _mapping(id="map-1"),
            _mapping(id="map-2", local_table="customers", remote_entity="Customer"),
        ]

        outcome = await execute_full_sync(
            FullSyncInput(_connection(), mappings),
            get_mapping_records,
            AsyncMock(return_value=[]),
            FakeAdapter(),
        )

        first, second = outcome.mapping_results
        assert first.success is False
        assert first.error == "Database error"
        assert second.success is True
        assert outcome.context.records_failed == 1
        assert outcome.context.records_created == 1
        assert outcome.context.errors[0].record_id == "map-1"
        assert outcome.context.errors[0].error_code == "INTERNAL_ERROR"

    @pytest.mark.asyncio
    async def test_bidirectional_mapping_pushes_then_pulls(self):
        adapter = FakePullAdapter(
            AdapterFetchResult(success=True, data=[{"transNo": "inv-9", "totalAmount": 5}])
        )

        outcome = await execute_full_sync(
            FullSyncInput(_connection(), [_mapping(sync_direction=SyncDirection.BIDIRECTIONAL)]),
            AsyncMock(return_value=[{"id": "inv-1", "amount": 1}]),
            AsyncMock(return_value=[]),
            adapter,
            NO_RETRIES,
        )

        result = outcome.mapping_results[0]
        assert result.success is True
        assert result.records_created == 2
        assert result.pulled_records == [{"id": "inv-9", "amount": 5}]
        adapter.create_record.assert_awaited_once()
        adapter.fetch_records.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_mapping_timeout_is_reported_as_failure(self):
        async def slow_records(mapping):
            await asyncio.sleep(10)
            return []

        outcome = await execute_full_sync(
            FullSyncInput(_connection(), [_mapping()]),
            slow_records,
            AsyncMock(return_value=[]),
            FakeAdapter(),
            mapping_timeout=0.01,
        )

        assert outcome.mapping_results[0].success is False
        assert "timed out" in outcome.mapping_results[0].error
        assert outcome.context.records_failed == 1
        assert outcome.context.errors[0].error_code == "TIMEOUT"

    @pytest.mark.asyncio
    async def test_mapping_timeout_keeps_records_synced_before_it(self):
        adapter = FakeAdapter()

        async def create(payload):
            if payload["transNo"] == "inv-2":
                await asyncio.sleep(10)
            return AdapterResult(success=True, external_id=f"ext-{payload['transNo']}")

        adapter.create_record.side_effect = create

        outcome = await execute_full_sync(
            FullSyncInput(_connection(), [_mapping()]),
            AsyncMock(return_value=[{"id": "inv-1", "amount": 1}, {"id": "inv-2", "amount": 2}]),
            AsyncMock(return_value=[]),
            adapter,
            NO_RETRIES,
            mapping_timeout=0.05,
        )

        result = outcome.mapping_results[0]
        assert result.success is False
        assert (result.records_processed, result.records_created, result.records_failed) == (2, 1, 1)
        assert outcome.context.records_created == 1
        assert [error.error_code for error in outcome.context.errors] == ["TIMEOUT"]


class TestRetryFailedSync:
    def _sync_log(self, failed_ids, status=SyncStatus.PARTIAL):
        return SyncLog(
            id="log-1",
            connection_id="conn-1",
            mapping_id="map-1",
            sync_type=SyncType.PUSH,
            started_at=NOW,
            completed_at=NOW,
            records_processed=3,
            records_created=3 - len(failed_ids),
            records_failed=len(failed_ids),
            status=status,
            error_details=[
                SyncError(
                    record_id=record_id,
                    error_code="API_ERROR",
                    error_message="Failed",
                    timestamp=NOW,
                )
                for record_id in failed_ids
            ],
        )

    @pytest.mark.asyncio
    async def test_only_failed_records_are_processed(self):
        adapter = FakeAdapter()
        sync_input = RetryFailedInput(
            sync_log=self._sync_log(["inv-2", "inv-3"]),
            failed_record_ids=["inv-2", "inv-3"],
            records=[
                {"id": "inv-1", "amount": 100},
                {"id": "inv-2", "amount": 200},
                {"id": "inv-3", "amount": 300},
            ],
            existing_mappings=[],
            adapter=adapter,
            retry_config=NO_RETRIES,
        )

        outcome = await retry_failed_sync(sync_input)

        assert len(outcome.results) == 2
        assert adapter.create_record.await_count == 2
        assert outcome.context.records_created == 2

    @pytest.mark.asyncio
    async def test_existing_mappings_route_to_update(self):
        adapter = FakeAdapter()
        sync_input = RetryFailedInput(
            sync_log=self._sync_log(["inv-1"], status=SyncStatus.FAILED),
            failed_record_ids=["inv-1"],
            records=[{"id": "inv-1", "amount": 100}],
            existing_mappings=[_external_id("inv-1", "ext-inv-1")],
            adapter=adapter,
            retry_config=NO_RETRIES,
        )

        outcome = await retry_failed_sync(sync_input)

        adapter.update_record.assert_awaited_once()
        assert outcome.results[0].operation is RecordOperation.UPDATE
        assert outcome.context.records_updated == 1

    @pytest.mark.asyncio
    async def test_failed_ids_default_to_log_errors(self):
        adapter = FakeAdapter()
        sync_input = RetryFailedInput(
            sync_log=self._sync_log(["inv-3", "inv-4"]),
            records=[{"id": "inv-1"}, {"id": "inv-3"}],
            existing_mappings=[],
            adapter=adapter,
            mapping=_mapping(),
            retry_config=NO_RETRIES,
        )

        outcome = await retry_failed_sync(sync_input)

        assert [result.local_id for result in outcome.results] == ["inv-3"]
        assert outcome.skipped_record_ids == ["inv-4"]
        adapter.create_record.assert_awaited_once_with({"transNo": "inv-3"})
