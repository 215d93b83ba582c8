"""Capability protocols implemented by external system adapters."""

from typing import Any, Protocol, runtime_checkable

from integration_sync.sync.models import AdapterFetchResult, AdapterResult, FilterCondition


class ExternalApiAdapter(Protocol):
    """
    Write access to one external system.

    Implementations report remote failures through AdapterResult.error_code using the
    shared vocabulary in error_codes; exceptions they raise are converted by the engine.
    """

    async def create_record(self, payload: dict[str, Any]) -> AdapterResult: ...

    async def update_record(self, external_id: str, payload: dict[str, Any]) -> AdapterResult: ...


@runtime_checkable
class PullCapableAdapter(Protocol):
    """Adapters that can also read records back from the external system."""

    async def fetch_records(
        self, remote_entity: str, filters: list[FilterCondition] | None = None
    ) -> AdapterFetchResult: ...


def supports_pull(adapter: object) -> bool:
    return isinstance(adapter, PullCapableAdapter)
