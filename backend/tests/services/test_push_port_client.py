"""Tests for the Darwin push port board strategy."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from railfeeds.models.rail import BoardQuery
from railfeeds.services.feed_stats import FeedStats
from railfeeds.services.rail_dto import PushPortLocation, PushPortService
from railfeeds.services.rail_errors import (
    NotConfiguredError,
    ServiceNotFoundError,
    StationNotFoundError,
)
from railfeeds.services.transport.push_port import (
    FEED_PUSH_PORT,
    PushPortClient,
    merge_service,
)


def _xml(rid="R1", etd="09:34", platform="3", cancelled=False):
    can = ' can="true"' if cancelled else ""
    plat = f"<plat>{platform}</plat>" if platform else ""
    return f"""<Pport xmlns="http://www.thalesgroup.com/rtti/PushPort/v16">
  <uR>
    <TS rid="{rid}" uid="C12345" ssd="2024-03-12">
      <Location tpl="KNGX" ptd="09:30" wtd="09:30"{can}><dep et="{etd}"/>{plat}</Location>
      <Location tpl="STEVNGE" pta="09:55" ptd="09:56"/>
      <Location tpl="PBRO" pta="10:45" wta="10:45"/>
    </TS>
  </uR>
</Pport>""".encode()


@pytest_asyncio.fixture
async def client(settings, locations, connection_factory, clock):
    publisher = AsyncMock()
    push_port = PushPortClient(
        settings,
        locations,
        stats=FeedStats(clock=clock),
        publisher=publisher,
        connection_factory=connection_factory,
        clock=clock,
    )
    yield push_port
    await push_port.stop()


class TestMergeService:
    def test_merge_keeps_known_fields_and_appends_new_locations(self):
        existing = PushPortService(
            rid="R1",
            uid="C1",
            ssd=None,
            locations=(PushPortLocation(tiploc="KNGX", ptd="09:30", platform="3"),),
        )
        update = PushPortService(
            rid="R1",
            uid=None,
            ssd="2024-03-12",
            locations=(
                PushPortLocation(tiploc="KNGX", etd="09:40"),
                PushPortLocation(tiploc="PBRO", pta="10:45"),
            ),
        )

        merged = merge_service(existing, update)

        assert merged.uid == "C1"
        assert merged.ssd == "2024-03-12"
        assert merged.locations[0] == PushPortLocation(
            tiploc="KNGX", ptd="09:30", etd="09:40", platform="3"
        )
        assert merged.locations[1].tiploc == "PBRO"


class TestPushPortClient:
    @pytest.mark.asyncio
    async def test_board_built_from_ingested_services(self, client):
        client.handle_message("/topic/darwin", _xml())

        board = await client.fetch_board(BoardQuery(crs="KGX"))

        assert board.source == "darwin-push-port"
        assert board.location_name == "LONDON KINGS CROSS"
        departure = board.departures[0]
        assert departure.service_id == "R1"
        assert departure.scheduled == "09:30"
        assert departure.expected == "09:34"
        assert departure.destination == "PETERBOROUGH"
        assert departure.destination_crs == "PBO"
        assert departure.platform == "3"
        assert client._stats.health(FEED_PUSH_PORT).total_messages == 1

    @pytest.mark.asyncio
    async def test_board_filters_by_calling_point(self, client):
        client.handle_message("/topic/darwin", _xml())

        board = await client.fetch_board(BoardQuery(crs="KGX", filter_crs="PBO", filter_type="to"))
        assert len(board.departures) == 1

        with pytest.raises(StationNotFoundError):
            await client.fetch_board(BoardQuery(crs="KGX", filter_crs="PBO", filter_type="from"))

    @pytest.mark.asyncio
    async def test_board_without_services_is_not_found(self, client):
        with pytest.raises(StationNotFoundError):
            await client.fetch_board(BoardQuery(crs="KGX"))

    @pytest.mark.asyncio
    async def test_cancelled_and_on_time_expected_values(self, client):
        client.handle_message("/topic/darwin", _xml(rid="R1", etd="09:30"))
        client.handle_message("/topic/darwin", _xml(rid="R2", cancelled=True))

        board = await client.fetch_board(BoardQuery(crs="KGX"))

        expected = {d.service_id: d.expected for d in board.departures}
        assert expected == {"R1": "On time", "R2": "Cancelled"}

    @pytest.mark.asyncio
    async def test_live_update_published(self, client, eventually):
        client.handle_message("/topic/darwin", _xml())
        await eventually(lambda: client._publisher.await_count == 1)

        update = client._publisher.await_args.args[0]
        assert update.service_id == "R1"
        assert update.crs == "KGX"
        assert update.estimated == "09:34"
        assert update.platform == "3"
        assert "cancelled" not in update.model_fields_set

    @pytest.mark.asyncio
    async def test_malformed_message_counted(self, client):
        client.handle_message("/topic/darwin", b"<Pport><TS")

        assert client._stats.decode_errors(FEED_PUSH_PORT) == 1
        assert len(client) == 0

    @pytest.mark.asyncio
    async def test_service_detail(self, client):
        client.handle_message("/topic/darwin", _xml())

        detail = await client.fetch_service_detail("R1")

        assert detail.origin == ("LONDON KINGS CROSS",)
        assert detail.destination == ("PETERBOROUGH",)
        assert [p.crs for p in detail.subsequent_calling_points] == ["KGX", "SVG", "PBO"]
        with pytest.raises(ServiceNotFoundError):
            await client.fetch_service_detail("UNKNOWN")

    @pytest.mark.asyncio
    async def test_prune_drops_stale_services(self, client, clock):
        client.handle_message("/topic/darwin", _xml())
        clock.advance(hours=7)

        assert client.prune() == 1
        assert len(client) == 0

    @pytest.mark.asyncio
    async def test_not_configured(self, bare_settings, locations, connection_factory):
        push_port = PushPortClient(bare_settings, locations, connection_factory=connection_factory)

        with pytest.raises(NotConfiguredError):
            await push_port.fetch_board(BoardQuery(crs="KGX"))
        assert await push_port.test_connection() is False
