"""Process-wide registry for the feed engine.

``RailEngine.build`` wires every component explicitly; ``init_engine`` and
``shutdown_engine`` are the only way the process-wide instance is created and
torn down.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import valkey.asyncio as valkey

from railfeeds.core.config import Settings
from railfeeds.models.rail import ServiceUpdate
from railfeeds.services.aggregator import RailAggregator
from railfeeds.services.board_cache import BoardCache
from railfeeds.services.board_service import BoardService
from railfeeds.services.feed_stats import FeedStats
from railfeeds.services.rail_errors import RailFeedError
from railfeeds.services.realtime import RealtimeStore, build_realtime_store
from railfeeds.services.reference import LocationIndex
from railfeeds.services.stores.berth_graph import BerthGraph
from railfeeds.services.stores.restrictions import RestrictionStore
from railfeeds.services.stores.schedules import ScheduleStore
from railfeeds.services.transport.bridge import BridgeClient
from railfeeds.services.transport.ldb_soap import LdbSoapClient
from railfeeds.services.transport.network_rail import DECODERS, NetworkRailFeeds
from railfeeds.services.transport.push_port import FEED_PUSH_PORT, PushPortClient
from railfeeds.services.transport.reference_data import ReferenceDataClient
from railfeeds.services.transport.stomp_session import ConnectionFactory

logger = logging.getLogger(__name__)


@dataclass
class RailEngine:
    settings: Settings
    locations: LocationIndex
    stats: FeedStats
    network_rail: NetworkRailFeeds
    push_port: PushPortClient
    aggregator: RailAggregator
    board_service: BoardService
    realtime: RealtimeStore
    reference_data: ReferenceDataClient
    started: bool = False

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        network_rail_factory: ConnectionFactory | None = None,
        push_port_factory: ConnectionFactory | None = None,
        valkey_client: valkey.Valkey | None = None,
    ) -> "RailEngine":
        locations = LocationIndex()
        stats = FeedStats([*DECODERS, FEED_PUSH_PORT])
        realtime = build_realtime_store(settings, valkey_client)

        network_rail = NetworkRailFeeds(settings, stats, connection_factory=network_rail_factory)
        push_port = PushPortClient(
            settings,
            locations,
            stats=stats,
            publisher=realtime.upsert,
            connection_factory=push_port_factory,
        )
        aggregator = RailAggregator(
            locations,
            stats=stats,
            network_rail=network_rail,
            push_port=push_port,
            restrictions=RestrictionStore(locations),
            berths=BerthGraph(),
            schedules=ScheduleStore(locations),
        )
        board_service = BoardService(
            [BridgeClient(settings, locations), push_port, LdbSoapClient(settings)],
            BoardCache(settings.board_cache_ttl_seconds),
            strategy_timeout=settings.board_strategy_timeout_seconds,
        )
        return cls(
            settings=settings,
            locations=locations,
            stats=stats,
            network_rail=network_rail,
            push_port=push_port,
            aggregator=aggregator,
            board_service=board_service,
            realtime=realtime,
            reference_data=ReferenceDataClient(settings),
        )

    async def start(self) -> None:
        if self.started:
            return
        self.started = True
        await self.realtime.start()
        await self.aggregator.start()
        logger.info(
            "Rail engine started (board strategies enabled: %s)",
            ", ".join(self.board_service.enabled_strategies()) or "none",
        )

    async def stop(self) -> None:
        """Release every connection and task. Safe to call more than once."""
        if not self.started:
            return
        self.started = False
        await self.aggregator.stop()
        await self.board_service.close()
        await self.reference_data.close()
        await self.realtime.close()
        logger.info("Rail engine stopped")

    async def publish_update(self, update: ServiceUpdate) -> ServiceUpdate:
        return await self.realtime.upsert(update)

    async def refresh_reference_data(self) -> bool:
        """Reload locations and the berth graph; a failed download keeps the old table."""
        if not self.reference_data.is_enabled():
            logger.info("Network Rail credentials missing; skipping reference refresh")
            return False

        refreshed = True
        try:
            locations = await self.reference_data.fetch_corpus()
        except RailFeedError as exc:
            logger.warning("CORPUS refresh failed, keeping previous table: %s", exc)
            refreshed = False
        else:
            if locations:
                self.locations.load(locations)

        try:
            edges = await self.reference_data.fetch_smart()
        except RailFeedError as exc:
            logger.warning("SMART refresh failed, keeping previous graph: %s", exc)
            refreshed = False
        else:
            if edges:
                self.aggregator.berths.load(edges)
        return refreshed


_engine: RailEngine | None = None


async def init_engine(settings: Settings, **overrides) -> RailEngine:
    """Create and start the process-wide engine if it does not exist yet."""
    global _engine
    if _engine is None:
        _engine = RailEngine.build(settings, **overrides)
    await _engine.start()
    return _engine


async def shutdown_engine() -> None:
    global _engine
    engine, _engine = _engine, None
    if engine is not None:
        await engine.stop()


def get_engine() -> RailEngine:
    if _engine is None:
        raise RuntimeError("Rail engine has not been initialised")
    return _engine


__all__ = ["RailEngine", "init_engine", "shutdown_engine", "get_engine"]
