# main.py
import asyncio
from typing import Optional

from batchpoll.adapters.aiohttp_client_adapter import AioHttpClientAdapter
from batchpoll.adapters.entry_store_sqlalchemy import SqlAlchemyEntryStore
from batchpoll.adapters.logging_adapter import LoggingAdapter
from batchpoll.adapters.remote_service_http import HttpRemoteJobServiceAdapter
from batchpoll.adapters.retry_tenacity import TenacityRetryAdapter
from batchpoll.client import BatchJobsClient
from batchpoll.core.config import PollerConfig
from batchpoll.core.interfaces.entry_store import EntryStorePort
from batchpoll.core.interfaces.logging import LoggingPort
from batchpoll.core.interfaces.remote_service import RemoteJobServicePort
from batchpoll.core.interfaces.retry import RetryPort
from batchpoll.core.logging_config import configure_logging
from batchpoll.core.managers.callback_registry import CallbackRegistry
from batchpoll.core.managers.feed_processor import FeedSubmissionProcessor
from batchpoll.core.managers.poll_orchestrator import PollOrchestrator
from batchpoll.core.managers.report_processor import ReportRequestProcessor
from batchpoll.core.settings import BatchPollSettings, load_settings


# main lives at the outermost layer (not in core)
# Instantiates the concrete adapters and wires them into the processors

def create_client(
    settings: BatchPollSettings,
    registry: CallbackRegistry,
    remote: RemoteJobServicePort,
    store: Optional[EntryStorePort] = None,
    logger: Optional[LoggingPort] = None,
    retry_port: Optional[RetryPort] = None,
) -> BatchJobsClient:
    """Wire processors and orchestrator for the configured region and merchant."""
    logger = logger or LoggingAdapter("batchpoll", settings.BATCHPOLL_LOG_LEVEL)
    store = store or SqlAlchemyEntryStore(settings.BATCHPOLL_DATABASE_URL)
    config = PollerConfig.from_app_settings(settings)
    if retry_port is None:
        retry_port = TenacityRetryAdapter(
            attempts=config.remote_retry_attempts,
            wait_initial=config.remote_retry_base_wait,
            wait_max=config.remote_retry_max_wait,
        )

    common = dict(
        region=settings.BATCHPOLL_REGION,
        merchant_id=settings.BATCHPOLL_MERCHANT_ID,
        store=store,
        remote=remote,
        callbacks=registry,
        config=config,
        logger=logger,
        retry_port=retry_port,
    )
    reports = ReportRequestProcessor(**common)
    feeds = FeedSubmissionProcessor(**common)
    orchestrator = PollOrchestrator([reports, feeds], store, registry, logger)
    return BatchJobsClient(reports, feeds, orchestrator)


async def run_forever(
    settings: BatchPollSettings,
    registry: CallbackRegistry,
    ticks: Optional[int] = None,
) -> None:
    """Poll every BATCHPOLL_POLL_INTERVAL seconds; `ticks` bounds the loop."""
    logger = LoggingAdapter("batchpoll", settings.BATCHPOLL_LOG_LEVEL)
    headers = {}
    if settings.BATCHPOLL_REMOTE_API_KEY is not None:
        headers["x-api-key"] = settings.BATCHPOLL_REMOTE_API_KEY.get_secret_value()

    async with AioHttpClientAdapter(
        default_timeout=settings.BATCHPOLL_REMOTE_TIMEOUT, default_headers=headers
    ) as http_client:
        remote = HttpRemoteJobServiceAdapter(
            http_client, str(settings.BATCHPOLL_REMOTE_SERVICE_URL), logger
        )
        store = SqlAlchemyEntryStore(settings.BATCHPOLL_DATABASE_URL)
        client = create_client(settings, registry, remote, store=store, logger=logger)
        logger.info(
            "[main:start] region=%s merchant_id=%s interval=%ss",
            settings.BATCHPOLL_REGION, settings.BATCHPOLL_MERCHANT_ID, settings.BATCHPOLL_POLL_INTERVAL,
        )
        done = 0
        try:
            while ticks is None or done < ticks:
                await client.poll()
                done += 1
                if ticks is not None and done >= ticks:
                    break
                await asyncio.sleep(settings.BATCHPOLL_POLL_INTERVAL)
        finally:
            store.close()
            logger.info("[main:stop] ticks=%s", done)


def main(registry: Optional[CallbackRegistry] = None):
    settings = load_settings()
    # Central logging configuration before any adapter emits
    configure_logging(settings.BATCHPOLL_LOG_LEVEL)
    settings.print_settings(LoggingAdapter("batchpoll", settings.BATCHPOLL_LOG_LEVEL))
    try:
        asyncio.run(run_forever(settings, registry or CallbackRegistry()))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
