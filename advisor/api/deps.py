"""
Dependencies giving endpoints access to the process-wide services.

The lifespan in ``advisor.main`` places one ``JobServices`` and one
``MarketDataCache`` on ``app.state``; tests swap them through
``app.dependency_overrides`` or by assigning ``app.state`` directly.
"""
from fastapi import HTTPException, Request, status

from advisor.jobs.registry import JobServices
from advisor.services.market_data import MarketDataCache
from advisor.utils import get_logger

logger = get_logger(__name__)


async def get_job_services(request: Request) -> JobServices:
    """Return the job services and make sure the processor loop is running.

    Every request path that touches jobs goes through here, so a processor that
    died (or never started) is brought back by normal traffic. Declared async so
    it runs on the event loop the processor task must be created on.
    """
    services = getattr(request.app.state, "job_services", None)
    if services is None:
        logger.error("Job services requested before startup completed")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Job services not available",
        )
    services.ensure_started()
    return services


async def get_market_data(request: Request) -> MarketDataCache:
    cache = getattr(request.app.state, "market_data", None)
    if cache is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Market data cache not available",
        )
    return cache
