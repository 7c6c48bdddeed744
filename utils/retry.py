import asyncio
from typing import Awaitable, Callable, Tuple, Type, TypeVar
from core.logger import logger

T = TypeVar("T")


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    retries: int,
    base_delay: float,
    retry_on: Tuple[Type[BaseException], ...],
    description: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run `operation`, retrying up to `retries` more times on `retry_on` errors.
    Delay doubles each attempt: base, 2*base, 4*base...
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except retry_on as e:
            if attempt >= retries:
                logger.error("Retries exhausted", operation=description, attempts=attempt + 1, error=str(e))
                raise
            delay = base_delay * (2 ** attempt)
            logger.warning("Retrying after failure", operation=description, attempt=attempt + 1, delay=delay, error=str(e))
            await sleep(delay)
            attempt += 1
