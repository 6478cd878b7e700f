import functools
import inspect

from loguru import logger


def make_cache_key(item_id: str, item_name: str) -> str:
    """Composite key addressing a resolution in the cache and in flight."""
    return f"{item_id}:{item_name}"


def logged_job(func):
    """
    A decorator that logs a coroutine job's entry, exit, and exceptions.

    Features:
    - Logs function name and parameters before execution
    - Logs the exception and re-raises it unchanged
    - Logs a success message after successful execution
    - Preserves function metadata and return values
    """
    if not inspect.iscoroutinefunction(func):
        raise TypeError(f"{func.__name__} must be a coroutine function")

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        func_name = func.__name__

        # Build parameter dictionary, without the bound instance
        sig = inspect.signature(func)
        bound_args = sig.bind(*args, **kwargs)
        bound_args.apply_defaults()
        params = {k: v for k, v in bound_args.arguments.items() if k != "self"}

        logger.debug(f"Entering {func_name} with params: {params}")

        try:
            result = await func(*args, **kwargs)
            logger.debug(f"{func_name} done: {result}")
            return result
        except Exception as e:
            logger.error(f"{func_name} failed: {type(e).__name__}: {e}")
            raise

    return wrapper
